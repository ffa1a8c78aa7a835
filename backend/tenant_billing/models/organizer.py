from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from tenant_billing.core.database import Base


class Organizer(Base):
    __tablename__ = "organizers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True, comment="認証サービス側のユーザーID")
    email = Column(String(255), nullable=False, index=True)
    business_name = Column(String(255), nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False, comment="Stripeトライアル使用済み (一度立てたら戻さない)")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
