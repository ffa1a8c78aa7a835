from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, func
from tenant_billing.core.database import Base


class Community(Base):
    __tablename__ = "communities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organizer_id = Column(Integer, ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)
    # 購読状態の副作用としてのみ変更される (UIから直接変更しない)
    status = Column(
        SAEnum("active", "draft", name="community_status"),
        nullable=False,
        default="draft",
        comment="公開状態: active=公開, draft=非公開",
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
