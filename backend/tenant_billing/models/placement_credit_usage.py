from sqlalchemy import Column, Integer, String, Date, DateTime, JSON, ForeignKey, func
from tenant_billing.core.database import Base


class PlacementCreditUsage(Base):
    __tablename__ = "placement_credit_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organizer_id = Column(Integer, ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("organizer_subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    campaign_id = Column(String(64), nullable=True)
    placements_used = Column(JSON, nullable=False, comment="使用した掲載枠の一覧")
    credits_deducted = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
