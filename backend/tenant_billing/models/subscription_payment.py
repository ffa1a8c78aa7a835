from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, UniqueConstraint, func
from tenant_billing.core.database import Base


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"
    __table_args__ = (
        UniqueConstraint("stripe_invoice_id", "status", name="uq_subscription_payments_invoice_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("organizer_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    organizer_id = Column(Integer, ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), nullable=False)
    amount_paid = Column(Integer, nullable=False, default=0, comment="最小通貨単位")
    currency = Column(String(3), nullable=False, default="CAD")
    status = Column(SAEnum("succeeded", "failed", name="payment_status"), nullable=False)
    billing_period_start = Column(DateTime, nullable=True)
    billing_period_end = Column(DateTime, nullable=True)
    receipt_url = Column(String(500), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
