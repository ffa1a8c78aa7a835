from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, JSON, func
from tenant_billing.core.database import Base


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=True, comment="event.data.object")
    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)
