from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from tenant_billing.core.database import Base


class OrganizerSubscription(Base):
    __tablename__ = "organizer_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organizer_id = Column(Integer, ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    # Stripeのステータス文字列をそのまま保存 (解釈は subscription_state で行う)
    status = Column(String(32), nullable=False, default="incomplete", comment="Stripe subscription status (生値)")

    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True)

    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at = Column(DateTime, nullable=True, comment="期間終了時キャンセル予定日時")
    canceled_at = Column(DateTime, nullable=True)

    placement_credits_available = Column(Integer, nullable=False, default=0, comment="今サイクルの付与クレジット")
    placement_credits_used = Column(Integer, nullable=False, default=0, comment="今サイクルの使用済みクレジット")
    credits_reset_date = Column(DateTime, nullable=True, comment="次回クレジットリセット日時")

    # プラットフォームトライアルの起点
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
