# 全モデルをインポート (Alembic autogenerate用)
from tenant_billing.models.organizer import Organizer
from tenant_billing.models.community import Community
from tenant_billing.models.subscription import OrganizerSubscription
from tenant_billing.models.billing_event import BillingEvent
from tenant_billing.models.subscription_payment import SubscriptionPayment
from tenant_billing.models.placement_credit_usage import PlacementCreditUsage

__all__ = [
    "Organizer",
    "Community",
    "OrganizerSubscription",
    "BillingEvent",
    "SubscriptionPayment",
    "PlacementCreditUsage",
]
