from .subscription_order_model import SubscriptionOrder, WebhookLogEntry
from .user_subscription_model import UserSubscription
from .idempotency_model import IdempotencyRecord
from .anomaly_model import PaymentAnomaly
from .side_effect_model import SideEffectJob

__all__ = [
    "SubscriptionOrder",
    "WebhookLogEntry",
    "UserSubscription",
    "IdempotencyRecord",
    "PaymentAnomaly",
    "SideEffectJob",
]
