# blogpay/models/user_subscription_model.py
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from .base import Base


class SubscriptionStatus(str, enum.Enum):
    FREE = "free"
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    plan_id = Column(String, nullable=False, default="free")

    # Alur status: free -> active -> expired
    status = Column(String, nullable=False, default=SubscriptionStatus.FREE.value)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True, index=True)
    # Lookup only; the order owns its own lifecycle
    current_order_id = Column(String(64), nullable=True)
    # Cleared whenever the subscription is extended
    reminder_sent_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
