# blogpay/models/subscription_order_model.py
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text, JSON, ForeignKey, Index, text

from .base import Base


class Gateway(str, enum.Enum):
    MIDTRANS = "midtrans"
    XENDIT = "xendit"
    STRIPE = "stripe"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED})
IN_FLIGHT_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.PENDING})

# One checkout per user at a time; enforced by the partial unique index below
IN_FLIGHT_PREDICATE = "status IN ('created', 'pending')"


class SubscriptionOrder(Base):
    __tablename__ = "subscription_orders"
    __table_args__ = (
        Index("ix_subscription_orders_status_created", "status", "created_at"),
        Index("ix_subscription_orders_gateway_trx", "gateway", "gateway_transaction_id"),
        Index("ix_subscription_orders_user_status", "user_id", "status"),
        Index(
            "uq_subscription_orders_user_in_flight",
            "user_id",
            unique=True,
            postgresql_where=text(IN_FLIGHT_PREDICATE),
            sqlite_where=text(IN_FLIGHT_PREDICATE),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False)
    user_id = Column(String, nullable=False)
    plan_id = Column(String, nullable=False)
    gateway = Column(String, nullable=False)  # midtrans|xendit|stripe
    gateway_transaction_id = Column(String, nullable=True)

    # Immutable once created
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IDR")
    billing_cycle = Column(String, nullable=False)  # monthly|yearly

    status = Column(String, nullable=False, default=OrderStatus.CREATED.value)  # created|pending|paid|failed|cancelled
    redirect_target = Column(Text, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)

    applied_at = Column(DateTime, nullable=True)
    last_webhook_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}


class WebhookLogEntry(Base):
    """One raw inbound payload for an order. Rows are only ever inserted."""

    __tablename__ = "order_webhook_log"
    __table_args__ = (
        Index("ix_order_webhook_log_order", "order_id", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), ForeignKey("subscription_orders.order_id"), nullable=False)
    gateway = Column(String, nullable=False)
    source = Column(String, nullable=False, default="webhook")  # webhook|reconcile
    raw_status = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
