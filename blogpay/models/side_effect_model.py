# blogpay/models/side_effect_model.py
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index

from .base import Base


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class SideEffectKind(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_EXPIRING = "subscription.expiring"


class SideEffectJob(Base):
    """Domain event written in the same transaction as the state change that caused it."""

    __tablename__ = "side_effect_jobs"
    __table_args__ = (
        Index("ix_side_effect_jobs_status_next", "status", "next_attempt_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String, nullable=False)
    order_id = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default=JobStatus.PENDING.value)  # pending|running|done|dead
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)  # lease expiry while running
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
