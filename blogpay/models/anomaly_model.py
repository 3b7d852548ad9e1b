# blogpay/models/anomaly_model.py
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean, Index

from .base import Base


class AnomalyKind(str, enum.Enum):
    UNKNOWN_ORDER = "unknown_order"
    GATEWAY_MISMATCH = "gateway_mismatch"
    UNRECOGNIZED_STATUS = "unrecognized_status"
    TERMINAL_CONFLICT = "terminal_conflict"
    AMOUNT_MISMATCH = "amount_mismatch"


class PaymentAnomaly(Base):
    """Deliveries that were acknowledged but need a human to look at them."""

    __tablename__ = "payment_anomalies"
    __table_args__ = (
        Index("ix_payment_anomalies_kind_resolved", "kind", "resolved"),
    )

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String, nullable=False)
    gateway = Column(String, nullable=True)
    order_id = Column(String(64), nullable=True, index=True)
    gateway_transaction_id = Column(String, nullable=True)
    detail = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
