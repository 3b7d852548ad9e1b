# blogpay/models/idempotency_model.py
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, PrimaryKeyConstraint, Index

from .base import Base


class LedgerState(str, enum.Enum):
    RESERVED = "reserved"
    APPLIED = "applied"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_ledger"
    __table_args__ = (
        PrimaryKeyConstraint("gateway", "gateway_transaction_id", name="pk_idempotency_ledger"),
        Index("ix_idempotency_ledger_state_reserved", "state", "reserved_at"),
    )

    gateway = Column(String, nullable=False)
    gateway_transaction_id = Column(String, nullable=False)
    order_id = Column(String(64), nullable=True)
    state = Column(String, nullable=False, default=LedgerState.RESERVED.value)
    attempts = Column(Integer, nullable=False, default=1)
    reserved_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    applied_at = Column(DateTime, nullable=True)
