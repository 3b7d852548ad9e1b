"""
Internal settlement vocabulary.

Every gateway reports payment state in its own words. Adapters translate those
words into a `NormalizedNotification` whose `outcome` is one of `paid`,
`pending` or `failed`; a `None` result means the event is not about settlement
and is acknowledged without any transition.
"""

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from blogpay.core.exceptions import MalformedPayload, UnsupportedGateway

logger = logging.getLogger(__name__)


class SettlementOutcome(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class NormalizedNotification:
    outcome: SettlementOutcome
    order_id: Optional[str]
    gateway_transaction_id: Optional[str]
    amount: Optional[Decimal]
    raw_status: str
    # Failed because the gateway says the payment was cancelled, not declined
    cancelled: bool = False
    # Status word the mapping does not know; outcome is forced to pending
    unrecognized: bool = False


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise MalformedPayload(f"Invalid amount: {value!r}")


def unrecognized(raw_status: str, order_id, gateway_transaction_id, amount) -> NormalizedNotification:
    """Unknown words never settle anything: treat them as still pending."""
    return NormalizedNotification(
        outcome=SettlementOutcome.PENDING,
        order_id=order_id,
        gateway_transaction_id=gateway_transaction_id,
        amount=amount,
        raw_status=raw_status,
        unrecognized=True,
    )


class StatusNormalizer:
    def __init__(self, adapters: Mapping[str, Any]):
        self._adapters = adapters

    def normalize(self, gateway: str, payload: dict) -> Optional[NormalizedNotification]:
        adapter = self._adapters.get(gateway)
        if adapter is None:
            raise UnsupportedGateway(f"Gateway '{gateway}' is not configured")
        if not isinstance(payload, dict):
            raise MalformedPayload("Webhook body must be a JSON object")

        notification = adapter.normalize_status(payload)
        if notification is not None and notification.unrecognized:
            logger.warning(
                f"Unrecognized {gateway} status '{notification.raw_status}' "
                f"for order {notification.order_id}; treating as pending"
            )
        return notification
