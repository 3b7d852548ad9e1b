from decimal import Decimal

import pytest

from blogpay.core.exceptions import MalformedPayload, UnsupportedGateway
from blogpay.modules.payment.gateways import build_adapters
from blogpay.modules.payment.normalizer import SettlementOutcome, StatusNormalizer, to_decimal


@pytest.fixture
def normalizer(payment_config):
    return StatusNormalizer(build_adapters(payment_config))


@pytest.mark.parametrize(
    "status, fraud, expected, cancelled",
    [
        ("capture", "accept", SettlementOutcome.PAID, False),
        ("capture", None, SettlementOutcome.PAID, False),
        ("settlement", "accept", SettlementOutcome.PAID, False),
        ("settlement", None, SettlementOutcome.PAID, False),
        ("capture", "challenge", SettlementOutcome.FAILED, False),
        ("capture", "deny", SettlementOutcome.FAILED, False),
        ("pending", None, SettlementOutcome.PENDING, False),
        ("deny", None, SettlementOutcome.FAILED, False),
        ("expire", None, SettlementOutcome.FAILED, False),
        ("failure", None, SettlementOutcome.FAILED, False),
        ("cancel", None, SettlementOutcome.FAILED, True),
    ],
)
def test_midtrans_mapping(normalizer, status, fraud, expected, cancelled):
    payload = {"order_id": "SUB-1", "transaction_id": "trx-1", "transaction_status": status, "gross_amount": "99000.00"}
    if fraud:
        payload["fraud_status"] = fraud

    notification = normalizer.normalize("midtrans", payload)

    assert notification.outcome == expected
    assert notification.cancelled is cancelled
    assert notification.unrecognized is False
    assert notification.order_id == "SUB-1"
    assert notification.gateway_transaction_id == "trx-1"
    assert notification.amount == Decimal("99000.00")


def test_midtrans_unknown_status_is_pending_and_flagged(normalizer):
    notification = normalizer.normalize("midtrans", {"order_id": "SUB-1", "transaction_status": "authorize"})
    assert notification.outcome == SettlementOutcome.PENDING
    assert notification.unrecognized is True
    assert notification.raw_status == "authorize"


def test_midtrans_settlement_with_unknown_fraud_status_is_not_paid(normalizer):
    notification = normalizer.normalize(
        "midtrans", {"order_id": "SUB-1", "transaction_status": "settlement", "fraud_status": "review"}
    )
    assert notification.outcome == SettlementOutcome.PENDING
    assert notification.unrecognized is True


@pytest.mark.parametrize(
    "status, expected",
    [
        ("PAID", SettlementOutcome.PAID),
        ("PENDING", SettlementOutcome.PENDING),
        ("EXPIRED", SettlementOutcome.FAILED),
        ("FAILED", SettlementOutcome.FAILED),
    ],
)
def test_xendit_mapping(normalizer, status, expected):
    notification = normalizer.normalize(
        "xendit", {"id": "inv-1", "external_id": "SUB-1", "status": status, "amount": 99000, "paid_amount": 99000}
    )
    assert notification.outcome == expected
    assert notification.order_id == "SUB-1"
    assert notification.gateway_transaction_id == "inv-1"
    assert notification.amount == Decimal("99000.00")
    assert notification.unrecognized is False


def test_xendit_unknown_status_is_pending(normalizer):
    notification = normalizer.normalize("xendit", {"id": "inv-1", "external_id": "SUB-1", "status": "SETTLED"})
    assert notification.outcome == SettlementOutcome.PENDING
    assert notification.unrecognized is True


def test_stripe_succeeded_event_is_paid(normalizer):
    event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_1",
            "status": "succeeded",
            "amount": 9900000,
            "amount_received": 9900000,
            "metadata": {"order_id": "SUB-1"},
        }},
    }
    notification = normalizer.normalize("stripe", event)
    assert notification.outcome == SettlementOutcome.PAID
    assert notification.order_id == "SUB-1"
    assert notification.gateway_transaction_id == "pi_1"
    assert notification.amount == Decimal("99000.00")


@pytest.mark.parametrize("event_type", ["payment_intent.created", "payment_intent.payment_failed", "charge.refunded"])
def test_stripe_other_events_are_ignored(normalizer, event_type):
    event = {"type": event_type, "data": {"object": {"id": "pi_1", "metadata": {"order_id": "SUB-1"}}}}
    assert normalizer.normalize("stripe", event) is None


def test_normalize_rejects_non_object_payload(normalizer):
    with pytest.raises(MalformedPayload):
        normalizer.normalize("midtrans", ["settlement"])


def test_normalize_rejects_unconfigured_gateway(normalizer):
    with pytest.raises(UnsupportedGateway):
        normalizer.normalize("paypal", {})


def test_to_decimal():
    assert to_decimal("99000") == Decimal("99000.00")
    assert to_decimal(99000.5) == Decimal("99000.50")
    assert to_decimal(None) is None
    assert to_decimal("") is None
    with pytest.raises(MalformedPayload):
        to_decimal("ninety-nine")
