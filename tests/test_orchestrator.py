import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.future import select
from unittest.mock import AsyncMock, MagicMock, patch

from blogpay.core.exceptions import (
    GatewayUnavailable,
    InvalidSignature,
    MalformedPayload,
    OrderInFlight,
    PersistenceFailure,
    ReservationInFlight,
    UnknownOrder,
    UnsupportedGateway,
)
from blogpay.models.anomaly_model import AnomalyKind, PaymentAnomaly
from blogpay.models.side_effect_model import SideEffectJob, SideEffectKind
from blogpay.modules.payment.gateways import build_adapters
from blogpay.modules.payment.orchestrator import PaymentOrchestrator, WebhookResult
from blogpay.repository.order_repository import order_repository
from blogpay.repository.subscription_repository import user_subscription_repository

from tests.conftest import XENDIT_CALLBACK_TOKEN, build_config, midtrans_body


def make_orchestrator(handler=None, dispatched=None, **config_overrides):
    config = build_config(**config_overrides)
    transport = httpx.MockTransport(handler) if handler else None
    dispatch = dispatched.extend if dispatched is not None else None
    return PaymentOrchestrator(config, build_adapters(config, transport=transport), dispatch=dispatch)


async def anomalies(db, kind=None):
    query = select(PaymentAnomaly)
    if kind:
        query = query.filter(PaymentAnomaly.kind == kind.value)
    return (await db.execute(query)).scalars().all()


async def jobs_for(db, order_id):
    result = await db.execute(select(SideEffectJob).filter(SideEffectJob.order_id == order_id))
    return result.scalars().all()


@pytest.mark.asyncio
async def test_midtrans_settlement_activates_subscription(db, make_order):
    await make_order("SUB-100", billing_cycle="monthly")
    dispatched = []
    orchestrator = make_orchestrator(dispatched=dispatched)

    result = await orchestrator.handle_webhook(
        db, "midtrans", midtrans_body("SUB-100", "settlement", fraud_status="accept"), {}
    )

    assert result.outcome == "applied"
    assert result.status == "paid"
    order = await order_repository.get_by_order_id(db, "SUB-100", fresh=True)
    assert order.status == "paid"
    assert order.applied_at is not None

    subscription = await user_subscription_repository.get_by_user(db, "user-1")
    assert subscription.status == "active"
    assert subscription.plan_id == "premium"
    assert subscription.end_date - subscription.start_date in {timedelta(days=d) for d in (28, 29, 30, 31)}

    jobs = await jobs_for(db, "SUB-100")
    assert [job.kind for job in jobs] == [SideEffectKind.SUBSCRIPTION_ACTIVATED.value]
    assert dispatched == [jobs[0].id]

    log = await order_repository.list_webhook_log(db, "SUB-100")
    assert [entry.raw_status for entry in log] == ["settlement"]


@pytest.mark.asyncio
async def test_redelivery_is_applied_once(db, make_order):
    await make_order("SUB-101")
    orchestrator = make_orchestrator()
    body = midtrans_body("SUB-101", "settlement")

    first = await orchestrator.handle_webhook(db, "midtrans", body, {})
    applied_at = (await order_repository.get_by_order_id(db, "SUB-101", fresh=True)).applied_at
    second = await orchestrator.handle_webhook(db, "midtrans", body, {})

    assert first.outcome == "applied"
    assert second.outcome == "already_applied"
    order = await order_repository.get_by_order_id(db, "SUB-101", fresh=True)
    assert order.applied_at == applied_at
    assert len(await jobs_for(db, "SUB-101")) == 1
    assert await anomalies(db) == []
    # Both deliveries are kept for audit
    assert len(await order_repository.list_webhook_log(db, "SUB-101")) == 2


@pytest.mark.asyncio
async def test_xendit_expired_fails_order(db, make_order):
    await make_order("SUB-102", gateway="xendit", gateway_transaction_id="inv-102")
    orchestrator = make_orchestrator()
    body = json.dumps({"id": "inv-102", "external_id": "SUB-102", "status": "EXPIRED", "amount": 99000}).encode()

    result = await orchestrator.handle_webhook(db, "xendit", body, {"x-callback-token": XENDIT_CALLBACK_TOKEN})

    assert result.outcome == "applied"
    order = await order_repository.get_by_order_id(db, "SUB-102", fresh=True)
    assert order.status == "failed"
    assert await user_subscription_repository.get_by_user(db, "user-1") is None
    assert [job.kind for job in await jobs_for(db, "SUB-102")] == [SideEffectKind.PAYMENT_FAILED.value]


@pytest.mark.asyncio
async def test_midtrans_cancel_marks_order_cancelled(db, make_order):
    await make_order("SUB-103")
    orchestrator = make_orchestrator()

    await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-103", "cancel"), {})

    order = await order_repository.get_by_order_id(db, "SUB-103", fresh=True)
    assert order.status == "cancelled"


@pytest.mark.asyncio
async def test_pending_notification_is_recorded_without_reserving(db, make_order):
    await make_order("SUB-104", status="created")
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-104", "pending"), {})

    assert result.outcome == "recorded"
    order = await order_repository.get_by_order_id(db, "SUB-104", fresh=True)
    assert order.status == "pending"
    assert order.gateway_transaction_id == "trx-SUB-104"
    assert await orchestrator.ledger.get(db, "midtrans", "trx-SUB-104") is None


@pytest.mark.asyncio
async def test_unknown_order_is_acknowledged_and_flagged(db):
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-missing", "settlement"), {})

    assert result.outcome == "unknown_order"
    assert result.as_response()["status"] == "OK"
    flagged = await anomalies(db, AnomalyKind.UNKNOWN_ORDER)
    assert len(flagged) == 1
    assert flagged[0].order_id == "SUB-missing"


@pytest.mark.asyncio
async def test_notification_for_order_of_another_gateway_is_flagged(db, make_order):
    await make_order("SUB-105", gateway="xendit")
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-105", "settlement"), {})

    assert result.outcome == "unknown_order"
    assert len(await anomalies(db, AnomalyKind.GATEWAY_MISMATCH)) == 1
    assert (await order_repository.get_by_order_id(db, "SUB-105", fresh=True)).status == "pending"


@pytest.mark.asyncio
async def test_invalid_signature_changes_nothing(db, make_order):
    await make_order("SUB-106")
    orchestrator = make_orchestrator()
    payload = json.loads(midtrans_body("SUB-106", "settlement"))
    payload["signature_key"] = "0" * 128

    with pytest.raises(InvalidSignature):
        await orchestrator.handle_webhook(db, "midtrans", json.dumps(payload).encode(), {})

    order = await order_repository.get_by_order_id(db, "SUB-106", fresh=True)
    assert order.status == "pending"
    assert await order_repository.list_webhook_log(db, "SUB-106") == []


@pytest.mark.asyncio
async def test_unconfigured_gateway_is_rejected(db):
    orchestrator = make_orchestrator()
    with pytest.raises(UnsupportedGateway):
        await orchestrator.handle_webhook(db, "paypal", b"{}", {})


@pytest.mark.asyncio
async def test_stripe_non_settlement_event_is_ignored(db):
    orchestrator = make_orchestrator()
    body = json.dumps({"type": "payment_intent.created", "data": {"object": {"id": "pi_1"}}}).encode()

    result = await orchestrator.handle_webhook(db, "stripe", body, {})

    assert result.outcome == "ignored"


@pytest.mark.asyncio
async def test_stripe_succeeded_event_settles_order(db, make_order):
    await make_order("SUB-107", gateway="stripe", gateway_transaction_id="pi_107")
    orchestrator = make_orchestrator()
    body = json.dumps({
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_107",
            "status": "succeeded",
            "amount_received": 9900000,
            "metadata": {"order_id": "SUB-107"},
        }},
    }).encode()

    result = await orchestrator.handle_webhook(db, "stripe", body, {})

    assert result.outcome == "applied"
    assert (await order_repository.get_by_order_id(db, "SUB-107", fresh=True)).status == "paid"


@pytest.mark.asyncio
async def test_failure_after_paid_is_a_conflict(db, make_order):
    await make_order("SUB-108")
    orchestrator = make_orchestrator()
    await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-108", "settlement"), {})

    result = await orchestrator.handle_webhook(
        db, "midtrans", midtrans_body("SUB-108", "expire", transaction_id="trx-late"), {}
    )

    assert result.outcome == "conflict"
    assert result.status == "paid"
    assert (await order_repository.get_by_order_id(db, "SUB-108", fresh=True)).status == "paid"
    assert len(await anomalies(db, AnomalyKind.TERMINAL_CONFLICT)) == 1
    record = await orchestrator.ledger.get(db, "midtrans", "trx-late")
    assert record.state == "applied"


@pytest.mark.asyncio
async def test_stale_pending_after_paid_is_a_conflict(db, make_order):
    await make_order("SUB-109", status="paid")
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-109", "pending"), {})

    assert result.outcome == "conflict"
    assert (await order_repository.get_by_order_id(db, "SUB-109", fresh=True)).status == "paid"


@pytest.mark.asyncio
async def test_amount_mismatch_does_not_activate(db, make_order):
    await make_order("SUB-110", amount="99000.00")
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(
        db, "midtrans", midtrans_body("SUB-110", "settlement", gross_amount="1000.00"), {}
    )

    assert result.outcome == "amount_mismatch"
    assert (await order_repository.get_by_order_id(db, "SUB-110", fresh=True)).status == "pending"
    assert await user_subscription_repository.get_by_user(db, "user-1") is None
    assert len(await anomalies(db, AnomalyKind.AMOUNT_MISMATCH)) == 1


@pytest.mark.asyncio
async def test_held_reservation_asks_gateway_to_retry(db, make_order):
    await make_order("SUB-111")
    orchestrator = make_orchestrator()
    await orchestrator.ledger.reserve(db, "midtrans", "trx-SUB-111", "SUB-111")

    with pytest.raises(ReservationInFlight):
        await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-111", "settlement"), {})

    assert (await order_repository.get_by_order_id(db, "SUB-111", fresh=True)).status == "pending"


@pytest.mark.asyncio
async def test_unrecognized_status_is_flagged_and_kept_pending(db, make_order):
    await make_order("SUB-112")
    orchestrator = make_orchestrator()

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-112", "authorize"), {})

    assert result.outcome == "recorded"
    assert len(await anomalies(db, AnomalyKind.UNRECOGNIZED_STATUS)) == 1


@pytest.mark.asyncio
async def test_storage_failure_is_not_acknowledged(db, make_order):
    await make_order("SUB-113")
    orchestrator = make_orchestrator()

    with patch.object(
        orchestrator.ledger, "mark_applied", new_callable=AsyncMock, side_effect=SQLAlchemyError("disk I/O error")
    ):
        with pytest.raises(PersistenceFailure):
            await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-113", "settlement"), {})

    # The transition rolled back; the claim stays so recovery can re-drive it
    assert (await order_repository.get_by_order_id(db, "SUB-113", fresh=True)).status == "pending"
    assert await user_subscription_repository.get_by_user(db, "user-1") is None
    assert (await orchestrator.ledger.get(db, "midtrans", "trx-SUB-113")).state == "reserved"
    assert await jobs_for(db, "SUB-113") == []


@pytest.mark.asyncio
async def test_dispatch_failure_still_acknowledges_settlement(db, make_order):
    await make_order("SUB-114")
    config = build_config()
    dispatch = MagicMock(side_effect=ConnectionError("broker unreachable"))
    orchestrator = PaymentOrchestrator(config, build_adapters(config), dispatch=dispatch)

    result = await orchestrator.handle_webhook(db, "midtrans", midtrans_body("SUB-114", "settlement"), {})

    assert result.outcome == "applied"
    assert result.status == "paid"
    dispatch.assert_called_once()
    jobs = await jobs_for(db, "SUB-114")
    assert [job.status for job in jobs] == ["pending"]


@pytest.mark.asyncio
async def test_non_json_body_is_malformed(db):
    orchestrator = make_orchestrator()
    with pytest.raises(MalformedPayload):
        await orchestrator.handle_webhook(db, "xendit", b"not json", {"x-callback-token": XENDIT_CALLBACK_TOKEN})


# --- reconciliation ---


@pytest.mark.asyncio
async def test_reconcile_settles_stale_pending_order(db, make_order):
    an_hour_ago = datetime.utcnow() - timedelta(hours=2)
    await make_order("SUB-200", created_at=an_hour_ago, updated_at=an_hour_ago)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/SUB-200/status"
        return httpx.Response(200, json={
            "status_code": "200",
            "order_id": "SUB-200",
            "transaction_id": "trx-200",
            "transaction_status": "settlement",
            "fraud_status": "accept",
            "gross_amount": "99000.00",
        })

    orchestrator = make_orchestrator(handler)

    summary = await orchestrator.reconcile_stale(db)

    assert summary == {"checked": 1, "failed": 0, "applied": 1}
    order = await order_repository.get_by_order_id(db, "SUB-200", fresh=True)
    assert order.status == "paid"
    log = await order_repository.list_webhook_log(db, "SUB-200")
    assert [entry.source for entry in log] == ["reconcile"]

    # The late webhook for the same transaction is a duplicate
    late = await orchestrator.handle_webhook(
        db, "midtrans", midtrans_body("SUB-200", "settlement", transaction_id="trx-200"), {}
    )
    assert late.outcome == "already_applied"


@pytest.mark.asyncio
async def test_reconcile_terminal_order_is_unchanged(db, make_order):
    await make_order("SUB-201", status="paid")
    orchestrator = make_orchestrator(lambda request: pytest.fail("terminal orders are not polled"))

    result = await orchestrator.reconcile(db, "SUB-201")

    assert result == WebhookResult(outcome="unchanged", order_id="SUB-201", status="paid")


@pytest.mark.asyncio
async def test_reconcile_unknown_order(db):
    with pytest.raises(UnknownOrder):
        await make_orchestrator().reconcile(db, "SUB-nope")


@pytest.mark.asyncio
async def test_reconcile_fails_stale_created_order_unknown_to_gateway(db, make_order):
    long_ago = datetime.utcnow() - timedelta(hours=3)
    await make_order("SUB-202", status="created", created_at=long_ago, updated_at=long_ago)

    def handler(request):
        return httpx.Response(404, json={"status_code": "404", "status_message": "Transaction doesn't exist."})

    result = await make_orchestrator(handler).reconcile(db, "SUB-202")

    assert result.outcome == "applied"
    order = await order_repository.get_by_order_id(db, "SUB-202", fresh=True)
    assert order.status == "failed"


@pytest.mark.asyncio
async def test_reconcile_recent_order_unknown_to_gateway_waits(db, make_order):
    await make_order("SUB-203", status="created")

    def handler(request):
        return httpx.Response(200, json={"status_code": "404", "status_message": "Transaction doesn't exist."})

    result = await make_orchestrator(handler).reconcile(db, "SUB-203")

    assert result.outcome == "no_data"
    assert (await order_repository.get_by_order_id(db, "SUB-203", fresh=True)).status == "created"


@pytest.mark.asyncio
async def test_reconcile_gateway_outage_counts_as_failed(db, make_order):
    long_ago = datetime.utcnow() - timedelta(hours=2)
    await make_order("SUB-204", created_at=long_ago, updated_at=long_ago)

    def handler(request):
        return httpx.Response(503, json={"message": "down"})

    summary = await make_orchestrator(handler).reconcile_stale(db)

    assert summary == {"checked": 1, "failed": 1}
    assert (await order_repository.get_by_order_id(db, "SUB-204", fresh=True)).status == "pending"


@pytest.mark.asyncio
async def test_recover_abandoned_reservation(db, make_order):
    await make_order("SUB-205", gateway="xendit", gateway_transaction_id="inv-205")
    orchestrator = make_orchestrator(
        lambda request: httpx.Response(200, json={
            "id": "inv-205", "external_id": "SUB-205", "status": "PAID", "paid_amount": 99000,
        }),
        reservation_timeout_seconds=0,
    )
    await orchestrator.ledger.reserve(db, "xendit", "inv-205", "SUB-205")

    summary = await orchestrator.recover_abandoned(db)

    assert summary == {"abandoned": 1, "recovered": 1, "failed": 0}
    assert (await order_repository.get_by_order_id(db, "SUB-205", fresh=True)).status == "paid"
    assert (await orchestrator.ledger.get(db, "xendit", "inv-205")).state == "applied"


# --- outbound ---


@pytest.mark.asyncio
async def test_create_subscription_charge_midtrans(db):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json={
            "status_code": "201",
            "transaction_id": "trx-new",
            "order_id": body["transaction_details"]["order_id"],
            "redirect_url": "https://app.sandbox.midtrans.com/snap/v2/vtweb/abc",
        })

    orchestrator = make_orchestrator(handler)

    outcome = await orchestrator.create_subscription_charge(
        db, "user-9", "premium", "yearly", "midtrans", customer_email="nine@blog.test"
    )

    assert outcome.status == "pending"
    assert outcome.amount == Decimal("990000")
    assert outcome.redirect_target.endswith("/abc")
    assert outcome.gateway_transaction_id == "trx-new"
    assert outcome.public_key == "SB-Mid-client-test"
    assert outcome.order_id.startswith("SUB-user9-")
    sent = json.loads(requests[0].content)
    assert sent["transaction_details"]["gross_amount"] == 990000

    # Asking again for the same checkout hands back the same order
    again = await orchestrator.create_subscription_charge(db, "user-9", "premium", "yearly", "midtrans")
    assert again.order_id == outcome.order_id
    assert len(requests) == 1

    with pytest.raises(OrderInFlight):
        await orchestrator.create_subscription_charge(db, "user-9", "pro", "monthly", "midtrans")


@pytest.mark.asyncio
async def test_create_charge_exhausting_retries_fails_order(db):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"message": "unavailable"})

    dispatched = []
    orchestrator = make_orchestrator(handler, dispatched=dispatched)

    with pytest.raises(GatewayUnavailable):
        await orchestrator.create_subscription_charge(db, "user-10", "pro", "monthly", "xendit")

    assert len(calls) == 3
    result = await db.execute(select(order_repository.model).filter(order_repository.model.user_id == "user-10"))
    order = result.scalar_one()
    assert order.status == "failed"
    assert len(dispatched) == 1


@pytest.mark.asyncio
async def test_storage_allows_one_in_flight_order_per_user(db, make_order):
    await make_order("SUB-300", status="pending")

    with pytest.raises(IntegrityError):
        await make_order("SUB-301", status="created")
    await db.rollback()

    # Settled orders do not count
    await make_order("SUB-302", status="failed")
    await make_order("SUB-303", status="paid")
    await make_order("SUB-304", status="pending", user_id="user-2")


@pytest.mark.asyncio
async def test_checkout_losing_the_race_is_rejected(session_factory):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"status_code": "201", "transaction_id": f"trx-{len(requests)}"})

    orchestrator = make_orchestrator(handler)

    async with session_factory() as first, session_factory() as second:
        won = await orchestrator.create_subscription_charge(first, "user-9", "premium", "monthly", "midtrans")
        # The second checkout checked before the first one was committed
        with patch.object(order_repository, "find_in_flight_for_user", new_callable=AsyncMock, return_value=None):
            with pytest.raises(OrderInFlight):
                await orchestrator.create_subscription_charge(second, "user-9", "premium", "monthly", "xendit")

    async with session_factory() as check:
        result = await check.execute(
            select(order_repository.model.order_id).filter(
                order_repository.model.user_id == "user-9",
                order_repository.model.status.in_(["created", "pending"]),
            )
        )
        assert result.scalars().all() == [won.order_id]
    assert len(requests) == 1
