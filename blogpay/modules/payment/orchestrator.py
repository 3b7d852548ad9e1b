"""
Settlement pipeline.

    verify -> normalize -> reserve -> transition -> mark applied -> commit

Webhook deliveries and reconciliation polls go through the same `_settle`
path, so a payment seen both ways is still applied once. Side effects are
written as `side_effect_jobs` rows inside the transition transaction and
dispatched only after it commits.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.config import PaymentConfig
from blogpay.core.exceptions import (
    GatewayRejected,
    GatewayUnavailable,
    MalformedPayload,
    OrderInFlight,
    PaymentError,
    PersistenceFailure,
    ReservationInFlight,
    TerminalStateConflict,
    UnknownOrder,
    UnsupportedGateway,
)
from blogpay.models.anomaly_model import AnomalyKind
from blogpay.models.side_effect_model import JobStatus
from blogpay.models.subscription_order_model import OrderStatus, SubscriptionOrder
from blogpay.modules.payment.gateways.base import GatewayAdapter
from blogpay.modules.payment.ledger import IdempotencyLedger
from blogpay.modules.payment.normalizer import NormalizedNotification, SettlementOutcome, StatusNormalizer
from blogpay.modules.payment.signature import SignatureVerifier
from blogpay.modules.payment.state_machine import SubscriptionStateMachine, subscription_state_machine
from blogpay.modules.subscription.service import subscription_service
from blogpay.repository.anomaly_repository import anomaly_repository
from blogpay.repository.order_repository import order_repository
from blogpay.repository.side_effect_repository import side_effect_repository
from blogpay.utils.generators import generate_order_id

logger = logging.getLogger(__name__)

SideEffectDispatcher = Callable[[List[int]], None]


@dataclass(frozen=True)
class WebhookResult:
    """What happened to one delivery. Every instance is acknowledged to the gateway."""

    outcome: str  # applied|already_applied|recorded|ignored|unknown_order|conflict|amount_mismatch|no_data|unchanged
    order_id: Optional[str] = None
    status: Optional[str] = None
    message: str = ""

    def as_response(self) -> dict:
        body = {"status": "OK", "result": self.outcome}
        if self.order_id:
            body["order_id"] = self.order_id
        if self.status:
            body["order_status"] = self.status
        if self.message:
            body["message"] = self.message
        return body


@dataclass(frozen=True)
class ChargeOutcome:
    order_id: str
    gateway: str
    status: str
    amount: Decimal
    currency: str
    redirect_target: Optional[str]
    gateway_transaction_id: Optional[str]
    public_key: Optional[str] = None


def _implied_status(notification: NormalizedNotification) -> str:
    if notification.outcome == SettlementOutcome.PAID:
        return OrderStatus.PAID.value
    if notification.outcome == SettlementOutcome.FAILED:
        return OrderStatus.CANCELLED.value if notification.cancelled else OrderStatus.FAILED.value
    return OrderStatus.PENDING.value


class PaymentOrchestrator:
    def __init__(
        self,
        config: PaymentConfig,
        adapters: Mapping[str, GatewayAdapter],
        *,
        ledger: Optional[IdempotencyLedger] = None,
        state_machine: Optional[SubscriptionStateMachine] = None,
        dispatch: Optional[SideEffectDispatcher] = None,
    ):
        self.config = config
        self.adapters = dict(adapters)
        self.verifier = SignatureVerifier(self.adapters)
        self.normalizer = StatusNormalizer(self.adapters)
        self.ledger = ledger or IdempotencyLedger(config.reservation_timeout_seconds)
        self.state_machine = state_machine or subscription_state_machine
        self._dispatch = dispatch

    def adapter_for(self, gateway: str) -> GatewayAdapter:
        adapter = self.adapters.get(gateway)
        if adapter is None:
            raise UnsupportedGateway(f"Gateway '{gateway}' is not configured")
        return adapter

    # --- inbound ---

    async def handle_webhook(
        self, db: AsyncSession, gateway: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookResult:
        self.adapter_for(gateway)
        self.verifier.ensure_verified(gateway, raw_body, headers)

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise MalformedPayload(f"{gateway} webhook body is not valid JSON")

        notification = self.normalizer.normalize(gateway, payload)
        if notification is None:
            return WebhookResult(outcome="ignored", message="Event not handled")
        return await self._settle(db, gateway, notification, payload, source="webhook")

    async def _find_order(
        self, db: AsyncSession, gateway: str, notification: NormalizedNotification
    ) -> Optional[SubscriptionOrder]:
        order = None
        if notification.order_id:
            order = await order_repository.get_by_order_id(db, notification.order_id, fresh=True)
        if order is None and notification.gateway_transaction_id:
            order = await order_repository.get_by_gateway_transaction(db, gateway, notification.gateway_transaction_id)
        return order

    async def _flag(self, db: AsyncSession, kind: AnomalyKind, detail: str, gateway: str, notification, payload) -> None:
        await anomaly_repository.flag(
            db,
            kind.value,
            detail,
            gateway=gateway,
            order_id=notification.order_id,
            gateway_transaction_id=notification.gateway_transaction_id,
            payload=payload,
        )

    async def _settle(
        self,
        db: AsyncSession,
        gateway: str,
        notification: NormalizedNotification,
        payload: dict,
        *,
        source: str,
    ) -> WebhookResult:
        try:
            return await self._settle_unsafe(db, gateway, notification, payload, source=source)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Could not persist {gateway} settlement for order {notification.order_id}: {e}")
            raise PersistenceFailure("Settlement could not be durably recorded; retry later") from e

    async def _settle_unsafe(
        self,
        db: AsyncSession,
        gateway: str,
        notification: NormalizedNotification,
        payload: dict,
        *,
        source: str,
    ) -> WebhookResult:
        order = await self._find_order(db, gateway, notification)
        if order is None:
            await self._flag(
                db, AnomalyKind.UNKNOWN_ORDER,
                f"No order matches {notification.order_id or notification.gateway_transaction_id}",
                gateway, notification, payload,
            )
            await db.commit()
            return WebhookResult(outcome="unknown_order", order_id=notification.order_id)
        if order.gateway != gateway:
            await self._flag(
                db, AnomalyKind.GATEWAY_MISMATCH,
                f"Order {order.order_id} was charged through {order.gateway}",
                gateway, notification, payload,
            )
            await db.commit()
            return WebhookResult(outcome="unknown_order", order_id=order.order_id)

        if notification.order_id is None:
            notification = replace(notification, order_id=order.order_id)
        await self.state_machine.record_webhook(db, order, payload, source=source, raw_status=notification.raw_status)
        if notification.unrecognized:
            await self._flag(
                db, AnomalyKind.UNRECOGNIZED_STATUS,
                f"Unrecognized status '{notification.raw_status}'; treated as pending",
                gateway, notification, payload,
            )

        if notification.outcome == SettlementOutcome.PENDING:
            return await self._record_pending(db, gateway, order, notification, payload)

        transaction_id = notification.gateway_transaction_id or order.gateway_transaction_id
        if not transaction_id:
            await db.commit()
            raise MalformedPayload(f"{gateway} notification for {order.order_id} carries no transaction id")

        # Commits the audit log entry together with the claim
        reservation = await self.ledger.reserve(db, gateway, transaction_id, order.order_id)
        if not reservation.first_reservation:
            if not reservation.already_applied:
                raise ReservationInFlight(
                    f"{gateway}:{transaction_id} is being applied by another delivery; retry later"
                )
            return await self._already_applied(db, gateway, order, notification, payload)

        order = await order_repository.get_by_order_id(db, order.order_id, fresh=True)
        if notification.outcome == SettlementOutcome.PAID and not self._amount_matches(order, notification):
            await self._flag(
                db, AnomalyKind.AMOUNT_MISMATCH,
                f"Paid amount {notification.amount} differs from order amount {order.amount}",
                gateway, notification, payload,
            )
            await self.ledger.mark_applied(db, gateway, transaction_id)
            await db.commit()
            return WebhookResult(outcome="amount_mismatch", order_id=order.order_id, status=order.status)

        try:
            if notification.outcome == SettlementOutcome.PAID:
                await self.state_machine.apply_paid(db, order)
            else:
                await self.state_machine.apply_failed(
                    db,
                    order,
                    cancelled=notification.cancelled,
                    reason=f"{gateway} reported {notification.raw_status}",
                )
            await self.ledger.mark_applied(db, gateway, transaction_id)
            await db.commit()
        except TerminalStateConflict as e:
            await db.rollback()
            await self._flag(db, AnomalyKind.TERMINAL_CONFLICT, e.detail, gateway, notification, payload)
            await self.ledger.mark_applied(db, gateway, transaction_id)
            await db.commit()
            return WebhookResult(outcome="conflict", order_id=e.order_id, status=e.current, message=e.detail)

        await self._dispatch_side_effects(db, order.order_id)
        return WebhookResult(outcome="applied", order_id=order.order_id, status=order.status)

    async def _record_pending(self, db, gateway, order, notification, payload) -> WebhookResult:
        """Pending never advances an order past `pending`; it is kept for audit."""
        if order.is_terminal:
            detail = f"Stale {notification.raw_status or 'pending'} for order {order.order_id} already {order.status}"
            await self._flag(db, AnomalyKind.TERMINAL_CONFLICT, detail, gateway, notification, payload)
            await db.commit()
            return WebhookResult(outcome="conflict", order_id=order.order_id, status=order.status, message=detail)
        try:
            await self.state_machine.mark_pending(db, order, gateway_transaction_id=notification.gateway_transaction_id)
        except TerminalStateConflict as e:
            await db.rollback()
            await self._flag(db, AnomalyKind.TERMINAL_CONFLICT, e.detail, gateway, notification, payload)
            await db.commit()
            return WebhookResult(outcome="conflict", order_id=e.order_id, status=e.current, message=e.detail)
        await db.commit()
        return WebhookResult(outcome="recorded", order_id=order.order_id, status=order.status)

    async def _already_applied(self, db, gateway, order, notification, payload) -> WebhookResult:
        order = await order_repository.get_by_order_id(db, order.order_id, fresh=True)
        implied = _implied_status(notification)
        if order.is_terminal and order.status != implied:
            await self._flag(
                db, AnomalyKind.TERMINAL_CONFLICT,
                f"Order {order.order_id} is {order.status}; ignoring redelivered {notification.raw_status}",
                gateway, notification, payload,
            )
        await db.commit()
        logger.info(f"{gateway}:{notification.gateway_transaction_id} already applied to {order.order_id}")
        return WebhookResult(outcome="already_applied", order_id=order.order_id, status=order.status)

    @staticmethod
    def _amount_matches(order: SubscriptionOrder, notification: NormalizedNotification) -> bool:
        if notification.amount is None:
            return True
        return Decimal(order.amount).quantize(Decimal("0.01")) == notification.amount

    async def _dispatch_side_effects(self, db: AsyncSession, order_id: str) -> None:
        if self._dispatch is None:
            return
        jobs = await side_effect_repository.list_for_order(db, order_id)
        job_ids = [job.id for job in jobs if job.status == JobStatus.PENDING.value]
        if not job_ids:
            return
        try:
            # Broker publish is blocking
            await asyncio.to_thread(self._dispatch, job_ids)
        except Exception as e:
            # The jobs stay queued and the side-effect sweep picks them up
            logger.error(f"Could not dispatch side effects {job_ids} for order {order_id}: {e}")

    # --- reconciliation ---

    async def reconcile(self, db: AsyncSession, order_id: str) -> WebhookResult:
        """Poll the gateway for one order and settle whatever it reports."""
        order = await order_repository.get_by_order_id(db, order_id, fresh=True)
        if order is None:
            raise UnknownOrder(f"Order {order_id} not found")
        if order.is_terminal:
            return WebhookResult(outcome="unchanged", order_id=order.order_id, status=order.status)

        adapter = self.adapter_for(order.gateway)
        notification = await adapter.poll_status(order)
        if notification is None:
            return await self._nothing_at_gateway(db, order)
        if notification.order_id is None:
            notification = replace(notification, order_id=order.order_id)

        payload = {
            "source": "reconcile",
            "raw_status": notification.raw_status,
            "outcome": notification.outcome.value,
            "gateway_transaction_id": notification.gateway_transaction_id,
            "amount": str(notification.amount) if notification.amount is not None else None,
        }
        if notification.unrecognized:
            logger.warning(f"Unrecognized {order.gateway} status '{notification.raw_status}' while reconciling {order_id}")
        return await self._settle(db, order.gateway, notification, payload, source="reconcile")

    async def _nothing_at_gateway(self, db: AsyncSession, order: SubscriptionOrder) -> WebhookResult:
        """
        A `created` order the gateway never heard of, past the staleness threshold,
        is failed so it stops blocking the user's next checkout.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self.config.stale_after_seconds)
        if order.status == OrderStatus.CREATED.value and order.created_at and order.created_at < cutoff:
            try:
                await self.state_machine.fail_charge(db, order, "Charge was never registered at the gateway")
                await db.commit()
            except TerminalStateConflict as e:
                await db.rollback()
                return WebhookResult(outcome="unchanged", order_id=e.order_id, status=e.current)
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceFailure(f"Could not fail stale order {order.order_id}") from e
            await self._dispatch_side_effects(db, order.order_id)
            return WebhookResult(outcome="applied", order_id=order.order_id, status=order.status)
        return WebhookResult(outcome="no_data", order_id=order.order_id, status=order.status)

    async def reconcile_stale(self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=self.config.stale_after_seconds)
        orders = await order_repository.list_stale_in_flight(db, cutoff, limit=limit)
        # A failed order rolls the session back, which expires every loaded row
        order_ids = [order.order_id for order in orders]
        summary: Dict[str, int] = {"checked": len(order_ids), "failed": 0}
        for order_id in order_ids:
            try:
                result = await self.reconcile(db, order_id)
            except PaymentError as e:
                summary["failed"] += 1
                logger.warning(f"Reconciliation of {order_id} failed: {e.detail}")
                continue
            summary[result.outcome] = summary.get(result.outcome, 0) + 1
        if order_ids:
            logger.info(f"Reconciliation sweep: {summary}")
        return summary

    async def recover_abandoned(self, db: AsyncSession, limit: int = 100) -> Dict[str, int]:
        """Re-drive orders whose ledger reservation was never marked applied."""
        records = await self.ledger.list_abandoned(db, limit=limit)
        targets = [(r.gateway, r.gateway_transaction_id, r.order_id) for r in records]
        summary = {"abandoned": len(targets), "recovered": 0, "failed": 0}
        for gateway, transaction_id, order_id in targets:
            order = None
            if order_id:
                order = await order_repository.get_by_order_id(db, order_id, fresh=True)
            if order is None:
                logger.warning(f"Abandoned reservation {gateway}:{transaction_id} has no order")
                continue
            if order.is_terminal:
                await self.ledger.mark_applied(db, gateway, transaction_id)
                await db.commit()
                summary["recovered"] += 1
                continue
            try:
                await self.reconcile(db, order_id)
                summary["recovered"] += 1
            except PaymentError as e:
                summary["failed"] += 1
                logger.warning(f"Recovery of {order_id} failed: {e.detail}")
        if targets:
            logger.info(f"Abandoned reservation sweep: {summary}")
        return summary

    # --- outbound ---

    async def create_subscription_charge(
        self,
        db: AsyncSession,
        user_id: str,
        plan_id: str,
        billing_cycle: str,
        gateway: str,
        *,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> ChargeOutcome:
        adapter = self.adapter_for(gateway)
        amount = subscription_service.price_for(plan_id, billing_cycle)

        try:
            existing = await order_repository.find_in_flight_for_user(db, user_id)
            if existing:
                if (
                    existing.plan_id == plan_id
                    and existing.billing_cycle == billing_cycle
                    and existing.gateway == gateway
                    and existing.redirect_target
                ):
                    logger.info(f"Reusing in-flight order {existing.order_id} for {user_id}")
                    return self._charge_outcome(existing, adapter)
                raise OrderInFlight(
                    f"Order {existing.order_id} is still {existing.status}; finish or wait for it first"
                )

            order = SubscriptionOrder(
                order_id=generate_order_id(user_id),
                user_id=user_id,
                plan_id=plan_id,
                gateway=gateway,
                amount=amount,
                currency=self.config.currency,
                billing_cycle=billing_cycle,
                status=OrderStatus.CREATED.value,
                customer_email=customer_email,
                customer_name=customer_name,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            await order_repository.add(db, order)
            await db.commit()
            order_id = order.order_id
        except IntegrityError as e:
            # Another checkout for this user committed between the check and the insert
            await db.rollback()
            logger.warning(f"Concurrent checkout for {user_id} rejected: {e.orig}")
            raise OrderInFlight(f"Another checkout for {user_id} is still in progress") from e
        except SQLAlchemyError as e:
            await db.rollback()
            raise PersistenceFailure("Could not create the order") from e

        try:
            charge = await adapter.create_charge(order)
        except (GatewayUnavailable, GatewayRejected) as e:
            logger.error(f"Charge creation for {order_id} at {gateway} failed: {e.detail}")
            try:
                await self.state_machine.fail_charge(db, order, e.detail)
                await db.commit()
            except TerminalStateConflict:
                await db.rollback()
            await self._dispatch_side_effects(db, order_id)
            raise

        try:
            await self.state_machine.mark_pending(
                db, order, gateway_transaction_id=charge.gateway_transaction_id, redirect_target=charge.redirect_target
            )
            await db.commit()
        except TerminalStateConflict:
            # A webhook settled the order before the charge response was processed
            await db.rollback()
            order = await order_repository.get_by_order_id(db, order_id, fresh=True)
        except SQLAlchemyError as e:
            await db.rollback()
            # The charge exists at the gateway; reconciliation will pick the order up
            raise PersistenceFailure(f"Charge {charge.gateway_transaction_id} created but not recorded") from e

        logger.info(f"Created {gateway} charge {charge.gateway_transaction_id} for order {order_id}")
        return self._charge_outcome(order, adapter)

    def _charge_outcome(self, order: SubscriptionOrder, adapter: GatewayAdapter) -> ChargeOutcome:
        return ChargeOutcome(
            order_id=order.order_id,
            gateway=order.gateway,
            status=order.status,
            amount=Decimal(order.amount),
            currency=order.currency,
            redirect_target=order.redirect_target,
            gateway_transaction_id=order.gateway_transaction_id,
            public_key=adapter.credentials.public_key,
        )
