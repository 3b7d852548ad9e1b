"""
Subscription order lifecycle.

    created -> pending -> paid | failed | cancelled

`paid`, `failed` and `cancelled` are terminal. Every status write is a
compare-and-set against the status currently stored, so two deliveries racing
on the same order cannot both win, and nothing ever leaves a terminal state.

These methods only flush. The orchestrator commits the transition together
with the idempotency ledger entry and the queued side effects.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.exceptions import TerminalStateConflict
from blogpay.models.side_effect_model import SideEffectKind
from blogpay.models.subscription_order_model import (
    BillingCycle,
    OrderStatus,
    SubscriptionOrder,
    IN_FLIGHT_STATUSES,
)
from blogpay.models.user_subscription_model import SubscriptionStatus, UserSubscription
from blogpay.repository.order_repository import order_repository
from blogpay.repository.side_effect_repository import side_effect_repository
from blogpay.repository.subscription_repository import user_subscription_repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    previous: str
    current: str
    changed: bool
    events: Tuple[str, ...] = field(default_factory=tuple)


def compute_end_date(start: datetime, billing_cycle: str) -> datetime:
    if billing_cycle == BillingCycle.YEARLY.value:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


class SubscriptionStateMachine:
    async def _transition(
        self,
        db: AsyncSession,
        order: SubscriptionOrder,
        expected: Iterable[OrderStatus],
        new_status: OrderStatus,
        **values,
    ) -> str:
        """CAS the order into `new_status`. Returns the status it moved from."""
        expected = tuple(expected)
        previous = order.status
        if order.status in {s.value for s in expected}:
            moved = await order_repository.compare_and_set_status(
                db, order.order_id, expected, new_status, **values
            )
            if moved:
                for key, value in values.items():
                    setattr(order, key, value)
                order.status = new_status.value
                return previous

        # Lost the race, or the order was already past this point
        current = await order_repository.get_by_order_id(db, order.order_id, fresh=True)
        current_status = current.status if current else order.status
        logger.warning(
            f"Rejected transition of order {order.order_id} from {current_status} to {new_status.value}"
        )
        raise TerminalStateConflict(order.order_id, current_status, new_status.value)

    async def mark_pending(
        self,
        db: AsyncSession,
        order: SubscriptionOrder,
        gateway_transaction_id: Optional[str] = None,
        redirect_target: Optional[str] = None,
    ) -> TransitionResult:
        """created -> pending once the gateway has acknowledged the charge. Pending on pending is a no-op."""
        order = await order_repository.get_by_order_id(db, order.order_id, fresh=True) or order
        values = {}
        if gateway_transaction_id and not order.gateway_transaction_id:
            values["gateway_transaction_id"] = gateway_transaction_id
        if redirect_target:
            values["redirect_target"] = redirect_target

        if order.status == OrderStatus.PENDING.value:
            if values:
                await order_repository.update_fields(db, order.order_id, **values)
                for key, value in values.items():
                    setattr(order, key, value)
            return TransitionResult(order.order_id, order.status, order.status, changed=False)

        previous = await self._transition(db, order, [OrderStatus.CREATED], OrderStatus.PENDING, **values)
        logger.info(f"Order {order.order_id} is pending at {order.gateway}")
        return TransitionResult(order.order_id, previous, order.status, changed=True)

    async def record_webhook(
        self,
        db: AsyncSession,
        order: SubscriptionOrder,
        payload: dict,
        *,
        source: str = "webhook",
        raw_status: Optional[str] = None,
    ) -> None:
        """Append the raw payload to the order's audit log."""
        now = datetime.utcnow()
        await order_repository.append_webhook_log(
            db, order.order_id, order.gateway, payload, source=source, raw_status=raw_status
        )
        if source == "webhook":
            await order_repository.update_fields(db, order.order_id, last_webhook_at=now)
            order.last_webhook_at = now

    async def apply_paid(self, db: AsyncSession, order: SubscriptionOrder, now: Optional[datetime] = None) -> TransitionResult:
        """
        pending (or created) -> paid, then activate the user's subscription for one
        billing cycle and queue the activation notification.
        """
        now = now or datetime.utcnow()
        previous = await self._transition(
            db, order, IN_FLIGHT_STATUSES, OrderStatus.PAID, applied_at=now
        )

        subscription = await user_subscription_repository.get_or_create_free(db, order.user_id)
        if (
            subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.plan_id == order.plan_id
            and subscription.end_date
            and subscription.end_date > now
        ):
            # Renewal: the new cycle starts where the paid one ends
            end_date = compute_end_date(subscription.end_date, order.billing_cycle)
        else:
            end_date = compute_end_date(now, order.billing_cycle)
            subscription.start_date = now
        subscription.plan_id = order.plan_id
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.end_date = end_date
        subscription.reminder_sent_at = None
        subscription.current_order_id = order.order_id
        subscription.updated_at = now
        await db.flush()

        await side_effect_repository.enqueue(
            db,
            SideEffectKind.SUBSCRIPTION_ACTIVATED.value,
            {
                "user_id": order.user_id,
                "plan_id": order.plan_id,
                "billing_cycle": order.billing_cycle,
                "amount": str(order.amount),
                "currency": order.currency,
                "end_date": end_date.isoformat(),
                "email": order.customer_email,
                "name": order.customer_name,
            },
            order_id=order.order_id,
        )
        logger.info(
            f"Order {order.order_id} paid; {order.user_id} active on {order.plan_id} until {end_date:%Y-%m-%d}"
        )
        return TransitionResult(
            order.order_id, previous, order.status, changed=True,
            events=(SideEffectKind.SUBSCRIPTION_ACTIVATED.value,),
        )

    async def apply_failed(
        self,
        db: AsyncSession,
        order: SubscriptionOrder,
        *,
        cancelled: bool = False,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """The user's subscription is left exactly as it was."""
        new_status = OrderStatus.CANCELLED if cancelled else OrderStatus.FAILED
        kind = SideEffectKind.PAYMENT_CANCELLED if cancelled else SideEffectKind.PAYMENT_FAILED
        previous = await self._transition(
            db, order, IN_FLIGHT_STATUSES, new_status, failure_reason=reason
        )
        await side_effect_repository.enqueue(
            db,
            kind.value,
            {
                "user_id": order.user_id,
                "plan_id": order.plan_id,
                "reason": reason,
                "email": order.customer_email,
                "name": order.customer_name,
            },
            order_id=order.order_id,
        )
        logger.info(f"Order {order.order_id} {new_status.value}: {reason}")
        return TransitionResult(order.order_id, previous, order.status, changed=True, events=(kind.value,))

    async def fail_charge(self, db: AsyncSession, order: SubscriptionOrder, reason: str) -> TransitionResult:
        """Charge creation could not be completed; the order must not stay in `created`."""
        return await self.apply_failed(db, order, reason=reason)

    async def expire_subscription(self, db: AsyncSession, subscription: UserSubscription, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.end_date or subscription.end_date > now:
            return False
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.updated_at = now
        await db.flush()
        await side_effect_repository.enqueue(
            db,
            SideEffectKind.SUBSCRIPTION_EXPIRED.value,
            {
                "user_id": subscription.user_id,
                "plan_id": subscription.plan_id,
                "end_date": subscription.end_date.isoformat(),
            },
            order_id=subscription.current_order_id,
        )
        logger.info(f"Subscription of {subscription.user_id} on {subscription.plan_id} expired")
        return True

    async def remind_renewal(self, db: AsyncSession, subscription: UserSubscription, now: Optional[datetime] = None) -> bool:
        """Queue one renewal reminder per billing period."""
        now = now or datetime.utcnow()
        if (
            subscription.status != SubscriptionStatus.ACTIVE.value
            or subscription.reminder_sent_at is not None
            or not subscription.end_date
            or subscription.end_date <= now
        ):
            return False
        subscription.reminder_sent_at = now
        await db.flush()
        await side_effect_repository.enqueue(
            db,
            SideEffectKind.SUBSCRIPTION_EXPIRING.value,
            {
                "user_id": subscription.user_id,
                "plan_id": subscription.plan_id,
                "end_date": subscription.end_date.isoformat(),
                "days_left": max((subscription.end_date - now).days, 1),
            },
            order_id=subscription.current_order_id,
        )
        return True


subscription_state_machine = SubscriptionStateMachine()
