from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.exceptions import MalformedPayload, PlanNotFound
from blogpay.models.subscription_order_model import BillingCycle
from blogpay.models.user_subscription_model import SubscriptionStatus, UserSubscription
from blogpay.modules.payment.state_machine import subscription_state_machine
from blogpay.repository.subscription_repository import user_subscription_repository


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    monthly_price: Decimal
    yearly_price: Decimal
    features: Tuple[str, ...] = field(default_factory=tuple)
    is_popular: bool = False

    @property
    def is_free(self) -> bool:
        return self.monthly_price == 0 and self.yearly_price == 0

    def price_for(self, billing_cycle: str) -> Decimal:
        if billing_cycle == BillingCycle.YEARLY.value:
            return self.yearly_price
        return self.monthly_price


PLANS: Dict[str, Plan] = {
    "free": Plan(
        id="free",
        name="Free",
        description="Menulis dan membaca artikel publik",
        monthly_price=Decimal("0"),
        yearly_price=Decimal("0"),
        features=("basic_articles", "comments"),
    ),
    "premium": Plan(
        id="premium",
        name="Premium",
        description="Artikel premium, analitik dan penjadwalan sosial media",
        monthly_price=Decimal("99000"),
        yearly_price=Decimal("990000"),
        features=("basic_articles", "comments", "premium_content", "analytics", "social_schedule"),
        is_popular=True,
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        description="Semua fitur Premium ditambah asisten AI dan custom domain",
        monthly_price=Decimal("199000"),
        yearly_price=Decimal("1990000"),
        features=(
            "basic_articles", "comments", "premium_content", "analytics",
            "social_schedule", "ai_assistant", "custom_domain",
        ),
    ),
}


class SubscriptionService:
    def list_plans(self) -> List[Plan]:
        return list(PLANS.values())

    def get_plan(self, plan_id: str) -> Plan:
        plan = PLANS.get(plan_id)
        if not plan:
            raise PlanNotFound(f"Plan '{plan_id}' not found")
        return plan

    def price_for(self, plan_id: str, billing_cycle: str) -> Decimal:
        """Price of a paid plan; the free tier cannot be charged."""
        if billing_cycle not in {c.value for c in BillingCycle}:
            raise MalformedPayload(f"Unknown billing cycle '{billing_cycle}'")
        plan = self.get_plan(plan_id)
        if plan.is_free:
            raise PlanNotFound(f"Plan '{plan_id}' is free and cannot be purchased")
        return plan.price_for(billing_cycle)

    async def get_current(self, db: AsyncSession, user_id: str) -> UserSubscription:
        subscription = await user_subscription_repository.get_or_create_free(db, user_id)
        await db.commit()
        return subscription

    async def expire_due(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Mark active subscriptions whose end date passed as expired."""
        now = now or datetime.utcnow()
        expired = 0
        for subscription in await user_subscription_repository.list_expired_active(db, now):
            if await subscription_state_machine.expire_subscription(db, subscription, now=now):
                expired += 1
        await db.commit()
        return expired

    async def remind_expiring(self, db: AsyncSession, within_days: int = 7, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        until = now + timedelta(days=within_days)
        reminded = 0
        for subscription in await user_subscription_repository.list_expiring_unreminded(db, now, until):
            if await subscription_state_machine.remind_renewal(db, subscription, now=now):
                reminded += 1
        await db.commit()
        return reminded

    def days_remaining(self, subscription: UserSubscription) -> Optional[int]:
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.end_date:
            return None
        return max((subscription.end_date - datetime.utcnow()).days, 0)


subscription_service = SubscriptionService()
