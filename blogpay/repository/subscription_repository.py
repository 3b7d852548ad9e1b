from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.user_subscription_model import UserSubscription, SubscriptionStatus
from blogpay.repository.base_repository import BaseRepository


class UserSubscriptionRepository(BaseRepository[UserSubscription]):
    def __init__(self):
        super().__init__(UserSubscription)

    async def get_by_user(self, db: AsyncSession, user_id: str) -> Optional[UserSubscription]:
        result = await db.execute(select(self.model).filter(self.model.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_or_create_free(self, db: AsyncSession, user_id: str) -> UserSubscription:
        """Users created before billing existed have no row yet; they are on the free tier."""
        subscription = await self.get_by_user(db, user_id)
        if subscription:
            return subscription
        subscription = UserSubscription(
            user_id=user_id,
            plan_id="free",
            status=SubscriptionStatus.FREE.value,
            updated_at=datetime.utcnow(),
        )
        return await self.add(db, subscription)

    async def list_expired_active(self, db: AsyncSession, now: datetime, limit: int = 500) -> List[UserSubscription]:
        result = await db.execute(
            select(self.model)
            .filter(
                self.model.status == SubscriptionStatus.ACTIVE.value,
                self.model.end_date.is_not(None),
                self.model.end_date <= now,
            )
            .limit(limit)
        )
        return result.scalars().all()

    async def list_expiring_unreminded(
        self, db: AsyncSession, now: datetime, until: datetime, limit: int = 500
    ) -> List[UserSubscription]:
        result = await db.execute(
            select(self.model)
            .filter(
                self.model.status == SubscriptionStatus.ACTIVE.value,
                self.model.plan_id != "free",
                self.model.end_date > now,
                self.model.end_date <= until,
                self.model.reminder_sent_at.is_(None),
            )
            .limit(limit)
        )
        return result.scalars().all()


user_subscription_repository = UserSubscriptionRepository()
