from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.side_effect_model import SideEffectJob, JobStatus
from blogpay.repository.base_repository import BaseRepository


class SideEffectRepository(BaseRepository[SideEffectJob]):
    def __init__(self):
        super().__init__(SideEffectJob)

    async def enqueue(self, db: AsyncSession, kind: str, payload: dict, order_id: Optional[str] = None) -> SideEffectJob:
        now = datetime.utcnow()
        job = SideEffectJob(
            kind=kind,
            order_id=order_id,
            payload=payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        return await self.add(db, job)

    def _claimable(self, now: datetime):
        # A running job whose lease ran out belongs to a worker that died mid-delivery
        return or_(
            self.model.status == JobStatus.PENDING.value,
            and_(self.model.status == JobStatus.RUNNING.value, self.model.next_attempt_at <= now),
        )

    async def list_due(self, db: AsyncSession, now: datetime, limit: int = 50) -> List[SideEffectJob]:
        result = await db.execute(
            select(self.model)
            .filter(self._claimable(now), self.model.next_attempt_at <= now)
            .order_by(self.model.next_attempt_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def claim(self, db: AsyncSession, job_id: int, now: datetime, lease_until: datetime) -> bool:
        """
        Move one job to `running` and count the attempt. Only one caller can win;
        the loser sees a rowcount of 0 and must not deliver.
        """
        result = await db.execute(
            update(self.model)
            .where(self.model.id == job_id, self._claimable(now))
            .values(
                status=JobStatus.RUNNING.value,
                attempts=self.model.attempts + 1,
                next_attempt_at=lease_until,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_for_order(self, db: AsyncSession, order_id: str) -> List[SideEffectJob]:
        result = await db.execute(
            select(self.model).filter(self.model.order_id == order_id).order_by(self.model.id.asc())
        )
        return result.scalars().all()


side_effect_repository = SideEffectRepository()
