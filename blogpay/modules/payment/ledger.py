import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.idempotency_model import IdempotencyRecord, LedgerState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    first_reservation: bool
    already_applied: bool = False
    # A stale reservation left by a crashed delivery was taken over
    reclaimed: bool = False


class IdempotencyLedger:
    """
    Durable record of which (gateway, gateway transaction id) pairs have been
    applied. `reserve` is an atomic compare-and-set in the database, so it holds
    across any number of service instances.
    """

    def __init__(self, reservation_timeout_seconds: int = 300):
        self.reservation_timeout = timedelta(seconds=reservation_timeout_seconds)

    async def _insert_if_absent(self, db: AsyncSession, values: dict) -> bool:
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            stmt = pg_insert(IdempotencyRecord).values(**values).on_conflict_do_nothing(
                index_elements=["gateway", "gateway_transaction_id"]
            )
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert

            stmt = sqlite_insert(IdempotencyRecord).values(**values).on_conflict_do_nothing(
                index_elements=["gateway", "gateway_transaction_id"]
            )
        else:
            try:
                async with db.begin_nested():
                    await db.execute(insert(IdempotencyRecord).values(**values))
                return True
            except IntegrityError:
                return False

        result = await db.execute(stmt)
        return result.rowcount == 1

    async def reserve(self, db: AsyncSession, gateway: str, gateway_transaction_id: str, order_id: str = None) -> Reservation:
        """
        Claim the pair for this delivery and commit the claim immediately.

        A reservation still unapplied after the timeout is treated as abandoned
        and handed to the next caller.
        """
        now = datetime.utcnow()
        inserted = await self._insert_if_absent(
            db,
            {
                "gateway": gateway,
                "gateway_transaction_id": gateway_transaction_id,
                "order_id": order_id,
                "state": LedgerState.RESERVED.value,
                "attempts": 1,
                "reserved_at": now,
            },
        )
        if inserted:
            await db.commit()
            return Reservation(first_reservation=True)

        reclaim = await db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.gateway == gateway,
                IdempotencyRecord.gateway_transaction_id == gateway_transaction_id,
                IdempotencyRecord.state == LedgerState.RESERVED.value,
                IdempotencyRecord.reserved_at < now - self.reservation_timeout,
            )
            .values(reserved_at=now, attempts=IdempotencyRecord.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if reclaim.rowcount == 1:
            logger.warning(f"Reclaimed abandoned reservation {gateway}:{gateway_transaction_id}")
            return Reservation(first_reservation=True, reclaimed=True)

        record = await self.get(db, gateway, gateway_transaction_id)
        return Reservation(
            first_reservation=False,
            already_applied=record is not None and record.state == LedgerState.APPLIED.value,
        )

    async def mark_applied(self, db: AsyncSession, gateway: str, gateway_transaction_id: str) -> None:
        """Runs inside the caller's transition transaction; the caller commits."""
        await db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.gateway == gateway,
                IdempotencyRecord.gateway_transaction_id == gateway_transaction_id,
            )
            .values(state=LedgerState.APPLIED.value, applied_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def get(self, db: AsyncSession, gateway: str, gateway_transaction_id: str):
        result = await db.execute(
            select(IdempotencyRecord)
            .filter(
                IdempotencyRecord.gateway == gateway,
                IdempotencyRecord.gateway_transaction_id == gateway_transaction_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_abandoned(self, db: AsyncSession, limit: int = 100) -> List[IdempotencyRecord]:
        cutoff = datetime.utcnow() - self.reservation_timeout
        result = await db.execute(
            select(IdempotencyRecord)
            .filter(
                IdempotencyRecord.state == LedgerState.RESERVED.value,
                IdempotencyRecord.reserved_at < cutoff,
            )
            .order_by(IdempotencyRecord.reserved_at.asc())
            .limit(limit)
        )
        return result.scalars().all()
