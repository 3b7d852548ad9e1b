from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.subscription_order_model import (
    SubscriptionOrder,
    WebhookLogEntry,
    OrderStatus,
    IN_FLIGHT_STATUSES,
)
from blogpay.repository.base_repository import BaseRepository


class OrderRepository(BaseRepository[SubscriptionOrder]):
    def __init__(self):
        super().__init__(SubscriptionOrder)

    async def get_by_order_id(self, db: AsyncSession, order_id: str, *, fresh: bool = False) -> Optional[SubscriptionOrder]:
        stmt = select(self.model).filter(self.model.order_id == order_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_gateway_transaction(
        self, db: AsyncSession, gateway: str, gateway_transaction_id: str
    ) -> Optional[SubscriptionOrder]:
        result = await db.execute(
            select(self.model).filter(
                self.model.gateway == gateway,
                self.model.gateway_transaction_id == gateway_transaction_id,
            )
        )
        return result.scalars().first()

    async def find_in_flight_for_user(self, db: AsyncSession, user_id: str) -> Optional[SubscriptionOrder]:
        result = await db.execute(
            select(self.model)
            .filter(
                self.model.user_id == user_id,
                self.model.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            )
            .order_by(self.model.created_at.desc())
        )
        return result.scalars().first()

    async def list_stale_in_flight(self, db: AsyncSession, older_than: datetime, limit: int = 100) -> List[SubscriptionOrder]:
        """Orders still waiting on the gateway whose last activity is older than the cutoff."""
        result = await db.execute(
            select(self.model)
            .filter(
                self.model.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
                self.model.updated_at < older_than,
            )
            .order_by(self.model.updated_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def compare_and_set_status(
        self,
        db: AsyncSession,
        order_id: str,
        expected: Iterable[OrderStatus],
        new_status: OrderStatus,
        **values,
    ) -> bool:
        """
        Atomic status change guarded by the current status in storage.
        Returns False when another writer moved the order first.
        """
        stmt = (
            update(self.model)
            .where(
                self.model.order_id == order_id,
                self.model.status.in_([s.value for s in expected]),
            )
            .values(status=new_status.value, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def update_fields(self, db: AsyncSession, order_id: str, **values) -> None:
        await db.execute(
            update(self.model)
            .where(self.model.order_id == order_id)
            .values(updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

    async def append_webhook_log(
        self,
        db: AsyncSession,
        order_id: str,
        gateway: str,
        payload: dict,
        *,
        source: str = "webhook",
        raw_status: Optional[str] = None,
    ) -> WebhookLogEntry:
        entry = WebhookLogEntry(
            order_id=order_id,
            gateway=gateway,
            source=source,
            raw_status=raw_status,
            payload=payload,
            received_at=datetime.utcnow(),
        )
        db.add(entry)
        await db.flush()
        return entry

    async def list_webhook_log(self, db: AsyncSession, order_id: str) -> List[WebhookLogEntry]:
        result = await db.execute(
            select(WebhookLogEntry)
            .filter(WebhookLogEntry.order_id == order_id)
            .order_by(WebhookLogEntry.id.asc())
        )
        return result.scalars().all()


order_repository = OrderRepository()
