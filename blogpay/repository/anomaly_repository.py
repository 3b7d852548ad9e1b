import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.anomaly_model import PaymentAnomaly
from blogpay.repository.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class AnomalyRepository(BaseRepository[PaymentAnomaly]):
    def __init__(self):
        super().__init__(PaymentAnomaly)

    async def flag(
        self,
        db: AsyncSession,
        kind: str,
        detail: str,
        *,
        gateway: Optional[str] = None,
        order_id: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> PaymentAnomaly:
        logger.warning(f"Payment anomaly [{kind}] gateway={gateway} order={order_id}: {detail}")
        return await self.add(
            db,
            PaymentAnomaly(
                kind=kind,
                detail=detail,
                gateway=gateway,
                order_id=order_id,
                gateway_transaction_id=gateway_transaction_id,
                payload=payload,
            ),
        )

    async def list_unresolved(self, db: AsyncSession, kind: Optional[str] = None) -> List[PaymentAnomaly]:
        query = select(self.model).filter(self.model.resolved.is_(False))
        if kind:
            query = query.filter(self.model.kind == kind)
        result = await db.execute(query.order_by(self.model.created_at.desc()))
        return result.scalars().all()


anomaly_repository = AnomalyRepository()
