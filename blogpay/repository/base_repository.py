from typing import TypeVar, Type, Generic
from sqlalchemy.ext.asyncio import AsyncSession
from blogpay.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Shared data access. Repositories only flush: the caller decides where the
    transaction ends, because a state change and the events it produces must
    commit together.
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def add(self, db: AsyncSession, db_obj: ModelType) -> ModelType:
        db.add(db_obj)
        await db.flush()
        return db_obj
