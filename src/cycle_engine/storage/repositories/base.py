"""
Base repository class for async PostgreSQL access.
"""
from __future__ import annotations

from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from cycle_engine.storage.database import Database

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Base class for async repositories.

    Subclasses define ``table_name`` and ``model_class``. Methods that take
    a ``conn`` argument run on that connection (usually inside a caller's
    transaction) and fall back to the pooled database otherwise.
    """

    table_name: str
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _executor(self, conn: Optional[Any]):
        return conn if conn is not None else self.db

    def _record_to_model(self, record) -> Optional[T]:
        if record is None:
            return None
        return self.model_class(**dict(record))

    def _records_to_models(self, records) -> list[T]:
        return [self._record_to_model(r) for r in records]

    async def get_by_id(self, id_value, id_column: str = "id") -> Optional[T]:
        query = f"SELECT * FROM {self.table_name} WHERE {id_column} = $1"
        record = await self.db.fetchrow(query, id_value)
        return self._record_to_model(record)

    async def count(self) -> int:
        return await self.db.fetchval(f"SELECT COUNT(*) FROM {self.table_name}")
