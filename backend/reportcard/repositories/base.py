"""
Idempotent persistence for synced entities keyed by upstream identifier.

Writes go through a dialect-specific ``INSERT ... ON CONFLICT (ps_id) DO
UPDATE`` whose ``SET`` clause names only upstream-owned columns, so portal
fields survive every re-sync. A conflicting row is rewritten, and its
``updated_at`` stamped, only when one of those columns changed. Rows are
written in bounded chunks, one transaction per chunk; chunks committed before
a failure stay committed.
"""

import logging
from typing import Any, Dict, Generic, Hashable, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reportcard.core.config import settings
from reportcard.integrations.sis.errors import PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

UPSERT_KEY = "ps_id"
SYSTEM_FIELDS = ("id", "created_at", "updated_at")


def dialect_insert(dialect_name: str):
    """Return the ``insert`` construct that supports ``on_conflict_do_update``."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"Bulk upsert is not supported on {dialect_name}")
    return insert


class UpsertRepository(Generic[ModelT]):
    """Upsert and lookup operations for one synced table."""

    model: Type[ModelT]

    def __init__(self, db: AsyncSession, model: Optional[Type[ModelT]] = None, chunk_size: Optional[int] = None):
        self.db = db
        if model is not None:
            self.model = model
        self.chunk_size = chunk_size or settings.SIS_UPSERT_CHUNK_SIZE

    @property
    def upstream_fields(self) -> Tuple[str, ...]:
        """Columns the sync may write: everything except system and portal-owned columns."""
        excluded = set(SYSTEM_FIELDS) | set(getattr(self.model, "LOCAL_FIELDS", ()))
        return tuple(c.name for c in self.model.__table__.columns if c.name not in excluded)

    def _key_column(self, key: str):
        column = self.model.__table__.columns.get(key)
        if column is None:
            raise ValueError(f"{self.model.__tablename__} has no column {key}")
        return column

    async def find_by_upstream_id(self, upstream_id: int) -> Optional[ModelT]:
        return await self.find_by(UPSERT_KEY, upstream_id)

    async def find_by(self, key: str, value: Any) -> Optional[ModelT]:
        column = self._key_column(key)
        try:
            result = await self.db.execute(select(self.model).where(column == value).limit(1))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load {self.model.__tablename__}: {e}", original_exception=e)

    async def list_id_pairs(self, key: str = UPSERT_KEY) -> List[Tuple[int, Hashable]]:
        """All ``(local id, upstream value)`` pairs, for reference resolution."""
        column = self._key_column(key)
        try:
            result = await self.db.execute(select(self.model.__table__.c.id, column))
            return [(row[0], row[1]) for row in result.all()]
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to load {self.model.__tablename__} identifiers: {e}", original_exception=e
            )

    async def count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(self.model))
        return result.scalar_one()

    async def upsert(self, row: Dict[str, Any]) -> ModelT:
        persisted = await self.upsert_many([row])
        return persisted[0]

    async def upsert_many(self, rows: Sequence[Dict[str, Any]]) -> List[ModelT]:
        """Insert new rows and update upstream columns of existing ones, chunk by chunk.

        Rows repeating an upstream id within the same call collapse to the
        last occurrence.
        """
        persisted: List[ModelT] = []
        for chunk in self._chunks(self._prepare(rows)):
            await self._write_chunk(chunk, update=True)
            persisted.extend(await self._reload([row[UPSERT_KEY] for row in chunk]))
        return persisted

    async def bulk_upsert(self, rows: Sequence[Dict[str, Any]]) -> int:
        """Same write as ``upsert_many`` without reloading entities; returns the row count."""
        prepared = self._prepare(rows)
        for chunk in self._chunks(prepared):
            await self._write_chunk(chunk, update=True)
        return len(prepared)

    async def insert_missing(self, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert rows whose upstream id is unknown; existing rows are left untouched."""
        prepared = self._prepare(rows)
        for chunk in self._chunks(prepared):
            await self._write_chunk(chunk, update=False)
        return len(prepared)

    def _chunks(self, rows: List[Dict[str, Any]]):
        for start in range(0, len(rows), self.chunk_size):
            yield rows[start:start + self.chunk_size]

    def _prepare(self, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        allowed = self.upstream_fields
        by_key: Dict[Any, Dict[str, Any]] = {}
        for row in rows:
            if row.get(UPSERT_KEY) is None:
                raise PersistenceError(f"{self.model.__tablename__} row without {UPSERT_KEY}")
            by_key[row[UPSERT_KEY]] = {name: row[name] for name in allowed if name in row}

        # Multi-row VALUES needs the same keys on every row
        keys = [name for name in allowed if any(name in row for row in by_key.values())]
        return [{name: row.get(name) for name in keys} for row in by_key.values()]

    async def _write_chunk(self, chunk: List[Dict[str, Any]], update: bool) -> None:
        if not chunk:
            return

        insert = dialect_insert(self.db.get_bind().dialect.name)
        stmt = insert(self.model).values(chunk)
        if update:
            updatable = [name for name in chunk[0] if name != UPSERT_KEY]
            if updatable:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[UPSERT_KEY],
                    set_=self._update_set(stmt, updatable),
                    where=self._changed(stmt, updatable)
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[UPSERT_KEY])
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[UPSERT_KEY])

        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Upsert into {self.model.__tablename__} failed for {len(chunk)} rows: {e}")
            raise PersistenceError(
                f"Failed to write {self.model.__tablename__}: {e}",
                details={'chunk_size': len(chunk), 'first_upstream_id': chunk[0].get(UPSERT_KEY)},
                original_exception=e
            )

    def _update_set(self, stmt, updatable: List[str]) -> Dict[str, Any]:
        set_ = {name: stmt.excluded[name] for name in updatable}
        if "updated_at" in self.model.__table__.c:
            set_["updated_at"] = func.now()
        return set_

    def _changed(self, stmt, updatable: List[str]):
        """Conflict rows are only rewritten when an upstream column actually differs."""
        columns = self.model.__table__.c
        return or_(*(columns[name].is_distinct_from(stmt.excluded[name]) for name in updatable))

    async def _reload(self, upstream_ids: List[Any]) -> List[ModelT]:
        stmt = (
            select(self.model)
            .where(self._key_column(UPSERT_KEY).in_(upstream_ids))
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to reload {self.model.__tablename__}: {e}", original_exception=e)
        by_key = {getattr(entity, UPSERT_KEY): entity for entity in result.scalars().all()}
        return [by_key[key] for key in upstream_ids if key in by_key]
