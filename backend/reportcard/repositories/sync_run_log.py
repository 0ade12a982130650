"""
Auditable sync run log.

Runs move ``pending -> running -> completed | failed``. Every transition is a
conditional UPDATE on the current status, so a terminal run can never be
rewritten and two writers cannot both win the same transition. Full syncs
additionally hold a named row in ``sync_locks``, taken with a conditional
UPDATE and an affected-row check.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reportcard.core.clock import utcnow
from reportcard.integrations.sis.errors import InvalidRunTransitionError, PersistenceError
from reportcard.models.sync_run import SyncLock, SyncRun, SyncRunStatus
from reportcard.repositories.base import dialect_insert

logger = logging.getLogger(__name__)

PENDING = SyncRunStatus.PENDING.value
RUNNING = SyncRunStatus.RUNNING.value
COMPLETED = SyncRunStatus.COMPLETED.value
FAILED = SyncRunStatus.FAILED.value
TERMINAL = (COMPLETED, FAILED)


class SyncRunLog:
    """Storage for sync runs and the full-sync lock."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def start_run(self, entity_type: str) -> SyncRun:
        run = SyncRun(entity_type=entity_type, status=PENDING, record_count=0)
        try:
            self.db.add(run)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to create sync run: {e}", original_exception=e)
        logger.debug(f"Created sync run {run.id} for {entity_type}")
        return run

    async def mark_running(self, run_id: int) -> SyncRun:
        return await self._transition(run_id, RUNNING, (PENDING,), {'started_at': self.clock()})

    async def mark_completed(self, run_id: int, record_count: int, details: Optional[Dict[str, Any]] = None) -> SyncRun:
        return await self._transition(run_id, COMPLETED, (RUNNING,), {
            'record_count': record_count,
            'details': details,
            'completed_at': self.clock(),
        })

    async def mark_failed(self, run_id: int, message: str, details: Optional[Dict[str, Any]] = None) -> SyncRun:
        values = {'error_message': message, 'completed_at': self.clock()}
        if details is not None:
            values['details'] = details
        return await self._transition(run_id, FAILED, (PENDING, RUNNING), values)

    async def _transition(
        self,
        run_id: int,
        target: str,
        allowed_from: Iterable[str],
        values: Dict[str, Any]
    ) -> SyncRun:
        stmt = (
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status.in_(tuple(allowed_from)))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                await self.db.rollback()
                current = await self.get(run_id)
                raise InvalidRunTransitionError(run_id, target, current.status if current else None)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to update sync run {run_id}: {e}", original_exception=e)

        return await self.get(run_id)

    async def get(self, run_id: int) -> Optional[SyncRun]:
        stmt = select(SyncRun).where(SyncRun.id == run_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, entity_type: Optional[str] = None) -> Optional[SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.id.desc()).limit(1)
        if entity_type:
            stmt = stmt.where(SyncRun.entity_type == entity_type)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_runs(
        self,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.id.desc()).limit(limit)
        if entity_type:
            stmt = stmt.where(SyncRun.entity_type == entity_type)
        if status:
            stmt = stmt.where(SyncRun.status == status)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def is_any_run_in_progress(self, entity_type: Optional[str] = None) -> bool:
        """Advisory check; the full-sync lock is what actually excludes overlapping runs."""
        stmt = select(func.count()).select_from(SyncRun).where(SyncRun.status == RUNNING)
        if entity_type:
            stmt = stmt.where(SyncRun.entity_type == entity_type)
        return (await self.db.execute(stmt)).scalar_one() > 0

    async def get_stats(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(SyncRun.status, func.count()).group_by(SyncRun.status)
        )
        counts = {status: count for status, count in result.all()}
        return {
            'total': sum(counts.values()),
            'completed': counts.get(COMPLETED, 0),
            'failed': counts.get(FAILED, 0),
            'running': counts.get(RUNNING, 0),
            'pending': counts.get(PENDING, 0),
        }

    async def cleanup(self, days_to_keep: int) -> int:
        """Delete terminal runs that finished more than ``days_to_keep`` days ago."""
        cutoff = self.clock() - timedelta(days=days_to_keep)
        stmt = (
            delete(SyncRun)
            .where(SyncRun.status.in_(TERMINAL), SyncRun.completed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to clean up sync runs: {e}", original_exception=e)

        logger.info(f"Deleted {result.rowcount} sync runs older than {days_to_keep} days")
        return result.rowcount

    async def acquire_lock(self, name: str, run_id: int, stale_after_seconds: int) -> bool:
        """Take the named lock for ``run_id`` unless another run holds a fresh claim."""
        now = self.clock()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        try:
            insert = dialect_insert(self.db.get_bind().dialect.name)
            await self.db.execute(
                insert(SyncLock).values(name=name).on_conflict_do_nothing(index_elements=["name"])
            )
            previous = (await self.db.execute(
                select(SyncLock.holder_run_id).where(SyncLock.name == name)
            )).scalar_one_or_none()

            result = await self.db.execute(
                update(SyncLock)
                .where(
                    SyncLock.name == name,
                    or_(SyncLock.holder_run_id.is_(None), SyncLock.acquired_at < cutoff)
                )
                .values(holder_run_id=run_id, acquired_at=now)
                .execution_options(synchronize_session=False)
            )
            acquired = result.rowcount == 1
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to acquire {name} lock: {e}", original_exception=e)

        if not acquired:
            logger.warning(f"Run {run_id} could not take the {name} lock")
            return False

        if previous is not None and previous != run_id:
            logger.warning(f"Run {run_id} took over stale {name} lock from run {previous}")
            stale_run = await self.get(previous)
            if stale_run is not None and stale_run.status in (PENDING, RUNNING):
                await self.mark_failed(previous, f"Abandoned: {name} lock taken over by run {run_id}")
        return True

    async def refresh_lock(self, name: str, run_id: int) -> bool:
        """Move ``acquired_at`` forward while ``run_id`` still holds the lock."""
        try:
            result = await self.db.execute(
                update(SyncLock)
                .where(SyncLock.name == name, SyncLock.holder_run_id == run_id)
                .values(acquired_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to refresh {name} lock: {e}", original_exception=e)
        return result.rowcount == 1

    async def release_lock(self, name: str, run_id: int) -> bool:
        try:
            result = await self.db.execute(
                update(SyncLock)
                .where(SyncLock.name == name, SyncLock.holder_run_id == run_id)
                .values(holder_run_id=None, acquired_at=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to release {name} lock: {e}", original_exception=e)
        return result.rowcount == 1

    async def lock_holder(self, name: str) -> Optional[int]:
        result = await self.db.execute(select(SyncLock.holder_run_id).where(SyncLock.name == name))
        return result.scalar_one_or_none()
