"""
Sync orchestration: single entity-type syncs, named sync groups, the full
dependency-ordered sync, and run status reporting.

Failure policy for full syncs: a failed step does not stop the run. A step
whose declared dependency failed (or was itself skipped) is skipped. With
``SIS_SYNC_HALT_ON_FAILURE`` every step after the first failure is skipped
instead. Data written by completed steps is never rolled back.

The full sync refreshes its lock after every step and stops as soon as the
lock turns out to belong to another run.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.ext.asyncio import AsyncSession

from reportcard.core.clock import utcnow
from reportcard.core.config import settings
from reportcard.integrations.sis.errors import (
    ConfigIncompleteError, SyncAlreadyRunningError, SyncLockLostError
)
from reportcard.integrations.sis.token_manager import SISTokenManager, get_token_manager
from reportcard.models.sync_run import FULL_SYNC, SyncRun
from reportcard.services.sync.catalog import FULL_SYNC_ORDER, SYNC_ALIASES, SYNC_GROUPS, get_definition
from reportcard.services.sync.entity_sync import (
    EntitySyncer, FetcherFactory, SyncResult, STATUS_COMPLETED, STATUS_FAILED
)

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Entry point used by the HTTP layer to run and inspect syncs."""

    def __init__(
        self,
        db: AsyncSession,
        token_manager: Optional[SISTokenManager] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
        halt_on_failure: Optional[bool] = None,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.token_manager = token_manager or get_token_manager()
        self.halt_on_failure = settings.SIS_SYNC_HALT_ON_FAILURE if halt_on_failure is None else halt_on_failure
        self.order = FULL_SYNC_ORDER
        self.syncer = EntitySyncer(
            db,
            self.token_manager,
            fetcher_factory=fetcher_factory,
            deadline_seconds=deadline_seconds,
            clock=clock
        )
        self.run_log = self.syncer.run_log

    async def dispatch(self, sync_type: str) -> SyncResult:
        sync_type = SYNC_ALIASES.get(sync_type, sync_type)
        if sync_type == FULL_SYNC:
            return await self.sync_all()
        if sync_type in SYNC_GROUPS:
            return await self.sync_group(sync_type)
        return await self.sync_entity(sync_type)

    async def sync_entity(self, entity_type: str) -> SyncResult:
        return await self.syncer.run(get_definition(entity_type))

    async def sync_all(self) -> SyncResult:
        """Run every entity type in dependency order under the full-sync lock."""
        run = await self.run_log.start_run(FULL_SYNC)

        acquired = await self.run_log.acquire_lock(FULL_SYNC, run.id, settings.SIS_LOCK_STALE_SECONDS)
        if not acquired:
            holder = await self.run_log.lock_holder(FULL_SYNC)
            await self.run_log.mark_failed(run.id, "A full sync is already running")
            raise SyncAlreadyRunningError(run_id=holder)

        try:
            return await self._run_chain(run, self.order, lock_name=FULL_SYNC)
        finally:
            await self.run_log.release_lock(FULL_SYNC, run.id)

    async def sync_group(self, group: str) -> SyncResult:
        """Run a named subset of entity types, in full-sync order, as one run."""
        run = await self.run_log.start_run(group)
        return await self._run_chain(run, SYNC_GROUPS[group])

    async def _run_chain(self, run: SyncRun, order: Sequence[str], lock_name: Optional[str] = None) -> SyncResult:
        started = time.monotonic()
        try:
            await self.run_log.mark_running(run.id)
            logger.info(f"Starting {run.entity_type} sync (run {run.id})")

            try:
                await self.token_manager.get_credential()
            except ConfigIncompleteError as e:
                await self.run_log.mark_failed(run.id, e.message)
                raise

            steps = await self._run_steps(order, run.id, lock_name)
            return await self._finish(run, steps, int((time.monotonic() - started) * 1000))

        except Exception as e:
            current = await self.run_log.get(run.id)
            if current is not None and current.status not in (STATUS_COMPLETED, STATUS_FAILED):
                await self.run_log.mark_failed(run.id, f"{run.entity_type} sync aborted: {e}")
            raise

    async def _run_steps(
        self,
        order: Sequence[str],
        run_id: Optional[int] = None,
        lock_name: Optional[str] = None
    ) -> List[SyncResult]:
        steps: List[SyncResult] = []
        not_completed: Set[str] = set()
        halted_by: Optional[str] = None

        for entity_type in order:
            definition = get_definition(entity_type)
            blocked = [dep for dep in definition.depends_on if dep in not_completed]

            if halted_by is not None:
                result = SyncResult.not_run(entity_type, f"not run: {halted_by} failed")
            elif blocked:
                result = SyncResult.not_run(entity_type, f"not run: dependency {', '.join(blocked)} did not complete")
            else:
                result = await self.syncer.run(definition)

            steps.append(result)
            if not result.success:
                not_completed.add(entity_type)
                if self.halt_on_failure and halted_by is None and result.status == STATUS_FAILED:
                    halted_by = entity_type
                    logger.warning(f"Halting sync after {entity_type} failed")

            # Heartbeat: a step is bounded by the run deadline, which is shorter than the stale window
            if lock_name is not None and not await self.run_log.refresh_lock(lock_name, run_id):
                holder = await self.run_log.lock_holder(lock_name)
                logger.error(f"Run {run_id} lost the {lock_name} lock to run {holder} after {entity_type}")
                raise SyncLockLostError(run_id, holder)

        return steps

    async def _finish(self, run: SyncRun, steps: List[SyncResult], duration_ms: int) -> SyncResult:
        errors = [f"{s.entity_type}: {s.error}" for s in steps if s.status == STATUS_FAILED]
        record_count = sum(s.record_count for s in steps if s.success)
        details = {'steps': [s.summary() for s in steps]}

        if errors:
            message = "; ".join(errors)
            await self.run_log.mark_failed(run.id, message, details)
            logger.error(f"{run.entity_type} sync finished with failures in {duration_ms}ms: {message}")
        else:
            await self.run_log.mark_completed(run.id, record_count, details)
            logger.info(f"{run.entity_type} sync completed in {duration_ms}ms: {record_count} records")

        return SyncResult(
            entity_type=run.entity_type,
            success=not errors,
            status=STATUS_FAILED if errors else STATUS_COMPLETED,
            record_count=record_count,
            fetched=sum(s.fetched for s in steps),
            pages=sum(s.pages for s in steps),
            skipped=[skip for s in steps for skip in s.skipped],
            duration_ms=duration_ms,
            error="; ".join(errors) if errors else None,
            run_id=run.id,
            steps=steps,
        )

    async def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': await self.run_log.is_any_run_in_progress(),
            'last_sync': await self.run_log.get_latest(),
            'stats': await self.run_log.get_stats(),
        }

    async def list_runs(self, entity_type: Optional[str] = None, status: Optional[str] = None, limit: int = 50):
        return await self.run_log.list_runs(entity_type=entity_type, status=status, limit=limit)

    async def get_run(self, run_id: int) -> Optional[SyncRun]:
        return await self.run_log.get(run_id)

    async def cleanup_runs(self, days_to_keep: Optional[int] = None) -> int:
        return await self.run_log.cleanup(days_to_keep or settings.SIS_RUN_RETENTION_DAYS)
