"""
Single entity-type sync: fetch every page of the named query, transform the
raw records, resolve references, upsert, and record the run.

A sync is at-least-once: chunks written before a failure stay written, and a
crash mid-run leaves no checkpoint. Re-running converges because every write
is an idempotent upsert.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from reportcard.core.clock import utcnow
from reportcard.core.config import settings
from reportcard.integrations.sis.errors import SISError, SkippedRecord, SyncDeadlineExceededError
from reportcard.integrations.sis.query_fetcher import PagedQueryFetcher
from reportcard.integrations.sis.reconciler import IdentifierReconciler
from reportcard.integrations.sis.token_manager import SISTokenManager
from reportcard.integrations.sis.transformer import RecordSkipped, table_fields
from reportcard.repositories.sis_entities import RepositoryRegistry
from reportcard.repositories.sync_run_log import SyncRunLog
from reportcard.services.sync.catalog import EntitySyncDefinition

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Outcome of one entity-type sync, or of a full sync with its ``steps``."""
    entity_type: str
    success: bool
    status: str
    record_count: int = 0
    fetched: int = 0
    pages: int = 0
    skipped: List[SkippedRecord] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    status_code: Optional[int] = None
    run_id: Optional[int] = None
    steps: List["SyncResult"] = field(default_factory=list)

    @classmethod
    def not_run(cls, entity_type: str, reason: str) -> "SyncResult":
        return cls(entity_type=entity_type, success=False, status=STATUS_SKIPPED, error=reason)

    def summary(self) -> Dict[str, Any]:
        """Compact form stored in a full run's details."""
        return {
            'type': self.entity_type,
            'status': self.status,
            'recordCount': self.record_count,
            'skippedCount': len(self.skipped),
            'durationMs': self.duration_ms,
            'runId': self.run_id,
            'error': self.error,
        }


@dataclass
class _SyncOutcome:
    pages: int
    fetched: int
    persisted: int
    skipped: List[SkippedRecord]
    sample_ids: List[Any]
    placeholders: Dict[str, int]


FetcherFactory = Callable[[SISTokenManager], PagedQueryFetcher]


class EntitySyncer:
    """Runs one entity-type sync against a shared session."""

    def __init__(
        self,
        db: AsyncSession,
        token_manager: SISTokenManager,
        fetcher_factory: Optional[FetcherFactory] = None,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.token_manager = token_manager
        self.fetcher_factory = fetcher_factory or PagedQueryFetcher
        self.deadline_seconds = deadline_seconds or settings.SIS_RUN_DEADLINE_SECONDS
        self.clock = clock
        self.run_log = SyncRunLog(db, clock=clock)
        self.registry = RepositoryRegistry(db)
        self.sample_size = settings.SIS_DETAILS_SAMPLE_SIZE

    async def run(self, definition: EntitySyncDefinition) -> SyncResult:
        entity_type = definition.entity_type
        run = await self.run_log.start_run(entity_type)
        await self.run_log.mark_running(run.id)
        started = time.monotonic()
        logger.info(f"Starting {entity_type} sync (run {run.id})")

        error: Optional[SISError] = None
        try:
            outcome = await asyncio.wait_for(self._execute(definition), timeout=self.deadline_seconds)
        except asyncio.TimeoutError:
            error = SyncDeadlineExceededError(entity_type, self.deadline_seconds)
        except SISError as e:
            error = e
        except Exception as e:
            await self.db.rollback()
            await self.run_log.mark_failed(run.id, f"Unexpected error: {e}")
            logger.exception(f"{entity_type} sync crashed (run {run.id})")
            raise

        duration_ms = int((time.monotonic() - started) * 1000)

        if error is not None:
            await self.db.rollback()
            await self.run_log.mark_failed(
                run.id, error.message, {'error': error.to_dict(include_traceback=False)}
            )
            logger.error(f"{entity_type} sync failed after {duration_ms}ms: {error.message}")
            return SyncResult(
                entity_type=entity_type,
                success=False,
                status=STATUS_FAILED,
                duration_ms=duration_ms,
                error=error.message,
                error_type=type(error).__name__,
                status_code=error.status_code,
                run_id=run.id,
            )

        await self.run_log.mark_completed(run.id, outcome.persisted, self._details(outcome))
        logger.info(
            f"{entity_type} sync completed in {duration_ms}ms: {outcome.persisted} saved, "
            f"{len(outcome.skipped)} skipped, {outcome.pages} pages"
        )
        return SyncResult(
            entity_type=entity_type,
            success=True,
            status=STATUS_COMPLETED,
            record_count=outcome.persisted,
            fetched=outcome.fetched,
            pages=outcome.pages,
            skipped=outcome.skipped,
            duration_ms=duration_ms,
            run_id=run.id,
        )

    async def _execute(self, definition: EntitySyncDefinition) -> _SyncOutcome:
        # Fails with ConfigIncompleteError before any HTTP call
        credential = await self.token_manager.get_credential()
        params = definition.params(credential) if definition.params else {}

        raw_records, pages = await self._fetch(definition, params)
        rows, skipped = self.transform_records(definition, raw_records)

        reconciler = IdentifierReconciler(self.registry.list_id_pairs, self.registry.insert_placeholders)
        reconciled = await reconciler.reconcile(rows, definition.references)
        skipped.extend(reconciled.skipped)

        persisted = await self.registry.get(definition.entity_type).bulk_upsert(reconciled.resolved)

        if definition.after_sync is not None:
            await definition.after_sync(self.registry, self.clock().date())

        return _SyncOutcome(
            pages=pages,
            fetched=len(raw_records),
            persisted=persisted,
            skipped=skipped,
            sample_ids=[row.get("ps_id") for row in reconciled.resolved[:self.sample_size]],
            placeholders=reconciled.placeholders_created,
        )

    async def _fetch(self, definition: EntitySyncDefinition, params: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
        records: List[Dict[str, Any]] = []
        pages = 0
        async with self.fetcher_factory(self.token_manager) as fetcher:
            if not definition.paginated:
                return await fetcher.execute_query(definition.query, params), 1
            async for page in fetcher.iter_pages(definition.query, params):
                pages += 1
                records.extend(page)
        return records, max(pages, 1)

    @staticmethod
    def transform_records(
        definition: EntitySyncDefinition,
        raw_records: List[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, Any]], List[SkippedRecord]]:
        rows: List[Dict[str, Any]] = []
        skipped: List[SkippedRecord] = []
        for record in raw_records:
            try:
                rows.append(definition.transform(table_fields(record, definition.table)))
            except RecordSkipped as e:
                skipped.append(SkippedRecord(e.upstream_id, e.reason))
        return rows, skipped

    def _details(self, outcome: _SyncOutcome) -> Dict[str, Any]:
        return {
            'pages': outcome.pages,
            'fetched': outcome.fetched,
            'persisted': outcome.persisted,
            'skippedCount': len(outcome.skipped),
            'skipped': [s.to_dict() for s in outcome.skipped[:self.sample_size]],
            'sampleIds': outcome.sample_ids,
            'placeholders': outcome.placeholders,
        }
