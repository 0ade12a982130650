"""
API endpoints for triggering SIS syncs and inspecting the run log.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from reportcard.core.database import get_db
from reportcard.integrations.sis.errors import SISError
from reportcard.integrations.sis.token_manager import SISTokenManager, get_token_manager
from reportcard.services.sync import SyncOrchestrator, SyncResult
from reportcard.schemas.sync import (
    CleanupResponse,
    SyncConfigStatusResponse,
    SyncConfigUpdateRequest,
    SyncErrorResponse,
    SyncRequest,
    SyncResultResponse,
    SyncRunResponse,
    SyncStatusResponse,
    TokenRefreshResponse
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_sync_token_manager() -> SISTokenManager:
    return get_token_manager()


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    token_manager: SISTokenManager = Depends(get_sync_token_manager)
) -> SyncOrchestrator:
    return SyncOrchestrator(db, token_manager=token_manager)


def error_response(error: SISError, entity_type: Optional[str] = None) -> JSONResponse:
    body = SyncErrorResponse(
        error=error.message,
        entity_type=entity_type,
        run_id=getattr(error, 'run_id', None)
    )
    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(by_alias=True, exclude_none=True)
    )


def result_response(result: SyncResult) -> JSONResponse:
    """Single-type failures use the error's status; full runs always report their steps."""
    if not result.success and not result.steps:
        body = SyncErrorResponse(error=result.error or "Sync failed", entity_type=result.entity_type,
                                 run_id=result.run_id)
        return JSONResponse(
            status_code=result.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(by_alias=True, exclude_none=True)
        )
    body = SyncResultResponse.from_result(result)
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True, exclude_none=True))


@router.get("", response_model=SyncStatusResponse)
async def get_sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Current run status and aggregate run statistics."""
    sync_status = await orchestrator.get_status()
    return SyncStatusResponse(
        is_running=sync_status['is_running'],
        last_sync=SyncRunResponse.model_validate(sync_status['last_sync']) if sync_status['last_sync'] else None,
        stats=sync_status['stats']
    )


@router.post("")
async def trigger_sync(
    request: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Run a full sync (the default), a sync group such as ``contacts``, or one entity type."""
    sync_type = (request or SyncRequest()).type
    try:
        result = await orchestrator.dispatch(sync_type)
    except SISError as e:
        logger.warning(f"Sync {sync_type} rejected: {e.message}")
        return error_response(e, sync_type)
    return result_response(result)


@router.get("/config", response_model=SyncConfigStatusResponse)
async def get_config_status(token_manager: SISTokenManager = Depends(get_sync_token_manager)):
    try:
        return SyncConfigStatusResponse(**await token_manager.token_status())
    except SISError as e:
        return error_response(e)


@router.put("/config", response_model=SyncConfigStatusResponse)
async def update_config(
    request: SyncConfigUpdateRequest,
    token_manager: SISTokenManager = Depends(get_sync_token_manager)
):
    """Store SIS credentials; changing endpoint, client id or secret invalidates the token."""
    try:
        await token_manager.update_credentials(**request.model_dump(exclude_none=True))
        return SyncConfigStatusResponse(**await token_manager.token_status())
    except SISError as e:
        return error_response(e)


@router.post("/token", response_model=TokenRefreshResponse)
async def refresh_token(token_manager: SISTokenManager = Depends(get_sync_token_manager)):
    """Fetch a fresh access token from the SIS."""
    try:
        token = await token_manager.fetch_new_token()
    except SISError as e:
        logger.error(f"Token refresh failed: {e.message}")
        return error_response(e)
    return TokenRefreshResponse(expires_at=token.expires_at)


@router.get("/runs", response_model=List[SyncRunResponse])
async def list_sync_runs(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    run_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    runs = await orchestrator.list_runs(entity_type=entity_type, status=run_status, limit=limit)
    return [SyncRunResponse.model_validate(run) for run in runs]


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_sync_run(run_id: int, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    run = await orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Sync run {run_id} not found")
    return SyncRunResponse.model_validate(run)


@router.delete("/runs", response_model=CleanupResponse)
async def cleanup_sync_runs(
    days_to_keep: Optional[int] = Query(None, alias="daysToKeep", ge=1),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    try:
        deleted = await orchestrator.cleanup_runs(days_to_keep)
    except SISError as e:
        return error_response(e)
    return CleanupResponse(deleted=deleted)


@router.post("/{entity_type}")
async def sync_entity_type(entity_type: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run one entity-type sync (or ``full``) synchronously."""
    try:
        result = await orchestrator.dispatch(entity_type)
    except SISError as e:
        return error_response(e, entity_type)
    return result_response(result)
