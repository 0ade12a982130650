"""
Pydantic schemas for the sync trigger and status endpoints.

Responses are serialized with camelCase keys for the portal UI.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SyncRequest(CamelModel):
    """Body of ``POST /sync``: ``full`` (the default), a sync group, or one entity type."""
    type: str = Field("full", min_length=1, max_length=50)


class SkippedRecordResponse(CamelModel):
    upstream_id: Optional[int] = None
    reason: str


class SyncResultResponse(CamelModel):
    success: bool
    entity_type: str
    status: str
    count: int = 0
    fetched: int = 0
    pages: int = 0
    skipped: List[SkippedRecordResponse] = []
    skipped_count: int = 0
    duration_ms: int = 0
    run_id: Optional[int] = None
    error: Optional[str] = None
    steps: Optional[List["SyncResultResponse"]] = None

    @classmethod
    def from_result(cls, result, include_steps: bool = True) -> "SyncResultResponse":
        return cls(
            success=result.success,
            entity_type=result.entity_type,
            status=result.status,
            count=result.record_count,
            fetched=result.fetched,
            pages=result.pages,
            skipped=[SkippedRecordResponse.model_validate(s) for s in result.skipped],
            skipped_count=len(result.skipped),
            duration_ms=result.duration_ms,
            run_id=result.run_id,
            error=result.error,
            steps=[cls.from_result(step, include_steps=False) for step in result.steps]
            if include_steps and result.steps else None,
        )


class SyncErrorResponse(CamelModel):
    error: str
    entity_type: Optional[str] = None
    run_id: Optional[int] = None


class SyncRunResponse(CamelModel):
    id: int
    entity_type: str
    status: str
    record_count: int = 0
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class SyncStatsResponse(CamelModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    pending: int = 0


class SyncStatusResponse(CamelModel):
    is_running: bool
    last_sync: Optional[SyncRunResponse] = None
    stats: SyncStatsResponse


class SyncConfigStatusResponse(CamelModel):
    is_configured: bool
    missing_fields: List[str] = []
    has_token: bool = False
    token_valid: bool = False
    token_expires_at: Optional[datetime] = None


class SyncConfigUpdateRequest(CamelModel):
    """Partial credential update; omitted or null fields keep their stored value."""
    endpoint: Optional[str] = Field(None, max_length=500)
    client_id: Optional[str] = Field(None, max_length=255)
    client_secret: Optional[str] = Field(None, max_length=255)
    school_id: Optional[int] = None


class TokenRefreshResponse(CamelModel):
    success: bool = True
    expires_at: datetime


class CleanupResponse(CamelModel):
    deleted: int
