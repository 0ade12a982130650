"""
Error taxonomy for the SIS synchronization engine.

Infrastructure failures (configuration, upstream auth, upstream HTTP,
persistence, deadlines) are raised as ``SISError`` subclasses and abort the
current entity-type sync. Unresolved references are not exceptions: they are
collected as ``MappingUnresolved`` entries on the skipped list.
"""

import traceback
from dataclasses import dataclass, asdict
from typing import Dict, Any, List, Optional

from reportcard.core.clock import utcnow


class SISErrorSeverity:
    """Error severity levels for SIS operations."""
    LOW = "low"           # Per-record issue, batch continues
    MEDIUM = "medium"     # Entity-type sync aborted
    HIGH = "high"         # Integration unusable until fixed


class SISErrorCategory:
    """Error categories for better classification."""
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    NETWORK = "network"
    PROVIDER_ERROR = "provider_error"
    DATABASE_ERROR = "database_error"
    TIMEOUT = "timeout"
    CONCURRENCY = "concurrency"
    VALIDATION = "validation"


class SISError(Exception):
    """Base exception for SIS sync errors with classification metadata."""

    status_code = 500

    def __init__(
        self,
        message: str,
        category: str = SISErrorCategory.PROVIDER_ERROR,
        severity: str = SISErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = utcnow()

    def to_dict(self, include_traceback: bool = True) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        data = {
            'error': type(self).__name__,
            'message': self.message,
            'category': self.category,
            'severity': self.severity,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
        }
        if include_traceback:
            data['traceback'] = (
                ''.join(traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__
                ))
                if self.original_exception else None
            )
        return data


class ConfigIncompleteError(SISError):
    """Endpoint, client id or client secret is missing."""

    status_code = 400

    def __init__(self, missing_fields: List[str], message: Optional[str] = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message or "SIS configuration is incomplete: missing " + ", ".join(self.missing_fields),
            category=SISErrorCategory.CONFIGURATION,
            severity=SISErrorSeverity.HIGH,
            details={'missing_fields': self.missing_fields},
            retryable=False
        )


class UpstreamAuthError(SISError):
    """Token exchange rejected, or a request still unauthorized after one refresh."""

    status_code = 401

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None, **kwargs):
        self.status = status
        self.body = body
        super().__init__(
            message,
            category=SISErrorCategory.AUTHENTICATION,
            severity=SISErrorSeverity.HIGH,
            details={'status': status, 'body': body},
            retryable=False,
            **kwargs
        )


class UpstreamHttpError(SISError):
    """Non-2xx response from a query call, or a transport failure (``status`` is None)."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None,
                 query_name: Optional[str] = None, **kwargs):
        self.status = status
        self.body = body
        self.query_name = query_name
        super().__init__(
            message,
            category=SISErrorCategory.PROVIDER_ERROR if status else SISErrorCategory.NETWORK,
            severity=SISErrorSeverity.MEDIUM,
            details={'status': status, 'body': body, 'query_name': query_name},
            retryable=False,
            **kwargs
        )


class PersistenceError(SISError):
    """Storage-layer failure while loading id maps or writing a batch."""

    status_code = 500

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.DATABASE_ERROR,
            severity=SISErrorSeverity.MEDIUM,
            retryable=False,
            **kwargs
        )


class SyncDeadlineExceededError(SISError):
    """An entity-type sync ran past the configured run deadline."""

    status_code = 504

    def __init__(self, entity_type: str, deadline_seconds: float):
        super().__init__(
            f"{entity_type} sync exceeded its {deadline_seconds:g}s deadline",
            category=SISErrorCategory.TIMEOUT,
            severity=SISErrorSeverity.MEDIUM,
            details={'entity_type': entity_type, 'deadline_seconds': deadline_seconds},
            retryable=True
        )


class SyncAlreadyRunningError(SISError):
    """A full sync was requested while another one holds the lock."""

    status_code = 409

    def __init__(self, message: str = "A full sync is already running", run_id: Optional[int] = None):
        self.run_id = run_id
        super().__init__(
            message,
            category=SISErrorCategory.CONCURRENCY,
            severity=SISErrorSeverity.LOW,
            details={'run_id': run_id},
            retryable=True
        )


class SyncLockLostError(SISError):
    """A running full sync found its lock held by another run."""

    status_code = 409

    def __init__(self, run_id: int, holder_run_id: Optional[int]):
        self.run_id = run_id
        self.holder_run_id = holder_run_id
        super().__init__(
            f"Full sync run {run_id} lost its lock to run {holder_run_id}",
            category=SISErrorCategory.CONCURRENCY,
            severity=SISErrorSeverity.MEDIUM,
            details={'run_id': run_id, 'holder_run_id': holder_run_id}
        )


class InvalidRunTransitionError(SISError):
    """A run transition was requested from a state that does not allow it."""

    status_code = 409

    def __init__(self, run_id: int, target: str, current: Optional[str]):
        self.run_id = run_id
        self.target = target
        self.current = current
        super().__init__(
            f"Sync run {run_id} cannot move to {target} from {current or 'missing'}",
            category=SISErrorCategory.VALIDATION,
            severity=SISErrorSeverity.LOW,
            details={'run_id': run_id, 'target': target, 'current': current}
        )


class UnknownEntityTypeError(SISError):
    """The requested entity type has no sync definition."""

    status_code = 404

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(
            f"Unknown sync type: {entity_type}",
            category=SISErrorCategory.VALIDATION,
            severity=SISErrorSeverity.LOW,
            details={'entity_type': entity_type}
        )


@dataclass
class SkippedRecord:
    """A record left out of a batch without failing the batch."""
    upstream_id: Optional[int]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MappingUnresolved(SkippedRecord):
    """Skipped because a referenced entity is not known locally."""
