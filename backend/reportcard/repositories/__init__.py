from .base import UpsertRepository
from .sis_entities import RepositoryRegistry, REPOSITORIES, TermRepository, StudentRepository
from .sync_run_log import SyncRunLog

__all__ = [
    "UpsertRepository",
    "RepositoryRegistry",
    "REPOSITORIES",
    "TermRepository",
    "StudentRepository",
    "SyncRunLog",
]
