"""
SIS synchronization engine.

Pulls paginated named-query results from the SIS, resolves upstream
identifiers to local keys and upserts them idempotently, recording every
attempt in the sync run log.
"""

from .catalog import (
    EntitySyncDefinition, SYNC_DEFINITIONS, SYNC_ALIASES, SYNC_GROUPS, FULL_SYNC_ORDER, get_definition
)
from .entity_sync import EntitySyncer, SyncResult
from .orchestrator import SyncOrchestrator

__all__ = [
    'EntitySyncDefinition',
    'SYNC_DEFINITIONS',
    'SYNC_ALIASES',
    'SYNC_GROUPS',
    'FULL_SYNC_ORDER',
    'get_definition',
    'EntitySyncer',
    'SyncResult',
    'SyncOrchestrator',
]
