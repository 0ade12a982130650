"""
SIS upstream integration: credentials, OAuth token lifecycle, paginated
named-query fetching, record transforms and identifier reconciliation.
"""

from .credential_store import Credential, CredentialStore
from .errors import (
    SISError,
    ConfigIncompleteError,
    UpstreamAuthError,
    UpstreamHttpError,
    PersistenceError,
    MappingUnresolved,
    SkippedRecord,
)
from .query_fetcher import PagedQueryFetcher, RetryPolicy, RetryDecision
from .reconciler import IdentifierReconciler, ReferenceSpec, ReconciliationResult
from .token_manager import SISTokenManager, TokenInfo, get_token_manager

__all__ = [
    'Credential',
    'CredentialStore',
    'SISError',
    'ConfigIncompleteError',
    'UpstreamAuthError',
    'UpstreamHttpError',
    'PersistenceError',
    'MappingUnresolved',
    'SkippedRecord',
    'PagedQueryFetcher',
    'RetryPolicy',
    'RetryDecision',
    'IdentifierReconciler',
    'ReferenceSpec',
    'ReconciliationResult',
    'SISTokenManager',
    'TokenInfo',
    'get_token_manager',
]
