"""
Durable storage for the single active SIS credential set.

The token lifecycle manager is the only writer of ``access_token`` and
``token_expires_at``; settings screens write the remaining fields through
``update``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reportcard.core.database import AsyncSessionLocal
from reportcard.models.sis_credential import SISCredential, CREDENTIAL_ROW_ID
from reportcard.integrations.sis.errors import PersistenceError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("endpoint", "client_id", "client_secret")
UPDATABLE_FIELDS = ("endpoint", "client_id", "client_secret", "school_id")


@dataclass
class Credential:
    """Snapshot of the stored credential row."""
    endpoint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    school_id: Optional[int] = None
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    @classmethod
    def from_row(cls, row: Optional[SISCredential]) -> "Credential":
        if row is None:
            return cls()
        return cls(
            endpoint=row.endpoint,
            client_id=row.client_id,
            client_secret=row.client_secret,
            school_id=row.school_id,
            access_token=row.access_token,
            token_expires_at=row.token_expires_at,
        )


def normalize_endpoint(endpoint: Optional[str]) -> Optional[str]:
    if endpoint is None:
        return None
    endpoint = endpoint.strip().rstrip("/")
    return endpoint or None


class CredentialStore:
    """Reads and writes the credential row through short-lived sessions."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def get(self) -> Credential:
        try:
            async with self.session_factory() as session:
                row = await session.get(SISCredential, CREDENTIAL_ROW_ID)
                return Credential.from_row(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load SIS credentials: {e}", original_exception=e)

    async def update(self, **changes) -> Credential:
        """Apply a partial update; ``None`` values leave the stored field unchanged."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

        if "endpoint" in changes:
            changes["endpoint"] = normalize_endpoint(changes["endpoint"])

        def apply(row: SISCredential):
            endpoint_changed = False
            for name, value in changes.items():
                if value is None:
                    continue
                if name in ("endpoint", "client_id", "client_secret") and getattr(row, name) != value:
                    endpoint_changed = True
                setattr(row, name, value)
            # A token issued for other credentials is no longer usable
            if endpoint_changed:
                row.access_token = None
                row.token_expires_at = None

        row = await self._write(apply)
        logger.info("SIS credentials updated")
        return Credential.from_row(row)

    async def save_token(self, token: str, expires_at: datetime) -> None:
        def apply(row: SISCredential):
            row.access_token = token
            row.token_expires_at = expires_at

        await self._write(apply)

    async def clear_token(self) -> None:
        def apply(row: SISCredential):
            row.access_token = None
            row.token_expires_at = None

        await self._write(apply)

    async def _write(self, apply) -> SISCredential:
        try:
            async with self.session_factory() as session:
                row = await self._get_or_create(session)
                apply(row)
                await session.commit()
                return row
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store SIS credentials: {e}", original_exception=e)

    @staticmethod
    async def _get_or_create(session: AsyncSession) -> SISCredential:
        row = await session.get(SISCredential, CREDENTIAL_ROW_ID)
        if row is None:
            row = SISCredential(id=CREDENTIAL_ROW_ID)
            session.add(row)
        return row
