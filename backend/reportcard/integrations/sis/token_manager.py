"""
OAuth client-credentials token lifecycle for the SIS upstream.

The cached token is shared process-wide. A token counts as valid only while
``now + skew < expires_at``. Refreshes are single-flighted: callers that ask
for a new token while an exchange is already outstanding await that same
exchange instead of issuing another request.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import aiohttp

from reportcard.core.clock import utcnow
from reportcard.core.config import settings
from reportcard.integrations.sis.credential_store import Credential, CredentialStore
from reportcard.integrations.sis.errors import ConfigIncompleteError, UpstreamAuthError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600
TOKEN_PATH = "/oauth/access_token"


@dataclass
class TokenInfo:
    access_token: str
    expires_at: datetime


@dataclass
class TokenState:
    """Process-wide token cache and the refresh currently in flight, if any."""
    token: Optional[TokenInfo] = None
    in_flight: Optional["asyncio.Future[TokenInfo]"] = None


class SISTokenManager:
    """Acquires, caches and renews the upstream access token."""

    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        skew_seconds: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.credential_store = credential_store or CredentialStore()
        self.skew = timedelta(
            seconds=settings.SIS_TOKEN_SKEW_SECONDS if skew_seconds is None else skew_seconds
        )
        self.timeout_seconds = timeout_seconds or settings.SIS_HTTP_TIMEOUT_SECONDS
        self.clock = clock
        self._state = TokenState()
        self._lock = asyncio.Lock()

    def is_valid(self, token: Optional[TokenInfo]) -> bool:
        if token is None or not token.access_token or token.expires_at is None:
            return False
        return token.expires_at > self.clock() + self.skew

    @property
    def refresh_in_flight(self) -> bool:
        return self._state.in_flight is not None

    async def get_credential(self) -> Credential:
        """Load the stored credential, failing fast when it cannot authenticate."""
        credential = await self.credential_store.get()
        missing = credential.missing_fields()
        if missing:
            raise ConfigIncompleteError(missing)
        return credential

    async def ensure_valid_token(self) -> str:
        """Return a usable access token, refreshing only when the cache and store are stale."""
        if self.is_valid(self._state.token):
            return self._state.token.access_token

        in_flight = self._state.in_flight
        if in_flight is not None:
            return (await asyncio.shield(in_flight)).access_token

        credential = await self.credential_store.get()
        if credential.access_token and credential.token_expires_at:
            stored = TokenInfo(credential.access_token, credential.token_expires_at)
            if self.is_valid(stored):
                self._state.token = stored
                return stored.access_token

        # Another caller may have refreshed while the store was being read
        if self.is_valid(self._state.token):
            return self._state.token.access_token

        return (await self.fetch_new_token()).access_token

    async def fetch_new_token(self) -> TokenInfo:
        """Exchange client credentials for a new token, joining any exchange in flight."""
        async with self._lock:
            task = self._state.in_flight
            if task is None:
                task = asyncio.ensure_future(self._exchange_credentials())
                task.add_done_callback(self._clear_in_flight)
                self._state.in_flight = task
            else:
                logger.debug("Joining in-flight SIS token refresh")

        return await asyncio.shield(task)

    async def update_credentials(self, **changes) -> Credential:
        """Store new credentials and drop the cached token if the store invalidated it."""
        credential = await self.credential_store.update(**changes)
        if credential.access_token is None:
            self._state.token = None
            logger.info("SIS credentials changed; cached access token dropped")
        return credential

    async def clear_token(self) -> None:
        self._state.token = None
        await self.credential_store.clear_token()
        logger.info("SIS access token cleared")

    async def token_status(self) -> Dict[str, Any]:
        credential = await self.credential_store.get()
        token = self._state.token
        if token is None and credential.access_token and credential.token_expires_at:
            token = TokenInfo(credential.access_token, credential.token_expires_at)
        return {
            'is_configured': credential.is_complete,
            'missing_fields': credential.missing_fields(),
            'has_token': token is not None,
            'token_valid': self.is_valid(token),
            'token_expires_at': token.expires_at if token else None,
        }

    def _clear_in_flight(self, task: "asyncio.Future[TokenInfo]") -> None:
        if self._state.in_flight is task:
            self._state.in_flight = None
        # Mark the outcome as observed even when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _exchange_credentials(self) -> TokenInfo:
        credential = await self.get_credential()
        url = f"{credential.endpoint}{TOKEN_PATH}"

        logger.info(f"Requesting new SIS access token from {credential.endpoint}")
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            ) as session:
                async with session.post(
                    url,
                    data={'grant_type': 'client_credentials'},
                    auth=aiohttp.BasicAuth(credential.client_id, credential.client_secret),
                    headers={
                        'Content-Type': 'application/x-www-form-urlencoded;charset=UTF-8',
                        'Accept': 'application/json',
                    }
                ) as response:
                    if not 200 <= response.status < 300:
                        error_text = await response.text()
                        logger.error(
                            f"SIS token request failed: Status {response.status}, Error: {error_text}"
                        )
                        raise UpstreamAuthError(
                            f"Token request failed with status {response.status}",
                            status=response.status,
                            body=error_text
                        )
                    payload = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"HTTP error during SIS token request: {e}")
            raise UpstreamAuthError(f"Token request failed: {e or type(e).__name__}", original_exception=e)

        access_token = (payload or {}).get('access_token')
        if not access_token:
            raise UpstreamAuthError("Token response did not include an access_token")

        expires_in = int(payload.get('expires_in') or DEFAULT_EXPIRES_IN)
        token = TokenInfo(access_token, self.clock() + timedelta(seconds=expires_in))

        await self.credential_store.save_token(token.access_token, token.expires_at)
        self._state.token = token

        logger.info(f"Obtained SIS access token, expires at {token.expires_at.isoformat()}")
        return token


_token_manager: Optional[SISTokenManager] = None


def get_token_manager() -> SISTokenManager:
    """Process-wide token manager shared by every sync and request handler."""
    global _token_manager
    if _token_manager is None:
        _token_manager = SISTokenManager()
    return _token_manager
