"""
Paginated named-query retrieval against the SIS query endpoint.

Each page is one authenticated POST of ``{...params, startrow, endrow}`` to
``{endpoint}/ws/schema/query/{query}``. Windows advance by the page size until
a page returns fewer rows than requested. An upstream that always answers with
exactly ``page_size`` rows would never terminate; that is treated as a broken
upstream contract rather than guarded against here.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from reportcard.core.config import settings
from reportcard.integrations.sis.errors import UpstreamAuthError, UpstreamHttpError
from reportcard.integrations.sis.token_manager import SISTokenManager

logger = logging.getLogger(__name__)

QUERY_PATH = "/ws/schema/query/"
ERROR_BODY_LIMIT = 500


class RetryDecision(str, enum.Enum):
    REFRESH_TOKEN = "refresh_token"
    FAIL = "fail"


def default_classifier(status: int) -> RetryDecision:
    """Unauthorized responses get a fresh token; everything else is fatal."""
    if status == 401:
        return RetryDecision.REFRESH_TOKEN
    return RetryDecision.FAIL


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for non-2xx query responses."""
    max_attempts: int = 2
    classifier: Callable[[int], RetryDecision] = default_classifier

    def decide(self, status: int, attempt: int) -> RetryDecision:
        if attempt >= self.max_attempts:
            return RetryDecision.FAIL
        return self.classifier(status)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(max_attempts=settings.SIS_MAX_ATTEMPTS)


class PagedQueryFetcher:
    """Runs named queries with one aiohttp session per sync run."""

    def __init__(
        self,
        token_manager: SISTokenManager,
        page_size: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: Optional[float] = None,
        query_prefix: Optional[str] = None
    ):
        self.token_manager = token_manager
        self.page_size = page_size or settings.SIS_PAGE_SIZE
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.timeout_seconds = timeout_seconds or settings.SIS_HTTP_TIMEOUT_SECONDS
        self.query_prefix = settings.SIS_QUERY_PREFIX if query_prefix is None else query_prefix
        self.call_count = 0
        self._endpoint: Optional[str] = None
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._http_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            headers={'Accept': 'application/json', 'Content-Type': 'application/json'}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    def qualified_name(self, query_name: str) -> str:
        if not self.query_prefix or query_name.startswith(f"{self.query_prefix}."):
            return query_name
        return f"{self.query_prefix}.{query_name}"

    async def fetch_all(
        self,
        query_name: str,
        base_params: Optional[Dict[str, Any]] = None,
        page_size: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a named query and return the merged records."""
        records: List[Dict[str, Any]] = []
        async for page in self.iter_pages(query_name, base_params, page_size):
            records.extend(page)
        return records

    async def iter_pages(
        self,
        query_name: str,
        base_params: Optional[Dict[str, Any]] = None,
        page_size: Optional[int] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages in increasing ``startrow`` order until a short page arrives."""
        page_size = page_size or self.page_size
        startrow, endrow = 1, page_size
        page_number = 0

        while True:
            page_number += 1
            params = dict(base_params or {})
            params.update({'startrow': startrow, 'endrow': endrow})

            records = await self.fetch_page(query_name, params)
            logger.info(
                f"{self.qualified_name(query_name)} page {page_number}: "
                f"rows {startrow}-{endrow} returned {len(records)} records"
            )
            if records:
                yield records

            if len(records) < page_size:
                break

            startrow += page_size
            endrow += page_size

    async def execute_query(
        self,
        query_name: str,
        params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Call a named query once without a pagination window."""
        return await self.fetch_page(query_name, dict(params or {}))

    async def fetch_page(self, query_name: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """One authenticated query call, refreshing the token as the retry policy allows."""
        if not self._http_session:
            raise RuntimeError("PagedQueryFetcher must be used as async context manager")

        name = self.qualified_name(query_name)
        url = await self._query_url(name)
        token = await self.token_manager.ensure_valid_token()

        attempt = 0
        while True:
            attempt += 1
            status, body = await self._post(url, name, params, token)

            if 200 <= status < 300:
                return self._parse_records(name, body)

            decision = self.retry_policy.decide(status, attempt)
            if decision is RetryDecision.REFRESH_TOKEN:
                logger.warning(
                    f"{name} returned {status}; refreshing token and retrying "
                    f"rows {params.get('startrow')}-{params.get('endrow')}"
                )
                token = (await self.token_manager.fetch_new_token()).access_token
                continue

            snippet = body[:ERROR_BODY_LIMIT]
            logger.error(f"{name} failed: Status {status}, Error: {snippet}")
            if status == 401:
                raise UpstreamAuthError(
                    f"{name} still unauthorized after token refresh",
                    status=status,
                    body=snippet
                )
            raise UpstreamHttpError(
                f"SIS API error: {status} - {snippet}",
                status=status,
                body=snippet,
                query_name=name
            )

    async def _query_url(self, name: str) -> str:
        if self._endpoint is None:
            credential = await self.token_manager.get_credential()
            self._endpoint = credential.endpoint
        return f"{self._endpoint}{QUERY_PATH}{name}"

    async def _post(self, url: str, name: str, params: Dict[str, Any], token: str):
        self.call_count += 1
        try:
            async with self._http_session.post(
                url,
                json=params,
                headers={'Authorization': f'Bearer {token}'}
            ) as response:
                return response.status, await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"HTTP error calling {name}: {e!r}")
            raise UpstreamHttpError(
                f"Request to {name} failed: {e or type(e).__name__}",
                query_name=name,
                original_exception=e
            )

    @staticmethod
    def _parse_records(name: str, body: str) -> List[Dict[str, Any]]:
        if not body or not body.strip():
            return []
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise UpstreamHttpError(f"{name} returned invalid JSON", query_name=name, original_exception=e)

        records = payload.get('record') if isinstance(payload, dict) else None
        if records is None:
            return []
        if not isinstance(records, list):
            raise UpstreamHttpError(f"{name} returned a malformed record list", query_name=name)
        return records
