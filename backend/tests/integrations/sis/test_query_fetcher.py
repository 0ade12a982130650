"""
Tests for the paginated named-query fetcher.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from reportcard.integrations.sis.credential_store import Credential
from reportcard.integrations.sis.errors import UpstreamAuthError, UpstreamHttpError
from reportcard.integrations.sis.query_fetcher import (
    PagedQueryFetcher, RetryDecision, RetryPolicy, default_classifier
)
from reportcard.integrations.sis.token_manager import SISTokenManager, TokenInfo

ENDPOINT = "https://sis.example.edu"
STUDENTS_URL = f"{ENDPOINT}/ws/schema/query/org.infocare.sync.students"


def page(start: int, count: int) -> dict:
    return {
        "name": "students",
        "record": [
            {"id": i, "name": "students", "tables": {"students": {"id": str(i), "dcid": str(1000 + i)}}}
            for i in range(start, start + count)
        ]
    }


def calls(m, url=STUDENTS_URL):
    return m.requests.get(("POST", URL(url)), [])


def windows(m, url=STUDENTS_URL):
    return [(c.kwargs["json"]["startrow"], c.kwargs["json"]["endrow"]) for c in calls(m, url)]


def bearer_tokens(m, url=STUDENTS_URL):
    return [c.kwargs["headers"]["Authorization"] for c in calls(m, url)]


@pytest.fixture
def token_manager():
    """Token manager double handing out tok-1, then tok-2 after a refresh."""
    manager = Mock(spec=SISTokenManager)
    manager.get_credential = AsyncMock(return_value=Credential(
        endpoint=ENDPOINT, client_id="portal-client", client_secret="s3cret"
    ))
    manager.ensure_valid_token = AsyncMock(return_value="tok-1")
    manager.fetch_new_token = AsyncMock(
        return_value=TokenInfo("tok-2", datetime(2024, 9, 2) + timedelta(hours=1))
    )
    return manager


class TestPagination:
    """startrow/endrow windows and termination."""

    @pytest.mark.asyncio
    async def test_pages_of_50_50_20_yield_120_records_in_3_calls(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, payload=page(1, 50))
            m.post(STUDENTS_URL, payload=page(51, 50))
            m.post(STUDENTS_URL, payload=page(101, 20))

            async with PagedQueryFetcher(token_manager, page_size=50) as fetcher:
                records = await fetcher.fetch_all("students")

        assert len(records) == 120
        assert [r["id"] for r in records] == list(range(1, 121))
        assert windows(m) == [(1, 50), (51, 100), (101, 150)]
        assert fetcher.call_count == 3

    @pytest.mark.asyncio
    async def test_exact_multiple_stops_on_empty_page(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, payload=page(1, 10))
            m.post(STUDENTS_URL, payload={"name": "students", "record": []})

            async with PagedQueryFetcher(token_manager, page_size=10) as fetcher:
                records = await fetcher.fetch_all("students")

        assert len(records) == 10
        assert windows(m) == [(1, 10), (11, 20)]

    @pytest.mark.asyncio
    async def test_missing_record_list_is_an_empty_page(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, payload={"name": "students"})

            async with PagedQueryFetcher(token_manager, page_size=50) as fetcher:
                records = await fetcher.fetch_all("students")

        assert records == []

    @pytest.mark.asyncio
    async def test_base_params_are_sent_with_every_window(self, token_manager):
        terms_url = f"{ENDPOINT}/ws/schema/query/org.infocare.sync.terms"
        with aioresponses() as m:
            m.post(terms_url, payload=page(1, 2))

            async with PagedQueryFetcher(token_manager, page_size=2) as fetcher:
                pages = [p async for p in fetcher.iter_pages("terms", {"schoolid": 100}, page_size=5)]

        assert len(pages) == 1
        assert calls(m, terms_url)[0].kwargs["json"] == {"schoolid": 100, "startrow": 1, "endrow": 5}

    @pytest.mark.asyncio
    async def test_execute_query_sends_no_window(self, token_manager):
        schools_url = f"{ENDPOINT}/ws/schema/query/org.infocare.sync.schools"
        with aioresponses() as m:
            m.post(schools_url, payload=page(1, 3))

            async with PagedQueryFetcher(token_manager) as fetcher:
                records = await fetcher.execute_query("schools")

        assert len(records) == 3
        assert calls(m, schools_url)[0].kwargs["json"] == {}

    def test_qualified_name_adds_prefix_once(self, token_manager):
        fetcher = PagedQueryFetcher(token_manager)
        assert fetcher.qualified_name("students") == "org.infocare.sync.students"
        assert fetcher.qualified_name("org.infocare.sync.students") == "org.infocare.sync.students"

    @pytest.mark.asyncio
    async def test_requires_context_manager(self, token_manager):
        fetcher = PagedQueryFetcher(token_manager)
        with pytest.raises(RuntimeError):
            await fetcher.fetch_page("students", {})


class TestUnauthorizedRetry:
    """401 handling through the retry policy."""

    @pytest.mark.asyncio
    async def test_mid_pagination_401_retries_same_window_with_new_token(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, payload=page(1, 50))
            m.post(STUDENTS_URL, status=401, body="expired")
            m.post(STUDENTS_URL, payload=page(51, 50))
            m.post(STUDENTS_URL, payload=page(101, 20))

            async with PagedQueryFetcher(token_manager, page_size=50) as fetcher:
                records = await fetcher.fetch_all("students")

        assert len(records) == 120
        assert windows(m) == [(1, 50), (51, 100), (51, 100), (101, 150)]
        assert bearer_tokens(m) == ["Bearer tok-1", "Bearer tok-1", "Bearer tok-2", "Bearer tok-1"]
        token_manager.fetch_new_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_401_on_same_window_is_fatal(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, payload=page(1, 50))
            m.post(STUDENTS_URL, status=401, body="expired")
            m.post(STUDENTS_URL, status=401, body="still expired")

            async with PagedQueryFetcher(token_manager, page_size=50) as fetcher:
                with pytest.raises(UpstreamAuthError) as exc_info:
                    await fetcher.fetch_all("students")

        assert exc_info.value.status == 401
        assert windows(m) == [(1, 50), (51, 100), (51, 100)]
        token_manager.fetch_new_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_attempt_policy_does_not_refresh(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, status=401, body="expired")

            async with PagedQueryFetcher(token_manager, retry_policy=RetryPolicy(max_attempts=1)) as fetcher:
                with pytest.raises(UpstreamAuthError):
                    await fetcher.fetch_all("students")

        token_manager.fetch_new_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_refresh_propagates(self, token_manager):
        token_manager.fetch_new_token.side_effect = UpstreamAuthError("token endpoint rejected credentials")
        with aioresponses() as m:
            m.post(STUDENTS_URL, status=401, body="expired")

            async with PagedQueryFetcher(token_manager) as fetcher:
                with pytest.raises(UpstreamAuthError, match="rejected"):
                    await fetcher.fetch_all("students")


class TestUpstreamErrors:

    @pytest.mark.asyncio
    async def test_server_error_is_fatal_with_status_and_body(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, status=500, body="query failed")

            async with PagedQueryFetcher(token_manager) as fetcher:
                with pytest.raises(UpstreamHttpError) as exc_info:
                    await fetcher.fetch_all("students")

        assert exc_info.value.status == 500
        assert exc_info.value.body == "query failed"
        assert exc_info.value.query_name == "org.infocare.sync.students"
        assert len(calls(m)) == 1
        token_manager.fetch_new_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transport_failure_has_no_status(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, exception=aiohttp.ClientConnectionError("reset by peer"))

            async with PagedQueryFetcher(token_manager) as fetcher:
                with pytest.raises(UpstreamHttpError) as exc_info:
                    await fetcher.fetch_all("students")

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_invalid_json_is_an_upstream_error(self, token_manager):
        with aioresponses() as m:
            m.post(STUDENTS_URL, status=200, body="<html>maintenance</html>")

            async with PagedQueryFetcher(token_manager) as fetcher:
                with pytest.raises(UpstreamHttpError, match="invalid JSON"):
                    await fetcher.fetch_all("students")


class TestRetryPolicy:

    def test_default_classifier(self):
        assert default_classifier(401) is RetryDecision.REFRESH_TOKEN
        assert default_classifier(403) is RetryDecision.FAIL
        assert default_classifier(503) is RetryDecision.FAIL

    def test_attempts_are_bounded(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.decide(401, attempt=1) is RetryDecision.REFRESH_TOKEN
        assert policy.decide(401, attempt=2) is RetryDecision.FAIL

    def test_custom_classifier(self):
        policy = RetryPolicy(max_attempts=3, classifier=lambda status: RetryDecision.REFRESH_TOKEN)
        assert policy.decide(403, attempt=2) is RetryDecision.REFRESH_TOKEN
