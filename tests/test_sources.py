"""
ZoneWatch Incident Source Tests
===============================

Validates the data-source boundary:
- In-memory source (time filtering, test controls)
- Redis source (key layout, pub/sub listener, error translation, connection retry)
- HTTP polling source (query parameters, payload shapes, status mapping)

Tech Stack: pytest, pytest-asyncio, fakeredis, httpx.MockTransport, unittest.mock
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import httpx
import pytest
from redis.exceptions import (
    AuthenticationError,
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
)

from zonewatch.config import SubscriptionConfig
from zonewatch.feeds import http_source, redis_source
from zonewatch.feeds.http_source import HttpIncidentSource
from zonewatch.feeds.redis_source import RedisConnectionManager, RedisIncidentSource
from zonewatch.feeds.source import InMemoryIncidentSource, SourceError, matches_query
from zonewatch.feeds.subscription import ResilientSubscriptionManager, SubscriptionState
from zonewatch.models import QuerySpec


async def wait_for(event: asyncio.Event, timeout: float = 2.0) -> None:
    await asyncio.wait_for(event.wait(), timeout=timeout)


# =============================================================================
# IN-MEMORY SOURCE
# =============================================================================

class TestInMemorySource:

    @pytest.mark.asyncio
    async def test_fetch_filters_by_time(self, fixed_now, make_document):
        recent = make_document(1, 1, created_at=fixed_now - timedelta(days=1), id="recent")
        old = make_document(1, 1, created_at=fixed_now - timedelta(days=40), id="old")
        source = InMemoryIncidentSource([recent, old])

        documents = await source.fetch(QuerySpec.last_days(7, now=fixed_now))

        assert [d["id"] for d in documents] == ["recent"]

    def test_documents_without_timestamp_excluded_from_bounded_queries(self, fixed_now):
        document = {"location": {"latitude": 1, "longitude": 1}}

        assert matches_query(document, QuerySpec())
        assert not matches_query(document, QuerySpec.last_days(7, now=fixed_now))

    def test_naive_bounds_taken_as_utc(self, fixed_now, make_document):
        query = QuerySpec(start=fixed_now.replace(tzinfo=None) - timedelta(hours=1))

        assert query.start.tzinfo is not None
        assert matches_query(make_document(1, 1, created_at=fixed_now), query)

    @pytest.mark.asyncio
    async def test_fetch_failure(self):
        source = InMemoryIncidentSource()
        source.fail_next_fetch(SourceError("unavailable"))

        with pytest.raises(SourceError):
            await source.fetch(QuerySpec())
        assert await source.fetch(QuerySpec()) == []

    def test_emit_error_drops_listeners(self):
        source = InMemoryIncidentSource()
        errors = []
        source.listen(QuerySpec(), lambda docs: None, errors.append)

        source.emit_error(SourceError("aborted"))

        assert len(errors) == 1
        assert source.active_listener_count == 0

    def test_snapshots_are_full_result_sets(self, make_document):
        source = InMemoryIncidentSource([make_document(1, 1)])
        snapshots = []
        detach = source.listen(QuerySpec(), snapshots.append, lambda e: None)

        source.add_documents(make_document(2, 2))
        detach()
        detach()
        source.add_documents(make_document(3, 3))

        assert [len(s) for s in snapshots] == [2]

    @pytest.mark.asyncio
    async def test_health(self):
        source = InMemoryIncidentSource()
        source.set_healthy(False)

        assert await source.health_check() is False


# =============================================================================
# REDIS SOURCE
# =============================================================================

class TestRedisSource:

    @pytest.fixture
    def client(self):
        return fakeredis.FakeAsyncRedis(decode_responses=True)

    @pytest.fixture
    def source(self, client):
        return RedisIncidentSource(client=client, key_prefix="test", poll_timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_add_and_fetch(self, source, client, fixed_now, make_document):
        document_id = await source.add_document(
            make_document(4.711, -74.072, created_at=fixed_now - timedelta(days=1)),
            document_id="r1",
        )
        await source.add_document(
            make_document(4.711, -74.072, created_at=fixed_now - timedelta(days=60)),
            document_id="r2",
        )

        documents = await source.fetch(QuerySpec.last_days(7, now=fixed_now))

        assert document_id == "r1"
        assert [d["id"] for d in documents] == ["r1"]
        assert documents[0]["location"] == {"latitude": 4.711, "longitude": -74.072}
        assert await client.hlen("test:reports:docs") == 2
        assert await client.zcard("test:reports:by_time") == 2

    @pytest.mark.asyncio
    async def test_documents_ordered_by_creation_time(self, source, fixed_now, make_document):
        await source.add_document(make_document(1, 1, created_at=fixed_now), document_id="late")
        await source.add_document(
            make_document(1, 1, created_at=fixed_now - timedelta(hours=2)), document_id="early",
        )

        documents = await source.fetch(QuerySpec())

        assert [d["id"] for d in documents] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_missing_timestamp_stamped_on_write(self, source):
        await source.add_document({"location": {"latitude": 1, "longitude": 1}}, document_id="x")

        documents = await source.fetch(QuerySpec())

        assert "createdAt" in documents[0]

    @pytest.mark.asyncio
    async def test_listener_receives_snapshots(self, source, make_document):
        snapshots = []
        initial, updated = asyncio.Event(), asyncio.Event()

        def on_snapshot(documents):
            snapshots.append(documents)
            (updated if len(snapshots) > 1 else initial).set()

        detach = source.listen(QuerySpec(), on_snapshot, lambda e: None)
        await wait_for(initial)
        await source.add_document(make_document(4.711, -74.072), document_id="live")
        await wait_for(updated)

        assert snapshots[0] == []
        assert [d["id"] for d in snapshots[1]] == ["live"]

        detach()
        await source.close()

    @pytest.mark.asyncio
    async def test_listener_failure_reported(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock(side_effect=RedisConnectionError("connection lost"))
        pubsub.aclose = AsyncMock()
        client = MagicMock()
        client.pubsub = MagicMock(return_value=pubsub)
        source = RedisIncidentSource(client=client)

        errors = []
        failed = asyncio.Event()

        def on_error(error):
            errors.append(error)
            failed.set()

        source.listen(QuerySpec(), lambda docs: None, on_error)
        await wait_for(failed)

        assert errors[0].code == "unavailable"
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pubsub_closed_before_error_reported(self):
        events = []

        async def aclose():
            await asyncio.sleep(0)
            events.append("closed")

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock(side_effect=RedisConnectionError("connection lost"))
        pubsub.aclose = aclose
        client = MagicMock()
        client.pubsub = MagicMock(return_value=pubsub)
        source = RedisIncidentSource(client=client)
        failed = asyncio.Event()

        def on_error(error):
            events.append(error.code)
            failed.set()

        # The subscription detaches (cancels the listener task) inside on_error
        manager = ResilientSubscriptionManager(source)
        manager.subscribe(
            QuerySpec(),
            on_data=lambda documents: None,
            on_error=on_error,
            options=SubscriptionConfig(max_retries=0),
        )
        await wait_for(failed)

        assert events == ["closed", "unavailable"]

    @pytest.mark.asyncio
    async def test_consumer_failure_terminates_subscription(self, source):
        errors = []
        failed = asyncio.Event()

        def on_data(documents):
            raise RuntimeError("consumer bug")

        def on_error(error):
            errors.append(error)
            failed.set()

        manager = ResilientSubscriptionManager(source)
        subscription = manager.subscribe(QuerySpec(), on_data=on_data, on_error=on_error)
        await wait_for(failed)
        await source.close()

        assert [e.code for e in errors] == ["unknown"]
        assert "consumer bug" in str(errors[0])
        assert subscription.state is SubscriptionState.TERMINATED
        assert manager.active_subscriptions == []

    @pytest.mark.asyncio
    async def test_fetch_error_translated(self):
        client = MagicMock()
        client.zrangebyscore = AsyncMock(side_effect=RedisConnectionError("down"))
        source = RedisIncidentSource(client=client)

        with pytest.raises(SourceError) as exc_info:
            await source.fetch(QuerySpec())

        assert exc_info.value.code == "unavailable"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_health_check(self, source):
        assert await source.health_check() is True

    @pytest.mark.parametrize(
        "error, code",
        [
            (RedisConnectionError("refused"), "unavailable"),
            (AuthenticationError("invalid password"), "permission-denied"),
            (ResponseError("NOPERM this user has no permissions"), "permission-denied"),
            (ResponseError("WRONGTYPE Operation against a key"), "invalid-argument"),
            (RedisError("something else"), "unknown"),
        ],
    )
    def test_error_mapping(self, error, code):
        assert redis_source.to_source_error(error).code == code


class TestRedisConnectionManager:

    @pytest.fixture
    def fake_client(self, monkeypatch):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        monkeypatch.setattr(redis_source.redis, "Redis", MagicMock(return_value=client))
        return client

    @pytest.mark.asyncio
    async def test_retries_until_ping_succeeds(self, fake_client):
        fake_client.ping.side_effect = [RedisConnectionError("refused"), True]
        manager = RedisConnectionManager(retry_delay=0)

        client = await manager.get_client()

        assert client is fake_client
        assert fake_client.ping.await_count == 2

        assert await manager.get_client() is fake_client
        assert fake_client.ping.await_count == 2

        await manager.close()
        fake_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_all_attempts(self, fake_client):
        fake_client.ping.side_effect = RedisConnectionError("refused")
        manager = RedisConnectionManager(retry_attempts=3, retry_delay=0)

        with pytest.raises(RedisConnectionError) as exc_info:
            await manager.get_client()

        assert fake_client.ping.await_count == 3
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_source_reports_unreachable_redis(self, fake_client):
        fake_client.ping.side_effect = RedisConnectionError("refused")
        source = RedisIncidentSource(redis_url="redis://cache.invalid:6379/0")

        with pytest.raises(SourceError) as exc_info:
            await source.fetch(QuerySpec())

        assert exc_info.value.code == "unavailable"


# =============================================================================
# HTTP SOURCE
# =============================================================================

class TestHttpSource:

    @staticmethod
    def make_source(handler, **kwargs) -> HttpIncidentSource:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://feed.test/api",
        )
        return HttpIncidentSource("http://feed.test/api", client=client, **kwargs)

    @pytest.mark.asyncio
    async def test_fetch_sends_time_range(self, fixed_now):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[{"id": "a"}])

        source = self.make_source(handler)
        documents = await source.fetch(QuerySpec.last_days(3, now=fixed_now))

        assert documents == [{"id": "a"}]
        assert requests[0].url.path == "/api/reports"
        assert requests[0].url.params["start"] == "2024-03-13T00:00:00+00:00"
        assert requests[0].url.params["end"] == fixed_now.isoformat()

    @pytest.mark.asyncio
    async def test_fetch_accepts_documents_envelope(self):
        source = self.make_source(
            lambda request: httpx.Response(200, json={"documents": [{"id": "a"}, "junk"]})
        )

        assert await source.fetch(QuerySpec()) == [{"id": "a"}]

    @pytest.mark.parametrize(
        "status, code",
        [(401, "permission-denied"), (403, "permission-denied"), (404, "not-found"),
         (429, "resource-exhausted"), (500, "unavailable"), (503, "unavailable"), (418, "unknown")],
    )
    @pytest.mark.asyncio
    async def test_status_errors(self, status, code):
        source = self.make_source(lambda request: httpx.Response(status))

        with pytest.raises(SourceError) as exc_info:
            await source.fetch(QuerySpec())

        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_transport_errors(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SourceError) as refused:
            await self.make_source(refuse).fetch(QuerySpec())
        with pytest.raises(SourceError) as timed_out:
            await self.make_source(slow).fetch(QuerySpec())

        assert refused.value.code == "unavailable"
        assert timed_out.value.code == "deadline-exceeded"

    @pytest.mark.parametrize("content", [b"not json", b'"a string"', b'{"documents": 5}'])
    @pytest.mark.asyncio
    async def test_unexpected_payload(self, content):
        source = self.make_source(lambda request: httpx.Response(200, content=content))

        with pytest.raises(SourceError) as exc_info:
            await source.fetch(QuerySpec())

        assert exc_info.value.code == "data-loss"

    @pytest.mark.asyncio
    async def test_health_check(self):
        def handler(request):
            if request.url.path == "/api/health":
                return httpx.Response(200)
            return httpx.Response(404)

        assert await self.make_source(handler).health_check() is True

    @pytest.mark.asyncio
    async def test_api_key_sent_as_bearer_token(self):
        source = HttpIncidentSource("http://feed.test/api", api_key="secret")

        client = await source._get_client()

        assert client.headers["Authorization"] == "Bearer secret"
        await source.close()

    @pytest.mark.asyncio
    async def test_polling_delivers_only_changes(self):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] <= 2:
                return httpx.Response(200, json=[{"id": "a"}])
            return httpx.Response(200, json=[{"id": "a"}, {"id": "b"}])

        source = self.make_source(handler, poll_interval_seconds=0.01)
        snapshots = []
        changed = asyncio.Event()

        def on_snapshot(documents):
            snapshots.append(documents)
            if len(snapshots) == 2:
                changed.set()

        detach = source.listen(QuerySpec(), on_snapshot, lambda e: None)
        await wait_for(changed)
        detach()
        await source.close()

        assert snapshots == [[{"id": "a"}], [{"id": "a"}, {"id": "b"}]]
        assert calls["count"] >= 3

    @pytest.mark.asyncio
    async def test_polling_stops_on_error(self):
        source = self.make_source(lambda request: httpx.Response(403))
        errors = []
        failed = asyncio.Event()

        def on_error(error):
            errors.append(error)
            failed.set()

        source.listen(QuerySpec(), lambda docs: None, on_error)
        await wait_for(failed)
        await source.close()

        assert [e.code for e in errors] == ["permission-denied"]

    @pytest.mark.asyncio
    async def test_polling_consumer_failure_reported(self):
        source = self.make_source(lambda request: httpx.Response(200, json=[{"id": "a"}]))
        errors = []
        failed = asyncio.Event()

        def on_snapshot(documents):
            raise RuntimeError("consumer bug")

        def on_error(error):
            errors.append(error)
            failed.set()

        source.listen(QuerySpec(), on_snapshot, on_error)
        await wait_for(failed)
        await source.close()

        assert [e.code for e in errors] == ["unknown"]

    def test_status_mapping(self):
        assert http_source.status_to_code(502) == "unavailable"
        assert http_source.status_to_code(400) == "invalid-argument"
