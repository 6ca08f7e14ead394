"""
Unit tests for offline fetch strategies.
"""

import asyncio
import json

import httpx
import pytest

from service_offline.app.storage.cache_storage import API_CACHE, DYNAMIC_CACHE, CacheStorage
from service_offline.app.storage.request_queue import OfflineRequestQueue
from service_offline.app.strategies import (
    NO_CACHED_DATA_MESSAGE,
    StrategyContext,
    StrategyKind,
    build_strategies,
    origin_of,
    select_strategy,
)
from shared.metrics import MetricsCollector


ORIGIN = "https://app.example.com"
SYNC_PREFIXES = ("/api/maintenance", "/api/conversations/")


class FakeNetwork:
    """httpx transport handler with a connectivity switch."""

    def __init__(self):
        self.online = True
        self.calls = []
        self.hang = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url)))
        if self.hang is not None:
            await self.hang.wait()
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        return httpx.Response(
            200,
            json={"url": str(request.url), "fetch": len(self.calls)},
            headers={"date": "Mon, 19 Oct 2026 08:00:00 GMT"},
        )


class TestSelectStrategy:
    """Strategy routing by method, origin and path."""

    @pytest.mark.parametrize(
        "method,url,expected",
        [
            ("GET", "https://app.example.com/api/properties", StrategyKind.NETWORK_FIRST),
            ("GET", "https://app.example.com/dashboard", StrategyKind.CACHE_FIRST),
            ("GET", "https://app.example.com/static/app.js", StrategyKind.CACHE_FIRST),
            ("GET", "https://fonts.example.net/inter.css", StrategyKind.STALE_WHILE_REVALIDATE),
            ("GET", "http://app.example.com/api/properties", StrategyKind.STALE_WHILE_REVALIDATE),
            ("POST", "https://app.example.com/api/maintenance", StrategyKind.BACKGROUND_SYNC),
            ("POST", "https://app.example.com/api/maintenance/42/notes", StrategyKind.BACKGROUND_SYNC),
            ("POST", "https://app.example.com/api/conversations/7/messages", StrategyKind.BACKGROUND_SYNC),
            ("POST", "https://app.example.com/api/conversations", StrategyKind.PASSTHROUGH),
            ("POST", "https://app.example.com/api/payments", StrategyKind.PASSTHROUGH),
            ("PUT", "https://app.example.com/api/maintenance/42", StrategyKind.PASSTHROUGH),
            ("DELETE", "https://app.example.com/api/properties/1", StrategyKind.PASSTHROUGH),
            ("POST", "https://other.example.com/api/maintenance", StrategyKind.PASSTHROUGH),
        ],
    )
    def test_routing(self, method, url, expected):
        assert select_strategy(method, url, ORIGIN, SYNC_PREFIXES) is expected

    def test_default_port_is_same_origin(self):
        assert origin_of("https://app.example.com:443/x") == origin_of("https://app.example.com/")
        assert select_strategy("GET", "https://app.example.com:443/api/a", ORIGIN, ()) is StrategyKind.NETWORK_FIRST


class TestStrategies:
    """Strategy behaviour against a fake network and real local stores."""

    @pytest.fixture
    def network(self):
        return FakeNetwork()

    @pytest.fixture
    def caches(self, tmp_path):
        return CacheStorage(tmp_path)

    @pytest.fixture
    def queue(self, tmp_path):
        return OfflineRequestQueue(tmp_path)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("offline")

    @pytest.fixture
    def registered_tags(self):
        return []

    @pytest.fixture
    def context(self, network, caches, queue, metrics, registered_tags):
        async def register_sync(tag):
            registered_tags.append(tag)

        client = httpx.AsyncClient(transport=httpx.MockTransport(network))
        return StrategyContext(
            client=client,
            caches=caches,
            queue=queue,
            sync_tag="background-sync",
            register_sync=register_sync,
            metrics=metrics,
        )

    @pytest.fixture
    def strategies(self, context):
        return build_strategies(context)

    @pytest.mark.asyncio
    async def test_network_first_caches_success(self, strategies, caches, network):
        request = httpx.Request("GET", f"{ORIGIN}/api/properties")

        response = await strategies[StrategyKind.NETWORK_FIRST].handle(request)

        assert response.status_code == 200
        cache = await caches.open(API_CACHE)
        cached = await cache.match(f"{ORIGIN}/api/properties")
        assert cached is not None
        assert cached.json() == response.json()

    @pytest.mark.asyncio
    async def test_network_first_falls_back_to_cache(self, strategies, network):
        url = f"{ORIGIN}/api/properties"
        fresh = await strategies[StrategyKind.NETWORK_FIRST].handle(httpx.Request("GET", url))

        network.online = False
        fallback = await strategies[StrategyKind.NETWORK_FIRST].handle(httpx.Request("GET", url))

        assert fallback.status_code == 200
        assert fallback.json() == fresh.json()

    @pytest.mark.asyncio
    async def test_network_first_offline_without_cache(self, strategies, network, metrics):
        network.online = False

        response = await strategies[StrategyKind.NETWORK_FIRST].handle(
            httpx.Request("GET", f"{ORIGIN}/api/tenants")
        )

        assert response.status_code == 503
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"error": "Offline", "message": NO_CACHED_DATA_MESSAGE}
        assert metrics.registry.get_sample_value(
            "offline_cache_strategy_total", {"strategy": "network_first", "result": "offline"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_network_first_does_not_cache_errors(self, context, caches):
        async def server_error(request):
            return httpx.Response(500, json={"error": "boom"})

        context.client = httpx.AsyncClient(transport=httpx.MockTransport(server_error))
        strategies = build_strategies(context)

        response = await strategies[StrategyKind.NETWORK_FIRST].handle(
            httpx.Request("GET", f"{ORIGIN}/api/properties")
        )

        assert response.status_code == 500
        assert await caches.match(f"{ORIGIN}/api/properties") is None

    @pytest.mark.asyncio
    async def test_cache_first_prefers_cache(self, strategies, network):
        url = f"{ORIGIN}/dashboard"
        first = await strategies[StrategyKind.CACHE_FIRST].handle(httpx.Request("GET", url))
        second = await strategies[StrategyKind.CACHE_FIRST].handle(httpx.Request("GET", url))

        assert len(network.calls) == 1
        assert second.content == first.content

    @pytest.mark.asyncio
    async def test_cache_first_stores_in_dynamic_cache(self, strategies, caches):
        await strategies[StrategyKind.CACHE_FIRST].handle(httpx.Request("GET", f"{ORIGIN}/dashboard"))

        cache = await caches.open(DYNAMIC_CACHE)
        assert [str(r.url) for r in await cache.keys()] == [f"{ORIGIN}/dashboard"]

    @pytest.mark.asyncio
    async def test_cache_first_offline_text(self, strategies, network):
        network.online = False

        response = await strategies[StrategyKind.CACHE_FIRST].handle(
            httpx.Request("GET", f"{ORIGIN}/reports")
        )

        assert response.status_code == 503
        assert response.text == "Offline"

    @pytest.mark.asyncio
    async def test_stale_while_revalidate_does_not_wait_for_refresh(self, strategies, caches, network, context):
        """A cached cross-origin response resolves while the refresh hangs."""
        url = "https://fonts.example.net/inter.css"
        cache = await caches.open(DYNAMIC_CACHE)
        await cache.put(url, httpx.Response(200, text="@font-face{}", headers={"content-type": "text/css"}))
        network.hang = asyncio.Event()

        response = await asyncio.wait_for(
            strategies[StrategyKind.STALE_WHILE_REVALIDATE].handle(httpx.Request("GET", url)),
            timeout=2.0,
        )

        assert response.status_code == 200
        assert response.text == "@font-face{}"
        assert len(context.background_tasks) == 1

        for task in list(context.background_tasks):
            task.cancel()
        await asyncio.gather(*context.background_tasks, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_stale_while_revalidate_refreshes_cache(self, strategies, caches, context):
        url = "https://cdn.example.net/logo.svg"
        cache = await caches.open(DYNAMIC_CACHE)
        await cache.put(url, httpx.Response(200, text="old"))

        await strategies[StrategyKind.STALE_WHILE_REVALIDATE].handle(httpx.Request("GET", url))
        await asyncio.gather(*list(context.background_tasks))

        refreshed = await cache.match(url)
        assert refreshed.json()["url"] == url

    @pytest.mark.asyncio
    async def test_stale_while_revalidate_miss_uses_network(self, strategies, network):
        response = await strategies[StrategyKind.STALE_WHILE_REVALIDATE].handle(
            httpx.Request("GET", "https://cdn.example.net/app.css")
        )

        assert response.status_code == 200
        assert len(network.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_while_revalidate_offline_miss(self, strategies, network, metrics):
        network.online = False

        response = await strategies[StrategyKind.STALE_WHILE_REVALIDATE].handle(
            httpx.Request("GET", "https://fonts.example.net/inter.css")
        )

        assert response.status_code == 503
        assert response.text == "Offline"
        assert metrics.registry.get_sample_value(
            "offline_cache_strategy_total", {"strategy": "stale_while_revalidate", "result": "offline"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_stale_while_revalidate_cache_error_falls_back_to_network(self, strategies, caches, tmp_path):
        caches.db_path = tmp_path / "missing-dir" / "caches.db"

        response = await strategies[StrategyKind.STALE_WHILE_REVALIDATE].handle(
            httpx.Request("GET", "https://cdn.example.net/app.css")
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_background_sync_online_passes_through(self, strategies, queue):
        request = httpx.Request("POST", f"{ORIGIN}/api/maintenance", json={"unit": "4B"})

        response = await strategies[StrategyKind.BACKGROUND_SYNC].handle(request)

        assert response.status_code == 200
        assert await queue.count() == 0

    @pytest.mark.asyncio
    async def test_background_sync_queues_json_when_offline(self, strategies, queue, network, registered_tags):
        network.online = False
        payload = {"unit": "4B", "issue": "Leaking faucet"}
        request = httpx.Request(
            "POST",
            f"{ORIGIN}/api/maintenance",
            json=payload,
            headers={"Authorization": "Bearer tenant"},
        )

        response = await strategies[StrategyKind.BACKGROUND_SYNC].handle(request)

        assert response.status_code == 202
        data = response.json()
        assert data["queued"] is True
        assert data["id"]

        record = await queue.get(data["id"])
        assert record is not None
        assert record.url == f"{ORIGIN}/api/maintenance"
        assert record.options.method == "POST"
        assert json.loads(record.options.body) == payload
        assert record.options.headers["authorization"] == "Bearer tenant"
        assert registered_tags == ["background-sync"]

    @pytest.mark.asyncio
    async def test_background_sync_rejects_non_json(self, strategies, queue, network, registered_tags):
        network.online = False
        request = httpx.Request(
            "POST",
            f"{ORIGIN}/api/maintenance",
            content=b"photo-bytes",
            headers={"Content-Type": "multipart/form-data; boundary=x"},
        )

        response = await strategies[StrategyKind.BACKGROUND_SYNC].handle(request)

        assert response.status_code == 503
        assert response.json()["error"] == "Offline"
        assert await queue.count() == 0
        assert registered_tags == []

    @pytest.mark.asyncio
    async def test_background_sync_store_failure(self, strategies, queue, network, tmp_path):
        network.online = False
        (tmp_path / "property-management-pos-offline.db").unlink()
        (tmp_path / "property-management-pos-offline.db").mkdir()

        response = await strategies[StrategyKind.BACKGROUND_SYNC].handle(
            httpx.Request("POST", f"{ORIGIN}/api/maintenance", json={"unit": "1A"})
        )

        assert response.status_code == 503
        assert response.json() == {"error": "Offline", "message": "Failed to queue request for sync"}

    @pytest.mark.asyncio
    async def test_background_sync_registration_failure_still_queues(self, context, queue, network):
        async def broken_register(tag):
            raise RuntimeError("sync unavailable")

        network.online = False
        context.register_sync = broken_register
        strategies = build_strategies(context)

        response = await strategies[StrategyKind.BACKGROUND_SYNC].handle(
            httpx.Request("POST", f"{ORIGIN}/api/maintenance", json={"unit": "2C"})
        )

        assert response.status_code == 202
        assert await queue.count() == 1

    @pytest.mark.asyncio
    async def test_passthrough_propagates_network_errors(self, strategies, network):
        network.online = False

        with pytest.raises(httpx.ConnectError):
            await strategies[StrategyKind.PASSTHROUGH].handle(
                httpx.Request("DELETE", f"{ORIGIN}/api/properties/1")
            )
