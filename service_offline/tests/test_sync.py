"""
Unit tests for background sync registration and queue replay.
"""

import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from service_offline.app.models import ReplaySummary, RequestOptions
from service_offline.app.storage.request_queue import OfflineRequestQueue
from service_offline.app.sync import BackgroundSyncManager, OfflineQueueReplayer
from shared.errors import OfflineQueueError
from shared.metrics import MetricsCollector


ORIGIN = "https://app.example.com"


def _json_options(payload, **headers) -> RequestOptions:
    return RequestOptions(
        method="POST",
        headers={"content-type": "application/json", **headers},
        body=json.dumps(payload),
    )


class FakeServer:
    """Replay target: answers per-path, or fails with a transport error."""

    def __init__(self):
        self.received = []
        self.unreachable_paths = set()
        self.status_by_path = {}
        self.gate = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.gate is not None:
            await self.gate.wait()
        if request.url.path in self.unreachable_paths:
            raise httpx.ConnectError("network unreachable", request=request)
        self.received.append(request)
        return httpx.Response(self.status_by_path.get(request.url.path, 201), json={"ok": True})


class TestOfflineQueueReplayer:
    """Test cases for OfflineQueueReplayer."""

    @pytest.fixture
    def queue(self, tmp_path):
        return OfflineRequestQueue(tmp_path)

    @pytest.fixture
    def server(self):
        return FakeServer()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("offline")

    @pytest.fixture
    def replayer(self, queue, server, metrics):
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return OfflineQueueReplayer(queue, client, max_attempts=3, metrics=metrics)

    @pytest.mark.asyncio
    async def test_successful_replay_empties_store(self, replayer, queue, server):
        await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "4B"}, authorization="Bearer t"))

        summary = await replayer.replay()

        assert summary.attempted == 1
        assert summary.delivered == 1
        assert await queue.get_all() == []

        sent = server.received[0]
        assert sent.method == "POST"
        assert json.loads(sent.content) == {"unit": "4B"}
        assert sent.headers["authorization"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_failure_isolated_per_record(self, replayer, queue, server):
        """A failing record stays queued; later records still deliver."""
        first = await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        await queue.add(f"{ORIGIN}/api/conversations/9/messages", _json_options({"text": "hi"}))
        server.unreachable_paths.add("/api/maintenance")

        summary = await replayer.replay()

        remaining = await queue.get_all()
        assert [record.id for record in remaining] == [first]
        assert remaining[0].attempts == 1
        assert "network unreachable" in remaining[0].last_error
        assert summary.delivered == 1
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_server_error_counts_as_failure(self, replayer, queue, server):
        record_id = await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        server.status_by_path["/api/maintenance"] = 503

        await replayer.replay()

        record = await queue.get(record_id)
        assert record.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_client_error_counts_as_delivered(self, replayer, queue, server):
        await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": ""}))
        server.status_by_path["/api/maintenance"] = 422

        summary = await replayer.replay()

        assert summary.delivered == 1
        assert await queue.count() == 0

    @pytest.mark.asyncio
    async def test_replays_in_queue_order(self, replayer, queue, server):
        for n in range(3):
            await queue.add(f"{ORIGIN}/api/conversations/{n}/messages", _json_options({"n": n}))

        await replayer.replay()

        assert [request.url.path for request in server.received] == [
            "/api/conversations/0/messages",
            "/api/conversations/1/messages",
            "/api/conversations/2/messages",
        ]

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, replayer, queue, server, metrics):
        record_id = await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        server.unreachable_paths.add("/api/maintenance")

        for _ in range(3):
            summary = await replayer.replay()

        assert summary.dead_lettered == 1
        assert await queue.count() == 0
        assert [record.id for record in await queue.get_dead_letters()] == [record_id]
        assert metrics.registry.get_sample_value("offline_replay_total", {"result": "dead_lettered"}) == 1.0

    @pytest.mark.asyncio
    async def test_unlimited_attempts(self, queue, server):
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        replayer = OfflineQueueReplayer(queue, client, max_attempts=0)
        await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        server.unreachable_paths.add("/api/maintenance")

        for _ in range(5):
            await replayer.replay()

        assert (await queue.get_all())[0].attempts == 5
        assert await queue.get_dead_letters() == []

    @pytest.mark.asyncio
    async def test_overlapping_replay_skipped(self, replayer, queue, server):
        await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        server.gate = asyncio.Event()

        running = asyncio.ensure_future(replayer.replay())
        await asyncio.sleep(0.05)
        second = await replayer.replay()
        server.gate.set()
        first = await running

        assert second.skipped is True
        assert first.delivered == 1
        assert len(server.received) == 1

    @pytest.mark.asyncio
    async def test_record_queued_during_pass_is_delivered(self, replayer, queue, server):
        """A sync event that lands mid-pass makes the running pass read the queue again."""
        stuck = await queue.add(f"{ORIGIN}/api/maintenance", _json_options({"unit": "1A"}))
        server.unreachable_paths.add("/api/maintenance")
        server.gate = asyncio.Event()

        running = asyncio.ensure_future(replayer.replay())
        await asyncio.sleep(0.05)
        await queue.add(f"{ORIGIN}/api/conversations/9/messages", _json_options({"text": "hi"}))
        second = await replayer.replay()
        server.gate.set()
        first = await running

        assert second.skipped is True
        assert first.delivered == 1
        assert first.failed == 1
        assert [request.url.path for request in server.received] == ["/api/conversations/9/messages"]

        remaining = await queue.get_all()
        assert [record.id for record in remaining] == [stuck]
        assert remaining[0].attempts == 1

    @pytest.mark.asyncio
    async def test_store_failure_ends_pass(self, replayer, queue):
        queue.get_all = AsyncMock(side_effect=OfflineQueueError())

        summary = await replayer.replay()

        assert summary.attempted == 0


class TestBackgroundSyncManager:
    """Test cases for BackgroundSyncManager."""

    @pytest.fixture
    def manager(self):
        return BackgroundSyncManager()

    @pytest.mark.asyncio
    async def test_dispatch_fires_registered_tags(self, manager):
        handler = AsyncMock()
        manager.bind(handler)
        await manager.register("background-sync")
        await manager.register("background-sync")

        completed = await manager.dispatch()

        assert completed == ["background-sync"]
        handler.assert_awaited_once_with("background-sync")
        assert await manager.get_tags() == []

    @pytest.mark.asyncio
    async def test_failed_handler_keeps_tag(self, manager):
        manager.bind(AsyncMock(side_effect=RuntimeError("offline again")))
        await manager.register("background-sync")

        completed = await manager.dispatch()

        assert completed == []
        assert await manager.get_tags() == ["background-sync"]

    @pytest.mark.asyncio
    async def test_skipped_replay_keeps_tag(self, manager):
        manager.bind(AsyncMock(return_value=ReplaySummary(skipped=True)))
        await manager.register("background-sync")

        completed = await manager.dispatch()

        assert completed == []
        assert await manager.get_tags() == ["background-sync"]

    @pytest.mark.asyncio
    async def test_dispatch_without_handler(self, manager):
        await manager.register("background-sync")
        assert await manager.dispatch() == []
        assert await manager.get_tags() == ["background-sync"]
