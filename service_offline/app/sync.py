"""
Background sync registration and replay of queued requests.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Set, TYPE_CHECKING

import httpx

from shared.errors import OfflineQueueError
from shared.logging import get_logger
from .models import PendingRequest, ReplaySummary
from .storage.request_queue import OfflineRequestQueue

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


# Recomputed by the HTTP client from the stored url and body
_REPLAY_DROPPED_HEADERS = {"host", "content-length", "transfer-encoding", "connection"}


class BackgroundSyncManager:
    """Holds sync registrations until connectivity returns.

    `dispatch` fires each registered tag at the bound handler once. A tag
    whose handler raises, or whose replay pass was skipped, stays registered
    for the next dispatch.
    """

    def __init__(self):
        self._tags: Set[str] = set()
        self._handler: Optional[Callable[[str], Awaitable[Any]]] = None
        self.logger = get_logger("offline.sync_manager")

    def bind(self, handler: Callable[[str], Awaitable[Any]]) -> None:
        self._handler = handler

    async def register(self, tag: str) -> None:
        self._tags.add(tag)
        self.logger.debug("Registered background sync", tag=tag)

    async def get_tags(self) -> List[str]:
        return sorted(self._tags)

    async def dispatch(self) -> List[str]:
        """Fire every registered tag; return the tags that completed."""
        if self._handler is None:
            self.logger.warning("Sync dispatch requested with no handler bound")
            return []

        completed = []
        for tag in sorted(self._tags):
            self._tags.discard(tag)
            try:
                result = await self._handler(tag)
            except Exception as exc:
                self._tags.add(tag)
                self.logger.error("Background sync handler failed", tag=tag, error=str(exc))
                continue

            if isinstance(result, ReplaySummary) and result.skipped:
                self._tags.add(tag)
                self.logger.info("Background sync deferred", tag=tag)
            else:
                completed.append(tag)
        return completed


class OfflineQueueReplayer:
    """Replays queued requests with at-least-once delivery.

    A record is delivered when the server answers with a status below 500.
    Transport errors and 5xx answers count as failed attempts; a record that
    reaches `max_attempts` failures moves to the dead-letter store
    (`max_attempts=0` retries forever).

    A replay requested while a pass is running is skipped, and the running
    pass reads the queue once more before it finishes so records queued in
    the meantime are not left behind.
    """

    def __init__(
        self,
        queue: OfflineRequestQueue,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = 10,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.queue = queue
        self.client = client
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = get_logger("offline.replayer")
        self._lock = asyncio.Lock()
        self._rerun_requested = False

    async def replay(self) -> ReplaySummary:
        """Run one replay pass over every queued record."""
        if self._lock.locked():
            self._rerun_requested = True
            self.logger.info("Background sync already in progress; skipping")
            return ReplaySummary(skipped=True)

        async with self._lock:
            start = time.perf_counter()
            summary = ReplaySummary()
            seen = set()
            while True:
                self._rerun_requested = False
                try:
                    records = await self.queue.get_all()
                except OfflineQueueError as exc:
                    self.logger.error("Background sync failed", error=exc.message, details=exc.details)
                    return summary

                for record in records:
                    # Each record gets at most one attempt per pass
                    if record.id in seen:
                        continue
                    seen.add(record.id)
                    summary.attempted += 1
                    try:
                        await self._replay_record(record, summary)
                    except OfflineQueueError as exc:
                        self.logger.error(
                            "Offline store error during replay",
                            request_id=record.id,
                            error=exc.message,
                            details=exc.details,
                        )

                if not self._rerun_requested:
                    break

            duration = time.perf_counter() - start
            if self.metrics:
                self.metrics.observe_histogram("offline_replay_duration_seconds", duration)
            self.logger.info(
                "Background sync completed",
                attempted=summary.attempted,
                delivered=summary.delivered,
                failed=summary.failed,
                dead_lettered=summary.dead_lettered,
                duration_ms=round(duration * 1000, 2),
            )
            return summary

    async def _replay_record(self, record: PendingRequest, summary: ReplaySummary) -> None:
        headers = {
            name: value
            for name, value in record.options.headers.items()
            if name.lower() not in _REPLAY_DROPPED_HEADERS
        }
        body = record.options.body.encode("utf-8") if record.options.body is not None else None

        try:
            response = await self.client.request(
                record.options.method,
                record.url,
                headers=headers,
                content=body,
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        else:
            if response.status_code < 500:
                await self.queue.remove(record.id)
                summary.delivered += 1
                self._count("delivered")
                self.logger.info(
                    "Request synced successfully",
                    request_id=record.id,
                    status_code=response.status_code,
                )
                return
            error = f"HTTP {response.status_code}"

        summary.failed += 1
        self._count("failed")
        self.logger.error("Background sync request failed", request_id=record.id, url=record.url, error=error)

        attempts = await self.queue.record_failure(record.id, error)
        if self.max_attempts and attempts >= self.max_attempts:
            if await self.queue.dead_letter(record.id):
                summary.dead_lettered += 1
                self._count("dead_lettered")

    def _count(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("offline_replay_total", result=result)
