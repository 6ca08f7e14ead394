"""
Fetch strategies for the offline worker.

Every outgoing request is routed to exactly one strategy, chosen by
`select_strategy` from the request method, origin and path alone.
"""

import asyncio
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set, TYPE_CHECKING

import httpx

from shared.errors import AccessLayerException, UnsupportedPayloadError
from shared.logging import get_logger
from .models import RequestOptions
from .storage.cache_storage import API_CACHE, DYNAMIC_CACHE, CacheStorage
from .storage.request_queue import OfflineRequestQueue

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


API_PREFIX = "/api/"
SYNC_ELIGIBLE_METHODS = ("POST",)

NO_CACHED_DATA_MESSAGE = "No network connection and cached data not available"


class StrategyKind(str, Enum):
    """How a request is served."""

    BACKGROUND_SYNC = "background_sync"
    PASSTHROUGH = "passthrough"
    NETWORK_FIRST = "network_first"
    CACHE_FIRST = "cache_first"
    STALE_WHILE_REVALIDATE = "stale_while_revalidate"


def origin_of(url: str) -> str:
    """scheme://host:port with the default port filled in."""
    parsed = httpx.URL(url)
    port = parsed.port or {"http": 80, "https": 443}.get(parsed.scheme)
    return f"{parsed.scheme}://{parsed.host}:{port}"


def select_strategy(method: str, url: str, origin: str, sync_prefixes: Iterable[str]) -> StrategyKind:
    """Pick the strategy for a request."""
    same_origin = origin_of(url) == origin_of(origin)
    path = httpx.URL(url).path

    if method.upper() != "GET":
        if (
            method.upper() in SYNC_ELIGIBLE_METHODS
            and same_origin
            and any(path.startswith(prefix) for prefix in sync_prefixes)
        ):
            return StrategyKind.BACKGROUND_SYNC
        return StrategyKind.PASSTHROUGH

    if not same_origin:
        return StrategyKind.STALE_WHILE_REVALIDATE
    if path.startswith(API_PREFIX):
        return StrategyKind.NETWORK_FIRST
    return StrategyKind.CACHE_FIRST


def offline_json_response(message: str, request: Optional[httpx.Request] = None) -> httpx.Response:
    return httpx.Response(
        503,
        json={"error": "Offline", "message": message},
        request=request,
    )


def offline_text_response(request: Optional[httpx.Request] = None) -> httpx.Response:
    return httpx.Response(503, text="Offline", request=request)


@dataclass
class StrategyContext:
    """Collaborators shared by all strategies of one worker."""

    client: httpx.AsyncClient
    caches: CacheStorage
    queue: OfflineRequestQueue
    sync_tag: str
    register_sync: Optional[Callable[[str], Awaitable[None]]] = None
    metrics: Optional["MetricsCollector"] = None
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        """Run a coroutine in the background, tracked until it finishes."""
        task = asyncio.ensure_future(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task


class FetchStrategy:
    """Base class for strategies."""

    kind: StrategyKind

    def __init__(self, context: StrategyContext):
        self.context = context
        self.logger = get_logger(f"offline.strategy.{self.kind.value}")

    async def handle(self, request: httpx.Request) -> httpx.Response:
        raise NotImplementedError

    async def _network(self, request: httpx.Request) -> httpx.Response:
        return await self.context.client.send(request)

    async def _store(self, cache_name: str, request: httpx.Request, response: httpx.Response) -> None:
        """Write a successful response to a named cache; failures are logged only."""
        if not response.is_success:
            return
        try:
            cache = await self.context.caches.open(cache_name)
            await cache.put(request, response)
        except (sqlite3.Error, OSError) as exc:
            self.logger.warning("Failed to cache response", url=str(request.url), cache_name=cache_name, error=str(exc))

    def _record(self, result: str) -> None:
        if self.context.metrics:
            self.context.metrics.increment_counter(
                "offline_cache_strategy_total", strategy=self.kind.value, result=result
            )


class PassthroughStrategy(FetchStrategy):
    """Forward to the network untouched."""

    kind = StrategyKind.PASSTHROUGH

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self._record("network")
        return await self._network(request)


class NetworkFirstStrategy(FetchStrategy):
    """Network, falling back to any cached copy, then to an offline error."""

    kind = StrategyKind.NETWORK_FIRST

    async def handle(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._network(request)
        except httpx.TransportError as exc:
            self.logger.info("Network failed, trying cache", url=str(request.url), error=str(exc))
        else:
            await self._store(API_CACHE, request, response)
            self._record("network")
            return response

        try:
            cached = await self.context.caches.match(request)
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Cache lookup failed", url=str(request.url), error=str(exc))
            cached = None

        if cached is not None:
            self._record("cache")
            return cached

        self._record("offline")
        return offline_json_response(NO_CACHED_DATA_MESSAGE, request)


class CacheFirstStrategy(FetchStrategy):
    """Any cached copy, else network into the dynamic cache."""

    kind = StrategyKind.CACHE_FIRST

    async def handle(self, request: httpx.Request) -> httpx.Response:
        try:
            cached = await self.context.caches.match(request)
            if cached is not None:
                self._record("cache")
                return cached

            response = await self._network(request)
            await self._store(DYNAMIC_CACHE, request, response)
            self._record("network")
            return response
        except Exception as exc:
            self.logger.error("Cache first strategy failed", url=str(request.url), error=str(exc))
            self._record("offline")
            return offline_text_response(request)


class StaleWhileRevalidateStrategy(FetchStrategy):
    """Cached copy immediately, refreshed in the background for next time."""

    kind = StrategyKind.STALE_WHILE_REVALIDATE

    async def handle(self, request: httpx.Request) -> httpx.Response:
        try:
            cache = await self.context.caches.open(DYNAMIC_CACHE)
            cached = await cache.match(request)
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Cache lookup failed", url=str(request.url), error=str(exc))
            cached = None

        if cached is None:
            try:
                response = await self._refresh(request)
            except httpx.TransportError as exc:
                self.logger.info("Network failed with nothing cached", url=str(request.url), error=str(exc))
                self._record("offline")
                return offline_text_response(request)
            self._record("network")
            return response

        self.context.spawn(self._refresh_quietly(request))
        self._record("cache")
        return cached

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        response = await self._network(request)
        await self._store(DYNAMIC_CACHE, request, response)
        return response

    async def _refresh_quietly(self, request: httpx.Request) -> None:
        try:
            await self._refresh(request)
        except Exception as exc:
            self.logger.debug("Background revalidation failed", url=str(request.url), error=str(exc))


class BackgroundSyncStrategy(FetchStrategy):
    """Network; on connectivity loss queue the request for later delivery."""

    kind = StrategyKind.BACKGROUND_SYNC

    async def handle(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._network(request)
        except httpx.TransportError as exc:
            self.logger.info("Network failed, queueing request", url=str(request.url), error=str(exc))
        else:
            self._record("network")
            return response

        try:
            record_id = await self._enqueue(request)
        except AccessLayerException as exc:
            self.logger.warning("Request not queued", url=str(request.url), code=exc.code, error=exc.message)
            self._record("rejected")
            return offline_json_response(exc.message, request)

        self._record("queued")
        return httpx.Response(202, json={"queued": True, "id": record_id}, request=request)

    async def _enqueue(self, request: httpx.Request) -> str:
        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type:
            raise UnsupportedPayloadError(details={"content_type": content_type})

        try:
            body = (await request.aread()).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise UnsupportedPayloadError(details={"error": str(exc)}) from exc

        options = RequestOptions(
            method=request.method,
            headers=dict(request.headers),
            body=body,
        )
        record_id = await self.context.queue.add(str(request.url), options)
        if self.context.metrics:
            self.context.metrics.increment_counter("offline_requests_queued_total")

        if self.context.register_sync is not None:
            try:
                await self.context.register_sync(self.context.sync_tag)
            except Exception as exc:
                self.logger.warning("Background sync registration failed", tag=self.context.sync_tag, error=str(exc))

        return record_id


STRATEGY_CLASSES = {
    StrategyKind.PASSTHROUGH: PassthroughStrategy,
    StrategyKind.NETWORK_FIRST: NetworkFirstStrategy,
    StrategyKind.CACHE_FIRST: CacheFirstStrategy,
    StrategyKind.STALE_WHILE_REVALIDATE: StaleWhileRevalidateStrategy,
    StrategyKind.BACKGROUND_SYNC: BackgroundSyncStrategy,
}


def build_strategies(context: StrategyContext) -> Dict[StrategyKind, FetchStrategy]:
    return {kind: cls(context) for kind, cls in STRATEGY_CLASSES.items()}
