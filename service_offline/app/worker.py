"""
Offline worker: request routing, lifecycle, messages and background sync.

One worker instance owns the named caches, the durable request queue and
the sync registrations for an application origin. Construct it once at
start-up and pass it to whatever dispatches requests.
"""

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from shared.config import BaseConfig
from shared.errors import ServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .maintenance import cleanup_caches
from .models import ReplaySummary, WorkerMessageType, WorkerState
from .storage.cache_storage import KNOWN_CACHES, STATIC_CACHE, CacheStorage
from .storage.request_queue import OfflineRequestQueue
from .strategies import StrategyContext, StrategyKind, build_strategies, select_strategy
from .sync import BackgroundSyncManager, OfflineQueueReplayer


class OfflineWorker:
    """Client-side cache and offline sync layer for the property app."""

    def __init__(
        self,
        config: Optional[BaseConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        caches: Optional[CacheStorage] = None,
        queue: Optional[OfflineRequestQueue] = None,
        sync_manager: Optional[BackgroundSyncManager] = None,
        sync_supported: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or BaseConfig()
        self.logger = get_logger("offline.worker")
        self.metrics = metrics or MetricsCollector("offline")

        data_dir = Path(self.config.offline_data_dir)
        self.origin = self.config.offline_origin
        self.sync_tag = self.config.offline_sync_tag
        self.sync_prefixes = tuple(self.config.offline_sync_prefixes)

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.upstream_timeout_seconds)
        self.caches = caches or CacheStorage(data_dir)
        self.queue = queue or OfflineRequestQueue(data_dir)

        if sync_supported:
            self.sync_manager: Optional[BackgroundSyncManager] = sync_manager or BackgroundSyncManager()
            self.sync_manager.bind(self.handle_sync)
        else:
            self.sync_manager = None

        self.replayer = OfflineQueueReplayer(
            self.queue,
            self.client,
            max_attempts=self.config.offline_max_replay_attempts,
            metrics=self.metrics,
        )
        self.context = StrategyContext(
            client=self.client,
            caches=self.caches,
            queue=self.queue,
            sync_tag=self.sync_tag,
            register_sync=self.sync_manager.register if self.sync_manager else None,
            metrics=self.metrics,
        )
        self.strategies = build_strategies(self.context)
        self.state = WorkerState.PARSED

    # Request routing

    def strategy_for(self, request: httpx.Request) -> StrategyKind:
        return select_strategy(request.method, str(request.url), self.origin, self.sync_prefixes)

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        """Serve a request through the strategy its method, origin and path select."""
        kind = self.strategy_for(request)
        self.logger.debug("Dispatching fetch", url=str(request.url), method=request.method, strategy=kind.value)
        return await self.strategies[kind].handle(request)

    # Lifecycle

    async def install(self) -> None:
        """Precache static assets; all of them or none."""
        self.state = WorkerState.INSTALLING
        self.logger.info("Installing offline worker", assets=len(self.config.offline_static_assets))

        fetched = []
        try:
            for asset in self.config.offline_static_assets:
                request = httpx.Request("GET", httpx.URL(self.origin).join(asset))
                response = await self.client.send(request)
                if not response.is_success:
                    raise ServiceError(
                        "Static asset precache failed",
                        details={"url": str(request.url), "status_code": response.status_code},
                    )
                fetched.append((request, response))
        except (httpx.HTTPError, ServiceError) as exc:
            self.state = WorkerState.REDUNDANT
            self.logger.error("Offline worker install failed", error=str(exc))
            raise

        cache = await self.caches.open(STATIC_CACHE)
        for request, response in fetched:
            await cache.put(request, response)

        self.state = WorkerState.INSTALLED
        self.logger.info("Static assets cached", count=len(fetched))

        if self.config.offline_skip_waiting_on_install:
            await self.skip_waiting()

    async def skip_waiting(self) -> None:
        """Activate a waiting worker immediately."""
        if self.state == WorkerState.INSTALLED:
            await self.activate()

    async def activate(self) -> None:
        """Drop caches from earlier versions and start serving."""
        self.state = WorkerState.ACTIVATING
        for cache_name in await self.caches.keys():
            if cache_name not in KNOWN_CACHES:
                self.logger.info("Deleting old cache", cache_name=cache_name)
                await self.caches.delete(cache_name)
        self.state = WorkerState.ACTIVATED
        self.logger.info("Offline worker activated")

    # Events from the hosting page and the platform

    async def handle_message(self, message: Optional[Dict[str, Any]]) -> None:
        if not message:
            return
        message_type = message.get("type")
        if message_type == WorkerMessageType.CACHE_CLEANUP.value:
            await self.cleanup_caches()
        elif message_type == WorkerMessageType.SKIP_WAITING.value:
            await self.skip_waiting()
        else:
            self.logger.debug("Ignoring worker message", type=message_type)

    async def handle_sync(self, tag: str) -> Optional[ReplaySummary]:
        self.logger.info("Background sync", tag=tag)
        if tag != self.sync_tag:
            return None
        return await self.replayer.replay()

    async def cleanup_caches(self) -> int:
        max_age = timedelta(hours=self.config.offline_cache_max_age_hours)
        return await cleanup_caches(self.caches, max_age=max_age, metrics=self.metrics)

    # Shutdown

    async def drain(self) -> None:
        """Wait for outstanding background cache refreshes."""
        if self.context.background_tasks:
            await asyncio.gather(*list(self.context.background_tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self.context.background_tasks):
            task.cancel()
        await self.drain()
        if self._owns_client:
            await self.client.aclose()
