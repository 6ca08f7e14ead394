"""
Response cache middleware for Gateway read routes.
"""

import hashlib
from typing import Callable, Iterable, Optional, TYPE_CHECKING

from fastapi import Request, Response

from shared.logging import get_logger
from .response_cache import ResponseCacheStore, build_cache_key

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


PUBLIC_SUBJECT = "public"
ANONYMOUS_SUBJECT = "anonymous"


def request_url_key(request: Request) -> str:
    """Exact URL used for caching: path plus query string when present."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def resolve_cache_subject(request: Request) -> str:
    """Identify the caller a cached response belongs to.

    Prefers an authenticated user placed on request state by an auth layer,
    then the credentials the caller presented.
    """
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return f"user:{user_info['user_id']}"

    authorization = request.headers.get("Authorization")
    if authorization:
        return f"bearer:{_digest(authorization)}"

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"apikey:{_digest(api_key)}"

    return ANONYMOUS_SUBJECT


class ResponseCacheMiddleware:
    """Memoize JSON bodies of GET responses per (caller subject, exact URL)."""

    def __init__(
        self,
        store: ResponseCacheStore,
        *,
        path_prefixes: Iterable[str] = ("/api/",),
        public_paths: Iterable[str] = (),
        subject_resolver: Callable[[Request], str] = resolve_cache_subject,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.path_prefixes = tuple(path_prefixes)
        self.public_paths = tuple(public_paths)
        self.subject_resolver = subject_resolver
        self.metrics = metrics
        self.logger = get_logger("gateway.response_cache_middleware")

    def _is_cached_path(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.path_prefixes)

    def _subject_for(self, request: Request) -> str:
        if any(request.url.path.startswith(path) for path in self.public_paths):
            return PUBLIC_SUBJECT
        return self.subject_resolver(request)

    def _resource_root(self, path: str) -> str:
        """Collection path a write to `path` affects, e.g. /api/properties."""
        for prefix in self.path_prefixes:
            if path.startswith(prefix):
                segment = path[len(prefix):].split("/", 1)[0]
                return f"{prefix}{segment}"
        return path

    def _count(self, metric_name: str, amount: float = 1) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, amount)

    async def __call__(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not self._is_cached_path(path):
            return await call_next(request)

        if request.method != "GET":
            response = await call_next(request)
            if request.method != "HEAD" and response.status_code < 400:
                await self._invalidate(path)
            return response

        key = build_cache_key(self._subject_for(request), request_url_key(request))
        cached = await self.store.get(key)
        if cached is not None:
            self._count("response_cache_hits_total")
            self.logger.debug("Response cache hit", path=path)
            return Response(content=cached, media_type="application/json")

        self._count("response_cache_misses_total")
        response = await call_next(request)

        content_type = response.headers.get("content-type", "")
        if response.status_code != 200 or "application/json" not in content_type:
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        if await self.store.set(key, body):
            self._count("response_cache_stores_total")
            self.logger.debug("Response cached", path=path, size=len(body))

        replayed = Response(content=body, status_code=response.status_code)
        # Keep repeated headers such as Set-Cookie intact
        replayed.raw_headers = list(response.raw_headers)
        return replayed

    async def _invalidate(self, path: str) -> None:
        root = self._resource_root(path)
        removed = await self.store.invalidate_path(root)
        if removed:
            self._count("response_cache_invalidations_total", removed)
            self.logger.info("Invalidated cached responses", path_prefix=root, removed=removed)
