"""
Gateway caching package.

Memoizes JSON read responses per caller and exact URL so repeated reads of
the same listing or detail route skip the upstream property API.
"""

from .middleware import ResponseCacheMiddleware, resolve_cache_subject, request_url_key
from .response_cache import (
    InMemoryResponseStore,
    RedisResponseStore,
    ResponseCacheStore,
    build_cache_key,
    create_response_store,
)

__all__ = [
    "ResponseCacheMiddleware",
    "ResponseCacheStore",
    "InMemoryResponseStore",
    "RedisResponseStore",
    "build_cache_key",
    "create_response_store",
    "request_url_key",
    "resolve_cache_subject",
]
