"""
Durable on-device stores for the offline worker.
"""

from .cache_storage import (
    API_CACHE,
    DYNAMIC_CACHE,
    KNOWN_CACHES,
    STATIC_CACHE,
    CacheStorage,
    NamedCache,
)
from .request_queue import OFFLINE_DB_NAME, OFFLINE_DB_VERSION, OfflineRequestQueue, generate_request_id

__all__ = [
    "API_CACHE",
    "DYNAMIC_CACHE",
    "KNOWN_CACHES",
    "STATIC_CACHE",
    "CacheStorage",
    "NamedCache",
    "OFFLINE_DB_NAME",
    "OFFLINE_DB_VERSION",
    "OfflineRequestQueue",
    "generate_request_id",
]
