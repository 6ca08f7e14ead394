"""
Cache maintenance: prune entries whose Date header is too old.
"""

from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, TYPE_CHECKING

from shared.logging import get_logger
from .storage.cache_storage import CacheStorage

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_AGE = timedelta(hours=24)

logger = get_logger("offline.maintenance")


def _response_date(value: str) -> Optional[datetime]:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def cleanup_caches(
    storage: CacheStorage,
    *,
    max_age: timedelta = DEFAULT_MAX_AGE,
    now: Optional[datetime] = None,
    metrics: Optional["MetricsCollector"] = None,
) -> int:
    """Delete cached responses older than `max_age` across every cache.

    Entries without a usable Date header are left alone. Errors abort the
    sweep and are logged once; the number deleted so far is returned.
    """
    now = now or datetime.now(timezone.utc)
    deleted = 0

    try:
        for cache_name in await storage.keys():
            cache = await storage.open(cache_name)
            for request in await cache.keys():
                response = await cache.match(request, ignore_vary=True)
                date_header = response.headers.get("date") if response is not None else None
                if not date_header:
                    continue

                response_date = _response_date(date_header)
                if response_date is None:
                    continue

                if now - response_date > max_age:
                    await cache.delete(request)
                    deleted += 1
                    logger.info("Cleaned up old cache entry", cache_name=cache_name, url=str(request.url))
    except Exception as exc:
        logger.error("Cache cleanup failed", error=str(exc), deleted=deleted)

    if metrics and deleted:
        metrics.increment_counter("offline_cache_cleanup_deleted_total", deleted)
    return deleted
