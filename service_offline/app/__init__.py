"""
Offline Service package for the property-management access layer.

Client-side caching and offline resilience for the property app:
- Per-resource cache strategies (cache-first, network-first,
  stale-while-revalidate) over persistent named caches
- A durable queue of mutating requests that failed for lack of network,
  replayed by background sync
- Explicitly triggered pruning of stale cache entries

Structure:
- app.worker: OfflineWorker wiring, lifecycle and event handling.
- app.strategies: Strategy selection and the strategy implementations.
- app.storage: Named caches and the pending request store.
- app.sync: Sync registrations and queue replay.
- app.maintenance: Cache cleanup sweep.
"""

from .worker import OfflineWorker

__all__ = ["OfflineWorker"]
