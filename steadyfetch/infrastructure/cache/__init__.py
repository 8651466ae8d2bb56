"""Cache Implementations.

Provides the multi-tier CacheStore (memory, session and local tiers with TTLs,
eviction and quota degradation) and the strategy-based OfflineCache with its
deferred-write sync queue.
Bounded Context: Cache Management
"""
