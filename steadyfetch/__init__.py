"""steadyfetch: a resilient client data-access layer.

Concurrency-limited dispatch, multi-tier caching, offline-capable fetch
strategies and optimistic mutations with rollback, on asyncio.
"""

__version__ = "0.1.0"
