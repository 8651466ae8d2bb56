"""API Resilience Implementations.

Contains the concurrency-limited request throttle, the circuit breaker,
retry backoff computation and a sliding-window rate limiter.
Bounded Context: API Resilience
"""
