"""Retry delay computation."""

from steadyfetch.domain.models.common import BackoffPolicy


def compute_backoff(attempt: int, policy: BackoffPolicy) -> float:
    """Returns the delay before retry number `attempt` (1-based).

    With a factor of 1 the delay is constant; with 2 it doubles per attempt.
    Never exceeds `max_delay`.
    """
    attempt = max(1, attempt)
    delay = policy["initial_delay"] * (policy["factor"] ** (attempt - 1))
    return max(0.0, min(delay, policy["max_delay"]))
