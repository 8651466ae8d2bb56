"""Byte-size estimation for cached values."""

import json
from typing import Any


def estimate_size(value: Any) -> int:
    """Approximates the serialized footprint of `value` in bytes.

    Uses the compact JSON encoding (non-JSON types fall back to `str`) so the
    estimate is the same whichever backend eventually stores the value.
    """
    try:
        encoded = json.dumps(value, default=str, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        encoded = repr(value)
    return len(encoded.encode("utf-8"))
