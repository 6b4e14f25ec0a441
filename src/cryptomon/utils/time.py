from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Optional

# provider timestamps above this are in milliseconds
_MS_THRESHOLD = 1e12


def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()


def epoch_seconds(value: Any) -> Optional[float]:
    """
    Normalize a provider timestamp to epoch seconds.
    Accepts seconds or milliseconds; None for anything non-numeric or <= 0.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    if value <= 0:
        return None
    ts = float(value)
    return ts / 1000.0 if ts > _MS_THRESHOLD else ts
