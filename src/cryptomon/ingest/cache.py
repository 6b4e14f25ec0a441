from __future__ import annotations
import time
from typing import Callable, Optional

from cryptomon.utils.types import PriceSnapshot


class SnapshotCache:
    """
    Most recent snapshot per symbol, valid for ttl_s after it was stored.
    Owned by the price source; expired entries are never returned.
    """
    def __init__(self, ttl_s: float, max_size: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock
        self._store: dict[str, tuple[float, PriceSnapshot]] = {}  # symbol -> (expire_ts, snapshot)

    def get(self, symbol: str) -> Optional[PriceSnapshot]:
        entry = self._store.get(symbol)
        if entry is None:
            return None
        exp, snap = entry
        if exp <= self._clock():
            # expired; cleanup
            self._store.pop(symbol, None)
            return None
        return snap

    def put(self, snap: PriceSnapshot) -> None:
        if self.ttl_s <= 0:
            return
        # opportunistic cleanup when large
        if len(self._store) >= self.max_size:
            now = self._clock()
            for k, (exp, _) in list(self._store.items()):
                if exp <= now:
                    self._store.pop(k, None)
            if len(self._store) >= self.max_size:
                # still full: drop the oldest quarter
                for k in list(self._store)[: max(1, self.max_size // 4)]:
                    self._store.pop(k, None)
        self._store[snap.symbol] = (self._clock() + self.ttl_s, snap)

    def __len__(self) -> int:
        return len(self._store)
