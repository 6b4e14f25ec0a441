from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal, Optional

# ---- alert domain ----

Direction = Literal["ABOVE", "BELOW"]
AlertState = Literal["ACTIVE", "FIRED", "DELETED"]

# outcome of the store's compare-and-set transition
MarkResult = Literal["fired", "not_found", "already_fired"]

DIRECTIONS: tuple[str, ...] = ("ABOVE", "BELOW")
STATES: tuple[str, ...] = ("ACTIVE", "FIRED", "DELETED")


def normalize_symbol(symbol: str) -> str:
    """Canonical ticker form: stripped, upper-case."""
    return symbol.strip().upper()


@dataclass(slots=True, frozen=True)
class Alert:
    id: str
    owner: str
    symbol: str
    target_price: Decimal
    direction: Direction
    state: AlertState = "ACTIVE"
    created_at: float = 0.0  # epoch seconds, informational


@dataclass(slots=True, frozen=True)
class PriceSnapshot:
    symbol: str
    price: Decimal
    ts: float  # observation time, epoch seconds
    source: str


@dataclass(slots=True, frozen=True)
class FiringDecision:
    alert_id: str
    snapshot: PriceSnapshot
    ts: float  # decision time, epoch seconds

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "symbol": self.snapshot.symbol,
            "price": str(self.snapshot.price),
            "observed_at": self.snapshot.ts,
            "source": self.snapshot.source,
            "decided_at": self.ts,
        }


# ---- delivery ----

@dataclass(slots=True, frozen=True)
class Recipient:
    channel: str   # "telegram" | "console" | ...
    address: str   # chat id or channel-specific handle


@dataclass(slots=True)
class DeliveryResult:
    delivered: bool
    attempts: int = 0
    reason: Optional[str] = None
    dead_lettered: bool = False

    @classmethod
    def ok(cls, attempts: int) -> "DeliveryResult":
        return cls(delivered=True, attempts=attempts)

    @classmethod
    def failed(cls, reason: str, attempts: int, dead_lettered: bool) -> "DeliveryResult":
        return cls(delivered=False, attempts=attempts, reason=reason, dead_lettered=dead_lettered)


# ---- price acquisition ----

@dataclass(slots=True)
class FetchResult:
    """
    Partial-success result of one fetch: snapshots for the symbols that
    resolved, one exception per symbol that did not.
    """
    snapshots: dict[str, PriceSnapshot] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)

    def merge(self, other: "FetchResult") -> None:
        self.snapshots.update(other.snapshots)
        self.errors.update(other.errors)
