from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from cryptomon.utils.types import Alert, FiringDecision, PriceSnapshot


def crosses(alert: Alert, price: Decimal) -> bool:
    """
    Threshold test, boundary inclusive:
      - ABOVE -> price >= target
      - BELOW -> price <= target
    """
    if alert.direction == "ABOVE":
        return price >= alert.target_price
    if alert.direction == "BELOW":
        return price <= alert.target_price
    return False


def evaluate(snapshot: PriceSnapshot, candidates: Iterable[Alert]) -> list[FiringDecision]:
    """
    Decide which candidate alerts fire on `snapshot`.

    Pure: no I/O, no clock reads, no state kept between calls. The decision
    timestamp is the snapshot's observation time. Output order follows the
    candidate order; identical alerts each get their own decision.

    Candidates that are not ACTIVE or belong to another symbol are ignored.
    """
    decisions: list[FiringDecision] = []
    for alert in candidates:
        if alert.state != "ACTIVE" or alert.symbol != snapshot.symbol:
            continue
        if crosses(alert, snapshot.price):
            decisions.append(FiringDecision(alert_id=alert.id, snapshot=snapshot, ts=snapshot.ts))
    return decisions
