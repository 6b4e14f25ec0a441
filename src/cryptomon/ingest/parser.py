from __future__ import annotations
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from cryptomon.errors import MalformedPayload, UnknownSymbol
from cryptomon.utils.time import epoch_seconds
from cryptomon.utils.types import FetchResult, PriceSnapshot


def parse_price(value: Any) -> Optional[Decimal]:
    """Positive finite Decimal, or None if `value` is not a usable price."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, str, Decimal)):
        try:
            px = Decimal(str(value))
        except InvalidOperation:
            return None
        if px.is_finite() and px > 0:
            return px
    return None


def parse_simple_price(
    payload: Any,
    wanted: Mapping[str, str],
    observed_at: float,
    source: str,
    vs_currency: str = "usd",
) -> FetchResult:
    """
    Turn a CoinGecko `/simple/price` body into per-symbol snapshots/errors.

    `wanted` maps SYMBOL -> coin id. Example body:
      {"bitcoin": {"usd": 45000.12, "last_updated_at": 1700000000}}

    Ids absent from the body are UnknownSymbol; present but unusable entries
    are MalformedPayload. A non-object body fails every wanted symbol.
    """
    out = FetchResult()
    if not isinstance(payload, Mapping):
        for sym in wanted:
            out.errors[sym] = MalformedPayload(f"expected JSON object, got {type(payload).__name__}", sym)
        return out

    for sym, coin_id in wanted.items():
        entry = payload.get(coin_id)
        if entry is None:
            out.errors[sym] = UnknownSymbol(f"provider returned no price for {coin_id}", sym)
            continue
        if not isinstance(entry, Mapping):
            out.errors[sym] = MalformedPayload(f"bad entry for {coin_id}", sym)
            continue
        if vs_currency not in entry:
            # CoinGecko answers {} for ids it does not know
            out.errors[sym] = UnknownSymbol(f"no {vs_currency} quote for {coin_id}", sym)
            continue
        px = parse_price(entry.get(vs_currency))
        if px is None:
            out.errors[sym] = MalformedPayload(f"unusable price for {coin_id}: {entry.get(vs_currency)!r}", sym)
            continue

        ts = epoch_seconds(entry.get("last_updated_at"))
        out.snapshots[sym] = PriceSnapshot(symbol=sym, price=px, ts=observed_at if ts is None else ts, source=source)
    return out
