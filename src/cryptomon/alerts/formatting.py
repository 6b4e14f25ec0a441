from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from cryptomon.utils.types import Alert, FiringDecision

# characters Telegram requires escaped in MarkdownV2 text
_MDV2_SPECIAL = set("_*[]()~`>#+-=|{}.!\\")


def _fmt_ts(ts_s: float, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(ts_s, tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def _fmt_price(px: Decimal) -> str:
    if px >= 1:
        return f"{px:,.2f}"
    # sub-dollar assets keep 4 significant digits instead of rounding to 0.00
    places = max(2, 3 - px.adjusted())
    whole, _, frac = f"{px:.{places}f}".partition(".")
    return f"{whole}.{frac.rstrip('0').ljust(2, '0')}"


def format_alert_text(alert: Alert, decision: FiringDecision, tz_name: str = "UTC") -> str:
    snap = decision.snapshot
    cond = "above" if alert.direction == "ABOVE" else "below"
    arrow = "↑" if alert.direction == "ABOVE" else "↓"
    return (
        f"🚨 Price alert {arrow} {alert.symbol}\n"
        f"Condition: {cond} {alert.target_price}\n"
        f"Current price: ${_fmt_price(snap.price)} ({snap.source} @ {_fmt_ts(snap.ts, tz_name)})"
    )


def escape_markdown_v2(text: str) -> str:
    return "".join(f"\\{ch}" if ch in _MDV2_SPECIAL else ch for ch in text)
