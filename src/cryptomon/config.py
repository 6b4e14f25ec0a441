from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cryptomon.errors import ConfigError

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"

# SYMBOL -> CoinGecko coin id
DEFAULT_COINGECKO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "RUNE": "thorchain",
    "XRP": "ripple",
    "LTC": "litecoin",
    "LINK": "chainlink",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
}


# --------- env helpers ----------

def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def env_flag(name: str, default: str = "0") -> bool:
    return (_env_str(name, default) or "").lower() in {"1", "true", "yes", "on"}


def parse_id_map(raw: str) -> dict[str, str]:
    """Parse `BTC=bitcoin,ETH=ethereum` into {"BTC": "bitcoin", ...}."""
    out: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        sym, sep, coin_id = part.partition("=")
        if not sep or not sym.strip() or not coin_id.strip():
            raise ConfigError(f"bad COINGECKO_IDS entry {part!r}, expected SYMBOL=coin-id")
        out[sym.strip().upper()] = coin_id.strip()
    return out


# --------- component configs ----------

@dataclass(slots=True)
class MonitorConfig:
    poll_interval_s: float = 300.0
    tick_timeout_s: Optional[float] = None  # None -> 80% of the interval
    fetch_timeout_s: float = 10.0
    max_in_flight: int = 8

    def effective_tick_timeout(self) -> float:
        if self.tick_timeout_s is not None:
            return self.tick_timeout_s
        return max(1.0, self.poll_interval_s * 0.8)


@dataclass(slots=True)
class ProviderConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_COINGECKO_URL
    pro: bool = False
    vs_currency: str = "usd"
    symbol_ids: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COINGECKO_IDS))
    rate_per_sec: float = 0.5
    burst: int = 2
    initial_backoff_s: float = 2.0
    max_backoff_s: float = 120.0
    batch_size: int = 100
    cache_ttl_s: float = 30.0
    timeout_s: float = 10.0


@dataclass(slots=True)
class DispatchConfig:
    max_attempts: int = 5
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0
    deadline_s: Optional[float] = 60.0  # whole delivery incl. retries; None = unbounded
    tz_name: str = "UTC"


@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    parse_mode: Optional[str] = None  # "MarkdownV2" or None
    api_base: str = "https://api.telegram.org"
    timeout_s: float = 8.0
    per_chat_rate_per_sec: float = 1.0
    per_chat_burst: int = 3


@dataclass(slots=True)
class StoreConfig:
    redis_url: str = DEFAULT_REDIS_URL
    read_retries: int = 2
    retry_backoff_s: float = 0.25


# --------- builders ----------

def monitor_config_from_env() -> MonitorConfig:
    interval = _env_float("CHECK_INTERVAL", 300.0)
    if interval <= 0:
        raise ConfigError("CHECK_INTERVAL must be positive")
    tick_timeout = _env_str("TICK_TIMEOUT_S")
    return MonitorConfig(
        poll_interval_s=interval,
        tick_timeout_s=_env_float("TICK_TIMEOUT_S", 0.0) if tick_timeout else None,
        fetch_timeout_s=_env_float("FETCH_TIMEOUT_S", 10.0),
        max_in_flight=max(1, _env_int("MAX_IN_FLIGHT", 8)),
    )


def provider_config_from_env(poll_interval_s: float = 300.0) -> ProviderConfig:
    api_key = _env_str("COINGECKO_API_KEY")
    if api_key is None:
        raise ConfigError("COINGECKO_API_KEY is required")
    ids = dict(DEFAULT_COINGECKO_IDS)
    raw_ids = _env_str("COINGECKO_IDS")
    if raw_ids:
        ids.update(parse_id_map(raw_ids))
    # cache TTL never outlives one poll interval
    ttl = min(_env_float("PRICE_CACHE_TTL_S", 30.0), poll_interval_s)
    return ProviderConfig(
        api_key=api_key,
        base_url=(_env_str("COINGECKO_BASE_URL", DEFAULT_COINGECKO_URL) or DEFAULT_COINGECKO_URL).rstrip("/"),
        pro=env_flag("COINGECKO_PRO"),
        symbol_ids=ids,
        rate_per_sec=_env_float("PROVIDER_RATE_PER_SEC", 0.5),
        burst=_env_int("PROVIDER_BURST", 2),
        max_backoff_s=_env_float("PROVIDER_MAX_BACKOFF_S", 120.0),
        batch_size=max(1, _env_int("PROVIDER_BATCH_SIZE", 100)),
        cache_ttl_s=ttl,
        timeout_s=_env_float("FETCH_TIMEOUT_S", 10.0),
    )


def dispatch_config_from_env() -> DispatchConfig:
    tz_name = _env_str("ALERT_TZ", "UTC") or "UTC"
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ConfigError(f"ALERT_TZ {tz_name!r} is not a known time zone") from None
    deadline = _env_float("DISPATCH_DEADLINE_S", 60.0)
    return DispatchConfig(
        max_attempts=max(1, _env_int("DISPATCH_MAX_ATTEMPTS", 5)),
        initial_backoff_s=_env_float("DISPATCH_INITIAL_BACKOFF_S", 0.5),
        max_backoff_s=_env_float("DISPATCH_MAX_BACKOFF_S", 8.0),
        deadline_s=deadline if deadline > 0 else None,
        tz_name=tz_name,
    )


def telegram_config_from_env() -> TelegramConfig:
    """Raises ConfigError when TELEGRAM_BOT_TOKEN is missing."""
    token = _env_str("TELEGRAM_BOT_TOKEN")
    if token is None:
        raise ConfigError("TELEGRAM_BOT_TOKEN is not set")
    return TelegramConfig(bot_token=token, parse_mode=_env_str("TELEGRAM_PARSE_MODE"))


def store_config_from_env() -> StoreConfig:
    return StoreConfig(
        redis_url=_env_str("REDIS_URL", DEFAULT_REDIS_URL) or DEFAULT_REDIS_URL,
        read_retries=max(0, _env_int("STORE_READ_RETRIES", 2)),
    )
