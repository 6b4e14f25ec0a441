from __future__ import annotations

import asyncio
import functools
import json
import time
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional

import aiohttp
import structlog

from cryptomon.config import ProviderConfig
from cryptomon.errors import (
    MalformedPayload,
    ProviderError,
    ProviderRateLimited,
    ProviderUnavailable,
    UnknownSymbol,
)
from cryptomon.ingest import parser
from cryptomon.ingest.cache import SnapshotCache
from cryptomon.utils.backoff import Backoff
from cryptomon.utils.ratelimit import RateLimiter
from cryptomon.utils.time import utc_now_s
from cryptomon.utils.types import FetchResult, normalize_symbol

SOURCE = "coingecko"

_loads_decimal = functools.partial(json.loads, parse_float=Decimal)


class CoinGeckoPriceSource:
    """
    Price source backed by CoinGecko's `/simple/price` endpoint.

    Lifecycle:
      - fetch(symbols) resolves cached snapshots first, maps the rest to coin
        ids and queries them in batches of `batch_size` ids per call
      - every call waits on a token bucket before it goes out
      - a 429 starts an exponential cooldown (capped); while it lasts the
        affected symbols fail fast with ProviderRateLimited
      - failures are reported per symbol, never as a batch-wide exception

    Usage:
        src = CoinGeckoPriceSource(cfg)
        await src.start()
        result = await src.fetch({"BTC", "ETH"})
        await src.stop()
    """

    def __init__(
        self,
        cfg: ProviderConfig,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._log = structlog.get_logger("coingecko")
        self._rl = RateLimiter(rate_per_sec=cfg.rate_per_sec, burst=cfg.burst, clock=clock)
        self._cache = SnapshotCache(ttl_s=cfg.cache_ttl_s, clock=clock)

        # rate-limit cooldown
        self._backoff = Backoff(cfg.initial_backoff_s, cfg.max_backoff_s)
        self._resume_at: float = 0.0

    # ---------------------------- public API ---------------------------- #

    @property
    def batch_size(self) -> int:
        return max(1, self.cfg.batch_size)

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def batches(self, symbols: Iterable[str]) -> Iterator[list[str]]:
        ordered = sorted({normalize_symbol(s) for s in symbols})
        for i in range(0, len(ordered), self.batch_size):
            yield ordered[i : i + self.batch_size]

    def cooling_down(self) -> bool:
        return self._clock() < self._resume_at

    async def fetch(self, symbols: Iterable[str]) -> FetchResult:
        result = FetchResult()
        wanted: dict[str, str] = {}
        for raw in symbols:
            sym = normalize_symbol(raw)
            if not sym or sym in result.snapshots or sym in wanted:
                continue
            cached = self._cache.get(sym)
            if cached is not None:
                result.snapshots[sym] = cached
                continue
            coin_id = self.cfg.symbol_ids.get(sym)
            if coin_id is None:
                result.errors[sym] = UnknownSymbol(f"no provider id configured for {sym}", sym)
                continue
            wanted[sym] = coin_id

        items = list(wanted.items())
        for i in range(0, len(items), self.batch_size):
            result.merge(await self._fetch_batch(dict(items[i : i + self.batch_size])))

        if result.errors:
            self._log.info(
                "fetch_partial",
                ok=len(result.snapshots),
                failed={s: type(e).__name__ for s, e in result.errors.items()},
            )
        return result

    # --------------------------- core internals ------------------------- #

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.cfg.api_key:
            name = "x-cg-pro-api-key" if self.cfg.pro else "x-cg-demo-api-key"
            headers[name] = self.cfg.api_key
        return headers

    def _fail_all(self, wanted: dict[str, str], exc_type: type[ProviderError], message: str, **kw) -> FetchResult:
        out = FetchResult()
        for sym in wanted:
            out.errors[sym] = exc_type(message, sym, **kw)
        return out

    def _register_rate_limit(self, retry_after: float) -> float:
        step = self._backoff.step()
        delay = min(max(step, retry_after), self.cfg.max_backoff_s)
        self._resume_at = self._clock() + delay
        return delay

    async def _fetch_batch(self, wanted: dict[str, str]) -> FetchResult:
        if not wanted:
            return FetchResult()

        if self.cooling_down():
            remaining = self._resume_at - self._clock()
            return self._fail_all(
                wanted, ProviderRateLimited, "backing off after rate limit", retry_after=remaining
            )

        await self.start()
        assert self._session is not None
        await self._rl.acquire()

        url = f"{self.cfg.base_url}/simple/price"
        params = {
            "ids": ",".join(sorted(set(wanted.values()))),
            "vs_currencies": self.cfg.vs_currency,
            "include_last_updated_at": "true",
            "precision": "full",
        }
        try:
            async with self._session.get(url, params=params, headers=self._headers()) as resp:
                if resp.status == 429:
                    delay = self._register_rate_limit(_retry_after(resp.headers))
                    self._log.warning("provider_rate_limited", backoff_s=round(delay, 3), symbols=list(wanted))
                    return self._fail_all(wanted, ProviderRateLimited, "HTTP 429", retry_after=delay)
                if resp.status >= 500:
                    self._log.warning("provider_server_error", status=resp.status)
                    return self._fail_all(wanted, ProviderUnavailable, f"HTTP {resp.status}")
                if resp.status != 200:
                    body = await _maybe_text(resp)
                    self._log.error("provider_request_rejected", status=resp.status, body=body[:200])
                    return self._fail_all(wanted, ProviderUnavailable, f"HTTP {resp.status}")
                try:
                    payload = await resp.json(loads=_loads_decimal, content_type=None)
                except ValueError as e:
                    self._log.warning("provider_json_error", err=str(e))
                    return self._fail_all(wanted, MalformedPayload, f"invalid JSON: {e}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._log.warning("provider_network_error", err=str(e) or type(e).__name__)
            return self._fail_all(wanted, ProviderUnavailable, str(e) or type(e).__name__)

        # success: rate-limit backoff starts over
        self._backoff.reset()
        parsed = parser.parse_simple_price(payload, wanted, observed_at=utc_now_s(), source=SOURCE, vs_currency=self.cfg.vs_currency)
        for snap in parsed.snapshots.values():
            self._cache.put(snap)
        return parsed


def _retry_after(headers) -> float:
    try:
        return max(0.0, float(headers.get("Retry-After", 0) or 0))
    except (TypeError, ValueError):
        return 0.0


async def _maybe_text(resp) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"
