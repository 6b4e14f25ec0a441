# src/storage/redis_alerts.py
from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cryptomon.errors import StoreUnavailable
from cryptomon.utils.time import utc_now_s
from cryptomon.utils.types import (
    DIRECTIONS,
    STATES,
    Alert,
    FiringDecision,
    MarkResult,
    Recipient,
    normalize_symbol,
)

log = structlog.get_logger("alert_store")

T = TypeVar("T")

SYMBOLS_KEY = "alerts:symbols"
NEXT_ID_KEY = "alerts:next_id"
DEAD_LETTERS_KEY = "alerts:dead_letters"
DEAD_LETTERS_MAX = 10_000


def alert_key(alert_id: str) -> str:
    # alert:{ID} -> hash
    return f"alert:{alert_id}"


def claim_key(alert_id: str) -> str:
    # alert:{ID}:claim -> string, set once (NX) when the alert leaves ACTIVE
    return f"alert:{alert_id}:claim"


def active_key(symbol: str) -> str:
    # alerts:active:{SYM} -> sorted set of ids scored by created_at
    return f"alerts:active:{symbol}"


def user_key(owner: str) -> str:
    return f"user:{owner}"


@contextmanager
def _translate():
    """Map Redis connectivity errors to StoreUnavailable."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as e:
        raise StoreUnavailable(str(e) or type(e).__name__) from e


def _alert_from_hash(h: dict) -> Optional[Alert]:
    try:
        direction = h["direction"]
        state = h.get("state", "ACTIVE")
        if direction not in DIRECTIONS or state not in STATES:
            raise ValueError(f"bad direction/state {direction!r}/{state!r}")
        return Alert(
            id=str(h["id"]),
            owner=str(h["owner"]),
            symbol=str(h["symbol"]),
            target_price=Decimal(h["target_price"]),
            direction=direction,
            state=state,
            created_at=float(h.get("created_at") or 0.0),
        )
    except (KeyError, ValueError, InvalidOperation) as e:
        log.warning("alert_row_malformed", alert_id=h.get("id"), err=str(e))
        return None


class RedisAlertStore:
    """
    The monitor's read/write facade over the Redis alert store.

    Layout:
      alert:{id}            hash   id, owner, symbol, target_price, direction, state, created_at
      alert:{id}:claim      string written once with SET NX; the compare-and-set
                                   that moves an alert out of ACTIVE (fire or delete)
      alerts:active:{SYM}   zset   ids of ACTIVE alerts, score = created_at
      alerts:symbols        set    symbols that have ever had an alert
      user:{owner}          hash   channel, address
      alerts:dead_letters   list   JSON records of undeliverable notifications

    Nothing is cached: every read goes to Redis so alerts created or deleted
    by the command layer are picked up on the next tick.
    """

    def __init__(self, redis: Redis, read_retries: int = 2, retry_backoff_s: float = 0.25):
        self.r = redis
        self.read_retries = max(0, read_retries)
        self.retry_backoff_s = retry_backoff_s

    async def close(self) -> None:
        await self.r.aclose()

    # ---------- helpers ----------

    async def _read(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run a read, retrying StoreUnavailable with doubling delays."""
        delay = self.retry_backoff_s
        for attempt in range(self.read_retries + 1):
            try:
                return await op()
            except StoreUnavailable as e:
                if attempt >= self.read_retries:
                    raise
                log.warning("store_read_retry", err=str(e), attempt=attempt + 1)
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    # ---------- monitor reads ----------

    async def list_watched_symbols(self) -> list[str]:
        """Distinct symbols with at least one ACTIVE alert."""
        async def op() -> list[str]:
            with _translate():
                symbols = sorted(await self.r.smembers(SYMBOLS_KEY))
                if not symbols:
                    return []
                pipe = self.r.pipeline(transaction=False)
                for sym in symbols:
                    pipe.zcard(active_key(sym))
                counts = await pipe.execute()
            return [s for s, n in zip(symbols, counts) if int(n or 0) > 0]

        return await self._read(op)

    async def list_active_by_symbols(self, symbols: Iterable[str]) -> dict[str, list[Alert]]:
        """ACTIVE alerts per symbol, in creation order."""
        wanted = sorted({normalize_symbol(s) for s in symbols})

        async def op() -> dict[str, list[Alert]]:
            out: dict[str, list[Alert]] = {s: [] for s in wanted}
            if not wanted:
                return out
            with _translate():
                pipe = self.r.pipeline(transaction=False)
                for sym in wanted:
                    pipe.zrange(active_key(sym), 0, -1)
                id_lists = await pipe.execute()

                pairs = [(sym, aid) for sym, ids in zip(wanted, id_lists) for aid in ids]
                if not pairs:
                    return out
                pipe = self.r.pipeline(transaction=False)
                for _, aid in pairs:
                    pipe.hgetall(alert_key(aid))
                rows = await pipe.execute()

            for (sym, aid), row in zip(pairs, rows):
                if not row:
                    continue
                alert = _alert_from_hash(row)
                # stale index entries are skipped, the index is repaired by mark_fired/delete
                if alert is None or alert.state != "ACTIVE" or alert.symbol != sym:
                    continue
                out[sym].append(alert)
            return out

        return await self._read(op)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async def op() -> Optional[Alert]:
            with _translate():
                row = await self.r.hgetall(alert_key(alert_id))
            return _alert_from_hash(row) if row else None

        return await self._read(op)

    async def get_recipient(self, owner: str) -> Optional[Recipient]:
        async def op() -> Optional[Recipient]:
            with _translate():
                row = await self.r.hgetall(user_key(owner))
            if not row or not row.get("channel") or not row.get("address"):
                return None
            return Recipient(channel=row["channel"], address=row["address"])

        return await self._read(op)

    # ---------- monitor writes ----------

    async def mark_fired(self, alert_id: str, decision: FiringDecision) -> MarkResult:
        """
        Atomically move an alert ACTIVE -> FIRED.

        The claim key is written with SET NX, so exactly one caller wins even
        across overlapping or retried ticks. Losers get "already_fired";
        missing or deleted alerts give "not_found".
        """
        with _translate():
            row = await self.r.hgetall(alert_key(alert_id))
            if not row:
                return "not_found"
            state = row.get("state", "ACTIVE")
            if state == "DELETED":
                return "not_found"
            if state == "FIRED":
                return "already_fired"

            claim = {"state": "FIRED", **decision.to_dict()}
            won = await self.r.set(claim_key(alert_id), json.dumps(claim), nx=True)
            if not won:
                existing = await self.r.get(claim_key(alert_id))
                claimed_state = _claim_state(existing)
                # a previous winner may have died before updating the hash
                await self._apply_claim(alert_id, row.get("symbol", ""), claimed_state, existing)
                return "not_found" if claimed_state == "DELETED" else "already_fired"

            await self._apply_claim(alert_id, row.get("symbol", ""), "FIRED", json.dumps(claim))
        return "fired"

    async def _apply_claim(self, alert_id: str, symbol: str, state: str, claim_raw: Optional[str]) -> None:
        mapping = {"state": state}
        if state == "FIRED" and claim_raw:
            data = json.loads(claim_raw)
            mapping["fired_at"] = str(data.get("decided_at", ""))
            mapping["fired_price"] = str(data.get("price", ""))
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(alert_key(alert_id), mapping=mapping)
        if symbol:
            pipe.zrem(active_key(symbol), alert_id)
        await pipe.execute()
        if symbol:
            await self._prune_symbol(symbol)

    async def _prune_symbol(self, symbol: str) -> None:
        """
        Drop a symbol from the watched set once it has no ACTIVE alert left.
        The count is checked again after SREM: create_alert adds to the zset
        and the set in one transaction, so a concurrent create either shows up
        in the second count or re-adds the symbol itself.
        """
        try:
            with _translate():
                if await self.r.zcard(active_key(symbol)):
                    return
                await self.r.srem(SYMBOLS_KEY, symbol)
                if await self.r.zcard(active_key(symbol)):
                    await self.r.sadd(SYMBOLS_KEY, symbol)
        except StoreUnavailable as e:
            # the transition already happened; pruning is best effort
            log.warning("symbol_prune_failed", symbol=symbol, err=str(e))

    async def record_dead_letter(
        self, alert: Alert, decision: FiringDecision, reason: str, attempts: int
    ) -> None:
        record = {
            "alert_id": alert.id,
            "owner": alert.owner,
            "symbol": alert.symbol,
            "target_price": str(alert.target_price),
            "direction": alert.direction,
            "decision": decision.to_dict(),
            "reason": reason,
            "attempts": attempts,
            "recorded_at": utc_now_s(),
        }
        with _translate():
            pipe = self.r.pipeline(transaction=True)
            pipe.lpush(DEAD_LETTERS_KEY, json.dumps(record))
            pipe.ltrim(DEAD_LETTERS_KEY, 0, DEAD_LETTERS_MAX - 1)
            await pipe.execute()

    async def list_dead_letters(self, limit: int = 100) -> list[dict]:
        async def op() -> list[dict]:
            with _translate():
                raw = await self.r.lrange(DEAD_LETTERS_KEY, 0, max(0, limit - 1))
            return [json.loads(x) for x in raw]

        return await self._read(op)

    # ---------- command-layer writes (shared data layout) ----------

    async def register_user(self, owner: str, channel: str, address: str) -> None:
        with _translate():
            await self.r.hset(user_key(owner), mapping={"channel": channel, "address": str(address)})

    async def create_alert(
        self,
        owner: str,
        symbol: str,
        target_price: Decimal | str | int | float,
        direction: str,
        created_at: Optional[float] = None,
    ) -> Alert:
        sym = normalize_symbol(symbol)
        if not sym:
            raise ValueError("symbol must not be empty")
        try:
            target = Decimal(str(target_price))
        except InvalidOperation:
            raise ValueError(f"invalid target price {target_price!r}") from None
        if not target.is_finite() or target <= 0:
            raise ValueError("target price must be positive")
        dirn = direction.strip().upper()
        if dirn not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}")
        ts = utc_now_s() if created_at is None else float(created_at)

        with _translate():
            alert_id = str(await self.r.incr(NEXT_ID_KEY))
            alert = Alert(
                id=alert_id, owner=str(owner), symbol=sym, target_price=target,
                direction=dirn, state="ACTIVE", created_at=ts,  # type: ignore[arg-type]
            )
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(alert_key(alert_id), mapping={
                "id": alert_id,
                "owner": alert.owner,
                "symbol": sym,
                "target_price": str(target),
                "direction": dirn,
                "state": "ACTIVE",
                "created_at": str(ts),
            })
            pipe.zadd(active_key(sym), {alert_id: ts})
            pipe.sadd(SYMBOLS_KEY, sym)
            await pipe.execute()
        log.info("alert_created", alert_id=alert_id, symbol=sym, target=str(target), direction=dirn)
        return alert

    async def delete_alert(self, alert_id: str) -> bool:
        """
        Soft delete. Competes with mark_fired for the same claim, so an alert
        is either fired or deleted, never both. False if it already left ACTIVE.
        """
        with _translate():
            row = await self.r.hgetall(alert_key(alert_id))
            if not row or row.get("state", "ACTIVE") != "ACTIVE":
                return False
            won = await self.r.set(claim_key(alert_id), json.dumps({"state": "DELETED"}), nx=True)
            if not won:
                return False
            await self._apply_claim(alert_id, row.get("symbol", ""), "DELETED", None)
        return True


def _claim_state(raw: Optional[str]) -> str:
    if not raw:
        return "FIRED"
    try:
        return str(json.loads(raw).get("state", "FIRED"))
    except (ValueError, AttributeError):
        return "FIRED"
