from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, Iterator, Literal, Optional, Protocol, Sequence

import structlog

from cryptomon.alerts.evaluator import evaluate
from cryptomon.config import MonitorConfig
from cryptomon.errors import (
    ProviderRateLimited,
    StoreUnavailable,
    UnknownSymbol,
)
from cryptomon.utils.types import (
    Alert,
    DeliveryResult,
    FetchResult,
    FiringDecision,
    MarkResult,
    PriceSnapshot,
)

log = structlog.get_logger("scheduler")

TickStatus = Literal["ok", "skipped", "timeout", "store_unavailable", "error"]


# ---------------------------
# Collaborator interfaces
# ---------------------------

class AlertStore(Protocol):
    async def list_watched_symbols(self) -> list[str]: ...
    async def list_active_by_symbols(self, symbols: Iterable[str]) -> dict[str, list[Alert]]: ...
    async def mark_fired(self, alert_id: str, decision: FiringDecision) -> MarkResult: ...


class PriceSource(Protocol):
    def batches(self, symbols: Iterable[str]) -> Iterator[list[str]]: ...
    async def fetch(self, symbols: Iterable[str]) -> FetchResult: ...


class Dispatcher(Protocol):
    async def dispatch(self, alert: Alert, decision: FiringDecision) -> DeliveryResult: ...


# ---------------------------
# Stats & reports
# ---------------------------

@dataclass(slots=True)
class SchedulerStats:
    ticks_run: int = 0
    ticks_skipped: int = 0
    ticks_timed_out: int = 0
    ticks_failed: int = 0
    store_aborts: int = 0
    provider_outages: int = 0
    fired: int = 0
    already_fired: int = 0
    delivered: int = 0
    undelivered: int = 0


@dataclass(slots=True)
class TickReport:
    status: TickStatus = "ok"
    symbols: list[str] = field(default_factory=list)
    fetched: list[str] = field(default_factory=list)
    fetch_errors: dict[str, str] = field(default_factory=dict)   # symbol -> error kind, "timeout" or "error"
    decisions: int = 0
    fired: list[str] = field(default_factory=list)
    already_fired: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    not_written: list[str] = field(default_factory=list)         # skipped after store failure
    delivered: list[str] = field(default_factory=list)
    undelivered: list[str] = field(default_factory=list)
    duration_s: float = 0.0


class PollScheduler:
    """
    The control loop.

    Each tick:
      1) distinct symbols with an ACTIVE alert (store)
      2) prices in provider batches, fanned out under max_in_flight, each
         call bounded by fetch_timeout_s; failed symbols just sit this tick out
      3) ACTIVE alerts for the symbols that have a snapshot (store)
      4) pure evaluation per symbol
      5) per decision: mark_fired, then dispatch only if the transition won

    Ticks never overlap: if one is still running when the next is due, the
    next is skipped. The tick deadline bounds steps 1-4 and the mark_fired
    writes; a write that wins goes on to dispatch even past the deadline, and
    the tick waits for it (the dispatcher has its own deadline and
    dead-letters on expiry). Nothing in a tick takes the loop down. Store
    unavailability aborts the remaining writes.
    """

    def __init__(
        self,
        store: AlertStore,
        source: PriceSource,
        dispatcher: Dispatcher,
        cfg: Optional[MonitorConfig] = None,
        evaluate_fn: Callable[[PriceSnapshot, Sequence[Alert]], list[FiringDecision]] = evaluate,
    ):
        self.store = store
        self.source = source
        self.dispatcher = dispatcher
        self.cfg = cfg or MonitorConfig()
        self._evaluate = evaluate_fn
        self._tick_lock = asyncio.Lock()
        self._dispatch_sem = asyncio.Semaphore(max(1, self.cfg.max_in_flight))
        self._stop = asyncio.Event()
        self._current: Optional[asyncio.Task] = None
        self.stats = SchedulerStats()

    # ---------------------------- public API ---------------------------- #

    def stop(self) -> None:
        """Cooperative stop: the running tick may finish, no new tick starts."""
        self._stop.set()

    @property
    def tick_running(self) -> bool:
        return self._tick_lock.locked()

    async def run(self, interval_s: Optional[float] = None, stop: Optional[asyncio.Event] = None) -> None:
        """
        Start a tick every `interval_s` seconds until `stop` (or self.stop())
        is signalled, then wait for the in-flight tick and return.
        """
        interval = float(interval_s if interval_s is not None else self.cfg.poll_interval_s)
        if interval <= 0:
            raise ValueError("interval must be positive")
        if stop is not None:
            self._stop = stop
        loop = asyncio.get_running_loop()
        next_due = loop.time()
        log.info("scheduler_started", interval_s=interval, tick_timeout_s=self.cfg.effective_tick_timeout())
        try:
            while not self._stop.is_set():
                if self._current is not None and not self._current.done():
                    self.stats.ticks_skipped += 1
                    log.warning("tick_skipped_overlap")
                else:
                    self._current = asyncio.create_task(self.tick(), name="poll-tick")

                next_due += interval
                now = loop.time()
                if next_due < now:
                    # fell behind; realign on the cadence instead of bursting
                    next_due = now + (interval - (now - next_due) % interval)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=next_due - now)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._current is not None and not self._current.done():
                log.info("scheduler_draining")
                await asyncio.wait([self._current])
            log.info("scheduler_stopped", **asdict(self.stats))

    async def tick(self) -> TickReport:
        if self._tick_lock.locked():
            self.stats.ticks_skipped += 1
            log.warning("tick_skipped_overlap")
            return TickReport(status="skipped")

        async with self._tick_lock:
            report = TickReport()
            self.stats.ticks_run += 1
            started = time.monotonic()
            # dispatches started before the deadline are awaited after it
            deliveries: list[asyncio.Task] = []
            try:
                await asyncio.wait_for(self._tick_body(report, deliveries), timeout=self.cfg.effective_tick_timeout())
            except asyncio.TimeoutError:
                report.status = "timeout"
                self.stats.ticks_timed_out += 1
                log.warning("tick_deadline_exceeded", timeout_s=self.cfg.effective_tick_timeout())
            except StoreUnavailable as e:
                report.status = "store_unavailable"
                self.stats.store_aborts += 1
                log.error("tick_aborted_store_unavailable", err=str(e))
            except Exception as e:
                report.status = "error"
                self.stats.ticks_failed += 1
                log.exception("tick_failed", err=str(e))
            if deliveries:
                await asyncio.wait(deliveries)
            report.duration_s = round(time.monotonic() - started, 4)
            log.info(
                "tick_done",
                status=report.status,
                symbols=len(report.symbols),
                fetched=len(report.fetched),
                fetch_errors=len(report.fetch_errors),
                decisions=report.decisions,
                fired=len(report.fired),
                delivered=len(report.delivered),
                duration_s=report.duration_s,
            )
            return report

    # --------------------------- tick internals ------------------------- #

    async def _tick_body(self, report: TickReport, deliveries: list[asyncio.Task]) -> None:
        symbols = await self.store.list_watched_symbols()
        report.symbols = list(symbols)
        if not symbols:
            return

        snapshots = await self._fetch_all(symbols, report)
        report.fetched = sorted(snapshots)
        if not snapshots:
            self._check_outage(report)
            return

        alerts_by_symbol = await self.store.list_active_by_symbols(report.fetched)

        decisions: list[tuple[Alert, FiringDecision]] = []
        for sym in report.fetched:
            candidates = alerts_by_symbol.get(sym, [])
            by_id = {a.id: a for a in candidates}
            for d in self._evaluate(snapshots[sym], candidates):
                decisions.append((by_id[d.alert_id], d))
        report.decisions = len(decisions)
        if not decisions:
            return

        sem = asyncio.Semaphore(self.cfg.max_in_flight)
        store_down = asyncio.Event()
        results = await asyncio.gather(
            *(self._fire_one(a, d, sem, store_down, report, deliveries) for a, d in decisions),
            return_exceptions=True,
        )
        for (alert, _), res in zip(decisions, results):
            if isinstance(res, Exception):
                log.error("fire_task_failed", alert_id=alert.id, err=f"{type(res).__name__}: {res}")
        if store_down.is_set():
            raise StoreUnavailable(f"store went away while firing; {len(report.not_written)} decisions not written")

    async def _fetch_all(self, symbols: Sequence[str], report: TickReport) -> dict[str, PriceSnapshot]:
        sem = asyncio.Semaphore(self.cfg.max_in_flight)

        async def one(batch: list[str]) -> tuple[list[str], FetchResult | str]:
            async with sem:
                try:
                    return batch, await asyncio.wait_for(self.source.fetch(batch), timeout=self.cfg.fetch_timeout_s)
                except asyncio.TimeoutError:
                    log.warning("fetch_timeout", symbols=batch, timeout_s=self.cfg.fetch_timeout_s)
                    return batch, "timeout"
                except Exception as e:
                    log.error("fetch_failed", symbols=batch, err=f"{type(e).__name__}: {e}")
                    return batch, "error"

        snapshots: dict[str, PriceSnapshot] = {}
        for batch, res in await asyncio.gather(*(one(b) for b in self.source.batches(symbols))):
            if isinstance(res, str):
                for sym in batch:
                    report.fetch_errors[sym] = res
                continue
            snapshots.update(res.snapshots)
            for sym, err in res.errors.items():
                report.fetch_errors[sym] = type(err).__name__
                if isinstance(err, UnknownSymbol):
                    log.warning("symbol_unknown", symbol=sym, err=str(err))
                elif isinstance(err, ProviderRateLimited):
                    log.info("symbol_rate_limited", symbol=sym, retry_after=round(err.retry_after, 3))
                else:
                    log.warning("symbol_fetch_failed", symbol=sym, kind=type(err).__name__, err=str(err))
        return snapshots

    def _check_outage(self, report: TickReport) -> None:
        kinds = set(report.fetch_errors.values())
        if report.fetch_errors and kinds != {UnknownSymbol.__name__}:
            self.stats.provider_outages += 1
            log.error("provider_outage", symbols=len(report.symbols), kinds=sorted(kinds))

    async def _fire_one(
        self,
        alert: Alert,
        decision: FiringDecision,
        sem: asyncio.Semaphore,
        store_down: asyncio.Event,
        report: TickReport,
        deliveries: list[asyncio.Task],
    ) -> None:
        async with sem:
            if store_down.is_set():
                report.not_written.append(alert.id)
                return
            # the write and its follow-up run as tasks: the tick deadline can
            # cancel this wait but never a claim that was already won
            mark = asyncio.create_task(self.store.mark_fired(alert.id, decision))
            deliveries.append(asyncio.create_task(self._settle(mark, alert, decision, store_down, report)))
            await asyncio.wait([mark])
            if not mark.cancelled() and isinstance(mark.exception(), StoreUnavailable):
                store_down.set()

    async def _settle(
        self,
        mark: asyncio.Task,
        alert: Alert,
        decision: FiringDecision,
        store_down: asyncio.Event,
        report: TickReport,
    ) -> None:
        try:
            result = await mark
        except StoreUnavailable as e:
            store_down.set()
            report.not_written.append(alert.id)
            log.error("mark_fired_store_unavailable", alert_id=alert.id, err=str(e))
            return
        except Exception as e:
            log.exception("mark_fired_failed", alert_id=alert.id, err=str(e))
            return

        if result == "already_fired":
            self.stats.already_fired += 1
            report.already_fired.append(alert.id)
            log.debug("alert_already_fired", alert_id=alert.id)
            return
        if result == "not_found":
            report.not_found.append(alert.id)
            log.info("alert_gone_before_fire", alert_id=alert.id)
            return

        self.stats.fired += 1
        report.fired.append(alert.id)
        log.info(
            "alert_fired",
            alert_id=alert.id, owner=alert.owner, symbol=alert.symbol,
            direction=alert.direction, target=str(alert.target_price),
            price=str(decision.snapshot.price),
        )

        async with self._dispatch_sem:
            try:
                outcome = await self.dispatcher.dispatch(alert, decision)
            except Exception as e:
                log.exception("dispatch_failed", alert_id=alert.id, err=str(e))
                outcome = None
        if outcome is not None and outcome.delivered:
            self.stats.delivered += 1
            report.delivered.append(alert.id)
        else:
            self.stats.undelivered += 1
            report.undelivered.append(alert.id)
