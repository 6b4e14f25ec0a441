from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import structlog

from cryptomon.alerts.formatting import format_alert_text
from cryptomon.config import DispatchConfig
from cryptomon.errors import DeliveryFailed, StoreUnavailable
from cryptomon.notify.channels import Channel
from cryptomon.utils.backoff import Backoff, jitter
from cryptomon.utils.types import Alert, DeliveryResult, FiringDecision, Recipient

log = structlog.get_logger("dispatcher")


class RecipientStore(Protocol):
    async def get_recipient(self, owner: str) -> Optional[Recipient]: ...

    async def record_dead_letter(
        self, alert: Alert, decision: FiringDecision, reason: str, attempts: int
    ) -> None: ...


@dataclass(slots=True)
class DispatcherStats:
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    dead_lettered: int = 0
    dead_letter_errors: int = 0


@dataclass(slots=True)
class _Progress:
    attempts: int = 0
    reason: str = "not attempted"


class NotificationDispatcher:
    """
    Delivers one firing decision to the alert owner's channel.

    - the owner's Recipient (channel name + address) comes from the store,
      and selects one of the registered channels
    - transient DeliveryFailed is retried with jittered exponential backoff
      up to cfg.max_attempts; permanent failures stop immediately
    - the whole delivery is bounded by cfg.deadline_s
    - whatever is not delivered is dead-lettered once and never retried
    - dispatch() never raises for delivery problems, so one alert cannot
      fail another
    """

    def __init__(
        self,
        channels: Iterable[Channel],
        store: RecipientStore,
        cfg: Optional[DispatchConfig] = None,
        format_fn: Optional[Callable[[Alert, FiringDecision], str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channels: dict[str, Channel] = {c.name: c for c in channels}
        self.store = store
        self.cfg = cfg or DispatchConfig()
        self._format_fn = format_fn or (lambda a, d: format_alert_text(a, d, self.cfg.tz_name))
        self._sleep = sleep
        self.stats = DispatcherStats()

    async def dispatch(self, alert: Alert, decision: FiringDecision) -> DeliveryResult:
        try:
            recipient = await self.store.get_recipient(alert.owner)
        except StoreUnavailable as e:
            return await self._give_up(alert, decision, f"recipient lookup failed: {e}", attempts=0)
        if recipient is None:
            return await self._give_up(alert, decision, f"no recipient registered for owner {alert.owner}", attempts=0)

        channel = self.channels.get(recipient.channel)
        if channel is None:
            return await self._give_up(alert, decision, f"channel {recipient.channel!r} not configured", attempts=0)

        try:
            text = self._format_fn(alert, decision)
        except Exception as e:
            log.exception("alert_format_failed", alert_id=alert.id, err=str(e))
            return await self._give_up(alert, decision, f"message formatting failed: {type(e).__name__}: {e}", attempts=0)

        progress = _Progress()
        try:
            delivered = await asyncio.wait_for(
                self._attempts(channel, recipient, alert, text, progress), timeout=self.cfg.deadline_s
            )
        except asyncio.TimeoutError:
            reason = f"delivery deadline of {self.cfg.deadline_s}s exceeded (last error: {progress.reason})"
            log.warning("delivery_deadline_exceeded", alert_id=alert.id, channel=channel.name, attempts=progress.attempts)
            return await self._give_up(alert, decision, reason, attempts=progress.attempts)
        if delivered:
            self.stats.delivered += 1
            log.info("alert_delivered", alert_id=alert.id, channel=channel.name, attempts=progress.attempts)
            return DeliveryResult.ok(attempts=progress.attempts)
        return await self._give_up(alert, decision, progress.reason, attempts=progress.attempts)

    async def _attempts(
        self, channel: Channel, recipient: Recipient, alert: Alert, text: str, progress: "_Progress"
    ) -> bool:
        backoff = Backoff(self.cfg.initial_backoff_s, self.cfg.max_backoff_s)
        for attempt in range(1, self.cfg.max_attempts + 1):
            progress.attempts = attempt
            try:
                await channel.send(recipient.address, text)
            except DeliveryFailed as e:
                progress.reason = str(e)
                log.warning(
                    "delivery_attempt_failed",
                    alert_id=alert.id, channel=channel.name, attempt=attempt,
                    transient=e.transient, err=progress.reason,
                )
                if not e.transient:
                    return False
            except Exception as e:
                # a misbehaving channel is treated like a transient failure
                progress.reason = f"{type(e).__name__}: {e}"
                log.warning("delivery_channel_error", alert_id=alert.id, channel=channel.name, attempt=attempt, err=progress.reason)
            else:
                return True

            if attempt < self.cfg.max_attempts:
                self.stats.retried += 1
                await self._sleep(jitter(backoff.step()))
        return False

    async def _give_up(self, alert: Alert, decision: FiringDecision, reason: str, attempts: int) -> DeliveryResult:
        self.stats.failed += 1
        try:
            await self.store.record_dead_letter(alert, decision, reason, attempts)
        except StoreUnavailable as e:
            self.stats.dead_letter_errors += 1
            log.error("dead_letter_record_failed", alert_id=alert.id, reason=reason, err=str(e))
            return DeliveryResult.failed(reason, attempts=attempts, dead_lettered=False)
        self.stats.dead_lettered += 1
        log.error("alert_dead_lettered", alert_id=alert.id, owner=alert.owner, reason=reason, attempts=attempts)
        return DeliveryResult.failed(reason, attempts=attempts, dead_lettered=True)
