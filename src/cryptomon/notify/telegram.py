from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
import structlog

from cryptomon.alerts.formatting import escape_markdown_v2
from cryptomon.config import TelegramConfig
from cryptomon.errors import DeliveryFailed
from cryptomon.utils.backoff import backoff_iter
from cryptomon.utils.ratelimit import RateLimiter

log = structlog.get_logger("telegram")


class TelegramChannel:
    """
    Telegram Bot API channel. One `send` = one sendMessage attempt, spaced by
    a per-chat token bucket. HTTP outcomes map to DeliveryFailed:
      - 429 / 5xx / network errors  -> transient
      - other 4xx (bad chat id, bot blocked) -> permanent
    """
    name = "telegram"

    def __init__(self, cfg: TelegramConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._limiters: dict[str, RateLimiter] = {}

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _url(self, method: str) -> str:
        return f"{self.cfg.api_base}/bot{self.cfg.bot_token}/{method}"

    def _limiter(self, chat_id: str) -> RateLimiter:
        rl = self._limiters.get(chat_id)
        if rl is None:
            rl = RateLimiter(rate_per_sec=self.cfg.per_chat_rate_per_sec, burst=self.cfg.per_chat_burst)
            self._limiters[chat_id] = rl
        return rl

    async def verify(self, max_retries: int = 3, initial_delay_s: float = 5.0, max_delay_s: float = 30.0) -> str:
        """
        Check the token with getMe, retrying with capped exponential backoff.
        Returns the bot username; raises DeliveryFailed after the last attempt.
        """
        await self.start()
        assert self._session is not None
        delays = backoff_iter(initial_delay_s, max_delay_s)
        last_err = "unknown"
        for attempt in range(1, max_retries + 1):
            try:
                async with self._session.get(self._url("getMe")) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        username = (data.get("result") or {}).get("username", "")
                        log.info("telegram_bot_verified", username=username)
                        return username
                    last_err = f"HTTP {resp.status}"
                    if 400 <= resp.status < 500 and resp.status != 429:
                        # bad token: retrying will not help
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_err = str(e) or type(e).__name__
            if attempt < max_retries:
                delay = next(delays)
                log.warning("telegram_verify_retry", err=last_err, attempt=attempt, delay_s=delay)
                await asyncio.sleep(delay)
        raise DeliveryFailed(f"telegram bot verification failed: {last_err}", transient=False)

    async def send(self, address: str, text: str) -> None:
        try:
            chat_id = int(address)
        except (TypeError, ValueError):
            raise DeliveryFailed(f"invalid telegram chat id {address!r}", transient=False) from None
        if chat_id == 0:
            raise DeliveryFailed("invalid telegram chat id 0", transient=False)

        await self.start()
        assert self._session is not None
        payload = {"chat_id": str(chat_id), "text": text}
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode
            if self.cfg.parse_mode == "MarkdownV2":
                payload["text"] = escape_markdown_v2(text)

        await self._limiter(address).acquire()
        try:
            async with self._session.post(self._url("sendMessage"), data=payload) as resp:
                if resp.status == 200:
                    return
                detail = await _maybe_text(resp)
                log.warning("telegram_send_failed", status=resp.status, body=detail[:200])
                if resp.status == 429:
                    # Telegram may include retry_after (seconds)
                    retry_after = await _retry_after(resp)
                    if retry_after:
                        await asyncio.sleep(min(retry_after, self.cfg.timeout_s))
                    raise DeliveryFailed("telegram rate limited", transient=True)
                if 500 <= resp.status < 600:
                    raise DeliveryFailed(f"telegram HTTP {resp.status}", transient=True)
                # other 4xx: don't retry
                raise DeliveryFailed(f"telegram rejected message: HTTP {resp.status}", transient=False)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("telegram_network_error", err=str(e) or type(e).__name__)
            raise DeliveryFailed(f"telegram network error: {e}", transient=True) from e


async def _maybe_text(resp) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"


async def _retry_after(resp) -> float:
    try:
        data = await resp.json(content_type=None)
        return float((data.get("parameters") or {}).get("retry_after") or 0)
    except (ValueError, TypeError, AttributeError, aiohttp.ContentTypeError):
        return 0.0
