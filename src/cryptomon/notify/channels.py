from __future__ import annotations
import sys
from typing import Protocol, TextIO

import structlog

log = structlog.get_logger("notifier")


class Channel(Protocol):
    """
    One delivery backend. `send` returns on success and raises
    DeliveryFailed(transient=...) otherwise; retries belong to the dispatcher.
    """
    name: str

    async def send(self, address: str, text: str) -> None: ...


class ConsoleChannel:
    name = "console"

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream

    async def send(self, address: str, text: str) -> None:
        stream = self._stream or sys.stdout
        print(f"[ALERT → {address}] {text}", file=stream, flush=True)
        log.debug("console_delivered", address=address)
