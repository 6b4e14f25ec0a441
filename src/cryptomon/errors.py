from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised inside the monitor."""


class ConfigError(MonitorError):
    pass


# ---- price provider ----

class ProviderError(MonitorError):
    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx. Retried on the next tick."""


class ProviderRateLimited(ProviderError):
    """429-class response, or the adapter is still backing off from one."""

    def __init__(self, message: str, symbol: Optional[str] = None, retry_after: float = 0.0):
        super().__init__(message, symbol)
        self.retry_after = retry_after


class UnknownSymbol(ProviderError):
    """Provider has no price for the symbol. Skipped, not retried this tick."""


class MalformedPayload(ProviderError):
    pass


# ---- store ----

class StoreUnavailable(MonitorError):
    pass


# ---- delivery ----

class DeliveryFailed(MonitorError):
    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient
