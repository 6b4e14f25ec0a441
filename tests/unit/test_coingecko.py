import asyncio
from decimal import Decimal

import aiohttp
import pytest

from cryptomon.config import ProviderConfig
from cryptomon.errors import (
    MalformedPayload,
    ProviderRateLimited,
    ProviderUnavailable,
    UnknownSymbol,
)
from cryptomon.ingest.coingecko import CoinGeckoPriceSource
from tests.helpers.fake_http import FakeResponse, FakeSession


class _Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def _cfg(**kw):
    base = dict(
        api_key="KEY",
        base_url="https://cg.test/api/v3",
        symbol_ids={"BTC": "bitcoin", "ETH": "ethereum", "SOL": "solana"},
        rate_per_sec=1000.0,
        burst=100,
        initial_backoff_s=2.0,
        max_backoff_s=8.0,
        cache_ttl_s=30.0,
    )
    base.update(kw)
    return ProviderConfig(**base)


def _ok(body):
    return FakeResponse(200, text=body if isinstance(body, str) else None, body=None if isinstance(body, str) else body)


@pytest.mark.asyncio
async def test_batch_fetch_partial_success_and_request_shape():
    session = FakeSession([_ok('{"bitcoin": {"usd": 45000.10, "last_updated_at": 1700000000}, "ethereum": {}}')])
    src = CoinGeckoPriceSource(_cfg(), session=session, clock=_Clock())

    res = await src.fetch(["btc", "ETH", "DOGE"])

    assert set(res.snapshots) == {"BTC"}
    snap = res.snapshots["BTC"]
    # floats are parsed straight to Decimal, no binary rounding
    assert snap.price == Decimal("45000.10")
    assert snap.source == "coingecko"
    assert isinstance(res.errors["ETH"], UnknownSymbol)
    assert isinstance(res.errors["DOGE"], UnknownSymbol)  # no id configured, never requested

    (req,) = session.requests
    assert req["url"] == "https://cg.test/api/v3/simple/price"
    assert req["params"]["ids"] == "bitcoin,ethereum"
    assert req["params"]["vs_currencies"] == "usd"
    assert req["headers"]["x-cg-demo-api-key"] == "KEY"


@pytest.mark.asyncio
async def test_pro_key_header():
    session = FakeSession([_ok({"bitcoin": {"usd": 1}})])
    src = CoinGeckoPriceSource(_cfg(pro=True), session=session, clock=_Clock())
    await src.fetch(["BTC"])
    assert session.requests[0]["headers"]["x-cg-pro-api-key"] == "KEY"


@pytest.mark.asyncio
async def test_cache_avoids_second_provider_call_within_ttl():
    clock = _Clock()
    session = FakeSession([
        _ok({"bitcoin": {"usd": 1}}),
        _ok({"bitcoin": {"usd": 2}}),
    ])
    src = CoinGeckoPriceSource(_cfg(cache_ttl_s=30.0), session=session, clock=clock)

    first = await src.fetch(["BTC"])
    again = await src.fetch(["BTC"])
    assert len(session.requests) == 1
    assert again.snapshots["BTC"] == first.snapshots["BTC"]

    clock.t += 31
    later = await src.fetch(["BTC"])
    assert len(session.requests) == 2
    assert later.snapshots["BTC"].price == Decimal("2")


@pytest.mark.asyncio
async def test_rate_limit_backs_off_exponentially_then_resumes():
    clock = _Clock()
    session = FakeSession([
        FakeResponse(429),
        FakeResponse(429),
        _ok({"bitcoin": {"usd": 3}}),
    ])
    src = CoinGeckoPriceSource(_cfg(cache_ttl_s=0), session=session, clock=clock)

    r1 = await src.fetch(["BTC"])
    assert isinstance(r1.errors["BTC"], ProviderRateLimited)
    assert r1.errors["BTC"].retry_after == pytest.approx(2.0)

    # still cooling down: fail fast, no request goes out
    clock.t += 1
    r2 = await src.fetch(["BTC"])
    assert isinstance(r2.errors["BTC"], ProviderRateLimited)
    assert len(session.requests) == 1

    clock.t += 1.5
    r3 = await src.fetch(["BTC"])
    assert isinstance(r3.errors["BTC"], ProviderRateLimited)
    assert r3.errors["BTC"].retry_after == pytest.approx(4.0)   # doubled

    clock.t += 4.5
    r4 = await src.fetch(["BTC"])
    assert r4.snapshots["BTC"].price == Decimal("3")
    assert src._backoff.current == 0.0


@pytest.mark.asyncio
async def test_rate_limit_honors_retry_after_within_ceiling():
    clock = _Clock()
    session = FakeSession([FakeResponse(429, headers={"Retry-After": "600"})])
    src = CoinGeckoPriceSource(_cfg(max_backoff_s=8.0), session=session, clock=clock)
    res = await src.fetch(["BTC"])
    assert res.errors["BTC"].retry_after == pytest.approx(8.0)
    assert src.cooling_down()


@pytest.mark.asyncio
@pytest.mark.parametrize("scripted, kind", [
    (FakeResponse(503), ProviderUnavailable),
    (FakeResponse(401, text="bad key"), ProviderUnavailable),
    (aiohttp.ClientConnectionError("refused"), ProviderUnavailable),
    (asyncio.TimeoutError(), ProviderUnavailable),
    (FakeResponse(200, text="<html>not json</html>"), MalformedPayload),
])
async def test_batch_wide_failures_reported_per_symbol(scripted, kind):
    session = FakeSession([scripted])
    src = CoinGeckoPriceSource(_cfg(), session=session, clock=_Clock())
    res = await src.fetch(["BTC", "ETH"])
    assert res.snapshots == {}
    assert set(res.errors) == {"BTC", "ETH"}
    assert all(isinstance(e, kind) for e in res.errors.values())


@pytest.mark.asyncio
async def test_batches_split_requests():
    session = FakeSession(default=_ok({"bitcoin": {"usd": 1}, "ethereum": {"usd": 2}, "solana": {"usd": 3}}))
    src = CoinGeckoPriceSource(_cfg(batch_size=2), session=session, clock=_Clock())

    assert list(src.batches(["sol", "BTC", "eth", "BTC"])) == [["BTC", "ETH"], ["SOL"]]

    res = await src.fetch(["BTC", "ETH", "SOL"])
    assert set(res.snapshots) == {"BTC", "ETH", "SOL"}
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_stop_leaves_injected_session_open():
    session = FakeSession()
    src = CoinGeckoPriceSource(_cfg(), session=session)
    await src.start()
    await src.stop()
    assert session.closed is False
