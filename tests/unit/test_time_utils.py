from decimal import Decimal

from cryptomon.utils.time import epoch_seconds


def test_epoch_seconds_accepts_s_and_ms():
    assert epoch_seconds(1700000000) == 1700000000.0
    assert epoch_seconds(1700000000500) == 1700000000.5
    assert epoch_seconds(Decimal("1700000000.25")) == 1700000000.25


def test_epoch_seconds_rejects_junk():
    for v in (None, True, "1700000000", 0, -1, [1]):
        assert epoch_seconds(v) is None
