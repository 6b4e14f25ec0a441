from decimal import Decimal

from cryptomon.alerts.formatting import escape_markdown_v2, format_alert_text
from cryptomon.utils.types import Alert, FiringDecision, PriceSnapshot


def _decision(px, ts=1700000000.0):
    snap = PriceSnapshot(symbol="BTC", price=Decimal(px), ts=ts, source="coingecko")
    return FiringDecision(alert_id="1", snapshot=snap, ts=ts)


def test_alert_text_contents():
    a = Alert(id="1", owner="u", symbol="BTC", target_price=Decimal("45000"), direction="ABOVE")
    text = format_alert_text(a, _decision("45123.456"))
    assert "BTC" in text
    assert "above 45000" in text
    assert "$45,123.46" in text
    assert "2023-11-14 22:13:20 UTC" in text


def test_below_and_timezone():
    a = Alert(id="1", owner="u", symbol="BTC", target_price=Decimal("30000"), direction="BELOW")
    text = format_alert_text(a, _decision("29000"), tz_name="Asia/Tokyo")
    assert "below 30000" in text
    assert "2023-11-15 07:13:20 JST" in text


def test_escape_markdown_v2():
    assert escape_markdown_v2("a_b*c[d](e).!") == "a\\_b\\*c\\[d\\]\\(e\\)\\.\\!"
    assert escape_markdown_v2("plain 123") == "plain 123"


def test_sub_dollar_prices_keep_significant_digits():
    a = Alert(id="1", owner="u", symbol="PEPE", target_price=Decimal("0.00001"), direction="ABOVE")
    assert "$0.00001234" in format_alert_text(a, _decision("0.00001234"))
    assert "$0.50" in format_alert_text(a, _decision("0.5"))
    assert "$0.1235" in format_alert_text(a, _decision("0.123456"))
