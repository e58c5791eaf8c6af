from decimal import Decimal

from utils import explain_member_balance, format_currency, generate_id


def test_format_currency():
    assert format_currency(Decimal("1234.5"), "USD") == "$1,234.50"
    assert format_currency(Decimal("-3"), "EUR") == "-€3.00"
    assert format_currency(1234.6, "JPY") == "¥1,235"
    assert format_currency("1.25", "KWD") == "KWD 1.250"


def test_generate_id():
    assert generate_id("E", 1) == "E001"
    assert generate_id("S", 42) == "S042"
    assert generate_id("E", 1234) == "E1234"


def test_explain_member_balance():
    balance = {
        "USD": {"owes": {"A": Decimal("20.00")}, "owed_by": {}, "net_balance": Decimal("-20.00")},
        "EUR": {"owes": {}, "owed_by": {"C": Decimal("5.00")}, "net_balance": Decimal("5.00")},
        "JPY": {"owes": {}, "owed_by": {}, "net_balance": Decimal("0")},
    }

    explanation = explain_member_balance("B", balance)

    assert explanation["member_id"] == "B"
    eur, jpy, usd = explanation["currencies"]
    assert usd["summary"] == "B owes $20.00"
    assert usd["owes"] == [{"member_id": "A", "amount": Decimal("20.00"), "display": "$20.00"}]
    assert eur["summary"] == "B is owed €5.00"
    assert jpy["settled"]
    assert jpy["summary"] == "B is settled up in JPY"
