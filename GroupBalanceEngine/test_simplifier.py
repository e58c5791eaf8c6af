from collections import defaultdict
from decimal import Decimal

from simplifier import simplify_all, simplify_debts


def replay(net_balances, payments):
    """Apply payments to balances; a debtor paying moves them toward zero."""
    remaining = defaultdict(Decimal, {k: Decimal(str(v)) for k, v in net_balances.items()})
    for payment in payments:
        remaining[payment["from"]] += payment["amount"]
        remaining[payment["to"]] -= payment["amount"]
    return remaining


def test_two_members():
    payments = simplify_debts({"A": Decimal("25.00"), "B": Decimal("-25.00")})
    assert payments == [{"from": "B", "to": "A", "amount": Decimal("25.00")}]


def test_cycle_of_equal_debts_needs_no_payments():
    # A owes B, B owes C, C owes A the same amount: everyone nets to zero
    assert simplify_debts({"A": Decimal("0"), "B": Decimal("0"), "C": Decimal("0")}) == []


def test_largest_debtor_pays_largest_creditor_first():
    balances = {"A": Decimal("70"), "B": Decimal("-50"), "C": Decimal("-20"), "D": Decimal("0")}
    payments = simplify_debts(balances)
    assert payments == [
        {"from": "B", "to": "A", "amount": Decimal("50.00")},
        {"from": "C", "to": "A", "amount": Decimal("20.00")},
    ]


def test_ties_are_broken_by_member_id():
    balances = {"D": Decimal("10"), "C": Decimal("10"), "B": Decimal("-10"), "A": Decimal("-10")}
    payments = simplify_debts(balances)
    assert [(p["from"], p["to"]) for p in payments] == [("A", "C"), ("B", "D")]


def test_replaying_payments_settles_everyone_within_n_minus_one():
    balances = {
        "A": Decimal("120.50"),
        "B": Decimal("-40.25"),
        "C": Decimal("-30.00"),
        "D": Decimal("15.75"),
        "E": Decimal("-66.00"),
    }
    payments = simplify_debts(balances)

    assert len(payments) <= len(balances) - 1
    assert all(p["amount"] > 0 for p in payments)
    assert all(value == 0 for value in replay(balances, payments).values())


def test_sub_cent_balances_are_ignored():
    assert simplify_debts({"A": "0.004", "B": "-0.004"}) == []


def test_one_minor_unit_counts_as_settled():
    assert simplify_debts({"A": "0.01", "B": "-0.01"}) == []
    assert simplify_debts({"A": 1, "B": -1}, "JPY") == []


def test_two_minor_units_are_paid():
    payments = simplify_debts({"A": "0.02", "B": "-0.02"})
    assert payments == [{"from": "B", "to": "A", "amount": Decimal("0.02")}]


def test_nobody_within_one_minor_unit_is_asked_to_pay():
    balances = {"A": Decimal("10.01"), "B": Decimal("-10.00"), "C": Decimal("-0.01")}
    payments = simplify_debts(balances)
    assert payments == [{"from": "B", "to": "A", "amount": Decimal("10.00")}]


def test_zero_decimal_currency():
    payments = simplify_debts({"A": 1000, "B": -1000}, "JPY")
    assert payments == [{"from": "B", "to": "A", "amount": Decimal("1000")}]


def test_input_is_not_modified():
    balances = {"A": Decimal("5"), "B": Decimal("-5")}
    simplify_debts(balances)
    assert balances == {"A": Decimal("5"), "B": Decimal("-5")}


def test_simplify_all_keeps_currencies_apart():
    result = simplify_all({
        "USD": {"A": Decimal("10"), "B": Decimal("-10")},
        "EUR": {"A": Decimal("-4"), "B": Decimal("4")},
    })
    assert result["USD"] == [{"from": "B", "to": "A", "amount": Decimal("10.00")}]
    assert result["EUR"] == [{"from": "A", "to": "B", "amount": Decimal("4.00")}]
