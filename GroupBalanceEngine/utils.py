"""
Utilities Module

This module provides utility functions and helpers for the group balance
engine.

Features:
    - Transparency of a member's balance (who they owe, who owes them)
    - Currency formatting at the right precision
    - Sequential record ids

Data Model:
    Input - member balance (one member, from group_balances.get_member_balance):
        {currency: {
            "owes": {creditor_id: Decimal},
            "owed_by": {debtor_id: Decimal},
            "net_balance": Decimal
        }}

Functions:
    explain_member_balance: Human-readable breakdown of one member's balance.
    format_currency: Format amount with currency symbol and precision.
    generate_id: Generate a formatted identifier.
"""

from currency import get_precision, is_settled, quantize


CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "KRW": "₩",
    "CAD": "CA$",
    "AUD": "A$",
    "CHF": "CHF ",
}


def format_currency(amount, currency: str) -> str:
    """
    Format a monetary amount with the appropriate currency symbol.

    Args:
        amount: The amount to format.
        currency: ISO 4217 code.

    Returns:
        str: Formatted string like "$1,234.56", "¥1,235" or "KWD 1.250".
    """
    value = quantize(amount, currency)
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.{get_precision(currency)}f}"


def explain_member_balance(member_id: str, member_balance: dict) -> dict:
    """
    Generate a breakdown of a member's position in every currency.

    Args:
        member_id: ID of the member to explain.
        member_balance: Output of group_balances.get_member_balance().

    Returns:
        dict: Explanation containing:
            - member_id: string
            - currencies: list of dicts (sorted by currency) with
                - currency: string
                - net_balance: Decimal
                - settled: bool
                - owes: list of {member_id, amount, display}
                - owed_by: list of {member_id, amount, display}
                - summary: string

    Notes:
        - Only pairwise debts that remain after settlements are listed
        - A balance within one minor unit of zero is reported as settled
    """
    currencies = []

    for currency in sorted(member_balance):
        entry = member_balance[currency]
        net_balance = entry["net_balance"]
        settled = is_settled(net_balance, currency)

        owes = [
            {"member_id": other, "amount": amount, "display": format_currency(amount, currency)}
            for other, amount in sorted(entry["owes"].items())
        ]
        owed_by = [
            {"member_id": other, "amount": amount, "display": format_currency(amount, currency)}
            for other, amount in sorted(entry["owed_by"].items())
        ]

        if settled:
            summary = f"{member_id} is settled up in {currency}"
        elif net_balance > 0:
            summary = f"{member_id} is owed {format_currency(net_balance, currency)}"
        else:
            summary = f"{member_id} owes {format_currency(-net_balance, currency)}"

        currencies.append({
            "currency": currency,
            "net_balance": net_balance,
            "settled": settled,
            "owes": owes,
            "owed_by": owed_by,
            "summary": summary
        })

    return {
        "member_id": member_id,
        "currencies": currencies
    }


def generate_id(prefix: str = "ID", number: int = 1) -> str:
    """
    Generate a formatted identifier.

    Args:
        prefix: Prefix for the ID (e.g., "E", "S").
        number: Numeric value to format.

    Returns:
        str: Formatted ID like "E001", "S042".
    """
    return f"{prefix}{number:03d}"
