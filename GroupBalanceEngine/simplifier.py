"""
Simplifier Module

This module turns net balances into suggested payments for the group
balance engine.

Features:
    - Convert net balances into payment suggestions
    - Greedy largest-debtor to largest-creditor matching
    - Deterministic tie-break by member id
    - Exact minor-unit arithmetic per currency

Data Model:
    Input - net_balances (dict keyed by member_id):
        - value: number (positive = owed money, negative = owes money)

    Output - list of simplified debts:
        - from: string (debtor who pays)
        - to: string (creditor who receives)
        - amount: Decimal (quantized to the currency precision)

The greedy matching does not always find the fewest possible payments, but
it never needs more than n - 1 payments for n members with an unsettled
balance. Replaying its payments settles every member up to rounding dust:
an amount of one minor unit or less is never turned into a payment, the
same threshold the leave guard uses (currency.is_settled).

Functions:
    simplify_debts: Convert one currency's balances into payments.
    simplify_all: Run simplify_debts for every currency.
"""

import heapq
import logging

from currency import from_minor_units, normalize_currency, round_to_minor_units, settled_epsilon


logger = logging.getLogger(__name__)


def simplify_debts(net_balances: dict, currency: str = "USD") -> list[dict]:
    """
    Convert one currency's net balances into a short list of payments.

    Uses a greedy algorithm:
        1. Convert each balance to minor units; members within one minor
           unit of zero count as settled and are dropped
        2. Put creditors and debtors in max-heaps by amount, ties broken by
           ascending member id
        3. Pop the largest debtor and the largest creditor
        4. Record a payment of the smaller of the two amounts
        5. Push back whichever side still has more than one minor unit left
        6. Repeat until either heap is empty

    Args:
        net_balances: Dict of member_id -> net balance (Decimal, str, int or
            float).
        currency: ISO 4217 code used for precision.

    Returns:
        list[dict]: Payments with from, to and amount (Decimal).

    Notes:
        - A member never appears in a payment while the guard reports them
          as settled
        - Does NOT modify input balances
        - Does NOT persist anything
    """
    currency = normalize_currency(currency)
    epsilon_units = round_to_minor_units(settled_epsilon(currency), currency)

    # heapq is a min-heap, so amounts are negated for largest-first order
    creditors = []
    debtors = []
    for member_id, balance in net_balances.items():
        units = round_to_minor_units(balance, currency)
        if units > epsilon_units:
            heapq.heappush(creditors, (-units, member_id))
        elif units < -epsilon_units:
            heapq.heappush(debtors, (units, member_id))

    payments = []
    while creditors and debtors:
        credit_neg, creditor_id = heapq.heappop(creditors)
        debt_neg, debtor_id = heapq.heappop(debtors)

        credit_units = -credit_neg
        debt_units = -debt_neg
        payment_units = min(credit_units, debt_units)

        payments.append({
            "from": debtor_id,
            "to": creditor_id,
            "amount": from_minor_units(payment_units, currency)
        })

        if credit_units - payment_units > epsilon_units:
            heapq.heappush(creditors, (-(credit_units - payment_units), creditor_id))
        if debt_units - payment_units > epsilon_units:
            heapq.heappush(debtors, (-(debt_units - payment_units), debtor_id))

    if creditors or debtors:
        # Settled members left out of the matching can leave the other side short
        logger.debug("Unmatched %s balances left after simplification: creditors=%s debtors=%s",
                     currency, creditors, debtors)

    return payments


def simplify_all(balances_by_currency: dict) -> dict:
    """Simplify each currency's balances independently."""
    return {
        currency: simplify_debts(balances, currency)
        for currency, balances in balances_by_currency.items()
    }
