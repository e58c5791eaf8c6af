"""
Balances Module

This module folds a group's expenses and settlements into per-currency
balances for the group balance engine.

Features:
    - Pairwise ledger per currency (who owes whom, in minor units)
    - Net balance per member per currency
    - Per-member owes / owed_by breakdown
    - Zero-sum and cross-formulation invariant checks
    - Fails the whole group on inconsistent data

Data Model:
    Input - expenses (list of dicts):
        - id: string
        - group_id: string
        - payer_id: string
        - participant_ids: list of member ids
        - split_type: string (equal, exact, percentage)
        - splits: list of {participant_id, amount, percentage?}
        - amount: number (positive)
        - currency: string (ISO 4217)
        - deleted_at: string or None (soft-deleted expenses are skipped)

    Input - settlements (list of dicts):
        - id: string
        - group_id: string
        - payer_id: string
        - payee_id: string
        - amount: number (positive)
        - currency: string

    Output - balances (dict keyed by currency, then member id):
        - net_balance: Decimal
            - Positive = member is owed money
            - Negative = member owes money

The input must be a snapshot of the group taken at a single point in time.
These functions do no I/O and keep no state between calls.

Functions:
    compute_ledger: Build the pairwise ledger per currency.
    compute_balances: Net balance per member per currency.
    compute_member_balances: owes / owed_by / net_balance per member.
"""

import logging
from collections import defaultdict

from currency import from_minor_units, normalize_currency, to_minor_units
from errors import BalanceInvariantError, DataIntegrityError, ValidationError
from splitter import validate_splits


logger = logging.getLogger(__name__)


def _adjust_pair(pairs: dict, debtor: str, creditor: str, units: int) -> None:
    """
    Add units to the debt from debtor to creditor.

    Only one direction is stored per pair. When the adjustment pushes a pair
    below zero the remainder flips into the opposite direction.
    """
    if units == 0:
        return

    key = (debtor, creditor)
    flipped_key = (creditor, debtor)

    # Net against the opposite direction first
    current = pairs.pop(key, 0) - pairs.pop(flipped_key, 0) + units

    if current > 0:
        pairs[key] = current
    elif current < 0:
        pairs[flipped_key] = -current


def _check_member(member_id, roster: set, group_id: str, record_id: str, role: str) -> None:
    if not isinstance(member_id, str) or not member_id:
        raise DataIntegrityError(f"{role} is missing on record {record_id}", group_id, record_id)
    if roster is not None and member_id not in roster:
        raise DataIntegrityError(
            f"{role} '{member_id}' on record {record_id} is not a member of group {group_id}",
            group_id, record_id
        )


def _check_group(record: dict, group_id: str) -> None:
    record_group = record.get("group_id")
    if record_group is not None and record_group != group_id:
        raise DataIntegrityError(
            f"record {record.get('id')} belongs to group {record_group}, not {group_id}",
            group_id, record.get("id")
        )


def _expense_entries(expense: dict, group_id: str, roster: set) -> tuple[str, str, int, list[tuple[str, int]]]:
    """
    Validate one expense and return (currency, payer, amount_units, [(participant, units)]).

    Raises:
        DataIntegrityError: If the expense is structurally invalid.
    """
    expense_id = expense.get("id")
    _check_group(expense, group_id)

    payer_id = expense.get("payer_id")
    participant_ids = expense.get("participant_ids") or []
    splits = expense.get("splits") or []

    well_formed = (
        isinstance(participant_ids, list)
        and isinstance(splits, list)
        and all(isinstance(split, dict) for split in splits)
    )
    if not well_formed:
        raise DataIntegrityError(f"expense {expense_id} has malformed participants or splits", group_id, expense_id)

    _check_member(payer_id, roster, group_id, expense_id, "payer")
    for participant_id in participant_ids:
        _check_member(participant_id, roster, group_id, expense_id, "participant")

    try:
        currency = normalize_currency(expense.get("currency"))
        amount_units = to_minor_units(expense.get("amount"), currency)
        if amount_units <= 0:
            raise ValidationError(f"amount must be positive, got: {expense.get('amount')}")
        validate_splits(expense.get("amount"), splits, participant_ids, currency)
    except ValidationError as e:
        raise DataIntegrityError(f"expense {expense_id} is invalid: {e}", group_id, expense_id) from e

    entries = [
        (split["participant_id"], to_minor_units(split["amount"], currency))
        for split in splits
    ]
    return currency, payer_id, amount_units, entries


def _settlement_entry(settlement: dict, group_id: str, roster: set) -> tuple[str, str, str, int]:
    """
    Validate one settlement and return (currency, payer, payee, amount_units).

    Raises:
        DataIntegrityError: If the settlement is structurally invalid.
    """
    settlement_id = settlement.get("id")
    _check_group(settlement, group_id)

    payer_id = settlement.get("payer_id")
    payee_id = settlement.get("payee_id")
    _check_member(payer_id, roster, group_id, settlement_id, "payer")
    _check_member(payee_id, roster, group_id, settlement_id, "payee")

    if payer_id == payee_id:
        raise DataIntegrityError(
            f"settlement {settlement_id} has the same payer and payee ({payer_id})",
            group_id, settlement_id
        )

    try:
        currency = normalize_currency(settlement.get("currency"))
        amount_units = to_minor_units(settlement.get("amount"), currency)
    except ValidationError as e:
        raise DataIntegrityError(f"settlement {settlement_id} is invalid: {e}", group_id, settlement_id) from e

    if amount_units <= 0:
        raise DataIntegrityError(
            f"settlement {settlement_id} amount must be positive, got: {settlement.get('amount')}",
            group_id, settlement_id
        )

    return currency, payer_id, payee_id, amount_units


def _fold(group_id: str, expenses: list[dict], settlements: list[dict], member_ids) -> tuple[dict, dict]:
    """
    Fold records into the pairwise ledger and the direct net formulation.

    Returns:
        tuple: (ledger, direct) where ledger is {currency: {(debtor, creditor): units}}
            and direct is {currency: {member_id: units}}.
    """
    roster = set(member_ids) if member_ids is not None else None

    ledger = defaultdict(dict)
    direct = defaultdict(lambda: defaultdict(int))

    for expense in expenses:
        if expense.get("deleted_at"):
            continue

        currency, payer_id, amount_units, entries = _expense_entries(expense, group_id, roster)
        pairs = ledger[currency]

        direct[currency][payer_id] += amount_units
        for participant_id, split_units in entries:
            direct[currency][participant_id] -= split_units
            # The payer's own share is not a debt
            if participant_id != payer_id:
                _adjust_pair(pairs, participant_id, payer_id, split_units)

    for settlement in settlements:
        currency, payer_id, payee_id, amount_units = _settlement_entry(settlement, group_id, roster)

        direct[currency][payer_id] += amount_units
        direct[currency][payee_id] -= amount_units
        # Paying someone reduces what the payer owes them
        _adjust_pair(ledger[currency], payer_id, payee_id, -amount_units)

    return dict(ledger), {currency: dict(nets) for currency, nets in direct.items()}


def _net_units(pairs: dict, members) -> dict:
    nets = {member_id: 0 for member_id in members}
    for (debtor, creditor), units in pairs.items():
        nets[debtor] = nets.get(debtor, 0) - units
        nets[creditor] = nets.get(creditor, 0) + units
    return nets


def _check_invariants(group_id: str, currency: str, nets: dict, direct: dict) -> None:
    """
    Verify a currency's balances before they leave the aggregator.

    Raises:
        BalanceInvariantError: If the balances do not sum to zero or the
            ledger disagrees with the direct formulation.
    """
    total = sum(nets.values())
    if total != 0:
        logger.error("Balance invariant failed for group %s: %s balances sum to %s minor units",
                     group_id, currency, total)
        raise BalanceInvariantError(
            f"{currency} balances for group {group_id} sum to {from_minor_units(total, currency)}, expected 0"
        )

    for member_id in set(nets) | set(direct):
        if nets.get(member_id, 0) != direct.get(member_id, 0):
            logger.error("Balance invariant failed for group %s: ledger and direct %s net differ for %s (%s != %s)",
                         group_id, currency, member_id, nets.get(member_id, 0), direct.get(member_id, 0))
            raise BalanceInvariantError(
                f"{currency} ledger for group {group_id} disagrees with direct balance for {member_id}"
            )


def _members_for(currency_pairs: dict, direct: dict, member_ids) -> list[str]:
    members = set(member_ids or [])
    members.update(direct)
    for debtor, creditor in currency_pairs:
        members.add(debtor)
        members.add(creditor)
    return sorted(members)


def _aggregate(group_id: str, expenses: list[dict], settlements: list[dict], member_ids) -> dict:
    """
    Fold the records and check every currency's invariants.

    Returns:
        dict: {currency: (pairs, members, nets)} with nets in minor units.
    """
    ledger, direct = _fold(group_id, expenses, settlements, member_ids)

    aggregated = {}
    for currency in sorted(ledger):
        pairs = ledger[currency]
        currency_direct = direct.get(currency, {})
        members = _members_for(pairs, currency_direct, member_ids)
        nets = _net_units(pairs, members)
        _check_invariants(group_id, currency, nets, currency_direct)
        aggregated[currency] = (pairs, members, nets)

    return aggregated


def compute_ledger(
    group_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> dict:
    """
    Build the pairwise debt ledger of a group, one ledger per currency.

    For each non-deleted expense, every participant other than the payer
    owes the payer their split amount. For each settlement, the debt from
    payer to payee is reduced by the settlement amount (and flips direction
    if it goes below zero).

    Args:
        group_id: The ID of the group.
        expenses: List of expense dicts.
        settlements: List of settlement dicts.
        member_ids: Everyone who was ever in the group, departed members
            included. When given, every payer, payee and participant must be
            in it.

    Returns:
        dict: {currency: {(debtor_id, creditor_id): minor_units}} with only
            positive entries.

    Raises:
        DataIntegrityError: If any record is inconsistent.
        BalanceInvariantError: If the ledger fails its consistency checks.
    """
    aggregated = _aggregate(group_id, expenses, settlements, member_ids)
    return {currency: pairs for currency, (pairs, _, _) in aggregated.items()}


def compute_balances(
    group_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> dict:
    """
    Compute each member's net balance in every currency used by the group.

    Currencies are never mixed: a member can owe USD and be owed EUR at the
    same time. Small non-zero balances are kept as they are; deciding what
    counts as settled is left to currency.is_settled.

    Args:
        group_id: The ID of the group.
        expenses: List of expense dicts (soft-deleted ones are ignored).
        settlements: List of settlement dicts.
        member_ids: Optional group roster. Roster members appear with a zero
            balance in every currency that has activity.

    Returns:
        dict: {currency: {member_id: Decimal}}.

    Raises:
        DataIntegrityError: If any record is inconsistent.
        BalanceInvariantError: If the aggregation fails its own checks.
    """
    balances = {}
    for currency, (_, members, nets) in _aggregate(group_id, expenses, settlements, member_ids).items():
        balances[currency] = {
            member_id: from_minor_units(nets[member_id], currency)
            for member_id in members
        }
        logger.debug("Group %s %s balances: %s", group_id, currency, balances[currency])

    return balances


def compute_member_balances(
    group_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> dict:
    """
    Compute the per-member breakdown of who owes whom.

    Returns:
        dict: {currency: {member_id: {
            "owes": {creditor_id: Decimal},
            "owed_by": {debtor_id: Decimal},
            "net_balance": Decimal
        }}}
    """
    result = {}
    for currency, (pairs, members, nets) in _aggregate(group_id, expenses, settlements, member_ids).items():
        breakdown = {
            member_id: {
                "owes": {},
                "owed_by": {},
                "net_balance": from_minor_units(nets[member_id], currency)
            }
            for member_id in members
        }

        for (debtor, creditor), units in sorted(pairs.items()):
            amount = from_minor_units(units, currency)
            breakdown[debtor]["owes"][creditor] = amount
            breakdown[creditor]["owed_by"][debtor] = amount

        result[currency] = breakdown

    return result
