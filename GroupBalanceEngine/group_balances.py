"""
Group Balances Module

This module is the single entry point for a group's balances. The balances
view, the per-member breakdown and the leave/remove-member guard all go
through it, so they can never disagree.

Features:
    - Per-currency net balances and simplified debts for a group
    - Outstanding-balance query for one member
    - Consistent snapshot read of roster, expenses and settlements
    - Leave/remove-member guard (owner, last member and balance rules)

Data Model:
    Output - group balances (dict keyed by currency):
        - net_balances: dict of member_id -> Decimal
        - simplified_debts: list of {from, to, amount}

A failed computation propagates as an exception. It is never turned into an
empty result, since empty balances would read as "everyone is settled".

Functions:
    build_group_balances: Compute the balances view from in-memory records.
    outstanding_balances: Non-settled balances of one member.
    has_outstanding_balance: Whether a member has any non-settled balance.
    load_group_snapshot: Read roster, expenses and settlements together.
    get_group_balances: Fetch and compute the balances view of a group.
    get_member_balance: Fetch and compute one member's breakdown.
    ensure_member_can_leave: Guard used before removing a member.
"""

import logging

from firebase_admin import firestore

from balances import compute_balances, compute_member_balances
from config.firebase_config import get_db
from currency import is_settled
from errors import MembershipError, OutstandingBalanceError
from expenses import get_expenses
from members import ROLE_OWNER, get_members
from settlements import get_settlements
from simplifier import simplify_debts


logger = logging.getLogger(__name__)


def build_group_balances(
    group_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> dict:
    """
    Compute the balances view of a group from in-memory records.

    Args:
        group_id: The ID of the group.
        expenses: List of expense dicts (soft-deleted ones are ignored).
        settlements: List of settlement dicts.
        member_ids: Group roster used to validate every record.

    Returns:
        dict: {currency: {"net_balances": {member_id: Decimal},
                          "simplified_debts": [{from, to, amount}]}}

    Raises:
        DataIntegrityError: If any record is inconsistent.
        BalanceInvariantError: If the aggregation fails its own checks.
    """
    balances = compute_balances(group_id, expenses, settlements, member_ids)

    result = {}
    for currency, net_balances in balances.items():
        result[currency] = {
            "net_balances": net_balances,
            "simplified_debts": simplify_debts(net_balances, currency)
        }

    logger.info("Computed balances for group %s in %d currencies", group_id, len(result))
    return result


def outstanding_balances(
    group_id: str,
    member_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> dict:
    """
    Get the non-settled balances of one member.

    Uses the same aggregation as build_group_balances. A balance within one
    minor unit of zero counts as settled.

    Returns:
        dict: {currency: Decimal} for every currency where the member still
            owes or is owed money.
    """
    balances = compute_balances(group_id, expenses, settlements, member_ids)

    return {
        currency: nets[member_id]
        for currency, nets in balances.items()
        if member_id in nets and not is_settled(nets[member_id], currency)
    }


def has_outstanding_balance(
    group_id: str,
    member_id: str,
    expenses: list[dict],
    settlements: list[dict],
    member_ids: list[str] = None
) -> bool:
    """Check whether a member has a non-settled balance in any currency."""
    return bool(outstanding_balances(group_id, member_id, expenses, settlements, member_ids))


@firestore.transactional
def _read_snapshot(transaction, group_id: str) -> tuple:
    members = get_members(group_id, transaction=transaction, include_departed=True)
    expenses = [e.to_dict() for e in get_expenses(group_id, transaction=transaction)]
    settlements = [s.to_dict() for s in get_settlements(group_id, transaction=transaction)]
    return members, expenses, settlements


def load_group_snapshot(group_id: str) -> tuple:
    """
    Read a group's roster, non-deleted expenses and settlements.

    All three are read inside one Firestore transaction, so the balances are
    computed from a single point in time rather than a read that straddles
    concurrent writes.

    Returns:
        tuple: (members, expense dicts, settlement dicts). members holds
            every Member ever in the group, departed ones included, since
            older records still name them.

    Raises:
        DataIntegrityError: If a stored record cannot be decoded.
        RuntimeError: If Firestore is not available.
    """
    db = get_db()
    if db is None:
        raise RuntimeError("Firestore is not available")

    return _read_snapshot(db.transaction(), group_id)


def _roster(members: list) -> list[str]:
    return [member.member_id for member in members]


def get_group_balances(group_id: str) -> dict:
    """
    Fetch a group's records and compute its balances view.

    Raises:
        DataIntegrityError: If the stored data is inconsistent.
        BalanceInvariantError: If the aggregation fails its own checks.
        RuntimeError: If Firestore is not available.
    """
    members, expenses, settlements = load_group_snapshot(group_id)
    return build_group_balances(group_id, expenses, settlements, _roster(members))


def get_member_balance(group_id: str, member_id: str) -> dict:
    """
    Fetch a group's records and compute one member's owes/owed_by breakdown.

    Departed members can still be looked up.

    Returns:
        dict: {currency: {"owes": {...}, "owed_by": {...}, "net_balance": Decimal}}

    Raises:
        LookupError: If the member was never in the group.
    """
    members, expenses, settlements = load_group_snapshot(group_id)
    member_ids = _roster(members)
    if member_id not in member_ids:
        raise LookupError(f"{member_id} is not a member of group {group_id}")

    breakdown = compute_member_balances(group_id, expenses, settlements, member_ids)
    return {
        currency: members_by_id[member_id]
        for currency, members_by_id in breakdown.items()
        if member_id in members_by_id
    }


def _check_membership_rules(group_id: str, member_id: str, members: list, actor_id) -> None:
    active = {member.member_id: member for member in members if member.is_active}

    if member_id not in active:
        raise LookupError(f"{member_id} is not a member of group {group_id}")

    if actor_id is not None and actor_id != member_id:
        actor = active.get(actor_id)
        if actor is None or actor.role != ROLE_OWNER:
            raise PermissionError(f"Only the owner of group {group_id} can remove other members")

    if active[member_id].role == ROLE_OWNER:
        raise MembershipError(f"The owner of group {group_id} cannot leave or be removed")

    if len(active) == 1:
        raise MembershipError(f"{member_id} is the only member of group {group_id}")


def ensure_member_can_leave(group_id: str, member_id: str, actor_id: str = None) -> None:
    """
    Guard run before a member leaves or is removed from a group.

    Checks, in order:
        1. member_id is an active member
        2. When actor_id names someone else, the actor is the group owner
        3. The member is not the group owner
        4. The member is not the only active member
        5. The member has no outstanding balance in any currency

    Args:
        group_id: The ID of the group.
        member_id: Member who leaves or is removed.
        actor_id: Member performing the removal. None or member_id itself
            means the member is leaving on their own.

    Raises:
        LookupError: If member_id is not an active member.
        PermissionError: If the actor may not remove other members.
        MembershipError: If the member is the owner or the last member.
        OutstandingBalanceError: If the member owes or is owed money in any
            currency.
        DataIntegrityError: If the balances cannot be computed. This is
            logged and re-raised, never treated as a zero balance.
        RuntimeError: If Firestore is not available.
    """
    try:
        members, expenses, settlements = load_group_snapshot(group_id)
    except Exception:
        logger.exception("Balance check failed for member %s in group %s", member_id, group_id)
        raise

    _check_membership_rules(group_id, member_id, members, actor_id)

    try:
        outstanding = outstanding_balances(group_id, member_id, expenses, settlements, _roster(members))
    except Exception:
        logger.exception("Balance check failed for member %s in group %s", member_id, group_id)
        raise

    if outstanding:
        logger.info("Member %s cannot leave group %s: outstanding %s", member_id, group_id, outstanding)
        raise OutstandingBalanceError(member_id, outstanding)
