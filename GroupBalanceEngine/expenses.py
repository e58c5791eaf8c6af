"""
Expenses Module

This module handles all expense-related operations for the group balance
engine.

Features:
    - Add/update/soft-delete expenses
    - Compute per-participant splits at write time
    - Keep previous versions of updated expenses
    - Support for equal, exact and percentage splits

Data Model:
    Expense stored at: groups/{group_id}/expenses/{expense_id}
    Fields:
        - id: string (E001, E002, ... format)
        - group_id: string
        - payer_id: string (member id who paid)
        - participant_ids: list of member ids
        - split_type: string (equal, exact, percentage)
        - splits: list of {participant_id, amount, percentage?}
        - amount: string (decimal, must be > 0)
        - currency: string (ISO 4217)
        - description: string or None
        - created_by: string or None
        - created_at: string (ISO timestamp)
        - updated_at: string (ISO timestamp)
        - version: int
        - deleted_at: string or None
        - deleted_by: string or None

    Previous versions stored at:
        groups/{group_id}/expenses/{expense_id}/history/{version}

Amounts are stored as decimal strings so they survive Firestore without
float rounding.

Functions:
    add_expense: Add a new expense to a group.
    update_expense: Replace an expense with a new version.
    delete_expense: Soft-delete an expense.
    get_expense: Get one expense.
    get_expenses: Get all expenses for a group.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from google.api_core.exceptions import Conflict, FailedPrecondition

from config.firebase_config import get_db
from currency import normalize_currency, quantize, to_decimal, to_minor_units
from errors import ConcurrentUpdateError, DataIntegrityError, ValidationError
from members import get_member_ids
from splitter import SPLIT_EQUAL, compute_splits
from utils import generate_id


logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class Expense:
    """
    Represents a single expense in a group.

    Attributes:
        id (str): Unique identifier in E### format.
        group_id (str): Group the expense belongs to.
        payer_id (str): Member id of who paid.
        participant_ids (list[str]): Members sharing the expense.
        split_type (str): One of: equal, exact, percentage.
        splits (list[dict]): Per-participant owed amounts.
        amount (Decimal): Total amount of the expense.
        currency (str): ISO 4217 code.
        description (str | None): Optional description.
        created_by (str | None): Member id of who logged the expense.
        created_at (str | None): Creation timestamp.
        updated_at (str | None): Last update timestamp.
        version (int): Incremented on every update.
        deleted_at (str | None): Soft-delete timestamp.
        deleted_by (str | None): Member id of who deleted the expense.
    """

    def __init__(
        self,
        id: str,
        group_id: str,
        payer_id: str,
        participant_ids: list[str],
        split_type: str,
        splits: list[dict],
        amount,
        currency: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        version: int = 1,
        deleted_at: Optional[str] = None,
        deleted_by: Optional[str] = None
    ):
        self.id = id
        self.group_id = group_id
        self.payer_id = payer_id
        self.participant_ids = participant_ids
        self.split_type = split_type
        self.splits = splits
        self.amount = amount
        self.currency = currency
        self.description = description
        self.created_by = created_by
        self.created_at = created_at
        self.updated_at = updated_at
        self.version = version
        self.deleted_at = deleted_at
        self.deleted_by = deleted_by

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        """Convert expense to dictionary for Firestore storage."""
        splits = []
        for split in self.splits:
            stored = {"participant_id": split["participant_id"], "amount": str(split["amount"])}
            if split.get("percentage") is not None:
                stored["percentage"] = str(split["percentage"])
            splits.append(stored)

        return {
            "id": self.id,
            "group_id": self.group_id,
            "payer_id": self.payer_id,
            "participant_ids": list(self.participant_ids),
            "split_type": self.split_type,
            "splits": splits,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "deleted_at": self.deleted_at,
            "deleted_by": self.deleted_by
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Expense":
        """Create an Expense instance from a dictionary."""
        splits = []
        for split in data.get("splits", []):
            loaded = {"participant_id": split.get("participant_id"), "amount": to_decimal(split.get("amount"))}
            if split.get("percentage") is not None:
                loaded["percentage"] = to_decimal(split["percentage"])
            splits.append(loaded)

        return cls(
            id=data.get("id"),
            group_id=data.get("group_id"),
            payer_id=data.get("payer_id"),
            participant_ids=data.get("participant_ids", []),
            split_type=data.get("split_type", SPLIT_EQUAL),
            splits=splits,
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency"),
            description=data.get("description"),
            created_by=data.get("created_by"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            version=data.get("version", 1),
            deleted_at=data.get("deleted_at"),
            deleted_by=data.get("deleted_by")
        )

    def __repr__(self) -> str:
        """Return string representation of expense."""
        return f"Expense(id='{self.id}', payer='{self.payer_id}', amount={self.amount} {self.currency}, split='{self.split_type}')"


def _get_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_db():
    db = get_db()
    if db is None:
        raise RuntimeError("Firestore is not available")
    return db


def _expenses_ref(db, group_id: str):
    return db.collection("groups").document(group_id).collection("expenses")


def _expense_from_doc(doc, group_id: str) -> Expense:
    """
    Decode a stored expense document.

    Raises:
        DataIntegrityError: If the stored data cannot be decoded (bad amount,
            malformed split entries, ...).
    """
    try:
        return Expense.from_dict(doc.to_dict())
    except (ValidationError, AttributeError, TypeError) as e:
        raise DataIntegrityError(f"stored expense {doc.id} is invalid: {e}", group_id, doc.id) from e


def _generate_next_expense_id(group_id: str) -> str:
    """
    Generate the next sequential expense ID for a group.

    Format: E001, E002, E003, ...

    Logic:
        1. Fetch all existing expense document IDs for the group
        2. Extract numeric suffix from IDs matching E### format (e.g., E001 -> 1)
        3. Find the highest existing number
        4. Generate next ID with zero-padded 3-digit suffix

    Two concurrent writers can compute the same ID; add_expense claims it
    with create() and asks again on conflict.

    Args:
        group_id: The ID of the group.

    Returns:
        str: Next expense ID in format E### (e.g., E001, E002).
    """
    db = _require_db()

    max_num = 0
    pattern = re.compile(r'^E(\d+)$')

    # Soft-deleted expenses keep their ids, so they count too
    for doc in _expenses_ref(db, group_id).stream():
        match = pattern.match(doc.id)
        if match:
            max_num = max(max_num, int(match.group(1)))

    return generate_id("E", max_num + 1)


def _validate_non_empty_string(value: str, field_name: str) -> bool:
    """
    Validate that a string is non-empty.

    Raises:
        ValidationError: If string is empty or not a string.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return True


def _validate_members(group_id: str, payer_id: str, participant_ids: list[str]) -> None:
    """
    Check payer and participants against the active group roster.

    Raises:
        ValidationError: If anyone is not an active member of the group.
    """
    members = set(get_member_ids(group_id))

    if payer_id not in members:
        raise ValidationError(f"payer_id '{payer_id}' is not a member of group {group_id}")

    for participant_id in participant_ids:
        if participant_id not in members:
            raise ValidationError(f"participant '{participant_id}' is not a member of group {group_id}")


def _build_splits(amount, currency: str, split_type: str, participant_ids: list[str], raw_splits) -> tuple:
    """Normalize amount and currency, then compute the splits."""
    currency = normalize_currency(currency)
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError(f"amount must be a positive number, got: {amount}")
    # Reject sub-minor-unit amounts rather than rounding them away
    to_minor_units(amount, currency)

    splits = compute_splits(amount, split_type, participant_ids, raw_splits, currency)
    return quantize(amount, currency), currency, splits


def add_expense(
    group_id: str,
    payer_id: str,
    amount,
    currency: str,
    split_type: str,
    participant_ids: list[str],
    raw_splits: Optional[list[dict]] = None,
    description: Optional[str] = None,
    created_by: Optional[str] = None
) -> Expense:
    """
    Add a new expense to a group.

    Args:
        group_id: The ID of the group.
        payer_id: Member id of who paid the expense.
        amount: Amount of the expense (must be > 0).
        currency: ISO 4217 currency code.
        split_type: equal, exact or percentage.
        participant_ids: Members sharing the expense.
        raw_splits: Per-participant amounts or percentages (exact/percentage).
        description: Optional description.
        created_by: Member id of who logged the expense.

    Returns:
        Expense: The created expense object.

    Raises:
        ValidationError: If input validation fails.
        ConcurrentUpdateError: If no free ID could be claimed.
        RuntimeError: If Firestore is not available.

    Notes:
        - Payer does NOT have to be a participant
        - Payer and participants must be active members
        - Splits are computed here and stored with the expense
        - The document is written with create(), so a concurrent writer that
          picked the same ID can never be overwritten
    """
    _validate_non_empty_string(group_id, "group_id")
    _validate_non_empty_string(payer_id, "payer_id")

    amount, currency, splits = _build_splits(amount, currency, split_type, participant_ids, raw_splits)
    _validate_members(group_id, payer_id, participant_ids)

    db = _require_db()
    timestamp = _get_timestamp()

    expense = Expense(
        id=None,
        group_id=group_id,
        payer_id=payer_id,
        participant_ids=list(participant_ids),
        split_type=split_type,
        splits=splits,
        amount=amount,
        currency=currency,
        description=description.strip() if description else None,
        created_by=created_by,
        created_at=timestamp,
        updated_at=timestamp
    )

    for _ in range(MAX_WRITE_ATTEMPTS):
        expense.id = _generate_next_expense_id(group_id)
        try:
            _expenses_ref(db, group_id).document(expense.id).create(expense.to_dict())
        except Conflict:
            logger.warning("Expense id %s in group %s was taken concurrently, retrying", expense.id, group_id)
            continue

        logger.info("Added expense %s to group %s: %s %s paid by %s",
                    expense.id, group_id, amount, currency, payer_id)
        return expense

    raise ConcurrentUpdateError(f"Could not allocate an expense id in group {group_id}")


def get_expense(group_id: str, expense_id: str) -> Expense:
    """
    Get one expense.

    Raises:
        LookupError: If the expense does not exist.
        DataIntegrityError: If the stored expense cannot be decoded.
        RuntimeError: If Firestore is not available.
    """
    db = _require_db()
    doc = _expenses_ref(db, group_id).document(expense_id).get()
    if not doc.exists:
        raise LookupError(f"Expense {expense_id} not found in group {group_id}")
    return _expense_from_doc(doc, group_id)


def _next_version(
    group_id: str,
    current: Expense,
    payer_id: Optional[str],
    amount,
    currency: Optional[str],
    split_type: Optional[str],
    participant_ids: Optional[list[str]],
    raw_splits: Optional[list[dict]],
    description: Optional[str]
) -> Expense:
    """Apply the requested changes on top of the current version."""
    if current.is_deleted:
        raise ValidationError(f"Expense {current.id} is deleted and cannot be updated")

    payer_id = payer_id or current.payer_id
    participant_ids = participant_ids or current.participant_ids
    split_type = split_type or current.split_type
    if raw_splits is None and split_type != SPLIT_EQUAL:
        raw_splits = current.splits

    amount, currency, splits = _build_splits(
        amount if amount is not None else current.amount,
        currency or current.currency,
        split_type,
        participant_ids,
        raw_splits
    )
    _validate_members(group_id, payer_id, participant_ids)

    return Expense(
        id=current.id,
        group_id=group_id,
        payer_id=payer_id,
        participant_ids=list(participant_ids),
        split_type=split_type,
        splits=splits,
        amount=amount,
        currency=currency,
        description=description.strip() if description else current.description,
        created_by=current.created_by,
        created_at=current.created_at,
        updated_at=_get_timestamp(),
        version=current.version + 1
    )


def update_expense(
    group_id: str,
    expense_id: str,
    payer_id: Optional[str] = None,
    amount=None,
    currency: Optional[str] = None,
    split_type: Optional[str] = None,
    participant_ids: Optional[list[str]] = None,
    raw_splits: Optional[list[dict]] = None,
    description: Optional[str] = None,
    updated_by: Optional[str] = None
) -> Expense:
    """
    Replace an expense with a new version.

    Unspecified fields keep their current values. Splits are always
    recomputed from the resulting amount, split type and participants; for
    exact and percentage splits without new raw_splits the stored splits are
    reused as input. The previous version is copied to the history
    subcollection before the expense is overwritten.

    The write is conditional on the document not having changed since it
    was read. If another writer got there first, the changes are applied
    again on top of the fresh version.

    Raises:
        LookupError: If the expense does not exist.
        ValidationError: If the expense is deleted or the new data is invalid.
        ConcurrentUpdateError: If every attempt lost to a concurrent write.
        RuntimeError: If Firestore is not available.
    """
    db = _require_db()
    doc_ref = _expenses_ref(db, group_id).document(expense_id)

    for _ in range(MAX_WRITE_ATTEMPTS):
        doc = doc_ref.get()
        if not doc.exists:
            raise LookupError(f"Expense {expense_id} not found in group {group_id}")
        current = _expense_from_doc(doc, group_id)

        updated = _next_version(
            group_id, current, payer_id, amount, currency, split_type, participant_ids, raw_splits, description
        )

        # Keep the previous version before overwriting
        doc_ref.collection("history").document(str(current.version)).set(current.to_dict())
        try:
            doc_ref.update(updated.to_dict(), option=db.write_option(last_update_time=doc.update_time))
        except FailedPrecondition:
            logger.warning("Expense %s in group %s changed during update, retrying", expense_id, group_id)
            continue

        logger.info("Updated expense %s in group %s to version %d (by %s)",
                    expense_id, group_id, updated.version, updated_by)
        return updated

    raise ConcurrentUpdateError(f"Expense {expense_id} kept changing during update")


def delete_expense(group_id: str, expense_id: str, deleted_by: Optional[str] = None) -> Expense:
    """
    Soft-delete an expense.

    The document stays in Firestore with deleted_at set, so it drops out of
    balance calculations but keeps its history. A concurrent update_expense
    sees the changed document and refuses to bring it back.

    Raises:
        LookupError: If the expense does not exist.
        RuntimeError: If Firestore is not available.
    """
    expense = get_expense(group_id, expense_id)
    if expense.is_deleted:
        return expense

    db = _require_db()
    expense.deleted_at = _get_timestamp()
    expense.deleted_by = deleted_by
    _expenses_ref(db, group_id).document(expense_id).update({
        "deleted_at": expense.deleted_at,
        "deleted_by": deleted_by
    })
    logger.info("Soft-deleted expense %s in group %s (by %s)", expense_id, group_id, deleted_by)

    return expense


def get_expenses(group_id: str, include_deleted: bool = False, transaction=None) -> list[Expense]:
    """
    Get all expenses for a group.

    Args:
        group_id: The ID of the group.
        include_deleted: Also return soft-deleted expenses.
        transaction: Optional Firestore transaction to read in.

    Returns:
        list[Expense]: Expenses ordered by id.

    Raises:
        ValidationError: If group_id is invalid.
        DataIntegrityError: If a stored expense cannot be decoded.
        RuntimeError: If Firestore is not available.
    """
    _validate_non_empty_string(group_id, "group_id")

    db = _require_db()
    docs = _expenses_ref(db, group_id).stream(transaction=transaction)

    expenses = [_expense_from_doc(doc, group_id) for doc in docs]
    if not include_deleted:
        expenses = [e for e in expenses if not e.is_deleted]

    return sorted(expenses, key=lambda e: e.id)
