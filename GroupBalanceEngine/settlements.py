"""
Settlements Module

This module handles direct payments between group members for the group
balance engine.

Features:
    - Record a payment from one member to another
    - Update amount/currency/note (creator only)
    - Delete a payment (creator or group admin)

Data Model:
    Settlement stored at: groups/{group_id}/settlements/{settlement_id}
    Fields:
        - id: string (S001, S002, ... format)
        - group_id: string
        - payer_id: string (member who paid)
        - payee_id: string (member who received, must differ from payer)
        - amount: string (decimal, must be > 0)
        - currency: string (ISO 4217)
        - note: string or None
        - created_by: string or None
        - created_at: string (ISO timestamp)
        - updated_at: string (ISO timestamp)

Settlements are hard-deleted; they have no soft-delete marker.

Functions:
    validate_settlement: Validate settlement fields.
    add_settlement: Record a settlement in a group.
    update_settlement: Change amount, currency or note.
    delete_settlement: Delete a settlement.
    get_settlements: Get all settlements for a group.
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
from utils import generate_id


logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class Settlement:
    """
    Represents a direct payment between two members.

    Attributes:
        id (str): Unique identifier in S### format.
        group_id (str): Group the settlement belongs to.
        payer_id (str): Member who paid.
        payee_id (str): Member who received the payment.
        amount (Decimal): Amount paid.
        currency (str): ISO 4217 code.
        note (str | None): Optional note.
        created_by (str | None): Member who recorded the settlement.
        created_at (str | None): Creation timestamp.
        updated_at (str | None): Last update timestamp.
    """

    def __init__(
        self,
        id: str,
        group_id: str,
        payer_id: str,
        payee_id: str,
        amount,
        currency: str,
        note: Optional[str] = None,
        created_by: Optional[str] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None
    ):
        self.id = id
        self.group_id = group_id
        self.payer_id = payer_id
        self.payee_id = payee_id
        self.amount = amount
        self.currency = currency
        self.note = note
        self.created_by = created_by
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> dict:
        """Convert settlement to dictionary for Firestore storage."""
        return {
            "id": self.id,
            "group_id": self.group_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Settlement":
        """Create a Settlement instance from a dictionary."""
        return cls(
            id=data.get("id"),
            group_id=data.get("group_id"),
            payer_id=data.get("payer_id"),
            payee_id=data.get("payee_id"),
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency"),
            note=data.get("note"),
            created_by=data.get("created_by"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at")
        )

    def __repr__(self) -> str:
        return f"Settlement(id='{self.id}', {self.payer_id} -> {self.payee_id}, amount={self.amount} {self.currency})"


def _get_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_db():
    db = get_db()
    if db is None:
        raise RuntimeError("Firestore is not available")
    return db


def _settlements_ref(db, group_id: str):
    return db.collection("groups").document(group_id).collection("settlements")


def _settlement_from_doc(doc, group_id: str) -> Settlement:
    try:
        return Settlement.from_dict(doc.to_dict())
    except (ValidationError, AttributeError, TypeError) as e:
        raise DataIntegrityError(f"stored settlement {doc.id} is invalid: {e}", group_id, doc.id) from e


def _generate_next_settlement_id(group_id: str) -> str:
    """Generate the next sequential settlement ID (S001, S002, ...)."""
    db = _require_db()

    max_num = 0
    pattern = re.compile(r'^S(\d+)$')
    for doc in _settlements_ref(db, group_id).stream():
        match = pattern.match(doc.id)
        if match:
            max_num = max(max_num, int(match.group(1)))

    return generate_id("S", max_num + 1)


def validate_settlement(payer_id: str, payee_id: str, amount, currency: str) -> tuple:
    """
    Validate settlement fields.

    Args:
        payer_id: Member who paid.
        payee_id: Member who received the payment.
        amount: Amount paid (must be > 0).
        currency: ISO 4217 currency code.

    Returns:
        tuple: (amount as Decimal quantized to the currency, currency code).

    Raises:
        ValidationError: If any field is invalid or payer equals payee.
    """
    for value, field_name in ((payer_id, "payer_id"), (payee_id, "payee_id")):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} must be a non-empty string")

    if payer_id == payee_id:
        raise ValidationError("payer and payee must be different members")

    currency = normalize_currency(currency)
    amount = to_decimal(amount)
    if to_minor_units(amount, currency) <= 0:
        raise ValidationError(f"amount must be a positive number, got: {amount}")

    return quantize(amount, currency), currency


def _validate_members(group_id: str, *member_ids: str) -> None:
    members = set(get_member_ids(group_id))
    for member_id in member_ids:
        if member_id not in members:
            raise ValidationError(f"'{member_id}' is not a member of group {group_id}")


def add_settlement(
    group_id: str,
    payer_id: str,
    payee_id: str,
    amount,
    currency: str,
    note: Optional[str] = None,
    created_by: Optional[str] = None
) -> Settlement:
    """
    Record a settlement between two active group members.

    The document is written with create(); when a concurrent writer took the
    same ID a fresh one is generated.

    Raises:
        ValidationError: If input validation fails.
        ConcurrentUpdateError: If no free ID could be claimed.
        RuntimeError: If Firestore is not available.
    """
    amount, currency = validate_settlement(payer_id, payee_id, amount, currency)
    _validate_members(group_id, payer_id, payee_id)

    db = _require_db()
    timestamp = _get_timestamp()

    settlement = Settlement(
        id=None,
        group_id=group_id,
        payer_id=payer_id,
        payee_id=payee_id,
        amount=amount,
        currency=currency,
        note=note.strip() if note else None,
        created_by=created_by or payer_id,
        created_at=timestamp,
        updated_at=timestamp
    )

    for _ in range(MAX_WRITE_ATTEMPTS):
        settlement.id = _generate_next_settlement_id(group_id)
        try:
            _settlements_ref(db, group_id).document(settlement.id).create(settlement.to_dict())
        except Conflict:
            logger.warning("Settlement id %s in group %s was taken concurrently, retrying", settlement.id, group_id)
            continue

        logger.info("Added settlement %s to group %s: %s pays %s %s %s",
                    settlement.id, group_id, payer_id, payee_id, amount, currency)
        return settlement

    raise ConcurrentUpdateError(f"Could not allocate a settlement id in group {group_id}")


def get_settlement(group_id: str, settlement_id: str) -> Settlement:
    """
    Get one settlement.

    Raises:
        LookupError: If the settlement does not exist.
        DataIntegrityError: If the stored settlement cannot be decoded.
    """
    db = _require_db()
    doc = _settlements_ref(db, group_id).document(settlement_id).get()
    if not doc.exists:
        raise LookupError(f"Settlement {settlement_id} not found in group {group_id}")
    return _settlement_from_doc(doc, group_id)


def update_settlement(
    group_id: str,
    settlement_id: str,
    actor_id: str,
    amount=None,
    currency: Optional[str] = None,
    note: Optional[str] = None
) -> Settlement:
    """
    Change the amount, currency or note of a settlement.

    Only the member who recorded the settlement may update it. Payer and
    payee cannot be changed. The write only succeeds if the settlement has
    not changed since it was read; otherwise it is read again and retried.

    Raises:
        LookupError: If the settlement does not exist.
        PermissionError: If actor_id is not the creator.
        ValidationError: If the new values are invalid.
        ConcurrentUpdateError: If every attempt lost to a concurrent write.
    """
    db = _require_db()
    doc_ref = _settlements_ref(db, group_id).document(settlement_id)

    for _ in range(MAX_WRITE_ATTEMPTS):
        doc = doc_ref.get()
        if not doc.exists:
            raise LookupError(f"Settlement {settlement_id} not found in group {group_id}")
        settlement = _settlement_from_doc(doc, group_id)

        if settlement.created_by != actor_id:
            raise PermissionError(f"Only the creator can update settlement {settlement_id}")

        new_amount, new_currency = validate_settlement(
            settlement.payer_id,
            settlement.payee_id,
            amount if amount is not None else settlement.amount,
            currency or settlement.currency
        )

        settlement.amount = new_amount
        settlement.currency = new_currency
        if note is not None:
            settlement.note = note.strip() or None
        settlement.updated_at = _get_timestamp()

        try:
            doc_ref.update(settlement.to_dict(), option=db.write_option(last_update_time=doc.update_time))
        except FailedPrecondition:
            logger.warning("Settlement %s in group %s changed during update, retrying", settlement_id, group_id)
            continue

        logger.info("Updated settlement %s in group %s (by %s)", settlement_id, group_id, actor_id)
        return settlement

    raise ConcurrentUpdateError(f"Settlement {settlement_id} kept changing during update")


def delete_settlement(group_id: str, settlement_id: str, actor_id: str, actor_is_admin: bool = False) -> None:
    """
    Delete a settlement.

    Raises:
        LookupError: If the settlement does not exist.
        PermissionError: If actor_id is neither the creator nor a group admin.
    """
    settlement = get_settlement(group_id, settlement_id)
    if settlement.created_by != actor_id and not actor_is_admin:
        raise PermissionError(f"Only the creator or a group admin can delete settlement {settlement_id}")

    db = _require_db()
    _settlements_ref(db, group_id).document(settlement_id).delete()
    logger.info("Deleted settlement %s in group %s (by %s)", settlement_id, group_id, actor_id)


def get_settlements(group_id: str, transaction=None) -> list[Settlement]:
    """
    Get all settlements for a group.

    Args:
        group_id: The ID of the group.
        transaction: Optional Firestore transaction to read in.

    Returns:
        list[Settlement]: Settlements ordered by id.

    Raises:
        DataIntegrityError: If a stored settlement cannot be decoded.
    """
    if not isinstance(group_id, str) or not group_id.strip():
        raise ValidationError("group_id must be a non-empty string")

    db = _require_db()
    docs = _settlements_ref(db, group_id).stream(transaction=transaction)
    return sorted((_settlement_from_doc(doc, group_id) for doc in docs), key=lambda s: s.id)
