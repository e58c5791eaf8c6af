"""
Members Module

This module handles the group roster for the group balance engine.

Features:
    - Add members to a group (or bring back a departed member)
    - Mark members as departed when they leave or are removed
    - Retrieve the roster and member roles

Data Model:
    Member stored at: groups/{group_id}/members/{member_id}
    Fields:
        - member_id: string
        - role: string (owner, admin or member)
        - joined_at: string (ISO timestamp)
        - left_at: string or None (set once the member has departed)

The owner is the member who created the group. Departed members keep their
document: past expenses and settlements still name them, and the balance
aggregator validates every record against everyone who was ever in the
group. New expenses and settlements only accept active members.

Removing a member does not check balances here. Callers run
group_balances.ensure_member_can_leave first.

Functions:
    add_member: Add a member to a group.
    remove_member: Mark a member as departed.
    get_members: Get the members of a group.
    get_member_ids: Get the member ids of a group.
    is_admin: Check whether a member can administer a group.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from config.firebase_config import get_db
from errors import ValidationError


logger = logging.getLogger(__name__)

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
VALID_ROLES = {ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER}


class Member:
    """
    Represents a member of a group.

    Attributes:
        member_id (str): User id of the member.
        role (str): owner, admin or member.
        joined_at (str | None): When the member joined.
        left_at (str | None): When the member left, None while active.
    """

    def __init__(
        self,
        member_id: str,
        role: str = ROLE_MEMBER,
        joined_at: Optional[str] = None,
        left_at: Optional[str] = None
    ):
        self.member_id = member_id
        self.role = role
        self.joined_at = joined_at
        self.left_at = left_at

    @property
    def is_active(self) -> bool:
        return self.left_at is None

    def to_dict(self) -> dict:
        """Convert member to dictionary for Firestore storage."""
        return {
            "member_id": self.member_id,
            "role": self.role,
            "joined_at": self.joined_at,
            "left_at": self.left_at
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Member":
        """Create a Member instance from a dictionary."""
        return cls(
            member_id=data.get("member_id"),
            role=data.get("role", ROLE_MEMBER),
            joined_at=data.get("joined_at"),
            left_at=data.get("left_at")
        )

    def __repr__(self) -> str:
        return f"Member(id='{self.member_id}', role='{self.role}', active={self.is_active})"


def _get_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_non_empty_string(value: str, field_name: str) -> bool:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return True


def _members_ref(group_id: str):
    db = get_db()
    if db is None:
        raise RuntimeError("Firestore is not available")
    return db.collection("groups").document(group_id).collection("members")


def add_member(group_id: str, member_id: str, role: str = ROLE_MEMBER) -> Member:
    """
    Add a member to a group.

    A departed member who is added again becomes active with the new role;
    their balance history was never removed.

    Args:
        group_id: The ID of the group.
        member_id: User id of the new member.
        role: owner, admin or member. A group has at most one owner.

    Returns:
        Member: The created or reactivated member.

    Raises:
        ValidationError: If input validation fails, the member is already
            active, or the group already has an owner.
        RuntimeError: If Firestore is not available.
    """
    _validate_non_empty_string(group_id, "group_id")
    _validate_non_empty_string(member_id, "member_id")
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {sorted(VALID_ROLES)}, got: {role}")

    doc_ref = _members_ref(group_id).document(member_id)
    doc = doc_ref.get()
    if doc.exists and Member.from_dict(doc.to_dict()).is_active:
        raise ValidationError(f"{member_id} is already a member of group {group_id}")

    if role == ROLE_OWNER and any(m.role == ROLE_OWNER for m in get_members(group_id, include_departed=True)):
        raise ValidationError(f"group {group_id} already has an owner")

    member = Member(member_id=member_id, role=role, joined_at=_get_timestamp())
    doc_ref.set(member.to_dict())
    logger.info("%s %s %s to group %s", "Re-added" if doc.exists else "Added", role, member_id, group_id)

    return member


def remove_member(group_id: str, member_id: str) -> Member:
    """
    Mark a member as departed.

    The membership document is kept with left_at set, so records that name
    the member stay valid for balance calculations.

    Returns:
        Member: The departed member.

    Raises:
        LookupError: If the member is not an active member of the group.
        RuntimeError: If Firestore is not available.
    """
    doc_ref = _members_ref(group_id).document(member_id)
    doc = doc_ref.get()
    if not doc.exists or not Member.from_dict(doc.to_dict()).is_active:
        raise LookupError(f"{member_id} is not a member of group {group_id}")

    member = Member.from_dict(doc.to_dict())
    member.member_id = member.member_id or doc.id
    member.left_at = _get_timestamp()
    doc_ref.update({"left_at": member.left_at})
    logger.info("Member %s left group %s", member_id, group_id)

    return member


def get_members(group_id: str, transaction=None, include_departed: bool = False) -> list[Member]:
    """
    Get the members of a group, ordered by id.

    Args:
        group_id: The ID of the group.
        transaction: Optional Firestore transaction to read in.
        include_departed: Also return members who have left.
    """
    _validate_non_empty_string(group_id, "group_id")
    members = []
    for doc in _members_ref(group_id).stream(transaction=transaction):
        member = Member.from_dict(doc.to_dict())
        member.member_id = member.member_id or doc.id
        if include_departed or member.is_active:
            members.append(member)
    return sorted(members, key=lambda m: m.member_id)


def get_member_ids(group_id: str, transaction=None, include_departed: bool = False) -> list[str]:
    """Get the member ids of a group (active members unless include_departed)."""
    return [member.member_id for member in get_members(group_id, transaction, include_departed)]


def is_admin(group_id: str, member_id: str) -> bool:
    """
    Check whether a member can administer a group.

    The owner and admins qualify; departed members never do.
    """
    doc = _members_ref(group_id).document(member_id).get()
    if not doc.exists:
        return False
    member = Member.from_dict(doc.to_dict())
    return member.is_active and member.role in (ROLE_OWNER, ROLE_ADMIN)
