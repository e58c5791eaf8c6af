"""
Splitter Module

This module handles the expense splitting logic for the group balance engine.

Features:
    - Equal splitting with deterministic remainder distribution
    - Exact splitting with sum validation
    - Percentage splitting converted to minor units
    - Currency-aware rounding (0, 2 or 3 decimal places)

Data Model:
    Input - participants (list of member ids, in display order)

    Input - raw_splits (list of dicts, exact and percentage only):
        - participant_id: string
        - amount: number (exact splits)
        - percentage: number (percentage splits)

    Output - splits (list of dicts, one per participant, in participant order):
        - participant_id: string
        - amount: Decimal (quantized to the currency precision)
        - percentage: Decimal (percentage splits only)

Guarantee:
    sum(split["amount"] for split in splits) == amount, exactly.

Functions:
    compute_splits: Compute per-participant owed amounts for an expense.
    validate_splits: Check a stored split list against its expense.
"""

import logging
from decimal import Decimal, ROUND_FLOOR

from currency import from_minor_units, normalize_currency, to_decimal, to_minor_units
from errors import ValidationError


logger = logging.getLogger(__name__)

SPLIT_EQUAL = "equal"
SPLIT_EXACT = "exact"
SPLIT_PERCENTAGE = "percentage"
SPLIT_TYPES = (SPLIT_EQUAL, SPLIT_EXACT, SPLIT_PERCENTAGE)

PERCENTAGE_TOLERANCE = Decimal("0.01")
HUNDRED = Decimal("100")


def _validate_participants(participants: list) -> list[str]:
    """
    Validate the participant list of an expense.

    Args:
        participants: List of member ids.

    Returns:
        list[str]: The same ids as a list.

    Raises:
        ValidationError: If the list is empty, has blanks or duplicates.
    """
    if not isinstance(participants, (list, tuple)) or len(participants) == 0:
        raise ValidationError("participants must be a non-empty list of member ids")

    seen = set()
    for participant_id in participants:
        if not isinstance(participant_id, str) or not participant_id.strip():
            raise ValidationError(f"participant id must be a non-empty string, got: {participant_id!r}")
        if participant_id in seen:
            raise ValidationError(f"participant '{participant_id}' appears more than once")
        seen.add(participant_id)

    return list(participants)


def _index_raw_splits(raw_splits: list, participants: list[str], field: str) -> dict:
    """
    Map participant_id -> raw value, checking both lists match one-to-one.

    Raises:
        ValidationError: On missing, duplicate or unknown participants, or a
            missing value field.
    """
    if not raw_splits:
        raise ValidationError(f"splits are required for this split type (missing '{field}')")

    participant_set = set(participants)
    indexed = {}
    for raw in raw_splits:
        participant_id = raw.get("participant_id")
        if participant_id not in participant_set:
            raise ValidationError(f"split participant '{participant_id}' is not in the participant list")
        if participant_id in indexed:
            raise ValidationError(f"split participant '{participant_id}' appears more than once")
        if raw.get(field) is None:
            raise ValidationError(f"split for '{participant_id}' is missing '{field}'")
        indexed[participant_id] = to_decimal(raw[field])

    missing = [p for p in participants if p not in indexed]
    if missing:
        raise ValidationError(f"participants missing from splits: {', '.join(missing)}")

    return indexed


def _distribute_leftover(units: list[int], leftover: int) -> None:
    """
    Spread leftover minor units over the first participants, one each.

    Positive leftovers add a unit to participants in order, cycling when the
    leftover is larger than the list. Negative leftovers take a unit back from
    participants in order, skipping anyone already at zero.
    """
    count = len(units)
    index = 0
    while leftover > 0:
        units[index % count] += 1
        leftover -= 1
        index += 1

    while leftover < 0:
        if any(u > 0 for u in units):
            if units[index % count] > 0:
                units[index % count] -= 1
                leftover += 1
            index += 1
        else:
            raise ValidationError("percentages exceed the expense amount")


def _equal_units(total_units: int, count: int) -> list[int]:
    base, remainder = divmod(total_units, count)
    units = [base] * count
    _distribute_leftover(units, remainder)
    return units


def _exact_units(total_units: int, participants: list[str], raw_splits: list, currency: str) -> list[int]:
    amounts = _index_raw_splits(raw_splits, participants, "amount")

    units = []
    for participant_id in participants:
        amount = amounts[participant_id]
        if amount < 0:
            raise ValidationError(f"split amount for '{participant_id}' must not be negative")
        units.append(to_minor_units(amount, currency))

    # A single minor unit of drift is tolerated and absorbed by the first participant
    difference = total_units - sum(units)
    if abs(difference) > 1:
        raise ValidationError(
            f"split amounts sum to {from_minor_units(sum(units), currency)}, "
            f"expected {from_minor_units(total_units, currency)}"
        )
    if difference and units[0] + difference < 0:
        raise ValidationError("split amounts do not sum to the expense amount")
    units[0] += difference
    return units


def _percentage_units(total_units: int, participants: list[str], percentages: dict) -> list[int]:
    for participant_id, percentage in percentages.items():
        if percentage < 0 or percentage > HUNDRED:
            raise ValidationError(f"percentage for '{participant_id}' must be between 0 and 100")

    total_percentage = sum(percentages.values())
    if abs(total_percentage - HUNDRED) > PERCENTAGE_TOLERANCE:
        raise ValidationError(f"percentages must sum to 100, got {total_percentage}")

    units = [
        int((Decimal(total_units) * percentages[p] / HUNDRED).to_integral_value(rounding=ROUND_FLOOR))
        for p in participants
    ]
    _distribute_leftover(units, total_units - sum(units))
    return units


def compute_splits(
    amount,
    split_type: str,
    participants: list[str],
    raw_splits: list[dict] = None,
    currency: str = "USD"
) -> list[dict]:
    """
    Compute the per-participant owed amounts for an expense.

    Split types:
        - equal: amount / len(participants) in minor units; leftover units go
          one by one to the first participants in the given order
        - exact: raw_splits give explicit amounts that must sum to amount
          (one minor unit of tolerance, absorbed by the first participant)
        - percentage: raw_splits give percentages summing to 100 (+/- 0.01);
          floored shares plus the same leftover rule as equal

    Args:
        amount: Expense total (positive, at most the currency precision).
        split_type: One of "equal", "exact", "percentage".
        participants: Ordered list of participant member ids.
        raw_splits: Per-participant dicts for exact/percentage splits.
        currency: ISO 4217 code used for precision.

    Returns:
        list[dict]: One split per participant, in participant order, with
            participant_id, amount (Decimal) and, for percentage splits,
            percentage (Decimal).

    Raises:
        ValidationError: If any input is invalid or the splits cannot sum to
            the expense amount.

    Example:
        >>> compute_splits("100.00", "equal", ["A", "B", "C"])
        [{'participant_id': 'A', 'amount': Decimal('33.34')},
         {'participant_id': 'B', 'amount': Decimal('33.33')},
         {'participant_id': 'C', 'amount': Decimal('33.33')}]
    """
    currency = normalize_currency(currency)
    participants = _validate_participants(participants)

    total_units = to_minor_units(amount, currency)
    if total_units <= 0:
        raise ValidationError(f"amount must be a positive number, got: {amount}")

    percentages = None
    if split_type == SPLIT_EQUAL:
        units = _equal_units(total_units, len(participants))
    elif split_type == SPLIT_EXACT:
        units = _exact_units(total_units, participants, raw_splits, currency)
    elif split_type == SPLIT_PERCENTAGE:
        percentages = _index_raw_splits(raw_splits, participants, "percentage")
        units = _percentage_units(total_units, participants, percentages)
    else:
        raise ValidationError(f"split_type must be one of {SPLIT_TYPES}, got: {split_type!r}")

    splits = []
    for participant_id, participant_units in zip(participants, units):
        split = {
            "participant_id": participant_id,
            "amount": from_minor_units(participant_units, currency)
        }
        if percentages is not None:
            split["percentage"] = percentages[participant_id]
        splits.append(split)

    logger.debug("Computed %s split of %s %s across %d participants",
                 split_type, amount, currency, len(participants))
    return splits


def validate_splits(amount, splits: list[dict], participants: list[str], currency: str) -> None:
    """
    Check a stored split list against its expense.

    Every participant must have exactly one split, every split must belong to
    a participant, and the split amounts must sum to the expense amount
    exactly in minor units.

    Raises:
        ValidationError: If any of the checks fail.
    """
    participants = _validate_participants(participants)
    indexed = _index_raw_splits(splits, participants, "amount")

    total_units = to_minor_units(amount, currency)
    split_units = sum(to_minor_units(value, currency) for value in indexed.values())
    if split_units != total_units:
        raise ValidationError(
            f"splits sum to {from_minor_units(split_units, currency)}, "
            f"expected {from_minor_units(total_units, currency)}"
        )
