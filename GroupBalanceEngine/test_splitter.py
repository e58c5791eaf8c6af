from decimal import Decimal

import pytest

from errors import ValidationError
from splitter import compute_splits, validate_splits


def amounts(splits):
    return [split["amount"] for split in splits]


class TestEqualSplit:
    def test_remainder_goes_to_first_participants(self):
        splits = compute_splits("100.00", "equal", ["A", "B", "C"])
        assert amounts(splits) == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
        assert [s["participant_id"] for s in splits] == ["A", "B", "C"]

    def test_sum_is_exact(self):
        splits = compute_splits("10.01", "equal", ["A", "B", "C", "D", "E", "F", "G"])
        assert sum(amounts(splits)) == Decimal("10.01")

    def test_zero_decimal_currency(self):
        splits = compute_splits(1000, "equal", ["A", "B", "C"], currency="JPY")
        assert amounts(splits) == [Decimal("334"), Decimal("333"), Decimal("333")]

    def test_three_decimal_currency(self):
        splits = compute_splits("1.000", "equal", ["A", "B", "C"], currency="KWD")
        assert amounts(splits) == [Decimal("0.334"), Decimal("0.333"), Decimal("0.333")]

    def test_fewer_units_than_participants(self):
        splits = compute_splits("0.02", "equal", ["A", "B", "C"])
        assert amounts(splits) == [Decimal("0.01"), Decimal("0.01"), Decimal("0.00")]

    def test_is_deterministic(self):
        first = compute_splits("100.00", "equal", ["C", "A", "B"])
        second = compute_splits("100.00", "equal", ["C", "A", "B"])
        assert first == second
        assert first[0]["participant_id"] == "C"


class TestExactSplit:
    def test_amounts_are_kept(self):
        raw = [{"participant_id": "A", "amount": "60"}, {"participant_id": "B", "amount": "40"}]
        splits = compute_splits("100", "exact", ["A", "B"], raw)
        assert amounts(splits) == [Decimal("60.00"), Decimal("40.00")]

    def test_one_cent_drift_is_absorbed_by_first_participant(self):
        raw = [
            {"participant_id": "A", "amount": "33.33"},
            {"participant_id": "B", "amount": "33.33"},
            {"participant_id": "C", "amount": "33.33"},
        ]
        splits = compute_splits("100.00", "exact", ["A", "B", "C"], raw)
        assert amounts(splits) == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]

    def test_larger_mismatch_is_rejected(self):
        raw = [{"participant_id": "A", "amount": "50"}, {"participant_id": "B", "amount": "40"}]
        with pytest.raises(ValidationError):
            compute_splits("100", "exact", ["A", "B"], raw)

    def test_negative_amount_is_rejected(self):
        raw = [{"participant_id": "A", "amount": "110"}, {"participant_id": "B", "amount": "-10"}]
        with pytest.raises(ValidationError):
            compute_splits("100", "exact", ["A", "B"], raw)

    def test_missing_participant_is_rejected(self):
        with pytest.raises(ValidationError):
            compute_splits("100", "exact", ["A", "B"], [{"participant_id": "A", "amount": "100"}])

    def test_unknown_participant_is_rejected(self):
        raw = [{"participant_id": "A", "amount": "50"}, {"participant_id": "Z", "amount": "50"}]
        with pytest.raises(ValidationError):
            compute_splits("100", "exact", ["A", "B"], raw)


class TestPercentageSplit:
    def test_shares_sum_to_amount(self):
        raw = [
            {"participant_id": "A", "percentage": "33.33"},
            {"participant_id": "B", "percentage": "33.33"},
            {"participant_id": "C", "percentage": "33.34"},
        ]
        splits = compute_splits("100.00", "percentage", ["A", "B", "C"], raw)
        assert sum(amounts(splits)) == Decimal("100.00")
        assert splits[2]["percentage"] == Decimal("33.34")

    def test_leftover_units_follow_participant_order(self):
        raw = [{"participant_id": "A", "percentage": 50}, {"participant_id": "B", "percentage": 50}]
        splits = compute_splits("0.03", "percentage", ["A", "B"], raw)
        assert amounts(splits) == [Decimal("0.02"), Decimal("0.01")]

    def test_total_outside_tolerance_is_rejected(self):
        raw = [{"participant_id": "A", "percentage": 60}, {"participant_id": "B", "percentage": 30}]
        with pytest.raises(ValidationError):
            compute_splits("100", "percentage", ["A", "B"], raw)

    def test_percentage_out_of_range_is_rejected(self):
        raw = [{"participant_id": "A", "percentage": 120}, {"participant_id": "B", "percentage": -20}]
        with pytest.raises(ValidationError):
            compute_splits("100", "percentage", ["A", "B"], raw)


@pytest.mark.parametrize("kwargs", [
    {"amount": 0, "split_type": "equal", "participants": ["A"]},
    {"amount": -5, "split_type": "equal", "participants": ["A"]},
    {"amount": "10.005", "split_type": "equal", "participants": ["A"]},
    {"amount": 10, "split_type": "equal", "participants": []},
    {"amount": 10, "split_type": "equal", "participants": ["A", "A"]},
    {"amount": 10, "split_type": "shares", "participants": ["A"]},
    {"amount": 10, "split_type": "exact", "participants": ["A"]},
    {"amount": 10, "split_type": "equal", "participants": ["A"], "currency": "usd"},
])
def test_invalid_input(kwargs):
    with pytest.raises(ValidationError):
        compute_splits(**kwargs)


def test_validate_splits_accepts_computed_splits():
    splits = compute_splits("100.00", "equal", ["A", "B", "C"])
    validate_splits("100.00", splits, ["A", "B", "C"], "USD")


def test_validate_splits_requires_exact_sum():
    splits = [{"participant_id": "A", "amount": "50.00"}, {"participant_id": "B", "amount": "49.99"}]
    with pytest.raises(ValidationError):
        validate_splits("100.00", splits, ["A", "B"], "USD")
