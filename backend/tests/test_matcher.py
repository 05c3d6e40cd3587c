"""
Unit Tests for the Tolerance Matcher

Tests:
- Pairing within time and amount tolerance
- Amount mismatch scoring
- Order number compatibility
- Machine partitioning
- Candidate tie-breaks and one-to-one consumption
- Unreferenced payments

Run with: pytest tests/test_matcher.py -v
"""

from decimal import Decimal

import pytest

from database.reconciliation_models import MismatchType
from reconciliation.loader import NormalizedRecord, to_minor_units
from reconciliation.matching_rules.tolerance_matcher import (
    match_records,
    match_score,
    within_amount_tolerance,
)

T0 = 1705312800  # 2024-01-15 10:00:00 UTC


def hw(record_id, ts, amount, machine="M-001", order=None):
    return NormalizedRecord(
        record_id=record_id,
        side="hw",
        machine_code=machine,
        timestamp=ts,
        amount_minor=to_minor_units(amount),
        order_number=order,
        payment_method="payme",
    )


def pay(record_id, ts, amount, machine="M-001", order=None, provider="payme"):
    return NormalizedRecord(
        record_id=record_id,
        side="payment",
        machine_code=machine,
        timestamp=ts,
        amount_minor=to_minor_units(amount),
        order_number=order,
        provider=provider,
        payment_method=provider,
    )


def run_match(hw_records, payments, time_tolerance=300, amount_tolerance="0.01", **kwargs):
    return match_records(hw_records, payments, time_tolerance, amount_tolerance, **kwargs)


# ==================== AMOUNT HELPERS ====================

class TestAmountHelpers:
    """Tolerance and score arithmetic."""

    def test_tolerance_is_inclusive(self):
        assert within_amount_tolerance(10000, 9900, Decimal("0.01")) is True
        assert within_amount_tolerance(10000, 9899, Decimal("0.01")) is False

    def test_tolerance_uses_larger_amount(self):
        # 1 / 100 = 1% of the larger side, either order
        assert within_amount_tolerance(99, 100, Decimal("0.01")) is True
        assert within_amount_tolerance(100, 99, Decimal("0.01")) is True

    def test_zero_tolerance_requires_equality(self):
        assert within_amount_tolerance(500, 500, Decimal("0")) is True
        assert within_amount_tolerance(500, 501, Decimal("0")) is False

    def test_match_score(self):
        assert match_score(to_minor_units(100000), to_minor_units(95000)) == Decimal("0.95")
        assert match_score(300, 200) == Decimal("0.6667")
        assert match_score(0, 0) == Decimal("1")

    def test_score_is_bounded(self):
        assert match_score(0, 500) == Decimal("0")
        assert Decimal("0") <= match_score(1, 3) <= Decimal("1")


# ==================== PAIRING ====================

class TestPairing:
    """Basic pairing and classification."""

    def test_exact_match(self):
        outcome = run_match([hw("h1", T0, 10000)], [pay("p1", T0 + 60, 10000)])

        assert len(outcome.matched) == 1
        assert outcome.mismatches == []
        pair = outcome.matched[0]
        assert pair.hw.record_id == "h1"
        assert pair.payment.record_id == "p1"
        assert pair.time_delta == 60
        assert pair.amount_delta == 0

    def test_amount_within_tolerance_is_matched(self):
        outcome = run_match([hw("h1", T0, 10000)], [pay("p1", T0, 9950)])
        assert len(outcome.matched) == 1
        assert outcome.matched[0].amount_delta == to_minor_units(50)

    def test_amount_mismatch(self):
        outcome = run_match([hw("h1", T0, 100000)], [pay("p1", T0 + 10, 95000)])

        assert outcome.matched == []
        assert len(outcome.mismatches) == 1
        mismatch = outcome.mismatches[0]
        assert mismatch.mismatch_type == MismatchType.AMOUNT_MISMATCH
        assert mismatch.discrepancy_minor == to_minor_units(5000)
        assert mismatch.match_score == Decimal("0.95")
        assert mismatch.hw.record_id == "h1"
        assert mismatch.payment.record_id == "p1"

    def test_outside_time_tolerance(self):
        outcome = run_match(
            [hw("h1", T0, 10000, order="ORD-1")],
            [pay("p1", T0 + 301, 10000, order="ORD-1")]
        )

        assert outcome.matched == []
        types = [m.mismatch_type for m in outcome.mismatches]
        assert types == [MismatchType.PAYMENT_NOT_FOUND, MismatchType.ORDER_NOT_FOUND]

    def test_time_tolerance_boundary_is_inclusive(self):
        outcome = run_match([hw("h1", T0, 10000)], [pay("p1", T0 - 300, 10000)])
        assert len(outcome.matched) == 1

    def test_zero_time_tolerance(self):
        outcome = run_match(
            [hw("h1", T0, 10000), hw("h2", T0 + 100, 10000)],
            [pay("p1", T0, 10000), pay("p2", T0 + 101, 10000, order="ORD-2")],
            time_tolerance=0
        )

        assert [p.hw.record_id for p in outcome.matched] == ["h1"]
        assert outcome.count(MismatchType.PAYMENT_NOT_FOUND) == 1
        assert outcome.count(MismatchType.ORDER_NOT_FOUND) == 1

    def test_payment_not_found_carries_hw_amount(self):
        outcome = run_match([hw("h1", T0, 2500)], [])

        mismatch = outcome.mismatches[0]
        assert mismatch.mismatch_type == MismatchType.PAYMENT_NOT_FOUND
        assert mismatch.payment is None
        assert mismatch.discrepancy_minor == to_minor_units(2500)

    def test_empty_inputs(self):
        outcome = run_match([], [])
        assert outcome.matched == []
        assert outcome.mismatches == []

    def test_negative_tolerances_rejected(self):
        with pytest.raises(ValueError):
            run_match([], [], time_tolerance=-1)
        with pytest.raises(ValueError):
            run_match([], [], amount_tolerance="-0.01")


# ==================== ORDER NUMBERS ====================

class TestOrderNumbers:
    """Order numbers only constrain pairing when both sides carry one."""

    def test_conflicting_order_numbers_never_pair(self):
        outcome = run_match(
            [hw("h1", T0, 10000, order="ORD-1")],
            [pay("p1", T0, 10000, order="ORD-2")]
        )

        assert outcome.matched == []
        assert outcome.count(MismatchType.PAYMENT_NOT_FOUND) == 1
        assert outcome.count(MismatchType.ORDER_NOT_FOUND) == 1

    def test_order_number_on_one_side_only(self):
        outcome = run_match(
            [hw("h1", T0, 10000, order="ORD-1")],
            [pay("p1", T0 + 5, 10000)]
        )
        assert len(outcome.matched) == 1

    def test_order_number_beats_closer_time(self):
        outcome = run_match(
            [hw("h1", T0, 10000, order="ORD-1")],
            [pay("p-near", T0 + 1, 10000, order="ORD-9"), pay("p-far", T0 + 200, 10000, order="ORD-1")]
        )

        assert outcome.matched[0].payment.record_id == "p-far"
        assert outcome.mismatches[0].payment.record_id == "p-near"


# ==================== PARTITIONING ====================

class TestMachinePartitioning:
    """Records of different machines never pair."""

    def test_different_machines_do_not_pair(self):
        outcome = run_match(
            [hw("h1", T0, 10000, machine="M-001", order="ORD-1")],
            [pay("p1", T0, 10000, machine="M-002", order="ORD-1")]
        )

        assert outcome.matched == []
        assert outcome.count(MismatchType.PAYMENT_NOT_FOUND) == 1
        assert outcome.count(MismatchType.ORDER_NOT_FOUND) == 1

    def test_each_machine_matched_independently(self):
        outcome = run_match(
            [hw("h1", T0, 10000, machine="M-002"), hw("h2", T0, 10000, machine="M-001")],
            [pay("p1", T0, 10000, machine="M-001"), pay("p2", T0, 10000, machine="M-002")]
        )

        pairs = {(p.hw.record_id, p.payment.record_id) for p in outcome.matched}
        assert pairs == {("h2", "p1"), ("h1", "p2")}


# ==================== TIE-BREAKS ====================

class TestTieBreaks:
    """Deterministic candidate selection and one-to-one consumption."""

    def test_closest_time_wins(self):
        outcome = run_match(
            [hw("h1", T0, 10000)],
            [pay("p-far", T0 + 120, 10000), pay("p-near", T0 + 30, 10000)]
        )
        assert outcome.matched[0].payment.record_id == "p-near"

    def test_closest_amount_breaks_time_tie(self):
        outcome = run_match(
            [hw("h1", T0, 10000)],
            [pay("p-off", T0 + 30, 10050), pay("p-exact", T0 - 30, 10000)]
        )
        assert outcome.matched[0].payment.record_id == "p-exact"

    def test_earlier_payment_breaks_full_tie(self):
        outcome = run_match(
            [hw("h1", T0, 10000)],
            [pay("p-after", T0 + 30, 10000), pay("p-before", T0 - 30, 10000)]
        )
        assert outcome.matched[0].payment.record_id == "p-before"

    def test_record_id_breaks_identical_candidates(self):
        outcome = run_match(
            [hw("h1", T0, 10000)],
            [pay("p-b", T0, 10000), pay("p-a", T0, 10000)]
        )
        assert outcome.matched[0].payment.record_id == "p-a"

    def test_payment_consumed_by_earliest_sale(self):
        outcome = run_match(
            [hw("h-late", T0 + 60, 10000), hw("h-early", T0, 10000)],
            [pay("p1", T0 + 60, 10000)]
        )

        assert outcome.matched[0].hw.record_id == "h-early"
        assert outcome.mismatches[0].hw.record_id == "h-late"
        assert outcome.mismatches[0].mismatch_type == MismatchType.PAYMENT_NOT_FOUND

    def test_outcomes_are_disjoint(self):
        hw_records = [hw(f"h{i}", T0 + i * 30, 1000 + i) for i in range(10)]
        payments = [pay(f"p{i}", T0 + i * 30 + 5, 1000 + i, order=f"ORD-{i}") for i in range(0, 10, 2)]
        outcome = run_match(hw_records, payments)

        seen_hw = [p.hw.record_id for p in outcome.matched] + [
            m.hw.record_id for m in outcome.mismatches if m.hw
        ]
        seen_payments = [p.payment.record_id for p in outcome.matched] + [
            m.payment.record_id for m in outcome.mismatches if m.payment
        ]
        assert sorted(seen_hw) == sorted(r.record_id for r in hw_records)
        assert len(seen_payments) == len(set(seen_payments))

    def test_input_order_does_not_change_result(self):
        hw_records = [hw("h1", T0, 10000), hw("h2", T0 + 10, 10000)]
        payments = [pay("p1", T0 + 5, 10000), pay("p2", T0 + 12, 10000)]

        first = run_match(hw_records, payments)
        second = run_match(list(reversed(hw_records)), list(reversed(payments)))

        def pairs(outcome):
            return [(p.hw.record_id, p.payment.record_id) for p in outcome.matched]

        assert pairs(first) == pairs(second)


# ==================== UNREFERENCED PAYMENTS ====================

class TestUnreferencedPayments:
    """Unpaired payments without an order reference."""

    def test_set_aside_by_default(self):
        outcome = run_match([], [pay("p1", T0, 10000)])

        assert outcome.mismatches == []
        assert [p.record_id for p in outcome.unreferenced_payments] == ["p1"]

    def test_reported_when_enabled(self):
        outcome = run_match([], [pay("p1", T0, 10000)], include_unreferenced_payments=True)

        assert outcome.unreferenced_payments == []
        assert outcome.mismatches[0].mismatch_type == MismatchType.ORDER_NOT_FOUND
        assert outcome.mismatches[0].discrepancy_minor == to_minor_units(10000)

    def test_referenced_payment_always_reported(self):
        outcome = run_match([], [pay("p1", T0, 10000, order="ORD-1")])
        assert outcome.count(MismatchType.ORDER_NOT_FOUND) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
