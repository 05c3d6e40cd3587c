"""
Unit Tests for the Mismatch Classifier

Run with: pytest tests/test_classifier.py -v
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from database.reconciliation_models import MismatchType
from reconciliation.classifier import build_mismatch, classify, describe
from reconciliation.loader import NormalizedRecord, to_minor_units
from reconciliation.matching_rules.tolerance_matcher import MatchDiscrepancy, match_records

RUN_ID = "run-1"
ORG_ID = "org-1"
T0 = 1705312800  # 2024-01-15 10:00:00 UTC


def hw(amount, order="ORD-1", ts=T0):
    return NormalizedRecord(
        record_id="h1",
        side="hw",
        machine_code="M-001",
        timestamp=ts,
        amount_minor=to_minor_units(amount),
        order_number=order,
        payment_method="click",
        raw={"id": "h1", "amount": str(amount)},
    )


def pay(amount, order="ORD-1", ts=T0, provider="payme"):
    return NormalizedRecord(
        record_id="p1",
        side="payment",
        machine_code="M-001",
        timestamp=ts,
        amount_minor=to_minor_units(amount),
        order_number=order,
        provider=provider,
        payment_method=provider,
        raw={"id": "p1", "provider": provider},
    )


class TestDescriptions:
    """Readable descriptions per mismatch type."""

    def test_payment_not_found(self):
        d = MatchDiscrepancy(MismatchType.PAYMENT_NOT_FOUND, hw(100), None, to_minor_units(100))
        assert describe(d) == "HW sale has no matching payment transaction"

    def test_order_not_found(self):
        d = MatchDiscrepancy(MismatchType.ORDER_NOT_FOUND, None, pay(100, provider="uzum"), to_minor_units(100))
        assert describe(d) == "Payment uzum has no matching HW sale"

    def test_amount_mismatch(self):
        d = MatchDiscrepancy(
            MismatchType.AMOUNT_MISMATCH, hw(100000), pay(95000), to_minor_units(5000), Decimal("0.95")
        )
        assert describe(d) == "Amount mismatch: HW=100000, Payment=95000 (diff=5000 UZS)"

    def test_amount_mismatch_keeps_fractions(self):
        d = MatchDiscrepancy(
            MismatchType.AMOUNT_MISMATCH, hw("150.50"), pay("120.25"), to_minor_units("30.25"), Decimal("0.799")
        )
        assert describe(d, currency="USD") == "Amount mismatch: HW=150.50, Payment=120.25 (diff=30.25 USD)"


class TestBuildMismatch:
    """Mismatch rows carry evidence from whichever sides exist."""

    def test_amount_mismatch_row(self):
        d = MatchDiscrepancy(
            MismatchType.AMOUNT_MISMATCH, hw(100000), pay(95000, ts=T0 + 20), to_minor_units(5000), Decimal("0.9500")
        )
        row = build_mismatch(d, RUN_ID, ORG_ID)

        assert row.run_id == RUN_ID
        assert row.organization_id == ORG_ID
        assert row.mismatch_type == MismatchType.AMOUNT_MISMATCH
        assert row.amount == Decimal("100000.00")
        assert row.discrepancy_amount == Decimal("5000.00")
        assert row.match_score == Decimal("0.95")
        assert row.order_time == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert row.payment_method == "click"
        assert row.sources_data == {
            "hw": {"id": "h1", "amount": "100000"},
            "payment": {"id": "p1", "provider": "payme"},
        }
        assert row.is_resolved is False

    def test_payment_not_found_row(self):
        d = MatchDiscrepancy(MismatchType.PAYMENT_NOT_FOUND, hw(2500), None, to_minor_units(2500))
        row = build_mismatch(d, RUN_ID, ORG_ID)

        assert row.sources_data["payment"] is None
        assert row.sources_data["hw"]["id"] == "h1"
        assert row.match_score is None
        assert row.discrepancy_amount == Decimal("2500.00")
        assert row.order_number == "ORD-1"

    def test_order_not_found_row_uses_payment_side(self):
        d = MatchDiscrepancy(
            MismatchType.ORDER_NOT_FOUND, None, pay(700, order="ORD-9", ts=T0 + 3600), to_minor_units(700)
        )
        row = build_mismatch(d, RUN_ID, ORG_ID)

        assert row.sources_data["hw"] is None
        assert row.order_number == "ORD-9"
        assert row.amount == Decimal("700.00")
        assert row.payment_method == "payme"
        assert row.order_time == datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)
        assert row.machine_code == "M-001"


class TestClassify:
    """classify maps every discrepancy to exactly one row."""

    def test_one_row_per_discrepancy(self):
        outcome = match_records(
            [hw(100, order="ORD-1")],
            [pay(100, order="ORD-2")],
            300,
            "0.01"
        )
        rows = classify(outcome, RUN_ID, ORG_ID)

        assert [r.mismatch_type for r in rows] == [
            MismatchType.PAYMENT_NOT_FOUND,
            MismatchType.ORDER_NOT_FOUND,
        ]
        assert all(r.run_id == RUN_ID for r in rows)

    def test_matched_pairs_produce_no_rows(self):
        outcome = match_records([hw(100)], [pay(100)], 300, "0.01")
        assert classify(outcome, RUN_ID, ORG_ID) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
