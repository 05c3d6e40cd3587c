"""
Summary Aggregator

Run-level statistics computed purely from matcher output.
matched + mismatched + missing == totalRecords always holds.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from database.reconciliation_models import MismatchType
from reconciliation.matching_rules.tolerance_matcher import MatchOutcome


class RunSummary(BaseModel):
    """Stored on the run once it completes."""
    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(default=0, alias="totalRecords", ge=0)
    matched: int = Field(default=0, ge=0)
    mismatched: int = Field(default=0, ge=0)
    missing: int = Field(default=0, ge=0)
    match_rate: float = Field(default=0.0, alias="matchRate", ge=0, le=100)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def compute_match_rate(matched: int, total: int) -> float:
    """Percentage rounded half-up to 2 places; 0 when there is nothing to compare."""
    if total <= 0:
        return 0.0
    rate = (Decimal(matched) * Decimal(100) / Decimal(total)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    return float(rate)


def build_summary(outcome: MatchOutcome) -> RunSummary:
    matched = len(outcome.matched)
    mismatched = outcome.count(MismatchType.AMOUNT_MISMATCH)
    missing = (
        outcome.count(MismatchType.PAYMENT_NOT_FOUND)
        + outcome.count(MismatchType.ORDER_NOT_FOUND)
    )
    total = matched + len(outcome.mismatches)

    return RunSummary(
        total_records=total,
        matched=matched,
        mismatched=mismatched,
        missing=missing,
        match_rate=compute_match_rate(matched, total),
    )
