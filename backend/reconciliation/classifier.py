"""
Mismatch Classifier

Turns matcher discrepancies into reconciliation_mismatches rows: evidence
snapshot of whichever sides exist, a readable description and the
discrepancy amount. Every run gets its own independent mismatch records.
"""

from typing import List

from database.reconciliation_models import MismatchType, ReconciliationMismatchDB
from reconciliation.loader import format_amount, from_epoch_seconds, from_minor_units
from reconciliation.matching_rules.tolerance_matcher import MatchDiscrepancy, MatchOutcome


def describe(discrepancy: MatchDiscrepancy, currency: str = "UZS", minor_digits: int = 2) -> str:
    """Human-readable summary of a discrepancy."""
    if discrepancy.mismatch_type == MismatchType.PAYMENT_NOT_FOUND:
        return "HW sale has no matching payment transaction"

    if discrepancy.mismatch_type == MismatchType.ORDER_NOT_FOUND:
        return f"Payment {discrepancy.payment.provider} has no matching HW sale"

    hw_amount = format_amount(discrepancy.hw.amount_minor, minor_digits)
    payment_amount = format_amount(discrepancy.payment.amount_minor, minor_digits)
    delta = format_amount(discrepancy.discrepancy_minor, minor_digits)
    return f"Amount mismatch: HW={hw_amount}, Payment={payment_amount} (diff={delta} {currency})"


def build_mismatch(
    discrepancy: MatchDiscrepancy,
    run_id: str,
    organization_id: str,
    currency: str = "UZS",
    minor_digits: int = 2
) -> ReconciliationMismatchDB:
    """Build an unresolved mismatch row for one discrepancy."""
    hw = discrepancy.hw
    payment = discrepancy.payment
    # The hardware side is the assertion being checked when it exists
    primary = hw or payment

    order_number = (hw.order_number if hw else None) or (payment.order_number if payment else None)
    is_amount_mismatch = discrepancy.mismatch_type == MismatchType.AMOUNT_MISMATCH

    return ReconciliationMismatchDB(
        run_id=run_id,
        organization_id=organization_id,
        order_number=order_number,
        machine_code=primary.machine_code or None,
        order_time=from_epoch_seconds(primary.timestamp),
        amount=from_minor_units(primary.amount_minor, minor_digits),
        payment_method=primary.payment_method,
        mismatch_type=discrepancy.mismatch_type,
        match_score=discrepancy.match_score if is_amount_mismatch else None,
        discrepancy_amount=from_minor_units(discrepancy.discrepancy_minor, minor_digits),
        sources_data={
            "hw": dict(hw.raw) if hw else None,
            "payment": dict(payment.raw) if payment else None,
        },
        description=describe(discrepancy, currency, minor_digits),
        is_resolved=False,
    )


def classify(
    outcome: MatchOutcome,
    run_id: str,
    organization_id: str,
    currency: str = "UZS",
    minor_digits: int = 2
) -> List[ReconciliationMismatchDB]:
    """Mismatch rows for every discrepancy in the matcher output, in matcher order."""
    return [
        build_mismatch(d, run_id, organization_id, currency, minor_digits)
        for d in outcome.mismatches
    ]
