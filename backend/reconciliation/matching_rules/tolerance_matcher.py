"""
Tolerance Matcher

One-to-one greedy pairing of hardware sales against payment transactions.

Primary Match Keys:
- machine_code (partition key, never crossed)
- timestamp within time_tolerance seconds
- order_number (only enforced when both sides carry one)

Candidate Tie-break:
1. smallest absolute time delta
2. smallest absolute amount delta
3. earlier payment timestamp
4. payment record_id

Pair Classification:
- |hw - payment| <= amount_tolerance * max(hw, payment): matched
- otherwise: amount_mismatch, match_score = 1 - delta / max

Hardware sales are scanned in (timestamp, record_id) order; a payment is
consumed by the first sale that selects it.
"""

import bisect
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple, Union

from database.reconciliation_models import MismatchType
from reconciliation.loader import NormalizedRecord

SCORE_QUANTUM = Decimal("0.0001")


@dataclass
class MatchedPair:
    """A hardware sale and payment that agree within tolerance."""
    hw: NormalizedRecord
    payment: NormalizedRecord
    time_delta: int
    amount_delta: int


@dataclass
class MatchDiscrepancy:
    """
    An outcome that becomes a Mismatch record.

    hw is None for order_not_found, payment is None for payment_not_found.
    """
    mismatch_type: MismatchType
    hw: Optional[NormalizedRecord]
    payment: Optional[NormalizedRecord]
    discrepancy_minor: int
    match_score: Optional[Decimal] = None


@dataclass
class MatchOutcome:
    """Disjoint matcher output for one run."""
    matched: List[MatchedPair] = field(default_factory=list)
    mismatches: List[MatchDiscrepancy] = field(default_factory=list)
    # Unpaired payments with no order reference, not reported by default
    unreferenced_payments: List[NormalizedRecord] = field(default_factory=list)

    def count(self, mismatch_type: MismatchType) -> int:
        return sum(1 for m in self.mismatches if m.mismatch_type == mismatch_type)

    @property
    def matched_hw_ids(self) -> List[str]:
        return [pair.hw.record_id for pair in self.matched]


def _to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def within_amount_tolerance(hw_minor: int, payment_minor: int, amount_tolerance: Decimal) -> bool:
    """Tolerance is always taken against the larger of the two amounts."""
    delta = abs(hw_minor - payment_minor)
    return Decimal(delta) <= amount_tolerance * Decimal(max(hw_minor, payment_minor))


def match_score(hw_minor: int, payment_minor: int) -> Decimal:
    """1 - delta / max, clamped to [0, 1], four decimal places."""
    larger = max(hw_minor, payment_minor)
    if larger <= 0:
        return Decimal(1).quantize(SCORE_QUANTUM)
    score = Decimal(1) - Decimal(abs(hw_minor - payment_minor)) / Decimal(larger)
    score = min(max(score, Decimal(0)), Decimal(1))
    return score.quantize(SCORE_QUANTUM, rounding=ROUND_HALF_UP)


def _orders_compatible(hw: NormalizedRecord, payment: NormalizedRecord) -> bool:
    if hw.order_number and payment.order_number:
        return hw.order_number == payment.order_number
    return True


def _partition(records: Iterable[NormalizedRecord]) -> Dict[str, List[NormalizedRecord]]:
    partitions: Dict[str, List[NormalizedRecord]] = defaultdict(list)
    for record in records:
        partitions[record.machine_code].append(record)
    for bucket in partitions.values():
        bucket.sort(key=lambda r: (r.timestamp, r.record_id))
    return partitions


def _best_candidate(
    hw: NormalizedRecord,
    payments: List[NormalizedRecord],
    timestamps: List[int],
    consumed: List[bool],
    time_tolerance: int
) -> Optional[int]:
    lo = bisect.bisect_left(timestamps, hw.timestamp - time_tolerance)
    hi = bisect.bisect_right(timestamps, hw.timestamp + time_tolerance)

    best_index: Optional[int] = None
    best_key: Optional[Tuple[int, int, int, str]] = None
    for i in range(lo, hi):
        if consumed[i]:
            continue
        candidate = payments[i]
        if not _orders_compatible(hw, candidate):
            continue
        key = (
            abs(hw.timestamp - candidate.timestamp),
            abs(hw.amount_minor - candidate.amount_minor),
            candidate.timestamp,
            candidate.record_id,
        )
        if best_key is None or key < best_key:
            best_key = key
            best_index = i
    return best_index


def _match_partition(
    hw_records: List[NormalizedRecord],
    payments: List[NormalizedRecord],
    time_tolerance: int,
    amount_tolerance: Decimal,
    include_unreferenced_payments: bool,
    outcome: MatchOutcome
):
    timestamps = [p.timestamp for p in payments]
    consumed = [False] * len(payments)

    for hw in hw_records:
        index = _best_candidate(hw, payments, timestamps, consumed, time_tolerance)
        if index is None:
            outcome.mismatches.append(MatchDiscrepancy(
                mismatch_type=MismatchType.PAYMENT_NOT_FOUND,
                hw=hw,
                payment=None,
                discrepancy_minor=hw.amount_minor,
            ))
            continue

        consumed[index] = True
        payment = payments[index]
        amount_delta = abs(hw.amount_minor - payment.amount_minor)

        if within_amount_tolerance(hw.amount_minor, payment.amount_minor, amount_tolerance):
            outcome.matched.append(MatchedPair(
                hw=hw,
                payment=payment,
                time_delta=abs(hw.timestamp - payment.timestamp),
                amount_delta=amount_delta,
            ))
        else:
            outcome.mismatches.append(MatchDiscrepancy(
                mismatch_type=MismatchType.AMOUNT_MISMATCH,
                hw=hw,
                payment=payment,
                discrepancy_minor=amount_delta,
                match_score=match_score(hw.amount_minor, payment.amount_minor),
            ))

    for i, payment in enumerate(payments):
        if consumed[i]:
            continue
        if payment.order_number or include_unreferenced_payments:
            outcome.mismatches.append(MatchDiscrepancy(
                mismatch_type=MismatchType.ORDER_NOT_FOUND,
                hw=None,
                payment=payment,
                discrepancy_minor=payment.amount_minor,
            ))
        else:
            outcome.unreferenced_payments.append(payment)


def match_records(
    hw_records: Iterable[NormalizedRecord],
    payment_records: Iterable[NormalizedRecord],
    time_tolerance: int,
    amount_tolerance: Union[int, float, str, Decimal],
    include_unreferenced_payments: bool = False
) -> MatchOutcome:
    """
    Pair hardware sales with payments and classify every outcome.

    Args:
        hw_records: Normalized hardware sales
        payment_records: Normalized payment transactions
        time_tolerance: Max |dt| in seconds for a candidate
        amount_tolerance: Fraction of the larger amount (0.01 = 1%)
        include_unreferenced_payments: Report unpaired payments without an
            order reference as order_not_found instead of setting them aside

    Returns:
        MatchOutcome with disjoint matched pairs and discrepancies
    """
    if time_tolerance < 0:
        raise ValueError("time_tolerance must be >= 0")
    tolerance = _to_decimal(amount_tolerance)
    if tolerance < 0:
        raise ValueError("amount_tolerance must be >= 0")

    hw_partitions = _partition(hw_records)
    payment_partitions = _partition(payment_records)

    outcome = MatchOutcome()
    for machine_code in sorted(set(hw_partitions) | set(payment_partitions)):
        _match_partition(
            hw_partitions.get(machine_code, []),
            payment_partitions.get(machine_code, []),
            int(time_tolerance),
            tolerance,
            include_unreferenced_payments,
            outcome,
        )
    return outcome
