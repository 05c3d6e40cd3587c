"""
Matching Rules Module
"""

from .tolerance_matcher import (
    match_records, match_score, within_amount_tolerance,
    MatchedPair, MatchDiscrepancy, MatchOutcome
)

__all__ = [
    "match_records", "match_score", "within_amount_tolerance",
    "MatchedPair", "MatchDiscrepancy", "MatchOutcome"
]
