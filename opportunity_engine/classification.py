"""
Decision classification and ranking.

Turns a scored candidate into BUY / WATCH / UNVERIFIED / IGNORE with
deterministic human-readable reasons, then orders a hunt's candidate set
and flags the cheapest row per decision bucket.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import DecisionPolicy
from .models import ConfidenceLabel, Decision, MatchCandidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    decision: Decision
    reasons: list[str] = field(default_factory=list)


def _gap_reasons(candidate: MatchCandidate) -> list[str]:
    if candidate.gap_dollars is None:
        return ["no proven exit value"]
    if candidate.gap_dollars >= 0:
        reasons = [f"${candidate.gap_dollars:,.0f} below proven exit"]
    else:
        reasons = [f"${-candidate.gap_dollars:,.0f} above proven exit"]
    if candidate.gap_pct is not None:
        reasons.append(f"{candidate.gap_pct:.1f}% gap")
    return reasons


class DecisionClassifier:
    """
    Classifies candidates against a DecisionPolicy.

    classify() is a pure function of the candidate snapshot and the policy,
    so re-classifying yields the same decision and reasons.

    Usage:
        classifier = DecisionClassifier(policy)
        result = classifier.classify(candidate)
    """

    def __init__(self, policy: Optional[DecisionPolicy] = None):
        self.policy = policy or DecisionPolicy()

    def classify(self, candidate: MatchCandidate) -> Classification:
        if candidate.rejection_reason:
            return Classification(Decision.IGNORE, [f"rejected: {candidate.rejection_reason}"])
        if candidate.excluded:
            return Classification(Decision.IGNORE, ["excluded by operator"])

        reasons = _gap_reasons(candidate)
        if candidate.fast_clearance:
            reasons.append("fast clearance precedent")
        reasons.append(f"{candidate.confidence.value} confidence ({candidate.sample_size} sales)")

        # Scoring stays attached but is not trusted until identity is confirmed
        if candidate.requires_identity_confirmation:
            return Classification(Decision.UNVERIFIED, ["identity confirmation required"] + reasons)

        if self._is_buy(candidate):
            return Classification(Decision.BUY, reasons + [f"score {candidate.final_score:.1f}"])
        if self._is_watch(candidate):
            return Classification(Decision.WATCH, reasons + [f"score {candidate.final_score:.1f}"])

        return Classification(Decision.IGNORE, reasons + [self._ignore_reason(candidate)])

    def _is_buy(self, candidate: MatchCandidate) -> bool:
        policy = self.policy
        return (
            candidate.gap_dollars is not None
            and candidate.gap_pct is not None
            and candidate.gap_dollars >= policy.min_gap_abs_buy
            and candidate.gap_pct >= policy.min_gap_pct_buy
            and candidate.final_score >= policy.min_buy_final_score
            and candidate.listing_age_days <= policy.max_listing_age_days_buy
            and candidate.confidence != ConfidenceLabel.LOW
        )

    def _is_watch(self, candidate: MatchCandidate) -> bool:
        policy = self.policy
        return (
            candidate.gap_dollars is not None
            and candidate.gap_pct is not None
            and candidate.gap_dollars >= policy.min_gap_abs_watch
            and candidate.gap_pct >= policy.min_gap_pct_watch
            and candidate.final_score >= policy.min_watch_final_score
            and candidate.listing_age_days <= policy.max_listing_age_days_watch
        )

    def _ignore_reason(self, candidate: MatchCandidate) -> str:
        policy = self.policy
        if candidate.gap_dollars is None or candidate.gap_pct is None:
            return "gap unknown"
        if candidate.gap_dollars < policy.min_gap_abs_watch or candidate.gap_pct < policy.min_gap_pct_watch:
            return "gap below watch threshold"
        if candidate.final_score < policy.min_watch_final_score:
            return f"score {candidate.final_score:.1f} below watch threshold"
        return f"listed {int(candidate.listing_age_days)} days"

    def apply(self, candidate: MatchCandidate) -> MatchCandidate:
        """Classify and write the decision and reasons onto the candidate."""
        result = self.classify(candidate)
        candidate.decision = result.decision
        candidate.reasons = list(result.reasons)
        return candidate


# =============================================================================
# RANKING
# =============================================================================

def _price_key(candidate: MatchCandidate) -> tuple:
    # Unknown prices sort after every known price
    return (candidate.asking_price is None, candidate.asking_price or 0.0)


def rank_candidates(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    """
    Order candidates and flag the cheapest per decision bucket.

    Order: decision (BUY, WATCH, UNVERIFIED, IGNORE), final_score desc,
    asking price asc, first_seen_at asc. Exactly one row per non-IGNORE
    bucket gets is_cheapest: lowest price, earliest first_seen_at on ties.
    """
    ordered = sorted(
        candidates,
        key=lambda c: (
            c.decision.sort_order,
            -c.final_score,
            _price_key(c),
            c.first_seen_at,
            c.listing_id,
        ),
    )

    buckets: dict[Decision, list[MatchCandidate]] = {}
    for position, candidate in enumerate(ordered, 1):
        candidate.rank_position = position
        candidate.is_cheapest = False
        buckets.setdefault(candidate.decision, []).append(candidate)

    for decision, bucket in buckets.items():
        if decision == Decision.IGNORE:
            continue
        cheapest = min(bucket, key=lambda c: (_price_key(c), c.first_seen_at, c.listing_id))
        cheapest.is_cheapest = True

    return ordered


def decision_counts(candidates: list[MatchCandidate]) -> dict[str, int]:
    counts = {d.value: 0 for d in Decision}
    for candidate in candidates:
        counts[candidate.decision.value] += 1
    return counts
