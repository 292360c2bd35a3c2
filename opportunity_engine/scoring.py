"""
Opportunity scoring.

Computes the bounded 0-10 profit/opportunity score from fingerprint
statistics, the separate sample-size confidence label, group-level
aggregate scores, and the gap between an asking price and a proven exit.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

from .models import ConfidenceLabel, WinnerFingerprint

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

WEIGHTS = {
    "profit": 0.45,
    "win_rate": 0.25,
    "exit_speed": 0.15,
    "sample": 0.10,
    "confidence": 0.05,
}

# Below this many sales a result may never read as hot or comfortably warm
LOW_SAMPLE_SIZE = 3
LOW_SAMPLE_CAP = 6.0

NEUTRAL_EXIT_SPEED = 0.5
SAMPLE_SATURATION = 20

HOT_SCORE = 7.5
WARM_SCORE = 6.0
PROFIT_DENSE_SCORE = 6.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value is None or not math.isfinite(value):
        return low
    return max(low, min(high, value))


def record_confidence(sample_size: int) -> float:
    if sample_size >= 5:
        return 1.0
    if sample_size >= 3:
        return 0.8
    return 0.5


def confidence_label(sample_size: int) -> ConfidenceLabel:
    """Confidence from raw sample size. Independent of the numeric score."""
    if sample_size >= 10:
        return ConfidenceLabel.HIGH
    if sample_size >= 5:
        return ConfidenceLabel.MEDIUM
    return ConfidenceLabel.LOW


def heat_level(score: float) -> str:
    if score >= HOT_SCORE:
        return "hot"
    if score >= WARM_SCORE:
        return "warm"
    return "cold"


# =============================================================================
# GEO MULTIPLIER
# =============================================================================

# Checked in order against the words of a location string
REGION_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("NSW", ("NSW", "SYDNEY")),
    ("QLD", ("QLD", "BRISBANE")),
    ("VIC", ("VIC", "VICTORIA", "MELBOURNE")),
    ("WA", ("WA", "PERTH")),
    ("SA", ("SA", "ADELAIDE")),
]

SAME_REGION_MULTIPLIER = 1.10
ALL_REGION_MULTIPLIER = 1.05
UNKNOWN_LOCATION_MULTIPLIER = 0.80


def region_for_location(location: Optional[str]) -> Optional[str]:
    """Region code for a free-text location, or None when it names no known region."""
    words = set(re.findall(r"[A-Z]+", (location or "").upper()))
    for region, keywords in REGION_KEYWORDS:
        if words.intersection(keywords):
            return region
    return None


def geo_multiplier(location: Optional[str], stats_region: Optional[str] = None) -> float:
    """
    Weight for where a listing is versus where the stats came from.

    Unknown location -> 0.80; stats from the listing's own region -> 1.10;
    all-region stats (or another region's) -> 1.05.
    """
    if not location or not location.strip() or location.strip().lower() == "unknown":
        return UNKNOWN_LOCATION_MULTIPLIER
    if stats_region and stats_region == region_for_location(location):
        return SAME_REGION_MULTIPLIER
    return ALL_REGION_MULTIPLIER


# =============================================================================
# OPPORTUNITY SCORER
# =============================================================================

@dataclass
class ScoreBreakdown:
    """Normalized factors behind one score, each in [0, 1]."""
    profit: float
    win_rate: float
    exit_speed: float
    sample: float
    confidence: float
    geo_multiplier: float
    score: float
    capped: bool = False

    def to_dict(self) -> dict:
        return {
            "profit": round(self.profit, 4),
            "win_rate": round(self.win_rate, 4),
            "exit_speed": round(self.exit_speed, 4),
            "sample": round(self.sample, 4),
            "confidence": round(self.confidence, 4),
            "geo_multiplier": self.geo_multiplier,
            "score": self.score,
            "capped": self.capped,
        }


class OpportunityScorer:
    """
    Weighted composite of profit, win rate, exit speed, sample size and
    confidence, scaled to 0-10.

    Usage:
        scorer = OpportunityScorer()
        score = scorer.score(median_gp=6000, win_rate=0.8, median_days_to_exit=10,
                             sample_size=2, variant_confidence=1.0, geo_multiplier=1.0)
    """

    def __init__(self, gp_target: float = 4000.0, exit_target_days: float = 21):
        self.gp_target = gp_target
        self.exit_target_days = exit_target_days

    def score(
        self,
        median_gp: Optional[float],
        win_rate: Optional[float],
        median_days_to_exit: Optional[float],
        sample_size: int,
        variant_confidence: float = 1.0,
        geo_multiplier: float = 1.0,
        gp_target: Optional[float] = None,
        exit_target_days: Optional[float] = None,
    ) -> float:
        return self.breakdown(
            median_gp, win_rate, median_days_to_exit, sample_size,
            variant_confidence, geo_multiplier, gp_target, exit_target_days,
        ).score

    def breakdown(
        self,
        median_gp: Optional[float],
        win_rate: Optional[float],
        median_days_to_exit: Optional[float],
        sample_size: int,
        variant_confidence: float = 1.0,
        geo_multiplier: float = 1.0,
        gp_target: Optional[float] = None,
        exit_target_days: Optional[float] = None,
    ) -> ScoreBreakdown:
        gp_target = self.gp_target if gp_target is None else gp_target
        exit_target_days = self.exit_target_days if exit_target_days is None else exit_target_days
        sample_size = max(0, int(sample_size or 0))

        if median_gp is None:
            profit = 0.0
        elif gp_target > 0:
            profit = _clamp(median_gp / gp_target)
        else:
            profit = 1.0 if median_gp > 0 else 0.0

        win = _clamp(win_rate if win_rate is not None else 0.0)

        if median_days_to_exit is None or exit_target_days <= 0:
            exit_speed = NEUTRAL_EXIT_SPEED
        else:
            exit_speed = _clamp(1 - median_days_to_exit / exit_target_days)

        sample = _clamp(math.log10(sample_size + 1) / math.log10(SAMPLE_SATURATION + 1))

        variant_confidence = _clamp(variant_confidence if variant_confidence is not None else 0.0)
        confidence = _clamp(0.5 + 0.5 * variant_confidence * record_confidence(sample_size), 0.5, 1.0)

        geo = geo_multiplier if geo_multiplier is not None and math.isfinite(geo_multiplier) else 1.0

        weighted = (
            WEIGHTS["profit"] * profit
            + WEIGHTS["win_rate"] * win
            + WEIGHTS["exit_speed"] * exit_speed
            + WEIGHTS["sample"] * sample
            + WEIGHTS["confidence"] * confidence
        )
        score = round(_clamp(10 * weighted * geo, 0.0, 10.0), 1)

        capped = False
        if sample_size < LOW_SAMPLE_SIZE and score > LOW_SAMPLE_CAP:
            score = LOW_SAMPLE_CAP
            capped = True

        return ScoreBreakdown(
            profit=profit,
            win_rate=win,
            exit_speed=exit_speed,
            sample=sample,
            confidence=confidence,
            geo_multiplier=geo,
            score=score,
            capped=capped,
        )

    def score_fingerprint(
        self,
        fingerprint: WinnerFingerprint,
        variant_confidence: float = 1.0,
        geo_multiplier: float = 1.0,
    ) -> float:
        """Score a fingerprint's own statistics. An unknown win rate counts as zero."""
        median_gp = fingerprint.median_profit if fingerprint.median_profit is not None else fingerprint.avg_profit
        return self.score(
            median_gp=median_gp,
            win_rate=fingerprint.win_rate,
            median_days_to_exit=fingerprint.median_days_to_clear,
            sample_size=fingerprint.times_sold,
            variant_confidence=variant_confidence,
            geo_multiplier=geo_multiplier,
        )


# =============================================================================
# GROUP SCORES
# =============================================================================

@dataclass
class GroupScore:
    """Aggregate over a group of scored members (e.g. one auction event)."""
    score: float
    profit_dense_count: int
    member_count: int

    @property
    def heat(self) -> str:
        return heat_level(self.score)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "profit_dense_count": self.profit_dense_count,
            "member_count": self.member_count,
            "heat": self.heat,
        }


def aggregate_score(scores: list[float], top_n: int = 10) -> GroupScore:
    """Mean of the top-N member scores plus a count of profit-dense members."""
    if not scores:
        return GroupScore(score=0.0, profit_dense_count=0, member_count=0)
    top = sorted(scores, reverse=True)[:max(1, top_n)]
    return GroupScore(
        score=round(sum(top) / len(top), 1),
        profit_dense_count=sum(1 for s in scores if s >= PROFIT_DENSE_SCORE),
        member_count=len(scores),
    )


# =============================================================================
# GAP CALCULATIONS
# =============================================================================

@dataclass
class Gap:
    gap_dollars: Optional[float] = None
    gap_pct: Optional[float] = None

    @property
    def known(self) -> bool:
        return self.gap_dollars is not None


def compute_gap(proven_exit_value: Optional[float], asking_price: Optional[float]) -> Gap:
    """
    Gap between a proven exit value and an asking price.

    gap_pct is relative to the exit value, rounded to one decimal.
    """
    if proven_exit_value is None or asking_price is None or proven_exit_value <= 0:
        return Gap()
    gap_dollars = proven_exit_value - asking_price
    return Gap(
        gap_dollars=round(gap_dollars, 2),
        gap_pct=round(gap_dollars / proven_exit_value * 100, 1),
    )


def last_sale_gap(fingerprint: WinnerFingerprint, asking_price: Optional[float]) -> Optional[float]:
    """Fingerprint's last sale price minus asking. None on partial data."""
    if fingerprint.last_sale_price is None or asking_price is None:
        return None
    return fingerprint.last_sale_price - asking_price


def median_fingerprint_gap(fingerprint: WinnerFingerprint, asking_price: Optional[float]) -> Optional[float]:
    """Fingerprint's median sale price minus asking. None on partial data."""
    if fingerprint.median_sale_price is None or asking_price is None:
        return None
    return fingerprint.median_sale_price - asking_price
