"""
Candidate matching module.

Compares normalized listings against winner fingerprints and hunt
criteria. Hard filters reject outright (no score); soft scoring is km
proximity against fingerprints and a DNA identity-alignment score against
hunts.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .models import Drivetrain, Hunt, ListingRecord, WinnerFingerprint
from .scoring import last_sale_gap

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# (max km distance, score); beyond the last band the candidate is dropped
KM_BANDS = [
    (10_000, 1.0),
    (15_000, 0.7),
    (20_000, 0.4),
]
UNKNOWN_KM_SCORE = 0.5

AUCTION_SOURCES = ("pickles", "manheim", "grays", "lloyds", "slattery", "vma")
MARKETPLACE_SOURCES = ("carsales", "autotrader", "drive", "gumtree", "facebook")

# Variant confidence fed to the opportunity scorer
VARIANT_CONFIDENCE = {
    "exact": 1.0,
    "contained": 0.75,
    "unspecified": 0.5,
    "unknown": 0.3,
}


def km_score(listing_km: Optional[float], reference_km: Optional[float]) -> float:
    """Km proximity score. 0.0 means the candidate is out of band."""
    if listing_km is None or reference_km is None:
        return UNKNOWN_KM_SCORE
    distance = abs(listing_km - reference_km)
    for max_distance, score in KM_BANDS:
        if distance <= max_distance:
            return score
    return 0.0


def is_drivetrain_downgrade(listing_drivetrain: Optional[Drivetrain], required: Optional[Drivetrain]) -> bool:
    """A 2WD/FWD/RWD listing cannot satisfy an AWD/4WD requirement. The reverse is fine."""
    if listing_drivetrain is None or required is None:
        return False
    return listing_drivetrain.is_low_capability and required.is_high_capability


def source_tier(source: Optional[str]) -> int:
    """1 = auction, 2 = marketplace, 3 = dealer/other."""
    name = (source or "").lower()
    if any(s in name for s in AUCTION_SOURCES):
        return 1
    if any(s in name for s in MARKETPLACE_SOURCES):
        return 2
    return 3


def variant_alignment(listing_variant: Optional[str], variant_family: Optional[str]) -> str:
    """One of exact / contained / unspecified / unknown / mismatch."""
    if not variant_family:
        return "unspecified"
    if not listing_variant:
        return "unknown"
    if listing_variant == variant_family:
        return "exact"
    if variant_family in listing_variant:
        return "contained"
    return "mismatch"


# =============================================================================
# MATCH RESULTS
# =============================================================================

@dataclass
class FingerprintMatch:
    """A listing that passed a fingerprint's hard filters and km band."""
    listing: ListingRecord
    fingerprint: WinnerFingerprint
    km_score: float
    estimated_profit: Optional[float] = None
    reasons: list[str] = field(default_factory=list)


@dataclass
class DnaScore:
    """Identity alignment of a listing against a hunt (0-10)."""
    score: float
    variant_confidence: float
    source_tier: int
    reasons: list[str] = field(default_factory=list)


# =============================================================================
# CANDIDATE MATCHER
# =============================================================================

class CandidateMatcher:
    """
    Matches listings against fingerprints and hunts.

    Usage:
        matcher = CandidateMatcher(matches_per_fingerprint=3)
        result = matcher.match(listing, fingerprint)
        dna = matcher.score_dna(listing, hunt, result.km_score)
    """

    def __init__(self, matches_per_fingerprint: Optional[int] = 3):
        # None keeps every match
        self.matches_per_fingerprint = matches_per_fingerprint

    def match(self, listing: ListingRecord, fingerprint: WinnerFingerprint) -> Optional[FingerprintMatch]:
        """
        Match a single listing against a single fingerprint.

        Returns:
            FingerprintMatch, or None when a hard filter rejects it or the
            km distance is out of band
        """
        reason = self.fingerprint_rejection(listing, fingerprint)
        if reason is not None:
            return None

        identity = listing.identity
        score = km_score(identity.km, fingerprint.reference_km)
        if score <= 0:
            return None

        reasons = []
        if identity.km is None or fingerprint.reference_km is None:
            reasons.append("km unknown")
        else:
            reasons.append(f"{abs(identity.km - fingerprint.reference_km):,.0f} km from winner")

        return FingerprintMatch(
            listing=listing,
            fingerprint=fingerprint,
            km_score=score,
            estimated_profit=last_sale_gap(fingerprint, listing.asking_price),
            reasons=reasons,
        )

    def fingerprint_rejection(self, listing: ListingRecord, fingerprint: WinnerFingerprint) -> Optional[str]:
        """Name of the first hard filter the listing fails, or None."""
        identity = listing.identity
        if identity.make != fingerprint.make:
            return "make_mismatch"
        if identity.model != fingerprint.model:
            return "model_mismatch"
        if identity.year is not None:
            if fingerprint.year_min is not None and identity.year < fingerprint.year_min:
                return "year_out_of_range"
            if fingerprint.year_max is not None and identity.year > fingerprint.year_max:
                return "year_out_of_range"
        if is_drivetrain_downgrade(identity.drivetrain, fingerprint.drivetrain):
            return "drivetrain_downgrade"
        return None

    def best_match(
        self,
        listing: ListingRecord,
        fingerprints: list[WinnerFingerprint],
    ) -> tuple[Optional[FingerprintMatch], Optional[str]]:
        """
        Best fingerprint match for a listing.

        Highest km score wins, then higher total profit. When every
        same-model fingerprint rejects the listing the second element names
        why, taken from the highest-profit fingerprint; with no same-model
        fingerprint at all both are None.
        """
        same_model = [
            fp for fp in fingerprints
            if fp.make == listing.identity.make and fp.model == listing.identity.model
        ]
        matches = [m for m in (self.match(listing, fp) for fp in same_model) if m is not None]
        if matches:
            matches.sort(key=lambda m: (-m.km_score, -m.fingerprint.total_profit, m.fingerprint.fingerprint_key))
            return matches[0], None
        if not same_model:
            return None, None
        top = min(same_model, key=lambda fp: (-fp.total_profit, fp.fingerprint_key))
        reason = self.fingerprint_rejection(listing, top) or "km_out_of_band"
        return None, reason

    def match_listings(
        self,
        listings: list[ListingRecord],
        fingerprints: list[WinnerFingerprint],
    ) -> dict[str, list[FingerprintMatch]]:
        """
        Match listings against every fingerprint.

        Returns:
            fingerprint_key -> matches sorted by asking price ascending
            (unknown prices last), truncated to matches_per_fingerprint
        """
        results: dict[str, list[FingerprintMatch]] = {}
        total = 0
        for fingerprint in fingerprints:
            matches = [m for m in (self.match(listing, fingerprint) for listing in listings) if m is not None]
            matches.sort(key=lambda m: (
                m.listing.asking_price is None,
                m.listing.asking_price or 0.0,
                m.listing.first_seen_at,
                m.listing.listing_id,
            ))
            if self.matches_per_fingerprint is not None:
                matches = matches[:self.matches_per_fingerprint]
            results[fingerprint.fingerprint_key] = matches
            total += len(matches)

        logger.info(f"Matched {len(listings)} listings against {len(fingerprints)} fingerprints: {total} kept")
        return results

    # =========================================================================
    # HUNT FILTERS & DNA
    # =========================================================================

    def hunt_rejection(self, listing: ListingRecord, hunt: Hunt) -> Optional[str]:
        """Name of the first hunt hard filter the listing fails, or None."""
        identity = listing.identity
        if hunt.sources_enabled and listing.source not in hunt.sources_enabled:
            return "source_not_enabled"
        if identity.make != hunt.make:
            return "make_mismatch"
        if identity.model != hunt.model:
            return "model_mismatch"
        if identity.year is not None:
            if hunt.year_min is not None and identity.year < hunt.year_min:
                return "year_out_of_range"
            if hunt.year_max is not None and identity.year > hunt.year_max:
                return "year_out_of_range"
        if identity.km is not None:
            if hunt.km_min is not None and identity.km < hunt.km_min:
                return "km_out_of_range"
            if hunt.km_max is not None and identity.km > hunt.km_max:
                return "km_out_of_range"
        if variant_alignment(identity.variant, hunt.variant_family) == "mismatch":
            return "variant_mismatch"
        if is_drivetrain_downgrade(identity.drivetrain, hunt.drivetrain):
            return "drivetrain_downgrade"
        return None

    def score_dna(self, listing: ListingRecord, hunt: Hunt, km_proximity: float = UNKNOWN_KM_SCORE) -> DnaScore:
        """Identity alignment of a listing that already passed the hunt filters."""
        identity = listing.identity
        score = 3.0
        reasons = ["make_model_match"]

        target_year = _target_year(hunt)
        if identity.year is not None and target_year is not None:
            year_diff = abs(identity.year - target_year)
            if year_diff == 0:
                score += 1.5
                reasons.append("year_exact")
            elif year_diff == 1:
                score += 1.0
                reasons.append("year_±1")
            elif year_diff == 2:
                score += 0.5
                reasons.append("year_±2")

        alignment = variant_alignment(identity.variant, hunt.variant_family)
        if alignment == "exact":
            score += 1.5
            reasons.append("variant_exact")
        elif alignment == "contained":
            score += 0.75
            reasons.append("variant_family")
        elif alignment == "unspecified":
            score += 0.2
            reasons.append("variant_any")

        if hunt.drivetrain is None:
            score += 0.2
            reasons.append("drivetrain_any")
        elif identity.drivetrain == hunt.drivetrain:
            score += 1.0
            reasons.append("drivetrain_exact")

        score += 2.0 * km_proximity
        reasons.append(f"km_score={km_proximity}")

        tier = source_tier(listing.source)
        if tier == 1:
            score += 1.0
            reasons.append("tier1_auction")
        elif tier == 2:
            score += 0.5
            reasons.append("tier2_marketplace")

        return DnaScore(
            score=min(round(score, 2), 10.0),
            variant_confidence=VARIANT_CONFIDENCE.get(alignment, VARIANT_CONFIDENCE["unknown"]),
            source_tier=tier,
            reasons=reasons,
        )


def _target_year(hunt: Hunt) -> Optional[int]:
    """Centre of the hunt's year band, or whichever bound it has."""
    if hunt.year_min is not None and hunt.year_max is not None:
        return (hunt.year_min + hunt.year_max + 1) // 2
    return hunt.year_min if hunt.year_min is not None else hunt.year_max
