"""
Main pipeline module for the opportunity engine.

Orchestrates the batch jobs:
1. Ingest -> Normalize a crawl run and apply presence transitions
2. Rebuild -> Match a hunt's listings, score, classify, rank, replace
3. Notify -> Emit BUY/WATCH transition events
4. Verify -> Re-check candidate pages for sold/expired
5. Refresh -> Recompute winner fingerprints from sales history

Each job returns a summary dict. StoreError propagates to the caller
(scheduler or trigger server), which retries on its next invocation.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from .cache import TTLCache
from .classification import DecisionClassifier, decision_counts, rank_candidates
from .config import EngineConfig, get_engine_config
from .db import get_db
from .errors import HuntNotFoundError
from .fingerprints import FingerprintStore
from .matching import UNKNOWN_KM_SCORE, CandidateMatcher
from .models import (
    BestSale,
    Decision,
    Hunt,
    LifecycleStatus,
    ListingRecord,
    MatchCandidate,
    WinnerFingerprint,
    utcnow,
)
from .normalization import IdentityNormalizer, ListingNormalizer
from .notifications import NotificationEmitter, build_transition_event, is_transition
from .presence import PresenceTracker
from .scoring import OpportunityScorer, aggregate_score, compute_gap, confidence_label, geo_multiplier
from .verification import Verifier, summarize

logger = logging.getLogger(__name__)

DNA_WEIGHT = 0.6
PRICE_WEIGHT = 0.4


def final_score(dna_score: float, price_score: float) -> float:
    return round(DNA_WEIGHT * dna_score + PRICE_WEIGHT * price_score, 1)


def proven_exit_value(
    hunt: Hunt,
    best_sale: Optional[BestSale],
    fingerprint: Optional[WinnerFingerprint],
) -> Optional[float]:
    """Hunt snapshot first, then the best historical sale, then the fingerprint's last sale."""
    if hunt.proven_exit_value:
        return float(hunt.proven_exit_value)
    if best_sale is not None and best_sale.sale_price:
        return best_sale.sale_price
    if fingerprint is not None and fingerprint.last_sale_price:
        return fingerprint.last_sale_price
    return None


class OpportunityPipeline:
    """
    Wires the engine's collaborators together.

    Usage:
        pipeline = OpportunityPipeline()
        summary = pipeline.rebuild_hunt("hunt-123")
    """

    def __init__(
        self,
        db=None,
        config: Optional[EngineConfig] = None,
        cache: Optional[TTLCache] = None,
        emitter: Optional[NotificationEmitter] = None,
        verifier: Optional[Verifier] = None,
    ):
        self.db = db or get_db()
        self.config = config or get_engine_config()
        self.cache = cache or TTLCache(self.config.cache_ttl_seconds)
        self.fingerprints = FingerprintStore(self.db, self.cache, self.config)
        self.matcher = CandidateMatcher(self.config.matches_per_fingerprint)
        self.scorer = OpportunityScorer(self.config.gp_target, self.config.exit_target_days)
        self.emitter = emitter or NotificationEmitter()
        self._verifier = verifier

    @property
    def verifier(self) -> Verifier:
        if self._verifier is None:
            self._verifier = Verifier(self.config)
        return self._verifier

    def identity_normalizer(self) -> IdentityNormalizer:
        """Normalizer using the store's DMS tables when it has any."""
        make_lookup, model_lookup = self.cache.get_or_load(
            ("dms_lookups",),
            lambda: (self.db.get_make_lookup(), self.db.get_model_lookup()),
        )
        return IdentityNormalizer(
            make_lookup=make_lookup or None,
            make_model_lookup=model_lookup or None,
        )

    # =========================================================================
    # HUNT REBUILDS
    # =========================================================================

    def rebuild_hunt(self, hunt_id: str) -> dict:
        """
        Rebuild a hunt's candidate set wholesale under a new criteria_version.

        Returns:
            Summary dict with per-decision counts
        """
        hunt = self.db.get_hunt(hunt_id)
        if hunt is None:
            raise HuntNotFoundError(hunt_id)

        now = utcnow()
        criteria_version = self.db.bump_criteria_version(hunt_id)
        previous = self.db.get_candidates(hunt_id)

        listings = self.db.get_active_listings(hunt.make, hunt.model, hunt.sources_enabled or None)
        fingerprints = self.fingerprints.top_fingerprints(hunt.account_id)
        best_sale = self.fingerprints.best_historical_sale(hunt.account_id, hunt.make, hunt.model)
        classifier = DecisionClassifier(self.config.policy.with_overrides(hunt.policy_overrides))

        candidates = []
        listings_by_id = {}
        rejected = 0
        for listing in listings:
            if listing.lifecycle_status != LifecycleStatus.ACTIVE:
                continue
            if self.matcher.hunt_rejection(listing, hunt) is not None:
                rejected += 1
                continue
            candidate = self.build_candidate(hunt, listing, fingerprints, best_sale, criteria_version, now)
            classifier.apply(candidate)
            candidates.append(candidate)
            listings_by_id[listing.listing_id] = listing

        candidates = rank_candidates(candidates)
        self.db.replace_candidates(hunt_id, criteria_version, candidates)
        self.db.mark_hunt_scanned(hunt_id)

        events = [
            build_transition_event(c, listings_by_id[c.listing_id], previous.get(c.listing_id))
            for c in candidates
            if is_transition(c.decision, previous.get(c.listing_id))
        ]
        emitted = self.emitter.emit(events)

        counts = decision_counts(candidates)
        group = aggregate_score(
            [c.final_score for c in candidates if c.decision != Decision.IGNORE],
            top_n=self.config.aggregate_top_n,
        )
        summary = {
            "hunt_id": hunt_id,
            "criteria_version": criteria_version,
            **counts,
            "total": len(candidates),
            "rejected": rejected,
            "group_score": group.to_dict(),
            "notifications": emitted.to_dict(),
        }
        logger.info(f"Rebuilt hunt {hunt_id}: {summary}")
        return summary

    def build_candidate(
        self,
        hunt: Hunt,
        listing: ListingRecord,
        fingerprints: list[WinnerFingerprint],
        best_sale: Optional[BestSale],
        criteria_version: int,
        now: Optional[datetime] = None,
    ) -> MatchCandidate:
        """Score one hunt-filtered listing. The decision is left to the classifier."""
        now = now or utcnow()
        match, rejection = self.matcher.best_match(listing, fingerprints)
        fingerprint = match.fingerprint if match else None
        km_proximity = match.km_score if match else UNKNOWN_KM_SCORE

        dna = self.matcher.score_dna(listing, hunt, km_proximity)
        if fingerprint is not None:
            price_score = self.scorer.score_fingerprint(
                fingerprint,
                variant_confidence=dna.variant_confidence,
                geo_multiplier=geo_multiplier(listing.location, fingerprint.region),
            )
            sample_size = fingerprint.times_sold
        else:
            price_score = 0.0
            sample_size = 0

        exit_value = proven_exit_value(hunt, best_sale, fingerprint)
        gap = compute_gap(exit_value, listing.asking_price)
        fast_clearance = (
            fingerprint is not None
            and fingerprint.median_days_to_clear is not None
            and fingerprint.median_days_to_clear <= self.config.exit_target_days / 2
        )

        return MatchCandidate(
            listing_id=listing.listing_id,
            hunt_id=hunt.hunt_id,
            source=listing.source,
            asking_price=listing.asking_price,
            first_seen_at=listing.first_seen_at,
            url=listing.url,
            dna_score=dna.score,
            price_score=price_score,
            final_score=final_score(dna.score, price_score),
            confidence=confidence_label(sample_size),
            sample_size=sample_size,
            proven_exit_value=exit_value,
            gap_dollars=gap.gap_dollars,
            gap_pct=gap.gap_pct,
            listing_age_days=listing.age_days(now),
            criteria_version=criteria_version,
            fingerprint_key=fingerprint.fingerprint_key if fingerprint else None,
            rejection_reason=rejection,
            excluded=listing.excluded_reason is not None or listing.listing_id in hunt.excluded_listing_ids,
            requires_identity_confirmation=listing.requires_identity_confirmation,
            fast_clearance=fast_clearance,
            lifecycle_status=listing.lifecycle_status,
        )

    def run_due_hunts(self) -> list[dict]:
        """Rebuild every due hunt, highest priority first."""
        hunts = self.db.get_due_hunts(self.config.due_hunt_limit)
        logger.info(f"{len(hunts)} hunts due for rebuild")
        return [self.rebuild_hunt(hunt.hunt_id) for hunt in hunts]

    # =========================================================================
    # INGESTION, VERIFICATION, FINGERPRINTS
    # =========================================================================

    def ingest_crawl_run(
        self,
        source: str,
        raw_listings: list[dict],
        succeeded: bool = True,
        error: Optional[str] = None,
    ) -> dict:
        tracker = PresenceTracker(
            self.db,
            self.config,
            ListingNormalizer(self.identity_normalizer()),
        )
        summary = tracker.record_crawl_run(source, raw_listings, succeeded=succeeded, error=error)
        return {"source": source, **summary.to_dict()}

    def run_verification(self, limit: Optional[int] = None, concurrency: Optional[int] = None) -> dict:
        """Verify a batch from the staleness-ordered queue and write the results."""
        started = time.monotonic()
        limit = max(1, min(200, limit or self.config.verify_batch_limit))
        concurrency = max(1, min(12, concurrency or self.config.verify_concurrency))

        targets = self.db.get_verify_batch(limit)
        if not targets:
            logger.info("No candidates due for verification")
            return summarize([], started).to_dict()

        results = self.verifier.verify_batch(targets, concurrency=concurrency)
        for result in results:
            self.db.update_lifecycle(result)

        summary = summarize(results, started)
        logger.info(f"Verification complete: {summary.counts} ({summary.ambiguous} ambiguous)")
        return summary.to_dict()

    def refresh_fingerprints(self, account_id: str) -> dict:
        written = self.fingerprints.refresh(account_id, self.identity_normalizer())
        return {"account_id": account_id, "fingerprints": written}

    def find_fingerprint_matches(self, account_id: str) -> dict:
        """
        Cheapest live listings per winner fingerprint.

        Returns:
            fingerprint_key -> up to matches_per_fingerprint matches
        """
        fingerprints = self.fingerprints.top_fingerprints(account_id)
        listings_by_model: dict[tuple[str, str], list[ListingRecord]] = {}
        for fingerprint in fingerprints:
            key = (fingerprint.make, fingerprint.model)
            if key not in listings_by_model:
                listings_by_model[key] = self.db.get_active_listings(fingerprint.make, fingerprint.model)

        results = {}
        for fingerprint in fingerprints:
            listings = listings_by_model[(fingerprint.make, fingerprint.model)]
            matches = self.matcher.match_listings(listings, [fingerprint])[fingerprint.fingerprint_key]
            results[fingerprint.fingerprint_key] = [
                {
                    "listing_id": m.listing.listing_id,
                    "asking_price": m.listing.asking_price,
                    "km_score": m.km_score,
                    "estimated_profit": m.estimated_profit,
                    "url": m.listing.url,
                }
                for m in matches
            ]
        return results


# Global pipeline instance (lazy loaded)
_pipeline: Optional[OpportunityPipeline] = None


def get_pipeline() -> OpportunityPipeline:
    """Get pipeline instance (singleton)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = OpportunityPipeline()
    return _pipeline


def rebuild_hunt(hunt_id: str) -> dict:
    return get_pipeline().rebuild_hunt(hunt_id)


def run_due_hunts() -> list[dict]:
    return get_pipeline().run_due_hunts()


def ingest_crawl_run(source: str, raw_listings: list[dict], succeeded: bool = True, error: Optional[str] = None) -> dict:
    return get_pipeline().ingest_crawl_run(source, raw_listings, succeeded=succeeded, error=error)


def run_verification(limit: Optional[int] = None, concurrency: Optional[int] = None) -> dict:
    return get_pipeline().run_verification(limit, concurrency)


def refresh_fingerprints(account_id: str) -> dict:
    return get_pipeline().refresh_fingerprints(account_id)


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for running pipeline jobs."""
    import argparse

    parser = argparse.ArgumentParser(description="Opportunity Engine Pipeline")
    parser.add_argument(
        "--rebuild",
        metavar="HUNT_ID",
        help="Rebuild one hunt's candidate set"
    )
    parser.add_argument(
        "--due",
        action="store_true",
        help="Rebuild all due hunts"
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Verify a batch of candidates"
    )
    parser.add_argument(
        "--refresh-fingerprints",
        metavar="ACCOUNT",
        help="Recompute winner fingerprints for an account"
    )
    parser.add_argument(
        "--matches",
        metavar="ACCOUNT",
        help="Show cheapest live listings per fingerprint for an account"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.rebuild:
        result = rebuild_hunt(args.rebuild)
        print(f"Rebuild complete: {result}")
    elif args.due:
        results = run_due_hunts()
        print(f"Rebuilt {len(results)} hunts: {results}")
    elif args.verify:
        result = run_verification()
        print(f"Verification complete: {result}")
    elif args.refresh_fingerprints:
        result = refresh_fingerprints(args.refresh_fingerprints)
        print(f"Fingerprints refreshed: {result}")
    elif args.matches:
        result = get_pipeline().find_fingerprint_matches(args.matches)
        print(f"Fingerprint matches: {result}")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
