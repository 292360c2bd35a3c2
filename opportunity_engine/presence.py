"""
Presence tracking across crawl runs.

Every successful crawl run for a source marks each known listing it did
not see with one more missing strike; a listing seen again is reset and,
if it had strikes, emits RETURNED. Planning is pure; the resulting plan is
written by one atomic store call together with the run's completion
record.

States: ACTIVE -> MISSING_PENDING (1 strike) -> MISSING_CONFIRMED
(threshold reached) -> DELISTED. MISSING_CONFIRMED is reported on events
and immediately persisted as DELISTED.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .config import EngineConfig, get_engine_config
from .models import (
    CrawlRun,
    ListingRecord,
    ListingStatus,
    PresenceEvent,
    PresenceEventType,
    utcnow,
)
from .normalization import ListingNormalizer

logger = logging.getLogger(__name__)


@dataclass
class StreakUpdate:
    """New presence state for a known listing that was not seen."""
    listing_id: str
    source: str
    source_listing_id: str
    missing_streak: int
    status: ListingStatus

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "source": self.source,
            "source_listing_id": self.source_listing_id,
            "missing_streak": self.missing_streak,
            "status": self.status.value,
        }


@dataclass
class PresenceSummary:
    new: int = 0
    seen: int = 0
    still_active: int = 0
    pending_missing: int = 0
    went_missing: int = 0
    returned: int = 0
    delisted: int = 0
    circuit_breaker_tripped: bool = False
    failed: bool = False

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class PresencePlan:
    """Everything one crawl run changes, written together or not at all."""
    run: CrawlRun
    upserts: list[ListingRecord] = field(default_factory=list)
    streak_updates: list[StreakUpdate] = field(default_factory=list)
    events: list[PresenceEvent] = field(default_factory=list)
    summary: PresenceSummary = field(default_factory=PresenceSummary)
    completed_at: datetime = field(default_factory=utcnow)

    def to_rpc_payload(self, run_id: str) -> dict:
        return {
            "p_run_id": run_id,
            "p_source": self.run.source,
            "p_listings": [r.to_dict() for r in self.upserts],
            "p_streak_updates": [u.to_dict() for u in self.streak_updates],
            "p_events": [e.to_dict() for e in self.events],
            "p_summary": self.summary.to_dict(),
            "p_completed_at": self.completed_at.isoformat(),
        }


def circuit_breaker_tripped(
    active_count: int,
    seen_of_active: int,
    min_active: int,
    min_seen_pct: float,
) -> bool:
    """A large source that suddenly shows few of its listings was blocked, not emptied."""
    if active_count < min_active or active_count == 0:
        return False
    return seen_of_active / active_count < min_seen_pct


def plan_presence(
    run: CrawlRun,
    seen_records: list[ListingRecord],
    known_listings: list[ListingRecord],
    now: Optional[datetime] = None,
    config: Optional[EngineConfig] = None,
) -> PresencePlan:
    """
    Plan the presence transitions for one successful crawl run.

    Args:
        run: The crawl run being completed
        seen_records: Normalized listings observed by this run
        known_listings: Every stored listing for the run's source
        now: Clock override
        config: Thresholds (missing threshold, stale interval, breaker)

    Returns:
        PresencePlan of upserts, streak updates and events
    """
    now = now or utcnow()
    config = config or get_engine_config()
    known = {listing.listing_id: listing for listing in known_listings}
    seen_ids = {record.listing_id for record in seen_records}
    plan = PresencePlan(run=run, completed_at=now)
    summary = plan.summary

    visible = [listing for listing in known.values() if listing.status.is_visible]
    seen_of_active = sum(1 for listing in visible if listing.listing_id in seen_ids)
    summary.circuit_breaker_tripped = circuit_breaker_tripped(
        len(visible), seen_of_active,
        config.circuit_breaker_min_active, config.circuit_breaker_min_seen_pct,
    )
    if summary.circuit_breaker_tripped:
        logger.warning(
            f"Circuit breaker tripped for {run.source}: saw {seen_of_active}/{len(visible)} "
            f"active listings, skipping missing processing"
        )

    # Seen listings
    for record in seen_records:
        previous = known.get(record.listing_id)
        summary.seen += 1
        record.last_seen_at = now
        record.missing_streak = 0

        if previous is None:
            record.first_seen_at = now
            record.status = ListingStatus.ACTIVE
            plan.events.append(PresenceEvent(
                listing_id=record.listing_id,
                run_id=run.run_id,
                event_type=PresenceEventType.FIRST_SEEN,
                occurred_at=now,
                new_status=ListingStatus.ACTIVE,
            ))
            summary.new += 1
        else:
            record.first_seen_at = previous.first_seen_at
            record.lifecycle_status = previous.lifecycle_status
            record.excluded_reason = previous.excluded_reason
            record.status = ListingStatus.ACTIVE
            if previous.missing_streak > 0 or previous.status != ListingStatus.ACTIVE:
                plan.events.append(PresenceEvent(
                    listing_id=record.listing_id,
                    run_id=run.run_id,
                    event_type=PresenceEventType.RETURNED,
                    occurred_at=now,
                    previous_status=previous.status,
                    new_status=ListingStatus.ACTIVE,
                ))
                summary.returned += 1
            else:
                summary.still_active += 1
        plan.upserts.append(record)

    if summary.circuit_breaker_tripped:
        return plan

    # Known listings this run did not see
    stale_after = timedelta(days=config.stale_days)
    for listing in known.values():
        if listing.listing_id in seen_ids or listing.status == ListingStatus.DELISTED:
            continue

        streak = listing.missing_streak + 1
        is_stale = now - listing.last_seen_at >= stale_after
        if streak >= config.missing_threshold or is_stale:
            new_status = ListingStatus.DELISTED
            event_status = ListingStatus.MISSING_CONFIRMED
            summary.delisted += 1
        else:
            new_status = ListingStatus.MISSING_PENDING
            event_status = ListingStatus.MISSING_PENDING
            summary.pending_missing += 1

        plan.streak_updates.append(StreakUpdate(
            listing_id=listing.listing_id,
            source=listing.source,
            source_listing_id=listing.source_listing_id,
            missing_streak=streak,
            status=new_status,
        ))
        if listing.status != event_status:
            plan.events.append(PresenceEvent(
                listing_id=listing.listing_id,
                run_id=run.run_id,
                event_type=PresenceEventType.WENT_MISSING,
                occurred_at=now,
                previous_status=listing.status,
                new_status=event_status,
            ))
            if listing.status == ListingStatus.ACTIVE:
                summary.went_missing += 1

    return plan


class PresenceTracker:
    """
    Applies crawl runs to stored listings.

    Usage:
        tracker = PresenceTracker(db)
        summary = tracker.record_crawl_run("pickles", raw_items)
    """

    def __init__(self, db, config: Optional[EngineConfig] = None, normalizer: Optional[ListingNormalizer] = None):
        self.db = db
        self.config = config or get_engine_config()
        self.normalizer = normalizer or ListingNormalizer()

    def record_crawl_run(
        self,
        source: str,
        raw_listings: list[dict],
        succeeded: bool = True,
        error: Optional[str] = None,
    ) -> PresenceSummary:
        """
        Record one crawl run for a source.

        A failed run is recorded as failed and changes no listing, so a
        partial scrape is never mistaken for absence.
        """
        source = source.lower().strip()
        run = self.db.start_crawl_run(source)

        if not succeeded:
            self.db.fail_crawl_run(run.run_id, error or "crawl run failed")
            return PresenceSummary(failed=True)

        records = self.normalizer.normalize_batch(raw_listings, default_source=source)
        foreign = [r for r in records if r.source != source]
        if foreign:
            logger.warning(f"Dropping {len(foreign)} listings from other sources in {source} run {run.run_id}")
            records = [r for r in records if r.source == source]

        known = self.db.get_listings_for_source(source)
        plan = plan_presence(run, records, known, config=self.config)
        self.db.commit_presence(run.run_id, plan)

        logger.info(f"Crawl run {run.run_id} for {source}: {plan.summary.to_dict()}")
        return plan.summary
