"""Tests for presence tracking across crawl runs."""

from datetime import timedelta

from opportunity_engine.models import CrawlRun, LifecycleStatus, ListingStatus, PresenceEventType
from opportunity_engine.presence import PresenceTracker, circuit_breaker_tripped, plan_presence


def raw(listing_id, **kwargs):
    item = {"id": listing_id, "make": "Toyota", "model": "Hilux", "year": 2020, "price": 21_000}
    item.update(kwargs)
    return item


def events_of(fake_db, event_type, listing_id=None):
    return [
        e for e in fake_db.events
        if e.event_type == event_type and (listing_id is None or e.listing_id == listing_id)
    ]


class TestPresenceTracker:
    def test_first_seen(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        summary = tracker.record_crawl_run("Pickles", [raw("A1"), raw("A2")])

        assert summary.new == 2
        assert fake_db.listings["pickles:A1"].status == ListingStatus.ACTIVE
        assert len(events_of(fake_db, PresenceEventType.FIRST_SEEN)) == 2

    def test_one_miss_is_pending_and_still_visible(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])
        summary = tracker.record_crawl_run("pickles", [raw("A1")])

        listing = fake_db.listings["pickles:A2"]
        assert summary.pending_missing == 1
        assert summary.went_missing == 1
        assert listing.missing_streak == 1
        assert listing.status == ListingStatus.MISSING_PENDING
        assert listing.status.is_visible

    def test_two_misses_delist(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])
        tracker.record_crawl_run("pickles", [raw("A1")])
        summary = tracker.record_crawl_run("pickles", [raw("A1")])

        listing = fake_db.listings["pickles:A2"]
        assert summary.delisted == 1
        assert listing.missing_streak == 2
        assert listing.status == ListingStatus.DELISTED
        confirmed = [
            e for e in events_of(fake_db, PresenceEventType.WENT_MISSING, "pickles:A2")
            if e.new_status == ListingStatus.MISSING_CONFIRMED
        ]
        assert len(confirmed) == 1

    def test_returned_once_and_streak_reset(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])
        tracker.record_crawl_run("pickles", [raw("A1")])
        summary = tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])
        tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])

        listing = fake_db.listings["pickles:A2"]
        assert summary.returned == 1
        assert listing.missing_streak == 0
        assert listing.status == ListingStatus.ACTIVE
        assert len(events_of(fake_db, PresenceEventType.RETURNED, "pickles:A2")) == 1

    def test_returned_keeps_first_seen(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1")])
        first_seen = fake_db.listings["pickles:A1"].first_seen_at
        tracker.record_crawl_run("pickles", [raw("A1", price=19_500)])

        listing = fake_db.listings["pickles:A1"]
        assert listing.first_seen_at == first_seen
        assert listing.asking_price == 19_500

    def test_recrawl_keeps_verdict_and_exclusion(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1")])
        fake_db.listings["pickles:A1"].lifecycle_status = LifecycleStatus.SOLD
        fake_db.listings["pickles:A1"].excluded_reason = "hail damage"
        tracker.record_crawl_run("pickles", [raw("A1")])

        listing = fake_db.listings["pickles:A1"]
        assert listing.lifecycle_status == LifecycleStatus.SOLD
        assert listing.excluded_reason == "hail damage"

    def test_failed_run_changes_nothing(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        tracker.record_crawl_run("pickles", [raw("A1"), raw("A2")])
        summary = tracker.record_crawl_run("pickles", [], succeeded=False, error="timeout")

        assert summary.failed is True
        assert fake_db.failed_runs == [("run-2", "timeout")]
        assert fake_db.calls.count("commit_presence") == 1
        assert all(listing.missing_streak == 0 for listing in fake_db.listings.values())

    def test_other_source_records_are_dropped(self, fake_db, engine_config):
        tracker = PresenceTracker(fake_db, engine_config)
        summary = tracker.record_crawl_run("pickles", [raw("A1"), raw("G1", source="grays")])
        assert summary.new == 1
        assert "grays:G1" not in fake_db.listings


class TestPlanPresence:
    def _run(self, now):
        return CrawlRun(run_id="run-1", source="pickles", started_at=now)

    def test_circuit_breaker_skips_missing_processing(self, make_listing, engine_config, now):
        known = [make_listing(listing_id=str(i)) for i in range(100)]
        seen = [make_listing(listing_id=str(i)) for i in range(10)]
        plan = plan_presence(self._run(now), seen, known, now=now, config=engine_config)

        assert plan.summary.circuit_breaker_tripped is True
        assert plan.streak_updates == []
        assert len(plan.upserts) == 10

    def test_small_source_never_trips_breaker(self, make_listing, engine_config, now):
        known = [make_listing(listing_id=str(i)) for i in range(99)]
        plan = plan_presence(self._run(now), [], known, now=now, config=engine_config)

        assert plan.summary.circuit_breaker_tripped is False
        assert plan.summary.pending_missing == 99

    def test_breaker_threshold(self):
        assert circuit_breaker_tripped(200, 59, 100, 0.30) is True
        assert circuit_breaker_tripped(200, 60, 100, 0.30) is False
        assert circuit_breaker_tripped(0, 0, 0, 0.30) is False

    def test_stale_listing_delists_on_first_miss(self, make_listing, engine_config, now):
        stale = make_listing(listing_id="old", last_seen_at=now - timedelta(days=4))
        plan = plan_presence(self._run(now), [], [stale], now=now, config=engine_config)

        [update] = plan.streak_updates
        assert update.status == ListingStatus.DELISTED
        assert update.missing_streak == 1
        [event] = plan.events
        assert event.new_status == ListingStatus.MISSING_CONFIRMED

    def test_delisted_listing_accrues_no_strikes(self, make_listing, engine_config, now):
        gone = make_listing(listing_id="gone", status=ListingStatus.DELISTED, missing_streak=2)
        plan = plan_presence(self._run(now), [], [gone], now=now, config=engine_config)

        assert plan.streak_updates == []
        assert plan.events == []

    def test_delisted_listing_can_return(self, make_listing, engine_config, now):
        gone = make_listing(listing_id="gone", status=ListingStatus.DELISTED, missing_streak=2)
        plan = plan_presence(self._run(now), [make_listing(listing_id="gone")], [gone], now=now, config=engine_config)

        [event] = plan.events
        assert event.event_type == PresenceEventType.RETURNED
        assert event.previous_status == ListingStatus.DELISTED
        assert plan.upserts[0].status == ListingStatus.ACTIVE

    def test_rpc_payload(self, make_listing, engine_config, now):
        plan = plan_presence(self._run(now), [make_listing()], [], now=now, config=engine_config)
        payload = plan.to_rpc_payload("run-1")

        assert payload["p_run_id"] == "run-1"
        assert payload["p_listings"][0]["listing_id"] == "pickles:1001"
        assert payload["p_events"][0]["event_type"] == "FIRST_SEEN"
        assert payload["p_summary"]["new"] == 1
