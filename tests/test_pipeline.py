"""End-to-end pipeline tests against the in-memory store."""

from unittest import mock

import pytest

from opportunity_engine.cache import TTLCache
from opportunity_engine.errors import HuntNotFoundError, StoreError
from opportunity_engine.models import (
    BestSale,
    Decision,
    Drivetrain,
    LifecycleCheckResult,
    LifecycleStatus,
    VerifyTarget,
)
from opportunity_engine.notifications import EmitResult
from opportunity_engine.pipeline import OpportunityPipeline, final_score, proven_exit_value
from opportunity_engine.verification import Verifier


class RecordingEmitter:
    def __init__(self):
        self.batches = []

    def emit(self, events):
        self.batches.append(list(events))
        return EmitResult(events=len(events), delivered=len(events))


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def pipeline(fake_db, engine_config, emitter):
    return OpportunityPipeline(db=fake_db, config=engine_config, cache=TTLCache(60), emitter=emitter)


@pytest.fixture
def stocked_db(fake_db, make_listing, make_fingerprint, make_hunt):
    fake_db.hunts["hunt-1"] = make_hunt()
    fake_db.fingerprints["acct-1"] = [make_fingerprint()]
    for listing in (
        make_listing(listing_id="1001"),
        make_listing(listing_id="1002", source="carsales", asking_price=25_500.0),
        make_listing(listing_id="1003", source="carsales", asking_price=27_500.0),
        make_listing(listing_id="1004", year=2015),
        make_listing(listing_id="1005", lifecycle_status=LifecycleStatus.SOLD),
        make_listing(listing_id="1006", source="gumtree"),
    ):
        fake_db.listings[listing.listing_id] = listing
    return fake_db


def stored_candidates(db, hunt_id="hunt-1"):
    _, rows = db.candidates[hunt_id]
    return {c.listing_id: c for c in rows}


class TestRebuildHunt:
    def test_decisions_and_summary(self, stocked_db, pipeline):
        summary = pipeline.rebuild_hunt("hunt-1")

        assert summary["criteria_version"] == 2
        assert summary["BUY"] == 1
        assert summary["WATCH"] == 1
        assert summary["IGNORE"] == 1
        assert summary["total"] == 3
        assert summary["rejected"] == 1
        assert summary["group_score"]["member_count"] == 2
        assert summary["group_score"]["heat"] == "hot"
        assert stocked_db.scanned == ["hunt-1"]

        candidates = stored_candidates(stocked_db)
        buy = candidates["pickles:1001"]
        assert buy.decision == Decision.BUY
        assert buy.proven_exit_value == 28_000
        assert buy.gap_dollars == 6000
        assert buy.gap_pct == pytest.approx(21.4)
        assert buy.dna_score == 10.0
        assert buy.price_score == pytest.approx(9.4)
        assert buy.final_score == pytest.approx(9.8)
        assert buy.is_cheapest is True
        assert buy.rank_position == 1
        assert "fast clearance precedent" in buy.reasons
        assert candidates["carsales:1002"].decision == Decision.WATCH
        assert candidates["carsales:1003"].decision == Decision.IGNORE

    def test_transitions_notified_once(self, stocked_db, pipeline, emitter):
        first = pipeline.rebuild_hunt("hunt-1")
        second = pipeline.rebuild_hunt("hunt-1")

        assert sorted(e["decision"] for e in emitter.batches[0]) == ["BUY", "WATCH"]
        assert emitter.batches[1] == []
        assert first["notifications"]["events"] == 2
        assert second["criteria_version"] == 3

    def test_hunt_policy_overrides(self, stocked_db, pipeline):
        stocked_db.hunts["hunt-1"].policy_overrides = {"min_gap_abs_buy": 7000}
        summary = pipeline.rebuild_hunt("hunt-1")
        assert summary["BUY"] == 0
        assert summary["WATCH"] == 2

    def test_without_fingerprints_uses_hunt_exit_value(self, fake_db, pipeline, make_listing, make_hunt):
        fake_db.hunts["hunt-1"] = make_hunt(proven_exit_value=28_000)
        listing = make_listing()
        fake_db.listings[listing.listing_id] = listing

        pipeline.rebuild_hunt("hunt-1")
        candidate = stored_candidates(fake_db)["pickles:1001"]

        assert candidate.price_score == 0.0
        assert candidate.dna_score == 9.0
        assert candidate.final_score == pytest.approx(5.4)
        assert candidate.sample_size == 0
        assert candidate.decision == Decision.WATCH

    def test_fingerprint_rejection_is_ignored(self, fake_db, pipeline, make_listing, make_hunt, make_fingerprint):
        fake_db.hunts["hunt-1"] = make_hunt(drivetrain=None)
        fake_db.fingerprints["acct-1"] = [make_fingerprint()]
        listing = make_listing(drivetrain=Drivetrain.TWO_WD)
        fake_db.listings[listing.listing_id] = listing

        pipeline.rebuild_hunt("hunt-1")
        candidate = stored_candidates(fake_db)["pickles:1001"]

        assert candidate.decision == Decision.IGNORE
        assert candidate.reasons == ["rejected: drivetrain_downgrade"]

    def test_listing_location_weights_price_score(self, stocked_db, pipeline):
        stocked_db.listings["pickles:1001"].location = None
        stocked_db.listings["carsales:1002"].location = "Parramatta NSW"
        stocked_db.fingerprints["acct-1"][0].region = "NSW"
        pipeline.rebuild_hunt("hunt-1")
        candidates = stored_candidates(stocked_db)

        assert candidates["pickles:1001"].price_score == pytest.approx(7.2)
        assert candidates["pickles:1001"].decision == Decision.BUY
        assert candidates["carsales:1002"].price_score == pytest.approx(9.8)

    def test_operator_exclusions_are_ignored(self, stocked_db, pipeline):
        stocked_db.listings["pickles:1001"].excluded_reason = "hail damage"
        stocked_db.hunts["hunt-1"].excluded_listing_ids = ["carsales:1002"]
        summary = pipeline.rebuild_hunt("hunt-1")
        candidates = stored_candidates(stocked_db)

        assert summary["BUY"] == 0
        assert summary["WATCH"] == 0
        for listing_id in ("pickles:1001", "carsales:1002"):
            assert candidates[listing_id].decision == Decision.IGNORE
            assert candidates[listing_id].reasons == ["excluded by operator"]
            assert candidates[listing_id].to_dict()["excluded"] is True

    def test_unknown_hunt(self, fake_db, pipeline):
        with pytest.raises(HuntNotFoundError):
            pipeline.rebuild_hunt("missing")

    def test_store_failure_propagates_before_notifying(self, stocked_db, pipeline, emitter):
        stocked_db.fail_on.add("replace_candidates")
        with pytest.raises(StoreError):
            pipeline.rebuild_hunt("hunt-1")
        assert emitter.batches == []
        assert stocked_db.scanned == []

    def test_run_due_hunts(self, stocked_db, pipeline, make_hunt, now):
        stocked_db.hunts["hunt-2"] = make_hunt(hunt_id="hunt-2", last_scan_at=now)
        results = pipeline.run_due_hunts()
        assert [r["hunt_id"] for r in results] == ["hunt-1"]


def test_final_score_blend():
    assert final_score(10.0, 8.9) == pytest.approx(9.6)
    assert final_score(5.0, 0.0) == 3.0


def test_proven_exit_value_precedence(make_hunt, make_fingerprint):
    best = BestSale(make="TOYOTA", model="HILUX", sale_price=31_000, buy_price=25_000, profit=6000)
    fingerprint = make_fingerprint()
    assert proven_exit_value(make_hunt(proven_exit_value=33_000), best, fingerprint) == 33_000
    assert proven_exit_value(make_hunt(), best, fingerprint) == 31_000
    assert proven_exit_value(make_hunt(), None, fingerprint) == 28_000
    assert proven_exit_value(make_hunt(), None, None) is None


def test_ingest_crawl_run(fake_db, pipeline):
    summary = pipeline.ingest_crawl_run("pickles", [{"id": "9", "make": "2438", "model": "1"}])
    assert summary["source"] == "pickles"
    assert summary["new"] == 1
    assert fake_db.listings["pickles:9"].identity.model == "HILUX"


def test_run_verification(fake_db, engine_config, emitter):
    verifier = mock.Mock()
    verifier.verify_batch.return_value = [
        LifecycleCheckResult(candidate_id="c1", lifecycle_status=LifecycleStatus.SOLD, http_status=200, reason="pickles:sold_signal"),
    ]
    fake_db.verify_targets = [VerifyTarget(candidate_id="c1", source="pickles", url="https://www.pickles.com.au/item/1")]
    pipeline = OpportunityPipeline(db=fake_db, config=engine_config, cache=TTLCache(60), emitter=emitter, verifier=verifier)

    summary = pipeline.run_verification(limit=500, concurrency=99)

    assert summary["verified"] == 1
    assert summary["counts"] == {"sold": 1}
    assert len(fake_db.lifecycle_updates) == 1
    verifier.verify_batch.assert_called_once_with(fake_db.verify_targets, concurrency=12)


def test_sold_verdict_drops_listing_from_next_rebuild(stocked_db, engine_config, emitter):
    session = mock.Mock()
    session.get.return_value = mock.Mock(
        status_code=200,
        text="<html><body>This item has sold</body></html>",
        url="https://www.pickles.com.au/used/details/1001",
        history=[],
    )
    verifier = Verifier(config=engine_config, session=session, sleep=lambda seconds: None)
    pipeline = OpportunityPipeline(db=stocked_db, config=engine_config, cache=TTLCache(60), emitter=emitter, verifier=verifier)

    assert pipeline.rebuild_hunt("hunt-1")["BUY"] == 1
    stocked_db.verify_targets = [VerifyTarget(
        candidate_id="c1",
        source="pickles",
        url="https://www.pickles.com.au/used/details/1001",
        listing_id="pickles:1001",
    )]
    assert pipeline.run_verification()["counts"] == {"sold": 1}
    assert stocked_db.listings["pickles:1001"].lifecycle_status == LifecycleStatus.SOLD

    summary = pipeline.rebuild_hunt("hunt-1")
    assert summary["BUY"] == 0
    assert "pickles:1001" not in stored_candidates(stocked_db)


def test_ambiguous_verdict_leaves_listing_active(stocked_db, engine_config, emitter):
    verifier = mock.Mock()
    verifier.verify_batch.return_value = [LifecycleCheckResult(
        candidate_id="c1", lifecycle_status=LifecycleStatus.ACTIVE, http_status=503,
        reason="http_5xx_keep_status", ambiguous=True, listing_id="pickles:1001",
    )]
    stocked_db.verify_targets = [VerifyTarget(candidate_id="c1", source="pickles", url=None, listing_id="pickles:1001")]
    pipeline = OpportunityPipeline(db=stocked_db, config=engine_config, cache=TTLCache(60), emitter=emitter, verifier=verifier)

    pipeline.run_verification()
    assert pipeline.rebuild_hunt("hunt-1")["BUY"] == 1


def test_run_verification_with_empty_queue(fake_db, engine_config, emitter):
    verifier = mock.Mock()
    pipeline = OpportunityPipeline(db=fake_db, config=engine_config, cache=TTLCache(60), emitter=emitter, verifier=verifier)
    assert pipeline.run_verification()["verified"] == 0
    verifier.verify_batch.assert_not_called()


def test_refresh_fingerprints_and_matches(fake_db, pipeline, make_listing):
    fake_db.sales["acct-1"] = [
        {"make": "Toyota", "model": "Hilux", "year": 2020, "km": 40_000, "buy_price": 22_000, "sale_price": 27_000},
        {"make": "Toyota", "model": "Hilux", "year": 2021, "km": 44_000, "buy_price": 23_000, "sale_price": 26_500},
    ]
    listing = make_listing(variant=None, drivetrain=None)
    fake_db.listings[listing.listing_id] = listing

    assert pipeline.refresh_fingerprints("acct-1") == {"account_id": "acct-1", "fingerprints": 1}

    matches = pipeline.find_fingerprint_matches("acct-1")
    [rows] = matches.values()
    assert rows[0]["listing_id"] == "pickles:1001"
    assert rows[0]["km_score"] == 1.0
