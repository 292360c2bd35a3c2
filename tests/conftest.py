"""Shared fixtures: an in-memory store standing in for the Supabase gateway."""

import copy
from datetime import datetime, timedelta, timezone

import pytest

from opportunity_engine.config import EngineConfig, NotificationConfig
from opportunity_engine.errors import StoreError
from opportunity_engine.models import (
    CrawlRun,
    Drivetrain,
    Hunt,
    LifecycleStatus,
    ListingRecord,
    VehicleIdentity,
    WinnerFingerprint,
)
from opportunity_engine.notifications import NotificationEmitter

NOW = datetime.now(timezone.utc).replace(microsecond=0)


class FakeDatabase:
    """Implements the Database methods the engine calls, backed by dicts."""

    def __init__(self):
        self.listings: dict[str, ListingRecord] = {}
        self.hunts: dict[str, Hunt] = {}
        self.fingerprints: dict[str, list[WinnerFingerprint]] = {}
        self.sales: dict[str, list[dict]] = {}
        self.best_sales: dict[tuple, object] = {}
        self.candidates: dict[str, tuple[int, list]] = {}
        self.runs: list[CrawlRun] = []
        self.failed_runs: list[tuple[str, str]] = []
        self.events: list = []
        self.verify_targets: list = []
        self.lifecycle_updates: list = []
        self.scanned: list[str] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _call(self, operation: str):
        self.calls.append(operation)
        if operation in self.fail_on:
            raise StoreError(operation, ConnectionError("store unreachable"))

    # listings
    def upsert_listings(self, records):
        self._call("upsert_listings")
        for record in records:
            self.listings[record.listing_id] = copy.deepcopy(record)
        return len(records)

    def get_listings_for_source(self, source):
        self._call("get_listings_for_source")
        return [copy.deepcopy(listing) for listing in self.listings.values() if listing.source == source]

    def get_active_listings(self, make, model, sources=None):
        self._call("get_active_listings")
        return [
            copy.deepcopy(listing) for listing in self.listings.values()
            if listing.identity.make == make and listing.identity.model == model
            and listing.status.is_visible
            and listing.lifecycle_status == LifecycleStatus.ACTIVE
            and (not sources or listing.source in sources)
        ]

    # sales & fingerprints
    def get_sales(self, account_id):
        self._call("get_sales")
        return list(self.sales.get(account_id, []))

    def get_fingerprints(self, account_id, limit):
        self._call("get_fingerprints")
        fps = sorted(self.fingerprints.get(account_id, []), key=lambda fp: -fp.total_profit)
        return fps[:limit]

    def replace_fingerprints(self, account_id, fingerprints):
        self._call("replace_fingerprints")
        self.fingerprints[account_id] = list(fingerprints)
        return len(fingerprints)

    def get_best_sale(self, account_id, make, model):
        self._call("get_best_sale")
        return self.best_sales.get((account_id, make, model))

    def get_make_lookup(self):
        self._call("get_make_lookup")
        return {}

    def get_model_lookup(self):
        self._call("get_model_lookup")
        return {}

    # hunts & candidates
    def get_hunt(self, hunt_id):
        self._call("get_hunt")
        return self.hunts.get(hunt_id)

    def get_due_hunts(self, limit):
        self._call("get_due_hunts")
        hunts = sorted(self.hunts.values(), key=lambda h: -h.priority)
        return [h for h in hunts if h.is_due(NOW)][:limit]

    def get_hunt_accounts(self):
        self._call("get_hunt_accounts")
        return sorted({h.account_id for h in self.hunts.values() if h.status == "active"})

    def bump_criteria_version(self, hunt_id):
        self._call("bump_criteria_version")
        hunt = self.hunts[hunt_id]
        hunt.criteria_version += 1
        return hunt.criteria_version

    def mark_hunt_scanned(self, hunt_id):
        self._call("mark_hunt_scanned")
        self.scanned.append(hunt_id)

    def get_candidates(self, hunt_id):
        self._call("get_candidates")
        _, rows = self.candidates.get(hunt_id, (0, []))
        return {c.listing_id: c.decision for c in rows}

    def replace_candidates(self, hunt_id, criteria_version, candidates):
        self._call("replace_candidates")
        stored_version, _ = self.candidates.get(hunt_id, (0, []))
        if criteria_version >= stored_version:
            self.candidates[hunt_id] = (criteria_version, list(candidates))
        return len(candidates)

    # crawl runs
    def start_crawl_run(self, source):
        self._call("start_crawl_run")
        run = CrawlRun(run_id=f"run-{len(self.runs) + 1}", source=source, started_at=NOW)
        self.runs.append(run)
        return run

    def commit_presence(self, run_id, plan):
        self._call("commit_presence")
        for record in plan.upserts:
            self.listings[record.listing_id] = copy.deepcopy(record)
        for update in plan.streak_updates:
            listing = self.listings[update.listing_id]
            listing.missing_streak = update.missing_streak
            listing.status = update.status
        self.events.extend(plan.events)

    def fail_crawl_run(self, run_id, error):
        self._call("fail_crawl_run")
        self.failed_runs.append((run_id, error))

    # verification
    def get_verify_batch(self, limit):
        self._call("get_verify_batch")
        return list(self.verify_targets[:limit])

    def update_lifecycle(self, result):
        self._call("update_lifecycle")
        self.lifecycle_updates.append(result)
        if not result.ambiguous and result.listing_id in self.listings:
            self.listings[result.listing_id].lifecycle_status = result.lifecycle_status


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def silent_emitter():
    """Emitter with no sinks configured."""
    return NotificationEmitter(config=NotificationConfig(webhook_urls=[]))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_listing():
    def _make(
        listing_id="1001",
        source="pickles",
        make="TOYOTA",
        model="HILUX",
        variant="SR5",
        drivetrain=Drivetrain.FOUR_WD,
        year=2020,
        km=48_000,
        asking_price=22_000.0,
        location="Sydney NSW",
        first_seen_at=None,
        last_seen_at=None,
        **kwargs,
    ):
        return ListingRecord(
            source=source,
            source_listing_id=listing_id,
            url=kwargs.pop("url", f"https://www.{source}.com.au/used/details/{listing_id}"),
            identity=VehicleIdentity(
                make=make, model=model, variant=variant,
                drivetrain=drivetrain, year=year, km=km,
            ),
            asking_price=asking_price,
            location=location,
            first_seen_at=first_seen_at or NOW - timedelta(days=1),
            last_seen_at=last_seen_at or NOW - timedelta(hours=6),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_fingerprint():
    def _make(**kwargs):
        values = dict(
            make="TOYOTA",
            model="HILUX",
            variant="SR5",
            drivetrain=Drivetrain.FOUR_WD,
            year_min=2018,
            year_max=2022,
            avg_profit=4500.0,
            total_profit=54_000.0,
            avg_km=41_000.0,
            median_km=40_000.0,
            times_sold=12,
            last_sale_price=28_000.0,
            median_profit=4500.0,
            median_sale_price=27_500.0,
            median_days_to_clear=9.0,
            win_rate=0.9,
            account_id="acct-1",
        )
        values.update(kwargs)
        return WinnerFingerprint(**values)
    return _make


@pytest.fixture
def make_hunt():
    def _make(**kwargs):
        values = dict(
            hunt_id="hunt-1",
            account_id="acct-1",
            make="TOYOTA",
            model="HILUX",
            variant_family="SR5",
            drivetrain=Drivetrain.FOUR_WD,
            year_min=2019,
            year_max=2021,
            km_min=None,
            km_max=120_000,
            sources_enabled=["pickles", "carsales"],
            criteria_version=1,
        )
        values.update(kwargs)
        return Hunt(**values)
    return _make
