"""
Supabase database integration module.

Handles all datastore operations the engine needs:
- Upserting normalized listings by natural key
- Reading sales history, fingerprints and best-sale anchors
- Reading hunts and replacing their candidate sets
- Committing crawl-run presence transitions atomically
- Pulling the verification queue and writing lifecycle results

Tables / procedures required:
- listings: Normalized listings (unique on source, source_listing_id)
- sales_history: Completed sales per account
- winner_fingerprints: Aggregated fingerprints per account
- hunts: Dealer search criteria
- hunt_candidates: Ranked candidate set per hunt and criteria_version
- crawl_runs: One row per crawl run
- presence_events: Append-only presence audit trail
- dms_id_lookup: Optional DMS make/model id tables
- rpc_replace_hunt_candidates: Atomic replace, latest criteria_version wins
- rpc_commit_presence_run: Streaks, events and run completion in one transaction
- rpc_get_verify_batch: Candidates ordered by staleness of last check
- rpc_bump_hunt_criteria_version: Increment and return criteria_version
"""

import logging
from typing import Any, Callable, Optional
from supabase import create_client, Client

from .config import get_supabase_config
from .errors import ConfigurationError, StoreError
from .models import (
    BestSale,
    CrawlRun,
    CrawlRunStatus,
    Decision,
    Hunt,
    LifecycleCheckResult,
    LifecycleStatus,
    ListingRecord,
    ListingStatus,
    MatchCandidate,
    VerifyTarget,
    WinnerFingerprint,
    utcnow,
)

logger = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 50
VISIBLE_STATUSES = [s.value for s in ListingStatus if s.is_visible]


class Database:
    """
    Supabase database client wrapper.

    Every call that touches the network is wrapped so that a connectivity
    or write failure surfaces as StoreError.
    """

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        if client is not None:
            self._client = client
            return
        config = get_supabase_config()
        if not config.url or not config.key:
            raise ConfigurationError("Supabase URL and key must be set in environment variables")
        self._client = create_client(config.url, config.key)

    @property
    def client(self) -> Client:
        """Get the Supabase client."""
        return self._client

    def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Store operation {operation} failed: {e}")
            raise StoreError(operation, e) from e

    # =========================================================================
    # LISTING OPERATIONS
    # =========================================================================

    def upsert_listings(self, records: list[ListingRecord]) -> int:
        """Insert or update listings keyed by (source, source_listing_id)."""
        rows = [r.to_dict() for r in records]
        for i in range(0, len(rows), UPSERT_CHUNK_SIZE):
            chunk = rows[i:i + UPSERT_CHUNK_SIZE]
            self._run(
                "upsert_listings",
                lambda: self._client.table("listings")
                .upsert(chunk, on_conflict="source,source_listing_id")
                .execute(),
            )
        logger.info(f"Upserted {len(rows)} listings")
        return len(rows)

    def get_listings_for_source(self, source: str) -> list[ListingRecord]:
        """All known listings for a source, delisted included."""
        result = self._run(
            "get_listings_for_source",
            lambda: self._client.table("listings").select("*").eq("source", source).execute(),
        )
        return [ListingRecord.from_dict(row) for row in result.data]

    def get_active_listings(self, make: str, model: str, sources: Optional[list[str]] = None) -> list[ListingRecord]:
        """Listings still present (active or 1-strike pending) and not verified sold or expired."""
        def query():
            q = (
                self._client.table("listings")
                .select("*")
                .eq("make", make)
                .eq("model", model)
                .in_("status", VISIBLE_STATUSES)
                .eq("lifecycle_status", LifecycleStatus.ACTIVE.value)
            )
            if sources:
                q = q.in_("source", sources)
            return q.execute()

        result = self._run("get_active_listings", query)
        return [ListingRecord.from_dict(row) for row in result.data]

    # =========================================================================
    # SALES & FINGERPRINT OPERATIONS
    # =========================================================================

    def get_sales(self, account_id: str) -> list[dict]:
        """Raw completed-sale rows for an account."""
        result = self._run(
            "get_sales",
            lambda: self._client.table("sales_history").select("*").eq("account_id", account_id).execute(),
        )
        return result.data

    def get_fingerprints(self, account_id: str, limit: int) -> list[WinnerFingerprint]:
        """Fingerprints for an account, highest total profit first."""
        result = self._run(
            "get_fingerprints",
            lambda: self._client.table("winner_fingerprints")
            .select("*")
            .eq("account_id", account_id)
            .order("total_profit", desc=True)
            .limit(limit)
            .execute(),
        )
        fingerprints = []
        for row in result.data:
            try:
                fingerprints.append(WinnerFingerprint.from_dict(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid fingerprint row {row.get('id')}: {e}")
        return fingerprints

    def replace_fingerprints(self, account_id: str, fingerprints: list[WinnerFingerprint]) -> int:
        """Replace an account's fingerprint rows wholesale."""
        rows = []
        for fp in fingerprints:
            row = fp.to_dict()
            row["account_id"] = account_id
            rows.append(row)
        self._run(
            "replace_fingerprints",
            lambda: self._client.rpc(
                "rpc_replace_fingerprints", {"p_account_id": account_id, "p_rows": rows}
            ).execute(),
        )
        logger.info(f"Replaced {len(rows)} fingerprints for account {account_id}")
        return len(rows)

    def get_best_sale(self, account_id: str, make: str, model: str) -> Optional[BestSale]:
        """Single highest-profit sale for a make/model, or None."""
        result = self._run(
            "get_best_sale",
            lambda: self._client.rpc(
                "rpc_best_historical_sale",
                {"p_account_id": account_id, "p_make": make, "p_model": model},
            ).execute(),
        )
        if not result.data:
            return None
        return BestSale.from_dict(result.data[0])

    def get_make_lookup(self) -> dict[str, str]:
        """DMS make id -> make label. Empty when the store has no table rows."""
        result = self._run(
            "get_make_lookup",
            lambda: self._client.table("dms_id_lookup").select("*").eq("kind", "make").execute(),
        )
        return {str(row["code"]): row["label"].upper() for row in result.data}

    def get_model_lookup(self) -> dict[tuple[str, str], str]:
        """(MAKE, model id) -> model label. Rows without a make are skipped."""
        result = self._run(
            "get_model_lookup",
            lambda: self._client.table("dms_id_lookup").select("*").eq("kind", "model").execute(),
        )
        return {
            (row["make"].upper(), str(row["code"])): row["label"].upper()
            for row in result.data
            if row.get("make")
        }

    # =========================================================================
    # HUNT & CANDIDATE OPERATIONS
    # =========================================================================

    def get_hunt(self, hunt_id: str) -> Optional[Hunt]:
        result = self._run(
            "get_hunt",
            lambda: self._client.table("hunts").select("*").eq("id", hunt_id).execute(),
        )
        return Hunt.from_dict(result.data[0]) if result.data else None

    def get_due_hunts(self, limit: int) -> list[Hunt]:
        """Active hunts whose scan interval has elapsed, highest priority first."""
        result = self._run(
            "get_due_hunts",
            lambda: self._client.table("hunts")
            .select("*")
            .eq("status", "active")
            .order("priority", desc=True)
            .execute(),
        )
        now = utcnow()
        hunts = [Hunt.from_dict(row) for row in result.data]
        return [h for h in hunts if h.is_due(now)][:limit]

    def get_hunt_accounts(self) -> list[str]:
        """Distinct account ids with at least one active hunt."""
        result = self._run(
            "get_hunt_accounts",
            lambda: self._client.table("hunts").select("account_id").eq("status", "active").execute(),
        )
        return sorted({row["account_id"] for row in result.data if row.get("account_id")})

    def bump_criteria_version(self, hunt_id: str) -> int:
        """Atomically increment and return the hunt's criteria_version."""
        result = self._run(
            "bump_criteria_version",
            lambda: self._client.rpc("rpc_bump_hunt_criteria_version", {"p_hunt_id": hunt_id}).execute(),
        )
        return int(result.data)

    def mark_hunt_scanned(self, hunt_id: str) -> None:
        self._run(
            "mark_hunt_scanned",
            lambda: self._client.table("hunts")
            .update({"last_scan_at": utcnow().isoformat()})
            .eq("id", hunt_id)
            .execute(),
        )

    def get_candidates(self, hunt_id: str) -> dict[str, Decision]:
        """Current listing_id -> decision for a hunt's latest candidate set."""
        result = self._run(
            "get_candidates",
            lambda: self._client.table("hunt_candidates")
            .select("listing_id, decision")
            .eq("hunt_id", hunt_id)
            .execute(),
        )
        return {row["listing_id"]: Decision(row["decision"]) for row in result.data}

    def replace_candidates(self, hunt_id: str, criteria_version: int, candidates: list[MatchCandidate]) -> int:
        """
        Replace a hunt's candidate set wholesale.

        The procedure drops the write if a newer criteria_version is already
        stored, so the latest rebuild always wins.
        """
        rows = [c.to_dict() for c in candidates]
        self._run(
            "replace_candidates",
            lambda: self._client.rpc(
                "rpc_replace_hunt_candidates",
                {"p_hunt_id": hunt_id, "p_criteria_version": criteria_version, "p_rows": rows},
            ).execute(),
        )
        logger.info(f"Replaced candidates for hunt {hunt_id} v{criteria_version}: {len(rows)} rows")
        return len(rows)

    # =========================================================================
    # CRAWL RUN & PRESENCE OPERATIONS
    # =========================================================================

    def start_crawl_run(self, source: str) -> CrawlRun:
        started_at = utcnow()
        result = self._run(
            "start_crawl_run",
            lambda: self._client.table("crawl_runs")
            .insert({
                "source": source,
                "status": CrawlRunStatus.RUNNING.value,
                "started_at": started_at.isoformat(),
            })
            .execute(),
        )
        run_id = str(result.data[0]["id"])
        logger.info(f"Started crawl run {run_id} for {source}")
        return CrawlRun(run_id=run_id, source=source, started_at=started_at)

    def commit_presence(self, run_id: str, plan) -> None:
        """
        Write a PresencePlan in one transaction.

        Listing upserts, streak/status updates, presence events and the run
        completion record land together or not at all.
        """
        self._run(
            "commit_presence",
            lambda: self._client.rpc("rpc_commit_presence_run", plan.to_rpc_payload(run_id)).execute(),
        )
        logger.info(f"Committed presence for run {run_id}: {plan.summary.to_dict()}")

    def fail_crawl_run(self, run_id: str, error: str) -> None:
        """Record a failed run. Touches no listing."""
        self._run(
            "fail_crawl_run",
            lambda: self._client.table("crawl_runs")
            .update({
                "status": CrawlRunStatus.FAILED.value,
                "completed_at": utcnow().isoformat(),
                "error": error,
            })
            .eq("id", run_id)
            .execute(),
        )
        logger.warning(f"Crawl run {run_id} marked failed: {error}")

    # =========================================================================
    # VERIFICATION OPERATIONS
    # =========================================================================

    def get_verify_batch(self, limit: int) -> list[VerifyTarget]:
        """Candidates due for a lifecycle check, stalest first."""
        result = self._run(
            "get_verify_batch",
            lambda: self._client.rpc("rpc_get_verify_batch", {"p_limit": limit}).execute(),
        )
        return [VerifyTarget.from_dict(row) for row in (result.data or [])]

    def update_lifecycle(self, result: LifecycleCheckResult) -> None:
        """
        Record a check on the candidate row.

        A definite verdict is also written to the listing itself, so hunt
        rebuilds stop producing candidates for sold or expired listings.
        Ambiguous results never touch the listing.
        """
        updates = {
            "lifecycle_status": result.lifecycle_status.value,
            "last_lifecycle_check_at": result.checked_at.isoformat(),
            "lifecycle_http_status": result.http_status,
            "lifecycle_reason": result.reason,
            "lifecycle_error": result.error,
        }
        if result.lifecycle_status != LifecycleStatus.ACTIVE and not result.ambiguous:
            updates["lifecycle_changed_at"] = result.checked_at.isoformat()
        self._run(
            "update_lifecycle",
            lambda: self._client.table("hunt_candidates")
            .update(updates)
            .eq("id", result.candidate_id)
            .execute(),
        )
        if result.ambiguous or not result.listing_id:
            return
        self._run(
            "update_listing_lifecycle",
            lambda: self._client.table("listings")
            .update({"lifecycle_status": result.lifecycle_status.value})
            .eq("listing_id", result.listing_id)
            .execute(),
        )
        if result.lifecycle_status != LifecycleStatus.ACTIVE:
            logger.info(f"Listing {result.listing_id} marked {result.lifecycle_status.value} ({result.reason})")


# Global database instance (lazy loaded)
_db: Optional[Database] = None


def get_db() -> Database:
    """Get database instance (singleton)."""
    global _db
    if _db is None:
        _db = Database()
    return _db
