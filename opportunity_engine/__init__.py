"""
Opportunity Engine - Listing Lifecycle & Opportunity Matching

Takes raw scraped vehicle listings, tracks their presence across crawl
runs, matches them against a dealer's winner fingerprints and hunts,
scores the profit opportunity and classifies each into
BUY / WATCH / UNVERIFIED / IGNORE.

Modules:
- config: Configuration and environment variables
- errors: Exception types
- cache: Explicit TTL cache for remote lookups
- models: Canonical data models (dataclasses)
- db: Supabase integration for storage
- normalization: Map raw listing fields to a comparable vehicle identity
- fingerprints: Winner fingerprint aggregation and access
- matching: Hard filters, km proximity and DNA scoring
- scoring: Opportunity score, confidence label and gap math
- classification: BUY/WATCH/UNVERIFIED/IGNORE decisions and ranking
- presence: Crawl-run presence state machine
- verification: Re-fetch source pages to confirm lifecycle status
- notifications: BUY/WATCH transition webhooks
- pipeline: Main orchestration
- scheduler: APScheduler setup for batch jobs
- trigger_server: On-demand trigger server
"""

__version__ = "0.1.0"

# Convenient imports
from .models import (
    VehicleIdentity,
    ListingRecord,
    WinnerFingerprint,
    Hunt,
    MatchCandidate,
    PresenceEvent,
    LifecycleCheckResult,
    Decision,
    Drivetrain,
    ListingStatus,
    LifecycleStatus,
)
from .errors import EngineError, StoreError, ConfigurationError, HuntNotFoundError
from .cache import TTLCache
from .normalization import normalize, normalize_listings, IdentityNormalizer, ListingNormalizer
from .fingerprints import aggregate_fingerprints, FingerprintStore
from .matching import CandidateMatcher, km_score
from .scoring import OpportunityScorer, aggregate_score, compute_gap, confidence_label
from .classification import DecisionClassifier, rank_candidates
from .presence import plan_presence, PresenceTracker
from .verification import Verifier, RetryPolicy, FetchResult, FetchStatus
from .pipeline import (
    OpportunityPipeline,
    rebuild_hunt,
    run_due_hunts,
    ingest_crawl_run,
    run_verification,
    refresh_fingerprints,
)

__all__ = [
    # Models
    "VehicleIdentity",
    "ListingRecord",
    "WinnerFingerprint",
    "Hunt",
    "MatchCandidate",
    "PresenceEvent",
    "LifecycleCheckResult",
    "Decision",
    "Drivetrain",
    "ListingStatus",
    "LifecycleStatus",
    # Errors
    "EngineError",
    "StoreError",
    "ConfigurationError",
    "HuntNotFoundError",
    # Cache
    "TTLCache",
    # Normalization
    "normalize",
    "normalize_listings",
    "IdentityNormalizer",
    "ListingNormalizer",
    # Fingerprints
    "aggregate_fingerprints",
    "FingerprintStore",
    # Matching & scoring
    "CandidateMatcher",
    "km_score",
    "OpportunityScorer",
    "aggregate_score",
    "compute_gap",
    "confidence_label",
    # Classification
    "DecisionClassifier",
    "rank_candidates",
    # Presence & verification
    "plan_presence",
    "PresenceTracker",
    "Verifier",
    "RetryPolicy",
    "FetchResult",
    "FetchStatus",
    # Pipeline
    "OpportunityPipeline",
    "rebuild_hunt",
    "run_due_hunts",
    "ingest_crawl_run",
    "run_verification",
    "refresh_fingerprints",
]
