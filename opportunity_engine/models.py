"""
Data models for the opportunity engine.

Defines the canonical dataclasses every raw source record normalizes into,
plus the derived match/presence/verification records the engine writes.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Optional
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO timestamp from the store; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _region(value) -> Optional[str]:
    # "ALL" rows are the all-region fallback
    region = str(value or "").upper().strip()
    return region if region and region != "ALL" else None


class Drivetrain(str, Enum):
    """Normalized drivetrain buckets."""
    TWO_WD = "2WD"
    FWD = "FWD"
    RWD = "RWD"
    AWD = "AWD"
    FOUR_WD = "4WD"
    UNKNOWN = "UNKNOWN"

    @property
    def is_low_capability(self) -> bool:
        return self in (Drivetrain.TWO_WD, Drivetrain.FWD, Drivetrain.RWD)

    @property
    def is_high_capability(self) -> bool:
        return self in (Drivetrain.AWD, Drivetrain.FOUR_WD)


class ListingStatus(str, Enum):
    """Presence state of a listing across crawl runs."""
    ACTIVE = "active"
    MISSING_PENDING = "missing_pending"       # 1 strike
    MISSING_CONFIRMED = "missing_confirmed"   # threshold reached, about to delist
    DELISTED = "delisted"

    @property
    def is_visible(self) -> bool:
        """Included in active candidate sets."""
        return self in (ListingStatus.ACTIVE, ListingStatus.MISSING_PENDING)


class PresenceEventType(str, Enum):
    FIRST_SEEN = "FIRST_SEEN"
    WENT_MISSING = "WENT_MISSING"
    RETURNED = "RETURNED"


class LifecycleStatus(str, Enum):
    """Externally verified state of a listing page."""
    ACTIVE = "active"
    SOLD = "sold"
    EXPIRED = "expired"


class Decision(str, Enum):
    BUY = "BUY"
    WATCH = "WATCH"
    UNVERIFIED = "UNVERIFIED"
    IGNORE = "IGNORE"

    @property
    def sort_order(self) -> int:
        return _DECISION_ORDER[self]


_DECISION_ORDER = {
    Decision.BUY: 1,
    Decision.WATCH: 2,
    Decision.UNVERIFIED: 3,
    Decision.IGNORE: 4,
}


class ConfidenceLabel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CrawlRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# IDENTITY & LISTINGS
# =============================================================================

@dataclass(frozen=True)
class VehicleIdentity:
    """
    Comparable vehicle identity.

    Strings are upper-cased and trimmed. None means unknown and is never
    replaced by a guessed value.
    """
    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    drivetrain: Optional[Drivetrain] = None
    year: Optional[int] = None
    km: Optional[int] = None

    def summary(self) -> str:
        parts = [str(self.year) if self.year else None, self.make, self.model, self.variant]
        return " ".join(p for p in parts if p) or "Unknown vehicle"

    def to_dict(self) -> dict:
        return {
            "make": self.make,
            "model": self.model,
            "variant": self.variant,
            "drivetrain": self.drivetrain.value if self.drivetrain else None,
            "year": self.year,
            "km": self.km,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VehicleIdentity":
        return cls(
            make=data.get("make"),
            model=data.get("model"),
            variant=data.get("variant"),
            drivetrain=Drivetrain(data["drivetrain"]) if data.get("drivetrain") else None,
            year=data.get("year"),
            km=data.get("km"),
        )


@dataclass
class ListingRecord:
    """
    A scraped listing, upserted by (source, source_listing_id).

    `status` and `missing_streak` belong to the presence tracker;
    `lifecycle_status` belongs to the verifier.
    """
    source: str
    source_listing_id: str
    url: Optional[str] = None
    identity: VehicleIdentity = field(default_factory=VehicleIdentity)
    asking_price: Optional[float] = None
    location: Optional[str] = None
    first_seen_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    status: ListingStatus = ListingStatus.ACTIVE
    missing_streak: int = 0
    lifecycle_status: LifecycleStatus = LifecycleStatus.ACTIVE
    # Blocked or partial scrapes need a human to confirm identity
    requires_identity_confirmation: bool = False
    # Set by an operator; excluded listings are kept but never actionable
    excluded_reason: Optional[str] = None

    @property
    def listing_id(self) -> str:
        """Natural key as a single string."""
        return f"{self.source}:{self.source_listing_id}"

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return max(0.0, (now - self.first_seen_at).total_seconds() / 86400)

    def to_dict(self) -> dict:
        data = {
            "listing_id": self.listing_id,
            "source": self.source,
            "source_listing_id": self.source_listing_id,
            "url": self.url,
            "asking_price": self.asking_price,
            "location": self.location,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
            "status": self.status.value,
            "missing_streak": self.missing_streak,
            "lifecycle_status": self.lifecycle_status.value,
            "requires_identity_confirmation": self.requires_identity_confirmation,
            "excluded_reason": self.excluded_reason,
        }
        data.update(self.identity.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ListingRecord":
        """Create from a store row (already normalized)."""
        return cls(
            source=data["source"],
            source_listing_id=str(data["source_listing_id"]),
            url=data.get("url"),
            identity=VehicleIdentity.from_dict(data),
            asking_price=data.get("asking_price"),
            location=data.get("location"),
            first_seen_at=parse_timestamp(data.get("first_seen_at")) or utcnow(),
            last_seen_at=parse_timestamp(data.get("last_seen_at")) or utcnow(),
            status=ListingStatus(data.get("status", "active")),
            missing_streak=int(data.get("missing_streak") or 0),
            lifecycle_status=LifecycleStatus(data.get("lifecycle_status") or "active"),
            requires_identity_confirmation=bool(data.get("requires_identity_confirmation", False)),
            excluded_reason=data.get("excluded_reason") or None,
        )


# =============================================================================
# SALES HISTORY & FINGERPRINTS
# =============================================================================

@dataclass
class SaleRecord:
    """One completed sale from the sales-history store."""
    identity: VehicleIdentity
    buy_price: Optional[float] = None
    sale_price: Optional[float] = None
    sold_at: Optional[datetime] = None
    days_to_clear: Optional[int] = None
    sale_id: Optional[str] = None

    @property
    def profit(self) -> Optional[float]:
        if self.buy_price is None or self.sale_price is None:
            return None
        return self.sale_price - self.buy_price


@dataclass
class WinnerFingerprint:
    """
    A repeatable profitable pattern for an account.

    Invariants: year_min <= year_max when both present; times_sold >= 1.
    """
    make: str
    model: str
    variant: Optional[str] = None
    drivetrain: Optional[Drivetrain] = None
    year_min: Optional[int] = None
    year_max: Optional[int] = None
    avg_profit: Optional[float] = None
    total_profit: float = 0.0
    avg_km: Optional[float] = None
    median_km: Optional[float] = None
    times_sold: int = 1
    last_sale_price: Optional[float] = None
    last_sale_date: Optional[datetime] = None
    rank: Optional[int] = None
    # Scorer inputs
    median_profit: Optional[float] = None
    median_sale_price: Optional[float] = None
    median_days_to_clear: Optional[float] = None
    win_rate: Optional[float] = None
    account_id: Optional[str] = None
    # Region the stats were drawn from; None covers all regions
    region: Optional[str] = None

    def __post_init__(self):
        if self.times_sold < 1:
            raise ValueError("times_sold must be >= 1")
        if self.year_min is not None and self.year_max is not None and self.year_min > self.year_max:
            raise ValueError(f"year_min {self.year_min} > year_max {self.year_max}")

    @property
    def fingerprint_key(self) -> str:
        parts = [
            self.make,
            self.model,
            self.variant or "*",
            self.drivetrain.value if self.drivetrain else "*",
            f"{self.year_min or '*'}-{self.year_max or '*'}",
        ]
        if self.region:
            parts.append(self.region)
        return "|".join(parts)

    @property
    def reference_km(self) -> Optional[float]:
        """Median km when known, else average km."""
        return self.median_km if self.median_km is not None else self.avg_km

    def to_dict(self) -> dict:
        data = asdict(self)
        data["drivetrain"] = self.drivetrain.value if self.drivetrain else None
        data["last_sale_date"] = _iso(self.last_sale_date)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WinnerFingerprint":
        return cls(
            make=data["make"],
            model=data["model"],
            variant=data.get("variant"),
            drivetrain=Drivetrain(data["drivetrain"]) if data.get("drivetrain") else None,
            year_min=data.get("year_min"),
            year_max=data.get("year_max"),
            avg_profit=data.get("avg_profit"),
            total_profit=float(data.get("total_profit") or 0.0),
            avg_km=data.get("avg_km"),
            median_km=data.get("median_km"),
            times_sold=int(data.get("times_sold") or 1),
            last_sale_price=data.get("last_sale_price"),
            last_sale_date=parse_timestamp(data.get("last_sale_date")),
            rank=data.get("rank"),
            median_profit=data.get("median_profit"),
            median_sale_price=data.get("median_sale_price"),
            median_days_to_clear=data.get("median_days_to_clear"),
            win_rate=data.get("win_rate"),
            account_id=data.get("account_id"),
            region=_region(data.get("region") or data.get("region_id")),
        )


@dataclass
class BestSale:
    """The single highest-profit historical sale for a make/model."""
    make: str
    model: str
    sale_price: float
    buy_price: float
    profit: float
    variant: Optional[str] = None
    year: Optional[int] = None
    km: Optional[int] = None
    sold_at: Optional[datetime] = None
    sale_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BestSale":
        return cls(
            make=data["make"],
            model=data["model"],
            sale_price=float(data["sale_price"]),
            buy_price=float(data["buy_price"]),
            profit=float(data.get("profit", float(data["sale_price"]) - float(data["buy_price"]))),
            variant=data.get("variant"),
            year=data.get("year"),
            km=data.get("km"),
            sold_at=parse_timestamp(data.get("sold_at")),
            sale_id=data.get("id") or data.get("sale_id"),
        )


# =============================================================================
# HUNTS & CANDIDATES
# =============================================================================

def _hunt_drivetrain(value) -> Optional[Drivetrain]:
    """Dealer-entered drivetrain text ("4x4", "awd") as a requirement; unrecognized means any."""
    from .normalization import IdentityNormalizer

    drivetrain = IdentityNormalizer().normalize_drivetrain(value)
    return drivetrain if drivetrain != Drivetrain.UNKNOWN else None


@dataclass
class Hunt:
    """Dealer-authored standing search criteria."""
    hunt_id: str
    account_id: str
    make: str
    model: str
    variant_family: Optional[str] = None
    drivetrain: Optional[Drivetrain] = None
    year_min: Optional[int] = None
    year_max: Optional[int] = None
    km_min: Optional[int] = None
    km_max: Optional[int] = None
    sources_enabled: list[str] = field(default_factory=list)
    scan_interval_minutes: int = 60
    status: str = "active"
    criteria_version: int = 1
    proven_exit_value: Optional[float] = None
    last_scan_at: Optional[datetime] = None
    priority: int = 0
    # Per-hunt overrides of DecisionPolicy fields
    policy_overrides: dict = field(default_factory=dict)
    # Listings the dealer has dismissed for this hunt
    excluded_listing_ids: list[str] = field(default_factory=list)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.status != "active":
            return False
        if self.last_scan_at is None:
            return True
        now = now or utcnow()
        return (now - self.last_scan_at).total_seconds() >= self.scan_interval_minutes * 60

    @classmethod
    def from_dict(cls, data: dict) -> "Hunt":
        return cls(
            hunt_id=data.get("hunt_id") or data["id"],
            account_id=data.get("account_id") or data.get("dealer_id") or "",
            make=(data.get("make") or "").upper().strip(),
            model=(data.get("model") or "").upper().strip(),
            variant_family=(data.get("variant_family") or "").upper().strip() or None,
            drivetrain=_hunt_drivetrain(data.get("drivetrain")),
            year_min=data.get("year_min"),
            year_max=data.get("year_max"),
            km_min=data.get("km_min"),
            km_max=data.get("km_max"),
            sources_enabled=[s.lower() for s in (data.get("sources_enabled") or [])],
            scan_interval_minutes=int(data.get("scan_interval_minutes") or 60),
            status=data.get("status", "active"),
            criteria_version=int(data.get("criteria_version") or 1),
            proven_exit_value=data.get("proven_exit_value"),
            last_scan_at=parse_timestamp(data.get("last_scan_at")),
            priority=int(data.get("priority") or 0),
            policy_overrides=data.get("policy_overrides") or {},
            excluded_listing_ids=[str(i) for i in (data.get("excluded_listing_ids") or [])],
        )


@dataclass
class MatchCandidate:
    """
    A scored, decision-tagged pairing of one listing against one hunt.

    Recomputed whenever a hunt's candidate set is rebuilt; never edited.
    """
    listing_id: str
    hunt_id: str
    source: str
    asking_price: Optional[float]
    first_seen_at: datetime
    url: Optional[str] = None
    dna_score: float = 0.0
    price_score: float = 0.0
    final_score: float = 0.0
    decision: Decision = Decision.IGNORE
    confidence: ConfidenceLabel = ConfidenceLabel.LOW
    sample_size: int = 0
    proven_exit_value: Optional[float] = None
    gap_dollars: Optional[float] = None
    gap_pct: Optional[float] = None
    listing_age_days: float = 0.0
    reasons: list[str] = field(default_factory=list)
    rank_position: Optional[int] = None
    is_cheapest: bool = False
    criteria_version: int = 1
    fingerprint_key: Optional[str] = None
    # Inputs that pin the decision
    rejection_reason: Optional[str] = None
    excluded: bool = False
    requires_identity_confirmation: bool = False
    fast_clearance: bool = False
    lifecycle_status: LifecycleStatus = LifecycleStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "hunt_id": self.hunt_id,
            "source": self.source,
            "asking_price": self.asking_price,
            "first_seen_at": _iso(self.first_seen_at),
            "url": self.url,
            "dna_score": self.dna_score,
            "price_score": self.price_score,
            "final_score": self.final_score,
            "decision": self.decision.value,
            "confidence": self.confidence.value,
            "sample_size": self.sample_size,
            "proven_exit_value": self.proven_exit_value,
            "gap_dollars": self.gap_dollars,
            "gap_pct": self.gap_pct,
            "reasons": list(self.reasons),
            "rank_position": self.rank_position,
            "is_cheapest": self.is_cheapest,
            "criteria_version": self.criteria_version,
            "fingerprint_key": self.fingerprint_key,
            "lifecycle_status": self.lifecycle_status.value,
            "excluded": self.excluded,
        }


# =============================================================================
# PRESENCE & VERIFICATION
# =============================================================================

@dataclass
class CrawlRun:
    """One crawl run for one source."""
    run_id: str
    source: str
    started_at: datetime = field(default_factory=utcnow)
    status: CrawlRunStatus = CrawlRunStatus.RUNNING
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PresenceEvent:
    """Append-only audit record of a presence transition."""
    listing_id: str
    run_id: str
    event_type: PresenceEventType
    occurred_at: datetime
    previous_status: Optional[ListingStatus] = None
    new_status: Optional[ListingStatus] = None

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "run_id": self.run_id,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
        }


@dataclass
class VerifyTarget:
    """A candidate pulled from the verification queue."""
    candidate_id: str
    source: Optional[str]
    url: Optional[str]
    lifecycle_status: LifecycleStatus = LifecycleStatus.ACTIVE
    last_checked_at: Optional[datetime] = None
    # Natural key of the listing behind the candidate
    listing_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "VerifyTarget":
        return cls(
            candidate_id=str(data.get("candidate_id") or data["id"]),
            source=data.get("source_name") or data.get("source"),
            url=data.get("source_url") or data.get("url"),
            lifecycle_status=LifecycleStatus(data.get("lifecycle_status") or "active"),
            last_checked_at=parse_timestamp(data.get("last_lifecycle_check_at")),
            listing_id=data.get("listing_id"),
        )


@dataclass
class LifecycleCheckResult:
    """Outcome of one verification fetch."""
    candidate_id: str
    lifecycle_status: LifecycleStatus
    http_status: Optional[int]
    reason: str
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)
    # True when the fetch could not tell and the prior status was kept
    ambiguous: bool = False
    listing_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "candidate_id": self.candidate_id,
            "listing_id": self.listing_id,
            "lifecycle_status": self.lifecycle_status.value,
            "http_status": self.http_status,
            "reason": self.reason,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }
