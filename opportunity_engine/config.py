"""
Configuration module for the opportunity engine.

Loads environment variables and provides configuration constants.
All sensitive values should be in .env file (never commit to git).
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _clamp_int(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class SupabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # Service role key for server-side operations

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", os.getenv("SUPABASE_KEY", "")),
        )


@dataclass
class DecisionPolicy:
    """
    Product policy separating BUY from WATCH.

    These are business thresholds, not derived math. A hunt can override
    any of them (see Hunt.policy_overrides).
    """
    min_gap_abs_buy: float = 3000.0
    min_gap_pct_buy: float = 10.0
    min_gap_abs_watch: float = 1000.0
    min_gap_pct_watch: float = 3.0
    max_listing_age_days_buy: int = 7
    max_listing_age_days_watch: int = 30
    min_buy_final_score: float = 7.0
    min_watch_final_score: float = 5.0

    def with_overrides(self, overrides: Optional[dict]) -> "DecisionPolicy":
        """Return a copy with any non-null overrides applied."""
        if not overrides:
            return self
        values = dict(self.__dict__)
        for name, value in overrides.items():
            if name in values and value is not None:
                values[name] = type(values[name])(value)
        return DecisionPolicy(**values)

    @classmethod
    def from_env(cls) -> "DecisionPolicy":
        return cls(
            min_gap_abs_buy=_env_float("MIN_GAP_ABS_BUY", 3000.0),
            min_gap_pct_buy=_env_float("MIN_GAP_PCT_BUY", 10.0),
            min_gap_abs_watch=_env_float("MIN_GAP_ABS_WATCH", 1000.0),
            min_gap_pct_watch=_env_float("MIN_GAP_PCT_WATCH", 3.0),
            max_listing_age_days_buy=_env_int("MAX_LISTING_AGE_DAYS_BUY", 7),
            max_listing_age_days_watch=_env_int("MAX_LISTING_AGE_DAYS_WATCH", 30),
            min_buy_final_score=_env_float("MIN_BUY_FINAL_SCORE", 7.0),
            min_watch_final_score=_env_float("MIN_WATCH_FINAL_SCORE", 5.0),
        )


@dataclass
class EngineConfig:
    """Main engine configuration."""
    # Opportunity scoring targets
    gp_target: float = 4000.0
    exit_target_days: int = 21

    # Matching cost bounds
    fingerprint_cap: int = 20
    matches_per_fingerprint: int = 3
    aggregate_top_n: int = 10

    # Presence tracking
    missing_threshold: int = 2
    stale_days: float = 3.0
    circuit_breaker_min_active: int = 100
    circuit_breaker_min_seen_pct: float = 0.30

    # Verification
    verify_batch_limit: int = 50
    verify_concurrency: int = 6
    verify_max_attempts: int = 3
    verify_backoff_seconds: float = 0.35
    request_timeout: int = 30

    # Remote lookup cache lifetime
    cache_ttl_seconds: float = 300.0

    # Scheduled hunt scans
    due_hunt_limit: int = 20

    policy: DecisionPolicy = field(default_factory=DecisionPolicy)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            gp_target=_env_float("GP_TARGET", 4000.0),
            exit_target_days=_env_int("EXIT_TARGET_DAYS", 21),
            fingerprint_cap=_env_int("FINGERPRINT_CAP", 20),
            matches_per_fingerprint=_env_int("MATCHES_PER_FINGERPRINT", 3),
            aggregate_top_n=_env_int("AGGREGATE_TOP_N", 10),
            missing_threshold=_env_int("MISSING_THRESHOLD", 2),
            stale_days=_env_float("STALE_DAYS", 3.0),
            circuit_breaker_min_active=_env_int("CIRCUIT_BREAKER_MIN_ACTIVE", 100),
            circuit_breaker_min_seen_pct=_env_float("CIRCUIT_BREAKER_MIN_SEEN_PCT", 0.30),
            verify_batch_limit=_clamp_int(_env_int("VERIFY_BATCH_LIMIT", 50), 1, 200),
            verify_concurrency=_clamp_int(_env_int("VERIFY_CONCURRENCY", 6), 1, 12),
            verify_max_attempts=_env_int("VERIFY_MAX_ATTEMPTS", 3),
            verify_backoff_seconds=_env_float("VERIFY_BACKOFF_SECONDS", 0.35),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            cache_ttl_seconds=_env_float("CACHE_TTL_SECONDS", 300.0),
            due_hunt_limit=_env_int("DUE_HUNT_LIMIT", 20),
            policy=DecisionPolicy.from_env(),
        )


@dataclass
class NotificationConfig:
    """Webhook sinks that receive BUY/WATCH transition events."""
    webhook_urls: list[str] = field(default_factory=list)
    timeout: int = 10

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        raw = os.getenv("NOTIFICATION_WEBHOOK_URLS", "")
        return cls(
            webhook_urls=[u.strip() for u in raw.split(",") if u.strip()],
            timeout=_env_int("NOTIFICATION_TIMEOUT", 10),
        )


# Global configuration instances (lazy loaded)
_supabase_config: Optional[SupabaseConfig] = None
_engine_config: Optional[EngineConfig] = None
_notification_config: Optional[NotificationConfig] = None


def get_supabase_config() -> SupabaseConfig:
    """Get Supabase configuration (cached)."""
    global _supabase_config
    if _supabase_config is None:
        _supabase_config = SupabaseConfig.from_env()
    return _supabase_config


def get_engine_config() -> EngineConfig:
    """Get engine configuration (cached)."""
    global _engine_config
    if _engine_config is None:
        _engine_config = EngineConfig.from_env()
    return _engine_config


def get_notification_config() -> NotificationConfig:
    """Get notification sink configuration (cached)."""
    global _notification_config
    if _notification_config is None:
        _notification_config = NotificationConfig.from_env()
    return _notification_config
