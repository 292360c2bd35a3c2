"""
Listing lifecycle verification.

Re-fetches a candidate's source page and infers active / sold / expired.
Anything ambiguous (5xx, WAF block, transport failure) keeps the current
status and only records why; ambiguity is never read as loss.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup

from .config import EngineConfig, get_engine_config
from .models import LifecycleCheckResult, LifecycleStatus, VerifyTarget, utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; OpportunityEngineVerifier/1.0)"
REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
MAX_CONCURRENCY = 12
SAMPLE_SIZE = 10


# =============================================================================
# RETRY POLICY
# =============================================================================

class FetchStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"  # transport kept failing; re-run later
    TERMINAL_FAILURE = "terminal_failure"    # request can never succeed as given


# Request construction errors are not worth retrying
TERMINAL_EXCEPTIONS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


@dataclass
class RetryPolicy:
    """Bounded retry with linear or exponential delay between attempts."""
    max_attempts: int = 3
    base_delay: float = 0.35
    backoff: str = "linear"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff not in ("linear", "exponential"):
            raise ValueError(f"Unknown backoff: {self.backoff}")

    def delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if self.backoff == "exponential":
            return self.base_delay * (2 ** (attempt - 1))
        return self.base_delay * attempt


@dataclass
class FetchResult:
    status: FetchStatus
    response: Optional[requests.Response] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.SUCCESS


def fetch_with_retry(
    session: requests.Session,
    url: str,
    policy: RetryPolicy,
    timeout: float = 30,
    sleep: Callable[[float], None] = time.sleep,
    headers: Optional[dict] = None,
) -> FetchResult:
    """
    GET a URL, retrying transport failures per policy.

    Any HTTP response (including 4xx/5xx) is a SUCCESS at this layer;
    interpreting status codes is the caller's job.
    """
    last_error = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            response = session.get(url, headers=headers, timeout=timeout, allow_redirects=True)
            return FetchResult(FetchStatus.SUCCESS, response=response, attempts=attempt)
        except TERMINAL_EXCEPTIONS as e:
            return FetchResult(FetchStatus.TERMINAL_FAILURE, error=str(e), attempts=attempt)
        except requests.RequestException as e:
            last_error = str(e)
            logger.debug(f"Fetch attempt {attempt}/{policy.max_attempts} failed for {url}: {e}")
            if attempt < policy.max_attempts:
                sleep(policy.delay(attempt))
    return FetchResult(FetchStatus.RETRYABLE_FAILURE, error=last_error, attempts=policy.max_attempts)


# =============================================================================
# DETECTORS
# =============================================================================

@dataclass
class PhraseDetector:
    """Sold/expired phrase lists for one source (or all, when source_match is None)."""
    name: str
    source_match: Optional[str]
    sold_phrases: tuple
    expired_phrases: tuple
    sold_reason: str
    expired_reason: str

    def applies_to(self, source: Optional[str]) -> bool:
        if self.source_match is None:
            return True
        return self.source_match in (source or "").lower()

    def detect(self, text: str) -> Optional[tuple[LifecycleStatus, str]]:
        if any(phrase in text for phrase in self.sold_phrases):
            return LifecycleStatus.SOLD, self.sold_reason
        if any(phrase in text for phrase in self.expired_phrases):
            return LifecycleStatus.EXPIRED, self.expired_reason
        return None


PICKLES_DETECTOR = PhraseDetector(
    name="pickles",
    source_match="pickles",
    sold_phrases=(
        "this item has sold",
        "vehicle has sold",
        "lot sold",
        "sold at auction",
        "sale completed",
        "this lot has been sold",
        "bidding closed",
    ),
    expired_phrases=(
        "page not found",
        "we can't find the page",
        "not available",
        "no longer available",
        "listing has ended",
        "this lot is no longer available",
    ),
    sold_reason="pickles:sold_signal",
    expired_reason="pickles:expired_signal",
)

GENERIC_DETECTOR = PhraseDetector(
    name="generic",
    source_match=None,
    sold_phrases=(
        "this vehicle has been sold",
        "this item has sold",
        "no longer available",
        "listing has ended",
        "ad has been removed",
        "this listing has been removed",
    ),
    expired_phrases=(
        "page not found",
        "we couldn't find",
        "doesn't exist",
        "404 - not found",
    ),
    sold_reason="generic:explicit_sold",
    expired_reason="generic:expired_signal",
)

# Source-specific detectors first, generic last
DEFAULT_DETECTORS = [PICKLES_DETECTOR, GENERIC_DETECTOR]

# Source -> URL fragments every live detail page contains
DETAIL_URL_SHAPES = {
    "pickles": ("/item/", "/used/details/"),
}


def redirected_out_of_detail(final_url: str, source: Optional[str]) -> bool:
    url = (final_url or "").lower()
    name = (source or "").lower()
    for source_match, fragments in DETAIL_URL_SHAPES.items():
        if source_match in name and not any(f in url for f in fragments):
            return True
    return False


def page_text(html: str) -> str:
    """Visible page text, lower-cased with whitespace collapsed."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split()).lower()


# =============================================================================
# VERIFIER
# =============================================================================

@dataclass
class VerificationSummary:
    verified: int = 0
    counts: dict = field(default_factory=dict)
    ambiguous: int = 0
    took_ms: int = 0
    sample: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "counts": dict(self.counts),
            "ambiguous": self.ambiguous,
            "took_ms": self.took_ms,
            "sample": list(self.sample),
        }


class Verifier:
    """
    Re-fetches candidate pages to confirm their lifecycle status.

    Usage:
        verifier = Verifier()
        result = verifier.verify(target)
        results = verifier.verify_batch(targets, concurrency=6)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        detectors: Optional[list[PhraseDetector]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or get_engine_config()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.verify_max_attempts,
            base_delay=self.config.verify_backoff_seconds,
        )
        self.detectors = detectors if detectors is not None else DEFAULT_DETECTORS
        self._sleep = sleep

        # Headers go on each request; a shared session is never mutated
        self.session = session or requests.Session()
        self.headers = dict(REQUEST_HEADERS)

    def verify(self, target: VerifyTarget) -> LifecycleCheckResult:
        """Check one candidate. Never raises."""
        url = (target.url or "").strip()
        if not url:
            return self._keep(target, None, "no_url_skip")

        fetch = fetch_with_retry(
            self.session, url, self.retry_policy,
            timeout=self.config.request_timeout, sleep=self._sleep, headers=self.headers,
        )
        if not fetch.ok:
            logger.warning(f"Verify fetch failed for {target.candidate_id} ({fetch.status.value}): {fetch.error}")
            return self._keep(target, None, "fetch_error_keep_status", error=fetch.error)

        response = fetch.response
        status_code = response.status_code

        if status_code in (404, 410):
            return self._result(target, LifecycleStatus.EXPIRED, status_code, "http_not_found")
        if status_code >= 500:
            return self._keep(target, status_code, "http_5xx_keep_status")
        if not 200 <= status_code < 300:
            return self._keep(target, status_code, "http_not_ok_keep_status")

        if response.history and redirected_out_of_detail(response.url, target.source):
            return self._result(target, LifecycleStatus.EXPIRED, status_code, "redirect_out_of_detail")

        text = page_text(response.text)
        for detector in self.detectors:
            if not detector.applies_to(target.source):
                continue
            outcome = detector.detect(text)
            if outcome is not None:
                lifecycle_status, reason = outcome
                return self._result(target, lifecycle_status, status_code, reason)

        return self._result(target, LifecycleStatus.ACTIVE, status_code, "no_sold_signals")

    def verify_batch(self, targets: list[VerifyTarget], concurrency: Optional[int] = None) -> list[LifecycleCheckResult]:
        """Verify targets with a bounded worker pool. Results keep input order."""
        if not targets:
            return []
        workers = max(1, min(MAX_CONCURRENCY, concurrency or self.config.verify_concurrency))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(self.verify, targets))
        logger.info(f"Verified {len(results)} candidates with {workers} workers")
        return results

    def _result(
        self,
        target: VerifyTarget,
        lifecycle_status: LifecycleStatus,
        http_status: Optional[int],
        reason: str,
    ) -> LifecycleCheckResult:
        return LifecycleCheckResult(
            candidate_id=target.candidate_id,
            listing_id=target.listing_id,
            lifecycle_status=lifecycle_status,
            http_status=http_status,
            reason=reason,
            checked_at=utcnow(),
        )

    def _keep(
        self,
        target: VerifyTarget,
        http_status: Optional[int],
        reason: str,
        error: Optional[str] = None,
    ) -> LifecycleCheckResult:
        """Ambiguous outcome: current status stays, the reason is recorded."""
        return LifecycleCheckResult(
            candidate_id=target.candidate_id,
            listing_id=target.listing_id,
            lifecycle_status=target.lifecycle_status,
            http_status=http_status,
            reason=reason,
            error=error,
            checked_at=utcnow(),
            ambiguous=True,
        )


def summarize(results: list[LifecycleCheckResult], started: float) -> VerificationSummary:
    """Batch summary: counts per status plus a small sample."""
    summary = VerificationSummary(verified=len(results))
    for result in results:
        key = result.lifecycle_status.value
        summary.counts[key] = summary.counts.get(key, 0) + 1
        if result.ambiguous:
            summary.ambiguous += 1
    summary.sample = [r.to_dict() for r in results[:SAMPLE_SIZE]]
    summary.took_ms = int((time.monotonic() - started) * 1000)
    return summary
