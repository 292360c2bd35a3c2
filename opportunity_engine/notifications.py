"""
Transition notifications.

Builds BUY/WATCH transition event payloads and POSTs them to the
configured webhook sinks. Formatting (chat cards, push text) is each
sink's job; this module only emits the payload.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .config import NotificationConfig, get_notification_config
from .models import Decision, ListingRecord, MatchCandidate, utcnow

logger = logging.getLogger(__name__)

NOTIFY_DECISIONS = (Decision.BUY, Decision.WATCH)


def is_transition(decision: Decision, previous: Optional[Decision]) -> bool:
    """True when a candidate newly enters BUY or WATCH (or moves between them)."""
    return decision in NOTIFY_DECISIONS and decision != previous


def build_transition_event(
    candidate: MatchCandidate,
    listing: ListingRecord,
    previous_decision: Optional[Decision] = None,
) -> dict:
    """Payload for one BUY/WATCH transition."""
    return {
        "event_id": uuid.uuid4().hex,
        "hunt_id": candidate.hunt_id,
        "listing_id": candidate.listing_id,
        "decision": candidate.decision.value,
        "previous_decision": previous_decision.value if previous_decision else None,
        "vehicle": listing.identity.summary(),
        "price": candidate.asking_price,
        "gap_dollars": candidate.gap_dollars,
        "gap_pct": candidate.gap_pct,
        "confidence": candidate.confidence.value,
        "final_score": candidate.final_score,
        "reasons": list(candidate.reasons),
        "url": candidate.url,
        "emitted_at": utcnow().isoformat(),
    }


@dataclass
class EmitResult:
    events: int = 0
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"events": self.events, "delivered": self.delivered, "failed": self.failed}


class NotificationEmitter:
    """
    Posts transition events to webhook sinks.

    A failing sink is logged and counted; it never fails the rebuild that
    produced the event.

    Usage:
        emitter = NotificationEmitter()
        emitter.emit(events)
    """

    def __init__(self, config: Optional[NotificationConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or get_notification_config()
        self.session = session or requests.Session()

    def emit(self, events: list[dict]) -> EmitResult:
        result = EmitResult(events=len(events))
        if not events or not self.config.webhook_urls:
            return result

        for event in events:
            for url in self.config.webhook_urls:
                try:
                    response = self.session.post(url, json=event, timeout=self.config.timeout)
                    response.raise_for_status()
                    result.delivered += 1
                except requests.RequestException as e:
                    result.failed += 1
                    logger.error(f"Failed to deliver {event['decision']} event for {event['listing_id']} to {url}: {e}")

        logger.info(f"Emitted {len(events)} transition events: {result.delivered} delivered, {result.failed} failed")
        return result
