"""
Normalization module for the opportunity engine.

Maps raw scraped listing records from different sources into the canonical
VehicleIdentity / ListingRecord schema. Every raw field is treated as
optional and untyped; unparseable values become None, never an exception.
"""

import re
import math
import logging
from datetime import datetime
from typing import Optional

from .models import (
    Drivetrain,
    ListingRecord,
    VehicleIdentity,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DMS ID LOOKUP TABLES (EasyCars / AutoTrader style numeric exports)
# =============================================================================

MAKE_ID_LOOKUP: dict[str, str] = {
    "2438": "TOYOTA", "2439": "FORD", "2440": "MAZDA", "2441": "HOLDEN",
    "2442": "NISSAN", "2443": "HONDA", "2444": "HYUNDAI", "2445": "KIA",
    "2446": "MITSUBISHI", "2447": "SUBARU", "2448": "VOLKSWAGEN", "2449": "BMW",
    "2450": "MERCEDES-BENZ", "2451": "AUDI", "2452": "LEXUS", "2453": "ISUZU",
    "2454": "JEEP", "2455": "LAND ROVER", "2456": "PORSCHE", "2457": "VOLVO",
    "2458": "TESLA", "2459": "SUZUKI", "2469": "LDV", "2470": "GREAT WALL",
    "2471": "HAVAL", "2472": "MG", "2473": "GWM", "2474": "BYD",
    # Short-form ids used by some exports
    "1": "TOYOTA", "2": "FORD", "3": "HOLDEN", "4": "MAZDA", "5": "NISSAN",
    "6": "HONDA", "7": "HYUNDAI", "8": "KIA", "9": "MITSUBISHI", "10": "SUBARU",
    "11": "VOLKSWAGEN", "12": "BMW", "13": "MERCEDES-BENZ", "14": "AUDI",
    "15": "LEXUS", "16": "ISUZU", "17": "JEEP", "18": "LAND ROVER",
    "19": "PORSCHE", "20": "VOLVO",
}

# Model ids are make-specific: (MAKE, id) -> model
MAKE_MODEL_ID_LOOKUP: dict[tuple[str, str], str] = {
    ("TOYOTA", "1"): "HILUX", ("TOYOTA", "2"): "LANDCRUISER", ("TOYOTA", "3"): "CAMRY",
    ("TOYOTA", "4"): "COROLLA", ("TOYOTA", "5"): "RAV4", ("TOYOTA", "6"): "PRADO",
    ("TOYOTA", "7"): "KLUGER", ("TOYOTA", "8"): "FORTUNER", ("TOYOTA", "13"): "HIACE",
    ("FORD", "1"): "RANGER", ("FORD", "2"): "MUSTANG", ("FORD", "3"): "EVEREST",
    ("FORD", "6"): "ESCAPE", ("FORD", "8"): "TRANSIT",
    ("MAZDA", "1"): "CX-5", ("MAZDA", "2"): "CX-3", ("MAZDA", "3"): "CX-9",
    ("MAZDA", "4"): "BT-50", ("MAZDA", "5"): "MAZDA3",
    ("NISSAN", "1"): "NAVARA", ("NISSAN", "2"): "PATROL", ("NISSAN", "3"): "X-TRAIL",
    ("NISSAN", "5"): "PATHFINDER",
    ("VOLKSWAGEN", "1"): "AMAROK", ("VOLKSWAGEN", "2"): "GOLF", ("VOLKSWAGEN", "3"): "TIGUAN",
    ("HYUNDAI", "1"): "I30", ("HYUNDAI", "2"): "TUCSON", ("HYUNDAI", "3"): "SANTA FE",
    ("KIA", "1"): "SPORTAGE", ("KIA", "2"): "SORENTO", ("KIA", "4"): "CARNIVAL",
    ("MITSUBISHI", "1"): "TRITON", ("MITSUBISHI", "2"): "PAJERO", ("MITSUBISHI", "3"): "OUTLANDER",
    ("MITSUBISHI", "6"): "PAJERO SPORT",
    ("ISUZU", "1"): "D-MAX", ("ISUZU", "2"): "MU-X",
}

# Standalone numeric model ids (no make context needed)
STANDALONE_MODEL_ID_LOOKUP: dict[str, str] = {
    "100": "HILUX", "101": "RANGER", "102": "LANDCRUISER", "103": "NAVARA",
    "104": "TRITON", "105": "D-MAX", "106": "AMAROK", "107": "BT-50",
    "108": "COLORADO", "109": "PATROL", "110": "PRADO",
    "200": "CAMRY", "201": "COROLLA", "202": "RAV4", "203": "CX-5",
    "204": "TUCSON", "205": "SPORTAGE", "206": "OUTLANDER", "207": "X-TRAIL",
}


# =============================================================================
# DRIVETRAIN KEYWORDS (checked in order, case-insensitive containment)
# =============================================================================

DRIVETRAIN_KEYWORDS: list[tuple[Drivetrain, tuple[str, ...]]] = [
    (Drivetrain.FOUR_WD, ("4X4", "4WD", "FOUR WHEEL DRIVE")),
    (Drivetrain.AWD, ("AWD", "ALL WHEEL DRIVE")),
    (Drivetrain.TWO_WD, ("2WD", "4X2", "2X4")),
    (Drivetrain.FWD, ("FWD", "FRONT WHEEL DRIVE")),
    (Drivetrain.RWD, ("RWD", "REAR WHEEL DRIVE")),
]


# =============================================================================
# RAW FIELD ALIASES
# =============================================================================

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "source_listing_id": ("source_listing_id", "listing_id", "lot_id", "stock_number", "id"),
    "url": ("url", "listing_url", "source_url"),
    "make": ("make", "make_id", "makeRaw"),
    "model": ("model", "model_id", "modelRaw"),
    "variant": ("variant", "variant_raw", "series", "badge"),
    "drivetrain": ("drivetrain", "drive_type", "driveType"),
    "year": ("year", "build_year"),
    "km": ("km", "kms", "odometer", "mileage"),
    "asking_price": ("asking_price", "price", "buy_now_price"),
    "location": ("location", "state", "suburb"),
    "first_seen_at": ("first_seen_at", "first_seen"),
    "last_seen_at": ("last_seen_at", "last_seen"),
}

MIN_YEAR = 1950
MAX_KM = 999_999


def _first_present(raw: dict, name: str):
    """Return the first non-empty value among a field's aliases."""
    for alias in FIELD_ALIASES[name]:
        value = raw.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


# =============================================================================
# IDENTITY NORMALIZER
# =============================================================================

class IdentityNormalizer:
    """
    Canonicalizes make/model/variant/drivetrain/year/km from raw fields.

    Lookup tables default to the built-in DMS tables; the pipeline can pass
    store-provided tables instead.

    Usage:
        normalizer = IdentityNormalizer()
        identity = normalizer.normalize({"make": "2438", "model": "1", "km": "48,000 km"})
    """

    def __init__(
        self,
        make_lookup: Optional[dict[str, str]] = None,
        make_model_lookup: Optional[dict[tuple[str, str], str]] = None,
        standalone_model_lookup: Optional[dict[str, str]] = None,
    ):
        self.make_lookup = make_lookup if make_lookup is not None else MAKE_ID_LOOKUP
        self.make_model_lookup = make_model_lookup if make_model_lookup is not None else MAKE_MODEL_ID_LOOKUP
        self.standalone_model_lookup = (
            standalone_model_lookup if standalone_model_lookup is not None else STANDALONE_MODEL_ID_LOOKUP
        )

    def normalize(self, raw: dict) -> VehicleIdentity:
        """Derive a VehicleIdentity from a raw record. Never raises."""
        make = self.resolve_make(_first_present(raw, "make"))
        model = self.resolve_model(_first_present(raw, "model"), make)

        return VehicleIdentity(
            make=make,
            model=model,
            variant=self.normalize_variant(_first_present(raw, "variant")),
            drivetrain=self.normalize_drivetrain(_first_present(raw, "drivetrain")),
            year=self.parse_year(_first_present(raw, "year")),
            km=self.parse_km(_first_present(raw, "km")),
        )

    def resolve_make(self, value) -> Optional[str]:
        text = self._clean_upper(value)
        if text is None:
            return None
        if text.isdigit():
            # Unresolved codes pass through unchanged
            return self.make_lookup.get(text, text)
        return text

    def resolve_model(self, value, make: Optional[str]) -> Optional[str]:
        text = self._clean_upper(value)
        if text is None:
            return None
        if not text.isdigit():
            return text
        if make:
            scoped = self.make_model_lookup.get((make, text))
            if scoped:
                return scoped
        return self.standalone_model_lookup.get(text, text)

    def normalize_variant(self, value) -> Optional[str]:
        return self._clean_upper(value)

    def normalize_drivetrain(self, value) -> Optional[Drivetrain]:
        text = self._clean_upper(value)
        if text is None:
            return None
        for drivetrain, keywords in DRIVETRAIN_KEYWORDS:
            if any(keyword in text for keyword in keywords):
                return drivetrain
        return Drivetrain.UNKNOWN

    def parse_year(self, value) -> Optional[int]:
        number = parse_number(value)
        if number is None:
            return None
        year = int(number)
        if year < MIN_YEAR or year > utcnow().year + 1:
            return None
        return year

    def parse_km(self, value) -> Optional[int]:
        number = parse_number(value)
        if number is None:
            return None
        km = int(number)
        if km < 0 or km > MAX_KM:
            return None
        return km

    def _clean_upper(self, value) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = re.sub(r"\s+", " ", str(value)).strip().upper()
        return text or None


def parse_number(value) -> Optional[float]:
    """Parse numbers like 48000, "48,000 km" or "$22,500". Returns None if unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        match = re.search(r"-?\d[\d,]*(?:\.\d+)?", value)
        if not match:
            return None
        try:
            number = float(match.group(0).replace(",", ""))
            return number if math.isfinite(number) else None
        except ValueError:
            return None
    return None


# =============================================================================
# LISTING NORMALIZER
# =============================================================================

class ListingNormalizer:
    """
    Normalizes raw scraped listing dictionaries into ListingRecord objects.

    Usage:
        normalizer = ListingNormalizer()
        records = normalizer.normalize_batch(raw_items)
    """

    def __init__(self, identity_normalizer: Optional[IdentityNormalizer] = None):
        self.identity_normalizer = identity_normalizer or IdentityNormalizer()

    def normalize_batch(self, raw_items: list[dict], default_source: Optional[str] = None) -> list[ListingRecord]:
        """
        Normalize a batch of raw listings, deduplicated by natural key.

        When the same (source, source_listing_id) appears twice, the later
        record wins.
        """
        by_key: dict[str, ListingRecord] = {}

        for raw in raw_items:
            record = self.normalize(raw, default_source=default_source)
            if record is None:
                continue
            if record.listing_id in by_key:
                logger.debug(f"Duplicate natural key in batch: {record.listing_id}")
            by_key[record.listing_id] = record

        logger.info(f"Normalized {len(by_key)}/{len(raw_items)} listings")
        return list(by_key.values())

    def normalize(self, raw: dict, default_source: Optional[str] = None) -> Optional[ListingRecord]:
        """
        Normalize a single raw listing.

        Returns None when the natural key cannot be formed.
        """
        if not isinstance(raw, dict):
            logger.warning(f"Skipping non-dict raw listing: {type(raw).__name__}")
            return None

        source = raw.get("source") or default_source
        source_listing_id = _first_present(raw, "source_listing_id")
        if not source or source_listing_id is None:
            logger.warning(f"Missing natural key in raw listing: source={source!r} id={source_listing_id!r}")
            return None

        now = utcnow()
        first_seen = self._parse_datetime(_first_present(raw, "first_seen_at")) or now
        last_seen = self._parse_datetime(_first_present(raw, "last_seen_at")) or now

        return ListingRecord(
            source=str(source).strip().lower(),
            source_listing_id=str(source_listing_id).strip(),
            url=self._clean_text(_first_present(raw, "url")),
            identity=self.identity_normalizer.normalize(raw),
            asking_price=self._parse_price(_first_present(raw, "asking_price")),
            location=self._clean_text(_first_present(raw, "location")),
            first_seen_at=first_seen,
            last_seen_at=last_seen,
            requires_identity_confirmation=bool(
                raw.get("requires_identity_confirmation") or raw.get("blocked") or raw.get("partial")
            ),
        )

    def _clean_text(self, text) -> Optional[str]:
        if text is None:
            return None
        cleaned = re.sub(r"\s+", " ", str(text)).strip()
        return cleaned or None

    def _parse_price(self, value) -> Optional[float]:
        price = parse_number(value)
        if price is None or price <= 0:
            return None
        return price

    def _parse_datetime(self, value) -> Optional[datetime]:
        if value is None:
            return None
        parsed = parse_timestamp(value)
        if parsed is not None:
            return parsed
        if isinstance(value, str):
            for fmt in ("%Y-%m-%d %H:%M:%S", "%d/%m/%Y %H:%M", "%d/%m/%Y"):
                try:
                    return parse_timestamp(datetime.strptime(value, fmt))
                except ValueError:
                    continue
        return None


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def normalize(raw: dict) -> VehicleIdentity:
    """Normalize a raw record into a VehicleIdentity using the built-in tables."""
    return IdentityNormalizer().normalize(raw)


def normalize_listings(raw_items: list[dict], default_source: Optional[str] = None) -> list[ListingRecord]:
    """Convenience function to normalize a batch of raw listings."""
    return ListingNormalizer().normalize_batch(raw_items, default_source=default_source)
