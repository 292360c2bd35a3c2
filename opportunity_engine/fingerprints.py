"""
Winner fingerprint aggregation and read access.

A fingerprint is a historically profitable vehicle shape
(make + model + variant + drivetrain + year band) built from completed
sales. The matcher only ever reads them, through FingerprintStore.
"""

import logging
from collections import defaultdict
from statistics import median
from typing import Optional

from .cache import TTLCache
from .config import EngineConfig, get_engine_config
from .models import BestSale, SaleRecord, WinnerFingerprint, parse_timestamp
from .normalization import IdentityNormalizer, parse_number

logger = logging.getLogger(__name__)


def sale_from_row(row: dict, normalizer: Optional[IdentityNormalizer] = None) -> SaleRecord:
    """Build a SaleRecord from a raw sales-history row."""
    normalizer = normalizer or IdentityNormalizer()
    days = parse_number(row.get("days_to_clear"))
    return SaleRecord(
        identity=normalizer.normalize(row),
        buy_price=parse_number(row.get("buy_price")),
        sale_price=parse_number(row.get("sale_price")),
        sold_at=parse_timestamp(row.get("sold_at") or row.get("sale_date")),
        days_to_clear=int(days) if days is not None and days >= 0 else None,
        sale_id=str(row["id"]) if row.get("id") is not None else None,
    )


def _group_key(sale: SaleRecord) -> tuple:
    identity = sale.identity
    return (identity.make, identity.model, identity.variant, identity.drivetrain)


def _build_fingerprint(key: tuple, group: list[SaleRecord]) -> Optional[WinnerFingerprint]:
    """Fold one identity group into a fingerprint; None if nothing in it made money."""
    make, model, variant, drivetrain = key
    priced = [s for s in group if s.profit is not None]
    winners = [s for s in priced if s.profit > 0]
    if not winners:
        return None

    profits = [s.profit for s in winners]
    years = [s.identity.year for s in winners if s.identity.year is not None]
    kms = [s.identity.km for s in winners if s.identity.km is not None]
    days = [s.days_to_clear for s in winners if s.days_to_clear is not None]

    # Latest dated sale; undated sales only count when nothing is dated
    dated = [s for s in winners if s.sold_at is not None]
    last_sale = max(dated, key=lambda s: s.sold_at) if dated else winners[-1]

    return WinnerFingerprint(
        make=make,
        model=model,
        variant=variant,
        drivetrain=drivetrain,
        year_min=min(years) if years else None,
        year_max=max(years) if years else None,
        avg_profit=round(sum(profits) / len(profits), 2),
        total_profit=round(sum(profits), 2),
        avg_km=round(sum(kms) / len(kms), 1) if kms else None,
        median_km=float(median(kms)) if kms else None,
        times_sold=len(winners),
        last_sale_price=last_sale.sale_price,
        last_sale_date=last_sale.sold_at,
        median_profit=float(median(profits)),
        median_sale_price=float(median(s.sale_price for s in winners)),
        median_days_to_clear=float(median(days)) if days else None,
        win_rate=round(len(winners) / len(priced), 4),
    )


def aggregate_fingerprints(sales: list[SaleRecord]) -> list[WinnerFingerprint]:
    """
    Aggregate completed sales into ranked winner fingerprints.

    Sales without a make or model, or without both prices, cannot describe
    a repeatable pattern and are skipped. Ranking is by total profit, with
    the fingerprint key as a stable tie-break.
    """
    groups: dict[tuple, list[SaleRecord]] = defaultdict(list)
    skipped = 0
    for sale in sales:
        if not sale.identity.make or not sale.identity.model:
            skipped += 1
            continue
        groups[_group_key(sale)].append(sale)

    fingerprints = []
    for key, group in groups.items():
        fingerprint = _build_fingerprint(key, group)
        if fingerprint is not None:
            fingerprints.append(fingerprint)

    fingerprints.sort(key=lambda fp: (-fp.total_profit, fp.fingerprint_key))
    for i, fingerprint in enumerate(fingerprints, 1):
        fingerprint.rank = i

    logger.info(
        f"Aggregated {len(sales)} sales into {len(fingerprints)} fingerprints "
        f"({len(groups)} groups, {skipped} skipped)"
    )
    return fingerprints


class FingerprintStore:
    """
    Read access to an account's fingerprints and best-sale anchors.

    Remote reads go through the injected TTLCache so repeated hunt rebuilds
    in one scheduler tick share a snapshot.
    """

    def __init__(self, db, cache: TTLCache, config: Optional[EngineConfig] = None):
        self.db = db
        self.cache = cache
        self.config = config or get_engine_config()

    def top_fingerprints(self, account_id: str) -> list[WinnerFingerprint]:
        """Fingerprints ordered by total_profit desc, capped to bound matching cost."""
        cap = self.config.fingerprint_cap
        fingerprints = self.cache.get_or_load(
            ("fingerprints", account_id),
            lambda: self.db.get_fingerprints(account_id, cap),
        )
        return sorted(fingerprints, key=lambda fp: -fp.total_profit)[:cap]

    def best_historical_sale(self, account_id: str, make: str, model: str) -> Optional[BestSale]:
        return self.cache.get_or_load(
            ("best_sale", account_id, make, model),
            lambda: self.db.get_best_sale(account_id, make, model),
        )

    def refresh(self, account_id: str, normalizer: Optional[IdentityNormalizer] = None) -> int:
        """Recompute fingerprints from sales history and write them back."""
        rows = self.db.get_sales(account_id)
        normalizer = normalizer or IdentityNormalizer()
        sales = [sale_from_row(row, normalizer) for row in rows]
        fingerprints = aggregate_fingerprints(sales)
        for fingerprint in fingerprints:
            fingerprint.account_id = account_id

        written = self.db.replace_fingerprints(account_id, fingerprints)
        self.cache.invalidate(("fingerprints", account_id))
        logger.info(f"Refreshed fingerprints for account {account_id}: {written} written")
        return written
