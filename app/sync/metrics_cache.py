"""ADSYNC — Tiered Metrics Cache.

Lookups walk a sequence of decreasing-precision tiers and stop early once
enough of the requested ads are covered:

    by date range:  exact dates → same length, recent → any recent → any
    by days only:   exact (derived window) → any recent → same length → any

Ads still missing after the last tier get a structured empty result, which
is not an error. Saves upsert on (ad, start, end, length). Caller-supplied
dates are always used verbatim; a window is only derived ("ending
yesterday") when no dates are given.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlmodel import Session, col, select

from app.config import settings
from app.connectors.meta.client import PLATFORM, MetaAPIError
from app.connectors.meta.transformer import metrics_from_columns
from app.core.logging import get_logger
from app.core.metric_registry import CACHE_METRIC_FIELDS
from app.core.windows import chunked, days_ago, period_days, resolve_window
from app.models.ad_models import Ad, AdAccount
from app.models.metrics_models import AdMetrics, MetricsCacheEntry
from app.models.sync_models import (
    CacheStrategy,
    DataSource,
    MetricsLookupResult,
    RefreshResult,
)

logger = get_logger("metrics_cache")

VALID_DAYS = (7, 14, 30)
REFRESH_CHUNK_SIZE = 15
REFRESH_CHUNK_DELAY_SECONDS = 1.0
EMPTY_SUGGESTION = (
    'Metrics refresh automatically at 07:00 and 19:00. Use "refresh ads" to sync '
    "the most recent data."
)


class MetricsCache:
    """Read/write access to ``ad_metrics_cache`` for one session."""

    def __init__(
        self,
        session: Session,
        now: Optional[Callable[[], datetime]] = None,
        sleep=None,
    ):
        self.session = session
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep

    # ── Helpers ──

    def _today_minus(self, days: int) -> str:
        return days_ago(days, self._now())

    def _to_result(
        self, row: MetricsCacheEntry, source: DataSource
    ) -> MetricsLookupResult:
        return MetricsLookupResult(
            ok=True,
            metrics=metrics_from_columns(row.model_dump()),
            cached=True,
            data_source=source,
            synced_at=row.synced_at,
            date_start=row.date_start,
            date_end=row.date_end,
            period_days=row.period_days,
        )

    def _newest_per_ad(
        self, ad_ids: Sequence[str], *conditions, order_by: Sequence
    ) -> Dict[str, MetricsCacheEntry]:
        """First successful row per ad under ``order_by``."""
        stmt = (
            select(MetricsCacheEntry)
            .where(
                col(MetricsCacheEntry.ad_id).in_(list(ad_ids)),
                MetricsCacheEntry.sync_status == "success",
                *conditions,
            )
            .order_by(*order_by)
        )
        found: Dict[str, MetricsCacheEntry] = {}
        for row in self.session.exec(stmt):
            found.setdefault(row.ad_id, row)
        return found

    # ── Tiers ──

    def _tier_exact(self, ad_ids, start: str, end: str, days: int):
        return self._newest_per_ad(
            ad_ids,
            MetricsCacheEntry.date_start == start,
            MetricsCacheEntry.date_end == end,
            MetricsCacheEntry.period_days == days,
            order_by=[col(MetricsCacheEntry.synced_at).desc()],
        )

    def _tier_similar(self, ad_ids, days: int):
        return self._newest_per_ad(
            ad_ids,
            MetricsCacheEntry.period_days == days,
            MetricsCacheEntry.date_end >= self._today_minus(settings.cache_recent_days),
            order_by=[col(MetricsCacheEntry.date_end).desc()],
        )

    def _tier_recent(self, ad_ids):
        return self._newest_per_ad(
            ad_ids,
            MetricsCacheEntry.date_end >= self._today_minus(settings.cache_recent_days),
            order_by=[
                col(MetricsCacheEntry.date_end).desc(),
                col(MetricsCacheEntry.period_days).desc(),
            ],
        )

    def _tier_any(self, ad_ids):
        return self._newest_per_ad(
            ad_ids, order_by=[col(MetricsCacheEntry.synced_at).desc()]
        )

    def _run_tiers(
        self,
        ad_ids: List[str],
        tiers: List[tuple[DataSource, Callable[[], Dict[str, MetricsCacheEntry]]]],
        threshold: float,
        early_exit_tiers: int = 2,
    ) -> Dict[str, MetricsLookupResult]:
        found: Dict[str, MetricsLookupResult] = {}
        for position, (source, tier) in enumerate(tiers, start=1):
            pending = [a for a in ad_ids if a not in found]
            if not pending:
                break
            for ad_id, row in tier().items():
                if ad_id in pending:
                    found[ad_id] = self._to_result(row, source)
            coverage = len(found) / len(ad_ids)
            if position <= early_exit_tiers and coverage >= threshold:
                break
        return found

    def _empty(self, start: str, end: str, days: int) -> MetricsLookupResult:
        return MetricsLookupResult(
            ok=False,
            cached=False,
            data_source=DataSource.EMPTY,
            date_start=start,
            date_end=end,
            period_days=days,
            message=f"No data available for {start} to {end} ({days} days)",
            suggestion=EMPTY_SUGGESTION,
        )

    # ── Lookup ──

    def lookup(
        self, ad_ids: Iterable[str], start_date: str, end_date: str
    ) -> Dict[str, MetricsLookupResult]:
        """Cached metrics for ``start_date..end_date`` with tiered fallback."""
        ad_ids = list(dict.fromkeys(ad_ids))
        if not ad_ids:
            return {}
        days = period_days(start_date, end_date)
        found = self._run_tiers(
            ad_ids,
            [
                (DataSource.EXACT, lambda: self._tier_exact(ad_ids, start_date, end_date, days)),
                (DataSource.SIMILAR, lambda: self._tier_similar(ad_ids, days)),
                (DataSource.RECENT, lambda: self._tier_recent(ad_ids)),
                (DataSource.FALLBACK, lambda: self._tier_any(ad_ids)),
            ],
            settings.cache_exact_coverage_threshold,
        )
        logger.info(
            f"Cache lookup {start_date}..{end_date}: {len(found)}/{len(ad_ids)} ads found"
        )
        return {
            ad_id: found.get(ad_id) or self._empty(start_date, end_date, days)
            for ad_id in ad_ids
        }

    def lookup_by_days(
        self, ad_ids: Iterable[str], days: int
    ) -> Dict[str, MetricsLookupResult]:
        """Cached metrics for the standard window of ``days`` ending yesterday."""
        ad_ids = list(dict.fromkeys(ad_ids))
        if not ad_ids:
            return {}
        if days not in VALID_DAYS:
            logger.warning(f"Invalid days {days!r}, using 7")
            days = 7
        start, end = resolve_window(days, now=self._now())
        found = self._run_tiers(
            ad_ids,
            [
                (DataSource.EXACT, lambda: self._tier_exact(ad_ids, start, end, days)),
                (DataSource.RECENT, lambda: self._tier_recent(ad_ids)),
                (DataSource.SIMILAR, lambda: self._tier_similar(ad_ids, days)),
                (DataSource.FALLBACK, lambda: self._tier_any(ad_ids)),
            ],
            settings.cache_days_coverage_threshold,
        )
        return {ad_id: found.get(ad_id) or self._empty(start, end, days) for ad_id in ad_ids}

    def determine_strategy(
        self, days: int, start_date: str | None = None, end_date: str | None = None
    ) -> CacheStrategy:
        """Historical windows (ending 7+ days ago) are served from cache only."""
        start, end = resolve_window(days, start_date, end_date, now=self._now())
        is_historical = end <= self._today_minus(settings.historical_after_days)
        return CacheStrategy(
            days=days,
            date_start=start,
            date_end=end,
            is_historical=is_historical,
            use_cache_only=is_historical,
            needs_sync=not is_historical,
            reason=(
                "Historical period, data no longer changes"
                if is_historical
                else "Recent period, fetch from the platform"
            ),
        )

    # ── Save ──

    def _get_entry(
        self, ad_id: str, start: str, end: str, days: int
    ) -> Optional[MetricsCacheEntry]:
        return self.session.exec(
            select(MetricsCacheEntry).where(
                MetricsCacheEntry.ad_id == ad_id,
                MetricsCacheEntry.date_start == start,
                MetricsCacheEntry.date_end == end,
                MetricsCacheEntry.period_days == days,
            )
        ).first()

    def _is_frozen(self, entry: MetricsCacheEntry) -> bool:
        return (
            entry.is_historical
            and entry.sync_status == "success"
            and entry.date_end < self._today_minus(settings.historical_after_days)
        )

    def save(
        self,
        ad_id: str,
        client_id: str,
        ad_account_ref_id: int,
        days: int,
        metrics: AdMetrics,
        is_historical: bool = False,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> MetricsCacheEntry:
        """Upsert a success row on the exact key."""
        start, end = resolve_window(days, start_date, end_date, now=self._now())
        entry = self._get_entry(ad_id, start, end, days)
        if entry is not None and self._is_frozen(entry):
            logger.info(f"Skipping write to historical row {ad_id} {start}..{end}")
            return entry

        now = self._now()
        if entry is None:
            entry = MetricsCacheEntry(
                ad_id=ad_id,
                client_id=client_id,
                ad_account_ref_id=ad_account_ref_id,
                date_start=start,
                date_end=end,
                period_days=days,
            )
        for name in CACHE_METRIC_FIELDS:
            setattr(entry, name, getattr(metrics, name))
        entry.sync_status = "success"
        entry.error_message = None
        entry.is_historical = is_historical
        entry.synced_at = now
        entry.updated_at = now
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def save_error(
        self,
        ad_id: str,
        client_id: str,
        ad_account_ref_id: int,
        days: int,
        error: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> Optional[MetricsCacheEntry]:
        """Record a failed fetch for the key; never replaces a success row."""
        start, end = resolve_window(days, start_date, end_date, now=self._now())
        entry = self._get_entry(ad_id, start, end, days)
        if entry is not None and entry.sync_status == "success":
            return None

        now = self._now()
        if entry is None:
            entry = MetricsCacheEntry(
                ad_id=ad_id,
                client_id=client_id,
                ad_account_ref_id=ad_account_ref_id,
                date_start=start,
                date_end=end,
                period_days=days,
            )
        for name in CACHE_METRIC_FIELDS:
            setattr(entry, name, None)
        entry.sync_status = "error"
        entry.error_message = (error or "No data")[: settings.sync_error_max_length]
        entry.synced_at = now
        entry.updated_at = now
        self.session.add(entry)
        self.session.commit()
        return entry

    # ── Maintenance ──

    def _account_ad_ids(self, ad_account_ref_id: int) -> List[str]:
        return list(
            self.session.exec(
                select(Ad.ad_id).where(Ad.ad_account_ref_id == ad_account_ref_id)
            )
        )

    def _ad_ids_with_status(
        self,
        ad_account_ref_id: int,
        start: str,
        end: str,
        days: int,
        status: str,
        since: Optional[datetime] = None,
    ) -> Set[str]:
        stmt = select(MetricsCacheEntry.ad_id).where(
            MetricsCacheEntry.ad_account_ref_id == ad_account_ref_id,
            MetricsCacheEntry.date_start == start,
            MetricsCacheEntry.date_end == end,
            MetricsCacheEntry.period_days == days,
            MetricsCacheEntry.sync_status == status,
        )
        if since is not None:
            stmt = stmt.where(MetricsCacheEntry.synced_at >= since)
        return set(self.session.exec(stmt))

    async def refresh_window(
        self,
        account: AdAccount,
        endpoints,
        window_days: int,
        start_date: str | None = None,
        end_date: str | None = None,
        is_historical: bool = False,
        ad_ids: Optional[List[str]] = None,
    ) -> RefreshResult:
        """Fetch and store metrics for the account's ads lacking a success row.

        Skips entirely when most ads are already cached for the key. Ads with
        an error row younger than the cooldown are not retried.
        """
        start, end = resolve_window(window_days, start_date, end_date, now=self._now())
        result = RefreshResult(window_days=window_days, date_start=start, date_end=end)

        ad_ids = ad_ids if ad_ids is not None else self._account_ad_ids(account.id)
        result.total_ads = len(ad_ids)
        if not ad_ids:
            result.skipped, result.reason = True, "no ads"
            return result

        cached = self._ad_ids_with_status(account.id, start, end, window_days, "success")
        result.cached = len(cached & set(ad_ids))
        if result.cached >= len(ad_ids) * settings.cache_exact_coverage_threshold:
            result.skipped, result.reason = True, "already cached"
            logger.info(
                f"Window {start}..{end} already cached for {result.cached}/{len(ad_ids)} ads",
                extra={"account_id": account.account_id, "window_days": window_days},
            )
            return result

        cooldown_start = self._now() - timedelta(minutes=settings.metrics_error_cooldown_minutes)
        recent_errors = self._ad_ids_with_status(
            account.id, start, end, window_days, "error", since=cooldown_start
        )
        needing = [a for a in ad_ids if a not in cached and a not in recent_errors]
        result.requested = len(needing)

        limiter = endpoints.client.rate_limits
        for index, batch in enumerate(chunked(needing, REFRESH_CHUNK_SIZE)):
            if limiter.is_currently_limited(PLATFORM, endpoints.account_id):
                remaining = len(needing) - index * REFRESH_CHUNK_SIZE
                result.errors += remaining
                result.reason = "rate limited"
                logger.warning(
                    f"Rate limited, leaving {remaining} ads for the next refresh",
                    extra={"account_id": account.account_id, "window_days": window_days},
                )
                break
            if index > 0:
                await self._sleep(REFRESH_CHUNK_DELAY_SECONDS)
            try:
                fetched = await endpoints.get_metrics(batch, start, end)
            except MetaAPIError as e:
                logger.error(f"Metrics chunk {index + 1} failed: {e}")
                result.errors += len(batch)
                continue
            for ad_id, item in fetched.items():
                if item.ok and item.metrics is not None:
                    self.save(
                        ad_id, account.client_id, account.id, window_days,
                        item.metrics, is_historical, start, end,
                    )
                    result.synced += 1
                else:
                    self.save_error(
                        ad_id, account.client_id, account.id, window_days,
                        item.error or "No data", start, end,
                    )
                    result.errors += 1

        logger.info(
            f"Window {window_days}d {start}..{end}: {result.synced} synced, {result.errors} errors",
            extra={"account_id": account.account_id, "window_days": window_days},
        )
        return result

    def delete_for_ads(self, ad_ids: Iterable[str]) -> int:
        """Drop every cached row for the given ads. Caller commits."""
        ad_ids = list(ad_ids)
        if not ad_ids:
            return 0
        rows = self.session.exec(
            select(MetricsCacheEntry).where(col(MetricsCacheEntry.ad_id).in_(ad_ids))
        ).all()
        for row in rows:
            self.session.delete(row)
        return len(rows)

    def clean_old_cache(self, days_to_keep: int | None = None) -> int:
        """Delete historical rows whose window ended before the cutoff."""
        days_to_keep = days_to_keep or settings.cache_retention_days
        cutoff = self._today_minus(days_to_keep)
        rows = self.session.exec(
            select(MetricsCacheEntry).where(
                MetricsCacheEntry.date_end < cutoff,
                MetricsCacheEntry.is_historical == True,  # noqa: E712
            )
        ).all()
        for row in rows:
            self.session.delete(row)
        self.session.commit()
        logger.info(f"Cleaned {len(rows)} cached rows ending before {cutoff}")
        return len(rows)
