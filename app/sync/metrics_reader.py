"""ADSYNC — Metrics Read Path.

Cache first. A live platform fetch is attempted only for small gaps under
light traffic, and never while the account is rate limited.

    ≤20 ads   standard         live fetch when ≤10 ads are missing
    ≤50 ads   medium hybrid    live fetch when ≤5 ads are missing
    >50 ads   cache first      never fetches live
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlmodel import Session

from app.config import settings
from app.connectors.meta.client import PLATFORM
from app.connectors.meta.endpoints import MetaEndpoints
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry
from app.core.windows import period_days, resolve_window, validate_date
from app.models.ad_models import AdAccount
from app.models.sync_models import (
    DataSource,
    MetricsLookupResult,
    MetricsReadResult,
    ProcessingStrategy,
)
from app.sync.metrics_cache import EMPTY_SUGGESTION, VALID_DAYS, MetricsCache

logger = get_logger("metrics_reader")


class InvalidMetricsRequest(ValueError):
    """Bad ``ad_ids`` or ``days`` in a metrics read."""


def processing_strategy(ad_count: int) -> ProcessingStrategy:
    if ad_count > settings.high_volume_threshold:
        return ProcessingStrategy.HIGH_VOLUME_CACHE_FIRST
    if ad_count > settings.medium_volume_threshold:
        return ProcessingStrategy.MEDIUM_VOLUME_HYBRID
    return ProcessingStrategy.STANDARD


def check_dates(date_start: str | None, date_end: str | None) -> None:
    """Explicit dates come as a valid YYYY-MM-DD pair with start <= end, or not at all."""
    if not date_start and not date_end:
        return
    if not (date_start and date_end):
        raise InvalidMetricsRequest("date_start and date_end must be given together")
    if validate_date(date_start) is None or validate_date(date_end) is None:
        raise InvalidMetricsRequest("dates must be valid YYYY-MM-DD strings")
    if date_start > date_end:
        raise InvalidMetricsRequest("date_start must not be after date_end")


def allows_live_fetch(strategy: ProcessingStrategy, missing: int) -> bool:
    if missing <= 0:
        return False
    if strategy == ProcessingStrategy.STANDARD:
        return missing <= settings.standard_max_missing
    if strategy == ProcessingStrategy.MEDIUM_VOLUME_HYBRID:
        return missing <= settings.medium_max_missing
    return False


class MetricsReader:
    def __init__(
        self,
        session: Session,
        rate_limits: RateLimitRegistry,
        now=None,
    ):
        self.session = session
        self.rate_limits = rate_limits
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.cache = MetricsCache(session, now=self._now)

    async def read(
        self,
        account: AdAccount,
        ad_ids: List[str],
        days: int = 7,
        date_start: str | None = None,
        date_end: str | None = None,
        endpoints: Optional[MetaEndpoints] = None,
        cache_only: bool = False,
        batch: bool = False,
    ) -> MetricsReadResult:
        """Metrics for ``ad_ids`` over the caller's dates (or ``days`` ending yesterday).

        ``endpoints`` is only needed for the live fallback; without it the read
        is cache-only. Raises ``InvalidMetricsRequest`` for bad input.
        """
        ad_ids = list(dict.fromkeys(a for a in ad_ids if a))
        if not ad_ids:
            raise InvalidMetricsRequest("ad_ids must be a non-empty list")
        if days not in VALID_DAYS:
            raise InvalidMetricsRequest(f"days must be one of {list(VALID_DAYS)}")
        check_dates(date_start, date_end)

        try:
            return await self._read(
                account, ad_ids, days, date_start, date_end, endpoints, cache_only, batch
            )
        except Exception as e:
            logger.error(
                f"Metrics read failed, falling back to cache by days: {e}",
                exc_info=True,
                extra={"account_id": account.account_id},
            )
            self.session.rollback()
            return self._emergency(ad_ids, days, str(e))

    async def _read(
        self,
        account: AdAccount,
        ad_ids: List[str],
        days: int,
        date_start: str | None,
        date_end: str | None,
        endpoints: Optional[MetaEndpoints],
        cache_only: bool,
        batch: bool,
    ) -> MetricsReadResult:
        start, end = resolve_window(days, date_start, date_end, now=self._now())
        strategy = processing_strategy(len(ad_ids))
        if strategy == ProcessingStrategy.HIGH_VOLUME_CACHE_FIRST:
            cache_only = True

        found = self.cache.lookup(ad_ids, start, end)
        metrics: Dict[str, MetricsLookupResult] = {
            ad_id: result for ad_id, result in found.items() if result.ok
        }
        result = MetricsReadResult(
            ok=True, days=days, date_start=start, date_end=end, strategy=strategy
        )
        result.cached_count = len(metrics)
        missing = [a for a in ad_ids if a not in metrics]
        logger.info(
            f"Metrics read {start}..{end}: {len(metrics)}/{len(ad_ids)} cached, strategy {strategy.value}",
            extra={"account_id": account.account_id},
        )

        limited = self.rate_limits.is_currently_limited(
            PLATFORM, account.account_id.removeprefix("act_")
        )
        if limited is not None:
            result.rate_limited = True
            result.wait_time_minutes = limited.wait_time_minutes

        if (
            endpoints is not None
            and not cache_only
            and limited is None
            and allows_live_fetch(strategy, len(missing))
        ):
            # cache rows are keyed by the span of the dates, not the requested days
            span = period_days(start, end)
            live = await self._fetch_live(account, endpoints, missing, span, start, end, batch)
            metrics.update(live)
            result.live_count = len(live)

        for ad_id in ad_ids:
            if ad_id not in metrics:
                metrics[ad_id] = self._missing(strategy, days, start, end, cache_only)
        result.missing_count = sum(1 for r in metrics.values() if not r.ok)
        result.metrics = {ad_id: metrics[ad_id] for ad_id in ad_ids}
        return result

    async def _fetch_live(
        self,
        account: AdAccount,
        endpoints: MetaEndpoints,
        missing: List[str],
        days: int,
        start: str,
        end: str,
        batch: bool,
    ) -> Dict[str, MetricsLookupResult]:
        """Fetch up to ``live_fetch_max_ads`` missing ads; failures leave them missing."""
        targets = missing[: settings.live_fetch_max_ads]
        timeout = (
            settings.batch_live_fetch_timeout_seconds
            if batch
            else settings.live_fetch_timeout_seconds
        )
        log_extra = {"account_id": account.account_id}
        logger.info(f"Live fetch for {len(targets)}/{len(missing)} missing ads", extra=log_extra)

        async def fetch():
            if not await endpoints.client.validate_account_access():
                raise PermissionError("Access token cannot read the ad account")
            return await endpoints.get_metrics(targets, start, end)

        try:
            fetched = await asyncio.wait_for(fetch(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Live fetch timed out after {timeout:.0f}s", extra=log_extra)
            return {}
        except Exception as e:
            logger.warning(f"Live fetch failed, continuing with cache: {e}", extra=log_extra)
            return {}

        live: Dict[str, MetricsLookupResult] = {}
        for ad_id, item in fetched.items():
            if not item.ok or item.metrics is None:
                continue
            self.cache.save(
                ad_id, account.client_id, account.id, days, item.metrics, False, start, end
            )
            live[ad_id] = MetricsLookupResult(
                ok=True,
                metrics=item.metrics,
                cached=False,
                data_source=DataSource.LIVE,
                synced_at=self._now(),
                date_start=start,
                date_end=end,
                period_days=days,
            )
        logger.info(f"Live fetch returned {len(live)}/{len(targets)} ads", extra=log_extra)
        return live

    def _missing(
        self,
        strategy: ProcessingStrategy,
        days: int,
        start: str,
        end: str,
        cache_only: bool,
    ) -> MetricsLookupResult:
        if strategy == ProcessingStrategy.HIGH_VOLUME_CACHE_FIRST or cache_only:
            message = f"{days}-day metrics are not cached yet. Refresh the ads to sync them."
        else:
            message = f"No data available for the {days}-day period"
        return MetricsLookupResult(
            ok=False,
            data_source=DataSource.EMPTY,
            date_start=start,
            date_end=end,
            period_days=days,
            message=message,
            suggestion=EMPTY_SUGGESTION,
        )

    def _emergency(self, ad_ids: List[str], days: int, error: str) -> MetricsReadResult:
        start, end = resolve_window(days, now=self._now())
        metrics = self.cache.lookup_by_days(ad_ids, days)
        hits = sum(1 for r in metrics.values() if r.ok)
        logger.warning(f"Emergency cache fallback: {hits}/{len(ad_ids)} ads")
        return MetricsReadResult(
            ok=True,
            days=days,
            date_start=start,
            date_end=end,
            strategy=processing_strategy(len(ad_ids)),
            metrics=metrics,
            cached_count=hits,
            missing_count=len(ad_ids) - hits,
            emergency=True,
            error=error,
        )
