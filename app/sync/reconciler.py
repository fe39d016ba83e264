"""ADSYNC — Reconciliation Sync Engine.

Replaces an account's local campaign/ad snapshot with the platform's current
*active* slice, then refreshes metrics for the standard windows.

Order within one run (metrics read the post-reconciliation ad set):
    1. rate-limit pre-check, no remote call when limited
    2. fetch active campaigns, then active ads (ads of inactive campaigns dropped)
    3. campaigns: insert new, update changed, delete gone
    4. ads: delete removed (with their cache rows), insert new, update changed
    5. metrics for each window, chunked, with short pauses between calls

Re-running with an unchanged remote is a no-op diff. Metrics failures are
counted, never fatal to the reconciliation itself.
"""

import asyncio
import math
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set

from sqlmodel import Session, select

from app.config import settings
from app.connectors.meta.client import (
    PLATFORM,
    MetaAPIError,
    MetaRateLimitError,
    classify_error,
)
from app.connectors.meta.endpoints import MetaEndpoints
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry
from app.core.windows import chunked, yesterday_window
from app.models.ad_models import Ad, AdAccount, Campaign
from app.models.sync_models import EntityChanges, SyncResult, WindowSyncStats
from app.sync.metrics_cache import MetricsCache

logger = get_logger("reconciler")

ACCOUNT_STATUS_BY_ERROR = {
    "rate_limit": "rate_limited",
    "auth": "auth_error",
    "network": "error",
    "other": "error",
}

ERROR_SUGGESTIONS = {
    "rate_limit": "Platform rate limit reached. Wait before syncing again.",
    "auth": "Access token is invalid or lacks permission. Reconnect the ad account.",
    "network": "Temporary problem reaching the platform. Try again later.",
    "other": "Unexpected error during sync.",
}


class AccountSyncLocks:
    """In-process guard allowing one sync per account at a time."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held: Set[Any] = set()

    def try_acquire(self, key: Any) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Any) -> None:
        with self._lock:
            self._held.discard(key)

    @contextmanager
    def hold(self, key: Any) -> Iterator[bool]:
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def is_held(self, key: Any) -> bool:
        with self._lock:
            return key in self._held


def metrics_chunk_size(window_count: int) -> int:
    return min(20, max(5, 50 // max(window_count, 1)))


def _creative(ad: Dict[str, Any]) -> Dict[str, Any]:
    creative = ad.get("creative")
    return creative if isinstance(creative, dict) else {}


def _adset_goal(ad: Dict[str, Any]) -> Optional[str]:
    adset = ad.get("adset")
    return adset.get("optimization_goal") if isinstance(adset, dict) else None


class ReconciliationEngine:
    """Diff-and-apply sync of one ad account."""

    def __init__(
        self,
        session: Session,
        rate_limits: RateLimitRegistry,
        locks: Optional[AccountSyncLocks] = None,
        now=None,
        sleep=None,
    ):
        self.session = session
        self.rate_limits = rate_limits
        self.locks = locks or AccountSyncLocks()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep
        self.cache = MetricsCache(session, now=self._now, sleep=self._sleep)

    async def sync(
        self, account: AdAccount, endpoints: MetaEndpoints, window_days: int = 30
    ) -> SyncResult:
        request_id = uuid.uuid4().hex[:6]
        with self.locks.hold(account.id) as acquired:
            if not acquired:
                logger.warning(
                    f"[{request_id}] Sync already running for account {account.account_id}",
                    extra={"account_id": account.account_id, "request_id": request_id},
                )
                return SyncResult(
                    ok=False,
                    request_id=request_id,
                    window_days=window_days,
                    error="A sync for this account is already running",
                    error_type="sync_in_progress",
                )
            return await self._run(account, endpoints, window_days, request_id)

    async def _run(
        self,
        account: AdAccount,
        endpoints: MetaEndpoints,
        window_days: int,
        request_id: str,
    ) -> SyncResult:
        started = time.monotonic()
        log_extra = {"account_id": account.account_id, "request_id": request_id}
        result = SyncResult(ok=False, request_id=request_id, window_days=window_days)

        limited = self.rate_limits.is_currently_limited(PLATFORM, endpoints.account_id)
        if limited is not None:
            remaining = limited.remaining_seconds(self.rate_limits.now)
            logger.info(f"[{request_id}] Account rate limited, skipping sync", extra=log_extra)
            result.error = limited.message
            result.error_type = "rate_limit"
            result.rate_limit_detected = True
            result.wait_time_minutes = max(1, math.ceil(remaining / 60))
            result.error_details = {
                "limit_type": limited.limit_type.value,
                "severity": limited.severity.value,
                "suggestion": ERROR_SUGGESTIONS["rate_limit"],
            }
            return result

        try:
            campaigns = await endpoints.fetch_active_campaigns()
            objectives = {
                str(c["id"]): c.get("objective") for c in campaigns if c.get("id")
            }
            remote_ads = await endpoints.fetch_active_ads()

            current: Dict[str, Dict[str, Any]] = {}
            for ad in remote_ads:
                ad_id = str(ad.get("id") or "")
                status = ad.get("effective_status") or "ACTIVE"
                if ad_id and str(ad.get("campaign_id")) in objectives and status == "ACTIVE":
                    current[ad_id] = ad
                else:
                    result.skipped += 1

            result.campaigns = self._apply_campaigns(account, campaigns)
            result.ads = self._apply_ads(account, current, objectives)
            self.session.commit()

            logger.info(
                f"[{request_id}] Reconciled {len(current)} ads: "
                f"+{result.ads.inserted} ~{result.ads.updated} -{result.ads.deleted}",
                extra=log_extra,
            )

            await self._sync_metrics(account, endpoints, list(current), result)

            account.last_sync_at = self._now()
            account.sync_status = "success"
            account.sync_error = None
            self.session.add(account)
            self.session.commit()
            result.ok = True
        except Exception as e:
            self.session.rollback()
            return self._fail(account, result, e, log_extra)
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                f"[{request_id}] Sync finished in {duration_ms}ms",
                extra={**log_extra, "duration_ms": duration_ms},
            )
        return result

    # ── Apply ──

    def _apply_campaigns(
        self, account: AdAccount, campaigns: List[Dict[str, Any]]
    ) -> EntityChanges:
        changes = EntityChanges(total=len(campaigns))
        existing = {
            c.campaign_id: c
            for c in self.session.exec(
                select(Campaign).where(Campaign.ad_account_ref_id == account.id)
            )
        }
        seen: Set[str] = set()
        now = self._now()
        for remote in campaigns:
            campaign_id = str(remote.get("id") or "")
            if not campaign_id or campaign_id in seen:
                continue
            seen.add(campaign_id)
            name, objective = remote.get("name") or "", remote.get("objective")
            local = existing.get(campaign_id)
            if local is None:
                self.session.add(
                    Campaign(
                        campaign_id=campaign_id,
                        name=name,
                        objective=objective,
                        ad_account_ref_id=account.id,
                        client_id=account.client_id,
                    )
                )
                changes.inserted += 1
            elif local.name != name or local.objective != objective:
                local.name, local.objective, local.updated_at = name, objective, now
                self.session.add(local)
                changes.updated += 1

        for campaign_id, local in existing.items():
            if campaign_id not in seen:
                self.session.delete(local)
                changes.deleted += 1
        self.session.flush()
        return changes

    def _apply_ads(
        self,
        account: AdAccount,
        current: Dict[str, Dict[str, Any]],
        objectives: Dict[str, Optional[str]],
    ) -> EntityChanges:
        changes = EntityChanges(total=len(current))
        existing = {
            a.ad_id: a
            for a in self.session.exec(select(Ad).where(Ad.ad_account_ref_id == account.id))
        }
        new_ids = current.keys() - existing.keys()
        removed_ids = existing.keys() - current.keys()
        update_ids = current.keys() & existing.keys()

        self.cache.delete_for_ads(removed_ids)
        for ad_id in removed_ids:
            self.session.delete(existing[ad_id])
            changes.deleted += 1
        self.session.flush()

        for ad_id in sorted(new_ids):
            remote = current[ad_id]
            creative = _creative(remote)
            self.session.add(
                Ad(
                    ad_id=ad_id,
                    name=remote.get("name") or "",
                    effective_status="ACTIVE",
                    creative_id=creative.get("id"),
                    creative_thumb=creative.get("thumbnail_url"),
                    object_story_id=creative.get("effective_object_story_id"),
                    campaign_id=str(remote.get("campaign_id")),
                    adset_id=remote.get("adset_id"),
                    optimization_goal=_adset_goal(remote),
                    objective=objectives.get(str(remote.get("campaign_id"))),
                    ad_account_ref_id=account.id,
                    client_id=account.client_id,
                )
            )
            changes.inserted += 1
        self.session.flush()

        now = self._now()
        for ad_id in sorted(update_ids):
            if self._update_ad(existing[ad_id], current[ad_id], objectives, now):
                changes.updated += 1
        self.session.flush()
        return changes

    def _update_ad(
        self,
        local: Ad,
        remote: Dict[str, Any],
        objectives: Dict[str, Optional[str]],
        now: datetime,
    ) -> bool:
        """Write only when name, creative or goal differ. Status is left alone."""
        name = remote.get("name") or ""
        creative_id, thumb = local.creative_id, local.creative_thumb
        goal = local.optimization_goal
        # Fields absent from a basic (non-enriched) listing keep their stored value
        if "creative" in remote:
            creative = _creative(remote)
            creative_id, thumb = creative.get("id"), creative.get("thumbnail_url")
        if "adset" in remote:
            goal = _adset_goal(remote)

        if (name, creative_id, goal) == (local.name, local.creative_id, local.optimization_goal):
            return False
        local.name = name
        local.creative_id = creative_id
        local.creative_thumb = thumb
        local.optimization_goal = goal
        local.objective = objectives.get(str(remote.get("campaign_id")), local.objective)
        local.updated_at = now
        self.session.add(local)
        return True

    # ── Metrics ──

    async def _sync_metrics(
        self,
        account: AdAccount,
        endpoints: MetaEndpoints,
        ad_ids: List[str],
        result: SyncResult,
    ) -> None:
        if not ad_ids:
            return
        windows = settings.metric_windows
        size = metrics_chunk_size(len(windows))

        for w_index, days in enumerate(windows):
            start, end = yesterday_window(days, self._now())
            stats = WindowSyncStats(window_days=days, date_start=start, date_end=end)
            result.windows.append(stats)
            batches = list(chunked(ad_ids, size))

            for b_index, batch in enumerate(batches):
                limited = self.rate_limits.is_currently_limited(PLATFORM, endpoints.account_id)
                if limited is not None:
                    pending = len(ad_ids) - b_index * size
                    stats.errors += pending
                    result.metrics_errors += pending
                    result.rate_limit_detected = True
                    result.wait_time_minutes = limited.wait_time_minutes
                    for later in windows[w_index + 1 :]:
                        later_start, later_end = yesterday_window(later, self._now())
                        result.windows.append(
                            WindowSyncStats(
                                window_days=later,
                                date_start=later_start,
                                date_end=later_end,
                                errors=len(ad_ids),
                            )
                        )
                        result.metrics_errors += len(ad_ids)
                    logger.warning(
                        f"[{result.request_id}] Rate limited during metrics sync, stopping",
                        extra={"account_id": account.account_id, "window_days": days},
                    )
                    return
                if b_index > 0:
                    await self._sleep(settings.metrics_chunk_delay_seconds)
                try:
                    fetched = await endpoints.get_metrics(batch, start, end)
                except MetaAPIError as e:
                    logger.error(
                        f"[{result.request_id}] Metrics chunk {b_index + 1}/{len(batches)} failed: {e}",
                        extra={"account_id": account.account_id, "window_days": days},
                    )
                    stats.errors += len(batch)
                    result.metrics_errors += len(batch)
                    continue

                for ad_id, item in fetched.items():
                    if item.ok and item.metrics is not None:
                        self.cache.save(
                            ad_id, account.client_id, account.id, days,
                            item.metrics, False, start, end,
                        )
                        stats.synced += 1
                        result.metrics_synced += 1
                    else:
                        self.cache.save_error(
                            ad_id, account.client_id, account.id, days,
                            item.error or "No data", start, end,
                        )
                        stats.errors += 1
                        result.metrics_errors += 1

            logger.info(
                f"[{result.request_id}] Metrics {days}d {start}..{end}: "
                f"{stats.synced} synced, {stats.errors} errors",
                extra={"account_id": account.account_id, "window_days": days},
            )
            if w_index < len(windows) - 1:
                await self._sleep(settings.metrics_window_delay_seconds)

    # ── Failure ──

    def _fail(
        self,
        account: AdAccount,
        result: SyncResult,
        exc: Exception,
        log_extra: Dict[str, Any],
    ) -> SyncResult:
        error_type = classify_error(exc)
        message = str(exc)[: settings.sync_error_max_length] or type(exc).__name__
        logger.error(
            f"[{result.request_id}] Sync failed ({error_type}): {message}",
            exc_info=error_type == "other",
            extra=log_extra,
        )

        account.last_sync_at = self._now()
        account.sync_status = ACCOUNT_STATUS_BY_ERROR[error_type]
        account.sync_error = message
        self.session.add(account)
        self.session.commit()

        result.ok = False
        result.error = message
        result.error_type = error_type
        result.error_details = {
            "error_type": error_type,
            "status_code": getattr(exc, "status_code", None),
            "error_code": getattr(exc, "error_code", None),
            "suggestion": ERROR_SUGGESTIONS[error_type],
        }
        if isinstance(exc, MetaRateLimitError):
            result.rate_limit_detected = True
            result.wait_time_minutes = exc.wait_time_minutes
        return result
