"""ADSYNC — Scheduler Jobs.

APScheduler cron jobs, in the reporting timezone:

- ads sync: reconcile every active account that has a stored token
- morning / evening metrics refresh: 7 and 14 day windows (recent) and the
  30 day window (historical)
- weekly cleanup of old historical cache rows
"""

import asyncio
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from app.config import settings
from app.connectors.meta.client import MetaClient
from app.connectors.meta.endpoints import MetaEndpoints
from app.core.crypto import TokenDecryptionError, TokenKeyError, decrypt_token
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry
from app.database import engine
from app.models.ad_models import AdAccount
from app.sync.metrics_cache import MetricsCache
from app.sync.reconciler import AccountSyncLocks, ReconciliationEngine

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler(timezone=settings.report_timezone)

ACCOUNT_DELAY_SECONDS = 2.0
REFRESH_WINDOWS = ((7, False), (14, False), (30, True))

_rate_limits: RateLimitRegistry = RateLimitRegistry()
_locks: AccountSyncLocks = AccountSyncLocks()


def _syncable_accounts(session: Session) -> List[AdAccount]:
    return list(
        session.exec(
            select(AdAccount).where(
                AdAccount.is_active == True,  # noqa: E712
                AdAccount.access_token_enc != None,  # noqa: E711
            )
        )
    )


def _mark_account(session: Session, account: AdAccount, status: str, error: str) -> None:
    account.sync_status = status
    account.sync_error = error[: settings.sync_error_max_length]
    session.add(account)
    session.commit()


async def _open_endpoints(session: Session, account: AdAccount) -> Optional[MetaEndpoints]:
    """Decrypt and validate the account token. None when the account is unusable."""
    try:
        token = decrypt_token(account.access_token_enc)
    except TokenDecryptionError as e:
        logger.warning(f"Skipping account {account.account_id}: {e}")
        status = "error" if isinstance(e, TokenKeyError) else "auth_error"
        _mark_account(session, account, status, str(e))
        return None

    client = MetaClient(token, account.account_id, rate_limits=_rate_limits)
    if not await client.validate_account_access():
        await client.close()
        _mark_account(session, account, "auth_error", "Access token cannot read the ad account")
        return None
    return MetaEndpoints(client)


async def ads_sync_job():
    """Reconcile every active account, one at a time."""
    logger.info("Scheduled ads sync starting...")
    synced = failed = 0
    with Session(engine) as session:
        accounts = _syncable_accounts(session)
        for index, account in enumerate(accounts):
            if index > 0:
                await asyncio.sleep(ACCOUNT_DELAY_SECONDS)
            endpoints = await _open_endpoints(session, account)
            if endpoints is None:
                failed += 1
                continue
            try:
                reconciler = ReconciliationEngine(session, _rate_limits, locks=_locks)
                result = await reconciler.sync(account, endpoints)
            finally:
                await endpoints.client.close()
            if result.ok:
                synced += 1
            else:
                failed += 1
    logger.info(f"Scheduled ads sync complete: {synced} synced, {failed} failed")


async def metrics_refresh_job(label: str = "scheduled"):
    """Fill missing cache rows for the standard windows of every account."""
    logger.info(f"{label.capitalize()} metrics refresh starting...")
    with Session(engine) as session:
        cache = MetricsCache(session)
        for account in _syncable_accounts(session):
            endpoints = await _open_endpoints(session, account)
            if endpoints is None:
                continue
            try:
                for days, is_historical in REFRESH_WINDOWS:
                    try:
                        result = await cache.refresh_window(
                            account, endpoints, days, is_historical=is_historical
                        )
                    except Exception as e:
                        session.rollback()
                        logger.error(
                            f"Metrics refresh {days}d failed for {account.account_id}: {e}",
                            extra={"account_id": account.account_id, "window_days": days},
                        )
                        continue
                    if result.reason == "rate limited":
                        break
            finally:
                await endpoints.client.close()
    logger.info(f"{label.capitalize()} metrics refresh complete")


async def cache_cleanup_job():
    with Session(engine) as session:
        removed = MetricsCache(session).clean_old_cache()
    logger.info(f"Weekly cache cleanup removed {removed} rows")


def start_scheduler(
    rate_limits: Optional[RateLimitRegistry] = None,
    locks: Optional[AccountSyncLocks] = None,
):
    """Configure and start the scheduler, sharing the app's limiter and locks."""
    global _rate_limits, _locks
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return
    if rate_limits is not None:
        _rate_limits = rate_limits
    if locks is not None:
        _locks = locks

    scheduler.add_job(
        ads_sync_job,
        "cron",
        hour=settings.ads_sync_hour,
        minute=0,
        id="ads_sync",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        metrics_refresh_job,
        "cron",
        hour=settings.metrics_morning_hour,
        minute=0,
        args=["morning"],
        id="metrics_morning",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        metrics_refresh_job,
        "cron",
        hour=settings.metrics_evening_hour,
        minute=0,
        args=["evening"],
        id="metrics_evening",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        cache_cleanup_job,
        "cron",
        day_of_week="sun",
        hour=3,
        minute=0,
        id="cache_cleanup",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started. Ads sync at {settings.ads_sync_hour}:00, metrics at "
        f"{settings.metrics_morning_hour}:00 and {settings.metrics_evening_hour}:00 "
        f"({settings.report_timezone})"
    )


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
