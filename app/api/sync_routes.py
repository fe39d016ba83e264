"""ADSYNC — Sync, Metrics & Ad Status Routes."""

import asyncio
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from app.config import settings
from app.connectors.meta.client import MetaClient
from app.connectors.meta.endpoints import MetaEndpoints
from app.core.crypto import TokenDecryptionError, TokenKeyError, decrypt_token
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry
from app.database import get_session
from app.models.ad_models import Ad, AdAccount
from app.models.sync_models import SyncResult
from app.sync.ad_status import AdStatusService
from app.sync.metrics_reader import InvalidMetricsRequest, MetricsReader
from app.sync.reconciler import AccountSyncLocks, ReconciliationEngine

logger = get_logger("api.sync")

router = APIRouter(tags=["Sync"])

SYNC_STATUS_CODES = {
    "sync_in_progress": 409,
    "rate_limit": 429,
    "auth": 401,
    "network": 502,
    "other": 500,
}

EndpointsFactory = Callable[[AdAccount, str, RateLimitRegistry], MetaEndpoints]


# ── Dependencies ──


def get_rate_limits(request: Request) -> RateLimitRegistry:
    return request.app.state.rate_limits


def get_sync_locks(request: Request) -> AccountSyncLocks:
    return request.app.state.sync_locks


def _meta_endpoints(
    account: AdAccount, token: str, rate_limits: RateLimitRegistry
) -> MetaEndpoints:
    return MetaEndpoints(MetaClient(token, account.account_id, rate_limits=rate_limits))


def get_endpoints_factory() -> EndpointsFactory:
    return _meta_endpoints


def _load_account(session: Session, account_id: int) -> AdAccount:
    account = session.get(AdAccount, account_id)
    if account is None or not account.is_active:
        raise HTTPException(status_code=404, detail="Ad account not found")
    return account


def _token_for(account: AdAccount) -> str:
    try:
        return decrypt_token(account.access_token_enc)
    except TokenKeyError as e:
        logger.error(f"Cannot decrypt account tokens: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except TokenDecryptionError as e:
        raise HTTPException(status_code=400, detail=f"Account token unavailable: {e}")


async def _close(endpoints: MetaEndpoints) -> None:
    client = getattr(endpoints, "client", None)
    if isinstance(client, MetaClient):
        await client.close()


# ── Request Models ──


class MetricsRequest(BaseModel):
    """Request body for POST /accounts/{id}/ads/metrics."""

    ad_ids: List[str]
    days: int = 7
    """One of 7, 14, 30."""
    date_start: Optional[str] = None
    """Exact window start (YYYY-MM-DD). Derived from ``days`` when absent."""
    date_end: Optional[str] = None
    cache_only: bool = False
    batch: bool = False
    """Part of a client-side batch; uses the shorter live fetch timeout."""


# ── Endpoints ──


@router.post("/accounts/{account_id}/sync")
async def sync_account(
    account_id: int,
    days: int = Query(default=30),
    session: Session = Depends(get_session),
    rate_limits: RateLimitRegistry = Depends(get_rate_limits),
    locks: AccountSyncLocks = Depends(get_sync_locks),
    make_endpoints: EndpointsFactory = Depends(get_endpoints_factory),
):
    """Reconcile the account's active campaigns/ads and refresh their metrics."""
    account = _load_account(session, account_id)
    if locks.is_held(account.id):
        busy = SyncResult(
            ok=False,
            window_days=days,
            error="A sync for this account is already running",
            error_type="sync_in_progress",
        )
        return JSONResponse(status_code=409, content=busy.model_dump(mode="json"))
    endpoints = make_endpoints(account, _token_for(account), rate_limits)
    reconciler = ReconciliationEngine(session, rate_limits, locks=locks)
    try:
        result = await asyncio.wait_for(
            reconciler.sync(account, endpoints, window_days=days),
            timeout=settings.sync_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(f"Sync of account {account.account_id} timed out")
        raise HTTPException(status_code=504, detail="Sync timed out")
    finally:
        await _close(endpoints)

    status_code = 200 if result.ok else SYNC_STATUS_CODES.get(result.error_type or "other", 500)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.post("/accounts/{account_id}/ads/metrics")
async def read_metrics(
    account_id: int,
    body: MetricsRequest,
    session: Session = Depends(get_session),
    rate_limits: RateLimitRegistry = Depends(get_rate_limits),
    make_endpoints: EndpointsFactory = Depends(get_endpoints_factory),
):
    """Cached metrics for the given ads, with a limited live fallback."""
    account = _load_account(session, account_id)
    endpoints = None
    try:
        endpoints = make_endpoints(account, decrypt_token(account.access_token_enc), rate_limits)
    except TokenDecryptionError as e:
        logger.warning(f"Metrics read for {account.account_id} limited to cache: {e}")

    reader = MetricsReader(session, rate_limits)
    try:
        result = await reader.read(
            account,
            body.ad_ids,
            days=body.days,
            date_start=body.date_start,
            date_end=body.date_end,
            endpoints=endpoints,
            cache_only=body.cache_only,
            batch=body.batch,
        )
    except InvalidMetricsRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        if endpoints is not None:
            await _close(endpoints)
    return result


async def _change_status(
    ad_id: str,
    target: str,
    session: Session,
    rate_limits: RateLimitRegistry,
    make_endpoints: EndpointsFactory,
):
    ad = session.get(Ad, ad_id)
    if ad is None:
        raise HTTPException(status_code=404, detail="Ad not found")
    account = _load_account(session, ad.ad_account_ref_id)
    endpoints = make_endpoints(account, _token_for(account), rate_limits)
    service = AdStatusService(session, endpoints)
    try:
        if target == "PAUSED":
            result = await service.pause(ad_id)
        else:
            result = await service.reactivate(ad_id)
    finally:
        await _close(endpoints)
    if not result.ok:
        return JSONResponse(status_code=400, content=result.model_dump(mode="json"))
    return result


@router.post("/ads/{ad_id}/pause")
async def pause_ad(
    ad_id: str,
    session: Session = Depends(get_session),
    rate_limits: RateLimitRegistry = Depends(get_rate_limits),
    make_endpoints: EndpointsFactory = Depends(get_endpoints_factory),
):
    return await _change_status(ad_id, "PAUSED", session, rate_limits, make_endpoints)


@router.post("/ads/{ad_id}/reactivate")
async def reactivate_ad(
    ad_id: str,
    session: Session = Depends(get_session),
    rate_limits: RateLimitRegistry = Depends(get_rate_limits),
    make_endpoints: EndpointsFactory = Depends(get_endpoints_factory),
):
    return await _change_status(ad_id, "ACTIVE", session, rate_limits, make_endpoints)


@router.get("/rate-limits")
async def list_rate_limits(rate_limits: RateLimitRegistry = Depends(get_rate_limits)):
    """Accounts currently rate limited, with time remaining."""
    now = rate_limits.now
    limits = [state.to_dict(now) for state in rate_limits.active_limits()]
    return {"count": len(limits), "limits": limits}
