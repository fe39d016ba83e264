"""ADSYNC — Pause / Reactivate Ads.

Sets an ad's status on the platform and mirrors the outcome into the local
``Ad.effective_status``. "Already in that state" errors count as success,
and ambiguous responses are settled by reading the ad's status back.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from sqlmodel import Session

from app.connectors.meta.client import MetaAPIError, parse_error
from app.connectors.meta.endpoints import MetaEndpoints
from app.core.logging import get_logger
from app.models.ad_models import Ad
from app.models.sync_models import StatusChangeResult

logger = get_logger("ad_status")

PAUSED = "PAUSED"
ACTIVE = "ACTIVE"

PAUSED_STATES = frozenset(
    {
        "PAUSED",
        "ADSET_PAUSED",
        "CAMPAIGN_PAUSED",
        "ACCOUNT_PAUSED",
        "DISAPPROVED",
        "PENDING_REVIEW",
        "PENDING_BILLING_INFO",
        "CAMPAIGN_GROUP_PAUSED",
        "ARCHIVED",
        "DELETED",
    }
)
ACTIVE_STATES = frozenset({"ACTIVE", "LEARNING", "LEARNING_LIMITED"})

_SAME_STATUS_PATTERNS = (
    "cannot change status",
    "same status",
    "no changes to make",
    "current status is already",
    "status is the same",
)

UPDATE_IN_PROGRESS_SUBCODE = 1487758
VERIFY_DELAY_AFTER_ERROR = 0.5
VERIFY_DELAY_AFTER_SUCCESS = 0.3


def looks_already(target: str, message: str) -> bool:
    msg = (message or "").lower()
    word = "paused" if target == PAUSED else "active"
    if f"already {word}" in msg or f"status {word}" in msg:
        return True
    return any(p in msg for p in _SAME_STATUS_PATTERNS)


def status_matches(target: str, ad: Dict[str, Any]) -> bool:
    """True when any of the ad's status fields is in the target's state set."""
    states = PAUSED_STATES if target == PAUSED else ACTIVE_STATES
    return any(
        str(ad.get(field) or "").upper() in states
        for field in ("effective_status", "configured_status", "status")
    )


def error_message(target: str, code: int, subcode: int | None, status_code: int, message: str) -> Optional[str]:
    """Readable message for a known failure, or None when the code is unrecognised."""
    action = "paused" if target == PAUSED else "reactivated"
    if code == 100:
        return f"Invalid parameter: {message}. Check that the ad id is correct."
    if code == 190 or status_code == 401:
        return "Access token expired or invalid. Update the account's access token."
    if code == 200 or status_code == 403:
        return "Insufficient permissions. The token needs the 'ads_management' permission."
    if code in (17, 80004) or status_code == 429:
        return "Rate limit reached. Wait a few minutes and try again."
    if code == 2635:
        return f"The ad cannot be {action} right now. Try again in a few minutes."
    if subcode == UPDATE_IN_PROGRESS_SUBCODE:
        return "The ad is already being updated. Wait a few minutes."
    return None


class AdStatusService:
    def __init__(self, session: Session, endpoints: MetaEndpoints, sleep=None):
        self.session = session
        self.endpoints = endpoints
        self._sleep = sleep or asyncio.sleep

    async def pause(self, ad_id: str) -> StatusChangeResult:
        return await self._set_status(ad_id, PAUSED)

    async def reactivate(self, ad_id: str) -> StatusChangeResult:
        return await self._set_status(ad_id, ACTIVE)

    async def _set_status(self, ad_id: str, target: str) -> StatusChangeResult:
        log_extra = {"ad_id": ad_id, "account_id": self.endpoints.account_id}
        logger.info(f"Setting ad {ad_id} to {target}", extra=log_extra)
        try:
            resp = await self.endpoints.set_ad_status(ad_id, target)
        except MetaAPIError as e:
            logger.error(f"Status change for {ad_id} failed: {e}", extra=log_extra)
            return StatusChangeResult(ok=False, ad_id=ad_id, error=f"Connection error: {e}")

        if resp.is_success:
            result = await self._check_success(ad_id, target, resp)
        else:
            result = await self._check_failure(ad_id, target, resp)

        if result.ok:
            self._mirror_locally(ad_id, target)
            logger.info(f"Ad {ad_id} is {target}", extra=log_extra)
        else:
            logger.warning(f"Ad {ad_id} not {target}: {result.error}", extra=log_extra)
        return result

    async def _check_success(
        self, ad_id: str, target: str, resp: httpx.Response
    ) -> StatusChangeResult:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if body is None:
            if "success" in resp.text:
                return StatusChangeResult(ok=True, ad_id=ad_id, status=target)
            return StatusChangeResult(
                ok=False, ad_id=ad_id, error=f"Invalid API response: {resp.text[:100]}"
            )
        if isinstance(body, dict) and (body.get("success") is True or body.get("id") == ad_id):
            return StatusChangeResult(ok=True, ad_id=ad_id, status=target)

        # 200 without a clear success marker
        await self._sleep(VERIFY_DELAY_AFTER_SUCCESS)
        current = await self._read_status(ad_id)
        if current is None:
            return StatusChangeResult(ok=True, ad_id=ad_id, status=target)
        if status_matches(target, current):
            return StatusChangeResult(ok=True, ad_id=ad_id, status=target, verified=True)
        return StatusChangeResult(
            ok=False,
            ad_id=ad_id,
            error=f"The ad was not {target.lower()}. Try again in a few minutes.",
        )

    async def _check_failure(
        self, ad_id: str, target: str, resp: httpx.Response
    ) -> StatusChangeResult:
        code, subcode, message = parse_error(resp)
        if looks_already(target, message) or (code == 100 and "status" in message.lower()):
            return StatusChangeResult(ok=True, ad_id=ad_id, status=target, already=True)

        known = error_message(target, code, subcode, resp.status_code, message)
        if known is not None:
            return StatusChangeResult(ok=False, ad_id=ad_id, error=known, error_code=code)

        await self._sleep(VERIFY_DELAY_AFTER_ERROR)
        current = await self._read_status(ad_id)
        if current is not None and status_matches(target, current):
            return StatusChangeResult(ok=True, ad_id=ad_id, status=target, verified=True)
        return StatusChangeResult(
            ok=False, ad_id=ad_id, error=f"Error {code}: {message}", error_code=code
        )

    async def _read_status(self, ad_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.endpoints.get_ad_status(ad_id)
        except MetaAPIError as e:
            logger.warning(f"Could not verify status of {ad_id}: {e}", extra={"ad_id": ad_id})
            return None

    def _mirror_locally(self, ad_id: str, target: str) -> None:
        ad = self.session.get(Ad, ad_id)
        if ad is None:
            return
        ad.effective_status = target
        ad.updated_at = datetime.now(timezone.utc)
        self.session.add(ad)
        self.session.commit()
