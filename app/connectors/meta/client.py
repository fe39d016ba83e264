"""ADSYNC — Meta API Client.

Resilient fetch layer for the Graph API:

- ``fetch_with_retry`` retries a single call. Rate limits wait the time the
  ``RateLimitRegistry`` computes, permanent errors return at once, and
  transient failures back off exponentially.
- ``fetch_all_pages`` follows ``paging.next`` cursors under a wall-clock
  budget with a per-page timeout, and stops on repeated URLs.

Failing responses are returned, not raised, so callers can inspect them;
``error_for`` turns one into the matching typed exception.
"""

import asyncio
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.config import settings
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry, RateLimitState

logger = get_logger("meta.client")

PLATFORM = "meta"
NETWORK_BACKOFF_CAP_SECONDS = 15.0
PROGRESS_LOG_THRESHOLD_SECONDS = 30.0

# Pagination URLs may come back on a newer Graph version than the app is
# approved for.
_VERSION_RE = re.compile(r"graph\.facebook\.com/v[\d.]+/")


def pin_api_version(url: str | None) -> str | None:
    """Rewrite a pagination URL to the configured API version."""
    if not url:
        return None
    return _VERSION_RE.sub(f"graph.facebook.com/{settings.meta_api_version}/", url)


# ── Errors ──


class MetaAPIError(Exception):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        super().__init__(message)


class MetaRateLimitError(MetaAPIError):
    """The account is rate limited; retry after ``wait_seconds``."""

    def __init__(
        self,
        message: str,
        wait_seconds: int,
        state: Optional[RateLimitState] = None,
        status_code: int = 0,
        error_code: int = 0,
    ):
        self.wait_seconds = wait_seconds
        self.state = state
        super().__init__(message, status_code, error_code)

    @property
    def wait_time_minutes(self) -> int:
        return max(1, -(-self.wait_seconds // 60))


class MetaAuthError(MetaAPIError):
    """Invalid/expired token, missing permission or bad parameter."""


class MetaNetworkError(MetaAPIError):
    """Transport failure that outlived its retries."""


class MetaTimeoutError(MetaNetworkError):
    """A request or the pagination budget timed out."""


def parse_error(resp: httpx.Response) -> tuple[int, int | None, str]:
    """(error code, subcode, message) from a failing Graph response."""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    code = error.get("code") or resp.status_code
    message = error.get("message") or resp.reason_phrase
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = resp.status_code
    return code, error.get("error_subcode"), str(message or "")


def is_permanent_error(error_code: int, message: str) -> bool:
    """Errors that no amount of retrying will fix."""
    msg = (message or "").lower()
    if error_code in (190, 200):
        return True
    if any(p in msg for p in ("invalid access token", "oauth", "permission", "not found")):
        return True
    return error_code == 100 and "rate" not in msg


def classify_error(exc: BaseException) -> str:
    """Map any exception to rate_limit | auth | network | other."""
    if isinstance(exc, MetaRateLimitError):
        return "rate_limit"
    if isinstance(exc, MetaAuthError):
        return "auth"
    if isinstance(exc, (MetaNetworkError, httpx.TransportError, asyncio.TimeoutError)):
        return "network"
    message = str(exc).lower()
    if "rate limit" in message or "too many requests" in message:
        return "rate_limit"
    if "token" in message or "oauth" in message or "permission" in message:
        return "auth"
    if "timeout" in message or "network" in message or "connection" in message:
        return "network"
    return "other"


# ── Client ──


class MetaClient:
    """Async HTTP client for the Meta Marketing API, scoped to one account."""

    def __init__(
        self,
        access_token: str,
        ad_account_id: str | None = None,
        rate_limits: RateLimitRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        monotonic: Callable[[], float] | None = None,
    ):
        self.access_token = access_token
        self.account_id = (ad_account_id or "").removeprefix("act_")
        self.rate_limits = rate_limits or RateLimitRegistry()
        self._transport = transport
        self.sleep = sleep or asyncio.sleep
        self._monotonic = monotonic or time.monotonic
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=settings.request_timeout_seconds,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "MetaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def act_id(self) -> str:
        return f"act_{self.account_id}"

    def graph_url(self, path: str = "") -> str:
        return f"{settings.graph_base}/{path.lstrip('/')}"

    # ── Waiting ──

    async def _wait(self, seconds: float, context: str, request_id: str) -> None:
        if seconds <= 0:
            return
        logger.info(f"[{request_id}] Waiting {seconds:.0f}s for {context}")
        if seconds <= PROGRESS_LOG_THRESHOLD_SECONDS:
            await self.sleep(seconds)
            return
        step = min(PROGRESS_LOG_THRESHOLD_SECONDS, seconds / 4)
        elapsed = 0.0
        while elapsed < seconds:
            chunk = min(step, seconds - elapsed)
            await self.sleep(chunk)
            elapsed += chunk
            if seconds - elapsed > 0:
                logger.info(
                    f"[{request_id}] Still waiting: {seconds - elapsed:.0f}s remaining for {context}"
                )

    # ── Core Request Method ──

    async def fetch_with_retry(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        *,
        method: str = "GET",
        data: Dict[str, Any] | None = None,
        max_retries: int | None = None,
        initial_delay: float | None = None,
        context: str = "api_call",
        timeout: float | None = None,
    ) -> httpx.Response:
        """Issue one call with classification-driven retry.

        Returns the last response: successful, permanent failure, or the
        failure that exhausted its retries. Transport errors that exhaust
        retries raise ``MetaNetworkError``.
        """
        max_retries = settings.fetch_max_retries if max_retries is None else max_retries
        initial_delay = (
            settings.fetch_initial_delay_seconds if initial_delay is None else initial_delay
        )
        request_id = uuid.uuid4().hex[:4]
        if params is not None:
            params = {**params, "access_token": self.access_token}
        if data is not None:
            data = {**data, "access_token": self.access_token}

        client = await self._get_client()
        request_kwargs: Dict[str, Any] = {"params": params, "data": data}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        for attempt in range(1, max_retries + 2):
            try:
                resp = await client.request(method, url, **request_kwargs)
            except httpx.TransportError as e:
                if attempt <= max_retries:
                    wait = min(initial_delay * 2 ** (attempt - 1), NETWORK_BACKOFF_CAP_SECONDS)
                    logger.warning(
                        f"[{request_id}] {context}: {type(e).__name__} on attempt {attempt}, retrying",
                        extra={"attempt": attempt, "wait_seconds": wait},
                    )
                    await self._wait(wait, context, request_id)
                    continue
                error_cls = (
                    MetaTimeoutError if isinstance(e, httpx.TimeoutException) else MetaNetworkError
                )
                raise error_cls(
                    f"{context}: connection failed after {attempt} attempts: {e}"
                ) from e

            if resp.is_success:
                self.rate_limits.mark_success(PLATFORM, self.account_id)
                return resp

            code, _, message = parse_error(resp)
            state = self.rate_limits.classify(
                PLATFORM,
                self.account_id,
                error_code=code,
                error_message=message,
                headers=resp.headers,
                status_code=resp.status_code,
            )

            if state is not None:
                if (
                    attempt <= max_retries
                    and state.wait_seconds <= settings.rate_limit_max_inline_wait_seconds
                ):
                    await self._wait(state.wait_seconds, f"{context} rate limit", request_id)
                    continue
                logger.error(
                    f"[{request_id}] {context}: rate limited ({state.limit_type.value}), giving up",
                    extra={"status_code": resp.status_code, "wait_seconds": state.wait_seconds},
                )
                return resp

            if is_permanent_error(code, message):
                logger.warning(
                    f"[{request_id}] {context}: permanent error {code}: {message}",
                    extra={"status_code": resp.status_code},
                )
                return resp

            if attempt <= max_retries:
                wait = min(
                    initial_delay * 2 ** (attempt - 1), settings.fetch_max_backoff_seconds
                )
                logger.warning(
                    f"[{request_id}] {context}: temporary error {code}, retrying in {wait}s",
                    extra={"attempt": attempt, "status_code": resp.status_code},
                )
                await self._wait(wait, context, request_id)
                continue

            logger.error(f"[{request_id}] {context}: retries exhausted ({code}: {message})")
            return resp

        raise MetaNetworkError(f"{context}: all retry attempts exhausted")

    def error_for(self, resp: httpx.Response) -> MetaAPIError:
        """Typed exception describing a failing response."""
        code, subcode, message = parse_error(resp)
        rule = self.rate_limits.match_rule(PLATFORM, code, message, resp.status_code)
        if rule is not None:
            state = self.rate_limits.is_currently_limited(PLATFORM, self.account_id)
            wait = state.wait_seconds if state else rule.base_wait_seconds
            return MetaRateLimitError(
                state.message if state else f"Rate limit reached: {message}",
                wait_seconds=wait,
                state=state,
                status_code=resp.status_code,
                error_code=code,
            )
        if resp.status_code in (401, 403) or is_permanent_error(code, message):
            return MetaAuthError(message, resp.status_code, code, subcode)
        return MetaAPIError(message, resp.status_code, code, subcode)

    async def request_json(
        self, url: str, params: Dict[str, Any] | None = None, **kwargs
    ) -> Dict[str, Any]:
        """``fetch_with_retry`` that raises on failure and decodes the body."""
        resp = await self.fetch_with_retry(url, params if params is not None else {}, **kwargs)
        if not resp.is_success:
            raise self.error_for(resp)
        return resp.json()

    # ── Pagination ──

    async def fetch_all_pages(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 5,
        retries_per_page: int = 2,
        strict: bool = False,
        context: str = "fetch_all",
    ) -> List[Dict[str, Any]]:
        """Collect ``data`` across ``paging.next`` cursors.

        Raises ``MetaTimeoutError`` when the wall-clock budget runs out. With
        ``strict`` a listing cut short by ``max_pages`` raises too, so callers
        never act on a partial set.
        """
        items: List[Dict[str, Any]] = []
        seen: set[str] = set()
        next_url: str | None = url
        page_params: Dict[str, Any] | None = params if params is not None else {}
        pages = 0
        budget = settings.pagination_budget_seconds
        started = self._monotonic()

        while next_url and pages < max_pages:
            elapsed = self._monotonic() - started
            if elapsed > budget:
                raise MetaTimeoutError(
                    f"{context}: pagination budget of {budget:.0f}s exhausted after {pages} pages"
                )
            if next_url in seen:
                logger.warning(f"{context}: repeated page URL, stopping pagination")
                break
            seen.add(next_url)

            resp = await self.fetch_with_retry(
                next_url,
                page_params,
                max_retries=retries_per_page,
                initial_delay=2.0,
                context=f"{context}_page_{pages + 1}",
                timeout=max(0.1, min(settings.page_timeout_seconds, budget - elapsed)),
            )
            if not resp.is_success:
                raise self.error_for(resp)

            body = resp.json()
            data = body.get("data")
            if isinstance(data, list):
                items.extend(data)
            next_url = pin_api_version((body.get("paging") or {}).get("next"))
            page_params = None
            pages += 1

        if strict and next_url and pages >= max_pages:
            raise MetaAPIError(f"{context}: more than {max_pages} pages, listing incomplete")

        logger.info(f"{context}: fetched {len(items)} records from {pages} pages")
        return items

    # ── Account Access ──

    async def validate_account_access(self) -> bool:
        """True when the token can read the ad account."""
        try:
            resp = await self.fetch_with_retry(
                self.graph_url(self.act_id),
                {"fields": "name,account_status,account_id"},
                max_retries=2,
                context="validate_account",
            )
        except MetaNetworkError as e:
            logger.warning(f"Account validation failed for {self.act_id}: {e}")
            return False
        if not resp.is_success:
            _, _, message = parse_error(resp)
            logger.warning(f"Account {self.act_id} not accessible: {message}")
        return resp.is_success
