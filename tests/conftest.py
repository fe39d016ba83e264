"""Shared fixtures for the ADSYNC test suite.

Database tests run against a single in-memory SQLite connection
(``StaticPool``) so every session in a test sees the same data. Platform
calls go through ``FakeEndpoints`` or an ``httpx.MockTransport``; sleeps
are recorded instead of awaited.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from app.connectors.meta.endpoints import NO_DATA_MESSAGE
from app.core.rate_limits import RateLimitRegistry
from app.models.ad_models import Ad, AdAccount
from app.models.metrics_models import AdMetrics, AdMetricsResult

# 12:00 in America/Sao_Paulo, so "today" is 2024-09-06 and yesterday 2024-09-05
FIXED_NOW = datetime(2024, 9, 6, 15, 0, tzinfo=timezone.utc)


def fixed_now() -> datetime:
    return FIXED_NOW


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClient:
    def __init__(self, rate_limits: RateLimitRegistry, valid: bool = True):
        self.rate_limits = rate_limits
        self.valid = valid

    async def validate_account_access(self) -> bool:
        return self.valid


class FakeEndpoints:
    """Stand-in for ``MetaEndpoints`` serving canned campaigns, ads and metrics."""

    def __init__(
        self,
        rate_limits: RateLimitRegistry,
        campaigns: Optional[List[Dict[str, Any]]] = None,
        ads: Optional[List[Dict[str, Any]]] = None,
        metrics: Optional[Dict[str, AdMetrics]] = None,
        account_id: str = "123",
    ):
        self.account_id = account_id
        self.client = FakeClient(rate_limits)
        self.campaigns = campaigns or []
        self.ads = ads or []
        self.metrics = metrics or {}
        self.campaign_calls = 0
        self.metric_calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.gate = None

    async def fetch_active_campaigns(self) -> List[Dict[str, Any]]:
        self.campaign_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return [dict(c) for c in self.campaigns]

    async def fetch_active_ads(self) -> List[Dict[str, Any]]:
        return [dict(a) for a in self.ads]

    async def get_metrics(self, ad_ids, date_start, date_end) -> Dict[str, AdMetricsResult]:
        self.metric_calls.append((list(ad_ids), date_start, date_end))
        return {
            ad_id: (
                AdMetricsResult(ok=True, metrics=self.metrics[ad_id])
                if ad_id in self.metrics
                else AdMetricsResult(ok=False, error=NO_DATA_MESSAGE)
            )
            for ad_id in ad_ids
        }


def remote_ad(
    ad_id: str,
    campaign_id: str = "c1",
    name: Optional[str] = None,
    creative_id: str = "cr-1",
    goal: str = "OFFSITE_CONVERSIONS",
) -> Dict[str, Any]:
    """An enriched ad as returned by the ads listing."""
    return {
        "id": ad_id,
        "name": name or f"Ad {ad_id}",
        "effective_status": "ACTIVE",
        "campaign_id": campaign_id,
        "adset_id": f"as-{campaign_id}",
        "adset": {"id": f"as-{campaign_id}", "optimization_goal": goal},
        "creative": {"id": creative_id, "thumbnail_url": f"https://img/{creative_id}.jpg"},
    }


def metrics(spend: float = 10.0, **kwargs) -> AdMetrics:
    return AdMetrics(spend=spend, **kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def account(session) -> AdAccount:
    account = AdAccount(client_id="client-1", account_id="123", name="Test Account")
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


@pytest.fixture
def rate_limits() -> RateLimitRegistry:
    return RateLimitRegistry(clock=fixed_now)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def endpoints(rate_limits) -> FakeEndpoints:
    return FakeEndpoints(rate_limits)


def add_local_ads(session: Session, account: AdAccount, ad_ids: List[str]) -> None:
    for ad_id in ad_ids:
        session.add(
            Ad(
                ad_id=ad_id,
                name=f"Ad {ad_id}",
                campaign_id="c1",
                ad_account_ref_id=account.id,
                client_id=account.client_id,
            )
        )
    session.commit()
