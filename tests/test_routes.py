"""HTTP surface: status-code mapping and dependency wiring."""

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlmodel import select

from app.api.sync_routes import (
    get_endpoints_factory,
    get_rate_limits,
    get_sync_locks,
)
from app.config import settings
from app.core.crypto import encrypt_token
from app.database import get_session
from app.main import app
from app.models.ad_models import Ad
from app.sync.metrics_cache import MetricsCache
from app.sync.reconciler import AccountSyncLocks

from conftest import metrics, remote_ad

CAMPAIGN = {"id": "c1", "name": "Campaign 1", "objective": "OUTCOME_SALES"}


@pytest.fixture
def sync_locks():
    return AccountSyncLocks()


@pytest.fixture
def client(session, account, rate_limits, endpoints, sync_locks, monkeypatch):
    monkeypatch.setattr(settings, "token_encryption_key", Fernet.generate_key().decode())
    monkeypatch.setattr(settings, "metrics_chunk_delay_seconds", 0)
    monkeypatch.setattr(settings, "metrics_window_delay_seconds", 0)

    account.access_token_enc = encrypt_token("EAAB-token")
    session.add(account)
    session.commit()

    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_rate_limits] = lambda: rate_limits
    app.dependency_overrides[get_sync_locks] = lambda: sync_locks
    app.dependency_overrides[get_endpoints_factory] = lambda: (lambda acc, token, rl: endpoints)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "adsync"


def test_sync_reconciles_account(client, session, account, endpoints):
    endpoints.campaigns = [CAMPAIGN]
    endpoints.ads = [remote_ad("a1"), remote_ad("a2")]

    resp = client.post(f"/accounts/{account.id}/sync")

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["ads"]["inserted"] == 2
    assert sorted(a.ad_id for a in session.exec(select(Ad))) == ["a1", "a2"]


def test_sync_unknown_account_is_404(client):
    assert client.post("/accounts/999/sync").status_code == 404


def test_sync_while_rate_limited_is_429(client, account, rate_limits):
    rate_limits.classify("meta", "123", error_code=17, error_message="User request limit reached")

    resp = client.post(f"/accounts/{account.id}/sync")

    assert resp.status_code == 429
    assert resp.json()["wait_time_minutes"] == 60


def test_sync_with_unreadable_token_is_400(client, session, account):
    account.access_token_enc = "not-a-fernet-token"
    session.add(account)
    session.commit()

    assert client.post(f"/accounts/{account.id}/sync").status_code == 400


def test_metrics_rejects_invalid_days(client, account):
    resp = client.post(f"/accounts/{account.id}/ads/metrics", json={"ad_ids": ["a1"], "days": 10})
    assert resp.status_code == 400


def test_metrics_served_from_cache(client, session, account, endpoints):
    MetricsCache(session).save(
        "a1", account.client_id, account.id, 7, metrics(42.0), False, "2024-08-30", "2024-09-05"
    )

    resp = client.post(
        f"/accounts/{account.id}/ads/metrics",
        json={"ad_ids": ["a1"], "date_start": "2024-08-30", "date_end": "2024-09-05"},
    )

    assert resp.status_code == 200
    a1 = resp.json()["metrics"]["a1"]
    assert a1["data_source"] == "exact"
    assert a1["metrics"]["spend"] == 42.0
    assert endpoints.metric_calls == []


def test_pause_unknown_ad_is_404(client):
    assert client.post("/ads/missing/pause").status_code == 404


def test_rate_limits_listing(client, rate_limits):
    rate_limits.classify("meta", "123", error_code=80004, error_message="Too many calls")

    body = client.get("/rate-limits").json()

    assert body["count"] == 1
    assert body["limits"][0]["account_id"] == "123"
    assert body["limits"][0]["remaining_seconds"] == 1800


def test_sync_already_running_is_409(client, account, endpoints, sync_locks):
    with sync_locks.hold(account.id):
        resp = client.post(f"/accounts/{account.id}/sync")

    assert resp.status_code == 409
    assert resp.json()["error_type"] == "sync_in_progress"
    assert endpoints.campaign_calls == 0


def test_sync_without_encryption_key_is_503(client, account, monkeypatch):
    monkeypatch.setattr(settings, "token_encryption_key", None)
    assert client.post(f"/accounts/{account.id}/sync").status_code == 503


def test_metrics_rejects_half_open_dates(client, account):
    resp = client.post(
        f"/accounts/{account.id}/ads/metrics",
        json={"ad_ids": ["a1"], "date_start": "2024-08-30"},
    )
    assert resp.status_code == 400
