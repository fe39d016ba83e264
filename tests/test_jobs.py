"""Scheduled jobs against the test database."""

import pytest
from cryptography.fernet import Fernet

from app.config import settings
from app.scheduler import jobs
from app.sync.metrics_cache import MetricsCache

from conftest import add_local_ads, metrics


@pytest.fixture
def job_engine(engine, monkeypatch):
    monkeypatch.setattr(jobs, "engine", engine)
    monkeypatch.setattr(settings, "token_encryption_key", Fernet.generate_key().decode())
    return engine


def test_accounts_without_token_are_not_syncable(session, account):
    assert jobs._syncable_accounts(session) == []

    account.access_token_enc = "something"
    session.add(account)
    session.commit()
    assert [a.id for a in jobs._syncable_accounts(session)] == [account.id]


@pytest.mark.asyncio
async def test_unreadable_token_marks_account_auth_error(job_engine, session, account):
    account.access_token_enc = "not-a-fernet-token"
    session.add(account)
    session.commit()

    await jobs.ads_sync_job()

    session.refresh(account)
    assert account.sync_status == "auth_error"
    assert account.sync_error == "Stored token could not be decrypted"


@pytest.mark.asyncio
async def test_cache_cleanup_job(job_engine, session, account):
    add_local_ads(session, account, ["a1"])
    MetricsCache(session).save(
        "a1", account.client_id, account.id, 30, metrics(), True, "2023-01-01", "2023-01-30"
    )

    await jobs.cache_cleanup_job()

    assert MetricsCache(session).lookup_by_days(["a1"], 30)["a1"].ok is False


@pytest.mark.asyncio
async def test_missing_encryption_key_does_not_abort_the_job(
    job_engine, session, account, monkeypatch
):
    account.access_token_enc = "stored-token"
    session.add(account)
    session.commit()
    monkeypatch.setattr(settings, "token_encryption_key", None)

    await jobs.ads_sync_job()

    session.refresh(account)
    assert account.sync_status == "error"
    assert account.sync_error == "TOKEN_ENCRYPTION_KEY not configured"
