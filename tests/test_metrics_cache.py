"""Tiered metrics cache: saves, lookups, strategy, refresh and cleanup."""

import pytest
from sqlmodel import select

from app.models.metrics_models import MetricsCacheEntry
from app.models.sync_models import DataSource
from app.sync.metrics_cache import MetricsCache

from conftest import add_local_ads, fixed_now, metrics

CLIENT = "client-1"


@pytest.fixture
def cache(session, sleep):
    return MetricsCache(session, now=fixed_now, sleep=sleep)


def save(cache, account, ad_id, days, start, end, spend=10.0, is_historical=False):
    return cache.save(ad_id, CLIENT, account.id, days, metrics(spend), is_historical, start, end)


def all_rows(session):
    return session.exec(select(MetricsCacheEntry)).all()


# ── Save ──


def test_save_uses_caller_dates_verbatim(cache, account):
    entry = save(cache, account, "a1", 7, "2024-01-01", "2024-01-07")
    assert (entry.date_start, entry.date_end, entry.period_days) == ("2024-01-01", "2024-01-07", 7)


def test_save_derives_window_ending_yesterday(cache, account):
    entry = cache.save("a1", CLIENT, account.id, 14, metrics())
    assert (entry.date_start, entry.date_end) == ("2024-08-23", "2024-09-05")


def test_save_upserts_on_the_exact_key(cache, session, account):
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05", spend=1.0)
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05", spend=2.0)
    rows = all_rows(session)
    assert len(rows) == 1
    assert rows[0].spend == 2.0


def test_error_row_never_replaces_success(cache, session, account):
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05", spend=5.0)
    assert cache.save_error("a1", CLIENT, account.id, 7, "boom", "2024-08-30", "2024-09-05") is None
    row = all_rows(session)[0]
    assert row.sync_status == "success"
    assert row.spend == 5.0


def test_success_replaces_error_row(cache, session, account):
    cache.save_error("a1", CLIENT, account.id, 7, "boom", "2024-08-30", "2024-09-05")
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05", spend=3.0)
    row = all_rows(session)[0]
    assert row.sync_status == "success"
    assert row.error_message is None


def test_historical_row_is_frozen(cache, session, account):
    save(cache, account, "a1", 30, "2024-07-03", "2024-08-01", spend=100.0, is_historical=True)
    save(cache, account, "a1", 30, "2024-07-03", "2024-08-01", spend=1.0, is_historical=True)
    assert all_rows(session)[0].spend == 100.0


# ── Lookup ──


def test_error_row_yields_empty_result(cache, account):
    cache.save_error("a1", CLIENT, account.id, 7, "boom", "2024-08-30", "2024-09-05")
    result = cache.lookup(["a1"], "2024-08-30", "2024-09-05")["a1"]
    assert not result.ok
    assert result.data_source == DataSource.EMPTY
    assert result.message == "No data available for 2024-08-30 to 2024-09-05 (7 days)"
    assert result.suggestion


def test_lookup_walks_tiers_in_order(cache, account):
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05")  # exact
    save(cache, account, "a2", 7, "2024-08-29", "2024-09-04")  # same length, shifted
    save(cache, account, "a3", 14, "2024-08-19", "2024-09-01")  # recent, other length
    save(cache, account, "a4", 30, "2024-06-01", "2024-06-30")  # old

    found = cache.lookup(["a1", "a2", "a3", "a4", "a5"], "2024-08-30", "2024-09-05")

    assert found["a1"].data_source == DataSource.EXACT
    assert found["a2"].data_source == DataSource.SIMILAR
    assert found["a3"].data_source == DataSource.RECENT
    assert found["a4"].data_source == DataSource.FALLBACK
    assert found["a5"].data_source == DataSource.EMPTY
    assert found["a2"].date_end == "2024-09-04"
    assert found["a1"].cached and found["a1"].metrics.spend == 10.0


def test_similar_tier_prefers_newest_end(cache, account):
    save(cache, account, "a1", 7, "2024-08-27", "2024-09-02", spend=1.0)
    save(cache, account, "a1", 7, "2024-08-28", "2024-09-03", spend=2.0)
    result = cache.lookup(["a1"], "2024-08-30", "2024-09-05")["a1"]
    assert result.data_source == DataSource.SIMILAR
    assert result.metrics.spend == 2.0


def test_lookup_stops_early_when_coverage_is_enough(cache, account):
    for ad_id in ("a1", "a2", "a3", "a4"):
        save(cache, account, ad_id, 7, "2024-08-30", "2024-09-05")
    save(cache, account, "a5", 30, "2024-06-01", "2024-06-30")

    found = cache.lookup(["a1", "a2", "a3", "a4", "a5"], "2024-08-30", "2024-09-05")

    assert found["a5"].data_source == DataSource.EMPTY


def test_lookup_by_days_falls_back_to_seven(cache, account):
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05")
    result = cache.lookup_by_days(["a1"], 10)["a1"]
    assert result.data_source == DataSource.EXACT
    assert result.period_days == 7


def test_lookup_by_days_prefers_recent_over_similar(cache, account):
    save(cache, account, "a1", 14, "2024-08-22", "2024-09-04")
    save(cache, account, "a1", 7, "2024-08-20", "2024-08-26")
    result = cache.lookup_by_days(["a1"], 7)["a1"]
    assert result.data_source == DataSource.RECENT
    assert result.period_days == 14


def test_determine_strategy(cache):
    recent = cache.determine_strategy(7)
    assert (recent.date_start, recent.date_end) == ("2024-08-30", "2024-09-05")
    assert recent.needs_sync and not recent.is_historical

    old = cache.determine_strategy(30, "2024-07-03", "2024-08-01")
    assert old.is_historical and old.use_cache_only


# ── Refresh & cleanup ──


@pytest.mark.asyncio
async def test_refresh_fetches_only_missing_ads_and_respects_error_cooldown(
    cache, session, account, endpoints
):
    add_local_ads(session, account, ["a1", "a2", "a3"])
    save(cache, account, "a1", 7, "2024-08-30", "2024-09-05")
    endpoints.metrics = {"a2": metrics(7.0)}

    result = await cache.refresh_window(account, endpoints, 7)

    assert (result.cached, result.requested, result.synced, result.errors) == (1, 2, 1, 1)
    assert endpoints.metric_calls == [(["a2", "a3"], "2024-08-30", "2024-09-05")]

    again = await cache.refresh_window(account, endpoints, 7)
    assert again.requested == 0
    assert len(endpoints.metric_calls) == 1


@pytest.mark.asyncio
async def test_refresh_skips_mostly_cached_window(cache, session, account, endpoints):
    add_local_ads(session, account, ["a1", "a2", "a3", "a4", "a5"])
    for ad_id in ("a1", "a2", "a3", "a4"):
        save(cache, account, ad_id, 7, "2024-08-30", "2024-09-05")

    result = await cache.refresh_window(account, endpoints, 7)

    assert result.skipped
    assert result.reason == "already cached"
    assert endpoints.metric_calls == []


@pytest.mark.asyncio
async def test_refresh_stops_while_rate_limited(cache, session, account, endpoints, rate_limits):
    add_local_ads(session, account, ["a1", "a2"])
    rate_limits.classify("meta", "123", error_code=80004, error_message="Too many calls")

    result = await cache.refresh_window(account, endpoints, 30, is_historical=True)

    assert result.reason == "rate limited"
    assert result.errors == 2
    assert endpoints.metric_calls == []


@pytest.mark.asyncio
async def test_refresh_chunks_with_delay(cache, session, account, endpoints, sleep):
    ad_ids = [f"a{i:02d}" for i in range(20)]
    add_local_ads(session, account, ad_ids)

    await cache.refresh_window(account, endpoints, 14)

    assert [len(call[0]) for call in endpoints.metric_calls] == [15, 5]
    assert sleep.calls == [1.0]


def test_clean_old_cache_removes_only_old_historical_rows(cache, session, account):
    save(cache, account, "a1", 30, "2024-04-02", "2024-05-01", is_historical=True)
    save(cache, account, "a2", 30, "2024-04-02", "2024-05-01", is_historical=False)
    save(cache, account, "a3", 30, "2024-07-03", "2024-08-01", is_historical=True)

    assert cache.clean_old_cache() == 1
    assert sorted(r.ad_id for r in all_rows(session)) == ["a2", "a3"]
