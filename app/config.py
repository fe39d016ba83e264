"""ADSYNC — Central Configuration via Pydantic Settings."""

import os
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"

    # ── Database ──
    database_url: str = ""

    # ── Credentials ──
    token_encryption_key: Optional[str] = None

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    report_timezone: str = "America/Sao_Paulo"
    ads_sync_hour: int = 4
    metrics_morning_hour: int = 7
    metrics_evening_hour: int = 19

    # ── Fetch Client ──
    fetch_max_retries: int = 3
    fetch_initial_delay_seconds: float = 1.0
    fetch_max_backoff_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    pagination_budget_seconds: float = 25.0
    page_timeout_seconds: float = 8.0
    rate_limit_max_inline_wait_seconds: float = 900.0

    # ── Metrics Cache ──
    cache_exact_coverage_threshold: float = 0.8
    cache_days_coverage_threshold: float = 0.7
    cache_recent_days: int = 14
    metrics_error_cooldown_minutes: int = 60
    historical_after_days: int = 7
    cache_retention_days: int = 90

    # ── Reconciliation ──
    metric_windows: List[int] = [7, 14, 30]
    metrics_chunk_delay_seconds: float = 0.5
    metrics_window_delay_seconds: float = 1.0
    sync_timeout_seconds: float = 240.0
    sync_error_max_length: int = 500

    # ── Metrics Read Path ──
    live_fetch_max_ads: int = 10
    medium_volume_threshold: int = 20
    high_volume_threshold: int = 50
    standard_max_missing: int = 10
    medium_max_missing: int = 5
    live_fetch_timeout_seconds: float = 30.0
    batch_live_fetch_timeout_seconds: float = 20.0

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/adsync.db"
        return "sqlite:///./adsync.db"

    @property
    def graph_base(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
