"""ADSYNC — Sync & Lookup Result Schemas."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel

from app.models.metrics_models import AdMetrics


class DataSource(str, Enum):
    """Which cache tier (or live fetch) produced a metrics result."""

    EXACT = "exact"
    SIMILAR = "similar"  # same window length, shifted end date
    RECENT = "recent"  # any window ending in the recent range
    FALLBACK = "fallback"  # newest row of any age
    LIVE = "live"
    EMPTY = "empty"


class MetricsLookupResult(BaseModel):
    ok: bool
    metrics: Optional[AdMetrics] = None
    cached: bool = False
    data_source: DataSource = DataSource.EMPTY
    synced_at: Optional[datetime] = None
    date_start: Optional[str] = None
    date_end: Optional[str] = None
    period_days: Optional[int] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None


# ─────────────────────────────────────────────
# RECONCILIATION
# ─────────────────────────────────────────────


class EntityChanges(BaseModel):
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    total: int = 0


class WindowSyncStats(BaseModel):
    window_days: int
    date_start: str
    date_end: str
    synced: int = 0
    errors: int = 0


class SyncResult(BaseModel):
    """Outcome of one reconciliation run."""

    ok: bool
    request_id: str = ""
    window_days: int = 30
    campaigns: EntityChanges = EntityChanges()
    ads: EntityChanges = EntityChanges()
    skipped: int = 0  # ads dropped because their campaign is not active
    metrics_synced: int = 0
    metrics_errors: int = 0
    windows: List[WindowSyncStats] = []
    error: Optional[str] = None
    error_type: Optional[str] = None  # rate_limit | auth | network | other | sync_in_progress
    error_details: Optional[dict] = None
    rate_limit_detected: bool = False
    wait_time_minutes: Optional[int] = None


# ─────────────────────────────────────────────
# METRICS CACHE MAINTENANCE
# ─────────────────────────────────────────────


class CacheStrategy(BaseModel):
    days: int
    date_start: str
    date_end: str
    is_historical: bool
    use_cache_only: bool
    needs_sync: bool
    reason: str


class RefreshResult(BaseModel):
    window_days: int
    date_start: str
    date_end: str
    total_ads: int = 0
    cached: int = 0  # already had a success row
    requested: int = 0
    synced: int = 0
    errors: int = 0
    skipped: bool = False
    reason: Optional[str] = None


# ─────────────────────────────────────────────
# READ PATH & STATUS CHANGES
# ─────────────────────────────────────────────


class ProcessingStrategy(str, Enum):
    STANDARD = "standard"
    MEDIUM_VOLUME_HYBRID = "medium_volume_hybrid"
    HIGH_VOLUME_CACHE_FIRST = "high_volume_cache_first"


class MetricsReadResult(BaseModel):
    ok: bool
    days: int
    date_start: str
    date_end: str
    strategy: ProcessingStrategy = ProcessingStrategy.STANDARD
    metrics: Dict[str, MetricsLookupResult] = {}
    cached_count: int = 0
    live_count: int = 0
    missing_count: int = 0
    emergency: bool = False
    rate_limited: bool = False
    wait_time_minutes: Optional[int] = None
    error: Optional[str] = None


class StatusChangeResult(BaseModel):
    ok: bool
    ad_id: str
    status: Optional[str] = None
    already: bool = False
    verified: bool = False
    error: Optional[str] = None
    error_code: Optional[int] = None
