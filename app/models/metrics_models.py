"""ADSYNC — Metrics Cache Models.

One ``ad_metrics_cache`` row per (ad, window start, window end, window
length). Writes with the same key replace the row. Rows with
``sync_status='error'`` carry no metric values; they only record that a
fetch for that key failed.
"""

from datetime import datetime, timezone
from typing import Dict, Optional
from pydantic import BaseModel
from sqlmodel import SQLModel, Field, UniqueConstraint


# ─────────────────────────────────────────────
# DATABASE MODEL — ad_metrics_cache
# ─────────────────────────────────────────────


class MetricsCacheEntry(SQLModel, table=True):
    __tablename__ = "ad_metrics_cache"
    __table_args__ = (
        UniqueConstraint(
            "ad_id", "date_start", "date_end", "period_days", name="uq_ad_metrics_window"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    ad_id: str = Field(index=True)
    client_id: str = Field(index=True)
    ad_account_ref_id: int = Field(index=True)
    date_start: str = Field(index=True, description="YYYY-MM-DD")
    date_end: str = Field(index=True, description="YYYY-MM-DD")
    period_days: int = Field(index=True)

    spend: Optional[float] = None
    impressions: Optional[float] = None
    reach: Optional[float] = None
    clicks: Optional[float] = None
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None
    results: Optional[float] = None
    conversions: Optional[float] = None
    cost_per_conversion: Optional[float] = None
    cpa: Optional[float] = None
    link_clicks: Optional[float] = None
    cost_per_link_click: Optional[float] = None
    landing_page_views: Optional[float] = None
    cost_per_landing_page_view: Optional[float] = None
    leads: Optional[float] = None
    cost_per_lead: Optional[float] = None
    purchases: Optional[float] = None
    revenue: Optional[float] = None
    roas: Optional[float] = None
    cost_per_purchase: Optional[float] = None
    conversations: Optional[float] = None
    cost_per_conversation: Optional[float] = None
    thruplays: Optional[float] = None
    cost_per_thruplay: Optional[float] = None
    video_views: Optional[float] = None
    cost_per_video_view: Optional[float] = None
    profile_visits: Optional[float] = None
    post_engagement: Optional[float] = None
    app_installs: Optional[float] = None
    cost_per_app_install: Optional[float] = None
    add_to_cart: Optional[float] = None
    initiate_checkout: Optional[float] = None
    complete_registration: Optional[float] = None
    cost_per_complete_registration: Optional[float] = None

    sync_status: str = Field(default="success", index=True, description="success | error")
    error_message: Optional[str] = Field(default=None)
    is_historical: bool = Field(default=False)
    synced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS — normalized metrics
# ─────────────────────────────────────────────


class AdMetrics(BaseModel):
    """Fixed-shape metrics for one ad over one window.

    The named fields are exactly the cached columns. ``actions`` and
    ``action_costs`` hold every semantic action keyed by its name, including
    the ones that have no column of their own.
    """

    spend: float = 0.0
    impressions: float = 0.0
    reach: float = 0.0
    clicks: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    results: float = 0.0
    conversions: float = 0.0
    cost_per_conversion: float = 0.0
    cpa: float = 0.0
    link_clicks: float = 0.0
    cost_per_link_click: float = 0.0
    landing_page_views: float = 0.0
    cost_per_landing_page_view: float = 0.0
    leads: float = 0.0
    cost_per_lead: float = 0.0
    purchases: float = 0.0
    revenue: float = 0.0
    roas: float = 0.0
    cost_per_purchase: float = 0.0
    conversations: float = 0.0
    cost_per_conversation: float = 0.0
    thruplays: float = 0.0
    cost_per_thruplay: float = 0.0
    video_views: float = 0.0
    cost_per_video_view: float = 0.0
    profile_visits: float = 0.0
    post_engagement: float = 0.0
    app_installs: float = 0.0
    cost_per_app_install: float = 0.0
    add_to_cart: float = 0.0
    initiate_checkout: float = 0.0
    complete_registration: float = 0.0
    cost_per_complete_registration: float = 0.0

    result_action: Optional[str] = None
    optimization_goal: Optional[str] = None
    quality_ranking: Optional[str] = None
    engagement_rate_ranking: Optional[str] = None
    conversion_rate_ranking: Optional[str] = None
    actions: Dict[str, float] = {}
    action_costs: Dict[str, float] = {}


class AdMetricsResult(BaseModel):
    """Outcome of fetching one ad's metrics from the platform."""

    ok: bool
    metrics: Optional[AdMetrics] = None
    error: Optional[str] = None
