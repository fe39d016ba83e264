"""ADSYNC — Meta API Endpoints.

Fetch functions for the Graph API resources the sync core consumes:
active campaigns, active ads, ad-level insights, ad set optimization goals
and ad status reads/writes.
"""

import json
from typing import Any, Dict, Iterable, List

import httpx

from app.connectors.meta.client import (
    MetaAPIError,
    MetaClient,
    MetaNetworkError,
    MetaRateLimitError,
    parse_error,
)
from app.connectors.meta.transformer import normalize
from app.core.logging import get_logger
from app.core.windows import chunked
from app.models.metrics_models import AdMetricsResult

logger = get_logger("meta.endpoints")

NO_DATA_MESSAGE = "No data available for this period"

INSIGHT_FIELDS = ",".join(
    [
        "ad_id",
        "ad_name",
        "adset_id",
        "impressions",
        "reach",
        "spend",
        "clicks",
        "inline_link_clicks",
        "ctr",
        "inline_link_click_ctr",
        "cpc",
        "cpm",
        "cost_per_inline_link_click",
        "actions",
        "action_values",
        "cost_per_action_type",
        "purchase_roas",
        "conversion_rate_ranking",
        "quality_ranking",
        "engagement_rate_ranking",
    ]
)

CAMPAIGN_FIELDS = "id,name,objective"
AD_BASIC_FIELDS = "id,name,effective_status,campaign_id,adset_id"
AD_EXPANDED_FIELDS = (
    "adset{optimization_goal,id},creative{id,thumbnail_url,effective_object_story_id}"
)
AD_STATUS_FIELDS = "id,effective_status,configured_status,status"
ACTIVE_FILTER = json.dumps(["ACTIVE"])
MAX_ENRICHED_ADS = 500


def insight_batch_size(total: int) -> int:
    """Ads per insights call; larger requests use smaller batches."""
    if total > 200:
        return 10
    if total > 100:
        return 15
    if total > 50:
        return 25
    return 40


def insight_chunk_delay(total: int) -> float:
    """Seconds between insight chunks (none at or below 30 ads)."""
    if total <= 30:
        return 0.0
    if total > 200:
        return 1.2
    if total > 100:
        return 0.8
    if total > 50:
        return 0.5
    return 0.3


class MetaEndpoints:
    """Fetch platform data for one ad account through a ``MetaClient``."""

    def __init__(self, client: MetaClient):
        self.client = client

    @property
    def account_id(self) -> str:
        return self.client.account_id

    # ── Structure ──

    async def fetch_active_campaigns(self) -> List[Dict[str, Any]]:
        """Every ACTIVE campaign (id, name, objective)."""
        return await self.client.fetch_all_pages(
            self.client.graph_url(f"{self.client.act_id}/campaigns"),
            {"fields": CAMPAIGN_FIELDS, "effective_status": ACTIVE_FILTER, "limit": 200},
            max_pages=50,
            retries_per_page=3,
            strict=True,
            context="campaigns_fetch",
        )

    async def fetch_active_ads(self) -> List[Dict[str, Any]]:
        """Every ACTIVE ad, enriched with creative/adset data when affordable.

        The enrichment pass is best-effort: it is used only if it returns the
        same number of ads as the basic listing.
        """
        url = self.client.graph_url(f"{self.client.act_id}/ads")
        base_params = {"effective_status": ACTIVE_FILTER, "limit": 100}
        ads = await self.client.fetch_all_pages(
            url,
            {**base_params, "fields": AD_BASIC_FIELDS},
            max_pages=50,
            retries_per_page=3,
            strict=True,
            context="ads_fetch",
        )

        if 0 < len(ads) <= MAX_ENRICHED_ADS:
            try:
                enriched = await self.client.fetch_all_pages(
                    url,
                    {**base_params, "fields": f"{AD_BASIC_FIELDS},{AD_EXPANDED_FIELDS}"},
                    max_pages=50,
                    retries_per_page=2,
                    strict=True,
                    context="ads_enrich",
                )
            except MetaRateLimitError:
                raise
            except MetaAPIError as e:
                logger.warning(f"Ad enrichment failed, using basic fields: {e}")
            else:
                if len(enriched) == len(ads):
                    ads = enriched
                else:
                    logger.warning(
                        f"Ad enrichment returned {len(enriched)} ads, expected {len(ads)}; ignoring"
                    )
        return ads

    async def fetch_adset_goals(self, adset_ids: Iterable[str]) -> Dict[str, str]:
        """``adset_id → optimization_goal`` in one ``?ids=`` lookup."""
        ids = sorted({a for a in adset_ids if a})
        if not ids:
            return {}
        try:
            resp = await self.client.fetch_with_retry(
                self.client.graph_url(),
                {"ids": ",".join(ids), "fields": "id,optimization_goal"},
                max_retries=2,
                initial_delay=1.0,
                context="adset_optimization_goals",
            )
        except MetaNetworkError as e:
            logger.warning(f"Could not fetch ad set goals: {e}")
            return {}
        if not resp.is_success:
            logger.warning(f"Could not fetch ad set goals: {parse_error(resp)[2]}")
            return {}
        return {
            adset_id: info["optimization_goal"]
            for adset_id, info in resp.json().items()
            if isinstance(info, dict) and info.get("optimization_goal")
        }

    # ── Insights ──

    async def get_metrics(
        self, ad_ids: List[str], date_start: str, date_end: str
    ) -> Dict[str, AdMetricsResult]:
        """Normalized ad-level metrics for ``date_start..date_end``.

        Every requested id gets a result. A rate limit stops the remaining
        chunks; they are reported failed with the limit message.
        """
        results: Dict[str, AdMetricsResult] = {}
        if not ad_ids:
            return results

        total = len(ad_ids)
        batches = list(chunked(ad_ids, insight_batch_size(total)))
        delay = insight_chunk_delay(total)
        url = self.client.graph_url(f"{self.client.act_id}/insights")
        time_range = json.dumps({"since": date_start, "until": date_end})
        stopped: MetaRateLimitError | None = None

        logger.info(
            f"Fetching insights for {total} ads in {len(batches)} chunks ({date_start} → {date_end})",
            extra={"account_id": self.account_id},
        )

        for index, batch in enumerate(batches):
            if stopped is not None:
                for ad_id in batch:
                    results[ad_id] = AdMetricsResult(ok=False, error=str(stopped))
                continue
            if delay and index > 0:
                await self.client.sleep(delay)

            params = {
                "level": "ad",
                "fields": INSIGHT_FIELDS,
                "time_range": time_range,
                "filtering": json.dumps(
                    [{"field": "ad.id", "operator": "IN", "value": batch}]
                ),
                "limit": 200,
            }
            try:
                rows = await self.client.fetch_all_pages(
                    url,
                    params,
                    max_pages=3 if len(batch) > 20 else 4 if len(batch) > 10 else 5,
                    retries_per_page=2 if len(batch) > 20 else 3,
                    context="insights",
                )
            except MetaRateLimitError as e:
                logger.warning(f"Insights rate limited, stopping remaining chunks: {e}")
                stopped = e
                for ad_id in batch:
                    results[ad_id] = AdMetricsResult(ok=False, error=str(e))
                continue
            except MetaAPIError as e:
                logger.error(f"Insights chunk {index + 1}/{len(batches)} failed: {e}")
                for ad_id in batch:
                    results[ad_id] = AdMetricsResult(ok=False, error=str(e))
                continue

            goals = await self.fetch_adset_goals(r.get("adset_id") for r in rows)
            for row in rows:
                ad_id = str(row.get("ad_id") or "")
                if not ad_id:
                    continue
                goal = goals.get(row.get("adset_id") or "")
                if goal:
                    row["optimization_goal"] = goal
                results[ad_id] = AdMetricsResult(ok=True, metrics=normalize(row))

        for ad_id in ad_ids:
            if ad_id not in results:
                results[ad_id] = AdMetricsResult(ok=False, error=NO_DATA_MESSAGE)
        return results

    # ── Ad Status ──

    async def set_ad_status(self, ad_id: str, status: str) -> httpx.Response:
        """POST ``status`` to the ad. Returns the raw response."""
        return await self.client.fetch_with_retry(
            self.client.graph_url(ad_id),
            method="POST",
            data={"status": status},
            max_retries=2,
            context=f"set_status_{status.lower()}",
        )

    async def get_ad_status(self, ad_id: str) -> Dict[str, Any]:
        return await self.client.request_json(
            self.client.graph_url(ad_id),
            {"fields": AD_STATUS_FIELDS},
            max_retries=1,
            context="ad_status_check",
        )
