"""ADSYNC — Metric & Semantic Action Registry.

Defines:
- the cached metric columns and their classifications,
- the semantic conversion actions and every raw ``action_type`` synonym the
  Graph API has used for them (priority order matters: first value > 0 wins),
- the optimization goal → semantic action table and the business-value
  fallback ordering used to pick a headline result / CPA.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: impressions, clicks, reach
    COST = "cost"  # Monetary: spend, cost per action
    REVENUE = "revenue"  # Income: purchase value
    RATE = "rate"  # Pre-computed rates from source: ctr, cpc
    DERIVED = "derived"  # Picked by the normalizer: results, cpa


class MetricDefinition:
    """Describes a single metric."""

    def __init__(
        self, name: str, metric_type: MetricType, unit: str = "", description: str = ""
    ):
        self.name = name
        self.metric_type = metric_type
        self.unit = unit
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# CACHED METRICS — one column each in ad_metrics_cache
# ─────────────────────────────────────────────

_CACHE_METRIC_LIST = [
    MetricDefinition("spend", MetricType.COST, "currency", "Total amount spent"),
    MetricDefinition("impressions", MetricType.VOLUME, "count", "Times shown"),
    MetricDefinition("reach", MetricType.VOLUME, "count", "Unique users reached"),
    MetricDefinition("clicks", MetricType.VOLUME, "count", "Total clicks"),
    MetricDefinition("ctr", MetricType.RATE, "%", "Link click-through rate"),
    MetricDefinition("cpc", MetricType.RATE, "currency", "Cost per click"),
    MetricDefinition("cpm", MetricType.RATE, "currency", "Cost per 1000 impressions"),
    MetricDefinition("results", MetricType.DERIVED, "count", "Headline result for the goal"),
    MetricDefinition("conversions", MetricType.VOLUME, "count", "Purchases"),
    MetricDefinition("cost_per_conversion", MetricType.COST, "currency"),
    MetricDefinition("cpa", MetricType.DERIVED, "currency", "Cost per headline action"),
    MetricDefinition("link_clicks", MetricType.VOLUME, "count", "Inline link clicks"),
    MetricDefinition("cost_per_link_click", MetricType.COST, "currency"),
    MetricDefinition("landing_page_views", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_landing_page_view", MetricType.COST, "currency"),
    MetricDefinition("leads", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_lead", MetricType.COST, "currency"),
    MetricDefinition("purchases", MetricType.VOLUME, "count"),
    MetricDefinition("revenue", MetricType.REVENUE, "currency", "Purchase value"),
    MetricDefinition("roas", MetricType.RATE, "ratio", "Purchase return on ad spend"),
    MetricDefinition("cost_per_purchase", MetricType.COST, "currency"),
    MetricDefinition("conversations", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_conversation", MetricType.COST, "currency"),
    MetricDefinition("thruplays", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_thruplay", MetricType.COST, "currency"),
    MetricDefinition("video_views", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_video_view", MetricType.COST, "currency"),
    MetricDefinition("profile_visits", MetricType.VOLUME, "count"),
    MetricDefinition("post_engagement", MetricType.VOLUME, "count"),
    MetricDefinition("app_installs", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_app_install", MetricType.COST, "currency"),
    MetricDefinition("add_to_cart", MetricType.VOLUME, "count"),
    MetricDefinition("initiate_checkout", MetricType.VOLUME, "count"),
    MetricDefinition("complete_registration", MetricType.VOLUME, "count"),
    MetricDefinition("cost_per_complete_registration", MetricType.COST, "currency"),
]

CACHE_METRICS: Dict[str, MetricDefinition] = {m.name: m for m in _CACHE_METRIC_LIST}
CACHE_METRIC_FIELDS: Tuple[str, ...] = tuple(CACHE_METRICS)


# ─────────────────────────────────────────────
# SEMANTIC ACTIONS
# ─────────────────────────────────────────────


class SemanticAction(str, Enum):
    PURCHASE = "purchase"
    LEAD = "lead"
    CONVERSATION = "conversation"
    LANDING_PAGE_VIEW = "landing_page_view"
    THRUPLAY = "thruplay"
    VIDEO_VIEW = "video_view"
    PROFILE_VISIT = "profile_visit"
    POST_ENGAGEMENT = "post_engagement"
    LINK_CLICK = "link_click"
    PAGE_ENGAGEMENT = "page_engagement"
    APP_INSTALL = "app_install"
    ADD_TO_CART = "add_to_cart"
    INITIATE_CHECKOUT = "initiate_checkout"
    ADD_PAYMENT_INFO = "add_payment_info"
    COMPLETE_REGISTRATION = "complete_registration"
    SEARCH = "search"
    SUBSCRIBE = "subscribe"
    START_TRIAL = "start_trial"
    SUBMIT_APPLICATION = "submit_application"
    CONTACT = "contact"
    CUSTOMIZE_PRODUCT = "customize_product"
    FIND_LOCATION = "find_location"
    SCHEDULE = "schedule"
    ADD_TO_WISHLIST = "add_to_wishlist"
    VIEW_CONTENT = "view_content"
    ACHIEVE_LEVEL = "achieve_level"
    UNLOCK_ACHIEVEMENT = "unlock_achievement"
    SPEND_CREDITS = "spend_credits"
    RATE = "rate"
    TUTORIAL_COMPLETION = "tutorial_completion"
    D2_RETENTION = "d2_retention"
    D7_RETENTION = "d7_retention"
    DONATE = "donate"
    OTHER = "other"


@dataclass(frozen=True)
class ActionSpec:
    """Raw synonyms of a semantic action and the cache columns it fills."""

    synonyms: Tuple[str, ...]
    field: Optional[str] = None
    cost_field: Optional[str] = None


def _omni(name: str) -> Tuple[str, ...]:
    return (name, f"omni_{name}")


def _pixel(name: str) -> Tuple[str, ...]:
    return (name, f"omni_{name}", f"offsite_conversion.fb_pixel_{name}")


ACTIONS: Dict[SemanticAction, ActionSpec] = {
    SemanticAction.PURCHASE: ActionSpec(
        (
            "omni_purchase",
            "offsite_conversion.fb_pixel_purchase",
            "purchase",
            "offsite_conversion.purchase",
        ),
        "purchases",
        "cost_per_purchase",
    ),
    SemanticAction.LEAD: ActionSpec(
        (
            "omni_lead",
            "offsite_conversion.fb_pixel_lead",
            "lead",
            "offsite_conversion.lead",
        ),
        "leads",
        "cost_per_lead",
    ),
    SemanticAction.CONVERSATION: ActionSpec(
        (
            "onsite_conversion.messaging_conversation_started_7d",
            "messaging_conversation_started_7d",
        ),
        "conversations",
        "cost_per_conversation",
    ),
    SemanticAction.LANDING_PAGE_VIEW: ActionSpec(
        _omni("landing_page_view"), "landing_page_views", "cost_per_landing_page_view"
    ),
    SemanticAction.THRUPLAY: ActionSpec(
        _omni("thruplay"), "thruplays", "cost_per_thruplay"
    ),
    SemanticAction.VIDEO_VIEW: ActionSpec(
        _omni("video_view"), "video_views", "cost_per_video_view"
    ),
    SemanticAction.PROFILE_VISIT: ActionSpec(
        ("profile_visit", "profile_visits"), "profile_visits"
    ),
    SemanticAction.POST_ENGAGEMENT: ActionSpec(
        _omni("post_engagement"), "post_engagement"
    ),
    # ``link_clicks`` itself comes from inline_link_clicks
    SemanticAction.LINK_CLICK: ActionSpec(_omni("link_click")),
    SemanticAction.PAGE_ENGAGEMENT: ActionSpec(_omni("page_engagement")),
    SemanticAction.APP_INSTALL: ActionSpec(
        ("mobile_app_install", "omni_app_install", "app_install"),
        "app_installs",
        "cost_per_app_install",
    ),
    SemanticAction.ADD_TO_CART: ActionSpec(_pixel("add_to_cart"), "add_to_cart"),
    SemanticAction.INITIATE_CHECKOUT: ActionSpec(
        _pixel("initiate_checkout"), "initiate_checkout"
    ),
    SemanticAction.ADD_PAYMENT_INFO: ActionSpec(_pixel("add_payment_info")),
    SemanticAction.COMPLETE_REGISTRATION: ActionSpec(
        _pixel("complete_registration"),
        "complete_registration",
        "cost_per_complete_registration",
    ),
    SemanticAction.SEARCH: ActionSpec(_pixel("search")),
    SemanticAction.SUBSCRIBE: ActionSpec(_omni("subscribe")),
    SemanticAction.START_TRIAL: ActionSpec(_omni("start_trial")),
    SemanticAction.SUBMIT_APPLICATION: ActionSpec(_omni("submit_application")),
    SemanticAction.CONTACT: ActionSpec(_omni("contact")),
    SemanticAction.CUSTOMIZE_PRODUCT: ActionSpec(_omni("customize_product")),
    SemanticAction.FIND_LOCATION: ActionSpec(_omni("find_location")),
    SemanticAction.SCHEDULE: ActionSpec(_omni("schedule")),
    SemanticAction.ADD_TO_WISHLIST: ActionSpec(_pixel("add_to_wishlist")),
    SemanticAction.VIEW_CONTENT: ActionSpec(_pixel("view_content")),
    SemanticAction.ACHIEVE_LEVEL: ActionSpec(_omni("achieve_level")),
    SemanticAction.UNLOCK_ACHIEVEMENT: ActionSpec(_omni("unlock_achievement")),
    SemanticAction.SPEND_CREDITS: ActionSpec(_omni("spend_credits")),
    SemanticAction.RATE: ActionSpec(_omni("rate")),
    SemanticAction.TUTORIAL_COMPLETION: ActionSpec(_omni("tutorial_completion")),
    SemanticAction.D2_RETENTION: ActionSpec(_omni("d2_retention")),
    SemanticAction.D7_RETENTION: ActionSpec(_omni("d7_retention")),
    SemanticAction.DONATE: ActionSpec(_omni("donate")),
    SemanticAction.OTHER: ActionSpec(_omni("other")),
}


# ─────────────────────────────────────────────
# OPTIMIZATION GOALS
# ─────────────────────────────────────────────

GOAL_ACTIONS: Dict[str, SemanticAction] = {
    "OFFSITE_CONVERSIONS": SemanticAction.PURCHASE,
    "PURCHASES": SemanticAction.PURCHASE,
    "CONVERSIONS": SemanticAction.PURCHASE,
    "LEAD_GENERATION": SemanticAction.LEAD,
    "LEADS": SemanticAction.LEAD,
    "CONVERSATIONS": SemanticAction.CONVERSATION,
    "MESSAGING_CONVERSATIONS_STARTED": SemanticAction.CONVERSATION,
    "LANDING_PAGE_VIEWS": SemanticAction.LANDING_PAGE_VIEW,
    "THRUPLAY": SemanticAction.THRUPLAY,
    "THRUPLAYS": SemanticAction.THRUPLAY,
    "VIDEO_VIEWS": SemanticAction.VIDEO_VIEW,
    "POST_ENGAGEMENT": SemanticAction.POST_ENGAGEMENT,
    "PAGE_LIKES": SemanticAction.PAGE_ENGAGEMENT,
    "PAGE_ENGAGEMENT": SemanticAction.PAGE_ENGAGEMENT,
    "LINK_CLICKS": SemanticAction.LINK_CLICK,
    "PROFILE_VISITS": SemanticAction.PROFILE_VISIT,
    "PROFILE_VISIT": SemanticAction.PROFILE_VISIT,
    "VISIT_INSTAGRAM_PROFILE": SemanticAction.PROFILE_VISIT,
    "VISIT_PROFILE": SemanticAction.PROFILE_VISIT,
    "APP_INSTALLS": SemanticAction.APP_INSTALL,
    "MOBILE_APP_INSTALLS": SemanticAction.APP_INSTALL,
    # App engagement has no dedicated action; installs are the proxy
    "MOBILE_APP_ENGAGEMENT": SemanticAction.APP_INSTALL,
    "ADD_TO_CART": SemanticAction.ADD_TO_CART,
    "INITIATE_CHECKOUT": SemanticAction.INITIATE_CHECKOUT,
    "ADD_PAYMENT_INFO": SemanticAction.ADD_PAYMENT_INFO,
    "COMPLETE_REGISTRATION": SemanticAction.COMPLETE_REGISTRATION,
    "ADD_TO_WISHLIST": SemanticAction.ADD_TO_WISHLIST,
    "VIEW_CONTENT": SemanticAction.VIEW_CONTENT,
    "SEARCH": SemanticAction.SEARCH,
    "SUBSCRIBE": SemanticAction.SUBSCRIBE,
    "START_TRIAL": SemanticAction.START_TRIAL,
    "SUBMIT_APPLICATION": SemanticAction.SUBMIT_APPLICATION,
    "CONTACT": SemanticAction.CONTACT,
    "FIND_LOCATION": SemanticAction.FIND_LOCATION,
    "SCHEDULE": SemanticAction.SCHEDULE,
    "RATE": SemanticAction.RATE,
    "DONATE": SemanticAction.DONATE,
}

# Decreasing business value; used when the goal is unknown or yields nothing
FALLBACK_ORDER: Tuple[SemanticAction, ...] = (
    SemanticAction.PURCHASE,
    SemanticAction.LEAD,
    SemanticAction.COMPLETE_REGISTRATION,
    SemanticAction.CONVERSATION,
    SemanticAction.APP_INSTALL,
    SemanticAction.ADD_TO_CART,
    SemanticAction.LANDING_PAGE_VIEW,
    SemanticAction.THRUPLAY,
    SemanticAction.VIDEO_VIEW,
    SemanticAction.PROFILE_VISIT,
    SemanticAction.POST_ENGAGEMENT,
    SemanticAction.LINK_CLICK,
)


def goal_action(optimization_goal: str | None) -> SemanticAction | None:
    """Semantic action an optimization goal is judged by, if known."""
    if not optimization_goal:
        return None
    return GOAL_ACTIONS.get(optimization_goal.upper())
