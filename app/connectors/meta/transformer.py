"""ADSYNC — Meta Insight Row → AdMetrics Normalizer.

Meta reports conversions as ``[{action_type, value}]`` lists where one
semantic action can appear under several historical type strings. Every
semantic action in the registry is resolved once here; the headline
``results`` and ``cpa`` are then picked by the ad's optimization goal, with
the fixed fallback ordering when the goal is unknown or yields nothing.
"""

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.metric_registry import (
    ACTIONS,
    CACHE_METRIC_FIELDS,
    FALLBACK_ORDER,
    SemanticAction,
    goal_action,
)
from app.models.metrics_models import AdMetrics

# Direct-map fields from the insight row
DIRECT_METRICS = ["spend", "impressions", "reach", "clicks", "cpc", "cpm"]

RANKING_FIELDS = ["quality_ranking", "engagement_rate_ranking", "conversion_rate_ranking"]


def _safe_float(value: Any) -> float:
    """Safely convert a value to a finite float."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _as_list(value: Any) -> List[Dict[str, Any]]:
    return value if isinstance(value, list) else []


def pick_action(entries: Sequence[Dict[str, Any]], synonyms: Sequence[str]) -> float:
    """First value > 0 among ``synonyms``, scanned in priority order."""
    if not entries:
        return 0.0
    for action_type in synonyms:
        hit = next(
            (e for e in entries if str(e.get("action_type") or "") == action_type),
            None,
        )
        if hit is None:
            continue
        value = _safe_float(hit.get("value"))
        if value > 0:
            return value
    return 0.0


def _headline(
    values: Dict[SemanticAction, float], goal: Optional[SemanticAction]
) -> Tuple[float, Optional[SemanticAction]]:
    if goal is not None and values.get(goal, 0.0) > 0:
        return values[goal], goal
    for action in FALLBACK_ORDER:
        if values.get(action, 0.0) > 0:
            return values[action], action
    return 0.0, None


def normalize(row: Dict[str, Any], optimization_goal: str | None = None) -> AdMetrics:
    """Turn one ad-level insight row into an ``AdMetrics``.

    ``optimization_goal`` defaults to the ``optimization_goal`` attached to
    the row by the insights fetch.
    """
    goal_name = optimization_goal or row.get("optimization_goal")
    actions = _as_list(row.get("actions"))
    action_values = _as_list(row.get("action_values"))
    costs = _as_list(row.get("cost_per_action_type"))
    roas = _as_list(row.get("purchase_roas"))

    counts: Dict[SemanticAction, float] = {}
    unit_costs: Dict[SemanticAction, float] = {}
    for action, spec in ACTIONS.items():
        counts[action] = pick_action(actions, spec.synonyms)
        unit_costs[action] = pick_action(costs, spec.synonyms)

    fields: Dict[str, Any] = {m: _safe_float(row.get(m)) for m in DIRECT_METRICS}
    fields["ctr"] = _safe_float(row.get("inline_link_click_ctr") or row.get("ctr"))
    fields["link_clicks"] = _safe_float(row.get("inline_link_clicks"))
    fields["cost_per_link_click"] = _safe_float(row.get("cost_per_inline_link_click"))

    for action, spec in ACTIONS.items():
        if spec.field:
            fields[spec.field] = counts[action]
        if spec.cost_field:
            fields[spec.cost_field] = unit_costs[action]

    purchase_synonyms = ACTIONS[SemanticAction.PURCHASE].synonyms
    fields["conversions"] = counts[SemanticAction.PURCHASE]
    fields["cost_per_conversion"] = unit_costs[SemanticAction.PURCHASE]
    fields["revenue"] = pick_action(action_values, purchase_synonyms)
    fields["roas"] = pick_action(roas, purchase_synonyms)

    goal = goal_action(goal_name)
    fields["results"], result_action = _headline(counts, goal)
    fields["cpa"], _ = _headline(unit_costs, goal)

    for name in RANKING_FIELDS:
        fields[name] = row.get(name)

    return AdMetrics(
        **fields,
        result_action=result_action.value if result_action else None,
        optimization_goal=goal_name,
        actions={a.value: v for a, v in counts.items()},
        action_costs={a.value: v for a, v in unit_costs.items()},
    )


def metrics_from_columns(columns: Dict[str, Any]) -> AdMetrics:
    """Rebuild an ``AdMetrics`` from cached column values (NULL → 0)."""
    return AdMetrics(**{name: _safe_float(columns.get(name)) for name in CACHE_METRIC_FIELDS})
