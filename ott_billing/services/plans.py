"""Read-only Plan Catalog collaborator."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ott_billing.core.errors import ValidationError
from ott_billing.core.settings import S
from ott_billing.core.tables import T
from ott_billing.core.time import now_ts
from ott_billing.services.ddb import ddb_get

INTERVALS = ("month", "year")

# price id -> plan, rebuilt from a full scan at most once per S.plan_cache_seconds.
_PRICE_INDEX: Dict[str, Any] = {"built_at": 0, "plans": {}}


def get_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    if not plan_id:
        return None
    return ddb_get(T.plans, {"plan_id": plan_id}, consistent=False)


def _scan_plans() -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {}
    while True:
        resp = T.plans.scan(**kwargs)
        items.extend(resp.get("Items", []))
        last = resp.get("LastEvaluatedKey")
        if not last:
            return items
        kwargs["ExclusiveStartKey"] = last


def list_active_plans() -> List[Dict[str, Any]]:
    plans = [p for p in _scan_plans() if p.get("active", False)]
    plans.sort(key=lambda p: (int(p.get("sort_order", 0)), p["plan_id"]))
    return plans


def price_id_for(plan: Dict[str, Any], interval: str) -> Optional[str]:
    return (plan.get("price_ids") or {}).get(interval)


def require_price(plan_id: str, interval: str) -> Tuple[Dict[str, Any], str]:
    """Plan and price id for a new purchase; inactive plans are not sold."""
    if interval not in INTERVALS:
        raise ValidationError(f"Unsupported billing interval: {interval}")
    plan = get_plan(plan_id)
    if not plan or not plan.get("active", False):
        raise ValidationError("Unknown or inactive plan")
    price_id = price_id_for(plan, interval)
    if not price_id:
        raise ValidationError(f"Plan {plan_id} is not offered with {interval}ly billing")
    return plan, price_id


def clear_price_index() -> None:
    _PRICE_INDEX["built_at"] = 0
    _PRICE_INDEX["plans"] = {}


def _rebuild_price_index() -> Dict[str, Dict[str, Any]]:
    index = {
        price_id: plan
        for plan in _scan_plans()
        for price_id in (plan.get("price_ids") or {}).values()
        if price_id
    }
    _PRICE_INDEX["plans"] = index
    _PRICE_INDEX["built_at"] = now_ts()
    return index


def plan_for_price(price_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Reverse lookup used when a gateway event names a price but no plan. Inactive plans match too.

    Hits are served from a short-lived index. A miss rescans once, so a plan
    added since the last build is still found.
    """
    if not price_id:
        return None
    index = _PRICE_INDEX["plans"]
    if price_id not in index or now_ts() - _PRICE_INDEX["built_at"] >= S.plan_cache_seconds:
        index = _rebuild_price_index()
    return index.get(price_id)


def plan_view(plan: Dict[str, Any]) -> Dict[str, Any]:
    amounts = plan.get("amount_cents") or {}
    return {
        "planId": plan["plan_id"],
        "name": plan.get("name", plan["plan_id"]),
        "description": plan.get("description", ""),
        "currency": plan.get("currency", "usd"),
        "amountCents": {k: int(v) for k, v in amounts.items()},
        "intervals": [i for i in INTERVALS if price_id_for(plan, i)],
        "features": list(plan.get("features") or []),
    }
