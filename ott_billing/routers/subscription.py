from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, Query

from ott_billing.auth.deps import require_account
from ott_billing.models import (
    ChangePlanReq,
    EntitlementResp,
    PlansResp,
    SubscriptionOverviewResp,
    SubscriptionStatusResp,
)
from ott_billing.services.plans import list_active_plans, plan_view
from ott_billing.services.subscriptions import (
    cancel_subscription,
    change_plan,
    get_overview,
    get_status,
    reactivate_subscription,
)

router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.get("", response_model=SubscriptionOverviewResp)
def subscription_overview(
    ctx: Dict[str, str] = Depends(require_account),
    limit: int = Query(50, ge=1, le=200),
):
    return get_overview(ctx["account_id"], limit=limit)


@router.get("/status", response_model=SubscriptionStatusResp)
def subscription_status(ctx: Dict[str, str] = Depends(require_account)):
    return get_status(ctx["account_id"])


@router.get("/plans", response_model=PlansResp)
def subscription_plans():
    return {"plans": [plan_view(p) for p in list_active_plans()]}


@router.post("/cancel", response_model=EntitlementResp)
def cancel(ctx: Dict[str, str] = Depends(require_account)):
    return {"entitlement": cancel_subscription(ctx["account_id"])}


@router.post("/reactivate", response_model=EntitlementResp)
def reactivate(ctx: Dict[str, str] = Depends(require_account)):
    return {"entitlement": reactivate_subscription(ctx["account_id"])}


@router.put("/plan", response_model=EntitlementResp)
def update_plan(body: ChangePlanReq, ctx: Dict[str, str] = Depends(require_account)):
    return {"entitlement": change_plan(ctx["account_id"], body.plan_id, body.interval)}
