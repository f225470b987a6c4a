from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from ott_billing.auth.deps import require_account
from ott_billing.models import CheckoutConfirmReq, CheckoutReq, CheckoutResp, EntitlementResp
from ott_billing.services.checkout import confirm_checkout, start_checkout

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutResp)
def create_checkout(body: CheckoutReq, ctx: Dict[str, str] = Depends(require_account)):
    return start_checkout(ctx["account_id"], body.plan_id, body.interval)


@router.post("/confirm", response_model=EntitlementResp)
def confirm(body: CheckoutConfirmReq, ctx: Dict[str, str] = Depends(require_account)):
    return {"entitlement": confirm_checkout(ctx["account_id"], body.session_id)}
