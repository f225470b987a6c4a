"""Checkout Session Initiator and Client Confirmation Handler."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ott_billing.core.errors import NotFoundError, ValidationError
from ott_billing.core.settings import S
from ott_billing.core.tables import T
from ott_billing.core.time import now_ts
from ott_billing.services import accounts, customers, entitlements, gateway, plans
from ott_billing.services.ddb import ddb_get, ddb_put
from ott_billing.services.entitlements import entitlement_view
from ott_billing.services.reconciler import EventKind, SubscriptionEvent, reconcile

logger = logging.getLogger(__name__)

PAID_SESSION_STATUSES = ("paid", "no_payment_required")


def checkout_key(session_id: str) -> Dict[str, str]:
    return {"pk": f"CHECKOUT#{session_id}", "sk": "SESSION"}


def success_url() -> str:
    return S.stripe_success_url or f"{S.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"


def cancel_url() -> str:
    return S.stripe_cancel_url or f"{S.frontend_url}/plans"


def _reject_live_subscription(account_id: str) -> None:
    ent = entitlements.get_entitlement(account_id)
    if not entitlements.has_access(ent):
        return
    if ent["status"] == "cancelled":
        raise ValidationError("Subscription is cancelled but still running; reactivate it instead")
    raise ValidationError("Account already has an active subscription; change its plan instead")


def start_checkout(account_id: str, plan_id: str, interval: str = "month") -> Dict[str, str]:
    """Open a hosted checkout for ``plan_id``.

    An account holds at most one live subscription: while the entitlement still
    grants access a new checkout is refused.
    """
    _, price_id = plans.require_price(plan_id, interval)
    account = accounts.require_account(account_id)
    _reject_live_subscription(account_id)

    customer_id = customers.resolve_customer_id(account)
    metadata = {"account_id": account_id, "plan_id": plan_id, "price_id": price_id}
    session = gateway.create_checkout_session(
        price_id,
        customer_id,
        success_url(),
        cancel_url(),
        metadata=metadata,
    )

    ts = now_ts()
    ddb_put(T.billing, {
        **checkout_key(session["id"]),
        "session_id": session["id"],
        "account_id": account_id,
        "plan_id": plan_id,
        "interval": interval,
        "price_id": price_id,
        "created_at": ts,
        S.ddb_ttl_attr: ts + S.checkout_session_ttl_seconds,
    })
    logger.info("Checkout %s started for account %s plan=%s/%s", session["id"], account_id, plan_id, interval)
    return {"sessionId": session["id"], "redirectUrl": session["url"]}


def _load_correlation(account_id: str, session_id: str) -> Dict[str, Any]:
    corr = ddb_get(T.billing, checkout_key(session_id)) if session_id else None
    if not corr or corr.get("account_id") != account_id:
        raise NotFoundError("Checkout session not found")
    # DynamoDB TTL deletes lazily, so expiry is checked here as well.
    expires_at = corr.get(S.ddb_ttl_attr)
    if expires_at is not None and int(expires_at) <= now_ts():
        raise NotFoundError("Checkout session not found")
    return corr


def _resolve_plan_id(sub: Dict[str, Any], fallback: Optional[str]) -> Optional[str]:
    plan = plans.plan_for_price(sub.get("price_id"))
    return plan["plan_id"] if plan else fallback


def confirm_checkout(account_id: str, session_id: str) -> Dict[str, Any]:
    """Make a completed checkout visible right away.

    Nothing from the redirect is trusted: the session and its subscription are
    re-read from the gateway and replayed through the reconciler, so repeated
    calls converge on the same state.
    """
    corr = _load_correlation(account_id, session_id)
    session = gateway.retrieve_checkout_session(session_id)
    if session["metadata"].get("account_id", account_id) != account_id:
        raise NotFoundError("Checkout session not found")
    if session["payment_status"] not in PAID_SESSION_STATUSES or not session["subscription_id"]:
        raise ValidationError("Payment not completed")

    sub = gateway.retrieve_subscription(session["subscription_id"])
    event = SubscriptionEvent.from_subscription(
        EventKind.CLIENT_CONFIRMED,
        account_id,
        sub,
        plan_id=_resolve_plan_id(sub, corr.get("plan_id")),
        source="client",
    )
    result = reconcile(event)
    return entitlement_view(result.entitlement)
