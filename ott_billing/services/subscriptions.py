"""User-facing subscription management: read, cancel, reactivate, change plan."""
from __future__ import annotations

import logging
from typing import Any, Dict

from ott_billing.core.errors import NotFoundError, ValidationError
from ott_billing.services import entitlements, gateway, plans
from ott_billing.services.entitlements import billing_record_view, entitlement_view, has_access
from ott_billing.services.reconciler import EventKind, SubscriptionEvent, reconcile

logger = logging.getLogger(__name__)


def get_overview(account_id: str, *, limit: int = 50) -> Dict[str, Any]:
    ent = entitlements.get_entitlement(account_id)
    records = entitlements.list_billing_records(account_id, limit=limit)
    return {
        "entitlement": entitlement_view(ent),
        "billingRecords": [billing_record_view(r) for r in records],
    }


def get_status(account_id: str) -> Dict[str, Any]:
    ent = entitlements.get_entitlement(account_id)
    return {"hasActiveSubscription": has_access(ent), "entitlement": entitlement_view(ent)}


def cancel_subscription(account_id: str) -> Dict[str, Any]:
    """Stop renewal at period end. Access continues until then."""
    ent = entitlements.get_entitlement(account_id)
    if ent["status"] == "cancelled":
        return entitlement_view(ent)
    if not ent.get("subscription_id"):
        raise NotFoundError("No subscription to cancel")
    if ent["status"] != "active":
        # An inactive subscription has no access to preserve; cancelling it must not restore any.
        raise ValidationError("Subscription is not active")

    gateway.schedule_cancellation(ent["subscription_id"])
    result = reconcile(SubscriptionEvent(
        kind=EventKind.CANCEL_REQUESTED,
        account_id=account_id,
        subscription_id=ent["subscription_id"],
        source="user",
    ))
    logger.info("Account %s scheduled cancellation of %s", account_id, ent["subscription_id"])
    return entitlement_view(result.entitlement)


def reactivate_subscription(account_id: str) -> Dict[str, Any]:
    ent = entitlements.get_entitlement(account_id)
    if ent["status"] == "active":
        return entitlement_view(ent)
    sub_id = ent.get("subscription_id")
    if ent["status"] != "cancelled" or not sub_id or not has_access(ent):
        raise ValidationError("No cancelled subscription to reactivate; start a new checkout")
    record = entitlements.get_billing_record(account_id, sub_id) or {}
    if record.get("ended_at"):
        raise ValidationError("Subscription has ended; start a new checkout")

    sub = gateway.resume_subscription(sub_id)
    if sub.get("status") not in ("active", "trialing"):
        raise ValidationError("Subscription cannot be reactivated")
    result = reconcile(SubscriptionEvent(
        kind=EventKind.REACTIVATED,
        account_id=account_id,
        subscription_id=sub_id,
        source="user",
    ))
    logger.info("Account %s reactivated %s", account_id, sub_id)
    return entitlement_view(result.entitlement)


def change_plan(account_id: str, plan_id: str, interval: str = "month") -> Dict[str, Any]:
    """Move the running subscription onto another plan or billing interval.

    The gateway prorates; the period is unchanged, so the result goes through
    the reconciler as an ``updated`` event like the webhook that follows it.
    """
    _, price_id = plans.require_price(plan_id, interval)
    ent = entitlements.get_entitlement(account_id)
    sub_id = ent.get("subscription_id")
    if not sub_id:
        raise NotFoundError("No subscription to change")
    if ent["status"] != "active" or not has_access(ent):
        raise ValidationError("Only an active subscription can change plan")
    record = entitlements.get_billing_record(account_id, sub_id) or {}
    if ent.get("plan_id") == plan_id and record.get("interval") == interval:
        return entitlement_view(ent)

    sub = gateway.change_subscription_price(sub_id, price_id)
    result = reconcile(SubscriptionEvent.from_subscription(
        EventKind.UPDATED,
        account_id,
        sub,
        plan_id=plan_id,
        source="user",
    ))
    logger.info("Account %s moved %s to plan=%s/%s", account_id, sub_id, plan_id, interval)
    return entitlement_view(result.entitlement)
