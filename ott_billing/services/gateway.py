"""Stripe-backed payment gateway adapter.

Every call runs with a bounded timeout and the library's own capped retries.
Network failures surface as ``GatewayUnavailableError`` so nothing downstream
grants access on an unconfirmed call.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import stripe

from ott_billing.core.errors import (
    GatewayNotConfiguredError,
    GatewaySignatureError,
    GatewayUnavailableError,
    ValidationError,
)
from ott_billing.core.settings import S
from ott_billing.metrics import GATEWAY_ERRORS, SIGNATURE_FAILURES

logger = logging.getLogger(__name__)

_configured_key: Optional[str] = None


def ensure_gateway_configured() -> None:
    global _configured_key
    if not S.stripe_secret_key:
        raise GatewayNotConfiguredError("Stripe is not configured")
    if _configured_key == S.stripe_secret_key:
        return
    stripe.api_key = S.stripe_secret_key
    stripe.max_network_retries = S.gateway_max_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=S.gateway_timeout_seconds)
    _configured_key = S.stripe_secret_key


@contextmanager
def _gateway_call(operation: str) -> Iterator[None]:
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        GATEWAY_ERRORS.labels(operation=operation).inc()
        logger.warning("Gateway %s unavailable: %s", operation, exc)
        raise GatewayUnavailableError() from exc
    except stripe.InvalidRequestError as exc:
        GATEWAY_ERRORS.labels(operation=operation).inc()
        logger.warning("Gateway %s rejected request: %s", operation, exc)
        raise ValidationError(f"Payment gateway rejected {operation}") from exc
    except stripe.StripeError as exc:
        GATEWAY_ERRORS.labels(operation=operation).inc()
        logger.error("Gateway %s failed: %s", operation, exc)
        raise GatewayUnavailableError() from exc


def as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def ref_id(value: Any) -> Optional[str]:
    """Stripe references are either bare ids or expanded objects."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return as_dict(value).get("id")


def _int_or_none(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def normalize_subscription(obj: Any) -> Dict[str, Any]:
    """Flatten a gateway subscription into the shape the reconciler consumes.

    Newer API versions moved the current period onto the subscription item, so
    both locations are read.
    """
    sub = as_dict(obj)
    items = ((sub.get("items") or {}).get("data") or [{}])
    item = as_dict(items[0]) if items else {}
    price = as_dict(item.get("price"))
    recurring = as_dict(price.get("recurring"))

    period_start = sub.get("current_period_start", item.get("current_period_start"))
    period_end = sub.get("current_period_end", item.get("current_period_end"))

    return {
        "subscription_id": sub.get("id"),
        "item_id": item.get("id"),
        "customer_id": ref_id(sub.get("customer")),
        "status": sub.get("status"),
        "period_start": _int_or_none(period_start),
        "period_end": _int_or_none(period_end),
        "amount_cents": _int_or_none(price.get("unit_amount")),
        "currency": (price.get("currency") or sub.get("currency") or "").lower() or None,
        "interval": recurring.get("interval"),
        "price_id": price.get("id"),
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end", False)),
        "metadata": dict(sub.get("metadata") or {}),
    }


def create_customer(account: Dict[str, Any]) -> str:
    ensure_gateway_configured()
    account_id = account["account_id"]
    with _gateway_call("create_customer"):
        customer = stripe.Customer.create(
            email=account.get("email") or None,
            name=account.get("display_name") or None,
            metadata={"account_id": account_id},
            idempotency_key=f"customer:{account_id}",
        )
    return customer["id"]


def create_checkout_session(
    price_id: str,
    customer_id: str,
    success_url: str,
    cancel_url: str,
    *,
    metadata: Dict[str, str],
) -> Dict[str, str]:
    ensure_gateway_configured()
    with _gateway_call("create_checkout_session"):
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=metadata.get("account_id"),
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    return {"id": session["id"], "url": session["url"]}


def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    ensure_gateway_configured()
    with _gateway_call("retrieve_checkout_session"):
        session = as_dict(stripe.checkout.Session.retrieve(session_id))
    return {
        "id": session.get("id"),
        "payment_status": session.get("payment_status"),
        "status": session.get("status"),
        "subscription_id": ref_id(session.get("subscription")),
        "customer_id": ref_id(session.get("customer")),
        "metadata": dict(session.get("metadata") or {}),
    }


def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    ensure_gateway_configured()
    with _gateway_call("retrieve_subscription"):
        sub = stripe.Subscription.retrieve(subscription_id)
    return normalize_subscription(sub)


def schedule_cancellation(subscription_id: str) -> Dict[str, Any]:
    ensure_gateway_configured()
    with _gateway_call("schedule_cancellation"):
        sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    return normalize_subscription(sub)


def resume_subscription(subscription_id: str) -> Dict[str, Any]:
    ensure_gateway_configured()
    with _gateway_call("resume_subscription"):
        sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
    return normalize_subscription(sub)


def change_subscription_price(subscription_id: str, price_id: str) -> Dict[str, Any]:
    """Swap the subscription's single item onto ``price_id``, prorating the difference."""
    ensure_gateway_configured()
    with _gateway_call("change_subscription_price"):
        current = normalize_subscription(stripe.Subscription.retrieve(subscription_id))
        sub = stripe.Subscription.modify(
            subscription_id,
            items=[{"id": current["item_id"], "price": price_id}],
            proration_behavior="create_prorations",
        )
    return normalize_subscription(sub)


def verify_signature(raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
    """Verify the raw, unparsed body and return the parsed event."""
    if not S.stripe_webhook_secret:
        raise GatewayNotConfiguredError("Stripe webhook secret not configured")
    if not signature_header:
        SIGNATURE_FAILURES.inc()
        raise GatewaySignatureError("Missing signature header")
    try:
        event = stripe.Webhook.construct_event(
            payload=raw_body,
            sig_header=signature_header,
            secret=S.stripe_webhook_secret,
        )
    except (stripe.SignatureVerificationError, ValueError) as exc:
        SIGNATURE_FAILURES.inc()
        logger.warning("Webhook signature verification failed: %s", exc)
        raise GatewaySignatureError() from exc
    return as_dict(event)
