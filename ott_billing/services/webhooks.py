"""Webhook Ingestion Handler.

Signature verification runs on the raw body before anything is parsed or looked
up. Once an event is authentic it is always acknowledged, even when processing
fails, so the gateway does not keep redelivering it; failures are logged.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from ott_billing.metrics import count_webhook
from ott_billing.services import accounts, gateway, plans
from ott_billing.services.reconciler import EventKind, SubscriptionEvent, reconcile

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[Dict[str, Any]], str]


def resolve_account_id(customer_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Map a gateway customer to an account.

    The customer index is eventually consistent, so a freshly linked customer
    may not show up yet. In that case the ``account_id`` carried in metadata is
    accepted only if the account really is linked to this customer.
    """
    if not customer_id:
        return None
    account = accounts.find_by_customer_id(customer_id)
    if account:
        return account["account_id"]
    claimed = (metadata or {}).get("account_id")
    if claimed:
        account = accounts.get_account(claimed)
        if account and account.get("gateway_customer_id") == customer_id:
            return claimed
    return None


def _plan_id(price_id: Optional[str], metadata: Dict[str, Any]) -> Optional[str]:
    plan = plans.plan_for_price(price_id)
    if plan:
        return plan["plan_id"]
    return metadata.get("plan_id")


def _subscription_handler(kind: EventKind) -> WebhookHandler:
    def handle(obj: Dict[str, Any]) -> str:
        sub = gateway.normalize_subscription(obj)
        account_id = resolve_account_id(sub["customer_id"], sub["metadata"])
        if not account_id:
            logger.warning(
                "No account for customer %s (subscription %s); ignoring %s",
                sub["customer_id"],
                sub["subscription_id"],
                kind.value,
            )
            return "unknown_account"
        event = SubscriptionEvent.from_subscription(
            kind,
            account_id,
            sub,
            plan_id=_plan_id(sub["price_id"], sub["metadata"]),
        )
        return reconcile(event).outcome.value

    return handle


def _invoice_subscription(invoice: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    # Older API versions put the subscription on the invoice, newer ones under parent.
    details = gateway.as_dict(gateway.as_dict(invoice.get("parent")).get("subscription_details"))
    sub_id = gateway.ref_id(invoice.get("subscription")) or gateway.ref_id(details.get("subscription"))
    metadata = dict(details.get("metadata") or gateway.as_dict(invoice.get("subscription_details")).get("metadata") or {})
    return sub_id, metadata


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    lines = (gateway.as_dict(invoice.get("lines")).get("data") or [])
    if not lines:
        return None, None
    period = gateway.as_dict(gateway.as_dict(lines[0]).get("period"))
    start, end = period.get("start"), period.get("end")
    return (int(start) if start is not None else None, int(end) if end is not None else None)


def _invoice_handler(kind: EventKind) -> WebhookHandler:
    def handle(obj: Dict[str, Any]) -> str:
        invoice = gateway.as_dict(obj)
        sub_id, metadata = _invoice_subscription(invoice)
        if not sub_id:
            logger.info("Invoice %s is not tied to a subscription", invoice.get("id"))
            return "ignored"

        customer_id = gateway.ref_id(invoice.get("customer"))
        account_id = resolve_account_id(customer_id, metadata)
        if not account_id:
            logger.warning("No account for customer %s (invoice %s); ignoring %s", customer_id, invoice.get("id"), kind.value)
            return "unknown_account"

        period_start, period_end = _invoice_period(invoice)
        if kind is EventKind.PAYMENT_SUCCEEDED and period_end is None:
            sub = gateway.retrieve_subscription(sub_id)
            period_start, period_end = sub["period_start"], sub["period_end"]

        event = SubscriptionEvent(
            kind=kind,
            account_id=account_id,
            subscription_id=sub_id,
            period_start=period_start,
            period_end=period_end,
            currency=(invoice.get("currency") or "").lower() or None,
        )
        return reconcile(event).outcome.value

    return handle


_HANDLERS: Dict[str, WebhookHandler] = {
    "customer.subscription.created": _subscription_handler(EventKind.CREATED),
    "customer.subscription.updated": _subscription_handler(EventKind.UPDATED),
    "customer.subscription.deleted": _subscription_handler(EventKind.DELETED),
    "invoice.payment_succeeded": _invoice_handler(EventKind.PAYMENT_SUCCEEDED),
    "invoice.payment_failed": _invoice_handler(EventKind.PAYMENT_FAILED),
}
_HANDLERS.update({
    "subscription.created": _HANDLERS["customer.subscription.created"],
    "subscription.updated": _HANDLERS["customer.subscription.updated"],
    "subscription.deleted": _HANDLERS["customer.subscription.deleted"],
})


def ingest(raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
    """Verify, dispatch and acknowledge one gateway delivery.

    ``GatewaySignatureError`` propagates so the caller answers 400 and the
    gateway retries; nothing is read or written before verification succeeds.
    """
    event = gateway.verify_signature(raw_body, signature_header)
    event_type = str(event.get("type") or "")
    event_id = event.get("id")

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Acknowledging unhandled event %s (%s)", event_type, event_id)
        outcome = "unhandled"
    else:
        obj = gateway.as_dict(gateway.as_dict(event.get("data")).get("object"))
        try:
            outcome = handler(obj)
        except Exception:
            logger.exception("Failed to process %s event %s", event_type, event_id)
            outcome = "error"

    count_webhook(event_type if handler else "unhandled", outcome)
    return {"received": True, "kind": event_type, "outcome": outcome}
