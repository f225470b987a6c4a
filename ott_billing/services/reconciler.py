"""Subscription Reconciler.

Merges events from the client confirmation path and the webhook stream into the
entitlement store. Both paths may deliver the same fact more than once and in any
order, so every transition is idempotent and guarded by the ordering rule: an
event whose period end is older than what is stored is discarded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ott_billing.core.errors import ConflictError, ReconciliationConflict, WriteConflict
from ott_billing.core.settings import S
from ott_billing.core.time import now_ts
from ott_billing.metrics import RECONCILE_OUTCOMES, RECONCILE_RETRIES
from ott_billing.services import entitlements
from ott_billing.services.entitlements import EntitlementSnapshot

logger = logging.getLogger(__name__)

ACTIVE_GATEWAY_STATUSES = frozenset({"active", "trialing"})


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CLIENT_CONFIRMED = "client_confirmed"
    CANCEL_REQUESTED = "cancel_requested"
    REACTIVATED = "reactivated"


# Kinds that may move an account onto a different subscription.
ADOPTING_KINDS = frozenset({EventKind.CREATED, EventKind.UPDATED, EventKind.CLIENT_CONFIRMED})


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"


@dataclass(frozen=True)
class SubscriptionEvent:
    kind: EventKind
    account_id: str
    subscription_id: str
    gateway_status: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    plan_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    cancel_at_period_end: bool = False
    source: str = "webhook"

    @classmethod
    def from_subscription(
        cls,
        kind: EventKind,
        account_id: str,
        sub: Dict[str, Any],
        *,
        plan_id: Optional[str] = None,
        source: str = "webhook",
    ) -> "SubscriptionEvent":
        """Build an event from a normalized gateway subscription."""
        return cls(
            kind=kind,
            account_id=account_id,
            subscription_id=sub["subscription_id"],
            gateway_status=sub.get("status"),
            period_start=sub.get("period_start"),
            period_end=sub.get("period_end"),
            plan_id=plan_id,
            amount_cents=sub.get("amount_cents"),
            currency=sub.get("currency"),
            interval=sub.get("interval"),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            source=source,
        )


@dataclass(frozen=True)
class Transition:
    entitlement: Dict[str, Any]
    record: Dict[str, Any]
    # Incoming period end checked by the ordering rule; None for user-initiated moves.
    guard: Optional[int] = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    entitlement: Dict[str, Any]
    record: Optional[Dict[str, Any]] = field(default=None)


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _require_period(event: SubscriptionEvent) -> None:
    if event.period_end is None:
        raise ValueError(f"{event.kind.value} event for {event.subscription_id} has no period end")
    if event.period_start is not None and event.period_end <= event.period_start:
        raise ValueError(f"{event.kind.value} event for {event.subscription_id} has an empty period")


def _plan_for(event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any]) -> Optional[str]:
    if event.plan_id:
        return event.plan_id
    if record.get("plan_id"):
        return record["plan_id"]
    if ent.get("subscription_id") == event.subscription_id:
        return ent.get("plan_id")
    return None


def _gateway_state(event: SubscriptionEvent, record: Dict[str, Any]) -> str:
    if record.get("ended_at"):
        # Deletion is terminal for a subscription id, whatever arrives after it.
        return "cancelled"
    if event.gateway_status is not None and event.gateway_status not in ACTIVE_GATEWAY_STATUSES:
        return "inactive"
    # A cancellation scheduled at the gateway keeps access but stops renewal.
    return "cancelled" if event.cancel_at_period_end else "active"


def _subscription_snapshot(
    event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int
) -> Transition:
    _require_period(event)
    status = _gateway_state(event, record)
    plan_id = _plan_for(event, ent, record)
    cancelled_at = None
    if status == "cancelled":
        cancelled_at = record.get("cancelled_at") or now

    ent_patch = _compact({
        "plan_id": plan_id,
        "period_start": event.period_start,
        "period_end": event.period_end,
    })
    ent_patch.update({
        "status": status,
        "subscription_id": event.subscription_id,
        "auto_renew": status == "active",
        "cancelled_at": cancelled_at,
    })
    record_patch = _compact({
        "plan_id": plan_id,
        "period_start": event.period_start,
        "period_end": event.period_end,
        "amount_cents": event.amount_cents,
        "currency": event.currency,
        "interval": event.interval,
    })
    record_patch.update({"status": status, "cancelled_at": cancelled_at})
    return Transition(entitlement=ent_patch, record=record_patch, guard=event.period_end)


def _on_created(event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int) -> Transition:
    return _subscription_snapshot(event, ent, record, now)


def _on_updated(event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int) -> Transition:
    return _subscription_snapshot(event, ent, record, now)


def _on_deleted(event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int) -> Transition:
    cancelled_at = record.get("cancelled_at") or ent.get("cancelled_at") or now
    record_patch = _compact({"period_start": event.period_start, "period_end": event.period_end})
    record_patch.update({
        "status": "cancelled",
        "cancelled_at": cancelled_at,
        "ended_at": record.get("ended_at") or now,
    })
    return Transition(
        entitlement={"status": "cancelled", "auto_renew": False, "cancelled_at": cancelled_at},
        record=record_patch,
        guard=event.period_end,
    )


def _on_payment_succeeded(
    event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int
) -> Transition:
    _require_period(event)
    return Transition(
        entitlement={"period_end": event.period_end},
        record=_compact({
            "period_end": event.period_end,
            "amount_cents": event.amount_cents,
            "currency": event.currency,
        }),
        guard=event.period_end,
    )


def _on_payment_failed(
    event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int
) -> Transition:
    # Immediate revocation; no grace period.
    return Transition(
        entitlement={"status": "inactive"},
        record={"status": "inactive"},
        guard=event.period_end,
    )


def _on_cancel_requested(
    event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int
) -> Transition:
    cancelled_at = ent.get("cancelled_at") or now
    return Transition(
        entitlement={"status": "cancelled", "auto_renew": False, "cancelled_at": cancelled_at},
        record={"status": "cancelled", "cancelled_at": cancelled_at},
    )


def _on_reactivated(
    event: SubscriptionEvent, ent: Dict[str, Any], record: Dict[str, Any], now: int
) -> Transition:
    return Transition(
        entitlement={"status": "active", "auto_renew": True, "cancelled_at": None},
        record={"status": "active", "cancelled_at": None},
    )


TransitionFn = Callable[[SubscriptionEvent, Dict[str, Any], Dict[str, Any], int], Transition]

_TRANSITIONS: Dict[EventKind, TransitionFn] = {
    EventKind.CREATED: _on_created,
    EventKind.UPDATED: _on_updated,
    EventKind.CLIENT_CONFIRMED: _on_created,
    EventKind.DELETED: _on_deleted,
    EventKind.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.PAYMENT_FAILED: _on_payment_failed,
    EventKind.CANCEL_REQUESTED: _on_cancel_requested,
    EventKind.REACTIVATED: _on_reactivated,
}


def _changes(current: Dict[str, Any], patch: Dict[str, Any]) -> bool:
    for key, value in patch.items():
        stored = current.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and stored is not None:
            stored = int(stored)
        if stored != value:
            return True
    return False


def _touches_entitlement(event: SubscriptionEvent, ent: Dict[str, Any]) -> bool:
    current = ent.get("subscription_id")
    return event.kind in ADOPTING_KINDS or (current is not None and current == event.subscription_id)


def _check_order(subscription_id: str, guard: Optional[int], stored: Any) -> None:
    if guard is not None and stored is not None and int(guard) < int(stored):
        raise ReconciliationConflict(subscription_id, int(guard), int(stored))


def _apply_once(event: SubscriptionEvent, transition_fn: TransitionFn) -> ReconcileResult:
    snapshot: EntitlementSnapshot = entitlements.load_snapshot(event.account_id)
    record = entitlements.get_billing_record(event.account_id, event.subscription_id) or {}
    transition = transition_fn(event, snapshot.entitlement, record, now_ts())

    changed = False
    _check_order(event.subscription_id, transition.guard, record.get("period_end"))
    if not record or _changes(record, transition.record):
        record = entitlements.upsert_billing_record(
            event.account_id,
            event.subscription_id,
            {**transition.record, "last_event": event.kind.value},
            guard_period_end=transition.guard,
        )
        changed = True

    if _touches_entitlement(event, snapshot.entitlement):
        try:
            _check_order(event.subscription_id, transition.guard, snapshot.entitlement.get("period_end"))
        except ReconciliationConflict:
            if not changed:
                raise
            # Older subscription: its own record moved, the entitlement stays on the newer one.
            logger.debug(
                "Entitlement for %s tracks a later period than %s; updated billing record only",
                event.account_id,
                event.subscription_id,
            )
        else:
            if _changes(snapshot.entitlement, transition.entitlement):
                snapshot = entitlements.apply_entitlement(snapshot, transition.entitlement)
                changed = True

    return ReconcileResult(Outcome.APPLIED if changed else Outcome.UNCHANGED, snapshot.entitlement, record)


def reconcile(event: SubscriptionEvent) -> ReconcileResult:
    """Apply ``event`` atomically per item, retrying from a fresh read on version conflicts."""
    transition_fn = _TRANSITIONS[event.kind]
    attempts = max(1, S.reconcile_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = _apply_once(event, transition_fn)
        except ReconciliationConflict as exc:
            logger.debug("Discarding %s from %s: %s", event.kind.value, event.source, exc)
            RECONCILE_OUTCOMES.labels(kind=event.kind.value, outcome=Outcome.STALE.value).inc()
            return ReconcileResult(Outcome.STALE, entitlements.get_entitlement(event.account_id))
        except WriteConflict:
            RECONCILE_RETRIES.inc()
            logger.info(
                "Write conflict reconciling %s for account %s (attempt %s/%s)",
                event.kind.value,
                event.account_id,
                attempt,
                attempts,
            )
            continue

        RECONCILE_OUTCOMES.labels(kind=event.kind.value, outcome=result.outcome.value).inc()
        if result.outcome is Outcome.APPLIED:
            logger.info(
                "Reconciled %s from %s: account=%s subscription=%s status=%s period_end=%s",
                event.kind.value,
                event.source,
                event.account_id,
                event.subscription_id,
                result.entitlement.get("status"),
                result.entitlement.get("period_end"),
            )
        return result

    raise ConflictError("Subscription is being updated, retry shortly")
