from __future__ import annotations

from typing import Any, Dict

import pytest

from conftest import PERIOD_1, PERIOD_2, create_linked_account
from ott_billing.core.errors import ConflictError, WriteConflict
from ott_billing.services import entitlements
from ott_billing.services.reconciler import EventKind, Outcome, SubscriptionEvent, reconcile


def sub_event(kind: EventKind, *, sub_id: str = "sub_1", period=PERIOD_1, status: str = "active", **extra: Any) -> SubscriptionEvent:
    return SubscriptionEvent(
        kind=kind,
        account_id="acct-1",
        subscription_id=sub_id,
        gateway_status=status,
        period_start=period[0],
        period_end=period[1],
        plan_id=extra.pop("plan_id", "premium"),
        amount_cents=1999,
        currency="usd",
        interval="month",
        **extra,
    )


def comparable(ent: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in ent.items() if k != "updated_at"}


def test_created_grants_access_and_records_subscription(tables) -> None:
    create_linked_account()

    result = reconcile(sub_event(EventKind.CREATED))

    assert result.outcome is Outcome.APPLIED
    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "active"
    assert ent["plan_id"] == "premium"
    assert ent["period_end"] == PERIOD_1[1]
    assert ent["auto_renew"] is True
    assert entitlements.has_access(ent)
    record = entitlements.get_billing_record("acct-1", "sub_1")
    assert record["status"] == "active"
    assert record["amount_cents"] == 1999
    assert record["last_event"] == "created"


def test_redelivery_is_a_no_op(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED))
    before = tables["accounts"].items[("acct-1",)]["version"]
    writes = tables["billing"].writes + tables["accounts"].writes

    result = reconcile(sub_event(EventKind.CREATED))

    assert result.outcome is Outcome.UNCHANGED
    assert tables["accounts"].items[("acct-1",)]["version"] == before
    assert tables["billing"].writes + tables["accounts"].writes == writes


def test_older_event_after_newer_is_discarded(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.UPDATED, period=PERIOD_2))

    result = reconcile(sub_event(EventKind.CREATED, period=PERIOD_1))

    assert result.outcome is Outcome.STALE
    ent = entitlements.get_entitlement("acct-1")
    assert ent["period_end"] == PERIOD_2[1]
    assert entitlements.get_billing_record("acct-1", "sub_1")["period_end"] == PERIOD_2[1]


@pytest.mark.parametrize("first,second", [
    (EventKind.CLIENT_CONFIRMED, EventKind.CREATED),
    (EventKind.CREATED, EventKind.CLIENT_CONFIRMED),
])
def test_confirm_and_webhook_converge_in_either_order(tables, first, second) -> None:
    create_linked_account()
    reconcile(sub_event(first))
    reconcile(sub_event(second))
    converged = comparable(entitlements.get_entitlement("acct-1"))

    assert converged["status"] == "active"
    assert converged["period_end"] == PERIOD_1[1]
    assert len(entitlements.list_billing_records("acct-1")) == 1


def test_payment_failed_then_deleted(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CLIENT_CONFIRMED, source="client"))

    reconcile(SubscriptionEvent(
        kind=EventKind.PAYMENT_FAILED,
        account_id="acct-1",
        subscription_id="sub_1",
        period_start=PERIOD_2[0],
        period_end=PERIOD_2[1],
    ))
    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "inactive"
    assert ent["period_end"] == PERIOD_1[1]
    assert not entitlements.has_access(ent)

    reconcile(sub_event(EventKind.DELETED, status="canceled"))
    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "cancelled"
    assert ent["auto_renew"] is False
    assert ent["cancelled_at"] is not None
    record = entitlements.get_billing_record("acct-1", "sub_1")
    assert record["status"] == "cancelled"
    assert record["ended_at"]


def test_payment_succeeded_extends_period(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED))

    result = reconcile(SubscriptionEvent(
        kind=EventKind.PAYMENT_SUCCEEDED,
        account_id="acct-1",
        subscription_id="sub_1",
        period_start=PERIOD_2[0],
        period_end=PERIOD_2[1],
    ))

    assert result.outcome is Outcome.APPLIED
    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "active"
    assert ent["period_end"] == PERIOD_2[1]


def test_cancel_request_keeps_period_and_is_idempotent(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED))
    cancel = SubscriptionEvent(kind=EventKind.CANCEL_REQUESTED, account_id="acct-1", subscription_id="sub_1", source="user")

    reconcile(cancel)
    first = entitlements.get_entitlement("acct-1")
    second_result = reconcile(cancel)

    assert first["status"] == "cancelled"
    assert first["auto_renew"] is False
    assert first["period_end"] == PERIOD_1[1]
    assert second_result.outcome is Outcome.UNCHANGED
    assert second_result.entitlement["cancelled_at"] == first["cancelled_at"]


def test_scheduled_cancellation_from_gateway_maps_to_cancelled(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.UPDATED, cancel_at_period_end=True))

    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "cancelled"
    assert entitlements.has_access(ent)


def test_deleted_subscription_stays_ended(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED))
    reconcile(sub_event(EventKind.DELETED, status="canceled"))

    reconcile(sub_event(EventKind.UPDATED))

    assert entitlements.get_entitlement("acct-1")["status"] == "cancelled"


def test_incomplete_subscription_does_not_grant_access(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED, status="incomplete"))

    ent = entitlements.get_entitlement("acct-1")
    assert ent["status"] == "inactive"
    assert not entitlements.has_access(ent)


def test_events_for_foreign_subscription_only_touch_its_record(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED, sub_id="sub_new", period=PERIOD_2))

    reconcile(SubscriptionEvent(
        kind=EventKind.PAYMENT_FAILED,
        account_id="acct-1",
        subscription_id="sub_old",
        period_end=PERIOD_1[1],
    ))

    ent = entitlements.get_entitlement("acct-1")
    assert ent["subscription_id"] == "sub_new"
    assert ent["status"] == "active"
    assert entitlements.get_billing_record("acct-1", "sub_old")["status"] == "inactive"


def test_resubscribe_gets_new_record(tables) -> None:
    create_linked_account()
    reconcile(sub_event(EventKind.CREATED, sub_id="sub_1", period=PERIOD_1))
    reconcile(sub_event(EventKind.DELETED, sub_id="sub_1", period=PERIOD_1, status="canceled"))

    reconcile(sub_event(EventKind.CREATED, sub_id="sub_2", period=PERIOD_2, plan_id="basic"))

    ent = entitlements.get_entitlement("acct-1")
    assert ent["subscription_id"] == "sub_2"
    assert ent["plan_id"] == "basic"
    assert ent["status"] == "active"
    assert ent["cancelled_at"] is None
    assert {r["subscription_id"] for r in entitlements.list_billing_records("acct-1")} == {"sub_1", "sub_2"}


def test_event_without_period_is_rejected(tables) -> None:
    create_linked_account()
    with pytest.raises(ValueError):
        reconcile(SubscriptionEvent(kind=EventKind.CREATED, account_id="acct-1", subscription_id="sub_1"))
    assert entitlements.get_entitlement("acct-1")["status"] == "free"


def test_version_conflict_retries_from_fresh_read(tables, monkeypatch) -> None:
    create_linked_account()
    real_apply = entitlements.apply_entitlement
    calls = {"n": 0}

    def flaky_apply(snapshot, patch):
        calls["n"] += 1
        if calls["n"] == 1:
            raise WriteConflict("concurrent writer")
        return real_apply(snapshot, patch)

    monkeypatch.setattr(entitlements, "apply_entitlement", flaky_apply)
    result = reconcile(sub_event(EventKind.CREATED))

    assert calls["n"] == 2
    assert result.entitlement["status"] == "active"


def test_persistent_conflict_surfaces_as_409(tables, monkeypatch, settings) -> None:
    create_linked_account()
    settings(reconcile_max_attempts=2)

    def always_conflict(snapshot, patch):
        raise WriteConflict("concurrent writer")

    monkeypatch.setattr(entitlements, "apply_entitlement", always_conflict)
    with pytest.raises(ConflictError) as exc:
        reconcile(sub_event(EventKind.CREATED))
    assert exc.value.status_code == 409
