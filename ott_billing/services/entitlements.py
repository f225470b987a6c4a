"""Entitlement Store.

The account-embedded entitlement and the per-subscription billing records are one
logical aggregate. Writes are single-item and conditional: entitlements on the
account ``version``, billing records on the stored ``period_end``.

Billing records live under their account (``ACCOUNT#<id>`` / ``SUB#<id>``). That
key is unique per subscription id only because a gateway customer is linked to
exactly one account and a subscription never changes customer. Customers are
only created per account by ``customers.resolve_customer_id``, and webhook
resolution (``webhooks.resolve_account_id``) maps a customer back to that one account.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ott_billing.core.errors import ReconciliationConflict, WriteConflict
from ott_billing.core.tables import T
from ott_billing.core.time import now_ts
from ott_billing.services import accounts
from ott_billing.services.ddb import ddb_get, ddb_query, ddb_update, is_conditional_failure, set_clause

ACCESS_STATUSES = ("active", "cancelled")


@dataclass(frozen=True)
class EntitlementSnapshot:
    account_id: str
    entitlement: Dict[str, Any]
    version: int


def billing_pk(account_id: str) -> str:
    return f"ACCOUNT#{account_id}"


def billing_sk(subscription_id: str) -> str:
    return f"SUB#{subscription_id}"


def _as_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _clean_entitlement(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ent = accounts.default_entitlement()
    ent.update(raw or {})
    for key in ("period_start", "period_end", "cancelled_at", "updated_at"):
        ent[key] = _as_int(ent.get(key))
    ent["auto_renew"] = bool(ent.get("auto_renew"))
    return ent


def load_snapshot(account_id: str) -> EntitlementSnapshot:
    account = accounts.require_account(account_id)
    return EntitlementSnapshot(
        account_id=account_id,
        entitlement=_clean_entitlement(account.get("entitlement")),
        version=int(account.get("version", 0)),
    )


def get_entitlement(account_id: str) -> Dict[str, Any]:
    return load_snapshot(account_id).entitlement


def apply_entitlement(snapshot: EntitlementSnapshot, patch: Dict[str, Any]) -> EntitlementSnapshot:
    """Write ``patch`` over the snapshot's entitlement if nobody wrote since it was read."""
    ts = now_ts()
    merged = {**snapshot.entitlement, **patch, "updated_at": ts}
    try:
        ddb_update(
            T.accounts,
            {"account_id": snapshot.account_id},
            "SET #e = :e, #v = :next, #u = :t",
            {":e": merged, ":next": snapshot.version + 1, ":t": ts, ":v": snapshot.version},
            names={"#e": "entitlement", "#v": "version", "#u": "updated_at"},
            condition_expression="attribute_exists(account_id) AND #v = :v",
        )
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise WriteConflict(f"entitlement for {snapshot.account_id} changed since version {snapshot.version}") from exc
        raise
    return EntitlementSnapshot(snapshot.account_id, merged, snapshot.version + 1)


def get_billing_record(account_id: str, subscription_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get(T.billing, {"pk": billing_pk(account_id), "sk": billing_sk(subscription_id)})


def upsert_billing_record(
    account_id: str,
    subscription_id: str,
    patch: Dict[str, Any],
    *,
    guard_period_end: Optional[int] = None,
) -> Dict[str, Any]:
    """Create or update the record for ``subscription_id`` in one conditional write.

    With ``guard_period_end`` the write only lands when the stored period end is
    not newer; otherwise ``ReconciliationConflict`` is raised and nothing changes.
    """
    ts = now_ts()
    fields = {k: v for k, v in patch.items() if k not in ("pk", "sk")}
    fields.update({"subscription_id": subscription_id, "account_id": account_id, "updated_at": ts})
    assignments, names, values = set_clause(fields)
    names["#c"] = "created_at"
    values[":now"] = ts
    expr = f"SET {assignments}, #c = if_not_exists(#c, :now)"

    condition = None
    if guard_period_end is not None:
        names["#pe"] = "period_end"
        values[":guard"] = int(guard_period_end)
        condition = "attribute_not_exists(sk) OR attribute_not_exists(#pe) OR #pe <= :guard"

    key = {"pk": billing_pk(account_id), "sk": billing_sk(subscription_id)}
    try:
        return ddb_update(T.billing, key, expr, values, names=names, condition_expression=condition)
    except ClientError as exc:
        if is_conditional_failure(exc):
            stored = get_billing_record(account_id, subscription_id) or {}
            raise ReconciliationConflict(
                subscription_id,
                int(guard_period_end or 0),
                int(stored.get("period_end") or 0),
            ) from exc
        raise


def list_billing_records(account_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
    items = ddb_query(
        T.billing,
        "pk = :pk AND begins_with(sk, :p)",
        {":pk": billing_pk(account_id), ":p": "SUB#"},
    )
    items.sort(key=lambda x: int(x.get("created_at", 0)), reverse=True)
    return items[: max(1, min(limit, 200))]


def has_access(entitlement: Dict[str, Any], now: Optional[int] = None) -> bool:
    period_end = entitlement.get("period_end")
    if entitlement.get("status") not in ACCESS_STATUSES or period_end is None:
        return False
    return (now if now is not None else now_ts()) < int(period_end)


def entitlement_view(entitlement: Dict[str, Any], now: Optional[int] = None) -> Dict[str, Any]:
    return {
        "planId": entitlement.get("plan_id"),
        "status": entitlement.get("status", "free"),
        "periodStart": _as_int(entitlement.get("period_start")),
        "periodEnd": _as_int(entitlement.get("period_end")),
        "autoRenew": bool(entitlement.get("auto_renew")),
        "subscriptionId": entitlement.get("subscription_id"),
        "cancelledAt": _as_int(entitlement.get("cancelled_at")),
        "hasAccess": has_access(entitlement, now),
    }


def billing_record_view(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "subscriptionId": record.get("subscription_id"),
        "planId": record.get("plan_id"),
        "status": record.get("status"),
        "periodStart": _as_int(record.get("period_start")),
        "periodEnd": _as_int(record.get("period_end")),
        "amountCents": _as_int(record.get("amount_cents")),
        "currency": record.get("currency"),
        "interval": record.get("interval"),
        "cancelledAt": _as_int(record.get("cancelled_at")),
        "createdAt": _as_int(record.get("created_at")),
        "updatedAt": _as_int(record.get("updated_at")),
    }
