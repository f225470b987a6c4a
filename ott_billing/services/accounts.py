"""Account Store collaborator.

Accounts live in their own table keyed by ``account_id`` and carry the embedded
entitlement map. Only the entitlement store writes that map after creation.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from ott_billing.core.errors import NotFoundError
from ott_billing.core.settings import S
from ott_billing.core.tables import T
from ott_billing.core.time import now_ts
from ott_billing.services.ddb import ddb_get, ddb_put, ddb_query, ddb_update, is_conditional_failure

logger = logging.getLogger(__name__)


def default_entitlement() -> Dict[str, Any]:
    return {
        "plan_id": None,
        "status": "free",
        "period_start": None,
        "period_end": None,
        "auto_renew": False,
        "subscription_id": None,
        "cancelled_at": None,
        "updated_at": 0,
    }


def get_account(account_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get(T.accounts, {"account_id": account_id})


def require_account(account_id: str) -> Dict[str, Any]:
    account = get_account(account_id)
    if not account:
        raise NotFoundError("Account not found")
    return account


def create_account(account_id: str, *, email: str = "", display_name: str = "") -> Dict[str, Any]:
    ts = now_ts()
    item = {
        "account_id": account_id,
        "email": email,
        "display_name": display_name,
        "entitlement": default_entitlement(),
        "version": 1,
        "created_at": ts,
        "updated_at": ts,
    }
    try:
        ddb_put(T.accounts, item, condition_expression="attribute_not_exists(account_id)")
    except ClientError as exc:
        if is_conditional_failure(exc):
            return require_account(account_id)
        raise
    return item


def find_by_customer_id(customer_id: str) -> Optional[Dict[str, Any]]:
    if not customer_id:
        return None
    items = ddb_query(
        T.accounts,
        "gateway_customer_id = :c",
        {":c": customer_id},
        index_name=S.accounts_customer_index,
        limit=1,
    )
    if not items:
        return None
    # GSI reads are eventually consistent and may be projected; re-read the base item.
    return get_account(items[0]["account_id"])


def set_customer_id_if_absent(account_id: str, customer_id: str) -> bool:
    """Attach ``customer_id`` unless the account already has one. True when this call won."""
    try:
        ddb_update(
            T.accounts,
            {"account_id": account_id},
            "SET gateway_customer_id = :c, updated_at = :t",
            {":c": customer_id, ":t": now_ts()},
            condition_expression="attribute_exists(account_id) AND attribute_not_exists(gateway_customer_id)",
        )
    except ClientError as exc:
        if is_conditional_failure(exc):
            return False
        raise
    return True
