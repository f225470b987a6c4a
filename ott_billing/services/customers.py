"""Maps accounts to their payment gateway customer."""
from __future__ import annotations

import logging
from typing import Any, Dict

from ott_billing.core.errors import NotFoundError
from ott_billing.services import accounts, gateway

logger = logging.getLogger(__name__)


def resolve_customer_id(account: Dict[str, Any]) -> str:
    """Return the account's gateway customer id, provisioning one on first use.

    Two concurrent first calls may both reach the gateway; the conditional write
    lets exactly one id stick and the loser adopts it.
    """
    existing = account.get("gateway_customer_id")
    if existing:
        return existing

    account_id = account["account_id"]
    customer_id = gateway.create_customer(account)
    if accounts.set_customer_id_if_absent(account_id, customer_id):
        logger.info("Linked account %s to gateway customer %s", account_id, customer_id)
        return customer_id

    winner = accounts.require_account(account_id).get("gateway_customer_id")
    if not winner:
        # Condition failed without a stored id: the account vanished between reads.
        raise NotFoundError("Account not found")
    if winner != customer_id:
        logger.warning(
            "Customer race for account %s: keeping %s, orphaned %s",
            account_id,
            winner,
            customer_id,
        )
    return winner
