from __future__ import annotations

import asyncio
import copy
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest
import stripe
from botocore.exceptions import ClientError
from starlette.requests import Request

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ott_billing.core.settings import S  # noqa: E402
from ott_billing.core.tables import T  # noqa: E402
from ott_billing.services import gateway, plans  # noqa: E402


def _split_top_level(expr: str, sep: str = ",") -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    for char in expr:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


class FakeTable:
    """In-memory DynamoDB table covering the expressions the services issue."""

    def __init__(self, key_names: Sequence[str] = ("pk", "sk"), indexes: Optional[Dict[str, str]] = None) -> None:
        self.key_names = tuple(key_names)
        self.indexes = indexes or {}
        self.items: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self.writes = 0

    def _key(self, key: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(key[name] for name in self.key_names)

    @staticmethod
    def _fail(operation: str) -> ClientError:
        return ClientError(
            {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
            operation,
        )

    def _check(self, item: Dict[str, Any], condition: Optional[str], names: Dict[str, str], values: Dict[str, Any]) -> bool:
        if not condition:
            return True
        return any(
            all(self._term(item, term, names, values) for term in re.split(r"\s+AND\s+", branch))
            for branch in re.split(r"\s+OR\s+", condition)
        )

    @staticmethod
    def _term(item: Dict[str, Any], term: str, names: Dict[str, str], values: Dict[str, Any]) -> bool:
        term = term.strip()
        match = re.fullmatch(r"(attribute_exists|attribute_not_exists)\((\S+)\)", term)
        if match:
            attr = names.get(match.group(2), match.group(2))
            exists = item.get(attr) is not None
            return exists if match.group(1) == "attribute_exists" else not exists
        match = re.fullmatch(r"(\S+)\s*(=|<=|<|>=|>)\s*(:\w+)", term)
        if not match:
            raise AssertionError(f"unsupported condition term: {term}")
        attr = names.get(match.group(1), match.group(1))
        stored, op, value = item.get(attr), match.group(2), values[match.group(3)]
        if stored is None:
            return False
        return {
            "=": stored == value,
            "<=": stored <= value,
            "<": stored < value,
            ">=": stored >= value,
            ">": stored > value,
        }[op]

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        item = self.items.get(self._key(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(
        self,
        *,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        key = self._key(Item)
        existing = self.items.get(key) or {}
        if not self._check(existing, ConditionExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
            raise self._fail("PutItem")
        self.items[key] = copy.deepcopy(Item)
        self.writes += 1
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ConditionExpression: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        names = ExpressionAttributeNames or {}
        key = self._key(Key)
        existing = self.items.get(key) or {}
        if not self._check(existing, ConditionExpression, names, ExpressionAttributeValues):
            raise self._fail("UpdateItem")

        item = copy.deepcopy(existing) or dict(Key)
        expr = UpdateExpression.strip()
        assert expr.startswith("SET"), expr
        for assignment in _split_top_level(expr[3:]):
            left, right = (part.strip() for part in assignment.split("=", 1))
            attr = names.get(left, left)
            match = re.fullmatch(r"if_not_exists\((\S+),\s*(:\w+)\)", right)
            if match:
                current = item.get(names.get(match.group(1), match.group(1)))
                item[attr] = current if current is not None else ExpressionAttributeValues[match.group(2)]
            else:
                item[attr] = copy.deepcopy(ExpressionAttributeValues[right])
        self.items[key] = item
        self.writes += 1
        return {"Attributes": copy.deepcopy(item)}

    def query(
        self,
        *,
        KeyConditionExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        IndexName: Optional[str] = None,
        ScanIndexForward: bool = True,
        Limit: Optional[int] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        terms = re.split(r"\s+AND\s+", KeyConditionExpression.strip())
        match = re.fullmatch(r"(\w+)\s*=\s*(:\w+)", terms[0])
        assert match, KeyConditionExpression
        attr, value = match.group(1), ExpressionAttributeValues[match.group(2)]
        if IndexName is not None:
            assert self.indexes.get(IndexName) == attr, IndexName
        prefix_attr = prefix = None
        if len(terms) > 1:
            match = re.fullmatch(r"begins_with\((\w+),\s*(:\w+)\)", terms[1])
            assert match, KeyConditionExpression
            prefix_attr, prefix = match.group(1), ExpressionAttributeValues[match.group(2)]

        items = [
            copy.deepcopy(item)
            for item in self.items.values()
            if item.get(attr) == value and (prefix is None or str(item.get(prefix_attr, "")).startswith(prefix))
        ]
        sort_attr = self.key_names[-1]
        items.sort(key=lambda it: str(it.get(sort_attr, "")), reverse=not ScanIndexForward)
        if Limit:
            items = items[:Limit]
        return {"Items": items}

    def scan(self, **_: Any) -> Dict[str, Any]:
        return {"Items": [copy.deepcopy(item) for item in self.items.values()]}


def build_request(
    *,
    method: str = "POST",
    path: str = "/",
    body: bytes = b"",
    headers: Dict[str, str] | None = None,
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
    }

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def tables() -> Dict[str, FakeTable]:
    fakes = {
        "accounts": FakeTable(("account_id",), indexes={S.accounts_customer_index: "gateway_customer_id"}),
        "billing": FakeTable(("pk", "sk")),
        "plans": FakeTable(("plan_id",)),
    }
    plans.clear_price_index()
    originals = {name: getattr(T, name) for name in fakes}
    for name, fake in fakes.items():
        object.__setattr__(T, name, fake)
    yield fakes
    for name, table in originals.items():
        object.__setattr__(T, name, table)
    plans.clear_price_index()


@pytest.fixture
def settings():
    """Mutate ``S`` for one test and restore it afterwards."""
    saved: Dict[str, Any] = {}

    def set_(**overrides: Any) -> None:
        for name, value in overrides.items():
            saved.setdefault(name, getattr(S, name))
            object.__setattr__(S, name, value)

    yield set_
    for name, value in saved.items():
        object.__setattr__(S, name, value)


@pytest.fixture
def fake_stripe(monkeypatch: pytest.MonkeyPatch, settings) -> MagicMock:
    """Replace the SDK module seen by the gateway adapter, keeping its real exception types."""
    settings(stripe_secret_key="sk_test_123", stripe_webhook_secret="whsec_test")
    fake = MagicMock()
    for name in (
        "APIConnectionError",
        "RateLimitError",
        "InvalidRequestError",
        "StripeError",
        "SignatureVerificationError",
    ):
        setattr(fake, name, getattr(stripe, name))
    monkeypatch.setattr(gateway, "stripe", fake)
    monkeypatch.setattr(gateway, "_configured_key", None)
    return fake


PERIOD_1 = (4_100_000_000, 4_102_592_000)
PERIOD_2 = (4_102_592_000, 4_105_270_400)


def seed_plans(table: FakeTable) -> None:
    table.put_item(Item={
        "plan_id": "premium",
        "name": "Premium",
        "active": True,
        "sort_order": 2,
        "currency": "usd",
        "amount_cents": {"month": 1999, "year": 19990},
        "price_ids": {"month": "price_premium_m", "year": "price_premium_y"},
        "features": ["4k", "4 screens"],
    })
    table.put_item(Item={
        "plan_id": "basic",
        "name": "Basic",
        "active": True,
        "sort_order": 1,
        "currency": "usd",
        "amount_cents": {"month": 899},
        "price_ids": {"month": "price_basic_m"},
    })
    table.put_item(Item={
        "plan_id": "legacy",
        "name": "Legacy",
        "active": False,
        "sort_order": 0,
        "price_ids": {"month": "price_legacy_m"},
    })


def gateway_subscription(
    sub_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    status: str = "active",
    period: Tuple[int, int] = PERIOD_1,
    price_id: str = "price_premium_m",
    cancel_at_period_end: bool = False,
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Subscription object shaped like the gateway's, period on the item."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata or {},
        "items": {"data": [{
            "id": "si_1",
            "current_period_start": period[0],
            "current_period_end": period[1],
            "price": {
                "id": price_id,
                "unit_amount": 1999,
                "currency": "usd",
                "recurring": {"interval": "month"},
            },
        }]},
    }


def create_linked_account(account_id: str = "acct-1", customer_id: str = "cus_1") -> None:
    from ott_billing.services import accounts

    accounts.create_account(account_id, email=f"{account_id}@example.com")
    assert accounts.set_customer_id_if_absent(account_id, customer_id)
