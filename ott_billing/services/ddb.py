from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError


def is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def ddb_get(table: Any, key: Dict[str, Any], *, consistent: bool = True) -> Optional[Dict[str, Any]]:
    resp = table.get_item(Key=key, ConsistentRead=consistent)
    return resp.get("Item")


def ddb_put(table: Any, item: Dict[str, Any], *, condition_expression: Optional[str] = None) -> None:
    kwargs: Dict[str, Any] = {"Item": item}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    table.put_item(**kwargs)


def ddb_query(
    table: Any,
    expr: str,
    values: Dict[str, Any],
    *,
    index_name: Optional[str] = None,
    limit: Optional[int] = None,
    newest_first: bool = False,
) -> List[Dict[str, Any]]:
    kwargs: Dict[str, Any] = {
        "KeyConditionExpression": expr,
        "ExpressionAttributeValues": values,
        "ScanIndexForward": not newest_first,
    }
    if index_name:
        kwargs["IndexName"] = index_name
    if limit:
        kwargs["Limit"] = limit
    resp = table.query(**kwargs)
    return resp.get("Items", [])


def ddb_update(
    table: Any,
    key: Dict[str, Any],
    expr: str,
    values: Dict[str, Any],
    *,
    names: Optional[Dict[str, str]] = None,
    condition_expression: Optional[str] = None,
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "Key": key,
        "UpdateExpression": expr,
        "ExpressionAttributeValues": values,
        "ReturnValues": "ALL_NEW",
    }
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    resp = table.update_item(**kwargs)
    return resp.get("Attributes", {})


def set_clause(fields: Dict[str, Any], *, prefix: str = "f") -> tuple[str, Dict[str, str], Dict[str, Any]]:
    """Build ``#f1 = :f1, ...`` for a flat attribute patch."""
    parts: List[str] = []
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    for i, (attr, value) in enumerate(fields.items(), start=1):
        nk = f"#{prefix}{i}"
        vk = f":{prefix}{i}"
        names[nk] = attr
        values[vk] = value
        parts.append(f"{nk} = {vk}")
    return ", ".join(parts), names, values
