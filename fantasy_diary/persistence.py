"""persistence.py — Typed CRUD helpers for the story content tables (episodes, characters, places).

Every write is a single DynamoDB request. ``create`` is conditional on the
natural key being absent; ``update`` is conditional on it being present.
The store offers no upsert-by-natural-key to the tools, so callers that need
one do create-then-update.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .aws_clients import _get_ddb, _is_conditional_check_failed
from .config import CHARACTERS_TABLE, EPISODES_TABLE, PLACES_TABLE
from .errors import DuplicateRecordError, RecordNotFoundError, ToolExecutionError
from .serialization import _deserialize, _now_z, _serialize, _serialize_item

__all__ = [
    "CHARACTERS",
    "EPISODES",
    "PLACES",
    "Collection",
    "_create_record",
    "_delete_record",
    "_get_record",
    "_list_records",
    "_update_record",
]


@dataclass(frozen=True)
class Collection:
    kind: str
    namespace: str
    table: str
    key: str
    sort_field: str
    newest_first: bool = False


EPISODES = Collection(kind="Episode", namespace="episodes", table=EPISODES_TABLE, key="id", sort_field="id", newest_first=True)
CHARACTERS = Collection(kind="Character", namespace="characters", table=CHARACTERS_TABLE, key="name", sort_field="name")
PLACES = Collection(kind="Place", namespace="places", table=PLACES_TABLE, key="name", sort_field="name")


def _client_error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        return f"{err.get('Code', 'Unknown')}: {err.get('Message', '')}".strip()
    return str(exc)


def _list_records(collection: Collection, limit: int) -> List[Dict[str, Any]]:
    ddb = _get_ddb()
    scan_kwargs: Dict[str, Any] = {"TableName": collection.table}
    items: List[Dict[str, Any]] = []
    try:
        resp = ddb.scan(**scan_kwargs)
        items.extend(_deserialize(i) for i in resp.get("Items", []))
        while resp.get("LastEvaluatedKey"):
            resp = ddb.scan(**scan_kwargs, ExclusiveStartKey=resp["LastEvaluatedKey"])
            items.extend(_deserialize(i) for i in resp.get("Items", []))
    except (BotoCoreError, ClientError) as exc:
        raise ToolExecutionError(f"Failed to list {collection.table}: {_client_error_message(exc)}") from exc

    items.sort(key=lambda item: str(item.get(collection.sort_field) or ""), reverse=collection.newest_first)
    return items[: max(0, int(limit))]


def _get_record(collection: Collection, key_value: str) -> Optional[Dict[str, Any]]:
    ddb = _get_ddb()
    try:
        resp = ddb.get_item(
            TableName=collection.table,
            Key={collection.key: _serialize(key_value)},
            ConsistentRead=True,
        )
    except (BotoCoreError, ClientError) as exc:
        raise ToolExecutionError(f"Failed to read {collection.kind} '{key_value}': {_client_error_message(exc)}") from exc
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def _create_record(collection: Collection, item: Dict[str, Any]) -> Dict[str, Any]:
    key_value = item[collection.key]
    now = _now_z()
    record = dict(item)
    record.setdefault("created_at", now)
    record["updated_at"] = now
    ddb = _get_ddb()
    try:
        ddb.put_item(
            TableName=collection.table,
            Item=_serialize_item(record),
            ConditionExpression="attribute_not_exists(#k)",
            ExpressionAttributeNames={"#k": collection.key},
        )
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise DuplicateRecordError(f"{collection.kind} '{key_value}' already exists") from exc
        raise ToolExecutionError(f"Failed to create {collection.kind} '{key_value}': {_client_error_message(exc)}") from exc
    except BotoCoreError as exc:
        raise ToolExecutionError(f"Failed to create {collection.kind} '{key_value}': {exc}") from exc
    return record


def _update_record(collection: Collection, key_value: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    updates = {k: v for k, v in fields.items() if k != collection.key and v is not None}
    if not updates:
        return {"ok": True}
    updates["updated_at"] = _now_z()

    names: Dict[str, str] = {"#k": collection.key}
    values: Dict[str, Any] = {}
    clauses: List[str] = []
    for idx, (field_name, value) in enumerate(sorted(updates.items())):
        names[f"#f{idx}"] = field_name
        values[f":v{idx}"] = _serialize(value)
        clauses.append(f"#f{idx} = :v{idx}")

    ddb = _get_ddb()
    try:
        ddb.update_item(
            TableName=collection.table,
            Key={collection.key: _serialize(key_value)},
            UpdateExpression="SET " + ", ".join(clauses),
            ConditionExpression="attribute_exists(#k)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise RecordNotFoundError(f"{collection.kind} '{key_value}' not found") from exc
        raise ToolExecutionError(f"Failed to update {collection.kind} '{key_value}': {_client_error_message(exc)}") from exc
    except BotoCoreError as exc:
        raise ToolExecutionError(f"Failed to update {collection.kind} '{key_value}': {exc}") from exc
    return {"ok": True}


def _delete_record(collection: Collection, key_value: str) -> Dict[str, Any]:
    ddb = _get_ddb()
    try:
        ddb.delete_item(
            TableName=collection.table,
            Key={collection.key: _serialize(key_value)},
            ConditionExpression="attribute_exists(#k)",
            ExpressionAttributeNames={"#k": collection.key},
        )
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise RecordNotFoundError(f"{collection.kind} '{key_value}' not found") from exc
        raise ToolExecutionError(f"Failed to delete {collection.kind} '{key_value}': {_client_error_message(exc)}") from exc
    except BotoCoreError as exc:
        raise ToolExecutionError(f"Failed to delete {collection.kind} '{key_value}': {exc}") from exc
    return {"ok": True}
