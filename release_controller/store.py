import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Type, TypeVar, Union

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from release_controller.errors import (
    AlreadyExistsError,
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
)
from release_controller.models import Deployment, Project, utc_now


StoredObject = Union[Project, Deployment]
T = TypeVar("T", Project, Deployment)


def iso_now() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def _labels_match(labels: Dict[str, str], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    return all(labels.get(key) == value for key, value in selector.items())


def _object_key(obj: StoredObject) -> str:
    return f"{obj.KIND} {obj.metadata.namespace}/{obj.metadata.name}"


def _prepare_create(obj: T) -> T:
    stored = obj.model_copy(deep=True)
    stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
    stored.metadata.resource_version = "1"
    stored.metadata.generation = max(stored.metadata.generation, 1)
    if stored.metadata.creation_timestamp is None:
        stored.metadata.creation_timestamp = utc_now()
    return stored


def _next_version(obj: StoredObject) -> int:
    try:
        return int(obj.metadata.resource_version or 0) + 1
    except ValueError as exc:
        raise ConflictError(f"{_object_key(obj)} carries an unknown version token") from exc


class SqliteObjectStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise BackendUnavailableError(f"object store unavailable: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise BackendUnavailableError(f"object store error: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS objects (
                    kind TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    resource_version INTEGER NOT NULL,
                    labels TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (kind, namespace, name)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    message TEXT NOT NULL
                )
                """
            )

    def _row_to_object(self, model: Type[T], row: sqlite3.Row) -> T:
        obj = model.model_validate_json(row["body"])
        obj.metadata.resource_version = str(row["resource_version"])
        return obj

    def get(self, model: Type[T], namespace: str, name: str) -> T:
        with self._session() as conn:
            row = conn.execute(
                "SELECT resource_version, body FROM objects WHERE kind = ? AND namespace = ? AND name = ?",
                (model.KIND, namespace, name),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"{model.KIND} {namespace}/{name} not found")
        return self._row_to_object(model, row)

    def list(self, model: Type[T], namespace: str, labels: Optional[Dict[str, str]] = None) -> List[T]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT resource_version, labels, body FROM objects WHERE kind = ? AND namespace = ? ORDER BY name",
                (model.KIND, namespace),
            ).fetchall()
        return [
            self._row_to_object(model, row)
            for row in rows
            if _labels_match(json.loads(row["labels"]), labels)
        ]

    def create(self, obj: T) -> T:
        stored = _prepare_create(obj)
        meta = stored.metadata
        with self._session() as conn:
            try:
                conn.execute(
                    "INSERT INTO objects (kind, namespace, name, resource_version, labels, body) VALUES (?, ?, ?, ?, ?, ?)",
                    (stored.KIND, meta.namespace, meta.name, 1, json.dumps(meta.labels), stored.model_dump_json()),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExistsError(f"{_object_key(stored)} already exists") from exc
        return stored

    def update(self, obj: T) -> T:
        current = int(obj.metadata.resource_version or 0)
        stored = obj.model_copy(deep=True)
        stored.metadata.resource_version = str(_next_version(obj))
        meta = stored.metadata
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE objects SET resource_version = ?, labels = ?, body = ?
                WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                """,
                (
                    int(meta.resource_version),
                    json.dumps(meta.labels),
                    stored.model_dump_json(),
                    stored.KIND,
                    meta.namespace,
                    meta.name,
                    current,
                ),
            )
            if cur.rowcount == 0:
                row = conn.execute(
                    "SELECT resource_version FROM objects WHERE kind = ? AND namespace = ? AND name = ?",
                    (stored.KIND, meta.namespace, meta.name),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"{_object_key(stored)} not found")
                raise ConflictError(
                    f"{_object_key(stored)} was modified (have {current}, stored {row['resource_version']})"
                )
        return stored

    def delete(self, obj: StoredObject) -> None:
        meta = obj.metadata
        with self._session() as conn:
            cur = conn.execute(
                "DELETE FROM objects WHERE kind = ? AND namespace = ? AND name = ?",
                (obj.KIND, meta.namespace, meta.name),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"{_object_key(obj)} not found")

    def insert_event(self, event: dict) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO events (created_at, kind, namespace, name, type, reason, message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event["created_at"],
                    event["kind"],
                    event["namespace"],
                    event["name"],
                    event["type"],
                    event["reason"],
                    event["message"],
                ),
            )

    def list_events(self, limit: int = 50, namespace: Optional[str] = None, name: Optional[str] = None) -> List[dict]:
        query = "SELECT created_at, kind, namespace, name, type, reason, message FROM events"
        clauses = []
        params: list = []
        if namespace:
            clauses.append("namespace = ?")
            params.append(namespace)
        if name:
            clauses.append("name = ?")
            params.append(name)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]


class DynamoObjectStore:
    """Single-table layout: pk = KIND#namespace, sk = object name."""

    EVENT_PK = "EVENT"

    def __init__(self, table_name: str) -> None:
        self.table = boto3.resource("dynamodb").Table(table_name)

    def _dec(self, value: int) -> Decimal:
        return Decimal(str(value))

    def _pk(self, kind: str, namespace: str) -> str:
        return f"{kind}#{namespace}"

    def _item_to_object(self, model: Type[T], item: dict) -> T:
        obj = model.model_validate_json(item["body"])
        obj.metadata.resource_version = str(int(item["resourceVersion"]))
        return obj

    def _call(self, operation: Callable, **kwargs) -> dict:
        try:
            return operation(**kwargs)
        except BotoCoreError as exc:
            raise BackendUnavailableError(f"object store unavailable: {exc}") from exc

    def _is_condition_failure(self, exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _item(self, obj: StoredObject, version: int) -> dict:
        meta = obj.metadata
        return {
            "pk": self._pk(obj.KIND, meta.namespace),
            "sk": meta.name,
            "resourceVersion": self._dec(version),
            "labels": dict(meta.labels),
            "body": obj.model_dump_json(),
        }

    def get(self, model: Type[T], namespace: str, name: str) -> T:
        try:
            response = self._call(self.table.get_item, Key={"pk": self._pk(model.KIND, namespace), "sk": name})
        except ClientError as exc:
            raise BackendUnavailableError(f"object store error: {exc}") from exc
        item = response.get("Item")
        if not item:
            raise NotFoundError(f"{model.KIND} {namespace}/{name} not found")
        return self._item_to_object(model, item)

    def list(self, model: Type[T], namespace: str, labels: Optional[Dict[str, str]] = None) -> List[T]:
        results: List[T] = []
        kwargs = {"KeyConditionExpression": Key("pk").eq(self._pk(model.KIND, namespace))}
        while True:
            try:
                response = self._call(self.table.query, **kwargs)
            except ClientError as exc:
                raise BackendUnavailableError(f"object store error: {exc}") from exc
            for item in response.get("Items", []):
                if _labels_match(item.get("labels") or {}, labels):
                    results.append(self._item_to_object(model, item))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return sorted(results, key=lambda obj: obj.metadata.name)

    def create(self, obj: T) -> T:
        stored = _prepare_create(obj)
        try:
            self._call(
                self.table.put_item,
                Item=self._item(stored, 1),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise AlreadyExistsError(f"{_object_key(stored)} already exists") from exc
            raise BackendUnavailableError(f"object store error: {exc}") from exc
        return stored

    def update(self, obj: T) -> T:
        current = int(obj.metadata.resource_version or 0)
        next_version = _next_version(obj)
        stored = obj.model_copy(deep=True)
        stored.metadata.resource_version = str(next_version)
        try:
            self._call(
                self.table.put_item,
                Item=self._item(stored, next_version),
                ConditionExpression=Attr("resourceVersion").eq(self._dec(current)),
            )
        except ClientError as exc:
            if not self._is_condition_failure(exc):
                raise BackendUnavailableError(f"object store error: {exc}") from exc
            # The condition also fails when the item is gone.
            self.get(type(obj), obj.metadata.namespace, obj.metadata.name)
            raise ConflictError(f"{_object_key(obj)} was modified (have {current})") from exc
        return stored

    def delete(self, obj: StoredObject) -> None:
        try:
            self._call(
                self.table.delete_item,
                Key={"pk": self._pk(obj.KIND, obj.metadata.namespace), "sk": obj.metadata.name},
                ConditionExpression="attribute_exists(pk)",
            )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise NotFoundError(f"{_object_key(obj)} not found") from exc
            raise BackendUnavailableError(f"object store error: {exc}") from exc

    def insert_event(self, event: dict) -> None:
        item = dict(event)
        item["pk"] = self.EVENT_PK
        item["sk"] = f"{event['created_at']}#{uuid.uuid4()}"
        try:
            self._call(self.table.put_item, Item=item)
        except ClientError as exc:
            raise BackendUnavailableError(f"event sink error: {exc}") from exc

    def list_events(self, limit: int = 50, namespace: Optional[str] = None, name: Optional[str] = None) -> List[dict]:
        """Newest first. ``Limit`` caps items read per page, before the filter, so pages are followed."""
        kwargs = {
            "KeyConditionExpression": Key("pk").eq(self.EVENT_PK),
            "ScanIndexForward": False,
            "Limit": limit,
        }
        condition = None
        for attribute, value in (("namespace", namespace), ("name", name)):
            if not value:
                continue
            clause = Attr(attribute).eq(value)
            condition = clause if condition is None else condition & clause
        if condition is not None:
            kwargs["FilterExpression"] = condition
        events: List[dict] = []
        while len(events) < limit:
            try:
                response = self._call(self.table.query, **kwargs)
            except ClientError as exc:
                raise BackendUnavailableError(f"event sink error: {exc}") from exc
            for item in response.get("Items", []):
                events.append({key: value for key, value in item.items() if key not in {"pk", "sk"}})
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return events[:limit]


def build_object_store(table_name: str = "", db_path: str = "./data/release-controller.db"):
    if table_name:
        return DynamoObjectStore(table_name)
    return SqliteObjectStore(db_path)


def update_with_conflict_retry(
    store,
    obj: T,
    mutate: Callable[[T], None],
    max_attempts: int = 5,
    retry_delay: float = 0.1,
) -> T:
    """Apply ``mutate`` and write, re-reading and re-applying on version conflicts."""
    current = obj
    last_error: Optional[ConflictError] = None
    for attempt in range(max_attempts):
        if attempt > 0:
            time.sleep(retry_delay)
            current = store.get(type(obj), obj.metadata.namespace, obj.metadata.name)
        mutate(current)
        try:
            return store.update(current)
        except ConflictError as exc:
            last_error = exc
    raise ConflictError(f"operation failed after {max_attempts} attempts: {last_error}")
