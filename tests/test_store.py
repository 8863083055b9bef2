from decimal import Decimal

import boto3
import pytest
from botocore.exceptions import ClientError

from release_controller.errors import AlreadyExistsError, ConflictError, NotFoundError
from release_controller.models import Deployment, ObjectMeta, Project, ProjectSpec
from release_controller.store import (
    DynamoObjectStore,
    SqliteObjectStore,
    build_object_store,
    update_with_conflict_retry,
)

from fakes import RecordingStore


def _project(name: str = "site", labels=None) -> Project:
    return Project(metadata=ObjectMeta(name=name, labels=labels or {}), spec=ProjectSpec(name=name))


def _matches(condition, item: dict) -> bool:
    if condition is None:
        return True
    expression = condition.get_expression()
    if expression["operator"] == "AND":
        return all(_matches(part, item) for part in expression["values"])
    attribute, expected = expression["values"]
    return item.get(attribute.name) == expected


class _FakeDdbTable:
    def __init__(self) -> None:
        self.items = {}
        self.queries = 0

    def _fail(self, operation: str):
        raise ClientError({"Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"}}, operation)

    def put_item(self, Item: dict, ConditionExpression=None) -> dict:
        key = (Item["pk"], Item["sk"])
        existing = self.items.get(key)
        if ConditionExpression == "attribute_not_exists(pk)":
            if existing is not None:
                self._fail("PutItem")
        elif ConditionExpression is not None:
            expected = ConditionExpression.get_expression()["values"][1]
            if existing is None or existing["resourceVersion"] != expected:
                self._fail("PutItem")
        self.items[key] = dict(Item)
        return {}

    def get_item(self, Key: dict) -> dict:
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": dict(item)} if item else {}

    def delete_item(self, Key: dict, ConditionExpression=None) -> dict:
        key = (Key["pk"], Key["sk"])
        if key not in self.items:
            self._fail("DeleteItem")
        del self.items[key]
        return {}

    def query(
        self,
        KeyConditionExpression,
        ExclusiveStartKey=None,
        ScanIndexForward=True,
        Limit=None,
        FilterExpression=None,
    ) -> dict:
        pk = KeyConditionExpression.get_expression()["values"][1]
        items = sorted(
            (dict(item) for (item_pk, _), item in self.items.items() if item_pk == pk),
            key=lambda item: item["sk"],
            reverse=not ScanIndexForward,
        )
        if ExclusiveStartKey:
            position = [item["sk"] for item in items].index(ExclusiveStartKey["sk"])
            items = items[position + 1 :]
        response = {}
        if Limit and len(items) > Limit:
            items = items[:Limit]
            response["LastEvaluatedKey"] = {"pk": pk, "sk": items[-1]["sk"]}
        self.queries += 1
        response["Items"] = [item for item in items if _matches(FilterExpression, item)]
        return response


class _FakeDdbResource:
    def __init__(self, table: _FakeDdbTable) -> None:
        self._table = table

    def Table(self, _name: str) -> _FakeDdbTable:
        return self._table


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteObjectStore(str(tmp_path / "nested" / "objects.db"))


@pytest.fixture
def dynamo_store(monkeypatch):
    table = _FakeDdbTable()
    monkeypatch.setattr(boto3, "resource", lambda *_args, **_kwargs: _FakeDdbResource(table))
    return DynamoObjectStore("relctl-test")


@pytest.fixture(params=["sqlite", "dynamo"])
def store(request, sqlite_store, dynamo_store):
    return sqlite_store if request.param == "sqlite" else dynamo_store


def test_create_assigns_identity_and_version(store):
    created = store.create(_project())
    assert created.metadata.uid
    assert created.metadata.resource_version == "1"
    assert created.metadata.generation == 1
    assert created.metadata.creation_timestamp is not None

    fetched = store.get(Project, "default", "site")
    assert fetched.metadata.uid == created.metadata.uid
    assert fetched.spec.name == "site"


def test_create_rejects_duplicates(store):
    store.create(_project())
    with pytest.raises(AlreadyExistsError):
        store.create(_project())


def test_get_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.get(Project, "default", "missing")


def test_update_detects_stale_version_token(store):
    created = store.create(_project())
    first = store.get(Project, "default", "site")
    second = store.get(Project, "default", "site")

    first.spec.production_branch = "release"
    updated = store.update(first)
    assert updated.metadata.resource_version == "2"

    second.spec.production_branch = "other"
    with pytest.raises(ConflictError):
        store.update(second)
    assert store.get(Project, "default", "site").spec.production_branch == "release"
    assert created.metadata.resource_version == "1"


def test_update_missing_object_is_not_found(store):
    created = store.create(_project())
    store.delete(created)
    with pytest.raises(NotFoundError):
        store.update(created)


def test_list_filters_by_namespace_kind_and_labels(store):
    store.create(_project("a", labels={"team": "web"}))
    store.create(_project("b", labels={"team": "data"}))
    store.create(Project(metadata=ObjectMeta(name="c", namespace="other", labels={"team": "web"})))
    store.create(Deployment(metadata=ObjectMeta(name="a-v1", labels={"team": "web"})))

    assert [p.metadata.name for p in store.list(Project, "default")] == ["a", "b"]
    assert [p.metadata.name for p in store.list(Project, "default", {"team": "web"})] == ["a"]
    assert [d.metadata.name for d in store.list(Deployment, "default")] == ["a-v1"]


def test_delete_missing_raises_not_found(store):
    created = store.create(_project())
    store.delete(created)
    with pytest.raises(NotFoundError):
        store.delete(created)


def test_events_are_listed_newest_first(sqlite_store):
    for index in range(3):
        sqlite_store.insert_event(
            {
                "created_at": f"2026-01-01T00:00:0{index}Z",
                "kind": "Project",
                "namespace": "default",
                "name": "site",
                "type": "Normal",
                "reason": f"Reason{index}",
                "message": "m",
            }
        )
    events = sqlite_store.list_events(limit=2)
    assert [event["reason"] for event in events] == ["Reason2", "Reason1"]
    assert sqlite_store.list_events(name="other") == []


def test_dynamo_items_use_single_table_layout(monkeypatch):
    table = _FakeDdbTable()
    monkeypatch.setattr(boto3, "resource", lambda *_args, **_kwargs: _FakeDdbResource(table))
    store = DynamoObjectStore("relctl-test")
    store.create(_project())

    item = table.items[("Project#default", "site")]
    assert item["resourceVersion"] == Decimal("1")
    assert '"name":"site"' in item["body"].replace(" ", "")


def test_build_object_store_prefers_dynamodb_when_table_set(tmp_path, monkeypatch):
    table = _FakeDdbTable()
    monkeypatch.setattr(boto3, "resource", lambda *_args, **_kwargs: _FakeDdbResource(table))
    assert isinstance(build_object_store("relctl-test", str(tmp_path / "x.db")), DynamoObjectStore)
    assert isinstance(build_object_store("", str(tmp_path / "x.db")), SqliteObjectStore)


def test_conflict_retry_refetches_and_reapplies(sqlite_store):
    store = RecordingStore(sqlite_store)
    created = store.create(_project())
    applied = []

    def mutate(project: Project) -> None:
        applied.append(project.metadata.resource_version)
        project.spec.production_branch = "release"

    store.conflicts_remaining = 2
    updated = update_with_conflict_retry(store, created, mutate, max_attempts=5, retry_delay=0)

    assert updated.spec.production_branch == "release"
    assert len(applied) == 3


def test_conflict_retry_gives_up_after_bounded_attempts(sqlite_store):
    store = RecordingStore(sqlite_store)
    created = store.create(_project())
    store.conflicts_remaining = 100

    with pytest.raises(ConflictError) as excinfo:
        update_with_conflict_retry(store, created, lambda p: None, max_attempts=5, retry_delay=0)

    assert "after 5 attempts" in str(excinfo.value)
    assert store.conflicts_remaining == 95


def test_dynamo_event_filter_follows_pages(monkeypatch):
    table = _FakeDdbTable()
    monkeypatch.setattr(boto3, "resource", lambda *_args, **_kwargs: _FakeDdbResource(table))
    store = DynamoObjectStore("relctl-test")
    for index in range(6):
        store.insert_event(
            {
                "created_at": f"2026-01-01T00:00:0{index}Z",
                "kind": "Project",
                "namespace": "default",
                "name": "site" if index % 3 == 0 else "other",
                "type": "Normal",
                "reason": f"Reason{index}",
                "message": "m",
            }
        )

    events = store.list_events(limit=2, name="site")

    assert [event["reason"] for event in events] == ["Reason3", "Reason0"]
    assert table.queries > 1
    assert store.list_events(limit=2, namespace="staging") == []
    assert len(store.list_events(limit=3)) == 3
