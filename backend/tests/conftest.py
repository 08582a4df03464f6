from __future__ import annotations

import copy
import json
import sys
from pathlib import Path

import pytest

# Ensure `backend/` is on sys.path so `import dynamo_gateway.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))


def _key_id(key: dict) -> str:
    return json.dumps(key, sort_keys=True, default=str)


class FakeDynamoClient:
    """In-memory stand-in for the low-level DynamoDB client (wire-shaped items)."""

    def __init__(self, pk_name: str = "PK", sk_name: str = "SK"):
        self.pk_name = pk_name
        self.sk_name = sk_name
        self.items: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        # method name -> exceptions raised (in order) before the call succeeds
        self.failures: dict[str, list[Exception]] = {}
        # Query/Scan pages served in order of their ExclusiveStartKey
        self.pages: list[dict] = []

    def _record(self, method: str, params: dict) -> None:
        self.calls.append((method, copy.deepcopy(params)))
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def _key_of(self, item: dict) -> str:
        key = {self.pk_name: item[self.pk_name]}
        if self.sk_name in item:
            key[self.sk_name] = item[self.sk_name]
        return _key_id(key)

    def params_for(self, method: str) -> list[dict]:
        return [p for m, p in self.calls if m == method]

    def put_item(self, **params):
        self._record("put_item", params)
        self.items[self._key_of(params["Item"])] = copy.deepcopy(params["Item"])
        return {}

    def get_item(self, **params):
        self._record("get_item", params)
        item = self.items.get(_key_id(params["Key"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def delete_item(self, **params):
        self._record("delete_item", params)
        self.items.pop(_key_id(params["Key"]), None)
        return {}

    def update_item(self, **params):
        self._record("update_item", params)
        item = self.items.get(_key_id(params["Key"]))
        return {"Attributes": copy.deepcopy(item)} if item else {}

    def _page(self, params: dict) -> dict:
        esk = params.get("ExclusiveStartKey")
        if not self.pages:
            return {"Items": [], "Count": 0, "ScannedCount": 0}
        if not esk:
            return copy.deepcopy(self.pages[0])
        for i, p in enumerate(self.pages[:-1]):
            if p.get("LastEvaluatedKey") == esk:
                return copy.deepcopy(self.pages[i + 1])
        raise AssertionError(f"unknown ExclusiveStartKey {esk!r}")

    def query(self, **params):
        self._record("query", params)
        return self._page(params)

    def scan(self, **params):
        self._record("scan", params)
        return self._page(params)

    def batch_write_item(self, **params):
        self._record("batch_write_item", params)
        for reqs in params["RequestItems"].values():
            for r in reqs:
                if "PutRequest" in r:
                    item = r["PutRequest"]["Item"]
                    self.items[self._key_of(item)] = copy.deepcopy(item)
                if "DeleteRequest" in r:
                    self.items.pop(_key_id(r["DeleteRequest"]["Key"]), None)
        return {"UnprocessedItems": {}}

    def batch_get_item(self, **params):
        self._record("batch_get_item", params)
        responses: dict[str, list] = {}
        for table, ka in params["RequestItems"].items():
            found = [copy.deepcopy(self.items[_key_id(k)]) for k in ka["Keys"] if _key_id(k) in self.items]
            responses[table] = found
        return {"Responses": responses, "UnprocessedKeys": {}}

    def transact_write_items(self, **params):
        self._record("transact_write_items", params)
        return {}

    def transact_get_items(self, **params):
        self._record("transact_get_items", params)
        out = []
        for g in params["TransactItems"]:
            item = self.items.get(_key_id(g["Get"]["Key"]))
            out.append({"Item": copy.deepcopy(item)} if item else {})
        return {"Responses": out}


@pytest.fixture
def fake_client():
    return FakeDynamoClient()


@pytest.fixture
def client_error():
    from botocore.exceptions import ClientError

    def _make(code: str, message: str = "boom", operation: str = "PutItem", reasons=None):
        response = {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"RequestId": "req-123"},
        }
        if reasons is not None:
            response["CancellationReasons"] = reasons
        return ClientError(response, operation)

    return _make


@pytest.fixture
def no_sleep(monkeypatch):
    """Retry loops run without real pauses."""
    from dynamo_gateway.dynamodb import retry

    monkeypatch.setattr(retry, "BACKOFF_SLEEP_S", 0.0)
    monkeypatch.setattr(retry, "IMMEDIATE_SLEEP_S", 0.0)


@pytest.fixture
def table(fake_client):
    from dynamo_gateway.dynamodb.client import Backends
    from dynamo_gateway.dynamodb.table import DynamoTable

    return DynamoTable(
        table_name="main",
        pk_name="PK",
        sk_name="SK",
        backends=Backends(primary=fake_client),
        suppress_transient_errors=True,
    )
