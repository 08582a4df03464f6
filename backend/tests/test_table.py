from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import BaseModel


class Widget(BaseModel):
    PK: str
    SK: str
    qty: int = 0
    price: float = 0.0


def _wire_pages(*sizes: int) -> list[dict]:
    pages = []
    n = 0
    for i, size in enumerate(sizes):
        items = [{"PK": {"S": "p"}, "SK": {"S": f"s{n + j:03d}"}} for j in range(size)]
        n += size
        page = {"Items": items, "Count": size, "ScannedCount": size}
        if i < len(sizes) - 1:
            page["LastEvaluatedKey"] = {"PK": {"S": "p"}, "SK": {"S": f"s{n - 1:03d}"}}
        pages.append(page)
    return pages


def test_backend_selection_prefers_the_accelerator():
    from dynamo_gateway.dynamodb.client import NO_BACKEND_MESSAGE, Backends
    from dynamo_gateway.dynamodb.errors import DdbValidation

    class Closable:
        closed = False

        def close(self):
            self.closed = True

    primary, dax = object(), Closable()
    b = Backends(primary=primary, accelerator=dax)
    assert b.select() is dax

    b.set_skip_accelerator(True)
    assert b.select() is primary
    b.set_skip_accelerator(False)

    before = b.snapshot()
    b.disable_accelerator()
    assert dax.closed is True
    assert b.select() is primary
    # snapshots taken earlier are unaffected by later swaps
    assert before.accelerator is dax

    b.close()
    with pytest.raises(DdbValidation) as ei:
        b.select("GetItem")
    assert str(ei.value) == NO_BACKEND_MESSAGE


def test_put_then_get_round_trips_a_model(table, fake_client):
    table.put_item(Widget(PK="w#1", SK="meta", qty=3, price=0.1))

    stored = fake_client.params_for("put_item")[0]["Item"]
    assert stored["price"] == {"N": "0.1"}
    assert table.last_execute_params_payload.startswith("PutItem = ")

    got = table.get_item("w#1", "meta", model=Widget, consistent_read=True)
    assert got == Widget(PK="w#1", SK="meta", qty=3, price=0.1)
    assert fake_client.params_for("get_item")[0]["ConsistentRead"] is True
    assert table.get_item("w#1", "missing") is None


def test_get_item_projection_uses_placeholders(table, fake_client):
    table.get_item("w#1", "meta", "qty", "name")

    params = fake_client.params_for("get_item")[0]
    assert params["ProjectionExpression"] == "#p0, #p1"
    assert params["ExpressionAttributeNames"] == {"#p0": "qty", "#p1": "name"}


def test_missing_key_value_is_a_validation_error(table):
    from dynamo_gateway.dynamodb.errors import DdbValidation

    with pytest.raises(DdbValidation):
        table.get_item("", "meta")


def test_throttled_write_is_retried_then_succeeds(table, fake_client, client_error, no_sleep):
    fake_client.failures["put_item"] = [client_error("ProvisionedThroughputExceededException")]

    table.put_item_with_retry(3, {"PK": "a", "SK": "b"})

    assert len(fake_client.params_for("put_item")) == 2
    assert len(fake_client.items) == 1


def test_exhausted_throttling_is_suppressed_unless_disabled(table, fake_client, client_error, no_sleep):
    from dynamo_gateway.dynamodb.errors import DdbThrottled

    fake_client.failures["get_item"] = [client_error("ProvisionedThroughputExceededException") for _ in range(4)]
    assert table.get_item_with_retry(1, "a", "b") is None
    assert len(fake_client.params_for("get_item")) == 2

    table.suppress_transient_errors = False
    with pytest.raises(DdbThrottled) as ei:
        table.get_item_with_retry(1, "a", "b")
    assert str(ei.value).startswith("GetItemWithRetry Failed: (MaxRetries = 0) GetItem Failed: [AWS]")
    assert ei.value.operation == "GetItem"
    assert ei.value.table_name == "main"


def test_conditional_failure_is_not_retried(table, fake_client, client_error, no_sleep):
    from boto3.dynamodb.conditions import Attr

    from dynamo_gateway.dynamodb.errors import DdbConflict

    fake_client.failures["put_item"] = [client_error("ConditionalCheckFailedException", "The conditional request failed")]

    with pytest.raises(DdbConflict) as ei:
        table.put_item_with_retry(5, {"PK": "a", "SK": "b"}, condition_expression=Attr("PK").not_exists())

    assert ei.value.conditional_check_failed is True
    calls = fake_client.params_for("put_item")
    assert len(calls) == 1
    assert calls[0]["ConditionExpression"] == "attribute_not_exists(#n0)"
    assert calls[0]["ExpressionAttributeNames"] == {"#n0": "PK"}


def test_update_item_serializes_plain_values(table, fake_client):
    table.put_item({"PK": "a", "SK": "b", "qty": 1})

    attrs = table.update_item_with_retry(
        0,
        "a",
        "b",
        "SET #q = #q + :inc",
        "attribute_exists(PK)",
        {"#q": "qty"},
        {":inc": 2},
    )

    params = fake_client.params_for("update_item")[0]
    assert params["ReturnValues"] == "ALL_NEW"
    assert params["ExpressionAttributeValues"] == {":inc": {"N": "2"}}
    assert params["ConditionExpression"] == "attribute_exists(PK)"
    assert attrs == {"PK": "a", "SK": "b", "qty": Decimal(1)}


def test_remove_item_attribute_builds_remove_expression(table, fake_client):
    table.remove_item_attribute("a", "b", "color", "", "size")

    params = fake_client.params_for("update_item")[0]
    assert params["UpdateExpression"] == "REMOVE #r0, #r1"
    assert params["ExpressionAttributeNames"] == {"#r0": "color", "#r1": "size"}


def test_paged_query_reads_every_page(table, fake_client):
    from boto3.dynamodb.conditions import Key

    fake_client.pages = _wire_pages(5, 5, 3)

    items = table.query_paged_items_with_retry(0, Key("PK").eq("p"))

    assert len(items) == 13
    assert items[0] == {"PK": "p", "SK": "s000"}
    first = fake_client.params_for("query")[0]
    assert first["Limit"] == 100
    assert first["KeyConditionExpression"] == "#n0 = :v0"
    assert first["ExpressionAttributeValues"] == {":v0": {"S": "p"}}


def test_per_page_query_clamps_page_size_and_returns_cursor(table, fake_client):
    from boto3.dynamodb.conditions import Key

    pages = _wire_pages(5, 5, 3)
    fake_client.pages = pages

    items, cursor = table.query_per_page_items_with_retry(0, Key("PK").eq("p"), items_per_page=1000)

    assert len(items) == 5
    assert cursor == pages[0]["LastEvaluatedKey"]
    assert fake_client.params_for("query")[0]["Limit"] == 250

    items, cursor = table.query_per_page_items_with_retry(
        0, Key("PK").eq("p"), exclusive_start_key=pages[1]["LastEvaluatedKey"]
    )
    assert len(items) == 3
    assert cursor is None


def test_pagination_cursors_count_only(table, fake_client):
    from boto3.dynamodb.conditions import Key

    pages = _wire_pages(5, 5, 3)
    fake_client.pages = pages

    cursors = table.query_pagination_cursors(Key("PK").eq("p"), items_per_page=5)

    assert cursors == [None, pages[0]["LastEvaluatedKey"], pages[1]["LastEvaluatedKey"]]
    params = fake_client.params_for("query")[0]
    assert params["Select"] == "COUNT"
    assert params["Limit"] == 5


def test_query_on_an_index_drops_consistent_read(table, fake_client):
    from boto3.dynamodb.conditions import Key

    table.query_items(Key("GSI1PK").eq("x"), index_name="gsi1", consistent_read=True)
    table.query_items(Key("PK").eq("x"), consistent_read=True, scan_index_forward=False)

    with_index, without = fake_client.params_for("query")
    assert with_index["IndexName"] == "gsi1"
    assert "ConsistentRead" not in with_index
    assert without["ConsistentRead"] is True
    assert without["ScanIndexForward"] is False


def test_query_requires_a_key_condition(table):
    from dynamo_gateway.dynamodb.errors import DdbValidation

    with pytest.raises(DdbValidation):
        table.query_items("")


def test_scan_with_filter_and_model(table, fake_client):
    from boto3.dynamodb.conditions import Attr

    fake_client.pages = [
        {
            "Items": [{"PK": {"S": "w#1"}, "SK": {"S": "meta"}, "qty": {"N": "4"}}],
            "Count": 1,
            "ScannedCount": 9,
            "ConsumedCapacity": {"TableName": "main", "CapacityUnits": 0.5},
        }
    ]

    res = table.scan_items_with_retry(0, Attr("qty").gt(2), model=Widget)

    assert res.items == [Widget(PK="w#1", SK="meta", qty=4)]
    assert res.scanned_count == 9
    assert res.consumed_capacity == {"TableName": "main", "CapacityUnits": 0.5}
    assert fake_client.params_for("scan")[0]["FilterExpression"] == "#n0 > :v0"


def test_batch_write_and_get_through_the_table(table, fake_client):
    from dynamo_gateway.dynamodb.batch import BatchGetGroup, TableKeys
    from dynamo_gateway.dynamodb.marshal import ResultList

    result = table.batch_write_items_with_retry(
        0, put_items=[{"PK": "a", "SK": str(n)} for n in range(3)]
    )
    assert result.success_count == 3

    found = ResultList()
    got = table.batch_get_items_with_retry(
        0, BatchGetGroup(keys=[TableKeys("a", "0"), TableKeys("a", "2"), TableKeys("a", "9")], results=found)
    )
    assert got.found_count == 2
    assert sorted(r["SK"] for r in found) == ["0", "2"]


def test_batch_delete_with_retry_reports_failed_keys(table, fake_client, client_error, no_sleep):
    from dynamo_gateway.dynamodb.batch import TableKeys
    from dynamo_gateway.dynamodb.errors import DdbReconcileError

    fake_client.failures["delete_item"] = [client_error("ResourceNotFoundException")]
    k1, k2 = TableKeys("a", "1"), TableKeys("a", "2")

    with pytest.raises(DdbReconcileError) as ei:
        table.batch_delete_items_with_retry(2, k1, k2)

    assert "Partial Failure" in str(ei.value)
    assert ei.value.partial == [k1]
    assert k1.error is not None and k2.error is None


def test_transaction_get_through_the_table(table):
    from dynamo_gateway.dynamodb.batch import TableKeys
    from dynamo_gateway.dynamodb.marshal import ResultList
    from dynamo_gateway.dynamodb.transaction import TransactionReads

    table.put_item({"PK": "a", "SK": "1", "qty": 2})
    reads = TransactionReads(keys=[TableKeys("a", "1"), TableKeys("a", "2")], results=ResultList(Widget))

    assert table.transaction_get_items_with_retry(0, reads) == 1
    assert reads.results == [Widget(PK="a", SK="1", qty=2)]
    assert [k.sk for k in reads.missing] == ["2"]


def test_transaction_write_failure_carries_prefixes(table, fake_client, client_error, no_sleep):
    from dynamo_gateway.dynamodb.errors import DdbConflict
    from dynamo_gateway.dynamodb.transaction import TransactionWrites

    fake_client.failures["transact_write_items"] = [
        client_error("TransactionCanceledException", "cancelled [ConditionalCheckFailed]")
    ]
    with pytest.raises(DdbConflict) as ei:
        table.transaction_write_items_with_retry(3, TransactionWrites(put_items=[{"PK": "a", "SK": "1"}]))

    msg = str(ei.value)
    assert msg.startswith("TransactionWriteItemsWithRetry Failed: TransactionWriteItems Failed: (Transaction Canceled)")
    assert ei.value.conditional_check_failed is True
    assert len(fake_client.params_for("transact_write_items")) == 1


def test_shut_down_gate_rejects_with_operation(fake_client):
    from dynamo_gateway.dynamodb.admission import AdmissionGate
    from dynamo_gateway.dynamodb.client import Backends
    from dynamo_gateway.dynamodb.errors import DdbUnavailable
    from dynamo_gateway.dynamodb.table import DynamoTable

    gate = AdmissionGate(2)
    gate.shutdown()
    t = DynamoTable(table_name="main", backends=Backends(primary=fake_client), gate=gate)

    with pytest.raises(DdbUnavailable) as ei:
        t.put_item({"PK": "a", "SK": "b"})
    assert ei.value.operation == "PutItem"
    assert ei.value.table_name == "main"
    assert fake_client.params_for("put_item") == []


def test_table_name_is_required(fake_client):
    from dynamo_gateway.dynamodb.client import Backends
    from dynamo_gateway.dynamodb.errors import DdbValidation
    from dynamo_gateway.dynamodb.table import DynamoTable

    t = DynamoTable(table_name="", backends=Backends(primary=fake_client))
    with pytest.raises(DdbValidation):
        t.delete_item("a", "b")


def test_get_table_uses_default_key_names(fake_client):
    from dynamo_gateway.dynamodb.client import Backends
    from dynamo_gateway.dynamodb.table import get_table

    t = get_table("audit", backends=Backends(primary=fake_client))
    t.put_item({"PK": "x", "SK": "y"})

    assert (t.table_name, t.pk_name, t.sk_name) == ("audit", "PK", "SK")
    assert fake_client.params_for("put_item")[0]["TableName"] == "audit"


def test_scan_variants_page_and_collect_cursors(table, fake_client):
    pages = _wire_pages(2, 2, 1)
    fake_client.pages = pages

    assert len(table.scan_paged_items_with_retry(0)) == 5

    items, cursor = table.scan_per_page_items_with_retry(0, items_per_page=2)
    assert len(items) == 2
    assert cursor == pages[0]["LastEvaluatedKey"]

    cursors = table.scan_pagination_cursors(items_per_page=2)
    assert cursors == [None, pages[0]["LastEvaluatedKey"], pages[1]["LastEvaluatedKey"]]
    assert fake_client.params_for("scan")[-1]["Select"] == "COUNT"


def test_batch_delete_and_remove_attribute_with_retry(table, fake_client, client_error, no_sleep):
    from dynamo_gateway.dynamodb.batch import TableKeys

    table.put_item({"PK": "a", "SK": "1", "color": "red"})
    table.put_item({"PK": "a", "SK": "2"})

    fake_client.failures["update_item"] = [client_error("InternalServerError")]
    table.remove_item_attribute_with_retry(2, "a", "1", "color")
    assert len(fake_client.params_for("update_item")) == 2

    result = table.batch_delete_items(TableKeys("a", "1"), TableKeys("a", "2"))
    assert result.success_count == 2
    deletes = fake_client.params_for("batch_write_item")[0]["RequestItems"]["main"]
    assert all("DeleteRequest" in r for r in deletes)
    assert fake_client.items == {}


class Strict(BaseModel):
    PK: str
    SK: str
    required_field: int


def test_item_that_does_not_fit_the_model_is_a_validation_error(table, fake_client, no_sleep):
    from pydantic import ValidationError

    from dynamo_gateway.dynamodb.batch import BatchGetGroup, TableKeys
    from dynamo_gateway.dynamodb.errors import DdbValidation
    from dynamo_gateway.dynamodb.marshal import ResultList

    table.put_item({"PK": "a", "SK": "1"})

    with pytest.raises(DdbValidation) as ei:
        table.get_item("a", "1", model=Strict)
    assert ei.value.message.startswith("GetItem Failed: (Unmarshal)")
    assert isinstance(ei.value.cause, ValidationError)

    with pytest.raises(DdbValidation) as ei:
        table.batch_get_items_with_retry(
            2, BatchGetGroup(keys=[TableKeys("a", "1")], results=ResultList(Strict))
        )
    assert "(Unmarshal ResultItems)" in ei.value.message
    # not retried
    assert len(fake_client.params_for("batch_get_item")) == 1
