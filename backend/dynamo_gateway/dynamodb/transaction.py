from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from ..observability.logging import get_logger
from .batch import TableDefaults, TableKeys
from .errors import DdbError, DdbReconcileError, DdbValidation
from .marshal import ResultList, key_for, marshal_item, serialize_values

log = get_logger("ddb_transaction")

TRANSACTION_MAX_ITEMS = 25


@dataclass(slots=True)
class UpdateItemInput:
    pk: Any
    sk: Any = ""
    update_expression: str = ""
    condition_expression: str | None = None
    expression_attribute_names: dict[str, str] | None = None
    # Plain Python values; serialized when the request is built.
    expression_attribute_values: dict[str, Any] | None = None


@dataclass(slots=True)
class TransactionWrites:
    """One group of transactional writes; ``table_name`` overrides the gateway table."""

    put_items: list[Any] = field(default_factory=list)
    update_items: list[UpdateItemInput] = field(default_factory=list)
    delete_items: list[TableKeys] = field(default_factory=list)
    table_name: str | None = None
    pk_name: str | None = None
    sk_name: str | None = None

    def marshal_put_items(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for item in self.put_items or []:
            if item is None:
                raise DdbValidation(message="MarshalPutItems Failed: (Marshal) PutItem Nil")
            try:
                out.append(marshal_item(item))
            except DdbError as e:
                raise e.with_prefix("MarshalPutItems Failed: (Marshal)") from e
        return out

    def __len__(self) -> int:
        return len(self.put_items) + len(self.update_items) + len(self.delete_items)


@dataclass(slots=True)
class TransactionReads:
    """
    Keys read inside one transaction into ``results``.

    Several groups may name the same table (and even the same key); responses are matched
    back by position. Keys with no item land in ``missing``.
    """

    keys: list[TableKeys]
    results: ResultList
    table_name: str | None = None
    pk_name: str | None = None
    sk_name: str | None = None
    found_count: int = 0
    missing: list[TableKeys] = field(default_factory=list)


def _key(pk_name: str, sk_name: str, k: Any, sk: Any) -> dict[str, Any]:
    if sk not in (None, "") and not sk_name:
        raise DdbValidation(message="(Payload Validate) SK Name is Required")
    return key_for(pk_name, k, sk_name, sk)


class TransactionReconciler:
    """Builds TransactWriteItems / TransactGetItems payloads and maps responses back to groups."""

    def __init__(
        self,
        send: Callable[[dict[str, Any]], dict[str, Any]],
        defaults: TableDefaults,
    ) -> None:
        self._send = send
        self._defaults = defaults

    def build_writes(self, *groups: TransactionWrites) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for g in groups:
            if g is None:
                continue
            table, pk_name, sk_name = self._defaults.resolve(g.table_name, g.pk_name, g.sk_name)

            for k in g.delete_items:
                items.append({"Delete": {"TableName": table, "Key": _key(pk_name, sk_name, k.pk, k.sk)}})

            try:
                puts = g.marshal_put_items()
            except DdbError as e:
                raise e.with_prefix("(Marshal PutItems)") from e
            for av in puts:
                items.append({"Put": {"TableName": table, "Item": av}})

            for u in g.update_items:
                upd: dict[str, Any] = {
                    "TableName": table,
                    "Key": _key(pk_name, sk_name, u.pk, u.sk),
                }
                if u.update_expression and u.update_expression.strip():
                    upd["UpdateExpression"] = u.update_expression
                if u.condition_expression and u.condition_expression.strip():
                    upd["ConditionExpression"] = u.condition_expression
                if u.expression_attribute_names:
                    upd["ExpressionAttributeNames"] = dict(u.expression_attribute_names)
                if u.expression_attribute_values:
                    upd["ExpressionAttributeValues"] = serialize_values(u.expression_attribute_values)
                items.append({"Update": upd})

        if len(items) > TRANSACTION_MAX_ITEMS:
            raise DdbValidation(
                message=f"(Payload Validate) Transaction Items May Not Exceed {TRANSACTION_MAX_ITEMS}",
                operation="TransactWriteItems",
            )
        if not items:
            raise DdbValidation(
                message="(Payload Validate) Transaction Items Minimum of 1 is Required",
                operation="TransactWriteItems",
            )
        return items

    def write(self, *groups: TransactionWrites) -> bool:
        items = self.build_writes(*groups)
        try:
            self._send({"TransactItems": items})
        except DdbError as e:
            if e.conditional_check_failed:
                log.info("ddb_transaction_conditional_conflict", items=len(items), error=str(e))
            raise e.with_prefix("(Transaction Canceled)") from e
        return True

    def read(self, *groups: TransactionReads) -> int:
        live = [g for g in groups if g is not None]
        if not live:
            raise DdbValidation(
                message="Minimum of 1 TranKeys is Required", operation="TransactGetItems"
            )

        gets: list[dict[str, Any]] = []
        counts: list[int] = []
        for g in live:
            if not isinstance(g.results, ResultList):
                raise DdbValidation(
                    message="All SearchKeys Must Define Unmarshal Target Object",
                    operation="TransactGetItems",
                )
            table, pk_name, sk_name = self._defaults.resolve(g.table_name, g.pk_name, g.sk_name)
            g.table_name, g.pk_name, g.sk_name = table, pk_name, sk_name
            g.found_count = 0
            g.missing = []
            for k in g.keys:
                gets.append({"Get": {"TableName": table, "Key": _key(pk_name, sk_name, k.pk, k.sk)}})
            counts.append(len(g.keys))

        if len(gets) > TRANSACTION_MAX_ITEMS:
            raise DdbValidation(
                message=f"(Payload Validate) Search Keys May Not Exceed {TRANSACTION_MAX_ITEMS}",
                operation="TransactGetItems",
            )
        if not gets:
            raise DdbValidation(
                message="(Payload Validate) Search Keys Minimum of 1 is Required",
                operation="TransactGetItems",
            )

        try:
            resp = self._send({"TransactItems": gets})
        except DdbError as e:
            raise e.with_prefix("(Transaction Reads)") from e

        responses = list((resp or {}).get("Responses") or [])
        if len(responses) < len(gets):
            raise DdbReconcileError(
                message=(
                    f"(Reconcile) Response Count {len(responses)} "
                    f"Less Than Request Count {len(gets)}"
                ),
                operation="TransactGetItems",
            )

        found = 0
        offset = 0
        for g, n in zip(live, counts):
            for k, r in zip(g.keys, responses[offset : offset + n]):
                item = (r or {}).get("Item")
                if not item:
                    g.missing.append(k)
                    continue
                try:
                    k.result = g.results.append_item(item)
                except DdbError as e:
                    raise e.with_prefix("(Unmarshal Result)") from e
                g.found_count += 1
                found += 1
            offset += n
        return found
