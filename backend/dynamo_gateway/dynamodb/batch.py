from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from ..observability.logging import get_logger
from .context import OperationContext
from .errors import DdbError, DdbReconcileError, DdbValidation
from .expressions import Expressions
from .marshal import ResultList, clone, deserialize_item, key_for, marshal_item, unmarshal_items
from .retry import RetryPolicy

log = get_logger("ddb_batch")

BATCH_WRITE_MAX_ITEMS = 25
BATCH_GET_MAX_KEYS = 100

# Key names assumed for tables other than the gateway's own.
FALLBACK_PK_NAME = "PK"
FALLBACK_SK_NAME = "SK"


@dataclass(slots=True)
class TableKeys:
    """Partition/sort key pair; ``result``/``error`` are filled by per-key operations."""

    pk: Any
    sk: Any = ""
    result: Any = None
    error: Exception | None = None

    def to_key(self, pk_name: str, sk_name: str | None) -> dict[str, Any]:
        return key_for(pk_name, self.pk, sk_name, self.sk)


@dataclass(frozen=True, slots=True)
class TableDefaults:
    table_name: str
    pk_name: str = FALLBACK_PK_NAME
    sk_name: str = FALLBACK_SK_NAME

    def resolve(
        self, table_name: str | None, pk_name: str | None, sk_name: str | None
    ) -> tuple[str, str, str]:
        t = str(table_name or "").strip()
        if not t or t == self.table_name:
            return self.table_name, pk_name or self.pk_name, sk_name or self.sk_name
        return t, pk_name or FALLBACK_PK_NAME, sk_name or FALLBACK_SK_NAME


@dataclass(slots=True)
class BatchWriteGroup:
    """Items to put and keys to delete against one table (defaults to the gateway table)."""

    put_items: list[Any] = field(default_factory=list)
    delete_keys: list[TableKeys] = field(default_factory=list)
    table_name: str | None = None
    pk_name: str | None = None
    sk_name: str | None = None


@dataclass(slots=True)
class BatchGetGroup:
    """Keys read from one table into ``results``; ``found_count`` is written back."""

    keys: list[TableKeys]
    results: ResultList
    table_name: str | None = None
    pk_name: str | None = None
    sk_name: str | None = None
    projected_attributes: list[str] = field(default_factory=list)
    consistent_read: bool = False
    found_count: int = 0


@dataclass(slots=True)
class UnprocessedItemsAndKeys:
    """Work the backend never accepted for one table: wire put items and delete keys."""

    put_items: list[dict[str, Any]] = field(default_factory=list)
    delete_keys: list[TableKeys] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.put_items) + len(self.delete_keys)

    def unmarshal_put_items(self, model: type | None = None) -> list[Any]:
        try:
            return unmarshal_items(self.put_items, model)
        except DdbError as e:
            raise e.with_prefix("UnmarshalPutItems Failed:") from e


@dataclass(slots=True)
class BatchWriteResult:
    success_count: int = 0
    unprocessed: dict[str, UnprocessedItemsAndKeys] = field(default_factory=dict)
    attempts: int = 0

    @property
    def unprocessed_count(self) -> int:
        return sum(len(u) for u in self.unprocessed.values())


@dataclass(slots=True)
class BatchGetResult:
    found_count: int = 0
    unprocessed_keys: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    attempts: int = 0

    @property
    def not_found(self) -> bool:
        return self.found_count == 0


def _pending_writes(unprocessed: Any) -> dict[str, list[dict[str, Any]]]:
    if not isinstance(unprocessed, dict):
        return {}
    return {t: clone(reqs) for t, reqs in unprocessed.items() if reqs}


def _pending_keys(unprocessed: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(unprocessed, dict):
        return {}
    return {t: clone(ka) for t, ka in unprocessed.items() if ka and ka.get("Keys")}


class BatchReconciler:
    """
    Drives BatchWriteItem / BatchGetItem until nothing is left unprocessed.

    ``send`` performs one backend call (already admission-gated and classified). Leftover
    work is deep-copied into the next request after a capped, cancellable backoff; work
    that succeeded on an earlier attempt is always kept.
    """

    def __init__(
        self,
        send: Callable[[dict[str, Any]], dict[str, Any]],
        defaults: TableDefaults,
        *,
        policy: RetryPolicy | None = None,
        ctx: OperationContext | None = None,
    ) -> None:
        self._send = send
        self._defaults = defaults
        self._policy = policy or RetryPolicy()
        self._ctx = ctx or OperationContext.background()

    def _backoff(self, attempt: int, leftover: int, operation: str) -> bool:
        delay = self._policy.delay(attempt)
        log.info(
            "ddb_batch_unprocessed",
            operation=operation,
            attempt=attempt,
            leftover=leftover,
            backoff_s=delay,
        )
        return self._ctx.sleep(delay)

    # ---- writes ----

    def write(self, *groups: BatchWriteGroup) -> BatchWriteResult:
        request: dict[str, list[dict[str, Any]]] = {}
        key_names: dict[str, tuple[str, str]] = {}
        total = 0

        for g in groups:
            if g is None:
                continue
            table, pk_name, sk_name = self._defaults.resolve(g.table_name, g.pk_name, g.sk_name)
            prev = key_names.setdefault(table, (pk_name, sk_name))
            if prev != (pk_name, sk_name):
                raise DdbValidation(
                    message=f"(Payload Validate) Conflicting key names for table {table}",
                    operation="BatchWriteItem",
                    table_name=table,
                )
            reqs = request.setdefault(table, [])
            for k in g.delete_keys:
                reqs.append({"DeleteRequest": {"Key": k.to_key(pk_name, sk_name)}})
            for item in g.put_items:
                try:
                    reqs.append({"PutRequest": {"Item": marshal_item(item)}})
                except DdbError as e:
                    raise e.with_prefix("(PutItems MarshalMap)") from e
            total += len(g.delete_keys) + len(g.put_items)

        if total <= 0 or total > BATCH_WRITE_MAX_ITEMS:
            raise DdbValidation(
                message=f"PutItems and DeleteKeys Count Must Be 1 to {BATCH_WRITE_MAX_ITEMS} Only",
                operation="BatchWriteItem",
            )

        pending = {t: r for t, r in request.items() if r}
        attempt = 0
        while pending:
            attempt += 1
            try:
                resp = self._send({"RequestItems": pending})
            except DdbError as e:
                if attempt == 1:
                    raise
                partial = self._write_result(total, pending, key_names, attempt)
                raise DdbReconcileError(
                    message=f"(Unprocessed Retry) {e.message}",
                    operation="BatchWriteItem",
                    aws_code=e.aws_code,
                    cause=e,
                    partial=partial,
                ) from e

            pending = _pending_writes((resp or {}).get("UnprocessedItems"))
            if not pending or attempt >= self._policy.max_attempts:
                break
            if not self._backoff(attempt, sum(len(r) for r in pending.values()), "BatchWriteItem"):
                break

        result = self._write_result(total, pending, key_names, attempt)
        if result.unprocessed:
            log.warning(
                "ddb_batch_write_leftover",
                attempts=attempt,
                leftover=result.unprocessed_count,
                tables=sorted(result.unprocessed.keys()),
            )
        return result

    @staticmethod
    def _write_result(
        total: int,
        pending: dict[str, list[dict[str, Any]]],
        key_names: dict[str, tuple[str, str]],
        attempts: int,
    ) -> BatchWriteResult:
        out: dict[str, UnprocessedItemsAndKeys] = {}
        left = 0
        for table, reqs in pending.items():
            pk_name, sk_name = key_names.get(table, (FALLBACK_PK_NAME, FALLBACK_SK_NAME))
            u = UnprocessedItemsAndKeys()
            for r in reqs:
                put = (r.get("PutRequest") or {}).get("Item")
                if put:
                    u.put_items.append(clone(put))
                key = (r.get("DeleteRequest") or {}).get("Key")
                if key:
                    plain = deserialize_item(key)
                    u.delete_keys.append(TableKeys(pk=plain.get(pk_name), sk=plain.get(sk_name, "")))
            if len(u):
                out[table] = u
                left += len(u)
        return BatchWriteResult(success_count=total - left, unprocessed=out, attempts=attempts)

    # ---- reads ----

    def get(self, *groups: BatchGetGroup) -> BatchGetResult:
        by_table: dict[str, BatchGetGroup] = {}
        request: dict[str, dict[str, Any]] = {}
        total = 0

        live = [g for g in groups if g is not None]
        if not live:
            raise DdbValidation(message="(Payload Validate) SearchKeys Required", operation="BatchGetItem")

        for g in live:
            if not isinstance(g.results, ResultList):
                raise DdbValidation(
                    message="(Payload Validate) ResultItems must be a ResultList",
                    operation="BatchGetItem",
                )
            table, pk_name, sk_name = self._defaults.resolve(g.table_name, g.pk_name, g.sk_name)
            if table in by_table:
                raise DdbValidation(
                    message=f"(Payload Validate) Duplicate table name {table}",
                    operation="BatchGetItem",
                    table_name=table,
                )
            g.table_name, g.pk_name, g.sk_name = table, pk_name, sk_name
            g.found_count = 0
            by_table[table] = g

            ka: dict[str, Any] = {"Keys": [k.to_key(pk_name, sk_name) for k in g.keys]}
            exp = Expressions()
            proj = exp.projection(g.projected_attributes)
            if proj:
                ka["ProjectionExpression"] = proj
                ka["ExpressionAttributeNames"] = dict(exp.names)
            if g.consistent_read:
                ka["ConsistentRead"] = True
            request[table] = ka
            total += len(g.keys)

        if total <= 0 or total > BATCH_GET_MAX_KEYS:
            raise DdbValidation(
                message=f"SearchKeys Count Must Be 1 to {BATCH_GET_MAX_KEYS} Only",
                operation="BatchGetItem",
            )

        pending = {t: ka for t, ka in request.items() if ka["Keys"]}
        result = BatchGetResult()
        attempt = 0
        while pending:
            attempt += 1
            try:
                resp = self._send({"RequestItems": pending})
            except DdbError as e:
                if attempt == 1:
                    raise
                result.attempts = attempt
                result.unprocessed_keys = {t: clone(ka["Keys"]) for t, ka in pending.items()}
                raise DdbReconcileError(
                    message=f"(Unprocessed Retry) {e.message}",
                    operation="BatchGetItem",
                    aws_code=e.aws_code,
                    cause=e,
                    partial=result,
                ) from e

            for table, items in ((resp or {}).get("Responses") or {}).items():
                g = by_table.get(table)
                if g is None or not items:
                    continue
                try:
                    n = g.results.extend_items(items)
                except DdbError as e:
                    raise e.with_prefix("(Unmarshal ResultItems)") from e
                g.found_count += n
                result.found_count += n

            pending = _pending_keys((resp or {}).get("UnprocessedKeys"))
            if not pending or attempt >= self._policy.max_attempts:
                break
            left = sum(len(ka["Keys"]) for ka in pending.values())
            if not self._backoff(attempt, left, "BatchGetItem"):
                break

        result.attempts = attempt
        if pending:
            result.unprocessed_keys = {t: clone(ka["Keys"]) for t, ka in pending.items()}
            left = sum(len(v) for v in result.unprocessed_keys.values())
            log.warning("ddb_batch_get_leftover", attempts=attempt, leftover=left)
            raise DdbReconcileError(
                message=f"BatchGetItem Failed: {left} Keys Left Unprocessed",
                operation="BatchGetItem",
                partial=result,
            )
        return result
