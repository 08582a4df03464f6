from __future__ import annotations

import functools
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, TypeVar

from boto3.dynamodb.conditions import ConditionBase

from ..observability.context import bind_operation_id
from ..observability.logging import get_logger
from ..observability.otel import span
from ..settings import Settings, settings as _default_settings
from .admission import AdmissionGate, execute_with_limit
from .batch import (
    BatchGetGroup,
    BatchGetResult,
    BatchReconciler,
    BatchWriteGroup,
    BatchWriteResult,
    TableDefaults,
    TableKeys,
)
from .classify import classify
from .client import Backends
from .context import OperationContext
from .errors import DdbError, DdbInternal, DdbReconcileError, DdbValidation
from .expressions import Expressions
from .marshal import ResultList, deserialize_item, key_for, marshal_item, unmarshal_item
from .pagination import PageResult, PaginationAccumulator, collect_page_cursors, drive_pages
from .retry import EXTENDED_BAND, POINT_BAND, RetryPolicy, TimeoutBand, retry_call
from .transaction import TransactionReads, TransactionReconciler, TransactionWrites

F = TypeVar("F", bound=Callable[..., Any])

log = get_logger("ddb_table")

# Drive-to-completion reads fetch up to 25 pages of 100 items per round.
PAGED_PAGE_LIMIT = 100
PAGED_PAGE_COUNT = 25

ITEMS_PER_PAGE_DEFAULT = 25
ITEMS_PER_PAGE_MAX = 250


def timeout_duration(seconds: float | int | None) -> float | None:
    """Seconds as a timeout value; 0/None means no timeout."""
    if not seconds:
        return None
    return float(seconds)


def traced(operation: str) -> Callable[[F], F]:
    """Wrap a public operation in a ``DynamoDB-<operation>`` span and an operation id."""

    def deco(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(self: DynamoTable, *args: Any, **kwargs: Any) -> Any:
            with bind_operation_id(), span(f"DynamoDB-{operation}", table_name=self.table_name):
                return fn(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return deco


@dataclass(slots=True)
class QueryResult:
    """Decoded items of a Query/Scan plus the cursor to resume from."""

    items: list[Any] = field(default_factory=list)
    last_evaluated_key: dict[str, Any] | None = None
    count: int = 0
    scanned_count: int = 0
    consumed_capacity: dict[str, Any] | None = None
    pages: int = 0


class DynamoTable:
    """
    Gateway over one DynamoDB table.

    Every backend request picks a client from a :class:`Backends` snapshot, runs inside
    the admission gate and has failures classified into :class:`DdbError`. Each
    ``*_with_retry`` method layers the classified retry loop over its base operation.
    """

    def __init__(
        self,
        *,
        table_name: str,
        pk_name: str = "PK",
        sk_name: str = "SK",
        backends: Backends | None = None,
        gate: AdmissionGate | None = None,
        suppress_transient_errors: bool | None = None,
        batch_policy: RetryPolicy | None = None,
    ) -> None:
        self.table_name = str(table_name or "").strip()
        self.pk_name = str(pk_name or "").strip()
        self.sk_name = str(sk_name or "").strip()
        self.backends = backends if backends is not None else Backends()
        self.gate = gate
        self.suppress_transient_errors = (
            _default_settings.ddb_suppress_transient_errors
            if suppress_transient_errors is None
            else bool(suppress_transient_errors)
        )
        self.batch_policy = batch_policy or RetryPolicy()
        # Debug aid: the parameters of the most recent backend request.
        self.last_execute_params_payload: str = ""

    @classmethod
    def from_settings(
        cls,
        s: Settings | None = None,
        *,
        backends: Backends | None = None,
        gate: AdmissionGate | None = None,
        connect: bool = True,
    ) -> DynamoTable:
        s = s or _default_settings
        if not s.ddb_table_name:
            raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
        if backends is None:
            backends = Backends(skip_accelerator=s.skip_dax, settings=s)
            if connect:
                backends.connect()
                if s.dax_enabled:
                    backends.enable_accelerator()
        return cls(
            table_name=s.ddb_table_name,
            pk_name=s.ddb_pk_name,
            sk_name=s.ddb_sk_name,
            backends=backends,
            gate=gate,
            suppress_transient_errors=s.ddb_suppress_transient_errors,
        )

    @property
    def defaults(self) -> TableDefaults:
        return TableDefaults(self.table_name, self.pk_name, self.sk_name)

    # ---- plumbing ----

    def _require_table(self, operation: str) -> None:
        if not self.table_name:
            raise DdbValidation(message="DynamoDB Table Name is Required", operation=operation)
        if not self.pk_name:
            raise DdbValidation(message=f"{operation} Failed: PK Name is Required", operation=operation)

    def _key(self, operation: str, pk: Any, sk: Any = "") -> dict[str, Any]:
        if pk is None or (isinstance(pk, str) and not pk.strip()):
            raise DdbValidation(message=f"{operation} Failed: PK Value is Required", operation=operation)
        if sk not in (None, "") and not self.sk_name:
            raise DdbValidation(message=f"{operation} Failed: SK Name is Required", operation=operation)
        return key_for(self.pk_name, pk, self.sk_name, sk)

    def _call(
        self,
        operation: str,
        method: str,
        params: dict[str, Any],
        ctx: OperationContext | None = None,
        *,
        key: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """One backend request: select client, admit, call, classify."""
        self.last_execute_params_payload = f"{operation} = {params!r}"
        client = self.backends.select(operation)
        fn = getattr(client, method)

        try:
            return execute_with_limit(lambda: fn(**params), ctx, self.gate) or {}
        except DdbError as e:
            if e.operation is None:
                raise replace(e, operation=operation, table_name=self.table_name) from e
            raise
        except Exception as e:
            classified = classify(
                e,
                f"{operation} Failed:",
                operation=operation,
                table_name=self.table_name,
                key=key,
            )
            raise classified from e

    def _with_retry(
        self,
        operation: str,
        band: TimeoutBand,
        max_retries: int,
        timeout_s: float | None,
        ctx: OperationContext | None,
        attempt: Callable[[OperationContext], Any],
        empty: Callable[[], Any] | None = None,
    ) -> Any:
        return retry_call(
            operation,
            attempt,
            max_retries=max_retries,
            timeout_s=timeout_s,
            band=band,
            suppress_transient=self.suppress_transient_errors,
            empty_result=empty,
            ctx=ctx,
        )

    @staticmethod
    def _conditional(
        params: dict[str, Any],
        exp: Expressions,
        condition_expression: str | ConditionBase | None,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
    ) -> None:
        cond = exp.condition(condition_expression)
        if cond:
            params["ConditionExpression"] = cond
        exp.add(names, values)
        exp.apply(params)

    # ---- single item ----

    @traced("PutItem")
    def put_item(
        self,
        item: Any,
        *,
        condition_expression: str | ConditionBase | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        ctx: OperationContext | None = None,
    ) -> None:
        self._require_table("PutItem")
        if item is None:
            raise DdbValidation(message="PutItem Failed: Item is Required", operation="PutItem")
        try:
            av = marshal_item(item)
        except DdbError as e:
            raise e.with_prefix("PutItem Failed: (MarshalMap)") from e

        params: dict[str, Any] = {"TableName": self.table_name, "Item": av}
        self._conditional(
            params, Expressions(), condition_expression, expression_attribute_names, expression_attribute_values
        )
        self._call("PutItem", "put_item", params, ctx)

    def put_item_with_retry(
        self,
        max_retries: int,
        item: Any,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> None:
        return self._with_retry(
            "PutItem",
            POINT_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.put_item(item, ctx=c, **kwargs),
        )

    @traced("UpdateItem")
    def update_item(
        self,
        pk: Any,
        sk: Any,
        update_expression: str,
        condition_expression: str | ConditionBase | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        *,
        return_values: str = "ALL_NEW",
        ctx: OperationContext | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``update_expression``; returns the item's attributes per ``return_values``."""
        self._require_table("UpdateItem")
        if not str(update_expression or "").strip():
            raise DdbValidation(
                message="UpdateItem Failed: UpdateExpression is Required", operation="UpdateItem"
            )
        key = self._key("UpdateItem", pk, sk)
        params: dict[str, Any] = {
            "TableName": self.table_name,
            "Key": key,
            "UpdateExpression": update_expression,
        }
        if return_values:
            params["ReturnValues"] = return_values
        self._conditional(
            params, Expressions(), condition_expression, expression_attribute_names, expression_attribute_values
        )
        resp = self._call("UpdateItem", "update_item", params, ctx, key=key)
        attrs = resp.get("Attributes")
        return deserialize_item(attrs) if attrs else None

    def update_item_with_retry(
        self,
        max_retries: int,
        pk: Any,
        sk: Any,
        update_expression: str,
        condition_expression: str | ConditionBase | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        return self._with_retry(
            "UpdateItem",
            EXTENDED_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.update_item(
                pk,
                sk,
                update_expression,
                condition_expression,
                expression_attribute_names,
                expression_attribute_values,
                ctx=c,
                **kwargs,
            ),
        )

    @traced("RemoveItemAttribute")
    def remove_item_attribute(
        self,
        pk: Any,
        sk: Any,
        *attributes: str,
        condition_expression: str | ConditionBase | None = None,
        ctx: OperationContext | None = None,
    ) -> None:
        self._require_table("RemoveItemAttribute")
        names = [str(a).strip() for a in attributes if a and str(a).strip()]
        if not names:
            raise DdbValidation(
                message="RemoveItemAttribute Failed: Attribute Names Required",
                operation="RemoveItemAttribute",
            )
        key = self._key("RemoveItemAttribute", pk, sk)
        placeholders = {f"#r{i}": n for i, n in enumerate(names)}
        params: dict[str, Any] = {
            "TableName": self.table_name,
            "Key": key,
            "UpdateExpression": "REMOVE " + ", ".join(placeholders.keys()),
        }
        self._conditional(params, Expressions(), condition_expression, placeholders, None)
        self._call("RemoveItemAttribute", "update_item", params, ctx, key=key)

    def remove_item_attribute_with_retry(
        self,
        max_retries: int,
        pk: Any,
        sk: Any,
        *attributes: str,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> None:
        return self._with_retry(
            "RemoveItemAttribute",
            EXTENDED_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.remove_item_attribute(pk, sk, *attributes, ctx=c, **kwargs),
        )

    @traced("DeleteItem")
    def delete_item(
        self,
        pk: Any,
        sk: Any = "",
        *,
        condition_expression: str | ConditionBase | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        ctx: OperationContext | None = None,
    ) -> None:
        self._require_table("DeleteItem")
        key = self._key("DeleteItem", pk, sk)
        params: dict[str, Any] = {"TableName": self.table_name, "Key": key}
        self._conditional(
            params, Expressions(), condition_expression, expression_attribute_names, expression_attribute_values
        )
        self._call("DeleteItem", "delete_item", params, ctx, key=key)

    def delete_item_with_retry(
        self,
        max_retries: int,
        pk: Any,
        sk: Any = "",
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> None:
        return self._with_retry(
            "DeleteItem",
            POINT_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.delete_item(pk, sk, ctx=c, **kwargs),
        )

    @traced("GetItem")
    def get_item(
        self,
        pk: Any,
        sk: Any = "",
        *projected_attributes: str,
        model: type | None = None,
        consistent_read: bool = False,
        ctx: OperationContext | None = None,
    ) -> Any:
        """Decoded item (``model`` instance when given) or None when absent."""
        self._require_table("GetItem")
        key = self._key("GetItem", pk, sk)
        params: dict[str, Any] = {"TableName": self.table_name, "Key": key}
        exp = Expressions()
        proj = exp.projection(projected_attributes)
        if proj:
            params["ProjectionExpression"] = proj
        if consistent_read:
            params["ConsistentRead"] = True
        exp.apply(params)

        resp = self._call("GetItem", "get_item", params, ctx, key=key)
        item = resp.get("Item")
        if not item:
            return None
        try:
            return unmarshal_item(item, model)
        except DdbError as e:
            raise e.with_prefix("GetItem Failed: (Unmarshal)") from e

    def get_item_with_retry(
        self,
        max_retries: int,
        pk: Any,
        sk: Any = "",
        *projected_attributes: str,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> Any:
        return self._with_retry(
            "GetItem",
            POINT_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.get_item(pk, sk, *projected_attributes, ctx=c, **kwargs),
        )

    # ---- query / scan ----

    def _read_params(
        self,
        operation: str,
        *,
        key_condition: str | ConditionBase | None,
        filter_condition: str | ConditionBase | None,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
        index_name: str | None,
        page_limit: int | None,
        projected_attributes: Iterable[str] | None,
        consistent_read: bool,
        scan_index_forward: bool | None = None,
        select: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"TableName": self.table_name}
        exp = Expressions()
        kc = exp.condition(key_condition, key=True)
        if operation == "Query":
            if not kc:
                raise DdbValidation(
                    message="QueryItems Failed: KeyConditionExpression is Required", operation=operation
                )
            params["KeyConditionExpression"] = kc
        fc = exp.condition(filter_condition)
        if fc:
            params["FilterExpression"] = fc
        exp.add(expression_attribute_names, expression_attribute_values)
        if select:
            params["Select"] = select
        else:
            proj = exp.projection(projected_attributes)
            if proj:
                params["ProjectionExpression"] = proj
        if operation == "Query" and not exp.values:
            raise DdbValidation(
                message="QueryItems Failed: ExpressionAttributeValues is Required", operation=operation
            )
        exp.apply(params)

        if index_name:
            params["IndexName"] = index_name
        # Secondary indexes do not support strongly consistent reads.
        if consistent_read and not index_name:
            params["ConsistentRead"] = True
        if page_limit:
            params["Limit"] = int(page_limit)
        if scan_index_forward is False:
            params["ScanIndexForward"] = False
        return params

    def _fetch(
        self, operation: str, method: str, params: dict[str, Any], ctx: OperationContext | None
    ) -> Callable[[dict[str, Any] | None], dict[str, Any]]:
        def fetch(start_key: dict[str, Any] | None) -> dict[str, Any]:
            p = dict(params)
            if start_key:
                p["ExclusiveStartKey"] = start_key
            return self._call(operation, method, p, ctx)

        return fetch

    def _read(
        self,
        operation: str,
        method: str,
        params: dict[str, Any],
        *,
        paged: bool,
        page_count_limit: int | None,
        exclusive_start_key: dict[str, Any] | None,
        model: type | None,
        ctx: OperationContext | None,
    ) -> QueryResult:
        fetch = self._fetch(operation, method, params, ctx)
        if paged:
            acc = PaginationAccumulator(page_limit=page_count_limit or 0, ctx=ctx)
            page = drive_pages(fetch, exclusive_start_key, acc)
        else:
            raw = fetch(exclusive_start_key)
            acc = PaginationAccumulator(ctx=None)
            acc.on_page(raw, last_page=True)
            page = acc.result
        return self._decode(operation, page, model)

    @staticmethod
    def _decode(operation: str, page: PageResult, model: type | None) -> QueryResult:
        items = ResultList(model)
        try:
            items.extend_items(page.items)
        except DdbError as e:
            raise e.with_prefix(f"{operation} Failed: (Unmarshal Result Items)") from e
        return QueryResult(
            items=items,
            last_evaluated_key=page.last_evaluated_key,
            count=page.count,
            scanned_count=page.scanned_count,
            consumed_capacity=page.consumed_capacity,
            pages=page.pages,
        )

    @traced("QueryItems")
    def query_items(
        self,
        key_condition: str | ConditionBase,
        *,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        filter_condition: str | ConditionBase | None = None,
        index_name: str | None = None,
        page_limit: int | None = None,
        paged: bool = False,
        page_count_limit: int | None = None,
        exclusive_start_key: dict[str, Any] | None = None,
        projected_attributes: Iterable[str] | None = None,
        consistent_read: bool = False,
        scan_index_forward: bool = True,
        model: type | None = None,
        ctx: OperationContext | None = None,
    ) -> QueryResult:
        """
        Query by key condition.

        ``paged=True`` follows cursors until the last page or until ``page_count_limit``
        pages with items were read; otherwise a single page is returned.
        """
        self._require_table("Query")
        params = self._read_params(
            "Query",
            key_condition=key_condition,
            filter_condition=filter_condition,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
            index_name=index_name,
            page_limit=page_limit,
            projected_attributes=projected_attributes,
            consistent_read=consistent_read,
            scan_index_forward=scan_index_forward,
        )
        return self._read(
            "Query",
            "query",
            params,
            paged=paged,
            page_count_limit=page_count_limit,
            exclusive_start_key=exclusive_start_key,
            model=model,
            ctx=ctx,
        )

    def query_items_with_retry(
        self,
        max_retries: int,
        key_condition: str | ConditionBase,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> QueryResult:
        return self._with_retry(
            "QueryItems",
            POINT_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.query_items(key_condition, ctx=c, **kwargs),
            QueryResult,
        )

    def query_paged_items_with_retry(
        self,
        max_retries: int,
        key_condition: str | ConditionBase,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> list[Any]:
        """Every matching item, read in rounds of up to 25 pages of 100 items."""
        return self._drain(
            "QueryPagedItems",
            lambda start, c: self.query_items_with_retry(
                max_retries,
                key_condition,
                timeout_s=timeout_s,
                ctx=c,
                page_limit=PAGED_PAGE_LIMIT,
                paged=True,
                page_count_limit=PAGED_PAGE_COUNT,
                exclusive_start_key=start,
                **kwargs,
            ),
            ctx,
        )

    def query_per_page_items_with_retry(
        self,
        max_retries: int,
        key_condition: str | ConditionBase,
        *,
        items_per_page: int = ITEMS_PER_PAGE_DEFAULT,
        exclusive_start_key: dict[str, Any] | None = None,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> tuple[list[Any], dict[str, Any] | None]:
        """One page of ``items_per_page`` (1..250, default 25) items and the next cursor."""
        res = self.query_items_with_retry(
            max_retries,
            key_condition,
            timeout_s=timeout_s,
            ctx=ctx,
            page_limit=_items_per_page(items_per_page),
            paged=True,
            page_count_limit=1,
            exclusive_start_key=exclusive_start_key,
            **kwargs,
        )
        return list(res.items), res.last_evaluated_key or None

    @traced("QueryPaginationData")
    def query_pagination_cursors(
        self,
        key_condition: str | ConditionBase,
        *,
        items_per_page: int = ITEMS_PER_PAGE_DEFAULT,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        filter_condition: str | ConditionBase | None = None,
        index_name: str | None = None,
        ctx: OperationContext | None = None,
    ) -> list[dict[str, Any] | None]:
        """Start cursor of every page; ``[0]`` is None so page N starts at index N-1."""
        self._require_table("Query")
        params = self._read_params(
            "Query",
            key_condition=key_condition,
            filter_condition=filter_condition,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
            index_name=index_name,
            page_limit=_items_per_page(items_per_page),
            projected_attributes=None,
            consistent_read=False,
            select="COUNT",
        )
        return collect_page_cursors(self._fetch("Query", "query", params, ctx), ctx)

    @traced("ScanItems")
    def scan_items(
        self,
        filter_condition: str | ConditionBase | None = None,
        *,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        index_name: str | None = None,
        page_limit: int | None = None,
        paged: bool = False,
        page_count_limit: int | None = None,
        exclusive_start_key: dict[str, Any] | None = None,
        projected_attributes: Iterable[str] | None = None,
        consistent_read: bool = False,
        model: type | None = None,
        ctx: OperationContext | None = None,
    ) -> QueryResult:
        self._require_table("Scan")
        params = self._read_params(
            "Scan",
            key_condition=None,
            filter_condition=filter_condition,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
            index_name=index_name,
            page_limit=page_limit,
            projected_attributes=projected_attributes,
            consistent_read=consistent_read,
        )
        return self._read(
            "Scan",
            "scan",
            params,
            paged=paged,
            page_count_limit=page_count_limit,
            exclusive_start_key=exclusive_start_key,
            model=model,
            ctx=ctx,
        )

    def scan_items_with_retry(
        self,
        max_retries: int,
        filter_condition: str | ConditionBase | None = None,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> QueryResult:
        return self._with_retry(
            "ScanItems",
            EXTENDED_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.scan_items(filter_condition, ctx=c, **kwargs),
            QueryResult,
        )

    def scan_paged_items_with_retry(
        self,
        max_retries: int,
        filter_condition: str | ConditionBase | None = None,
        *,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> list[Any]:
        return self._drain(
            "ScanPagedItems",
            lambda start, c: self.scan_items_with_retry(
                max_retries,
                filter_condition,
                timeout_s=timeout_s,
                ctx=c,
                page_limit=PAGED_PAGE_LIMIT,
                paged=True,
                page_count_limit=PAGED_PAGE_COUNT,
                exclusive_start_key=start,
                **kwargs,
            ),
            ctx,
        )

    def scan_per_page_items_with_retry(
        self,
        max_retries: int,
        filter_condition: str | ConditionBase | None = None,
        *,
        items_per_page: int = ITEMS_PER_PAGE_DEFAULT,
        exclusive_start_key: dict[str, Any] | None = None,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
        **kwargs: Any,
    ) -> tuple[list[Any], dict[str, Any] | None]:
        res = self.scan_items_with_retry(
            max_retries,
            filter_condition,
            timeout_s=timeout_s,
            ctx=ctx,
            page_limit=_items_per_page(items_per_page),
            paged=True,
            page_count_limit=1,
            exclusive_start_key=exclusive_start_key,
            **kwargs,
        )
        return list(res.items), res.last_evaluated_key or None

    @traced("ScanPaginationData")
    def scan_pagination_cursors(
        self,
        filter_condition: str | ConditionBase | None = None,
        *,
        items_per_page: int = ITEMS_PER_PAGE_DEFAULT,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        index_name: str | None = None,
        ctx: OperationContext | None = None,
    ) -> list[dict[str, Any] | None]:
        self._require_table("Scan")
        params = self._read_params(
            "Scan",
            key_condition=None,
            filter_condition=filter_condition,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
            index_name=index_name,
            page_limit=_items_per_page(items_per_page),
            projected_attributes=None,
            consistent_read=False,
            select="COUNT",
        )
        return collect_page_cursors(self._fetch("Scan", "scan", params, ctx), ctx)

    @staticmethod
    def _drain(
        operation: str,
        round_fn: Callable[[dict[str, Any] | None, OperationContext | None], QueryResult],
        ctx: OperationContext | None,
    ) -> list[Any]:
        out: list[Any] = []
        start: dict[str, Any] | None = None
        while True:
            try:
                res = round_fn(start, ctx)
            except DdbError as e:
                raise e.with_prefix(f"{operation}WithRetry Failed:") from e
            out.extend(res.items)
            start = res.last_evaluated_key
            if not start:
                return out
            if ctx is not None and ctx.done():
                raise DdbReconcileError(
                    message=f"{operation}WithRetry Failed: {ctx.reason()}",
                    operation=operation,
                    partial=out,
                )

    # ---- batch ----

    def _batch(self, ctx: OperationContext | None) -> BatchReconciler:
        return BatchReconciler(
            lambda params: self._call("BatchWriteItem", "batch_write_item", params, ctx),
            self.defaults,
            policy=self.batch_policy,
            ctx=ctx,
        )

    @traced("BatchWriteItems")
    def batch_write_items(
        self,
        put_items: Iterable[Any] = (),
        delete_keys: Iterable[TableKeys] = (),
        *,
        groups: Iterable[BatchWriteGroup] = (),
        ctx: OperationContext | None = None,
    ) -> BatchWriteResult:
        """
        Write up to 25 puts/deletes (deletes are sent first).

        Leftover work after the batch backoff budget is returned on the result, not raised.
        """
        self._require_table("BatchWriteItems")
        all_groups = list(groups)
        puts, deletes = list(put_items or ()), list(delete_keys or ())
        if puts or deletes:
            all_groups.insert(0, BatchWriteGroup(put_items=puts, delete_keys=deletes))
        return self._batch(ctx).write(*all_groups)

    def batch_write_items_with_retry(
        self,
        max_retries: int,
        put_items: Iterable[Any] = (),
        delete_keys: Iterable[TableKeys] = (),
        *,
        groups: Iterable[BatchWriteGroup] = (),
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
    ) -> BatchWriteResult:
        puts, deletes, grps = list(put_items or ()), list(delete_keys or ()), list(groups)
        return self._with_retry(
            "BatchWriteItems",
            EXTENDED_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.batch_write_items(puts, deletes, groups=grps, ctx=c),
            BatchWriteResult,
        )

    @traced("BatchGetItems")
    def batch_get_items(
        self, *groups: BatchGetGroup, ctx: OperationContext | None = None
    ) -> BatchGetResult:
        """Read up to 100 keys across groups with distinct tables; results land in each group."""
        self._require_table("BatchGetItems")
        reconciler = BatchReconciler(
            lambda params: self._call("BatchGetItem", "batch_get_item", params, ctx),
            self.defaults,
            policy=self.batch_policy,
            ctx=ctx,
        )
        return reconciler.get(*groups)

    def batch_get_items_with_retry(
        self,
        max_retries: int,
        *groups: BatchGetGroup,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
    ) -> BatchGetResult:
        def attempt(c: OperationContext) -> BatchGetResult:
            # A retried attempt must not append onto the previous attempt's results.
            for g in groups:
                if g is not None and isinstance(g.results, ResultList):
                    g.results.clear()
            return self.batch_get_items(*groups, ctx=c)

        return self._with_retry(
            "BatchGetItems", POINT_BAND, max_retries, timeout_s, ctx, attempt, BatchGetResult
        )

    def batch_delete_items(
        self, *keys: TableKeys, ctx: OperationContext | None = None
    ) -> BatchWriteResult:
        return self.batch_write_items(delete_keys=keys, ctx=ctx)

    @traced("BatchDeleteItems")
    def batch_delete_items_with_retry(
        self,
        max_retries: int,
        *keys: TableKeys,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
    ) -> list[TableKeys]:
        """
        Delete each key with its own retry loop.

        Returns an empty list when all succeed. Raises :class:`DdbReconcileError` with the
        failed keys on ``partial`` when some or all deletes fail (``error`` is set per key).
        """
        live = [k for k in keys if k is not None and str(k.pk or "").strip()]
        if not live:
            raise DdbValidation(
                message="BatchDeleteItemsWithRetry Failed: Delete Keys Required",
                operation="BatchDeleteItems",
            )
        failed: list[TableKeys] = []
        for k in live:
            try:
                self.delete_item_with_retry(max_retries, k.pk, k.sk, timeout_s=timeout_s, ctx=ctx)
            except DdbError as e:
                k.error = e
                failed.append(k)

        if not failed:
            return []
        if len(failed) == len(live):
            raise DdbReconcileError(
                message="BatchDeleteItemsWithRetry Failed: All Delete Actions Failed",
                operation="BatchDeleteItems",
                table_name=self.table_name,
                partial=failed,
            )
        log.warning("ddb_batch_delete_partial", failed=len(failed), requested=len(live))
        raise DdbReconcileError(
            message="BatchDeleteItemsWithRetry Partial Failure: Some Delete Actions Failed",
            operation="BatchDeleteItems",
            table_name=self.table_name,
            partial=failed,
        )

    # ---- transactions ----

    def _transaction(self, method: str, operation: str, ctx: OperationContext | None) -> TransactionReconciler:
        return TransactionReconciler(
            lambda params: self._call(operation, method, params, ctx),
            self.defaults,
        )

    @traced("TransactionWriteItems")
    def transaction_write_items(
        self, *groups: TransactionWrites, ctx: OperationContext | None = None
    ) -> bool:
        """All-or-nothing write of up to 25 deletes/puts/updates across groups."""
        self._require_table("TransactWriteItems")
        try:
            return self._transaction("transact_write_items", "TransactWriteItems", ctx).write(*groups)
        except DdbError as e:
            raise e.with_prefix("TransactionWriteItems Failed:") from e

    def transaction_write_items_with_retry(
        self,
        max_retries: int,
        *groups: TransactionWrites,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
    ) -> bool:
        return self._with_retry(
            "TransactionWriteItems",
            EXTENDED_BAND,
            max_retries,
            timeout_s,
            ctx,
            lambda c: self.transaction_write_items(*groups, ctx=c),
            lambda: False,
        )

    @traced("TransactionGetItems")
    def transaction_get_items(
        self, *groups: TransactionReads, ctx: OperationContext | None = None
    ) -> int:
        """Read up to 25 keys atomically; returns how many were found."""
        self._require_table("TransactGetItems")
        try:
            return self._transaction("transact_get_items", "TransactGetItems", ctx).read(*groups)
        except DdbError as e:
            raise e.with_prefix("TransactionGetItems Failed:") from e

    def transaction_get_items_with_retry(
        self,
        max_retries: int,
        *groups: TransactionReads,
        timeout_s: float | None = None,
        ctx: OperationContext | None = None,
    ) -> int:
        def attempt(c: OperationContext) -> int:
            for g in groups:
                if g is not None and isinstance(g.results, ResultList):
                    g.results.clear()
            return self.transaction_get_items(*groups, ctx=c)

        return self._with_retry(
            "TransactionGetItems", POINT_BAND, max_retries, timeout_s, ctx, attempt, lambda: 0
        )


def _items_per_page(n: int | None) -> int:
    v = int(n or 0)
    if v <= 0:
        return ITEMS_PER_PAGE_DEFAULT
    return min(ITEMS_PER_PAGE_MAX, v)


def get_table(table_name: str, *, backends: Backends, gate: AdmissionGate | None = None) -> DynamoTable:
    return DynamoTable(table_name=table_name, backends=backends, gate=gate)
