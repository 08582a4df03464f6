from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from boto3.dynamodb.conditions import Key
from pydantic import BaseModel, Field

from ..observability.logging import get_logger
from ..settings import Settings, settings as _default_settings
from .admission import AdmissionGate
from .batch import BatchGetGroup, TableKeys
from .client import Backends
from .errors import DdbError, DdbReconcileError, DdbValidation
from .marshal import ResultList, deserialize_item
from .table import DynamoTable, timeout_duration
from .transaction import TransactionReads, TransactionWrites

log = get_logger("ddb_crud")

_DEFAULT_TIMEOUT_S = 5
_DEFAULT_RETRIES = 4

_SK_COMPARATORS = {
    "=": "eq",
    "<": "lt",
    "<=": "lte",
    ">": "gt",
    ">=": "gte",
    "begins_with": "begins_with",
}


class ConnectionConfig(BaseModel):
    region: str = "us-east-1"
    table_name: str
    use_dax: bool = False
    dax_url: str | None = None
    timeout_seconds: int = Field(default=_DEFAULT_TIMEOUT_S, ge=0)
    action_retries: int = Field(default=_DEFAULT_RETRIES, ge=0)
    pk_app_name: str = ""
    pk_service_name: str = ""

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> ConnectionConfig:
        s = s or _default_settings
        return cls(
            region=s.aws_region,
            table_name=s.ddb_table_name or "",
            use_dax=s.dax_enabled and not s.skip_dax,
            dax_url=s.dax_endpoint,
            timeout_seconds=s.ddb_default_timeout_s,
            action_retries=s.ddb_default_retries,
            pk_app_name=s.pk_app_name,
            pk_service_name=s.pk_service_name,
        )


@dataclass(slots=True)
class QueryExpression:
    """Partition key equality plus an optional sort key comparison."""

    pk_name: str
    pk_value: str
    use_sk: bool = False
    sk_name: str = ""
    sk_is_number: bool = False
    # One of = < <= > >= begins_with; not-equal is not a valid key condition.
    sk_compare_symbol: str = ""
    sk_value: str = ""
    index_name: str = ""

    def key_condition(self):
        cond = Key(self.pk_name).eq(self.pk_value)
        if not self.use_sk:
            return cond
        symbol = (self.sk_compare_symbol or "=").strip()
        op = _SK_COMPARATORS.get(symbol)
        if op is None:
            raise DdbValidation(message=f"Unsupported SK Comparer {symbol!r}")
        value: Any = self.sk_value
        if self.sk_is_number:
            value = _decimal_or_zero(self.sk_value)
        return cond & getattr(Key(self.sk_name), op)(value)


@dataclass(slots=True)
class PkSkValuePair:
    pk_value: str
    sk_value: str = ""


@dataclass(slots=True)
class AttributeValueSpec:
    """Typed update value: number, bool, string, or a number/string set via ``list_value``."""

    name: str
    value: str = ""
    is_n: bool = False
    is_bool: bool = False
    list_value: list[str] = field(default_factory=list)

    def to_value(self) -> Any:
        if self.is_n:
            if self.list_value:
                return {_decimal_or_zero(v) for v in self.list_value}
            return _decimal_or_zero(self.value)
        if self.is_bool:
            return str(self.value or "").strip().lower() in ("1", "true", "t", "yes", "y", "on")
        if self.list_value:
            return set(self.list_value)
        return self.value


def _decimal_or_zero(v: str) -> Decimal:
    try:
        d = Decimal(str(v).strip())
    except InvalidOperation:
        return Decimal(0)
    return d if d.is_finite() else Decimal(0)


def _blank(v: Any) -> bool:
    return v is None or not str(v).strip()


class Crud:
    """
    Record-level facade over one table with fixed retries/timeout.

    Partition keys are composed as ``<app>#<service>#<values...>`` by
    :meth:`create_pk_value`.
    """

    def __init__(self) -> None:
        self._table: DynamoTable | None = None
        self._timeout = _DEFAULT_TIMEOUT_S
        self._retries = _DEFAULT_RETRIES
        self._pk_app_name = ""
        self._pk_service_name = ""

    @property
    def table(self) -> DynamoTable | None:
        return self._table

    def open(
        self,
        cfg: ConnectionConfig | None,
        *,
        backends: Backends | None = None,
        gate: AdmissionGate | None = None,
    ) -> None:
        if cfg is None:
            raise DdbValidation(message="Config is Required")

        if backends is None:
            s = _default_settings.model_copy(
                update={
                    "aws_region": cfg.region,
                    "dax_endpoint": cfg.dax_url if cfg.use_dax else None,
                    "skip_dax": not cfg.use_dax,
                }
            )
            backends = Backends(skip_accelerator=not cfg.use_dax, settings=s)
            backends.connect()
            if cfg.use_dax:
                backends.enable_accelerator()

        self._table = DynamoTable(
            table_name=cfg.table_name,
            pk_name="PK",
            sk_name="SK",
            backends=backends,
            gate=gate,
        )
        self._timeout = cfg.timeout_seconds
        self._retries = cfg.action_retries
        self._pk_app_name = cfg.pk_app_name
        self._pk_service_name = cfg.pk_service_name
        log.info("crud_opened", table_name=cfg.table_name, use_dax=cfg.use_dax)

    def close(self) -> None:
        if self._table is None:
            return
        self._table.backends.close()
        self._table = None
        self._timeout = _DEFAULT_TIMEOUT_S
        self._retries = _DEFAULT_RETRIES
        self._pk_app_name = ""
        self._pk_service_name = ""

    def _require(self, label: str) -> DynamoTable:
        if self._table is None:
            raise DdbValidation(message=f"{label} Failed: (Validater 1) Connection Not Established")
        return self._table

    @property
    def _timeout_s(self) -> float | None:
        return timeout_duration(self._timeout)

    def create_pk_value(self, *values: str) -> str:
        pk = f"{self._pk_app_name}#{self._pk_service_name}"
        for v in values:
            if not _blank(v):
                pk += f"#{v}"
        return pk

    def get(
        self,
        pk_value: str,
        sk_value: str,
        *projected_attributes: str,
        model: type | None = None,
        consistent_read: bool = False,
    ) -> Any:
        label = "Get From Data Store"
        t = self._require(label)
        if _blank(pk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 2) PK Value is Required")
        if _blank(sk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 3) SK Value is Required")
        try:
            return t.get_item_with_retry(
                self._retries,
                pk_value,
                sk_value,
                *projected_attributes,
                timeout_s=self._timeout_s,
                model=model,
                consistent_read=consistent_read,
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (GetItem)") from e

    def batch_get(
        self,
        search_keys: Iterable[PkSkValuePair],
        *projected_attributes: str,
        model: type | None = None,
        consistent_read: bool = False,
    ) -> tuple[bool, list[Any]]:
        """``(found, items)`` for up to 100 keys."""
        label = "BatchGet From Data Store"
        t = self._require(label)
        keys = [TableKeys(pk=k.pk_value, sk=k.sk_value) for k in search_keys or ()]
        if not keys:
            raise DdbValidation(message=f"{label} Failed: (Validater 3) Search Keys Missing Values")
        group = BatchGetGroup(
            keys=keys,
            results=ResultList(model),
            projected_attributes=list(projected_attributes),
            consistent_read=consistent_read,
        )
        try:
            res = t.batch_get_items_with_retry(self._retries, group, timeout_s=self._timeout_s)
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (BatchGetItems)") from e
        return res.found_count > 0, list(group.results)

    def transaction_get(self, *trans_reads: TransactionReads) -> int:
        label = "TransactionGet From Data Store"
        t = self._require(label)
        if not trans_reads:
            raise DdbValidation(message=f"{label} Failed: (Validater 2) Transaction Keys Missing")
        try:
            return t.transaction_get_items_with_retry(
                self._retries, *trans_reads, timeout_s=self._timeout_s
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (TransactionGetItems)") from e

    def set(self, data: Any) -> None:
        label = "Set To Data Store"
        t = self._require(label)
        if data is None:
            raise DdbValidation(message=f"{label} Failed: (Validater 2) Data is Required")
        try:
            t.put_item_with_retry(self._retries, data, timeout_s=self._timeout_s)
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (PutItem)") from e

    def batch_set(
        self,
        put_data: Iterable[Any] = (),
        delete_keys: Iterable[PkSkValuePair] = (),
    ) -> tuple[int, list[PkSkValuePair], list[PkSkValuePair]]:
        """``(success_count, failed_puts, failed_deletes)`` for up to 25 writes."""
        label = "BatchSet To Data Store"
        t = self._require(label)
        deletes = [TableKeys(pk=k.pk_value, sk=k.sk_value) for k in delete_keys or ()]
        try:
            res = t.batch_write_items_with_retry(
                self._retries, list(put_data or ()), deletes, timeout_s=self._timeout_s
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (BatchWriteItems)") from e

        failed_puts: list[PkSkValuePair] = []
        failed_deletes: list[PkSkValuePair] = []
        for u in res.unprocessed.values():
            for av in u.put_items:
                plain = deserialize_item(av)
                failed_puts.append(
                    PkSkValuePair(pk_value=str(plain.get(t.pk_name, "")), sk_value=str(plain.get(t.sk_name, "")))
                )
            for k in u.delete_keys:
                failed_deletes.append(PkSkValuePair(pk_value=str(k.pk or ""), sk_value=str(k.sk or "")))
        return res.success_count, failed_puts, failed_deletes

    def transaction_set(self, *trans_writes: TransactionWrites) -> bool:
        label = "TransactionSet To Data Store"
        t = self._require(label)
        if not trans_writes:
            raise DdbValidation(message=f"{label} Failed: (Validater 2) Transaction Data Missing")
        try:
            return t.transaction_write_items_with_retry(
                self._retries, *trans_writes, timeout_s=self._timeout_s
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (TransactionWriteItems)") from e

    def query(self, key_expression: QueryExpression | None, *, model: type | None = None) -> list[Any]:
        """Every item matching ``key_expression`` (drives pagination to completion)."""
        label = "Query From Data Store"
        t = self._require(label)
        ke = key_expression
        if ke is None:
            raise DdbValidation(message=f"{label} Failed: (Validater 2) Key Expression is Required")
        if _blank(ke.pk_name):
            raise DdbValidation(message=f"{label} Failed: (Validater 3) Key Expression Missing PK Name")
        if _blank(ke.pk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 4) Key Expression Missing PK Value")
        if ke.use_sk:
            if _blank(ke.sk_name):
                raise DdbValidation(message=f"{label} Failed: (Validater 5) Key Expression Missing SK Name")
            if _blank(ke.sk_compare_symbol) and ke.sk_is_number:
                raise DdbValidation(message=f"{label} Failed: (Validater 6) Key Expression Missing SK Comparer")
            if _blank(ke.sk_value):
                raise DdbValidation(message=f"{label} Failed: (Validater 7) Key Expression Missing SK Value")

        try:
            cond = ke.key_condition()
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (Validater 6)") from e
        try:
            return t.query_paged_items_with_retry(
                self._retries,
                cond,
                timeout_s=self._timeout_s,
                index_name=ke.index_name or None,
                model=model,
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (QueryPaged)") from e

    def update(
        self,
        pk_value: str,
        sk_value: str,
        update_expression: str,
        condition_expression: str | None,
        attribute_values: list[AttributeValueSpec] | None,
    ) -> None:
        label = "Update To Data Store"
        t = self._require(label)
        if _blank(pk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 2) PK Value is Missing")
        if _blank(sk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 3) SK Value is Missing")
        if _blank(update_expression):
            raise DdbValidation(message=f"{label} Failed: (Validater 4) Update Expression is Missing")
        if attribute_values is None:
            raise DdbValidation(message=f"{label} Failed: (Validater 5) Attribute Values Not Defined")
        if not attribute_values:
            raise DdbValidation(message=f"{label} Failed: (Validater 6) Attribute Values is Missing")

        values = {v.name: v.to_value() for v in attribute_values if v is not None}
        try:
            t.update_item_with_retry(
                self._retries,
                pk_value,
                sk_value,
                update_expression,
                condition_expression or None,
                None,
                values,
                timeout_s=self._timeout_s,
            )
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (UpdateItem)") from e

    def delete(self, pk_value: str, sk_value: str) -> None:
        label = "Delete From Data Store"
        t = self._require(label)
        if _blank(pk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 2) PK Value is Required")
        if _blank(sk_value):
            raise DdbValidation(message=f"{label} Failed: (Validater 3) SK Value is Required")
        try:
            t.delete_item_with_retry(self._retries, pk_value, sk_value, timeout_s=self._timeout_s)
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed: (DeleteItem)") from e

    def batch_delete(self, *delete_keys: PkSkValuePair) -> tuple[int, list[PkSkValuePair]]:
        """``(success_count, failed_deletes)``; raises only when every delete failed."""
        label = "BatchDelete From Data Store"
        t = self._require(label)
        if not delete_keys:
            raise DdbValidation(message=f"{label} Failed: (Validater 2) Delete Keys Missing")
        if any(k is None or _blank(k.pk_value) for k in delete_keys):
            raise DdbValidation(message=f"{label} Failed: (Validater 3) PK Value is Required")

        keys = [TableKeys(pk=k.pk_value, sk=k.sk_value) for k in delete_keys]
        failed: list[TableKeys] = []
        try:
            t.batch_delete_items_with_retry(self._retries, *keys, timeout_s=self._timeout_s)
        except DdbReconcileError as e:
            failed = list(e.partial or [])
            if len(failed) == len(keys):
                raise e.with_prefix(f"{label} Failed:") from e
        except DdbError as e:
            raise e.with_prefix(f"{label} Failed:") from e

        pairs = [PkSkValuePair(pk_value=str(k.pk), sk_value=str(k.sk or "")) for k in failed]
        return len(delete_keys) - len(pairs), pairs
