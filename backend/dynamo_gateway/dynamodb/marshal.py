from __future__ import annotations

import copy
import dataclasses
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Generic, Iterable, TypeVar

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from pydantic import BaseModel, ValidationError

from .errors import DdbValidation

T = TypeVar("T")

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _normalize(value: Any) -> Any:
    # TypeSerializer rejects float; route through str so 0.1 stays 0.1.
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(by_alias=True, exclude_none=True))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_normalize(v) for v in value}
    return value


def to_plain(obj: Any) -> dict[str, Any]:
    """Mapping view of a dict, pydantic model or dataclass, ready for serialization."""
    plain = _normalize(obj)
    if not isinstance(plain, dict):
        raise DdbValidation(message=f"(Marshal) Expected a mapping, got {type(obj).__name__}")
    return plain


def serialize_value(value: Any) -> dict[str, Any]:
    try:
        return _serializer.serialize(_normalize(value))
    except TypeError as e:
        raise DdbValidation(message=f"(Marshal) {e}", cause=e) from e


def serialize_values(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: serialize_value(v) for k, v in (values or {}).items()}


def marshal_item(obj: Any) -> dict[str, Any]:
    """Wire (AttributeValue) item from a dict, pydantic model or dataclass."""
    return {k: serialize_value(v) for k, v in to_plain(obj).items()}


def deserialize_item(av: Mapping[str, Any] | None) -> dict[str, Any]:
    if not av:
        return {}
    try:
        return {k: _deserializer.deserialize(v) for k, v in av.items()}
    except (TypeError, ValueError) as e:
        raise DdbValidation(message=f"(Unmarshal) {e}", cause=e) from e


def unmarshal_item(av: Mapping[str, Any] | None, model: type[T] | None = None) -> T | dict[str, Any]:
    """Plain dict from a wire item, validated into ``model`` when one is given."""
    data = deserialize_item(av)
    if model is None:
        return data
    try:
        if isinstance(model, type) and issubclass(model, BaseModel):
            return model.model_validate(data)
        if dataclasses.is_dataclass(model):
            names = {f.name for f in dataclasses.fields(model)}
            return model(**{k: v for k, v in data.items() if k in names})
        return model(**data)  # type: ignore[call-arg]
    except (ValidationError, TypeError) as e:
        raise DdbValidation(message=f"(Unmarshal) {e}", cause=e) from e


def unmarshal_items(
    avs: Iterable[Mapping[str, Any]], model: type[T] | None = None
) -> list[Any]:
    return [unmarshal_item(av, model) for av in avs]


def clone(value: T) -> T:
    """Independent copy of a wire item, key or cursor."""
    return copy.deepcopy(value)


def key_for(
    pk_name: str, pk: Any, sk_name: str | None = None, sk: Any = None
) -> dict[str, Any]:
    key = {pk_name: serialize_value(pk)}
    if sk_name and sk is not None and sk != "":
        key[sk_name] = serialize_value(sk)
    return key


class ResultList(list, Generic[T]):
    """
    Destination for decoded items.

    Batch and transaction groups append wire items through :meth:`append_item`, which
    decodes into ``model`` (plain dicts when no model is given).
    """

    def __init__(self, model: type[T] | None = None, items: Iterable[Any] = ()) -> None:
        super().__init__(items)
        self.model = model

    def append_item(self, av: Mapping[str, Any]) -> Any:
        value = unmarshal_item(av, self.model)
        self.append(value)
        return value

    def extend_items(self, avs: Iterable[Mapping[str, Any]]) -> int:
        n = 0
        for av in avs:
            self.append_item(av)
            n += 1
        return n
