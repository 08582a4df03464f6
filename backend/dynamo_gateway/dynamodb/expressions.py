from __future__ import annotations

from typing import Any, Iterable, Mapping

from boto3.dynamodb.conditions import ConditionBase, ConditionExpressionBuilder

from .marshal import serialize_values


class Expressions:
    """
    Collects expression strings and their placeholders for one request.

    Conditions may be plain strings (caller supplies names/values) or boto3
    ``Key``/``Attr`` conditions, which are rendered with shared placeholder counters so a
    key condition and a filter never collide.
    """

    def __init__(self) -> None:
        self._builder = ConditionExpressionBuilder()
        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}
        self._proj = 0

    def condition(self, cond: str | ConditionBase | None, *, key: bool = False) -> str | None:
        if cond is None or cond == "":
            return None
        if isinstance(cond, str):
            return cond
        built = self._builder.build_expression(cond, is_key_condition=key)
        self.names.update(built.attribute_name_placeholders)
        self.values.update(serialize_values(built.attribute_value_placeholders))
        return built.condition_expression

    def projection(self, attributes: Iterable[str] | None) -> str | None:
        parts: list[str] = []
        for attr in attributes or ():
            a = str(attr or "").strip()
            if not a:
                continue
            ph = f"#p{self._proj}"
            self._proj += 1
            self.names[ph] = a
            parts.append(ph)
        return ", ".join(parts) or None

    def add(
        self,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> None:
        """Caller-supplied placeholders; values are plain Python and get serialized."""
        if names:
            self.names.update(names)
        if values:
            self.values.update(serialize_values(values))

    def apply(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.names:
            params["ExpressionAttributeNames"] = dict(self.names)
        if self.values:
            params["ExpressionAttributeValues"] = dict(self.values)
        return params
