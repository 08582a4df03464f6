from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_operation_id: ContextVar[str | None] = ContextVar("ddb_operation_id", default=None)


def get_operation_id() -> str | None:
    return _operation_id.get()


@contextmanager
def bind_operation_id(operation_id: str | None = None) -> Iterator[str]:
    """Bind an id to every log line emitted inside the block (nested binds keep the outer id)."""
    existing = _operation_id.get()
    if existing and not operation_id:
        yield existing
        return

    oid = operation_id or uuid.uuid4().hex
    token = _operation_id.set(oid)
    try:
        yield oid
    finally:
        _operation_id.reset(token)
