from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any


@dataclass(slots=True)
class DdbError(Exception):
    """Classified error for DynamoDB operations.

    Produced once per backend failure by :func:`classify`; the retry flags drive every
    retry/suppression decision. Treat instances as values: :meth:`with_prefix` returns a
    new error instead of editing this one.
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_code: str | None = None
    aws_request_id: str | None = None
    allow_retry: bool = False
    retry_needs_backoff: bool = False
    # Caller may treat the failure as success once retries are spent.
    suppress: bool = False
    # Optimistic-concurrency conflict, typically a duplicate write inside a transaction.
    conditional_check_failed: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    @property
    def retryable(self) -> bool:
        return self.allow_retry

    def with_prefix(self, prefix: str | None) -> DdbError:
        p = str(prefix or "").strip()
        if not p:
            return self
        return replace(self, message=f"{p} {self.message}")

    def final(self, prefix: str | None = None) -> DdbError:
        """Terminal copy: prefixed, with retry advice cleared."""
        return replace(
            self.with_prefix(prefix),
            allow_retry=False,
            retry_needs_backoff=False,
            suppress=False,
        )


@dataclass(slots=True)
class DdbNotFound(DdbError):
    pass


@dataclass(slots=True)
class DdbConflict(DdbError):
    pass


@dataclass(slots=True)
class DdbValidation(DdbError):
    pass


@dataclass(slots=True)
class DdbThrottled(DdbError):
    pass


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    pass


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass


@dataclass(slots=True)
class DdbReconcileError(DdbError):
    """Response/request mismatch or work left unprocessed; ``partial`` holds what did succeed."""

    partial: Any = None
