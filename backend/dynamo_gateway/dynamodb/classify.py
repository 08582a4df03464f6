from __future__ import annotations

from typing import Any

from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from .errors import (
    DdbConflict,
    DdbError,
    DdbInternal,
    DdbNotFound,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)

# Structural conflicts: surfaced verbatim, never retried.
_NOT_FOUND_CODES = {
    "ResourceNotFoundException",
    "TableNotFoundException",
    "IndexNotFoundException",
    "BackupNotFoundException",
    "GlobalTableNotFoundException",
    "ReplicaNotFoundException",
}

_CONFLICT_CODES = {
    "ConditionalCheckFailedException",
    "ResourceInUseException",
    "IdempotentParameterMismatchException",
    "BackupInUseException",
    "ContinuousBackupsUnavailableException",
    "GlobalTableAlreadyExistsException",
    "InvalidRestoreTimeException",
    "PointInTimeRecoveryUnavailableException",
    "ReplicaAlreadyExistsException",
    "TableAlreadyExistsException",
    "TableInUseException",
    "TransactionCanceledException",
    "TransactionConflictException",
    "TransactionInProgressException",
}

# Retry with backoff, surfaced once the budget is spent.
_LIMIT_CODES = {
    "ItemCollectionSizeLimitExceededException",
    "LimitExceededException",
}

# Retry with backoff, suppressible.
_THROUGHPUT_CODES = {
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
}

# Retry immediately, suppressible.
_INTERNAL_CODES = {
    "InternalServerError",
}

_VALIDATION_CODES = {
    "ValidationException",
}

_CONDITIONAL_MARKER = "ConditionalCheckFailed"

OBJECT_NIL_MESSAGE = "DynamoDB object nil"


def _aws_request_id(e: Exception) -> str | None:
    response = getattr(e, "response", None)
    if not isinstance(response, dict):
        return None
    meta = response.get("ResponseMetadata") or {}
    return meta.get("RequestId") if isinstance(meta, dict) else None


def error_code(e: Exception) -> str | None:
    """Backend error code from a botocore ClientError or a DAX error carrying ``code``."""
    response = getattr(e, "response", None)
    if isinstance(response, dict):
        err = response.get("Error") or {}
        if isinstance(err, dict) and err.get("Code"):
            return str(err.get("Code"))
    code = getattr(e, "code", None)
    if isinstance(code, str) and code:
        return code
    return None


def _error_message(e: Exception) -> str:
    response = getattr(e, "response", None)
    if isinstance(response, dict):
        err = response.get("Error") or {}
        if isinstance(err, dict) and err.get("Message"):
            return str(err.get("Message"))
    return str(e)


def is_backend_error(e: BaseException) -> bool:
    """True for errors raised by a backend client (coded service errors or SDK faults)."""
    if isinstance(e, (ClientError, BotoCoreError)):
        return True
    return isinstance(e, Exception) and error_code(e) is not None


def _conditional_check_failed(e: Exception, message: str) -> bool:
    if _CONDITIONAL_MARKER in message:
        return True
    response = getattr(e, "response", None)
    if not isinstance(response, dict):
        return False
    for reason in response.get("CancellationReasons") or []:
        if isinstance(reason, dict) and _CONDITIONAL_MARKER in str(reason.get("Code") or ""):
            return True
    return False


def object_nil(operation: str | None = None) -> DdbValidation:
    return DdbValidation(message=OBJECT_NIL_MESSAGE, operation=operation)


def classify(
    exc: BaseException | None,
    prefix: str | None = None,
    *,
    operation: str | None = None,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
    gateway_present: bool = True,
) -> DdbError | None:
    """
    Map a backend failure into a :class:`DdbError`.

    ``None`` in gives ``None`` out (the "no error" sentinel). An already classified
    error keeps its flags and only gains the prefix.
    """
    if not gateway_present:
        return object_nil(operation).with_prefix(prefix)
    if exc is None:
        return None
    if isinstance(exc, DdbError):
        return exc.with_prefix(prefix)

    pre = f"{prefix.strip()} " if prefix and prefix.strip() else ""
    code = error_code(exc) if isinstance(exc, Exception) else None
    common: dict[str, Any] = {
        "operation": operation,
        "table_name": table_name,
        "key": key,
        "cause": exc if isinstance(exc, Exception) else None,
    }

    if isinstance(exc, ParamValidationError):
        # Malformed request caught client-side; never retried.
        return DdbValidation(message=f"{pre}[General] {exc}", **common)

    if code is None:
        if isinstance(exc, BotoCoreError):
            return DdbUnavailable(message=f"{pre}[General] {exc}", **common)
        return DdbInternal(message=f"{pre}[General] {exc}", **common)

    msg = _error_message(exc)
    text = f"{pre}[AWS] {code} - {msg}"
    common["aws_code"] = code
    common["aws_request_id"] = _aws_request_id(exc)

    if code in _NOT_FOUND_CODES:
        return DdbNotFound(message=text, **common)

    if code in _CONFLICT_CODES:
        ccf = code == "TransactionCanceledException" and _conditional_check_failed(exc, msg)
        if code == "ConditionalCheckFailedException":
            ccf = True
        return DdbConflict(message=text, conditional_check_failed=ccf, **common)

    if code in _LIMIT_CODES:
        return DdbThrottled(message=text, allow_retry=True, retry_needs_backoff=True, **common)

    if code in _THROUGHPUT_CODES:
        return DdbThrottled(
            message=text,
            allow_retry=True,
            retry_needs_backoff=True,
            suppress=True,
            **common,
        )

    if code in _INTERNAL_CODES:
        return DdbInternal(message=text, allow_retry=True, suppress=True, **common)

    if code in _VALIDATION_CODES:
        return DdbValidation(message=text, **common)

    return DdbInternal(message=text, **common)
