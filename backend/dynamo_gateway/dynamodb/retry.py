from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from ..observability.logging import get_logger
from .context import OperationContext
from .errors import DdbError

T = TypeVar("T")

log = get_logger("ddb_retry")

MAX_RETRIES = 10
BACKOFF_SLEEP_S = 0.5
IMMEDIATE_SLEEP_S = 0.1


@dataclass(frozen=True, slots=True)
class TimeoutBand:
    floor_s: float
    ceiling_s: float

    def clamp(self, timeout_s: float | None) -> float:
        t = self.floor_s if timeout_s is None else float(timeout_s)
        return min(self.ceiling_s, max(self.floor_s, t))


# Point reads/writes/deletes/queries.
POINT_BAND = TimeoutBand(5.0, 15.0)
# Updates, batches, scans, transactions.
EXTENDED_BAND = TimeoutBand(10.0, 30.0)


@dataclass(frozen=True, slots=True)
class RetryBudget:
    max_retries: int
    timeout_s: float

    @classmethod
    def for_call(
        cls, max_retries: int, timeout_s: float | None, band: TimeoutBand = POINT_BAND
    ) -> RetryBudget:
        return cls(
            max_retries=min(MAX_RETRIES, max(0, int(max_retries))),
            timeout_s=band.clamp(timeout_s),
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for unprocessed batch work (50ms doubling, 2s cap)."""

    max_attempts: int = 5
    base_delay_s: float = 0.05
    max_delay_s: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt - 1)))


def retry_call(
    operation: str,
    attempt: Callable[[OperationContext], T],
    *,
    max_retries: int,
    timeout_s: float | None = None,
    band: TimeoutBand = POINT_BAND,
    suppress_transient: bool = True,
    empty_result: Callable[[], Any] | None = None,
    ctx: OperationContext | None = None,
) -> T:
    """
    Run ``attempt`` until it succeeds or its classified error says stop.

    Each attempt gets a fresh child context bounded by the clamped timeout. Retryable
    errors sleep 500ms (backoff) or 100ms (immediate) before the next attempt. When the
    loop stops on an error flagged ``suppress`` (and suppression is on) the empty result is
    returned instead of raising; anything else raises with a ``<Op>WithRetry Failed:``
    prefix and its retry advice cleared.
    """
    budget = RetryBudget.for_call(max_retries, timeout_s, band)
    parent = ctx or OperationContext.background()
    remaining = budget.max_retries
    label = f"{operation}WithRetry"
    tries = 0

    while True:
        tries += 1
        try:
            return attempt(OperationContext.with_timeout(budget.timeout_s, parent=parent))
        except DdbError as err:
            if remaining > 0 and err.allow_retry and not parent.done():
                log.warning(
                    "ddb_retry",
                    operation=operation,
                    attempt=tries,
                    retries_left=remaining,
                    backoff=err.retry_needs_backoff,
                    error=str(err),
                )
                pause = BACKOFF_SLEEP_S if err.retry_needs_backoff else IMMEDIATE_SLEEP_S
                if parent.sleep(pause):
                    remaining -= 1
                    continue
                # Caller cancelled or ran out of time during backoff.
                raise err.final(f"{label} Failed: ({parent.reason()})") from err

            if err.suppress and suppress_transient:
                log.warning(
                    "ddb_error_suppressed",
                    operation=operation,
                    attempt=tries,
                    max_retries=remaining,
                    error=str(err),
                )
                return empty_result() if empty_result is not None else None  # type: ignore[return-value]

            prefix = f"{label} Failed:"
            if remaining <= 0:
                prefix = f"{label} Failed: (MaxRetries = 0)"
            raise err.final(prefix) from err
