from __future__ import annotations

import threading
from typing import Callable, TypeVar

from ..observability.logging import get_logger
from .classify import is_backend_error
from .context import DEFAULT_WAIT_S, OperationContext
from .errors import DdbError, DdbInternal, DdbUnavailable, DdbValidation

T = TypeVar("T")

log = get_logger("ddb_admission")

SHUTDOWN_MESSAGE = "admission gate shutdown"


class AdmissionGate:
    """
    Bounded-concurrency gate with a one-shot drain.

    At most ``capacity`` operations hold a slot at once. After :meth:`shutdown` starts no
    new operation is admitted, while already admitted ones run to completion before
    :meth:`shutdown` returns. Capacity never changes; re-init builds a new gate.
    """

    def __init__(self, capacity: int, *, default_wait_s: float = DEFAULT_WAIT_S) -> None:
        if int(capacity) <= 0:
            raise DdbValidation(message="admission gate capacity must be > 0")
        self._capacity = int(capacity)
        self._default_wait_s = float(default_wait_s)
        self._cond = threading.Condition(threading.Lock())
        self._active = 0
        self._closing = False
        self._shutdown_signal = threading.Event()
        self._once = threading.Lock()
        self._shutdown_done = False

    @property
    def closing(self) -> bool:
        return self._shutdown_signal.is_set()

    def current_load(self) -> int:
        if self._shutdown_signal.is_set():
            return 0
        return self._active

    def max_capacity(self) -> int:
        if self._shutdown_signal.is_set():
            return 0
        return self._capacity

    def _wake_waiters(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _acquire(self, ctx: OperationContext) -> None:
        unregister = ctx.on_cancel(self._wake_waiters)
        try:
            self._acquire_slot(ctx)
        finally:
            unregister()

    def _acquire_slot(self, ctx: OperationContext) -> None:
        # Woken by release, shutdown or cancellation; the deadline bounds the wait.
        with self._cond:
            while True:
                if self._closing:
                    log.warning("admission_rejected_shutdown")
                    raise DdbUnavailable(message=SHUTDOWN_MESSAGE)
                if ctx.done():
                    reason = ctx.reason()
                    log.warning("admission_wait_expired", reason=reason, active=self._active)
                    raise DdbUnavailable(message=f"admission slot wait aborted: {reason}")
                if self._active < self._capacity:
                    self._active += 1
                    return
                self._cond.wait(ctx.remaining())

    def _release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    def execute(self, operation: Callable[[], T], ctx: OperationContext | None = None) -> T:
        """Run ``operation`` inside one slot; waiting honours ``ctx`` (30s when it has no deadline)."""
        ctx = ctx or OperationContext.background()
        if not ctx.has_deadline():
            ctx = OperationContext.with_timeout(self._default_wait_s, parent=ctx)

        self._acquire(ctx)
        try:
            return self._run(operation)
        finally:
            self._release()

    @staticmethod
    def _run(operation: Callable[[], T]) -> T:
        try:
            return operation()
        except DdbError:
            raise
        except Exception as e:
            if is_backend_error(e):
                raise
            # Unexpected fault inside the wrapped call: report it once, here.
            log.exception("admission_operation_fault", error=repr(e))
            raise DdbInternal(message=f"panic: {e}", cause=e) from e

    def shutdown(self) -> None:
        """Stop admitting and wait for in-flight operations; later calls are no-ops."""
        with self._once:
            if self._shutdown_done:
                return
            self._shutdown_done = True

            with self._cond:
                self._closing = True
                self._shutdown_signal.set()
                self._cond.notify_all()
                in_flight = self._active
                log.info("admission_gate_draining", in_flight=in_flight)
                while self._active > 0:
                    self._cond.wait()
            log.info("admission_gate_shutdown", drained=in_flight)


# ---- process-level lifecycle ----

_gate: AdmissionGate | None = None
_gate_lock = threading.Lock()


def _open(gate: AdmissionGate | None) -> bool:
    return gate is not None and not gate.closing


def init_admission_gate(capacity: int) -> AdmissionGate:
    """Create the process gate once; a no-op while an open gate exists."""
    global _gate
    gate = _gate
    if _open(gate):
        return gate  # type: ignore[return-value]
    with _gate_lock:
        if _open(_gate):
            return _gate  # type: ignore[return-value]
        _gate = AdmissionGate(capacity)
        log.info("admission_gate_init", capacity=int(capacity))
        return _gate


def get_admission_gate() -> AdmissionGate | None:
    return _gate


def is_admission_gate_initialized() -> bool:
    return _open(_gate)


def current_load() -> int:
    """Slots held on the process gate; 0 when it is absent or shut down."""
    gate = _gate
    if gate is None or gate.closing:
        return 0
    return gate.current_load()


def max_capacity() -> int:
    gate = _gate
    if gate is None or gate.closing:
        return 0
    return gate.max_capacity()


def shutdown_admission_gate() -> None:
    gate = _gate
    if gate is not None:
        gate.shutdown()


def log_admission_gate_stats() -> None:
    gate = _gate
    if gate is None:
        log.info("admission_gate_stats", initialized=False)
        return
    log.info(
        "admission_gate_stats",
        initialized=not gate.closing,
        current_load=current_load(),
        max_capacity=max_capacity(),
    )


def execute_with_limit(
    operation: Callable[[], T],
    ctx: OperationContext | None = None,
    gate: AdmissionGate | None = None,
) -> T:
    """Run through ``gate`` (or the process gate); runs unlimited when no gate exists."""
    g = gate if gate is not None else _gate
    if g is None:
        return operation()
    return g.execute(operation, ctx)
