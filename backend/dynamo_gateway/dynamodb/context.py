from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

# Upper bound applied to calls that arrive without any deadline.
DEFAULT_WAIT_S = 30.0


@dataclass(slots=True)
class OperationContext:
    """Deadline + cancellation carried through one public call.

    ``deadline`` is a ``time.monotonic()`` instant. Child contexts created with
    :meth:`with_timeout` share the parent's cancel event and never outlive its deadline.
    """

    deadline: float | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)
    # Shared with children, like the cancel event.
    _watchers: list[Callable[[], None]] = field(default_factory=list, repr=False)
    _watch_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def background(cls) -> OperationContext:
        return cls()

    @classmethod
    def with_timeout(
        cls, timeout_s: float | None, parent: OperationContext | None = None
    ) -> OperationContext:
        base = parent if parent is not None else cls()
        if timeout_s is None:
            return base
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        if base.deadline is not None:
            deadline = min(deadline, base.deadline)
        return cls(
            deadline=deadline,
            _cancelled=base._cancelled,
            _watchers=base._watchers,
            _watch_lock=base._watch_lock,
        )

    def has_deadline(self) -> bool:
        return self.deadline is not None

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        with self._watch_lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            watchers = list(self._watchers)
        for fn in watchers:
            fn()

    def on_cancel(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Run ``fn`` once on cancellation (now, if already cancelled); returns an unregister callable."""
        with self._watch_lock:
            if not self._cancelled.is_set():
                self._watchers.append(fn)

                def _remove() -> None:
                    with self._watch_lock:
                        if fn in self._watchers:
                            self._watchers.remove(fn)

                return _remove
        fn()
        return lambda: None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def reason(self) -> str:
        if self._cancelled.is_set():
            return "context cancelled"
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "context deadline exceeded"
        return ""

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False when cancellation or the deadline cut it short."""
        wait = max(0.0, float(seconds))
        rem = self.remaining()
        if rem is not None and rem < wait:
            self._cancelled.wait(rem)
            return False
        if self._cancelled.wait(wait):
            return False
        return True
