from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import ProviderTimeoutError, RequestCancelled


class CallContext:
    """Deadline plus cancellation signal threaded through every provider call.

    A child context narrows the deadline but shares the cancellation event with
    its parent, so cancelling a race cancels every provider dispatched under it.
    """

    def __init__(self, deadline: Optional[float] = None, cancel_event: Optional[threading.Event] = None) -> None:
        # Monotonic clock instant, None = no deadline
        self.deadline = deadline
        self._cancel = cancel_event or threading.Event()
        self.cancel_reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: Optional[float]) -> "CallContext":
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def child(self, timeout: Optional[float] = None) -> "CallContext":
        deadline = self.deadline
        if timeout is not None:
            own = time.monotonic() + timeout
            deadline = own if deadline is None else min(deadline, own)
        child = CallContext(deadline=deadline, cancel_event=self._cancel)
        child.cancel_reason = self.cancel_reason
        return child

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.cancel_reason = reason
        self._cancel.set()

    def check(self, provider: Optional[str] = None, responded: bool = False) -> None:
        if self._cancel.is_set():
            raise RequestCancelled(self.cancel_reason or "cancelled", provider)
        if self.expired:
            raise ProviderTimeoutError("deadline exceeded", provider, responded=responded)

    def wait(self, seconds: float, provider: Optional[str] = None, responded: bool = False) -> None:
        """Sleep for up to `seconds`, waking early on cancellation or deadline."""
        remaining = self.remaining()
        delay = seconds if remaining is None else min(seconds, remaining)
        if delay > 0:
            self._cancel.wait(delay)
        self.check(provider, responded=responded)

    def http_timeout(self, cap: float, provider: Optional[str] = None) -> float:
        """Timeout for a single blocking HTTP call: the smaller of `cap` and what is left."""
        self.check(provider)
        remaining = self.remaining()
        if remaining is None:
            return cap
        return max(0.5, min(cap, remaining))
