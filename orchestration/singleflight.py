from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, Optional, TypeVar


T = TypeVar("T")


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Optional[T] = None
        self.error: Optional[BaseException] = None
        self.followers = 0


class SingleFlight(Generic[T]):
    """Coalesce concurrent calls sharing a key into one execution.

    The first caller for a key runs `fn`; callers arriving while it is in
    flight block and receive the same value (or exception). Once the leader
    finishes the key is released, so the next call starts a fresh execution.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[Hashable, _Call[T]] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> tuple[T, bool]:
        """Return `(value, shared)`; `shared` is True for callers that joined an in-flight call."""
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.followers += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value, True  # type: ignore[return-value]

        try:
            call.value = fn()
        except BaseException as e:  # noqa: BLE001
            call.error = e
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.value, False

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._calls
