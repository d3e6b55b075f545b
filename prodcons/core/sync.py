import threading
import time
from typing import Callable, Optional

from prodcons.core.errors import CancelledOperation
from prodcons.core.trace import os_trace


class CancelToken:
    """
    A one-shot cancellation request shared between the kernel and the worker tasks.

    Blocking primitives register a wake-up callback while they wait, so a call
    to cancel() interrupts a sleeping thread immediately instead of the thread
    noticing on its next poll.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        os_trace(f"Cancellation requested. Waking {len(callbacks)} waiter(s).")
        # Callbacks run outside self._lock: they take the waiter's own lock.
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def sleep(self, seconds: float) -> bool:
        """Pause for `seconds`. Returns False if cancelled before the pause ended."""
        return not self._event.wait(timeout=seconds)


class CountingSemaphore:
    """
    Counting semaphore built on threading.Condition.

    OS CONCEPTS DEMONSTRATED:

    1. COUNTING SEMAPHORE:
       Holds a non-negative value. acquire() blocks until the value is
       positive then decrements it; release() increments it and wakes at
       most one blocked acquirer.

    2. CONDITION VARIABLES:
       Waiters sleep inside `self._cond.wait()`, which atomically releases the
       internal lock. No busy waiting.

    3. CANCELLATION POINTS:
       acquire() is the only place a waiting thread can observe a cancel
       request. A CancelToken wakes every sleeper registered on it.
    """

    def __init__(self, value: int = 0, name: str = "Semaphore"):
        if value < 0:
            raise ValueError("semaphore initial value must be >= 0")
        self.name = name
        self._value = value
        self._cond = threading.Condition(threading.Lock())
        self._waiters = 0

        self.stats = {
            "acquires": 0,
            "releases": 0,
            "waits": 0,  # acquires that had to sleep at least once
            "timeouts": 0,
            "cancellations": 0,
        }

    @property
    def value(self) -> int:
        with self._cond:
            return self._value

    @property
    def waiters(self) -> int:
        with self._cond:
            return self._waiters

    def _wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def acquire(self, cancel: Optional[CancelToken] = None, timeout: Optional[float] = None) -> bool:
        """
        Take one token. Blocks while the value is 0.

        Returns True on success, False if `timeout` elapsed first.
        Raises CancelledOperation if `cancel` fires before a token is taken.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if cancel is not None:
            cancel.register(self._wake_all)
        try:
            with self._cond:
                waited = False
                while True:
                    if cancel is not None and cancel.cancelled:
                        self.stats["cancellations"] += 1
                        os_trace(f"{self.name}: acquire cancelled (value={self._value}).")
                        raise CancelledOperation(f"acquire on {self.name} was cancelled")

                    if self._value > 0:
                        break

                    if not waited:
                        waited = True
                        self.stats["waits"] += 1

                    remaining = None
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            self.stats["timeouts"] += 1
                            os_trace(f"{self.name}: timed out waiting for a token.")
                            return False

                    os_trace(f"{self.name}: value is 0. Sleeping on Condition.")
                    self._waiters += 1
                    try:
                        self._cond.wait(timeout=remaining)
                    finally:
                        self._waiters -= 1

                self._value -= 1
                self.stats["acquires"] += 1
                os_trace(f"{self.name}: token taken (value={self._value}).")
                return True
        finally:
            if cancel is not None:
                cancel.unregister(self._wake_all)

    def release(self) -> None:
        with self._cond:
            self._value += 1
            self.stats["releases"] += 1
            os_trace(f"{self.name}: token released (value={self._value}). Signalling one waiter.")
            self._cond.notify()


class GuardLock:
    """
    Exclusive lock used as a context manager that measures contention.

    Every `with guard:` block records how long the caller waited to get in
    and how long it held the lock, then hands both numbers to `on_release`.
    """

    def __init__(self, name: str = "guard", on_release: Optional[Callable[[float, float], None]] = None):
        self.name = name
        self._lock = threading.Lock()
        self._on_release = on_release
        self._acquired_at = 0.0
        self._wait_ms = 0.0

    def locked(self) -> bool:
        return self._lock.locked()

    def untracked(self) -> threading.Lock:
        """The same exclusive lock without measurement, for inspection reads."""
        return self._lock

    def __enter__(self):
        wait_start = time.perf_counter()
        self._lock.acquire()
        self._acquired_at = time.perf_counter()
        self._wait_ms = (self._acquired_at - wait_start) * 1000.0
        return self

    def __exit__(self, exc_type, exc, tb):
        held_ms = (time.perf_counter() - self._acquired_at) * 1000.0
        wait_ms = self._wait_ms
        self._lock.release()
        if self._on_release is not None:
            self._on_release(wait_ms, held_ms)
        return False
