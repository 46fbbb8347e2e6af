"""Cancellable delayed tasks for debounced re-validation.

A :class:`Debouncer` keeps at most one pending task: scheduling a new one
cancels the previous token, so the last input wins. Schedulers are
pluggable; :class:`ManualScheduler` lets tests drive time explicitly.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from typing import Callable


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


class ThreadingScheduler:
    """Runs callbacks on ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer.cancel


class ManualScheduler:
    """Virtual-time scheduler; nothing runs until :meth:`advance`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        # Sequence ids still queued and not cancelled.
        self._live: set[int] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]:
        seq = next(self._seq)
        heapq.heappush(self._queue, (self.now + delay, seq, callback))
        self._live.add(seq)
        return lambda: self._live.discard(seq)

    @property
    def pending(self) -> int:
        return len(self._live)

    def advance(self, seconds: float) -> int:
        """Move time forward, running every task that falls due. Returns how many ran."""

        target = self.now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, seq, callback = heapq.heappop(self._queue)
            self.now = due
            if seq not in self._live:
                continue
            self._live.discard(seq)
            callback()
            ran += 1
        self.now = target
        return ran


class Debouncer:
    def __init__(self, delay: float, scheduler: ThreadingScheduler | ManualScheduler | None = None) -> None:
        self.delay = delay
        self.scheduler = scheduler or ThreadingScheduler()
        self._lock = threading.Lock()
        self._token: CancellationToken | None = None
        self._cancel_timer: Callable[[], None] | None = None

    def schedule(self, task: Callable[[CancellationToken], None]) -> CancellationToken:
        token = CancellationToken()

        def _fire() -> None:
            if not token.cancelled:
                task(token)

        with self._lock:
            self._cancel_locked()
            self._token = token
            self._cancel_timer = self.scheduler.call_later(self.delay, _fire)
        return token

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._token is not None:
            self._token.cancel()
        if self._cancel_timer is not None:
            self._cancel_timer()
        self._token = None
        self._cancel_timer = None
