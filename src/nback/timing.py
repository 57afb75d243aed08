"""
Deferred-callback timer queue.

Clock      – protocol satisfied by psychopy.clock.Clock (and test fakes)
TimerQueue – single-threaded call_later/cancel, driven by poll() from the frame loop

Callbacks only ever run inside poll(), on the caller's thread, in due-time order.
"""
from __future__ import annotations

import heapq
import itertools
from typing import Callable, Protocol

from psychopy import clock as psy_clock


class Clock(Protocol):
    def getTime(self) -> float:
        """Seconds since the clock was created or reset."""
        ...


class TimerQueue:
    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock if clock is not None else psy_clock.Clock()
        self._heap: list[tuple[float, int]] = []
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._clock.getTime() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> int:
        """Arm `callback` to run `delay_ms` from now; returns a handle for cancel()."""
        handle = next(self._seq)
        heapq.heappush(self._heap, (self.now_ms() + max(0.0, delay_ms), handle))
        self._callbacks[handle] = callback
        return handle

    def cancel(self, handle: int | None) -> None:
        if handle is not None:
            self._callbacks.pop(handle, None)

    def cancel_all(self) -> None:
        self._callbacks.clear()
        self._heap.clear()

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    def next_due_ms(self) -> float | None:
        while self._heap and self._heap[0][1] not in self._callbacks:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def poll(self) -> int:
        """Run every callback whose due time has passed; returns how many ran."""
        ran = 0
        while True:
            due = self.next_due_ms()
            if due is None or due > self.now_ms():
                return ran
            _, handle = heapq.heappop(self._heap)
            callback = self._callbacks.pop(handle)
            callback()
            ran += 1
