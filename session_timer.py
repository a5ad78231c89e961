# session_timer.py
# -----------------------------------------------------------------------------
# Countdown for one attempt plus the small scheduling helper shared by the
# proctoring monitor and the submission coordinator.
# Remaining time is computed from a fixed wall-clock deadline (no per-second
# ticks), so a suspended host does not make the clock drift.
# A non-positive duration means no time limit: nothing is scheduled and
# remaining_seconds() is None.
# -----------------------------------------------------------------------------

import math
import threading
import time
from typing import Callable, Optional


def schedule_in_thread(delay: float, fn: Callable[[], None]):
    """Run fn once after delay seconds on a daemon thread; returns a handle with .cancel()."""
    t = threading.Timer(max(0.0, float(delay)), fn)
    t.daemon = True
    t.start()
    return t


class SessionTimer:
    def __init__(self, duration_minutes: float, on_expire: Callable[[], None],
                 scheduler: Callable = schedule_in_thread,
                 clock: Callable[[], float] = time.time):
        self.duration_seconds = max(0, int(round(float(duration_minutes or 0) * 60)))
        self.limited = self.duration_seconds > 0
        self._on_expire = on_expire
        self._schedule = scheduler
        self._clock = clock
        self._deadline: Optional[float] = None
        self._handle = None
        self._lock = threading.Lock()
        self.expired = False
        self.stopped = False

    @property
    def running(self) -> bool:
        return self._deadline is not None and not self.expired and not self.stopped

    def start(self) -> None:
        with self._lock:
            if self._deadline is not None or self.stopped or not self.limited:
                return
            self._deadline = self._clock() + self.duration_seconds
            self._handle = self._schedule(self.duration_seconds, self._fire)

    def remaining_seconds(self) -> Optional[int]:
        if not self.limited:
            return None
        if self._deadline is None:
            return self.duration_seconds
        if self.expired:
            return 0
        return max(0, int(math.ceil(self._deadline - self._clock())))

    def poll(self) -> Optional[int]:
        """Fire expiry if the deadline passed but the background timer has not run yet."""
        left = self.remaining_seconds()
        if left == 0 and self.running:
            self._fire()
        return left

    def _fire(self) -> None:
        with self._lock:
            if self.expired or self.stopped or self._deadline is None:
                return
            # a timer thread woken early (clock skew) re-arms for the rest
            left = self._deadline - self._clock()
            if left > 0.5:
                self._handle = self._schedule(left, self._fire)
                return
            self.expired = True
            self._handle = None
        try:
            self._on_expire()
        except Exception as e:
            print(f"[timer] expiry callback failed: {e}")

    def stop(self) -> None:
        with self._lock:
            if self.stopped:
                return
            self.stopped = True
            handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.cancel()
            except Exception as e:
                print(f"[timer] cancel failed: {e}")
