# proctoring.py
# -----------------------------------------------------------------------------
# Tab-focus / fullscreen discipline for one attempt.
#
# States:
#   focused      - student is on the exam page
#   warned       - left the page at least once (violation counted, warning shown)
#   terminating  - tab-switch threshold reached; forced submission scheduled
#
# Counters live in the attempt's ViolationLog and are never reset. Reporting
# to the server is best-effort and never changes the local counters.
# -----------------------------------------------------------------------------

import threading
from typing import Any, Callable, Dict, List, Optional

from session_timer import schedule_in_thread
from violations import (
    FOCUS_RETURN, FULLSCREEN_EXIT, FULLSCREEN_RETURN, TAB_SWITCH, WINDOW_BLUR,
    ViolationLog, iso_timestamp,
)

FOCUSED = "focused"
WARNED = "warned"
TERMINATING = "terminating"
STATES = (FOCUSED, WARNED, TERMINATING)

# Browser signal names accepted by handle().
SIGNALS = {
    "visibility_hidden": TAB_SWITCH,
    "window_blur": WINDOW_BLUR,
    "visibility_visible": FOCUS_RETURN,
    "window_focus": FOCUS_RETURN,
    "fullscreen_exit": FULLSCREEN_EXIT,
    "fullscreen_return": FULLSCREEN_RETURN,
}


class ProctoringMonitor:
    def __init__(self, violations: ViolationLog,
                 on_force_submit: Callable[[], Any],
                 is_submitting: Callable[[], bool] = lambda: False,
                 reporter: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
                 scheduler: Callable = schedule_in_thread,
                 max_tab_switches: int = 3,
                 forced_submit_delay: float = 30.0):
        self.violations = violations
        self._on_force_submit = on_force_submit
        self._is_submitting = is_submitting
        self._reporter = reporter
        self._schedule = scheduler
        self.max_tab_switches = max(1, int(max_tab_switches))
        self.forced_submit_delay = float(forced_submit_delay)

        self.state = FOCUSED
        self.attached = False
        self.detached = False
        self.away = False
        self.fullscreen_lost = False
        self.warnings: List[Dict[str, Any]] = []
        self.server_verdict: Dict[str, Any] = {"cheatingDetected": False, "redirectTo": None}
        self._forced_handle = None
        self.forced_submit_scheduled = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------- lifecycle
    def attach(self) -> None:
        with self._lock:
            if not self.detached:
                self.attached = True

    def detach(self) -> bool:
        """Drop the subscription and any pending forced submission. Safe to call repeatedly."""
        with self._lock:
            if self.detached:
                return False
            self.detached = True
            self.attached = False
            handle, self._forced_handle = self._forced_handle, None
        if handle is not None:
            try:
                handle.cancel()
            except Exception as e:
                print(f"[proctor] forced-submit cancel failed: {e}")
        return True

    # --------------------------------------------------------------- signals
    def handle(self, signal: str) -> Dict[str, Any]:
        event_type = SIGNALS.get(signal)
        if event_type is None:
            raise ValueError(f"unknown proctoring signal '{signal}'")
        if not self.attached:
            return self.snapshot()
        if event_type in (TAB_SWITCH, WINDOW_BLUR):
            self._on_leave(event_type)
        elif event_type == FOCUS_RETURN:
            self._on_return()
        elif event_type == FULLSCREEN_EXIT:
            self._on_fullscreen_exit()
        else:
            self._on_fullscreen_return()
        return self.snapshot()

    def _on_leave(self, event_type: str) -> None:
        schedule_forced = False
        with self._lock:
            # hidden + blur fire together for one switch; count it once
            if self.away:
                return
            self.away = True
            entry = self.violations.append(event_type)
            count = self.violations.tab_switches
            if self.state == FOCUSED:
                self.state = WARNED
            message = f"Leaving the exam page was recorded ({count}/{self.max_tab_switches})."
            if (count >= self.max_tab_switches and self._forced_handle is None
                    and self.state != TERMINATING and not self._is_submitting()):
                self.state = TERMINATING
                schedule_forced = True
                message = (f"Too many tab/window switches. The exam will be submitted "
                           f"automatically in {int(self.forced_submit_delay)} seconds.")
            self._warn(event_type, message, entry["timestamp"])
        if schedule_forced:
            handle = self._schedule(self.forced_submit_delay, self._forced_submit)
            with self._lock:
                self._forced_handle = handle
                self.forced_submit_scheduled += 1
        self._report(event_type, {"count": count, "timestamp": iso_timestamp(entry["timestamp"])})

    def _on_return(self) -> None:
        with self._lock:
            if not self.away:
                return
            self.away = False
            entry = self.violations.append(FOCUS_RETURN)
            if self.state == WARNED:
                self.state = FOCUSED
        self._report(FOCUS_RETURN, {"timestamp": iso_timestamp(entry["timestamp"])})

    def _on_fullscreen_exit(self) -> None:
        with self._lock:
            if self.fullscreen_lost:
                return
            self.fullscreen_lost = True
            entry = self.violations.append(FULLSCREEN_EXIT)
            count = self.violations.fullscreen_exits
            self._warn(FULLSCREEN_EXIT,
                       f"Fullscreen was exited ({count} time(s)); each exit reduces the score.",
                       entry["timestamp"])
        self._report(FULLSCREEN_EXIT, {"count": count, "timestamp": iso_timestamp(entry["timestamp"])})

    def _on_fullscreen_return(self) -> None:
        with self._lock:
            if not self.fullscreen_lost:
                return
            self.fullscreen_lost = False
            entry = self.violations.append(FULLSCREEN_RETURN)
        self._report(FULLSCREEN_RETURN, {"timestamp": iso_timestamp(entry["timestamp"])})

    # --------------------------------------------------------------- helpers
    def _warn(self, event_type: str, message: str, ts: float) -> None:
        self.warnings.append({"type": event_type, "message": message, "timestamp": ts})

    def _forced_submit(self) -> None:
        with self._lock:
            self._forced_handle = None
            if self.detached or self._is_submitting():
                return
        print("[proctor] tab-switch limit reached; forcing submission")
        try:
            self._on_force_submit()
        except Exception as e:
            print(f"[proctor] forced submission failed: {e}")

    def _report(self, event_type: str, event_data: Dict[str, Any]) -> None:
        if self._reporter is None:
            return
        try:
            resp = self._reporter(event_type, event_data)
        except Exception as e:
            print(f"[proctor] logging {event_type} failed: {e}")
            return
        if isinstance(resp, dict) and resp.get("cheatingDetected"):
            with self._lock:
                self.server_verdict = {
                    "cheatingDetected": True,
                    "redirectTo": resp.get("redirectTo"),
                }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state,
                "attached": self.attached,
                "away": self.away,
                "fullscreen": not self.fullscreen_lost,
                "tabSwitches": self.violations.tab_switches,
                "fullscreenExits": self.violations.fullscreen_exits,
                "maxTabSwitches": self.max_tab_switches,
                "forcedSubmitPending": self._forced_handle is not None,
                "warnings": [dict(w) for w in self.warnings[-5:]],
                "serverVerdict": dict(self.server_verdict),
            }
