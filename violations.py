# violations.py
# -----------------------------------------------------------------------------
# Append-only proctoring log owned by one attempt.
# Counters are derived from the entries, never stored separately, so penalty
# math always reads the same numbers.
# -----------------------------------------------------------------------------

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

TAB_SWITCH = "tab_switch"
WINDOW_BLUR = "window_blur"
FULLSCREEN_EXIT = "fullscreen_exit"
VIOLATION_TYPES = (TAB_SWITCH, WINDOW_BLUR, FULLSCREEN_EXIT)

# Non-violation events kept in the same timeline.
FOCUS_RETURN = "focus_return"
FULLSCREEN_RETURN = "fullscreen_return"
EVENT_TYPES = VIOLATION_TYPES + (FOCUS_RETURN, FULLSCREEN_RETURN)


class ViolationLog:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, event_type: str, detail: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown proctoring event '{event_type}'")
        with self._lock:
            ts = float(self._clock())
            if self._entries and ts < self._entries[-1]["timestamp"]:
                ts = self._entries[-1]["timestamp"]
            entry = {"type": event_type, "timestamp": ts}
            if detail:
                entry["detail"] = dict(detail)
            self._entries.append(entry)
            return dict(entry)

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(e) for e in self._entries]

    def count(self, *event_types: str) -> int:
        with self._lock:
            return sum(1 for e in self._entries if e["type"] in event_types)

    @property
    def tab_switches(self) -> int:
        # a window blur is the desktop equivalent of switching tabs
        return self.count(TAB_SWITCH, WINDOW_BLUR)

    @property
    def fullscreen_exits(self) -> int:
        return self.count(FULLSCREEN_EXIT)

    def counters(self) -> Dict[str, int]:
        return {"tabSwitches": self.tab_switches, "fullscreenExits": self.fullscreen_exits}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def iso_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
