# attempt.py
# -----------------------------------------------------------------------------
# One student's timed run through an exam (identified by participant id) and
# the in-process registry of running attempts.
#
# The attempt owns every piece of mutable state: the violation log, the
# answer store, the timer, the proctoring monitor and the submission
# coordinator. Timer expiry and forced submission both go through
# submit(), which the coordinator guards so it runs once.
# -----------------------------------------------------------------------------

import hashlib
import threading
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import similarity
from answer_store import AnswerStore
from exam_definition import (
    ATTEMPT_COMPLETED, ATTEMPT_IN_PROGRESS, ATTEMPT_REGISTERED, ATTEMPT_REVIEWED, public_questions,
)
from grading import GradingEngine
from proctoring import ProctoringMonitor
from session_timer import SessionTimer, schedule_in_thread
from submission import SubmissionCoordinator
from violations import FULLSCREEN_EXIT, FULLSCREEN_RETURN, TAB_SWITCH, WINDOW_BLUR, ViolationLog

DEFAULT_SETTINGS = {
    "max_tab_switches": 3,
    "forced_submit_delay": 30.0,
    "save_max_retries": 2,
    "save_retry_cooldown": 2.0,
    "answer_char_limit": 5000,
    "grading_workers": 8,
    "fullscreen_exit_grace": 30.0,
    "accent_aware_stopwords": False,
}


def owner_key(token: Optional[str]) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()[:24]


class ExamAttempt:
    def __init__(self, api, exam: Dict[str, Any], participant_id,
                 owner: Optional[str] = None,
                 settings: Optional[Dict[str, Any]] = None,
                 scheduler: Callable = schedule_in_thread,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 attempt_number: int = 1):
        cfg = dict(DEFAULT_SETTINGS)
        cfg.update(settings or {})
        self.settings = cfg
        self.api = api
        self.exam = exam
        self.exam_id = exam.get("id")
        self.participant_id = participant_id
        self.owner = owner
        self.attempt_number = attempt_number
        self._clock = clock

        self.status = ATTEMPT_REGISTERED
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.fullscreen_released = False
        self._closed = False
        self._close_lock = threading.Lock()

        self.violations = ViolationLog(clock)
        self.answers = AnswerStore(
            api, participant_id, [q["id"] for q in exam.get("questions") or []],
            max_retries=cfg["save_max_retries"],
            retry_cooldown=cfg["save_retry_cooldown"],
            char_limit=cfg["answer_char_limit"],
            sleep=sleep, clock=clock,
        )
        scorer = similarity.score
        if cfg["accent_aware_stopwords"]:
            scorer = partial(similarity.score, accent_aware_stopwords=True)
        self.grader = GradingEngine(api, max_workers=cfg["grading_workers"], scorer=scorer)
        self.coordinator = SubmissionCoordinator(
            api, exam, participant_id, self.answers, self.violations,
            grader=self.grader,
            scheduler=scheduler,
            on_done=self._on_done,
            on_release_fullscreen=self._release_fullscreen,
            fullscreen_exit_grace=cfg["fullscreen_exit_grace"],
            clock=clock,
        )
        self.monitor = ProctoringMonitor(
            self.violations,
            on_force_submit=lambda: self.submit("violations"),
            is_submitting=lambda: self.coordinator.has_started,
            reporter=self._report,
            scheduler=scheduler,
            max_tab_switches=cfg["max_tab_switches"],
            forced_submit_delay=cfg["forced_submit_delay"],
        )
        self.timer = SessionTimer(
            exam.get("duration_minutes") or 0,
            on_expire=self._on_timeout,
            scheduler=scheduler,
            clock=clock,
        )

    # ------------------------------------------------------------- lifecycle
    def open(self, hydrate: bool = True) -> Dict[str, str]:
        """registered -> in_progress: hydrate answers, start the clock, subscribe the monitor."""
        if self.status != ATTEMPT_REGISTERED:
            return self.answers.answers()
        loaded = self.answers.load_existing() if hydrate else {}
        self.status = ATTEMPT_IN_PROGRESS
        self.started_at = self._clock()
        self.timer.start()
        self.monitor.attach()
        return loaded

    def submit(self, reason: str = "manual") -> Optional[Dict[str, Any]]:
        if self.status == ATTEMPT_REGISTERED:
            return None
        return self.coordinator.submit(reason)

    def _on_timeout(self) -> None:
        if self.status != ATTEMPT_IN_PROGRESS:
            return
        print(f"[attempt] participant {self.participant_id}: time is up")
        self.submit("timeout")

    def _on_done(self, result: Dict[str, Any]) -> None:
        self.status = ATTEMPT_COMPLETED
        self.completed_at = self._clock()
        self.close()

    def _release_fullscreen(self) -> None:
        self.fullscreen_released = True

    def close(self) -> bool:
        """Stop the timer and detach the monitor; later calls do nothing."""
        with self._close_lock:
            if self._closed:
                return False
            self._closed = True
        self.timer.stop()
        self.monitor.detach()
        return True

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------ proctoring
    def _report(self, event_type: str, event_data: Dict[str, Any]) -> Any:
        if self.api is None or self.participant_id is None:
            return None
        if event_type == FULLSCREEN_EXIT:
            return self.api.log_fullscreen_exit(self.participant_id)
        if event_type == FULLSCREEN_RETURN:
            return self.api.log_fullscreen_return(self.participant_id)
        if event_type in (TAB_SWITCH, WINDOW_BLUR):
            return self.api.log_monitoring_event(self.participant_id, event_type, event_data)
        return None

    # ---------------------------------------------------------------- views
    def remaining_seconds(self) -> Optional[int]:
        if self.status == ATTEMPT_IN_PROGRESS and not self.coordinator.has_started:
            return self.timer.poll()
        return self.timer.remaining_seconds()

    def summary(self) -> Dict[str, Any]:
        records = self.answers.records()
        answered = sum(1 for r in records.values() if (r["text"] or "").strip())
        total = len(records)
        return {
            "participant_id": self.participant_id,
            "exam_id": self.exam_id,
            "title": self.exam.get("title"),
            "status": self.status,
            "attempt_number": self.attempt_number,
            "time_left": self.remaining_seconds(),
            "duration_minutes": self.exam.get("duration_minutes"),
            "progress_percent": round(answered * 100 / total) if total else 0,
            "answers": {qid: {"text": r["text"], "state": r["state"]} for qid, r in records.items()},
            "proctoring": self.monitor.snapshot(),
            "submission": {"state": self.coordinator.state, "reason": self.coordinator.reason},
            "fullscreen_released": self.fullscreen_released,
            "result": self.coordinator.result,
        }

    def paper(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "exam_id": self.exam_id,
            "title": self.exam.get("title"),
            "duration_minutes": self.exam.get("duration_minutes"),
            "passing_score": self.exam.get("passing_score"),
            "total_points": self.exam.get("total_points"),
            "questions": public_questions(self.exam),
            "saved_answers": self.answers.answers(),
            "time_left": self.remaining_seconds(),
        }


class AttemptRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._by_participant: Dict[str, ExamAttempt] = {}
        self._by_owner: Dict[tuple, List[ExamAttempt]] = {}
        self._start_locks: Dict[tuple, threading.Lock] = {}

    def start_lock(self, owner: Optional[str], exam_id) -> threading.Lock:
        """Held while one (owner, exam) start runs, so a double start opens one attempt."""
        with self._lock:
            return self._start_locks.setdefault((owner, str(exam_id)), threading.Lock())

    def add(self, attempt: ExamAttempt) -> ExamAttempt:
        with self._lock:
            self._by_participant[str(attempt.participant_id)] = attempt
            self._by_owner.setdefault((attempt.owner, str(attempt.exam_id)), []).append(attempt)
        return attempt

    def get(self, participant_id) -> Optional[ExamAttempt]:
        with self._lock:
            return self._by_participant.get(str(participant_id))

    def for_owner(self, owner: Optional[str], exam_id) -> List[ExamAttempt]:
        with self._lock:
            return list(self._by_owner.get((owner, str(exam_id)), []))

    def active(self, owner: Optional[str], exam_id) -> Optional[ExamAttempt]:
        for a in self.for_owner(owner, exam_id):
            if a.status == ATTEMPT_IN_PROGRESS:
                return a
        return None

    def completed_count(self, owner: Optional[str], exam_id) -> int:
        return sum(1 for a in self.for_owner(owner, exam_id) if a.status in (ATTEMPT_COMPLETED, ATTEMPT_REVIEWED))
