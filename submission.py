# submission.py
# -----------------------------------------------------------------------------
# Attempt completion state machine:
#
#   idle -> saving_answers -> completing -> grading -> finalizing -> done
#
# Entered once per attempt and never rolled back. The first caller of
# submit() wins; the timer, the proctoring monitor and the student all race
# for it and every later call is a no-op that reports the current state.
# Each remote step degrades locally, so `done` is always reached.
# -----------------------------------------------------------------------------

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import penalties
from exam_api import AUTH, classify_error, completion_routes, first_success, unwrap
from exam_definition import DEFAULT_QUESTION_POINTS
from grading import SOURCE_REMOTE, GradingEngine, local_only

IDLE = "idle"
SAVING_ANSWERS = "saving_answers"
COMPLETING = "completing"
GRADING = "grading"
FINALIZING = "finalizing"
DONE = "done"
STATES = (IDLE, SAVING_ANSWERS, COMPLETING, GRADING, FINALIZING, DONE)

_NEXT = {
    IDLE: SAVING_ANSWERS,
    SAVING_ANSWERS: COMPLETING,
    COMPLETING: GRADING,
    GRADING: FINALIZING,
    FINALIZING: DONE,
}

EVALUATION_FEEDBACK = {
    "success": "Answer graded automatically by the server.",
    "fallback_used": "Answer graded with the server's fallback method.",
    "no_answer": "No answer was given.",
}
EVALUATION_FEEDBACK_DEFAULT = "This question could not be graded."


class SubmissionCoordinator:
    def __init__(self, api, exam: Dict[str, Any], participant_id,
                 answers, violations,
                 grader: Optional[GradingEngine] = None,
                 scheduler: Optional[Callable] = None,
                 on_done: Optional[Callable[[Dict[str, Any]], None]] = None,
                 on_release_fullscreen: Optional[Callable[[], None]] = None,
                 fullscreen_exit_grace: float = 30.0,
                 clock: Callable[[], float] = time.time):
        self.api = api
        self.exam = exam
        self.exam_id = exam.get("id")
        self.participant_id = participant_id
        self.answers = answers
        self.violations = violations
        self.grader = grader or GradingEngine(api)
        self._schedule = scheduler
        self._on_done = on_done
        self._on_release_fullscreen = on_release_fullscreen
        self.fullscreen_exit_grace = float(fullscreen_exit_grace)
        self._clock = clock

        self.state = IDLE
        self.reason: Optional[str] = None
        self.result: Optional[Dict[str, Any]] = None
        self.completion: Optional[Dict[str, Any]] = None
        self.history: List[str] = [IDLE]
        self._lock = threading.Lock()
        self._done = threading.Event()

    # ----------------------------------------------------------------- guard
    @property
    def has_started(self) -> bool:
        return self.state != IDLE

    @property
    def is_done(self) -> bool:
        return self.state == DONE

    def _advance(self, to_state: str) -> None:
        with self._lock:
            if _NEXT.get(self.state) != to_state:
                raise RuntimeError(f"illegal submission transition {self.state} -> {to_state}")
            self.state = to_state
            self.history.append(to_state)

    def _claim(self, reason: str) -> bool:
        with self._lock:
            if self.state != IDLE:
                return False
            self.state = SAVING_ANSWERS
            self.history.append(SAVING_ANSWERS)
            self.reason = reason
            return True

    def wait(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        self._done.wait(timeout)
        return self.result

    # ---------------------------------------------------------------- submit
    def submit(self, reason: str = "manual") -> Optional[Dict[str, Any]]:
        """
        Run the whole completion flow once. Returns the final result, or the
        current result (None while another caller is still running it).
        """
        if not self._claim(reason):
            return self.result
        print(f"[submit] participant {self.participant_id}: submission started ({reason})")

        # penalties are frozen at the moment submission starts
        tab_switches = self.violations.tab_switches
        fullscreen_exits = self.violations.fullscreen_exits
        penalty_pct = penalties.penalty_percentage(tab_switches, fullscreen_exits)
        questions = self.exam.get("questions") or []
        try:
            self._recover_participant()
            self._save_answers(questions)

            self._advance(COMPLETING)
            completion = self._complete({
                "penalties": {
                    "tabSwitches": tab_switches,
                    "fullscreenExits": fullscreen_exits,
                    "penaltyPercentage": penalty_pct,
                },
            })
            self.completion = completion

            self._advance(GRADING)
            answers = self.answers.answers()
            feedbacks = self._grade(questions, answers, completion)

            self._advance(FINALIZING)
            result = self._finalize(questions, answers, feedbacks, tab_switches, fullscreen_exits, completion)
        except Exception as e:
            print(f"[submit] submission flow broke ({e}); estimating locally")
            result = self._estimate(questions, tab_switches, fullscreen_exits)

        with self._lock:
            self.result = result
            self.state = DONE
            self.history.append(DONE)
        self._done.set()
        print(f"[submit] participant {self.participant_id}: done, final score {result['final_score']:.2f}")
        self._after_done(result)
        return result

    # ----------------------------------------------------------------- steps
    def _recover_participant(self) -> None:
        if self.participant_id is not None or self.api is None:
            return
        try:
            data = unwrap(self.api.start_exam(self.exam_id)) or {}
            self.participant_id = data.get("participantId")
            if self.participant_id is not None:
                self.answers.participant_id = self.participant_id
        except Exception as e:
            print(f"[submit] participant id recovery failed: {e}")

    def _save_answers(self, questions: List[Dict[str, Any]]) -> None:
        if self.participant_id is None or self.api is None:
            return
        for q in questions:
            if not (self.answers.text(q["id"]) or "").strip():
                continue
            outcome = self.answers.save(q["id"], max_retries=0)
            if not outcome["ok"]:
                print(f"[submit] answer {q['id']} not saved before completion: {outcome['error']}")

    def _complete(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.participant_id is None or self.api is None:
            return None
        try:
            label, data = first_success(
                completion_routes(self.api, self.exam_id, self.participant_id, body), tag="submit")
        except Exception as e:
            kind = classify_error(e)
            print(f"[submit] completion failed on every route ({kind}), grading anyway: {e}")
            return None
        data = unwrap(data)
        return data if isinstance(data, dict) else {}

    def _grade(self, questions, answers, completion) -> List[Dict[str, Any]]:
        details = (completion or {}).get("evaluationDetails")
        if isinstance(details, list) and details:
            return self._from_evaluation(questions, answers, details)
        try:
            return self.grader.grade_all(self.exam_id, questions, answers, self.participant_id)
        except Exception as e:
            print(f"[submit] grading fan-out failed, local comparison only: {e}")
            return local_only(questions, answers, scorer=self._local_scorer())

    def _from_evaluation(self, questions, answers, details) -> List[Dict[str, Any]]:
        by_id = {}
        for d in details:
            if isinstance(d, dict) and d.get("questionId") is not None:
                by_id[str(d["questionId"])] = d
        out = []
        for q in questions:
            ev = by_id.get(q["id"]) or {}
            max_points = float(ev.get("maxPoints") or q.get("points") or DEFAULT_QUESTION_POINTS)
            score = float(ev.get("score") or 0.0)
            out.append({
                "question_id": q["id"],
                "score": score,
                "max_points": max_points,
                "similarity": round(score / max_points * 100) if max_points else 0,
                "feedback": EVALUATION_FEEDBACK.get(ev.get("status"), EVALUATION_FEEDBACK_DEFAULT),
                "source": SOURCE_REMOTE,
            })
        return out

    def _finalize(self, questions, answers, feedbacks, tab_switches, fullscreen_exits, completion):
        original = sum(float(f["score"]) for f in feedbacks)
        figures = penalties.reconcile(original, tab_switches, fullscreen_exits)
        result = self._result(questions, answers, feedbacks, figures, completion)

        if self.participant_id is not None and self.api is not None:
            body = {
                "penalties": {
                    "tabSwitches": tab_switches,
                    "fullscreenExits": fullscreen_exits,
                    "penaltyPercentage": figures["penalty_percentage"],
                },
                "score": figures["final_score"],
                "originalScore": figures["original_score"],
                "feedbacks": [
                    {"questionId": f["question_id"], "score": f["score"], "similarity": f["similarity"]}
                    for f in feedbacks
                ],
            }
            try:
                first_success(completion_routes(self.api, self.exam_id, self.participant_id, body),
                              tag="submit")
                result["score_persisted"] = True
            except Exception as e:
                if classify_error(e) == AUTH:
                    print(f"[submit] final score refused (auth): {e}")
                else:
                    print(f"[submit] final score not persisted: {e}")
        return result

    def _estimate(self, questions, tab_switches, fullscreen_exits) -> Dict[str, Any]:
        answers = self.answers.answers()
        feedbacks = local_only(questions, answers, scorer=self._local_scorer())
        figures = penalties.reconcile(sum(f["score"] for f in feedbacks), tab_switches, fullscreen_exits)
        result = self._result(questions, answers, feedbacks, figures, None)
        result["estimated"] = True
        return result

    def _local_scorer(self):
        return getattr(self.grader, "scorer", None)

    def _result(self, questions, answers, feedbacks, figures, completion) -> Dict[str, Any]:
        content = {q["id"]: q.get("content") or "" for q in questions}
        per_question = []
        for f in feedbacks:
            item = dict(f)
            item["question"] = content.get(f["question_id"], "")
            item["answer"] = answers.get(f["question_id"], "")
            per_question.append(item)
        redirect_to = (completion or {}).get("redirectTo")
        if not redirect_to and self.participant_id is not None:
            redirect_to = f"/exams/results/{self.participant_id}"
        out = dict(figures)
        out.update({
            "participant_id": self.participant_id,
            "exam_id": self.exam_id,
            "reason": self.reason,
            "feedbacks": per_question,
            "completed_remotely": completion is not None,
            "score_persisted": False,
            "redirect_to": redirect_to,
            "estimated": False,
            "completed_at": self._clock(),
        })
        return out

    def _after_done(self, result: Dict[str, Any]) -> None:
        if self._on_done is not None:
            try:
                self._on_done(result)
            except Exception as e:
                print(f"[submit] on_done hook failed: {e}")
        if self._schedule is not None and self._on_release_fullscreen is not None:
            try:
                self._schedule(self.fullscreen_exit_grace, self._on_release_fullscreen)
            except Exception as e:
                print(f"[submit] fullscreen release scheduling failed: {e}")
