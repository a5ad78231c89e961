# exam_session.py
# -----------------------------------------------------------------------------
# Exam session runner (JSON only) mounted at <base_path>/exam-session.
# - The browser forwards answer edits and visibility/blur/fullscreen signals;
#   the attempt engine here owns timer, proctoring, answers and submission.
# - Upstream exam API is reached through deps["make_api"](token).
# - Student always gets a result: grading degrades to local comparison.
# -----------------------------------------------------------------------------

import os
import time
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify, request, session

from attempt import AttemptRegistry, ExamAttempt, owner_key
from exam_api import AUTH, TRANSIENT, ExamApiError, classify_error, unwrap
from exam_definition import ATTEMPT_COMPLETED, parse_exam, retake_allowed
from proctoring import SIGNALS
from session_timer import schedule_in_thread


def create_exam_session_blueprint(base_path: str, deps: Dict[str, Any],
                                  name: str = "exam_session") -> Blueprint:
    """
    Required deps: make_api(token) -> ExamApiClient
    Optional deps: scheduler, clock, sleep, registry
    """
    url_prefix = (base_path or "").rstrip("/") + "/exam-session"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    make_api: Callable = deps["make_api"]
    scheduler: Callable = deps.get("scheduler") or schedule_in_thread
    clock: Callable = deps.get("clock") or time.time
    sleep: Callable = deps.get("sleep") or time.sleep
    registry: AttemptRegistry = deps.get("registry") or AttemptRegistry()

    # ---- Config --------------------------------------------------------------
    SETTINGS = {
        "max_tab_switches":      int(os.getenv("EXAM_MAX_TAB_SWITCHES") or 3),
        "forced_submit_delay":   float(os.getenv("EXAM_FORCED_SUBMIT_DELAY") or 30),
        "save_max_retries":      int(os.getenv("EXAM_SAVE_MAX_RETRIES") or 2),
        "save_retry_cooldown":   float(os.getenv("EXAM_SAVE_RETRY_COOLDOWN") or 2),
        "answer_char_limit":     int(os.getenv("EXAM_ANSWER_CHAR_LIMIT") or 5000),
        "grading_workers":       int(os.getenv("EXAM_GRADING_WORKERS") or 8),
        "fullscreen_exit_grace": float(os.getenv("EXAM_FULLSCREEN_EXIT_GRACE") or 30),
        "accent_aware_stopwords": (os.getenv("EXAM_ACCENT_AWARE_STOPWORDS", "0").lower() in ("1", "true", "yes")),
    }
    SETTINGS.update(deps.get("settings") or {})

    bp.record_once(lambda state: state.app.extensions.setdefault("exam_sessions", registry))

    # ------------------------------------------------------------- helpers
    def _bearer_token() -> Optional[str]:
        header = request.headers.get("Authorization") or ""
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
            if token:
                return token
        return session.get("token")

    def _error(message: str, status: int, **extra):
        payload = {"ok": False, "error": message}
        payload.update(extra)
        return jsonify(payload), status

    def _api_error(e: Exception, fallback_status: int = 502):
        kind = classify_error(e)
        if kind == AUTH:
            return _error("unauthorized", 401)
        status = getattr(e, "status", None)
        if kind != TRANSIENT and isinstance(status, int) and 400 <= status < 500:
            return _error(getattr(e, "message", None) or str(e), status)
        return _error(str(e), fallback_status, retry=True)

    def _owned_attempt(participant_id: str):
        """(attempt, error_response)"""
        token = _bearer_token()
        if not token:
            return None, _error("unauthorized", 401)
        attempt = registry.get(participant_id)
        if attempt is None:
            return None, _error("attempt not found", 404)
        if attempt.owner != owner_key(token):
            return None, _error("attempt not found", 404)
        return attempt, None

    # -------------------------------------------------------------- routes
    @bp.post("/<exam_id>/register")
    def register(exam_id: str):
        token = _bearer_token()
        if not token:
            return _error("unauthorized", 401)
        try:
            data = unwrap(make_api(token).register(exam_id)) or {}
        except Exception as e:
            print(f"[exam_session] register {exam_id} failed: {e}")
            return _api_error(e)
        return jsonify({
            "ok": True,
            "attemptsUsed": data.get("attemptsUsed"),
            "maxAttempts": data.get("maxAttempts"),
        })

    @bp.post("/<exam_id>/start")
    def start(exam_id: str):
        token = _bearer_token()
        if not token:
            return _error("unauthorized", 401)
        owner = owner_key(token)
        with registry.start_lock(owner, exam_id):
            return _start_attempt(token, owner, exam_id)

    def _start_attempt(token: str, owner: str, exam_id: str):
        # Resume instead of opening a second in-progress attempt
        current = registry.active(owner, exam_id)
        if current is not None:
            return jsonify({"ok": True, "resumed": True, **current.paper()})

        api = make_api(token)
        try:
            exam = parse_exam(api.get_exam(exam_id))
        except ExamApiError as e:
            print(f"[exam_session] loading exam {exam_id} failed: {e}")
            return _api_error(e)
        except ValueError as e:
            print(f"[exam_session] exam {exam_id} payload unusable: {e}")
            return _error("exam data unavailable", 502, retry=True)
        if exam.get("id") is None:
            exam["id"] = str(exam_id)
        if not exam["questions"]:
            return _error("exam has no questions", 502, retry=True)

        completed = registry.completed_count(owner, exam_id)
        if not retake_allowed(exam, completed):
            return _error("retakes are not allowed for this exam", 409)

        try:
            started = unwrap(api.start_exam(exam_id)) or {}
        except Exception as e:
            print(f"[exam_session] start {exam_id} failed: {e}")
            return _api_error(e)
        participant_id = started.get("participantId")
        if participant_id is None:
            return _error("exam start returned no participant id", 502, retry=True)

        attempt = ExamAttempt(api, exam, participant_id, owner=owner, settings=SETTINGS,
                              scheduler=scheduler, clock=clock, sleep=sleep,
                              attempt_number=completed + 1)
        registry.add(attempt)
        attempt.open()
        print(f"[exam_session] exam {exam_id}: participant {participant_id} started "
              f"(attempt {attempt.attempt_number})")
        return jsonify({"ok": True, "resumed": False, **attempt.paper()})

    @bp.post("/attempts/<participant_id>/answers/<question_id>")
    def save_answer(participant_id: str, question_id: str):
        attempt, err = _owned_attempt(participant_id)
        if err:
            return err
        if attempt.coordinator.has_started:
            return _error("attempt already submitted", 409, state=attempt.coordinator.state)
        data = request.get_json(silent=True) or {}
        try:
            attempt.answers.set_answer(question_id, data.get("answer"))
        except KeyError:
            return _error("question not found", 404)
        outcome = attempt.answers.save(question_id)
        if outcome.get("error_kind") == AUTH:
            return _error("unauthorized", 401)
        return jsonify({"ok": True, "saved": outcome["ok"], "state": outcome["state"],
                        "attempts": outcome["attempts"]})

    @bp.post("/attempts/<participant_id>/events")
    def proctoring_event(participant_id: str):
        attempt, err = _owned_attempt(participant_id)
        if err:
            return err
        data = request.get_json(silent=True) or {}
        signal = str(data.get("type") or "")
        if signal not in SIGNALS:
            return _error(f"unknown event type '{signal}'", 400)
        snapshot = attempt.monitor.handle(signal)
        return jsonify({"ok": True, "proctoring": snapshot, "time_left": attempt.remaining_seconds()})

    @bp.get("/attempts/<participant_id>/status")
    def status(participant_id: str):
        attempt, err = _owned_attempt(participant_id)
        if err:
            return err
        return jsonify({"ok": True, **attempt.summary()})

    @bp.post("/attempts/<participant_id>/submit")
    def submit(participant_id: str):
        attempt, err = _owned_attempt(participant_id)
        if err:
            return err
        result = attempt.submit("manual")
        if result is None:
            return jsonify({"ok": True, "pending": True, "state": attempt.coordinator.state}), 202
        return jsonify({"ok": True, "pending": False, "result": result})

    @bp.get("/attempts/<participant_id>/result")
    def result(participant_id: str):
        attempt, err = _owned_attempt(participant_id)
        if err:
            return err
        local = attempt.coordinator.result
        if attempt.status != ATTEMPT_COMPLETED or local is None:
            return jsonify({"ok": True, "pending": True, "state": attempt.coordinator.state}), 202
        remote = None
        try:
            remote = unwrap(attempt.api.get_results(participant_id))
        except Exception as e:
            print(f"[exam_session] remote results for {participant_id} unavailable: {e}")
        return jsonify({"ok": True, "pending": False, "result": local, "remote": remote})

    return bp
