# exam_api.py
# -----------------------------------------------------------------------------
# Thin client for the upstream exam REST API (bearer-token auth, JSON bodies).
# - One method per route; fallback chains between routes are built by the
#   callers with first_success().
# - Every failure surfaces as ExamApiError; classify_error() decides whether a
#   caller may retry it.
# -----------------------------------------------------------------------------

import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

DEFAULT_TIMEOUT = 12.0

TRANSIENT = "transient"
PERMANENT = "permanent"
AUTH = "auth"

# Server-side validation failures that will fail the same way on every retry.
_CONSTRAINT_MARKERS = ("check constraint", "conflicted with the", "constraint violation",
                       "violates", "foreign key constraint", "unique constraint")


class ExamApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None,
                 payload: Any = None, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload
        self.path = path

    @property
    def kind(self) -> str:
        return classify_error(self)

    def __str__(self) -> str:
        prefix = f"{self.status} " if self.status else ""
        return f"{prefix}{self.message}"


def classify_error(exc: BaseException) -> str:
    """transient (retry), permanent (never retry) or auth (session is over)."""
    message = str(getattr(exc, "message", None) or exc or "").lower()
    if any(marker in message for marker in _CONSTRAINT_MARKERS):
        return PERMANENT
    if not isinstance(exc, ExamApiError):
        return TRANSIENT
    status = exc.status
    if status is None:
        return TRANSIENT
    if status in (401, 403):
        return AUTH
    if status in (408, 425, 429) or status >= 500:
        return TRANSIENT
    # other 4xx, and 2xx envelopes that report success: false
    return PERMANENT


def first_success(attempts: Sequence[Tuple[str, Callable[[], Any]]], tag: str = "api") -> Tuple[str, Any]:
    """
    Try each (label, fn) in order; return (label, result) of the first that does not raise.
    When all fail, the first error is re-raised since it belongs to the preferred route.
    """
    first_error: Optional[BaseException] = None
    for label, fn in attempts:
        try:
            return label, fn()
        except Exception as e:
            print(f"[{tag}] {label} failed: {e}")
            if first_error is None:
                first_error = e
            if classify_error(e) == AUTH:
                break
    if first_error is None:
        raise ExamApiError(f"{tag}: no strategies to try")
    raise first_error


def unwrap(payload: Any) -> Any:
    """Accept both {success, data} envelopes and bare objects."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
        return payload["data"]
    return payload


class ExamApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = float(timeout or DEFAULT_TIMEOUT)
        self.http = session or requests.Session()

    # ------------------------------------------------------------------ core
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = self.http.request(method, url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise ExamApiError(f"timeout calling {path}: {e}", path=path)
        except requests.RequestException as e:
            raise ExamApiError(f"network error calling {path}: {e}", path=path)

        data: Any = None
        if r.content:
            try:
                data = r.json()
            except ValueError:
                data = {"message": (r.text or "")[:300]}

        if r.status_code >= 400:
            message = ""
            if isinstance(data, dict):
                message = str(data.get("message") or data.get("error") or "")
            raise ExamApiError(message or f"HTTP {r.status_code} from {path}",
                               status=r.status_code, payload=data, path=path)
        if isinstance(data, dict) and data.get("success") is False:
            raise ExamApiError(str(data.get("message") or f"{path} reported failure"),
                               status=r.status_code, payload=data, path=path)
        return data if data is not None else {}

    # ------------------------------------------------------------- exam flow
    def get_exam(self, exam_id) -> Any:
        return self._request("GET", f"/exams/{exam_id}")

    def register(self, exam_id) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{exam_id}/register")

    def start_exam(self, exam_id) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{exam_id}/start")

    def submit_answer(self, participant_id, question_id, answer: str) -> Dict[str, Any]:
        data = self._request("POST", f"/exams/participants/{participant_id}/answer/{question_id}",
                             {"answer": answer})
        if isinstance(data, dict) and data.get("warning"):
            print(f"[api] answer {question_id} saved with warning: {data['warning']}")
        return data

    def get_answers(self, participant_id) -> Any:
        return self._request("GET", f"/exams/participants/{participant_id}/answers")

    def get_answers_alt(self, participant_id) -> Any:
        return self._request("GET", f"/participants/{participant_id}/answers")

    # ------------------------------------------------------------ proctoring
    def log_fullscreen_exit(self, participant_id) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{participant_id}/fullscreen-exit")

    def log_fullscreen_return(self, participant_id) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{participant_id}/fullscreen-return")

    def log_monitoring_event(self, participant_id, event_type: str, event_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/exams/monitoring-logs", {
            "participantId": participant_id,
            "eventType": event_type,
            "eventData": json.dumps(event_data, ensure_ascii=False),
        })

    # ------------------------------------------------------------ completion
    def complete_exam(self, exam_id, participant_id, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{exam_id}/participants/{participant_id}/complete", body)

    def complete_participant(self, participant_id, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/exams/participants/{participant_id}/complete", body)

    def complete_attempt(self, participant_id, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/exams/{participant_id}/complete", body)

    # --------------------------------------------------------------- grading
    def grade_answer(self, exam_id, participant_id, question_id, answer: str) -> Any:
        return self._request("POST",
                             f"/exams/{exam_id}/participants/{participant_id}/questions/{question_id}/grade",
                             {"answer": answer})

    def grade_answer_alt(self, exam_id, participant_id, question_id, answer: str) -> Any:
        return self._request("POST", f"/exams/{exam_id}/questions/{question_id}/grade",
                             {"answer": answer, "participantId": participant_id})

    def get_results(self, participant_id) -> Any:
        return self._request("GET", f"/exams/{participant_id}/results")


def completion_routes(api: ExamApiClient, exam_id, participant_id,
                      body: Dict[str, Any]) -> List[Tuple[str, Callable[[], Any]]]:
    """Primary exam+participant route, then participant-scoped, then attempt-scoped."""
    routes: List[Tuple[str, Callable[[], Any]]] = []
    if exam_id is not None:
        routes.append(("complete", lambda: api.complete_exam(exam_id, participant_id, body)))
    routes.append(("complete-participant", lambda: api.complete_participant(participant_id, body)))
    routes.append(("complete-attempt", lambda: api.complete_attempt(participant_id, body)))
    return routes
