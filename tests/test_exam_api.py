import json
import sys
from pathlib import Path

import pytest
import requests


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_api import (
    AUTH, PERMANENT, TRANSIENT, ExamApiClient, ExamApiError, classify_error,
    completion_routes, first_success, unwrap,
)
from exam_definition import parse_exam, public_questions, retake_allowed
from fakes import EXAM_PAYLOAD


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        if payload is not None:
            self.text = json.dumps(payload)
        else:
            self.text = text or ""
        self.content = self.text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json,
                              "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(*responses):
    session = FakeSession(responses)
    return ExamApiClient("http://api.test/api/", token="tok", timeout=5, session=session), session


# -------------------------------------------------------------------- client
def test_request_sends_bearer_token_and_timeout():
    api, session = _client(FakeResponse(200, {"success": True, "data": {"ExamID": 7}}))
    payload = api.get_exam(7)
    sent = session.requests[0]
    assert sent["method"] == "GET"
    assert sent["url"] == "http://api.test/api/exams/7"
    assert sent["headers"]["Authorization"] == "Bearer tok"
    assert sent["timeout"] == 5.0
    assert unwrap(payload) == {"ExamID": 7}


def test_http_errors_carry_status_and_server_message():
    api, _ = _client(FakeResponse(500, {"message": "database unavailable"}))
    with pytest.raises(ExamApiError) as exc:
        api.start_exam(7)
    assert exc.value.status == 500
    assert exc.value.message == "database unavailable"
    assert exc.value.kind == TRANSIENT


def test_non_json_error_body_is_tolerated():
    api, _ = _client(FakeResponse(502, text="<html>Bad gateway</html>"))
    with pytest.raises(ExamApiError) as exc:
        api.get_results(41)
    assert exc.value.status == 502
    assert "Bad gateway" in exc.value.message


def test_success_false_envelope_is_an_error():
    api, _ = _client(FakeResponse(200, {"success": False, "message": "exam closed"}))
    with pytest.raises(ExamApiError) as exc:
        api.register(7)
    assert exc.value.message == "exam closed"
    assert exc.value.kind == PERMANENT


def test_timeout_becomes_transient_error():
    api, _ = _client(requests.Timeout("read timed out"))
    with pytest.raises(ExamApiError) as exc:
        api.get_answers(41)
    assert exc.value.status is None
    assert classify_error(exc.value) == TRANSIENT


def test_monitoring_event_data_is_sent_as_json_string():
    api, session = _client(FakeResponse(200, {"success": True}))
    api.log_monitoring_event(41, "tab_switch", {"count": 2})
    body = session.requests[0]["json"]
    assert session.requests[0]["url"].endswith("/exams/monitoring-logs")
    assert body["participantId"] == 41
    assert body["eventType"] == "tab_switch"
    assert json.loads(body["eventData"]) == {"count": 2}


def test_grade_routes_and_bodies():
    api, session = _client(FakeResponse(200, {"score": 5}), FakeResponse(200, {"score": 5}))
    api.grade_answer(7, 41, 3, "text")
    api.grade_answer_alt(7, 41, 3, "text")
    first, second = session.requests
    assert first["url"].endswith("/exams/7/participants/41/questions/3/grade")
    assert first["json"] == {"answer": "text"}
    assert second["url"].endswith("/exams/7/questions/3/grade")
    assert second["json"] == {"answer": "text", "participantId": 41}


# ------------------------------------------------------------ classification
@pytest.mark.parametrize("error,kind", [
    (ExamApiError("nope", status=401), AUTH),
    (ExamApiError("nope", status=403), AUTH),
    (ExamApiError("missing", status=404), PERMANENT),
    (ExamApiError("slow down", status=429), TRANSIENT),
    (ExamApiError("boom", status=503), TRANSIENT),
    (ExamApiError("violates foreign key constraint", status=500), PERMANENT),
    (ValueError("anything else"), TRANSIENT),
])
def test_classify_error(error, kind):
    assert classify_error(error) == kind


# ------------------------------------------------------------ fallback chain
def test_first_success_uses_next_route_after_failure():
    def broken():
        raise ExamApiError("boom", status=500)

    label, value = first_success([("a", broken), ("b", lambda: 2)], tag="t")
    assert (label, value) == ("b", 2)


def test_first_success_reraises_first_error_when_all_fail():
    first = ExamApiError("first", status=500)

    def fail_with(err):
        def fn():
            raise err
        return fn

    with pytest.raises(ExamApiError) as exc:
        first_success([("a", fail_with(first)), ("b", fail_with(ExamApiError("second", status=404)))])
    assert exc.value is first


def test_first_success_stops_on_auth_error():
    called = []

    def unauthorized():
        raise ExamApiError("expired", status=401)

    with pytest.raises(ExamApiError):
        first_success([("a", unauthorized), ("b", lambda: called.append(True))])
    assert called == []


def test_completion_routes_order():
    api = ExamApiClient("http://x")
    assert [label for label, _ in completion_routes(api, 7, 41, {})] == [
        "complete", "complete-participant", "complete-attempt"]
    assert [label for label, _ in completion_routes(api, None, 41, {})] == [
        "complete-participant", "complete-attempt"]


# ---------------------------------------------------------- exam definition
def test_parse_exam_accepts_pascal_case_and_json_keywords():
    exam = parse_exam({"success": True, "data": EXAM_PAYLOAD})
    assert exam["id"] == "7"
    assert exam["duration_minutes"] == 30.0
    assert exam["total_points"] == 20.0
    q1, q2 = exam["questions"]
    assert q1["id"] == "1"
    assert q1["keywords"] == ["delay", "transfer"]
    assert q2["keywords"] == ["data rate", "link"]


def test_parse_exam_drops_duplicate_and_unidentified_questions():
    exam = parse_exam({"examId": 3, "questions": [
        {"questionId": 1, "content": "a"},
        {"questionId": 1, "content": "dup"},
        {"content": "no id"},
    ]})
    assert [q["content"] for q in exam["questions"]] == ["a"]
    assert exam["questions"][0]["points"] == 10.0


def test_parse_exam_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_exam(["not", "an", "exam"])


def test_public_questions_hide_reference_answers():
    exam = parse_exam(EXAM_PAYLOAD)
    for q in public_questions(exam):
        assert set(q) == {"id", "content", "points"}


def test_retake_rules():
    exam = {"allow_retakes": False, "max_retakes": 0}
    assert retake_allowed(exam, 0)
    assert not retake_allowed(exam, 1)
    capped = {"allow_retakes": True, "max_retakes": 1}
    assert retake_allowed(capped, 1)
    assert not retake_allowed(capped, 2)
    assert retake_allowed({"allow_retakes": True, "max_retakes": 0}, 9)


def test_parse_keywords_keeps_blank_entries():
    exam = parse_exam({"examId": 3, "questions": [
        {"questionId": 1, "keywords": ["delay", "", None]},
        {"questionId": 2, "keywords": "not json"},
    ]})
    assert exam["questions"][0]["keywords"] == ["delay", "", ""]
    assert exam["questions"][1]["keywords"] == []


def test_missing_duration_parses_as_zero():
    payload = {k: v for k, v in EXAM_PAYLOAD.items() if k != "Duration"}
    assert parse_exam(payload)["duration_minutes"] == 0.0
