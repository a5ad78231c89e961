# exam_definition.py
# -----------------------------------------------------------------------------
# Upstream exam payload -> plain dicts used by the session engine.
# The API mixes PascalCase (QuestionID, Duration) and camelCase keys; both are
# accepted. The result is treated as read-only once an attempt starts.
# -----------------------------------------------------------------------------

import json
from typing import Any, Dict, List, Optional

from exam_api import unwrap

DEFAULT_QUESTION_POINTS = 10.0

ATTEMPT_REGISTERED = "registered"
ATTEMPT_IN_PROGRESS = "in_progress"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_REVIEWED = "reviewed"


def _pick(d: Dict[str, Any], *keys, default=None):
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return default


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _keyword_list(items: List[Any]) -> List[str]:
    # blanks stay: they count toward totalKeywords but never match
    return ["" if k is None else str(k) for k in items]


def parse_keywords(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return _keyword_list(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        if isinstance(parsed, list):
            return _keyword_list(parsed)
    return []


def parse_question(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    qid = _pick(raw, "QuestionID", "questionId", "id")
    if qid is None:
        return None
    points = _as_float(_pick(raw, "Points", "points", "maxPoints"), DEFAULT_QUESTION_POINTS)
    return {
        "id": str(qid),
        "content": str(_pick(raw, "Content", "content", "prompt", default="") or ""),
        "reference_answer": str(_pick(raw, "CorrectAnswer", "correctAnswer", "referenceAnswer", default="") or ""),
        "keywords": parse_keywords(_pick(raw, "Keywords", "keywords")),
        "points": points if points > 0 else DEFAULT_QUESTION_POINTS,
    }


def parse_exam(payload: Any) -> Dict[str, Any]:
    """Raises ValueError when the payload has no usable exam."""
    data = unwrap(payload)
    if not isinstance(data, dict):
        raise ValueError("exam payload is not an object")
    exam_id = _pick(data, "ExamID", "examId", "id")

    questions: List[Dict[str, Any]] = []
    seen = set()
    for raw in _pick(data, "questions", "Questions", default=[]) or []:
        q = parse_question(raw)
        if q is None or q["id"] in seen:
            continue
        seen.add(q["id"])
        questions.append(q)

    total = _pick(data, "TotalPoints", "totalPoints")
    return {
        "id": str(exam_id) if exam_id is not None else None,
        "title": str(_pick(data, "Title", "title", default="") or ""),
        "duration_minutes": _as_float(_pick(data, "Duration", "duration"), 0.0),
        "passing_score": _as_float(_pick(data, "PassingScore", "passingScore"), 0.0),
        "total_points": _as_float(total, sum(q["points"] for q in questions)),
        "questions": questions,
        "allow_retakes": bool(_pick(data, "AllowRetakes", "allowRetakes", default=False)),
        "max_retakes": _as_int(_pick(data, "MaxRetakes", "maxRetakes"), 0),
    }


def retake_allowed(exam: Dict[str, Any], attempts_used: int) -> bool:
    """First attempt always; later ones only if retakes are on and the cap (0 = none) is not hit."""
    if attempts_used <= 0:
        return True
    if not exam.get("allow_retakes"):
        return False
    max_retakes = int(exam.get("max_retakes") or 0)
    return max_retakes == 0 or attempts_used < max_retakes + 1


def public_questions(exam: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Questions without reference answers or keywords, safe to send to the browser."""
    return [{"id": q["id"], "content": q["content"], "points": q["points"]} for q in exam.get("questions") or []]
