# grading.py
# -----------------------------------------------------------------------------
# Per-question grading with an ordered fallback chain:
#   1. remote grade route (exam + participant + question)
#   2. alternate remote route (exam + question, participant in body)
#   3. local similarity against the reference answer / keywords
#   4. placeholder (0 points) if even the local path raises
# grade_all() fans out one task per question and collects every result; a
# failing question never affects the others.
# -----------------------------------------------------------------------------

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import similarity
from exam_api import first_success, unwrap
from exam_definition import DEFAULT_QUESTION_POINTS

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local-fallback"
SOURCE_PLACEHOLDER = "placeholder"

REMOTE_FEEDBACK = "Graded by comparing the answer with the reference solution."
LOCAL_FEEDBACK = "Provisional score from a local content comparison while grading was unavailable."
PLACEHOLDER_FEEDBACK = "Fallback grading due to server error."


def _clamp(points: float, max_points: float) -> float:
    return max(0.0, min(round(float(points), 2), float(max_points)))


def _similarity_value(raw: Any, score: float, max_points: float) -> float:
    if isinstance(raw, dict):
        raw = raw.get("totalSimilarity", raw.get("similarity"))
    try:
        return max(0.0, min(float(raw), 100.0))
    except (TypeError, ValueError):
        return round(score / max_points * 100.0, 2) if max_points else 0.0


def remote_result(payload: Any, question: Dict[str, Any]) -> Dict[str, Any]:
    """Server grade payload -> GradingResult dict. Raises ValueError if there is no score."""
    data = unwrap(payload)
    if not isinstance(data, dict) or data.get("score") is None:
        raise ValueError("grade response has no score")
    max_points = float(data.get("maxPoints") or question.get("points") or DEFAULT_QUESTION_POINTS)
    pts = _clamp(float(data["score"]), max_points)
    return {
        "question_id": question["id"],
        "score": pts,
        "max_points": max_points,
        "similarity": _similarity_value(data.get("similarity"), pts, max_points),
        "feedback": str(data.get("feedback") or REMOTE_FEEDBACK),
        "source": SOURCE_REMOTE,
    }


def local_result(question: Dict[str, Any], answer: str,
                 scorer: Callable = similarity.score) -> Dict[str, Any]:
    max_points = float(question.get("points") or DEFAULT_QUESTION_POINTS)
    sim = scorer(answer, question.get("reference_answer") or "", question.get("keywords") or [])
    total = float(sim["similarity"])
    return {
        "question_id": question["id"],
        "score": _clamp(similarity.points_for(total, max_points), max_points),
        "max_points": max_points,
        "similarity": total,
        "feedback": LOCAL_FEEDBACK,
        "source": SOURCE_LOCAL,
        "keywords_matched": sim.get("keywordsMatched", 0),
        "total_keywords": sim.get("totalKeywords", 0),
    }


def placeholder_result(question: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "question_id": question.get("id"),
        "score": 0.0,
        "max_points": float(question.get("points") or DEFAULT_QUESTION_POINTS),
        "similarity": 0.0,
        "feedback": PLACEHOLDER_FEEDBACK,
        "source": SOURCE_PLACEHOLDER,
    }


class GradingEngine:
    def __init__(self, api, max_workers: int = 8, scorer: Callable = similarity.score):
        self.api = api
        self.max_workers = max(1, int(max_workers))
        self.scorer = scorer

    def grade_locally(self, question: Dict[str, Any], answer: str) -> Dict[str, Any]:
        try:
            return local_result(question, answer, self.scorer)
        except Exception as e:
            print(f"[grading] local scoring for {question.get('id')} failed: {e}")
            return placeholder_result(question)

    def grade_question(self, exam_id, question: Dict[str, Any], answer: str,
                       participant_id) -> Dict[str, Any]:
        qid = question["id"]
        attempts = []
        if self.api is not None and participant_id is not None:
            attempts = [
                ("grade", lambda: remote_result(
                    self.api.grade_answer(exam_id, participant_id, qid, answer), question)),
                ("grade-alt", lambda: remote_result(
                    self.api.grade_answer_alt(exam_id, participant_id, qid, answer), question)),
            ]
        if attempts:
            try:
                _label, result = first_success(attempts, tag="grading")
                return result
            except Exception as e:
                print(f"[grading] remote grading for {qid} unavailable, using local comparison: {e}")
        return self.grade_locally(question, answer)

    def grade_all(self, exam_id, questions: List[Dict[str, Any]], answers: Dict[str, str],
                  participant_id) -> List[Dict[str, Any]]:
        """Results in question order."""
        if not questions:
            return []
        workers = min(self.max_workers, len(questions))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self.grade_question, exam_id, q, answers.get(q["id"], "") or "", participant_id)
                for q in questions
            ]
            results: List[Dict[str, Any]] = []
            for q, fut in zip(questions, futures):
                try:
                    results.append(fut.result())
                except Exception as e:
                    print(f"[grading] question {q.get('id')} failed outright: {e}")
                    results.append(placeholder_result(q))
        return results


def local_only(questions: List[Dict[str, Any]], answers: Dict[str, str],
               scorer: Optional[Callable] = None) -> List[Dict[str, Any]]:
    engine = GradingEngine(None, scorer=scorer or similarity.score)
    return [engine.grade_locally(q, answers.get(q["id"], "") or "") for q in questions]
