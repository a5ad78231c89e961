import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from answer_store import AnswerStore
from exam_definition import DEFAULT_QUESTION_POINTS, parse_exam
from fakes import EXAM_PAYLOAD, FakeApi, FakeClock, FakeScheduler, down
from grading import SOURCE_LOCAL, SOURCE_REMOTE, GradingEngine
from submission import DONE, GRADING, IDLE, SubmissionCoordinator
from violations import FULLSCREEN_EXIT, TAB_SWITCH, ViolationLog

Q2_ANSWER = "maximum data rate of a link"

ALL_DOWN = {
    name: [down()] for name in (
        "submit_answer", "complete_exam", "complete_participant", "complete_attempt",
        "grade_answer", "grade_answer_alt",
    )
}


class Setup:
    def __init__(self, api, participant_id=41, grader=None):
        self.api = api
        self.clock = FakeClock()
        self.sched = FakeScheduler()
        self.exam = parse_exam(EXAM_PAYLOAD)
        self.answers = AnswerStore(api, participant_id, [q["id"] for q in self.exam["questions"]],
                                   sleep=lambda s: None, clock=self.clock)
        self.violations = ViolationLog(self.clock)
        self.done = []
        self.released = []
        self.coordinator = SubmissionCoordinator(
            api, self.exam, participant_id, self.answers, self.violations,
            grader=grader or GradingEngine(api, max_workers=2),
            scheduler=self.sched,
            on_done=self.done.append,
            on_release_fullscreen=lambda: self.released.append(True),
            clock=self.clock,
        )


def test_local_fallback_scores_empty_and_reference_answers():
    api = FakeApi(fail={"grade_answer": [down()], "grade_answer_alt": [down()]})
    s = Setup(api)
    s.answers.set_answer("2", Q2_ANSWER)

    result = s.coordinator.submit("manual")

    scores = {f["question_id"]: f["score"] for f in result["feedbacks"]}
    assert scores == {"1": 0.0, "2": 10.0}
    assert {f["source"] for f in result["feedbacks"]} == {SOURCE_LOCAL}
    assert result["original_score"] == 10.0
    assert result["final_score"] == 10.0
    assert result["penalty_applied"] is False
    assert result["feedbacks"][1]["question"] == "Define bandwidth."
    assert result["feedbacks"][1]["answer"] == Q2_ANSWER


def test_only_non_empty_answers_are_saved_before_completion():
    api = FakeApi()
    s = Setup(api)
    s.answers.set_answer("2", Q2_ANSWER)
    s.coordinator.submit()
    assert api.saved == {"2": Q2_ANSWER}
    first_completion = api.names().index("complete_exam")
    assert api.names().index("submit_answer") < first_completion


def test_penalties_are_frozen_at_submission_and_sent_upstream():
    api = FakeApi()
    api.grades["2"] = {"success": True, "data": {"score": 10}}
    s = Setup(api)
    s.answers.set_answer("2", Q2_ANSWER)
    s.violations.append(TAB_SWITCH)
    s.violations.append(TAB_SWITCH)
    s.violations.append(FULLSCREEN_EXIT)

    result = s.coordinator.submit()

    assert result["penalty_percentage"] == 13
    assert result["final_score"] == pytest.approx(8.7)
    completes = [c for c in api.calls if c[0] == "complete_exam"]
    assert len(completes) == 2
    assert completes[0][3]["penalties"] == {"tabSwitches": 2, "fullscreenExits": 1, "penaltyPercentage": 13}
    final_body = completes[1][3]
    assert final_body["score"] == pytest.approx(8.7)
    assert final_body["originalScore"] == 10.0
    assert [f["questionId"] for f in final_body["feedbacks"]] == ["1", "2"]
    assert result["score_persisted"] is True
    assert result["completed_remotely"] is True


def test_total_outage_still_reaches_done():
    api = FakeApi(fail=ALL_DOWN)
    s = Setup(api)
    s.answers.set_answer("2", Q2_ANSWER)
    s.violations.append(TAB_SWITCH)

    result = s.coordinator.submit("timeout")

    assert s.coordinator.state == DONE
    assert result["reason"] == "timeout"
    assert result["completed_remotely"] is False
    assert result["score_persisted"] is False
    assert result["final_score"] == pytest.approx(9.5)
    assert api.names().count("submit_answer") == 1
    assert {"complete_exam", "complete_participant", "complete_attempt"} <= set(api.names())


def test_submit_runs_once():
    api = FakeApi()
    s = Setup(api)
    first = s.coordinator.submit("manual")
    calls = len(api.calls)

    second = s.coordinator.submit("violations")

    assert second is first
    assert len(api.calls) == calls
    assert s.coordinator.reason == "manual"
    assert s.coordinator.history.count(DONE) == 1
    assert s.done == [first]


def test_concurrent_submit_while_in_flight_is_a_no_op():
    seen = []

    class ReentrantGrader:
        def grade_all(self, exam_id, questions, answers, participant_id):
            seen.append(s.coordinator.submit("timeout"))
            return [{"question_id": q["id"], "score": 1.0, "max_points": 10.0,
                     "similarity": 10.0, "feedback": "", "source": SOURCE_REMOTE} for q in questions]

    s = Setup(FakeApi(), grader=ReentrantGrader())
    result = s.coordinator.submit("manual")
    assert seen == [None]
    assert result["original_score"] == 2.0
    assert result["reason"] == "manual"


def test_server_evaluation_details_take_precedence():
    api = FakeApi()
    api.completion_response = {"success": True, "data": {"evaluationDetails": [
        {"questionId": 1, "score": 7, "maxPoints": 10, "status": "success"},
        {"questionId": 2, "score": 0, "status": "no_answer"},
    ]}}
    s = Setup(api)

    result = s.coordinator.submit()

    assert "grade_answer" not in api.names()
    assert [f["score"] for f in result["feedbacks"]] == [7.0, 0.0]
    assert result["feedbacks"][0]["similarity"] == 70
    assert result["feedbacks"][1]["feedback"] == "No answer was given."
    assert result["final_score"] == 7.0


def test_redirect_defaults_to_results_page_and_honours_server_value():
    s = Setup(FakeApi())
    assert s.coordinator.submit()["redirect_to"] == "/exams/results/41"

    api = FakeApi()
    api.completion_response = {"success": True, "redirectTo": "/exams/7/summary"}
    s = Setup(api)
    assert s.coordinator.submit()["redirect_to"] == "/exams/7/summary"


def test_missing_participant_id_is_recovered_before_saving():
    api = FakeApi(participant_id=77)
    s = Setup(api, participant_id=None)
    s.answers.set_answer("1", "delay")
    result = s.coordinator.submit()
    assert api.names()[0] == "start_exam"
    assert result["participant_id"] == 77
    assert ("submit_answer", 77, "1", "delay") in api.calls


def test_broken_grading_output_falls_back_to_local_estimate():
    class BrokenGrader:
        def grade_all(self, exam_id, questions, answers, participant_id):
            return [{"question_id": q["id"]} for q in questions]

    s = Setup(FakeApi(), grader=BrokenGrader())
    s.answers.set_answer("2", Q2_ANSWER)
    result = s.coordinator.submit()
    assert result["estimated"] is True
    assert result["final_score"] == 10.0
    assert s.coordinator.state == DONE


def test_done_hook_and_fullscreen_release_after_grace():
    s = Setup(FakeApi())
    result = s.coordinator.submit()
    assert s.done == [result]
    assert [h.delay for h in s.sched.pending()] == [30.0]
    s.sched.run_all()
    assert s.released == [True]


def test_illegal_transition_is_rejected():
    s = Setup(FakeApi())
    assert s.coordinator.state == IDLE
    with pytest.raises(RuntimeError):
        s.coordinator._advance(GRADING)


def test_evaluation_without_max_points_uses_default_question_points():
    s = Setup(FakeApi())
    feedbacks = s.coordinator._from_evaluation(
        [{"id": "9", "content": "Unweighted question"}], {}, [{"questionId": 9, "score": 4, "status": "success"}])
    assert feedbacks[0]["max_points"] == DEFAULT_QUESTION_POINTS
    assert feedbacks[0]["similarity"] == round(4 / DEFAULT_QUESTION_POINTS * 100)
