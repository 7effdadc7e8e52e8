from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import make_exam, mcq, written
from database import InMemoryBackend
from exams import (
    AlreadySubmitted,
    ExamAttempt,
    ExamDraft,
    ExamNotAvailable,
    ExamNotFound,
    ExamService,
    ExamValidationError,
    SubmissionNotFound,
    availability,
    round_points,
    validate_exam_draft,
)
from grading import GradeEntry, GradingFailure
from schemas import Exam, ExamQuestion, User
from sync import CollectionStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def publish(service, exam):
    service.exams.upsert(exam.model_copy(update={"is_published": True}))
    return service.get_exam(exam.id)


def user(service, user_id="student1"):
    return User.model_validate(service.users.get(user_id))


def test_create_exam_derives_totals_and_starts_as_draft(exam_service):
    draft = ExamDraft(title="Algebra", folder_id="exam_f1", negative_marks=0.5,
                      question_list=[mcq("q1", marks=2), mcq("q2", marks=3)])
    exam = exam_service.create_exam(draft)
    assert exam.total_marks == 5
    assert exam.questions_count == 2
    assert exam.is_published is False
    assert exam_service.get_exam(exam.id) == exam


def test_written_exam_drops_negative_marks(exam_service):
    draft = ExamDraft(title="Essay", folder_id="exam_f1", exam_format="WRITTEN", negative_marks=1,
                      question_list=[written("w1")])
    assert exam_service.create_exam(draft).negative_marks == 0


def test_draft_validation_lists_problems():
    draft = ExamDraft(
        title=" ",
        type="LIVE",
        question_list=[
            ExamQuestion(id="q1", text="", marks=1, type="MCQ", options=["a", "b"], correct_option=0),
            ExamQuestion(id="q2", text="Pick", marks=1, type="MCQ", options=["a", " "], correct_option=5),
        ],
    )
    problems = validate_exam_draft(draft)
    assert "Title and folder are required" in problems
    assert "Start time is required for live exams" in problems
    assert "Question 1 is empty (needs text or image)" in problems
    assert "All options for question 2 must be filled" in problems
    assert "Question 2 marks a correct option that does not exist" in problems


def test_invalid_draft_is_never_stored(exam_service):
    with pytest.raises(ExamValidationError):
        exam_service.create_exam(ExamDraft(title="No questions", folder_id="exam_f1"))
    assert exam_service.exams.items == []


def test_mcq_question_requires_correct_option():
    with pytest.raises(ValidationError):
        ExamQuestion(id="q1", text="?", marks=1, type="MCQ", options=["a", "b"])


def test_written_question_takes_no_options():
    with pytest.raises(ValidationError):
        ExamQuestion(id="w1", text="Explain", marks=10, type="WRITTEN", options=["a", "b"])
    assert ExamQuestion(id="w1", text="Explain", marks=10, type="WRITTEN", options=[]).options == []


def test_exam_rejects_inconsistent_totals():
    with pytest.raises(ValidationError):
        Exam(id="x", title="x", question_list=[mcq("q1")], total_marks=99, questions_count=1)


def test_publish_toggle(exam_service):
    exam_service.exams.upsert(make_exam("ex1"))
    assert exam_service.set_published("ex1", True).is_published is True
    assert exam_service.get_exam("ex1").is_published is True
    assert exam_service.set_published("ex1", False).is_published is False
    with pytest.raises(ExamNotFound):
        exam_service.set_published("missing", True)


def test_availability_states():
    assert availability(make_exam(), NOW) == "OPEN"
    live = make_exam(type="LIVE", start_time=NOW, duration_minutes=30)
    assert availability(live, NOW - timedelta(minutes=1)) == "UPCOMING"
    assert availability(live, NOW + timedelta(minutes=30)) == "LIVE"
    assert availability(live, NOW + timedelta(minutes=31)) == "ENDED"
    assert availability(live.model_copy(update={"start_time": None}), NOW) == "UNSCHEDULED"


def test_unpublished_or_upcoming_exam_cannot_start(exam_service):
    exam_service.exams.upsert(make_exam("ex1"))
    with pytest.raises(ExamNotAvailable):
        exam_service.start_attempt("ex1", "student1", now=NOW)
    publish(exam_service, make_exam("ex2", type="LIVE", start_time=NOW + timedelta(hours=1)))
    with pytest.raises(ExamNotAvailable):
        exam_service.start_attempt("ex2", "student1", now=NOW)


def test_mcq_submission_scores_and_awards_points(exam_service):
    publish(exam_service, make_exam("ex1", questions=[mcq("q1", correct=1), mcq("q2", correct=2)],
                                    negative_marks=0.25))
    attempt = exam_service.start_attempt("ex1", "student1", "Rahim Ahmed", now=NOW)
    attempt.select("q1", 1)
    attempt.select("q2", 0)
    outcome = exam_service.submit(attempt, now=NOW)

    result = outcome.result
    assert (result.score, result.total_marks, result.negative_deduction) == (4.75, 10, 0.25)
    assert result.status == "PASSED"
    assert outcome.submission.status == "GRADED"
    assert outcome.submission.obtained_marks == 4.75
    assert exam_service.get_submission(outcome.submission.id).status == "GRADED"
    assert exam_service.student_history("student1") == [result]
    assert user(exam_service).points == 105
    assert user(exam_service).awarded_results == [result.id]
    assert exam_service.get_exam("ex1").attempts == 1
    assert exam_service.completions.get(f"cmp_{result.id}")["state"] == "APPLIED"


def test_attempt_cannot_be_submitted_twice(exam_service):
    publish(exam_service, make_exam("ex1"))
    attempt = exam_service.start_attempt("ex1", "student1", now=NOW)
    exam_service.submit(attempt, now=NOW)
    with pytest.raises(AlreadySubmitted):
        exam_service.submit(attempt, now=NOW)


def _submit_written(service, exam_id="wx"):
    publish(service, make_exam(exam_id, questions=[written("w1"), written("w2")], exam_format="WRITTEN"))
    attempt = service.start_attempt(exam_id, "student1", "Rahim Ahmed", now=NOW)
    attempt.attach_images("w1", ["scan-1"])
    attempt.attach_images("w2", ["scan-2", "scan-3"])
    return service.submit(attempt, now=NOW).submission


def test_written_submission_waits_for_grading(exam_service):
    submission = _submit_written(exam_service)
    assert submission.status == "PENDING"
    assert exam_service.student_history("student1") == []
    assert [s.id for s in exam_service.pending_submissions()] == [submission.id]

    sheet = exam_service.grading_sheet(submission.id)
    assert sheet["total_marks"] == 50
    assert [q["written_images"] for q in sheet["questions"]] == [["scan-1"], ["scan-2", "scan-3"]]


def test_finalizing_written_grade_appends_result(exam_service):
    submission = _submit_written(exam_service)
    outcome = exam_service.grade_submission(
        submission.id, [GradeEntry("w1", 20), GradeEntry("w2", 22)], grader="admin1", now=NOW)

    assert outcome.submission.status == "GRADED"
    assert outcome.submission.obtained_marks == 42
    assert outcome.submission.graded_by == "admin1"
    assert (outcome.result.score, outcome.result.total_marks) == (42, 50)
    assert outcome.result.status == "MERIT"
    assert exam_service.pending_submissions() == []
    assert exam_service.student_history("student1") == [outcome.result]
    assert user(exam_service).points == 142


def test_rejected_grades_leave_submission_pending(exam_service):
    submission = _submit_written(exam_service)
    outcome = exam_service.grade_submission(submission.id, [GradeEntry("w1", 30)], grader="admin1")
    assert isinstance(outcome, GradingFailure)
    assert outcome.reason == "marks_out_of_range"
    assert exam_service.get_submission(submission.id).status == "PENDING"
    with pytest.raises(SubmissionNotFound):
        exam_service.grade_submission("nope", [], grader="admin1")


def test_regrade_appends_superseding_result(exam_service):
    submission = _submit_written(exam_service)
    first = exam_service.grade_submission(
        submission.id, [GradeEntry("w1", 20), GradeEntry("w2", 22)], grader="admin1", now=NOW).result
    second = exam_service.grade_submission(
        submission.id, [GradeEntry("w1", 25), GradeEntry("w2", 25)], grader="admin2",
        now=NOW + timedelta(hours=1)).result

    assert second.supersedes == first.id
    assert second.id != first.id
    history = exam_service.student_history("student1")
    assert history == [second, first]
    assert user(exam_service).points == 142


def test_new_results_never_touch_earlier_ones(exam_service):
    publish(exam_service, make_exam("ex1"))
    attempt = exam_service.start_attempt("ex1", "student1", now=NOW)
    attempt.select("q1", 0)
    first = exam_service.submit(attempt, now=NOW).result
    before = exam_service.results.get(first.id)

    submission = _submit_written(exam_service)
    exam_service.grade_submission(submission.id, [GradeEntry("w1", 10)], grader="admin1",
                                  now=NOW + timedelta(days=1))

    assert exam_service.results.get(first.id) == before
    assert len(exam_service.student_history("student1")) == 2


def test_completion_awards_points_once(exam_service):
    publish(exam_service, make_exam("ex1"))
    attempt = exam_service.start_attempt("ex1", "student1", now=NOW)
    attempt.select("q1", 0)
    result = exam_service.submit(attempt, now=NOW).result
    assert exam_service.complete_attempt(result) is True
    assert user(exam_service).points == 105


class FlakyUsersBackend(InMemoryBackend):
    def __init__(self):
        super().__init__()
        self.down = False

    def set(self, collection_name, doc_id, doc):
        if self.down and collection_name == "users":
            raise ConnectionError("backend unreachable")
        super().set(collection_name, doc_id, doc)


def test_pending_completion_is_replayed():
    backend = FlakyUsersBackend()
    with CollectionStore(backend) as store:
        store.open("users", [{"id": "student1", "name": "Rahim", "points": 10}])
        service = ExamService(store, write_timeout=5)
        publish(service, make_exam("ex1"))
        attempt = service.start_attempt("ex1", "student1", now=NOW)
        attempt.select("q1", 0)
        attempt.select("q2", 0)

        backend.down = True
        result = service.submit(attempt, now=NOW).result
        assert service.completions.get(f"cmp_{result.id}")["state"] == "PENDING"
        assert service.results.get(result.id) is not None
        assert user(service).points == 10
        assert "student1" in store["users"].failed

        backend.down = False
        assert service.retry_pending_completions() == 1
        assert user(service).points == 20
        assert service.completions.get(f"cmp_{result.id}")["state"] == "APPLIED"
        assert service.retry_pending_completions() == 0


def test_points_wait_for_a_missing_user(exam_service):
    publish(exam_service, make_exam("ex1"))
    attempt = exam_service.start_attempt("ex1", "student9", now=NOW)
    attempt.select("q1", 0)
    result = exam_service.submit(attempt, now=NOW).result

    assert exam_service.completions.get(f"cmp_{result.id}")["state"] == "PENDING"
    assert exam_service.results.get(result.id) is not None
    assert exam_service.retry_pending_completions() == 0

    assert exam_service.users.upsert(User(id="student9", name="Late Joiner", points=3)).wait(5)
    assert exam_service.retry_pending_completions() == 1
    assert user(exam_service, "student9").points == 8
    assert exam_service.completions.get(f"cmp_{result.id}")["state"] == "APPLIED"


def test_attempt_limits():
    exam = make_exam("wx", questions=[written("w1")], exam_format="WRITTEN", duration_minutes=30)
    attempt = ExamAttempt(exam, "student1", started_at=NOW)
    with pytest.raises(ValueError):
        attempt.attach_images("w1", [f"img-{i}" for i in range(6)])
    attempt.attach_images("w1", ["a", "b"])
    attempt.remove_image("w1", 0)
    assert attempt.images["w1"] == ["b"]
    assert attempt.attempted_count == 1
    with pytest.raises(KeyError):
        attempt.attach_images("nope", ["a"])
    assert attempt.time_left(NOW + timedelta(minutes=10)) == 1200
    assert attempt.expired(NOW + timedelta(minutes=31))


def test_attempt_rejects_missing_option():
    attempt = ExamAttempt(make_exam(), "student1", started_at=NOW)
    with pytest.raises(ValueError):
        attempt.select("q1", 4)


def test_round_points_rounds_half_up():
    assert round_points(4.5) == 5
    assert round_points(2.5) == 3
    assert round_points(4.49) == 4
