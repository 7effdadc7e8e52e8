"""
Exam lifecycle on top of the synchronized collections.

An exam goes DRAFT -> PUBLISHED; a student's attempt goes IN_PROGRESS ->
SUBMITTED and then either straight to a result (MCQ) or to PENDING until a
grader finalizes it (WRITTEN). Recording a result and awarding its points is
one completion intent kept in the ``completions`` outbox until both writes
are confirmed.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from grading import (
    GradeEntry,
    GradingFailure,
    McqScore,
    ResultPolicy,
    classify,
    grade_written,
    score_mcq,
    total_marks,
)
from schemas import (
    Exam,
    ExamCompletion,
    ExamFormat,
    ExamQuestion,
    ExamSubmission,
    ExamType,
    StudentResult,
    SubmissionAnswer,
    User,
)
from sync import CollectionStore

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_QUESTION = 5


class ExamError(Exception):
    pass


class ExamNotFound(ExamError):
    pass


class SubmissionNotFound(ExamError):
    pass


class ExamNotAvailable(ExamError):
    pass


class AlreadySubmitted(ExamError):
    pass


class ExamValidationError(ExamError):
    def __init__(self, problems: List[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


def new_id(prefix: str) -> str:
    return f"{prefix}_{time.time_ns()}_{uuid.uuid4().hex[:6]}"


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def round_points(score: float) -> int:
    # half-up, matching how XP has always been rounded
    return int(math.floor(score + 0.5))


class ExamDraft(BaseModel):
    """What an author submits; totals and ids are filled in on creation."""
    title: str = ""
    folder_id: Optional[str] = None
    target_class: Optional[str] = None
    type: ExamType = "GENERAL"
    exam_format: ExamFormat = "MCQ"
    duration_minutes: int = Field(30, gt=0)
    start_time: Optional[datetime] = None
    negative_marks: float = Field(0, ge=0)
    question_list: List[ExamQuestion] = Field(default_factory=list)
    is_premium: bool = False


def validate_exam_draft(draft: ExamDraft) -> List[str]:
    problems = []
    if not draft.title.strip() or not draft.folder_id:
        problems.append("Title and folder are required")
    if draft.type == "LIVE" and draft.start_time is None:
        problems.append("Start time is required for live exams")
    if not draft.question_list:
        problems.append("An exam needs at least one question")
    seen = set()
    for i, q in enumerate(draft.question_list, start=1):
        if q.id in seen:
            problems.append(f"Question {i} repeats id {q.id}")
        seen.add(q.id)
        if not q.text.strip() and not q.image:
            problems.append(f"Question {i} is empty (needs text or image)")
        if q.type != draft.exam_format:
            problems.append(f"Question {i} is {q.type} in a {draft.exam_format} exam")
        elif q.type == "MCQ":
            if any(not o.strip() for o in q.options or []):
                problems.append(f"All options for question {i} must be filled")
            if q.correct_option is not None and q.correct_option >= len(q.options or []):
                problems.append(f"Question {i} marks a correct option that does not exist")
    return problems


def availability(exam: Exam, now: Optional[datetime] = None) -> str:
    """OPEN for practice exams; UPCOMING, LIVE or ENDED for scheduled ones."""
    if exam.type == "GENERAL":
        return "OPEN"
    if exam.start_time is None:
        return "UNSCHEDULED"
    now = _utc(now or _now())
    start = _utc(exam.start_time)
    end = start + timedelta(minutes=exam.duration_minutes)
    if now < start:
        return "UPCOMING"
    if now <= end:
        return "LIVE"
    return "ENDED"


class ExamAttempt:
    """A student's answers while the exam is in progress."""

    def __init__(self, exam: Exam, student_id: str, student_name: str = "", started_at: Optional[datetime] = None):
        self.exam = exam
        self.student_id = student_id
        self.student_name = student_name
        self.started_at = _utc(started_at or _now())
        self.selections: Dict[str, int] = {}
        self.images: Dict[str, List[str]] = {}
        self.submitted = False

    def _question(self, question_id: str) -> ExamQuestion:
        question = self.exam.question(question_id)
        if question is None:
            raise KeyError(question_id)
        return question

    def select(self, question_id: str, option: int) -> None:
        question = self._question(question_id)
        if question.type != "MCQ":
            raise ValueError(f"{question_id} is not a multiple choice question")
        if not 0 <= option < len(question.options):
            raise ValueError(f"Option {option} does not exist on {question_id}")
        self.selections[question_id] = option

    def clear(self, question_id: str) -> None:
        self.selections.pop(question_id, None)

    def attach_images(self, question_id: str, refs: Iterable[str]) -> None:
        question = self._question(question_id)
        if question.type != "WRITTEN":
            raise ValueError(f"{question_id} does not take written answers")
        current = self.images.setdefault(question_id, [])
        refs = list(refs)
        if len(current) + len(refs) > MAX_IMAGES_PER_QUESTION:
            raise ValueError(f"At most {MAX_IMAGES_PER_QUESTION} images per question")
        current.extend(refs)

    def remove_image(self, question_id: str, index: int) -> None:
        current = self.images.get(question_id, [])
        if 0 <= index < len(current):
            del current[index]

    @property
    def attempted_count(self) -> int:
        if self.exam.exam_format == "MCQ":
            return len(self.selections)
        return sum(1 for refs in self.images.values() if refs)

    def time_left(self, now: Optional[datetime] = None) -> int:
        end = self.started_at + timedelta(minutes=self.exam.duration_minutes)
        return max(0, int((end - _utc(now or _now())).total_seconds()))

    def expired(self, now: Optional[datetime] = None) -> bool:
        return self.time_left(now) == 0


@dataclass
class SubmitOutcome:
    submission: ExamSubmission
    score: Optional[McqScore] = None
    result: Optional[StudentResult] = None


@dataclass
class GradeOutcome:
    submission: ExamSubmission
    result: StudentResult


class ExamService:
    def __init__(self, store: CollectionStore, policy: Optional[ResultPolicy] = None, write_timeout: float = 30.0):
        self.policy = policy or ResultPolicy()
        self.write_timeout = write_timeout
        self.exams = store.open("exams")
        self.submissions = store.open("submissions")
        self.results = store.open("results")
        self.users = store.open("users")
        self.completions = store.open("completions")

    # --- authoring ---

    def get_exam(self, exam_id: str) -> Exam:
        doc = self.exams.get(exam_id)
        if doc is None:
            raise ExamNotFound(exam_id)
        return Exam.model_validate(doc)

    def list_exams(self, published_only: bool = False) -> List[Exam]:
        exams = [Exam.model_validate(d) for d in self.exams.items]
        if published_only:
            exams = [e for e in exams if e.is_published]
        return exams

    def create_exam(self, draft: ExamDraft) -> Exam:
        problems = validate_exam_draft(draft)
        if problems:
            raise ExamValidationError(problems)
        is_mcq = draft.exam_format == "MCQ"
        exam = Exam(
            id=new_id("exam"),
            title=draft.title.strip(),
            folder_id=draft.folder_id,
            target_class=draft.target_class,
            type=draft.type,
            exam_format=draft.exam_format,
            duration_minutes=draft.duration_minutes,
            start_time=draft.start_time if draft.type == "LIVE" else None,
            negative_marks=draft.negative_marks if is_mcq else 0,
            question_list=draft.question_list,
            total_marks=sum(q.marks for q in draft.question_list),
            questions_count=len(draft.question_list),
            is_published=False,
            is_premium=draft.is_premium,
        )
        self.exams.upsert(exam)
        logger.info("Created exam %s (%s, %d questions)", exam.id, exam.exam_format, exam.questions_count)
        return exam

    def set_published(self, exam_id: str, published: bool) -> Exam:
        exam = self.get_exam(exam_id).model_copy(update={"is_published": published})
        self.exams.upsert(exam)
        logger.info("%s exam %s", "Published" if published else "Unpublished", exam_id)
        return exam

    def delete_exam(self, exam_id: str) -> None:
        self.get_exam(exam_id)
        self.exams.remove(exam_id)

    # --- taking an exam ---

    def start_attempt(self, exam_id: str, student_id: str, student_name: str = "",
                      now: Optional[datetime] = None) -> ExamAttempt:
        exam = self.get_exam(exam_id)
        state = availability(exam, now)
        if not exam.is_published or state not in ("OPEN", "LIVE"):
            raise ExamNotAvailable(f"{exam_id} is {'unpublished' if not exam.is_published else state.lower()}")
        return ExamAttempt(exam, student_id, student_name, started_at=now)

    def submit(self, attempt: ExamAttempt, now: Optional[datetime] = None) -> SubmitOutcome:
        if attempt.submitted:
            raise AlreadySubmitted(f"{attempt.student_id} already submitted {attempt.exam.id}")
        now = _utc(now or _now())
        exam = attempt.exam
        attempt.submitted = True

        if exam.exam_format == "MCQ":
            answers = [SubmissionAnswer(question_id=q.id, selected_option=attempt.selections.get(q.id))
                       for q in exam.question_list]
        else:
            answers = [SubmissionAnswer(question_id=q.id, written_images=list(attempt.images.get(q.id, [])))
                       for q in exam.question_list]
        submission = ExamSubmission(
            id=new_id("sub"),
            exam_id=exam.id,
            student_id=attempt.student_id,
            student_name=attempt.student_name,
            submitted_at=now,
            answers=answers,
        )
        self._count_attempt(exam.id)

        if exam.exam_format != "MCQ":
            self.submissions.upsert(submission)
            logger.info("Submission %s for %s awaits grading", submission.id, exam.id)
            return SubmitOutcome(submission=submission)

        score = score_mcq(exam, attempt.selections)
        submission = submission.model_copy(update={
            "status": "GRADED",
            "obtained_marks": score.score,
            "graded_at": now,
        })
        self.submissions.upsert(submission)
        result = StudentResult(
            id=f"res_{submission.id}",
            student_id=attempt.student_id,
            exam_id=exam.id,
            exam_title=exam.title,
            submission_id=submission.id,
            score=score.score,
            total_marks=score.total_marks,
            negative_deduction=score.negative_deduction,
            date=now,
            status=classify(score.score, score.total_marks, self.policy),
        )
        self.complete_attempt(result, now=now)
        return SubmitOutcome(submission=submission, score=score, result=result)

    def _count_attempt(self, exam_id: str) -> None:
        doc = self.exams.get(exam_id)
        if doc is not None:
            doc["attempts"] = doc.get("attempts", 0) + 1
            self.exams.upsert(doc)

    # --- completion outbox ---

    def complete_attempt(self, result: StudentResult, award_points: bool = True,
                         now: Optional[datetime] = None) -> bool:
        """Record ``result`` and add its points to the student, once.

        Returns True when both writes are confirmed. Otherwise the outbox entry
        stays PENDING for retry_pending_completions().
        """
        completion_id = f"cmp_{result.id}"
        existing = self.completions.get(completion_id)
        if existing is not None:
            completion = ExamCompletion.model_validate(existing)
            if completion.state == "APPLIED":
                return True
        else:
            completion = ExamCompletion(
                id=completion_id,
                student_id=result.student_id,
                result=result,
                points=round_points(result.score) if award_points else 0,
                created_at=_utc(now or _now()),
            )
            if not self.completions.upsert(completion).wait(self.write_timeout):
                logger.warning("Outbox entry %s was not confirmed", completion.id)
        return self._apply(completion)

    def _apply(self, completion: ExamCompletion) -> bool:
        result = completion.result
        batches = []
        if self.results.get(result.id) is None:
            batches.append(self.results.upsert(result))

        user_doc = self.users.get(completion.student_id)
        if user_doc is None and completion.points:
            # stays PENDING until the user exists
            logger.warning("No user %s to credit for %s", completion.student_id, result.id)
            for b in batches:
                b.wait(self.write_timeout)
            return False
        if user_doc is not None and completion.points:
            user = User.model_validate(user_doc)
            if result.id not in user.awarded_results:
                user = user.model_copy(update={
                    "points": user.points + completion.points,
                    "awarded_results": user.awarded_results + [result.id],
                })
                batches.append(self.users.upsert(user))

        if not all(b.wait(self.write_timeout) for b in batches):
            logger.warning("Completion %s left pending", completion.id)
            return False
        self.completions.upsert(completion.model_copy(update={"state": "APPLIED"}))
        return True

    def retry_pending_completions(self) -> int:
        """Replay unfinished completions. Returns how many are now applied."""
        applied = 0
        for doc in self.completions.items:
            completion = ExamCompletion.model_validate(doc)
            if completion.state == "PENDING" and self._apply(completion):
                applied += 1
        return applied

    # --- manual grading ---

    def get_submission(self, submission_id: str) -> ExamSubmission:
        doc = self.submissions.get(submission_id)
        if doc is None:
            raise SubmissionNotFound(submission_id)
        return ExamSubmission.model_validate(doc)

    def pending_submissions(self) -> List[ExamSubmission]:
        pending = [ExamSubmission.model_validate(d) for d in self.submissions.items if d.get("status") == "PENDING"]
        return sorted(pending, key=lambda s: _utc(s.submitted_at))

    def grading_sheet(self, submission_id: str) -> dict:
        """What a grader sees: each question with its max marks and the uploaded images."""
        submission = self.get_submission(submission_id)
        exam = self.get_exam(submission.exam_id)
        by_question = {a.question_id: a for a in submission.answers}
        rows = []
        for q in exam.question_list:
            answer = by_question.get(q.id)
            rows.append({
                "question_id": q.id,
                "text": q.text,
                "max_marks": q.marks,
                "written_images": answer.written_images if answer else [],
                "marks_awarded": answer.marks_awarded if answer else None,
                "feedback": answer.feedback if answer else None,
            })
        return {
            "submission_id": submission.id,
            "exam_id": exam.id,
            "exam_title": exam.title,
            "student_name": submission.student_name,
            "status": submission.status,
            "total_marks": total_marks(exam),
            "questions": rows,
        }

    def results_for_submission(self, submission_id: str) -> List[StudentResult]:
        results = [StudentResult.model_validate(d) for d in self.results.items
                   if d.get("submission_id") == submission_id]
        return sorted(results, key=lambda r: _utc(r.date))

    def grade_submission(
        self,
        submission_id: str,
        entries: Iterable[GradeEntry],
        grader: str,
        now: Optional[datetime] = None,
    ) -> Union[GradeOutcome, GradingFailure]:
        now = _utc(now or _now())
        submission = self.get_submission(submission_id)
        exam = self.get_exam(submission.exam_id)
        graded = grade_written(exam, submission, entries, grader, now=now)
        if isinstance(graded, GradingFailure):
            logger.info("Rejected grades for %s: %s %s", submission_id, graded.reason, graded.question_id or "")
            return graded

        earlier = self.results_for_submission(submission_id)
        result_id = f"res_{submission_id}" if not earlier else f"res_{submission_id}_{len(earlier) + 1}"
        result = StudentResult(
            id=result_id,
            student_id=submission.student_id,
            exam_id=exam.id,
            exam_title=exam.title,
            submission_id=submission_id,
            score=graded.obtained_marks,
            total_marks=graded.total_marks,
            negative_deduction=0,
            date=now,
            status=classify(graded.obtained_marks, graded.total_marks, self.policy),
            supersedes=earlier[-1].id if earlier else None,
        )
        self.submissions.upsert(graded.submission)
        self.complete_attempt(result, award_points=not earlier, now=now)
        logger.info("Graded %s: %s/%s by %s", submission_id, graded.obtained_marks, graded.total_marks, grader)
        return GradeOutcome(submission=graded.submission, result=result)

    # --- history ---

    def student_history(self, student_id: str) -> List[StudentResult]:
        results = [StudentResult.model_validate(d) for d in self.results.items if d.get("student_id") == student_id]
        return sorted(results, key=lambda r: _utc(r.date), reverse=True)
