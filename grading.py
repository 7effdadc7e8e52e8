"""
Exam scoring.

Pure functions: nothing here touches the store. MCQ attempts are scored at
submission time with optional negative marking; written submissions are
finalized from the grader's per-question marks. Both end in a percentage
classification against a ResultPolicy.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Union

import config
from schemas import Exam, ExamSubmission, ResultStatus, SubmissionAnswer


@dataclass(frozen=True)
class ResultPolicy:
    merit_percentage: float = 80.0
    pass_percentage: float = 40.0

    def __post_init__(self):
        if not 0 <= self.pass_percentage <= self.merit_percentage <= 100:
            raise ValueError("Expected 0 <= pass_percentage <= merit_percentage <= 100")

    @classmethod
    def from_config(cls) -> "ResultPolicy":
        return cls(merit_percentage=config.MERIT_PERCENTAGE, pass_percentage=config.PASS_PERCENTAGE)


@dataclass(frozen=True)
class McqScore:
    score: float
    total_marks: float
    negative_deduction: float
    correct: int
    wrong: int
    unanswered: int

    @property
    def accuracy(self) -> int:
        questions = self.correct + self.wrong + self.unanswered
        return round(self.correct / questions * 100) if questions else 0


@dataclass(frozen=True)
class GradeEntry:
    question_id: str
    marks: float
    feedback: Optional[str] = None


@dataclass(frozen=True)
class GradingFailure:
    """Returned instead of a graded submission when the grader's input cannot be used."""
    reason: str
    question_id: Optional[str] = None
    detail: str = ""


@dataclass
class WrittenGrade:
    submission: ExamSubmission
    obtained_marks: float
    total_marks: float
    per_question: Dict[str, float] = field(default_factory=dict)


def total_marks(exam: Exam) -> float:
    """Always derived from the question list, never from the cached field."""
    return sum(q.marks for q in exam.question_list)


def _round(value: float) -> float:
    return round(value, 2)


def score_mcq(exam: Exam, selections: Mapping[str, Optional[int]]) -> McqScore:
    """Score an MCQ attempt.

    ``selections`` maps question id to the chosen option index; a missing id
    or None means the question was skipped and earns nothing either way.
    """
    obtained = 0.0
    correct = wrong = unanswered = 0
    for q in exam.question_list:
        choice = selections.get(q.id)
        if choice is None:
            unanswered += 1
        elif choice == q.correct_option:
            correct += 1
            obtained += q.marks
        else:
            wrong += 1

    penalty = exam.negative_marks if exam.negative_marks > 0 else 0
    deduction = _round(wrong * penalty)
    return McqScore(
        score=_round(max(0.0, obtained - deduction)),
        total_marks=total_marks(exam),
        negative_deduction=deduction,
        correct=correct,
        wrong=wrong,
        unanswered=unanswered,
    )


def classify(score: float, total: float, policy: Optional[ResultPolicy] = None) -> ResultStatus:
    policy = policy or ResultPolicy()
    percentage = (score / total * 100) if total > 0 else 0
    if percentage >= policy.merit_percentage:
        return "MERIT"
    if percentage >= policy.pass_percentage:
        return "PASSED"
    return "FAILED"


def grade_written(
    exam: Exam,
    submission: ExamSubmission,
    entries: Iterable[GradeEntry],
    grader: str,
    now: Optional[datetime] = None,
) -> Union[WrittenGrade, GradingFailure]:
    """Finalize a written submission from the grader's marks.

    Every entry is checked before anything is applied, so the returned
    submission either carries all of the marks or none are used. Questions
    without an entry get zero.
    """
    if submission.exam_id != exam.id:
        return GradingFailure("exam_mismatch", detail=f"{submission.id} belongs to {submission.exam_id}")
    if exam.exam_format != "WRITTEN":
        return GradingFailure("not_written", detail=f"{exam.id} is {exam.exam_format}")

    awarded: Dict[str, float] = {}
    feedback: Dict[str, Optional[str]] = {}
    for entry in entries:
        question = exam.question(entry.question_id)
        if question is None:
            return GradingFailure("unknown_question", entry.question_id)
        if entry.question_id in awarded:
            return GradingFailure("duplicate_question", entry.question_id)
        if not 0 <= entry.marks <= question.marks:
            return GradingFailure(
                "marks_out_of_range", entry.question_id,
                f"{entry.marks} not in [0, {question.marks}]",
            )
        awarded[entry.question_id] = float(entry.marks)
        feedback[entry.question_id] = entry.feedback

    by_question = {a.question_id: a for a in submission.answers}
    answers: List[SubmissionAnswer] = []
    for q in exam.question_list:
        previous = by_question.get(q.id) or SubmissionAnswer(question_id=q.id)
        answers.append(previous.model_copy(update={
            "marks_awarded": awarded.get(q.id, 0.0),
            "feedback": feedback.get(q.id),
        }))
    obtained = _round(sum(a.marks_awarded for a in answers))

    graded = submission.model_copy(update={
        "answers": answers,
        "obtained_marks": obtained,
        "status": "GRADED",
        "graded_by": grader,
        "graded_at": now or datetime.now(timezone.utc),
    })
    return WrittenGrade(
        submission=graded,
        obtained_marks=obtained,
        total_marks=total_marks(exam),
        per_question={a.question_id: a.marks_awarded for a in answers},
    )
