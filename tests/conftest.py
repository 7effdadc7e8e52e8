import pytest

from database import InMemoryBackend
from exams import ExamService
from schemas import Exam, ExamQuestion
from sync import CollectionStore


def mcq(qid, marks=5, correct=0, options=("A", "B", "C", "D")):
    return ExamQuestion(id=qid, text=f"Question {qid}", marks=marks, type="MCQ",
                        options=list(options), correct_option=correct)


def written(qid, marks=25):
    return ExamQuestion(id=qid, text=f"Question {qid}", marks=marks, type="WRITTEN")


def make_exam(exam_id="ex1", questions=None, exam_format="MCQ", negative_marks=0.0, **extra):
    questions = questions if questions is not None else [mcq("q1"), mcq("q2")]
    return Exam(
        id=exam_id,
        title=f"Exam {exam_id}",
        folder_id="exam_f1",
        exam_format=exam_format,
        negative_marks=negative_marks,
        question_list=questions,
        total_marks=sum(q.marks for q in questions),
        questions_count=len(questions),
        **extra,
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    with CollectionStore(backend, max_workers=4) as s:
        yield s


@pytest.fixture
def exam_service(store):
    store.open("users", [
        {"id": "student1", "name": "Rahim Ahmed", "role": "STUDENT", "points": 100},
        {"id": "student2", "name": "Karim Uddin", "role": "STUDENT", "points": 50},
    ])
    return ExamService(store)
