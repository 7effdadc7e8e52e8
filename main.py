import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

import config
from database import get_backend
from exams import (
    AlreadySubmitted,
    ExamDraft,
    ExamNotAvailable,
    ExamNotFound,
    ExamService,
    ExamValidationError,
    SubmissionNotFound,
    availability,
)
from grading import GradeEntry, GradingFailure, ResultPolicy
from schemas import COLLECTIONS, User
from seeds import SEED_DATA
from stats import leaderboard, rank_map, student_stats, study_streak
from sync import CollectionStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = get_backend()
    store = CollectionStore(backend, max_workers=config.SYNC_MAX_WORKERS)
    for name in COLLECTIONS:
        store.open(name, SEED_DATA.get(name, []) if config.SEED_SAMPLE_DATA else [])
    app.state.backend = backend
    app.state.store = store
    app.state.exams = ExamService(store, ResultPolicy.from_config())
    logger.info("Opened %d collections on %s backend", len(COLLECTIONS), backend.name)
    yield
    store.close()
    backend.close()
    logger.info("Shutdown complete")


app = FastAPI(title="Learning Platform API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers
def service(request: Request) -> ExamService:
    return request.app.state.exams


def collection(request: Request, name: str):
    if name not in COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection {name}")
    return request.app.state.store.open(name)


def validation_detail(e: ValidationError):
    return e.errors(include_url=False, include_context=False)


@app.get("/")
def read_root():
    return {"message": "Learning Platform API running"}


@app.get("/test")
def test_database(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        info = request.app.state.backend.describe()
        response["database"] = f"✅ {info['backend']}"
        response["connection_status"] = info.get("connection_status", "Connected")
        response["collections"] = info.get("collections", [])
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    response["sync_errors"] = len(request.app.state.store.errors)
    return response


# -------- COLLECTIONS --------
@app.get("/api/collections/{name}")
def list_collection(name: str, request: Request):
    handle = collection(request, name)
    return {
        "items": handle.items,
        "loading": handle.loading,
        "pending": handle.pending,
        "failed": handle.failed,
    }


@app.put("/api/collections/{name}")
def replace_collection(name: str, request: Request, items: List[Dict[str, Any]] = Body(...)):
    handle = collection(request, name)
    model = COLLECTIONS[name]
    try:
        docs = [model.model_validate(item) for item in items]
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e))
    batch = handle.set(docs)
    return {"writes": batch.writes, "deletes": batch.deletes}


@app.post("/api/collections/{name}")
def upsert_document(name: str, request: Request, item: Dict[str, Any] = Body(...)):
    handle = collection(request, name)
    try:
        doc = COLLECTIONS[name].model_validate(item)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e))
    batch = handle.upsert(doc)
    return {"id": doc.id, "writes": batch.writes}


@app.delete("/api/collections/{name}/{doc_id}")
def delete_document(name: str, doc_id: str, request: Request):
    handle = collection(request, name)
    if handle.get(doc_id) is None:
        raise HTTPException(status_code=404, detail=f"{doc_id} not found in {name}")
    batch = handle.remove(doc_id)
    return {"deletes": batch.deletes}


@app.get("/api/sync/errors")
def sync_errors(request: Request):
    return [e.as_dict() for e in request.app.state.store.errors]


# -------- EXAMS --------
@app.post("/api/exams", response_model=dict)
def create_exam(draft: ExamDraft, request: Request):
    try:
        exam = service(request).create_exam(draft)
    except ExamValidationError as e:
        raise HTTPException(status_code=422, detail=e.problems)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"id": exam.id, "total_marks": exam.total_marks, "questions_count": exam.questions_count}


@app.get("/api/exams")
def list_exams(request: Request, published: bool = False, now: Optional[datetime] = None):
    try:
        exams = service(request).list_exams(published_only=published)
        return [
            {**e.model_dump(mode="json"), "availability": availability(e, now)}
            for e in exams
        ]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


def _set_published(request: Request, exam_id: str, published: bool):
    try:
        exam = service(request).set_published(exam_id, published)
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="Exam not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"id": exam.id, "is_published": exam.is_published}


@app.post("/api/exams/{exam_id}/publish")
def publish_exam(exam_id: str, request: Request):
    return _set_published(request, exam_id, True)


@app.post("/api/exams/{exam_id}/unpublish")
def unpublish_exam(exam_id: str, request: Request):
    return _set_published(request, exam_id, False)


@app.delete("/api/exams/{exam_id}")
def delete_exam(exam_id: str, request: Request):
    try:
        service(request).delete_exam(exam_id)
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="Exam not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"deleted": exam_id}


@app.get("/api/exams/{exam_id}/availability")
def exam_availability(exam_id: str, request: Request, now: Optional[datetime] = None):
    try:
        exam = service(request).get_exam(exam_id)
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="Exam not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"id": exam.id, "is_published": exam.is_published, "availability": availability(exam, now)}


class AnswerIn(BaseModel):
    question_id: str
    selected_option: Optional[int] = None
    written_images: List[str] = Field(default_factory=list)


class SubmitAttempt(BaseModel):
    student_id: str
    student_name: str = ""
    answers: List[AnswerIn] = Field(default_factory=list)


@app.post("/api/exams/{exam_id}/submissions")
def submit_attempt(exam_id: str, payload: SubmitAttempt, request: Request):
    exams = service(request)
    try:
        attempt = exams.start_attempt(exam_id, payload.student_id, payload.student_name)
        for ans in payload.answers:
            if ans.selected_option is not None:
                attempt.select(ans.question_id, ans.selected_option)
            if ans.written_images:
                attempt.attach_images(ans.question_id, ans.written_images)
        outcome = exams.submit(attempt)
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="Exam not found")
    except ExamNotAvailable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AlreadySubmitted as e:
        raise HTTPException(status_code=409, detail=str(e))
    except KeyError as e:
        raise HTTPException(status_code=422, detail=f"Unknown question {e.args[0]}")
    except ValidationError as e:
        # stored exam no longer matches its schema
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "submission": outcome.submission.model_dump(mode="json"),
        "result": outcome.result.model_dump(mode="json") if outcome.result else None,
        "correct": outcome.score.correct if outcome.score else None,
        "wrong": outcome.score.wrong if outcome.score else None,
    }


# -------- GRADING --------
@app.get("/api/submissions/pending")
def pending_submissions(request: Request):
    try:
        return [s.model_dump(mode="json") for s in service(request).pending_submissions()]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/submissions/{submission_id}/sheet")
def grading_sheet(submission_id: str, request: Request):
    try:
        return service(request).grading_sheet(submission_id)
    except (SubmissionNotFound, ExamNotFound) as e:
        raise HTTPException(status_code=404, detail=f"Not found: {e}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


class GradeIn(BaseModel):
    question_id: str
    marks: float
    feedback: Optional[str] = None


class GradeRequest(BaseModel):
    grader: str
    grades: List[GradeIn] = Field(default_factory=list)


@app.post("/api/submissions/{submission_id}/grade")
def grade_submission(submission_id: str, payload: GradeRequest, request: Request):
    entries = [GradeEntry(g.question_id, g.marks, g.feedback) for g in payload.grades]
    try:
        outcome = service(request).grade_submission(submission_id, entries, payload.grader)
    except (SubmissionNotFound, ExamNotFound) as e:
        raise HTTPException(status_code=404, detail=f"Not found: {e}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    if isinstance(outcome, GradingFailure):
        raise HTTPException(status_code=422, detail={
            "reason": outcome.reason,
            "question_id": outcome.question_id,
            "detail": outcome.detail,
        })
    return {
        "submission": outcome.submission.model_dump(mode="json"),
        "result": outcome.result.model_dump(mode="json"),
    }


@app.post("/api/completions/retry")
def retry_completions(request: Request):
    try:
        return {"applied": service(request).retry_pending_completions()}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# -------- STUDENTS --------
def _users(request: Request) -> List[User]:
    return [User.model_validate(d) for d in request.app.state.store["users"].items]


@app.get("/api/students/{student_id}/results")
def student_results(student_id: str, request: Request):
    try:
        return [r.model_dump(mode="json") for r in service(request).student_history(student_id)]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/students/{student_id}/stats")
def student_dashboard(student_id: str, request: Request):
    try:
        users = _users(request)
        user = next((u for u in users if u.id == student_id), None)
        if user is None:
            raise HTTPException(status_code=404, detail="Student not found")
        history = service(request).student_history(student_id)
        stats = student_stats(user, history, rank_map(users).get(student_id, 0))
        stats["streak"] = study_streak(history, student_id)
        return stats
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/leaderboard")
def get_leaderboard(request: Request, limit: int = 50):
    try:
        return leaderboard(_users(request))[:limit]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
