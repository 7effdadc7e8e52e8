"""
Database Schemas for the learning platform

Each Pydantic model describes the documents of one synchronized collection.
``COLLECTIONS`` maps collection names to their model; the generic collection
endpoints validate writes against it.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator

UserRole = Literal["ADMIN", "STUDENT"]
ExamType = Literal["LIVE", "GENERAL"]
ExamFormat = Literal["MCQ", "WRITTEN"]
SubmissionStatus = Literal["PENDING", "GRADED"]
ResultStatus = Literal["PASSED", "MERIT", "FAILED"]
ContentType = Literal["WRITTEN", "MCQ", "VIDEO"]


class Entity(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Stable document id")


class User(Entity):
    """Platform account (collection: users)"""
    name: str = ""
    email: str = ""
    role: UserRole = "STUDENT"
    status: Literal["ACTIVE", "BLOCKED"] = "ACTIVE"
    target_class: Optional[str] = Field(None, description="Class or admission category")
    points: int = Field(0, description="Accumulated XP")
    awarded_results: List[str] = Field(default_factory=list, description="Result ids already turned into points")
    avatar: Optional[str] = None


class Folder(Entity):
    """Folder for study content or exams (collection: folders)"""
    name: str
    description: str = ""
    parent_id: Optional[str] = None
    target_class: Optional[str] = None
    type: Literal["CONTENT", "EXAM"] = "CONTENT"


class McqItem(BaseModel):
    id: str
    question_text: str
    options: List[str]
    correct_option_index: int


class StudyContent(Entity):
    """Library entry (collection: contents)"""
    folder_id: str
    title: str
    type: ContentType
    body: Optional[str] = None
    video_url: Optional[str] = None
    question_list: List[McqItem] = Field(default_factory=list)
    is_premium: bool = False


class BlogPost(Entity):
    """Blog article (collection: blogs)"""
    folder_id: str
    title: str
    author: str
    date: datetime
    excerpt: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    views: int = 0


class Notice(Entity):
    """Announcement (collection: notices)"""
    title: str
    date: datetime
    content: str
    image: Optional[str] = None
    priority: Literal["HIGH", "MEDIUM", "LOW"] = "MEDIUM"
    target_class: Optional[str] = None


class Appeal(Entity):
    """Student report or question about content (collection: appeals)"""
    content_id: str
    content_title: str
    student_name: str
    text: str
    image: Optional[str] = None
    status: Literal["PENDING", "REPLIED"] = "PENDING"
    reply: Optional[str] = None
    reply_image: Optional[str] = None
    timestamp: datetime


class SocialPost(Entity):
    """Feed post (collection: social_posts)"""
    author_name: str
    timestamp: datetime
    content: str
    image_url: Optional[str] = None
    likes: int = 0
    comments: int = 0


class SocialReport(Entity):
    """Moderation report on a feed post (collection: social_reports)"""
    post_id: str
    reporter_name: str
    reason: str
    timestamp: datetime
    status: Literal["PENDING", "RESOLVED", "DISMISSED"] = "PENDING"


class ExamQuestion(BaseModel):
    """One question of an exam. MCQ questions always carry a correct option."""
    id: str = Field(..., min_length=1)
    text: str = ""
    marks: float = Field(..., ge=0, description="Marks for a full answer")
    type: ExamFormat
    options: Optional[List[str]] = None
    correct_option: Optional[int] = Field(None, ge=0, description="Index into options (MCQ only)")
    image: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self):
        if self.type == "MCQ":
            if not self.options or len(self.options) < 2:
                raise ValueError(f"MCQ question {self.id} needs at least two options")
            if self.correct_option is None:
                raise ValueError(f"MCQ question {self.id} has no correct option")
        elif self.correct_option is not None:
            raise ValueError(f"Written question {self.id} cannot have a correct option")
        elif self.options:
            raise ValueError(f"Written question {self.id} cannot have options")
        return self


class Exam(Entity):
    """Exam definition (collection: exams)"""
    title: str
    folder_id: Optional[str] = None
    target_class: Optional[str] = None
    type: ExamType = "GENERAL"
    exam_format: ExamFormat = "MCQ"
    duration_minutes: int = Field(30, gt=0)
    total_marks: float = Field(0, ge=0, description="Sum of question marks")
    questions_count: int = Field(0, ge=0)
    start_time: Optional[datetime] = Field(None, description="Required for LIVE exams")
    negative_marks: float = Field(0, ge=0, description="Penalty per wrong MCQ answer")
    is_published: bool = False
    question_list: List[ExamQuestion] = Field(default_factory=list)
    attempts: int = 0
    is_premium: bool = False

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.type == "LIVE" and self.start_time is None:
            raise ValueError("LIVE exams need a start time")
        if self.questions_count != len(self.question_list):
            raise ValueError("questions_count does not match the question list")
        if abs(self.total_marks - sum(q.marks for q in self.question_list)) > 1e-9:
            raise ValueError("total_marks does not match the question marks")
        for q in self.question_list:
            if q.type != self.exam_format:
                raise ValueError(f"Question {q.id} is {q.type} in a {self.exam_format} exam")
        return self

    def question(self, question_id: str) -> Optional[ExamQuestion]:
        for q in self.question_list:
            if q.id == question_id:
                return q
        return None


class SubmissionAnswer(BaseModel):
    question_id: str
    selected_option: Optional[int] = Field(None, description="Chosen option index (MCQ)")
    written_images: List[str] = Field(default_factory=list, description="Uploaded answer image references")
    marks_awarded: Optional[float] = None
    feedback: Optional[str] = None


class ExamSubmission(Entity):
    """A student's submitted attempt (collection: submissions)"""
    exam_id: str
    student_id: str
    student_name: str = ""
    submitted_at: datetime
    status: SubmissionStatus = "PENDING"
    obtained_marks: float = 0
    graded_by: Optional[str] = None
    graded_at: Optional[datetime] = None
    answers: List[SubmissionAnswer] = Field(default_factory=list)


class StudentResult(Entity):
    """Scored outcome, append-only (collection: results)"""
    student_id: str
    exam_id: str
    exam_title: str = ""
    submission_id: Optional[str] = None
    score: float
    total_marks: float
    negative_deduction: float = 0
    date: datetime
    status: ResultStatus
    supersedes: Optional[str] = Field(None, description="Earlier result replaced by a re-grade")


class ExamCompletion(Entity):
    """Outbox entry for recording a result and awarding its points (collection: completions)"""
    student_id: str
    result: StudentResult
    points: int = Field(0, ge=0, description="XP to add to the student, 0 for re-grades")
    state: Literal["PENDING", "APPLIED"] = "PENDING"
    created_at: datetime


COLLECTIONS: Dict[str, Type[Entity]] = {
    "users": User,
    "folders": Folder,
    "contents": StudyContent,
    "blogs": BlogPost,
    "notices": Notice,
    "appeals": Appeal,
    "social_posts": SocialPost,
    "social_reports": SocialReport,
    "exams": Exam,
    "submissions": ExamSubmission,
    "results": StudentResult,
    "completions": ExamCompletion,
}
