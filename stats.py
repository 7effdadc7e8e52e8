"""Leaderboard and student dashboard figures derived from users and results."""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from schemas import StudentResult, User


def leaderboard(users: Iterable[User]) -> List[dict]:
    """Students by points, highest first. Equal points are ordered by id."""
    students = [u for u in users if u.role == "STUDENT"]
    ranked = sorted(students, key=lambda u: (-(u.points or 0), u.id))
    return [
        {
            "rank": i,
            "id": u.id,
            "name": u.name or "Anonymous Student",
            "points": u.points or 0,
            "target_class": u.target_class,
        }
        for i, u in enumerate(ranked, start=1)
    ]


def rank_map(users: Iterable[User]) -> Dict[str, int]:
    return {row["id"]: row["rank"] for row in leaderboard(users)}


def student_stats(user: User, results: Iterable[StudentResult], rank: int = 0) -> dict:
    mine = [r for r in results if r.student_id == user.id]
    if not mine:
        return {"average": 0, "total_exams": 0, "rank": rank, "score": 0,
                "xp": user.points or 0, "negative": 0, "accuracy": 0}

    total_score = sum(r.score for r in mine)
    total_max = sum(r.total_marks for r in mine)
    total_negative = sum(r.negative_deduction for r in mine)
    # score before deductions approximates what was answered correctly
    raw = sum(r.score + r.negative_deduction for r in mine)
    return {
        "average": round(total_score / total_max * 100) if total_max else 0,
        "total_exams": len(mine),
        "rank": rank,
        "score": round(total_score),
        "xp": user.points or 0,
        "negative": round(total_negative / len(mine), 2),
        "accuracy": round(raw / total_max * 100) if total_max else 0,
    }


def _day(value: datetime) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def study_streak(results: Iterable[StudentResult], student_id: str, today: Optional[date] = None) -> int:
    """Consecutive days with at least one result, counted back from today or yesterday."""
    today = today or datetime.now(timezone.utc).date()
    days = sorted({_day(r.date) for r in results if r.student_id == student_id}, reverse=True)
    if not days or days[0] < today - timedelta(days=1):
        return 0
    streak = 1
    for newer, older in zip(days, days[1:]):
        if newer - older != timedelta(days=1):
            break
        streak += 1
    return streak
