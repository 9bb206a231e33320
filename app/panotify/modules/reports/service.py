from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from sqlalchemy import func

from app.panotify.constants import FINISHED_STATUSES
from app.panotify.modules.courses.service import students_in_course
from app.panotify.modules.exams.models import Attempt, Exam

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.panotify.models import User
    from app.panotify.modules.courses.models import Course


@dataclass
class ExamResult:
    attempt_id: int
    exam_id: int
    exam_title: str
    course_name: str
    student_id: int
    student_name: str
    status: str
    total_score: int
    max_score: int
    percentage: float
    started_at: datetime
    submitted_at: datetime | None


@dataclass
class ExamStatistics:
    exam_id: int
    attempt_count: int
    finished_count: int
    average_percentage: float
    highest_percentage: float
    lowest_percentage: float


@dataclass
class StudentReport:
    student_id: int
    student_name: str
    username: str
    exams_taken: int
    total_exams: int
    total_score: int
    max_score: int
    average_percentage: float


def _result(attempt: Attempt) -> ExamResult:
    return ExamResult(
        attempt_id=attempt.id,
        exam_id=attempt.exam_id,
        exam_title=attempt.exam.title,
        course_name=attempt.exam.course.course_name,
        student_id=attempt.student_id,
        student_name=attempt.student.full_name,
        status=attempt.status,
        total_score=attempt.total_score,
        max_score=attempt.max_score,
        percentage=round(attempt.percentage, 2),
        started_at=attempt.started_at,
        submitted_at=attempt.submitted_at,
    )


def exam_statistics(s: "Session", exam: Exam) -> ExamStatistics:
    """Average is taken over finished attempts only."""
    attempt_count = s.query(func.count(Attempt.id)).filter(Attempt.exam_id == exam.id).scalar() or 0
    finished = (
        s.query(Attempt)
        .filter(Attempt.exam_id == exam.id, Attempt.status.in_(FINISHED_STATUSES))
        .all()
    )
    pcts = [a.percentage for a in finished]
    return ExamStatistics(
        exam_id=exam.id,
        attempt_count=attempt_count,
        finished_count=len(finished),
        average_percentage=round(sum(pcts) / len(pcts), 2) if pcts else 0.0,
        highest_percentage=round(max(pcts), 2) if pcts else 0.0,
        lowest_percentage=round(min(pcts), 2) if pcts else 0.0,
    )


def exam_reports(s: "Session", exam: Exam) -> list[ExamResult]:
    attempts = (
        s.query(Attempt)
        .filter(Attempt.exam_id == exam.id)
        .order_by(Attempt.submitted_at.is_(None), Attempt.submitted_at.desc(), Attempt.started_at.desc())
        .all()
    )
    return [_result(a) for a in attempts]


def student_results(s: "Session", student: "User", course: "Course | None" = None) -> list[ExamResult]:
    q = (
        s.query(Attempt)
        .join(Exam, Exam.id == Attempt.exam_id)
        .filter(Attempt.student_id == student.id, Attempt.status.in_(FINISHED_STATUSES))
    )
    if course is not None:
        q = q.filter(Exam.course_id == course.id)
    return [_result(a) for a in q.order_by(Attempt.submitted_at.desc()).all()]


def student_course_report(s: "Session", student: "User", course: "Course") -> StudentReport:
    total_exams = s.query(func.count(Exam.id)).filter(Exam.course_id == course.id).scalar() or 0
    results = student_results(s, student, course)
    total = sum(r.total_score for r in results)
    maximum = sum(r.max_score for r in results)
    return StudentReport(
        student_id=student.id,
        student_name=student.full_name,
        username=student.username,
        exams_taken=len(results),
        total_exams=total_exams,
        total_score=total,
        max_score=maximum,
        average_percentage=round(sum(r.percentage for r in results) / len(results), 2) if results else 0.0,
    )


def course_report(s: "Session", course: "Course") -> list[StudentReport]:
    return [student_course_report(s, student, course) for student in students_in_course(s, course)]


COURSE_REPORT_HEADER = [
    "Student",
    "Username",
    "Exams Taken",
    "Total Exams",
    "Total Score",
    "Max Score",
    "Average %",
]


def course_report_csv(rows: Iterable[StudentReport]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(COURSE_REPORT_HEADER)
    for r in rows:
        w.writerow(
            [
                r.student_name,
                r.username,
                r.exams_taken,
                r.total_exams,
                r.total_score,
                r.max_score,
                f"{r.average_percentage:.2f}",
            ]
        )
    return out.getvalue().encode("utf-8")
