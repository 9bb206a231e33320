from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.panotify.audit import record_event
from app.panotify.constants import COURSE_CODE_ALPHABET, COURSE_CODE_LENGTH, FINISHED_STATUSES
from app.panotify.models import User
from app.panotify.modules.courses.models import Course, Enrollment

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_MAX_CODE_TRIES = 20


class CourseError(ValueError):
    pass


@dataclass
class StudentProgress:
    student_id: int
    student_name: str
    exams_taken: int
    total_exams: int
    average_score: float


def normalize_course_code(code: str | None) -> str:
    return (code or "").strip().upper()


def generate_course_code(s: "Session") -> str:
    """Random join code; regenerated until it does not collide with an existing course."""
    for _ in range(_MAX_CODE_TRIES):
        code = "".join(secrets.choice(COURSE_CODE_ALPHABET) for _ in range(COURSE_CODE_LENGTH))
        if get_course_by_code(s, code) is None:
            return code
    raise CourseError("Could not generate a unique course code; try again.")


def validate_course_payload(payload: dict) -> list[str]:
    errors = []
    name = (payload.get("course_name") or "").strip()
    if not name:
        errors.append("Course name is required.")
    elif len(name) > 255:
        errors.append("Course name must be at most 255 characters.")
    return errors


def create_course(s: "Session", payload: dict, instructor: User) -> Course:
    now = datetime.utcnow()
    course = Course(
        course_name=(payload.get("course_name") or "").strip(),
        course_code=generate_course_code(s),
        description=(payload.get("description") or "").strip() or None,
        instructor_id=instructor.id,
        created_at=now,
        updated_at=now,
    )
    s.add(course)
    s.flush()

    record_event(
        s,
        actor=instructor,
        action="course.create",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"course_name": course.course_name, "course_code": course.course_code},
    )
    return course


def update_course(s: "Session", course: Course, payload: dict, user: User) -> Course:
    changes = {}
    new_name = (payload.get("course_name") or "").strip()
    if new_name and new_name != course.course_name:
        changes["course_name"] = {"old": course.course_name, "new": new_name}
        course.course_name = new_name

    new_desc = (payload.get("description") or "").strip() or None
    if new_desc != course.description:
        changes["description"] = {"old": course.description, "new": new_desc}
        course.description = new_desc

    course.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="course.edit",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"changes": changes},
    )
    return course


def delete_course(s: "Session", course: Course, user: User) -> None:
    """Delete a course with its exams, questions, attempts, answers and enrollments (caller commits)."""
    meta = {
        "course_name": course.course_name,
        "course_code": course.course_code,
        "exams": len(course.exams),
        "enrollments": len(course.enrollments),
    }
    course_id = course.id
    s.delete(course)
    s.flush()
    record_event(s, actor=user, action="course.delete", entity_type="Course", entity_id=str(course_id), metadata=meta)


def get_course_by_code(s: "Session", code: str | None) -> Course | None:
    code = normalize_course_code(code)
    if not code:
        return None
    return s.query(Course).filter(Course.course_code == code).one_or_none()


def is_enrolled(s: "Session", student: User, course: Course) -> bool:
    return (
        s.query(Enrollment.id)
        .filter(Enrollment.user_id == student.id, Enrollment.course_id == course.id)
        .first()
        is not None
    )


def enroll_student(s: "Session", student: User, code: str | None) -> tuple[Course, bool]:
    """
    Enroll a student by course code.
    Returns (course, created); an existing enrollment is not an error.
    """
    if not student.is_student:
        raise CourseError("Only student accounts can enroll in courses.")
    course = get_course_by_code(s, code)
    if course is None:
        raise CourseError("No course found with that code.")
    if is_enrolled(s, student, course):
        logger.info("Student %s already enrolled in course %s", student.id, course.id)
        return course, False

    course.enrollments.append(Enrollment(user_id=student.id, enrolled_at=datetime.utcnow()))
    s.flush()
    record_event(
        s,
        actor=student,
        action="course.enroll",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"course_code": course.course_code, "student_id": student.id},
    )
    return course, True


def unenroll_student(s: "Session", course: Course, student: User, actor: User) -> bool:
    enrollment = (
        s.query(Enrollment)
        .filter(Enrollment.user_id == student.id, Enrollment.course_id == course.id)
        .one_or_none()
    )
    if enrollment is None:
        return False
    course.enrollments.remove(enrollment)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="course.unenroll",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"student_id": student.id, "username": student.username},
    )
    return True


def courses_for_instructor(s: "Session", instructor: User) -> list[Course]:
    return s.query(Course).filter(Course.instructor_id == instructor.id).order_by(Course.created_at.desc()).all()


def courses_for_student(s: "Session", student: User) -> list[Course]:
    return (
        s.query(Course)
        .join(Enrollment, Enrollment.course_id == Course.id)
        .filter(Enrollment.user_id == student.id)
        .order_by(Course.course_name.asc())
        .all()
    )


def students_in_course(s: "Session", course: Course) -> list[User]:
    return (
        s.query(User)
        .join(Enrollment, Enrollment.user_id == User.id)
        .filter(Enrollment.course_id == course.id, User.account_type == "Student")
        .order_by(User.last_name.asc(), User.first_name.asc())
        .all()
    )


def instructor_for_course(s: "Session", course: Course) -> User | None:
    if course.instructor_id is None:
        return None
    return s.get(User, course.instructor_id)


def enrolled_student_count(s: "Session", course: Course) -> int:
    return s.query(func.count(Enrollment.id)).filter(Enrollment.course_id == course.id).scalar() or 0


def enrollment_date(s: "Session", student: User, course: Course) -> datetime | None:
    return (
        s.query(Enrollment.enrolled_at)
        .filter(Enrollment.user_id == student.id, Enrollment.course_id == course.id)
        .scalar()
    )


def student_progress(s: "Session", course: Course) -> list[StudentProgress]:
    """Per enrolled student: finished attempts vs. exams in the course, and average percentage."""
    from app.panotify.modules.exams.models import Attempt, Exam

    total_exams = s.query(func.count(Exam.id)).filter(Exam.course_id == course.id).scalar() or 0

    rows = (
        s.query(Attempt.student_id, Attempt.total_score, Attempt.max_score)
        .join(Exam, Exam.id == Attempt.exam_id)
        .filter(Exam.course_id == course.id, Attempt.status.in_(FINISHED_STATUSES))
        .all()
    )
    by_student: dict[int, list[float]] = {}
    for student_id, total, max_score in rows:
        pct = (total * 100.0 / max_score) if max_score else 0.0
        by_student.setdefault(student_id, []).append(pct)

    progress = []
    for student in students_in_course(s, course):
        pcts = by_student.get(student.id, [])
        progress.append(
            StudentProgress(
                student_id=student.id,
                student_name=student.full_name,
                exams_taken=len(pcts),
                total_exams=total_exams,
                average_score=(sum(pcts) / len(pcts)) if pcts else 0.0,
            )
        )
    return progress


def can_manage_course(user: User | None, course: Course) -> bool:
    """Instructors manage their own courses; account managers manage all of them."""
    from app.panotify.rbac import user_has_permission

    if not user:
        return False
    if course.instructor_id == user.id and user_has_permission(user, "courses.manage"):
        return True
    return user_has_permission(user, "accounts.manage")
