from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.panotify.audit import record_event
from app.panotify.constants import ATTEMPT_COMPLETED, QUESTION_TYPES
from app.panotify.modules.courses.models import Course, Enrollment
from app.panotify.modules.exams.attempts import regrade_exam
from app.panotify.modules.exams.models import Attempt, Exam, Question

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.panotify.models import User

logger = logging.getLogger(__name__)


class ExamError(ValueError):
    pass


def parse_datetime(s: str | None) -> datetime | None:
    """
    Parse an HTML datetime-local value (YYYY-MM-DDTHH:MM) or ISO datetime.
    Naive values are taken as UTC; values with an offset are converted to naive UTC.
    """
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    value = datetime.fromisoformat(s)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_int(raw, field: str, errors: list[str]) -> int | None:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        errors.append(f"{field} must be a whole number.")
        return None


# ---------- Exams ----------

def validate_exam_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    title = (payload.get("title") or "").strip()
    if not title:
        errors.append("Title is required.")

    raw_duration = payload.get("duration_minutes")
    duration = _parse_int(raw_duration, "Duration", errors)
    if raw_duration is None or str(raw_duration).strip() == "":
        errors.append("Duration is required.")
    elif duration is not None and duration <= 0:
        errors.append("Duration must be greater than zero.")

    try:
        parse_datetime(payload.get("deadline"))
    except ValueError:
        errors.append("Deadline must be a valid date and time.")
    return errors


def create_exam(s: "Session", course: Course, payload: dict, user: "User") -> Exam:
    now = datetime.utcnow()
    exam = Exam(
        title=(payload.get("title") or "").strip(),
        instructor_id=user.id,
        deadline=parse_datetime(payload.get("deadline")),
        duration_minutes=int(payload.get("duration_minutes")),
        published=False,
        created_at=now,
        updated_at=now,
    )
    course.exams.append(exam)
    s.flush()

    record_event(
        s,
        actor=user,
        action="exam.create",
        entity_type="Exam",
        entity_id=str(exam.id),
        metadata={"course_id": course.id, "title": exam.title},
    )
    return exam


def update_exam(s: "Session", exam: Exam, payload: dict, user: "User") -> Exam:
    changes = {}
    new_title = (payload.get("title") or "").strip()
    if new_title and new_title != exam.title:
        changes["title"] = {"old": exam.title, "new": new_title}
        exam.title = new_title

    new_deadline = parse_datetime(payload.get("deadline"))
    if new_deadline != exam.deadline:
        changes["deadline"] = {"old": str(exam.deadline), "new": str(new_deadline)}
        exam.deadline = new_deadline

    raw_duration = payload.get("duration_minutes")
    if raw_duration not in (None, ""):
        new_duration = int(raw_duration)
        if new_duration != exam.duration_minutes:
            changes["duration_minutes"] = {"old": exam.duration_minutes, "new": new_duration}
            exam.duration_minutes = new_duration

    exam.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="exam.edit",
        entity_type="Exam",
        entity_id=str(exam.id),
        metadata={"changes": changes},
    )
    return exam


def delete_exam(s: "Session", exam: Exam, user: "User") -> None:
    """
    Remove the exam with its answers, attempts and questions as one unit.
    Rolls back and re-raises if any part fails.
    """
    exam_id = exam.id
    meta = {"course_id": exam.course_id, "title": exam.title, "attempts": len(exam.attempts)}
    try:
        s.delete(exam)
        s.flush()
        record_event(s, actor=user, action="exam.delete", entity_type="Exam", entity_id=str(exam_id), metadata=meta)
        s.commit()
    except Exception:
        s.rollback()
        logger.exception("Deleting exam %s failed; rolled back", exam_id)
        raise


def has_any_submissions(s: "Session", exam: Exam) -> bool:
    return (
        s.query(Attempt.id)
        .filter(Attempt.exam_id == exam.id, Attempt.status == ATTEMPT_COMPLETED)
        .first()
        is not None
    )


def attempt_count(s: "Session", exam: Exam) -> int:
    return s.query(func.count(Attempt.id)).filter(Attempt.exam_id == exam.id).scalar() or 0


def publish_exam(
    s: "Session",
    exam: Exam,
    user: "User",
    *,
    clear_past_deadline: bool = False,
    now: datetime | None = None,
) -> Exam:
    now = now or datetime.utcnow()
    if exam.published:
        return exam
    if not exam.questions:
        raise ExamError("Add at least one question before publishing.")
    if exam.deadline is not None and exam.deadline < now:
        if not clear_past_deadline:
            raise ExamError("The deadline for this exam is in the past. Remove or move the deadline before publishing.")
        exam.deadline = None

    exam.published = True
    exam.updated_at = now
    record_event(
        s,
        actor=user,
        action="exam.publish",
        entity_type="Exam",
        entity_id=str(exam.id),
        metadata={"deadline_cleared": clear_past_deadline},
    )
    return exam


def unpublish_exam(s: "Session", exam: Exam, user: "User") -> Exam:
    if not exam.published:
        return exam
    if has_any_submissions(s, exam):
        raise ExamError("This exam cannot be unpublished because students have already submitted responses.")
    exam.published = False
    exam.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="exam.unpublish", entity_type="Exam", entity_id=str(exam.id))
    return exam


def exams_for_course(s: "Session", course: Course) -> list[Exam]:
    return s.query(Exam).filter(Exam.course_id == course.id).order_by(Exam.created_at.asc()).all()


def published_exams_by_course(s: "Session", course: Course) -> list[Exam]:
    return (
        s.query(Exam)
        .filter(Exam.course_id == course.id, Exam.published.is_(True))
        .order_by(Exam.created_at.asc())
        .all()
    )


def exams_for_student(s: "Session", student: "User") -> list[Exam]:
    """Published exams in every course the student is enrolled in."""
    return (
        s.query(Exam)
        .join(Enrollment, Enrollment.course_id == Exam.course_id)
        .filter(Enrollment.user_id == student.id, Exam.published.is_(True))
        .order_by(Exam.deadline.is_(None), Exam.deadline.asc(), Exam.created_at.asc())
        .all()
    )


# ---------- Questions ----------

def _options_from_payload(payload: dict) -> list[str]:
    raw = payload.get("options")
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.splitlines()
    return [str(o).strip() for o in raw if str(o).strip()]


def validate_question_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    qtype = (payload.get("question_type") or "multiple_choice").strip()
    if qtype not in QUESTION_TYPES:
        errors.append(f"Question type must be one of: {', '.join(QUESTION_TYPES)}")
    if not (payload.get("question_text") or "").strip():
        errors.append("Question text is required.")

    points = _parse_int(payload.get("points"), "Points", errors)
    if points is not None and points <= 0:
        errors.append("Points must be greater than zero.")

    if qtype == "multiple_choice":
        options = _options_from_payload(payload)
        if len(options) < 2:
            errors.append("Multiple choice questions need at least two options.")
        correct = _parse_int(payload.get("correct_option"), "Correct option", errors)
        if correct is None:
            errors.append("Select the correct option.")
        elif not 0 <= correct < len(options):
            errors.append("Correct option is out of range.")
    elif qtype == "identification":
        if not (payload.get("correct_answer") or "").strip():
            errors.append("Identification questions need a correct answer.")
    return errors


def _apply_question_payload(question: Question, payload: dict) -> None:
    qtype = (payload.get("question_type") or "multiple_choice").strip()
    question.question_type = qtype
    question.question_text = (payload.get("question_text") or "").strip()
    raw_points = payload.get("points")
    question.points = int(raw_points) if raw_points not in (None, "") else 1
    if qtype == "multiple_choice":
        question.options = _options_from_payload(payload)
        question.correct_option = int(payload.get("correct_option"))
        question.correct_answer = None
    else:
        question.options = None
        question.correct_option = None
        question.correct_answer = (payload.get("correct_answer") or "").strip()


def add_question(s: "Session", exam: Exam, payload: dict, user: "User") -> Question:
    next_pos = (s.query(func.max(Question.position)).filter(Question.exam_id == exam.id).scalar() or 0) + 1
    question = Question(position=next_pos)
    _apply_question_payload(question, payload)
    exam.questions.append(question)
    s.flush()
    regrade_exam(s, exam)
    exam.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="question.create",
        entity_type="Question",
        entity_id=str(question.id),
        metadata={"exam_id": exam.id, "question_type": question.question_type, "points": question.points},
    )
    return question


def update_question(s: "Session", question: Question, payload: dict, user: "User") -> Question:
    before = {
        "question_text": question.question_text,
        "options": question.options,
        "correct_option": question.correct_option,
        "correct_answer": question.correct_answer,
        "points": question.points,
    }
    _apply_question_payload(question, payload)
    s.flush()
    regraded = regrade_exam(s, question.exam)
    record_event(
        s,
        actor=user,
        action="question.edit",
        entity_type="Question",
        entity_id=str(question.id),
        metadata={"exam_id": question.exam_id, "before": before, "regraded": regraded},
    )
    return question


def _drop_answers(exam: Exam, question_ids: set[int]) -> None:
    for attempt in exam.attempts:
        for answer in [a for a in attempt.answers if a.question_id in question_ids]:
            attempt.answers.remove(answer)


def delete_question(s: "Session", question: Question, user: "User") -> None:
    exam = question.exam
    if exam.published and len(exam.questions) <= 1:
        raise ExamError("A published exam needs at least one question. Unpublish it before removing the last one.")
    question_id = question.id
    _drop_answers(exam, {question_id})
    # delete-orphan on Exam.questions turns the removal into a DELETE
    exam.questions.remove(question)
    s.flush()
    regraded = regrade_exam(s, exam)
    record_event(
        s,
        actor=user,
        action="question.delete",
        entity_type="Question",
        entity_id=str(question_id),
        metadata={"exam_id": exam.id, "regraded": regraded},
    )


def delete_questions(s: "Session", exam: Exam, user: "User") -> int:
    if exam.published:
        raise ExamError("Unpublish the exam before removing all of its questions.")
    count = len(exam.questions)
    _drop_answers(exam, {q.id for q in exam.questions})
    exam.questions.clear()
    s.flush()
    regrade_exam(s, exam)
    record_event(
        s,
        actor=user,
        action="question.delete_all",
        entity_type="Exam",
        entity_id=str(exam.id),
        metadata={"deleted": count},
    )
    return count


def get_exam_questions(s: "Session", exam: Exam) -> list[Question]:
    return (
        s.query(Question)
        .filter(Question.exam_id == exam.id)
        .order_by(Question.position.asc(), Question.id.asc())
        .all()
    )
