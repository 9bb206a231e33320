"""
Exam attempts: starting, timing, saving answers, submission and auto-grading.

An attempt expires at the earlier of ``started_at + duration`` and the exam
deadline. Expired in-progress attempts are finalised with status ``timeout``
either lazily (when the student next touches the exam) or by the sweeper in
``scripts/auto_submit_expired.py``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from app.panotify.audit import record_event
from app.panotify.constants import ATTEMPT_COMPLETED, ATTEMPT_IN_PROGRESS, ATTEMPT_TIMEOUT
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import is_enrolled
from app.panotify.modules.exams.models import Attempt, Exam, Question, StudentAnswer

if TYPE_CHECKING:
    from collections.abc import Mapping
    from sqlalchemy.orm import Session
    from app.panotify.models import User

logger = logging.getLogger(__name__)


class AttemptError(ValueError):
    pass


@dataclass
class QuestionResult:
    number: int
    question_id: int
    question_text: str
    student_answer: str
    correct_answer: str
    is_correct: bool
    answered: bool
    points: int


# ---------- Timing ----------

def expires_at(attempt: Attempt) -> datetime:
    exam = attempt.exam
    limit = attempt.started_at + timedelta(minutes=exam.duration_minutes)
    if exam.deadline is not None and exam.deadline < limit:
        return exam.deadline
    return limit


def is_exam_time_expired(exam: Exam, attempt: Attempt | None, now: datetime | None = None) -> bool:
    """
    Without an attempt only the deadline applies; with one, either the
    duration or the deadline running out expires it.
    """
    now = now or datetime.utcnow()
    if attempt is None:
        return exam.deadline is not None and exam.deadline < now
    return now > expires_at(attempt)


def remaining_seconds(attempt: Attempt, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    return max(0, int((expires_at(attempt) - now).total_seconds()))


def results_visible(exam: Exam, now: datetime | None = None) -> bool:
    """Scores and answers are released once the deadline has passed (immediately if there is none)."""
    now = now or datetime.utcnow()
    return exam.deadline is None or exam.deadline <= now


# ---------- Lookups ----------

def get_attempt(s: "Session", student: "User", exam: Exam) -> Attempt | None:
    return (
        s.query(Attempt)
        .filter(Attempt.student_id == student.id, Attempt.exam_id == exam.id)
        .one_or_none()
    )


def submission_status(s: "Session", student: "User", exam: Exam) -> str | None:
    attempt = get_attempt(s, student, exam)
    return attempt.status if attempt else None


# ---------- Grading ----------

def is_answer_correct(question: Question, answer_text: str | None) -> bool:
    text = (answer_text or "").strip()
    if not text:
        return False
    if question.is_multiple_choice:
        try:
            selected = int(text)
        except ValueError:
            return False
        return selected == question.correct_option
    return text.casefold() == (question.correct_answer or "").strip().casefold()


def grade_attempt(s: "Session", attempt: Attempt) -> tuple[int, int]:
    """
    Score every question of the exam against the stored answers.
    Unanswered questions earn nothing but still count toward the maximum.
    """
    answers = {a.question_id: a for a in attempt.answers}
    earned = 0
    maximum = 0
    for question in attempt.exam.questions:
        maximum += question.points
        answer = answers.get(question.id)
        if answer is None:
            continue
        correct = is_answer_correct(question, answer.answer_text)
        if answer.is_correct != correct:
            answer.is_correct = correct
        if correct:
            earned += question.points
    attempt.total_score = earned
    attempt.max_score = maximum
    s.flush()
    return earned, maximum


def regrade_exam(s: "Session", exam: Exam) -> int:
    """Re-score every finished attempt after the exam's questions changed."""
    count = 0
    for attempt in exam.attempts:
        if attempt.is_finished:
            grade_attempt(s, attempt)
            count += 1
    if count:
        logger.info("Re-graded %s attempt(s) for exam %s", count, exam.id)
    return count


# ---------- Lifecycle ----------

def start_exam(s: "Session", student: "User", exam: Exam, now: datetime | None = None) -> Attempt:
    """Start (or resume) the student's attempt."""
    now = now or datetime.utcnow()
    course = s.get(Course, exam.course_id)
    if not exam.published:
        raise AttemptError("This exam is not yet available.")
    if course is None or not is_enrolled(s, student, course):
        raise AttemptError("You are not enrolled in this course.")

    attempt = get_attempt(s, student, exam)
    if attempt is not None:
        if attempt.is_finished:
            raise AttemptError("You have already submitted this exam. You cannot take it again.")
        if is_exam_time_expired(exam, attempt, now):
            auto_submit_exam(s, attempt, now)
            raise AttemptError("Time for this exam has run out; your saved answers were submitted.")
        return attempt

    if is_exam_time_expired(exam, None, now):
        raise AttemptError("The deadline for this exam has already passed.")

    attempt = Attempt(
        student_id=student.id,
        exam_id=exam.id,
        status=ATTEMPT_IN_PROGRESS,
        total_score=0,
        max_score=exam.total_points,
        started_at=now,
    )
    s.add(attempt)
    s.flush()
    record_event(
        s,
        actor=student,
        action="exam.start",
        entity_type="Exam",
        entity_id=str(exam.id),
        metadata={"attempt_id": attempt.id},
    )
    return attempt


def _store_answers(s: "Session", attempt: Attempt, answers: "Mapping", now: datetime) -> int:
    by_question = {q.id: q for q in attempt.exam.questions}
    existing = {a.question_id: a for a in attempt.answers}
    stored = 0
    for raw_qid, raw_value in answers.items():
        try:
            qid = int(raw_qid)
        except (TypeError, ValueError):
            continue
        if qid not in by_question:
            continue
        text = "" if raw_value is None else str(raw_value).strip()
        answer = existing.get(qid)
        if not text:
            if answer is not None:
                attempt.answers.remove(answer)
            continue
        if answer is None:
            answer = StudentAnswer(question_id=qid, answer_text=text, submitted_at=now)
            attempt.answers.append(answer)
            existing[qid] = answer
        else:
            answer.answer_text = text
            answer.submitted_at = now
        answer.is_correct = is_answer_correct(by_question[qid], text)
        stored += 1
    s.flush()
    return stored


def save_answers(s: "Session", attempt: Attempt, answers: "Mapping", now: datetime | None = None) -> int:
    """Autosave while the attempt is running. Returns the number of answers stored."""
    now = now or datetime.utcnow()
    if attempt.status != ATTEMPT_IN_PROGRESS:
        raise AttemptError("This exam has already been submitted.")
    if is_exam_time_expired(attempt.exam, attempt, now):
        auto_submit_exam(s, attempt, now)
        raise AttemptError("Time for this exam has run out; your saved answers were submitted.")
    return _store_answers(s, attempt, answers, now)


def submit_exam(
    s: "Session",
    attempt: Attempt,
    answers: "Mapping",
    now: datetime | None = None,
    *,
    grace_seconds: int = 0,
) -> Attempt:
    """
    Record the final answers and grade. A submission arriving after the
    expiry (plus grace) is treated as a timeout: only previously saved
    answers count.
    """
    now = now or datetime.utcnow()
    if attempt.is_finished:
        return attempt

    cutoff = expires_at(attempt) + timedelta(seconds=max(grace_seconds, 0))
    if now <= cutoff:
        _store_answers(s, attempt, answers, now)
        attempt.status = ATTEMPT_COMPLETED
        action = "exam.submit"
    else:
        logger.info(
            "Late submission for attempt %s (exam %s) discarded; expired at %s",
            attempt.id,
            attempt.exam_id,
            expires_at(attempt).isoformat(),
        )
        attempt.status = ATTEMPT_TIMEOUT
        action = "exam.timeout"

    attempt.submitted_at = now
    earned, maximum = grade_attempt(s, attempt)
    record_event(
        s,
        actor=attempt.student,
        action=action,
        entity_type="Exam",
        entity_id=str(attempt.exam_id),
        metadata={"attempt_id": attempt.id, "score": earned, "max_score": maximum},
    )
    return attempt


def auto_submit_exam(s: "Session", attempt: Attempt, now: datetime | None = None) -> bool:
    """Finalise an in-progress attempt as timed out and grade it."""
    now = now or datetime.utcnow()
    if attempt.status != ATTEMPT_IN_PROGRESS:
        return False
    attempt.status = ATTEMPT_TIMEOUT
    attempt.submitted_at = now
    earned, maximum = grade_attempt(s, attempt)
    record_event(
        s,
        actor=None,
        action="exam.auto_submit",
        entity_type="Exam",
        entity_id=str(attempt.exam_id),
        metadata={"attempt_id": attempt.id, "student_id": attempt.student_id, "score": earned, "max_score": maximum},
    )
    logger.info("Auto-submitted attempt %s (student=%s exam=%s)", attempt.id, attempt.student_id, attempt.exam_id)
    return True


def auto_submit_expired_exams(s: "Session", now: datetime | None = None, *, student_id: int | None = None) -> int:
    """Time out every expired in-progress attempt (optionally for one student). Returns the count."""
    now = now or datetime.utcnow()
    q = s.query(Attempt).filter(Attempt.status == ATTEMPT_IN_PROGRESS)
    if student_id is not None:
        q = q.filter(Attempt.student_id == student_id)
    count = 0
    for attempt in q.all():
        if is_exam_time_expired(attempt.exam, attempt, now) and auto_submit_exam(s, attempt, now):
            count += 1
    return count


# ---------- Review ----------

def _display_answer(question: Question, answer_text: str) -> str:
    if not question.is_multiple_choice or not answer_text:
        return answer_text
    try:
        idx = int(answer_text)
    except ValueError:
        return answer_text
    opts = question.options
    return opts[idx] if 0 <= idx < len(opts) else answer_text


def question_results(attempt: Attempt) -> list[QuestionResult]:
    answers = {a.question_id: a for a in attempt.answers}
    results = []
    for number, question in enumerate(attempt.exam.questions, start=1):
        answer = answers.get(question.id)
        text = answer.answer_text if answer else ""
        results.append(
            QuestionResult(
                number=number,
                question_id=question.id,
                question_text=question.question_text,
                student_answer=_display_answer(question, text),
                correct_answer=question.correct_answer_text,
                is_correct=bool(answer and answer.is_correct),
                answered=answer is not None,
                points=question.points,
            )
        )
    return results
