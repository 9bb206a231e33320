from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.panotify.models import Base

if TYPE_CHECKING:
    from app.panotify.models import User
    from app.panotify.modules.courses.models import Course


class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_course", "course_id"),
        Index("idx_exams_published", "published"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    instructor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Null deadline = open-ended; results are shown as soon as an attempt is graded
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    course: Mapped["Course"] = relationship("Course", back_populates="exams")
    questions: Mapped[list["Question"]] = relationship(
        "Question",
        back_populates="exam",
        cascade="all, delete-orphan",
        order_by=lambda: [Question.position, Question.id],
        lazy="selectin",
    )
    attempts: Mapped[list["Attempt"]] = relationship(
        "Attempt",
        back_populates="exam",
        cascade="all, delete-orphan",
    )

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_exam", "exam_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    exam_id: Mapped[int] = mapped_column(ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    question_type: Mapped[str] = mapped_column(String(32), nullable=False, default="multiple_choice")
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    options_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON list of option labels
    correct_option: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0-based, multiple choice only
    correct_answer: Mapped[str | None] = mapped_column(String(512), nullable=True)  # identification only
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    exam: Mapped[Exam] = relationship("Exam", back_populates="questions")

    @property
    def options(self) -> list[str]:
        if not self.options_json:
            return []
        return list(json.loads(self.options_json))

    @options.setter
    def options(self, value: list[str] | None) -> None:
        self.options_json = json.dumps(list(value)) if value else None

    @property
    def is_multiple_choice(self) -> bool:
        return self.question_type == "multiple_choice"

    @property
    def correct_answer_text(self) -> str:
        """Human-readable correct answer (option label for multiple choice)."""
        if not self.is_multiple_choice:
            return self.correct_answer or ""
        opts = self.options
        if self.correct_option is not None and 0 <= self.correct_option < len(opts):
            return opts[self.correct_option]
        return ""


class Attempt(Base):
    """One student's sitting of one exam; stored as a report row per (student, exam)."""

    __tablename__ = "exam_attempts"
    __table_args__ = (
        UniqueConstraint("student_id", "exam_id", name="uq_attempt_student_exam"),
        Index("idx_attempts_exam", "exam_id"),
        Index("idx_attempts_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    exam_id: Mapped[int] = mapped_column(ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="in_progress")  # in_progress, completed, timeout
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    exam: Mapped[Exam] = relationship("Exam", back_populates="attempts", lazy="joined")
    student: Mapped["User"] = relationship("User", lazy="joined")
    answers: Mapped[list["StudentAnswer"]] = relationship(
        "StudentAnswer",
        back_populates="attempt",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "timeout")

    @property
    def percentage(self) -> float:
        if self.max_score <= 0:
            return 0.0
        return self.total_score * 100.0 / self.max_score


class StudentAnswer(Base):
    __tablename__ = "student_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_answer_attempt_question"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(ForeignKey("exam_attempts.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)

    answer_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    attempt: Mapped[Attempt] = relationship("Attempt", back_populates="answers")
    question: Mapped[Question] = relationship("Question")
