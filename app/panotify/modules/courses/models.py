from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.panotify.models import Base

if TYPE_CHECKING:
    from app.panotify.models import User
    from app.panotify.modules.exams.models import Exam


class Course(Base):
    __tablename__ = "courses"
    __table_args__ = (
        Index("idx_courses_instructor", "instructor_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    course_name: Mapped[str] = mapped_column(String(255), nullable=False)
    course_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)  # join code shared with students
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    instructor: Mapped["User"] = relationship("User", lazy="joined")
    enrollments: Mapped[list["Enrollment"]] = relationship(
        "Enrollment",
        back_populates="course",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    exams: Mapped[list["Exam"]] = relationship(
        "Exam",
        back_populates="course",
        cascade="all, delete-orphan",
        order_by="Exam.created_at",
    )


class Enrollment(Base):
    __tablename__ = "course_enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
        Index("idx_enrollments_course", "course_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    course: Mapped[Course] = relationship("Course", back_populates="enrollments")
    student: Mapped["User"] = relationship("User", lazy="joined")
