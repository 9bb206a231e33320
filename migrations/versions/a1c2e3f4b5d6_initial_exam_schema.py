"""Initial schema: accounts, RBAC, audit, courses, exams, attempts.

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c2e3f4b5d6"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("username", sa.String(64), nullable=False),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("first_name", sa.String(128), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(128), nullable=False, server_default=""),
            sa.Column("phone_number", sa.String(32), nullable=True),
            sa.Column("account_type", sa.String(32), nullable=False, server_default="Student"),
            sa.Column("institution", sa.String(255), nullable=True),
            sa.Column("department", sa.String(255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("username"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("idx_users_account_type", "users", ["account_type"])

    if not insp.has_table("roles"):
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("key"),
        )

    if not insp.has_table("permissions"):
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("key"),
        )

    if not insp.has_table("user_roles"):
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("user_id", "role_id"),
        )

    if not insp.has_table("role_permissions"):
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("role_id", "permission_id"),
        )

    if not insp.has_table("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_events_action", "audit_events", ["action"])
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])

    if not insp.has_table("courses"):
        op.create_table(
            "courses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("course_name", sa.String(255), nullable=False),
            sa.Column("course_code", sa.String(16), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("instructor_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["instructor_id"], ["users.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("course_code"),
        )
        op.create_index("idx_courses_instructor", "courses", ["instructor_id"])

    if not insp.has_table("course_enrollments"):
        op.create_table(
            "course_enrollments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("course_id", sa.Integer(), nullable=False),
            sa.Column("enrolled_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["course_id"], ["courses.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
        )
        op.create_index("idx_enrollments_course", "course_enrollments", ["course_id"])

    if not insp.has_table("exams"):
        op.create_table(
            "exams",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("course_id", sa.Integer(), nullable=False),
            sa.Column("instructor_id", sa.Integer(), nullable=True),
            sa.Column("deadline", sa.DateTime(timezone=False), nullable=True),
            sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="60"),
            sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["course_id"], ["courses.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["instructor_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_exams_course", "exams", ["course_id"])
        op.create_index("idx_exams_published", "exams", ["published"])

    if not insp.has_table("questions"):
        op.create_table(
            "questions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("exam_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("question_type", sa.String(32), nullable=False, server_default="multiple_choice"),
            sa.Column("question_text", sa.Text(), nullable=False),
            sa.Column("options_json", sa.Text(), nullable=True),
            sa.Column("correct_option", sa.Integer(), nullable=True),
            sa.Column("correct_answer", sa.String(512), nullable=True),
            sa.Column("points", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["exam_id"], ["exams.id"], ondelete="CASCADE"),
        )
        op.create_index("idx_questions_exam", "questions", ["exam_id"])

    if not insp.has_table("exam_attempts"):
        op.create_table(
            "exam_attempts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("exam_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="in_progress"),
            sa.Column("total_score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("started_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.Column("submitted_at", sa.DateTime(timezone=False), nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["exam_id"], ["exams.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("student_id", "exam_id", name="uq_attempt_student_exam"),
        )
        op.create_index("idx_attempts_exam", "exam_attempts", ["exam_id"])
        op.create_index("idx_attempts_status", "exam_attempts", ["status"])

    if not insp.has_table("student_answers"):
        op.create_table(
            "student_answers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("attempt_id", sa.Integer(), nullable=False),
            sa.Column("question_id", sa.Integer(), nullable=False),
            sa.Column("answer_text", sa.Text(), nullable=False, server_default=""),
            sa.Column("is_correct", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("submitted_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["attempt_id"], ["exam_attempts.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["question_id"], ["questions.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("attempt_id", "question_id", name="uq_answer_attempt_question"),
        )


def downgrade() -> None:
    for table in (
        "student_answers",
        "exam_attempts",
        "questions",
        "exams",
        "course_enrollments",
        "courses",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
