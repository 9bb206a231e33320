from __future__ import annotations

from flask import Blueprint, g, render_template

from app.panotify.db import db_session
from app.panotify.models import User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import courses_for_instructor, courses_for_student, enrolled_student_count
from app.panotify.modules.exams.attempts import auto_submit_expired_exams, get_attempt
from app.panotify.modules.exams.models import Attempt, Exam
from app.panotify.modules.exams.service import exams_for_student
from app.panotify.rbac import require_permission, user_has_permission

bp = Blueprint("dashboard", __name__)


@bp.get("/dashboard")
@require_permission("dashboard.view")
def index():
    s = db_session()
    u: User = g.current_user

    if user_has_permission(u, "accounts.manage"):
        counts = {
            "students": s.query(User).filter(User.account_type == "Student").count(),
            "instructors": s.query(User).filter(User.account_type == "Instructor").count(),
            "courses": s.query(Course).count(),
            "exams": s.query(Exam).count(),
            "attempts": s.query(Attempt).count(),
        }
        return render_template("dashboard/admin.html", counts=counts)

    if u.is_instructor:
        courses = courses_for_instructor(s, u)
        return render_template(
            "dashboard/instructor.html",
            courses=courses,
            counts={c.id: enrolled_student_count(s, c) for c in courses},
        )

    if auto_submit_expired_exams(s, student_id=u.id):
        s.commit()
    exams = exams_for_student(s, u)
    return render_template(
        "dashboard/student.html",
        courses=courses_for_student(s, u),
        exams=exams,
        attempts={e.id: get_attempt(s, u, e) for e in exams},
    )
