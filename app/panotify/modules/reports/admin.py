from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, g, render_template, send_file

from app.panotify.audit import record_event
from app.panotify.db import db_session
from app.panotify.models import User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import can_manage_course, is_enrolled
from app.panotify.modules.exams.attempts import auto_submit_expired_exams, results_visible
from app.panotify.modules.exams.models import Exam
from app.panotify.modules.reports.service import (
    course_report,
    course_report_csv,
    exam_reports,
    exam_statistics,
    student_course_report,
    student_results,
)
from app.panotify.rbac import require_permission

bp = Blueprint("reports", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _managed_course_or_404(s, course_id: int) -> Course:
    course = s.get(Course, course_id)
    if not course:
        abort(404)
    if not can_manage_course(_current_user(), course):
        abort(403)
    return course


@bp.get("/exams/<int:exam_id>")
@require_permission("reports.view")
def exam_report(exam_id: int):
    s = db_session()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    if not can_manage_course(_current_user(), exam.course):
        abort(403)
    # Pending timeouts would otherwise show as in progress.
    if auto_submit_expired_exams(s):
        s.commit()
    return render_template(
        "reports/exam.html",
        exam=exam,
        stats=exam_statistics(s, exam),
        results=exam_reports(s, exam),
    )


@bp.get("/courses/<int:course_id>")
@require_permission("reports.view")
def course_report_view(course_id: int):
    s = db_session()
    course = _managed_course_or_404(s, course_id)
    exams = course.exams
    return render_template(
        "reports/course.html",
        course=course,
        rows=course_report(s, course),
        exam_stats={e.id: exam_statistics(s, e) for e in exams},
        exams=exams,
    )


@bp.get("/courses/<int:course_id>/export")
@require_permission("reports.view")
def course_report_export(course_id: int):
    s = db_session()
    u = _current_user()
    course = _managed_course_or_404(s, course_id)
    rows = course_report(s, course)
    data = course_report_csv(rows)

    record_event(
        s,
        actor=u,
        action="course_report.export",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"row_count": len(rows)},
    )
    s.commit()

    filename = f"course_report_{course.course_code}_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/courses/<int:course_id>/students/<int:student_id>")
@require_permission("reports.view")
def student_report(course_id: int, student_id: int):
    s = db_session()
    course = _managed_course_or_404(s, course_id)
    student = s.get(User, student_id)
    if not student or not is_enrolled(s, student, course):
        abort(404)
    return render_template(
        "reports/student.html",
        course=course,
        student=student,
        summary=student_course_report(s, student, course),
        results=student_results(s, student, course),
    )


@bp.get("/my-results")
@require_permission("results.view")
def my_results():
    s = db_session()
    u = _current_user()
    if auto_submit_expired_exams(s, student_id=u.id):
        s.commit()
    results = student_results(s, u)
    visible = {r.exam_id: results_visible(s.get(Exam, r.exam_id)) for r in results}
    return render_template("reports/my_results.html", results=results, visible=visible)
