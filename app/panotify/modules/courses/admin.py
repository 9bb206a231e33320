from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.panotify.db import db_session
from app.panotify.models import User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import (
    CourseError,
    can_manage_course,
    courses_for_instructor,
    courses_for_student,
    create_course,
    delete_course,
    enroll_student,
    enrolled_student_count,
    enrollment_date,
    instructor_for_course,
    is_enrolled,
    student_progress,
    students_in_course,
    unenroll_student,
    update_course,
    validate_course_payload,
)
from app.panotify.modules.exams.attempts import auto_submit_expired_exams, submission_status
from app.panotify.modules.exams.service import exams_for_course, published_exams_by_course
from app.panotify.rbac import require_permission, user_has_permission

bp = Blueprint("courses", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_course_or_404(s, course_id: int) -> Course:
    course = s.get(Course, course_id)
    if not course:
        abort(404)
    return course


def _managed_course_or_403(s, course_id: int) -> Course:
    course = _get_course_or_404(s, course_id)
    if not can_manage_course(_current_user(), course):
        abort(403)
    return course


@bp.get("/")
@require_permission("courses.view")
def course_list():
    s = db_session()
    u = _current_user()
    if user_has_permission(u, "accounts.manage"):
        courses = s.query(Course).order_by(Course.created_at.desc()).all()
    elif u.is_instructor:
        courses = courses_for_instructor(s, u)
    else:
        courses = courses_for_student(s, u)
    counts = {c.id: enrolled_student_count(s, c) for c in courses}
    return render_template("courses/list.html", courses=courses, counts=counts)


@bp.get("/new")
@require_permission("courses.create")
def course_new_get():
    return render_template("courses/edit.html", course=None, form={})


@bp.post("/new")
@require_permission("courses.create")
def course_new_post():
    s = db_session()
    u = _current_user()
    payload = request.form.to_dict()
    errors = validate_course_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("courses/edit.html", course=None, form=payload), 400
    try:
        course = create_course(s, payload, u)
    except CourseError as e:
        flash(str(e), "danger")
        return redirect(url_for("courses.course_new_get"))
    s.commit()
    flash(f"Course created. Share the code {course.course_code} with your students.", "success")
    return redirect(url_for("courses.course_detail", course_id=course.id))


@bp.get("/<int:course_id>")
@require_permission("courses.view")
def course_detail(course_id: int):
    s = db_session()
    u = _current_user()
    course = _get_course_or_404(s, course_id)

    if can_manage_course(u, course):
        return render_template(
            "courses/detail.html",
            course=course,
            exams=exams_for_course(s, course),
            students=students_in_course(s, course),
            progress=student_progress(s, course),
        )

    if not is_enrolled(s, u, course):
        abort(403)
    # Finalise this student's expired attempts so statuses below are current.
    if auto_submit_expired_exams(s, student_id=u.id):
        s.commit()
    exams = published_exams_by_course(s, course)
    statuses = {e.id: submission_status(s, u, e) for e in exams}
    return render_template(
        "courses/student_detail.html",
        course=course,
        exams=exams,
        statuses=statuses,
        instructor=instructor_for_course(s, course),
        enrolled_at=enrollment_date(s, u, course),
    )


@bp.get("/<int:course_id>/edit")
@require_permission("courses.manage")
def course_edit_get(course_id: int):
    s = db_session()
    course = _managed_course_or_403(s, course_id)
    form = {"course_name": course.course_name, "description": course.description or ""}
    return render_template("courses/edit.html", course=course, form=form)


@bp.post("/<int:course_id>/edit")
@require_permission("courses.manage")
def course_edit_post(course_id: int):
    s = db_session()
    u = _current_user()
    course = _managed_course_or_403(s, course_id)
    payload = request.form.to_dict()
    errors = validate_course_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("courses/edit.html", course=course, form=payload), 400
    update_course(s, course, payload, u)
    s.commit()
    flash("Course updated.", "success")
    return redirect(url_for("courses.course_detail", course_id=course.id))


@bp.post("/<int:course_id>/delete")
@require_permission("courses.manage")
def course_delete(course_id: int):
    s = db_session()
    u = _current_user()
    course = _managed_course_or_403(s, course_id)
    name = course.course_name
    delete_course(s, course, u)
    s.commit()
    flash(f"Course '{name}' deleted.", "success")
    return redirect(url_for("courses.course_list"))


@bp.post("/enroll")
@require_permission("courses.enroll")
def course_enroll():
    s = db_session()
    u = _current_user()
    code = request.form.get("course_code")
    try:
        course, created = enroll_student(s, u, code)
    except CourseError as e:
        flash(str(e), "danger")
        return redirect(url_for("courses.course_list"))
    s.commit()
    if created:
        flash(f"Enrolled in {course.course_name}.", "success")
    else:
        flash(f"You are already enrolled in {course.course_name}.", "info")
    return redirect(url_for("courses.course_detail", course_id=course.id))


@bp.post("/<int:course_id>/students/<int:student_id>/remove")
@require_permission("courses.manage")
def course_remove_student(course_id: int, student_id: int):
    s = db_session()
    u = _current_user()
    course = _managed_course_or_403(s, course_id)
    student = s.get(User, student_id)
    if not student:
        abort(404)
    if unenroll_student(s, course, student, u):
        s.commit()
        flash(f"{student.full_name} removed from the course.", "success")
    else:
        flash("That student is not enrolled in this course.", "warning")
    return redirect(url_for("courses.course_detail", course_id=course.id))
