"""Tests for course creation, enrollment and ownership."""
import re
from datetime import datetime

import pytest

from app.panotify.db import session_scope
from app.panotify.models import User
from app.panotify.modules.courses.models import Course, Enrollment
from app.panotify.modules.courses.service import (
    CourseError,
    create_course,
    enroll_student,
    enrollment_date,
    generate_course_code,
    get_course_by_code,
    instructor_for_course,
    student_progress,
)


def _create_course(app, instructor_id: int, name: str = "Physics 101") -> tuple[int, str]:
    with session_scope(app) as s:
        course = create_course(s, {"course_name": name}, s.get(User, instructor_id))
        return course.id, course.course_code


def test_course_code_format(app):
    with session_scope(app) as s:
        code = generate_course_code(s)
    assert re.fullmatch(r"[A-Z0-9]{6}", code)


def test_instructor_creates_course(client, app, make_user, login, post):
    make_user("prof", "Instructor")
    login("prof")
    r = post("/courses/new", {"course_name": "Chemistry", "description": "Intro"})
    assert r.status_code == 302

    with session_scope(app) as s:
        course = s.query(Course).filter(Course.course_name == "Chemistry").one()
        assert re.fullmatch(r"[A-Z0-9]{6}", course.course_code)
        assert course.description == "Intro"

    r = client.get("/courses/")
    assert b"Chemistry" in r.data


def test_course_name_required(client, make_user, login, post):
    make_user("prof", "Instructor")
    login("prof")
    r = post("/courses/new", {"course_name": "   "})
    assert r.status_code == 400
    assert b"Course name is required" in r.data


def test_student_cannot_create_course(client, make_user, login, post):
    make_user("stud")
    login("stud")
    r = post("/courses/new", {"course_name": "Nope"})
    assert r.status_code == 403


def test_enroll_by_code_is_idempotent(client, app, make_user, login, post):
    tid = make_user("prof", "Instructor")
    sid = make_user("stud")
    course_id, code = _create_course(app, tid)

    login("stud")
    r = post("/courses/enroll", {"course_code": f"  {code.lower()} "})
    assert r.status_code == 302
    r = post("/courses/enroll", {"course_code": code}, follow_redirects=True)
    assert b"already enrolled" in r.data

    with session_scope(app) as s:
        assert s.query(Enrollment).filter(Enrollment.user_id == sid, Enrollment.course_id == course_id).count() == 1


def test_enroll_unknown_code(app, make_user):
    sid = make_user("stud")
    with session_scope(app) as s:
        with pytest.raises(CourseError):
            enroll_student(s, s.get(User, sid), "ZZZZZZ")


def test_only_students_enroll(app, make_user):
    tid = make_user("prof", "Instructor")
    _, code = _create_course(app, tid)
    with session_scope(app) as s:
        with pytest.raises(CourseError):
            enroll_student(s, s.get(User, tid), code)


def test_get_course_by_code_case_insensitive(app, make_user):
    tid = make_user("prof", "Instructor")
    course_id, code = _create_course(app, tid)
    with session_scope(app) as s:
        assert get_course_by_code(s, f" {code.lower()} ").id == course_id
        assert get_course_by_code(s, "") is None


def test_other_instructor_cannot_manage_course(client, app, make_user, login, post):
    owner = make_user("owner", "Instructor")
    make_user("intruder", "Instructor")
    course_id, _ = _create_course(app, owner)

    login("intruder")
    assert client.get(f"/courses/{course_id}/edit").status_code == 403
    assert post(f"/courses/{course_id}/delete").status_code == 403


def test_unenrolled_student_cannot_view_course(client, app, make_user, login):
    tid = make_user("prof", "Instructor")
    make_user("stud")
    course_id, _ = _create_course(app, tid)
    login("stud")
    assert client.get(f"/courses/{course_id}").status_code == 403


def test_remove_student_and_delete_course(client, app, make_user, login, post):
    tid = make_user("prof", "Instructor")
    sid = make_user("stud")
    course_id, code = _create_course(app, tid)
    with session_scope(app) as s:
        enroll_student(s, s.get(User, sid), code)

    login("prof")
    r = client.get(f"/courses/{course_id}")
    assert r.status_code == 200
    assert b"Stud Tester" in r.data

    r = post(f"/courses/{course_id}/students/{sid}/remove")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Enrollment).filter(Enrollment.course_id == course_id).count() == 0

    r = post(f"/courses/{course_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Course, course_id) is None


def test_student_progress_without_attempts(app, make_user):
    tid = make_user("prof", "Instructor")
    sid = make_user("stud")
    course_id, code = _create_course(app, tid)
    with session_scope(app) as s:
        enroll_student(s, s.get(User, sid), code)
    with session_scope(app) as s:
        progress = student_progress(s, s.get(Course, course_id))
    assert len(progress) == 1
    assert progress[0].exams_taken == 0
    assert progress[0].average_score == 0.0


def test_student_sees_instructor_and_enrollment_date(client, app, make_user, login):
    tid = make_user("prof", "Instructor")
    sid = make_user("stud")
    course_id, code = _create_course(app, tid)
    with session_scope(app) as s:
        enroll_student(s, s.get(User, sid), code)
        s.flush()
        enrollment = s.query(Enrollment).filter(Enrollment.user_id == sid).one()
        enrollment.enrolled_at = datetime(2030, 2, 3, 8, 15)

    with session_scope(app) as s:
        course = s.get(Course, course_id)
        assert instructor_for_course(s, course).id == tid
        assert enrollment_date(s, s.get(User, sid), course) == datetime(2030, 2, 3, 8, 15)
        assert enrollment_date(s, s.get(User, tid), course) is None

    login("stud")
    r = client.get(f"/courses/{course_id}")
    assert r.status_code == 200
    assert b"Prof Tester" in r.data
    assert b"2030-02-03 08:15" in r.data
