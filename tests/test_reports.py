"""Tests for exam statistics, course reports and the CSV export."""
import csv
import io
from datetime import datetime, timedelta

import pytest

from app.panotify.db import session_scope
from app.panotify.models import AuditEvent, User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import create_course, enroll_student
from app.panotify.modules.exams.attempts import start_exam, submit_exam
from app.panotify.modules.exams.models import Exam
from app.panotify.modules.exams.service import add_question, create_exam, publish_exam
from app.panotify.modules.reports.service import (
    COURSE_REPORT_HEADER,
    course_report,
    course_report_csv,
    exam_reports,
    exam_statistics,
    student_results,
)

T0 = datetime(2030, 3, 1, 8, 0)


@pytest.fixture()
def graded(app, make_user):
    """Two students sit a 4 point exam: alice scores 4, bob scores 1, carol never starts."""
    tid = make_user("prof", "Instructor")
    students = {name: make_user(name) for name in ("alice", "bob", "carol")}
    with session_scope(app) as s:
        prof = s.get(User, tid)
        course = create_course(s, {"course_name": "Biology"}, prof)
        for sid in students.values():
            enroll_student(s, s.get(User, sid), course.course_code)
        exam = create_exam(s, course, {"title": "Cells", "duration_minutes": "30"}, prof)
        q1 = add_question(
            s,
            exam,
            {"question_type": "identification", "question_text": "Powerhouse of the cell?", "correct_answer": "Mitochondria", "points": "3"},
            prof,
        )
        q2 = add_question(
            s,
            exam,
            {"question_type": "multiple_choice", "question_text": "DNA is found in the?", "options": "Nucleus\nWall", "correct_option": "0", "points": "1"},
            prof,
        )
        publish_exam(s, exam, prof)

        answers = {
            "alice": {str(q1.id): "mitochondria", str(q2.id): "0"},
            "bob": {str(q1.id): "ribosome", str(q2.id): "0"},
        }
        for offset, (name, payload) in enumerate(answers.items()):
            attempt = start_exam(s, s.get(User, students[name]), exam, T0)
            submit_exam(s, attempt, payload, now=T0 + timedelta(minutes=10 + offset))
        return {"prof": tid, "course": course.id, "exam": exam.id, "code": course.course_code, **students}


def test_exam_statistics(app, graded):
    with session_scope(app) as s:
        stats = exam_statistics(s, s.get(Exam, graded["exam"]))
    assert stats.attempt_count == 2
    assert stats.finished_count == 2
    assert stats.average_percentage == 62.5
    assert stats.highest_percentage == 100.0
    assert stats.lowest_percentage == 25.0


def test_statistics_ignore_in_progress_attempts(app, graded):
    with session_scope(app) as s:
        start_exam(s, s.get(User, graded["carol"]), s.get(Exam, graded["exam"]), T0)
    with session_scope(app) as s:
        stats = exam_statistics(s, s.get(Exam, graded["exam"]))
    assert stats.attempt_count == 3
    assert stats.finished_count == 2
    assert stats.average_percentage == 62.5


def test_exam_reports_newest_first(app, graded):
    with session_scope(app) as s:
        rows = exam_reports(s, s.get(Exam, graded["exam"]))
    assert [r.student_id for r in rows] == [graded["bob"], graded["alice"]]
    assert rows[0].total_score == 1
    assert rows[0].course_name == "Biology"
    assert rows[1].percentage == 100.0


def test_course_report_rows(app, graded):
    with session_scope(app) as s:
        rows = {r.username: r for r in course_report(s, s.get(Course, graded["course"]))}
    assert set(rows) == {"alice", "bob", "carol"}
    assert (rows["alice"].exams_taken, rows["alice"].total_exams) == (1, 1)
    assert (rows["alice"].total_score, rows["alice"].max_score) == (4, 4)
    assert rows["bob"].average_percentage == 25.0
    assert rows["carol"].exams_taken == 0
    assert rows["carol"].average_percentage == 0.0


def test_student_results_only_finished(app, graded):
    with session_scope(app) as s:
        start_exam(s, s.get(User, graded["carol"]), s.get(Exam, graded["exam"]), T0)
    with session_scope(app) as s:
        assert student_results(s, s.get(User, graded["carol"])) == []
        alice = student_results(s, s.get(User, graded["alice"]))
    assert [r.exam_title for r in alice] == ["Cells"]


def test_course_report_csv(app, graded):
    with session_scope(app) as s:
        data = course_report_csv(course_report(s, s.get(Course, graded["course"])))
    rows = list(csv.reader(io.StringIO(data.decode("utf-8"))))
    assert rows[0] == COURSE_REPORT_HEADER
    by_user = {r[1]: r for r in rows[1:]}
    assert by_user["alice"][2:] == ["1", "1", "4", "4", "100.00"]
    assert by_user["carol"][-1] == "0.00"


def test_export_endpoint(client, app, graded, login):
    login("prof")
    r = client.get(f"/reports/courses/{graded['course']}/export")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert graded["code"] in r.headers["Content-Disposition"]
    assert r.data.splitlines()[0].decode("utf-8").startswith("Student,Username")
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "course_report.export").count() == 1


def test_report_pages_render(client, graded, login):
    login("prof")
    r = client.get(f"/reports/exams/{graded['exam']}")
    assert r.status_code == 200
    assert b"Alice Tester" in r.data

    r = client.get(f"/reports/courses/{graded['course']}")
    assert r.status_code == 200
    assert b"Carol Tester" in r.data

    r = client.get(f"/reports/courses/{graded['course']}/students/{graded['bob']}")
    assert r.status_code == 200
    assert b"Cells" in r.data


def test_reports_need_course_ownership(client, graded, make_user, login):
    make_user("intruder", "Instructor")
    login("intruder")
    assert client.get(f"/reports/courses/{graded['course']}").status_code == 403
    assert client.get(f"/reports/exams/{graded['exam']}").status_code == 403


def test_students_cannot_open_reports(client, graded, login):
    login("alice")
    assert client.get(f"/reports/courses/{graded['course']}").status_code == 403


def test_my_results_hides_scores_before_deadline(client, app, graded, login):
    login("alice")
    r = client.get("/reports/my-results")
    assert r.status_code == 200
    assert b"4 / 4" in r.data

    with session_scope(app) as s:
        s.get(Exam, graded["exam"]).deadline = datetime.utcnow() + timedelta(days=2)

    r = client.get("/reports/my-results")
    assert b"4 / 4" not in r.data
    assert b"after deadline" in r.data
