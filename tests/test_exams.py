"""Tests for exam authoring and publishing."""
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.panotify.db import session_scope
from app.panotify.models import AuditEvent, User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import create_course, enroll_student
from app.panotify.modules.exams.attempts import start_exam, submit_exam
from app.panotify.modules.exams.models import Attempt, Exam, Question, StudentAnswer
from app.panotify.modules.exams.service import (
    ExamError,
    add_question,
    create_exam,
    delete_exam,
    delete_question,
    delete_questions,
    exams_for_student,
    get_exam_questions,
    parse_datetime,
    publish_exam,
    unpublish_exam,
    update_question,
    validate_exam_payload,
    validate_question_payload,
)

MC = {
    "question_type": "multiple_choice",
    "question_text": "2 + 2 = ?",
    "options": "3\n4\n5",
    "correct_option": "1",
    "points": "2",
}
IDENT = {
    "question_type": "identification",
    "question_text": "Capital of France?",
    "correct_answer": "Paris",
    "points": "3",
}


@pytest.fixture()
def course_setup(app, make_user):
    tid = make_user("prof", "Instructor")
    sid = make_user("stud")
    with session_scope(app) as s:
        prof = s.get(User, tid)
        course = create_course(s, {"course_name": "Math"}, prof)
        enroll_student(s, s.get(User, sid), course.course_code)
        return {"prof": tid, "student": sid, "course": course.id}


def _exam(app, ids, *, questions=(MC, IDENT), deadline=None, published=False) -> int:
    with session_scope(app) as s:
        prof = s.get(User, ids["prof"])
        course = s.get(Course, ids["course"])
        exam = create_exam(s, course, {"title": "Quiz 1", "duration_minutes": "60"}, prof)
        for q in questions:
            add_question(s, exam, q, prof)
        exam.deadline = deadline
        if published:
            publish_exam(s, exam, prof)
        return exam.id


def test_validate_exam_payload():
    assert validate_exam_payload({"title": "Quiz", "duration_minutes": "30"}) == []
    assert "Title is required." in validate_exam_payload({"title": "", "duration_minutes": "30"})
    assert "Duration must be greater than zero." in validate_exam_payload({"title": "Q", "duration_minutes": "0"})
    assert "Duration must be a whole number." in validate_exam_payload({"title": "Q", "duration_minutes": "abc"})
    errors = validate_exam_payload({"title": "Q", "duration_minutes": "10", "deadline": "not a date"})
    assert "Deadline must be a valid date and time." in errors

    errors = validate_exam_payload({"title": "", "duration_minutes": ""})
    assert "Title is required." in errors
    assert "Duration is required." in errors
    assert "Duration is required." in validate_exam_payload({"title": "Q"})


def test_validate_question_payload():
    assert validate_question_payload(MC) == []
    assert validate_question_payload(IDENT) == []
    assert "Multiple choice questions need at least two options." in validate_question_payload({**MC, "options": "only"})
    assert "Correct option is out of range." in validate_question_payload({**MC, "correct_option": "3"})
    assert "Identification questions need a correct answer." in validate_question_payload({**IDENT, "correct_answer": " "})
    assert "Points must be greater than zero." in validate_question_payload({**IDENT, "points": "0"})


def test_questions_are_ordered_and_exposed(app, course_setup):
    exam_id = _exam(app, course_setup)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        assert [q.position for q in exam.questions] == [1, 2]
        mc, ident = exam.questions
        assert mc.options == ["3", "4", "5"]
        assert mc.correct_answer_text == "4"
        assert ident.correct_answer_text == "Paris"
        assert exam.total_points == 5


def test_publish_requires_questions(app, course_setup):
    exam_id = _exam(app, course_setup, questions=())
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        with pytest.raises(ExamError):
            publish_exam(s, exam, s.get(User, course_setup["prof"]))


def test_publish_with_past_deadline_needs_clearing(app, course_setup):
    exam_id = _exam(app, course_setup, deadline=datetime.utcnow() - timedelta(days=1))
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        prof = s.get(User, course_setup["prof"])
        with pytest.raises(ExamError):
            publish_exam(s, exam, prof)
        assert exam.published is False

        publish_exam(s, exam, prof, clear_past_deadline=True)
        assert exam.published is True
        assert exam.deadline is None


def test_unpublish_blocked_after_submission(app, course_setup):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        student = s.get(User, course_setup["student"])
        attempt = start_exam(s, student, exam)
        submit_exam(s, attempt, {})
        with pytest.raises(ExamError):
            unpublish_exam(s, exam, s.get(User, course_setup["prof"]))


def test_unpublish_allowed_without_submissions(app, course_setup):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        unpublish_exam(s, exam, s.get(User, course_setup["prof"]))
        assert exam.published is False


def test_delete_exam_removes_everything(app, course_setup):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        attempt = start_exam(s, s.get(User, course_setup["student"]), exam)
        submit_exam(s, attempt, {str(exam.questions[0].id): "1"})

    with session_scope(app) as s:
        delete_exam(s, s.get(Exam, exam_id), s.get(User, course_setup["prof"]))

    with session_scope(app) as s:
        assert s.get(Exam, exam_id) is None
        assert s.query(Question).count() == 0
        assert s.query(Attempt).count() == 0
        assert s.query(StudentAnswer).count() == 0


def test_delete_exam_rolls_back_on_failure(app, course_setup, monkeypatch):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        attempt = start_exam(s, s.get(User, course_setup["student"]), exam)
        submit_exam(s, attempt, {str(exam.questions[0].id): "1"})

    def failing_flush(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    with pytest.raises(SQLAlchemyError):
        with session_scope(app) as s:
            monkeypatch.setattr(s, "flush", failing_flush)
            delete_exam(s, s.get(Exam, exam_id), s.get(User, course_setup["prof"]))

    with session_scope(app) as s:
        assert s.get(Exam, exam_id) is not None
        assert s.query(Question).filter(Question.exam_id == exam_id).count() == 2
        assert s.query(Attempt).filter(Attempt.exam_id == exam_id).count() == 1
        assert s.query(StudentAnswer).count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "exam.delete").count() == 0


def test_get_exam_questions_in_position_order(app, course_setup):
    exam_id = _exam(app, course_setup)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        exam.questions[0].position = 5
        s.flush()
        questions = get_exam_questions(s, exam)
        assert [q.question_text for q in questions] == ["Capital of France?", "2 + 2 = ?"]


def test_editing_a_question_regrades_submissions(app, course_setup):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        mc, ident = exam.questions
        attempt = start_exam(s, s.get(User, course_setup["student"]), exam)
        submit_exam(s, attempt, {str(mc.id): "1", str(ident.id): "Paris"})
        assert (attempt.total_score, attempt.max_score) == (5, 5)
        attempt_id, mc_id = attempt.id, mc.id

    with session_scope(app) as s:
        update_question(s, s.get(Question, mc_id), {**MC, "correct_option": "2"}, s.get(User, course_setup["prof"]))

    with session_scope(app) as s:
        attempt = s.get(Attempt, attempt_id)
        assert (attempt.total_score, attempt.max_score) == (3, 5)
        answer = next(a for a in attempt.answers if a.question_id == mc_id)
        assert answer.is_correct is False
        ev = s.query(AuditEvent).filter(AuditEvent.action == "question.edit").one()
        assert json.loads(ev.metadata_json)["regraded"] == 1


def test_deleting_a_question_regrades_and_drops_its_answers(app, course_setup):
    exam_id = _exam(app, course_setup, published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        mc, ident = exam.questions
        attempt = start_exam(s, s.get(User, course_setup["student"]), exam)
        submit_exam(s, attempt, {str(mc.id): "0", str(ident.id): "Paris"})
        assert (attempt.total_score, attempt.max_score) == (3, 5)
        attempt_id, ident_id = attempt.id, ident.id

    with session_scope(app) as s:
        delete_question(s, s.get(Question, ident_id), s.get(User, course_setup["prof"]))

    with session_scope(app) as s:
        attempt = s.get(Attempt, attempt_id)
        assert (attempt.total_score, attempt.max_score) == (0, 2)
        assert ident_id not in {a.question_id for a in attempt.answers}
        assert s.query(StudentAnswer).filter(StudentAnswer.question_id == ident_id).count() == 0
        assert s.query(StudentAnswer).count() == 1


def test_published_exam_keeps_its_last_question(app, course_setup):
    exam_id = _exam(app, course_setup, questions=(MC,), published=True)
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        prof = s.get(User, course_setup["prof"])
        with pytest.raises(ExamError):
            delete_question(s, exam.questions[0], prof)
        with pytest.raises(ExamError):
            delete_questions(s, exam, prof)
        assert len(exam.questions) == 1

    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        prof = s.get(User, course_setup["prof"])
        unpublish_exam(s, exam, prof)
        assert delete_questions(s, exam, prof) == 1
        assert exam.questions == []


def test_deadline_with_offset_is_stored_as_utc(app, course_setup):
    assert parse_datetime("2030-01-01T10:00+08:00") == datetime(2030, 1, 1, 2, 0)
    assert parse_datetime("2030-01-01T10:00") == datetime(2030, 1, 1, 10, 0)

    payload = {"title": "Offset", "duration_minutes": "30", "deadline": "2099-01-01T10:00:00+02:00"}
    assert validate_exam_payload(payload) == []
    with session_scope(app) as s:
        prof = s.get(User, course_setup["prof"])
        exam = create_exam(s, s.get(Course, course_setup["course"]), payload, prof)
        add_question(s, exam, MC, prof)
        assert exam.deadline == datetime(2099, 1, 1, 8, 0)
        assert exam.deadline.tzinfo is None
        publish_exam(s, exam, prof)
        assert exam.published is True


def test_exams_for_student_lists_published_only(app, course_setup):
    published_id = _exam(app, course_setup, published=True)
    _exam(app, course_setup)
    with session_scope(app) as s:
        exams = exams_for_student(s, s.get(User, course_setup["student"]))
        assert [e.id for e in exams] == [published_id]


def test_author_flow_via_views(client, app, course_setup, login, post):
    login("prof")
    cid = course_setup["course"]

    r = post(f"/exams/course/{cid}/new", {"title": "Midterm", "duration_minutes": "45", "deadline": ""})
    assert r.status_code == 302
    with session_scope(app) as s:
        exam_id = s.query(Exam).filter(Exam.title == "Midterm").one().id

    r = post(f"/exams/{exam_id}/publish")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Exam, exam_id).published is False

    assert post(f"/exams/{exam_id}/questions/new", MC).status_code == 302
    assert post(f"/exams/{exam_id}/questions/new", {**IDENT, "correct_answer": ""}).status_code == 400
    assert post(f"/exams/{exam_id}/questions/new", IDENT).status_code == 302

    r = client.get(f"/exams/{exam_id}")
    assert r.status_code == 200
    assert b"Capital of France?" in r.data

    assert post(f"/exams/{exam_id}/publish").status_code == 302
    with session_scope(app) as s:
        exam = s.get(Exam, exam_id)
        assert exam.published is True
        first_q = exam.questions[0].id

    r = post(f"/exams/questions/{first_q}/edit", {**MC, "question_text": "2 + 3 = ?", "options": "4\n5", "correct_option": "1"})
    assert r.status_code == 302
    with session_scope(app) as s:
        q = s.get(Question, first_q)
        assert q.question_text == "2 + 3 = ?"
        assert q.correct_answer_text == "5"

    assert post(f"/exams/questions/{first_q}/delete").status_code == 302
    with session_scope(app) as s:
        assert len(s.get(Exam, exam_id).questions) == 1


def test_other_instructor_cannot_author(client, app, course_setup, make_user, login, post):
    exam_id = _exam(app, course_setup)
    make_user("intruder", "Instructor")
    login("intruder")
    assert client.get(f"/exams/{exam_id}").status_code == 403
    assert post(f"/exams/{exam_id}/questions/new", MC).status_code == 403
    assert post(f"/exams/course/{course_setup['course']}/new", {"title": "X", "duration_minutes": "5"}).status_code == 403


def test_last_question_delete_is_refused_via_view(client, app, course_setup, login, post):
    exam_id = _exam(app, course_setup, questions=(MC,), published=True)
    with session_scope(app) as s:
        question_id = s.get(Exam, exam_id).questions[0].id

    login("prof")
    r = post(f"/exams/questions/{question_id}/delete", follow_redirects=True)
    assert r.status_code == 200
    assert b"needs at least one question" in r.data
    r = post(f"/exams/{exam_id}/questions/delete-all", follow_redirects=True)
    assert b"Unpublish the exam before removing all of its questions." in r.data
    with session_scope(app) as s:
        assert s.get(Question, question_id) is not None
