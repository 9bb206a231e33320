from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.panotify.constants import ATTEMPT_TIMEOUT
from app.panotify.db import db_session
from app.panotify.models import User
from app.panotify.modules.courses.models import Course
from app.panotify.modules.courses.service import can_manage_course
from app.panotify.modules.exams.attempts import (
    AttemptError,
    auto_submit_exam,
    auto_submit_expired_exams,
    expires_at,
    get_attempt,
    is_exam_time_expired,
    question_results,
    remaining_seconds,
    results_visible,
    save_answers,
    start_exam,
    submit_exam,
)
from app.panotify.modules.exams.models import Exam, Question
from app.panotify.modules.exams.service import (
    ExamError,
    add_question,
    attempt_count,
    create_exam,
    delete_exam,
    delete_question,
    delete_questions,
    exams_for_student,
    get_exam_questions,
    has_any_submissions,
    publish_exam,
    unpublish_exam,
    update_exam,
    update_question,
    validate_exam_payload,
    validate_question_payload,
)
from app.panotify.rbac import require_permission

bp = Blueprint("exams", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _owned_exam_or_404(s, exam_id: int) -> Exam:
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    if not can_manage_course(_current_user(), exam.course):
        abort(403)
    return exam


def _owned_question_or_404(s, question_id: int) -> Question:
    question = s.get(Question, question_id)
    if not question:
        abort(404)
    _owned_exam_or_404(s, question.exam_id)
    return question


def _answers_from_form(form) -> dict[str, str]:
    """Collects `answer_<question_id>` fields."""
    answers = {}
    for key, value in form.items():
        if key.startswith("answer_"):
            answers[key[len("answer_"):]] = value
    return answers


def _exam_form(exam: Exam) -> dict:
    return {
        "title": exam.title,
        "duration_minutes": exam.duration_minutes,
        "deadline": exam.deadline.strftime("%Y-%m-%dT%H:%M") if exam.deadline else "",
    }


def _question_form(question: Question) -> dict:
    return {
        "question_type": question.question_type,
        "question_text": question.question_text,
        "options": "\n".join(question.options),
        "correct_option": "" if question.correct_option is None else question.correct_option,
        "correct_answer": question.correct_answer or "",
        "points": question.points,
    }


# ---------- Authoring ----------

@bp.get("/course/<int:course_id>/new")
@require_permission("exams.author")
def exam_new_get(course_id: int):
    s = db_session()
    course = s.get(Course, course_id)
    if not course:
        abort(404)
    if not can_manage_course(_current_user(), course):
        abort(403)
    return render_template("exams/edit.html", course=course, exam=None, form={"duration_minutes": 60})


@bp.post("/course/<int:course_id>/new")
@require_permission("exams.author")
def exam_new_post(course_id: int):
    s = db_session()
    u = _current_user()
    course = s.get(Course, course_id)
    if not course:
        abort(404)
    if not can_manage_course(u, course):
        abort(403)

    payload = request.form.to_dict()
    errors = validate_exam_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("exams/edit.html", course=course, exam=None, form=payload), 400

    exam = create_exam(s, course, payload, u)
    s.commit()
    flash("Exam created. Add questions, then publish it.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


@bp.get("/<int:exam_id>")
@require_permission("exams.author")
def exam_detail(exam_id: int):
    s = db_session()
    exam = _owned_exam_or_404(s, exam_id)
    return render_template(
        "exams/detail.html",
        exam=exam,
        course=exam.course,
        questions=get_exam_questions(s, exam),
        attempts=attempt_count(s, exam),
        has_submissions=has_any_submissions(s, exam),
    )


@bp.get("/<int:exam_id>/edit")
@require_permission("exams.author")
def exam_edit_get(exam_id: int):
    s = db_session()
    exam = _owned_exam_or_404(s, exam_id)
    return render_template("exams/edit.html", course=exam.course, exam=exam, form=_exam_form(exam))


@bp.post("/<int:exam_id>/edit")
@require_permission("exams.author")
def exam_edit_post(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    payload = request.form.to_dict()
    errors = validate_exam_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("exams/edit.html", course=exam.course, exam=exam, form=payload), 400
    update_exam(s, exam, payload, u)
    s.commit()
    flash("Exam updated.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


@bp.post("/<int:exam_id>/delete")
@require_permission("exams.author")
def exam_delete(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    course_id = exam.course_id
    try:
        delete_exam(s, exam, u)
    except SQLAlchemyError:
        flash("The exam could not be deleted. No changes were made.", "danger")
        return redirect(url_for("exams.exam_detail", exam_id=exam_id))
    flash("Exam deleted.", "success")
    return redirect(url_for("courses.course_detail", course_id=course_id))


@bp.post("/<int:exam_id>/publish")
@require_permission("exams.author")
def exam_publish(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    clear_deadline = request.form.get("clear_deadline") == "1"
    try:
        publish_exam(s, exam, u, clear_past_deadline=clear_deadline)
    except ExamError as e:
        flash(str(e), "danger")
        return redirect(url_for("exams.exam_detail", exam_id=exam.id))
    s.commit()
    flash("Exam published.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


@bp.post("/<int:exam_id>/unpublish")
@require_permission("exams.author")
def exam_unpublish(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    try:
        unpublish_exam(s, exam, u)
    except ExamError as e:
        flash(str(e), "danger")
        return redirect(url_for("exams.exam_detail", exam_id=exam.id))
    s.commit()
    flash("Exam unpublished.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


# ---------- Questions ----------

@bp.get("/<int:exam_id>/questions/new")
@require_permission("exams.author")
def question_new_get(exam_id: int):
    s = db_session()
    exam = _owned_exam_or_404(s, exam_id)
    qtype = request.args.get("type") or "multiple_choice"
    return render_template("exams/question_edit.html", exam=exam, question=None, form={"question_type": qtype, "points": 1})


@bp.post("/<int:exam_id>/questions/new")
@require_permission("exams.author")
def question_new_post(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    payload = request.form.to_dict()
    errors = validate_question_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("exams/question_edit.html", exam=exam, question=None, form=payload), 400
    add_question(s, exam, payload, u)
    s.commit()
    flash("Question added.", "success")
    if request.form.get("add_another") == "1":
        return redirect(url_for("exams.question_new_get", exam_id=exam.id, type=payload.get("question_type")))
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


@bp.get("/questions/<int:question_id>/edit")
@require_permission("exams.author")
def question_edit_get(question_id: int):
    s = db_session()
    question = _owned_question_or_404(s, question_id)
    return render_template(
        "exams/question_edit.html", exam=question.exam, question=question, form=_question_form(question)
    )


@bp.post("/questions/<int:question_id>/edit")
@require_permission("exams.author")
def question_edit_post(question_id: int):
    s = db_session()
    u = _current_user()
    question = _owned_question_or_404(s, question_id)
    payload = request.form.to_dict()
    errors = validate_question_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("exams/question_edit.html", exam=question.exam, question=question, form=payload), 400
    update_question(s, question, payload, u)
    s.commit()
    flash("Question updated.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=question.exam_id))


@bp.post("/questions/<int:question_id>/delete")
@require_permission("exams.author")
def question_delete(question_id: int):
    s = db_session()
    u = _current_user()
    question = _owned_question_or_404(s, question_id)
    exam_id = question.exam_id
    try:
        delete_question(s, question, u)
    except ExamError as e:
        flash(str(e), "danger")
        return redirect(url_for("exams.exam_detail", exam_id=exam_id))
    s.commit()
    flash("Question deleted.", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam_id))


@bp.post("/<int:exam_id>/questions/delete-all")
@require_permission("exams.author")
def questions_delete_all(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = _owned_exam_or_404(s, exam_id)
    try:
        count = delete_questions(s, exam, u)
    except ExamError as e:
        flash(str(e), "danger")
        return redirect(url_for("exams.exam_detail", exam_id=exam.id))
    s.commit()
    flash(f"Deleted {count} question(s).", "success")
    return redirect(url_for("exams.exam_detail", exam_id=exam.id))


# ---------- Taking exams ----------

@bp.get("/available")
@require_permission("exams.take")
def available_list():
    s = db_session()
    u = _current_user()
    if auto_submit_expired_exams(s, student_id=u.id):
        s.commit()
    exams = exams_for_student(s, u)
    attempts = {e.id: get_attempt(s, u, e) for e in exams}
    return render_template("exams/available.html", exams=exams, attempts=attempts)


@bp.post("/<int:exam_id>/start")
@require_permission("exams.take")
def exam_start(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    try:
        start_exam(s, u, exam)
    except AttemptError as e:
        # A refused start may still have finalised an expired attempt.
        s.commit()
        flash(str(e), "danger")
        return redirect(url_for("exams.available_list"))
    s.commit()
    return redirect(url_for("exams.exam_take", exam_id=exam.id))


@bp.get("/<int:exam_id>/take")
@require_permission("exams.take")
def exam_take(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    attempt = get_attempt(s, u, exam)
    if attempt is None:
        flash("Start the exam first.", "warning")
        return redirect(url_for("exams.available_list"))
    if attempt.is_finished:
        return redirect(url_for("exams.exam_result", exam_id=exam.id))
    if is_exam_time_expired(exam, attempt):
        auto_submit_exam(s, attempt)
        s.commit()
        flash("Time for this exam has run out; your saved answers were submitted.", "warning")
        return redirect(url_for("exams.exam_result", exam_id=exam.id))

    saved = {a.question_id: a.answer_text for a in attempt.answers}
    return render_template(
        "exams/take.html",
        exam=exam,
        attempt=attempt,
        questions=get_exam_questions(s, exam),
        saved=saved,
        remaining=remaining_seconds(attempt),
        expires_at=expires_at(attempt),
    )


@bp.post("/<int:exam_id>/autosave")
@require_permission("exams.take")
def exam_autosave(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    attempt = get_attempt(s, u, exam)
    if attempt is None:
        return jsonify({"ok": False, "error": "No attempt in progress."}), 404

    data = request.get_json(silent=True) or {}
    answers = data.get("answers") if isinstance(data, dict) else None
    if not isinstance(answers, dict):
        return jsonify({"ok": False, "error": "Expected an 'answers' object."}), 400
    try:
        stored = save_answers(s, attempt, answers)
    except AttemptError as e:
        s.commit()
        return jsonify({"ok": False, "error": str(e), "status": attempt.status}), 409
    s.commit()
    return jsonify({"ok": True, "saved": stored, "remaining_seconds": remaining_seconds(attempt)})


@bp.post("/<int:exam_id>/submit")
@require_permission("exams.take")
def exam_submit(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    attempt = get_attempt(s, u, exam)
    if attempt is None:
        flash("You have not started this exam.", "danger")
        return redirect(url_for("exams.available_list"))
    if attempt.is_finished:
        flash("This exam was already submitted; your first submission stands.", "info")
        return redirect(url_for("exams.exam_result", exam_id=exam.id))

    submit_exam(
        s,
        attempt,
        _answers_from_form(request.form),
        grace_seconds=int(current_app.config.get("EXAM_GRACE_SECONDS", 0)),
    )
    s.commit()
    if attempt.status == ATTEMPT_TIMEOUT:
        flash("Time had run out; only your previously saved answers were graded.", "warning")
    else:
        flash("Exam submitted.", "success")
    return redirect(url_for("exams.exam_result", exam_id=exam.id))


@bp.get("/<int:exam_id>/result")
@require_permission("exams.take")
def exam_result(exam_id: int):
    s = db_session()
    u = _current_user()
    exam = s.get(Exam, exam_id)
    if not exam:
        abort(404)
    attempt = get_attempt(s, u, exam)
    if attempt is None or not attempt.is_finished:
        flash("No submitted attempt for this exam.", "warning")
        return redirect(url_for("exams.available_list"))
    visible = results_visible(exam)
    return render_template(
        "exams/result.html",
        exam=exam,
        attempt=attempt,
        visible=visible,
        results=question_results(attempt) if visible else [],
    )
