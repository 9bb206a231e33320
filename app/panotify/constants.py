"""
Central constants for the PaNotify application.
"""
from __future__ import annotations

ACCOUNT_TYPES = ("Student", "Instructor")

# account_type -> role key attached at registration
ACCOUNT_TYPE_ROLES = {
    "Student": "student",
    "Instructor": "instructor",
    "Admin": "admin",
}

PERMISSIONS = (
    ("dashboard.view", "Dashboard: view"),
    ("profile.edit", "Profile: edit own profile"),
    ("courses.view", "Courses: view"),
    ("courses.create", "Courses: create"),
    ("courses.manage", "Courses: manage own courses"),
    ("courses.enroll", "Courses: enroll by code"),
    ("exams.author", "Exams: author and publish"),
    ("exams.take", "Exams: take"),
    ("reports.view", "Reports: view course/exam reports"),
    ("results.view", "Results: view own results"),
    ("accounts.manage", "Accounts: manage all accounts"),
    ("audit.view", "Audit: view trail"),
)

ROLES = {
    "student": (
        "Student",
        ("dashboard.view", "profile.edit", "courses.view", "courses.enroll", "exams.take", "results.view"),
    ),
    "instructor": (
        "Instructor",
        (
            "dashboard.view",
            "profile.edit",
            "courses.view",
            "courses.create",
            "courses.manage",
            "exams.author",
            "reports.view",
        ),
    ),
    "admin": (
        "Administrator",
        tuple(key for key, _ in PERMISSIONS),
    ),
}

# Course join codes: 6 characters from this alphabet
COURSE_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
COURSE_CODE_LENGTH = 6

QUESTION_TYPES = ("multiple_choice", "identification")

ATTEMPT_IN_PROGRESS = "in_progress"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_TIMEOUT = "timeout"
FINISHED_STATUSES = (ATTEMPT_COMPLETED, ATTEMPT_TIMEOUT)
