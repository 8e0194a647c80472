"""
SCHOOL TIMETABLE service
Class rosters, subject teachers and the automatic weekly timetable, served with flask

Admin routes provision teachers and (re)generate the timetable; teacher and
student routes read the two schedule views it maintains.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from functools import wraps
from pathlib import Path

import click
from flask import Flask, jsonify, request, session
from sqlalchemy.exc import IntegrityError, OperationalError
from werkzeug.security import generate_password_hash

from models import (
    DAY_ORDER,
    ClassRoster,
    ClassSubject,
    ScheduleEntry,
    Subject,
    TeacherSchedule,
    User,
    db,
    next_user_seq,
)
from timetable import (
    DEFAULT_SUBJECTS,
    MAX_CLASS_NUMBER,
    MAX_SUBJECTS_PER_CLASS,
    MIN_CLASS_NUMBER,
    ConfigurationError,
    GenerationInProgressError,
    StoreError,
    TimetableError,
    check_consistency,
    default_academic_year,
    employee_id_for,
    ensure_subject,
    generate_timetable,
    get_or_create_roster,
    subject_key,
    subject_label,
)

app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///school_timetable.db")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key")
if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"timeout": 30}}

SCHOOL_LOG = logging.getLogger("SCHOOL_LOG")
if not SCHOOL_LOG.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("SCHOOL_LOG | %(asctime)s | %(levelname)s | %(message)s"))
    SCHOOL_LOG.addHandler(_handler)
SCHOOL_LOG.setLevel(logging.INFO)
SCHOOL_LOG.propagate = False

db.init_app(app)
GENERATION_LOCK = threading.Lock()
BOOTSTRAP_ATTEMPTS = int(os.getenv("BOOTSTRAP_ATTEMPTS", "8"))


def is_database_locked(exc: OperationalError) -> bool:
    return "database is locked" in str(exc).lower()


def run_bootstrap_step(step_name: str, fn, *, required: bool = True, attempts: int = BOOTSTRAP_ATTEMPTS) -> bool:
    """Run one startup step, retrying while another process holds the SQLite lock.

    A required step re-raises once its attempts run out. An optional step is
    skipped instead and reported as ``False``.
    """
    for attempt in range(1, attempts + 1):
        try:
            fn()
        except OperationalError as exc:
            db.session.rollback()
            if not is_database_locked(exc):
                raise
            if attempt < attempts:
                SCHOOL_LOG.warning("step=bootstrap.%s.retry attempt=%s reason=database_locked", step_name, attempt)
                time.sleep(attempt * 0.5)
                continue
            if required:
                SCHOOL_LOG.error("step=bootstrap.%s.failed attempts=%s reason=database_locked", step_name, attempts)
                raise
            SCHOOL_LOG.warning("step=bootstrap.%s.skipped attempts=%s reason=database_locked", step_name, attempts)
            return False
        SCHOOL_LOG.info("step=bootstrap.%s.ok attempt=%s", step_name, attempt)
        return True
    return False


def seed_subject_catalog() -> None:
    created = 0
    for name in DEFAULT_SUBJECTS:
        _subject, was_created = ensure_subject(name)
        created += int(was_created)
    db.session.commit()
    if created:
        SCHOOL_LOG.info("step=bootstrap.subjects_seeded created=%s", created)


def run_generation(payload: dict | None = None):
    if not GENERATION_LOCK.acquire(blocking=False):
        raise GenerationInProgressError("A timetable generation is already running.")
    try:
        return generate_timetable(payload)
    finally:
        GENERATION_LOCK.release()


def parse_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def json_error(message: str, status: int):
    return jsonify({"message": message}), status


def current_user() -> User | None:
    user_id = session.get("user_id")
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def require_role(*roles: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            role = session.get("role")
            if not role:
                SCHOOL_LOG.warning("step=auth.rejected path=%s reason=no_session", request.path)
                return json_error("Unauthorized", 401)
            if role not in roles:
                SCHOOL_LOG.warning("step=auth.rejected path=%s role=%s reason=forbidden", request.path, role)
                return json_error("Forbidden", 403)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def find_roster(class_number: int, academic_year: str | None = None) -> ClassRoster | None:
    query = ClassRoster.query.filter_by(class_number=class_number, section="A")
    if academic_year:
        query = query.filter_by(academic_year=academic_year)
    return query.order_by(ClassRoster.academic_year.desc()).first()


def teacher_summary(teacher: User | None) -> dict | None:
    if teacher is None:
        return None
    return {"id": teacher.id, "name": teacher.name, "email": teacher.email}


def teacher_to_dict(teacher: User) -> dict:
    return {
        "id": teacher.id,
        "name": teacher.name,
        "email": teacher.email,
        "employeeId": teacher.employee_id,
        "subject": teacher.subject,
        "verified": teacher.verified,
        "isApproved": teacher.is_approved,
        "assignedClasses": [
            {
                "classNumber": assignment.roster.class_number,
                "subject": assignment.subject.name,
                "academicYear": assignment.academic_year,
            }
            for assignment in sorted(
                teacher.assigned_classes,
                key=lambda item: (item.academic_year, item.roster.class_number, item.subject.name),
            )
        ],
    }


def class_subject_to_dict(class_subject: ClassSubject) -> dict:
    return {
        "subject": {"id": class_subject.subject.id, "name": class_subject.subject.name, "code": class_subject.subject.code},
        "teacher": teacher_summary(class_subject.teacher),
        "academicYear": class_subject.academic_year,
        "schedule": [
            {"day": item.day, "startTime": item.start_time, "endTime": item.end_time, "room": item.room}
            for item in class_subject.schedule
        ],
    }


def entry_to_dict(entry: ScheduleEntry) -> dict:
    return {
        "day": entry.day,
        "classNumber": entry.class_number,
        "subject": entry.subject,
        "period": entry.period,
        "startTime": entry.start_time,
        "endTime": entry.end_time,
    }


@app.errorhandler(404)
def not_found(_error):
    return json_error("Not found", 404)


@app.get("/subjects")
def list_subjects():
    subjects = Subject.query.filter_by(is_active=True).order_by(Subject.name.asc()).all()
    SCHOOL_LOG.info("step=subjects.list count=%s", len(subjects))
    return jsonify([{"id": item.id, "name": item.name, "code": item.code, "description": item.description} for item in subjects])


@app.get("/admin/teachers")
@require_role("admin")
def list_teachers():
    teachers = User.query.filter_by(role="teacher").order_by(User.seq.desc()).all()
    SCHOOL_LOG.info("step=teachers.list count=%s", len(teachers))
    return jsonify([teacher_to_dict(teacher) for teacher in teachers])


@app.post("/admin/teachers")
@require_role("admin")
def create_teacher():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    subject = subject_label(str(data.get("subject") or "")) or None
    class_number = parse_int(data.get("classNumber"))
    SCHOOL_LOG.info("step=teachers.create.request email=%r subject=%r", email, subject)

    if not name or not email or not password:
        SCHOOL_LOG.warning("step=teachers.create.validation_failed reason=missing_fields")
        return json_error("Name, email and password are required.", 400)
    if User.query.filter_by(email=email).first():
        SCHOOL_LOG.warning("step=teachers.create.validation_failed reason=duplicate_email email=%r", email)
        return json_error("Email already exists.", 400)

    seq = next_user_seq()
    teacher = User(
        seq=seq,
        name=name,
        email=email,
        password_hash=generate_password_hash(password),
        role="teacher",
        verified=True,
        is_approved=True,
        subject=subject,
        phone=str(data.get("phone") or "").strip() or None,
        class_assigned=class_number,
        employee_id=employee_id_for(seq),
    )
    db.session.add(teacher)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        SCHOOL_LOG.warning("step=teachers.create.failed reason=integrity_error email=%r", email)
        return json_error("Teacher could not be added due to duplicate values.", 400)

    SCHOOL_LOG.info("step=teachers.create.success teacher_id=%s", teacher.id)
    return jsonify({"message": "Teacher added successfully.", "teacher": teacher_to_dict(teacher)}), 201


@app.post("/admin/teachers/<int:teacher_id>/delete")
@require_role("admin")
def delete_teacher(teacher_id: int):
    teacher = db.get_or_404(User, teacher_id)
    SCHOOL_LOG.info("step=teachers.delete.request teacher_id=%s", teacher_id)
    if teacher.role != "teacher":
        SCHOOL_LOG.warning("step=teachers.delete.blocked teacher_id=%s reason=not_a_teacher", teacher_id)
        return json_error("Teacher not found.", 404)

    ClassSubject.query.filter_by(teacher_id=teacher.id).update({ClassSubject.teacher_id: None})
    db.session.delete(teacher)
    db.session.commit()
    SCHOOL_LOG.info("step=teachers.delete.success teacher_id=%s", teacher_id)
    return jsonify({"message": "Teacher deleted."})


@app.get("/admin/classes/<int:class_number>/subject-teachers")
@require_role("admin")
def get_subject_teachers(class_number: int):
    roster = find_roster(class_number, request.args.get("academicYear"))
    if roster is None or not roster.subjects:
        rows = [{"subject": subject_key(name), "teacher": None} for name in DEFAULT_SUBJECTS]
    else:
        rows = [{"subject": item.subject.name, "teacher": teacher_summary(item.teacher)} for item in roster.subjects]
    SCHOOL_LOG.info("step=classes.subject_teachers.get class=%s rows=%s", class_number, len(rows))
    return jsonify(rows)


@app.post("/admin/classes/<int:class_number>/subject-teachers")
@require_role("admin")
def set_subject_teachers(class_number: int):
    data = request.get_json(silent=True) or {}
    assignments = data.get("assignments")
    SCHOOL_LOG.info("step=classes.subject_teachers.set.request class=%s", class_number)

    if not MIN_CLASS_NUMBER <= class_number <= MAX_CLASS_NUMBER:
        return json_error(f"Class number must be between {MIN_CLASS_NUMBER} and {MAX_CLASS_NUMBER}.", 400)
    if not isinstance(assignments, list) or len(assignments) != MAX_SUBJECTS_PER_CLASS:
        SCHOOL_LOG.warning("step=classes.subject_teachers.set.validation_failed reason=wrong_count")
        return json_error(f"Exactly {MAX_SUBJECTS_PER_CLASS} subject-teacher assignments required.", 400)

    teacher_ids = [parse_int(item.get("teacherId")) if isinstance(item, dict) else None for item in assignments]
    if None in teacher_ids or len(set(teacher_ids)) != MAX_SUBJECTS_PER_CLASS:
        SCHOOL_LOG.warning("step=classes.subject_teachers.set.validation_failed reason=teachers_not_unique")
        return json_error("Each subject must have a unique teacher.", 400)

    teachers = {teacher.id: teacher for teacher in User.query.filter(User.id.in_(teacher_ids), User.role == "teacher").all()}
    if len(teachers) != len(teacher_ids):
        SCHOOL_LOG.warning("step=classes.subject_teachers.set.validation_failed reason=teacher_not_found")
        return json_error("Selected teacher does not exist.", 400)

    academic_year = str(data.get("academicYear") or default_academic_year())
    roster = get_or_create_roster(class_number, "A", academic_year)
    new_subjects = []
    for item, teacher_id in zip(assignments, teacher_ids):
        subject = Subject.query.filter_by(name=subject_key(str(item.get("subject") or ""))).first()
        if subject is None:
            SCHOOL_LOG.warning("step=classes.subject_teachers.set.subject_skipped subject=%r reason=not_found", item.get("subject"))
            continue
        new_subjects.append(
            ClassSubject(
                position=len(new_subjects),
                subject_id=subject.id,
                teacher_id=teacher_id,
                academic_year=academic_year,
                schedule=[],
            )
        )

    roster.subjects = new_subjects
    db.session.commit()
    SCHOOL_LOG.info("step=classes.subject_teachers.set.success class=%s subjects=%s", class_number, len(new_subjects))
    return jsonify({"message": "Subject teachers set", "subjects": len(new_subjects)})


@app.post("/admin/timetable/generate")
@require_role("admin")
def run_timetable_generation():
    payload = request.get_json(silent=True)
    SCHOOL_LOG.info("step=timetable.request has_config=%s", payload is not None)
    if payload is not None and not isinstance(payload, dict):
        return json_error("Timetable options must be a JSON object.", 400)

    try:
        report = run_generation(payload)
    except ConfigurationError as exc:
        SCHOOL_LOG.warning("step=timetable.request.validation_failed reason=%s", exc)
        return json_error(f"Invalid timetable options: {exc}", 400)
    except GenerationInProgressError as exc:
        SCHOOL_LOG.warning("step=timetable.request.rejected reason=in_progress")
        return json_error(str(exc), 409)
    except (StoreError, TimetableError):
        return json_error("Error generating timetable.", 500)

    return jsonify(report.as_dict())


@app.get("/admin/timetable/verify")
@require_role("admin")
def verify_timetable():
    academic_year = request.args.get("academicYear") or default_academic_year()
    problems = check_consistency(academic_year)
    SCHOOL_LOG.info("step=timetable.verify academic_year=%s problems=%s", academic_year, len(problems))
    return jsonify({"academicYear": academic_year, "consistent": not problems, "problems": problems})


@app.get("/teacher/schedule")
@require_role("teacher")
def teacher_schedule():
    me = current_user()
    if me is None:
        return json_error("User not found", 404)

    schedule = TeacherSchedule.query.filter_by(teacher_id=me.id).first()
    entries = sorted(
        schedule.entries if schedule else [],
        key=lambda entry: (DAY_ORDER.get(entry.day, 0), entry.period, entry.class_number),
    )
    SCHOOL_LOG.info("step=teacher.schedule teacher_id=%s entries=%s", me.id, len(entries))
    return jsonify(
        {
            "teacher": {"id": me.id, "name": me.name, "subject": me.subject},
            "entries": [entry_to_dict(entry) for entry in entries],
        }
    )


@app.get("/teacher/my-classes")
@require_role("teacher")
def teacher_classes():
    me = current_user()
    if me is None:
        return json_error("User not found", 404)

    class_numbers: set[int] = set()
    rows = (
        db.session.query(ClassRoster.class_number)
        .outerjoin(ClassSubject, ClassSubject.class_id == ClassRoster.id)
        .filter((ClassSubject.teacher_id == me.id) | (ClassRoster.class_teacher_id == me.id))
        .all()
    )
    class_numbers.update(row[0] for row in rows)
    class_numbers.update(assignment.roster.class_number for assignment in me.assigned_classes)
    if me.schedule is not None:
        class_numbers.update(entry.class_number for entry in me.schedule.entries)
    if me.class_assigned:
        class_numbers.add(me.class_assigned)
    return jsonify(sorted(class_numbers))


@app.get("/student/timetable")
@require_role("student")
def student_timetable():
    me = current_user()
    if me is None or not me.class_assigned:
        return json_error("No class assigned", 400)

    roster = find_roster(me.class_assigned)
    if roster is None:
        SCHOOL_LOG.warning("step=student.timetable.not_found class=%s", me.class_assigned)
        return json_error("Class not found", 404)
    return jsonify([class_subject_to_dict(item) for item in roster.subjects])


@app.cli.command("init-db")
def init_db_command():
    """Create tables and seed the default subject catalog."""
    initialize_database()
    click.echo("Database ready.")


@app.cli.command("generate-timetable")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="JSON file with timetable options.")
def generate_timetable_command(config_path: str | None):
    """Regenerate every class timetable and teacher schedule."""
    payload = json.loads(Path(config_path).read_text(encoding="utf-8")) if config_path else None
    try:
        report = run_generation(payload)
    except TimetableError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(report.as_dict(), indent=2))


def initialize_database() -> dict[str, bool]:
    """Create the tables, then seed the subject catalog if the database lets us."""
    steps = (
        ("create_all", db.create_all, True),
        ("seed_subject_catalog", seed_subject_catalog, False),
    )
    with app.app_context():
        results = {name: run_bootstrap_step(name, fn, required=required) for name, fn, required in steps}
        SCHOOL_LOG.info("step=bootstrap.db_ready uri=%s seeded=%s", app.config["SQLALCHEMY_DATABASE_URI"], results["seed_subject_catalog"])
    return results


if __name__ == "__main__":
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    debug = os.getenv("FLASK_DEBUG", "0") == "1"
    initialize_database()
    SCHOOL_LOG.info("step=server.start host=%s port=%s debug=%s", host, port, debug)
    app.run(host=host, port=port, debug=debug, use_reloader=False)
