"""
School directory tables: users, subjects, class rosters and teacher schedules.

The generator in timetable.py reads and writes these; app.py binds them to the
Flask app.
"""
from __future__ import annotations

import os
import sqlite3

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

ROLES = ("general", "student", "teacher", "admin")
ROSTER_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]
DAY_SHORT = {
    "monday": "Mon",
    "tuesday": "Tue",
    "wednesday": "Wed",
    "thursday": "Thu",
    "friday": "Fri",
}
DAY_ORDER = {short: idx for idx, short in enumerate(DAY_SHORT.values(), start=1)}

SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    f"PRAGMA busy_timeout={int(os.getenv('SQLITE_BUSY_TIMEOUT_MS', '30000'))}",
    "PRAGMA journal_mode=WAL",
)

db = SQLAlchemy()


@event.listens_for(Engine, "connect")
def apply_sqlite_pragmas(dbapi_connection, _connection_record):
    # Cascades on rosters and schedules rely on foreign_keys being on.
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    # Creation sequence; teacher pools are ordered by it.
    seq = db.Column(db.Integer, nullable=False, unique=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="general")
    verified = db.Column(db.Boolean, nullable=False, default=False)
    is_approved = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    employee_id = db.Column(db.String(32), nullable=True, unique=True)
    subject = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    class_assigned = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    expertise = db.relationship("SubjectExpertise", back_populates="user", cascade="all, delete-orphan")
    assigned_classes = db.relationship("TeacherClassAssignment", back_populates="teacher", cascade="all, delete-orphan")
    schedule = db.relationship("TeacherSchedule", back_populates="teacher", uselist=False, cascade="all, delete-orphan")


class Subject(db.Model):
    __tablename__ = "subjects"

    id = db.Column(db.Integer, primary_key=True)
    # Stored upper-cased; see timetable.subject_key.
    name = db.Column(db.String(120), nullable=False, unique=True)
    code = db.Column(db.String(16), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())


class SubjectExpertise(db.Model):
    __tablename__ = "subject_expertise"

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id", ondelete="CASCADE"), primary_key=True)
    level = db.Column(db.String(20), nullable=False, default="primary")
    years_of_experience = db.Column(db.Integer, nullable=False, default=0)

    user = db.relationship("User", back_populates="expertise")
    subject = db.relationship("Subject")


class TeacherClassAssignment(db.Model):
    __tablename__ = "teacher_class_assignments"
    __table_args__ = (db.UniqueConstraint("teacher_id", "class_id", "subject_id", "academic_year", name="uq_teacher_class_assignment"),)

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False)
    academic_year = db.Column(db.String(9), nullable=False)

    teacher = db.relationship("User", back_populates="assigned_classes")
    roster = db.relationship("ClassRoster")
    subject = db.relationship("Subject")


class ClassRoster(db.Model):
    __tablename__ = "classes"
    __table_args__ = (
        db.UniqueConstraint("class_number", "section", "academic_year", name="uq_class_section_year"),
        db.CheckConstraint("class_number BETWEEN 1 AND 12", name="ck_class_number_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    class_number = db.Column(db.Integer, nullable=False)
    section = db.Column(db.String(4), nullable=False, default="A")
    academic_year = db.Column(db.String(9), nullable=False)
    class_teacher_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    capacity = db.Column(db.Integer, nullable=False, default=40)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    subjects = db.relationship(
        "ClassSubject",
        back_populates="roster",
        order_by="ClassSubject.position",
        cascade="all, delete-orphan",
    )

    @property
    def name(self) -> str:
        return f"Class {self.class_number}"


class ClassSubject(db.Model):
    __tablename__ = "class_subjects"

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id", ondelete="RESTRICT"), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    academic_year = db.Column(db.String(9), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    roster = db.relationship("ClassRoster", back_populates="subjects")
    subject = db.relationship("Subject")
    teacher = db.relationship("User")
    schedule = db.relationship(
        "ClassSubjectSession",
        back_populates="class_subject",
        order_by="ClassSubjectSession.id",
        cascade="all, delete-orphan",
    )


class ClassSubjectSession(db.Model):
    __tablename__ = "class_subject_sessions"

    id = db.Column(db.Integer, primary_key=True)
    class_subject_id = db.Column(db.Integer, db.ForeignKey("class_subjects.id", ondelete="CASCADE"), nullable=False)
    day = db.Column(db.String(10), nullable=False)
    start_time = db.Column(db.String(5), nullable=False)
    end_time = db.Column(db.String(5), nullable=False)
    room = db.Column(db.String(40), nullable=True)

    class_subject = db.relationship("ClassSubject", back_populates="schedule")


class TeacherSchedule(db.Model):
    __tablename__ = "teacher_schedules"

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    teacher = db.relationship("User", back_populates="schedule")
    entries = db.relationship("ScheduleEntry", back_populates="schedule", cascade="all, delete-orphan")


class ScheduleEntry(db.Model):
    __tablename__ = "schedule_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "schedule_id", "day", "class_number", "subject", "period", "start_time", "end_time",
            name="uq_schedule_entry",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey("teacher_schedules.id", ondelete="CASCADE"), nullable=False)
    day = db.Column(db.String(3), nullable=False)
    class_number = db.Column(db.Integer, nullable=False)
    subject = db.Column(db.String(120), nullable=False)
    period = db.Column(db.Integer, nullable=False, default=1)
    start_time = db.Column(db.String(5), nullable=True)
    end_time = db.Column(db.String(5), nullable=True)

    schedule = db.relationship("TeacherSchedule", back_populates="entries")

    def as_tuple(self) -> tuple:
        return (self.day, self.class_number, self.subject, self.period, self.start_time, self.end_time)


def next_user_seq() -> int:
    current = db.session.query(db.func.max(User.seq)).scalar()
    return (current or 0) + 1
