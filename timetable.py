"""
Weekly timetable generator.

A run provisions subjects and teachers, plans every (class, subject) pair in
memory, checks the plan and then writes the per-class subject tables and the
per-teacher schedules in one transaction:

    generate_timetable(config)
      -> ensure_subject / ensure_teachers      (provisioning)
      -> plan_timetable                         (allocate + assign_slot)
      -> validate_plan
      -> apply_plan -> materialize_class        (both views)
      -> commit

Teacher pools are ordered by User.seq, so the block allocation is stable across
runs. Callers must not start two runs at once; app.py serialises them.
"""
from __future__ import annotations

import logging
import math
import os
import random
import re
import secrets
from dataclasses import dataclass, field
from datetime import date
from typing import NamedTuple, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from models import (
    DAY_SHORT,
    ClassRoster,
    ClassSubject,
    ClassSubjectSession,
    ScheduleEntry,
    Subject,
    SubjectExpertise,
    TeacherClassAssignment,
    TeacherSchedule,
    User,
    db,
    next_user_seq,
)

SCHOOL_LOG = logging.getLogger("SCHOOL_LOG")

SYNTHETIC_TEACHER_PASSWORD = os.getenv("SYNTHETIC_TEACHER_PASSWORD", "123456")
SCHOOL_EMAIL_DOMAIN = os.getenv("SCHOOL_EMAIL_DOMAIN", "school.local")

MIN_CLASS_NUMBER = 1
MAX_CLASS_NUMBER = 12
MAX_SUBJECTS_PER_CLASS = 5
UNIQUE_VALUE_ATTEMPTS = 50
DEFAULT_SUBJECTS = ["English", "Mathematics", "Science", "Social Studies", "Hindi"]
DEFAULT_TIME_SLOTS = [
    {"start": "09:00", "end": "09:45"},
    {"start": "10:00", "end": "10:45"},
    {"start": "11:00", "end": "11:45"},
    {"start": "12:00", "end": "12:45"},
    # lunch 12:45-13:30
    {"start": "13:30", "end": "14:15"},
]
WEEKDAYS = list(DAY_SHORT.values())
FULL_DAY = {short: full for full, short in DAY_SHORT.items()}
DAY_ALIASES = {**{short.lower(): short for short in WEEKDAYS}, **{full: short for full, short in DAY_SHORT.items()}}

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class TimetableError(Exception):
    """Base class for generator failures."""


class ConfigurationError(TimetableError):
    pass


class StoreError(TimetableError):
    pass


class GenerationInProgressError(TimetableError):
    pass


@dataclass(frozen=True)
class DataIntegrityWarning:
    class_number: int
    subject: str
    reason: str

    def as_dict(self) -> dict:
        return {"classNumber": self.class_number, "subject": self.subject, "reason": self.reason}


def subject_label(name: str) -> str:
    return re.sub(r"\s+", " ", (name or "").strip())


def subject_key(name: str) -> str:
    return subject_label(name).upper()


def default_academic_year(today: date | None = None) -> str:
    year = (today or date.today()).year
    return f"{year}-{year + 1}"


class TimeSlot(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)
    end: str = Field(pattern=HHMM_PATTERN)

    @model_validator(mode="after")
    def check_order(self) -> "TimeSlot":
        if self.start >= self.end:
            raise ValueError(f"time slot {self.start}-{self.end} must end after it starts")
        return self


class TimetableConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    class_range: tuple[int, int] = Field(default=(MIN_CLASS_NUMBER, MAX_CLASS_NUMBER), alias="classRange")
    subject_list: list[str] = Field(default_factory=lambda: list(DEFAULT_SUBJECTS), alias="subjectList")
    max_classes_per_teacher: int = Field(default=5, ge=1, alias="maxClassesPerTeacher")
    time_slots: list[TimeSlot] = Field(
        default_factory=lambda: [TimeSlot(**slot) for slot in DEFAULT_TIME_SLOTS],
        alias="timeSlots",
    )
    weekdays: list[str] = Field(default_factory=lambda: list(WEEKDAYS))
    academic_year: str = Field(default_factory=default_academic_year, pattern=r"^\d{4}-\d{4}$", alias="academicYear")
    section: str = "A"
    auto_create_subjects: bool = Field(default=True, alias="autoCreateSubjects")

    @field_validator("class_range")
    @classmethod
    def check_class_range(cls, value: tuple[int, int]) -> tuple[int, int]:
        low, high = value
        if low < MIN_CLASS_NUMBER or high > MAX_CLASS_NUMBER or low > high:
            raise ValueError(f"class range must lie within {MIN_CLASS_NUMBER}..{MAX_CLASS_NUMBER} with min <= max")
        return value

    @field_validator("subject_list")
    @classmethod
    def check_subjects(cls, value: list[str]) -> list[str]:
        names = [subject_label(name) for name in value]
        if not names or any(not name for name in names):
            raise ValueError("subject list must contain non-empty names")
        if len({subject_key(name) for name in names}) != len(names):
            raise ValueError("subject names must be unique")
        if len(names) > MAX_SUBJECTS_PER_CLASS:
            raise ValueError(f"a class holds at most {MAX_SUBJECTS_PER_CLASS} subjects")
        return names

    @field_validator("weekdays")
    @classmethod
    def check_weekdays(cls, value: list[str]) -> list[str]:
        days = []
        for raw in value:
            day = DAY_ALIASES.get(raw.strip().lower())
            if day is None:
                raise ValueError(f"unknown weekday {raw!r}")
            if day in days:
                raise ValueError(f"weekday {day} listed twice")
            days.append(day)
        if not days:
            raise ValueError("at least one weekday is required")
        return days

    @field_validator("section")
    @classmethod
    def check_section(cls, value: str) -> str:
        section = value.strip().upper()
        if not section:
            raise ValueError("section is required")
        return section

    @model_validator(mode="after")
    def check_slot_capacity(self) -> "TimetableConfig":
        if len(self.time_slots) < len(self.subject_list):
            raise ValueError(
                f"{len(self.time_slots)} time slots cannot hold {len(self.subject_list)} subjects per class"
            )
        # Periods are numbered in chronological order.
        slots = sorted(self.time_slots, key=lambda slot: (slot.start, slot.end))
        for earlier, later in zip(slots, slots[1:]):
            if later.start < earlier.end:
                raise ValueError(
                    f"time slots {earlier.start}-{earlier.end} and {later.start}-{later.end} overlap"
                )
        self.time_slots = slots
        return self

    @property
    def first_class(self) -> int:
        return self.class_range[0]

    @property
    def class_numbers(self) -> list[int]:
        return list(range(self.class_range[0], self.class_range[1] + 1))

    @property
    def teachers_per_subject(self) -> int:
        return math.ceil(len(self.class_numbers) / self.max_classes_per_teacher)


def load_config(payload: dict | None = None) -> TimetableConfig:
    try:
        return TimetableConfig.model_validate(payload or {})
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}" for error in exc.errors()
        )
        raise ConfigurationError(details) from exc


# Subject catalog


def unique_subject_code(name: str) -> str:
    prefix = re.sub(r"[^A-Z0-9]", "", subject_key(name))[:3] or "SUB"
    for _attempt in range(UNIQUE_VALUE_ATTEMPTS):
        code = f"{prefix}{random.randint(100, 999)}"
        if Subject.query.filter_by(code=code).first() is None:
            return code
    SCHOOL_LOG.error("step=subjects.code_exhausted prefix=%s attempts=%s", prefix, UNIQUE_VALUE_ATTEMPTS)
    raise StoreError(f"no free subject code for prefix {prefix}")


def ensure_subject(name: str) -> tuple[Subject, bool]:
    key = subject_key(name)
    subject = Subject.query.filter_by(name=key).first()
    if subject is not None:
        return subject, False

    subject = Subject(name=key, code=unique_subject_code(key), description=f"Subject {name.strip()}")
    db.session.add(subject)
    db.session.flush()
    SCHOOL_LOG.info("step=subjects.created name=%r code=%s", key, subject.code)
    return subject, True


# Teacher provisioner


def subject_teacher_pool(subject_name: str) -> list[User]:
    """Teachers tagged with the subject or holding an expertise record for it, by ``seq``.

    Specialty tags are compared with ``subject_key`` in Python so that stored
    values with odd spacing or case still match.
    """
    key = subject_key(subject_name)
    expert_ids = set(
        db.session.scalars(
            select(SubjectExpertise.user_id).join(Subject, Subject.id == SubjectExpertise.subject_id).where(Subject.name == key)
        )
    )
    candidates = User.query.filter(
        User.role == "teacher",
        or_(User.subject.isnot(None), User.id.in_(sorted(expert_ids))),
    ).order_by(User.seq.asc(), User.id.asc())
    return [teacher for teacher in candidates if teacher.id in expert_ids or subject_key(teacher.subject) == key]


def unique_teacher_email(subject_name: str, number: int) -> str:
    slug = re.sub(r"[^a-z0-9]+", "", subject_name.lower()) or "subject"
    for _attempt in range(UNIQUE_VALUE_ATTEMPTS):
        email = f"teacher.{slug}{number}.{secrets.token_hex(3)}@{SCHOOL_EMAIL_DOMAIN}"
        if User.query.filter_by(email=email).first() is None:
            return email
    SCHOOL_LOG.error("step=teachers.email_exhausted subject=%r attempts=%s", subject_name, UNIQUE_VALUE_ATTEMPTS)
    raise StoreError(f"no free email for synthetic {subject_name} teacher {number}")


def employee_id_for(seq: int) -> str:
    return f"T{seq:04d}"


def ensure_teachers(subject_name: str, required_count: int, *, password_hash: str | None = None) -> tuple[list[User], list[User]]:
    """Return the subject's teacher pool, creating teachers until it holds ``required_count``.

    The pool lists existing teachers oldest-first followed by the new ones.
    Existing records are left untouched. The second element holds only the
    teachers created by this call.
    """
    pool = subject_teacher_pool(subject_name)
    shortfall = required_count - len(pool)
    created: list[User] = []
    if shortfall <= 0:
        return pool, created

    if password_hash is None:
        password_hash = generate_password_hash(SYNTHETIC_TEACHER_PASSWORD)

    for offset in range(shortfall):
        number = len(pool) + offset + 1
        seq = next_user_seq()
        teacher = User(
            seq=seq,
            name=f"{subject_name} Teacher {number}",
            email=unique_teacher_email(subject_name, number),
            password_hash=password_hash,
            role="teacher",
            verified=True,
            is_approved=True,
            subject=subject_name,
            employee_id=employee_id_for(seq),
            phone="0000000000",
        )
        db.session.add(teacher)
        db.session.flush()
        created.append(teacher)
        SCHOOL_LOG.info("step=teachers.provisioned subject=%r teacher_id=%s email=%s", subject_name, teacher.id, teacher.email)

    return pool + created, created


# Class-teacher allocator and period slot assigner


def block_index(class_number: int, max_classes_per_teacher: int, first_class: int = MIN_CLASS_NUMBER) -> int:
    return (class_number - first_class) // max_classes_per_teacher


def allocate(class_number: int, subject_name: str, teacher_pool: Sequence, *, max_classes_per_teacher: int = 5, first_class: int = MIN_CLASS_NUMBER):
    """Pick the teacher for a (class, subject) pair.

    Classes in the same block share a teacher. When the pool has fewer teachers
    than there are blocks, blocks wrap around and share teachers.
    """
    if not teacher_pool:
        return None
    index = block_index(class_number, max_classes_per_teacher, first_class)
    return teacher_pool[index % len(teacher_pool)]


def assign_slot(subject_index: int, class_number: int, slot_count: int) -> int:
    if slot_count < 1:
        raise ConfigurationError("at least one time slot is required")
    return (subject_index - class_number) % slot_count


# Planning


class EntryKey(NamedTuple):
    day: str
    class_number: int
    subject: str
    period: int
    start_time: str
    end_time: str


def entry_sort_key(entry: EntryKey) -> tuple:
    return (WEEKDAYS.index(entry.day), entry.period, entry.class_number, entry.subject)


@dataclass(frozen=True)
class SubjectAssignment:
    subject_name: str
    subject_index: int
    subject_id: int
    teacher_id: int | None
    slot_index: int


@dataclass
class ClassPlan:
    class_number: int
    assignments: list[SubjectAssignment] = field(default_factory=list)

    @property
    def room(self) -> str:
        return f"Room {self.class_number}"


@dataclass
class TimetablePlan:
    config: TimetableConfig
    classes: list[ClassPlan] = field(default_factory=list)
    teacher_entries: dict[int, set[EntryKey]] = field(default_factory=dict)
    skipped: list[DataIntegrityWarning] = field(default_factory=list)


def entries_for(config: TimetableConfig, class_number: int, assignment: SubjectAssignment) -> list[EntryKey]:
    slot = config.time_slots[assignment.slot_index]
    return [
        EntryKey(day, class_number, assignment.subject_name, assignment.slot_index + 1, slot.start, slot.end)
        for day in config.weekdays
    ]


def plan_timetable(config: TimetableConfig, subject_ids: dict[str, int], teacher_pools: dict[str, list[int]]) -> TimetablePlan:
    """Compute the full allocation without touching the store.

    ``subject_ids`` and ``teacher_pools`` are keyed by subject_key.
    """
    plan = TimetablePlan(config=config)
    slot_count = len(config.time_slots)

    for class_number in config.class_numbers:
        class_plan = ClassPlan(class_number=class_number)
        for subject_index, subject_name in enumerate(config.subject_list):
            key = subject_key(subject_name)
            subject_id = subject_ids.get(key)
            if subject_id is None:
                plan.skipped.append(DataIntegrityWarning(class_number, subject_name, "subject record missing"))
                SCHOOL_LOG.warning("step=timetable.pair_skipped class=%s subject=%r reason=subject_missing", class_number, subject_name)
                continue

            teacher_id = allocate(
                class_number,
                subject_name,
                teacher_pools.get(key, []),
                max_classes_per_teacher=config.max_classes_per_teacher,
                first_class=config.first_class,
            )
            if teacher_id is None:
                plan.skipped.append(DataIntegrityWarning(class_number, subject_name, "no teacher available"))
                SCHOOL_LOG.warning("step=timetable.pair_skipped class=%s subject=%r reason=no_teacher", class_number, subject_name)
                continue

            assignment = SubjectAssignment(
                subject_name=subject_name,
                subject_index=subject_index,
                subject_id=subject_id,
                teacher_id=teacher_id,
                slot_index=assign_slot(subject_index, class_number, slot_count),
            )
            class_plan.assignments.append(assignment)
            plan.teacher_entries.setdefault(teacher_id, set()).update(entries_for(config, class_number, assignment))

        plan.classes.append(class_plan)

    return plan


def validate_plan(plan: TimetablePlan) -> None:
    derived: dict[int, set[EntryKey]] = {}
    for class_plan in plan.classes:
        slots = [assignment.slot_index for assignment in class_plan.assignments]
        if len(set(slots)) != len(slots):
            raise TimetableError(f"class {class_plan.class_number} has two subjects in one slot: {slots}")
        for assignment in class_plan.assignments:
            derived.setdefault(assignment.teacher_id, set()).update(
                entries_for(plan.config, class_plan.class_number, assignment)
            )

    if derived != plan.teacher_entries:
        raise TimetableError("teacher schedules disagree with class subject tables")


# Materializer


@dataclass
class ApplyState:
    schedules: dict[int, TeacherSchedule] = field(default_factory=dict)
    schedule_keys: dict[int, set[EntryKey]] = field(default_factory=dict)
    assignment_keys: set[tuple] = field(default_factory=set)
    entries_written: int = 0


def get_or_create_roster(class_number: int, section: str, academic_year: str) -> ClassRoster:
    roster = ClassRoster.query.filter_by(class_number=class_number, section=section, academic_year=academic_year).first()
    if roster is None:
        roster = ClassRoster(class_number=class_number, section=section, academic_year=academic_year)
        db.session.add(roster)
        db.session.flush()
    return roster


def register_assignment(state: ApplyState, teacher_id: int, roster: ClassRoster, subject_id: int, academic_year: str) -> None:
    key = (teacher_id, roster.id, subject_id, academic_year)
    if key in state.assignment_keys:
        return
    state.assignment_keys.add(key)
    db.session.add(TeacherClassAssignment(teacher_id=teacher_id, class_id=roster.id, subject_id=subject_id, academic_year=academic_year))


def add_schedule_entry(state: ApplyState, teacher_id: int, entry: EntryKey) -> None:
    keys = state.schedule_keys.setdefault(teacher_id, set())
    if entry in keys:
        return
    schedule = state.schedules.get(teacher_id)
    if schedule is None:
        schedule = TeacherSchedule(teacher_id=teacher_id)
        db.session.add(schedule)
        state.schedules[teacher_id] = schedule
    keys.add(entry)
    schedule.entries.append(ScheduleEntry(**entry._asdict()))
    state.entries_written += 1


def materialize_class(plan: TimetablePlan, class_plan: ClassPlan, state: ApplyState) -> ClassRoster:
    config = plan.config
    roster = get_or_create_roster(class_plan.class_number, config.section, config.academic_year)

    class_subjects = []
    for position, assignment in enumerate(class_plan.assignments):
        entries = entries_for(config, class_plan.class_number, assignment)
        class_subjects.append(
            ClassSubject(
                position=position,
                subject_id=assignment.subject_id,
                teacher_id=assignment.teacher_id,
                academic_year=config.academic_year,
                schedule=[
                    ClassSubjectSession(day=FULL_DAY[entry.day], start_time=entry.start_time, end_time=entry.end_time, room=class_plan.room)
                    for entry in entries
                ],
            )
        )
        register_assignment(state, assignment.teacher_id, roster, assignment.subject_id, config.academic_year)
        for entry in sorted(entries, key=entry_sort_key):
            add_schedule_entry(state, assignment.teacher_id, entry)

    roster.subjects = class_subjects
    SCHOOL_LOG.info("step=timetable.class_materialized class=%s subjects=%s", class_plan.class_number, len(class_subjects))
    return roster


def apply_plan(plan: TimetablePlan) -> ApplyState:
    removed_entries = ScheduleEntry.query.delete()
    removed_schedules = TeacherSchedule.query.delete()
    removed_assignments = TeacherClassAssignment.query.filter_by(academic_year=plan.config.academic_year).delete()
    SCHOOL_LOG.info(
        "step=timetable.wiped schedules=%s entries=%s assignments=%s academic_year=%s",
        removed_schedules,
        removed_entries,
        removed_assignments,
        plan.config.academic_year,
    )

    state = ApplyState()
    for class_plan in plan.classes:
        materialize_class(plan, class_plan, state)
    db.session.flush()
    return state


# Entry point


@dataclass
class SummaryReport:
    academic_year: str
    teachers_per_subject: int
    teachers_created: int
    teachers_created_by_subject: dict[str, int]
    subjects_created: int
    classes_processed: int
    teacher_schedules_written: int
    schedule_entries_written: int
    skipped: list[DataIntegrityWarning] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Timetable optimized. Ensured {self.teachers_per_subject} teachers per subject. Schedules generated."

    def as_dict(self) -> dict:
        return {
            "message": self.message,
            "academicYear": self.academic_year,
            "teachersPerSubject": self.teachers_per_subject,
            "teachersCreated": self.teachers_created,
            "teachersCreatedBySubject": self.teachers_created_by_subject,
            "subjectsCreated": self.subjects_created,
            "classesProcessed": self.classes_processed,
            "teacherSchedulesWritten": self.teacher_schedules_written,
            "scheduleEntriesWritten": self.schedule_entries_written,
            "skipped": [warning.as_dict() for warning in self.skipped],
        }


def provision(config: TimetableConfig) -> tuple[dict[str, int], dict[str, list[int]], dict[str, int], int]:
    subject_ids: dict[str, int] = {}
    teacher_pools: dict[str, list[int]] = {}
    created_by_subject: dict[str, int] = {}
    subjects_created = 0
    password_hash = generate_password_hash(SYNTHETIC_TEACHER_PASSWORD)

    for subject_name in config.subject_list:
        key = subject_key(subject_name)
        if config.auto_create_subjects:
            subject, created = ensure_subject(subject_name)
            subjects_created += int(created)
        else:
            subject = Subject.query.filter_by(name=key).first()
            if subject is None:
                SCHOOL_LOG.warning("step=timetable.subject_missing subject=%r auto_create=False", subject_name)
                continue
        subject_ids[key] = subject.id

        pool, created_teachers = ensure_teachers(subject_name, config.teachers_per_subject, password_hash=password_hash)
        teacher_pools[key] = [teacher.id for teacher in pool]
        created_by_subject[subject_name] = len(created_teachers)

    return subject_ids, teacher_pools, created_by_subject, subjects_created


def generate_timetable(config: TimetableConfig | dict | None = None) -> SummaryReport:
    if not isinstance(config, TimetableConfig):
        config = load_config(config)

    SCHOOL_LOG.info(
        "step=timetable.start classes=%s-%s subjects=%s cap=%s slots=%s weekdays=%s academic_year=%s",
        config.class_range[0],
        config.class_range[1],
        len(config.subject_list),
        config.max_classes_per_teacher,
        len(config.time_slots),
        ",".join(config.weekdays),
        config.academic_year,
    )

    try:
        subject_ids, teacher_pools, created_by_subject, subjects_created = provision(config)
        plan = plan_timetable(config, subject_ids, teacher_pools)
        validate_plan(plan)
        state = apply_plan(plan)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        SCHOOL_LOG.error("step=timetable.store_failed error=%s detail=%s", exc.__class__.__name__, exc)
        raise StoreError(f"timetable generation failed: {exc.__class__.__name__}") from exc
    except TimetableError:
        db.session.rollback()
        SCHOOL_LOG.exception("step=timetable.plan_rejected")
        raise

    report = SummaryReport(
        academic_year=config.academic_year,
        teachers_per_subject=config.teachers_per_subject,
        teachers_created=sum(created_by_subject.values()),
        teachers_created_by_subject=created_by_subject,
        subjects_created=subjects_created,
        classes_processed=len(plan.classes),
        teacher_schedules_written=len(state.schedules),
        schedule_entries_written=state.entries_written,
        skipped=plan.skipped,
    )
    SCHOOL_LOG.info(
        "step=timetable.complete teachers_created=%s classes=%s schedules=%s entries=%s skipped=%s",
        report.teachers_created,
        report.classes_processed,
        report.teacher_schedules_written,
        report.schedule_entries_written,
        len(report.skipped),
    )
    return report


def check_consistency(academic_year: str | None = None, section: str = "A") -> list[str]:
    """List every disagreement between class subject tables and teacher schedules."""
    academic_year = academic_year or default_academic_year()
    expected: set[tuple] = set()
    rosters = ClassRoster.query.filter_by(academic_year=academic_year, section=section).all()
    for roster in rosters:
        for class_subject in roster.subjects:
            if class_subject.teacher_id is None:
                continue
            for session in class_subject.schedule:
                expected.add(
                    (
                        class_subject.teacher_id,
                        DAY_SHORT.get(session.day, session.day),
                        roster.class_number,
                        class_subject.subject.name,
                        session.start_time,
                        session.end_time,
                    )
                )

    class_numbers = {roster.class_number for roster in rosters}
    actual: set[tuple] = set()
    rows = (
        db.session.query(TeacherSchedule.teacher_id, ScheduleEntry)
        .select_from(TeacherSchedule)
        .join(ScheduleEntry, ScheduleEntry.schedule_id == TeacherSchedule.id)
        .all()
    )
    for teacher_id, entry in rows:
        if entry.class_number not in class_numbers:
            continue
        actual.add((teacher_id, entry.day, entry.class_number, subject_key(entry.subject), entry.start_time, entry.end_time))

    problems = []
    for teacher_id, day, class_number, subject, start, end in sorted(expected - actual):
        problems.append(f"teacher {teacher_id} schedule lacks class {class_number} {subject} {day} {start}-{end}")
    for teacher_id, day, class_number, subject, start, end in sorted(actual - expected):
        problems.append(f"teacher {teacher_id} schedule has unlisted class {class_number} {subject} {day} {start}-{end}")
    return problems
