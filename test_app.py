import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from models import ClassRoster, ClassSubject, Subject, TeacherSchedule, User
from timetable import StoreError, default_academic_year, ensure_subject


@pytest.fixture
def admin(make_user, login):
    user = make_user("Principal", role="admin")
    login(user.id, "admin")
    return user


@pytest.fixture
def generated(client, admin):
    resp = client.post("/admin/timetable/generate")
    assert resp.status_code == 200
    return resp.get_json()


def test_generate_requires_a_session(client):
    resp = client.post("/admin/timetable/generate")
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Unauthorized"


def test_generate_rejects_non_admin_roles(client, make_user, login):
    teacher = make_user("Ms Rao")
    login(teacher.id, "teacher")
    resp = client.post("/admin/timetable/generate")
    assert resp.status_code == 403
    assert TeacherSchedule.query.count() == 0


def test_generate_returns_summary(generated):
    assert generated["teachersPerSubject"] == 3
    assert generated["teachersCreated"] == 15
    assert generated["classesProcessed"] == 12
    assert generated["teacherSchedulesWritten"] == 15
    assert generated["scheduleEntriesWritten"] == 300
    assert generated["academicYear"] == default_academic_year()
    assert generated["skipped"] == []
    assert generated["message"].startswith("Timetable optimized. Ensured 3 teachers per subject.")


def test_generate_rejects_bad_options(client, admin):
    resp = client.post("/admin/timetable/generate", json={"timeSlots": [{"start": "09:00", "end": "09:45"}]})
    assert resp.status_code == 400
    assert "time slots cannot hold" in resp.get_json()["message"]
    assert User.query.filter_by(role="teacher").count() == 0


def test_generate_rejects_non_object_body(client, admin):
    resp = client.post("/admin/timetable/generate", json=[1, 12])
    assert resp.status_code == 400


def test_generate_refuses_concurrent_run(client, admin, app_module):
    assert app_module.GENERATION_LOCK.acquire(blocking=False)
    try:
        resp = client.post("/admin/timetable/generate")
    finally:
        app_module.GENERATION_LOCK.release()
    assert resp.status_code == 409
    assert "already running" in resp.get_json()["message"]


def test_generate_reports_store_failure(client, admin, app_module, monkeypatch):
    def fake_generate(payload):
        raise StoreError("timetable generation failed: OperationalError")

    monkeypatch.setattr(app_module, "generate_timetable", fake_generate)
    resp = client.post("/admin/timetable/generate")
    assert resp.status_code == 500
    assert resp.get_json()["message"] == "Error generating timetable."
    assert not app_module.GENERATION_LOCK.locked()


def test_verify_reports_consistent_views(client, generated):
    resp = client.get("/admin/timetable/verify")
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["consistent"] is True
    assert body["problems"] == []


def test_teacher_schedule_is_sorted_by_day_and_period(client, generated, login):
    teacher = User.query.filter_by(name="English Teacher 1").one()
    login(teacher.id, "teacher")

    body = client.get("/teacher/schedule").get_json()
    assert body["teacher"] == {"id": teacher.id, "name": "English Teacher 1", "subject": "English"}
    entries = body["entries"]
    assert len(entries) == 25
    days = [entry["day"] for entry in entries]
    assert days == sorted(days, key=["Mon", "Tue", "Wed", "Thu", "Fri"].index)
    monday_periods = [entry["period"] for entry in entries if entry["day"] == "Mon"]
    assert monday_periods == sorted(monday_periods)
    assert {entry["subject"] for entry in entries} == {"English"}


def test_teacher_my_classes(client, generated, login):
    teacher = User.query.filter_by(name="Science Teacher 3").one()
    login(teacher.id, "teacher")
    assert client.get("/teacher/my-classes").get_json() == [11, 12]


def test_student_timetable_lists_class_subjects(client, generated, make_user, login):
    student = make_user("Student 1 Class 3", role="student", class_assigned=3)
    login(student.id, "student")

    resp = client.get("/student/timetable")
    subjects = resp.get_json()
    assert resp.status_code == 200
    assert [item["subject"]["name"] for item in subjects] == ["ENGLISH", "MATHEMATICS", "SCIENCE", "SOCIAL STUDIES", "HINDI"]
    for item in subjects:
        assert len(item["schedule"]) == 5
        assert {slot["room"] for slot in item["schedule"]} == {"Room 3"}
        assert item["teacher"]["name"].endswith("Teacher 1")


def test_student_without_class_gets_400(client, make_user, login):
    student = make_user("New Student", role="student")
    login(student.id, "student")
    assert client.get("/student/timetable").status_code == 400


def test_create_teacher_and_reject_duplicate_email(client, admin):
    payload = {"name": "Mr Iyer", "email": "Iyer.Physics@School.local", "password": "secret", "subject": "Physics"}
    resp = client.post("/admin/teachers", json=payload)
    assert resp.status_code == 201
    teacher = resp.get_json()["teacher"]
    assert teacher["email"] == "iyer.physics@school.local"
    assert teacher["employeeId"].startswith("T")
    assert teacher["verified"] is True

    again = client.post("/admin/teachers", json=payload)
    assert again.status_code == 400
    assert again.get_json()["message"] == "Email already exists."


def test_create_teacher_requires_fields(client, admin):
    resp = client.post("/admin/teachers", json={"name": "No Email"})
    assert resp.status_code == 400


def test_list_teachers_shows_assigned_classes(client, generated):
    teachers = client.get("/admin/teachers").get_json()
    assert len(teachers) == 15
    hindi_three = next(item for item in teachers if item["name"] == "Hindi Teacher 3")
    assert [(row["classNumber"], row["subject"]) for row in hindi_three["assignedClasses"]] == [(11, "HINDI"), (12, "HINDI")]


def test_delete_teacher_clears_schedule_and_class_slots(client, generated):
    teacher = User.query.filter_by(name="Hindi Teacher 2").one()
    teacher_id = teacher.id

    resp = client.post(f"/admin/teachers/{teacher_id}/delete")
    assert resp.status_code == 200
    assert TeacherSchedule.query.filter_by(teacher_id=teacher_id).first() is None
    assert ClassSubject.query.filter_by(teacher_id=teacher_id).count() == 0
    assert client.post(f"/admin/teachers/{teacher_id}/delete").status_code == 404


def test_subject_teachers_default_rows_without_roster(client, admin):
    rows = client.get("/admin/classes/4/subject-teachers").get_json()
    assert [row["subject"] for row in rows] == ["ENGLISH", "MATHEMATICS", "SCIENCE", "SOCIAL STUDIES", "HINDI"]
    assert all(row["teacher"] is None for row in rows)


def test_set_subject_teachers_replaces_roster_subjects(client, admin, make_user, app_module):
    names = ["English", "Mathematics", "Science", "Social Studies", "Hindi"]
    for name in names:
        ensure_subject(name)
    app_module.db.session.commit()
    teachers = [make_user(f"Teacher {idx}", subject=name) for idx, name in enumerate(names)]

    assignments = [{"subject": name, "teacherId": teacher.id} for name, teacher in zip(names, teachers)]
    resp = client.post("/admin/classes/2/subject-teachers", json={"assignments": assignments})
    assert resp.status_code == 200

    roster = ClassRoster.query.filter_by(class_number=2).one()
    assert [item.teacher_id for item in roster.subjects] == [teacher.id for teacher in teachers]
    assert all(item.schedule == [] for item in roster.subjects)

    rows = client.get("/admin/classes/2/subject-teachers").get_json()
    assert rows[0] == {"subject": "ENGLISH", "teacher": {"id": teachers[0].id, "name": "Teacher 0", "email": "teacher.0@example.org"}}


def test_set_subject_teachers_validates_assignments(client, admin, make_user):
    teacher = make_user("Only One")
    duplicate = [{"subject": "English", "teacherId": teacher.id}] * 5
    assert client.post("/admin/classes/2/subject-teachers", json={"assignments": duplicate[:3]}).status_code == 400
    resp = client.post("/admin/classes/2/subject-teachers", json={"assignments": duplicate})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Each subject must have a unique teacher."


def test_subjects_catalog(client, generated):
    subjects = client.get("/subjects").get_json()
    assert sorted(item["name"] for item in subjects) == ["ENGLISH", "HINDI", "MATHEMATICS", "SCIENCE", "SOCIAL STUDIES"]


def test_generate_rejects_overlapping_slots(client, admin):
    options = {
        "subjectList": ["Mathematics", "Science"],
        "timeSlots": [{"start": "09:00", "end": "10:00"}, {"start": "09:30", "end": "10:30"}],
    }
    resp = client.post("/admin/timetable/generate", json=options)
    assert resp.status_code == 400
    assert "overlap" in resp.get_json()["message"]
    assert ClassRoster.query.count() == 0


def test_create_teacher_collapses_subject_spacing(client, admin):
    payload = {"name": "Ms Nair", "email": "nair@school.local", "password": "secret", "subject": "  Social   Studies "}
    resp = client.post("/admin/teachers", json=payload)
    assert resp.status_code == 201
    assert resp.get_json()["teacher"]["subject"] == "Social Studies"


def locked_error():
    return OperationalError("PRAGMA foreign_keys=ON", {}, Exception("database is locked"))


def test_bootstrap_step_retries_while_database_is_locked(app_module, monkeypatch):
    monkeypatch.setattr(app_module.time, "sleep", lambda seconds: None)
    calls = []

    def flaky():
        calls.append(len(calls))
        if len(calls) < 3:
            raise locked_error()

    assert app_module.run_bootstrap_step("flaky", flaky) is True
    assert len(calls) == 3


def test_bootstrap_step_skips_optional_and_raises_required(app_module, monkeypatch):
    monkeypatch.setattr(app_module.time, "sleep", lambda seconds: None)

    def always_locked():
        raise locked_error()

    assert app_module.run_bootstrap_step("seed", always_locked, required=False, attempts=2) is False
    with pytest.raises(OperationalError):
        app_module.run_bootstrap_step("tables", always_locked, attempts=2)


def test_bootstrap_step_does_not_retry_other_errors(app_module):
    calls = []

    def broken():
        calls.append(1)
        raise OperationalError("SELECT 1", {}, Exception("no such table: users"))

    with pytest.raises(OperationalError):
        app_module.run_bootstrap_step("broken", broken)
    assert calls == [1]


def test_initialize_database_seeds_subject_catalog(app_module):
    assert app_module.initialize_database() == {"create_all": True, "seed_subject_catalog": True}
    assert Subject.query.count() == 5


def test_sqlite_connections_enforce_foreign_keys(app_module):
    assert app_module.db.session.execute(text("PRAGMA foreign_keys")).scalar() == 1
