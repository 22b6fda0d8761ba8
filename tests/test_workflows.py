import pytest

import workflows
from errors import (
    AuthorizationError, DuplicateUsernameError, NotFoundError, PasswordPolicyError, StoreOperationError,
    ValidationError,
)
from projections import GRADUATE_OUT, has_submitted, materialize, submission_status
from schemas import POPUP_PATH, Identity
from session import login
from views import StudentView


def test_duplicate_teacher_username_is_rejected(store, admin):
    workflows.enroll_teacher(store, admin, "T1", "t1", "p", "Math")
    with pytest.raises(DuplicateUsernameError):
        workflows.enroll_teacher(store, admin, "T1 again", "t1", "q", "Art")
    assert len(materialize(store.get("teachers"))) == 1


@pytest.mark.parametrize("field", ["name", "username", "password", "subject"])
def test_enroll_teacher_requires_every_field(store, admin, field):
    values = {"name": "T", "username": "t", "password": "p", "subject": "Math"}
    values[field] = "   "
    with pytest.raises(ValidationError):
        workflows.enroll_teacher(store, admin, **values)
    assert store.get("teachers") is None


def test_student_cannot_enroll_teachers(store, school):
    with pytest.raises(AuthorizationError):
        workflows.enroll_teacher(store, school["student"], "T", "t", "p", "Math")


def test_teacher_enrolls_only_into_own_classes(store, school):
    sid = workflows.enroll_student(store, school["teacher"], "Cara", "cara", "pw", school["c9"])
    assert store.get(f"students/{sid}/className") == "9A"
    with pytest.raises(ValidationError):
        workflows.enroll_student(store, school["teacher"], "Dan", "dan", "pw", school["c10"])


def test_admin_enroll_with_unknown_class_is_unassigned(store, admin):
    sid = workflows.enroll_student(store, admin, "Eve", "eve", "pw", "missing")
    assert store.get(f"students/{sid}/className") == "Unassigned"


def test_class_captures_teacher_name_at_creation(store, school):
    cls = store.get(f"classes/{school['c9']}")
    assert cls["teacherName"] == "Ms. Rivera"
    store.update(f"teachers/{school['t1']}", {"name": "Dr. Rivera"})
    assert store.get(f"classes/{school['c9']}/teacherName") == "Ms. Rivera"


def test_graduate_out_removes_student(store, admin):
    tid = workflows.enroll_teacher(store, admin, "T", "t", "p", "Math")
    cid = workflows.create_class(store, admin, "9B", "9", tid)
    sid = workflows.enroll_student(store, admin, "S", "s", "p", cid)
    assert workflows.graduate_student(store, admin, sid, GRADUATE_OUT) is None
    assert store.get(f"students/{sid}") is None


def test_graduate_moves_to_next_grade(store, admin, school):
    assert workflows.graduate_student(store, admin, school["s1"]) == school["c10"]
    student = store.get(f"students/{school['s1']}")
    assert student["classId"] == school["c10"]
    assert student["className"] == "10A"


def test_demote_without_lower_grade_fails(store, admin, school):
    with pytest.raises(ValidationError) as exc:
        workflows.demote_student(store, admin, school["s1"])
    assert exc.value.message == "No class found for grade 8"


def test_attendance_update_path_on_reopen(store, school):
    teacher = school["teacher"]
    workflows.mark_attendance(store, teacher, school["c9"], "2024-01-10", {school["s1"]: "present"})

    sheet = workflows.AttendanceSheet(store, teacher, school["c9"], "2024-01-10")
    assert sheet.statuses == {school["s1"]: "present"}
    sheet.mark(school["s1"], "present")
    assert sheet.save() == {"updated": 1, "inserted": 0}

    records = [r for r in materialize(store.get(f"attendance/{school['s1']}")) if r["date"] == "2024-01-10"]
    assert len(records) == 1
    assert records[0]["status"] == "present"


def test_mark_all_present_writes_nothing_until_saved(store, school):
    sheet = workflows.AttendanceSheet(store, school["teacher"], school["c9"], "2024-01-11")
    sheet.mark_all_present()
    assert sheet.counts() == {"present": 2, "absent": 0}
    assert store.get("attendance") is None
    assert sheet.save() == {"updated": 0, "inserted": 2}
    assert len(materialize(store.get(f"attendance/{school['s2']}"))) == 1


def test_attendance_rejects_unknown_status(store, school):
    sheet = workflows.AttendanceSheet(store, school["teacher"], school["c9"], "2024-01-11")
    with pytest.raises(ValidationError):
        sheet.mark(school["s1"], "late")


def test_teacher_cannot_take_attendance_for_other_class(store, school):
    with pytest.raises(ValidationError):
        workflows.AttendanceSheet(store, school["teacher"], school["c10"], "2024-01-11")


def test_grade_is_mirrored_under_teacher(store, school):
    ids = workflows.assign_grade(store, school["teacher"], school["s1"], "A", title="Quiz 1")
    assert set(ids) == {f"grades/{school['s1']}", f"teacherGrades/{school['t1']}"}
    grade = materialize(store.get(f"grades/{school['s1']}"))[0]
    assert grade["subject"] == "General"
    assert grade["title"] == "Quiz 1"
    assert grade["className"] == "9A"
    assert materialize(store.get(f"teacherGrades/{school['t1']}"))[0]["grade"] == "A"


def test_homework_grade_takes_subject_from_homework(store, school):
    hid = workflows.assign_homework(store, school["teacher"], "Fractions", "2024-02-01", school["c9"],
                                    subject="Math")
    workflows.assign_grade(store, school["teacher"], school["s1"], "B+", homework_id=hid)
    grade = materialize(store.get(f"grades/{school['s1']}"))[0]
    assert (grade["subject"], grade["title"], grade["homeworkId"]) == ("Math", "Fractions", hid)
    assert "className" not in grade


def test_grade_partial_failure_keeps_first_write(failing_store, admin):
    store = failing_store("teacherGrades")
    tid = workflows.enroll_teacher(store, admin, "T", "t", "p", "Math")
    cid = workflows.create_class(store, admin, "9A", "9", tid)
    sid = workflows.enroll_student(store, admin, "S", "s", "p", cid)
    teacher = Identity(id=tid, username="t", name="T", role="teacher")

    with pytest.raises(StoreOperationError) as exc:
        workflows.assign_grade(store, teacher, sid, "A")
    assert exc.value.completed == [f"grades/{sid}"]
    assert len(materialize(store.get(f"grades/{sid}"))) == 1
    assert store.get(f"teacherGrades/{tid}") is None


def test_attendance_partial_failure_reports_written_students(failing_store, admin):
    store = failing_store("attendance/")
    tid = workflows.enroll_teacher(store, admin, "T", "t", "p", "Math")
    cid = workflows.create_class(store, admin, "9A", "9", tid)
    workflows.enroll_student(store, admin, "S", "s", "p", cid)
    teacher = Identity(id=tid, username="t", name="T", role="teacher")
    sheet = workflows.AttendanceSheet(store, teacher, cid, "2024-01-10")
    sheet.mark_all_present()
    with pytest.raises(StoreOperationError) as exc:
        sheet.save()
    assert exc.value.completed == []


def test_submission_stays_submitted_with_duplicates(store, school):
    student = school["student"]
    hid = workflows.assign_homework(store, school["teacher"], "Essay", "2099-01-01", school["c9"])
    workflows.submit_homework(store, student, hid, content="My essay")
    with StudentView(store, student) as view:
        assert view.is_submitted(hid)
        assert not view.can_submit(hid)

    # the store does not stop a second push
    workflows.submit_homework(store, student, hid, link="http://example.com/essay")
    submissions = materialize(store.get("submissions"))
    assert len(submissions) == 2
    assert has_submitted(submissions, hid, student.id)
    hw = {**store.get(f"homework/{hid}"), "id": hid}
    students = materialize(store.get("students"))
    assert submission_status(hw, students, submissions) == {"submitted": 1, "pending": 1, "total": 2}


def test_submission_needs_content_or_link(store, school):
    hid = workflows.assign_homework(store, school["teacher"], "Essay", "2099-01-01", school["c9"])
    with pytest.raises(ValidationError):
        workflows.submit_homework(store, school["student"], hid, content=" ", link="")
    with pytest.raises(NotFoundError):
        workflows.submit_homework(store, school["student"], "missing", content="x")


def test_one_time_password_change(store, school):
    student = school["student"]
    workflows.change_password(store, student, "pass123", "newpass1", "newpass1")
    assert store.get(f"students/{student.id}")["oldPassword"] == "pass123"

    with pytest.raises(PasswordPolicyError):
        workflows.change_password(store, student, "newpass1", "another1", "another1")

    workflows.reset_password(store, Identity(id="admin", username="admin", name="A", role="admin"),
                             "students", student.id, "reset99")
    workflows.change_password(store, student, "reset99", "final123", "final123")
    assert login(store, "amy", "final123").id == student.id
    with pytest.raises(PasswordPolicyError):
        workflows.change_password(store, student, "final123", "again123", "again123")


@pytest.mark.parametrize("current,new,confirm,message", [
    ("wrong", "newpass1", "newpass1", "Current password is incorrect"),
    ("pass123", "newpass1", "newpass2", "Passwords don't match"),
    ("pass123", "short", "short", "Password must be at least 6 characters"),
    ("pass123", "pass123", "pass123", "New password cannot be the same as old password"),
])
def test_password_policy_messages(store, school, current, new, confirm, message):
    with pytest.raises(PasswordPolicyError) as exc:
        workflows.change_password(store, school["student"], current, new, confirm)
    assert exc.value.message == message


def test_admin_may_change_password_repeatedly(store, admin):
    workflows.change_password(store, admin, "admin123", "secret1", "secret1")
    workflows.change_password(store, admin, "secret1", "secret2", "secret2")
    assert store.get("users/admin/password") == "secret2"


def test_add_secondary_teachers_merges(store, admin, school):
    workflows.add_secondary_teachers(store, admin, school["c9"], [school["t2"]])
    merged = workflows.add_secondary_teachers(store, admin, school["c9"], [school["t2"], "unknown"])
    assert merged == [{"id": school["t2"], "name": "Mr. Okafor"}]


def test_manage_class_overwrites_secondary_teachers(store, admin, school):
    workflows.add_secondary_teachers(store, admin, school["c9"], [school["t2"]])
    workflows.manage_class(store, admin, school["c9"], "9A", "9", school["t1"], [])
    assert store.get(f"classes/{school['c9']}")["secondaryTeachers"] == []


def test_secondary_teacher_sees_class(store, admin, school):
    workflows.add_secondary_teachers(store, admin, school["c9"], [school["t2"]])
    hid = workflows.assign_homework(store, school["other_teacher"], "Lab", "2024-03-01", school["c9"])
    assert store.get(f"homework/{hid}/className") == "9A"


def test_messages_and_replies(store, admin, school):
    student = school["student"]
    workflows.send_message(store, student, "When is the exam?")
    workflows.reply_to_student(store, admin, student.id, "Next week")
    messages = materialize(store.get("complaints"))
    assert {m["sender"] for m in messages} == {"student", "admin"}
    assert all(m["subject"] == "Chat Message" for m in messages)

    assert workflows.mark_conversation_read(store, admin, student.id) == 1
    assert workflows.resolve_conversation(store, admin, student.id) == 1
    statuses = {m["sender"]: m["status"] for m in materialize(store.get("complaints"))}
    assert statuses == {"student": "resolved", "admin": "sent"}

    with pytest.raises(ValidationError):
        workflows.send_message(store, student, "  ")
    with pytest.raises(NotFoundError):
        workflows.reply_to_student(store, admin, "nobody", "hello")


def test_announcement_priority_validated(store, admin):
    aid = workflows.post_announcement(store, admin, "Closed", "Snow day", "urgent")
    assert store.get(f"announcements/{aid}")["author"] == "Principal"
    with pytest.raises(ValidationError):
        workflows.post_announcement(store, admin, "Closed", "Snow day", "critical")


def test_delete_record_checks_capability(store, school):
    with pytest.raises(AuthorizationError):
        workflows.delete_record(store, school["teacher"], "students", school["s1"])
    with pytest.raises(ValidationError):
        workflows.delete_record(store, school["teacher"], "grades", school["s1"])


def test_timetable_entry_day_validated(store, school):
    eid = workflows.add_timetable_entry(store, school["teacher"], school["c9"], "Math", "Tuesday", "09:00", "10:00")
    entry = store.get(f"timetable/{eid}")
    assert (entry["teacherName"], entry["className"]) == ("Ms. Rivera", "9A")
    with pytest.raises(ValidationError):
        workflows.add_timetable_entry(store, school["teacher"], school["c9"], "Math", "Saturday")


def test_update_profile_and_popup(store, admin, school):
    assert workflows.update_profile(store, school["teacher"], email="r@school.test") == {"email": "r@school.test"}
    assert store.get(f"teachers/{school['t1']}/email") == "r@school.test"
    workflows.update_popup(store, admin, True, "Welcome back")
    assert store.get(POPUP_PATH) == {"enabled": True, "bannerText": "Welcome back"}
    with pytest.raises(AuthorizationError):
        workflows.update_popup(store, school["teacher"], False)


def test_grade_dated_with_current_time(store, school, monkeypatch):
    monkeypatch.setattr(workflows, "now_iso", lambda: "2024-01-10T08:30:00.000Z")
    workflows.assign_grade(store, school["teacher"], school["s2"], "C")
    grade = materialize(store.get(f"teacherGrades/{school['t1']}"))[0]
    assert (grade["date"], grade["studentName"]) == ("2024-01-10T08:30:00.000Z", "Ben Cruz")


def test_new_password_cannot_reuse_previous_password(store, admin, school):
    student = school["student"]
    workflows.change_password(store, student, "pass123", "newpass1", "newpass1")
    workflows.reset_password(store, admin, "students", student.id, "reset99")
    assert store.get(f"students/{student.id}/oldPassword") == "pass123"
    with pytest.raises(PasswordPolicyError) as exc:
        workflows.change_password(store, student, "reset99", "pass123", "pass123")
    assert exc.value.message == "New password cannot be the same as old password"
    assert store.get(f"students/{student.id}/password") == "reset99"


def test_add_secondary_teachers_to_class_with_bare_ids(store, admin, school):
    store.update(f"classes/{school['c9']}", {"secondaryTeachers": [school["t2"]]})
    merged = workflows.add_secondary_teachers(store, admin, school["c9"], [school["t2"]])
    assert merged == [school["t2"]]
