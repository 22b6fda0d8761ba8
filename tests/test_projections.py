from datetime import date

import pytest

from projections import (
    GRADUATE_OUT, attendance_stats, by_creation, class_label, conversation_list, dashboard_counts,
    dedup_by_key, default_promotion_target, distinct_count, materialize, parse_grade, percentage,
    submission_rate, submission_status, teacher_classes, todays_schedule, upcoming_homework,
    week_order, with_live_teacher_names,
)


def test_materialize_attaches_ids():
    assert materialize({"a": {"name": "x"}, "b": "scalar"}) == [{"name": "x", "id": "a"}]
    assert materialize(None) == []


@pytest.mark.parametrize("order", [[0, 1, 2, 3], [3, 2, 1, 0], [1, 3, 0, 2]])
def test_dedup_count_ignores_duplicate_order(order):
    records = [
        {"id": "1", "username": "amy"},
        {"id": "2", "username": "amy"},
        {"id": "3", "username": "ben"},
        {"id": "4"},
    ]
    shuffled = [records[i] for i in order]
    assert distinct_count(shuffled) == 3


def test_dedup_last_seen_wins():
    folded = dedup_by_key([{"id": "1", "username": "amy"}, {"id": "2", "username": "amy"}])
    assert folded == [{"id": "2", "username": "amy"}]


@pytest.mark.parametrize("present,total,expected", [(0, 0, 0), (2, 3, 67), (1, 8, 13), (1, 3, 33), (4, 4, 100)])
def test_attendance_percentage(present, total, expected):
    records = [{"date": f"2024-01-{i + 1:02d}", "status": "present" if i < present else "absent"}
               for i in range(total)]
    stats = attendance_stats(records)
    assert stats["percentage"] == expected
    assert stats["present"] == present
    assert stats["absent"] == total - present


def test_percentage_of_nothing_is_zero():
    assert percentage(0, 0) == 0
    assert submission_rate(0, 10, 0) == 0
    assert submission_rate(2, 5, 5) == 50


def test_conversation_list_groups_by_student():
    complaints = [
        {"id": "m1", "studentId": "A", "message": "hi", "status": "sent", "createdAt": "2024-01-01T10:00:00.000Z"},
        {"id": "m2", "studentId": "B", "message": "help", "status": "sent", "createdAt": "2024-01-02T10:00:00.000Z"},
        {"id": "m3", "studentId": "A", "message": "again", "status": "read", "createdAt": "2024-01-03T10:00:00.000Z"},
    ]
    conversations = conversation_list(complaints)
    assert [c["studentId"] for c in conversations] == ["A", "B"]
    assert conversations[0]["lastMessage"]["id"] == "m3"
    assert conversations[1]["lastMessage"]["id"] == "m2"
    assert conversations[0]["unread"] == 1


def test_admin_replies_are_not_unread():
    complaints = [
        {"id": "m1", "studentId": "A", "status": "sent", "sender": "admin", "createdAt": "2024-01-01T10:00:00.000Z"},
    ]
    assert conversation_list(complaints)[0]["unread"] == 0


def test_submission_status_counts_each_student_once():
    hw = {"id": "h1", "classId": "c1"}
    students = [{"id": "s1", "classId": "c1"}, {"id": "s2", "classId": "c1"}, {"id": "s3", "classId": "c2"}]
    submissions = [
        {"homeworkId": "h1", "studentId": "s1"},
        {"homeworkId": "h1", "studentId": "s1"},
        {"homeworkId": "h2", "studentId": "s2"},
    ]
    assert submission_status(hw, students, submissions) == {"submitted": 1, "pending": 1, "total": 2}
    assert submission_status(None, students, submissions) == {"submitted": 0, "pending": 0, "total": 0}


def test_teacher_classes_include_secondary():
    classes = [
        {"id": "c1", "teacherId": "t1"},
        {"id": "c2", "teacherId": "t2", "secondaryTeachers": [{"id": "t1", "name": "T1"}]},
        {"id": "c3", "teacherId": "t2"},
    ]
    assert [c["id"] for c in teacher_classes(classes, "t1")] == ["c1", "c2"]


def test_graduate_target_defaults_to_next_grade():
    classes = [{"id": "c9", "grade": "9"}, {"id": "c10", "grade": "10"}]
    student = {"id": "s1", "classId": "c9"}
    assert default_promotion_target(student, classes, 1) == "c10"
    assert default_promotion_target(student, classes[:1], 1) == GRADUATE_OUT
    assert default_promotion_target(student, classes, -1) is None


def test_parse_grade():
    assert parse_grade("10A") == 10
    assert parse_grade(" 9") == 9
    assert parse_grade("K") is None
    assert parse_grade(None) is None


def test_by_creation_puts_undated_first():
    records = [
        {"id": "b", "createdAt": "2024-01-02T00:00:00.000Z"},
        {"id": "a", "createdAt": "2024-01-02T00:00:00.000Z"},
        {"id": "z"},
    ]
    assert [r["id"] for r in by_creation(records)] == ["z", "a", "b"]


def test_live_teacher_names_and_class_labels():
    classes = [{"id": "c1", "teacherId": "t1", "teacherName": "Old Name"},
               {"id": "c2", "teacherId": "gone", "teacherName": "Cached"}]
    teachers = [{"id": "t1", "name": "New Name"}]
    live = with_live_teacher_names(classes, teachers)
    assert [c["liveTeacherName"] for c in live] == ["New Name", "Cached"]
    assert live[0]["teacherName"] == "Old Name"
    assert class_label({"classId": "c1"}, [{"id": "c1", "name": "9A"}]) == "9A"
    assert class_label({"classId": "missing"}, []) == "Unassigned"


def test_upcoming_homework_keeps_due_today():
    homework = [{"id": "h1", "dueDate": "2024-01-09"}, {"id": "h2", "dueDate": "2024-01-10"},
                {"id": "h3", "dueDate": "2024-02-01"}]
    assert [h["id"] for h in upcoming_homework(homework, date(2024, 1, 10))] == ["h2", "h3"]


def test_todays_schedule_falls_back_to_monday_on_weekends():
    entries = [
        {"day": "Monday", "startTime": "10:00", "subject": "Art"},
        {"day": "Monday", "startTime": "08:00", "subject": "Math"},
        {"day": "Tuesday", "startTime": "09:00", "subject": "Music"},
    ]
    saturday = date(2024, 1, 13)
    assert [e["subject"] for e in todays_schedule(entries, saturday)] == ["Math", "Art"]
    assert [e["subject"] for e in todays_schedule(entries, date(2024, 1, 9))] == ["Music"]


def test_dashboard_counts_dedupe_people():
    teachers = [{"id": "1", "username": "t"}, {"id": "2", "username": "t"}]
    students = [{"id": "3", "username": "s"}]
    classes = [{"id": "c1"}, {"id": "c2"}]
    assert dashboard_counts(teachers, classes, students) == {"teachers": 1, "classes": 2, "students": 1}


def test_week_order():
    entries = [{"day": "Friday", "startTime": "08:00"}, {"day": "Monday", "startTime": "10:00"},
               {"day": "Monday", "startTime": "08:00"}, {"day": "Sunday", "startTime": "08:00"}]
    assert [(e["day"], e["startTime"]) for e in week_order(entries)] == [
        ("Monday", "08:00"), ("Monday", "10:00"), ("Friday", "08:00"), ("Sunday", "08:00")]


def test_teacher_classes_accept_bare_secondary_ids():
    classes = [{"id": "c1", "teacherId": "t2", "secondaryTeachers": ["t1"]}]
    assert [c["id"] for c in teacher_classes(classes, "t1")] == ["c1"]
