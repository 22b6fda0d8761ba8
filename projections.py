"""
Derived views over store snapshots.

Everything here is a pure function of already-loaded data: a listener
snapshot (mapping of record id to record body) is first turned into a list
of ``{"id": ..., **body}`` dicts by ``materialize`` and every other helper
works on those lists. Nothing reads or writes the store.
"""

import math
import re
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from schemas import parse_timestamp

GRADUATE_OUT = "__graduate__"

DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
TIME_SLOTS = ["08:00", "09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]


def materialize(snapshot: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not snapshot:
        return []
    return [{**body, "id": key} for key, body in snapshot.items() if isinstance(body, dict)]


# -------------------- Sorting -------------------- #

def newest_first(records: Iterable[Dict[str, Any]], field: str = "createdAt") -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: parse_timestamp(r.get(field)), reverse=True)


def oldest_first(records: Iterable[Dict[str, Any]], field: str = "createdAt") -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: parse_timestamp(r.get(field)))


def by_creation(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Oldest first by createdAt, ties broken by the time-ordered record id."""
    return sorted(records, key=lambda r: (parse_timestamp(r.get("createdAt")), r.get("id", "")))


# -------------------- Dedup fold -------------------- #

def identity_key(record: Dict[str, Any]) -> str:
    return record.get("username") or record.get("id")


def dedup_by_key(records: Iterable[Dict[str, Any]], key=identity_key) -> List[Dict[str, Any]]:
    """Fold records keyed by username (falling back to id), last seen wins."""
    folded: Dict[str, Dict[str, Any]] = OrderedDict()
    for record in records:
        folded[key(record)] = record
    return list(folded.values())


def distinct_count(records: Iterable[Dict[str, Any]], key=identity_key) -> int:
    return len(dedup_by_key(records, key))


def search_by_name(records: Iterable[Dict[str, Any]], term: str) -> List[Dict[str, Any]]:
    term = (term or "").lower()
    return [r for r in records if term in (r.get("name") or "").lower()]


# -------------------- Scoping and joins -------------------- #

def teaches(cls: Dict[str, Any], teacher_id: str) -> bool:
    if cls.get("teacherId") == teacher_id:
        return True
    for st in cls.get("secondaryTeachers") or []:
        # older records list bare teacher ids
        if (st.get("id") if isinstance(st, dict) else st) == teacher_id:
            return True
    return False


def teacher_classes(classes: Iterable[Dict[str, Any]], teacher_id: str) -> List[Dict[str, Any]]:
    """Classes where the teacher is primary or listed as a secondary teacher."""
    return [c for c in classes if teaches(c, teacher_id)]


def primary_classes(classes: Iterable[Dict[str, Any]], teacher_id: str) -> List[Dict[str, Any]]:
    return [c for c in classes if c.get("teacherId") == teacher_id]


def find_by_id(records: Iterable[Dict[str, Any]], record_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    return next((r for r in records if r.get("id") == record_id), None)


def find_by_username(records: Iterable[Dict[str, Any]], username: str) -> Optional[Dict[str, Any]]:
    return next((r for r in records if r.get("username") == username), None)


def students_in_class(students: Iterable[Dict[str, Any]], class_id: str) -> List[Dict[str, Any]]:
    return [s for s in students if s.get("classId") == class_id]


def students_in_classes(students: Iterable[Dict[str, Any]], classes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    class_ids = {c["id"] for c in classes}
    return [s for s in students if s.get("classId") in class_ids]


def class_label(student: Dict[str, Any], classes: Iterable[Dict[str, Any]]) -> str:
    """Live class name for a student, 'Unassigned' when the class is gone."""
    cls = find_by_id(classes, student.get("classId"))
    return cls["name"] if cls else "Unassigned"


def resolve_teacher_name(teacher_id: Optional[str], teachers: Iterable[Dict[str, Any]],
                         fallback: Optional[str] = None) -> str:
    teacher = find_by_id(teachers, teacher_id)
    if teacher:
        return teacher.get("name", "")
    return fallback or "Unassigned"


def with_live_teacher_names(classes: Iterable[Dict[str, Any]], teachers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{**c, "liveTeacherName": resolve_teacher_name(c.get("teacherId"), teachers, c.get("teacherName"))}
            for c in classes]


# -------------------- Homework and submissions -------------------- #

def to_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def homework_for_classes(homework: Iterable[Dict[str, Any]], classes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    class_ids = {c["id"] for c in classes}
    return [h for h in homework if h.get("classId") in class_ids]


def student_homework(homework: Iterable[Dict[str, Any]], class_id: Optional[str]) -> List[Dict[str, Any]]:
    """Homework for one class, soonest due first."""
    scoped = [h for h in homework if h.get("classId") == class_id]
    return sorted(scoped, key=lambda h: parse_timestamp(h.get("dueDate")))


def upcoming_homework(homework: Iterable[Dict[str, Any]], today: Optional[date] = None) -> List[Dict[str, Any]]:
    today = today or date.today()
    return [h for h in homework if (to_date(h.get("dueDate")) or date.min) >= today]


def days_left(hw: Dict[str, Any], today: Optional[date] = None) -> Optional[int]:
    due = to_date(hw.get("dueDate"))
    if due is None:
        return None
    return (due - (today or date.today())).days


def submissions_for(submissions: Iterable[Dict[str, Any]], homework_id: str) -> List[Dict[str, Any]]:
    return [s for s in submissions if s.get("homeworkId") == homework_id]


def has_submitted(submissions: Iterable[Dict[str, Any]], homework_id: str, student_id: str) -> bool:
    return any(s.get("homeworkId") == homework_id and s.get("studentId") == student_id for s in submissions)


def pending_students(hw: Dict[str, Any], students: Iterable[Dict[str, Any]],
                     submissions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    submitted_ids = {s.get("studentId") for s in submissions_for(submissions, hw["id"])}
    return [s for s in students_in_class(students, hw.get("classId")) if s["id"] not in submitted_ids]


def submission_status(hw: Optional[Dict[str, Any]], students: List[Dict[str, Any]],
                      submissions: List[Dict[str, Any]]) -> Dict[str, int]:
    """Submitted/pending/total for one homework.

    A student who submitted twice still counts once.
    """
    if not hw:
        return {"submitted": 0, "pending": 0, "total": 0}
    total = len(students_in_class(students, hw.get("classId")))
    pending = len(pending_students(hw, students, submissions))
    return {"submitted": total - pending, "pending": pending, "total": total}


# -------------------- Conversations -------------------- #

def group_conversations(complaints: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for msg in complaints:
        groups.setdefault(msg.get("studentId"), []).append(msg)
    return {sid: oldest_first(msgs) for sid, msgs in groups.items()}


def conversation_list(complaints: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One entry per student, showing the most recent message, newest conversation first."""
    entries = []
    for sid, thread in group_conversations(complaints).items():
        last = thread[-1]
        entries.append({
            "studentId": sid,
            "studentName": last.get("studentName"),
            "className": last.get("className"),
            "lastMessage": last,
            "unread": sum(1 for m in thread if m.get("sender", "student") == "student" and m.get("status") == "sent"),
        })
    entries.sort(key=lambda e: parse_timestamp(e["lastMessage"].get("createdAt")), reverse=True)
    return entries


def conversation_thread(complaints: Iterable[Dict[str, Any]], student_id: str) -> List[Dict[str, Any]]:
    return oldest_first(m for m in complaints if m.get("studentId") == student_id)


# -------------------- Attendance and stats -------------------- #

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(part: int, whole: int) -> int:
    if not whole:
        return 0
    return round_half_up(100 * part / whole)


def attendance_history(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: r.get("date") or "", reverse=True)


def attendance_stats(records: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    ordered = sorted(records, key=lambda r: r.get("date") or "")
    total = len(ordered)
    present = sum(1 for r in ordered if r.get("status") == "present")
    return {"present": present, "absent": total - present, "total": total,
            "percentage": percentage(present, total)}


def attendance_for_date(snapshot: Optional[Dict[str, Any]], on_date: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """The (recordId, record) stored for a date in one student's attendance, if any."""
    for record_id, record in (snapshot or {}).items():
        if isinstance(record, dict) and record.get("date") == on_date:
            return record_id, record
    return None


def submission_rate(homework_count: int, student_count: int, submission_count: int) -> int:
    return percentage(submission_count, homework_count * student_count)


def class_distribution(classes: Iterable[Dict[str, Any]], students: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"name": c.get("name"), "students": len(students_in_class(students, c["id"]))} for c in classes]


def subject_distribution(teachers: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = OrderedDict()
    for t in teachers:
        counts[t.get("subject")] = counts.get(t.get("subject"), 0) + 1
    return [{"name": name, "value": value} for name, value in counts.items()]


def dashboard_counts(teachers, classes, students) -> Dict[str, int]:
    return {
        "teachers": distinct_count(teachers),
        "classes": distinct_count(classes, key=lambda c: c.get("id")),
        "students": distinct_count(students),
    }


# -------------------- Promotion -------------------- #

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_grade(grade) -> Optional[int]:
    """Leading integer of a grade label ("10", "10A" -> 10), None when there is none."""
    match = _LEADING_INT.match(str(grade or ""))
    return int(match.group(1)) if match else None


def promotion_targets(student: Dict[str, Any], classes: List[Dict[str, Any]], step: int) -> List[Dict[str, Any]]:
    current = find_by_id(classes, student.get("classId"))
    level = parse_grade(current.get("grade")) if current else None
    if level is None:
        return []
    return [c for c in classes if parse_grade(c.get("grade")) == level + step]


def default_promotion_target(student: Dict[str, Any], classes: List[Dict[str, Any]], step: int = 1) -> Optional[str]:
    """First class one grade up (or down); graduating falls back to GRADUATE_OUT."""
    targets = promotion_targets(student, classes, step)
    if targets:
        return targets[0]["id"]
    return GRADUATE_OUT if step > 0 else None


# -------------------- Timetable -------------------- #

def timetable_for_class(entries: Iterable[Dict[str, Any]], class_id: Optional[str]) -> List[Dict[str, Any]]:
    if not class_id:
        return []
    return [e for e in entries if e.get("classId") == class_id]


def timetable_slot(entries: Iterable[Dict[str, Any]], day: str, start_time: str) -> Optional[Dict[str, Any]]:
    return next((e for e in entries if e.get("day") == day and e.get("startTime") == start_time), None)


def todays_schedule(entries: Iterable[Dict[str, Any]], today: Optional[date] = None) -> List[Dict[str, Any]]:
    weekday = (today or date.today()).weekday()
    day = DAYS[weekday] if weekday < len(DAYS) else "Monday"
    return sorted((e for e in entries if e.get("day") == day), key=lambda e: e.get("startTime", ""))


def week_order(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Monday to Friday, then by startTime. Unknown days go last."""
    def key(e):
        day = e.get("day")
        return DAYS.index(day) if day in DAYS else len(DAYS), e.get("startTime", "")
    return sorted(entries, key=key)
