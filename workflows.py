"""
Role-gated mutations.

Every workflow checks the caller's capability, validates its input against
the currently stored data and then writes. No workflow is atomic across
several writes: the grade dual-write and the per-student attendance save
stop at the first failing write and leave what was already written.
"""

import logging
from typing import Dict, Iterable, List, Optional

from config import get_config
from database import create_document
from errors import NotFoundError, PasswordPolicyError, StoreOperationError, ValidationError, DuplicateUsernameError
from projections import (
    GRADUATE_OUT, DAYS, attendance_for_date, default_promotion_target, find_by_id, find_by_username,
    materialize, parse_grade, students_in_class, teacher_classes, group_conversations,
)
from schemas import (
    ATTENDANCE_STATUSES, POPUP_PATH, PRIORITIES, Announcement, AttendanceRecord, ClassAnnouncement,
    ClassRoom, Complaint, GradeRecord, Homework, PopupConfig, Student, Submission, Teacher,
    TimetableEntry, now_iso,
)
from session import require_capability, user_path

logger = logging.getLogger(__name__)

DELETE_CAPABILITIES = {
    "teachers": "manage_teachers",
    "classes": "manage_classes",
    "students": "manage_students",
    "announcements": "post_announcements",
    "classAnnouncements": "post_class_announcements",
    "homework": "assign_homework",
    "timetable": "manage_timetable",
}


def _load(store, path: str) -> List[dict]:
    return materialize(store.get(path))


def _require(message: str = "Please fill all fields", /, **fields) -> None:
    missing = [name for name, value in fields.items() if value is None or not str(value).strip()]
    if missing:
        logger.debug("missing fields: %s", ", ".join(missing))
        raise ValidationError(message)


def _ensure_unique_username(records: Iterable[dict], username: str) -> None:
    if find_by_username(records, username):
        raise DuplicateUsernameError()


def scoped_class(store, identity, class_id: str) -> dict:
    """A class the caller may act on: any class for admin, own classes for teachers."""
    classes = _load(store, "classes")
    if identity.role == "teacher":
        classes = teacher_classes(classes, identity.id)
    cls = find_by_id(classes, class_id)
    if cls is None:
        raise ValidationError("Invalid class")
    return cls


# -------------------- People -------------------- #

def enroll_teacher(store, identity, name: str, username: str, password: str, subject: str) -> str:
    require_capability(identity, "manage_teachers")
    _require(name=name, username=username, password=password, subject=subject)
    _ensure_unique_username(_load(store, "teachers"), username)
    teacher_id = create_document(store, "teachers", Teacher(name=name, username=username,
                                                            password=password, subject=subject))
    logger.info("Teacher %s enrolled as %s", username, teacher_id)
    return teacher_id


def enroll_student(store, identity, name: str, username: str, password: str, class_id: str) -> str:
    require_capability(identity, "enroll_students")
    _require(name=name, username=username, password=password, class_id=class_id)
    _ensure_unique_username(_load(store, "students"), username)
    if identity.role == "teacher":
        class_name = scoped_class(store, identity, class_id)["name"]
    else:
        cls = find_by_id(_load(store, "classes"), class_id)
        class_name = cls["name"] if cls else "Unassigned"
    student_id = create_document(store, "students", Student(name=name, username=username, password=password,
                                                            class_id=class_id, class_name=class_name))
    logger.info("Student %s enrolled in %s", username, class_name)
    return student_id


def delete_record(store, identity, collection: str, record_id: str) -> None:
    capability = DELETE_CAPABILITIES.get(collection)
    if capability is None:
        raise ValidationError(f"Records in {collection} cannot be deleted")
    require_capability(identity, capability)
    _require(record_id=record_id)
    store.remove(f"{collection}/{record_id}")
    logger.info("Removed %s/%s", collection, record_id)


# -------------------- Classes -------------------- #

def create_class(store, identity, name: str, grade: str, teacher_id: str) -> str:
    require_capability(identity, "manage_classes")
    _require(name=name, grade=grade, teacher_id=teacher_id)
    teacher = find_by_id(_load(store, "teachers"), teacher_id)
    cls = ClassRoom(name=name, grade=grade, teacher_id=teacher_id,
                    teacher_name=teacher["name"] if teacher else "Unassigned")
    return create_document(store, "classes", cls)


def _secondary_entries(teachers: List[dict], teacher_ids: Iterable[str]) -> List[dict]:
    entries = []
    for tid in teacher_ids:
        teacher = find_by_id(teachers, tid)
        if teacher:
            entries.append({"id": tid, "name": teacher.get("name", "")})
    return entries


def manage_class(store, identity, class_id: str, name: str, grade: str, teacher_id: str,
                 secondary_teacher_ids: Iterable[str] = ()) -> None:
    """Overwrite a class, rebuilding secondaryTeachers from the given selection."""
    require_capability(identity, "manage_classes")
    _require(name=name, grade=grade, teacher_id=teacher_id)
    if store.get(f"classes/{class_id}") is None:
        raise NotFoundError("Class not found")
    teachers = _load(store, "teachers")
    teacher = find_by_id(teachers, teacher_id)
    store.update(f"classes/{class_id}", {
        "name": name,
        "grade": grade,
        "teacherId": teacher_id,
        "teacherName": teacher["name"] if teacher else "Unassigned",
        "secondaryTeachers": _secondary_entries(teachers, secondary_teacher_ids),
    })


def add_secondary_teachers(store, identity, class_id: str, teacher_ids: Iterable[str]) -> List[dict]:
    """Merge teachers into the existing secondaryTeachers list, skipping ids already there."""
    require_capability(identity, "manage_classes")
    cls = store.get(f"classes/{class_id}")
    if cls is None:
        raise NotFoundError("Class not found")
    current = list(cls.get("secondaryTeachers") or [])
    known = {st.get("id") if isinstance(st, dict) else st for st in current}
    additions = _secondary_entries(_load(store, "teachers"), [t for t in teacher_ids if t not in known])
    if not additions:
        return current
    merged = current + additions
    store.update(f"classes/{class_id}", {"secondaryTeachers": merged})
    return merged


# -------------------- Communications -------------------- #

def post_announcement(store, identity, title: str, content: str, priority: str = "normal") -> str:
    require_capability(identity, "post_announcements")
    _require(title=title, content=content)
    if priority not in PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(PRIORITIES)}")
    return create_document(store, "announcements", Announcement(title=title, content=content, priority=priority))


def post_class_announcement(store, identity, title: str, content: str, class_id: str) -> str:
    require_capability(identity, "post_class_announcements")
    _require(title=title, content=content, class_id=class_id)
    cls = scoped_class(store, identity, class_id)
    return create_document(store, "classAnnouncements", ClassAnnouncement(
        title=title, content=content, class_id=class_id, class_name=cls.get("name", ""),
        teacher_id=identity.id, teacher_name=identity.name))


def send_message(store, identity, message: str) -> str:
    require_capability(identity, "send_messages")
    _require("Please enter a message", message=message)
    return create_document(store, "complaints", Complaint(
        student_id=identity.id, student_name=identity.name, class_id=identity.class_id,
        class_name=identity.class_name, message=message))


def reply_to_student(store, identity, student_id: str, message: str) -> str:
    require_capability(identity, "reply_messages")
    _require("Please enter a message", message=message)
    thread = group_conversations(_load(store, "complaints")).get(student_id)
    if thread:
        ref = thread[-1]
        student_name, class_id, class_name = ref.get("studentName"), ref.get("classId"), ref.get("className")
    else:
        student = store.get(f"students/{student_id}")
        if student is None:
            raise NotFoundError("Student not found")
        student_name, class_id, class_name = student.get("name"), student.get("classId"), student.get("className")
    return create_document(store, "complaints", Complaint(
        student_id=student_id, student_name=student_name or "", class_id=class_id, class_name=class_name,
        message=message, sender="admin"))


def _set_thread_status(store, student_id: str, status: str, only_from: Iterable[str]) -> int:
    changed = 0
    for msg in _load(store, "complaints"):
        if msg.get("studentId") != student_id or msg.get("sender", "student") != "student":
            continue
        if msg.get("status") not in only_from:
            continue
        store.update(f"complaints/{msg['id']}", {"status": status, "read": True})
        changed += 1
    return changed


def mark_conversation_read(store, identity, student_id: str) -> int:
    require_capability(identity, "reply_messages")
    return _set_thread_status(store, student_id, "read", ("sent",))


def resolve_conversation(store, identity, student_id: str) -> int:
    require_capability(identity, "reply_messages")
    return _set_thread_status(store, student_id, "resolved", ("sent", "read"))


# -------------------- Homework -------------------- #

def assign_homework(store, identity, title: str, due_date: str, class_id: str,
                    description: str = "", subject: str = "") -> str:
    require_capability(identity, "assign_homework")
    _require("Please fill required fields", title=title, due_date=due_date, class_id=class_id)
    cls = scoped_class(store, identity, class_id)
    return create_document(store, "homework", Homework(
        title=title, description=description, due_date=due_date, class_id=class_id,
        class_name=cls.get("name", ""), subject=subject, teacher_id=identity.id))


def submit_homework(store, identity, homework_id: str, content: str = "", link: str = "") -> str:
    """Push a submission. The store does not stop a second one for the same homework."""
    require_capability(identity, "submit_homework")
    if not (content or "").strip() and not (link or "").strip():
        raise ValidationError("Please add some text or a link")
    if store.get(f"homework/{homework_id}") is None:
        raise NotFoundError("Homework not found")
    return store.push("submissions", Submission(
        homework_id=homework_id, student_id=identity.id, student_name=identity.name,
        submitted_at=now_iso(), content=content or "", link=link or "").to_store())


# -------------------- Attendance -------------------- #

class AttendanceSheet:
    """Pending attendance for one class on one date.

    Statuses are edited locally and only written by ``save``. Records that
    already exist for the date are updated, the rest are pushed.
    """

    def __init__(self, store, identity, class_id: str, on_date: str):
        require_capability(identity, "mark_attendance")
        _require(class_id=class_id, date=on_date)
        if identity.role == "teacher":
            scoped_class(store, identity, class_id)
        self.store = store
        self.identity = identity
        self.class_id = class_id
        self.date = on_date
        self.students = students_in_class(_load(store, "students"), class_id)
        self.existing: Dict[str, str] = {}
        self.statuses: Dict[str, str] = {}
        self.reload()

    def reload(self) -> None:
        self.existing, self.statuses = {}, {}
        for student in self.students:
            found = attendance_for_date(self.store.get(f"attendance/{student['id']}"), self.date)
            if found:
                record_id, record = found
                self.existing[student["id"]] = record_id
                self.statuses[student["id"]] = record.get("status")

    def mark(self, student_id: str, status: str) -> None:
        if status not in ATTENDANCE_STATUSES:
            raise ValidationError("Status must be present or absent")
        if not any(s["id"] == student_id for s in self.students):
            raise ValidationError("Student is not in this class")
        self.statuses[student_id] = status

    def mark_all_present(self) -> None:
        self.statuses = {s["id"]: "present" for s in self.students}

    def counts(self) -> Dict[str, int]:
        present = sum(1 for v in self.statuses.values() if v == "present")
        absent = sum(1 for v in self.statuses.values() if v == "absent")
        return {"present": present, "absent": absent}

    def save(self) -> Dict[str, int]:
        result = {"updated": 0, "inserted": 0}
        written: List[str] = []
        for student in self.students:
            sid = student["id"]
            status = self.statuses.get(sid)
            if not status:
                continue
            try:
                if sid in self.existing:
                    self.store.update(f"attendance/{sid}/{self.existing[sid]}",
                                      {"status": status, "updatedAt": now_iso()})
                    result["updated"] += 1
                else:
                    record = AttendanceRecord(date=self.date, status=status, class_id=self.class_id,
                                              marked_by=self.identity.id, created_at=now_iso())
                    self.existing[sid] = self.store.push(f"attendance/{sid}", record.to_store())
                    result["inserted"] += 1
            except StoreOperationError as e:
                logger.warning("Attendance save stopped at %s; already written: %s", sid, written)
                raise StoreOperationError(e.message, completed=written) from e
            written.append(sid)
        logger.info("Attendance for %s on %s saved: %s", self.class_id, self.date, result)
        return result


def mark_attendance(store, identity, class_id: str, on_date: str, statuses: Dict[str, str]) -> Dict[str, int]:
    sheet = AttendanceSheet(store, identity, class_id, on_date)
    for student_id, status in statuses.items():
        sheet.mark(student_id, status)
    return sheet.save()


# -------------------- Grades -------------------- #

def _push_each(store, paths: List[str], payload: dict) -> Dict[str, str]:
    ids: Dict[str, str] = {}
    completed: List[str] = []
    for path in paths:
        try:
            ids[path] = store.push(path, payload)
        except StoreOperationError as e:
            logger.warning("Write to %s failed after %s", path, completed)
            raise StoreOperationError(e.message, completed=completed) from e
        completed.append(path)
    return ids


def assign_grade(store, identity, student_id: str, grade: str, title: Optional[str] = None,
                 homework_id: Optional[str] = None) -> Dict[str, str]:
    """Record a grade under the student and mirror it under the teacher.

    The two pushes are independent steps; if the second fails the first stays.
    """
    require_capability(identity, "assign_grades")
    _require("Enter a grade", grade=grade)
    student = store.get(f"students/{student_id}")
    if student is None:
        raise NotFoundError("Student not found")

    if homework_id:
        hw = store.get(f"homework/{homework_id}") or {}
        subject = hw.get("subject") or "Assignment"
        title = title or hw.get("title") or "Assignment"
        class_name = None
    else:
        subject = "General"
        title = title or "General"
        class_name = student.get("className", "")

    record = GradeRecord(subject=subject, title=title, grade=grade, student_id=student_id,
                         student_name=student.get("name") or "Unknown", teacher_id=identity.id,
                         teacher_name=identity.name, date=now_iso(), homework_id=homework_id,
                         class_name=class_name)
    return _push_each(store, [f"grades/{student_id}", f"teacherGrades/{identity.id}"], record.to_store())


# -------------------- Promotion -------------------- #

def promote_student(store, identity, student_id: str, target_class_id: Optional[str] = None,
                    step: int = 1) -> Optional[str]:
    """Move a student one grade up (step=1) or down (step=-1).

    Without an explicit target the first class of the neighbouring grade is
    used. GRADUATE_OUT removes the student record. Returns the new class id,
    or None when the student graduated out.
    """
    require_capability(identity, "promote_students")
    student = store.get(f"students/{student_id}")
    if student is None:
        raise NotFoundError("Student not found")
    student = {**student, "id": student_id}
    classes = _load(store, "classes")

    target = target_class_id or default_promotion_target(student, classes, step)
    if target == GRADUATE_OUT:
        if step < 0:
            raise ValidationError("Cannot graduate out while demoting")
        store.remove(f"students/{student_id}")
        logger.info("Student %s graduated out of school", student_id)
        return None
    if target is None:
        current = find_by_id(classes, student.get("classId"))
        level = parse_grade(current.get("grade")) if current else None
        raise ValidationError(f"No class found for grade {level + step}" if level is not None
                              else "Student has no class with a numeric grade")
    cls = find_by_id(classes, target)
    if cls is None:
        raise NotFoundError("Target class not found")
    store.update(f"students/{student_id}", {"classId": cls["id"], "className": cls.get("name", "")})
    return cls["id"]


def graduate_student(store, identity, student_id: str, target_class_id: Optional[str] = None) -> Optional[str]:
    return promote_student(store, identity, student_id, target_class_id, step=1)


def demote_student(store, identity, student_id: str, target_class_id: Optional[str] = None) -> Optional[str]:
    return promote_student(store, identity, student_id, target_class_id, step=-1)


# -------------------- Account settings -------------------- #

def change_password(store, identity, current_password: str, new_password: str, confirm_password: str,
                    config=None) -> None:
    """Self-service change. Non-admins get one change until an admin resets them."""
    require_capability(identity, "change_password")
    config = config or get_config()
    path = user_path(identity)
    user = store.get(path)
    if user is None:
        raise NotFoundError("Account not found")
    is_admin = identity.role == "admin"

    if not is_admin and user.get("passwordChanged"):
        raise PasswordPolicyError("You have already changed your password once. Contact admin to reset it.")
    if current_password != user.get("password"):
        raise PasswordPolicyError("Current password is incorrect")
    if new_password != confirm_password:
        raise PasswordPolicyError("Passwords don't match")
    if len(new_password or "") < config.MIN_PASSWORD_LENGTH:
        raise PasswordPolicyError(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
    if not is_admin and new_password in (user.get("password"), user.get("oldPassword")):
        raise PasswordPolicyError("New password cannot be the same as old password")

    store.update(path, {"password": new_password, "oldPassword": user.get("password"), "passwordChanged": True})
    logger.info("Password changed for %s", identity.username)


def reset_password(store, identity, collection: str, user_id: str, new_password: str) -> None:
    """Admin reset: sets the password and re-arms the one-time self-service change."""
    require_capability(identity, "reset_passwords")
    if collection not in ("teachers", "students"):
        raise ValidationError("Only teacher and student passwords can be reset")
    _require(new_password=new_password)
    path = f"{collection}/{user_id}"
    if store.get(path) is None:
        raise NotFoundError("Account not found")
    store.update(path, {"password": new_password, "passwordChanged": False})
    logger.info("Password reset for %s", path)


def update_profile(store, identity, name: Optional[str] = None, email: Optional[str] = None,
                   phone: Optional[str] = None) -> dict:
    require_capability(identity, "update_profile")
    changes = {k: v for k, v in (("name", name), ("email", email), ("phone", phone)) if v is not None}
    if "name" in changes:
        _require(name=changes["name"])
    if changes:
        store.update(user_path(identity), changes)
    return changes


# -------------------- Timetable and settings -------------------- #

def add_timetable_entry(store, identity, class_id: str, subject: str, day: str = "Monday",
                        start_time: str = "08:00", end_time: str = "09:00", room: str = "") -> str:
    require_capability(identity, "manage_timetable")
    _require("Please fill all required fields", subject=subject, class_id=class_id)
    if day not in DAYS:
        raise ValidationError(f"Day must be one of {', '.join(DAYS)}")
    cls = find_by_id(_load(store, "classes"), class_id)
    if cls is None:
        raise ValidationError("Invalid class")
    if identity.role == "teacher":
        teacher_id, teacher_name = identity.id, identity.name
    else:
        teacher_id, teacher_name = cls.get("teacherId"), cls.get("teacherName")
    return create_document(store, "timetable", TimetableEntry(
        class_id=class_id, class_name=cls.get("name", ""), subject=subject, day=day,
        start_time=start_time, end_time=end_time, teacher_id=teacher_id, teacher_name=teacher_name,
        room=room))


def update_popup(store, identity, enabled: bool, banner_text: str = "") -> dict:
    require_capability(identity, "manage_settings")
    config = PopupConfig(enabled=enabled, banner_text=banner_text).model_dump(by_alias=True)
    store.set(POPUP_PATH, config)
    return config
