"""
Record Schemas for the School Portal

Each Pydantic model below describes the records kept under one top-level
store path (see COLLECTIONS). Records are stored with camelCase keys, so
every model dumps by alias. The store itself enforces none of this; the
models shape what the workflows write.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ROLES = ("admin", "teacher", "student")
PRIORITIES = ("normal", "important", "urgent")
ATTENDANCE_STATUSES = ("present", "absent")
MESSAGE_STATUSES = ("sent", "read", "resolved")

# Store paths
ADMIN_PATH = "users/admin"
POPUP_PATH = "settings/popup"
COLLECTIONS = {
    "teachers": "teachers",
    "classes": "classes",
    "students": "students",
    "announcements": "announcements",
    "class_announcements": "classAnnouncements",
    "homework": "homework",
    "submissions": "submissions",
    "attendance": "attendance",
    "grades": "grades",
    "teacher_grades": "teacherGrades",
    "complaints": "complaints",
    "timetable": "timetable",
}


def now_iso() -> str:
    """UTC timestamp in the store's format, e.g. 2024-01-10T08:30:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value) -> datetime:
    """Parse a stored timestamp or date string. Unparseable values sort first."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)
    else:
        return datetime.min.replace(tzinfo=timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    created_at: Optional[str] = None

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Identities
class AdminUser(Record):
    id: str = "admin"
    username: str
    password: str
    name: str
    role: str = "admin"
    password_changed: Optional[bool] = None


class Teacher(Record):
    name: str
    username: str
    password: str
    subject: str
    email: Optional[str] = None
    phone: Optional[str] = None
    password_changed: Optional[bool] = None
    old_password: Optional[str] = None


class Student(Record):
    name: str
    username: str
    password: str
    class_id: str
    class_name: str = "Unassigned"
    email: Optional[str] = None
    phone: Optional[str] = None
    password_changed: Optional[bool] = None
    old_password: Optional[str] = None


class Identity(BaseModel):
    """The resolved, role-tagged session identity."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    username: str
    name: str
    role: Literal["admin", "teacher", "student"]
    class_id: Optional[str] = None
    class_name: Optional[str] = None

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Academic structure
class SecondaryTeacher(BaseModel):
    id: str
    name: str


class ClassRoom(Record):
    name: str
    grade: str
    teacher_id: str
    teacher_name: str = "Unassigned"
    secondary_teachers: List[SecondaryTeacher] = Field(default_factory=list)


class TimetableEntry(Record):
    class_id: str
    class_name: str = ""
    subject: str
    day: str = "Monday"
    start_time: str = "08:00"
    end_time: str = "09:00"
    teacher_id: Optional[str] = None
    teacher_name: Optional[str] = None
    room: str = ""


# Communications
class Announcement(Record):
    title: str
    content: str
    priority: Literal["normal", "important", "urgent"] = "normal"
    author: str = "Principal"


class ClassAnnouncement(Record):
    title: str
    content: str
    class_id: str
    class_name: str = ""
    teacher_id: str
    teacher_name: str


class Complaint(Record):
    """One chat message; a conversation is every Complaint sharing studentId."""
    student_id: str
    student_name: str
    class_id: Optional[str] = None
    class_name: Optional[str] = None
    subject: str = "Chat Message"
    message: str
    status: Literal["sent", "read", "resolved"] = "sent"
    read: bool = False
    sender: Literal["student", "admin"] = "student"


class PopupConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = False
    banner_text: str = ""


# Learning work
class Homework(Record):
    title: str
    description: str = ""
    due_date: str
    class_id: str
    class_name: str = ""
    subject: str = ""
    teacher_id: str


class Submission(Record):
    homework_id: str
    student_id: str
    student_name: str
    submitted_at: str
    status: str = "submitted"
    content: str = ""
    link: str = ""
    grade: Optional[str] = None


# Attendance and performance
class AttendanceRecord(Record):
    """Stored under attendance/{studentId}/{recordId}."""
    date: str = Field(..., description="YYYY-MM-DD")
    status: Literal["present", "absent"]
    class_id: str
    marked_by: Optional[str] = None
    updated_at: Optional[str] = None


class GradeRecord(BaseModel):
    """Stored under grades/{studentId} and mirrored under teacherGrades/{teacherId}."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject: str
    title: str
    grade: str
    student_id: str
    student_name: str
    teacher_id: str
    teacher_name: str
    date: str
    homework_id: Optional[str] = None
    class_name: Optional[str] = None

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
