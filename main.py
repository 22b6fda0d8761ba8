import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from jose import JWTError, jwt
from pydantic import BaseModel

import csv_io
import database
import workflows
from config import get_config
from errors import PortalError, ValidationError
from projections import GRADUATE_OUT, default_promotion_target, materialize, promotion_targets, week_order
from schemas import (
    Announcement, AttendanceRecord, ClassAnnouncement, ClassRoom, Complaint, GradeRecord,
    Homework, Identity, PopupConfig, Student, Submission, Teacher, TimetableEntry,
)
from session import initialize_admin, login as resolve_login
from views import AdminView, AnalyticsView, InboxView, PopupView, StudentView, TeacherView, TimetableView

config = get_config()

logging.basicConfig(
    level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def get_db():
    return database.db


@asynccontextmanager
async def lifespan(app: FastAPI):
    initialize_admin(get_db(), config)
    yield


app = FastAPI(title="School Portal API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# -------------------- Auth & Session -------------------- #

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class LoginPayload(BaseModel):
    username: str
    password: str


def create_access_token(identity: Identity) -> str:
    """Encode the identity itself. Tokens do not expire; logout is client-side."""
    to_encode = identity.to_store()
    to_encode["sub"] = identity.username
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


async def get_current_user(request: Request) -> Optional[Identity]:
    """Return the identity carried by the bearer token, else None. The store is not consulted."""
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None
    return Identity.model_validate(payload)


def require_roles(*roles: str):
    async def _dep(user: Optional[Identity] = Depends(get_current_user)):
        if user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if roles and user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden for role")
        return user
    return _dep


# -------------------- Request logging -------------------- #

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "School Portal Backend is running"}


@app.get("/schema")
def get_schema():
    models = [
        Teacher, ClassRoom, Student, Announcement, ClassAnnouncement, Homework, Submission,
        AttendanceRecord, GradeRecord, Complaint, PopupConfig, TimetableEntry, Identity,
    ]
    return {m.__name__: m.model_json_schema(by_alias=True) for m in models}


@app.get("/test")
def test_store(store=Depends(get_db)):
    response = {
        "backend": "Running",
        "store": type(store).__name__,
        "collections": [],
    }
    for name in ("teachers", "classes", "students", "homework", "submissions", "complaints"):
        count = len(database.get_documents(store, name))
        response["collections"].append({"name": name, "records": count})
    return response


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginPayload, store=Depends(get_db)):
    identity = resolve_login(store, payload.username, payload.password)
    return TokenResponse(access_token=create_access_token(identity), user=identity.to_store())


@app.get("/auth/me")
def me(user: Identity = Depends(require_roles())):
    return user.to_store()


@app.post("/auth/logout")
def logout():
    return {"status": "logged out"}


# -------------------- Admin endpoints -------------------- #

class TeacherPayload(BaseModel):
    name: str = ""
    username: str = ""
    password: str = ""
    subject: str = ""


class ClassPayload(BaseModel):
    name: str = ""
    grade: str = ""
    teacher_id: str = ""
    secondary_teacher_ids: List[str] = []


class SecondaryTeachersPayload(BaseModel):
    teacher_ids: List[str]


class StudentPayload(BaseModel):
    name: str = ""
    username: str = ""
    password: str = ""
    class_id: str = ""


class AnnouncementPayload(BaseModel):
    title: str = ""
    content: str = ""
    priority: str = "normal"


class PromotionPayload(BaseModel):
    target_class_id: Optional[str] = None


class ResetPasswordPayload(BaseModel):
    collection: str
    user_id: str
    new_password: str


class MessagePayload(BaseModel):
    message: str = ""


class PopupPayload(BaseModel):
    enabled: bool
    banner_text: str = ""


@app.get("/admin/dashboard")
def admin_dashboard(user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AdminView(store, user) as view:
        return {"counts": view.counts, "announcements": view.recent_announcements()}


@app.get("/admin/teachers")
def list_teachers(search: str = "", user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AdminView(store, user) as view:
        return view.search_teachers(search)


@app.post("/admin/teachers")
def add_teacher(payload: TeacherPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    teacher_id = workflows.enroll_teacher(store, user, payload.name, payload.username, payload.password,
                                          payload.subject)
    return {"id": teacher_id}


@app.delete("/admin/teachers/{teacher_id}")
def delete_teacher(teacher_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    workflows.delete_record(store, user, "teachers", teacher_id)
    return {"status": "deleted"}


@app.get("/admin/classes")
def list_classes(user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AdminView(store, user) as view:
        return view.classes


@app.post("/admin/classes")
def add_class(payload: ClassPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"id": workflows.create_class(store, user, payload.name, payload.grade, payload.teacher_id)}


@app.put("/admin/classes/{class_id}")
def update_class(class_id: str, payload: ClassPayload, user=Depends(require_roles("admin")),
                 store=Depends(get_db)):
    workflows.manage_class(store, user, class_id, payload.name, payload.grade, payload.teacher_id,
                           payload.secondary_teacher_ids)
    return {"status": "updated"}


@app.post("/admin/classes/{class_id}/secondary-teachers")
def add_secondary(class_id: str, payload: SecondaryTeachersPayload, user=Depends(require_roles("admin")),
                  store=Depends(get_db)):
    return workflows.add_secondary_teachers(store, user, class_id, payload.teacher_ids)


@app.delete("/admin/classes/{class_id}")
def delete_class(class_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    workflows.delete_record(store, user, "classes", class_id)
    return {"status": "deleted"}


@app.get("/admin/students")
def list_students(search: str = "", user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AdminView(store, user) as view:
        return view.search_students(search)


@app.post("/admin/students")
def add_student(payload: StudentPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    student_id = workflows.enroll_student(store, user, payload.name, payload.username, payload.password,
                                          payload.class_id)
    return {"id": student_id}


@app.delete("/admin/students/{student_id}")
def delete_student(student_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    workflows.delete_record(store, user, "students", student_id)
    return {"status": "deleted"}


@app.get("/admin/students/{student_id}/promotion")
def promotion_options(student_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    student = store.get(f"students/{student_id}")
    if student is None:
        raise HTTPException(status_code=404, detail="Student not found")
    student = {**student, "id": student_id}
    classes = materialize(store.get("classes"))
    return {
        "graduate": {"default": default_promotion_target(student, classes, 1),
                     "options": [c["id"] for c in promotion_targets(student, classes, 1)] + [GRADUATE_OUT]},
        "demote": {"default": default_promotion_target(student, classes, -1),
                   "options": [c["id"] for c in promotion_targets(student, classes, -1)]},
    }


@app.post("/admin/students/{student_id}/graduate")
def graduate(student_id: str, payload: PromotionPayload, user=Depends(require_roles("admin")),
             store=Depends(get_db)):
    class_id = workflows.graduate_student(store, user, student_id, payload.target_class_id)
    return {"classId": class_id, "removed": class_id is None}


@app.post("/admin/students/{student_id}/demote")
def demote(student_id: str, payload: PromotionPayload, user=Depends(require_roles("admin")),
           store=Depends(get_db)):
    return {"classId": workflows.demote_student(store, user, student_id, payload.target_class_id)}


@app.get("/admin/announcements")
def list_announcements(user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AdminView(store, user) as view:
        return view.announcements


@app.post("/admin/announcements")
def add_announcement(payload: AnnouncementPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"id": workflows.post_announcement(store, user, payload.title, payload.content, payload.priority)}


@app.delete("/admin/announcements/{announcement_id}")
def delete_announcement(announcement_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    workflows.delete_record(store, user, "announcements", announcement_id)
    return {"status": "deleted"}


@app.post("/admin/passwords/reset")
def reset_password(payload: ResetPasswordPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    workflows.reset_password(store, user, payload.collection, payload.user_id, payload.new_password)
    return {"status": "reset"}


@app.post("/admin/cleanup-duplicates")
def cleanup_duplicates(user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"removed": csv_io.cleanup_duplicates(store, user)}


@app.get("/admin/analytics")
def analytics(user=Depends(require_roles("admin")), store=Depends(get_db)):
    with AnalyticsView(store, user) as view:
        return {
            "totals": view.totals,
            "submissionRate": view.submission_rate,
            "classDistribution": view.class_distribution,
            "subjectDistribution": view.subject_distribution,
        }


@app.get("/admin/conversations")
def conversations(user=Depends(require_roles("admin")), store=Depends(get_db)):
    with InboxView(store, user) as view:
        return {"unread": view.unread, "conversations": view.conversations}


@app.get("/admin/conversations/{student_id}")
def conversation(student_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    with InboxView(store, user) as view:
        return view.thread(student_id)


@app.post("/admin/conversations/{student_id}/reply")
def reply(student_id: str, payload: MessagePayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"id": workflows.reply_to_student(store, user, student_id, payload.message)}


@app.post("/admin/conversations/{student_id}/read")
def mark_read(student_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"updated": workflows.mark_conversation_read(store, user, student_id)}


@app.post("/admin/conversations/{student_id}/resolve")
def resolve(student_id: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return {"updated": workflows.resolve_conversation(store, user, student_id)}


@app.put("/admin/settings/popup")
def set_popup(payload: PopupPayload, user=Depends(require_roles("admin")), store=Depends(get_db)):
    return workflows.update_popup(store, user, payload.enabled, payload.banner_text)


# -------------------- CSV import/export -------------------- #

def csv_response(text: str, filename: str) -> StreamingResponse:
    def gen():
        yield text
    return StreamingResponse(gen(), media_type="text/csv",
                             headers={"Content-Disposition": f'attachment; filename="{filename}"'})


async def read_upload(file: UploadFile) -> str:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise ValidationError("Invalid file type. Please upload a CSV file")
    content = await file.read()
    return content.decode("utf-8-sig")


@app.get("/admin/export/{collection}")
def export_collection(collection: str, user=Depends(require_roles("admin")), store=Depends(get_db)):
    text, filename = csv_io.export_records(store, user, collection)
    return csv_response(text, filename)


@app.post("/admin/import/{collection}")
async def import_collection(collection: str, file: UploadFile = File(...), user=Depends(require_roles("admin")),
                            store=Depends(get_db)):
    text = await read_upload(file)
    if collection == "teachers":
        report = csv_io.import_teachers(store, user, text)
    elif collection == "students":
        report = csv_io.import_students(store, user, text)
    else:
        raise HTTPException(status_code=404, detail=f"Cannot import {collection}")
    return report.model_dump()


@app.get("/teachers/classes/{class_id}/export")
def export_class(class_id: str, user=Depends(require_roles("teacher", "admin")), store=Depends(get_db)):
    text, filename = csv_io.export_records(store, user, "students", class_id)
    return csv_response(text, filename)


@app.post("/teachers/classes/{class_id}/import")
async def import_class(class_id: str, file: UploadFile = File(...), user=Depends(require_roles("teacher", "admin")),
                       store=Depends(get_db)):
    text = await read_upload(file)
    return csv_io.import_students(store, user, text, class_id).model_dump()


# -------------------- Teacher endpoints -------------------- #

class HomeworkPayload(BaseModel):
    title: str = ""
    description: str = ""
    due_date: str = ""
    class_id: str = ""
    subject: str = ""


class ClassAnnouncementPayload(BaseModel):
    title: str = ""
    content: str = ""
    class_id: str = ""


class AttendancePayload(BaseModel):
    class_id: str
    date: str
    statuses: Dict[str, str] = {}
    mark_all_present: bool = False


class GradePayload(BaseModel):
    student_id: str
    grade: str = ""
    title: Optional[str] = None
    homework_id: Optional[str] = None


@app.get("/teachers/dashboard")
def teacher_dashboard(user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        return {
            "classes": view.my_classes,
            "studentCount": len(view.my_students),
            "homeworkCount": len(view.my_homework),
            "grades": view.grade_history,
        }


@app.get("/teachers/classes")
def my_classes(user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        return [{**c, "students": view.class_students(c["id"])} for c in view.my_classes]


@app.post("/teachers/students")
def teacher_add_student(payload: StudentPayload, user=Depends(require_roles("teacher")), store=Depends(get_db)):
    student_id = workflows.enroll_student(store, user, payload.name, payload.username, payload.password,
                                          payload.class_id)
    return {"id": student_id}


@app.get("/teachers/homework")
def list_homework(user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        return [{**hw, "status": view.submission_status(hw["id"])} for hw in view.my_homework]


@app.get("/teachers/homework/{homework_id}")
def homework_detail(homework_id: str, user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        detail = view.homework_detail(homework_id)
    if not detail:
        raise HTTPException(status_code=404, detail="Homework not found")
    return detail


@app.post("/teachers/homework")
def add_homework(payload: HomeworkPayload, user=Depends(require_roles("teacher")), store=Depends(get_db)):
    hid = workflows.assign_homework(store, user, payload.title, payload.due_date, payload.class_id,
                                    payload.description, payload.subject)
    return {"id": hid}


@app.delete("/teachers/homework/{homework_id}")
def delete_homework(homework_id: str, user=Depends(require_roles("teacher")), store=Depends(get_db)):
    workflows.delete_record(store, user, "homework", homework_id)
    return {"status": "deleted"}


@app.get("/teachers/attendance")
def attendance_sheet(class_id: str, date: str, user=Depends(require_roles("teacher")),
                     store=Depends(get_db)):
    sheet = workflows.AttendanceSheet(store, user, class_id, date)
    return {"students": sheet.students, "statuses": sheet.statuses, "counts": sheet.counts()}


@app.post("/teachers/attendance")
def save_attendance(payload: AttendancePayload, user=Depends(require_roles("teacher")),
                    store=Depends(get_db)):
    sheet = workflows.AttendanceSheet(store, user, payload.class_id, payload.date)
    if payload.mark_all_present:
        sheet.mark_all_present()
    for student_id, status in payload.statuses.items():
        sheet.mark(student_id, status)
    return sheet.save()


@app.post("/teachers/grades")
def save_grade(payload: GradePayload, user=Depends(require_roles("teacher")), store=Depends(get_db)):
    ids = workflows.assign_grade(store, user, payload.student_id, payload.grade, payload.title, payload.homework_id)
    return {"ids": ids}


@app.get("/teachers/grades")
def grade_history(user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        return view.grade_history


@app.get("/teachers/announcements")
def class_announcements(user=Depends(require_roles("teacher")), store=Depends(get_db)):
    with TeacherView(store, user) as view:
        return view.announcements


@app.post("/teachers/announcements")
def add_class_announcement(payload: ClassAnnouncementPayload, user=Depends(require_roles("teacher")),
                           store=Depends(get_db)):
    aid = workflows.post_class_announcement(store, user, payload.title, payload.content, payload.class_id)
    return {"id": aid}


# -------------------- Student endpoints -------------------- #

class SubmissionPayload(BaseModel):
    homework_id: str
    content: str = ""
    link: str = ""


@app.get("/students/dashboard")
def student_dashboard(user=Depends(require_roles("student")), store=Depends(get_db)):
    with StudentView(store, user) as view:
        return {
            "attendance": view.attendance_stats,
            "upcoming": view.upcoming[:4],
            "pendingCount": len(view.pending),
            "grades": view.grades[:4],
            "announcements": view.announcements[:2],
            "classAnnouncements": view.class_announcements[:2],
        }


@app.get("/students/homework")
def student_homework(user=Depends(require_roles("student")), store=Depends(get_db)):
    with StudentView(store, user) as view:
        return [{**hw, "submitted": view.is_submitted(hw["id"])} for hw in view.homework]


@app.post("/students/submissions")
def submit(payload: SubmissionPayload, user=Depends(require_roles("student")), store=Depends(get_db)):
    return {"id": workflows.submit_homework(store, user, payload.homework_id, payload.content, payload.link)}


@app.get("/students/attendance")
def student_attendance(user=Depends(require_roles("student")), store=Depends(get_db)):
    with StudentView(store, user) as view:
        return {"stats": view.attendance_stats, "history": view.attendance_history[:20]}


@app.get("/students/grades")
def student_grades(user=Depends(require_roles("student")), store=Depends(get_db)):
    with StudentView(store, user) as view:
        return view.grades


@app.get("/students/messages")
def student_messages(user=Depends(require_roles("student")), store=Depends(get_db)):
    with StudentView(store, user) as view:
        return view.messages


@app.post("/students/messages")
def send_message(payload: MessagePayload, user=Depends(require_roles("student")), store=Depends(get_db)):
    return {"id": workflows.send_message(store, user, payload.message)}


# -------------------- Timetable & Settings -------------------- #

class TimetablePayload(BaseModel):
    class_id: str = ""
    subject: str = ""
    day: str = "Monday"
    start_time: str = "08:00"
    end_time: str = "09:00"
    room: str = ""


class PasswordPayload(BaseModel):
    current_password: str = ""
    new_password: str = ""
    confirm_password: str = ""


class ProfilePayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@app.get("/timetable")
def get_timetable(class_id: Optional[str] = None, user=Depends(require_roles()), store=Depends(get_db)):
    with TimetableView(store, user) as view:
        if class_id:
            view.select(class_id)
        return {
            "classes": view.classes,
            "selectedClass": view.selected_class,
            "entries": week_order(view.class_entries()),
            "today": view.today_schedule(),
            "canEdit": view.can_edit,
        }


@app.post("/timetable")
def add_timetable_entry(payload: TimetablePayload, user=Depends(require_roles("admin", "teacher")),
                        store=Depends(get_db)):
    eid = workflows.add_timetable_entry(store, user, payload.class_id, payload.subject, payload.day,
                                        payload.start_time, payload.end_time, payload.room)
    return {"id": eid}


@app.delete("/timetable/{entry_id}")
def delete_timetable_entry(entry_id: str, user=Depends(require_roles("admin", "teacher")), store=Depends(get_db)):
    workflows.delete_record(store, user, "timetable", entry_id)
    return {"status": "deleted"}


@app.post("/settings/password")
def change_password(payload: PasswordPayload, user=Depends(require_roles()), store=Depends(get_db)):
    workflows.change_password(store, user, payload.current_password, payload.new_password,
                              payload.confirm_password, config)
    return {"status": "changed"}


@app.put("/settings/profile")
def update_profile(payload: ProfilePayload, user=Depends(require_roles()), store=Depends(get_db)):
    return workflows.update_profile(store, user, payload.name, payload.email, payload.phone)


@app.get("/settings/popup")
def get_popup(store=Depends(get_db)):
    with PopupView(store) as view:
        return view.config or PopupConfig().model_dump(by_alias=True)


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
