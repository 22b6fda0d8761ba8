"""
Live, role-scoped dashboard views.

A view subscribes to its source paths on ``mount`` and drops the
subscriptions on ``unmount``. Whenever any source emits a snapshot the
whole view is recomputed from the latest snapshot of every source.
"""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from projections import (
    attendance_history, attendance_stats, class_distribution, conversation_list, conversation_thread,
    dashboard_counts, days_left, has_submitted, homework_for_classes, materialize, newest_first,
    pending_students, primary_classes, search_by_name, student_homework, students_in_class,
    students_in_classes, subject_distribution, submission_rate, submission_status, submissions_for,
    teacher_classes, timetable_for_class, timetable_slot, todays_schedule, upcoming_homework,
    with_live_teacher_names, find_by_id,
)
from schemas import Identity, POPUP_PATH

logger = logging.getLogger(__name__)


class LiveView:
    sources: Dict[str, str] = {}

    def __init__(self, store, identity: Optional[Identity] = None, today: Optional[date] = None):
        self.store = store
        self.identity = identity
        self.today = today
        self.snapshots: Dict[str, Any] = {}
        self.revision = 0
        self._unsubscribers: List[Callable[[], None]] = []
        self._watchers: List[Callable[["LiveView"], None]] = []

    def paths(self) -> Dict[str, str]:
        """Source name -> store path. Override for identity-dependent paths."""
        return dict(self.sources)

    @property
    def mounted(self) -> bool:
        return bool(self._unsubscribers)

    def mount(self) -> "LiveView":
        if self.mounted:
            return self
        try:
            for name, path in self.paths().items():
                self._unsubscribers.append(self.store.listen(path, self._receiver(name)))
        except Exception:
            self.unmount()
            raise
        return self

    def unmount(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    def __enter__(self):
        return self.mount()

    def __exit__(self, *exc):
        self.unmount()

    def watch(self, callback: Callable[["LiveView"], None]) -> None:
        self._watchers.append(callback)

    def _receiver(self, name: str):
        def receive(snapshot):
            self.snapshots[name] = snapshot
            self.revision += 1
            self.refresh()
            for callback in self._watchers:
                callback(self)
        return receive

    def records(self, name: str) -> List[Dict[str, Any]]:
        return materialize(self.snapshots.get(name))

    def refresh(self) -> None:
        raise NotImplementedError


class AdminView(LiveView):
    sources = {"teachers": "teachers", "classes": "classes", "students": "students",
               "announcements": "announcements"}

    def refresh(self):
        self.teachers = self.records("teachers")
        self.students = self.records("students")
        self.classes = with_live_teacher_names(self.records("classes"), self.teachers)
        self.announcements = newest_first(self.records("announcements"))
        self.counts = dashboard_counts(self.teachers, self.classes, self.students)

    def recent_announcements(self, limit: int = 3):
        return self.announcements[:limit]

    def search_teachers(self, term: str):
        return search_by_name(self.teachers, term)

    def search_students(self, term: str):
        return search_by_name(self.students, term)


class TeacherView(LiveView):
    sources = {"classes": "classes", "students": "students", "homework": "homework",
               "submissions": "submissions", "classAnnouncements": "classAnnouncements"}

    def paths(self):
        return {**self.sources, "grades": f"teacherGrades/{self.identity.id}"}

    def refresh(self):
        self.my_classes = teacher_classes(self.records("classes"), self.identity.id)
        self.students = self.records("students")
        self.my_students = students_in_classes(self.students, self.my_classes)
        self.homework = self.records("homework")
        self.my_homework = homework_for_classes(self.homework, self.my_classes)
        self.submissions = self.records("submissions")
        self.announcements = newest_first(self.records("classAnnouncements"))
        self.grade_history = newest_first(self.records("grades"), field="date")

    def class_students(self, class_id: str):
        return students_in_class(self.students, class_id)

    def submission_status(self, homework_id: str):
        return submission_status(find_by_id(self.homework, homework_id), self.students, self.submissions)

    def homework_detail(self, homework_id: str) -> Dict[str, Any]:
        hw = find_by_id(self.my_homework, homework_id)
        if hw is None:
            return {}
        left = days_left(hw, self.today)
        return {
            "homework": hw,
            "status": self.submission_status(homework_id),
            "submissions": submissions_for(self.submissions, homework_id),
            "pending": pending_students(hw, self.students, self.submissions),
            "overdue": left is not None and left < 0,
        }


class StudentView(LiveView):
    sources = {"homework": "homework", "submissions": "submissions", "announcements": "announcements",
               "classAnnouncements": "classAnnouncements", "complaints": "complaints"}

    def paths(self):
        return {**self.sources,
                "attendance": f"attendance/{self.identity.id}",
                "grades": f"grades/{self.identity.id}"}

    def refresh(self):
        me = self.identity
        self.homework = student_homework(self.records("homework"), me.class_id)
        self.my_submissions = [s for s in self.records("submissions") if s.get("studentId") == me.id]
        self.attendance = self.records("attendance")
        self.attendance_history = attendance_history(self.attendance)
        self.attendance_stats = attendance_stats(self.attendance)
        self.grades = newest_first(self.records("grades"), field="date")
        self.announcements = newest_first(self.records("announcements"))
        self.class_announcements = newest_first(
            a for a in self.records("classAnnouncements") if a.get("classId") == me.class_id)
        self.messages = conversation_thread(self.records("complaints"), me.id)
        self.upcoming = upcoming_homework(self.homework, self.today)
        self.pending = [h for h in self.upcoming if not self.is_submitted(h["id"])]

    def is_submitted(self, homework_id: str) -> bool:
        return has_submitted(self.my_submissions, homework_id, self.identity.id)

    def can_submit(self, homework_id: str) -> bool:
        return not self.is_submitted(homework_id)


class InboxView(LiveView):
    """The admin's message inbox: one conversation per student."""
    sources = {"complaints": "complaints"}

    def refresh(self):
        self.messages = self.records("complaints")
        self.conversations = conversation_list(self.messages)
        self.unread = sum(c["unread"] for c in self.conversations)

    def thread(self, student_id: str):
        return conversation_thread(self.messages, student_id)


class AnalyticsView(LiveView):
    sources = {"teachers": "teachers", "classes": "classes", "students": "students",
               "homework": "homework", "submissions": "submissions"}

    def refresh(self):
        teachers, classes = self.records("teachers"), self.records("classes")
        students, homework = self.records("students"), self.records("homework")
        submissions = self.records("submissions")
        self.totals = {"students": len(students), "teachers": len(teachers),
                       "classes": len(classes), "homework": len(homework)}
        self.submission_rate = submission_rate(len(homework), len(students), len(submissions))
        self.class_distribution = class_distribution(classes, students)
        self.subject_distribution = subject_distribution(teachers)


class TimetableView(LiveView):
    sources = {"timetable": "timetable", "classes": "classes"}

    def __init__(self, store, identity, today=None):
        super().__init__(store, identity, today)
        self.selected_class: Optional[str] = None

    def refresh(self):
        self.entries = self.records("timetable")
        classes = self.records("classes")
        me = self.identity
        if me.role == "teacher":
            self.classes = primary_classes(classes, me.id)
        elif me.role == "student":
            self.classes = [c for c in classes if c["id"] == me.class_id]
        else:
            self.classes = classes
        if self.selected_class not in {c["id"] for c in self.classes}:
            self.selected_class = self.classes[0]["id"] if self.classes else None

    def select(self, class_id: str) -> None:
        if any(c["id"] == class_id for c in self.classes):
            self.selected_class = class_id

    @property
    def can_edit(self) -> bool:
        return self.identity.role in ("admin", "teacher")

    def class_entries(self):
        return timetable_for_class(self.entries, self.selected_class)

    def slot(self, day: str, start_time: str):
        return timetable_slot(self.class_entries(), day, start_time)

    def today_schedule(self):
        return todays_schedule(self.class_entries(), self.today)


class PopupView(LiveView):
    """Client-side model of the banner popup.

    One instance lives for one client session: it opens the popup the first
    time the setting is enabled and never again, and closes it when the
    setting is disabled. The API mounts it only to read the current setting.
    """
    sources = {"popup": POPUP_PATH}

    def __init__(self, store, identity=None, today=None):
        super().__init__(store, identity, today)
        self.config: Optional[Dict[str, Any]] = None
        self.is_open = False
        self.has_shown = False

    def refresh(self):
        data = self.snapshots.get("popup")
        if not data:
            return
        self.config = data
        if data.get("enabled") and not self.has_shown:
            self.is_open = True
            self.has_shown = True
        elif not data.get("enabled"):
            self.is_open = False

    def close(self) -> None:
        self.is_open = False
