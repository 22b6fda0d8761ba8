import os

os.environ.setdefault("APP_ENV", "testing")

import pytest

import workflows
from config import TestingConfig
from database import MemoryStore
from errors import StoreOperationError
from schemas import Identity
from session import initialize_admin


@pytest.fixture
def store():
    s = MemoryStore()
    initialize_admin(s, TestingConfig)
    return s


@pytest.fixture
def admin():
    return Identity(id="admin", username="admin", name="Principal Administrator", role="admin")


@pytest.fixture
def school(store, admin):
    """Two teachers, grade 9 and 10 classes, two students in 9A."""
    t1 = workflows.enroll_teacher(store, admin, "Ms. Rivera", "rivera", "pass123", "Math")
    t2 = workflows.enroll_teacher(store, admin, "Mr. Okafor", "okafor", "pass123", "Science")
    c9 = workflows.create_class(store, admin, "9A", "9", t1)
    c10 = workflows.create_class(store, admin, "10A", "10", t2)
    s1 = workflows.enroll_student(store, admin, "Amy Lee", "amy", "pass123", c9)
    s2 = workflows.enroll_student(store, admin, "Ben Cruz", "ben", "pass123", c9)
    return {
        "t1": t1, "t2": t2, "c9": c9, "c10": c10, "s1": s1, "s2": s2,
        "teacher": Identity(id=t1, username="rivera", name="Ms. Rivera", role="teacher"),
        "other_teacher": Identity(id=t2, username="okafor", name="Mr. Okafor", role="teacher"),
        "student": Identity(id=s1, username="amy", name="Amy Lee", role="student", class_id=c9, class_name="9A"),
    }


class FailingStore(MemoryStore):
    """Fails every push whose path starts with ``fail_prefix``."""

    def __init__(self, fail_prefix):
        super().__init__()
        self.fail_prefix = fail_prefix

    def push(self, path, value):
        if path.startswith(self.fail_prefix):
            raise StoreOperationError(f"push {path} failed: unavailable")
        return super().push(path, value)


@pytest.fixture
def failing_store():
    return FailingStore
