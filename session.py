"""
Identity resolution and the client-side session.

Credentials are compared in plaintext against the stored records. A
restored session is trusted as-is: it is not re-checked against the store,
so a deleted account stays logged in until logout.
"""

import json
import logging
import os
from typing import Dict, FrozenSet, Optional

from config import get_config
from errors import AuthorizationError, InvalidCredentials
from schemas import ADMIN_PATH, AdminUser, Identity, now_iso

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

COMMON_CAPABILITIES = frozenset({"change_password", "update_profile", "view_timetable"})

CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "admin": COMMON_CAPABILITIES | {
        "manage_teachers", "manage_classes", "manage_students", "enroll_students",
        "post_announcements", "manage_timetable", "reply_messages", "manage_settings",
        "reset_passwords", "import_export", "promote_students", "view_analytics",
    },
    "teacher": COMMON_CAPABILITIES | {
        "enroll_students", "post_class_announcements", "assign_homework",
        "mark_attendance", "assign_grades", "manage_timetable", "import_export",
    },
    "student": COMMON_CAPABILITIES | {"submit_homework", "send_messages"},
}


def capabilities_for(identity: Optional[Identity]) -> FrozenSet[str]:
    if identity is None:
        return frozenset()
    return CAPABILITIES.get(identity.role, frozenset())


def require_capability(identity: Optional[Identity], capability: str) -> Identity:
    if capability not in capabilities_for(identity):
        role = identity.role if identity else ANONYMOUS
        raise AuthorizationError(f"{role} cannot {capability.replace('_', ' ')}")
    return identity


def initialize_admin(store, config=None) -> bool:
    """Create the default admin record when none exists. Returns True if created."""
    config = config or get_config()
    if store.get(ADMIN_PATH):
        return False
    admin = AdminUser(
        username=config.DEFAULT_ADMIN_USERNAME,
        password=config.DEFAULT_ADMIN_PASSWORD,
        name=config.DEFAULT_ADMIN_NAME,
        created_at=now_iso(),
    )
    store.set(ADMIN_PATH, admin.to_store())
    logger.info("Default admin account created")
    return True


def login(store, username: str, password: str) -> Identity:
    """Resolve credentials to an identity: admin first, then teachers, then students."""
    admin = store.get(ADMIN_PATH)
    if admin and admin.get("username") == username and admin.get("password") == password:
        return Identity(id=admin.get("id", "admin"), username=admin["username"],
                        name=admin.get("name", ""), role="admin")

    for key, teacher in (store.get("teachers") or {}).items():
        if teacher.get("username") == username and teacher.get("password") == password:
            return Identity(id=key, username=teacher["username"], name=teacher.get("name", ""), role="teacher")

    for key, student in (store.get("students") or {}).items():
        if student.get("username") == username and student.get("password") == password:
            return Identity(id=key, username=student["username"], name=student.get("name", ""), role="student",
                            class_id=student.get("classId"), class_name=student.get("className"))

    logger.info("Failed login for %s", username)
    raise InvalidCredentials()


def user_path(identity: Identity) -> str:
    if identity.role == "admin":
        return f"users/{identity.id}"
    if identity.role == "teacher":
        return f"teachers/{identity.id}"
    return f"students/{identity.id}"


class MemorySessionStorage:
    """A dict standing in for browser local storage."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileSessionStorage:
    """Local storage persisted as one JSON object on disk."""

    def __init__(self, path: str):
        self.path = path

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, items: Dict[str, str]) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(items, f)

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._save(items)


class Session:
    """anonymous -> admin | teacher | student on login, back to anonymous on logout."""

    def __init__(self, store, storage=None, key: Optional[str] = None):
        self.store = store
        self.storage = storage or MemorySessionStorage()
        self.key = key or get_config().SESSION_KEY
        self.identity: Optional[Identity] = None

    @classmethod
    def from_config(cls, store, config=None) -> "Session":
        """A session persisted to SESSION_FILE under SESSION_KEY."""
        config = config or get_config()
        return cls(store, FileSessionStorage(config.SESSION_FILE), key=config.SESSION_KEY)

    @property
    def role(self) -> str:
        return self.identity.role if self.identity else ANONYMOUS

    def restore(self) -> Optional[Identity]:
        saved = self.storage.get_item(self.key)
        if saved:
            self.identity = Identity.model_validate(json.loads(saved))
        return self.identity

    def login(self, username: str, password: str) -> Identity:
        identity = login(self.store, username, password)
        self.identity = identity
        self.storage.set_item(self.key, json.dumps(identity.to_store()))
        logger.info("%s logged in as %s", identity.username, identity.role)
        return identity

    def logout(self) -> None:
        self.identity = None
        self.storage.remove_item(self.key)
