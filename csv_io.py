"""
CSV import/export for teachers and students, plus duplicate cleanup.

The grammar is deliberately narrow and is not RFC 4180: lines split on
newlines, fields split on every comma, one pair of surrounding double quotes
is stripped and doubled quotes inside become one. A quoted field containing
a comma is split like any other.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from database import create_document
from errors import AuthorizationError, ValidationError
from projections import by_creation, find_by_id, materialize, students_in_class
from session import require_capability
from workflows import scoped_class

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "teachers": ("name", "username", "password", "subject"),
    "students": ("name", "username", "password"),
}


class ImportReport(BaseModel):
    imported: int = 0
    skipped: int = 0
    invalid: int = 0


def _clean(value: str) -> str:
    value = value.strip()
    value = re.sub(r'^"|"$', "", value)
    return value.replace('""', '"')


def parse_csv(text: str) -> Tuple[List[str], List[Dict[str, str]]]:
    """Header row -> field names; each later non-blank line is read positionally."""
    lines = (text or "").split("\n")
    if len(lines) < 2:
        return [], []
    headers = [_clean(h) for h in lines[0].split(",")]
    rows = []
    for line in lines[1:]:
        if not line.strip():
            continue
        values = [_clean(v) for v in line.split(",")]
        rows.append({h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)})
    return headers, rows


def _account_fields(payload: Dict[str, str]) -> Dict[str, object]:
    """Exported booleans come back as "True"/"False"; restore them."""
    flag = payload.pop("passwordChanged", "")
    if flag.strip():
        payload["passwordChanged"] = flag.strip().lower() == "true"
    if not payload.get("oldPassword"):
        payload.pop("oldPassword", None)
    return payload


def _quote(value) -> str:
    text = "" if value is None else str(value)
    return '"' + text.replace('"', '""') + '"'


def export_key(record: dict) -> str:
    return record.get("username") or record.get("name") or record.get("id")


def export_csv(records: List[dict]) -> str:
    """Header of every field except id, one quoted row per unique username/name/id."""
    unique: Dict[str, dict] = {}
    for record in records:
        unique.setdefault(export_key(record), record)
    headers: List[str] = []
    for record in unique.values():
        for key in record:
            if key != "id" and key not in headers:
                headers.append(key)
    lines = [",".join(headers)]
    for record in unique.values():
        lines.append(",".join(_quote(record.get(h, "")) for h in headers))
    return "\n".join(lines)


def export_filename(collection: str, class_name: Optional[str] = None) -> str:
    if class_name:
        slug = re.sub(r"\s+", "_", class_name)
        return f"{collection}_{slug}.csv"
    return f"{collection}.csv"


def export_records(store, identity, collection: str, class_id: Optional[str] = None) -> Tuple[str, str]:
    """CSV text and filename for teachers, all students, or one class's students."""
    require_capability(identity, "import_export")
    if collection not in REQUIRED_FIELDS:
        raise ValidationError(f"Cannot export {collection}")
    if identity.role != "admin" and (collection == "teachers" or not class_id):
        raise AuthorizationError("Teachers can only export students of their own classes")
    records = materialize(store.get(collection))
    class_name = None
    if class_id:
        cls = scoped_class(store, identity, class_id)
        class_name = cls.get("name")
        records = students_in_class(records, class_id)
        if not records:
            raise ValidationError("No students in this class")
    return export_csv(records), export_filename(collection, class_name)


def _import(store, collection: str, text: str, extra_for) -> ImportReport:
    _, rows = parse_csv(text)
    existing = {r.get("username") for r in materialize(store.get(collection))}
    seen = set()
    report = ImportReport()
    for row in rows:
        username = row.get("username")
        if username in seen:
            report.skipped += 1
            continue
        seen.add(username)
        if any(not row.get(f) for f in REQUIRED_FIELDS[collection]):
            report.invalid += 1
            logger.warning("Skipping %s row without required fields", collection)
            continue
        if username in existing:
            report.skipped += 1
            continue
        extra = extra_for(row)
        if extra is None:
            report.invalid += 1
            logger.warning("Skipping student %s with unknown class", username)
            continue
        payload = {k: v for k, v in row.items() if k != "id"}
        payload.update(extra)
        payload.pop("createdAt", None)
        create_document(store, collection, _account_fields(payload))
        existing.add(username)
        report.imported += 1
    logger.info("Imported %s: %s", collection, report.model_dump())
    return report


def import_teachers(store, identity, text: str) -> ImportReport:
    require_capability(identity, "manage_teachers")
    return _import(store, "teachers", text, lambda row: {})


def import_students(store, identity, text: str, class_id: Optional[str] = None) -> ImportReport:
    """Import students into ``class_id``, or per row by classId/className when none is given."""
    require_capability(identity, "import_export")
    if class_id:
        cls = scoped_class(store, identity, class_id)
        return _import(store, "students", text, lambda row: {"classId": cls["id"], "className": cls["name"]})
    if identity.role != "admin":
        raise AuthorizationError("Teachers import students into one of their classes")

    classes = materialize(store.get("classes"))

    def resolve(row):
        cls = find_by_id(classes, row.get("classId"))
        if cls is None and row.get("className"):
            cls = next((c for c in classes if c.get("name") == row["className"]), None)
        if cls is not None:
            return {"classId": cls["id"], "className": cls["name"]}
        if row.get("classId") or row.get("className"):
            return {"classId": row.get("classId", ""), "className": row.get("className") or "Unassigned"}
        return None

    return _import(store, "students", text, resolve)


def cleanup_duplicates(store, identity) -> Dict[str, int]:
    """Remove teachers/students whose username was already seen, oldest record kept.

    Records are ordered by createdAt then id before the scan.
    """
    require_capability(identity, "manage_students")
    require_capability(identity, "manage_teachers")
    removed = {}
    for collection in ("teachers", "students"):
        seen = set()
        count = 0
        for record in by_creation(materialize(store.get(collection))):
            username = record.get("username")
            if not username:
                continue
            if username in seen:
                store.remove(f"{collection}/{record['id']}")
                count += 1
            else:
                seen.add(username)
        removed[collection] = count
    logger.info("Duplicate cleanup removed %s", removed)
    return removed
