from __future__ import annotations
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError

_HEX_ID = re.compile(r"^[0-9a-f]{32}$")
_last_ms = 0
_id_lock = threading.Lock()

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_storage_id() -> str:
    return uuid.uuid4().hex

def generate_case_id(prefix: str = "CP", now_ms: int | None = None) -> str:
    """Timestamp based business id, strictly increasing within the process."""
    global _last_ms
    with _id_lock:
        ms = now_ms if now_ms is not None else int(time.time() * 1000)
        # two cases created in the same millisecond still get distinct ids
        if ms <= _last_ms:
            ms = _last_ms + 1
        _last_ms = ms
    return f"{prefix}-{ms}"

def parse_case_ref(ref: str) -> tuple[str, str]:
    """Classify a path identifier as ("id", value) or ("case_id", value).

    Every lookup goes through here so handlers never guess on their own.
    """
    ref = (ref or "").strip()
    if not ref:
        raise ValidationError("Case identifier is required")
    if _HEX_ID.match(ref.lower()):
        return "id", ref.lower()
    return "case_id", ref

def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list)):
        return len(value) == 0
    return False

def doctor_name(doctor: Any) -> str | None:
    if isinstance(doctor, dict):
        name = doctor.get("name")
        return str(name) if name is not None else None
    if doctor is None:
        return None
    return str(doctor)

def matches_doctor(doctor: Any, wanted: str) -> bool:
    name = doctor_name(doctor)
    return name is not None and name.strip().lower() == wanted.strip().lower()

def file_upload_state(uploads: dict | None) -> str:
    # complete = at least one STL, a prescription and at least one photo
    uploads = uploads or {}
    present = [
        bool(uploads.get("stlFiles")),
        bool(uploads.get("prescription")),
        bool(uploads.get("photos")),
    ]
    if all(present):
        return "complete"
    if any(present):
        return "partial"
    return "none"
