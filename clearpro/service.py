import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ValidationError
from .models import Case, CaseStatus, FileUploadState
from .storage import CaseStore
from .utils import file_upload_state, is_blank, matches_doctor, utcnow
from .workflow import CaseAction, FileRef, action_for, apply_transition, open_case

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("patient", "doctor", "notes")

def parse_status(value: Any) -> Optional[CaseStatus]:
    if value is None or isinstance(value, CaseStatus):
        return value
    if not str(value).strip():
        return None
    try:
        return CaseStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in CaseStatus)
        raise ValidationError(f"Unknown status '{value}' (expected one of: {allowed})") from None

def _unique(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    out = list(existing)
    for item in new:
        if item and item not in out:
            out.append(item)
    return out

def merge_uploads(
    current: Optional[dict],
    stl_files: Sequence[str] = (),
    prescription: Optional[str] = None,
    photos: Sequence[str] = (),
) -> dict:
    uploads = dict(current or {})
    uploads["stlFiles"] = _unique(uploads.get("stlFiles", []), stl_files)
    uploads["photos"] = _unique(uploads.get("photos", []), photos)
    if prescription:
        uploads["prescription"] = prescription
    else:
        uploads.setdefault("prescription", None)
    uploads["state"] = file_upload_state(uploads)
    return uploads

class CaseService:
    """All case operations. Mutations of one case run one at a time."""

    def __init__(self, store: CaseStore, case_id_prefix: str = "CP"):
        self.store = store
        self.case_id_prefix = case_id_prefix
        # an idle lock is dropped as soon as no coroutine holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def _locked(self, ref: str):
        # resolve first so an id and a caseId for the same case share one lock
        found = await self.store.get(ref)
        lock = self._locks.get(found.id)
        if lock is None:
            lock = self._locks[found.id] = asyncio.Lock()
        async with lock:
            yield await self.store.get(found.id)

    # --- CRUD ---
    async def create_case(
        self,
        patient: Any,
        doctor: Any,
        notes: Optional[str] = None,
        files: Optional[dict] = None,
    ) -> Case:
        files = files or {}
        uploads = merge_uploads(
            None,
            files.get("stl_files", ()),
            files.get("prescription"),
            files.get("photos", ()),
        )
        case = open_case(patient, doctor, notes=notes, uploads=uploads, case_id_prefix=self.case_id_prefix)
        case = await self.store.add(case)
        logger.info("case %s created (id=%s)", case.case_id, case.id)
        return case

    async def get_case(self, ref: str) -> Case:
        return await self.store.get(ref)

    async def list_cases(self, status: Any = None, doctor: Optional[str] = None) -> List[Case]:
        cases = await self.store.list(parse_status(status))
        if doctor:
            cases = [c for c in cases if matches_doctor(c.doctor, doctor)]
        return cases

    async def update_case(self, ref: str, changes: Dict[str, Any]) -> Case:
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Field(s) cannot be updated here: {', '.join(unknown)}")
        for name in ("patient", "doctor"):
            if name in changes and is_blank(changes[name]):
                raise ValidationError(f"{name} cannot be empty")
        async with self._locked(ref) as case:
            for name, value in changes.items():
                setattr(case, name, value)
            case.touch()
            return await self.store.save(case)

    async def delete_case(self, ref: str) -> None:
        async with self._locked(ref) as case:
            await self.store.delete(case)
        logger.info("case %s deleted", case.case_id)

    async def record_files(
        self,
        ref: str,
        stl_files: Sequence[str] = (),
        prescription: Optional[str] = None,
        photos: Sequence[str] = (),
    ) -> Case:
        if not (stl_files or prescription or photos):
            raise ValidationError("No files given")
        async with self._locked(ref) as case:
            case.file_upload_status = merge_uploads(case.file_upload_status, stl_files, prescription, photos)
            case.touch()
            return await self.store.save(case)

    # --- Workflow ---
    async def transition(self, ref: str, action: CaseAction, actor: Optional[str] = None, **details) -> Case:
        async with self._locked(ref) as case:
            apply_transition(case, action, actor, **details)
            return await self.store.save(case)

    async def set_status(self, ref: str, status: Any, actor: Optional[str] = None, **details) -> Case:
        """Move to ``status`` through the one table action that reaches it."""
        target = parse_status(status)
        if target is None:
            raise ValidationError("Status is required")
        async with self._locked(ref) as case:
            action = action_for(case.status, target)
            apply_transition(case, action, actor, **details)
            return await self.store.save(case)

    async def upload_treatment_plan(self, ref: str, files: Sequence[FileRef], uploaded_by: Optional[str] = None) -> Case:
        return await self.transition(ref, CaseAction.UPLOAD_TREATMENT_PLAN, uploaded_by, files=files)

    async def approve(self, ref: str, approved_by: Optional[str] = None) -> Case:
        return await self.transition(ref, CaseAction.APPROVE, approved_by)

    async def reject(self, ref: str, rejected_by: Optional[str] = None, reason: Optional[str] = None) -> Case:
        return await self.transition(ref, CaseAction.REJECT, rejected_by, reason=reason)

    async def request_revision(self, ref: str, requested_by: Optional[str] = None, notes: Optional[str] = None) -> Case:
        return await self.transition(ref, CaseAction.REQUEST_REVISION, requested_by, notes=notes)

    # --- Reporting ---
    async def statistics(self) -> dict:
        cases = await self.store.list()
        by_status = {s.value: 0 for s in CaseStatus}
        by_upload = {s.value: 0 for s in FileUploadState}
        for case in cases:
            by_status[CaseStatus(case.status).value] += 1
            by_upload[file_upload_state(case.file_upload_status)] += 1
        return {"total": len(cases), "by_status": by_status, "by_file_upload_status": by_upload}

    async def health(self) -> dict:
        connected = await self.store.ping()
        return {
            "status": "OK" if connected else "Error",
            "database": "Connected" if connected else "Disconnected",
            "backend": self.store.backend,
            "timestamp": utcnow(),
        }
