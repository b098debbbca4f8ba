import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import InvalidStateError, ValidationError
from .models import Case, CaseStatus
from .utils import generate_case_id, is_blank, utcnow

logger = logging.getLogger(__name__)

class CaseAction(str, Enum):
    CREATE = "create"
    UPLOAD_TREATMENT_PLAN = "upload_treatment_plan"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"

class Role(str, Enum):
    DOCTOR = "doctor"
    ADMIN = "admin"

@dataclass(frozen=True)
class Transition:
    source: Optional[CaseStatus]
    action: CaseAction
    target: CaseStatus
    actor: Role

# the only way a case changes status; repeating an action fails, it is never a no-op
TRANSITIONS = (
    Transition(None, CaseAction.CREATE, CaseStatus.PENDING_TREATMENT, Role.DOCTOR),
    Transition(CaseStatus.PENDING_TREATMENT, CaseAction.UPLOAD_TREATMENT_PLAN, CaseStatus.PENDING_APPROVAL, Role.ADMIN),
    Transition(CaseStatus.PENDING_APPROVAL, CaseAction.APPROVE, CaseStatus.APPROVED, Role.DOCTOR),
    Transition(CaseStatus.PENDING_APPROVAL, CaseAction.REJECT, CaseStatus.REJECTED, Role.DOCTOR),
    Transition(CaseStatus.PENDING_APPROVAL, CaseAction.REQUEST_REVISION, CaseStatus.REVISION_REQUESTED, Role.DOCTOR),
    Transition(CaseStatus.REVISION_REQUESTED, CaseAction.UPLOAD_TREATMENT_PLAN, CaseStatus.PENDING_APPROVAL, Role.ADMIN),
)

_TABLE = {(t.source, t.action): t for t in TRANSITIONS}

TERMINAL_STATUSES = frozenset(
    status for status in CaseStatus
    if not any(t.source == status for t in TRANSITIONS)
)

FileRef = Union[str, Dict[str, Any]]

def allowed_actions(status: CaseStatus) -> List[CaseAction]:
    return [t.action for t in TRANSITIONS if t.source == status]

def find_transition(status: Optional[CaseStatus], action: CaseAction) -> Transition:
    transition = _TABLE.get((status, action))
    if transition is None:
        current = status.value if status else "none"
        allowed = ", ".join(a.value for a in allowed_actions(status)) if status else "create"
        raise InvalidStateError(
            f"Cannot {action.value} a case in status '{current}' (allowed: {allowed or 'none, status is final'})"
        )
    return transition

def action_for(current: CaseStatus, target: CaseStatus) -> CaseAction:
    """Map a requested target status to the one action that reaches it."""
    for transition in TRANSITIONS:
        if transition.source == current and transition.target == target:
            return transition.action
    raise InvalidStateError(f"No transition from '{current.value}' to '{target.value}'")

def _history_entry(source: Optional[CaseStatus], transition: Transition, actor: str, stamp: str) -> dict:
    return {
        "from": source.value if source else None,
        "to": transition.target.value,
        "action": transition.action.value,
        "actor": actor,
        "at": stamp,
    }

def open_case(
    patient: Any,
    doctor: Any,
    notes: Optional[str] = None,
    uploads: Optional[dict] = None,
    case_id_prefix: str = "CP",
) -> Case:
    """Build a new case in the initial status. Patient and doctor are mandatory."""
    missing = [name for name, value in (("patient", patient), ("doctor", doctor)) if is_blank(value)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

    transition = find_transition(None, CaseAction.CREATE)
    now = utcnow()
    case = Case(
        case_id=generate_case_id(case_id_prefix),
        status=transition.target,
        patient=patient,
        doctor=doctor,
        notes=notes,
        file_upload_status=uploads or {},
        created_at=now,
        updated_at=now,
    )
    actor = doctor.get("name") if isinstance(doctor, dict) and doctor.get("name") else transition.actor.value
    case.status_history = [_history_entry(None, transition, str(actor), now.isoformat())]
    return case

def apply_transition(
    case: Case,
    action: CaseAction,
    actor: Optional[str] = None,
    *,
    files: Optional[Sequence[FileRef]] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> Transition:
    """Check the action against the current status and apply it to ``case`` in place."""
    source = case.status
    transition = find_transition(source, action)

    if action is CaseAction.UPLOAD_TREATMENT_PLAN and not files:
        raise ValidationError("A treatment plan needs at least one file")
    if action is CaseAction.REQUEST_REVISION and is_blank(notes):
        raise ValidationError("Revision notes are required")

    now = utcnow()
    stamp = now.isoformat()
    actor = actor.strip() if actor and actor.strip() else transition.actor.value
    plan = dict(case.treatment_plan or {})

    if action is CaseAction.UPLOAD_TREATMENT_PLAN:
        # a re-upload starts a fresh plan; earlier decisions stay in the history
        plan = {
            "files": list(files),
            "uploadedBy": actor,
            "uploadedAt": stamp,
            "version": int(plan.get("version", 0)) + 1,
        }
    elif action is CaseAction.APPROVE:
        plan.update(approved=True, approvedBy=actor, approvedAt=stamp)
    elif action is CaseAction.REJECT:
        plan.update(rejected=True, rejectedBy=actor, rejectedAt=stamp, rejectionReason=reason)
    elif action is CaseAction.REQUEST_REVISION:
        plan.update(
            revisionRequested=True,
            revisionRequestedBy=actor,
            revisionRequestedAt=stamp,
            revisionNotes=notes.strip(),
        )

    case.treatment_plan = plan
    case.status = transition.target
    case.status_history = [*case.status_history, _history_entry(source, transition, actor, stamp)]
    case.updated_at = now
    logger.info("case %s: %s -> %s (%s by %s)", case.case_id, source.value, transition.target.value, action.value, actor)
    return transition
