from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer
from pydantic.alias_generators import to_camel

from .models import CaseStatus, FileUploadState
from .workflow import FileRef

FreeForm = Union[str, Dict[str, Any]]

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

class StrictCamelModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

def _as_utc(value):
    # sqlite hands datetimes back without tzinfo
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

# --- Requests ---
class FileUploads(StrictCamelModel):
    stl_files: List[str] = Field(default_factory=list)
    prescription: Optional[str] = None
    photos: List[str] = Field(default_factory=list)

class CaseCreate(StrictCamelModel):
    patient: Optional[FreeForm] = None
    doctor: Optional[FreeForm] = None
    notes: Optional[str] = None
    files: Optional[FileUploads] = None

class CaseUpdate(StrictCamelModel):
    patient: Optional[FreeForm] = None
    doctor: Optional[FreeForm] = None
    notes: Optional[str] = None

class StatusChange(StrictCamelModel):
    status: CaseStatus
    actor: Optional[str] = None
    files: Optional[List[FileRef]] = None
    reason: Optional[str] = None
    notes: Optional[str] = None

class TreatmentPlanUpload(CamelModel):
    files: List[FileRef] = Field(default_factory=list)
    uploaded_by: Optional[str] = None

class Approval(CamelModel):
    approved_by: Optional[str] = None

class Rejection(CamelModel):
    rejected_by: Optional[str] = None
    reason: Optional[str] = None

class RevisionRequest(CamelModel):
    requested_by: Optional[str] = None
    notes: Optional[str] = None

# --- Responses ---
class TreatmentPlan(CamelModel):
    files: List[FileRef] = Field(default_factory=list)
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    version: int = 1
    approved: Optional[bool] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected: Optional[bool] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    revision_requested: Optional[bool] = None
    revision_requested_by: Optional[str] = None
    revision_requested_at: Optional[datetime] = None
    revision_notes: Optional[str] = None

    @field_validator("uploaded_at", "approved_at", "rejected_at", "revision_requested_at")
    @classmethod
    def attach_utc(cls, value):
        return _as_utc(value)

    # decision fields only appear once the doctor has acted
    @model_serializer(mode="wrap")
    def drop_unset(self, handler):
        return {key: value for key, value in handler(self).items() if value is not None}

class FileUploadStatus(CamelModel):
    stl_files: List[str] = Field(default_factory=list)
    prescription: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    state: FileUploadState = FileUploadState.NONE

class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_status: Optional[CaseStatus] = Field(default=None, alias="from")
    to_status: CaseStatus = Field(alias="to")
    action: str
    actor: str
    at: datetime

    @field_validator("at")
    @classmethod
    def attach_utc(cls, value):
        return _as_utc(value)

class CaseRead(CamelModel):
    id: str
    case_id: str
    status: CaseStatus
    patient: FreeForm
    doctor: FreeForm
    notes: Optional[str] = None
    treatment_plan: Optional[TreatmentPlan] = None
    file_upload_status: FileUploadStatus = Field(default_factory=FileUploadStatus)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def attach_utc(cls, value):
        return _as_utc(value)

class CaseList(BaseModel):
    cases: List[CaseRead]
    total: int
    status: Optional[CaseStatus] = None

class Statistics(CamelModel):
    total: int
    by_status: Dict[str, int]
    by_file_upload_status: Dict[str, int]

class Health(BaseModel):
    status: str
    database: str
    backend: str
    timestamp: datetime
