from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from .utils import new_storage_id, utcnow

class CaseStatus(str, Enum):
    PENDING_TREATMENT = "pending_treatment"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"

class FileUploadState(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    COMPLETE = "complete"

# --- Core Entity ---
class Case(SQLModel, table=True):
    __tablename__ = "cases"

    id: str = Field(default_factory=new_storage_id, primary_key=True)
    case_id: str = Field(index=True, unique=True)
    status: CaseStatus = Field(default=CaseStatus.PENDING_TREATMENT, index=True)

    patient: Union[str, Dict[str, Any]] = Field(sa_column=Column(JSON, nullable=False))
    doctor: Union[str, Dict[str, Any]] = Field(sa_column=Column(JSON, nullable=False))
    notes: Optional[str] = None

    # sub-records are reassigned, never mutated in place, so the JSON columns see the change
    treatment_plan: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    file_upload_status: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status_history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self):
        self.updated_at = utcnow()
