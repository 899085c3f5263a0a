"""Workflow data model: Form, ApprovalRecord, StaffReport and friends.

Forms are plain dataclasses. The engine never mutates a stored Form in place:
every operation works on ``form.clone()`` and commits the copy with one
version-checked write, so an abandoned operation leaves no trace.

All records serialize to camelCase dicts (``to_dict``) and back
(``from_dict``); timestamps are ISO 8601 strings on the wire.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from deedflow.types import (
    ChangeKind,
    Decision,
    FormStatus,
    ProgressStatus,
    ServiceType,
    Stage,
    VerificationStatus,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime)."""
    if value is None or isinstance(value, datetime):
        return value
    return date_parser.isoparse(str(value))


@dataclass
class ApprovalRecord:
    """Approval state of one review stage.

    ``rejected`` is set when the stage verified with ``approved=False``.
    The stage 5 only attributes (``locked`` onwards) stay at their defaults
    for staff1..staff4.
    """
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    rejected: bool = False
    locked: bool = False
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    final_decision: Optional[Decision] = None
    final_remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "approved": self.approved,
            "approvedBy": self.approved_by,
            "approvedAt": _ts(self.approved_at),
            "notes": self.notes,
            "rejected": self.rejected,
        }
        if self.locked or self.final_decision is not None:
            result.update({
                "locked": self.locked,
                "lockedBy": self.locked_by,
                "lockedAt": _ts(self.locked_at),
                "finalDecision": self.final_decision.value if self.final_decision else None,
                "finalRemarks": self.final_remarks,
            })
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ApprovalRecord":
        data = data or {}
        decision = data.get("finalDecision")
        return cls(
            approved=bool(data.get("approved", False)),
            approved_by=data.get("approvedBy"),
            approved_at=parse_timestamp(data.get("approvedAt")),
            notes=data.get("notes"),
            rejected=bool(data.get("rejected", False)),
            locked=bool(data.get("locked", False)),
            locked_by=data.get("lockedBy"),
            locked_at=parse_timestamp(data.get("lockedAt")),
            final_decision=Decision(decision) if decision else None,
            final_remarks=data.get("finalRemarks"),
        )


def empty_approvals() -> Dict[Stage, ApprovalRecord]:
    return {stage: ApprovalRecord() for stage in Stage}


@dataclass(frozen=True)
class HistorySnapshot:
    """A prior ``{fields, status, version}`` of a form. Never mutated."""
    fields: Dict[str, Any]
    status: FormStatus
    version: int
    saved_at: Optional[datetime] = None
    saved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": self.fields,
            "status": self.status.value,
            "version": self.version,
            "savedAt": _ts(self.saved_at),
            "savedBy": self.saved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistorySnapshot":
        return cls(
            fields=data.get("fields", {}),
            status=FormStatus(data["status"]),
            version=data["version"],
            saved_at=parse_timestamp(data.get("savedAt")),
            saved_by=data.get("savedBy"),
        )


@dataclass(frozen=True)
class FormNote:
    """Staff or admin note attached to a form."""
    note: str
    added_by: str
    added_at: datetime
    stage: Optional[Stage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "note": self.note,
            "addedBy": self.added_by,
            "addedAt": _ts(self.added_at),
            "stage": self.stage.value if self.stage else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormNote":
        stage = data.get("stage")
        return cls(
            note=data["note"],
            added_by=data["addedBy"],
            added_at=parse_timestamp(data["addedAt"]),
            stage=Stage(stage) if stage else None,
        )


@dataclass
class Form:
    """The unit of work moving through the approval workflow.

    Attributes:
        id: Unique identifier (``legacy:<collection>:<id>`` for legacy views)
        service_type: Document type
        submitter_id: Owning user; never changes
        fields: Opaque form content, never interpreted by the engine
        status: Canonical status, derived from the approval records
        approvals: One ApprovalRecord per stage
        version: Optimistic concurrency counter
        history: Append-only prior snapshots
        is_legacy / origin_collection: Set when backed by a legacy store
    """
    id: str
    service_type: ServiceType
    submitter_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    status: FormStatus = FormStatus.DRAFT
    approvals: Dict[Stage, ApprovalRecord] = field(default_factory=empty_approvals)
    assigned_to: Optional[str] = None
    version: int = 0
    history: List[HistorySnapshot] = field(default_factory=list)
    is_legacy: bool = False
    origin_collection: Optional[str] = None
    submission_key: Optional[str] = None
    form_title: Optional[str] = None
    form_description: Optional[str] = None
    progress_percentage: int = 0
    progress_status: ProgressStatus = ProgressStatus.NOT_STARTED
    notes: List[FormNote] = field(default_factory=list)
    correction_stage: Optional[Stage] = None
    submitted_at: Optional[datetime] = None
    review_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    last_activity_by: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self.approvals[Stage.STAFF5].locked

    def is_approved(self, stage: Stage) -> bool:
        return self.approvals[stage].approved

    def clone(self) -> "Form":
        return copy.deepcopy(self)

    def snapshot(self) -> Dict[str, Any]:
        """Audit view of the form: everything except the history list."""
        data = self.to_dict()
        data.pop("history", None)
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "id": self.id,
            "serviceType": self.service_type.value,
            "submitterId": self.submitter_id,
            "fields": self.fields,
            "status": self.status.value,
            "approvals": {stage.value: rec.to_dict() for stage, rec in self.approvals.items()},
            "assignedTo": self.assigned_to,
            "version": self.version,
            "history": [h.to_dict() for h in self.history],
            "isLegacy": self.is_legacy,
            "submissionKey": self.submission_key,
            "formTitle": self.form_title,
            "formDescription": self.form_description,
            "progressPercentage": self.progress_percentage,
            "progressStatus": self.progress_status.value,
            "notes": [n.to_dict() for n in self.notes],
            "correctionStage": self.correction_stage.value if self.correction_stage else None,
            "submittedAt": _ts(self.submitted_at),
            "reviewStartedAt": _ts(self.review_started_at),
            "createdAt": _ts(self.created_at),
            "lastActivityAt": _ts(self.last_activity_at),
            "lastActivityBy": self.last_activity_by,
        }
        if self.origin_collection is not None:
            result["originCollection"] = self.origin_collection
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Form":
        """Create Form from dict."""
        approvals = empty_approvals()
        for key, value in (data.get("approvals") or {}).items():
            approvals[Stage(key)] = ApprovalRecord.from_dict(value)
        correction_stage = data.get("correctionStage")
        return cls(
            id=data["id"],
            service_type=ServiceType(data["serviceType"]),
            submitter_id=data["submitterId"],
            fields=dict(data.get("fields") or {}),
            status=FormStatus(data.get("status", FormStatus.DRAFT.value)),
            approvals=approvals,
            assigned_to=data.get("assignedTo"),
            version=data.get("version", 0),
            history=[HistorySnapshot.from_dict(h) for h in data.get("history", [])],
            is_legacy=data.get("isLegacy", False),
            origin_collection=data.get("originCollection"),
            submission_key=data.get("submissionKey"),
            form_title=data.get("formTitle"),
            form_description=data.get("formDescription"),
            progress_percentage=data.get("progressPercentage", 0),
            progress_status=ProgressStatus(
                data.get("progressStatus", ProgressStatus.NOT_STARTED.value)
            ),
            notes=[FormNote.from_dict(n) for n in data.get("notes", [])],
            correction_stage=Stage(correction_stage) if correction_stage else None,
            submitted_at=parse_timestamp(data.get("submittedAt")),
            review_started_at=parse_timestamp(data.get("reviewStartedAt")),
            created_at=parse_timestamp(data.get("createdAt")),
            last_activity_at=parse_timestamp(data.get("lastActivityAt")),
            last_activity_by=data.get("lastActivityBy"),
        )


@dataclass(frozen=True)
class FieldChange:
    """One entry of a StaffReport change set."""
    path: str
    kind: ChangeKind
    old: Any = None
    new: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "kind": self.kind.value, "old": self.old, "new": self.new}


@dataclass
class StaffReport:
    """A staff member's working record for one form.

    Keyed by ``(staff_id, form_id)``. Updated in place until submitted,
    read-only afterwards.
    """
    staff_id: str
    form_id: str
    stage: Optional[Stage]
    service_type: Optional[ServiceType] = None
    original_data: Dict[str, Any] = field(default_factory=dict)
    edited_data: Dict[str, Any] = field(default_factory=dict)
    change_set: List[FieldChange] = field(default_factory=list)
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_notes: Optional[str] = None
    stamp_calculation: Optional[Dict[str, Any]] = None
    remarks: Optional[str] = None
    is_submitted: bool = False
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.staff_id, self.form_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "staffId": self.staff_id,
            "formId": self.form_id,
            "stage": self.stage.value if self.stage else None,
            "serviceType": self.service_type.value if self.service_type else None,
            "originalData": self.original_data,
            "editedData": self.edited_data,
            "changeSet": [c.to_dict() for c in self.change_set],
            "verificationStatus": self.verification_status.value,
            "verificationNotes": self.verification_notes,
            "stampCalculation": self.stamp_calculation,
            "remarks": self.remarks,
            "isSubmitted": self.is_submitted,
            "submittedAt": _ts(self.submitted_at),
            "createdAt": _ts(self.created_at),
            "updatedAt": _ts(self.updated_at),
        }


__all__ = [
    "ApprovalRecord",
    "HistorySnapshot",
    "FormNote",
    "Form",
    "FieldChange",
    "StaffReport",
    "empty_approvals",
    "parse_timestamp",
]
