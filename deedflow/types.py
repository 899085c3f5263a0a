"""Core type definitions for the deedflow approval workflow.

This module defines the fundamental types used throughout the workflow engine:
- ServiceType: The kinds of legal documents a form can carry
- FormStatus: Canonical workflow status of a form
- Role / Stage: Who is acting, and which approval record they own
- Operation: What an actor is asking to do (input to the access gate)
- AuditAction / AuditResult: Audit trail vocabulary
- ErrorKind: Stable machine-readable error kinds
- Actor / ClientContext: Identity and network origin of a caller

These types form the contract between the transport layer and the engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceType(str, Enum):
    """Document types accepted by the workflow.

    Each service type also names one legacy collection (see deedflow.legacy).
    """
    SALE_DEED = "sale-deed"
    WILL_DEED = "will-deed"
    TRUST_DEED = "trust-deed"
    PROPERTY_REGISTRATION = "property-registration"
    POWER_OF_ATTORNEY = "power-of-attorney"
    ADOPTION_DEED = "adoption-deed"


class FormStatus(str, Enum):
    """Canonical form status.

    The status is derived from the per-stage approval records by
    deedflow.status.derive_status; it is never set ad hoc.
    """
    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    VERIFIED = "verified"
    CROSS_VERIFIED = "cross_verified"
    NEEDS_CORRECTION = "needs_correction"
    REJECTED = "rejected"
    APPROVED = "approved"
    LOCKED = "locked"


class ProgressStatus(str, Enum):
    """Informational fill progress reported by save_draft."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Role(str, Enum):
    """Roles an actor can hold."""
    USER = "user"
    AGENT = "agent"
    STAFF1 = "staff1"
    STAFF2 = "staff2"
    STAFF3 = "staff3"
    STAFF4 = "staff4"
    STAFF5 = "staff5"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self.value.startswith("staff")


class Stage(str, Enum):
    """Review stages. Each owns one ApprovalRecord on the form."""
    STAFF1 = "staff1"
    STAFF2 = "staff2"
    STAFF3 = "staff3"
    STAFF4 = "staff4"
    STAFF5 = "staff5"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]

    @classmethod
    def for_role(cls, role: "Role") -> Optional["Stage"]:
        """Stage owned by a staff role, None for every other role."""
        try:
            return cls(role.value)
        except ValueError:
            return None


STAGE_LABELS: Dict[Stage, str] = {
    Stage.STAFF1: "Primary Details",
    Stage.STAFF2: "Trustee Details",
    Stage.STAFF3: "Land Details",
    Stage.STAFF4: "Cross Verification",
    Stage.STAFF5: "Final Authority",
}

# Stages that must be approved before a stage may act. staff2 and staff3 both
# hang off staff1 and do not depend on each other.
STAGE_PREREQUISITES: Dict[Stage, tuple] = {
    Stage.STAFF1: (),
    Stage.STAFF2: (Stage.STAFF1,),
    Stage.STAFF3: (Stage.STAFF1,),
    Stage.STAFF4: (Stage.STAFF1, Stage.STAFF2, Stage.STAFF3),
    Stage.STAFF5: (Stage.STAFF1, Stage.STAFF2, Stage.STAFF3, Stage.STAFF4),
}

REVIEW_STAGES = (Stage.STAFF1, Stage.STAFF2, Stage.STAFF3, Stage.STAFF4)


class Operation(str, Enum):
    """Operations an actor can request; the input vocabulary of the access gate."""
    SAVE = "save"
    SUBMIT = "submit"
    ASSIGN = "assign"
    CORRECT = "correct"
    VERIFY = "verify"
    REQUEST_CORRECTION = "request_correction"
    CALCULATE_STAMP = "calculate_stamp"
    FINAL_APPROVAL = "final_approval"
    DELETE = "delete"
    READ = "read"
    READ_REPORT = "read_report"


class Decision(str, Enum):
    """Stage 5 final decision."""
    APPROVED = "approved"
    REJECTED = "rejected"


class VerificationStatus(str, Enum):
    """Outcome recorded on a StaffReport."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    CORRECTION_REQUESTED = "correction_requested"


class ChangeKind(str, Enum):
    """Classification of a single field change."""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class AuditAction(str, Enum):
    """Audit actions, one per engine operation."""
    FORM_CREATE = "form.create"
    FORM_SAVE = "form.save"
    FORM_SUBMIT = "form.submit"
    FORM_ASSIGN = "form.assign"
    FORM_CORRECT = "form.correct"
    FORM_VERIFY = "form.verify"
    FORM_REJECT = "form.reject"
    CORRECTION_REQUEST = "form.correction_request"
    STAMP_CALCULATION = "form.stamp_calculation"
    FINAL_APPROVAL = "form.final_approval"
    FORM_LOCK = "form.lock"
    FORM_DELETE = "form.delete"
    REPORTS_SUBMIT = "staff_reports.submit"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ErrorKind(str, Enum):
    """Stable machine-readable error kinds carried by every rejection."""
    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    PRECONDITION_FAILED = "precondition_failed"
    CONFLICT = "conflict"
    ALREADY_LOCKED = "already_locked"
    NOT_FOUND = "not_found"
    STORAGE = "storage_error"
    TIMEOUT = "storage_timeout"


class FieldErrorCode(str, Enum):
    """Validation error codes for individual payload field failures."""
    REQUIRED = "required"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_VALUE = "invalid_value"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Actor:
    """Identity of the caller performing an operation.

    Actors are recorded on every audit entry. An agent acts for a submitter
    named by ``on_behalf_of``.

    Attributes:
        id: Unique identifier for this actor
        role: Role the actor holds
        name: Optional display name
        on_behalf_of: For agents, the submitter they act for

    Examples:
        >>> clerk = Actor(id="u_17", role=Role.STAFF1, name="Primary desk")
        >>> helper = Actor(id="bot_2", role=Role.AGENT, on_behalf_of="u_3")
    """
    id: str
    role: Role
    name: Optional[str] = None
    on_behalf_of: Optional[str] = None

    @property
    def principal_id(self) -> str:
        """The submitter identity this actor speaks for."""
        if self.role == Role.AGENT and self.on_behalf_of:
            return self.on_behalf_of
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value if isinstance(self.role, Role) else self.role,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.on_behalf_of is not None:
            result["onBehalfOf"] = self.on_behalf_of
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        """Create Actor from dict."""
        role = data["role"]
        if isinstance(role, str):
            role = Role(role)
        return cls(
            id=data["id"],
            role=role,
            name=data.get("name"),
            on_behalf_of=data.get("onBehalfOf"),
        )


@dataclass(frozen=True)
class ClientContext:
    """Network origin of a request, recorded on audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.ip_address is not None:
            result["ipAddress"] = self.ip_address
        if self.user_agent is not None:
            result["userAgent"] = self.user_agent
        if self.extra:
            result["extra"] = self.extra
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClientContext":
        data = data or {}
        return cls(
            ip_address=data.get("ipAddress"),
            user_agent=data.get("userAgent"),
            extra=data.get("extra", {}),
        )


__all__ = [
    "ServiceType",
    "FormStatus",
    "ProgressStatus",
    "Role",
    "Stage",
    "STAGE_LABELS",
    "STAGE_PREREQUISITES",
    "REVIEW_STAGES",
    "Operation",
    "Decision",
    "VerificationStatus",
    "ChangeKind",
    "AuditAction",
    "AuditResult",
    "ErrorKind",
    "FieldErrorCode",
    "Actor",
    "ClientContext",
]
