"""Typed errors for the deedflow workflow engine.

Every rejection raised by the engine is a WorkflowError subclass carrying a
stable machine-readable kind (ErrorKind), a human-readable reason, and whether
the caller may retry the exact same call. Payload validation failures also
carry per-field details (FieldError).

Hierarchy:

    WorkflowError
    +-- ValidationError        malformed or missing payload fields
    +-- Unauthorized           role or ownership gate failed
    +-- PreconditionFailed     stage order violated
    |   +-- FormNotLocked      report requested for an unlocked form
    +-- Conflict               version mismatch, concurrent writer
    +-- AlreadyLocked          mutation attempted on a frozen form
    +-- NotFound               form or account id does not resolve
    +-- StorageError           transient storage failure (retryable)
        +-- StorageTimeout     storage call exceeded its timeout (retryable)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from deedflow.types import ErrorKind, FieldErrorCode


@dataclass(frozen=True)
class FieldError:
    """Per-field payload validation error details.

    Attributes:
        path: Dot-notation field path (e.g., "fields", "notes")
        code: Specific validation error code
        message: Human-readable error description
        expected: Optional - what was expected (type, format, enum values, etc.)
        received: Optional - what was actually received

    Examples:
        >>> err = FieldError(
        ...     path="notes",
        ...     code=FieldErrorCode.REQUIRED,
        ...     message="Notes are required when rejecting",
        ... )
        >>> err.path
        'notes'
    """
    path: str
    code: FieldErrorCode
    message: str
    expected: Optional[Any] = None
    received: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "path": self.path,
            "code": self.code.value if isinstance(self.code, FieldErrorCode) else self.code,
            "message": self.message,
        }
        if self.expected is not None:
            result["expected"] = self.expected
        if self.received is not None:
            result["received"] = self.received
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldError":
        """Create FieldError from dict."""
        code = data["code"]
        if isinstance(code, str):
            code = FieldErrorCode(code)
        return cls(
            path=data["path"],
            code=code,
            message=data["message"],
            expected=data.get("expected"),
            received=data.get("received"),
        )


class WorkflowError(Exception):
    """Base class for every rejection raised by the engine.

    Attributes:
        kind: Stable error kind
        reason: Human-readable explanation
        retryable: Whether the same call may succeed if retried
        form_id: Form the error relates to, when known
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(self, reason: str, form_id: Optional[str] = None):
        self.reason = reason
        self.form_id = form_id
        super().__init__(reason)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error envelope body."""
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "reason": self.reason,
            "retryable": self.retryable,
        }
        if self.form_id is not None:
            result["formId"] = self.form_id
        return result


class ValidationError(WorkflowError):
    """Malformed or missing payload fields. Never mutates state."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        reason: str,
        fields: Optional[List[FieldError]] = None,
        form_id: Optional[str] = None,
    ):
        super().__init__(reason, form_id=form_id)
        self.fields = list(fields or [])

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.fields:
            result["fields"] = [f.to_dict() for f in self.fields]
        return result


class Unauthorized(WorkflowError):
    kind = ErrorKind.UNAUTHORIZED


class PreconditionFailed(WorkflowError):
    kind = ErrorKind.PRECONDITION_FAILED


class FormNotLocked(PreconditionFailed):
    """Raised by the report assembler for forms that are not locked."""


class Conflict(WorkflowError):
    """The caller's expected version is stale."""

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        reason: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        form_id: Optional[str] = None,
    ):
        super().__init__(reason, form_id=form_id)
        self.expected_version = expected_version
        self.actual_version = actual_version

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.expected_version is not None:
            result["expectedVersion"] = self.expected_version
        if self.actual_version is not None:
            result["actualVersion"] = self.actual_version
        return result


class AlreadyLocked(WorkflowError):
    kind = ErrorKind.ALREADY_LOCKED


class NotFound(WorkflowError):
    kind = ErrorKind.NOT_FOUND


class StorageError(WorkflowError):
    """Transient storage failure. The caller retries; the engine never does."""

    kind = ErrorKind.STORAGE
    retryable = True


class StorageTimeout(StorageError):
    kind = ErrorKind.TIMEOUT


ERRORS_BY_KIND: Dict[ErrorKind, type] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.UNAUTHORIZED: Unauthorized,
    ErrorKind.PRECONDITION_FAILED: PreconditionFailed,
    ErrorKind.CONFLICT: Conflict,
    ErrorKind.ALREADY_LOCKED: AlreadyLocked,
    ErrorKind.NOT_FOUND: NotFound,
    ErrorKind.STORAGE: StorageError,
    ErrorKind.TIMEOUT: StorageTimeout,
}


__all__ = [
    "FieldError",
    "WorkflowError",
    "ValidationError",
    "Unauthorized",
    "PreconditionFailed",
    "FormNotLocked",
    "Conflict",
    "AlreadyLocked",
    "NotFound",
    "StorageError",
    "StorageTimeout",
    "ERRORS_BY_KIND",
]
