"""Role-based access gate.

``RoleAccessGate.can_perform`` is a pure decision function of
(actor, form snapshot, operation). It performs no I/O and never mutates the
form. The state machine consults it before every operation and turns a deny
into the matching typed error via ``AccessDecision.raise_for_denial``.

Usage:
    >>> from deedflow.types import Actor, Operation, Role
    >>> gate = RoleAccessGate()
    >>> gate.can_perform(Actor(id="u_1", role=Role.USER), None, Operation.SAVE).allowed
    True
"""

from dataclasses import dataclass
from typing import Optional

from deedflow.errors import AlreadyLocked, PreconditionFailed, Unauthorized, ValidationError
from deedflow.models import Form
from deedflow.types import (
    STAGE_PREREQUISITES,
    Actor,
    ErrorKind,
    Operation,
    Role,
    Stage,
)


_SELF_SERVICE = frozenset({Operation.SAVE, Operation.SUBMIT})
_ADMIN_ONLY = frozenset({Operation.ASSIGN, Operation.DELETE})
_STAGE_WORK = frozenset({Operation.CORRECT, Operation.VERIFY, Operation.REQUEST_CORRECTION})
_READS = frozenset({Operation.READ, Operation.READ_REPORT})

_DENIAL_ERRORS = {
    ErrorKind.UNAUTHORIZED: Unauthorized,
    ErrorKind.PRECONDITION_FAILED: PreconditionFailed,
    ErrorKind.ALREADY_LOCKED: AlreadyLocked,
    ErrorKind.VALIDATION: ValidationError,
}


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of a gate check.

    Attributes:
        allowed: Whether the operation may proceed
        kind: Error kind of the denial (None when allowed)
        reason: Human-readable denial reason
        stage: Stage the actor acts as, when the operation is stage work
    """
    allowed: bool
    kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    stage: Optional[Stage] = None

    @classmethod
    def allow(cls, stage: Optional[Stage] = None) -> "AccessDecision":
        return cls(allowed=True, stage=stage)

    @classmethod
    def deny(cls, kind: ErrorKind, reason: str) -> "AccessDecision":
        return cls(allowed=False, kind=kind, reason=reason)

    def raise_for_denial(self, form_id: Optional[str] = None) -> None:
        """Raise the typed error matching this decision (no-op when allowed)."""
        if self.allowed:
            return
        error_cls = _DENIAL_ERRORS.get(self.kind, Unauthorized)
        raise error_cls(self.reason, form_id=form_id)


class RoleAccessGate:
    """Decides which operations a role may perform on a form in its current state."""

    def check_unlocked(self, form: Form) -> AccessDecision:
        """Deny every mutation of a locked form, whoever asks."""
        if form.locked:
            return AccessDecision.deny(
                ErrorKind.ALREADY_LOCKED,
                f"form {form.id} is locked; only reads and report generation are permitted",
            )
        return AccessDecision.allow()

    def can_perform(
        self,
        actor: Actor,
        form: Optional[Form],
        operation: Operation,
        stage: Optional[Stage] = None,
    ) -> AccessDecision:
        """Decide whether ``actor`` may perform ``operation`` on ``form``.

        Args:
            actor: The caller
            form: Current form snapshot, or None when the operation creates one
            operation: Requested operation
            stage: Stage an admin acts as for stage work (ignored for staff,
                who always act as their own stage)

        Returns:
            AccessDecision; denials carry UNAUTHORIZED, PRECONDITION_FAILED or
            ALREADY_LOCKED kinds
        """
        if form is not None and operation not in _READS:
            frozen = self.check_unlocked(form)
            if not frozen.allowed:
                return frozen

        if operation in _READS:
            return self._check_read(actor, form)
        if operation in _SELF_SERVICE:
            return self._check_self_service(actor, form, operation)
        if operation in _ADMIN_ONLY:
            if actor.role == Role.ADMIN:
                return AccessDecision.allow()
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, f"only admin may perform {operation.value}"
            )

        acting_stage = self.stage_for(actor, stage)
        if acting_stage is None:
            if actor.role == Role.ADMIN:
                return AccessDecision.deny(
                    ErrorKind.VALIDATION, f"admin must name the stage to act as for {operation.value}"
                )
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, f"role {actor.role.value} may not perform {operation.value}"
            )

        if operation == Operation.FINAL_APPROVAL:
            if acting_stage != Stage.STAFF5:
                return AccessDecision.deny(
                    ErrorKind.UNAUTHORIZED, "only staff5 may record the final decision"
                )
        elif acting_stage == Stage.STAFF5:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED,
                "staff5 may only set the final decision and lock, never edit or verify fields",
            )
        elif operation == Operation.CALCULATE_STAMP and acting_stage != Stage.STAFF1:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, "stamp duty is calculated by staff1"
            )
        elif operation not in _STAGE_WORK and operation != Operation.CALCULATE_STAMP:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, f"unsupported operation {operation.value}"
            )

        if form is None:
            return AccessDecision.deny(
                ErrorKind.PRECONDITION_FAILED, f"{operation.value} requires an existing form"
            )
        if actor.role == Role.ADMIN:
            return AccessDecision.allow(stage=acting_stage)
        return self._check_stage(form, acting_stage)

    def stage_for(self, actor: Actor, requested: Optional[Stage] = None) -> Optional[Stage]:
        """Resolve the stage an actor acts as. Staff act as their own stage."""
        own = Stage.for_role(actor.role)
        if own is not None:
            return own
        if actor.role == Role.ADMIN:
            return requested
        return None

    def _check_stage(self, form: Form, stage: Stage) -> AccessDecision:
        missing = [p for p in STAGE_PREREQUISITES[stage] if not form.is_approved(p)]
        if missing:
            names = ", ".join(m.value for m in missing)
            verb = "has" if len(missing) == 1 else "have"
            return AccessDecision.deny(
                ErrorKind.PRECONDITION_FAILED,
                f"{stage.value} cannot act until {names} {verb} approved",
            )
        if stage == Stage.STAFF5:
            return AccessDecision.allow(stage=stage)
        if form.is_approved(stage):
            return AccessDecision.deny(
                ErrorKind.PRECONDITION_FAILED, f"{stage.value} has already approved this form"
            )
        return AccessDecision.allow(stage=stage)

    def _check_self_service(
        self, actor: Actor, form: Optional[Form], operation: Operation
    ) -> AccessDecision:
        if actor.role == Role.ADMIN:
            return AccessDecision.allow()
        if actor.role == Role.AGENT and not actor.on_behalf_of:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, "agent must act on behalf of a submitter"
            )
        if actor.role not in (Role.USER, Role.AGENT):
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED,
                f"{operation.value} is reserved to the submitter; {actor.role.value} may not perform it",
            )
        if form is not None and form.submitter_id != actor.principal_id:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, f"form {form.id} belongs to another submitter"
            )
        return AccessDecision.allow()

    def _check_read(self, actor: Actor, form: Optional[Form]) -> AccessDecision:
        if actor.role == Role.ADMIN or actor.role.is_staff:
            return AccessDecision.allow()
        if actor.role == Role.AGENT and not actor.on_behalf_of:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, "agent must act on behalf of a submitter"
            )
        if form is not None and form.submitter_id != actor.principal_id:
            return AccessDecision.deny(
                ErrorKind.UNAUTHORIZED, f"form {form.id} belongs to another submitter"
            )
        return AccessDecision.allow()


__all__ = [
    "AccessDecision",
    "RoleAccessGate",
]
