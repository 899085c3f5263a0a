"""Approval state machine for deed forms.

This module implements every state-changing operation of the workflow:
submission, review by the four verification stages, correction requests,
assignment, stamp duty calculation, the stage 5 final decision and lock, and
admin deletion.

Every mutating operation follows the same shape:

1. load the current form (native or legacy) through the reconciler and
   refuse it outright if it is locked
2. compare the caller's ``expected_version`` with the stored version, then
   check the payload (notes, remarks)
3. ask the RoleAccessGate whether the actor may act, and as which stage
4. check the operation's own preconditions
5. build the new form on a copy, re-derive its status, bump the version
6. commit with one version-checked write
7. write exactly one AuditEntry (success or failure) and notify listeners

Nothing is written before step 6, so a rejected or abandoned operation leaves
no trace other than its failure audit entry. A failed audit append never
hides the error being raised; after a committed mutation it is reported as a
warning on the OperationResult instead (degraded success).

Usage:
    >>> from deedflow.legacy import LegacyFormReconciler
    >>> from deedflow.store import InMemoryFormStore
    >>> from deedflow.types import Actor, Role, ServiceType
    >>> machine = ApprovalStateMachine(LegacyFormReconciler(InMemoryFormStore()))
    >>> result = machine.submit(None, Actor(id="u_1", role=Role.USER), {"buyer": "A"},
    ...                         service_type=ServiceType.SALE_DEED)
    >>> result.form.version
    1
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from deedflow.access import RoleAccessGate
from deedflow.accounts import InMemoryAccountDirectory
from deedflow.audit import AuditTrail, new_entry_id
from deedflow.changes import compute_changes, merge_fields
from deedflow.config import WorkflowConfig
from deedflow.errors import (
    Conflict,
    FieldError,
    NotFound,
    PreconditionFailed,
    StorageError,
    Unauthorized,
    ValidationError,
    WorkflowError,
)
from deedflow.events import AuditEntry, NotificationDispatcher
from deedflow.legacy import LegacyFormReconciler, synthesize_title
from deedflow.models import Form, FormNote, HistorySnapshot, StaffReport
from deedflow.report import FinalReportAssembler, ReportArtifact, ReportRenderer
from deedflow.stamp import calculate_stamp_duty
from deedflow.status import derive_status
from deedflow.store import InMemoryStaffReportStore
from deedflow.types import (
    STAGE_PREREQUISITES,
    Actor,
    AuditAction,
    AuditResult,
    ClientContext,
    Decision,
    FieldErrorCode,
    FormStatus,
    Operation,
    ProgressStatus,
    ServiceType,
    Stage,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

_EDITABLE = frozenset({FormStatus.DRAFT, FormStatus.NEEDS_CORRECTION})
_SUBMITTABLE = frozenset({FormStatus.DRAFT, FormStatus.SUBMITTED, FormStatus.NEEDS_CORRECTION})


def new_form_id() -> str:
    return f"form_{uuid.uuid4().hex[:16]}"


def _blank(text: Optional[str]) -> bool:
    return text is None or not text.strip()


def _progress(filled: Optional[int], total: Optional[int]) -> Optional[tuple]:
    if filled is None or not total:
        return None
    pct = max(0, min(100, round(filled * 100 / total)))
    if pct == 0:
        return pct, ProgressStatus.NOT_STARTED
    if pct == 100:
        return pct, ProgressStatus.COMPLETED
    return pct, ProgressStatus.IN_PROGRESS


@dataclass
class OperationResult:
    """Outcome of a successful operation.

    Attributes:
        form: Form as committed (None after delete)
        warnings: Degraded-success notes (audit, report, legacy history)
        staff_report: StaffReport touched by the operation, if any
        report: Final report assembled on lock
        details: Operation specific data (stamp calculation, report summary)
        audit_entry_id: Id of the success audit entry, None if it was not written
    """
    form: Optional[Form]
    warnings: List[str] = field(default_factory=list)
    staff_report: Optional[StaffReport] = None
    report: Optional[ReportArtifact] = None
    details: Dict[str, Any] = field(default_factory=dict)
    audit_entry_id: Optional[str] = None


class _Attempt:
    """Bookkeeping for one operation, turned into its audit entry."""

    def __init__(self, actor: Actor, action: AuditAction, resource_id: Optional[str], client: Optional[ClientContext]):
        self.actor = actor
        self.action = action
        self.resource_id = resource_id
        self.client = client or ClientContext()
        self.before: Optional[Form] = None
        self.after: Optional[Form] = None
        self.details: Dict[str, Any] = {}
        self.warnings: List[str] = []
        self.staff_report: Optional[StaffReport] = None
        self.report: Optional[ReportArtifact] = None


class ApprovalStateMachine:
    """Executes workflow operations against the unified form store.

    Args:
        reconciler: Routes loads and writes to the native or legacy store
        audit: Audit trail receiving one entry per operation
        gate: Role access gate
        staff_reports: StaffReport store
        accounts: Account directory used to validate assignments
        notifier: Notification dispatcher for committed mutations
        assembler: Final report assembler
        renderer: Optional hook receiving the report on lock
        config: Workflow configuration (storage timeout)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        reconciler: LegacyFormReconciler,
        audit: Optional[AuditTrail] = None,
        gate: Optional[RoleAccessGate] = None,
        staff_reports: Optional[InMemoryStaffReportStore] = None,
        accounts: Optional[InMemoryAccountDirectory] = None,
        notifier: Optional[NotificationDispatcher] = None,
        assembler: Optional[FinalReportAssembler] = None,
        renderer: Optional[ReportRenderer] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.reconciler = reconciler
        self.audit = audit or AuditTrail()
        self.gate = gate or reconciler.gate or RoleAccessGate()
        self.staff_reports = staff_reports or InMemoryStaffReportStore()
        self.accounts = accounts or InMemoryAccountDirectory()
        self.notifier = notifier or NotificationDispatcher()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.assembler = assembler or FinalReportAssembler(clock=self._clock)
        self.renderer = renderer
        self.config = config or WorkflowConfig()

    # -- submitter operations ----------------------------------------------

    def save_draft(
        self,
        form_id: Optional[str],
        actor: Actor,
        fields: Dict[str, Any],
        service_type: Optional[ServiceType] = None,
        form_title: Optional[str] = None,
        form_description: Optional[str] = None,
        submission_key: Optional[str] = None,
        filled_fields: Optional[int] = None,
        total_fields: Optional[int] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Create a draft (``form_id=None``) or merge a patch into one.

        Patch keys replace existing keys. Only draft and needs_correction
        forms can be edited.
        """
        timeout = self._timeout(timeout)
        action = AuditAction.FORM_CREATE if form_id is None else AuditAction.FORM_SAVE
        with self._attempt(actor, action, form_id, client) as attempt:
            if form_id is None:
                self._authorize(actor, None, Operation.SAVE)
                form = self._new_form(actor, fields, service_type, form_title, form_description, submission_key)
                progress = _progress(filled_fields, total_fields)
                if progress is not None:
                    form.progress_percentage, form.progress_status = progress
                form.status = derive_status(form)
                attempt.resource_id = form.id
                attempt.after = self.reconciler.create(form, timeout=timeout)
            else:
                current = self._load(attempt, form_id, expected_version, timeout)
                self._authorize(actor, current, Operation.SAVE)
                if current.status not in _EDITABLE:
                    raise PreconditionFailed(
                        f"form {form_id} is {current.status.value}; drafts can only be saved "
                        "while draft or needs_correction",
                        form_id=form_id,
                    )
                updated = current.clone()
                updated.fields = merge_fields(current.fields, fields)
                if form_title is not None:
                    updated.form_title = form_title
                if form_description is not None:
                    updated.form_description = form_description
                progress = _progress(filled_fields, total_fields)
                if progress is not None:
                    updated.progress_percentage, updated.progress_status = progress
                self._touch(updated, actor)
                attempt.after = self._commit(attempt, current, updated, timeout=timeout)
        return self._finish(attempt)

    def submit(
        self,
        form_id: Optional[str],
        actor: Actor,
        fields: Dict[str, Any],
        service_type: Optional[ServiceType] = None,
        form_title: Optional[str] = None,
        form_description: Optional[str] = None,
        submission_key: Optional[str] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Submit a form, creating it when ``form_id`` is None.

        The previous ``{fields, status, version}`` is appended to history and
        the fields are replaced. Resubmitting after a correction request clears
        the request and re-derives the status from the approval records.
        """
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.FORM_SUBMIT, form_id, client) as attempt:
            now = self._clock()
            if form_id is None:
                self._authorize(actor, None, Operation.SUBMIT)
                form = self._new_form(actor, fields, service_type, form_title, form_description, submission_key)
                form.submitted_at = now
                form.status = derive_status(form)
                attempt.resource_id = form.id
                attempt.after = self.reconciler.create(form, timeout=timeout)
            else:
                current = self._load(attempt, form_id, expected_version, timeout)
                self._authorize(actor, current, Operation.SUBMIT)
                if current.status not in _SUBMITTABLE:
                    raise PreconditionFailed(
                        f"form {form_id} is {current.status.value} and cannot be resubmitted",
                        form_id=form_id,
                    )
                updated = current.clone()
                if self.reconciler.supports_history(current):
                    updated.history.append(HistorySnapshot(
                        fields=dict(current.fields),
                        status=current.status,
                        version=current.version,
                        saved_at=now,
                        saved_by=actor.id,
                    ))
                updated.fields = dict(fields)
                if form_title is not None:
                    updated.form_title = form_title
                if form_description is not None:
                    updated.form_description = form_description
                updated.correction_stage = None
                updated.submitted_at = now
                self._touch(updated, actor)
                attempt.after = self._commit(attempt, current, updated, timeout=timeout)
        return self._finish(attempt)

    # -- admin operations ------------------------------------------------

    def assign(
        self,
        form_id: str,
        actor: Actor,
        staff_id: str,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Assign a form to an active staff account. Admin only.

        Raises:
            NotFound: If ``staff_id`` does not resolve to an account
            ValidationError: If the account is inactive or not a staff account
        """
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.FORM_ASSIGN, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            self._authorize(actor, current, Operation.ASSIGN)
            account = self.accounts.get(staff_id)
            if account is None:
                raise NotFound(f"account {staff_id} not found", form_id=form_id)
            if not account.is_active_staff:
                raise ValidationError(
                    f"account {staff_id} is not an active staff account",
                    fields=[FieldError(
                        path="staffId",
                        code=FieldErrorCode.INVALID_VALUE,
                        message=f"Account '{staff_id}' must be an active staff account",
                        received=account.role.value,
                    )],
                    form_id=form_id,
                )
            updated = current.clone()
            updated.assigned_to = staff_id
            if updated.submitted_at is not None and updated.review_started_at is None:
                updated.review_started_at = self._clock()
            self._touch(updated, actor)
            attempt.details = {"assignedTo": staff_id, "previouslyAssignedTo": current.assigned_to}
            attempt.after = self._commit(attempt, current, updated, timeout=timeout)
        return self._finish(attempt)

    def delete(
        self,
        form_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Remove a form. Admin only, refused once the form is locked."""
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.FORM_DELETE, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            self._authorize(actor, current, Operation.DELETE)
            self.reconciler.delete(current, current.version, timeout=timeout)
            attempt.details = {"deleted": form_id, "isLegacy": current.is_legacy}
            logger.info("form %s deleted by %s", form_id, actor.id)
        return self._finish(attempt)

    # -- stage work ------------------------------------------------------

    def correct(
        self,
        form_id: str,
        actor: Actor,
        fields: Dict[str, Any],
        notes: Optional[str] = None,
        stage: Optional[Stage] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Apply a staff correction to the form fields.

        Approval flags are left untouched. The staff member's StaffReport
        records the data before their first edit and the resulting change set.
        """
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.FORM_CORRECT, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            acting = self._authorize(actor, current, Operation.CORRECT, stage)
            self._require_reviewable(current, acting)
            report = self._open_report(actor, current, acting, timeout)

            updated = current.clone()
            updated.fields = merge_fields(current.fields, fields)
            self._add_note(updated, actor, notes, acting)
            self._start_review(updated)
            self._touch(updated, actor)
            attempt.details = {"stage": acting.value, "changedFields": sorted(fields)}
            attempt.after = self._commit(attempt, current, updated, edited_by=acting, timeout=timeout)

            report.edited_data = dict(attempt.after.fields)
            report.change_set = compute_changes(report.original_data, report.edited_data)
            if notes:
                report.remarks = notes
            self._save_report(attempt, report, timeout)
        return self._finish(attempt)

    def verify(
        self,
        form_id: str,
        actor: Actor,
        approved: bool,
        notes: Optional[str] = None,
        stage: Optional[Stage] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Record a stage verification decision.

        ``approved=False`` requires notes and rejects the form. Approving
        staff1 yields verified; approving staff4 yields cross_verified.
        """
        timeout = self._timeout(timeout)
        action = AuditAction.FORM_VERIFY if approved else AuditAction.FORM_REJECT
        with self._attempt(actor, action, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            if not approved and _blank(notes):
                raise ValidationError(
                    "notes are required when rejecting a form",
                    fields=[FieldError(
                        path="notes",
                        code=FieldErrorCode.REQUIRED,
                        message="Field 'notes' is required when approved is false",
                    )],
                    form_id=form_id,
                )
            acting = self._authorize(actor, current, Operation.VERIFY, stage)
            self._require_reviewable(current, acting)
            if approved:
                self._require_prerequisites(current, acting)
            report = self._open_report(actor, current, acting, timeout)

            now = self._clock()
            updated = current.clone()
            record = updated.approvals[acting]
            record.approved = bool(approved)
            record.rejected = not approved
            record.approved_by = actor.id
            record.approved_at = now
            record.notes = notes
            if approved and updated.correction_stage == acting:
                updated.correction_stage = None
            self._add_note(updated, actor, notes, acting)
            self._start_review(updated)
            self._touch(updated, actor)
            attempt.details = {"stage": acting.value, "approved": bool(approved)}
            attempt.after = self._commit(attempt, current, updated, timeout=timeout)

            report.edited_data = dict(attempt.after.fields)
            report.change_set = compute_changes(report.original_data, report.edited_data)
            report.verification_status = VerificationStatus.VERIFIED if approved else VerificationStatus.REJECTED
            report.verification_notes = notes
            self._save_report(attempt, report, timeout)
        return self._finish(attempt)

    def request_correction(
        self,
        form_id: str,
        actor: Actor,
        notes: str,
        stage: Optional[Stage] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Send the form back to its submitter with status needs_correction."""
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.CORRECTION_REQUEST, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            if _blank(notes):
                raise ValidationError(
                    "notes are required when requesting a correction",
                    fields=[FieldError(path="notes", code=FieldErrorCode.REQUIRED,
                                       message="Field 'notes' is required but was not provided")],
                    form_id=form_id,
                )
            acting = self._authorize(actor, current, Operation.REQUEST_CORRECTION, stage)
            self._require_reviewable(current, acting)
            report = self._open_report(actor, current, acting, timeout)

            updated = current.clone()
            updated.correction_stage = acting
            self._add_note(updated, actor, notes, acting)
            self._start_review(updated)
            self._touch(updated, actor)
            attempt.details = {"stage": acting.value, "notes": notes}
            attempt.after = self._commit(attempt, current, updated, timeout=timeout)

            report.verification_status = VerificationStatus.CORRECTION_REQUESTED
            report.verification_notes = notes
            self._save_report(attempt, report, timeout)
        return self._finish(attempt)

    def calculate_stamp_duty(
        self,
        form_id: str,
        actor: Actor,
        property_value: float,
        property_type: Optional[str] = None,
        location: Optional[str] = None,
        calculation_method: Optional[str] = None,
        applicable_rules: Optional[List[str]] = None,
        notes: Optional[str] = None,
        stage: Optional[Stage] = None,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Compute the stamp duty and store it on the staff1 StaffReport.

        The form itself is not modified, so its version does not change.
        """
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.STAMP_CALCULATION, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            acting = self._authorize(actor, current, Operation.CALCULATE_STAMP, stage)
            self._require_reviewable(current, acting)
            report = self._open_report(actor, current, acting, timeout)

            calculation = calculate_stamp_duty(
                current.service_type,
                property_value,
                property_type=property_type,
                location=location,
                calculation_method=calculation_method,
                applicable_rules=applicable_rules,
                notes=notes,
            )
            report.stamp_calculation = calculation
            report.updated_at = self._clock()
            attempt.staff_report = self.staff_reports.save(report, timeout=timeout)
            attempt.after = current
            attempt.details = calculation
            logger.info(
                "stamp duty %s computed for %s by %s",
                calculation["calculatedAmount"], form_id, actor.id,
            )
        return self._finish(attempt)

    def final_approval(
        self,
        form_id: str,
        actor: Actor,
        decision: Decision,
        final_remarks: Optional[str] = None,
        lock: bool = False,
        expected_version: Optional[int] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Record the stage 5 decision, optionally locking the form.

        Locking is irreversible. On lock the final report is assembled and
        handed to the renderer; report failures become warnings.
        """
        timeout = self._timeout(timeout)
        decision = Decision(decision)
        action = AuditAction.FORM_LOCK if lock else AuditAction.FINAL_APPROVAL
        with self._attempt(actor, action, form_id, client) as attempt:
            current = self._load(attempt, form_id, expected_version, timeout)
            if decision == Decision.REJECTED and _blank(final_remarks):
                raise ValidationError(
                    "final remarks are required when rejecting a form",
                    fields=[FieldError(path="finalRemarks", code=FieldErrorCode.REQUIRED,
                                       message="Field 'finalRemarks' is required when decision is rejected")],
                    form_id=form_id,
                )
            acting = self._authorize(actor, current, Operation.FINAL_APPROVAL, Stage.STAFF5)
            self._require_prerequisites(current, acting)

            now = self._clock()
            updated = current.clone()
            record = updated.approvals[Stage.STAFF5]
            record.approved = decision == Decision.APPROVED
            record.approved_by = actor.id
            record.approved_at = now
            record.final_decision = decision
            record.final_remarks = final_remarks
            record.notes = final_remarks
            if lock:
                record.locked = True
                record.locked_by = actor.id
                record.locked_at = now
            self._touch(updated, actor)
            attempt.details = {"decision": decision.value, "lock": lock}
            attempt.after = self._commit(attempt, current, updated, timeout=timeout)
            if lock:
                logger.info("form %s locked by %s with decision %s", form_id, actor.id, decision.value)
        result = self._finish(attempt)
        if lock:
            self._produce_report(result, actor)
        return result

    def submit_staff_reports(
        self,
        actor: Actor,
        work_summary: Optional[str] = None,
        issues_encountered: Optional[str] = None,
        recommendations: Optional[str] = None,
        client: Optional[ClientContext] = None,
        timeout: Optional[float] = None,
    ) -> OperationResult:
        """Mark every pending StaffReport of ``actor`` as submitted (read-only)."""
        timeout = self._timeout(timeout)
        with self._attempt(actor, AuditAction.REPORTS_SUBMIT, f"staff:{actor.id}", client) as attempt:
            if not actor.role.is_staff:
                raise Unauthorized(f"role {actor.role.value} has no work reports to submit")
            now = self._clock()
            pending = self.staff_reports.find(staff_id=actor.id, submitted=False, timeout=timeout)
            for report in pending:
                report.is_submitted = True
                report.submitted_at = now
                report.updated_at = now
                self.staff_reports.save(report, timeout=timeout)
            attempt.details = {
                "submittedCount": len(pending),
                "formIds": [r.form_id for r in pending],
                "workSummary": work_summary,
                "issuesEncountered": issues_encountered,
                "recommendations": recommendations,
                "submittedAt": now.isoformat(),
            }
            logger.info("%s submitted %d work reports", actor.id, len(pending))
        return self._finish(attempt)

    def record_rejection(
        self,
        actor: Actor,
        action: AuditAction,
        resource_id: Optional[str],
        error: WorkflowError,
        client: Optional[ClientContext] = None,
    ) -> None:
        """Audit an operation refused before it reached the state machine."""
        self._record_failure(_Attempt(actor, action, resource_id, client), error)

    # -- internals -------------------------------------------------------

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.config.storage_timeout if timeout is None else timeout

    @contextmanager
    def _attempt(
        self,
        actor: Actor,
        action: AuditAction,
        resource_id: Optional[str],
        client: Optional[ClientContext],
    ) -> Iterator[_Attempt]:
        attempt = _Attempt(actor, action, resource_id, client)
        try:
            yield attempt
        except Exception as exc:
            self._record_failure(attempt, exc)
            raise

    def _load(self, attempt: _Attempt, form_id: str, expected_version: Optional[int], timeout: float) -> Form:
        form = self.reconciler.load(form_id, timeout=timeout)
        attempt.before = form
        self.gate.check_unlocked(form).raise_for_denial(form_id)
        if expected_version is not None and expected_version != form.version:
            raise Conflict(
                f"form {form_id} is at version {form.version}, expected {expected_version}",
                expected_version=expected_version,
                actual_version=form.version,
                form_id=form_id,
            )
        return form

    def _authorize(
        self,
        actor: Actor,
        form: Optional[Form],
        operation: Operation,
        stage: Optional[Stage] = None,
    ) -> Optional[Stage]:
        decision = self.gate.can_perform(actor, form, operation, stage=stage)
        decision.raise_for_denial(form.id if form is not None else None)
        return decision.stage

    def _require_reviewable(self, form: Form, stage: Stage) -> None:
        if form.submitted_at is None:
            raise PreconditionFailed(f"form {form.id} has not been submitted yet", form_id=form.id)
        if stage != Stage.STAFF5 and form.is_approved(stage):
            raise PreconditionFailed(f"{stage.value} has already approved this form", form_id=form.id)

    def _require_prerequisites(self, form: Form, stage: Stage) -> None:
        """Stage order holds for every actor, admin included."""
        missing = [p.value for p in STAGE_PREREQUISITES[stage] if not form.is_approved(p)]
        if missing:
            verb = "has" if len(missing) == 1 else "have"
            raise PreconditionFailed(
                f"{stage.value} cannot act until {', '.join(missing)} {verb} approved",
                form_id=form.id,
            )

    def _new_form(
        self,
        actor: Actor,
        fields: Dict[str, Any],
        service_type: Optional[ServiceType],
        form_title: Optional[str],
        form_description: Optional[str],
        submission_key: Optional[str],
    ) -> Form:
        if service_type is None:
            raise ValidationError(
                "service type is required when creating a form",
                fields=[FieldError(path="serviceType", code=FieldErrorCode.REQUIRED,
                                   message="Field 'serviceType' is required but was not provided")],
            )
        service_type = ServiceType(service_type)
        form_id = new_form_id()
        now = self._clock()
        return Form(
            id=form_id,
            service_type=service_type,
            submitter_id=actor.principal_id,
            fields=dict(fields),
            version=1,
            submission_key=submission_key or form_id,
            form_title=form_title or synthesize_title(service_type, form_id[len("form_"):]),
            form_description=form_description,
            created_at=now,
            last_activity_at=now,
            last_activity_by=actor.id,
        )

    def _touch(self, form: Form, actor: Actor) -> None:
        form.last_activity_at = self._clock()
        form.last_activity_by = actor.id

    def _start_review(self, form: Form) -> None:
        if form.review_started_at is None:
            form.review_started_at = self._clock()

    def _add_note(self, form: Form, actor: Actor, notes: Optional[str], stage: Stage) -> None:
        if not _blank(notes):
            form.notes.append(FormNote(note=notes, added_by=actor.id, added_at=self._clock(), stage=stage))

    def _open_report(self, actor: Actor, form: Form, stage: Stage, timeout: float) -> StaffReport:
        report = self.staff_reports.get(actor.id, form.id, timeout=timeout)
        if report is not None and report.is_submitted:
            raise PreconditionFailed(
                f"work report of {actor.id} on form {form.id} is already submitted",
                form_id=form.id,
            )
        if report is None:
            now = self._clock()
            report = StaffReport(
                staff_id=actor.id,
                form_id=form.id,
                stage=stage,
                service_type=form.service_type,
                original_data=dict(form.fields),
                edited_data=dict(form.fields),
                created_at=now,
                updated_at=now,
            )
        return report

    def _save_report(self, attempt: _Attempt, report: StaffReport, timeout: float) -> None:
        """Persist a StaffReport after the form commit. Failures become warnings."""
        report.updated_at = self._clock()
        try:
            attempt.staff_report = self.staff_reports.save(report, timeout=timeout)
        except StorageError as exc:
            attempt.staff_report = report
            attempt.warnings.append(f"work report for {report.form_id} was not saved: {exc.reason}")
            logger.warning("work report save failed for %s: %s", report.form_id, exc.reason)

    def _commit(
        self,
        attempt: _Attempt,
        current: Form,
        updated: Form,
        edited_by: Optional[Stage] = None,
        timeout: Optional[float] = None,
    ) -> Form:
        updated.version = current.version + 1
        updated.status = derive_status(updated)
        committed = self.reconciler.write_back(
            updated, current.version, edited_by=edited_by, timeout=timeout
        )
        if not self.reconciler.supports_history(committed):
            attempt.warnings.append(f"history is not persisted for legacy form {committed.id}")
        logger.info(
            "%s on %s committed: %s -> %s (version %d) by %s",
            attempt.action.value, committed.id, current.status.value,
            committed.status.value, committed.version, attempt.actor.id,
        )
        return committed

    def _entry(
        self,
        attempt: _Attempt,
        result: AuditResult,
        error: Optional[BaseException] = None,
    ) -> AuditEntry:
        details = dict(attempt.details)
        if attempt.actor.on_behalf_of:
            details["onBehalfOf"] = attempt.actor.on_behalf_of
        if error is not None:
            details["reason"] = getattr(error, "reason", str(error))
        return AuditEntry(
            entry_id=new_entry_id(),
            actor_id=attempt.actor.id,
            actor_role=attempt.actor.role,
            action=attempt.action,
            resource_id=attempt.resource_id,
            timestamp=self._clock(),
            result=result,
            before_snapshot=attempt.before.snapshot() if attempt.before is not None else None,
            after_snapshot=attempt.after.snapshot() if attempt.after is not None and error is None else None,
            client_context=attempt.client,
            error_kind=getattr(error, "kind", None),
            details=details or None,
        )

    def _record_failure(self, attempt: _Attempt, error: BaseException) -> None:
        if isinstance(error, StorageError):
            logger.error("%s on %s failed: %s", attempt.action.value, attempt.resource_id, error)
        elif isinstance(error, WorkflowError):
            logger.info(
                "%s on %s refused for %s: %s",
                attempt.action.value, attempt.resource_id, attempt.actor.id, error.reason,
            )
        else:
            logger.exception("%s on %s raised unexpectedly", attempt.action.value, attempt.resource_id)
        try:
            self.audit.append(self._entry(attempt, AuditResult.FAILURE, error))
        except StorageError as exc:
            logger.warning(
                "failure audit entry for %s on %s was not written: %s",
                attempt.action.value, attempt.resource_id, exc.reason,
            )

    def _finish(self, attempt: _Attempt) -> OperationResult:
        entry = self._entry(attempt, AuditResult.SUCCESS)
        entry_id = None
        try:
            entry_id = self.audit.append(entry)
        except StorageError as exc:
            attempt.warnings.append(f"audit entry for {attempt.action.value} was not written: {exc.reason}")
            logger.warning(
                "audit append failed after committed %s on %s: %s",
                attempt.action.value, attempt.resource_id, exc.reason,
            )
        self.notifier.emit(entry)
        return OperationResult(
            form=attempt.after,
            warnings=attempt.warnings,
            staff_report=attempt.staff_report,
            report=attempt.report,
            details=attempt.details,
            audit_entry_id=entry_id,
        )

    def _produce_report(self, result: OperationResult, actor: Actor) -> None:
        try:
            result.report = self.assembler.assemble(result.form, generated_by=actor.id)
        except WorkflowError as exc:
            result.warnings.append(f"final report could not be assembled: {exc.reason}")
            logger.warning("final report assembly failed for %s: %s", result.form.id, exc.reason)
            return
        if self.renderer is None:
            return
        try:
            self.renderer(result.report)
        except Exception as exc:
            result.warnings.append(f"final report rendering failed: {exc}")
            logger.warning("report renderer failed for %s", result.form.id, exc_info=True)


__all__ = [
    "ApprovalStateMachine",
    "OperationResult",
    "new_form_id",
]
