"""WorkflowRuntime: the inbound boundary of the deedflow engine.

This module provides the WorkflowRuntime class that wires the stores, the
access gate, the audit trail, the legacy reconciler and the state machine
together, and exposes every workflow operation as a call returning a plain
dict envelope:

    {"ok": True, ...}
    {"ok": False, "error": {"kind", "reason", "retryable", "fields"?}}

Payloads use camelCase keys and are validated against their JSON Schemas
before anything else happens. Actors and client contexts may be passed as
dicts or as their dataclasses.

Usage:
    >>> from deedflow.runtime import WorkflowRuntime
    >>> runtime = WorkflowRuntime()
    >>> result = runtime.submit(None, {"id": "u_1", "role": "user"},
    ...                         {"serviceType": "sale-deed", "fields": {"buyer": "A"}})
    >>> result["ok"], result["form"]["status"], result["form"]["version"]
    (True, 'submitted', 1)
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union

from deedflow.access import RoleAccessGate
from deedflow.accounts import InMemoryAccountDirectory
from deedflow.audit import AuditFilter, AuditTrail, InMemoryAuditLog, JsonlAuditLog
from deedflow.config import WorkflowConfig
from deedflow.errors import AlreadyLocked, Unauthorized, ValidationError, WorkflowError
from deedflow.events import NotificationDispatcher
from deedflow.legacy import LegacyCollection, LegacyFormReconciler, UnifiedFilter
from deedflow.report import FinalReportAssembler, ReportRenderer
from deedflow.state_machine import ApprovalStateMachine, OperationResult
from deedflow.store import InMemoryFormStore, InMemoryStaffReportStore
from deedflow.types import (
    Actor,
    AuditAction,
    ClientContext,
    FormStatus,
    Operation,
    Role,
    ServiceType,
    Stage,
)
from deedflow.validation import PayloadValidator

logger = logging.getLogger(__name__)

ActorLike = Union[Actor, Dict[str, Any]]
ClientLike = Union[ClientContext, Dict[str, Any], None]

_FAILURE_ACTIONS = {
    "save": AuditAction.FORM_SAVE,
    "submit": AuditAction.FORM_SUBMIT,
    "assign": AuditAction.FORM_ASSIGN,
    "correct": AuditAction.FORM_CORRECT,
    "verify": AuditAction.FORM_VERIFY,
    "request_correction": AuditAction.CORRECTION_REQUEST,
    "final_approval": AuditAction.FINAL_APPROVAL,
    "calculate_stamp": AuditAction.STAMP_CALCULATION,
    "submit_reports": AuditAction.REPORTS_SUBMIT,
}


def _stage(payload: Dict[str, Any]) -> Optional[Stage]:
    value = payload.get("stage")
    return Stage(value) if value else None


class WorkflowRuntime:
    """Entry point for callers of the approval workflow.

    Attributes:
        config: Effective configuration
        machine: The ApprovalStateMachine executing mutations
        reconciler: Unified view over native and legacy forms
        audit: The audit trail

    Examples:
        >>> runtime = WorkflowRuntime()
        >>> runtime.get_form("form_missing", {"id": "a_1", "role": "admin"})["error"]["kind"]
        'not_found'
    """

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        legacy_collections: Iterable[LegacyCollection] = (),
        accounts: Optional[InMemoryAccountDirectory] = None,
        notifier: Optional[NotificationDispatcher] = None,
        renderer: Optional[ReportRenderer] = None,
        form_store: Optional[InMemoryFormStore] = None,
        staff_reports: Optional[InMemoryStaffReportStore] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or WorkflowConfig.from_env()
        gate = RoleAccessGate()
        if audit is None:
            log = JsonlAuditLog(self.config.audit_log_path) if self.config.audit_log_path else InMemoryAuditLog()
            audit = AuditTrail(log)
        self.audit = audit
        self.reconciler = LegacyFormReconciler(
            form_store or InMemoryFormStore(),
            collections=legacy_collections,
            gate=gate,
            per_collection_limit=self.config.legacy_per_collection_limit,
            clock=clock,
        )
        self.assembler = FinalReportAssembler(clock=clock)
        self.machine = ApprovalStateMachine(
            self.reconciler,
            audit=self.audit,
            gate=gate,
            staff_reports=staff_reports,
            accounts=accounts,
            notifier=notifier,
            assembler=self.assembler,
            renderer=renderer,
            config=self.config,
            clock=clock,
        )
        self.gate = gate
        self._validator = PayloadValidator()

    # -- mutations -------------------------------------------------------

    def save_draft(
        self,
        form_id: Optional[str],
        actor: ActorLike,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
        client: ClientLike = None,
    ) -> Dict[str, Any]:
        """Create or update a draft.

        Payload keys: ``fields`` (required), ``serviceType`` (required on
        creation), ``formTitle``, ``formDescription``, ``submissionKey``,
        ``filledFields``, ``totalFields``.
        """
        return self._mutate("save", form_id, actor, payload, client, lambda a, c: self.machine.save_draft(
            form_id, a, payload["fields"],
            service_type=payload.get("serviceType"),
            form_title=payload.get("formTitle"),
            form_description=payload.get("formDescription"),
            submission_key=payload.get("submissionKey"),
            filled_fields=payload.get("filledFields"),
            total_fields=payload.get("totalFields"),
            expected_version=expected_version,
            client=c,
        ))

    def submit(
        self,
        form_id: Optional[str],
        actor: ActorLike,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
        client: ClientLike = None,
    ) -> Dict[str, Any]:
        return self._mutate("submit", form_id, actor, payload, client, lambda a, c: self.machine.submit(
            form_id, a, payload["fields"],
            service_type=payload.get("serviceType"),
            form_title=payload.get("formTitle"),
            form_description=payload.get("formDescription"),
            submission_key=payload.get("submissionKey"),
            expected_version=expected_version,
            client=c,
        ))

    def assign(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate("assign", form_id, actor, payload, client, lambda a, c: self.machine.assign(
            form_id, a, payload["staffId"], expected_version=expected_version, client=c,
        ))

    def correct(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate("correct", form_id, actor, payload, client, lambda a, c: self.machine.correct(
            form_id, a, payload["fields"],
            notes=payload.get("notes"),
            stage=_stage(payload),
            expected_version=expected_version,
            client=c,
        ))

    def verify(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate("verify", form_id, actor, payload, client, lambda a, c: self.machine.verify(
            form_id, a, payload["approved"],
            notes=payload.get("notes"),
            stage=_stage(payload),
            expected_version=expected_version,
            client=c,
        ))

    def request_correction(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate(
            "request_correction", form_id, actor, payload, client,
            lambda a, c: self.machine.request_correction(
                form_id, a, payload["notes"],
                stage=_stage(payload),
                expected_version=expected_version,
                client=c,
            ),
        )

    def final_approval(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        """Record the stage 5 decision. Payload: ``decision``, ``finalRemarks``, ``lock``."""
        return self._mutate(
            "final_approval", form_id, actor, payload, client,
            lambda a, c: self.machine.final_approval(
                form_id, a, payload["decision"],
                final_remarks=payload.get("finalRemarks"),
                lock=payload.get("lock", False),
                expected_version=expected_version,
                client=c,
            ),
        )

    def calculate_stamp_duty(self, form_id, actor, payload, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate(
            "calculate_stamp", form_id, actor, payload, client,
            lambda a, c: self.machine.calculate_stamp_duty(
                form_id, a, payload["propertyValue"],
                property_type=payload.get("propertyType"),
                location=payload.get("location"),
                calculation_method=payload.get("calculationMethod"),
                applicable_rules=payload.get("applicableRules"),
                notes=payload.get("notes"),
                stage=_stage(payload),
                expected_version=expected_version,
                client=c,
            ),
        )

    def delete_form(self, form_id, actor, expected_version=None, client=None) -> Dict[str, Any]:
        return self._mutate("delete", form_id, actor, None, client, lambda a, c: self.machine.delete(
            form_id, a, expected_version=expected_version, client=c,
        ))

    def submit_staff_reports(self, actor, payload=None, client=None) -> Dict[str, Any]:
        payload = payload or {}
        return self._mutate("submit_reports", None, actor, payload, client, lambda a, c: self.machine.submit_staff_reports(
            a,
            work_summary=payload.get("workSummary"),
            issues_encountered=payload.get("issuesEncountered"),
            recommendations=payload.get("recommendations"),
            client=c,
        ))

    # -- reads -----------------------------------------------------------

    def get_form(self, form_id: str, actor: ActorLike) -> Dict[str, Any]:
        try:
            actor = self._actor(actor)
            form = self.reconciler.load(form_id, timeout=self.config.storage_timeout)
            self.gate.can_perform(actor, form, Operation.READ).raise_for_denial(form_id)
        except WorkflowError as exc:
            return self._error(exc)
        return {"ok": True, "form": form.to_dict()}

    def list_unified(self, actor: ActorLike, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """List native and legacy forms visible to ``actor``.

        Submitters (and agents acting for them) only ever see their own forms.
        """
        filters = filters or {}
        try:
            actor = self._actor(actor)
            self._validator.validate("list", filters)
            criteria = self._unified_filter(actor, filters)
            forms = self.reconciler.list_unified(criteria, timeout=self.config.storage_timeout)
        except WorkflowError as exc:
            return self._error(exc)
        return {
            "ok": True,
            "forms": [f.to_dict() for f in forms],
            "count": len(forms),
            "skip": criteria.skip,
            "limit": criteria.limit,
        }

    def get_audit_trail(
        self,
        form_id: str,
        actor: ActorLike,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Audit entries for one form, oldest first. ``since``/``until`` are ISO strings."""
        filters = filters or {}
        try:
            actor = self._actor(actor)
            if not (actor.role.is_staff or actor.role == Role.ADMIN):
                form = self.reconciler.load(form_id, timeout=self.config.storage_timeout)
                self.gate.can_perform(actor, form, Operation.READ).raise_for_denial(form_id)
            criteria = AuditFilter(
                resource_id=form_id,
                action=AuditAction(filters["action"]) if filters.get("action") else None,
                since=filters.get("since"),
                until=filters.get("until"),
            )
            entries = self.audit.query(criteria).to_list()
        except ValueError as exc:
            return self._error(ValidationError(f"invalid audit filter: {exc}", form_id=form_id))
        except WorkflowError as exc:
            return self._error(exc)
        return {"ok": True, "entries": [e.to_dict() for e in entries], "count": len(entries)}

    def get_final_report(self, form_id: str, actor: ActorLike) -> Dict[str, Any]:
        """Assemble the final report of a locked form (``precondition_failed`` otherwise)."""
        try:
            actor = self._actor(actor)
            form = self.reconciler.load(form_id, timeout=self.config.storage_timeout)
            self.gate.can_perform(actor, form, Operation.READ_REPORT).raise_for_denial(form_id)
            artifact = self.assembler.assemble(form, generated_by=self.config.report_generated_by)
        except WorkflowError as exc:
            return self._error(exc)
        return {"ok": True, "report": artifact.to_dict()}

    def get_staff_reports(
        self,
        actor: ActorLike,
        form_id: Optional[str] = None,
        staff_id: Optional[str] = None,
        submitted: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Work reports. Staff see their own; admin may ask for anyone's."""
        try:
            actor = self._actor(actor)
            if actor.role == Role.ADMIN:
                owner = staff_id
            elif actor.role.is_staff:
                if staff_id is not None and staff_id != actor.id:
                    raise Unauthorized("staff may only read their own work reports")
                owner = actor.id
            else:
                raise Unauthorized(f"role {actor.role.value} may not read work reports")
            reports = self.machine.staff_reports.find(
                staff_id=owner, form_id=form_id, submitted=submitted,
                timeout=self.config.storage_timeout,
            )
        except WorkflowError as exc:
            return self._error(exc)
        return {"ok": True, "reports": [r.to_dict() for r in reports], "count": len(reports)}

    def form_stats(self, actor: ActorLike) -> Dict[str, Any]:
        """Counts by status and by service type over every visible form."""
        try:
            actor = self._actor(actor)
            criteria = self._unified_filter(actor, {})
            criteria = UnifiedFilter(submitter_id=criteria.submitter_id, limit=None)
            forms = self.reconciler.list_unified(criteria, timeout=self.config.storage_timeout, capped=False)
        except WorkflowError as exc:
            return self._error(exc)
        by_status = Counter(f.status.value for f in forms)
        by_service = Counter(f.service_type.value for f in forms)
        return {
            "ok": True,
            "total": len(forms),
            "byStatus": {s.value: by_status.get(s.value, 0) for s in FormStatus},
            "byServiceType": {s.value: by_service.get(s.value, 0) for s in ServiceType},
            "legacy": sum(1 for f in forms if f.is_legacy),
            "locked": sum(1 for f in forms if f.locked),
        }

    # -- internals -------------------------------------------------------

    def _actor(self, actor: ActorLike) -> Actor:
        if isinstance(actor, Actor):
            return actor
        try:
            return Actor.from_dict(actor)
        except (KeyError, ValueError, TypeError) as exc:
            raise ValidationError(f"invalid actor: {exc}") from exc

    @staticmethod
    def _client(client: ClientLike) -> ClientContext:
        if isinstance(client, ClientContext):
            return client
        return ClientContext.from_dict(client)

    def _unified_filter(self, actor: Actor, filters: Dict[str, Any]) -> UnifiedFilter:
        submitter_id = filters.get("submitterId")
        if actor.role in (Role.USER, Role.AGENT):
            if actor.role == Role.AGENT and not actor.on_behalf_of:
                raise Unauthorized("agent must act on behalf of a submitter")
            submitter_id = actor.principal_id
        return UnifiedFilter(
            service_type=ServiceType(filters["serviceType"]) if filters.get("serviceType") else None,
            status=FormStatus(filters["status"]) if filters.get("status") else None,
            submitter_id=submitter_id,
            assigned_to=filters.get("assignedTo"),
            search=filters.get("search"),
            actionable_by=Role(filters["actionableBy"]) if filters.get("actionableBy") else None,
            include_processed_legacy=filters.get("includeProcessedLegacy", True),
            include_legacy=filters.get("includeLegacy", True),
            skip=filters.get("skip", 0),
            limit=filters.get("limit", self.config.page_size),
        )

    def _mutate(
        self,
        operation: str,
        form_id: Optional[str],
        actor: ActorLike,
        payload: Optional[Dict[str, Any]],
        client: ClientLike,
        call: Callable[[Actor, ClientContext], OperationResult],
    ) -> Dict[str, Any]:
        try:
            actor = self._actor(actor)
        except ValidationError as exc:
            return self._error(exc)
        context = self._client(client)
        if payload is not None:
            try:
                self._validator.validate(operation, payload)
            except ValidationError as exc:
                exc.form_id = form_id
                error = self._lock_precedence(form_id, exc)
                logger.debug("%s payload rejected: %s", operation, error.reason)
                self.machine.record_rejection(actor, _FAILURE_ACTIONS[operation], form_id, error, context)
                return self._error(error)
        try:
            result = call(actor, context)
        except WorkflowError as exc:
            return self._error(exc)
        return self._success(result)

    def _lock_precedence(self, form_id: Optional[str], error: ValidationError) -> WorkflowError:
        """A locked or missing form outranks a bad payload."""
        if form_id is None:
            return error
        try:
            form = self.reconciler.load(form_id, timeout=self.config.storage_timeout)
        except WorkflowError as exc:
            return exc
        frozen = self.gate.check_unlocked(form)
        if not frozen.allowed:
            return AlreadyLocked(frozen.reason, form_id=form_id)
        return error

    @staticmethod
    def _success(result: OperationResult) -> Dict[str, Any]:
        response: Dict[str, Any] = {"ok": True, "warnings": list(result.warnings)}
        if result.form is not None:
            response["form"] = result.form.to_dict()
            response["formId"] = result.form.id
            response["version"] = result.form.version
            response["status"] = result.form.status.value
        if result.staff_report is not None:
            response["staffReport"] = result.staff_report.to_dict()
        if result.report is not None:
            response["report"] = result.report.to_dict()
        if result.details:
            response["details"] = result.details
        if result.audit_entry_id is not None:
            response["auditEntryId"] = result.audit_entry_id
        return response

    @staticmethod
    def _error(exc: WorkflowError) -> Dict[str, Any]:
        return {"ok": False, "error": exc.to_dict()}


__all__ = [
    "WorkflowRuntime",
]
