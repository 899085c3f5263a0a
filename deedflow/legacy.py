"""Reconciliation of legacy per-service-type stores with the unified Form model.

Before the unified form store existed, every service type kept its own
collection of raw documents (Mongo-style dicts with ``_id``, ``__v``,
``createdAt``...). Those records are still live. The LegacyFormReconciler
presents them in the same Form shape the state machine works with, and routes
every write back to the store a form actually lives in:

- native forms are written to the form store with a version-checked swap
- legacy forms are written to their origin collection, never copied into the
  native store

Legacy mapping rules:
- id: ``legacy:<collection>:<record id>`` (never collides with native ids)
- ``processedByStaff1`` <-> ``approvals.staff1.approved`` (a recorded staff1
  rejection wins over the flag)
- other stage approvals are kept under ``workflowApprovals`` in the record
- ``__v`` <-> ``version``
- history is not persisted for legacy records (see ``supports_history``)

Listing merges both sources. When a native form and a legacy record describe
the same logical submission (same ``submission_key``), the native form wins.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from deedflow.access import RoleAccessGate
from deedflow.errors import Conflict, NotFound, ValidationError
from deedflow.models import ApprovalRecord, Form, FormNote, empty_approvals, parse_timestamp
from deedflow.status import derive_status
from deedflow.store import InMemoryFormStore, _acquire
from deedflow.types import (
    Actor,
    FormStatus,
    Operation,
    Role,
    ServiceType,
    Stage,
)

logger = logging.getLogger(__name__)

LEGACY_PREFIX = "legacy:"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Record keys that carry bookkeeping rather than form content.
BOOKKEEPING_KEYS = frozenset({
    "_id", "__v", "formId", "userId", "createdBy", "status", "assignedTo",
    "createdAt", "updatedAt", "processedByStaff1", "staff1ProcessedAt",
    "staff1ProcessedBy", "staff1Notes", "staffNotes", "workflowApprovals",
    "reviewStartedAt", "correctionStage", "lastActivityBy",
})

_LEGACY_STATUS = {
    "draft": FormStatus.DRAFT,
    "submitted": FormStatus.SUBMITTED,
    "in-progress": FormStatus.SUBMITTED,
    "completed": FormStatus.SUBMITTED,
    "verified": FormStatus.VERIFIED,
    "rejected": FormStatus.REJECTED,
}

_QUEUE_OPERATION = {
    Role.STAFF1: Operation.VERIFY,
    Role.STAFF2: Operation.VERIFY,
    Role.STAFF3: Operation.VERIFY,
    Role.STAFF4: Operation.VERIFY,
    Role.STAFF5: Operation.FINAL_APPROVAL,
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def legacy_form_id(collection: str, record_id: str) -> str:
    return f"{LEGACY_PREFIX}{collection}:{record_id}"


def parse_legacy_id(form_id: str) -> Optional[tuple]:
    """Split ``legacy:<collection>:<record id>``; None for native ids."""
    if not form_id.startswith(LEGACY_PREFIX):
        return None
    parts = form_id[len(LEGACY_PREFIX):].split(":", 1)
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"malformed legacy form id {form_id!r}", form_id=form_id)
    return parts[0], parts[1]


def synthesize_title(service_type: ServiceType, record_id: str) -> str:
    """Title shown for legacy records, e.g. ``"Sale Deed - 64a1f0c2"``."""
    words = " ".join(w.capitalize() for w in service_type.value.split("-"))
    return f"{words} - {record_id[:8]}"


class LegacyCollection:
    """One legacy store holding raw records of a single service type."""

    def __init__(self, service_type: ServiceType, records: Iterable[Dict[str, Any]] = ()):
        self.service_type = service_type
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        for record in records:
            self._records[str(record["_id"])] = copy.deepcopy(record)

    @property
    def name(self) -> str:
        return self.service_type.value

    def get(self, record_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        with _acquire(self._lock, timeout, f"legacy read of {record_id}"):
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find(
        self,
        unprocessed_only: bool = False,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Records newest first, optionally only those staff1 has not processed."""
        with _acquire(self._lock, timeout, f"legacy listing of {self.name}"):
            records = [
                copy.deepcopy(r)
                for r in self._records.values()
                if not (unprocessed_only and r.get("processedByStaff1"))
            ]
        records.sort(
            key=lambda r: _aware(parse_timestamp(r.get("createdAt"))) or _EPOCH,
            reverse=True,
        )
        return records

    def replace(self, record: Dict[str, Any], expected_version: int, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Swap in ``record`` if the stored ``__v`` equals ``expected_version``."""
        record_id = str(record["_id"])
        with _acquire(self._lock, timeout, f"legacy write of {record_id}"):
            current = self._records.get(record_id)
            if current is None:
                raise NotFound(f"legacy record {record_id} not found in {self.name}")
            actual = int(current.get("__v", 0))
            if actual != expected_version:
                raise Conflict(
                    f"legacy record {record_id} is at version {actual}, expected {expected_version}",
                    expected_version=expected_version,
                    actual_version=actual,
                )
            self._records[record_id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def delete(self, record_id: str, expected_version: int, timeout: Optional[float] = None) -> None:
        with _acquire(self._lock, timeout, f"legacy delete of {record_id}"):
            current = self._records.get(record_id)
            if current is None:
                raise NotFound(f"legacy record {record_id} not found in {self.name}")
            actual = int(current.get("__v", 0))
            if actual != expected_version:
                raise Conflict(
                    f"legacy record {record_id} is at version {actual}, expected {expected_version}",
                    expected_version=expected_version,
                    actual_version=actual,
                )
            del self._records[record_id]


@dataclass(frozen=True)
class UnifiedFilter:
    """Filter for LegacyFormReconciler.list_unified.

    Attributes:
        service_type: Only this document type
        status: Only forms in this status
        submitter_id: Only forms owned by this submitter
        assigned_to: Only forms assigned to this staff member
        search: Case-insensitive substring of title or description
        actionable_by: Only forms this role could act on right now
        include_processed_legacy: Keep legacy records staff1 already processed
        include_legacy: Include legacy records at all
        skip / limit: Paging over the merged, ordered result
    """
    service_type: Optional[ServiceType] = None
    status: Optional[FormStatus] = None
    submitter_id: Optional[str] = None
    assigned_to: Optional[str] = None
    search: Optional[str] = None
    actionable_by: Optional[Role] = None
    include_processed_legacy: bool = True
    include_legacy: bool = True
    skip: int = 0
    limit: Optional[int] = 50

    def matches(self, form: Form) -> bool:
        if self.service_type is not None and form.service_type != ServiceType(self.service_type):
            return False
        if self.status is not None and form.status != FormStatus(self.status):
            return False
        if self.submitter_id is not None and form.submitter_id != self.submitter_id:
            return False
        if self.assigned_to is not None and form.assigned_to != self.assigned_to:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{form.form_title or ''}\n{form.form_description or ''}".lower()
            if needle not in haystack:
                return False
        return True


class LegacyFormReconciler:
    """Unified read model over the native store and the legacy collections.

    Args:
        form_store: Native form store
        collections: Legacy collections (one per service type, any subset)
        gate: Access gate used for ``actionable_by`` filtering
        per_collection_limit: Max matching legacy records per collection per listing
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        form_store: InMemoryFormStore,
        collections: Iterable[LegacyCollection] = (),
        gate: Optional[RoleAccessGate] = None,
        per_collection_limit: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.form_store = form_store
        self.collections: Dict[str, LegacyCollection] = {c.name: c for c in collections}
        self.gate = gate or RoleAccessGate()
        self.per_collection_limit = per_collection_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def supports_history(self, form: Form) -> bool:
        """Legacy stores keep no snapshot history."""
        return not form.is_legacy

    def collection(self, name: str) -> LegacyCollection:
        try:
            return self.collections[name]
        except KeyError:
            raise NotFound(f"unknown legacy collection {name!r}") from None

    # -- reads -----------------------------------------------------------

    def load(self, form_id: str, timeout: Optional[float] = None) -> Form:
        """Resolve a form id (native or legacy) to a Form.

        Raises:
            NotFound: If nothing backs the id
        """
        legacy = parse_legacy_id(form_id)
        if legacy is None:
            form = self.form_store.get(form_id, timeout=timeout)
            if form is None:
                raise NotFound(f"form {form_id} not found", form_id=form_id)
            return form
        name, record_id = legacy
        record = self.collection(name).get(record_id, timeout=timeout)
        if record is None:
            raise NotFound(f"form {form_id} not found", form_id=form_id)
        return self.to_form(self.collection(name), record)

    def to_form(self, collection: LegacyCollection, record: Dict[str, Any]) -> Form:
        """Project a raw legacy record onto the Form shape."""
        record_id = str(record["_id"])
        created = _aware(parse_timestamp(record.get("createdAt")))
        updated = _aware(parse_timestamp(record.get("updatedAt"))) or created

        approvals = empty_approvals()
        for stage_name, data in (record.get("workflowApprovals") or {}).items():
            approvals[Stage(stage_name)] = ApprovalRecord.from_dict(data)
        processed = bool(record.get("processedByStaff1", False))
        staff1 = approvals[Stage.STAFF1]
        staff1.approved = processed and not staff1.rejected
        if staff1.approved:
            staff1.approved_by = staff1.approved_by or record.get("staff1ProcessedBy")
            staff1.approved_at = staff1.approved_at or _aware(parse_timestamp(record.get("staff1ProcessedAt")))

        notes = [FormNote.from_dict(n) for n in record.get("staffNotes", [])]
        for legacy_note in record.get("staff1Notes", []):
            notes.append(FormNote(
                note=legacy_note["note"],
                added_by=str(legacy_note.get("addedBy", "")),
                added_at=_aware(parse_timestamp(legacy_note.get("addedAt"))) or _EPOCH,
                stage=Stage.STAFF1,
            ))

        legacy_status = _LEGACY_STATUS.get(record.get("status"), FormStatus.SUBMITTED)
        correction = record.get("correctionStage")
        form = Form(
            id=legacy_form_id(collection.name, record_id),
            service_type=collection.service_type,
            submitter_id=str(record.get("userId") or record.get("createdBy") or ""),
            fields={k: v for k, v in record.items() if k not in BOOKKEEPING_KEYS},
            approvals=approvals,
            assigned_to=record.get("assignedTo"),
            version=int(record.get("__v", 0)),
            is_legacy=True,
            origin_collection=collection.name,
            submission_key=str(record.get("formId") or record_id),
            form_title=synthesize_title(collection.service_type, record_id),
            form_description=f"Legacy {collection.service_type.value} form",
            notes=notes,
            correction_stage=Stage(correction) if correction else None,
            submitted_at=None if legacy_status == FormStatus.DRAFT else (created or updated or _EPOCH),
            review_started_at=_aware(parse_timestamp(record.get("reviewStartedAt"))),
            created_at=created,
            last_activity_at=updated,
            last_activity_by=record.get("lastActivityBy"),
        )
        touched = processed or record.get("workflowApprovals") or correction
        form.status = derive_status(form) if touched else legacy_status
        return form

    def list_unified(
        self,
        criteria: Optional[UnifiedFilter] = None,
        timeout: Optional[float] = None,
        capped: bool = True,
    ) -> List[Form]:
        """Native and legacy forms in one sequence, most recent activity first.

        ``per_collection_limit`` counts legacy records that pass
        ``criteria``, so a submitter's older records are not crowded out
        by newer ones from other users. ``capped=False`` lifts the limit
        for callers that need every match, such as statistics.
        """
        criteria = criteria or UnifiedFilter()
        natives = self.form_store.all(timeout=timeout)
        native_keys = {f.submission_key or f.id for f in natives}

        merged = [f for f in natives if self._selected(f, criteria)]
        if criteria.include_legacy:
            cap = self.per_collection_limit if capped else None
            for collection in self.collections.values():
                if criteria.service_type is not None and collection.service_type != ServiceType(criteria.service_type):
                    continue
                taken = 0
                for record in collection.find(unprocessed_only=not criteria.include_processed_legacy, timeout=timeout):
                    if cap is not None and taken >= cap:
                        break
                    form = self.to_form(collection, record)
                    if form.submission_key in native_keys:
                        logger.debug("legacy %s shadowed by native form", form.id)
                        continue
                    if self._selected(form, criteria):
                        merged.append(form)
                        taken += 1

        merged.sort(key=lambda f: f.id)
        merged.sort(key=lambda f: f.last_activity_at or f.created_at or _EPOCH, reverse=True)
        end = None if criteria.limit is None else criteria.skip + criteria.limit
        return merged[criteria.skip:end]

    def _selected(self, form: Form, criteria: UnifiedFilter) -> bool:
        if not criteria.matches(form):
            return False
        return criteria.actionable_by is None or self._actionable(form, Role(criteria.actionable_by))

    def _actionable(self, form: Form, role: Role) -> bool:
        if form.locked:
            return False
        if role == Role.ADMIN:
            return True
        operation = _QUEUE_OPERATION.get(role)
        if operation is None:
            return False
        if form.submitted_at is None or form.status == FormStatus.REJECTED:
            return False
        decision = self.gate.can_perform(Actor(id=f"queue:{role.value}", role=role), form, operation)
        return decision.allowed

    # -- writes ----------------------------------------------------------

    def create(self, form: Form, timeout: Optional[float] = None) -> Form:
        """Insert a new native form. Legacy stores never receive new records."""
        return self.form_store.insert(form, timeout=timeout)

    def write_back(
        self,
        form: Form,
        expected_version: int,
        edited_by: Optional[Stage] = None,
        timeout: Optional[float] = None,
    ) -> Form:
        """Persist ``form`` to the store it originates from.

        ``form.version`` must already hold the new version. Legacy records
        are rebuilt from their bookkeeping keys plus ``form.fields``, so
        content keys the form no longer carries are dropped. A record is
        marked processed by staff1 once staff1 approves it or
        ``edited_by == staff1`` (a staff1 correction); rejections and
        correction requests leave the flag alone.

        Raises:
            Conflict: If the stored version differs from ``expected_version``
            NotFound: If the backing record disappeared
        """
        if not form.is_legacy:
            return self.form_store.compare_and_swap(form, expected_version, timeout=timeout)

        name, record_id = parse_legacy_id(form.id)
        collection = self.collection(name)
        record = collection.get(record_id, timeout=timeout)
        if record is None:
            raise NotFound(f"form {form.id} not found", form_id=form.id)

        updated = {k: v for k, v in record.items() if k in BOOKKEEPING_KEYS}
        dropped = [k for k in form.fields if k in BOOKKEEPING_KEYS]
        if dropped:
            logger.warning("ignoring reserved legacy keys %s on %s", sorted(dropped), form.id)
        updated.update({k: v for k, v in form.fields.items() if k not in BOOKKEEPING_KEYS})
        staff1 = form.approvals[Stage.STAFF1]
        already = bool(record.get("processedByStaff1"))
        processed = staff1.approved or (not staff1.rejected and (already or edited_by == Stage.STAFF1))
        updated["processedByStaff1"] = processed
        if processed:
            if not already:
                updated["staff1ProcessedAt"] = (staff1.approved_at or form.last_activity_at or self._clock()).isoformat()
                updated["staff1ProcessedBy"] = staff1.approved_by or form.last_activity_by
        updated["workflowApprovals"] = {
            stage.value: rec.to_dict()
            for stage, rec in form.approvals.items()
            if stage != Stage.STAFF1 or rec.approved or rec.rejected
        }
        updated["staffNotes"] = [n.to_dict() for n in form.notes if n.stage != Stage.STAFF1 or not self._from_staff1_notes(record, n)]
        updated["assignedTo"] = form.assigned_to
        updated["correctionStage"] = form.correction_stage.value if form.correction_stage else None
        if form.review_started_at is not None:
            updated["reviewStartedAt"] = form.review_started_at.isoformat()
        if form.last_activity_at is not None:
            updated["updatedAt"] = form.last_activity_at.isoformat()
        updated["lastActivityBy"] = form.last_activity_by
        updated["__v"] = form.version

        try:
            stored = collection.replace(updated, expected_version, timeout=timeout)
        except Conflict as exc:
            exc.form_id = form.id
            raise
        logger.info(
            "legacy write-back of %s to %s at version %s (history not persisted)",
            form.id, name, form.version,
        )
        return self.to_form(collection, stored)

    def delete(self, form: Form, expected_version: int, timeout: Optional[float] = None) -> None:
        legacy = parse_legacy_id(form.id)
        if legacy is None:
            self.form_store.delete(form.id, expected_version, timeout=timeout)
            return
        name, record_id = legacy
        self.collection(name).delete(record_id, expected_version, timeout=timeout)

    @staticmethod
    def _from_staff1_notes(record: Dict[str, Any], note: FormNote) -> bool:
        """True for notes that were read from the legacy ``staff1Notes`` list."""
        return any(
            n.get("note") == note.note and str(n.get("addedBy", "")) == note.added_by
            for n in record.get("staff1Notes", [])
        )


__all__ = [
    "LegacyCollection",
    "LegacyFormReconciler",
    "UnifiedFilter",
    "legacy_form_id",
    "parse_legacy_id",
    "synthesize_title",
    "BOOKKEEPING_KEYS",
]
