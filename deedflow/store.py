"""Native persistence for forms and staff reports.

The form store offers exactly one way to change a stored form: a conditional
write keyed on the version the caller last read (``compare_and_swap``). Two
writers racing on the same form therefore produce one success and one
Conflict, and nothing is ever half-written.

Every call takes a timeout in seconds. The in-memory stores serialize access
with a lock; failing to acquire it in time raises StorageTimeout.
"""

import copy
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from deedflow.errors import Conflict, NotFound, StorageError, StorageTimeout
from deedflow.models import Form, StaffReport


@contextmanager
def _acquire(lock: threading.Lock, timeout: Optional[float], what: str) -> Iterator[None]:
    acquired = lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
    if not acquired:
        raise StorageTimeout(f"{what} timed out after {timeout}s")
    try:
        yield
    finally:
        lock.release()


class InMemoryFormStore:
    """Native form store with document-level atomic conditional updates."""

    def __init__(self):
        self._forms: Dict[str, Form] = {}
        self._lock = threading.Lock()

    def get(self, form_id: str, timeout: Optional[float] = None) -> Optional[Form]:
        with _acquire(self._lock, timeout, f"read of {form_id}"):
            form = self._forms.get(form_id)
            return copy.deepcopy(form) if form is not None else None

    def insert(self, form: Form, timeout: Optional[float] = None) -> Form:
        with _acquire(self._lock, timeout, f"insert of {form.id}"):
            if form.id in self._forms:
                raise StorageError(f"form {form.id} already exists", form_id=form.id)
            self._forms[form.id] = copy.deepcopy(form)
            return copy.deepcopy(form)

    def compare_and_swap(self, form: Form, expected_version: int, timeout: Optional[float] = None) -> Form:
        """Replace the stored form if its version still equals ``expected_version``.

        ``form.version`` must already carry the new version.

        Raises:
            NotFound: If the form no longer exists
            Conflict: If another writer committed first
        """
        with _acquire(self._lock, timeout, f"write of {form.id}"):
            current = self._forms.get(form.id)
            if current is None:
                raise NotFound(f"form {form.id} not found", form_id=form.id)
            if current.version != expected_version:
                raise Conflict(
                    f"form {form.id} is at version {current.version}, expected {expected_version}",
                    expected_version=expected_version,
                    actual_version=current.version,
                    form_id=form.id,
                )
            self._forms[form.id] = copy.deepcopy(form)
            return copy.deepcopy(form)

    def delete(self, form_id: str, expected_version: int, timeout: Optional[float] = None) -> None:
        with _acquire(self._lock, timeout, f"delete of {form_id}"):
            current = self._forms.get(form_id)
            if current is None:
                raise NotFound(f"form {form_id} not found", form_id=form_id)
            if current.version != expected_version:
                raise Conflict(
                    f"form {form_id} is at version {current.version}, expected {expected_version}",
                    expected_version=expected_version,
                    actual_version=current.version,
                    form_id=form_id,
                )
            del self._forms[form_id]

    def all(self, timeout: Optional[float] = None) -> List[Form]:
        with _acquire(self._lock, timeout, "form listing"):
            return [copy.deepcopy(f) for f in self._forms.values()]


class InMemoryStaffReportStore:
    """StaffReport collection keyed by ``(staff_id, form_id)``."""

    def __init__(self):
        self._reports: Dict[Tuple[str, str], StaffReport] = {}
        self._lock = threading.Lock()

    def get(self, staff_id: str, form_id: str, timeout: Optional[float] = None) -> Optional[StaffReport]:
        with _acquire(self._lock, timeout, "staff report read"):
            report = self._reports.get((staff_id, form_id))
            return copy.deepcopy(report) if report is not None else None

    def save(self, report: StaffReport, timeout: Optional[float] = None) -> StaffReport:
        with _acquire(self._lock, timeout, "staff report write"):
            self._reports[report.key] = copy.deepcopy(report)
            return copy.deepcopy(report)

    def find(
        self,
        staff_id: Optional[str] = None,
        form_id: Optional[str] = None,
        submitted: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> List[StaffReport]:
        with _acquire(self._lock, timeout, "staff report listing"):
            reports = [
                copy.deepcopy(r)
                for r in self._reports.values()
                if (staff_id is None or r.staff_id == staff_id)
                and (form_id is None or r.form_id == form_id)
                and (submitted is None or r.is_submitted == submitted)
            ]
        return sorted(reports, key=lambda r: (r.form_id, r.staff_id))


__all__ = [
    "InMemoryFormStore",
    "InMemoryStaffReportStore",
]
