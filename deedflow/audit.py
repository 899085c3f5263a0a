"""Append-only audit trail.

The AuditTrail records one AuditEntry per workflow action. ``append`` returns
only after the backing log has stored the entry. ``query`` returns a lazy
AuditQuery: iterating it reads the log afresh, so the same query object can
be iterated again (restarted) and will pick up entries appended meanwhile.

Entries come back ordered by timestamp ascending; entries sharing a timestamp
keep their append order (``sequence``), which preserves per-form chronology.

Two log backends are provided:
- InMemoryAuditLog: list-backed, for tests and single-process use
- JsonlAuditLog: one JSON object per line, flushed and fsynced on append
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Union

from deedflow.errors import StorageError
from deedflow.events import AuditEntry
from deedflow.models import parse_timestamp
from deedflow.types import AuditAction, AuditResult

logger = logging.getLogger(__name__)


def new_entry_id() -> str:
    return f"aud_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class AuditFilter:
    """Criteria for AuditTrail.query. Unset attributes match everything.

    ``since`` and ``until`` accept datetimes or ISO 8601 strings; both bounds
    are inclusive. Naive datetimes are taken as UTC.
    """
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    result: Optional[AuditResult] = None
    since: Optional[Union[datetime, str]] = None
    until: Optional[Union[datetime, str]] = None

    def _bound(self, value: Optional[Union[datetime, str]]) -> Optional[datetime]:
        parsed = parse_timestamp(value)
        if parsed is not None and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def matches(self, entry: AuditEntry) -> bool:
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        if self.action is not None and entry.action != AuditAction(self.action):
            return False
        if self.result is not None and entry.result != AuditResult(self.result):
            return False
        since = self._bound(self.since)
        if since is not None and entry.timestamp < since:
            return False
        until = self._bound(self.until)
        if until is not None and entry.timestamp > until:
            return False
        return True


class InMemoryAuditLog:
    """List-backed audit log."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def write(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.with_sequence(len(self._entries) + 1)
            self._entries.append(stored)
            return stored

    def read(self) -> Iterator[AuditEntry]:
        with self._lock:
            snapshot = list(self._entries)
        return iter(snapshot)


class JsonlAuditLog:
    """Audit log stored as JSON Lines in a single file."""

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = os.fspath(path)
        self._lock = threading.Lock()
        self._sequence = sum(1 for _ in self._lines())

    def write(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.with_sequence(self._sequence + 1)
            try:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(stored.to_jsonl() + "\n")
                    fh.flush()
                    os.fsync(fh.fileno())
            except OSError as exc:
                raise StorageError(f"audit log write failed: {exc}") from exc
            self._sequence += 1
            return stored

    def read(self) -> Iterator[AuditEntry]:
        for line in self._lines():
            yield AuditEntry.from_dict(json.loads(line))

    def _lines(self) -> Iterator[str]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    yield line


class AuditQuery:
    """Lazy, restartable view over matching audit entries.

    Each ``iter()`` re-reads the log, so a query can be consumed repeatedly.
    ``after`` resumes past a given entry id (cursor-style paging).
    """

    def __init__(self, log: Any, criteria: AuditFilter, after: Optional[str] = None):
        self._log = log
        self._criteria = criteria
        self._after = after

    def __iter__(self) -> Iterator[AuditEntry]:
        entries = sorted(
            (e for e in self._log.read() if self._criteria.matches(e)),
            key=lambda e: (e.timestamp, e.sequence),
        )
        skipping = self._after is not None
        for entry in entries:
            if skipping:
                if entry.entry_id == self._after:
                    skipping = False
                continue
            yield entry

    def after(self, entry_id: str) -> "AuditQuery":
        return AuditQuery(self._log, self._criteria, after=entry_id)

    def first(self) -> Optional[AuditEntry]:
        return next(iter(self), None)

    def to_list(self) -> List[AuditEntry]:
        return list(self)


class AuditTrail:
    """Append-only record of every state-changing action.

    Usage:
        >>> trail = AuditTrail()
        >>> trail.query(AuditFilter(resource_id="form_1")).to_list()
        []
    """

    def __init__(self, log: Any = None):
        self._log = log if log is not None else InMemoryAuditLog()

    def append(self, entry: AuditEntry) -> str:
        """Durably store an entry and return its id.

        Raises:
            StorageError: If the log could not store the entry
        """
        try:
            stored = self._log.write(entry)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"audit append failed: {exc}") from exc
        logger.debug("audit %s %s on %s", stored.action.value, stored.result.value, stored.resource_id)
        return stored.entry_id

    def query(self, criteria: Optional[AuditFilter] = None, **kwargs: Any) -> AuditQuery:
        """Build a lazy query. Keyword arguments are AuditFilter attributes."""
        if criteria is None:
            criteria = AuditFilter(**kwargs)
        return AuditQuery(self._log, criteria)


__all__ = [
    "AuditFilter",
    "AuditQuery",
    "AuditTrail",
    "InMemoryAuditLog",
    "JsonlAuditLog",
    "new_entry_id",
]
