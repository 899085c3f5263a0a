"""Audit entries and notification dispatch.

Every state-changing action, successful or not, produces one immutable
AuditEntry. Entries are appended to the AuditTrail (see deedflow.audit) and,
for committed mutations, dispatched to notification listeners.

The notification side is fire-and-forget: listener failures are logged and
isolated so that a broken mail hook never blocks a workflow transition.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from deedflow.models import parse_timestamp
from deedflow.types import AuditAction, AuditResult, ClientContext, ErrorKind, Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """A single immutable record in the audit trail.

    Attributes:
        entry_id: Globally unique entry identifier (e.g., "aud_5f0c...")
        actor_id: Who performed the action
        actor_role: Role the actor held
        action: AuditAction performed
        resource_id: Form (or other resource) the action targeted
        timestamp: UTC time of the action
        result: success or failure
        before_snapshot: Resource state before the action (None on creation)
        after_snapshot: Resource state after the action (None on failure)
        client_context: Network origin and agent string
        error_kind: Kind of the error on failure
        details: Free-form action specific data
        sequence: Append order assigned by the audit log (0 until appended)

    Examples:
        >>> from datetime import datetime, timezone
        >>> entry = AuditEntry(
        ...     entry_id="aud_001",
        ...     actor_id="u_1",
        ...     actor_role=Role.USER,
        ...     action=AuditAction.FORM_SUBMIT,
        ...     resource_id="form_001",
        ...     timestamp=datetime.now(timezone.utc),
        ...     result=AuditResult.SUCCESS,
        ... )
    """
    entry_id: str
    actor_id: str
    actor_role: Role
    action: AuditAction
    resource_id: Optional[str]
    timestamp: datetime
    result: AuditResult
    before_snapshot: Optional[Dict[str, Any]] = None
    after_snapshot: Optional[Dict[str, Any]] = None
    client_context: ClientContext = field(default_factory=ClientContext)
    error_kind: Optional[ErrorKind] = None
    details: Optional[Dict[str, Any]] = None
    sequence: int = 0

    def __post_init__(self):
        """Normalize string enum values."""
        if isinstance(self.actor_role, str):
            object.__setattr__(self, "actor_role", Role(self.actor_role))
        if isinstance(self.action, str):
            object.__setattr__(self, "action", AuditAction(self.action))
        if isinstance(self.result, str):
            object.__setattr__(self, "result", AuditResult(self.result))
        if isinstance(self.error_kind, str):
            object.__setattr__(self, "error_kind", ErrorKind(self.error_kind))

    @property
    def succeeded(self) -> bool:
        return self.result == AuditResult.SUCCESS

    def with_sequence(self, sequence: int) -> "AuditEntry":
        """Copy of this entry carrying the log-assigned sequence number."""
        return replace(self, sequence=sequence)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary for serialization.

        Timestamp is formatted as ISO 8601 string.
        """
        result: Dict[str, Any] = {
            "entryId": self.entry_id,
            "actorId": self.actor_id,
            "actorRole": self.actor_role.value,
            "action": self.action.value,
            "resourceId": self.resource_id,
            "timestamp": self.timestamp.isoformat(),
            "result": self.result.value,
            "sequence": self.sequence,
            "clientContext": self.client_context.to_dict(),
        }
        if self.before_snapshot is not None:
            result["beforeSnapshot"] = self.before_snapshot
        if self.after_snapshot is not None:
            result["afterSnapshot"] = self.after_snapshot
        if self.error_kind is not None:
            result["errorKind"] = self.error_kind.value
        if self.details is not None:
            result["details"] = self.details
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON suitable for appending to a JSONL audit log."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        """Create AuditEntry from dictionary (camelCase keys)."""
        return cls(
            entry_id=data["entryId"],
            actor_id=data["actorId"],
            actor_role=Role(data["actorRole"]),
            action=AuditAction(data["action"]),
            resource_id=data.get("resourceId"),
            timestamp=parse_timestamp(data["timestamp"]),
            result=AuditResult(data["result"]),
            before_snapshot=data.get("beforeSnapshot"),
            after_snapshot=data.get("afterSnapshot"),
            client_context=ClientContext.from_dict(data.get("clientContext")),
            error_kind=ErrorKind(data["errorKind"]) if data.get("errorKind") else None,
            details=data.get("details"),
            sequence=data.get("sequence", 0),
        )


NotificationListener = Callable[[AuditEntry], None]
"""Type alias for notification listener callbacks.

Listeners are called synchronously after a mutation commits. Exceptions they
raise are logged and suppressed.
"""


class NotificationDispatcher:
    """Dispatches committed workflow actions to notification listeners.

    Features:
    - Action-specific subscriptions
    - Wildcard subscriptions (all actions)
    - Synchronous dispatch in registration order
    - Error isolation (a failing listener does not affect others or the caller)

    Examples:
        >>> dispatcher = NotificationDispatcher()
        >>> dispatcher.on(AuditAction.FORM_LOCK, lambda e: print(f"locked {e.resource_id}"))
        >>> dispatcher.listener_count()
        1
    """

    def __init__(self):
        self._listeners: Dict[AuditAction, List[NotificationListener]] = {}
        self._any_listeners: List[NotificationListener] = []

    def on(self, action: AuditAction, listener: NotificationListener) -> None:
        """Subscribe to a specific action."""
        self._listeners.setdefault(action, []).append(listener)

    def on_any(self, listener: NotificationListener) -> None:
        """Subscribe to every action."""
        self._any_listeners.append(listener)

    def off(self, action: AuditAction, listener: NotificationListener) -> None:
        """Unsubscribe from a specific action. Unknown listeners are ignored."""
        listeners = self._listeners.get(action, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_any(self, listener: NotificationListener) -> None:
        if listener in self._any_listeners:
            self._any_listeners.remove(listener)

    def emit(self, entry: AuditEntry) -> int:
        """Dispatch an entry to its listeners.

        Type-specific listeners run first, then wildcard listeners.

        Returns:
            Number of listeners that raised
        """
        failures = 0
        for listener in list(self._listeners.get(entry.action, [])) + list(self._any_listeners):
            try:
                listener(entry)
            except Exception:
                failures += 1
                logger.warning(
                    "notification listener failed for %s on %s",
                    entry.action.value,
                    entry.resource_id,
                    exc_info=True,
                )
        return failures

    def clear(self) -> None:
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, action: Optional[AuditAction] = None) -> int:
        """Count registered listeners (all of them when ``action`` is None)."""
        if action is not None:
            return len(self._listeners.get(action, []))
        return len(self._any_listeners) + sum(len(ls) for ls in self._listeners.values())


__all__ = [
    "AuditEntry",
    "NotificationListener",
    "NotificationDispatcher",
]
