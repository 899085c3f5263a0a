"""Deedflow: approval workflow engine for deed and registration forms.

A form moves through submission, five staff review stages and a final lock:

- staff1 verifies primary details and calculates stamp duty
- staff2 (trustee details) and staff3 (land details) review in parallel
- staff4 cross-verifies once staff1 to staff3 have approved
- staff5 records the final decision and locks the form

This package implements the role-based access gate, the approval state
machine with optimistic concurrency, the append-only audit trail, the
reconciler that presents legacy per-service-type records as unified forms,
and the final report assembled on lock.

Basic usage:
    >>> from deedflow.runtime import WorkflowRuntime
    >>> runtime = WorkflowRuntime()
    >>> created = runtime.submit(None, {"id": "u_1", "role": "user"},
    ...                          {"serviceType": "will-deed", "fields": {"testator": "R. Rao"}})
    >>> print(created["status"])
    submitted
"""

__version__ = "0.1.0"
__author__ = "Deedflow Team"

# Version info
VERSION = (0, 1, 0)

# Core exports
from deedflow.runtime import WorkflowRuntime
from deedflow.state_machine import ApprovalStateMachine, OperationResult

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "WorkflowRuntime",
    "ApprovalStateMachine",
    "OperationResult",
]
