"""Final verification report assembled when a form is locked.

The report content is a pure function of the locked form: stage-by-stage
outcomes, the final decision and remarks, and the full field snapshot with
keys sorted. Generating it twice yields identical ``content`` and
``content_hash``; only ``generated_at`` differs.

Rendering (PDF, HTML) is left to a ReportRenderer callable that receives the
ReportArtifact.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from deedflow.errors import FormNotLocked
from deedflow.models import Form
from deedflow.types import REVIEW_STAGES, Stage


@dataclass(frozen=True)
class ReportArtifact:
    """Assembled final report.

    Attributes:
        form_id: Form the report describes
        content: Deterministic report text
        content_hash: SHA-256 hex digest of ``content``
        generated_at: When this copy was assembled
        generated_by: Who or what requested it
    """
    form_id: str
    content: str
    content_hash: str
    generated_at: datetime
    generated_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formId": self.form_id,
            "content": self.content,
            "contentHash": self.content_hash,
            "generatedAt": self.generated_at.isoformat(),
            "generatedBy": self.generated_by,
        }


ReportRenderer = Callable[[ReportArtifact], None]
"""Outbound hook that renders or files a ReportArtifact. Failures become warnings."""


def _when(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "-"


class FinalReportAssembler:
    """Builds the final report of a locked form."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def assemble(self, form: Form, generated_by: str) -> ReportArtifact:
        """Assemble the report for ``form``.

        Raises:
            FormNotLocked: If the form has not been locked by staff5
        """
        if not form.locked:
            raise FormNotLocked(
                f"form {form.id} must be locked before its final report is generated",
                form_id=form.id,
            )
        content = self.render_text(form)
        return ReportArtifact(
            form_id=form.id,
            content=content,
            content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            generated_at=self._clock(),
            generated_by=generated_by,
        )

    def render_text(self, form: Form) -> str:
        final = form.approvals[Stage.STAFF5]
        lines: List[str] = [
            "FINAL VERIFICATION REPORT",
            f"Form: {form.id}",
            f"Service type: {form.service_type.value}",
            f"Title: {form.form_title or '-'}",
            f"Submitter: {form.submitter_id}",
            f"Submitted at: {_when(form.submitted_at)}",
            "",
            "Verification status",
        ]
        for stage in REVIEW_STAGES:
            record = form.approvals[stage]
            outcome = "APPROVED" if record.approved else "REJECTED" if record.rejected else "PENDING"
            lines.append(
                f"  {stage.value} ({stage.label}): {outcome}"
                f" by {record.approved_by or '-'} at {_when(record.approved_at)}"
            )
            if record.notes:
                lines.append(f"    notes: {record.notes}")
        lines.append(f"  {Stage.STAFF5.value} ({Stage.STAFF5.label}): LOCKED by {final.locked_by or '-'} at {_when(final.locked_at)}")
        lines += [
            "",
            f"Final decision: {final.final_decision.value.upper() if final.final_decision else '-'}",
            f"Final remarks: {final.final_remarks or 'No remarks provided'}",
            "",
            "Form data",
            json.dumps(form.fields, sort_keys=True, indent=2, default=str),
        ]
        return "\n".join(lines) + "\n"


__all__ = [
    "ReportArtifact",
    "ReportRenderer",
    "FinalReportAssembler",
]
