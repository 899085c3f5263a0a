"""Canonical status derivation.

The workflow tracks completion per stage with boolean approval records
(staff3 can finish before staff2). ``derive_status`` collapses those flags,
plus the submission and correction markers, into the single FormStatus shown
to callers. Every operation recomputes the status with this function instead
of writing status strings directly.
"""

from deedflow.models import Form
from deedflow.types import REVIEW_STAGES, Decision, FormStatus, Stage


def derive_status(form: Form) -> FormStatus:
    """Compute the canonical status of a form from its flags.

    Precedence, highest first:

    1. stage 5 final decision (approved / rejected)
    2. any review stage rejected
    3. correction requested by a stage
    4. staff4 approved -> cross_verified
    5. staff1 approved -> verified
    6. submitted and picked up (assigned or corrected) -> in_review
    7. submitted
    8. draft
    """
    final = form.approvals[Stage.STAFF5]
    if final.final_decision is not None:
        if final.final_decision == Decision.APPROVED:
            return FormStatus.APPROVED
        return FormStatus.REJECTED
    if any(form.approvals[stage].rejected for stage in REVIEW_STAGES):
        return FormStatus.REJECTED
    if form.correction_stage is not None:
        return FormStatus.NEEDS_CORRECTION
    if form.approvals[Stage.STAFF4].approved:
        return FormStatus.CROSS_VERIFIED
    if form.approvals[Stage.STAFF1].approved:
        return FormStatus.VERIFIED
    if form.submitted_at is None:
        return FormStatus.DRAFT
    if form.review_started_at is not None:
        return FormStatus.IN_REVIEW
    return FormStatus.SUBMITTED


__all__ = ["derive_status"]
