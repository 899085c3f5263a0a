"""Unit tests for canonical status derivation.

derive_status is the only place status values come from, so it is tested
over combinations of approval flags rather than through the operations.
"""

import itertools
from datetime import datetime, timezone

import pytest

from deedflow.models import Form
from deedflow.status import derive_status
from deedflow.types import REVIEW_STAGES, Decision, FormStatus, ServiceType, Stage

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def make_form(approved=(), rejected=(), submitted=True, review=False, correction=None, decision=None):
    form = Form(id="form_1", service_type=ServiceType.TRUST_DEED, submitter_id="u_1")
    form.submitted_at = NOW if submitted else None
    form.review_started_at = NOW if review else None
    form.correction_stage = correction
    for stage in approved:
        form.approvals[stage].approved = True
    for stage in rejected:
        form.approvals[stage].rejected = True
    if decision is not None:
        form.approvals[Stage.STAFF5].final_decision = decision
    return form


class TestBasicStatuses:
    """Status of forms that have not been reviewed yet."""

    def test_unsubmitted_form_is_draft(self):
        assert derive_status(make_form(submitted=False)) == FormStatus.DRAFT

    def test_submitted_form(self):
        assert derive_status(make_form()) == FormStatus.SUBMITTED

    def test_picked_up_form_is_in_review(self):
        assert derive_status(make_form(review=True)) == FormStatus.IN_REVIEW


class TestApprovalFlags:
    """Status over combinations of per-stage approvals."""

    @pytest.mark.parametrize(
        "approved",
        [
            combo
            for n in range(len(REVIEW_STAGES) + 1)
            for combo in itertools.combinations(REVIEW_STAGES, n)
        ],
    )
    def test_every_approval_combination(self, approved):
        status = derive_status(make_form(approved=approved, review=True))
        if Stage.STAFF4 in approved:
            assert status == FormStatus.CROSS_VERIFIED
        elif Stage.STAFF1 in approved:
            assert status == FormStatus.VERIFIED
        else:
            assert status == FormStatus.IN_REVIEW

    def test_staff3_before_staff2_is_still_verified(self):
        form = make_form(approved=(Stage.STAFF1, Stage.STAFF3))
        assert derive_status(form) == FormStatus.VERIFIED

    @pytest.mark.parametrize("stage", REVIEW_STAGES)
    def test_any_rejected_stage_rejects(self, stage):
        form = make_form(approved=(Stage.STAFF1,), rejected=(stage,))
        assert derive_status(form) == FormStatus.REJECTED

    def test_correction_request_overrides_approvals(self):
        form = make_form(approved=(Stage.STAFF1,), correction=Stage.STAFF2)
        assert derive_status(form) == FormStatus.NEEDS_CORRECTION

    def test_rejection_outranks_correction_request(self):
        form = make_form(rejected=(Stage.STAFF1,), correction=Stage.STAFF1)
        assert derive_status(form) == FormStatus.REJECTED


class TestFinalDecision:
    """Stage 5 decisions take precedence over everything else."""

    def test_final_approval(self):
        form = make_form(approved=REVIEW_STAGES, decision=Decision.APPROVED)
        assert derive_status(form) == FormStatus.APPROVED

    def test_final_rejection(self):
        form = make_form(approved=REVIEW_STAGES, decision=Decision.REJECTED)
        assert derive_status(form) == FormStatus.REJECTED

    def test_locked_form_shows_its_decision(self):
        form = make_form(approved=REVIEW_STAGES, decision=Decision.APPROVED)
        form.approvals[Stage.STAFF5].locked = True
        assert derive_status(form) == FormStatus.APPROVED
