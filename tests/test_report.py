"""Tests for final report assembly on lock."""

import hashlib
import json

import pytest

from deedflow.errors import FormNotLocked
from deedflow.report import FinalReportAssembler
from deedflow.state_machine import ApprovalStateMachine
from deedflow.types import Decision

from tests.conftest import SALE_DEED_FIELDS, TickingClock


@pytest.fixture
def assembler():
    return FinalReportAssembler(clock=TickingClock())


class TestAssemble:
    """Report content is a pure function of the locked form."""

    def test_unlocked_form_is_refused(self, assembler, cross_verified):
        with pytest.raises(FormNotLocked) as exc_info:
            assembler.assemble(cross_verified, generated_by="s_5")
        assert exc_info.value.form_id == cross_verified.id

    def test_repeatable_content(self, assembler, locked):
        first = assembler.assemble(locked, generated_by="s_5")
        second = assembler.assemble(locked, generated_by="a_1")
        assert first.content == second.content
        assert first.content_hash == second.content_hash
        assert first.generated_at != second.generated_at
        assert first.content_hash == hashlib.sha256(first.content.encode("utf-8")).hexdigest()

    def test_stage_outcomes(self, assembler, locked):
        content = assembler.assemble(locked, generated_by="s_5").content
        assert content.startswith("FINAL VERIFICATION REPORT\n")
        assert "  staff1 (Primary Details): APPROVED by s_1 at " in content
        assert "  staff4 (Cross Verification): APPROVED by s_4 at " in content
        assert "  staff5 (Final Authority): LOCKED by s_5 at " in content
        assert "Final decision: APPROVED" in content
        assert "Final remarks: All checks complete" in content

    def test_fields_are_sorted(self, assembler, locked):
        content = assembler.assemble(locked, generated_by="s_5").content
        data = content.split("Form data\n", 1)[1]
        assert json.loads(data) == SALE_DEED_FIELDS
        assert data.index('"buyer"') < data.index('"propertyValue"') < data.index('"seller"')

    def test_to_dict(self, assembler, locked):
        artifact = assembler.assemble(locked, generated_by="s_5")
        data = artifact.to_dict()
        assert data["formId"] == locked.id
        assert data["generatedBy"] == "s_5"
        assert data["contentHash"] == artifact.content_hash


class TestReportOnLock:
    """Locking assembles the report and hands it to the renderer."""

    def test_lock_returns_report(self, machine, actors, cross_verified):
        result = machine.final_approval(
            cross_verified.id, actors.staff5, Decision.APPROVED, lock=True, expected_version=5
        )
        assert result.report is not None
        assert result.report.form_id == cross_verified.id
        assert "Final remarks: No remarks provided" in result.report.content

    def test_decision_without_lock_has_no_report(self, machine, actors, cross_verified):
        result = machine.final_approval(cross_verified.id, actors.staff5, Decision.APPROVED, expected_version=5)
        assert result.report is None
        assert not result.form.locked

    def test_renderer_receives_report(self, reconciler, audit, clock, actors, cross_verified):
        rendered = []
        machine = ApprovalStateMachine(reconciler, audit=audit, renderer=rendered.append, clock=clock)
        result = machine.final_approval(
            cross_verified.id, actors.staff5, Decision.APPROVED, lock=True, expected_version=5
        )
        assert rendered == [result.report]

    def test_renderer_failure_is_a_warning(self, reconciler, audit, clock, actors, cross_verified, form_store):
        def broken_renderer(report):
            raise IOError("printer offline")

        machine = ApprovalStateMachine(reconciler, audit=audit, renderer=broken_renderer, clock=clock)
        result = machine.final_approval(
            cross_verified.id, actors.staff5, Decision.APPROVED, lock=True, expected_version=5
        )
        assert result.form.locked
        assert result.report is not None
        assert result.warnings == ["final report rendering failed: printer offline"]
        assert form_store.get(cross_verified.id).locked
