"""Integration tests for the WorkflowRuntime boundary.

Tests cover end-to-end scenarios combining:
- Payload validation and the dict envelopes returned to callers
- State machine transitions through all five stages
- Audit trail queries
- Legacy records listed next to native forms
- Visibility rules for submitters, staff and admin
"""

import pytest

from deedflow.config import WorkflowConfig
from deedflow.events import NotificationDispatcher
from deedflow.legacy import LegacyCollection
from deedflow.runtime import WorkflowRuntime
from deedflow.types import AuditAction, ServiceType

from tests.conftest import SALE_DEED_FIELDS, TickingClock

USER = {"id": "u_1", "role": "user"}
OTHER_USER = {"id": "u_2", "role": "user"}
AGENT = {"id": "bot_1", "role": "agent", "onBehalfOf": "u_1"}
ADMIN = {"id": "a_1", "role": "admin"}
STAFF = {n: {"id": f"s_{n}", "role": f"staff{n}"} for n in range(1, 6)}


@pytest.fixture
def notifier():
    return NotificationDispatcher()


@pytest.fixture
def legacy_sale_deeds():
    return LegacyCollection(ServiceType.SALE_DEED, [
        {"_id": "64a1f0c2aa01", "__v": 0, "userId": "u_7", "processedByStaff1": False,
         "createdAt": "2024-01-01T00:00:00Z", "sellerName": "P. Nair"},
    ])


@pytest.fixture
def runtime(accounts, notifier, legacy_sale_deeds):
    return WorkflowRuntime(
        config=WorkflowConfig(),
        legacy_collections=[legacy_sale_deeds],
        accounts=accounts,
        notifier=notifier,
        clock=TickingClock(),
    )


@pytest.fixture
def form_id(runtime):
    result = runtime.submit(None, USER, {"serviceType": "sale-deed", "fields": dict(SALE_DEED_FIELDS)})
    assert result["ok"], result
    return result["formId"]


def approve_all(runtime, form_id, stages=(1, 2, 3, 4)):
    version = runtime.get_form(form_id, ADMIN)["form"]["version"]
    for n in stages:
        result = runtime.verify(form_id, STAFF[n], {"approved": True}, expected_version=version)
        assert result["ok"], result
        version = result["version"]
    return version


class TestStageOneFlow:
    """Submission and first-stage review."""

    def test_submit_creates_version_one(self, runtime):
        result = runtime.submit(None, USER, {"serviceType": "sale-deed", "fields": {"buyer": "A"}})
        assert result["ok"]
        assert result["status"] == "submitted"
        assert result["version"] == 1
        assert result["form"]["submitterId"] == "u_1"
        assert result["auditEntryId"].startswith("aud_")

    def test_staff1_verifies(self, runtime, form_id):
        result = runtime.verify(form_id, STAFF[1], {"approved": True}, expected_version=1)
        assert result["ok"]
        assert result["status"] == "verified"
        assert result["form"]["approvals"]["staff1"]["approved"] is True
        assert result["staffReport"]["verificationStatus"] == "verified"

    def test_staff2_before_staff1(self, runtime, form_id):
        result = runtime.verify(form_id, STAFF[2], {"approved": True}, expected_version=1)
        assert not result["ok"]
        assert result["error"]["kind"] == "precondition_failed"
        assert result["error"]["reason"] == "staff2 cannot act until staff1 has approved"
        assert runtime.get_form(form_id, ADMIN)["form"]["version"] == 1

    def test_stale_version(self, runtime, form_id):
        runtime.correct(form_id, STAFF[1], {"fields": {"surveyNumber": "SY-1"}}, expected_version=1)
        result = runtime.verify(form_id, STAFF[1], {"approved": True}, expected_version=1)
        assert result["error"]["kind"] == "conflict"
        assert result["error"]["expectedVersion"] == 1
        assert result["error"]["actualVersion"] == 2


class TestLockFlow:
    """Final approval with lock freezes the form."""

    def test_lock_and_freeze(self, runtime, form_id):
        version = approve_all(runtime, form_id)
        assert runtime.get_form(form_id, ADMIN)["form"]["status"] == "cross_verified"

        locked = runtime.final_approval(
            form_id, STAFF[5], {"decision": "approved", "lock": True, "finalRemarks": "Registered"},
            expected_version=version,
        )
        assert locked["ok"]
        assert locked["status"] == "approved"
        assert locked["form"]["approvals"]["staff5"]["locked"] is True
        assert "Final remarks: Registered" in locked["report"]["content"]

        result = runtime.correct(form_id, STAFF[2], {"fields": {"x": 1}}, expected_version=locked["version"])
        assert result["error"]["kind"] == "already_locked"

        deleted = runtime.delete_form(form_id, ADMIN, expected_version=locked["version"])
        assert deleted["error"]["kind"] == "already_locked"

    def test_lock_outranks_payload_and_version_errors(self, runtime, form_id):
        version = approve_all(runtime, form_id)
        locked = runtime.final_approval(form_id, STAFF[5], {"decision": "approved", "lock": True},
                                        expected_version=version)
        attempts = [
            runtime.verify(form_id, STAFF[1], {"approved": False, "notes": ""}),
            runtime.request_correction(form_id, STAFF[2], {"notes": ""}),
            runtime.final_approval(form_id, STAFF[5], {"decision": "rejected"}),
            runtime.correct(form_id, STAFF[2], {"fields": {"x": 1}}, expected_version=locked["version"] - 1),
        ]
        assert [r["error"]["kind"] for r in attempts] == ["already_locked"] * 4
        assert all(r["error"]["formId"] == form_id for r in attempts)

        trail = runtime.get_audit_trail(form_id, ADMIN)["entries"]
        assert [e["errorKind"] for e in trail[-4:]] == ["already_locked"] * 4
        assert runtime.get_form(form_id, ADMIN)["form"]["version"] == locked["version"]

    def test_final_report_read(self, runtime, form_id):
        version = approve_all(runtime, form_id)
        assert runtime.get_final_report(form_id, USER)["error"]["kind"] == "precondition_failed"

        locked = runtime.final_approval(form_id, STAFF[5], {"decision": "approved", "lock": True},
                                        expected_version=version)
        report = runtime.get_final_report(form_id, USER)
        assert report["ok"]
        assert report["report"]["contentHash"] == locked["report"]["contentHash"]
        assert report["report"]["generatedBy"] == "deedflow"

    def test_final_rejection_needs_remarks(self, runtime, form_id):
        approve_all(runtime, form_id)
        result = runtime.final_approval(form_id, STAFF[5], {"decision": "rejected"})
        assert result["error"]["kind"] == "validation_error"
        assert result["error"]["fields"][0]["path"] == "finalRemarks"


class TestPayloadRejections:
    """Malformed payloads are refused and audited before any state change."""

    def test_rejection_without_notes(self, runtime, form_id):
        result = runtime.verify(form_id, STAFF[1], {"approved": False, "notes": ""}, expected_version=1)
        assert not result["ok"]
        assert result["error"]["kind"] == "validation_error"
        assert result["error"]["formId"] == form_id
        assert result["error"]["fields"][0]["path"] == "notes"

        trail = runtime.get_audit_trail(form_id, ADMIN)["entries"]
        assert [(e["action"], e["result"]) for e in trail] == [
            ("form.submit", "success"),
            ("form.verify", "failure"),
        ]
        assert trail[1]["errorKind"] == "validation_error"
        assert runtime.get_form(form_id, ADMIN)["form"]["version"] == 1

    def test_missing_form_outranks_payload(self, runtime):
        result = runtime.verify("form_missing", STAFF[1], {"approved": False, "notes": ""})
        assert result["error"]["kind"] == "not_found"

    def test_invalid_actor(self, runtime, form_id):
        result = runtime.verify(form_id, {"id": "x", "role": "janitor"}, {"approved": True})
        assert result["error"]["kind"] == "validation_error"

    def test_missing_service_type_on_creation(self, runtime):
        result = runtime.submit(None, USER, {"fields": {}})
        assert result["error"]["kind"] == "validation_error"
        assert result["error"]["fields"][0]["path"] == "serviceType"


class TestDrafts:
    """Drafts are saved incrementally, then submitted."""

    def test_save_then_submit(self, runtime):
        created = runtime.save_draft(None, AGENT, {
            "serviceType": "will-deed", "fields": {"testator": "K. Bose"},
            "filledFields": 3, "totalFields": 4,
        })
        assert created["status"] == "draft"
        assert created["form"]["progressPercentage"] == 75
        assert created["form"]["progressStatus"] == "in_progress"
        form_id = created["formId"]

        saved = runtime.save_draft(form_id, USER, {"fields": {"executor": "S. Bose"}}, expected_version=1)
        assert saved["form"]["fields"] == {"testator": "K. Bose", "executor": "S. Bose"}

        submitted = runtime.submit(form_id, USER, {"fields": saved["form"]["fields"]}, expected_version=2)
        assert submitted["status"] == "submitted"
        assert submitted["version"] == 3
        assert len(submitted["form"]["history"]) == 1
        assert submitted["form"]["history"][0]["status"] == "draft"

    def test_other_user_cannot_save(self, runtime):
        created = runtime.save_draft(None, USER, {"serviceType": "will-deed", "fields": {}})
        result = runtime.save_draft(created["formId"], OTHER_USER, {"fields": {"a": 1}})
        assert result["error"]["kind"] == "unauthorized"


class TestCorrectionLoop:
    """Correction requests go back to the submitter."""

    def test_request_and_resubmit(self, runtime, form_id):
        version = approve_all(runtime, form_id, stages=(1,))
        requested = runtime.request_correction(
            form_id, STAFF[2], {"notes": "Trustee address missing"}, expected_version=version
        )
        assert requested["status"] == "needs_correction"
        assert requested["form"]["correctionStage"] == "staff2"

        fields = dict(SALE_DEED_FIELDS, trusteeAddress="9 Park Lane")
        resubmitted = runtime.submit(form_id, USER, {"fields": fields}, expected_version=requested["version"])
        assert resubmitted["status"] == "verified"
        assert resubmitted["form"]["correctionStage"] is None


class TestAssignment:

    def test_admin_assigns_active_staff(self, runtime, form_id):
        result = runtime.assign(form_id, ADMIN, {"staffId": "s_2"}, expected_version=1)
        assert result["form"]["assignedTo"] == "s_2"
        assert result["status"] == "in_review"
        assert result["details"] == {"assignedTo": "s_2", "previouslyAssignedTo": None}

    def test_inactive_staff(self, runtime, form_id):
        result = runtime.assign(form_id, ADMIN, {"staffId": "s_retired"})
        assert result["error"]["kind"] == "validation_error"

    def test_unknown_staff(self, runtime, form_id):
        assert runtime.assign(form_id, ADMIN, {"staffId": "s_404"})["error"]["kind"] == "not_found"


class TestStampAndReports:
    """Stamp duty and staff work reports."""

    def test_stamp_duty(self, runtime, form_id):
        result = runtime.calculate_stamp_duty(form_id, STAFF[1], {"propertyValue": 1000000}, expected_version=1)
        assert result["ok"]
        assert result["details"]["calculatedAmount"] == 60000.0
        assert result["version"] == 1
        assert result["staffReport"]["stampCalculation"]["calculatedAmount"] == 60000.0

    def test_staff_reports_submission(self, runtime, form_id):
        runtime.correct(form_id, STAFF[1], {"fields": {"surveyNumber": "SY-2"}, "notes": "Typo"})
        reports = runtime.get_staff_reports(STAFF[1])
        assert reports["count"] == 1
        assert reports["reports"][0]["changeSet"][0]["path"] == "surveyNumber"

        submitted = runtime.submit_staff_reports(STAFF[1], {"workSummary": "One correction"})
        assert submitted["details"]["submittedCount"] == 1
        assert runtime.get_staff_reports(STAFF[1], submitted=False)["count"] == 0

        again = runtime.correct(form_id, STAFF[1], {"fields": {"surveyNumber": "SY-3"}})
        assert again["error"]["kind"] == "precondition_failed"

    def test_staff_reports_visibility(self, runtime):
        assert runtime.get_staff_reports(USER)["error"]["kind"] == "unauthorized"
        assert runtime.get_staff_reports(STAFF[2], staff_id="s_1")["error"]["kind"] == "unauthorized"
        assert runtime.get_staff_reports(ADMIN, staff_id="s_1")["ok"]

    def test_submitter_cannot_submit_reports(self, runtime):
        assert runtime.submit_staff_reports(USER)["error"]["kind"] == "unauthorized"


class TestVisibility:
    """Submitters only see their own forms."""

    def test_list_scoping(self, runtime, form_id):
        runtime.submit(None, OTHER_USER, {"serviceType": "trust-deed", "fields": {}})
        assert runtime.list_unified(USER)["count"] == 1
        assert runtime.list_unified(AGENT)["count"] == 1
        assert runtime.list_unified(USER, {"submitterId": "u_2"})["count"] == 1
        assert runtime.list_unified(ADMIN)["count"] == 3
        assert runtime.list_unified(ADMIN, {"includeLegacy": False})["count"] == 2

    def test_legacy_listed_for_staff(self, runtime):
        forms = runtime.list_unified(STAFF[1], {"actionableBy": "staff1"})["forms"]
        assert [f["id"] for f in forms] == ["legacy:sale-deed:64a1f0c2aa01"]
        assert forms[0]["isLegacy"] is True
        assert forms[0]["approvals"]["staff1"]["approved"] is False

    def test_invalid_list_filter(self, runtime):
        assert runtime.list_unified(ADMIN, {"limit": 0})["error"]["kind"] == "validation_error"

    def test_read_other_users_form(self, runtime, form_id):
        assert runtime.get_form(form_id, OTHER_USER)["error"]["kind"] == "unauthorized"
        assert runtime.get_audit_trail(form_id, OTHER_USER)["error"]["kind"] == "unauthorized"

    def test_stats(self, runtime, form_id):
        runtime.submit(None, OTHER_USER, {"serviceType": "trust-deed", "fields": {}})
        stats = runtime.form_stats(ADMIN)
        assert stats["total"] == 3
        assert stats["legacy"] == 1
        assert stats["byStatus"]["submitted"] == 3
        assert stats["byServiceType"]["sale-deed"] == 2
        assert runtime.form_stats(USER)["total"] == 1

    def test_stats_count_past_the_listing_cap(self, accounts):
        wills = LegacyCollection(ServiceType.WILL_DEED, [
            {"_id": f"w{i}", "__v": 0, "userId": "u_9", "createdAt": f"2023-05-{i + 1:02d}T00:00:00Z"}
            for i in range(12)
        ])
        runtime = WorkflowRuntime(
            config=WorkflowConfig(), legacy_collections=[wills], accounts=accounts, clock=TickingClock()
        )
        assert runtime.list_unified(ADMIN)["count"] == 10
        assert runtime.form_stats(ADMIN)["legacy"] == 12


class TestAuditAndNotifications:

    def test_audit_filter_by_action(self, runtime, form_id):
        runtime.verify(form_id, STAFF[1], {"approved": True})
        result = runtime.get_audit_trail(form_id, STAFF[3], {"action": "form.verify"})
        assert result["count"] == 1
        assert result["entries"][0]["actorId"] == "s_1"

    def test_unknown_audit_action(self, runtime, form_id):
        result = runtime.get_audit_trail(form_id, ADMIN, {"action": "form.explode"})
        assert result["error"]["kind"] == "validation_error"

    def test_client_context_is_recorded(self, runtime, form_id):
        runtime.verify(form_id, STAFF[1], {"approved": True}, client={"ipAddress": "10.1.1.1"})
        entries = runtime.get_audit_trail(form_id, ADMIN)["entries"]
        assert entries[-1]["clientContext"] == {"ipAddress": "10.1.1.1"}

    def test_listeners_see_committed_actions(self, runtime, notifier, form_id):
        seen = []
        notifier.on(AuditAction.FORM_VERIFY, seen.append)
        notifier.on_any(lambda entry: 1 / 0)
        result = runtime.verify(form_id, STAFF[1], {"approved": True})
        assert result["ok"]
        assert [e.resource_id for e in seen] == [form_id]

    def test_delete(self, runtime, form_id):
        assert runtime.delete_form(form_id, USER)["error"]["kind"] == "unauthorized"
        assert runtime.delete_form(form_id, ADMIN, expected_version=1)["ok"]
        assert runtime.get_form(form_id, ADMIN)["error"]["kind"] == "not_found"
