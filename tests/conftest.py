"""Shared fixtures for the deedflow test suite."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from deedflow.accounts import Account, InMemoryAccountDirectory
from deedflow.audit import AuditTrail
from deedflow.legacy import LegacyFormReconciler
from deedflow.state_machine import ApprovalStateMachine
from deedflow.store import InMemoryFormStore, InMemoryStaffReportStore
from deedflow.types import Actor, Decision, Role, ServiceType, Stage


class TickingClock:
    """Deterministic clock; every reading is one second after the previous one."""

    def __init__(self, start=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


SALE_DEED_FIELDS = {
    "seller": {"name": "R. Iyer", "address": "12 Lake Road"},
    "buyer": {"name": "M. Khan", "address": "4 Hill View"},
    "propertyValue": 1000000,
    "surveyNumber": "SY-118/2",
}


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def actors():
    return SimpleNamespace(
        user=Actor(id="u_1", role=Role.USER, name="Owner"),
        other_user=Actor(id="u_2", role=Role.USER),
        agent=Actor(id="bot_1", role=Role.AGENT, on_behalf_of="u_1"),
        staff1=Actor(id="s_1", role=Role.STAFF1),
        staff2=Actor(id="s_2", role=Role.STAFF2),
        staff3=Actor(id="s_3", role=Role.STAFF3),
        staff4=Actor(id="s_4", role=Role.STAFF4),
        staff5=Actor(id="s_5", role=Role.STAFF5),
        admin=Actor(id="a_1", role=Role.ADMIN),
    )


@pytest.fixture
def accounts(actors):
    directory = InMemoryAccountDirectory(
        Account(id=a.id, role=a.role)
        for a in (actors.staff1, actors.staff2, actors.staff3, actors.staff4, actors.staff5, actors.user)
    )
    directory.add(Account(id="s_retired", role=Role.STAFF2, is_active=False))
    return directory


@pytest.fixture
def form_store():
    return InMemoryFormStore()


@pytest.fixture
def staff_reports():
    return InMemoryStaffReportStore()


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def reconciler(form_store, clock):
    return LegacyFormReconciler(form_store, clock=clock)


@pytest.fixture
def machine(reconciler, audit, staff_reports, accounts, clock):
    return ApprovalStateMachine(
        reconciler,
        audit=audit,
        staff_reports=staff_reports,
        accounts=accounts,
        clock=clock,
    )


@pytest.fixture
def submitted(machine, actors):
    """A freshly submitted sale deed (version 1)."""
    return machine.submit(
        None, actors.user, dict(SALE_DEED_FIELDS), service_type=ServiceType.SALE_DEED
    ).form


@pytest.fixture
def approve(machine, actors):
    """Approve the given stages in order and return the resulting form."""
    def _approve(form, *stages):
        for stage in stages:
            staff = getattr(actors, stage.value)
            form = machine.verify(form.id, staff, True, expected_version=form.version).form
        return form
    return _approve


@pytest.fixture
def cross_verified(submitted, approve):
    return approve(submitted, Stage.STAFF1, Stage.STAFF2, Stage.STAFF3, Stage.STAFF4)


@pytest.fixture
def locked(machine, actors, cross_verified):
    return machine.final_approval(
        cross_verified.id,
        actors.staff5,
        Decision.APPROVED,
        final_remarks="All checks complete",
        lock=True,
        expected_version=cross_verified.version,
    ).form
