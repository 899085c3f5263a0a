"""Tests for optimistic concurrency and storage timeouts."""

import threading

import pytest

from deedflow.errors import Conflict, StorageTimeout
from deedflow.types import AuditResult, ErrorKind


def race(*calls):
    """Run the calls on separate threads released together; collect results or errors."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(index, call):
        barrier.wait()
        try:
            outcomes[index] = call()
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return outcomes


class TestConcurrentCorrections:
    """Two writers racing on the same version: one wins, one conflicts."""

    def test_one_success_one_conflict(self, machine, actors, submitted, form_store):
        prior = submitted.version
        outcomes = race(
            lambda: machine.correct(submitted.id, actors.staff1, {"price": 1}, expected_version=prior),
            lambda: machine.correct(submitted.id, actors.staff1, {"price": 2}, expected_version=prior),
        )
        conflicts = [o for o in outcomes if isinstance(o, Conflict)]
        successes = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert successes[0].form.version == prior + 1

        stored = form_store.get(submitted.id)
        assert stored.version == prior + 1
        assert stored.fields["price"] == successes[0].form.fields["price"]

    def test_different_forms_do_not_conflict(self, machine, actors, submitted):
        other = machine.submit(None, actors.user, {"b": 1}, service_type=submitted.service_type).form
        outcomes = race(
            lambda: machine.correct(submitted.id, actors.staff1, {"x": 1}, expected_version=1),
            lambda: machine.correct(other.id, actors.staff1, {"x": 2}, expected_version=1),
        )
        assert all(not isinstance(o, Exception) for o in outcomes)

    def test_losing_writer_is_audited(self, machine, actors, submitted, audit):
        race(
            lambda: machine.verify(submitted.id, actors.staff1, True, expected_version=1),
            lambda: machine.correct(submitted.id, actors.staff1, {"x": 1}, expected_version=1),
        )
        results = [e.result for e in audit.query(resource_id=submitted.id)]
        assert results.count(AuditResult.FAILURE) == 1
        assert results.count(AuditResult.SUCCESS) == 2


class TestStorageTimeout:
    """A storage call that cannot get the store in time fails retryably."""

    def test_timeout_is_retryable(self, machine, actors, submitted, form_store, audit):
        form_store._lock.acquire()
        try:
            with pytest.raises(StorageTimeout) as exc_info:
                machine.verify(submitted.id, actors.staff1, True, expected_version=1, timeout=0.05)
        finally:
            form_store._lock.release()
        assert exc_info.value.retryable
        assert exc_info.value.kind == ErrorKind.TIMEOUT
        entry = audit.query(result=AuditResult.FAILURE).first()
        assert entry.error_kind == ErrorKind.TIMEOUT
        assert form_store.get(submitted.id).version == 1
