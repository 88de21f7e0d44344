"""
Finalize tests: idempotent outcome recording, storage retries and
reconciliation of terminal runs.
"""

from collections import Counter
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from payroll_execution.domain.types import TransferOutcome
from payroll_execution.services.saga import PayrollOrchestrator
from payroll_kernel.domain.dtos import FailureCode, PaymentStatus, RunStatus
from payroll_kernel.exceptions import (
    FinalizationRecordingError,
    InvalidRunTransitionError,
    PayrollRunNotFoundError,
)
from payroll_kernel.models.audit_entry import AuditAction


@pytest.fixture
def submitted(orchestrator, create_run, make_rail, admin_signer):
    """Drive a run to FINALIZING; returns (run_id, payment_ids, outcomes)."""

    def _submit(salaries, script=None):
        run_id, payment_ids = create_run(salaries)
        batch = orchestrator.prepare(run_id)
        authorization = orchestrator.authorize(batch, admin_signer)
        submission = orchestrator.submit(batch, authorization, make_rail(script))
        return run_id, payment_ids, submission.outcomes

    return _submit


def locked_database() -> OperationalError:
    return OperationalError("UPDATE payments", {}, Exception("database is locked"))


def flaky(monkeypatch, orchestrator, failures, error_factory=locked_database):
    """Make the first ``failures`` finalize attempts raise."""
    original = orchestrator._finalize_once
    calls = []

    def _finalize_once(run_id, outcomes, actor):
        calls.append(run_id)
        if len(calls) <= failures:
            raise error_factory()
        return original(run_id, outcomes, actor)

    monkeypatch.setattr(orchestrator, "_finalize_once", _finalize_once)
    return calls


# =============================================================================
# Recording
# =============================================================================


class TestFinalize:
    def test_records_and_classifies(self, orchestrator, submitted, run_payments):
        run_id, payment_ids, outcomes = submitted(["100", "200"], {0: "address closed"})

        summary = orchestrator.finalize(run_id, outcomes)

        assert summary.status == RunStatus.PARTIALLY_COMPLETED
        assert summary.changed_count == 2
        assert summary.reconciled is False
        payments = run_payments(run_id)
        assert payments[0].failure_reason == "address closed"
        assert payments[1].status == PaymentStatus.COMPLETED

    def test_idempotent(self, orchestrator, submitted, run_audit):
        run_id, _, outcomes = submitted(["100", "200"])
        first = orchestrator.finalize(run_id, outcomes)

        second = orchestrator.finalize(run_id, outcomes)

        assert first.status == second.status == RunStatus.COMPLETED
        assert second.changed_count == 0
        assert second.reconciled is True
        actions = Counter(e.action for e in run_audit(run_id))
        assert actions[AuditAction.RUN_FINALIZED.value] == 1
        assert actions[AuditAction.RUN_RECONCILED.value] == 0

    def test_missing_outcomes_are_unconfirmed(self, orchestrator, submitted, run_payments):
        run_id, _, outcomes = submitted(["100", "200", "300"])

        summary = orchestrator.finalize(run_id, outcomes[:1])

        assert summary.status == RunStatus.PARTIALLY_COMPLETED
        assert summary.failed_count == 2
        codes = [p.failure_code for p in run_payments(run_id)]
        assert codes == [None, FailureCode.UNCONFIRMED.value, FailureCode.UNCONFIRMED.value]

    def test_no_outcomes_fails_run(self, orchestrator, submitted):
        run_id, _, _ = submitted(["100"])
        assert orchestrator.finalize(run_id, ()).status == RunStatus.FAILED

    def test_unknown_payment_ignored(self, orchestrator, submitted, captured_logs):
        run_id, _, outcomes = submitted(["100"])
        stranger = TransferOutcome(payment_ref=uuid4(), success=True, settlement_ref="sig-x")

        summary = orchestrator.finalize(run_id, (*outcomes, stranger))

        assert summary.status == RunStatus.COMPLETED
        assert any(r["message"] == "finalize_outcome_unknown_payment" for r in captured_logs())

    def test_before_submission(self, orchestrator, create_run):
        run_id, _ = create_run(["100"])
        with pytest.raises(InvalidRunTransitionError):
            orchestrator.finalize(run_id, ())

        orchestrator.prepare(run_id)
        with pytest.raises(InvalidRunTransitionError):
            orchestrator.finalize(run_id, ())

    def test_cancelled_run(self, orchestrator, create_run):
        run_id, _ = create_run(["100"])
        orchestrator.cancel(run_id)
        with pytest.raises(InvalidRunTransitionError):
            orchestrator.finalize(run_id, ())

    def test_unknown_run(self, orchestrator):
        with pytest.raises(PayrollRunNotFoundError):
            orchestrator.finalize(uuid4(), ())


# =============================================================================
# Storage retries
# =============================================================================


class TestFinalizeRetry:
    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def patient(self, session_factory, key_ring, clock, sleeps):
        return PayrollOrchestrator(
            session_factory,
            key_ring,
            clock=clock,
            finalize_attempts=3,
            finalize_backoff_seconds=0.5,
            sleep=sleeps.append,
        )

    def test_transient_failure_retried(self, patient, submitted, sleeps, monkeypatch):
        run_id, _, outcomes = submitted(["100", "200"])
        calls = flaky(monkeypatch, patient, failures=2)

        summary = patient.finalize(run_id, outcomes)

        assert summary.status == RunStatus.COMPLETED
        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_exhausted_retries_carry_outcomes(
        self, patient, orchestrator, submitted, sleeps, monkeypatch,
    ):
        run_id, _, outcomes = submitted(["100", "200"], {1: "rejected"})
        flaky(monkeypatch, patient, failures=3)

        with pytest.raises(FinalizationRecordingError) as exc_info:
            patient.finalize(run_id, outcomes)

        error = exc_info.value
        assert error.attempts == 3
        assert error.outcomes == outcomes
        assert isinstance(error.__cause__, OperationalError)
        assert sleeps == [0.5, 1.0]
        assert orchestrator.get_run(run_id).status == RunStatus.FINALIZING

        summary = orchestrator.finalize(run_id, error.outcomes)
        assert summary.status == RunStatus.PARTIALLY_COMPLETED

    def test_other_errors_not_retried(self, patient, submitted, sleeps, monkeypatch):
        run_id, _, outcomes = submitted(["100"])
        calls = flaky(monkeypatch, patient, failures=1, error_factory=lambda: ValueError("bug"))

        with pytest.raises(ValueError):
            patient.finalize(run_id, outcomes)

        assert len(calls) == 1
        assert sleeps == []


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconciliation:
    def test_late_success_upgrades_run(self, orchestrator, submitted, run_audit, run_payments):
        run_id, payment_ids, outcomes = submitted(["100", "200"], {0: None})
        assert orchestrator.finalize(run_id, outcomes).status == RunStatus.PARTIALLY_COMPLETED
        late = TransferOutcome(payment_ref=payment_ids[0], success=True, settlement_ref="sig-late")

        summary = orchestrator.finalize(run_id, [late])

        assert summary.reconciled is True
        assert summary.changed_count == 1
        assert summary.status == RunStatus.COMPLETED
        upgraded = run_payments(run_id)[0]
        assert upgraded.status == PaymentStatus.COMPLETED
        assert upgraded.settlement_ref == "sig-late"
        assert upgraded.failure_code is None
        [entry] = run_audit(run_id, AuditAction.RUN_RECONCILED)
        assert entry.details["payment_id"] == str(payment_ids[0])
        assert entry.details["run_status"] == RunStatus.COMPLETED.value

    def test_reconciliation_audited_once(self, orchestrator, submitted, run_audit):
        run_id, payment_ids, outcomes = submitted(["100", "200"], {0: None})
        orchestrator.finalize(run_id, outcomes)
        late = TransferOutcome(payment_ref=payment_ids[0], success=True, settlement_ref="sig-late")

        orchestrator.finalize(run_id, [late])
        again = orchestrator.finalize(run_id, [late])

        assert again.changed_count == 0
        assert len(run_audit(run_id, AuditAction.RUN_RECONCILED)) == 1

    def test_failed_run_upgrades(self, orchestrator, submitted):
        run_id, payment_ids, outcomes = submitted(["100", "200"], {0: None, 1: None})
        assert orchestrator.finalize(run_id, outcomes).status == RunStatus.FAILED
        late = TransferOutcome(payment_ref=payment_ids[1], success=True, settlement_ref="sig-late")

        assert orchestrator.finalize(run_id, [late]).status == RunStatus.PARTIALLY_COMPLETED

    def test_completed_payment_never_downgraded(self, orchestrator, submitted, run_payments):
        run_id, payment_ids, outcomes = submitted(["100", "200"])
        orchestrator.finalize(run_id, outcomes)
        before = run_payments(run_id)
        late = TransferOutcome(payment_ref=payment_ids[1], success=False, error="late failure")

        summary = orchestrator.finalize(run_id, [late])

        assert summary.status == RunStatus.COMPLETED
        assert summary.changed_count == 0
        assert run_payments(run_id) == before

    def test_late_failure_does_not_rewrite_unconfirmed(
        self, orchestrator, submitted, run_payments,
    ):
        run_id, payment_ids, outcomes = submitted(["100", "200"], {1: None})
        orchestrator.finalize(run_id, outcomes)
        late = TransferOutcome(payment_ref=payment_ids[1], success=False, error="expired")

        summary = orchestrator.finalize(run_id, [late])

        assert summary.changed_count == 0
        assert run_payments(run_id)[1].failure_code == FailureCode.UNCONFIRMED.value
