"""
PayrollOrchestrator -- the payroll execution saga.

Contract:
    Drives one payroll run through
    PENDING -> PREPARING -> AWAITING_AUTHORIZATION -> SUBMITTING
    -> FINALIZING -> {COMPLETED, PARTIALLY_COMPLETED, FAILED}.
    ``execute()`` runs the whole pass; each step is also callable on its own.

Architecture: payroll_execution/services.  Imports from payroll_execution.domain,
    payroll_execution.rail and kernel services.  All persistence goes through
    PayrollLedger transition operations; nothing here assigns a status field.

Transaction model:
    Every step runs in its own ``session_scope`` and commits before the next
    step begins.  The rail call happens outside any transaction, so a slow
    rail never holds a database lock, and a crash leaves the run in the
    last committed intermediate state with ``status_changed_at`` recording
    when it got there.

Invariants enforced:
    - At most one execution per run: ``prepare`` begins with the ledger's
      PENDING -> PREPARING compare-and-swap.  A concurrent attempt gets
      AlreadyExecutingError and is never queued.
    - Rejected authorization is a no-op cancellation: the run returns to
      PENDING, no payment row changes, and the rail is never called.
    - No payment is retried here.  Failures are recorded per payment and
      the caller decides whether to re-batch them.
    - ``finalize`` is idempotent.  Outcome writes are upserts by payment id,
      RUN_FINALIZED is audited once (dedupe key), and a storage failure is
      retried without touching what the rail reported.
    - Stale intermediate states are detected (``status_changed_at`` older
      than ``ExecutionConfig.stale_after``) and recovered: pre-submission
      states reset to PENDING, post-submission states are closed out with
      UNCONFIRMED payments flagged for reconciliation.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.derivation import verify_signature
from payroll_kernel.domain.dtos import (
    PRE_SUBMISSION_RUN_STATUSES,
    FailureCode,
    OutcomeWrite,
    PaymentStatus,
    RunPayables,
    RunSnapshot,
    RunStatus,
)
from payroll_kernel.domain.envelope import KeyRing
from payroll_kernel.domain.fees import DEFAULT_FEE_SCHEDULE, FeeSchedule, compute_batch_fee
from payroll_kernel.exceptions import (
    AlreadyExecutingError,
    AuthorizationRejectedError,
    BatchIntegrityError,
    EmptyBatchError,
    FinalizationRecordingError,
    InvalidRunTransitionError,
    RailRejectedError,
)
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_kernel.models.audit_entry import AuditAction
from payroll_kernel.models.payroll_run import can_transition_run
from payroll_kernel.services.audit_service import AuditService
from payroll_kernel.services.ledger_service import PayrollLedger

from payroll_execution.domain.authorization import (
    build_batch_authorization_message,
    instruction_digest,
)
from payroll_execution.domain.types import (
    BatchAuthorization,
    ExecutionResult,
    FinalizationSummary,
    PaymentInstruction,
    PreparedBatch,
    ProgressEvent,
    RecoveryResult,
    SubmissionResult,
    TransferOutcome,
)
from payroll_execution.rail import Signer, TransferRail

logger = get_logger("execution.saga")

SYSTEM_ACTOR = "system:payroll-saga"

_T = TypeVar("_T")

_UNCONFIRMED_REASON = "no outcome reported by the rail; reconcile against rail settlement records"


class PayrollOrchestrator:
    """Saga controller for payroll runs.

    Contract:
        - ``prepare()`` claims a PENDING run and returns a PreparedBatch.
        - ``authorize()`` obtains and verifies the single batch signature.
        - ``submit()`` calls the rail once and collects one outcome per payment.
        - ``finalize()`` records outcomes and classifies the run.
        - ``execute()`` runs all four steps.
        - ``cancel()`` and ``recover_stale_run()`` handle the edges.

    Non-goals:
        - Does NOT retry individual payment failures.
        - Does NOT cancel a batch once ``submit()`` has begun.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        key_ring: KeyRing,
        clock: Clock | None = None,
        fee_schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
        stale_after_seconds: int = 900,
        finalize_attempts: int = 3,
        finalize_backoff_seconds: float = 0.5,
        authorization_version: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._key_ring = key_ring
        self._clock = clock or SystemClock()
        self._fee_schedule = fee_schedule
        self._stale_after_seconds = stale_after_seconds
        self._finalize_attempts = max(1, finalize_attempts)
        self._finalize_backoff_seconds = finalize_backoff_seconds
        self._authorization_version = authorization_version
        self._sleep = sleep

    def _ledger(self, session: Session) -> PayrollLedger:
        return PayrollLedger(
            session,
            self._key_ring,
            clock=self._clock,
            audit_service=AuditService(session, self._clock),
        )

    # -------------------------------------------------------------------------
    # Full pass
    # -------------------------------------------------------------------------

    def execute(
        self,
        run_id: UUID,
        signer: Signer,
        rail: TransferRail,
        actor: str = SYSTEM_ACTOR,
    ) -> ExecutionResult:
        """prepare -> authorize -> submit -> finalize.

        Raises:
            Everything ``prepare`` and ``authorize`` raise.
            FinalizationRecordingError: Outcomes could not be recorded; the
                error carries them so the caller can call ``finalize`` again.
        """
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            logger.info("run_execute_started", extra={"run_id": str(run_id)})
            batch = self.prepare(run_id, actor)
            authorization = self.authorize(batch, signer, actor)
            submission = self.submit(batch, authorization, rail, actor)
            summary = self.finalize(run_id, submission.outcomes, actor)

            logger.info(
                "run_execute_completed",
                extra={
                    "run_id": str(run_id),
                    "status": summary.status.value,
                    "completed": summary.completed_count,
                    "failed": summary.failed_count,
                },
            )
            return ExecutionResult(
                run_id=run_id,
                status=summary.status,
                completed_count=summary.completed_count,
                failed_count=summary.failed_count,
                fee=batch.fee,
                outcomes=submission.outcomes,
                progress=submission.progress,
                skipped=batch.skipped,
            )

    # -------------------------------------------------------------------------
    # Prepare
    # -------------------------------------------------------------------------

    def prepare(self, run_id: UUID, actor: str = SYSTEM_ACTOR) -> PreparedBatch:
        """Claim the run and decrypt the payment amounts, nothing more.

        Raises:
            PayrollRunNotFoundError: Unknown run.
            AlreadyExecutingError: Another attempt is in flight (not stale).
            RunAlreadyFinalizedError: Run is terminal.
            EmptyBatchError: Run has zero payments; it is left PENDING.
            BatchIntegrityError: No payment amount could be decrypted; the
                run is FAILED without reaching the rail.
        """
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            logger.info("run_prepare_started", extra={"run_id": str(run_id)})
            self._claim(run_id, actor)
            try:
                return self._prepare_claimed(run_id, actor)
            except (EmptyBatchError, BatchIntegrityError):
                raise
            except Exception:
                logger.exception("run_prepare_failed", extra={"run_id": str(run_id)})
                self._release(run_id, actor, "prepare failed")
                raise

    def _claim(self, run_id: UUID, actor: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                self._ledger(session).claim_run(run_id, actor)
        except AlreadyExecutingError as exc:
            if not self._is_stale(run_id):
                logger.warning(
                    "run_already_executing",
                    extra={"run_id": str(run_id), "status": exc.status},
                )
                raise
            logger.warning(
                "run_stale_attempt_detected",
                extra={"run_id": str(run_id), "status": exc.status},
            )
            self.recover_stale_run(run_id, actor)
            with session_scope(self._session_factory) as session:
                self._ledger(session).claim_run(run_id, actor)

    def _prepare_claimed(self, run_id: UUID, actor: str) -> PreparedBatch:
        outcome: str
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            payables = ledger.load_payables(run_id)

            for failure in payables.failures:
                ledger.record_payment_outcome(
                    failure.entity_id,
                    PaymentStatus.FAILED,
                    actor,
                    failure_code=FailureCode.INTEGRITY_ERROR,
                    failure_reason=failure.message,
                )

            if not payables.payments and not payables.failures:
                ledger.transition_run(
                    run_id, RunStatus.PREPARING, RunStatus.PENDING, actor,
                    error_summary="run has zero payments",
                )
                outcome = "empty"
            elif not payables.payments:
                ledger.transition_run(
                    run_id, RunStatus.PREPARING, RunStatus.FAILED, actor,
                    error_summary="no payment amount could be decrypted",
                )
                ledger.audit.record_run_transition(
                    AuditAction.RUN_PREPARED, run_id, payables.organization_id, actor,
                    success=False,
                    error_message="no payment amount could be decrypted",
                    details={"integrity_failures": len(payables.failures)},
                )
                outcome = "integrity"
            else:
                batch = self._build_batch(payables)
                ledger.transition_run(
                    run_id, RunStatus.PREPARING, RunStatus.AWAITING_AUTHORIZATION, actor,
                )
                ledger.audit.record_run_transition(
                    AuditAction.RUN_PREPARED, run_id, payables.organization_id, actor,
                    details={
                        "payment_count": batch.payment_count,
                        "integrity_failures": len(payables.failures),
                        "digest": batch.digest,
                    },
                )
                outcome = "prepared"

        if outcome == "empty":
            logger.warning("run_prepare_empty", extra={"run_id": str(run_id)})
            raise EmptyBatchError(str(run_id))
        if outcome == "integrity":
            logger.error(
                "run_prepare_integrity_failure",
                extra={"run_id": str(run_id), "failed": len(payables.failures)},
            )
            raise BatchIntegrityError(
                str(run_id), tuple(str(f.entity_id) for f in payables.failures),
            )

        if payables.failures:
            logger.warning(
                "run_prepare_skipped_payments",
                extra={"run_id": str(run_id), "skipped": len(payables.failures)},
            )
        logger.info(
            "run_prepared",
            extra={
                "run_id": str(run_id),
                "payment_count": batch.payment_count,
                "asset": batch.asset.value,
            },
        )
        return batch

    def _build_batch(self, payables: RunPayables) -> PreparedBatch:
        asset = payables.asset
        instructions = tuple(
            PaymentInstruction(
                payment_id=p.payment_id,
                recipient=p.stealth_address,
                amount=p.amount,
                asset=asset,
                amount_units=asset.to_smallest_units(p.amount),
            )
            for p in sorted(payables.payments, key=lambda p: p.position)
        )
        amounts = [i.amount for i in instructions]
        return PreparedBatch(
            run_id=payables.run_id,
            organization_id=payables.organization_id,
            admin_address=payables.admin_address,
            asset=asset,
            instructions=instructions,
            total_amount=sum(amounts, Decimal(0)),
            fee=compute_batch_fee(amounts, payables.fee_tier, self._fee_schedule),
            digest=instruction_digest(instructions),
            prepared_at=self._clock.now_utc(),
            skipped=payables.failures,
        )

    def _release(self, run_id: UUID, actor: str, reason: str) -> None:
        """Return a claimed run to PENDING after an unexpected prepare error."""
        with session_scope(self._session_factory) as session:
            self._ledger(session).transition_run(
                run_id,
                (RunStatus.PREPARING, RunStatus.AWAITING_AUTHORIZATION),
                RunStatus.PENDING,
                actor,
                error_summary=reason,
            )

    # -------------------------------------------------------------------------
    # Authorize
    # -------------------------------------------------------------------------

    def authorize(
        self,
        batch: PreparedBatch,
        signer: Signer,
        actor: str = SYSTEM_ACTOR,
    ) -> BatchAuthorization:
        """Obtain one signature over the whole batch from the paying party.

        The signature must verify against the organization's admin address.
        A signer error, an empty signature or a bad signature all leave the
        run PENDING.

        Raises:
            InvalidRunTransitionError: Run is not AWAITING_AUTHORIZATION.
            AuthorizationRejectedError: Authorization was not obtained.
        """
        run_id = batch.run_id
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            current = self.get_run(run_id).status
            if current != RunStatus.AWAITING_AUTHORIZATION:
                raise InvalidRunTransitionError(
                    str(run_id), current.value, RunStatus.SUBMITTING.value,
                )

            nonce = secrets.token_hex(16)
            issued_at = self._clock.now_utc()
            message = build_batch_authorization_message(
                run_id=run_id,
                asset=batch.asset,
                payment_count=batch.payment_count,
                total_units=batch.total_units,
                fee=str(batch.fee.fee),
                digest=batch.digest,
                nonce=nonce,
                issued_at=issued_at,
                version=self._authorization_version,
            )

            reason: str | None = None
            signature = b""
            try:
                signature = signer.sign(message)
            except Exception as exc:
                logger.warning(
                    "run_authorization_signer_failed",
                    extra={"run_id": str(run_id), "error_type": type(exc).__name__},
                    exc_info=True,
                )
                reason = f"signer failed: {str(exc) or type(exc).__name__}"
            if reason is None and not signature:
                reason = "empty signature"
            if reason is None and not verify_signature(batch.admin_address, message, signature):
                reason = "signature does not verify against the organization admin address"

            if reason is not None:
                self._reject_authorization(batch, actor, reason)
                raise AuthorizationRejectedError(str(run_id), reason)

            with session_scope(self._session_factory) as session:
                ledger = self._ledger(session)
                ledger.transition_run(
                    run_id, RunStatus.AWAITING_AUTHORIZATION, RunStatus.SUBMITTING, actor,
                )
                ledger.audit.record_run_transition(
                    AuditAction.RUN_AUTHORIZED, run_id, batch.organization_id, actor,
                    details={"nonce": nonce, "digest": batch.digest},
                )

            logger.info("run_authorized", extra={"run_id": str(run_id)})
            return BatchAuthorization(
                run_id=run_id,
                message=message,
                signature=bytes(signature),
                signer_address=batch.admin_address,
                nonce=nonce,
                issued_at=issued_at,
            )

    def _reject_authorization(self, batch: PreparedBatch, actor: str, reason: str) -> None:
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            ledger.transition_run(
                batch.run_id,
                RunStatus.AWAITING_AUTHORIZATION,
                RunStatus.PENDING,
                actor,
                error_summary=f"authorization rejected: {reason}",
            )
            ledger.audit.record_run_transition(
                AuditAction.RUN_AUTHORIZATION_REJECTED,
                batch.run_id,
                batch.organization_id,
                actor,
                success=False,
                error_message=reason,
            )
        logger.warning(
            "run_authorization_rejected",
            extra={"run_id": str(batch.run_id), "reason": reason},
        )

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def submit(
        self,
        batch: PreparedBatch,
        authorization: BatchAuthorization,
        rail: TransferRail,
        actor: str = SYSTEM_ACTOR,
    ) -> SubmissionResult:
        """Call the rail once with the whole batch and collect outcomes.

        Returns exactly one outcome per instruction.  Payments the rail
        never reported are returned as UNCONFIRMED failures.  They are
        RAIL_REJECTED only when the rail raised RailRejectedError before
        processing any payment; any other rail exception (timeout, lost
        connection) may hide settled transfers.
        The run moves to FINALIZING whatever the rail did.

        Raises:
            InvalidRunTransitionError: Run is not SUBMITTING, or the
                authorization belongs to another run.
            FinalizationRecordingError: The FINALIZING write failed on every
                attempt.  The run stays SUBMITTING; pass ``e.outcomes`` to
                ``finalize``.
        """
        run_id = batch.run_id
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            if authorization.run_id != run_id:
                raise InvalidRunTransitionError(
                    str(run_id), "authorization mismatch", RunStatus.FINALIZING.value,
                )
            current = self.get_run(run_id).status
            if current != RunStatus.SUBMITTING:
                raise InvalidRunTransitionError(
                    str(run_id), current.value, RunStatus.FINALIZING.value,
                )

            logger.info(
                "run_submit_started",
                extra={"run_id": str(run_id), "payment_count": batch.payment_count},
            )
            known = {i.payment_id for i in batch.instructions}
            reported: dict[UUID, TransferOutcome] = {}
            progress: list[ProgressEvent] = []
            rail_error: str | None = None
            rejected = False

            try:
                for event in rail.submit_batch(batch.instructions, authorization):
                    if isinstance(event, ProgressEvent):
                        progress.append(event)
                        logger.debug(
                            "run_submit_progress",
                            extra={"completed": event.completed, "total": event.total},
                        )
                    elif isinstance(event, TransferOutcome):
                        self._collect_outcome(event, known, reported)
                    else:
                        logger.warning(
                            "rail_event_ignored",
                            extra={"event_type": type(event).__name__},
                        )
            except RailRejectedError as exc:
                rail_error = exc.reason
                # Only a refusal before any payment was processed is a rejection.
                rejected = not reported and not any(p.completed for p in progress)
                logger.error(
                    "rail_batch_rejected",
                    extra={"run_id": str(run_id), "reported": len(reported)},
                )
            except Exception as exc:
                rail_error = str(exc) or type(exc).__name__
                logger.error(
                    "rail_submission_failed",
                    extra={"run_id": str(run_id), "reported": len(reported)},
                    exc_info=True,
                )

            outcomes = tuple(
                self._resolve_outcome(i.payment_id, reported, rail_error if rejected else None)
                for i in batch.instructions
            )

            # The rail has run; from here a storage failure must not lose outcomes.
            self._retry_writes(
                run_id,
                outcomes,
                lambda: self._record_submission(batch, actor, rail_error, len(reported)),
            )

            result = SubmissionResult(
                run_id=run_id,
                outcomes=outcomes,
                progress=tuple(progress),
                rail_error=rail_error,
            )
            if result.unconfirmed_count:
                logger.warning(
                    "run_submit_unconfirmed_payments",
                    extra={"run_id": str(run_id), "unconfirmed": result.unconfirmed_count},
                )
            logger.info(
                "run_submit_completed",
                extra={
                    "run_id": str(run_id),
                    "succeeded": sum(1 for o in outcomes if o.success),
                    "failed": sum(1 for o in outcomes if not o.success),
                },
            )
            return result

    def _record_submission(
        self,
        batch: PreparedBatch,
        actor: str,
        rail_error: str | None,
        reported: int,
    ) -> None:
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            ledger.transition_run(
                batch.run_id, RunStatus.SUBMITTING, RunStatus.FINALIZING, actor,
                error_summary=f"rail error: {rail_error}" if rail_error else None,
            )
            ledger.audit.record_run_transition(
                AuditAction.RUN_SUBMITTED, batch.run_id, batch.organization_id, actor,
                success=rail_error is None,
                error_message=rail_error,
                details={"reported": reported, "payment_count": batch.payment_count},
            )

    @staticmethod
    def _collect_outcome(
        event: TransferOutcome,
        known: set[UUID],
        reported: dict[UUID, TransferOutcome],
    ) -> None:
        ref = event.payment_ref
        if ref not in known:
            logger.warning("rail_outcome_unknown_payment", extra={"payment_id": str(ref)})
            return
        if ref in reported:
            logger.warning("rail_outcome_duplicate", extra={"payment_id": str(ref)})
            return
        if event.success and not event.settlement_ref:
            logger.warning("rail_outcome_missing_settlement_ref", extra={"payment_id": str(ref)})
            reported[ref] = TransferOutcome(
                payment_ref=ref,
                success=False,
                error="success reported without a settlement reference",
                failure_code=FailureCode.UNCONFIRMED,
            )
            return
        if not event.success and not event.error:
            event = TransferOutcome(
                payment_ref=ref, success=False, error="rail reported failure",
            )
        reported[ref] = event

    @staticmethod
    def _resolve_outcome(
        payment_id: UUID,
        reported: dict[UUID, TransferOutcome],
        rejection: str | None,
    ) -> TransferOutcome:
        outcome = reported.get(payment_id)
        if outcome is not None:
            return outcome
        if rejection is not None:
            return TransferOutcome(
                payment_ref=payment_id,
                success=False,
                error=f"rail rejected batch: {rejection}",
                failure_code=FailureCode.RAIL_REJECTED,
            )
        return TransferOutcome(
            payment_ref=payment_id,
            success=False,
            error=_UNCONFIRMED_REASON,
            failure_code=FailureCode.UNCONFIRMED,
        )

    # -------------------------------------------------------------------------
    # Finalize
    # -------------------------------------------------------------------------

    def finalize(
        self,
        run_id: UUID,
        outcomes: Sequence[TransferOutcome],
        actor: str = SYSTEM_ACTOR,
    ) -> FinalizationSummary:
        """Record outcomes and classify the run.  Safe to repeat.

        On a FINALIZING run this records every outcome, closes out payments
        without one as UNCONFIRMED and moves the run to its terminal status.
        A SUBMITTING run is accepted too: that is where a run stays when
        ``submit`` could not record the end of the rail call, and the
        outcomes come from the FinalizationRecordingError it raised.
        On a terminal run it only applies upgrades (FAILED -> COMPLETED) and
        re-classifies upward; each upgrade is audited once.

        Storage failures are retried ``finalize_attempts`` times with
        exponential backoff.

        Raises:
            PayrollRunNotFoundError: Unknown run.
            InvalidRunTransitionError: Run has not been submitted.
            FinalizationRecordingError: Every attempt failed to write.
        """
        outcomes = tuple(outcomes)
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            return self._retry_writes(
                run_id, outcomes, lambda: self._finalize_once(run_id, outcomes, actor),
            )

    def _retry_writes(
        self,
        run_id: UUID,
        outcomes: tuple[TransferOutcome, ...],
        write: Callable[[], _T],
    ) -> _T:
        """Run a post-rail storage write, retrying SQLAlchemyError with backoff.

        Exhaustion raises FinalizationRecordingError carrying ``outcomes``.
        """
        last_error: SQLAlchemyError | None = None
        for attempt in range(1, self._finalize_attempts + 1):
            try:
                return write()
            except SQLAlchemyError as exc:
                last_error = exc
                logger.warning(
                    "finalize_retry",
                    extra={
                        "run_id": str(run_id),
                        "attempt": attempt,
                        "max_attempts": self._finalize_attempts,
                        "error_type": type(exc).__name__,
                    },
                )
                if attempt < self._finalize_attempts:
                    self._sleep(self._finalize_backoff_seconds * (2 ** (attempt - 1)))

        logger.error(
            "finalize_recording_failed",
            extra={"run_id": str(run_id), "attempts": self._finalize_attempts},
        )
        raise FinalizationRecordingError(
            str(run_id), self._finalize_attempts, outcomes,
        ) from last_error

    def _finalize_once(
        self,
        run_id: UUID,
        outcomes: tuple[TransferOutcome, ...],
        actor: str,
    ) -> FinalizationSummary:
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            run = ledger.lock_run(run_id)
            status = run.status

            if status == RunStatus.SUBMITTING:
                ledger.transition_run(run_id, RunStatus.SUBMITTING, RunStatus.FINALIZING, actor)
                ledger.audit.record_run_transition(
                    AuditAction.RUN_SUBMITTED, run_id, run.organization_id, actor,
                    details={"reported": len(outcomes), "recorded_by": "finalize"},
                )
                status = RunStatus.FINALIZING

            if status == RunStatus.FINALIZING:
                reconcile = False
            elif status in (RunStatus.COMPLETED, RunStatus.PARTIALLY_COMPLETED, RunStatus.FAILED):
                reconcile = True
            else:
                raise InvalidRunTransitionError(str(run_id), status.value, "finalized")

            payment_ids = {p.payment_id for p in ledger.list_payments(run_id)}
            changed = []
            for outcome in outcomes:
                if outcome.payment_ref not in payment_ids:
                    logger.warning(
                        "finalize_outcome_unknown_payment",
                        extra={"payment_id": str(outcome.payment_ref)},
                    )
                    continue
                write = self._record(ledger, outcome, actor)
                if write.changed:
                    changed.append(write)

            if not reconcile:
                for payment_id in ledger.pending_payment_ids(run_id):
                    changed.append(ledger.record_payment_outcome(
                        payment_id, PaymentStatus.FAILED, actor,
                        failure_code=FailureCode.UNCONFIRMED,
                        failure_reason=_UNCONFIRMED_REASON,
                    ))

            target = ledger.classify_run(run_id)
            final_status = status
            if target != status and can_transition_run(status, target):
                ledger.transition_run(run_id, status, target, actor)
                final_status = target

            if reconcile:
                for write in changed:
                    ledger.audit.record_run_transition(
                        AuditAction.RUN_RECONCILED, run_id, run.organization_id, actor,
                        details={
                            "payment_id": str(write.payment_id),
                            "payment_status": write.status.value,
                            "run_status": final_status.value,
                        },
                        dedupe_key=f"run:{run_id}:reconciled:{write.payment_id}:{write.status.value}",
                    )
            else:
                ledger.audit.record_run_transition(
                    AuditAction.RUN_FINALIZED, run_id, run.organization_id, actor,
                    success=final_status != RunStatus.FAILED,
                    details={"status": final_status.value, "payment_count": len(payment_ids)},
                    dedupe_key=f"run:{run_id}:finalized",
                )

            snapshot = ledger.get_run(run_id)

        logger.info(
            "run_reconciled" if reconcile else "run_finalized",
            extra={
                "run_id": str(run_id),
                "status": snapshot.status.value,
                "changed": len(changed),
                "completed": snapshot.completed_count,
                "failed": snapshot.failed_count,
            },
        )
        return FinalizationSummary(
            run_id=run_id,
            status=snapshot.status,
            completed_count=snapshot.completed_count,
            failed_count=snapshot.failed_count,
            changed_count=len(changed),
            reconciled=reconcile,
        )

    @staticmethod
    def _record(ledger: PayrollLedger, outcome: TransferOutcome, actor: str) -> OutcomeWrite:
        if outcome.success:
            return ledger.record_payment_outcome(
                outcome.payment_ref,
                PaymentStatus.COMPLETED,
                actor,
                settlement_ref=outcome.settlement_ref,
            )
        return ledger.record_payment_outcome(
            outcome.payment_ref,
            PaymentStatus.FAILED,
            actor,
            failure_code=outcome.failure_code or FailureCode.RAIL_FAILURE,
            failure_reason=outcome.error or "rail reported failure",
        )

    # -------------------------------------------------------------------------
    # Cancel / recover
    # -------------------------------------------------------------------------

    def cancel(self, run_id: UUID, actor: str = SYSTEM_ACTOR, reason: str | None = None) -> RunSnapshot:
        """Cancel a run that has not been submitted (PENDING or AWAITING_AUTHORIZATION).

        Raises:
            InvalidRunTransitionError: Run is in any other state.
        """
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            with session_scope(self._session_factory) as session:
                ledger = self._ledger(session)
                ledger.transition_run(
                    run_id,
                    (RunStatus.PENDING, RunStatus.AWAITING_AUTHORIZATION),
                    RunStatus.CANCELLED,
                    actor,
                    error_summary=reason,
                )
                snapshot = ledger.get_run(run_id)
                ledger.audit.record_run_transition(
                    AuditAction.RUN_CANCELLED, run_id, snapshot.organization_id, actor,
                    details={"reason": reason} if reason else None,
                )
            logger.info("run_cancelled", extra={"run_id": str(run_id)})
            return snapshot

    def recover_stale_run(
        self,
        run_id: UUID,
        actor: str = SYSTEM_ACTOR,
        force: bool = False,
    ) -> RecoveryResult:
        """Bring a run stuck in an intermediate state back to a resting state.

        PREPARING / AWAITING_AUTHORIZATION reset to PENDING.  SUBMITTING /
        FINALIZING are closed out: unrecorded payments become FAILED with
        code UNCONFIRMED (they may have settled on the rail) and the run is
        classified from what was recorded.

        Raises:
            PayrollRunNotFoundError: Unknown run.
            AlreadyExecutingError: Run is intermediate but not yet stale and
                ``force`` is not set.
        """
        with LogContext.bind(run_id=str(run_id), actor_id=actor):
            with session_scope(self._session_factory) as session:
                ledger = self._ledger(session)
                run = ledger.lock_run(run_id)
                status = run.status
                if not status.is_intermediate:
                    return RecoveryResult(run_id, status, status, recovered=False)
                if not force and not self._stale(run):
                    raise AlreadyExecutingError(str(run_id), status.value)

                unconfirmed = 0
                if status in PRE_SUBMISSION_RUN_STATUSES:
                    ledger.transition_run(
                        run_id, status, RunStatus.PENDING, actor,
                        error_summary=f"stale {status.value} attempt reset",
                    )
                    target = RunStatus.PENDING
                else:
                    if status == RunStatus.SUBMITTING:
                        ledger.transition_run(
                            run_id, RunStatus.SUBMITTING, RunStatus.FINALIZING, actor,
                        )
                    for payment_id in ledger.pending_payment_ids(run_id):
                        ledger.record_payment_outcome(
                            payment_id, PaymentStatus.FAILED, actor,
                            failure_code=FailureCode.UNCONFIRMED,
                            failure_reason=_UNCONFIRMED_REASON,
                        )
                        unconfirmed += 1
                    target = ledger.classify_run(run_id)
                    ledger.transition_run(
                        run_id, RunStatus.FINALIZING, target, actor,
                        error_summary=(
                            f"closed by stale recovery from {status.value}; "
                            f"{unconfirmed} payment(s) need reconciliation"
                        ),
                    )

                ledger.audit.record_run_transition(
                    AuditAction.RUN_RECOVERED, run_id, run.organization_id, actor,
                    details={
                        "from_status": status.value,
                        "to_status": target.value,
                        "unconfirmed": unconfirmed,
                    },
                )

            logger.warning(
                "run_recovered",
                extra={
                    "run_id": str(run_id),
                    "from_status": status.value,
                    "to_status": target.value,
                    "unconfirmed": unconfirmed,
                },
            )
            return RecoveryResult(
                run_id, status, target, recovered=True, unconfirmed_count=unconfirmed,
            )

    def find_stale_runs(self) -> tuple[RunSnapshot, ...]:
        """Runs whose intermediate state is older than the staleness threshold."""
        with session_scope(self._session_factory) as session:
            runs = self._ledger(session).list_runs_in_status(
                tuple(s for s in RunStatus if s.is_intermediate),
            )
        return tuple(r for r in runs if self._stale(r))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> RunSnapshot:
        with session_scope(self._session_factory) as session:
            return self._ledger(session).get_run(run_id)

    def _is_stale(self, run_id: UUID) -> bool:
        return self._stale(self.get_run(run_id))

    def _stale(self, run: RunSnapshot) -> bool:
        if not run.status.is_intermediate or run.status_changed_at is None:
            return False
        age = self._clock.now_utc() - run.status_changed_at
        return age.total_seconds() >= self._stale_after_seconds
