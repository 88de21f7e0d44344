"""
Module: payroll_kernel.models.payroll_run
Responsibility: ORM persistence for payroll runs and their payments.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Sum of a run's payment amounts equals ``total_amount`` at creation.
      Amounts are snapshotted (re-encrypted) at creation, so later salary
      edits never reach an existing run.
    - Run status follows VALID_RUN_TRANSITIONS.  The ledger applies every
      transition as a compare-and-swap on the current status, which is also
      the at-most-one-execution-per-run guard.
    - Payment status follows VALID_PAYMENT_TRANSITIONS.  COMPLETED is
      final; FAILED may only be upgraded to COMPLETED by reconciliation.
    - ``(run_id, position)`` is UNIQUE, fixing payment order.

Audit relevance:
    ``status_changed_at`` lets the saga detect runs stuck in an intermediate
    state.  ``attempt_count`` counts execution attempts started from PENDING.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase, UUIDString
from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.clock import as_utc
from payroll_kernel.domain.dtos import (
    PaymentSnapshot,
    PaymentStatus,
    RunSnapshot,
    RunStatus,
)


# Allowed state transitions (from -> set of valid targets)
VALID_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({
        RunStatus.PREPARING, RunStatus.CANCELLED,
    }),
    RunStatus.PREPARING: frozenset({
        RunStatus.AWAITING_AUTHORIZATION,
        RunStatus.PENDING,  # reset: empty batch or stale attempt
        RunStatus.FAILED,  # nothing decryptable, never submitted
    }),
    RunStatus.AWAITING_AUTHORIZATION: frozenset({
        RunStatus.SUBMITTING,
        RunStatus.PENDING,  # authorization rejected or stale attempt
        RunStatus.CANCELLED,
    }),
    RunStatus.SUBMITTING: frozenset({
        RunStatus.FINALIZING,
    }),
    RunStatus.FINALIZING: frozenset({
        RunStatus.COMPLETED, RunStatus.PARTIALLY_COMPLETED, RunStatus.FAILED,
    }),
    # Reconciliation may only move a terminal run upward.
    RunStatus.FAILED: frozenset({
        RunStatus.PARTIALLY_COMPLETED, RunStatus.COMPLETED,
    }),
    RunStatus.PARTIALLY_COMPLETED: frozenset({
        RunStatus.COMPLETED,
    }),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset(),
}


def can_transition_run(source: RunStatus, target: RunStatus) -> bool:
    return target in VALID_RUN_TRANSITIONS.get(source, frozenset())


def can_transition_payment(source: PaymentStatus, target: PaymentStatus) -> bool:
    return target in VALID_PAYMENT_TRANSITIONS.get(source, frozenset())


class PayrollRun(TrackedBase):
    """One payroll run for one organization in one settlement asset."""

    __tablename__ = "payroll_runs"

    __table_args__ = (
        Index("ix_payroll_runs_org_status", "organization_id", "status"),
        Index("ix_payroll_runs_status_changed", "status", "status_changed_at"),
    )

    organization_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("organizations.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    asset: Mapped[str] = mapped_column(String(10), nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    source_run_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id"),
        nullable=True,
    )
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="run",
        order_by="Payment.position",
    )

    @property
    def status_enum(self) -> RunStatus:
        return RunStatus(self.status)

    def to_dto(self) -> RunSnapshot:
        statuses = [p.status for p in self.payments]
        return RunSnapshot(
            run_id=self.id,
            organization_id=self.organization_id,
            status=RunStatus(self.status),
            asset=SettlementAsset(self.asset),
            total_amount=self.total_amount,
            payment_count=len(statuses),
            created_at=as_utc(self.created_at),
            scheduled_at=as_utc(self.scheduled_at),
            executed_at=as_utc(self.executed_at),
            status_changed_at=as_utc(self.status_changed_at),
            attempt_count=self.attempt_count,
            source_run_id=self.source_run_id,
            error_summary=self.error_summary,
            completed_count=statuses.count(PaymentStatus.COMPLETED.value),
            failed_count=statuses.count(PaymentStatus.FAILED.value),
        )

    def __repr__(self) -> str:
        return f"<PayrollRun {self.id} status={self.status}>"


class Payment(TrackedBase):
    """One payment within a run.  The amount is stored encrypted."""

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_payments_run_position"),
        Index("ix_payments_run_status", "run_id", "status"),
        Index("ix_payments_stealth_address", "stealth_address"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("employees.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    stealth_address: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    settlement_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    run: Mapped["PayrollRun"] = relationship(
        "PayrollRun",
        back_populates="payments",
        foreign_keys=[run_id],
    )

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def to_dto(self) -> PaymentSnapshot:
        return PaymentSnapshot(
            payment_id=self.id,
            run_id=self.run_id,
            employee_id=self.employee_id,
            position=self.position,
            status=PaymentStatus(self.status),
            stealth_address=self.stealth_address,
            settlement_ref=self.settlement_ref,
            failure_code=self.failure_code,
            failure_reason=self.failure_reason,
            settled_at=as_utc(self.settled_at),
        )

    def __repr__(self) -> str:
        return f"<Payment {self.id} run={self.run_id} status={self.status}>"
