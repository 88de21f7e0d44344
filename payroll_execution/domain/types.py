"""
payroll_execution.domain.types -- Pure frozen dataclasses for the payroll saga.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections, like the kernel DTOs.

Invariants enforced:
    - A PreparedBatch carries amounts only; no names, salaries or wallets.
    - Instructions are ordered by payment position, and ``digest`` commits
      to that order, so the authorization signature covers exactly the
      batch that is later submitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.dtos import FailureCode, RecordFailure, RunStatus
from payroll_kernel.domain.fees import FeeBreakdown


# =============================================================================
# Prepare
# =============================================================================


@dataclass(frozen=True)
class PaymentInstruction:
    """One (recipient, amount) pair handed to the transfer rail."""

    payment_id: UUID
    recipient: str
    amount: Decimal
    asset: SettlementAsset
    amount_units: int  # Amount in the asset's smallest unit


@dataclass(frozen=True)
class PreparedBatch:
    """Result of ``prepare``: the ordered instructions and their fee quote."""

    run_id: UUID
    organization_id: UUID
    admin_address: str
    asset: SettlementAsset
    instructions: tuple[PaymentInstruction, ...]
    total_amount: Decimal
    fee: FeeBreakdown
    digest: str  # SHA-256 over the ordered instruction list
    prepared_at: datetime
    skipped: tuple[RecordFailure, ...] = ()  # Payments failed at prepare (undecryptable)

    @property
    def payment_count(self) -> int:
        return len(self.instructions)

    @property
    def total_units(self) -> int:
        return sum(i.amount_units for i in self.instructions)


# =============================================================================
# Authorize
# =============================================================================


@dataclass(frozen=True)
class BatchAuthorization:
    """The single signature covering a whole batch."""

    run_id: UUID
    message: bytes
    signature: bytes
    signer_address: str
    nonce: str
    issued_at: datetime


# =============================================================================
# Submit
# =============================================================================


@dataclass(frozen=True)
class ProgressEvent:
    """Incremental progress reported by the rail while a batch is in flight."""

    completed: int
    total: int
    current_recipient: str | None = None


@dataclass(frozen=True)
class TransferOutcome:
    """Result for one payment, as reported by the rail or synthesized by the saga.

    ``failure_code`` is left None by rails; the saga sets it when it
    synthesizes an outcome (UNCONFIRMED, RAIL_REJECTED).
    """

    payment_ref: UUID
    success: bool
    settlement_ref: str | None = None
    error: str | None = None
    failure_code: FailureCode | None = None


@dataclass(frozen=True)
class SubmissionResult:
    """Everything observed during one rail submission."""

    run_id: UUID
    outcomes: tuple[TransferOutcome, ...]
    progress: tuple[ProgressEvent, ...] = ()
    rail_error: str | None = None

    @property
    def unconfirmed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.failure_code == FailureCode.UNCONFIRMED)


# =============================================================================
# Finalize / recover / execute
# =============================================================================


@dataclass(frozen=True)
class FinalizationSummary:
    run_id: UUID
    status: RunStatus
    completed_count: int
    failed_count: int
    changed_count: int  # Payment rows actually written by this call
    reconciled: bool = False  # True when applied to an already-terminal run


@dataclass(frozen=True)
class RecoveryResult:
    run_id: UUID
    from_status: RunStatus
    to_status: RunStatus
    recovered: bool
    unconfirmed_count: int = 0


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a full prepare -> authorize -> submit -> finalize pass."""

    run_id: UUID
    status: RunStatus
    completed_count: int
    failed_count: int
    fee: FeeBreakdown
    outcomes: tuple[TransferOutcome, ...] = ()
    progress: tuple[ProgressEvent, ...] = ()
    skipped: tuple[RecordFailure, ...] = field(default=())
