"""
payroll_kernel.domain.dtos -- Frozen read models returned by the ledger.

Frozen dataclasses with enum status fields and tuples for collections.
Decrypted values appear only on the DTOs that exist to show them to an
authorized reader (``EmployeeRecord``, ``InviteDetails``); run and payment
snapshots never carry PII.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.fees import FeeTier


# =============================================================================
# Status enums
# =============================================================================


class EmployeeStatus(str, Enum):
    """Employee lifecycle."""

    PENDING_INVITE = "pending_invite"  # Created, receiving address not yet registered
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"


class RunStatus(str, Enum):
    """Payroll run saga states."""

    PENDING = "pending"
    PREPARING = "preparing"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    SUBMITTING = "submitting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Cancelled before submission

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    @property
    def is_intermediate(self) -> bool:
        return self in INTERMEDIATE_RUN_STATUSES


class PaymentStatus(str, Enum):
    """Per-payment outcome."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.PARTIALLY_COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})

# Exist only for the duration of one execution attempt.
INTERMEDIATE_RUN_STATUSES = frozenset({
    RunStatus.PREPARING,
    RunStatus.AWAITING_AUTHORIZATION,
    RunStatus.SUBMITTING,
    RunStatus.FINALIZING,
})

# No external side effect has happened yet in these states.
PRE_SUBMISSION_RUN_STATUSES = frozenset({
    RunStatus.PREPARING,
    RunStatus.AWAITING_AUTHORIZATION,
})


class FailureCode(str, Enum):
    """Machine-readable reason attached to FAILED payments."""

    RAIL_FAILURE = "RAIL_FAILURE"  # Rail reported failure for this payment
    RAIL_REJECTED = "RAIL_REJECTED"  # Rail refused the whole batch
    UNCONFIRMED = "UNCONFIRMED"  # No outcome recorded; may have settled
    INTEGRITY_ERROR = "INTEGRITY_ERROR"  # Amount could not be decrypted


# =============================================================================
# Organization / employee DTOs
# =============================================================================


@dataclass(frozen=True)
class OrganizationInfo:
    organization_id: UUID
    name: str
    admin_address: str
    fee_tier: FeeTier
    created_at: datetime | None = None


@dataclass(frozen=True)
class EmployeeRecord:
    """Decrypted view of one employee, for the owning organization."""

    employee_id: UUID
    organization_id: UUID
    name: str
    salary: Decimal
    status: EmployeeStatus
    stealth_address: str | None = None
    wallet_address: str | None = None
    invite_code: str | None = None
    invite_expires_at: datetime | None = None
    registered_at: datetime | None = None


@dataclass(frozen=True)
class RecordFailure:
    """A record skipped by a batch read because a field failed to decrypt."""

    entity_id: UUID
    field: str
    error_code: str
    message: str


@dataclass(frozen=True)
class EmployeeRoster:
    """Result of reading many employees: decrypted records plus per-record failures."""

    records: tuple[EmployeeRecord, ...] = ()
    failures: tuple[RecordFailure, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class InviteDetails:
    """What an invitee sees before accepting."""

    employee_id: UUID
    organization_id: UUID
    organization_name: str
    employee_name: str
    salary: Decimal
    expires_at: datetime | None
    already_registered: bool


# =============================================================================
# Run / payment DTOs
# =============================================================================


@dataclass(frozen=True)
class PaymentSnapshot:
    payment_id: UUID
    run_id: UUID
    employee_id: UUID
    position: int
    status: PaymentStatus
    stealth_address: str
    settlement_ref: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    settled_at: datetime | None = None


@dataclass(frozen=True)
class RunSnapshot:
    run_id: UUID
    organization_id: UUID
    status: RunStatus
    asset: SettlementAsset
    total_amount: Decimal
    payment_count: int
    created_at: datetime | None = None
    scheduled_at: datetime | None = None
    executed_at: datetime | None = None
    status_changed_at: datetime | None = None
    attempt_count: int = 0
    source_run_id: UUID | None = None
    error_summary: str | None = None
    completed_count: int = 0
    failed_count: int = 0


@dataclass(frozen=True)
class DecryptedPayment:
    """Amount recovered for one payment during prepare."""

    payment_id: UUID
    employee_id: UUID
    position: int
    stealth_address: str
    amount: Decimal


@dataclass(frozen=True)
class RunPayables:
    """Everything prepare needs from the ledger, decrypted to the minimum."""

    run_id: UUID
    organization_id: UUID
    admin_address: str
    fee_tier: FeeTier
    asset: SettlementAsset
    total_amount: Decimal
    payments: tuple[DecryptedPayment, ...]
    failures: tuple[RecordFailure, ...] = ()


@dataclass(frozen=True)
class OutcomeWrite:
    """Result of recording one payment outcome."""

    payment_id: UUID
    status: PaymentStatus
    changed: bool


@dataclass(frozen=True)
class AuditRecord:
    entry_id: UUID
    action: str
    actor: str
    success: bool
    occurred_at: datetime
    organization_id: UUID | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    error_message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunCreation:
    """A newly created run plus employees skipped because their salary failed to decrypt."""

    run: RunSnapshot
    skipped: tuple[RecordFailure, ...] = ()
