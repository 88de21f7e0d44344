"""
Module: payroll_kernel.models.audit_entry
Responsibility: ORM persistence for the append-only security audit trail.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - ``dedupe_key`` is UNIQUE when present, so an action recorded by a
      repeatable operation (finalize, recovery) is written at most once.
    - ``details`` never carries PII: identifiers, counts, statuses and error
      codes only.

Minimum coverage (each action type generates at least one AuditEntry):
    - KEY_GENERATED, ORG_CREATED
    - EMPLOYEE_CREATED, EMPLOYEE_UPDATED, STEALTH_ADDRESS_REGISTERED
    - RUN_CREATED, RUN_PREPARED, RUN_AUTHORIZED, RUN_AUTHORIZATION_REJECTED,
      RUN_SUBMITTED, RUN_FINALIZED, RUN_CANCELLED, RUN_RECOVERED,
      RUN_RECONCILED
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payroll_kernel.db.base import Base, UUIDString
from payroll_kernel.domain.clock import as_utc
from payroll_kernel.domain.dtos import AuditRecord


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Keys / tenants
    KEY_GENERATED = "key_generated"
    ORG_CREATED = "org_created"

    # Employees
    EMPLOYEE_CREATED = "employee_created"
    EMPLOYEE_UPDATED = "employee_updated"
    STEALTH_ADDRESS_REGISTERED = "stealth_address_registered"

    # Payroll runs
    RUN_CREATED = "run_created"
    RUN_PREPARED = "run_prepared"
    RUN_AUTHORIZED = "run_authorized"
    RUN_AUTHORIZATION_REJECTED = "run_authorization_rejected"
    RUN_SUBMITTED = "run_submitted"
    RUN_FINALIZED = "run_finalized"
    RUN_CANCELLED = "run_cancelled"
    RUN_RECOVERED = "run_recovered"
    RUN_RECONCILED = "run_reconciled"


class AuditEntry(Base):
    """One immutable audit record."""

    __tablename__ = "audit_entries"

    __table_args__ = (
        Index("ix_audit_entries_org_time", "organization_id", "occurred_at"),
        Index("ix_audit_entries_resource", "resource_type", "resource_id"),
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    dedupe_key: Mapped[str | None] = mapped_column(
        String(200), nullable=True, unique=True,
    )

    def to_dto(self) -> AuditRecord:
        return AuditRecord(
            entry_id=self.id,
            action=self.action,
            actor=self.actor,
            success=self.success,
            occurred_at=as_utc(self.occurred_at),
            organization_id=self.organization_id,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            error_message=self.error_message,
            details=dict(self.details or {}),
        )

    def __repr__(self) -> str:
        return f"<AuditEntry {self.action} {self.resource_type}:{self.resource_id}>"
