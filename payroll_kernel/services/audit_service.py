"""
AuditService -- append-only audit trail writer.

Responsibility:
    Records security-relevant actions (key generation, organization and
    employee changes, every run transition that matters to an auditor) as
    immutable AuditEntry rows.

Architecture position:
    Kernel > Services -- imperative shell.  Shares the caller's session and
    never commits; the caller controls transaction boundaries.

Invariants enforced:
    - Append-only: entries are only ever INSERTed (db/immutability.py blocks
      UPDATE and DELETE).
    - At-most-once for repeatable operations: when a ``dedupe_key`` is given
      and an entry with that key exists, nothing is written.
    - No PII in ``details``.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.dtos import AuditRecord
from payroll_kernel.logging_config import get_logger
from payroll_kernel.models.audit_entry import AuditAction, AuditEntry

logger = get_logger("services.audit")


class AuditService:
    """Writes and reads the audit trail."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        action: AuditAction,
        actor: str,
        *,
        organization_id: UUID | None = None,
        resource_type: str | None = None,
        resource_id: UUID | str | None = None,
        success: bool = True,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> AuditEntry | None:
        """Append one entry.  Returns None when ``dedupe_key`` was already used."""
        if dedupe_key is not None and self.has_entry(dedupe_key):
            logger.debug(
                "audit_entry_deduplicated",
                extra={"action": action.value, "dedupe_key": dedupe_key},
            )
            return None

        entry = AuditEntry(
            action=action.value,
            actor=actor,
            organization_id=organization_id,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            success=success,
            error_message=error_message,
            details=details or None,
            occurred_at=self._clock.now(),
            dedupe_key=dedupe_key,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_recorded",
            extra={
                "action": action.value,
                "resource_type": resource_type,
                "resource_id": entry.resource_id,
                "success": success,
            },
        )
        return entry

    def has_entry(self, dedupe_key: str) -> bool:
        return self._session.execute(
            select(AuditEntry.id).where(AuditEntry.dedupe_key == dedupe_key)
        ).first() is not None

    # -------------------------------------------------------------------------
    # Domain-specific recorders
    # -------------------------------------------------------------------------

    def record_organization_created(
        self, organization_id: UUID, actor: str, fee_tier: str,
    ) -> None:
        self.record(
            AuditAction.KEY_GENERATED,
            actor,
            organization_id=organization_id,
            resource_type="organization_key",
            resource_id=organization_id,
            details={"algorithm": "AES-256-GCM", "wrapped": True},
        )
        self.record(
            AuditAction.ORG_CREATED,
            actor,
            organization_id=organization_id,
            resource_type="organization",
            resource_id=organization_id,
            details={"fee_tier": fee_tier},
        )

    def record_run_transition(
        self,
        action: AuditAction,
        run_id: UUID,
        organization_id: UUID,
        actor: str,
        *,
        success: bool = True,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> AuditEntry | None:
        return self.record(
            action,
            actor,
            organization_id=organization_id,
            resource_type="payroll_run",
            resource_id=run_id,
            success=success,
            error_message=error_message,
            details=details,
            dedupe_key=dedupe_key,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_entries(
        self,
        organization_id: UUID | None = None,
        resource_id: UUID | str | None = None,
        action: AuditAction | None = None,
        limit: int = 100,
    ) -> tuple[AuditRecord, ...]:
        query = select(AuditEntry)
        if organization_id is not None:
            query = query.where(AuditEntry.organization_id == organization_id)
        if resource_id is not None:
            query = query.where(AuditEntry.resource_id == str(resource_id))
        if action is not None:
            query = query.where(AuditEntry.action == action.value)
        query = query.order_by(AuditEntry.occurred_at, AuditEntry.id).limit(limit)
        return tuple(e.to_dto() for e in self._session.scalars(query))
