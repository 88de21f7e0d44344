"""
Module: payroll_kernel.models.employee
Responsibility: ORM persistence for employees with encrypted PII.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - name, salary and real wallet are stored only as ciphertext under the
      organization key (``*_encrypted`` columns).  Salary is serialized as
      decimal text before encryption.
    - ``stealth_address`` is public, globally UNIQUE, and write-once:
      None -> value is allowed, any later change is blocked by
      db/immutability.py.
    - Status changes follow VALID_EMPLOYEE_TRANSITIONS.
    - ``owner_wallet_hash`` stores an HMAC-SHA256 digest (organization key) of the employee's real
      wallet, never the wallet itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase, UUIDString
from payroll_kernel.domain.dtos import EmployeeStatus

if TYPE_CHECKING:
    from payroll_kernel.models.organization import Organization


VALID_EMPLOYEE_TRANSITIONS: dict[EmployeeStatus, frozenset[EmployeeStatus]] = {
    EmployeeStatus.PENDING_INVITE: frozenset({
        EmployeeStatus.ACTIVE, EmployeeStatus.TERMINATED,
    }),
    EmployeeStatus.ACTIVE: frozenset({
        EmployeeStatus.PAUSED, EmployeeStatus.TERMINATED,
    }),
    EmployeeStatus.PAUSED: frozenset({
        EmployeeStatus.ACTIVE, EmployeeStatus.TERMINATED,
    }),
    EmployeeStatus.TERMINATED: frozenset(),
}


class Employee(TrackedBase):
    """An employee of one organization."""

    __tablename__ = "employees"

    __table_args__ = (
        Index("ix_employees_org_status", "organization_id", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("organizations.id"),
        nullable=False,
    )
    name_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    salary_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    wallet_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    stealth_address: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True, active_history=True,
    )
    owner_wallet_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    invite_code: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True,
    )
    invite_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    registered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    organization: Mapped["Organization"] = relationship(
        "Organization",
        back_populates="employees",
    )

    @property
    def status_enum(self) -> EmployeeStatus:
        return EmployeeStatus(self.status)

    def can_transition_to(self, target: EmployeeStatus) -> bool:
        return target in VALID_EMPLOYEE_TRANSITIONS.get(self.status_enum, frozenset())

    @property
    def is_payable(self) -> bool:
        return self.status == EmployeeStatus.ACTIVE.value and bool(self.stealth_address)

    def __repr__(self) -> str:
        return f"<Employee {self.id} status={self.status}>"
