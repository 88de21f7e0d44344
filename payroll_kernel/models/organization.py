"""
Module: payroll_kernel.models.organization
Responsibility: ORM persistence for paying organizations (tenants).
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Exactly one organization per administrator address (UNIQUE admin_address).
    - ``wrapped_key`` is the organization's data key encrypted under the master
      key.  It is written once at creation and never rotated in place
      (db/immutability.py blocks updates to it and to admin_address).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase
from payroll_kernel.domain.dtos import OrganizationInfo
from payroll_kernel.domain.fees import FeeTier

if TYPE_CHECKING:
    from payroll_kernel.models.employee import Employee

# Fields frozen after INSERT
ORGANIZATION_FROZEN_FIELDS = frozenset({"admin_address", "wrapped_key"})


class Organization(TrackedBase):
    """A paying organization and its wrapped data key."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    admin_address: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, active_history=True,
    )
    wrapped_key: Mapped[str] = mapped_column(Text, nullable=False, active_history=True)
    fee_tier: Mapped[str] = mapped_column(String(20), nullable=False)

    employees: Mapped[list["Employee"]] = relationship(
        "Employee",
        back_populates="organization",
    )

    def to_dto(self) -> OrganizationInfo:
        return OrganizationInfo(
            organization_id=self.id,
            name=self.name,
            admin_address=self.admin_address,
            fee_tier=FeeTier(self.fee_tier),
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<Organization {self.id} tier={self.fee_tier}>"
