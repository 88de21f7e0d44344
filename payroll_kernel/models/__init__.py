"""ORM models for the payroll kernel."""

from payroll_kernel.models.audit_entry import AuditAction, AuditEntry
from payroll_kernel.models.employee import VALID_EMPLOYEE_TRANSITIONS, Employee
from payroll_kernel.models.organization import Organization
from payroll_kernel.models.payroll_run import (
    VALID_PAYMENT_TRANSITIONS,
    VALID_RUN_TRANSITIONS,
    Payment,
    PayrollRun,
)

__all__ = [
    "AuditAction",
    "AuditEntry",
    "Employee",
    "Organization",
    "Payment",
    "PayrollRun",
    "VALID_EMPLOYEE_TRANSITIONS",
    "VALID_PAYMENT_TRANSITIONS",
    "VALID_RUN_TRANSITIONS",
]
