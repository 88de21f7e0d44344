"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Three kinds of records must never change once written:

  - AuditEntry rows: the audit trail is append-only.
  - Organization.admin_address / wrapped_key: the wrapped key is never
    rotated in place (rotation would orphan every record encrypted under it),
    and the admin address is the tenant's identity.
  - Employee.stealth_address: write-once.  It is reproducible by re-deriving
    from the same inputs, so a different value can only be an error or an
    attack redirecting salary.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
The listeners below check attribute history and raise
ImmutabilityViolationError, aborting the flush.

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | When Immutable                       | Fields
----------------|--------------------------------------|---------------------------
AuditEntry      | ALWAYS (from creation)               | all; no DELETE
Organization    | ALWAYS (from creation)               | admin_address, wrapped_key
Employee        | Once stealth_address is non-null     | stealth_address

===============================================================================
USAGE
===============================================================================

Called once at startup (PayrollRuntime does this):

    from payroll_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from payroll_kernel.exceptions import ImmutabilityViolationError
from payroll_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "field": field,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_audit_entry_update(mapper, connection, target):
    """Audit entries are never updated."""
    raise _blocked(
        "AuditEntry", target.id, "UPDATE",
        "Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Audit entries are never deleted."""
    raise _blocked(
        "AuditEntry", target.id, "DELETE",
        "Audit entries cannot be deleted",
    )


def _check_organization_update(mapper, connection, target):
    """Admin address and wrapped key are frozen after INSERT."""
    from payroll_kernel.models.organization import ORGANIZATION_FROZEN_FIELDS

    for field in sorted(ORGANIZATION_FROZEN_FIELDS):
        history = get_history(target, field)
        if history.deleted and history.added and history.deleted[0] != history.added[0]:
            raise _blocked(
                "Organization", target.id, "UPDATE",
                f"Field '{field}' cannot change after creation",
                field=field,
            )


def _check_organization_delete(mapper, connection, target):
    """Deleting a tenant would orphan ciphertexts and payment history."""
    raise _blocked(
        "Organization", target.id, "DELETE",
        "Organizations cannot be deleted",
    )


def _check_employee_update(mapper, connection, target):
    """A set stealth address is write-once."""
    history = get_history(target, "stealth_address")
    if not history.deleted:
        return
    previous = history.deleted[0]
    current = history.added[0] if history.added else None
    if previous is not None and previous != current:
        raise _blocked(
            "Employee", target.id, "UPDATE",
            "Receiving address cannot change once registered",
            field="stealth_address",
        )


_LISTENERS = (
    ("AuditEntry", "before_update", _check_audit_entry_update),
    ("AuditEntry", "before_delete", _check_audit_entry_delete),
    ("Organization", "before_update", _check_organization_update),
    ("Organization", "before_delete", _check_organization_delete),
    ("Employee", "before_update", _check_employee_update),
)


def _models():
    from payroll_kernel.models import AuditEntry, Employee, Organization

    return {
        "AuditEntry": AuditEntry,
        "Employee": Employee,
        "Organization": Organization,
    }


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after all models are imported but before any database
    operations begin.
    """
    models = _models()
    for model_name, event_name, listener_fn in _LISTENERS:
        target = models[model_name]
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    models = _models()
    for model_name, event_name, listener_fn in _LISTENERS:
        target = models[model_name]
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
