"""
Typed Exception Hierarchy for the Payroll Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A payroll run touches encrypted records, an external signer and an external
transfer rail.  Callers must be able to tell those failure sources apart
without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        orchestrator.prepare(run_id)
    except Exception as e:
        if "already" in str(e):  # FRAGILE - message might change
            back_off()

Example - RIGHT way:
    try:
        orchestrator.prepare(run_id)
    except AlreadyExecutingError as e:
        api_response(code=e.code, run_id=e.run_id, status=e.status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from PayrollKernelError:

    PayrollKernelError (base)
    |
    +-- CryptoError
    |   +-- IntegrityError
    |   +-- MalformedInputError
    |   +-- MasterKeyError
    |
    +-- DerivationError
    |   +-- SignatureRejectedError
    |   +-- InvalidAddressError
    |
    +-- PreconditionError
    |   +-- NotFoundError
    |   |   +-- OrganizationNotFoundError
    |   |   +-- EmployeeNotFoundError
    |   |   +-- PayrollRunNotFoundError
    |   |   +-- InviteNotFoundError
    |   +-- EmptyBatchError
    |   +-- AlreadyExecutingError
    |   +-- RunAlreadyFinalizedError
    |   +-- InvalidRunTransitionError
    |   +-- InvalidPaymentTransitionError
    |   +-- InvalidEmployeeTransitionError
    |   +-- UnsupportedAssetError
    |   +-- UnknownFeeTierError
    |   +-- ValidationError
    |   +-- InviteExpiredError
    |   +-- InviteAlreadyUsedError
    |
    +-- ConflictError
    |   +-- OrganizationAlreadyExistsError
    |   +-- StealthAddressConflictError
    |   +-- StealthAddressImmutableError
    |
    +-- AuthorizationError
    |   +-- AuthorizationRejectedError
    |
    +-- ExecutionError
    |   +-- RailRejectedError
    |   +-- FinalizationRecordingError
    |   +-- BatchIntegrityError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Crypto          | INTEGRITY_ERROR             | Auth tag did not verify (wrong key/tamper)
                | MALFORMED_INPUT             | Ciphertext not parseable as nonce:tag:body
                | MASTER_KEY_INVALID          | Master key missing or malformed (fatal)
----------------|-----------------------------|-----------------------------------------
Derivation      | SIGNATURE_REJECTED          | Signer refused or returned no signature
                | INVALID_ADDRESS             | Not a base58-encoded 32-byte public key
----------------|-----------------------------|-----------------------------------------
Precondition    | ORGANIZATION_NOT_FOUND      | Organization ID / admin doesn't exist
                | EMPLOYEE_NOT_FOUND          | Employee ID doesn't exist
                | PAYROLL_RUN_NOT_FOUND       | Run ID doesn't exist
                | INVITE_NOT_FOUND            | Invite code doesn't exist
                | EMPTY_BATCH                 | Run has zero payable payments
                | ALREADY_EXECUTING           | Run is mid-execution (not PENDING)
                | RUN_ALREADY_FINALIZED       | Run is in a terminal state
                | INVALID_RUN_TRANSITION      | Run state machine rejected transition
                | INVALID_PAYMENT_TRANSITION  | Payment state machine rejected transition
                | INVALID_EMPLOYEE_TRANSITION | Employee lifecycle rejected transition
                | UNSUPPORTED_ASSET           | Asset symbol/mint not in the closed set
                | UNKNOWN_FEE_TIER            | Fee tier not configured
                | VALIDATION_ERROR            | Field-level input validation failed
                | INVITE_EXPIRED              | Invite used after its expiry
                | INVITE_ALREADY_USED         | Invite already accepted
----------------|-----------------------------|-----------------------------------------
Conflict        | ORGANIZATION_ALREADY_EXISTS | Admin address already owns an org
                | STEALTH_ADDRESS_CONFLICT    | Address registered to another employee
                | STEALTH_ADDRESS_IMMUTABLE   | Attempt to change a set stealth address
----------------|-----------------------------|-----------------------------------------
Authorization   | AUTHORIZATION_REJECTED      | Payer declined or signature invalid
----------------|-----------------------------|-----------------------------------------
Execution       | RAIL_REJECTED               | Rail refused the whole batch
                | FINALIZATION_RECORDING      | Outcome write failed after retries
                | BATCH_INTEGRITY_ERROR       | No payment in the run could be decrypted
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only/frozen record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PRECONDITION ERRORS are raised before any external call.  The caller
   corrects input and retries; nothing needs cleaning up.

2. AUTHORIZATION ERRORS leave the run in PENDING.  Retrying is safe.

3. FINALIZATION ERRORS carry the rail outcomes.  Call ``finalize`` again
   with ``e.outcomes``; finalize is an idempotent upsert by payment id.

    except FinalizationRecordingError as e:
        orchestrator.finalize(e.run_id, e.outcomes, actor=actor)

4. INTEGRITY ERRORS on a single record are surfaced per record by batch
   readers (``EmployeeRoster.failures``) and never abort the batch.

===============================================================================
"""

from __future__ import annotations

from typing import Any


class PayrollKernelError(Exception):
    """
    Base exception for all payroll kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PAYROLL_KERNEL_ERROR"


# Crypto exceptions


class CryptoError(PayrollKernelError):
    """
    Base exception for envelope-encryption errors.

    ``entity_id`` and ``field`` are set when the failing ciphertext is a
    stored record field, so batch readers can report the failure per record.
    """

    code: str = "CRYPTO_ERROR"
    entity_id: Any = None
    field: str | None = None


def _located(message: str, entity_id: Any, field: str | None) -> str:
    if field is None:
        return message
    return f"{message} ({field} of {entity_id})"


class IntegrityError(CryptoError):
    """
    Authentication tag did not verify.

    Raised for a wrong key or a tampered ciphertext.  Never silently ignored.
    """

    code: str = "INTEGRITY_ERROR"

    def __init__(
        self,
        reason: str = "authentication tag mismatch",
        entity_id: Any = None,
        field: str | None = None,
    ):
        self.reason = reason
        self.entity_id = entity_id
        self.field = field
        super().__init__(
            _located(f"Ciphertext integrity check failed: {reason}", entity_id, field)
        )


class MalformedInputError(CryptoError):
    """Encoded ciphertext or key cannot be parsed."""

    code: str = "MALFORMED_INPUT"

    def __init__(self, reason: str, entity_id: Any = None, field: str | None = None):
        self.reason = reason
        self.entity_id = entity_id
        self.field = field
        super().__init__(_located(f"Malformed input: {reason}", entity_id, field))


class MasterKeyError(CryptoError):
    """
    Master key is missing or malformed.

    Fatal at startup: no request may be served without a verified key.
    """

    code: str = "MASTER_KEY_INVALID"

    def __init__(self, reason: str, source: str | None = None):
        self.reason = reason
        self.source = source
        where = f" ({source})" if source else ""
        super().__init__(f"Master key unavailable{where}: {reason}")


# Derivation exceptions


class DerivationError(PayrollKernelError):
    """Base exception for receiving-address derivation errors."""

    code: str = "DERIVATION_ERROR"


class SignatureRejectedError(DerivationError):
    """The signing capability refused or returned no signature."""

    code: str = "SIGNATURE_REJECTED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Signature rejected: {reason}")


class InvalidAddressError(DerivationError):
    """Value is not a base58-encoded 32-byte public key."""

    code: str = "INVALID_ADDRESS"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid address for {field}: {reason}")


# Precondition exceptions


class PreconditionError(PayrollKernelError):
    """Base exception for errors raised before any external call is made."""

    code: str = "PRECONDITION_ERROR"


class NotFoundError(PreconditionError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class OrganizationNotFoundError(NotFoundError):
    """Organization with given ID or admin address was not found."""

    code: str = "ORGANIZATION_NOT_FOUND"

    def __init__(self, organization_ref: str):
        self.organization_ref = organization_ref
        super().__init__(f"Organization not found: {organization_ref}")


class EmployeeNotFoundError(NotFoundError):
    """Employee with given ID was not found."""

    code: str = "EMPLOYEE_NOT_FOUND"

    def __init__(self, employee_id: str):
        self.employee_id = employee_id
        super().__init__(f"Employee not found: {employee_id}")


class PayrollRunNotFoundError(NotFoundError):
    """Payroll run with given ID was not found."""

    code: str = "PAYROLL_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Payroll run not found: {run_id}")


class InviteNotFoundError(NotFoundError):
    """No employee holds the given invite code."""

    code: str = "INVITE_NOT_FOUND"

    def __init__(self):
        super().__init__("Invite code not found")


class EmptyBatchError(PreconditionError):
    """Run has no payable payments."""

    code: str = "EMPTY_BATCH"

    def __init__(self, run_id: str, reason: str = "run has zero payments"):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Payroll run {run_id} cannot execute: {reason}")


class AlreadyExecutingError(PreconditionError):
    """
    Another execution attempt already moved the run past PENDING.

    Concurrent execution attempts are rejected, not queued.
    """

    code: str = "ALREADY_EXECUTING"

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(
            f"Payroll run {run_id} is already executing (status={status})"
        )


class RunAlreadyFinalizedError(PreconditionError):
    """Run is in a terminal state and cannot be executed again."""

    code: str = "RUN_ALREADY_FINALIZED"

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(
            f"Payroll run {run_id} is already finalized (status={status})"
        )


class InvalidRunTransitionError(PreconditionError):
    """The run state machine rejected a transition."""

    code: str = "INVALID_RUN_TRANSITION"

    def __init__(self, run_id: str, from_status: str, to_status: str):
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid run transition for {run_id}: {from_status} -> {to_status}"
        )


class InvalidPaymentTransitionError(PreconditionError):
    """The payment state machine rejected a transition."""

    code: str = "INVALID_PAYMENT_TRANSITION"

    def __init__(self, payment_id: str, from_status: str, to_status: str):
        self.payment_id = payment_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid payment transition for {payment_id}: "
            f"{from_status} -> {to_status}"
        )


class InvalidEmployeeTransitionError(PreconditionError):
    """The employee lifecycle rejected a status change."""

    code: str = "INVALID_EMPLOYEE_TRANSITION"

    def __init__(self, employee_id: str, from_status: str, to_status: str):
        self.employee_id = employee_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid employee transition for {employee_id}: "
            f"{from_status} -> {to_status}"
        )


class UnsupportedAssetError(PreconditionError):
    """Settlement asset is not in the supported set."""

    code: str = "UNSUPPORTED_ASSET"

    def __init__(self, asset: str, supported: tuple[str, ...] = ()):
        self.asset = asset
        self.supported = supported
        super().__init__(
            f"Unsupported settlement asset: {asset!r} "
            f"(supported: {', '.join(supported) or 'none'})"
        )


class UnknownFeeTierError(PreconditionError):
    """Fee tier is not configured."""

    code: str = "UNKNOWN_FEE_TIER"

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Unknown fee tier: {tier}")


class ValidationError(PreconditionError):
    """Field-level input validation failed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InviteExpiredError(PreconditionError):
    """Invite was accepted after its expiry."""

    code: str = "INVITE_EXPIRED"

    def __init__(self, employee_id: str, expired_at: Any):
        self.employee_id = employee_id
        self.expired_at = expired_at
        super().__init__(f"Invite for employee {employee_id} expired at {expired_at}")


class InviteAlreadyUsedError(PreconditionError):
    """Invite was already accepted."""

    code: str = "INVITE_ALREADY_USED"

    def __init__(self, employee_id: str):
        self.employee_id = employee_id
        super().__init__(f"Invite for employee {employee_id} was already used")


# Conflict exceptions


class ConflictError(PayrollKernelError):
    """Base exception for uniqueness and write-once conflicts."""

    code: str = "CONFLICT"


class OrganizationAlreadyExistsError(ConflictError):
    """Exactly one organization may exist per administrator address."""

    code: str = "ORGANIZATION_ALREADY_EXISTS"

    def __init__(self, admin_address: str, existing_id: str):
        self.admin_address = admin_address
        self.existing_id = existing_id
        super().__init__(
            f"Administrator {admin_address} already owns organization {existing_id}"
        )


class StealthAddressConflictError(ConflictError):
    """Receiving address is already registered to another employee."""

    code: str = "STEALTH_ADDRESS_CONFLICT"

    def __init__(self, stealth_address: str):
        self.stealth_address = stealth_address
        super().__init__(
            f"Receiving address {stealth_address} is already registered"
        )


class StealthAddressImmutableError(ConflictError):
    """A set receiving address cannot be replaced."""

    code: str = "STEALTH_ADDRESS_IMMUTABLE"

    def __init__(self, employee_id: str):
        self.employee_id = employee_id
        super().__init__(
            f"Receiving address for employee {employee_id} is already set"
        )


# Authorization exceptions


class AuthorizationError(PayrollKernelError):
    """Base exception for batch authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class AuthorizationRejectedError(AuthorizationError):
    """
    Payer declined, failed to sign, or produced an invalid signature.

    Treated as a no-op cancellation: the run is back in PENDING.
    """

    code: str = "AUTHORIZATION_REJECTED"

    def __init__(self, run_id: str, reason: str):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Authorization rejected for run {run_id}: {reason}")


# Execution exceptions


class ExecutionError(PayrollKernelError):
    """Base exception for errors after the batch was handed to the rail."""

    code: str = "EXECUTION_ERROR"


class RailRejectedError(ExecutionError):
    """
    Transfer rail refused the whole batch before processing any payment.

    Rail adapters raise this from the outcome stream.  The orchestrator
    records the reason as the run's rail error.
    """

    code: str = "RAIL_REJECTED"

    def __init__(self, reason: str, run_id: str | None = None):
        self.reason = reason
        self.run_id = run_id
        super().__init__(f"Transfer rail rejected batch: {reason}")


class FinalizationRecordingError(ExecutionError):
    """
    Outcome write failed after all retry attempts.

    Distinct from payment failure: ``outcomes`` carries what the rail
    reported so the caller can replay ``finalize``.
    """

    code: str = "FINALIZATION_RECORDING"

    def __init__(self, run_id: str, attempts: int, outcomes: tuple = ()):
        self.run_id = run_id
        self.attempts = attempts
        self.outcomes = outcomes
        super().__init__(
            f"Failed to record outcomes for run {run_id} after {attempts} attempt(s)"
        )


class BatchIntegrityError(ExecutionError):
    """Every payment in the run failed decryption."""

    code: str = "BATCH_INTEGRITY_ERROR"

    def __init__(self, run_id: str, failed_payment_ids: tuple[str, ...]):
        self.run_id = run_id
        self.failed_payment_ids = failed_payment_ids
        super().__init__(
            f"No payment in run {run_id} could be decrypted "
            f"({len(failed_payment_ids)} failure(s))"
        )


# Immutability exceptions


class ImmutabilityError(PayrollKernelError):
    """Base exception for append-only and write-once violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete a protected record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
