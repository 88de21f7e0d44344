"""
PayrollLedger -- sole owner and mutator of persisted payroll state.

Responsibility:
    Organizations, employees (with encrypted PII), payroll runs and their
    payments.  Encrypts on write and decrypts on read through a KeyRing that
    holds the master key; every run and payment status change goes through
    the transition operations here so that the state-machine tables in
    models/payroll_run.py are the only authority.

Architecture position:
    Kernel > Services -- imperative shell.  Shares the caller's session and
    does NOT commit; the caller (PayrollOrchestrator or an API layer) owns
    transaction boundaries.

Invariants enforced:
    - Sum of a run's payment amounts equals its total at creation.
    - Run transitions are compare-and-swap UPDATEs guarded on the expected
      status; a lost race surfaces as InvalidRunTransitionError (or
      AlreadyExecutingError via ``claim_run``), never as a silent overwrite.
    - Payment outcome writes are idempotent upserts by payment id: repeating
      an outcome changes nothing, and COMPLETED is never downgraded.
    - Ciphertexts are bound to their row and field through associated data,
      so a ciphertext copied onto another row fails to decrypt.
    - A decryption failure in a multi-record read is reported per record
      and never aborts the read.

Failure modes:
    - NotFoundError subclasses for unknown ids / invite codes.
    - ValidationError / InvalidAddressError for malformed input.
    - OrganizationAlreadyExistsError, StealthAddressConflictError,
      StealthAddressImmutableError for uniqueness and write-once violations.
    - IntegrityError / MalformedInputError from single-record decrypts.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.clock import Clock, SystemClock, as_utc
from payroll_kernel.domain.derivation import decode_address
from payroll_kernel.domain.dtos import (
    AuditRecord,
    DecryptedPayment,
    EmployeeRecord,
    EmployeeRoster,
    EmployeeStatus,
    FailureCode,
    InviteDetails,
    OrganizationInfo,
    OutcomeWrite,
    PaymentSnapshot,
    PaymentStatus,
    RecordFailure,
    RunCreation,
    RunPayables,
    RunSnapshot,
    RunStatus,
)
from payroll_kernel.domain.envelope import KeyRing, SymmetricKey, decrypt, encrypt
from payroll_kernel.domain.fees import FeeTier
from payroll_kernel.exceptions import (
    AlreadyExecutingError,
    CryptoError,
    EmployeeNotFoundError,
    EmptyBatchError,
    InvalidEmployeeTransitionError,
    InvalidPaymentTransitionError,
    InvalidRunTransitionError,
    InviteAlreadyUsedError,
    InviteExpiredError,
    IntegrityError,
    InviteNotFoundError,
    MalformedInputError,
    OrganizationAlreadyExistsError,
    OrganizationNotFoundError,
    PayrollRunNotFoundError,
    RunAlreadyFinalizedError,
    StealthAddressConflictError,
    StealthAddressImmutableError,
    ValidationError,
)
from payroll_kernel.logging_config import get_logger
from payroll_kernel.models.audit_entry import AuditAction
from payroll_kernel.models.employee import Employee
from payroll_kernel.models.organization import Organization
from payroll_kernel.models.payroll_run import (
    Payment,
    PayrollRun,
    can_transition_payment,
    can_transition_run,
)
from payroll_kernel.services.audit_service import AuditService
from payroll_kernel.utils.hashing import keyed_digest

logger = get_logger("services.ledger")

MAX_SALARY = Decimal("1000000000")
_ORG_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\s\-_.,&']+$")


def _field_context(entity: str, entity_id: UUID, field: str) -> bytes:
    return f"{entity}:{entity_id}:{field}".encode("utf-8")


def _validate_name(value: str, field: str, pattern: re.Pattern | None = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "is required")
    text = value.strip()
    if len(text) > 100:
        raise ValidationError(field, "must be at most 100 characters")
    if pattern is not None and not pattern.match(text):
        raise ValidationError(field, "contains invalid characters")
    return text


def _validate_salary(value: Decimal | str | int) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("salary", "must be a number") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("salary", "must be positive")
    if amount > MAX_SALARY:
        raise ValidationError("salary", f"must not exceed {MAX_SALARY}")
    if amount.as_tuple().exponent < -9:
        raise ValidationError("salary", "must have at most 9 decimal places")
    return amount


def _parse_amount(text: str) -> Decimal:
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise MalformedInputError("decrypted amount is not a decimal") from None
    if not amount.is_finite():
        raise MalformedInputError("decrypted amount is not finite")
    return amount


class PayrollLedger:
    """Persistent record of organizations, employees, runs and payments.

    Contract:
        - Organization: ``create_organization``, ``get_organization``,
          ``get_organization_by_admin``.
        - Employee: ``add_employee``, ``get_employee``, ``list_employees``,
          ``update_employee``, ``set_stealth_address``, ``get_invite``,
          ``accept_invite``.
        - Run: ``create_run``, ``create_retry_run``, ``get_run``,
          ``list_runs``, ``list_payments``, ``load_payables``.
        - Transitions: ``claim_run``, ``transition_run``,
          ``record_payment_outcome``, ``lock_run``, ``classify_run``.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        key_ring: KeyRing,
        clock: Clock | None = None,
        audit_service: AuditService | None = None,
        default_fee_tier: FeeTier = FeeTier.FREE,
        invite_ttl: timedelta = timedelta(days=7),
    ):
        self._session = session
        self._key_ring = key_ring
        self._clock = clock or SystemClock()
        self._audit = audit_service or AuditService(session, self._clock)
        self._default_fee_tier = default_fee_tier
        self._invite_ttl = invite_ttl

    @property
    def audit(self) -> AuditService:
        return self._audit

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def create_organization(
        self,
        name: str,
        admin_address: str,
        fee_tier: FeeTier | str | None = None,
    ) -> OrganizationInfo:
        """Create the single organization owned by ``admin_address``.

        Generates a fresh organization key and stores it wrapped under the
        master key.

        Raises:
            ValidationError: Invalid name.
            InvalidAddressError: Admin address is not a 32-byte base58 key.
            OrganizationAlreadyExistsError: Admin already owns one.
        """
        clean_name = _validate_name(name, "organization_name", _ORG_NAME_PATTERN)
        decode_address(admin_address, "admin_address")
        tier = FeeTier.resolve(fee_tier) if fee_tier is not None else self._default_fee_tier

        existing = self._session.execute(
            select(Organization).where(Organization.admin_address == admin_address)
        ).scalar_one_or_none()
        if existing is not None:
            raise OrganizationAlreadyExistsError(admin_address, str(existing.id))

        _, wrapped = self._key_ring.new_organization_key()
        org = Organization(
            id=uuid4(),
            name=clean_name,
            admin_address=admin_address,
            wrapped_key=wrapped,
            fee_tier=tier.value,
            created_by=admin_address,
        )
        org.created_at = self._clock.now()
        self._session.add(org)
        self._session.flush()

        self._audit.record_organization_created(org.id, admin_address, tier.value)
        logger.info(
            "organization_created",
            extra={"organization_id": str(org.id), "fee_tier": tier.value},
        )
        return org.to_dto()

    def get_organization(self, organization_id: UUID) -> OrganizationInfo:
        return self._load_organization(organization_id).to_dto()

    def get_organization_by_admin(self, admin_address: str) -> OrganizationInfo:
        org = self._session.execute(
            select(Organization).where(Organization.admin_address == admin_address)
        ).scalar_one_or_none()
        if org is None:
            raise OrganizationNotFoundError(admin_address)
        return org.to_dto()

    def _load_organization(self, organization_id: UUID) -> Organization:
        org = self._session.get(Organization, organization_id)
        if org is None:
            raise OrganizationNotFoundError(str(organization_id))
        return org

    def _org_key(self, org: Organization) -> SymmetricKey:
        return self._key_ring.organization_key(org.wrapped_key)

    # -------------------------------------------------------------------------
    # Employees
    # -------------------------------------------------------------------------

    def add_employee(
        self,
        organization_id: UUID,
        name: str,
        salary: Decimal | str | int,
        actor: str,
        wallet_address: str | None = None,
        stealth_address: str | None = None,
    ) -> EmployeeRecord:
        """Add an employee with encrypted name, salary and optional wallet.

        With ``stealth_address`` the employee is ACTIVE immediately; without
        it the employee is PENDING_INVITE and gets a one-time invite code.
        """
        org = self._load_organization(organization_id)
        clean_name = _validate_name(name, "employee_name")
        amount = _validate_salary(salary)
        if wallet_address is not None:
            decode_address(wallet_address, "wallet_address")
        if stealth_address is not None:
            decode_address(stealth_address, "stealth_address")
            self._ensure_stealth_address_free(stealth_address, None)

        key = self._org_key(org)
        employee_id = uuid4()
        now = self._clock.now()

        employee = Employee(
            id=employee_id,
            organization_id=org.id,
            name_encrypted=encrypt(clean_name, key, _field_context("employee", employee_id, "name")),
            salary_encrypted=encrypt(str(amount), key, _field_context("employee", employee_id, "salary")),
            wallet_encrypted=(
                encrypt(wallet_address, key, _field_context("employee", employee_id, "wallet"))
                if wallet_address is not None else None
            ),
            created_by=actor,
        )
        employee.created_at = now
        if stealth_address is not None:
            employee.stealth_address = stealth_address
            employee.status = EmployeeStatus.ACTIVE.value
            employee.registered_at = now
        else:
            employee.status = EmployeeStatus.PENDING_INVITE.value
            employee.invite_code = secrets.token_urlsafe(24)
            employee.invite_expires_at = now + self._invite_ttl

        self._session.add(employee)
        self._session.flush()

        self._audit.record(
            AuditAction.EMPLOYEE_CREATED,
            actor,
            organization_id=org.id,
            resource_type="employee",
            resource_id=employee.id,
            details={"status": employee.status},
        )
        logger.info(
            "employee_created",
            extra={"employee_id": str(employee.id), "status": employee.status},
        )
        return self._decrypt_employee(employee, key)

    def get_employee(self, employee_id: UUID) -> EmployeeRecord:
        """Decrypted single record.  Decryption errors propagate."""
        employee = self._load_employee(employee_id)
        return self._decrypt_employee(employee, self._org_key(employee.organization))

    def list_employees(
        self,
        organization_id: UUID,
        statuses: Iterable[EmployeeStatus] | None = None,
    ) -> EmployeeRoster:
        """Decrypt every employee of an organization, reporting failures per record."""
        org = self._load_organization(organization_id)
        key = self._org_key(org)

        query = select(Employee).where(Employee.organization_id == org.id)
        if statuses is not None:
            query = query.where(Employee.status.in_([s.value for s in statuses]))
        query = query.order_by(Employee.created_at, Employee.id)

        records: list[EmployeeRecord] = []
        failures: list[RecordFailure] = []
        for employee in self._session.scalars(query):
            try:
                records.append(self._decrypt_employee(employee, key))
            except CryptoError as exc:
                failures.append(_record_failure(exc))

        if failures:
            logger.warning(
                "employee_decrypt_failures",
                extra={
                    "organization_id": str(org.id),
                    "failed": len(failures),
                    "decrypted": len(records),
                },
            )
        return EmployeeRoster(records=tuple(records), failures=tuple(failures))

    def update_employee(
        self,
        employee_id: UUID,
        actor: str,
        name: str | None = None,
        salary: Decimal | str | int | None = None,
        status: EmployeeStatus | str | None = None,
    ) -> EmployeeRecord:
        """Re-encrypt changed fields and apply a lifecycle transition.

        Existing runs are unaffected: their amounts were snapshotted.
        """
        employee = self._load_employee(employee_id)
        key = self._org_key(employee.organization)
        changed: list[str] = []

        if name is not None:
            employee.name_encrypted = encrypt(
                _validate_name(name, "employee_name"), key,
                _field_context("employee", employee.id, "name"),
            )
            changed.append("name")
        if salary is not None:
            employee.salary_encrypted = encrypt(
                str(_validate_salary(salary)), key,
                _field_context("employee", employee.id, "salary"),
            )
            changed.append("salary")
        if status is not None:
            target = EmployeeStatus(status)
            if target != employee.status_enum:
                if target == EmployeeStatus.ACTIVE and not employee.stealth_address:
                    raise InvalidEmployeeTransitionError(
                        str(employee.id), employee.status, target.value,
                    )
                if not employee.can_transition_to(target):
                    raise InvalidEmployeeTransitionError(
                        str(employee.id), employee.status, target.value,
                    )
                employee.status = target.value
                changed.append("status")

        if changed:
            employee.updated_by = actor
            self._session.flush()
            self._audit.record(
                AuditAction.EMPLOYEE_UPDATED,
                actor,
                organization_id=employee.organization_id,
                resource_type="employee",
                resource_id=employee.id,
                details={"fields": changed, "status": employee.status},
            )
        return self._decrypt_employee(employee, key)

    def set_stealth_address(
        self, employee_id: UUID, stealth_address: str, actor: str,
    ) -> EmployeeRecord:
        """Register the receiving address (write-once) and activate the employee."""
        employee = self._load_employee(employee_id)
        self._register_stealth_address(employee, stealth_address, actor)
        return self._decrypt_employee(employee, self._org_key(employee.organization))

    def get_invite(self, invite_code: str) -> InviteDetails:
        """What the invitee sees: organization, own name and salary."""
        employee = self._load_by_invite(invite_code)
        org = employee.organization
        record = self._decrypt_employee(employee, self._org_key(org))
        return InviteDetails(
            employee_id=employee.id,
            organization_id=org.id,
            organization_name=org.name,
            employee_name=record.name,
            salary=record.salary,
            expires_at=as_utc(employee.invite_expires_at),
            already_registered=employee.stealth_address is not None,
        )

    def accept_invite(
        self,
        invite_code: str,
        stealth_address: str,
        owner_address: str,
    ) -> EmployeeRecord:
        """Employee registers the address they derived for this organization.

        Stores only a keyed digest of ``owner_address``.

        Raises:
            InviteNotFoundError, InviteAlreadyUsedError, InviteExpiredError,
            InvalidAddressError, StealthAddressConflictError.
        """
        employee = self._load_by_invite(invite_code)
        if employee.stealth_address is not None:
            raise InviteAlreadyUsedError(str(employee.id))
        expires_at = as_utc(employee.invite_expires_at)
        if expires_at is not None and self._clock.now_utc() > expires_at:
            raise InviteExpiredError(str(employee.id), expires_at)
        decode_address(owner_address, "owner_address")

        key = self._org_key(employee.organization)
        employee.owner_wallet_hash = keyed_digest(key.material, owner_address)
        self._register_stealth_address(employee, stealth_address, f"employee:{employee.id}")
        return self._decrypt_employee(employee, key)

    def _register_stealth_address(
        self, employee: Employee, stealth_address: str, actor: str,
    ) -> None:
        decode_address(stealth_address, "stealth_address")
        if employee.stealth_address is not None:
            if employee.stealth_address == stealth_address:
                return
            raise StealthAddressImmutableError(str(employee.id))
        self._ensure_stealth_address_free(stealth_address, employee.id)

        employee.stealth_address = stealth_address
        employee.registered_at = self._clock.now()
        if employee.status_enum == EmployeeStatus.PENDING_INVITE:
            employee.status = EmployeeStatus.ACTIVE.value
        employee.updated_by = actor
        self._session.flush()

        self._audit.record(
            AuditAction.STEALTH_ADDRESS_REGISTERED,
            actor,
            organization_id=employee.organization_id,
            resource_type="employee",
            resource_id=employee.id,
            details={"status": employee.status},
        )
        logger.info(
            "stealth_address_registered",
            extra={"employee_id": str(employee.id)},
        )

    def _ensure_stealth_address_free(self, stealth_address: str, employee_id: UUID | None) -> None:
        holder = self._session.execute(
            select(Employee.id).where(Employee.stealth_address == stealth_address)
        ).scalar_one_or_none()
        if holder is not None and holder != employee_id:
            raise StealthAddressConflictError(stealth_address)

    def _load_employee(self, employee_id: UUID) -> Employee:
        employee = self._session.get(Employee, employee_id)
        if employee is None:
            raise EmployeeNotFoundError(str(employee_id))
        return employee

    def _load_by_invite(self, invite_code: str) -> Employee:
        if not invite_code:
            raise InviteNotFoundError()
        employee = self._session.execute(
            select(Employee).where(Employee.invite_code == invite_code)
        ).scalar_one_or_none()
        if employee is None:
            raise InviteNotFoundError()
        return employee

    def _decrypt_employee(self, employee: Employee, key: SymmetricKey) -> EmployeeRecord:
        name = _decrypt_field(employee.id, "name", employee.name_encrypted, key, "employee")
        salary = _parse_field_amount(
            employee.id, "salary",
            _decrypt_field(employee.id, "salary", employee.salary_encrypted, key, "employee"),
        )
        wallet = None
        if employee.wallet_encrypted is not None:
            wallet = _decrypt_field(employee.id, "wallet", employee.wallet_encrypted, key, "employee")
        return EmployeeRecord(
            employee_id=employee.id,
            organization_id=employee.organization_id,
            name=name,
            salary=salary,
            status=employee.status_enum,
            stealth_address=employee.stealth_address,
            wallet_address=wallet,
            invite_code=employee.invite_code if employee.stealth_address is None else None,
            invite_expires_at=as_utc(employee.invite_expires_at),
            registered_at=as_utc(employee.registered_at),
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def create_run(
        self,
        organization_id: UUID,
        asset: SettlementAsset | str,
        actor: str,
        employee_ids: Iterable[UUID] | None = None,
        scheduled_at: datetime | None = None,
    ) -> RunCreation:
        """Create a PENDING run snapshotting eligible employees' current salary.

        Eligible means ACTIVE with a registered receiving address.  A run with
        zero payments can be created; it is rejected at prepare.

        Raises:
            OrganizationNotFoundError, UnsupportedAssetError,
            EmployeeNotFoundError (id not in this organization),
            ValidationError (selected employee not payable).
        """
        org = self._load_organization(organization_id)
        settlement_asset = SettlementAsset.resolve(asset)
        key = self._org_key(org)

        query = select(Employee).where(Employee.organization_id == org.id)
        selected: list[Employee]
        if employee_ids is not None:
            wanted = list(dict.fromkeys(employee_ids))
            found = {
                e.id: e for e in self._session.scalars(query.where(Employee.id.in_(wanted)))
            }
            selected = []
            for employee_id in wanted:
                employee = found.get(employee_id)
                if employee is None:
                    raise EmployeeNotFoundError(str(employee_id))
                if not employee.is_payable:
                    raise ValidationError(
                        "employee_ids",
                        f"employee {employee_id} is not payable (status={employee.status})",
                    )
                selected.append(employee)
        else:
            selected = list(self._session.scalars(
                query.where(
                    Employee.status == EmployeeStatus.ACTIVE.value,
                    Employee.stealth_address.is_not(None),
                ).order_by(Employee.created_at, Employee.id)
            ))

        run_id = uuid4()
        now = self._clock.now()
        payments: list[Payment] = []
        skipped: list[RecordFailure] = []
        total = Decimal(0)

        for employee in selected:
            try:
                salary = _parse_field_amount(
                    employee.id, "salary",
                    _decrypt_field(employee.id, "salary", employee.salary_encrypted, key, "employee"),
                )
            except CryptoError as exc:
                skipped.append(_record_failure(exc))
                continue
            amount = salary.quantize(settlement_asset.quantum, rounding=ROUND_DOWN)
            payment_id = uuid4()
            payment = Payment(
                id=payment_id,
                run_id=run_id,
                employee_id=employee.id,
                position=len(payments),
                amount_encrypted=encrypt(
                    str(amount), key, _field_context("payment", payment_id, "amount"),
                ),
                stealth_address=employee.stealth_address,
                status=PaymentStatus.PENDING.value,
                created_by=actor,
            )
            payment.created_at = now
            payments.append(payment)
            total += amount

        run = self._insert_run(run_id, org.id, settlement_asset, total, payments, actor, scheduled_at, None)

        self._audit.record_run_transition(
            AuditAction.RUN_CREATED, run.id, org.id, actor,
            details={
                "payment_count": len(payments),
                "asset": settlement_asset.value,
                "skipped": len(skipped),
            },
        )
        if skipped:
            logger.warning(
                "run_created_with_skipped_employees",
                extra={"run_id": str(run.id), "skipped": len(skipped)},
            )
        logger.info(
            "run_created",
            extra={
                "run_id": str(run.id),
                "payment_count": len(payments),
                "asset": settlement_asset.value,
            },
        )
        return RunCreation(run=run.to_dto(), skipped=tuple(skipped))

    def create_retry_run(
        self,
        source_run_id: UUID,
        actor: str,
        include_unconfirmed: bool = False,
    ) -> RunCreation:
        """New PENDING run re-paying the FAILED payments of a finished run.

        UNCONFIRMED failures may have settled on the rail; they are left out
        unless ``include_unconfirmed`` is set after reconciliation.

        Raises:
            PayrollRunNotFoundError, InvalidRunTransitionError (source not
            terminal), EmptyBatchError (nothing retryable).
        """
        source = self._load_run(source_run_id)
        if source.status_enum not in (RunStatus.FAILED, RunStatus.PARTIALLY_COMPLETED):
            raise InvalidRunTransitionError(
                str(source.id), source.status, "retry",
            )
        org = self._load_organization(source.organization_id)
        key = self._org_key(org)
        asset = SettlementAsset(source.asset)

        excluded_codes = {FailureCode.INTEGRITY_ERROR.value}
        if not include_unconfirmed:
            excluded_codes.add(FailureCode.UNCONFIRMED.value)

        run_id = uuid4()
        now = self._clock.now()
        payments: list[Payment] = []
        skipped: list[RecordFailure] = []
        total = Decimal(0)

        for original in source.payments:
            if original.status != PaymentStatus.FAILED.value:
                continue
            if original.failure_code in excluded_codes:
                continue
            try:
                amount = _parse_field_amount(
                    original.id, "amount",
                    _decrypt_field(original.id, "amount", original.amount_encrypted, key, "payment"),
                )
            except CryptoError as exc:
                skipped.append(_record_failure(exc))
                continue
            payment_id = uuid4()
            payment = Payment(
                id=payment_id,
                run_id=run_id,
                employee_id=original.employee_id,
                position=len(payments),
                amount_encrypted=encrypt(
                    str(amount), key, _field_context("payment", payment_id, "amount"),
                ),
                stealth_address=original.stealth_address,
                status=PaymentStatus.PENDING.value,
                created_by=actor,
            )
            payment.created_at = now
            payments.append(payment)
            total += amount

        if not payments:
            raise EmptyBatchError(str(source.id), "no retryable failed payments")

        run = self._insert_run(run_id, org.id, asset, total, payments, actor, None, source.id)
        self._audit.record_run_transition(
            AuditAction.RUN_CREATED, run.id, org.id, actor,
            details={
                "payment_count": len(payments),
                "asset": asset.value,
                "source_run_id": str(source.id),
            },
        )
        logger.info(
            "retry_run_created",
            extra={
                "run_id": str(run.id),
                "source_run_id": str(source.id),
                "payment_count": len(payments),
            },
        )
        return RunCreation(run=run.to_dto(), skipped=tuple(skipped))

    def _insert_run(
        self,
        run_id: UUID,
        organization_id: UUID,
        asset: SettlementAsset,
        total: Decimal,
        payments: list[Payment],
        actor: str,
        scheduled_at: datetime | None,
        source_run_id: UUID | None,
    ) -> PayrollRun:
        now = self._clock.now()
        run = PayrollRun(
            id=run_id,
            organization_id=organization_id,
            status=RunStatus.PENDING.value,
            total_amount=total,
            asset=asset.value,
            scheduled_at=scheduled_at,
            status_changed_at=now,
            attempt_count=0,
            source_run_id=source_run_id,
            created_by=actor,
        )
        run.created_at = now
        self._session.add(run)
        self._session.flush()
        self._session.add_all(payments)
        self._session.flush()
        self._session.refresh(run)
        return run

    def get_run(self, run_id: UUID) -> RunSnapshot:
        return self._load_run(run_id).to_dto()

    def list_runs(self, organization_id: UUID, limit: int = 50) -> tuple[RunSnapshot, ...]:
        self._load_organization(organization_id)
        runs = self._session.scalars(
            select(PayrollRun)
            .where(PayrollRun.organization_id == organization_id)
            .order_by(PayrollRun.created_at.desc(), PayrollRun.id)
            .limit(limit)
        )
        return tuple(r.to_dto() for r in runs)

    def list_runs_in_status(self, statuses: Iterable[RunStatus]) -> tuple[RunSnapshot, ...]:
        runs = self._session.scalars(
            select(PayrollRun)
            .where(PayrollRun.status.in_([s.value for s in statuses]))
            .order_by(PayrollRun.status_changed_at, PayrollRun.id)
        )
        return tuple(r.to_dto() for r in runs)

    def list_audit_entries(
        self, organization_id: UUID, limit: int = 100,
    ) -> tuple[AuditRecord, ...]:
        self._load_organization(organization_id)
        return self._audit.list_entries(organization_id=organization_id, limit=limit)

    def list_payments(self, run_id: UUID) -> tuple[PaymentSnapshot, ...]:
        run = self._load_run(run_id)
        return tuple(p.to_dto() for p in run.payments)

    def list_payments_for_address(self, stealth_address: str) -> tuple[PaymentSnapshot, ...]:
        """Payments addressed to one receiving address (an employee's own view)."""
        payments = self._session.scalars(
            select(Payment)
            .where(Payment.stealth_address == stealth_address)
            .order_by(Payment.created_at.desc(), Payment.position)
        )
        return tuple(p.to_dto() for p in payments)

    def load_payables(self, run_id: UUID) -> RunPayables:
        """Decrypt the amounts of a run's PENDING payments, and nothing else.

        Names, salaries and wallets are not touched.  Payments whose amount
        fails to decrypt are reported in ``failures``.
        """
        run = self._load_run(run_id)
        org = self._load_organization(run.organization_id)
        key = self._org_key(org)

        decrypted: list[DecryptedPayment] = []
        failures: list[RecordFailure] = []
        for payment in run.payments:
            if payment.status != PaymentStatus.PENDING.value:
                continue
            try:
                amount = _parse_field_amount(
                    payment.id, "amount",
                    _decrypt_field(payment.id, "amount", payment.amount_encrypted, key, "payment"),
                )
            except CryptoError as exc:
                failures.append(_record_failure(exc))
                continue
            decrypted.append(DecryptedPayment(
                payment_id=payment.id,
                employee_id=payment.employee_id,
                position=payment.position,
                stealth_address=payment.stealth_address,
                amount=amount,
            ))

        return RunPayables(
            run_id=run.id,
            organization_id=org.id,
            admin_address=org.admin_address,
            fee_tier=FeeTier(org.fee_tier),
            asset=SettlementAsset(run.asset),
            total_amount=run.total_amount,
            payments=tuple(decrypted),
            failures=tuple(failures),
        )

    def _load_run(self, run_id: UUID, for_update: bool = False) -> PayrollRun:
        query = select(PayrollRun).where(PayrollRun.id == run_id)
        if for_update:
            query = query.with_for_update()
        run = self._session.execute(
            query.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if run is None:
            raise PayrollRunNotFoundError(str(run_id))
        return run

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def claim_run(self, run_id: UUID, actor: str) -> RunSnapshot:
        """Start an execution attempt: PENDING -> PREPARING, atomically.

        This is the at-most-one-execution-per-run guard.

        Raises:
            PayrollRunNotFoundError: Unknown run.
            AlreadyExecutingError: Run is in an intermediate state.
            RunAlreadyFinalizedError: Run is terminal.
        """
        try:
            self.transition_run(run_id, RunStatus.PENDING, RunStatus.PREPARING, actor)
        except InvalidRunTransitionError as exc:
            current = RunStatus(exc.from_status)
            if current.is_terminal:
                raise RunAlreadyFinalizedError(str(run_id), current.value) from None
            raise AlreadyExecutingError(str(run_id), current.value) from None
        return self.get_run(run_id)

    def transition_run(
        self,
        run_id: UUID,
        expected: RunStatus | Iterable[RunStatus],
        target: RunStatus,
        actor: str,
        error_summary: str | None = None,
    ) -> RunStatus:
        """Compare-and-swap the run status from ``expected`` to ``target``.

        Returns the status the run held before the swap.

        Raises:
            InvalidRunTransitionError: Not allowed by VALID_RUN_TRANSITIONS,
                or the run's current status is not ``expected``.
            PayrollRunNotFoundError: Unknown run.
        """
        sources = (expected,) if isinstance(expected, RunStatus) else tuple(expected)
        for source in sources:
            if not can_transition_run(source, target):
                raise InvalidRunTransitionError(str(run_id), source.value, target.value)

        now = self._clock.now()
        values: dict = {
            "status": target.value,
            "status_changed_at": now,
            "updated_by": actor,
        }
        if target == RunStatus.PREPARING:
            values["attempt_count"] = PayrollRun.attempt_count + 1
        if target == RunStatus.SUBMITTING:
            values["executed_at"] = now
        if error_summary is not None:
            values["error_summary"] = error_summary

        current = self._current_status(run_id)
        if current not in sources:
            raise InvalidRunTransitionError(str(run_id), current.value, target.value)

        result = self._session.execute(
            update(PayrollRun)
            .where(
                PayrollRun.id == run_id,
                PayrollRun.status == current.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            latest = self._current_status(run_id)
            raise InvalidRunTransitionError(str(run_id), latest.value, target.value)

        logger.info(
            "run_status_changed",
            extra={
                "run_id": str(run_id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return current

    def _current_status(self, run_id: UUID) -> RunStatus:
        status = self._session.execute(
            select(PayrollRun.status).where(PayrollRun.id == run_id)
        ).scalar_one_or_none()
        if status is None:
            raise PayrollRunNotFoundError(str(run_id))
        return RunStatus(status)

    def lock_run(self, run_id: UUID) -> RunSnapshot:
        """Lock the run row (FOR UPDATE) for the rest of the transaction."""
        return self._load_run(run_id, for_update=True).to_dto()

    def record_payment_outcome(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        actor: str,
        settlement_ref: str | None = None,
        failure_code: FailureCode | str | None = None,
        failure_reason: str | None = None,
    ) -> OutcomeWrite:
        """Idempotent upsert of one payment's outcome.

        - Same outcome again: no change.
        - COMPLETED is never downgraded, and its settlement reference is
          never replaced.
        - FAILED may be upgraded to COMPLETED (reconciliation).
        """
        payment = self._session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise InvalidPaymentTransitionError(str(payment_id), "missing", status.value)
        current = payment.status_enum

        if current == status:
            return OutcomeWrite(payment.id, current, changed=False)

        if current == PaymentStatus.COMPLETED:
            logger.warning(
                "payment_downgrade_ignored",
                extra={
                    "payment_id": str(payment.id),
                    "current_status": current.value,
                    "reported_status": status.value,
                },
            )
            return OutcomeWrite(payment.id, current, changed=False)

        if not can_transition_payment(current, status):
            raise InvalidPaymentTransitionError(str(payment.id), current.value, status.value)
        if status == PaymentStatus.COMPLETED and not settlement_ref:
            raise ValidationError("settlement_ref", "required for a completed payment")

        payment.status = status.value
        payment.updated_by = actor
        if status == PaymentStatus.COMPLETED:
            payment.settlement_ref = settlement_ref
            payment.settled_at = self._clock.now()
            payment.failure_code = None
            payment.failure_reason = None
        else:
            code = FailureCode(failure_code) if failure_code is not None else FailureCode.RAIL_FAILURE
            payment.failure_code = code.value
            payment.failure_reason = (failure_reason or code.value)[:2000]
        self._session.flush()

        logger.info(
            "payment_outcome_recorded",
            extra={
                "payment_id": str(payment.id),
                "run_id": str(payment.run_id),
                "from_status": current.value,
                "to_status": status.value,
                "failure_code": payment.failure_code,
            },
        )
        return OutcomeWrite(payment.id, status, changed=True)

    def classify_run(self, run_id: UUID) -> RunStatus:
        """Terminal status implied by the run's payment statuses.

        COMPLETED if every payment completed, FAILED if none did, otherwise
        PARTIALLY_COMPLETED.  PENDING payments count as not completed.
        """
        statuses = self._session.scalars(
            select(Payment.status).where(Payment.run_id == run_id)
        ).all()
        completed = sum(1 for s in statuses if s == PaymentStatus.COMPLETED.value)
        if statuses and completed == len(statuses):
            return RunStatus.COMPLETED
        if completed == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIALLY_COMPLETED

    def pending_payment_ids(self, run_id: UUID) -> tuple[UUID, ...]:
        return tuple(self._session.scalars(
            select(Payment.id)
            .where(Payment.run_id == run_id, Payment.status == PaymentStatus.PENDING.value)
            .order_by(Payment.position)
        ))


def _decrypt_field(
    entity_id: UUID, field: str, ciphertext: str, key: SymmetricKey, entity: str,
) -> str:
    try:
        return decrypt(ciphertext, key, _field_context(entity, entity_id, field))
    except IntegrityError as exc:
        raise IntegrityError(exc.reason, entity_id=entity_id, field=field) from exc
    except MalformedInputError as exc:
        raise MalformedInputError(exc.reason, entity_id=entity_id, field=field) from exc


def _parse_field_amount(entity_id: UUID, field: str, text: str) -> Decimal:
    try:
        return _parse_amount(text)
    except MalformedInputError as exc:
        raise MalformedInputError(exc.reason, entity_id=entity_id, field=field) from exc


def _record_failure(exc: CryptoError) -> RecordFailure:
    return RecordFailure(
        entity_id=exc.entity_id,
        field=exc.field,
        error_code=exc.code,
        message=str(exc),
    )
