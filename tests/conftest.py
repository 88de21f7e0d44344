"""
Pytest fixtures for the payroll test suite.

Provides:
- Structured logging capture
- A SQLite database file per test (BEGIN IMMEDIATE, like production writers)
- Deterministic clock, master key and key ring
- Fakes for the two external collaborators: an Ed25519 signer and a
  scripted transfer rail
- Factories for organizations, employees and runs

Sessions opened by tests must be short-lived (``session_scope``) whenever the
orchestrator is also writing: SQLite serializes writers, so a test holding
an open write transaction would block the saga until the busy timeout.
"""

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from sqlalchemy.orm import Session, sessionmaker

from payroll_execution.domain.types import (
    BatchAuthorization,
    PaymentInstruction,
    ProgressEvent,
    TransferOutcome,
)
from payroll_execution.services.saga import PayrollOrchestrator
from payroll_kernel.db.engine import build_engine, create_tables, session_scope
from payroll_kernel.db.immutability import register_immutability_listeners
from payroll_kernel.domain.clock import DeterministicClock
from payroll_kernel.domain.derivation import encode_address
from payroll_kernel.domain.dtos import AuditRecord, PaymentSnapshot
from payroll_kernel.domain.envelope import KeyRing, MasterKey
from payroll_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from payroll_kernel.models.audit_entry import AuditAction
from payroll_kernel.services.audit_service import AuditService
from payroll_kernel.services.ledger_service import PayrollLedger

TEST_ACTOR = "test-admin"
TEST_MASTER_KEY_HEX = "a1" * 32


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    register_immutability_listeners()
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture payroll_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.prepare(run_id)
            logs = captured_logs()
            assert any(r["message"] == "run_prepared" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("payroll_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Keys and clock
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def master_key() -> MasterKey:
    return MasterKey.from_hex(TEST_MASTER_KEY_HEX)


@pytest.fixture
def key_ring(master_key) -> KeyRing:
    return KeyRing(master_key)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database file with all tables."""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'payroll.db'}", sqlite_busy_timeout=10.0)
    create_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """One session for single-threaded ledger tests.  Rolled back at teardown."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def ledger(session, key_ring, clock) -> PayrollLedger:
    return PayrollLedger(session, key_ring, clock=clock)


@pytest.fixture
def orchestrator(session_factory, key_ring, clock) -> PayrollOrchestrator:
    return PayrollOrchestrator(
        session_factory,
        key_ring,
        clock=clock,
        stale_after_seconds=900,
        finalize_attempts=3,
        finalize_backoff_seconds=0.0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def ledger_scope(session_factory, key_ring, clock):
    """Short committed ledger transactions: ``with ledger_scope() as ledger: ...``."""
    from contextlib import contextmanager

    @contextmanager
    def _scope():
        with session_scope(session_factory) as s:
            yield PayrollLedger(s, key_ring, clock=clock)

    return _scope


# =============================================================================
# External collaborator fakes
# =============================================================================


class Ed25519Signer:
    """Holds a real Ed25519 private key; exposes only ``sign`` and ``address``."""

    def __init__(self, private_key: Ed25519PrivateKey | None = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self.messages: list[bytes] = []

    @property
    def address(self) -> str:
        return encode_address(
            self._private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        )

    def sign(self, message: bytes) -> bytes:
        self.messages.append(message)
        return self._private_key.sign(message)


class RejectingSigner:
    """The paying party declines to sign."""

    def __init__(self, error: Exception | None = None):
        self.error = error or PermissionError("user rejected the request")
        self.calls = 0

    def sign(self, message: bytes) -> bytes:
        self.calls += 1
        raise self.error


class ScriptedRail:
    """Transfer rail fake driven by a per-position script.

    ``script[position]`` is ``True`` (settle), a string (fail with that
    reason) or ``None`` (never report).  Positions missing from the script
    settle.  ``raise_after`` makes the stream raise after that many outcomes.
    """

    def __init__(
        self,
        script: dict[int, bool | str | None] | None = None,
        raise_after: int | None = None,
        error: Exception | None = None,
        extra_events: Iterable = (),
    ):
        self.script = script or {}
        self.raise_after = raise_after
        self.error = error or ConnectionError("rail unavailable")
        self.extra_events = tuple(extra_events)
        self.calls: list[tuple[tuple[PaymentInstruction, ...], BatchAuthorization]] = []

    def submit_batch(
        self,
        payments: Sequence[PaymentInstruction],
        authorization: BatchAuthorization,
    ):
        self.calls.append((tuple(payments), authorization))
        return self._stream(tuple(payments))

    def _stream(self, payments):
        yield from self.extra_events
        total = len(payments)
        emitted = 0
        for position, payment in enumerate(payments):
            if self.raise_after is not None and emitted >= self.raise_after:
                raise self.error
            yield ProgressEvent(completed=position, total=total, current_recipient=payment.recipient)
            action = self.script.get(position, True)
            if action is None:
                continue
            if action is True:
                yield TransferOutcome(
                    payment_ref=payment.payment_id,
                    success=True,
                    settlement_ref=f"sig-{payment.payment_id.hex[:16]}",
                )
            else:
                yield TransferOutcome(payment_ref=payment.payment_id, success=False, error=action)
            emitted += 1
        yield ProgressEvent(completed=total, total=total)


@pytest.fixture
def admin_signer() -> Ed25519Signer:
    return Ed25519Signer()


@pytest.fixture
def make_rail() -> Callable[..., ScriptedRail]:
    return ScriptedRail


@pytest.fixture
def make_signer() -> Callable[..., Ed25519Signer]:
    return Ed25519Signer


@pytest.fixture
def rejecting_signer() -> RejectingSigner:
    return RejectingSigner()


def new_address() -> str:
    """A fresh, valid base58 Ed25519 public key."""
    return Ed25519Signer().address


@pytest.fixture
def address_factory() -> Callable[[], str]:
    return new_address


# =============================================================================
# Domain factories
# =============================================================================


@pytest.fixture
def organization(ledger_scope, admin_signer):
    with ledger_scope() as ledger:
        return ledger.create_organization("Acme Payroll Co.", admin_signer.address)


@pytest.fixture
def create_run(ledger_scope, organization):
    """Create ACTIVE employees with the given salaries and a PENDING run over them.

    Returns ``(run_id, [payment_id, ...])`` with payment ids in position order.
    """

    def _create(
        salaries: Sequence[Decimal | str | int],
        asset: str = "USDC",
    ) -> tuple[UUID, list[UUID]]:
        with ledger_scope() as ledger:
            employee_ids = [
                ledger.add_employee(
                    organization.organization_id,
                    f"Employee {index}",
                    salary,
                    TEST_ACTOR,
                    stealth_address=new_address(),
                ).employee_id
                for index, salary in enumerate(salaries)
            ]
            creation = ledger.create_run(
                organization.organization_id, asset, TEST_ACTOR, employee_ids=employee_ids,
            )
            payments = ledger.list_payments(creation.run.run_id)
        return creation.run.run_id, [p.payment_id for p in payments]

    return _create


@pytest.fixture
def run_payments(ledger_scope):
    """Read a run's payments in a short transaction."""

    def _payments(run_id: UUID) -> tuple[PaymentSnapshot, ...]:
        with ledger_scope() as ledger:
            return ledger.list_payments(run_id)

    return _payments


@pytest.fixture
def run_audit(session_factory, clock):
    """Audit entries recorded against one run, oldest first."""

    def _entries(run_id: UUID, action: AuditAction | None = None) -> tuple[AuditRecord, ...]:
        with session_scope(session_factory) as s:
            return AuditService(s, clock).list_entries(resource_id=run_id, action=action)

    return _entries
