"""
PayrollRuntime -- DI container for the payroll system.

Contract:
    Composes engine, session factory, key ring, clock and fee schedule from
    a PayrollConfig and an explicitly passed MasterKey.  Single place where
    the saga's dependencies are wired.

Architecture: payroll_execution (top-level).  The canonical entry point for
    processes that serve payroll requests.

Invariants enforced:
    - The master key is passed in, never read from a global; the runtime
      holds it only inside its KeyRing.
    - Clock injection: the ledger and the orchestrator receive the same Clock.
    - Immutability listeners are registered before any session is opened.
"""

from __future__ import annotations

from collections.abc import Generator, Mapping
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from payroll_config import PayrollConfig, get_active_config, load_master_key
from payroll_kernel.db.engine import build_engine, create_tables, session_scope
from payroll_kernel.db.immutability import register_immutability_listeners
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.envelope import KeyRing, MasterKey
from payroll_kernel.logging_config import configure_logging, get_logger
from payroll_kernel.services.audit_service import AuditService
from payroll_kernel.services.ledger_service import PayrollLedger

from payroll_execution.services.saga import PayrollOrchestrator

logger = get_logger("execution.runtime")


class PayrollRuntime:
    """DI container for the payroll system.

    Contract:
        - ``from_config()`` builds a fully wired runtime.
        - ``from_environment()`` also loads config and master key, failing
          fast when the key is missing or malformed.
        - ``ledger(session)`` returns a PayrollLedger on a caller's session.
        - ``orchestrator()`` returns a PayrollOrchestrator.

    Non-goals:
        - Does NOT manage session lifecycle for ``ledger()`` -- caller
          commits (or uses ``session_scope()``).
    """

    def __init__(
        self,
        config: PayrollConfig,
        engine: Engine,
        key_ring: KeyRing,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self._key_ring = key_ring
        self._clock = clock or SystemClock()
        self._fee_schedule = config.fees.to_fee_schedule()

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: PayrollConfig,
        master_key: MasterKey,
        clock: Clock | None = None,
        engine: Engine | None = None,
    ) -> PayrollRuntime:
        """Create a fully wired runtime.

        Args:
            config: Effective configuration from ``get_active_config()``.
            master_key: Verified master key from ``load_master_key()``.
            clock: Optional clock for deterministic testing.
            engine: Optional pre-built engine; otherwise built from
                ``config.database``.
        """
        register_immutability_listeners()
        db = config.database
        effective_engine = engine or build_engine(
            db.url,
            echo=db.echo,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
        )
        runtime = cls(config, effective_engine, KeyRing(master_key), clock)
        logger.info(
            "payroll_runtime_ready",
            extra={
                "config_id": config.config_id,
                "checksum": config.checksum,
                "dialect": effective_engine.dialect.name,
            },
        )
        return runtime

    @classmethod
    def from_environment(
        cls,
        environ: Mapping[str, str] | None = None,
        config_path: Path | None = None,
        clock: Clock | None = None,
    ) -> PayrollRuntime:
        """Process startup: logging, config, master key, engine.

        Raises:
            MasterKeyError: PAYROLL_MASTER_KEY is absent or malformed.  No
                engine is created in that case.
        """
        config = get_active_config(config_path=config_path, environ=environ)
        configure_logging(level=config.log_level)
        master_key = load_master_key(environ)
        return cls.from_config(config, master_key, clock=clock)

    # -------------------------------------------------------------------------
    # Services
    # -------------------------------------------------------------------------

    def ledger(self, session: Session) -> PayrollLedger:
        return PayrollLedger(
            session,
            self._key_ring,
            clock=self._clock,
            audit_service=AuditService(session, self._clock),
            default_fee_tier=self._config.fees.default_fee_tier,
            invite_ttl=self._config.invites.ttl,
        )

    def orchestrator(self) -> PayrollOrchestrator:
        execution = self._config.execution
        return PayrollOrchestrator(
            self._session_factory,
            self._key_ring,
            clock=self._clock,
            fee_schedule=self._fee_schedule,
            stale_after_seconds=execution.stale_after_seconds,
            finalize_attempts=execution.finalize_attempts,
            finalize_backoff_seconds=execution.finalize_backoff_seconds,
            authorization_version=execution.authorization_message_version,
        )

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        with session_scope(self._session_factory) as session:
            yield session

    def create_tables(self) -> None:
        create_tables(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> PayrollConfig:
        return self._config

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @property
    def clock(self) -> Clock:
        return self._clock
