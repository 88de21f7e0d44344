"""
PayrollConfig schema.

Frozen dataclasses describing the runtime configuration.  YAML is parsed
into these types by the loader; nothing else constructs them at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from payroll_kernel.domain.fees import FeeSchedule, FeeTier

# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeScheduleConfig:
    """Per-tier rates, absolute floor and rounding quantum."""

    rates: tuple[tuple[str, Decimal], ...]
    minimum_fee: Decimal = Decimal("0.50")
    quantum: Decimal = Decimal("0.01")
    default_tier: str = FeeTier.FREE.value

    def to_fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            rates={FeeTier.resolve(tier): rate for tier, rate in self.rates},
            minimum_fee=self.minimum_fee,
            quantum=self.quantum,
        )

    @property
    def default_fee_tier(self) -> FeeTier:
        return FeeTier.resolve(self.default_tier)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionConfig:
    """Saga tuning."""

    stale_after_seconds: int = 900  # Intermediate state older than this is stuck
    finalize_attempts: int = 3
    finalize_backoff_seconds: float = 0.5
    authorization_message_version: int = 1

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)


@dataclass(frozen=True)
class InviteConfig:
    ttl_days: int = 7

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.ttl_days)


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///payroll.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PayrollConfig:
    """The effective configuration returned by ``get_active_config()``."""

    config_id: str
    version: int
    fees: FeeScheduleConfig
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    invites: InviteConfig = field(default_factory=InviteConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    log_level: str = "INFO"
    checksum: str = ""
