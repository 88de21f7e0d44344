"""
FeeCalculator -- pure fee and net-amount computation.

Responsibility:
    Computes the rake taken on a payment or batch for an organization's fee
    tier.  Pure functions over ``Decimal``; no I/O, no clock.

Rules:
    fee = amount x tier rate
    If 0 < fee < minimum_fee, fee = minimum_fee (floor on the raw fee).
    Otherwise fee is quantized to ``quantum`` (ROUND_HALF_UP).
    net = max(0, amount - fee)

Guarantees:
    - Total: defined for every amount >= 0.
    - Monotonic: for a fixed tier, a larger amount never yields a smaller fee.
    - fee + net == amount whenever the floor does not apply.
    - fee >= minimum_fee whenever fee > 0.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from types import MappingProxyType

from payroll_kernel.exceptions import UnknownFeeTierError, ValidationError


class FeeTier(str, Enum):
    """Organization pricing tiers."""

    FREE = "FREE"
    PRO = "PRO"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"

    @classmethod
    def resolve(cls, value: "FeeTier | str") -> FeeTier:
        if isinstance(value, FeeTier):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise UnknownFeeTierError(str(value)) from None


@dataclass(frozen=True)
class FeeSchedule:
    """Rates per tier plus the absolute floor and rounding quantum."""

    rates: Mapping[FeeTier, Decimal]
    minimum_fee: Decimal = Decimal("0.50")
    quantum: Decimal = Decimal("0.01")

    def __post_init__(self) -> None:
        for tier, rate in self.rates.items():
            if not (Decimal(0) <= rate <= Decimal(1)):
                raise ValidationError(f"fee_rate[{tier.value}]", "must be within [0, 1]")
        if self.minimum_fee < 0:
            raise ValidationError("minimum_fee", "must be non-negative")
        if self.quantum <= 0:
            raise ValidationError("fee_quantum", "must be positive")
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    def rate_for(self, tier: FeeTier | str) -> Decimal:
        resolved = FeeTier.resolve(tier)
        rate = self.rates.get(resolved)
        if rate is None:
            raise UnknownFeeTierError(resolved.value)
        return rate


DEFAULT_FEE_SCHEDULE = FeeSchedule(
    rates={
        FeeTier.FREE: Decimal("0.005"),
        FeeTier.PRO: Decimal("0.003"),
        FeeTier.BUSINESS: Decimal("0.001"),
        FeeTier.ENTERPRISE: Decimal("0"),
    },
)


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    fee_rate_percent: Decimal
    tier: FeeTier
    minimum_applied: bool = field(default=False)


def compute_fee(
    amount: Decimal,
    tier: FeeTier | str,
    schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> FeeBreakdown:
    """Compute fee and net amount for ``amount`` under ``tier``.

    Raises:
        ValidationError: If amount is negative.
        UnknownFeeTierError: If the tier has no configured rate.
    """
    amount = Decimal(amount)
    if not amount.is_finite() or amount < 0:
        raise ValidationError("amount", "must be a finite, non-negative number")

    resolved = FeeTier.resolve(tier)
    rate = schedule.rate_for(resolved)
    raw_fee = amount * rate

    minimum_applied = Decimal(0) < raw_fee < schedule.minimum_fee
    if minimum_applied:
        fee = schedule.minimum_fee
    else:
        fee = raw_fee.quantize(schedule.quantum, rounding=ROUND_HALF_UP)

    net_amount = max(Decimal(0), amount - fee)

    return FeeBreakdown(
        amount=amount,
        fee=fee,
        net_amount=net_amount,
        fee_rate_percent=rate * 100,
        tier=resolved,
        minimum_applied=minimum_applied,
    )


def compute_batch_fee(
    amounts: Iterable[Decimal],
    tier: FeeTier | str,
    schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> FeeBreakdown:
    """Fee for a whole batch, charged once on the batch total."""
    total = sum((Decimal(a) for a in amounts), Decimal(0))
    return compute_fee(total, tier, schedule)
