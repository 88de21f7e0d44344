"""
Settlement assets -- closed enumeration of what a payroll run can pay in.

Every branch on "which asset is this" goes through ``SettlementAsset``.
Identifiers arriving at a boundary (API input, config, stored rows) are
resolved once with ``SettlementAsset.resolve()``; inside the core only the
enum travels.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from enum import Enum

from payroll_kernel.exceptions import UnsupportedAssetError, ValidationError


class SettlementAsset(str, Enum):
    """Supported settlement assets with precision and canonical mint."""

    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"

    @property
    def decimals(self) -> int:
        return _ASSET_DECIMALS[self]

    @property
    def mint(self) -> str:
        return _ASSET_MINTS[self]

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.000001') for USDC."""
        return Decimal(1).scaleb(-self.decimals)

    @classmethod
    def resolve(cls, value: "SettlementAsset | str") -> SettlementAsset:
        """Resolve a symbol (case-insensitive) or canonical mint to an asset.

        Raises:
            UnsupportedAssetError: If the value names no supported asset.
        """
        if isinstance(value, SettlementAsset):
            return value
        if isinstance(value, str):
            candidate = value.strip()
            by_symbol = cls.__members__.get(candidate.upper())
            if by_symbol is not None:
                return by_symbol
            for asset, mint in _ASSET_MINTS.items():
                if candidate == mint:
                    return asset
        raise UnsupportedAssetError(str(value), tuple(m.value for m in cls))

    def to_smallest_units(self, amount: Decimal) -> int:
        """Convert a display amount to integer base units (rounding down)."""
        if amount < 0:
            raise ValidationError("amount", "must be non-negative")
        return int(amount.scaleb(self.decimals).to_integral_value(rounding=ROUND_DOWN))

    def from_smallest_units(self, units: int) -> Decimal:
        return Decimal(units).scaleb(-self.decimals)


_ASSET_DECIMALS: dict[SettlementAsset, int] = {
    SettlementAsset.SOL: 9,
    SettlementAsset.USDC: 6,
    SettlementAsset.USDT: 6,
}

_ASSET_MINTS: dict[SettlementAsset, str] = {
    SettlementAsset.SOL: "So11111111111111111111111111111111111111112",
    SettlementAsset.USDC: "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
    SettlementAsset.USDT: "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
}
