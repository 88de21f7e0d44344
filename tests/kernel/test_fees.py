"""
Fee calculator and settlement asset tests.
"""

from decimal import Decimal

import pytest

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.fees import (
    DEFAULT_FEE_SCHEDULE,
    FeeSchedule,
    FeeTier,
    compute_batch_fee,
    compute_fee,
)
from payroll_kernel.exceptions import (
    UnknownFeeTierError,
    UnsupportedAssetError,
    ValidationError,
)


class TestComputeFee:
    def test_free_tier_rate(self):
        result = compute_fee(Decimal("1000"), FeeTier.FREE)
        assert result.fee == Decimal("5.00")
        assert result.net_amount == Decimal("995.00")
        assert result.fee_rate_percent == Decimal("0.5")
        assert not result.minimum_applied

    def test_minimum_floor_applies_to_small_fees(self):
        result = compute_fee(Decimal("10"), FeeTier.FREE)
        assert result.fee == Decimal("0.50")
        assert result.minimum_applied
        assert result.net_amount == Decimal("9.50")

    def test_net_is_clamped_at_zero(self):
        result = compute_fee(Decimal("0.10"), FeeTier.FREE)
        assert result.fee == Decimal("0.50")
        assert result.net_amount == Decimal("0")

    def test_zero_amount_has_zero_fee(self):
        result = compute_fee(Decimal("0"), FeeTier.PRO)
        assert result.fee == 0
        assert result.net_amount == 0

    def test_enterprise_is_free(self):
        result = compute_fee(Decimal("250000"), FeeTier.ENTERPRISE)
        assert result.fee == 0
        assert result.net_amount == Decimal("250000")

    def test_rounding_half_up(self):
        # 0.3% of 1234.5 = 3.7035 -> 3.70 ; 0.3% of 1235 = 3.705 -> 3.71
        assert compute_fee(Decimal("1234.5"), FeeTier.PRO).fee == Decimal("3.70")
        assert compute_fee(Decimal("1235"), FeeTier.PRO).fee == Decimal("3.71")

    def test_tier_by_name(self):
        assert compute_fee(Decimal("1000"), "business").fee == Decimal("1.00")

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            compute_fee(Decimal("-1"), FeeTier.FREE)

    def test_nan_rejected(self):
        with pytest.raises(ValidationError):
            compute_fee(Decimal("NaN"), FeeTier.FREE)

    def test_unknown_tier(self):
        with pytest.raises(UnknownFeeTierError):
            compute_fee(Decimal("1"), "PLATINUM")

    def test_schedule_without_tier(self):
        schedule = FeeSchedule(rates={FeeTier.FREE: Decimal("0.01")})
        with pytest.raises(UnknownFeeTierError):
            compute_fee(Decimal("100"), FeeTier.PRO, schedule)

    def test_schedule_validates_rates(self):
        with pytest.raises(ValidationError):
            FeeSchedule(rates={FeeTier.FREE: Decimal("1.5")})


class TestBatchFee:
    def test_fee_on_total(self):
        result = compute_batch_fee([Decimal("100"), Decimal("200"), Decimal("300")], FeeTier.FREE)
        assert result.amount == Decimal("600")
        assert result.fee == Decimal("3.00")

    def test_empty_batch(self):
        assert compute_batch_fee([], FeeTier.FREE).fee == 0

    def test_default_schedule_rates(self):
        assert DEFAULT_FEE_SCHEDULE.rate_for(FeeTier.FREE) == Decimal("0.005")
        assert DEFAULT_FEE_SCHEDULE.rate_for(FeeTier.BUSINESS) == Decimal("0.001")


class TestSettlementAsset:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("USDC", SettlementAsset.USDC),
            ("usdt", SettlementAsset.USDT),
            (" sol ", SettlementAsset.SOL),
            ("4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU", SettlementAsset.USDC),
            (SettlementAsset.SOL, SettlementAsset.SOL),
        ],
    )
    def test_resolve(self, value, expected):
        assert SettlementAsset.resolve(value) is expected

    @pytest.mark.parametrize("value", ["BTC", "", "So1111", 42])
    def test_unsupported(self, value):
        with pytest.raises(UnsupportedAssetError):
            SettlementAsset.resolve(value)

    def test_precision(self):
        assert SettlementAsset.SOL.decimals == 9
        assert SettlementAsset.USDC.quantum == Decimal("0.000001")

    def test_smallest_units_round_down(self):
        assert SettlementAsset.USDC.to_smallest_units(Decimal("1.2345679")) == 1234567
        assert SettlementAsset.SOL.to_smallest_units(Decimal("2")) == 2_000_000_000

    def test_from_smallest_units(self):
        assert SettlementAsset.USDT.from_smallest_units(1_500_000) == Decimal("1.5")

    def test_negative_units_rejected(self):
        with pytest.raises(ValidationError):
            SettlementAsset.USDC.to_smallest_units(Decimal("-0.01"))
