"""
Hypothesis property tests for the pure kernel domain.

Boundaries fuzzed here:
- Fees: floor, rounding, monotonicity and batch totals across all tiers
- Asset units: base-unit conversion never rounds up
- Envelope encryption: arbitrary text, context binding
- Address derivation: determinism and separation of signatures
"""

from decimal import ROUND_HALF_UP, Decimal

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.domain.derivation import derive_keypair, is_valid_address
from payroll_kernel.domain.envelope import decrypt, encrypt, generate_key
from payroll_kernel.domain.fees import (
    DEFAULT_FEE_SCHEDULE,
    FeeTier,
    compute_batch_fee,
    compute_fee,
)
from payroll_kernel.exceptions import IntegrityError

amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("999999999.99"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
tiers = st.sampled_from(list(FeeTier))
signatures = st.binary(min_size=1, max_size=128)


class TestFeeProperties:
    @given(amount=amounts, tier=tiers)
    @settings(max_examples=300)
    def test_fee_is_floored_or_rounded_rate(self, amount, tier):
        result = compute_fee(amount, tier)
        rate = DEFAULT_FEE_SCHEDULE.rate_for(tier)

        assert result.fee >= 0
        if result.fee > 0:
            assert result.fee >= DEFAULT_FEE_SCHEDULE.minimum_fee
        if result.minimum_applied:
            assert result.fee == DEFAULT_FEE_SCHEDULE.minimum_fee
        else:
            assert result.fee == (amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        assert result.fee_rate_percent == rate * 100

    @given(amount=amounts, tier=tiers)
    def test_net_never_negative(self, amount, tier):
        result = compute_fee(amount, tier)
        assert result.net_amount >= 0
        if amount >= result.fee:
            assert result.fee + result.net_amount == amount
        else:
            assert result.net_amount == 0

    @given(a=amounts, b=amounts, tier=tiers)
    def test_monotonic(self, a, b, tier):
        low, high = sorted((a, b))
        assert compute_fee(low, tier).fee <= compute_fee(high, tier).fee

    @given(amount=amounts)
    def test_enterprise_is_free(self, amount):
        assert compute_fee(amount, FeeTier.ENTERPRISE).fee == 0

    @given(batch=st.lists(amounts, max_size=20), tier=tiers)
    def test_batch_fee_charged_once_on_total(self, batch, tier):
        total = sum(batch, Decimal(0))
        assert compute_batch_fee(batch, tier) == compute_fee(total, tier)


class TestAssetUnitProperties:
    @given(
        amount=st.decimals(
            min_value=Decimal("0"),
            max_value=Decimal("1000000"),
            places=12,
            allow_nan=False,
            allow_infinity=False,
        ),
        asset=st.sampled_from(list(SettlementAsset)),
    )
    def test_units_round_down_within_one_quantum(self, amount, asset):
        units = asset.to_smallest_units(amount)
        settled = asset.from_smallest_units(units)
        assert settled <= amount
        assert amount - settled < asset.quantum


class TestEnvelopeProperties:
    @given(plaintext=st.text(max_size=500), context=st.binary(max_size=64))
    @settings(max_examples=100)
    def test_round_trip(self, plaintext, context):
        key = generate_key()
        assert decrypt(encrypt(plaintext, key, context), key, context) == plaintext

    @given(plaintext=st.text(max_size=100), first=st.binary(max_size=32), second=st.binary(max_size=32))
    @settings(max_examples=100)
    def test_context_is_bound(self, plaintext, first, second):
        assume(first != second)
        key = generate_key()
        with pytest.raises(IntegrityError):
            decrypt(encrypt(plaintext, key, first), key, second)


class TestDerivationProperties:
    @given(signature=signatures)
    @settings(max_examples=100)
    def test_deterministic(self, signature):
        first = derive_keypair(signature)
        assert first == derive_keypair(signature)
        assert is_valid_address(first.address)

    @given(a=signatures, b=signatures)
    @settings(max_examples=100)
    def test_distinct_signatures_distinct_addresses(self, a, b):
        assume(a != b)
        assert derive_keypair(a).address != derive_keypair(b).address
