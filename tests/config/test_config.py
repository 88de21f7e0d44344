"""
Configuration loading tests.

Covers the default YAML set, PAYROLL_* environment overrides, checksum
determinism, validation errors and master-key loading.
"""

from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from payroll_config import get_active_config, load_master_key
from payroll_config.loader import (
    apply_environment_overrides,
    compute_checksum,
    load_yaml_file,
    parse_config,
    parse_decimal,
)
from payroll_kernel.domain.fees import FeeTier, compute_fee
from payroll_kernel.exceptions import MasterKeyError, UnknownFeeTierError
from tests.conftest import TEST_MASTER_KEY_HEX

DEFAULT_SET = Path(__file__).resolve().parents[2] / "payroll_config" / "sets" / "default.yaml"


@pytest.fixture
def base_data():
    return load_yaml_file(DEFAULT_SET)


def write_config(tmp_path, data) -> Path:
    path = tmp_path / "payroll.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


# =============================================================================
# Default set
# =============================================================================


class TestDefaultConfig:
    def test_loads_default_set(self):
        config = get_active_config(environ={})
        assert config.config_id == "payroll-default"
        assert config.version == 1
        assert config.fees.default_fee_tier == FeeTier.FREE
        assert dict(config.fees.rates)["PRO"] == Decimal("0.003")
        assert config.execution.stale_after_seconds == 900
        assert config.invites.ttl.days == 7
        assert config.log_level == "INFO"
        assert len(config.checksum) == 64

    def test_fee_schedule_matches_built_in_rates(self):
        schedule = get_active_config(environ={}).fees.to_fee_schedule()
        assert compute_fee(Decimal("1000"), FeeTier.FREE, schedule).fee == Decimal("5.00")
        assert compute_fee(Decimal("10"), FeeTier.FREE, schedule).minimum_applied

    def test_emits_trace_log(self, captured_logs):
        config = get_active_config(environ={})
        [record] = [r for r in captured_logs() if r["message"] == "payroll_config_loaded"]
        assert record["checksum"] == config.checksum
        assert record["config_id"] == "payroll-default"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(config_path=tmp_path / "absent.yaml", environ={})


# =============================================================================
# Environment overrides
# =============================================================================


class TestEnvironmentOverrides:
    def test_overrides_apply(self):
        config = get_active_config(environ={
            "PAYROLL_DATABASE_URL": "postgresql://payroll@db/payroll",
            "PAYROLL_FEE_TIER": "business",
            "PAYROLL_LOG_LEVEL": "debug",
        })
        assert config.database.url == "postgresql://payroll@db/payroll"
        assert config.fees.default_fee_tier == FeeTier.BUSINESS
        assert config.log_level == "DEBUG"

    def test_empty_values_are_ignored(self, base_data):
        result = apply_environment_overrides(base_data, {"PAYROLL_DATABASE_URL": ""})
        assert result["database"]["url"] == base_data["database"]["url"]

    def test_input_is_not_mutated(self, base_data):
        apply_environment_overrides(base_data, {"PAYROLL_DATABASE_URL": "sqlite:///other.db"})
        assert base_data["database"]["url"] == "sqlite:///payroll.db"

    def test_unknown_tier_override(self):
        with pytest.raises(UnknownFeeTierError):
            get_active_config(environ={"PAYROLL_FEE_TIER": "GOLD"})


# =============================================================================
# Checksum
# =============================================================================


class TestChecksum:
    def test_deterministic(self):
        assert get_active_config(environ={}).checksum == get_active_config(environ={}).checksum

    def test_changes_with_effective_values(self):
        default = get_active_config(environ={})
        overridden = get_active_config(environ={"PAYROLL_FEE_TIER": "PRO"})
        assert default.checksum != overridden.checksum

    def test_independent_of_key_order(self, base_data):
        reordered = dict(reversed(list(base_data.items())))
        reordered["fees"] = dict(base_data["fees"])
        reordered["fees"]["rates"] = dict(reversed(list(base_data["fees"]["rates"].items())))
        assert parse_config(reordered).checksum == parse_config(base_data).checksum

    def test_checksum_recomputes(self, base_data):
        config = parse_config(base_data)
        assert compute_checksum(config) == config.checksum


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    def test_missing_required_key(self, tmp_path, base_data):
        del base_data["database"]
        with pytest.raises(KeyError):
            get_active_config(config_path=write_config(tmp_path, base_data), environ={})

    @pytest.mark.parametrize(
        "section,key,value",
        [
            ("execution", "stale_after_seconds", 0),
            ("execution", "finalize_attempts", 0),
            ("execution", "finalize_backoff_seconds", -1),
            ("invites", "ttl_days", 0),
        ],
    )
    def test_out_of_range(self, base_data, section, key, value):
        base_data[section][key] = value
        with pytest.raises(ValueError):
            parse_config(base_data)

    def test_empty_rates(self, base_data):
        base_data["fees"]["rates"] = {}
        with pytest.raises(ValueError):
            parse_config(base_data)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_bad_decimal(self, value):
        with pytest.raises(ValueError):
            parse_decimal(value, "fees.minimum_fee")

    def test_decimal_from_yaml_float_is_exact(self):
        assert parse_decimal(0.1, "x") == Decimal("0.1")


# =============================================================================
# Master key
# =============================================================================


class TestMasterKey:
    def test_loads_from_environment(self, master_key):
        assert load_master_key({"PAYROLL_MASTER_KEY": TEST_MASTER_KEY_HEX}) == master_key

    def test_missing(self):
        with pytest.raises(MasterKeyError) as exc_info:
            load_master_key({})
        assert exc_info.value.source == "PAYROLL_MASTER_KEY"

    @pytest.mark.parametrize("value", ["abc", "zz" * 32, "ab" * 33])
    def test_malformed(self, value):
        with pytest.raises(MasterKeyError):
            load_master_key({"PAYROLL_MASTER_KEY": value})

    def test_key_material_never_logged(self, captured_logs):
        load_master_key({"PAYROLL_MASTER_KEY": TEST_MASTER_KEY_HEX})
        assert all(TEST_MASTER_KEY_HEX not in str(r) for r in captured_logs())
