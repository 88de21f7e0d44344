"""
payroll_config -- single public entrypoint for runtime configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``, and the only way to obtain the master key
    through ``load_master_key()``.  No other component reads configuration
    files or PAYROLL_* environment variables directly.

Architecture position:
    Configuration.  Sits above ``payroll_kernel`` and below
    ``payroll_execution``.  The kernel MUST NEVER import from
    ``payroll_config``; values are threaded into kernel constructors.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Deterministic checksum: the same effective configuration always yields
      the same checksum.
    - Fail fast: a missing or malformed master key raises MasterKeyError
      before any request is served.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``payroll_config_loaded`` log entry with config_id, version and
    checksum, tying every run to the configuration that governed its fees.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from payroll_config.loader import (
    apply_environment_overrides,
    load_yaml_file,
    parse_config,
)
from payroll_config.schema import (
    DatabaseConfig,
    ExecutionConfig,
    FeeScheduleConfig,
    InviteConfig,
    PayrollConfig,
)
from payroll_kernel.domain.envelope import MasterKey

_logger = logging.getLogger("payroll_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

ENV_MASTER_KEY = "PAYROLL_MASTER_KEY"

__all__ = [
    "DatabaseConfig",
    "ExecutionConfig",
    "FeeScheduleConfig",
    "InviteConfig",
    "PayrollConfig",
    "get_active_config",
    "load_master_key",
]


def get_active_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> PayrollConfig:
    """The ONLY public configuration entrypoint.

    Guarantees:
        - PAYROLL_DATABASE_URL, PAYROLL_FEE_TIER and PAYROLL_LOG_LEVEL
          override the file values.
        - A ``payroll_config_loaded`` log entry is emitted on every
          successful call.

    Non-goals:
        - Does NOT cache; callers hold the returned config for the life of
          the process.

    Args:
        config_path: Override path to the YAML file.  Defaults to
            payroll_config/sets/default.yaml.
        environ: Environment mapping.  Defaults to ``os.environ``.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        KeyError / ValueError: If the configuration is invalid.
        UnknownFeeTierError: If a tier name is not recognized.
    """
    path = config_path or _DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    data = apply_environment_overrides(load_yaml_file(path), env)
    config = parse_config(data)

    _logger.info(
        "payroll_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "default_fee_tier": config.fees.default_tier,
            "tier_count": len(config.fees.rates),
        },
    )
    return config


def load_master_key(environ: Mapping[str, str] | None = None) -> MasterKey:
    """Read the 256-bit master key from PAYROLL_MASTER_KEY (64 hex chars).

    The returned key is passed explicitly to the runtime; it is never kept
    in module state here.

    Raises:
        MasterKeyError: If the variable is absent or malformed.
    """
    env = os.environ if environ is None else environ
    key = MasterKey.from_hex(env.get(ENV_MASTER_KEY), source=ENV_MASTER_KEY)
    _logger.info("master_key_loaded", extra={"source": ENV_MASTER_KEY})
    return key
