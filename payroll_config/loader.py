"""
Configuration Loader (``payroll_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen dataclasses
of ``payroll_config.schema``.  Runtime callers go through
``payroll_config.get_active_config()``, never through this module.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* Monetary values are parsed as ``Decimal`` from their string form, never
  through float.
* ``compute_checksum`` is a deterministic SHA-256 over the effective
  (post-override) configuration.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from payroll_config.schema import (
    DatabaseConfig,
    ExecutionConfig,
    FeeScheduleConfig,
    InviteConfig,
    PayrollConfig,
)
from payroll_kernel.domain.fees import FeeTier

ENV_DATABASE_URL = "PAYROLL_DATABASE_URL"
ENV_FEE_TIER = "PAYROLL_FEE_TIER"
ENV_LOG_LEVEL = "PAYROLL_LOG_LEVEL"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    """Parse a Decimal from YAML, going through ``str`` to avoid float error."""
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name}: cannot parse decimal from {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"{field_name}: must be finite")
    return result


def parse_fees(data: dict[str, Any]) -> FeeScheduleConfig:
    rates_data = data["rates"]
    if not isinstance(rates_data, Mapping) or not rates_data:
        raise ValueError("fees.rates must be a non-empty mapping of tier -> rate")
    rates = tuple(
        (FeeTier.resolve(tier).value, parse_decimal(rate, f"fees.rates.{tier}"))
        for tier, rate in sorted(rates_data.items())
    )
    return FeeScheduleConfig(
        rates=rates,
        minimum_fee=parse_decimal(data.get("minimum_fee", "0.50"), "fees.minimum_fee"),
        quantum=parse_decimal(data.get("quantum", "0.01"), "fees.quantum"),
        default_tier=FeeTier.resolve(data.get("default_tier", FeeTier.FREE.value)).value,
    )


def parse_execution(data: dict[str, Any]) -> ExecutionConfig:
    config = ExecutionConfig(
        stale_after_seconds=int(data.get("stale_after_seconds", 900)),
        finalize_attempts=int(data.get("finalize_attempts", 3)),
        finalize_backoff_seconds=float(data.get("finalize_backoff_seconds", 0.5)),
        authorization_message_version=int(data.get("authorization_message_version", 1)),
    )
    if config.stale_after_seconds <= 0:
        raise ValueError("execution.stale_after_seconds must be positive")
    if config.finalize_attempts < 1:
        raise ValueError("execution.finalize_attempts must be at least 1")
    if config.finalize_backoff_seconds < 0:
        raise ValueError("execution.finalize_backoff_seconds must be non-negative")
    return config


def parse_invites(data: dict[str, Any]) -> InviteConfig:
    ttl_days = int(data.get("ttl_days", 7))
    if ttl_days <= 0:
        raise ValueError("invites.ttl_days must be positive")
    return InviteConfig(ttl_days=ttl_days)


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        url=str(data["url"]),
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout=int(data.get("pool_timeout", 30)),
    )


def apply_environment_overrides(
    data: dict[str, Any], environ: Mapping[str, str],
) -> dict[str, Any]:
    """Return a copy of ``data`` with PAYROLL_* environment overrides applied."""
    result = {key: dict(value) if isinstance(value, Mapping) else value for key, value in data.items()}

    if environ.get(ENV_DATABASE_URL):
        result.setdefault("database", {})["url"] = environ[ENV_DATABASE_URL]
    if environ.get(ENV_FEE_TIER):
        result.setdefault("fees", {})["default_tier"] = environ[ENV_FEE_TIER]
    if environ.get(ENV_LOG_LEVEL):
        result["log_level"] = environ[ENV_LOG_LEVEL].upper()
    return result


def parse_config(data: dict[str, Any]) -> PayrollConfig:
    """
    Parse a complete ``PayrollConfig`` from an (override-applied) dict.

    Raises:
        KeyError: If ``config_id``, ``version``, ``fees`` or ``database`` is missing.
        ValueError: If a value is out of range.
    """
    config = PayrollConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        fees=parse_fees(data["fees"]),
        execution=parse_execution(data.get("execution") or {}),
        invites=parse_invites(data.get("invites") or {}),
        database=parse_database(data["database"]),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )
    return replace(config, checksum=compute_checksum(config))


def compute_checksum(config: PayrollConfig) -> str:
    """Deterministic SHA-256 of the effective configuration."""
    payload = {
        "config_id": config.config_id,
        "version": config.version,
        "fees": {
            "rates": [[tier, str(rate)] for tier, rate in config.fees.rates],
            "minimum_fee": str(config.fees.minimum_fee),
            "quantum": str(config.fees.quantum),
            "default_tier": config.fees.default_tier,
        },
        "execution": {
            "stale_after_seconds": config.execution.stale_after_seconds,
            "finalize_attempts": config.execution.finalize_attempts,
            "finalize_backoff_seconds": config.execution.finalize_backoff_seconds,
            "authorization_message_version": config.execution.authorization_message_version,
        },
        "invites": {"ttl_days": config.invites.ttl_days},
        "database": {
            "url": config.database.url,
            "echo": config.database.echo,
            "pool_size": config.database.pool_size,
            "max_overflow": config.database.max_overflow,
            "pool_timeout": config.database.pool_timeout,
        },
        "log_level": config.log_level,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
