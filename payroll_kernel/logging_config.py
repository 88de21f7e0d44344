"""
Structured JSON logging for the payroll kernel.

Every line is one JSON object: ``ts``, ``level``, ``logger``, ``message``,
the bound LogContext fields (run, organization, actor) and the ``extra``
fields of the call.

PII guard:
    Employee names, salaries and amounts, real wallet addresses, invite
    codes, plaintexts and key material must never reach a log sink.  The
    formatter enforces this at the last moment: any ``extra`` field or
    exception attribute whose name is in PII_FIELDS (or ends in one of
    SECRET_SUFFIXES) is replaced with ``"[redacted]"`` and listed under
    ``redacted_fields`` so the offending call site can be found.
"""

__all__ = [
    "PII_FIELDS",
    "REDACTED",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

REDACTED = "[redacted]"

PII_FIELDS: frozenset[str] = frozenset({
    "name",
    "employee_name",
    "salary",
    "amount",
    "net_amount",
    "wallet",
    "wallet_address",
    "owner_address",
    "invite_code",
    "plaintext",
    "key",
    "key_material",
    "master_key",
    "organization_key",
    "seed",
    "private_key",
})

SECRET_SUFFIXES: tuple[str, ...] = ("_plaintext", "_secret", "_seed", "_private_key")


def is_pii_field(key: str) -> bool:
    return key in PII_FIELDS or key.endswith(SECRET_SUFFIXES)


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Context-local fields stamped on every line: which run, whose, by whom.

    Backed by ContextVars, so threads (the concurrency tests, worker pools)
    and asyncio tasks each see their own values.
    """

    FIELDS: tuple[str, ...] = (
        "correlation_id",
        "actor_id",
        "organization_id",
        "run_id",
        "trace_id",
    )

    _vars: dict[str, ContextVar[str | None]] = {
        name: ContextVar(f"payroll_log_{name}", default=None) for name in FIELDS
    }

    @classmethod
    def _var(cls, name: str) -> ContextVar[str | None]:
        try:
            return cls._vars[name]
        except KeyError:
            raise TypeError(f"unknown log context field: {name}") from None

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set context fields.  None values are skipped."""
        for name, value in fields.items():
            if value is not None:
                cls._var(name).set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Non-None context fields, in FIELDS order."""
        values = ((name, cls._vars[name].get()) for name in cls.FIELDS)
        return {name: value for name, value in values if value is not None}

    @classmethod
    def clear(cls) -> None:
        for var in cls._vars.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the ``with`` block and restore the previous values on exit."""
        tokens = [
            (cls._var(name), cls._var(name).set(str(value)))
            for name, value in fields.items()
            if value is not None
        ]
        try:
            yield cls
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON line per record, with PII fields redacted."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())
        redacted: list[str] = []

        for key, val in vars(record).items():
            if key in _STDLIB_KEYS or key in payload:
                continue
            payload[key] = self._guard(key, val, key, redacted)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record, redacted))

        if redacted:
            payload["redacted_fields"] = sorted(redacted)
        return json.dumps(payload, default=_json_default)

    def _exception_fields(self, record: logging.LogRecord, redacted: list[str]) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # Structured attributes of PayrollKernelError subclasses
        for attr, val in vars(exc).items():
            if attr.startswith("_") or attr == "code":
                continue
            fields[f"exc_{attr}"] = self._guard(attr, val, f"exc_{attr}", redacted)
        fields["traceback"] = self.formatException(record.exc_info)
        return fields

    @staticmethod
    def _guard(name: str, value: Any, emitted_as: str, redacted: list[str]) -> Any:
        if is_pii_field(name) and value is not None:
            redacted.append(emitted_as)
            return REDACTED
        return value


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "payroll_kernel"


def get_logger(name: str) -> logging.Logger:
    """Logger under the payroll_kernel namespace (``payroll_kernel.<name>``)."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the payroll_kernel logger.  Idempotent.

    ``level`` accepts the names PayrollConfig.log_level carries ("DEBUG",
    "INFO", ...).
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Drop handlers and allow configure_logging() to run again.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
