"""
Payroll Kernel - confidential payroll core

Persistent, auditable payroll ledger with:
- Per-organization envelope encryption of employee PII
- Deterministic receiving-address derivation
- Explicit run and payment state machines
- Append-only audit trail
"""

__version__ = "0.1.0"
