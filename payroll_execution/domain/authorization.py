"""
Batch authorization message.

The paying party signs one canonical, versioned message per batch.  It
binds the run, the asset, the payment count, the total in base units, the
fee and a digest of the ordered instructions, plus a nonce and issue time
so that no two authorizations are byte-identical.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from payroll_kernel.domain.assets import SettlementAsset
from payroll_kernel.utils.hashing import hash_payload

from payroll_execution.domain.types import PaymentInstruction

AUTHORIZATION_VERSION = 1


def instruction_digest(instructions: Sequence[PaymentInstruction]) -> str:
    """SHA-256 over (payment id, recipient, base units) in batch order."""
    return hash_payload([
        [str(i.payment_id), i.recipient, i.amount_units]
        for i in instructions
    ])


def build_batch_authorization_message(
    run_id: UUID,
    asset: SettlementAsset,
    payment_count: int,
    total_units: int,
    fee: str,
    digest: str,
    nonce: str,
    issued_at: datetime,
    version: int = AUTHORIZATION_VERSION,
) -> bytes:
    return (
        "StealthPay Payroll Batch Authorization\n"
        f"Version: {version}\n"
        f"Run: {str(run_id).lower()}\n"
        f"Asset: {asset.mint}\n"
        f"Payments: {payment_count}\n"
        f"Total: {total_units}\n"
        f"Fee: {fee}\n"
        f"Instructions: {digest}\n"
        f"Nonce: {nonce}\n"
        f"Issued: {issued_at.isoformat()}"
    ).encode("utf-8")
