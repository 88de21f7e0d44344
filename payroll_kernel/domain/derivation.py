"""
AddressDerivation -- deterministic receiving addresses from a signature.

Responsibility:
    Lets an employee derive a receiving address bound to one organization by
    signing a canonical message with their real identity key.  The employer
    never sees the identity key or the derived private key.

Scheme (version 1):
    message  = canonical text binding owner public key, organization id and
               scheme version (see ``build_authorization_message``)
    seed     = SHA-256(signature)
    keypair  = Ed25519 keypair expanded from the 32-byte seed
    address  = base58(public key)

Guarantees:
    - Determinism: identical signature bytes give an identical keypair.
    - Isolation: the organization id is part of the signed message, so two
      organizations get unrelated signatures and unrelated addresses.
    - Unforgeability: producing the seed requires a signature from the
      owner's private key.  ``sign_fn`` is supplied by the owner.
    - No persistence: ``DerivedKeypair`` holds the private key in memory
      only and offers no export of seed or private bytes.

Failure modes:
    - SignatureRejectedError: signer raised or returned empty output.
    - InvalidAddressError: owner key / address is not a base58 32-byte key.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from uuid import UUID

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from payroll_kernel.exceptions import InvalidAddressError, SignatureRejectedError
from payroll_kernel.logging_config import get_logger

logger = get_logger("domain.derivation")

DERIVATION_VERSION = 1
PUBLIC_KEY_BYTES = 32

SignFn = Callable[[bytes], bytes]


def decode_address(address: str, field: str = "address") -> bytes:
    """Decode a base58 address to its 32 public-key bytes."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddressError(field, "empty")
    try:
        raw = base58.b58decode(address.strip())
    except ValueError:
        raise InvalidAddressError(field, "not base58") from None
    if len(raw) != PUBLIC_KEY_BYTES:
        raise InvalidAddressError(field, f"decodes to {len(raw)} bytes, expected 32")
    return raw


def encode_address(public_key: bytes) -> str:
    return base58.b58encode(public_key).decode("ascii")


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
    except InvalidAddressError:
        return False
    return True


def build_authorization_message(owner_public_key: str, organization_id: UUID | str) -> bytes:
    """Canonical, versioned message the owner signs to derive an address."""
    owner = encode_address(decode_address(owner_public_key, "owner_public_key"))
    return (
        "StealthPay Receiving Address Derivation\n"
        f"Owner: {owner}\n"
        f"Organization: {str(organization_id).lower()}\n"
        f"Version: {DERIVATION_VERSION}"
    ).encode("utf-8")


class DerivedKeypair:
    """In-memory Ed25519 keypair.  Cannot be serialized back to a seed."""

    __slots__ = ("_private_key", "_public_key")

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw,
        )

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def address(self) -> str:
        return encode_address(self._public_key)

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DerivedKeypair):
            return NotImplemented
        return self._public_key == other._public_key

    def __hash__(self) -> int:
        return hash(self._public_key)

    def __repr__(self) -> str:
        return f"DerivedKeypair(address={self.address!r})"

    def __reduce__(self):
        raise TypeError("DerivedKeypair cannot be pickled")


def derive_keypair(signature: bytes) -> DerivedKeypair:
    """Hash the signature to a 32-byte seed and expand it into a keypair."""
    if not signature:
        raise SignatureRejectedError("empty signature")
    seed = hashlib.sha256(bytes(signature)).digest()
    return DerivedKeypair(Ed25519PrivateKey.from_private_bytes(seed))


def derive_address(
    owner_public_key: str,
    organization_id: UUID | str,
    sign_fn: SignFn,
) -> str:
    """Build message, have the owner sign it, return the public address only."""
    message = build_authorization_message(owner_public_key, organization_id)
    try:
        signature = sign_fn(message)
    except Exception as exc:
        logger.warning(
            "derivation_signature_failed",
            extra={"organization_id": str(organization_id), "error_type": type(exc).__name__},
        )
        raise SignatureRejectedError(str(exc) or type(exc).__name__) from exc
    return derive_keypair(signature).address


def verify_derived_address(
    owner_public_key: str,
    organization_id: UUID | str,
    sign_fn: SignFn,
    expected_address: str,
) -> bool:
    """Re-derive and compare against a previously registered address."""
    return derive_address(owner_public_key, organization_id, sign_fn) == expected_address


def verify_signature(address: str, message: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature made by the key behind ``address``."""
    if not signature or len(signature) != 64:
        return False
    public_key = Ed25519PublicKey.from_public_bytes(decode_address(address))
    try:
        public_key.verify(signature, message)
    except InvalidSignature:
        return False
    return True
