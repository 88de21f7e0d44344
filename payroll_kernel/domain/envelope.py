"""
EnvelopeCrypto -- authenticated field encryption and key wrapping.

Responsibility:
    Encrypts employee PII fields under a per-organization key, and wraps each
    organization key under the process-wide master key (envelope encryption).
    Uses AES-256-GCM from ``cryptography``.

Architecture position:
    Kernel > Domain.  No persistence, no config access.  The master key is a
    value passed in by whoever starts the process; nothing here reads the
    environment.

Ciphertext encoding:
    ``"<nonce hex>:<tag hex>:<body hex>"`` -- 12-byte nonce, 16-byte tag,
    body of the same length as the plaintext.  Self-contained: the key is
    the only other input needed to decrypt.

Failure modes:
    - MalformedInputError: encoding cannot be split into nonce/tag/body, or
      a component has the wrong length or is not hex.
    - IntegrityError: tag does not verify (wrong key, tampered ciphertext,
      or mismatched associated data).
    - MasterKeyError: master key material is missing or not 32 bytes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from payroll_kernel.exceptions import (
    IntegrityError,
    MalformedInputError,
    MasterKeyError,
)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

_SEPARATOR = ":"
_KEY_WRAP_CONTEXT = b"payroll:organization-key:v1"


@dataclass(frozen=True)
class SymmetricKey:
    """A 256-bit AES key.  ``repr`` never shows key material."""

    material: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.material, bytes) or len(self.material) != KEY_BYTES:
            raise MalformedInputError(f"symmetric key must be {KEY_BYTES} bytes")

    @classmethod
    def from_hex(cls, value: str) -> SymmetricKey:
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError:
            raise MalformedInputError("symmetric key is not valid hex") from None
        return cls(raw)

    def hex(self) -> str:
        return self.material.hex()


@dataclass(frozen=True)
class MasterKey(SymmetricKey):
    """
    The process-wide key-encryption key.

    Read once at startup from provisioned secret material and threaded
    through constructors.  Never persisted by this package.
    """

    def __post_init__(self) -> None:
        if not isinstance(self.material, bytes) or len(self.material) != KEY_BYTES:
            raise MasterKeyError(
                f"expected {KEY_BYTES} bytes, got "
                f"{len(self.material) if isinstance(self.material, bytes) else type(self.material).__name__}"
            )

    @classmethod
    def from_hex(cls, value: str | None, source: str | None = None) -> MasterKey:
        """Parse 64 hex characters into a master key.

        Raises:
            MasterKeyError: If value is absent, not hex, or the wrong length.
        """
        if value is None or not value.strip():
            raise MasterKeyError("not provided", source=source)
        text = value.strip()
        if len(text) != KEY_BYTES * 2:
            raise MasterKeyError(
                f"expected {KEY_BYTES * 2} hex characters, got {len(text)}",
                source=source,
            )
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise MasterKeyError("not valid hex", source=source) from None
        return cls(raw)


WrappedKey = str


def generate_key() -> SymmetricKey:
    """Fresh 256-bit key from the OS CSPRNG."""
    return SymmetricKey(AESGCM.generate_key(bit_length=KEY_BYTES * 8))


def encrypt(
    plaintext: str | bytes,
    key: SymmetricKey,
    associated_data: bytes | None = None,
) -> str:
    """Encrypt with a fresh random nonce and return the encoded ciphertext."""
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key.material).encrypt(nonce, data, associated_data)
    body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return _SEPARATOR.join((nonce.hex(), tag.hex(), body.hex()))


def decrypt_bytes(
    ciphertext: str,
    key: SymmetricKey,
    associated_data: bytes | None = None,
) -> bytes:
    nonce, tag, body = _parse(ciphertext)
    try:
        return AESGCM(key.material).decrypt(nonce, body + tag, associated_data)
    except InvalidTag:
        raise IntegrityError() from None


def decrypt(
    ciphertext: str,
    key: SymmetricKey,
    associated_data: bytes | None = None,
) -> str:
    """Decrypt an encoded ciphertext to text.

    Raises:
        MalformedInputError: If the encoding cannot be parsed.
        IntegrityError: If the authentication tag does not verify.
    """
    raw = decrypt_bytes(ciphertext, key, associated_data)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedInputError("plaintext is not UTF-8 text") from None


def wrap_key(inner_key: SymmetricKey, master_key: MasterKey) -> WrappedKey:
    """Encrypt an organization key under the master key."""
    return encrypt(inner_key.material, master_key, _KEY_WRAP_CONTEXT)


def unwrap_key(wrapped: WrappedKey, master_key: MasterKey) -> SymmetricKey:
    """Recover an organization key.  Raises IntegrityError under a wrong master key."""
    return SymmetricKey(decrypt_bytes(wrapped, master_key, _KEY_WRAP_CONTEXT))


def _parse(ciphertext: str) -> tuple[bytes, bytes, bytes]:
    if not isinstance(ciphertext, str):
        raise MalformedInputError("ciphertext must be text")
    parts = ciphertext.split(_SEPARATOR)
    if len(parts) != 3:
        raise MalformedInputError("expected nonce:tag:body")
    try:
        nonce, tag, body = (bytes.fromhex(p) for p in parts)
    except ValueError:
        raise MalformedInputError("component is not valid hex") from None
    if len(nonce) != NONCE_BYTES:
        raise MalformedInputError(f"nonce must be {NONCE_BYTES} bytes")
    if len(tag) != TAG_BYTES:
        raise MalformedInputError(f"tag must be {TAG_BYTES} bytes")
    return nonce, tag, body


class KeyRing:
    """
    Unwraps organization keys with a master key held for the process lifetime.

    Unwrapped keys are cached by wrapped-key text; organization keys are never
    rotated in place, so the cache never goes stale.
    """

    def __init__(self, master_key: MasterKey):
        if not isinstance(master_key, MasterKey):
            raise MasterKeyError("KeyRing requires a MasterKey")
        self._master_key = master_key
        self._cache: dict[str, SymmetricKey] = {}

    def new_organization_key(self) -> tuple[SymmetricKey, WrappedKey]:
        key = generate_key()
        return key, wrap_key(key, self._master_key)

    def organization_key(self, wrapped: WrappedKey) -> SymmetricKey:
        key = self._cache.get(wrapped)
        if key is None:
            key = unwrap_key(wrapped, self._master_key)
            self._cache[wrapped] = key
        return key

    def __repr__(self) -> str:
        return f"KeyRing(cached_keys={len(self._cache)})"
