"""
Envelope encryption tests.

Covers:
- Ciphertext encoding (nonce:tag:body) and randomized nonces
- IntegrityError on wrong key, tampered body or mismatched associated data
- MalformedInputError on unparseable encodings
- Key wrapping under the master key and KeyRing caching
- MasterKey parsing (fail fast on missing / malformed material)
"""

import pytest

from payroll_kernel.domain.envelope import (
    NONCE_BYTES,
    TAG_BYTES,
    KeyRing,
    MasterKey,
    SymmetricKey,
    decrypt,
    encrypt,
    generate_key,
    unwrap_key,
    wrap_key,
)
from payroll_kernel.exceptions import (
    CryptoError,
    IntegrityError,
    MalformedInputError,
    MasterKeyError,
)


class TestEncryptDecrypt:
    def test_round_trip(self):
        key = generate_key()
        assert decrypt(encrypt("Alice Example", key), key) == "Alice Example"

    def test_encoding_has_three_hex_parts(self):
        key = generate_key()
        nonce, tag, body = encrypt("12345.67", key).split(":")
        assert len(bytes.fromhex(nonce)) == NONCE_BYTES
        assert len(bytes.fromhex(tag)) == TAG_BYTES
        assert len(bytes.fromhex(body)) == len("12345.67")

    def test_same_plaintext_encrypts_differently(self):
        key = generate_key()
        assert encrypt("same", key) != encrypt("same", key)

    def test_empty_plaintext(self):
        key = generate_key()
        assert decrypt(encrypt("", key), key) == ""

    def test_wrong_key_raises_integrity_error(self):
        ciphertext = encrypt("secret", generate_key())
        with pytest.raises(IntegrityError) as exc_info:
            decrypt(ciphertext, generate_key())
        assert exc_info.value.code == "INTEGRITY_ERROR"

    def test_tampered_body_raises_integrity_error(self):
        key = generate_key()
        nonce, tag, body = encrypt("payroll", key).split(":")
        flipped = format(int(body[:2], 16) ^ 0x01, "02x") + body[2:]
        with pytest.raises(IntegrityError):
            decrypt(":".join((nonce, tag, flipped)), key)

    def test_associated_data_must_match(self):
        key = generate_key()
        ciphertext = encrypt("100.00", key, b"payment:1:amount")
        assert decrypt(ciphertext, key, b"payment:1:amount") == "100.00"
        with pytest.raises(IntegrityError):
            decrypt(ciphertext, key, b"payment:2:amount")

    @pytest.mark.parametrize(
        "ciphertext",
        [
            "",
            "abcd",
            "aa:bb",
            "aa:bb:cc:dd",
            "zz" * 12 + ":" + "00" * 16 + ":00",
            "00" * 11 + ":" + "00" * 16 + ":00",
            "00" * 12 + ":" + "00" * 15 + ":00",
        ],
    )
    def test_malformed_encoding(self, ciphertext):
        with pytest.raises(MalformedInputError):
            decrypt(ciphertext, generate_key())

    def test_non_text_ciphertext_is_malformed(self):
        with pytest.raises(MalformedInputError):
            decrypt(b"00:00:00", generate_key())

    def test_crypto_errors_share_a_base(self):
        assert issubclass(IntegrityError, CryptoError)
        assert issubclass(MalformedInputError, CryptoError)


class TestKeyWrapping:
    def test_wrap_unwrap(self, master_key):
        inner = generate_key()
        assert unwrap_key(wrap_key(inner, master_key), master_key) == inner

    def test_unwrap_with_other_master_key_fails(self, master_key):
        wrapped = wrap_key(generate_key(), master_key)
        other = MasterKey.from_hex("b2" * 32)
        with pytest.raises(IntegrityError):
            unwrap_key(wrapped, other)

    def test_wrapped_key_is_not_a_field_ciphertext(self, master_key):
        """A wrapped key cannot be decrypted as a plain field under the master key."""
        wrapped = wrap_key(generate_key(), master_key)
        with pytest.raises(IntegrityError):
            decrypt(wrapped, master_key)

    def test_key_ring_issues_and_caches_organization_keys(self, key_ring):
        key, wrapped = key_ring.new_organization_key()
        assert key_ring.organization_key(wrapped) == key
        assert key_ring.organization_key(wrapped) is key_ring.organization_key(wrapped)

    def test_key_ring_requires_master_key(self):
        with pytest.raises(MasterKeyError):
            KeyRing(generate_key())


class TestKeyMaterial:
    def test_repr_hides_material(self):
        key = SymmetricKey(b"\x07" * 32)
        assert "07" not in repr(key)
        assert "\\x07" not in repr(key)

    def test_symmetric_key_length_enforced(self):
        with pytest.raises(MalformedInputError):
            SymmetricKey(b"short")

    def test_hex_round_trip(self):
        key = generate_key()
        assert SymmetricKey.from_hex(key.hex()) == key

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_master_key_missing(self, value):
        with pytest.raises(MasterKeyError) as exc_info:
            MasterKey.from_hex(value, source="PAYROLL_MASTER_KEY")
        assert exc_info.value.source == "PAYROLL_MASTER_KEY"

    @pytest.mark.parametrize("value", ["ab" * 31, "ab" * 33, "zz" * 32])
    def test_master_key_malformed(self, value):
        with pytest.raises(MasterKeyError):
            MasterKey.from_hex(value)

    def test_master_key_wrong_length_bytes(self):
        with pytest.raises(MasterKeyError):
            MasterKey(b"\x00" * 16)
