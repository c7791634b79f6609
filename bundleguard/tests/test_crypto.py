"""
Crypto primitives: device-key derivation, AES-GCM payloads, Fernet key
wrapping and xor-v1 payload protection.
"""
import base64
import hashlib
import os

import pytest

import crypto_service
from errors import DecryptionError, IntegrityError
from schemas import ProtectionDescriptor

SAMPLE = b"In the beginning was the Word." * 10


def test_device_key_is_deterministic_and_salted():
    a1 = crypto_service.derive_device_key("dev-A", "salt")
    a2 = crypto_service.derive_device_key("dev-A", "salt")
    assert a1 == a2
    assert len(a1) == 64
    assert crypto_service.derive_device_key("dev-B", "salt") != a1
    assert crypto_service.derive_device_key("dev-A", "pepper") != a1


def test_encrypt_decrypt_with_same_key():
    key = crypto_service.generate_bundle_key()
    ciphertext = crypto_service.encrypt(SAMPLE, key)
    assert SAMPLE not in ciphertext
    assert crypto_service.decrypt(ciphertext, key) == SAMPLE


def test_encryption_is_randomised():
    key = "k"
    assert crypto_service.encrypt(SAMPLE, key) != crypto_service.encrypt(SAMPLE, key)


def test_wrong_key_raises_instead_of_returning_garbage():
    ciphertext = crypto_service.encrypt(SAMPLE, "right-key")
    with pytest.raises(DecryptionError):
        crypto_service.decrypt(ciphertext, "wrong-key")


def test_tampered_or_truncated_ciphertext_raises():
    ciphertext = bytearray(crypto_service.encrypt(SAMPLE, "key"))
    ciphertext[20] ^= 0x01
    with pytest.raises(DecryptionError):
        crypto_service.decrypt(bytes(ciphertext), "key")
    with pytest.raises(DecryptionError):
        crypto_service.decrypt(b"short", "key")


def test_decryption_error_is_an_integrity_error():
    assert issubclass(DecryptionError, IntegrityError)


def test_text_envelope():
    token = crypto_service.encrypt_text('{"bundleId": "b"}', "shared")
    assert crypto_service.decrypt_text(token, "shared") == '{"bundleId": "b"}'
    with pytest.raises(DecryptionError):
        crypto_service.decrypt_text(token, "other")
    with pytest.raises(DecryptionError):
        crypto_service.decrypt_text("%%% not base64 %%%", "shared")


def test_wrapped_key_only_opens_for_its_device():
    bundle_key = crypto_service.generate_bundle_key()
    wrapped = crypto_service.wrap_for_devices(bundle_key, ["dev-A", "dev-B"], "salt")
    key_a = crypto_service.derive_device_key("dev-A", "salt")
    key_b = crypto_service.derive_device_key("dev-B", "salt")

    assert set(wrapped) == {"dev-A", "dev-B"}
    assert crypto_service.unwrap_bundle_key(wrapped["dev-A"], key_a) == bundle_key
    assert crypto_service.unwrap_bundle_key(wrapped["dev-B"], key_b) == bundle_key
    with pytest.raises(DecryptionError):
        crypto_service.unwrap_bundle_key(wrapped["dev-A"], key_b)


def test_xor_protection_is_an_involution():
    descriptor = crypto_service.new_protection()
    protected = crypto_service.apply_protection(SAMPLE, descriptor)
    assert protected != SAMPLE
    assert len(protected) == len(SAMPLE)
    assert crypto_service.remove_protection(protected, descriptor) == SAMPLE
    assert crypto_service.apply_protection(b"", descriptor) == b""


def test_protection_is_consistent_across_chunk_boundaries():
    descriptor = crypto_service.new_protection()
    salt = base64.b64decode(descriptor.salt)
    data = os.urandom(3 * 64 * 1024 + 17)

    # One keystream for the whole payload, counter running from block 0
    stream = crypto_service._xor_keystream(salt, len(data))
    expected = bytes(a ^ b for a, b in zip(data, stream))

    assert crypto_service.apply_protection(data, descriptor) == expected
    assert crypto_service.remove_protection(expected, descriptor) == data


def test_keystream_matches_sha256_counter_blocks():
    salt = b"salt"
    stream = crypto_service._xor_keystream(salt, 40, first_block=5)
    assert stream[:32] == hashlib.sha256(salt + (5).to_bytes(8, "big")).digest()
    assert stream[32:] == hashlib.sha256(salt + (6).to_bytes(8, "big")).digest()[:8]


def test_no_descriptor_means_no_protection():
    assert crypto_service.apply_protection(SAMPLE, None) is SAMPLE


def test_unknown_protection_scheme_rejected():
    with pytest.raises(ValueError):
        crypto_service.apply_protection(SAMPLE, ProtectionDescriptor(scheme="rot13", salt="AA=="))
