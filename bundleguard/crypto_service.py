"""
Crypto primitives — AES-256-GCM payload encryption + Fernet key wrapping.

Encryption model (two-layer)
────────────────────────────
  Bundle key:    32 random bytes (hex), one per bundle
  Payload:       AESGCM(sha256(key)).encrypt(nonce, plaintext) → nonce(12) ‖ ciphertext ‖ tag(16)
  Key wrapping:  Fernet(sha256(device_key)).encrypt(bundle_key)
                 → one token per authorised device; decryption verifies HMAC automatically

Device keys
───────────
  derive_device_key(device_id, salt) = sha256_hex(device_id + salt)
  Schema 2.0 bundles encrypt payloads with the first device key directly;
  2.1+ encrypt with the bundle key and wrap it for every device.

Payload protection
──────────────────
  `xor-v1` is a lightweight obfuscation layer applied to the stored bytes on
  top of encryption.  It is an involution: applying it twice is the identity.
"""
import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import SUPPORTED_PROTECTION_SCHEMES
from errors import DecryptionError
from schemas import ProtectionDescriptor

_NONCE_BYTES = 12
_TAG_BYTES = 16


# ── Internal helpers ──────────────────────────────────────────────────────────

def _key_bytes(key) -> bytes:
    """Normalise any key material (hex string, passphrase, raw bytes) to 32 bytes."""
    raw = key.encode() if isinstance(key, str) else bytes(key)
    return hashlib.sha256(raw).digest()


def _fernet(key) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(_key_bytes(key)))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ── Device keys ───────────────────────────────────────────────────────────────

def derive_device_key(device_id: str, salt: str) -> str:
    """Deterministic one-way derivation; same id + salt always yields the same key."""
    return sha256_hex((device_id + salt).encode())


def generate_bundle_key() -> str:
    return os.urandom(32).hex()


# ── Encryption / decryption ───────────────────────────────────────────────────

def encrypt(plaintext: bytes, key) -> bytes:
    """Encrypt `plaintext` with AES-256-GCM.  Returns nonce ‖ ciphertext ‖ tag."""
    nonce = os.urandom(_NONCE_BYTES)
    return nonce + AESGCM(_key_bytes(key)).encrypt(nonce, plaintext, None)


def decrypt(ciphertext: bytes, key) -> bytes:
    """
    Reverse of `encrypt`.  Raises DecryptionError on wrong key or tampered data —
    never returns garbage.
    """
    if len(ciphertext) < _NONCE_BYTES + _TAG_BYTES:
        raise DecryptionError("Ciphertext is truncated")
    nonce, body = ciphertext[:_NONCE_BYTES], ciphertext[_NONCE_BYTES:]
    try:
        return AESGCM(_key_bytes(key)).decrypt(nonce, body, None)
    except InvalidTag as exc:
        raise DecryptionError("Decryption failed: wrong key or corrupted data") from exc


def encrypt_text(text: str, key) -> str:
    """Text envelope (base64) used for the bundle.smb config file."""
    return base64.b64encode(encrypt(text.encode("utf-8"), key)).decode("ascii")


def decrypt_text(token: str, key) -> str:
    try:
        raw = base64.b64decode(token.strip(), validate=True)
    except (ValueError, TypeError) as exc:
        raise DecryptionError("Envelope is not valid base64") from exc
    try:
        return decrypt(raw, key).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted envelope is not UTF-8") from exc


# ── Key wrapping ──────────────────────────────────────────────────────────────

def wrap_bundle_key(bundle_key: str, device_key: str) -> str:
    return _fernet(device_key).encrypt(bundle_key.encode()).decode()


def unwrap_bundle_key(wrapped: str, device_key: str) -> str:
    try:
        return _fernet(device_key).decrypt(wrapped.encode()).decode()
    except (InvalidToken, ValueError) as exc:
        raise DecryptionError("Wrapped bundle key does not belong to this device") from exc


def wrap_for_devices(bundle_key: str, device_ids: list[str], salt: str) -> dict[str, str]:
    """Build the bundleKeyEncryptedForDevices map."""
    return {
        device_id: wrap_bundle_key(bundle_key, derive_device_key(device_id, salt))
        for device_id in device_ids
    }


# ── Payload protection ────────────────────────────────────────────────────────

def new_protection(scheme: str = "xor-v1") -> ProtectionDescriptor:
    return ProtectionDescriptor(scheme=scheme, salt=base64.b64encode(os.urandom(16)).decode())


_KEYSTREAM_BLOCK = 32          # one sha256 digest
_PROTECTION_CHUNK = 64 * 1024   # multiple of _KEYSTREAM_BLOCK


def _xor_keystream(salt: bytes, length: int, first_block: int = 0) -> bytes:
    """sha256(salt || counter) blocks, counter as 8 big-endian bytes, starting at first_block."""
    seed = hashlib.sha256(salt)
    blocks = []
    for counter in range(first_block, first_block + -(-length // _KEYSTREAM_BLOCK)):
        block = seed.copy()
        block.update(counter.to_bytes(8, "big"))
        blocks.append(block.digest())
    return b"".join(blocks)[:length]


def apply_protection(data: bytes, descriptor: ProtectionDescriptor | None) -> bytes:
    if descriptor is None:
        return data
    if descriptor.scheme not in SUPPORTED_PROTECTION_SCHEMES:
        raise ValueError(f"Unsupported protection scheme '{descriptor.scheme}'")
    salt = base64.b64decode(descriptor.salt)
    view = memoryview(data)
    out = bytearray(len(data))
    for offset in range(0, len(data), _PROTECTION_CHUNK):
        chunk = view[offset:offset + _PROTECTION_CHUNK]
        stream = _xor_keystream(salt, len(chunk), offset // _KEYSTREAM_BLOCK)
        mixed = int.from_bytes(chunk, "big") ^ int.from_bytes(stream, "big")
        out[offset:offset + len(chunk)] = mixed.to_bytes(len(chunk), "big")
    return bytes(out)


# xor-v1 is its own inverse
remove_protection = apply_protection
