"""
Vault Crypto Core — key derivation, at-rest encryption and payload encoding.

Secret payloads are encrypted under a versioned master key:
    HKDF(MASTER_KEY_vN, "credsync-vault-vN") → AEAD → [key_id|nonce|payload]

The ciphertext embeds the key version so secrets written under an older key
remain readable after rotation, as long as the old key is still loaded.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import struct
import base64
from typing import Any

import orjson
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

NONCE_SIZE = 12  # 96-bit nonce
KEY_ID_SIZE = 2  # uint16 big-endian
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


def cipher_for(backend: str) -> type:
    """Return the AEAD cipher class for a backend name."""
    try:
        return _CIPHERS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Master key bytes.
        context: Context string for domain separation.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic derivation per key version
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def _context(key_id: int) -> str:
    return f"credsync-vault-v{key_id}"


def encrypt_secret(
    plaintext: bytes, key_id: int, master_key: bytes, cipher_cls: type = AESGCM,
) -> bytes:
    """Encrypt plaintext with embedded key version.

    Format: [key_id 2B uint16 BE][nonce 12B][encrypted_payload + tag]
    """
    derived = derive_key(master_key, _context(key_id))
    cipher = cipher_cls(derived)
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, plaintext, None)
    return struct.pack("!H", key_id) + nonce + ct


def key_id_of(ciphertext: bytes) -> int:
    """Return the master key version embedded in ``ciphertext``."""
    if len(ciphertext) < KEY_ID_SIZE:
        raise ValueError("ciphertext too short to carry a key id")
    return struct.unpack("!H", ciphertext[:KEY_ID_SIZE])[0]


def decrypt_secret(
    ciphertext: bytes, master_keys: dict[int, bytes], cipher_cls: type = AESGCM,
) -> bytes:
    """Decrypt ciphertext using its embedded key version.

    Raises:
        ValueError: If the ciphertext is truncated.
        KeyError: If the embedded key version is not in ``master_keys``.
        cryptography.exceptions.InvalidTag: If the ciphertext was tampered with.
    """
    _min = KEY_ID_SIZE + NONCE_SIZE + TAG_SIZE
    if len(ciphertext) < _min:
        raise ValueError(
            f"ciphertext too short: {len(ciphertext)} bytes (minimum {_min})"
        )
    key_id = key_id_of(ciphertext)
    if key_id not in master_keys:
        raise KeyError(f"Master key version {key_id} not found in provided keys")
    derived = derive_key(master_keys[key_id], _context(key_id))
    cipher = cipher_cls(derived)
    nonce = ciphertext[KEY_ID_SIZE:KEY_ID_SIZE + NONCE_SIZE]
    return cipher.decrypt(nonce, ciphertext[KEY_ID_SIZE + NONCE_SIZE:], None)


# ---------------------------------------------------------------------------
# Payload encoding
# ---------------------------------------------------------------------------

def encode_payload(payload: dict[str, Any]) -> bytes:
    return orjson.dumps(payload)


def decode_payload(data: bytes) -> dict[str, Any]:
    return orjson.loads(data)


def to_text(ciphertext: bytes) -> str:
    """Base64 text form of ciphertext, for JSON documents."""
    return base64.b64encode(ciphertext).decode("ascii")


def from_text(text: str) -> bytes:
    return base64.b64decode(text)
