"""
Vault Crypto Core — session key derivation, signing and seed records.

- Session key: ed25519, the stored 32-byte seed is the RFC 8032 private key.
- Seed record: orjson ``{"v": 1, "sealed": bool, "data": <base64>}``.
- Sealed data: HKDF(seal_key_vN, "nord-seed-vN") → AEAD → [key_id|nonce|payload],
  with the storage slot as associated data so a record cannot be moved
  to another wallet's slot.

Security Note:
    Never log seeds, private keys or signatures.
"""
import os
import struct
import base64
import secrets
import logging
from typing import Optional

import orjson
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..data import SessionKey
from ..exceptions import EntropyUnavailableError, KeyStorageError
from .config import SealConfig

logger = logging.getLogger("nord.vault")

SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
NONCE_SIZE = 12
KEY_ID_SIZE = 2
RECORD_VERSION = 1


def _get_cipher_cls() -> type:
    backend = os.environ.get("NORD_SEAL_CIPHER", "aesgcm").lower()
    if backend == "chacha20":
        return ChaCha20Poly1305
    return AESGCM


# resolved once so sealing and opening always agree within a process
CIPHER_CLS = _get_cipher_cls()


# ---------------------------------------------------------------------------
# Session key
# ---------------------------------------------------------------------------

def generate_seed() -> bytes:
    """Draw a fresh seed from the OS CSPRNG.

    Raises:
        EntropyUnavailableError: If the platform has no secure source.
    """
    try:
        return secrets.token_bytes(SEED_SIZE)
    except NotImplementedError as err:
        raise EntropyUnavailableError(
            "No cryptographically secure random source available"
        ) from err


def derive_session_key(seed: bytes) -> SessionKey:
    """Deterministically rebuild the session key pair from its seed."""
    if len(seed) != SEED_SIZE:
        raise KeyStorageError(
            f"Seed must be exactly {SEED_SIZE} bytes, got {len(seed)}"
        )
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    public_key = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )

    def sign(message: bytes) -> bytes:
        return private_key.sign(bytes(message))

    return SessionKey(public_key=public_key, sign=sign)


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Check an ed25519 signature made by a session key."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def derive_seal_key(master_key: bytes, key_id: int) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"nord-seed-v{key_id}".encode("utf-8"),
    )
    return hkdf.derive(master_key)


def seal_seed(seed: bytes, slot: str, key_id: int, master_key: bytes) -> bytes:
    """Encrypt a seed for storage. Format: [key_id 2B][nonce 12B][ct+tag]."""
    cipher = CIPHER_CLS(derive_seal_key(master_key, key_id))
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, seed, slot.encode("utf-8"))
    return struct.pack("!H", key_id) + nonce + ct


def open_seed(sealed: bytes, slot: str, keys: dict[int, bytes]) -> bytes:
    """Decrypt a sealed seed.

    Raises:
        KeyStorageError: Unknown key version, wrong slot or tampered data.
    """
    _min = KEY_ID_SIZE + NONCE_SIZE + 16
    if len(sealed) < _min:
        raise KeyStorageError(
            f"Sealed seed too short: {len(sealed)} bytes (minimum {_min})"
        )
    key_id = struct.unpack("!H", sealed[:KEY_ID_SIZE])[0]
    if key_id not in keys:
        raise KeyStorageError(f"Seal key version {key_id} is not configured")
    cipher = CIPHER_CLS(derive_seal_key(keys[key_id], key_id))
    nonce = sealed[KEY_ID_SIZE:KEY_ID_SIZE + NONCE_SIZE]
    try:
        return cipher.decrypt(nonce, sealed[KEY_ID_SIZE + NONCE_SIZE:], slot.encode("utf-8"))
    except InvalidTag as err:
        raise KeyStorageError(f"Sealed seed for slot {slot} failed authentication") from err


# ---------------------------------------------------------------------------
# Record encoding
# ---------------------------------------------------------------------------

def encode_key_material(seed: bytes, slot: str, seal: Optional[SealConfig] = None) -> bytes:
    """Serialize a seed into the stored record format."""
    if seal is not None and seal.enabled:
        key_id, master_key = seal.active_key
        payload = seal_seed(seed, slot, key_id, master_key)
        sealed = True
    else:
        payload = seed
        sealed = False
    return orjson.dumps({
        "v": RECORD_VERSION,
        "sealed": sealed,
        "data": base64.b64encode(payload).decode("ascii"),
    })


def decode_key_material(record: bytes, slot: str, seal: Optional[SealConfig] = None) -> bytes:
    """Parse a stored record back into the raw seed.

    Raises:
        KeyStorageError: The record is malformed, sealed without a key,
            or does not hold a 32-byte seed.
    """
    try:
        parsed = orjson.loads(record)
        version = parsed["v"]
        payload = base64.b64decode(parsed["data"], validate=True)
        sealed = bool(parsed.get("sealed", False))
    except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as err:
        raise KeyStorageError(f"Unreadable key record in slot {slot}") from err
    if version != RECORD_VERSION:
        raise KeyStorageError(f"Unsupported key record version {version} in slot {slot}")
    if sealed:
        if seal is None or not seal.enabled:
            raise KeyStorageError(f"Key record in slot {slot} is sealed but no seal key is configured")
        payload = open_seed(payload, slot, seal.keys)
    if len(payload) != SEED_SIZE:
        raise KeyStorageError(
            f"Key record in slot {slot} holds {len(payload)} bytes, expected {SEED_SIZE}"
        )
    return payload
