"""Key Vault — durable storage and derivation of ed25519 session keys.

Security Note (Threat Model):
    An unsealed seed record is equivalent to the session private key.
    Anyone who can read the key store can trade as the session until the
    user logs out (which deletes the record). Configure seal keys when the
    store is shared or backed up.
"""

from .key_vault import KeyVault
from .storage import KeyStore, MemoryKeyStore, FileKeyStore, RedisKeyStore
from .config import SealConfig, load_seal_keys, generate_seal_key
from .crypto import derive_session_key, verify_signature

__all__ = [
    "KeyVault",
    "KeyStore",
    "MemoryKeyStore",
    "FileKeyStore",
    "RedisKeyStore",
    "SealConfig",
    "load_seal_keys",
    "generate_seal_key",
    "derive_session_key",
    "verify_signature",
]
