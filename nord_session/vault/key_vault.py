"""
KeyVault — lifecycle of the ephemeral session signing key.

- ``get_or_create(wallet)``: load the wallet's seed or create and persist one
- ``clear(wallet)``: forget the seed (idempotent)
- ``exists(wallet)``: whether a seed is stored

Seeds are scoped per wallet address, so connecting another wallet in the
same storage scope never reuses someone else's session key.

Security Note:
    The private key never leaves this module: callers receive a
    ``SessionKey`` whose ``sign`` closure holds it.
"""
import asyncio
import logging
from typing import Optional

from ..conf import SessionConfig
from ..data import SessionKey, short_hex
from .config import SealConfig
from .crypto import (
    decode_key_material,
    derive_session_key,
    encode_key_material,
    generate_seed,
)
from .storage import KeyStore

logger = logging.getLogger("nord.vault")


class KeyVault:
    """Session seed storage bound to a ``KeyStore`` backend."""

    def __init__(
        self,
        store: KeyStore,
        config: Optional[SessionConfig] = None,
        seal: Optional[SealConfig] = None,
    ):
        self._store = store
        self._config = config or SessionConfig()
        self._seal = seal
        self._lock = asyncio.Lock()

    def slot(self, wallet_address: str) -> str:
        return self._config.key_slot(wallet_address)

    async def _load_seed(self, slot: str) -> Optional[bytes]:
        record = await self._store.load(slot)
        if record is None:
            return None
        return decode_key_material(record, slot, self._seal)

    async def get_or_create(self, wallet_address: str) -> SessionKey:
        """Return the wallet's session key, creating the seed on first use.

        Raises:
            KeyStorageError: The store is unavailable or the record is corrupt.
            EntropyUnavailableError: No secure random source to create a seed.
        """
        slot = self.slot(wallet_address)
        async with self._lock:
            seed = await self._load_seed(slot)
            if seed is None:
                seed = generate_seed()
                await self._store.save(slot, encode_key_material(seed, slot, self._seal))
                created = True
            else:
                created = False
        key = derive_session_key(seed)
        logger.info(
            "Session key %s for %s: %s",
            "created" if created else "loaded", slot, short_hex(key.public_key),
        )
        return key

    async def exists(self, wallet_address: str) -> bool:
        return await self._store.load(self.slot(wallet_address)) is not None

    async def clear(self, wallet_address: str) -> None:
        """Delete the stored seed. A missing seed is not an error."""
        slot = self.slot(wallet_address)
        async with self._lock:
            await self._store.delete(slot)
        logger.info("Session key cleared for %s", slot)
