"""
Seal Key Configuration — optional master keys that encrypt stored seeds.

Reads keys from environment variables in the format:
    NORD_SEAL_KEY_v{N} = <base64-encoded 32-byte key>
    NORD_SEAL_ACTIVE_KEY_ID = <integer>

Without any key the session seed is stored unsealed, which matches a
browser-local storage slot.

Security Note:
    Never log key material. Only log key IDs.
"""
import os
import re
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, model_validator

logger = logging.getLogger("nord.vault")

_SEAL_ENV_PATTERN = re.compile(r"^NORD_SEAL_KEY_v(\d+)$")


def load_seal_keys(environ: Optional[dict[str, str]] = None) -> dict[int, bytes]:
    """Collect every ``NORD_SEAL_KEY_v{N}`` variable.

    Returns:
        Mapping of key version to raw 32-byte key; empty when none is set.

    Raises:
        ValueError: If a key does not decode to exactly 32 bytes.
    """
    env = os.environ if environ is None else environ
    keys: dict[int, bytes] = {}
    for name, value in env.items():
        match = _SEAL_ENV_PATTERN.match(name)
        if not match:
            continue
        key_bytes = base64.b64decode(value)
        if len(key_bytes) != 32:
            raise ValueError(
                f"{name} must decode to exactly 32 bytes, got {len(key_bytes)}"
            )
        keys[int(match.group(1))] = key_bytes
    if keys:
        logger.debug("Loaded %d seal key version(s): %s", len(keys), sorted(keys))
    return keys


def generate_seal_key() -> str:
    """Generate a base64 seal key for operators."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class SealConfig(BaseModel):
    """Seal keys plus the version used for new records."""

    keys: dict[int, bytes] = {}
    active_key_id: Optional[int] = None

    model_config = {"arbitrary_types_allowed": True}

    @model_validator(mode="after")
    def validate_active_key(self) -> "SealConfig":
        if self.keys and self.active_key_id is None:
            self.active_key_id = max(self.keys)
        if self.active_key_id is not None and self.active_key_id not in self.keys:
            raise ValueError(
                f"active_key_id {self.active_key_id} not found in seal keys "
                f"(available: {sorted(self.keys)})"
            )
        return self

    @property
    def enabled(self) -> bool:
        return bool(self.keys)

    @property
    def active_key(self) -> tuple[int, bytes]:
        if self.active_key_id is None:
            raise KeyError("No active seal key configured")
        return self.active_key_id, self.keys[self.active_key_id]

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "SealConfig":
        env = os.environ if environ is None else environ
        keys = load_seal_keys(env)
        raw = env.get("NORD_SEAL_ACTIVE_KEY_ID")
        return cls(keys=keys, active_key_id=int(raw) if raw else None)
