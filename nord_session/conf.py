"""
Session Configuration — validated settings for login and provisioning.

Values are read from ``NORD_*`` environment variables by
``SessionConfig.from_env()``; every field has a usable default so tests and
embedded callers can build a config directly.
"""
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "NORD_"

SESSION_KEY_SLOT_PREFIX = "session-key"


class SessionConfig(BaseModel):
    """Validated session configuration."""

    web_server_url: str = Field(default="http://localhost:3000")
    faucet_url: str = Field(default="http://localhost:3001")
    contract_address: str = Field(default="")
    request_timeout: float = Field(default=30.0, gt=0)

    # account polling after funding
    poll_interval: float = Field(default=10.0, ge=0)
    poll_max_attempts: int = Field(default=30, ge=1)
    poll_timeout: Optional[float] = Field(default=300.0, gt=0)

    # allowance polling after approve
    settlement_interval: float = Field(default=2.0, ge=0)
    settlement_max_attempts: int = Field(default=15, ge=1)

    funding_amount: int = Field(default=1_000_000, gt=0)
    funding_precision: int = Field(default=6, ge=0, le=18)
    funding_jitter: float = Field(default=0.1, ge=0, le=1)

    key_store_dir: Optional[str] = Field(default=None)
    key_slot_prefix: str = Field(default=SESSION_KEY_SLOT_PREFIX, min_length=1)

    @field_validator("web_server_url", "faucet_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs so paths can be appended."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must be http(s): {v}")
        return v.rstrip("/")

    @field_validator("key_slot_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if ":" in v:
            raise ValueError("key_slot_prefix cannot contain ':'")
        return v

    @model_validator(mode="after")
    def validate_poll_budget(self) -> "SessionConfig":
        """A timeout shorter than one interval would never poll."""
        if self.poll_timeout is not None and self.poll_timeout < self.poll_interval:
            raise ValueError(
                f"poll_timeout ({self.poll_timeout}) must be at least "
                f"poll_interval ({self.poll_interval})"
            )
        return self

    def key_slot(self, wallet_address: str) -> str:
        """Storage slot holding the session seed of a wallet."""
        return f"{self.key_slot_prefix}:{normalize_address(wallet_address)}"

    @classmethod
    def from_env(cls, **overrides) -> "SessionConfig":
        """Create SessionConfig from ``NORD_<FIELD>`` environment variables.

        Unset variables keep the field default; ``overrides`` win over both.
        """
        values = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls(**values)


def normalize_address(address: str) -> str:
    """Canonical form of a wallet address used for slots and lookups."""
    if not address or not address.strip():
        raise ValueError("Wallet address cannot be empty")
    return address.strip().lower()
