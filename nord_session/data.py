"""
Session Data — typed records shared by the vault, the provisioning
coordinator and the session manager.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SessionPhase(str, Enum):
    """Phases of one login cycle, as rendered by the UI."""

    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    ERROR = "error"


class ProvisioningState(str, Enum):
    """Steps of the approve, fund and poll sequence."""

    IDLE = "idle"
    APPROVING_ALLOWANCE = "approving_allowance"
    AWAITING_APPROVE_SETTLEMENT = "awaiting_approve_settlement"
    FUNDING = "funding"
    POLLING_FOR_ACCOUNT = "polling_for_account"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProvisioningStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


def short_hex(value: Optional[bytes], size: int = 8) -> str:
    """Printable prefix of a public key, safe for logs."""
    if not value:
        return "-"
    return value.hex()[:size]


@dataclass(frozen=True)
class SessionKey:
    """Public half of the session key plus a signing capability.

    The private key lives only inside the closure behind ``sign``;
    there is no attribute exposing its bytes.
    """

    public_key: bytes
    sign: Callable[[bytes], bytes] = field(repr=False, compare=False)

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    def __repr__(self) -> str:
        return f"<SessionKey public_key={short_hex(self.public_key)}>"


class Balance(BaseModel):
    """Token balance of an account, as returned by the backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token_id: int = Field(alias="tokenId")
    token: str = ""
    amount: float = 0.0


class Order(BaseModel):
    """Resting order of an account, as returned by the backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_id: int = Field(alias="orderId")
    market_id: int = Field(default=0, alias="marketId")
    side: str = ""
    size: float = 0.0
    price: float = 0.0


class AccountInfo(BaseModel):
    """Balances and open orders snapshot for the accounts of a wallet."""

    model_config = ConfigDict(extra="ignore")

    balances: list[Balance] = Field(default_factory=list)
    orders: list[Order] = Field(default_factory=list)


@dataclass
class SessionIdentity:
    """Authenticated identity bound to one login cycle."""

    wallet_address: str
    phase: SessionPhase = SessionPhase.LOGGED_OUT
    session_public_key: Optional[bytes] = None
    session_id: Optional[int] = None
    account_ids: list[int] = field(default_factory=list)
    account_info: Optional[AccountInfo] = None
    last_error: Optional[Exception] = None

    @property
    def is_active(self) -> bool:
        return self.phase is SessionPhase.ACTIVE

    def reset(self) -> None:
        """Drop everything learned during the login cycle."""
        self.phase = SessionPhase.LOGGED_OUT
        self.session_public_key = None
        self.session_id = None
        self.account_ids = []
        self.account_info = None

    def to_dict(self) -> dict[str, Any]:
        error = self.last_error
        return {
            "wallet_address": self.wallet_address,
            "phase": self.phase.value,
            "session_public_key": (
                self.session_public_key.hex() if self.session_public_key else None
            ),
            "session_id": self.session_id,
            "account_ids": list(self.account_ids),
            "account_info": (
                self.account_info.model_dump(by_alias=True) if self.account_info else None
            ),
            "error": (
                {"reason": getattr(error, "reason", "error"), "message": str(error)}
                if error is not None else None
            ),
        }


@dataclass
class ProvisioningAttempt:
    """One run of the provisioning sequence for a wallet."""

    wallet_address: str
    target_public_key: bytes
    approve_invoked: bool = False
    fund_invoked: bool = False
    poll_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    status: ProvisioningStatus = ProvisioningStatus.IN_PROGRESS
    state: ProvisioningState = ProvisioningState.IDLE
    account_ids: list[int] = field(default_factory=list)
    approve_tx: Optional[str] = None
    fund_tx: Optional[str] = None
    funding_amount: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def active(self) -> bool:
        return self.status is ProvisioningStatus.IN_PROGRESS

    def finish(
        self,
        status: ProvisioningStatus,
        state: ProvisioningState,
        error: Union[Exception, None] = None,
    ) -> None:
        self.status = status
        self.state = state
        self.error = error
        self.finished_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return (
            f'<ProvisioningAttempt wallet={self.wallet_address} '
            f'key={short_hex(self.target_public_key)} state={self.state.value} '
            f'status={self.status.value} polls={self.poll_count}>'
        )
