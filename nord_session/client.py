"""
Nord HTTP client — aiohttp implementation of the session collaborators.

Faucet service (allowance, approve, fund):
    GET {faucet_url}/api/allowance?address=
    GET {faucet_url}/api/approve?address=
    GET {faucet_url}/api/fund?publicKey=&contractAddress=&amount=&precision=

Nord web server (accounts and sessions):
    GET  {web_server_url}/user?pubkey=
    GET  {web_server_url}/account?account_ids=
    POST {web_server_url}/session/key
    POST {web_server_url}/session

Error mapping: connection errors, timeouts, 429 and 5xx raise
``TransientNetworkError``; 404 on lookups means "no account".
"""
import time
import asyncio
import logging
from typing import Any, Optional, Sequence, Union

import aiohttp
import orjson
from pydantic import ValidationError

from .backend import AccountDirectory, ProvisioningGateway, SessionGateway, SessionSignFn
from .conf import SessionConfig, normalize_address
from .data import AccountInfo, short_hex
from .exceptions import (
    AccountNotFoundError,
    ApprovalRequestError,
    FundingRequestError,
    SessionError,
    SignatureError,
    TransientNetworkError,
)

logger = logging.getLogger("nord.client")

_JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
_SERVER_ERROR_MESSAGE = "Internal server error"


def _signature_text(signature: Union[bytes, str]) -> str:
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature).hex()
    return signature


def _error_text(data: Any) -> Optional[str]:
    """Error message embedded in a JSON body, if any."""
    if isinstance(data, dict):
        error = data.get("error")
        if error:
            return error if isinstance(error, str) else orjson.dumps(error).decode()
    return None


def _message_text(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        return data.get("message")
    return data


def _reports_failure(data: Any) -> bool:
    """True when a 200 body still carries a failure.

    The faucet answers caught errors with HTTP 200, an
    ``"Internal server error"`` message and an ``error`` member that may be
    serialized as an empty object.
    """
    if not isinstance(data, dict):
        return False
    return "error" in data or data.get("message") == _SERVER_ERROR_MESSAGE


class NordHttpClient(AccountDirectory, ProvisioningGateway, SessionGateway):
    """HTTP gateway to the Nord web server and its faucet."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or SessionConfig()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "NordHttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
                headers=_JSON_HEADERS,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, str]] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> tuple[int, Any]:
        session = self._ensure_session()
        body = orjson.dumps(payload) if payload is not None else None
        try:
            async with session.request(
                method, url, params=params, data=body, headers=_JSON_HEADERS,
            ) as resp:
                status = resp.status
                raw = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise TransientNetworkError(f"{method} {url} failed: {err}") from err

        data: Any = None
        if raw:
            try:
                data = orjson.loads(raw)
            except orjson.JSONDecodeError:
                data = raw.decode("utf-8", errors="replace")
        logger.debug("%s %s -> %d", method, url, status)
        if status == 429 or status >= 500:
            raise TransientNetworkError(
                f"{method} {url} returned {status}: {_error_text(data) or ''}".rstrip(": "),
                status=status,
            )
        return status, data

    # ------------------------------------------------------------------
    # ProvisioningGateway
    # ------------------------------------------------------------------

    async def get_allowance(self, wallet_address: str) -> int:
        url = f"{self._config.faucet_url}/api/allowance"
        status, data = await self._request(
            "GET", url, params={"address": normalize_address(wallet_address)},
        )
        if status != 200 or not isinstance(data, dict) or "allowance" not in data:
            raise ApprovalRequestError(
                f"Allowance lookup for {wallet_address} failed ({status}): {_error_text(data)}",
                reason="allowance_unreadable",
            )
        return int(data["allowance"])

    async def approve(self, wallet_address: str) -> Optional[str]:
        url = f"{self._config.faucet_url}/api/approve"
        status, data = await self._request(
            "GET", url, params={"address": normalize_address(wallet_address)},
        )
        if status != 200 or _reports_failure(data):
            raise ApprovalRequestError(
                f"Approve for {wallet_address} rejected ({status}): "
                f"{_error_text(data) or _message_text(data)}"
            )
        return data.get("txHash") if isinstance(data, dict) else None

    async def fund(self, public_key: bytes, amount: int, precision: int) -> Optional[str]:
        url = f"{self._config.faucet_url}/api/fund"
        params = {
            "publicKey": public_key.hex(),
            "contractAddress": self._config.contract_address,
            "amount": str(amount),
            "precision": str(precision),
        }
        status, data = await self._request("GET", url, params=params)
        if status != 200 or _reports_failure(data):
            raise FundingRequestError(
                f"Funding for {short_hex(public_key)} rejected ({status}): "
                f"{_error_text(data) or _message_text(data)}"
            )
        return data.get("txHash") if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # AccountDirectory
    # ------------------------------------------------------------------

    async def probe_account(self, public_key: bytes) -> Optional[list[int]]:
        url = f"{self._config.web_server_url}/user"
        status, data = await self._request("GET", url, params={"pubkey": public_key.hex()})
        if status == 404:
            return None
        if status != 200 or not isinstance(data, dict):
            raise TransientNetworkError(
                f"Account probe for {short_hex(public_key)} returned {status}",
                status=status,
            )
        account_ids = data.get("accountIds") or []
        return [int(account_id) for account_id in account_ids] or None

    async def fetch_account_info(self, account_ids: Sequence[int]) -> AccountInfo:
        url = f"{self._config.web_server_url}/account"
        params = {"account_ids": ",".join(str(a) for a in account_ids)}
        status, data = await self._request("GET", url, params=params)
        if status == 404:
            raise AccountNotFoundError(f"Accounts {list(account_ids)} not found")
        if status != 200:
            raise TransientNetworkError(f"Account info returned {status}", status=status)
        try:
            return AccountInfo.model_validate(data or {})
        except ValidationError as err:
            raise TransientNetworkError(f"Malformed account info: {err}") from err

    # ------------------------------------------------------------------
    # SessionGateway
    # ------------------------------------------------------------------

    async def bind_session_key(
        self, wallet_address: str, public_key: bytes, signature: Union[bytes, str]
    ) -> None:
        url = f"{self._config.web_server_url}/session/key"
        payload = {
            "address": normalize_address(wallet_address),
            "publicKey": public_key.hex(),
            "signature": _signature_text(signature),
        }
        status, data = await self._request("POST", url, payload=payload)
        if status in (401, 403):
            raise SignatureError(
                f"Wallet signature rejected: {_error_text(data)}",
                reason="signature_invalid",
            )
        if status >= 400:
            raise SessionError(
                f"Session key binding failed ({status}): {_error_text(data)}",
                reason="bind_rejected",
            )

    async def create_session(self, public_key: bytes, sign: SessionSignFn) -> int:
        url = f"{self._config.web_server_url}/session"
        timestamp = int(time.time())
        message = orjson.dumps({"publicKey": public_key.hex(), "timestamp": timestamp})
        payload = {
            "publicKey": public_key.hex(),
            "timestamp": timestamp,
            "signature": sign(message).hex(),
        }
        status, data = await self._request("POST", url, payload=payload)
        if status == 404:
            raise AccountNotFoundError(f"No account for session key {short_hex(public_key)}")
        if status in (401, 403):
            raise SignatureError(
                f"Session signature rejected: {_error_text(data)}",
                reason="session_signature_invalid",
            )
        if status != 200 or not isinstance(data, dict) or "sessionId" not in data:
            raise SessionError(
                f"Session creation failed ({status}): {_error_text(data)}",
                reason="session_rejected",
            )
        return int(data["sessionId"])
