"""Payment service clients: identity directory, token registry and transfer executor.

All three talk to one HTTP payment service (``PaymentsConfig.api_url``):

- ``GET  /identities/{username}`` → ``{"username": ..., "address": ...}`` (404 = unknown)
- ``GET  /tokens/{symbol}``       → ``{"symbol": ..., "token_type": ..., "decimals": ...}``
- ``POST /transfers``             → ``{"tx_hash": ...}`` or an error body ``{"error": ...}``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from tempo.core.errors import ExecutionError
from tempo.scheduler.executors import ExecutionResult
from tempo.scheduler.models import PaymentPayload, ScheduleRecord

if TYPE_CHECKING:
    from tempo.channels.base import ChatTransport
    from tempo.config.models import PaymentsConfig

logger = logging.getLogger("tempo.executors.payments")


@dataclass
class Identity:
    username: str
    address: str


@dataclass
class TokenInfo:
    symbol: str
    token_type: str
    decimals: int


class PaymentServiceClient:
    """Thin httpx wrapper shared by the payment-service clients."""

    def __init__(self, config: PaymentsConfig) -> None:
        self._config = config

    def _headers(self) -> dict[str, str]:
        if self._config.api_key:
            return {"Authorization": f"Bearer {self._config.api_key}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self._config.api_url,
                timeout=self._config.timeout_seconds,
                headers=self._headers(),
            ) as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ExecutionError(f"Payment service unreachable: {exc}") from exc

    @staticmethod
    def _error_text(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"HTTP {resp.status_code}"


class IdentityDirectory(PaymentServiceClient):
    """Maps a chat handle to the wallet address registered for it."""

    async def resolve(self, username: str) -> Identity | None:
        handle = username.strip().lstrip("@")
        if not handle:
            return None
        resp = await self._request("GET", f"/identities/{handle}")
        if resp.status_code == 404:
            return None
        if resp.is_error:
            raise ExecutionError(f"Identity lookup failed: {self._error_text(resp)}")
        data = resp.json()
        if not data.get("address"):
            return None
        return Identity(username=data.get("username") or handle, address=data["address"])


class TokenRegistry(PaymentServiceClient):
    """Resolves token symbols; the rail's native token needs no request."""

    async def resolve(self, symbol: str) -> TokenInfo | None:
        symbol = symbol.strip().upper()
        if not symbol:
            return None
        if symbol == self._config.native_symbol.upper():
            return TokenInfo(
                symbol=self._config.native_symbol,
                token_type=self._config.native_token_type,
                decimals=self._config.native_decimals,
            )
        resp = await self._request("GET", f"/tokens/{symbol}")
        if resp.status_code == 404:
            return None
        if resp.is_error:
            raise ExecutionError(f"Token lookup failed: {self._error_text(resp)}")
        data = resp.json()
        try:
            return TokenInfo(
                symbol=data.get("symbol") or symbol,
                token_type=data["token_type"],
                decimals=int(data["decimals"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed token record for %s: %s", symbol, data)
            return None


class PaymentExecutor(PaymentServiceClient):
    """Submits a scheduled transfer and tells the group how it went."""

    def __init__(self, config: PaymentsConfig, transport: ChatTransport) -> None:
        super().__init__(config)
        self._transport = transport

    async def execute(self, record: ScheduleRecord) -> ExecutionResult:
        payload = record.payload
        if not isinstance(payload, PaymentPayload):
            raise ExecutionError(f"Schedule {record.id} is not a payment")

        try:
            tx_hash = await self._transfer(record, payload)
        except ExecutionError as exc:
            logger.warning("Scheduled payment %s failed: %s", record.id, exc.message)
            if payload.notify_on_failure:
                await self._transport.send_message(
                    record.group_id,
                    f"❌ Scheduled payment of {payload.display_amount} to "
                    f"@{payload.recipient_username} failed: {exc.message}",
                    thread_id=record.thread_id,
                )
            return ExecutionResult(success=False, error=exc.message)

        logger.info("Scheduled payment %s sent: %s", record.id, tx_hash)
        if payload.notify_on_success:
            text = f"✅ Sent {payload.display_amount} to @{payload.recipient_username}"
            if tx_hash:
                text += f"\nTx: {tx_hash}"
            await self._transport.send_message(record.group_id, text, thread_id=record.thread_id)
        return ExecutionResult(success=True, detail=tx_hash)

    async def _transfer(self, record: ScheduleRecord, payload: PaymentPayload) -> str:
        resp = await self._request(
            "POST",
            "/transfers",
            json={
                "group_id": record.group_id,
                "recipient_address": payload.recipient_address,
                "token_type": payload.token_type,
                "amount": str(payload.amount_smallest_units),
            },
            # unique per occurrence
            headers={"Idempotency-Key": f"{record.id}:{record.run_count + 1}"},
        )
        if resp.is_error:
            raise ExecutionError(self._error_text(resp))
        return str(resp.json().get("tx_hash", ""))
