"""
Ledger collaborator.

The remote ledger owns plans, balances and the actual credit mutation. The
paywall talks to it through the narrow `Ledger` protocol; `HTTPLedgerClient`
is the default implementation over the backend's JSON API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx

from .errors import LedgerError

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_URL = "https://api.sandbox.nevermined.app"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class StartRequestResult:
    request_id: str
    is_subscriber: bool
    balance: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StartRequestResult":
        balance = data.get("balance") or {}
        return cls(
            request_id=str(data.get("agentRequestId") or data.get("requestId") or ""),
            is_subscriber=bool(balance.get("isSubscriber", False)),
            balance=dict(balance),
            raw=dict(data),
        )


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of a redeem/settle attempt. Produced even when settlement fails."""

    success: bool
    transaction_ref: str = ""
    credits_redeemed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transactionRef": self.transaction_ref,
            "creditsRedeemed": str(self.credits_redeemed),
        }

    def to_metadata(self, request_id: str) -> dict:
        return {
            "transactionRef": self.transaction_ref,
            "requestId": request_id,
            "creditsRedeemed": str(self.credits_redeemed),
            "success": self.success,
        }


@dataclass(frozen=True)
class VerifyResult:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class SettleParams:
    resource_id: str
    credits: int
    credential: str
    subscriber_address: Optional[str] = None
    batch: bool = False


@dataclass(frozen=True)
class Grant:
    id: str
    name: Optional[str] = None

    def describe(self) -> str:
        return f"{self.id} ({self.name})" if self.name else self.id


class Ledger(Protocol):
    async def start_request(
        self, resource_id: str, credential: str, logical_id: str, method: str
    ) -> StartRequestResult: ...

    async def redeem(self, request_id: str, credential: str, credits: int) -> SettlementOutcome: ...

    async def verify(self, params: SettleParams) -> VerifyResult: ...

    async def settle(self, params: SettleParams) -> SettlementOutcome: ...

    async def list_alternative_grants(self, resource_id: str) -> list[Grant]: ...


class HTTPLedgerClient:
    """Ledger backed by the remote JSON API."""

    def __init__(
        self,
        base_url: str = DEFAULT_LEDGER_URL,
        api_key: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def start_request(
        self, resource_id: str, credential: str, logical_id: str, method: str
    ) -> StartRequestResult:
        data = await self._post(
            "/api/v1/protocol/agents/initialize",
            {
                "agentId": resource_id,
                "accessToken": credential,
                "endpoint": logical_id,
                "httpVerb": method,
            },
        )
        return StartRequestResult.from_dict(data)

    async def redeem(self, request_id: str, credential: str, credits: int) -> SettlementOutcome:
        data = await self._post(
            "/api/v1/protocol/agents/redeem",
            {
                "agentRequestId": request_id,
                "accessToken": credential,
                "amount": str(credits),
            },
        )
        return SettlementOutcome(
            success=bool(data.get("success", False)),
            transaction_ref=str(data.get("txHash") or data.get("transaction") or ""),
            credits_redeemed=credits,
        )

    async def verify(self, params: SettleParams) -> VerifyResult:
        data = await self._post("/api/v1/x402/verify", _settle_body(params))
        return VerifyResult(
            is_valid=bool(data.get("isValid", False)),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
            request_id=data.get("agentRequestId"),
        )

    async def settle(self, params: SettleParams) -> SettlementOutcome:
        data = await self._post("/api/v1/x402/settle", _settle_body(params))
        redeemed = data.get("creditsRedeemed")
        return SettlementOutcome(
            success=bool(data.get("success", False)),
            transaction_ref=str(data.get("transaction") or ""),
            credits_redeemed=int(redeemed) if redeemed is not None else params.credits,
            error=data.get("errorReason"),
        )

    async def list_alternative_grants(self, resource_id: str) -> list[Grant]:
        data = await self._request("GET", f"/api/v1/protocol/agents/{quote(resource_id, safe='')}/plans")
        grants = []
        for entry in data.get("plans", []) or []:
            grant_id = entry.get("planId") or entry.get("id") or "plan"
            name = entry.get("name") or (entry.get("metadata") or {}).get("name")
            grants.append(Grant(id=str(grant_id), name=name))
        return grants

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", path, body)

    async def _request(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        logger.debug("Ledger %s %s", method, path)
        try:
            response = await self._http.request(method, path, json=body)
        except httpx.TimeoutException as e:
            raise LedgerError(504, f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            raise LedgerError(503, f"Connection failed: {e}") from e
        return _json_or_raise(response)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HTTPLedgerClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()


def _settle_body(params: SettleParams) -> dict[str, Any]:
    body: dict[str, Any] = {
        "x402AccessToken": params.credential,
        "resourceId": params.resource_id,
        "maxAmount": str(params.credits),
    }
    if params.subscriber_address:
        body["subscriberAddress"] = params.subscriber_address
    if params.batch:
        body["batch"] = True
    return body


def _json_or_raise(response: httpx.Response) -> dict[str, Any]:
    if response.status_code >= 400:
        message = response.text[:200]
        try:
            payload = response.json()
            if isinstance(payload, dict) and payload.get("message"):
                message = str(payload["message"])
        except ValueError:
            pass
        raise LedgerError(response.status_code, message)
    try:
        data = response.json()
    except ValueError as e:
        raise LedgerError(response.status_code, "Malformed JSON response") from e
    return data if isinstance(data, dict) else {"data": data}
