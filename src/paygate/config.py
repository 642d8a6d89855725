"""
Paywall configuration.

Explicit arguments win over environment variables:
    PAYGATE_AGENT_ID          owning resource (agent) identifier
    PAYGATE_SERVER_NAME       logical server name used in identifiers
    PAYGATE_LEDGER_URL        ledger backend base URL
    PAYGATE_API_KEY           ledger backend API key
    PAYGATE_TIMEOUT_SECONDS   ledger request timeout
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .errors import MisconfigurationError
from .ledger import DEFAULT_LEDGER_URL, DEFAULT_TIMEOUT_SECONDS, HTTPLedgerClient

PAYGATE_AGENT_ID_ENV = "PAYGATE_AGENT_ID"
PAYGATE_SERVER_NAME_ENV = "PAYGATE_SERVER_NAME"
PAYGATE_LEDGER_URL_ENV = "PAYGATE_LEDGER_URL"
PAYGATE_API_KEY_ENV = "PAYGATE_API_KEY"
PAYGATE_TIMEOUT_SECONDS_ENV = "PAYGATE_TIMEOUT_SECONDS"

DEFAULT_SERVER_NAME = "mcp-server"


@dataclass(frozen=True)
class PaywallConfig:
    agent_id: str = ""
    server_name: str = DEFAULT_SERVER_NAME
    ledger_url: str = DEFAULT_LEDGER_URL
    api_key: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(
        cls,
        *,
        agent_id: str | None = None,
        server_name: str | None = None,
        ledger_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
    ) -> "PaywallConfig":
        raw_timeout = os.getenv(PAYGATE_TIMEOUT_SECONDS_ENV)
        if timeout_seconds is None and raw_timeout:
            try:
                timeout_seconds = float(raw_timeout)
            except ValueError as e:
                raise MisconfigurationError(
                    f"{PAYGATE_TIMEOUT_SECONDS_ENV} must be a number, got {raw_timeout!r}"
                ) from e

        return cls(
            agent_id=agent_id or os.getenv(PAYGATE_AGENT_ID_ENV, ""),
            server_name=server_name or os.getenv(PAYGATE_SERVER_NAME_ENV) or DEFAULT_SERVER_NAME,
            ledger_url=ledger_url or os.getenv(PAYGATE_LEDGER_URL_ENV) or DEFAULT_LEDGER_URL,
            api_key=api_key or os.getenv(PAYGATE_API_KEY_ENV),
            timeout_seconds=timeout_seconds if timeout_seconds is not None else DEFAULT_TIMEOUT_SECONDS,
        )

    def create_ledger(self) -> HTTPLedgerClient:
        return HTTPLedgerClient(
            base_url=self.ledger_url,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
        )
