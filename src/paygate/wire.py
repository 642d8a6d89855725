"""
Wire mapping for paywall failures and receipts.

One error taxonomy, three surfaces:
- JSON-RPC error objects for tool/agent protocols
- HTTP status + headers for plain endpoints (402 + payment-required)
- the requirement document clients use to acquire a credential
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Optional

from .errors import (
    LedgerError,
    MisconfigurationError,
    PaymentRequiredError,
    SettlementFailedError,
)
from .ledger import SettlementOutcome

logger = logging.getLogger(__name__)

X402_VERSION = 2
DEFAULT_SCHEME = "nvm:erc4337"
DEFAULT_NETWORK = "eip155:84532"

PAYMENT_SIGNATURE_HEADER = "payment-signature"
PAYMENT_REQUIRED_HEADER = "payment-required"
PAYMENT_RESPONSE_HEADER = "payment-response"

ERROR_CODES = {
    "Misconfiguration": -32002,
    "PaymentRequired": -32003,
}
INTERNAL_ERROR_CODE = -32603


def build_payment_required(
    resource_id: str,
    url: str,
    description: Optional[str] = None,
    agent_id: Optional[str] = None,
    http_verb: Optional[str] = None,
    network: str = DEFAULT_NETWORK,
    scheme: str = DEFAULT_SCHEME,
) -> dict[str, Any]:
    """Requirement document telling a client which grant unlocks a resource."""
    extra: dict[str, Any] = {"version": "1"}
    if agent_id:
        extra["agentId"] = agent_id
    if http_verb:
        extra["httpVerb"] = http_verb.upper()

    resource: dict[str, Any] = {"url": url}
    if description:
        resource["description"] = description

    return {
        "x402Version": X402_VERSION,
        "resource": resource,
        "accepts": [
            {
                "scheme": scheme,
                "network": network,
                "resourceId": resource_id,
                "planId": resource_id,
                "extra": extra,
            }
        ],
        "extensions": {},
    }


def encode_header(document: Any) -> str:
    return base64.b64encode(json.dumps(document, separators=(",", ":")).encode()).decode()


def decode_header(value: str) -> Any:
    """Inverse of encode_header. Raises ValueError on malformed input."""
    try:
        raw = base64.b64decode(value + "=" * (-len(value) % 4), validate=False)
        return json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Malformed header value: {e}") from e


def encode_payment_response(outcome: SettlementOutcome) -> str:
    return encode_header(outcome.to_dict())


def to_jsonrpc_error(exc: BaseException, request_id: Any = None) -> dict[str, Any]:
    """Render an exception as a JSON-RPC 2.0 error response."""
    if isinstance(exc, PaymentRequiredError):
        error = {"code": ERROR_CODES["PaymentRequired"], "message": str(exc), "data": exc.data}
    elif isinstance(exc, MisconfigurationError):
        error = {"code": ERROR_CODES["Misconfiguration"], "message": str(exc)}
    else:
        logger.error("Unmapped error surfaced to JSON-RPC caller: %r", exc)
        error = {"code": INTERNAL_ERROR_CODE, "message": "Internal error"}
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def to_http_error(
    exc: BaseException,
    payment_required: Optional[dict[str, Any]] = None,
) -> tuple[int, dict[str, str], dict[str, Any]]:
    """Render an exception as (status, headers, json body)."""
    if isinstance(exc, PaymentRequiredError):
        headers = {}
        if payment_required is not None:
            headers[PAYMENT_REQUIRED_HEADER] = encode_header(payment_required)
        return 402, headers, {"error": "Payment Required", "message": str(exc), "reason": exc.reason}
    if isinstance(exc, MisconfigurationError):
        return 500, {}, {"error": "Misconfiguration", "message": str(exc)}
    if isinstance(exc, (SettlementFailedError, LedgerError)):
        return 502, {}, {"error": "Settlement Failed", "message": str(exc)}
    logger.error("Unmapped error surfaced to HTTP caller: %r", exc)
    return 500, {}, {"error": "Internal Server Error", "message": "Internal error"}
