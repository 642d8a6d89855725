"""
Bearer credential extraction and decoding.

Only two sources are consulted, in order: the header bag carried on the
call's own context object, then the ambient request context. Query
parameters, bodies and environment variables are never read.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import jwt

from .request_context import RequestContext, current_request_context, header_lookup


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

BEARER_PREFIX = "Bearer "


def extract_auth_header(extra: Any) -> Optional[str]:
    """Read the raw Authorization header from a call context, ambient fallback."""
    headers = _headers_from_extra(extra)
    value = header_lookup(headers, "authorization") if headers is not None else None
    if value:
        return value
    ambient = current_request_context()
    if ambient is not None:
        return ambient.header("authorization")
    return None


def strip_bearer(header: str) -> str:
    if header.startswith(BEARER_PREFIX):
        return header[len(BEARER_PREFIX):].strip()
    return header


def extract_credential(extra: Any) -> Optional[str]:
    """Return the bearer credential for this call, or None when absent."""
    header = extract_auth_header(extra)
    if not header:
        return None
    return strip_bearer(header) or None


def build_extra_from_headers(headers: Mapping[str, object]) -> dict:
    """Normalize raw HTTP headers into the call-context shape the paywall reads."""
    return {"request_info": {"headers": dict(headers)}}


def _headers_from_extra(extra: Any) -> Optional[Mapping[str, object]]:
    if extra is None:
        return None
    if isinstance(extra, RequestContext):
        return extra.headers
    if isinstance(extra, Mapping):
        info = extra.get("request_info") or extra.get("requestInfo")
    else:
        info = getattr(extra, "request_info", None)
    if info is None:
        return None
    headers = info.get("headers") if isinstance(info, Mapping) else getattr(info, "headers", None)
    if headers is None or not hasattr(headers, "items"):
        return None
    return headers


@dataclass(frozen=True)
class DecodedCredential:
    claims: dict[str, Any]
    subscriber_address: Optional[str]
    plan_id: Optional[str]


def decode_credential(credential: str) -> DecodedCredential:
    """Read the claims of an access token without verifying its signature.

    Accepts both compact JWTs and base64-encoded JSON documents. Signature
    checks belong to the ledger, which receives the token verbatim.
    """
    claims = _decode_claims(credential)
    auth_token = claims.get("authToken") if isinstance(claims.get("authToken"), dict) else {}

    subscriber = (
        auth_token.get("sub")
        or claims.get("subscriberAddress")
        or claims.get("sub")
        or _nested(claims, "payload", "authorization", "from")
    )
    plan_id = auth_token.get("planId") or claims.get("planId") or _nested(claims, "accepted", "planId")

    return DecodedCredential(
        claims=claims,
        subscriber_address=normalize_address(subscriber) if _is_address(subscriber) else subscriber,
        plan_id=None if plan_id is None else str(plan_id),
    )


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def _decode_claims(credential: str) -> dict[str, Any]:
    if credential.count(".") == 2:
        try:
            claims = jwt.decode(credential, options={"verify_signature": False})
            if isinstance(claims, dict):
                return claims
        except jwt.InvalidTokenError:
            pass

    padded = credential + "=" * (-len(credential) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            raw = decoder(padded)
            claims = json.loads(raw)
        except (binascii.Error, ValueError):
            continue
        if isinstance(claims, dict):
            return claims
    raise ValueError("Credential is neither a JWT nor base64-encoded JSON")


def _nested(data: dict, *keys: str) -> Any:
    current: Any = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current
