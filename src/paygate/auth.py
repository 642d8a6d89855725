"""
Authentication against the ledger.

Flow:
1. Extract the bearer credential (call context, then ambient request)
2. Start a metered request for the canonical logical identifier
3. On rejection, retry once with the raw HTTP URL of the ambient request
4. If both fail, deny with up to three suggested grants (best-effort)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .credentials import extract_credential
from .errors import PaymentRequiredError
from .ledger import Ledger, StartRequestResult
from .logical_id import LogicalResource, build_logical_id, build_meta_id
from .request_context import http_url_from_context

logger = logging.getLogger(__name__)

MAX_SUGGESTED_GRANTS = 3


@dataclass(frozen=True)
class AuthorizationRecord:
    """Who is calling, under which ledger request, for which identifier."""

    request_id: str
    credential: str
    resource_id: str
    logical_id: str
    is_subscriber: bool
    balance: dict[str, Any] = field(default_factory=dict)
    start_result: Optional[StartRequestResult] = field(default=None, repr=False)


class Authenticator:
    """Validates credentials against the ledger for a logical resource."""

    def __init__(self, ledger: Ledger, method: str = "POST"):
        self.ledger = ledger
        self.method = method

    async def authenticate(
        self,
        extra: Any,
        resource_id: str,
        resource: LogicalResource,
    ) -> AuthorizationRecord:
        return await self._authenticate(extra, resource_id, build_logical_id(resource))

    async def authenticate_meta(
        self,
        extra: Any,
        resource_id: str,
        server_name: str,
        method: str,
    ) -> AuthorizationRecord:
        """Authenticate protocol meta operations (initialize, tools/list, ...)."""
        return await self._authenticate(extra, resource_id, build_meta_id(server_name, method))

    async def _authenticate(self, extra: Any, resource_id: str, logical_id: str) -> AuthorizationRecord:
        credential = extract_credential(extra)
        if not credential:
            raise PaymentRequiredError("Authorization required", reason="missing")

        record, first_error = await self._try_start(resource_id, credential, logical_id)
        if record is not None:
            return record

        http_url = http_url_from_context()
        if http_url and http_url != logical_id:
            logger.debug(
                "Logical id %s rejected (%s), retrying with HTTP url %s",
                logical_id,
                first_error,
                http_url,
            )
            record, _ = await self._try_start(resource_id, credential, http_url)
            if record is not None:
                return record

        suggestions = await self._suggest_grants(resource_id)
        raise PaymentRequiredError(f"Payment required.{suggestions}", reason="invalid")

    async def _try_start(
        self, resource_id: str, credential: str, logical_id: str
    ) -> tuple[Optional[AuthorizationRecord], Optional[str]]:
        try:
            start = await self.ledger.start_request(resource_id, credential, logical_id, self.method)
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"
        if not start.is_subscriber:
            return None, "Not a subscriber"
        return (
            AuthorizationRecord(
                request_id=start.request_id,
                credential=credential,
                resource_id=resource_id,
                logical_id=logical_id,
                is_subscriber=True,
                balance=dict(start.balance),
                start_result=start,
            ),
            None,
        )

    async def _suggest_grants(self, resource_id: str) -> str:
        try:
            grants = await self.ledger.list_alternative_grants(resource_id)
        except Exception:
            logger.debug("Could not list grants for %s", resource_id, exc_info=True)
            return ""
        top = grants[:MAX_SUGGESTED_GRANTS]
        if not top:
            return ""
        return f" Available plans: {', '.join(g.describe() for g in top)}..."
