"""
FastAPI / Starlette transport adapter.

- RequestContextMiddleware binds the ambient request context per request.
- PaymentMiddleware paywalls plain HTTP routes: verify before the handler,
  settle after a successful response, and report the receipt in the
  `payment-response` header. Failures answer 402 with a `payment-required`
  header describing how to obtain access.
- install_exception_handlers maps paygate errors raised inside route
  handlers to their HTTP shape.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from .credentials import strip_bearer
from .errors import PaygateError, PaymentRequiredError, SettlementFailedError
from .ledger import Ledger, SettleParams, SettlementOutcome
from .request_context import bind_request_context
from .settlement import RedemptionPolicy
from .wire import (
    DEFAULT_NETWORK,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    build_payment_required,
    encode_payment_response,
    to_http_error,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_HEADERS = (PAYMENT_SIGNATURE_HEADER, "authorization")

RouteCredits = Union[int, Callable[[Request], Union[int, Awaitable[int]]]]


class RequestContextMiddleware:
    """Pure ASGI middleware: the context lives as long as the response body."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers: dict[str, str] = {}
        for raw_key, raw_value in scope.get("headers") or []:
            headers.setdefault(raw_key.decode("latin-1").lower(), raw_value.decode("latin-1"))
        with bind_request_context(headers, url=scope.get("path"), method=scope.get("method")):
            await self.app(scope, receive, send)


@dataclass(frozen=True)
class RouteConfig:
    """Paywall settings for one "METHOD /path" route."""

    resource_id: str
    credits: RouteCredits = 1
    agent_id: Optional[str] = None
    description: Optional[str] = None
    network: str = DEFAULT_NETWORK
    on_redeem_error: RedemptionPolicy = RedemptionPolicy.IGNORE


@dataclass(frozen=True)
class PaymentContext:
    """Stored on request.state.payment for route handlers."""

    token: str
    payment_required: dict[str, Any]
    credits: int
    request_id: Optional[str] = None


@dataclass(frozen=True)
class _CompiledRoute:
    method: Optional[str]
    pattern: re.Pattern
    config: RouteConfig


def compile_route(key: str, config: RouteConfig) -> _CompiledRoute:
    """Compile "GET /items/:id" (method optional) into a matcher."""
    method, _, path = key.strip().partition(" ")
    if not path:
        method, path = "", method
    parts = []
    for segment in path.strip("/").split("/"):
        if segment.startswith(":"):
            parts.append(r"[^/]+")
        elif segment == "*":
            parts.append(r".*")
        else:
            parts.append(re.escape(segment))
    regex = "^/" + "/".join(p for p in parts if p) + "/?$"
    return _CompiledRoute(method=method.upper() or None, pattern=re.compile(regex), config=config)


class PaymentMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        ledger: Ledger,
        routes: dict[str, RouteConfig],
        token_headers: Iterable[str] = DEFAULT_TOKEN_HEADERS,
    ):
        super().__init__(app)
        self.ledger = ledger
        self.routes = [compile_route(key, cfg) for key, cfg in routes.items()]
        self.token_headers = tuple(h.lower() for h in token_headers)

    def match(self, method: str, path: str) -> Optional[RouteConfig]:
        for route in self.routes:
            if route.method and route.method != method.upper():
                continue
            if route.pattern.match(path):
                return route.config
        return None

    def extract_token(self, request: Request) -> Optional[str]:
        for name in self.token_headers:
            value = request.headers.get(name)
            if value:
                return strip_bearer(value) or None
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        config = self.match(request.method, request.url.path)
        if config is None:
            return await call_next(request)

        payment_required = build_payment_required(
            config.resource_id,
            str(request.url),
            description=config.description,
            agent_id=config.agent_id,
            http_verb=request.method,
            network=config.network,
        )

        token = self.extract_token(request)
        if not token:
            return _error_response(
                PaymentRequiredError(
                    f"Missing payment token. Send it in the {PAYMENT_SIGNATURE_HEADER} header.",
                    reason="missing",
                ),
                payment_required,
            )

        credits = await _route_credits(config, request)
        params = SettleParams(resource_id=config.resource_id, credits=credits, credential=token)

        try:
            verification = await self.ledger.verify(params)
        except Exception as e:
            logger.warning("Verification error for %s %s: %s", request.method, request.url.path, e)
            return _error_response(PaymentRequiredError(str(e), reason="invalid"), payment_required)
        if not verification.is_valid:
            reason = verification.invalid_reason or "Insufficient credits or invalid token"
            return _error_response(PaymentRequiredError(reason, reason="invalid"), payment_required)

        request.state.payment = PaymentContext(
            token=token,
            payment_required=payment_required,
            credits=credits,
            request_id=verification.request_id,
        )

        response = await call_next(request)
        if response.status_code >= 400:
            return response

        outcome = await self._settle(params, config, verification.request_id)
        if outcome is None:
            if RedemptionPolicy(config.on_redeem_error) is RedemptionPolicy.PROPAGATE:
                return _error_response(SettlementFailedError("Failed to settle credits", verification.request_id))
            outcome = SettlementOutcome(success=False, transaction_ref="", credits_redeemed=params.credits)
        response.headers[PAYMENT_RESPONSE_HEADER] = encode_payment_response(outcome)
        return response

    async def _settle(
        self, params: SettleParams, config: RouteConfig, request_id: Optional[str]
    ) -> Optional[SettlementOutcome]:
        if params.credits <= 0:
            return SettlementOutcome(success=True, transaction_ref="", credits_redeemed=0)
        try:
            outcome = await self.ledger.settle(params)
        except Exception as e:
            logger.warning("Settlement of %d credits for %s failed: %s", params.credits, request_id or "-", e)
            return None
        if not outcome.success:
            logger.warning("Ledger rejected settlement for %s: %s", request_id or "-", outcome.error)
            return None
        logger.info(
            "Settled %d credits for %s (tx: %s)",
            outcome.credits_redeemed,
            params.resource_id,
            outcome.transaction_ref or "-",
        )
        return outcome


def install_exception_handlers(
    app: FastAPI,
    payment_required_for: Optional[Callable[[Request], Optional[dict[str, Any]]]] = None,
) -> None:
    """Map PaygateError raised in route handlers to 402/500/502 responses."""

    async def handle(request: Request, exc: Exception) -> Response:
        document = None
        if payment_required_for is not None and isinstance(exc, PaymentRequiredError):
            document = payment_required_for(request)
        return _error_response(exc, document)

    app.add_exception_handler(PaygateError, handle)


async def _route_credits(config: RouteConfig, request: Request) -> int:
    if not callable(config.credits):
        return int(config.credits)
    value = config.credits(request)
    if inspect.isawaitable(value):
        value = await value
    return max(int(value), 0)


def _error_response(exc: Exception, payment_required: Optional[dict[str, Any]] = None) -> JSONResponse:
    status, headers, body = to_http_error(exc, payment_required)
    return JSONResponse(status_code=status, content=body, headers=headers)
