"""
Paywall orchestrator.

Wraps a handler with authenticate -> execute -> resolve cost -> settle.

Call kinds are declared when a handler is protected, never sniffed:
- tool / prompt / endpoint handlers: ``handler(args, extra, paywall)``
- resource handlers: ``handler(uri, variables, extra, paywall)``

The wrapped callable keeps the original signature minus the trailing
paywall context, and is always a coroutine function.

Plain results are settled immediately and annotated under ``metadata``.
Async-iterable results are settled exactly once when the stream ends, is
closed early, or fails, and (by default) get a trailer element
``{"metadata": {...settlement...}}`` appended.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from .auth import Authenticator, AuthorizationRecord
from .config import PaywallConfig
from .credits import CreditsOption, CreditsResolver, validate_credits_option
from .errors import ConfigurationLockedError, MisconfigurationError
from .ledger import Ledger, SettlementOutcome
from .logical_id import LogicalResource, ResourceKind
from .request_context import http_url_from_context
from .settlement import RedemptionPolicy, SettlementEngine

logger = logging.getLogger(__name__)

TRAILER_KEY = "metadata"

StreamCallback = Callable[[SettlementOutcome], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class PaywallOptions:
    kind: ResourceKind
    name: str
    credits: Optional[CreditsOption] = None
    on_redeem_error: RedemptionPolicy = RedemptionPolicy.IGNORE
    emit_trailer: bool = True
    on_stream_complete: Optional[StreamCallback] = None

    @classmethod
    def tool(cls, name: str, **kwargs: Any) -> "PaywallOptions":
        return cls(kind=ResourceKind.TOOL, name=name, **kwargs)

    @classmethod
    def resource(cls, name: str, **kwargs: Any) -> "PaywallOptions":
        return cls(kind=ResourceKind.RESOURCE, name=name, **kwargs)

    @classmethod
    def prompt(cls, name: str, **kwargs: Any) -> "PaywallOptions":
        return cls(kind=ResourceKind.PROMPT, name=name, **kwargs)

    @classmethod
    def endpoint(cls, url: str = "", **kwargs: Any) -> "PaywallOptions":
        """An HTTP endpoint; an empty url means the ambient request's URL."""
        return cls(kind=ResourceKind.ENDPOINT, name=url, **kwargs)


@dataclass(frozen=True)
class PaywallContext:
    """Injected as the last argument of every protected handler."""

    auth: AuthorizationRecord
    credits: int

    @property
    def request_id(self) -> str:
        return self.auth.request_id


class Paywall:
    """Creates paywall-protected handlers for one owning agent."""

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[PaywallConfig] = None,
        authenticator: Optional[Authenticator] = None,
        credits_resolver: Optional[CreditsResolver] = None,
        settlement: Optional[SettlementEngine] = None,
    ):
        self.ledger = ledger
        self._config = config or PaywallConfig()
        self.authenticator = authenticator or Authenticator(ledger)
        self.credits = credits_resolver or CreditsResolver()
        self.settlement = settlement or SettlementEngine(ledger)
        self._accepting = False

    @property
    def config(self) -> PaywallConfig:
        return self._config

    def configure(self, agent_id: Optional[str] = None, server_name: Optional[str] = None) -> None:
        """Change agent id / server name; illegal once a call has been accepted."""
        if self._accepting:
            raise ConfigurationLockedError("Paywall configuration is locked after the first call")
        self._config = dataclasses.replace(
            self._config,
            agent_id=agent_id or self._config.agent_id,
            server_name=server_name if server_name is not None else self._config.server_name,
        )

    def protect(self, handler: Callable[..., Any], options: PaywallOptions) -> Callable[..., Awaitable[Any]]:
        validate_credits_option(options.credits)
        kind = ResourceKind(options.kind)

        if kind is ResourceKind.RESOURCE:

            async def wrapped_resource(uri: Any, variables: Optional[dict] = None, extra: Any = None) -> Any:
                variables = variables or {}
                resource = self._resource_for(options, variables)
                return await self._run(handler, options, resource, variables, (uri, variables, extra), extra)

            return _named(wrapped_resource, handler)

        async def wrapped(args: Any = None, extra: Any = None) -> Any:
            resource = self._resource_for(options, args)
            return await self._run(handler, options, resource, args, (args, extra), extra)

        return _named(wrapped, handler)

    def paywalled(self, options: PaywallOptions) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
        """Decorator form of protect()."""
        return lambda handler: self.protect(handler, options)

    async def authenticate_meta(self, extra: Any, method: str) -> AuthorizationRecord:
        """Gate a protocol meta operation (initialize, tools/list, ...) without charging."""
        self._require_agent_id()
        return await self.authenticator.authenticate_meta(
            extra, self._config.agent_id, self._config.server_name, method
        )

    def _resource_for(self, options: PaywallOptions, args: Any) -> LogicalResource:
        self._require_agent_id()
        name = options.name
        if ResourceKind(options.kind) is ResourceKind.ENDPOINT and not name:
            name = http_url_from_context() or ""
            if not name:
                raise MisconfigurationError("Endpoint paywall needs a url or an ambient request context")
        return LogicalResource(
            kind=ResourceKind(options.kind),
            server_name=self._config.server_name,
            name=name,
            arguments=args if isinstance(args, dict) else {},
        )

    def _require_agent_id(self) -> str:
        if not self._config.agent_id:
            raise MisconfigurationError("Server misconfiguration: missing agentId")
        return self._config.agent_id

    async def _run(
        self,
        handler: Callable[..., Any],
        options: PaywallOptions,
        resource: LogicalResource,
        call_args: Any,
        positional: tuple,
        extra: Any,
    ) -> Any:
        self._accepting = True
        auth = await self.authenticator.authenticate(extra, self._config.agent_id, resource)

        provisional = self.credits.resolve(options.credits, call_args, None, auth)
        context = PaywallContext(auth=auth, credits=provisional)

        result = handler(*positional, context)
        if inspect.isawaitable(result):
            result = await result

        if hasattr(result, "__aiter__"):
            return self._settle_stream(result, options, call_args, auth)

        credits = self.credits.resolve(options.credits, call_args, result, auth)
        outcome = await self.settlement.settle(auth.request_id, auth.credential, credits, options.on_redeem_error)
        return attach_metadata(result, outcome.to_metadata(auth.request_id))

    async def _settle_stream(
        self,
        stream: Any,
        options: PaywallOptions,
        call_args: Any,
        auth: AuthorizationRecord,
    ) -> AsyncIterator[Any]:
        produced: list[Any] = []
        try:
            async for chunk in stream:
                produced.append(chunk)
                yield chunk
        finally:
            try:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            finally:
                credits = self.credits.resolve(options.credits, call_args, produced, auth)
                outcome = await self.settlement.settle(
                    auth.request_id, auth.credential, credits, options.on_redeem_error
                )
                await self._notify_stream_complete(options, outcome)

        if options.emit_trailer:
            yield {TRAILER_KEY: outcome.to_metadata(auth.request_id)}

    async def _notify_stream_complete(self, options: PaywallOptions, outcome: SettlementOutcome) -> None:
        if options.on_stream_complete is None:
            return
        try:
            ret = options.on_stream_complete(outcome)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            logger.exception("Stream completion callback failed for %s", options.name)


def is_trailer(element: Any) -> bool:
    """True for the synthetic settlement element appended to streams."""
    if not isinstance(element, dict) or set(element) != {TRAILER_KEY}:
        return False
    meta = element[TRAILER_KEY]
    return isinstance(meta, dict) and {"requestId", "creditsRedeemed", "success"} <= set(meta)


def attach_metadata(result: Any, metadata: dict) -> Any:
    """Merge settlement metadata into result['metadata'] or result.metadata."""
    if isinstance(result, MutableMapping):
        existing = result.get(TRAILER_KEY)
        result[TRAILER_KEY] = {**(existing if isinstance(existing, dict) else {}), **metadata}
        return result
    if result is not None and hasattr(result, "__dict__"):
        existing = getattr(result, TRAILER_KEY, None)
        try:
            setattr(result, TRAILER_KEY, {**(existing if isinstance(existing, dict) else {}), **metadata})
        except (AttributeError, TypeError):
            logger.debug("Cannot attach settlement metadata to %s", type(result).__name__)
        return result
    logger.debug("Result of type %s carries no metadata field", type(result).__name__)
    return result


def _named(wrapper: Callable[..., Any], handler: Callable[..., Any]) -> Callable[..., Any]:
    wrapper.__name__ = getattr(handler, "__name__", wrapper.__name__)
    wrapper.__qualname__ = getattr(handler, "__qualname__", wrapper.__qualname__)
    wrapper.__doc__ = getattr(handler, "__doc__", None)
    return wrapper
