"""
Ambient request context.

The outermost transport adapter binds the inbound request's headers, path and
method before dispatching, so code behind third-party callback boundaries
(which never receives the request object) can still read them. Each asyncio
task and thread sees only its own value.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Optional


@dataclass(frozen=True)
class RequestContext:
    headers: dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    method: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        return header_lookup(self.headers, name)


_current: ContextVar[Optional[RequestContext]] = ContextVar("paygate_request_context", default=None)


def current_request_context() -> Optional[RequestContext]:
    return _current.get()


@contextmanager
def bind_request_context(
    headers: Mapping[str, object],
    url: Optional[str] = None,
    method: Optional[str] = None,
) -> Iterator[RequestContext]:
    """Make a request visible to nested code for the duration of the block."""
    ctx = RequestContext(headers=_flatten_headers(headers), url=url, method=method)
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


def http_url_from_context(ctx: Optional[RequestContext] = None) -> Optional[str]:
    """Rebuild the absolute URL the caller hit, or None when not derivable."""
    ctx = ctx if ctx is not None else current_request_context()
    if ctx is None:
        return None
    host = ctx.header("host") or ctx.header("x-forwarded-host")
    if not host:
        return None
    protocol = ctx.header("x-forwarded-proto") or "http"
    path = ctx.url or "/mcp"
    return f"{protocol}://{host}{path}"


def header_lookup(headers: Mapping[str, object], name: str) -> Optional[str]:
    """Case-insensitive header read; repeated headers yield the first value."""
    target = name.lower()
    for k, v in headers.items():
        if str(k).lower() != target:
            continue
        if isinstance(v, (list, tuple)):
            return str(v[0]) if v else None
        return None if v is None else str(v)
    return None


def _flatten_headers(headers: Mapping[str, object]) -> dict[str, str]:
    flat: dict[str, str] = {}
    for k, v in headers.items():
        key = str(k).lower()
        if key in flat:
            continue
        if isinstance(v, (list, tuple)):
            if not v:
                continue
            v = v[0]
        if v is not None:
            flat[key] = str(v)
    return flat
