"""Canonical identifiers for paywalled tools, resources, prompts and endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import urlencode, urlparse


class ResourceKind(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"
    PROMPT = "prompt"
    ENDPOINT = "endpoint"


GENERIC_NAME = "tool"


@dataclass(frozen=True)
class LogicalResource:
    kind: ResourceKind
    server_name: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def identifier(self) -> str:
        return build_logical_id(self)


def build_logical_id(resource: LogicalResource) -> str:
    kind = ResourceKind(resource.kind)
    if kind is ResourceKind.ENDPOINT:
        return resource.name
    if kind is ResourceKind.RESOURCE:
        return _with_query(
            f"mcp://{resource.server_name}/resources/{resource.name}",
            {k: _first(v) for k, v in _as_mapping(resource.arguments).items()},
        )
    # tools and prompts share the tool shape
    return _with_query(
        f"mcp://{resource.server_name}/tools/{resource.name}",
        {k: v if isinstance(v, str) else json.dumps(v, sort_keys=True) for k, v in _as_mapping(resource.arguments).items()},
    )


def build_meta_id(server_name: str, method: str) -> str:
    """Identifier for protocol meta operations such as initialize or tools/list."""
    return f"mcp://{server_name}/{method}"


def derived_name(logical_id: str) -> str:
    """Last non-empty path segment of an identifier, or a generic placeholder."""
    parsed = urlparse(logical_id)
    if not parsed.scheme:
        return GENERIC_NAME
    # mcp://server/tools/name: netloc is the server, the name lives in the path
    segments = [s for s in parsed.path.split("/") if s]
    return segments[-1] if segments else GENERIC_NAME


def _with_query(base: str, params: Mapping[str, Any]) -> str:
    if not params:
        return base
    ordered = sorted((str(k), str(v)) for k, v in params.items())
    return f"{base}?{urlencode(ordered)}"


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


def _as_mapping(value: Optional[Any]) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}
