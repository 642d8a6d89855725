"""
Paygate CLI — operator tooling for paywalled servers.

Commands:
    paygate logical-id        Print the canonical identifier of a tool/resource/prompt
    paygate decode-token      Show the claims inside an access token
    paygate payment-required  Build (and encode) a payment requirement document
    paygate decode-header     Decode a payment-required / payment-response header
    paygate check             Ask the ledger whether a token may call an identifier
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click

from .config import PaywallConfig
from .credentials import decode_credential, strip_bearer
from .errors import PaygateError
from .logical_id import LogicalResource, ResourceKind
from .wire import DEFAULT_NETWORK, DEFAULT_SCHEME, build_payment_required, decode_header, encode_header


def _parse_args(pairs: tuple[str, ...]) -> dict[str, Any]:
    args: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--arg")
        try:
            args[key] = json.loads(value)
        except ValueError:
            args[key] = value
    return args


def _short(token: str) -> str:
    return f"{token[:10]}..." if len(token) > 10 else token


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Paygate — pay-per-call middleware for tool servers and agents."""
    pass


@main.command("logical-id")
@click.argument("kind", type=click.Choice([k.value for k in ResourceKind]))
@click.argument("name")
@click.option("--server", default=None, help="Server name (default: $PAYGATE_SERVER_NAME or mcp-server)")
@click.option("--arg", "arg_pairs", multiple=True, help="Call argument as key=value (repeatable)")
def logical_id(kind: str, name: str, server: str | None, arg_pairs: tuple[str, ...]):
    """Print the identifier the ledger sees for a call."""
    config = PaywallConfig.from_env(server_name=server)
    resource = LogicalResource(
        kind=ResourceKind(kind),
        server_name=config.server_name,
        name=name,
        arguments=_parse_args(arg_pairs),
    )
    click.echo(resource.identifier())


@main.command("decode-token")
@click.argument("token")
def decode_token(token: str):
    """Show subscriber, plan and raw claims of an access token (no signature check)."""
    try:
        decoded = decode_credential(strip_bearer(token))
    except ValueError as e:
        click.echo(f"❌ Cannot decode token: {e}", err=True)
        sys.exit(1)

    click.echo(f"Subscriber: {decoded.subscriber_address or '-'}")
    click.echo(f"Plan:       {decoded.plan_id or '-'}")
    click.echo(json.dumps(decoded.claims, indent=2, sort_keys=True))


@main.command("payment-required")
@click.argument("resource_id")
@click.argument("url")
@click.option("--description", default=None, help="Human-readable resource description")
@click.option("--agent-id", default=None, help="Owning agent identifier")
@click.option("--verb", default=None, help="HTTP method of the endpoint")
@click.option("--network", default=DEFAULT_NETWORK, show_default=True, help="CAIP-2 network")
@click.option("--scheme", default=DEFAULT_SCHEME, show_default=True, help="Payment scheme")
@click.option("--encode", is_flag=True, default=False, help="Print the base64 header value instead of JSON")
def payment_required(
    resource_id: str,
    url: str,
    description: str | None,
    agent_id: str | None,
    verb: str | None,
    network: str,
    scheme: str,
    encode: bool,
):
    """Build the requirement document a 402 response carries."""
    document = build_payment_required(
        resource_id,
        url,
        description=description,
        agent_id=agent_id,
        http_verb=verb,
        network=network,
        scheme=scheme,
    )
    if encode:
        click.echo(encode_header(document))
    else:
        click.echo(json.dumps(document, indent=2))


@main.command("decode-header")
@click.argument("value")
def decode_header_cmd(value: str):
    """Decode a base64 payment-required or payment-response header value."""
    try:
        document = decode_header(value.strip())
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(document, indent=2, sort_keys=True))


@main.command()
@click.argument("token")
@click.argument("identifier")
@click.option("--agent-id", default=None, help="Owning agent (default: $PAYGATE_AGENT_ID)")
@click.option("--method", default="POST", show_default=True, help="HTTP method reported to the ledger")
def check(token: str, identifier: str, agent_id: str | None, method: str):
    """Ask the ledger whether TOKEN may call IDENTIFIER (no credits are burned)."""
    config = PaywallConfig.from_env(agent_id=agent_id)
    if not config.agent_id:
        click.echo("❌ No agent id: pass --agent-id or set PAYGATE_AGENT_ID", err=True)
        sys.exit(1)

    async def _check():
        async with config.create_ledger() as ledger:
            return await ledger.start_request(config.agent_id, strip_bearer(token), identifier, method.upper())

    try:
        result = asyncio.run(_check())
    except PaygateError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if result.is_subscriber:
        click.echo(f"✅ {_short(token)} may call {identifier}")
        click.echo(f"   Request: {result.request_id}")
        click.echo(f"   Balance: {result.balance.get('balance', '-')}")
    else:
        click.echo(f"❌ {_short(token)} is not a subscriber for {identifier}")
        sys.exit(1)


if __name__ == "__main__":
    main()
