"""Tests for the operator CLI."""

import json

import jwt
from click.testing import CliRunner

from paygate import cli as cli_module
from paygate.cli import main
from paygate.ledger import StartRequestResult
from paygate.wire import decode_header, encode_header


def test_logical_id_tool(monkeypatch):
    monkeypatch.delenv("PAYGATE_SERVER_NAME", raising=False)
    result = CliRunner().invoke(main, ["logical-id", "tool", "forecast", "--arg", "city=Paris", "--arg", "days=3"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "mcp://mcp-server/tools/forecast?city=Paris&days=3"


def test_logical_id_resource_with_server():
    result = CliRunner().invoke(main, ["logical-id", "resource", "page", "--server", "docs", "--arg", "id=7"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "mcp://docs/resources/page?id=7"


def test_logical_id_bad_arg():
    result = CliRunner().invoke(main, ["logical-id", "tool", "t", "--arg", "novalue"])
    assert result.exit_code != 0
    assert "key=value" in result.output


def test_decode_token():
    token = jwt.encode({"sub": "0x" + "AB" * 20, "planId": "plan-1"}, "paygate-test-signing-secret-0123456789", algorithm="HS256")
    result = CliRunner().invoke(main, ["decode-token", f"Bearer {token}"])
    assert result.exit_code == 0, result.output
    assert "Subscriber: 0x" + "ab" * 20 in result.output
    assert "Plan:       plan-1" in result.output


def test_decode_token_garbage():
    result = CliRunner().invoke(main, ["decode-token", "%%%"])
    assert result.exit_code == 1


def test_payment_required_encoded_round_trip():
    result = CliRunner().invoke(
        main,
        ["payment-required", "plan-1", "https://api.test/ask", "--agent-id", "agent-1", "--verb", "get", "--encode"],
    )
    assert result.exit_code == 0, result.output
    doc = decode_header(result.output.strip())
    assert doc["accepts"][0]["planId"] == "plan-1"
    assert doc["accepts"][0]["extra"]["httpVerb"] == "GET"


def test_payment_required_json():
    result = CliRunner().invoke(main, ["payment-required", "plan-1", "https://api.test/ask", "--description", "Ask"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["resource"]["description"] == "Ask"


def test_decode_header():
    value = encode_header({"success": True, "transactionRef": "0x1", "creditsRedeemed": "2"})
    result = CliRunner().invoke(main, ["decode-header", value])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["creditsRedeemed"] == "2"


def test_check_requires_agent_id(monkeypatch):
    monkeypatch.delenv("PAYGATE_AGENT_ID", raising=False)
    result = CliRunner().invoke(main, ["check", "tok", "mcp://s/tools/t"])
    assert result.exit_code == 1
    assert "No agent id" in result.output


def test_check_subscriber(monkeypatch):
    calls = []

    class StubLedger:
        async def start_request(self, resource_id, credential, logical_id, method):
            calls.append((resource_id, credential, logical_id, method))
            return StartRequestResult(request_id="req-5", is_subscriber=True, balance={"balance": "9"})

        async def __aenter__(self):
            return self

        async def __aexit__(self, *args):
            return None

    monkeypatch.setattr(cli_module.PaywallConfig, "create_ledger", lambda self: StubLedger())
    result = CliRunner().invoke(main, ["check", "Bearer tok", "mcp://s/tools/t", "--agent-id", "agent-1", "--method", "get"])
    assert result.exit_code == 0, result.output
    assert "Request: req-5" in result.output
    assert calls == [("agent-1", "tok", "mcp://s/tools/t", "GET")]
