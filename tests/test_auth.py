"""Tests for ledger-backed authentication."""

import asyncio

import pytest

from paygate.auth import Authenticator
from paygate.errors import LedgerError, PaymentRequiredError
from paygate.ledger import Grant
from paygate.logical_id import LogicalResource, ResourceKind
from paygate.request_context import bind_request_context

TOOL = LogicalResource(ResourceKind.TOOL, "weather", "forecast", {"city": "Paris"})
TOOL_ID = "mcp://weather/tools/forecast?city=Paris"


@pytest.fixture
def authenticator(ledger):
    return Authenticator(ledger)


class TestAuthenticate:
    def test_success(self, authenticator, ledger, extra):
        record = asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        assert record.request_id == "req-1"
        assert record.credential == "tok-123"
        assert record.logical_id == TOOL_ID
        assert record.is_subscriber is True
        assert record.balance["balance"] == "100"
        assert ledger.calls == [("start_request", "agent-1", "tok-123", TOOL_ID, "POST")]

    def test_missing_credential(self, authenticator, ledger):
        with pytest.raises(PaymentRequiredError) as exc_info:
            asyncio.run(authenticator.authenticate({}, "agent-1", TOOL))
        assert exc_info.value.reason == "missing"
        assert ledger.calls == []

    def test_not_subscriber(self, authenticator, ledger, extra):
        ledger.subscriber = False
        with pytest.raises(PaymentRequiredError) as exc_info:
            asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        assert exc_info.value.reason == "invalid"

    def test_fallback_to_http_url(self, authenticator, ledger, extra):
        ledger.rejected_ids.add(TOOL_ID)
        with bind_request_context({"host": "api.example.com", "x-forwarded-proto": "https"}, url="/mcp"):
            record = asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        assert record.logical_id == "https://api.example.com/mcp"
        assert [c[3] for c in ledger.calls] == [TOOL_ID, "https://api.example.com/mcp"]

    def test_fallback_after_ledger_error(self, authenticator, ledger, extra):
        class FlakyOnce:
            def __init__(self, inner):
                self.inner = inner
                self.failed = False

            def __getattr__(self, name):
                return getattr(self.inner, name)

            async def start_request(self, *args):
                if not self.failed:
                    self.failed = True
                    raise LedgerError(403, "unknown endpoint")
                return await self.inner.start_request(*args)

        auth = Authenticator(FlakyOnce(ledger))
        with bind_request_context({"host": "h.test"}):
            record = asyncio.run(auth.authenticate(extra, "agent-1", TOOL))
        assert record.logical_id == "http://h.test/mcp"

    def test_no_fallback_without_ambient_request(self, authenticator, ledger, extra):
        ledger.rejected_ids.add(TOOL_ID)
        with pytest.raises(PaymentRequiredError):
            asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        assert ledger.count("start_request") == 1

    def test_denial_suggests_top_three_grants(self, authenticator, ledger, extra):
        ledger.subscriber = False
        ledger.grants = [Grant("p1", "Basic"), Grant("p2"), Grant("p3", "Pro"), Grant("p4", "Team")]
        with pytest.raises(PaymentRequiredError) as exc_info:
            asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        message = str(exc_info.value)
        assert message.startswith("Payment required.")
        assert "p1 (Basic), p2, p3 (Pro)" in message
        assert "p4" not in message

    def test_grant_lookup_failure_is_cosmetic(self, authenticator, ledger, extra):
        ledger.subscriber = False
        ledger.grants_error = LedgerError(500, "nope")
        with pytest.raises(PaymentRequiredError) as exc_info:
            asyncio.run(authenticator.authenticate(extra, "agent-1", TOOL))
        assert str(exc_info.value) == "Payment required."

    def test_ambient_credential(self, authenticator, ledger):
        with bind_request_context({"authorization": "Bearer ambient-tok"}):
            record = asyncio.run(authenticator.authenticate(None, "agent-1", TOOL))
        assert record.credential == "ambient-tok"


class TestAuthenticateMeta:
    def test_meta_identifier(self, authenticator, ledger, extra):
        record = asyncio.run(authenticator.authenticate_meta(extra, "agent-1", "weather", "tools/list"))
        assert record.logical_id == "mcp://weather/tools/list"
        assert ledger.calls[0][3] == "mcp://weather/tools/list"
