"""Tests for credits resolution."""

import pytest

from paygate.auth import AuthorizationRecord
from paygate.credits import DEFAULT_CREDITS, CreditsResolver, validate_credits_option
from paygate.errors import MisconfigurationError


@pytest.fixture
def auth():
    return AuthorizationRecord(
        request_id="req-1",
        credential="tok-123",
        resource_id="agent-1",
        logical_id="mcp://s/tools/forecast?city=Paris",
        is_subscriber=True,
    )


@pytest.fixture
def resolver():
    return CreditsResolver()


class TestCreditsResolver:
    def test_default(self, resolver, auth):
        assert resolver.resolve(None, {}, None, auth) == DEFAULT_CREDITS == 1

    @pytest.mark.parametrize("credits", [0, 1, 5, 1000])
    def test_fixed_ignores_args_and_result(self, resolver, auth, credits):
        assert resolver.resolve(credits, {"a": 1}, {"big": "result"}, auth) == credits
        assert resolver.resolve(credits, None, None, auth) == credits

    def test_dynamic_sees_call(self, resolver, auth):
        seen = {}

        def price(ctx):
            seen["args"] = ctx.args
            seen["result"] = ctx.result
            seen["request"] = ctx.request
            return len(ctx.result)

        assert resolver.resolve(price, {"city": "Paris"}, ["a", "b", "c"], auth) == 3
        assert seen["args"] == {"city": "Paris"}
        assert seen["request"].credential == "tok-123"
        assert seen["request"].logical_id == auth.logical_id
        assert seen["request"].name == "forecast"
        assert seen["request"].auth_header == "Bearer tok-123"

    def test_dynamic_provisional_call_gets_none_result(self, resolver, auth):
        results = []

        def price(ctx):
            results.append(ctx.result)
            return 2

        resolver.resolve(price, {}, None, auth)
        assert results == [None]

    def test_dynamic_negative_clamped(self, resolver, auth):
        assert resolver.resolve(lambda ctx: -4, {}, None, auth) == 0

    def test_dynamic_generic_name_for_plain_ids(self, resolver):
        record = AuthorizationRecord("r", "c", "agent", "plain", True)
        assert resolver.resolve(lambda ctx: 1 if ctx.request.name == "tool" else 9, {}, None, record) == 1


class TestValidateCreditsOption:
    def test_valid(self):
        validate_credits_option(None)
        validate_credits_option(0)
        validate_credits_option(3)
        validate_credits_option(lambda ctx: 1)

    @pytest.mark.parametrize("bad", [-1, 1.5, "2", True])
    def test_invalid(self, bad):
        with pytest.raises(MisconfigurationError):
            validate_credits_option(bad)
