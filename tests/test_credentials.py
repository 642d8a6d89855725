"""Tests for credential extraction and decoding."""

import base64
import json
from types import SimpleNamespace

import jwt
import pytest

from paygate.credentials import (
    build_extra_from_headers,
    decode_credential,
    extract_auth_header,
    extract_credential,
    normalize_address,
    strip_bearer,
)
from paygate.request_context import RequestContext, bind_request_context

ADDRESS = "0xAbCdEf0123456789abcdef0123456789ABCDEF01"
SECRET = "paygate-test-signing-secret-0123456789"


class TestExtractCredential:
    def test_from_call_context_mapping(self):
        extra = {"request_info": {"headers": {"authorization": "Bearer abc"}}}
        assert extract_credential(extra) == "abc"

    def test_camel_case_request_info(self):
        extra = {"requestInfo": {"headers": {"Authorization": "Bearer abc"}}}
        assert extract_credential(extra) == "abc"

    def test_from_object_attributes(self):
        extra = SimpleNamespace(request_info=SimpleNamespace(headers={"AUTHORIZATION": "Bearer xyz"}))
        assert extract_credential(extra) == "xyz"

    def test_from_request_context_object(self):
        ctx = RequestContext(headers={"authorization": "Bearer ctx"})
        assert extract_credential(ctx) == "ctx"

    def test_repeated_header_takes_first(self):
        extra = {"request_info": {"headers": {"authorization": ["Bearer first", "Bearer second"]}}}
        assert extract_credential(extra) == "first"

    def test_call_context_wins_over_ambient(self):
        extra = build_extra_from_headers({"Authorization": "Bearer explicit"})
        with bind_request_context({"authorization": "Bearer ambient"}):
            assert extract_credential(extra) == "explicit"

    def test_ambient_fallback(self):
        with bind_request_context({"Authorization": "Bearer ambient"}):
            assert extract_credential(None) == "ambient"
            assert extract_credential({"request_info": {"headers": {}}}) == "ambient"

    def test_absent(self):
        assert extract_credential(None) is None
        assert extract_credential({}) is None
        assert extract_auth_header({"request_info": {"headers": {"x-other": "1"}}}) is None

    def test_query_and_body_are_never_read(self):
        extra = {"query": {"authorization": "Bearer q"}, "body": {"token": "b"}}
        assert extract_credential(extra) is None

    def test_raw_value_without_prefix(self):
        extra = {"request_info": {"headers": {"authorization": "raw-token"}}}
        assert extract_credential(extra) == "raw-token"

    def test_prefix_is_case_sensitive(self):
        assert strip_bearer("Bearer abc") == "abc"
        assert strip_bearer("bearer abc") == "bearer abc"

    def test_bare_prefix_is_absent(self):
        extra = {"request_info": {"headers": {"authorization": "Bearer "}}}
        assert extract_credential(extra) is None


class TestDecodeCredential:
    def test_jwt_subject(self):
        token = jwt.encode({"sub": ADDRESS, "planId": "plan-1"}, SECRET, algorithm="HS256")
        decoded = decode_credential(token)
        assert decoded.subscriber_address == ADDRESS.lower()
        assert decoded.plan_id == "plan-1"

    def test_nested_auth_token_claims(self):
        token = jwt.encode(
            {"authToken": {"sub": ADDRESS, "planId": 42}, "sub": "ignored"},
            SECRET,
            algorithm="HS256",
        )
        decoded = decode_credential(token)
        assert decoded.subscriber_address == ADDRESS.lower()
        assert decoded.plan_id == "42"

    def test_base64_json_document(self):
        doc = {
            "accepted": {"planId": "plan-9"},
            "payload": {"authorization": {"from": ADDRESS}},
        }
        token = base64.b64encode(json.dumps(doc).encode()).decode()
        decoded = decode_credential(token)
        assert decoded.subscriber_address == ADDRESS.lower()
        assert decoded.plan_id == "plan-9"

    def test_non_address_subject_is_kept(self):
        token = jwt.encode({"sub": "user-7"}, SECRET, algorithm="HS256")
        decoded = decode_credential(token)
        assert decoded.subscriber_address == "user-7"
        assert decoded.plan_id is None

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            decode_credential("not a token!")


class TestNormalizeAddress:
    def test_lowercases(self):
        assert normalize_address(ADDRESS) == ADDRESS.lower()

    def test_upper_prefix(self):
        assert normalize_address("0X" + "a" * 40) == "0x" + "a" * 40

    def test_invalid(self):
        with pytest.raises(ValueError):
            normalize_address("0x1234")
