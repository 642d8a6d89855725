"""Shared fixtures: an in-memory ledger that records every call."""

from __future__ import annotations

from typing import Optional

import pytest

from paygate.ledger import Grant, SettleParams, SettlementOutcome, StartRequestResult, VerifyResult


class FakeLedger:
    def __init__(self):
        self.calls: list[tuple] = []
        self.subscriber = True
        self.request_id = "req-1"
        self.rejected_ids: set[str] = set()
        self.start_error: Optional[Exception] = None
        self.redeem_error: Optional[Exception] = None
        self.redeem_success = True
        self.verify_valid = True
        self.verify_error: Optional[Exception] = None
        self.settle_error: Optional[Exception] = None
        self.grants: list[Grant] = []
        self.grants_error: Optional[Exception] = None

    async def start_request(self, resource_id, credential, logical_id, method):
        self.calls.append(("start_request", resource_id, credential, logical_id, method))
        if self.start_error is not None:
            raise self.start_error
        if logical_id in self.rejected_ids:
            return StartRequestResult(request_id="", is_subscriber=False)
        return StartRequestResult(
            request_id=self.request_id,
            is_subscriber=self.subscriber,
            balance={"isSubscriber": self.subscriber, "balance": "100"},
        )

    async def redeem(self, request_id, credential, credits):
        self.calls.append(("redeem", request_id, credential, credits))
        if self.redeem_error is not None:
            raise self.redeem_error
        return SettlementOutcome(
            success=self.redeem_success,
            transaction_ref="0xredeem" if self.redeem_success else "",
            credits_redeemed=credits,
            error=None if self.redeem_success else "rejected",
        )

    async def verify(self, params: SettleParams):
        self.calls.append(("verify", params))
        if self.verify_error is not None:
            raise self.verify_error
        return VerifyResult(
            is_valid=self.verify_valid,
            invalid_reason=None if self.verify_valid else "Insufficient balance",
            request_id=self.request_id,
        )

    async def settle(self, params: SettleParams):
        self.calls.append(("settle", params))
        if self.settle_error is not None:
            raise self.settle_error
        return SettlementOutcome(success=True, transaction_ref="0xsettle", credits_redeemed=params.credits)

    async def list_alternative_grants(self, resource_id):
        self.calls.append(("list_alternative_grants", resource_id))
        if self.grants_error is not None:
            raise self.grants_error
        return list(self.grants)

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def last(self, name: str) -> tuple:
        return [c for c in self.calls if c[0] == name][-1]


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def extra():
    return {"request_info": {"headers": {"Authorization": "Bearer tok-123"}}}
