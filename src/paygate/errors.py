"""
Paygate error types.

Specific exceptions for the few ways a paywalled call can fail, so
transport adapters can map each one to the right wire shape
(HTTP status, JSON-RPC error object).
"""

from __future__ import annotations

from typing import Optional


class PaygateError(Exception):
    """Base error for all Paygate operations."""
    pass


class PaymentRequiredError(PaygateError):
    """Credential missing, rejected, or without enough balance."""

    def __init__(self, message: str = "Payment required", reason: str = "invalid"):
        self.reason = reason
        super().__init__(message)

    @property
    def data(self) -> dict:
        return {"reason": self.reason}


class MisconfigurationError(PaygateError):
    """The paywall itself is not set up correctly (operator error)."""
    pass


class ConfigurationLockedError(MisconfigurationError):
    """Configuration changed after the paywall started accepting calls."""
    pass


class SettlementFailedError(PaygateError):
    """The ledger refused or failed to redeem/settle credits."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        self.request_id = request_id
        super().__init__(message)


class LedgerError(PaygateError):
    """Ledger backend returned an error response or could not be reached."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Ledger error ({status_code}): {message}")
