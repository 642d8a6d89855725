"""
Paygate — pay-per-call middleware for tool servers, agents and HTTP endpoints.

Authenticate a bearer credential against a remote credit ledger, run the
handler, work out what the call cost, and burn exactly those credits:
once per call, whether the handler returns, streams, or completes later
through a task event.
"""

__version__ = "0.1.0"

from .auth import Authenticator, AuthorizationRecord
from .config import PaywallConfig
from .credits import CreditsContext, CreditsResolver
from .errors import (
    ConfigurationLockedError,
    LedgerError,
    MisconfigurationError,
    PaygateError,
    PaymentRequiredError,
    SettlementFailedError,
)
from .ledger import HTTPLedgerClient, Ledger, SettlementOutcome
from .logical_id import LogicalResource, ResourceKind
from .paywall import Paywall, PaywallContext, PaywallOptions, is_trailer
from .request_context import RequestContext, bind_request_context, current_request_context
from .settlement import RedemptionConfig, RedemptionPolicy, SettlementEngine
from .tasks import TaskCorrelationStore, TaskPaymentsHandler

__all__ = [
    "Paywall", "PaywallConfig", "PaywallContext", "PaywallOptions", "is_trailer",
    "Authenticator", "AuthorizationRecord", "CreditsContext", "CreditsResolver",
    "SettlementEngine", "SettlementOutcome", "RedemptionConfig", "RedemptionPolicy",
    "Ledger", "HTTPLedgerClient", "LogicalResource", "ResourceKind",
    "RequestContext", "bind_request_context", "current_request_context",
    "TaskCorrelationStore", "TaskPaymentsHandler",
    "PaygateError", "PaymentRequiredError", "MisconfigurationError",
    "ConfigurationLockedError", "SettlementFailedError", "LedgerError",
]
