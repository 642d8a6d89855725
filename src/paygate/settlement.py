"""
Settlement (credit burning) against the ledger.

Two paths:
- request settlement: redeem credits for a ledger request opened at
  authentication time, governed by a RedemptionPolicy
- task settlement: verify-then-settle for deferred task completions,
  shaped by a RedemptionConfig (batching, margin)

Free calls (credits <= 0) never reach the ledger. The core never retries a
settlement; retries are the ledger client's concern.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import MisconfigurationError, SettlementFailedError
from .ledger import Ledger, SettleParams, SettlementOutcome

logger = logging.getLogger(__name__)

PAYMENT_EXTENSION_URI = "urn:nevermined:payment"


class RedemptionPolicy(str, Enum):
    IGNORE = "ignore"
    PROPAGATE = "propagate"


@dataclass(frozen=True)
class RedemptionConfig:
    use_batch: bool = False
    use_margin: bool = False
    margin_percent: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "useBatch": self.use_batch,
            "useMargin": self.use_margin,
            "marginPercent": self.margin_percent,
        }


def resolve_redemption_config(
    metadata: Optional[Mapping[str, Any]],
    default_batch: bool = False,
    default_margin_percent: Optional[float] = None,
) -> RedemptionConfig:
    """Read the redemption config from agent metadata, falling back to defaults.

    Accepts an agent-card-like document (payment extension under
    capabilities.extensions) or a bare {"redemptionConfig": {...}} mapping.
    Malformed or missing metadata yields the defaults; this never raises.
    """
    raw = _find_redemption_config(metadata)
    try:
        margin = raw.get("marginPercent", default_margin_percent)
        return RedemptionConfig(
            use_batch=bool(raw.get("useBatch", default_batch)),
            use_margin=bool(raw.get("useMargin", False)),
            margin_percent=None if margin is None else float(margin),
        )
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed redemption config: %r", raw)
        return RedemptionConfig(use_batch=default_batch, margin_percent=default_margin_percent)


def apply_margin(credits: int, config: RedemptionConfig) -> int:
    """Inflate credits by the configured margin, rounding up."""
    if not config.use_margin or not config.margin_percent or credits <= 0:
        return credits
    factor = (Decimal(100) + Decimal(str(config.margin_percent))) / Decimal(100)
    return int((Decimal(credits) * factor).to_integral_value(rounding=ROUND_CEILING))


class SettlementEngine:
    """Burns credits once a unit of work completes."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def settle(
        self,
        request_id: str,
        credential: str,
        credits: int,
        policy: RedemptionPolicy = RedemptionPolicy.IGNORE,
    ) -> SettlementOutcome:
        if credits <= 0:
            return SettlementOutcome(success=True, transaction_ref="", credits_redeemed=0)

        try:
            outcome = await self.ledger.redeem(request_id, credential, credits)
            if not outcome.success:
                raise SettlementFailedError(outcome.error or "Ledger reported an unsuccessful redemption", request_id)
        except Exception as e:
            if RedemptionPolicy(policy) is RedemptionPolicy.PROPAGATE:
                raise MisconfigurationError("Failed to redeem credits") from e
            # ignore policy: the caller still gets its result
            logger.warning(
                "Redeeming %d credits for request %s failed, continuing: %s",
                credits,
                request_id,
                e,
            )
            return SettlementOutcome(success=False, transaction_ref="", credits_redeemed=credits, error=str(e))

        logger.info(
            "Redeemed %d credits for request %s (tx: %s)",
            credits,
            request_id,
            outcome.transaction_ref or "-",
        )
        return outcome

    async def settle_task(
        self,
        resource_id: str,
        credential: str,
        credits: int,
        config: RedemptionConfig,
        subscriber_address: Optional[str] = None,
    ) -> SettlementOutcome:
        """Verify then settle credits for a deferred completion.

        Raises SettlementFailedError when the ledger rejects either step.
        """
        if credits <= 0:
            return SettlementOutcome(success=True, transaction_ref="", credits_redeemed=0)

        params = SettleParams(
            resource_id=resource_id,
            credits=apply_margin(credits, config),
            credential=credential,
            subscriber_address=subscriber_address,
            batch=config.use_batch,
        )
        verification = await self.ledger.verify(params)
        if not verification.is_valid:
            raise SettlementFailedError(
                f"Verification failed: {verification.invalid_reason or 'unknown reason'}",
                verification.request_id,
            )
        outcome = await self.ledger.settle(params)
        if not outcome.success:
            raise SettlementFailedError(f"Settlement failed: {outcome.error or 'unknown reason'}")

        logger.info(
            "Settled %d credits for %s (requested %d, batch=%s, tx: %s)",
            outcome.credits_redeemed,
            resource_id,
            params.credits,
            config.use_batch,
            outcome.transaction_ref or "-",
        )
        return outcome


def _find_redemption_config(metadata: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if not isinstance(metadata, Mapping):
        return {}
    direct = metadata.get("redemptionConfig")
    if isinstance(direct, Mapping):
        return direct
    capabilities = metadata.get("capabilities")
    extensions = capabilities.get("extensions") if isinstance(capabilities, Mapping) else None
    for ext in extensions or []:
        if not isinstance(ext, Mapping) or ext.get("uri") != PAYMENT_EXTENSION_URI:
            continue
        params = ext.get("params")
        if isinstance(params, Mapping) and isinstance(params.get("redemptionConfig"), Mapping):
            return params["redemptionConfig"]
    return {}
