"""
Credit cost resolution.

This does not price anything itself: it evaluates the caller's credits
option, either a fixed integer or a function of the call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .auth import AuthorizationRecord
from .errors import MisconfigurationError
from .logical_id import derived_name

logger = logging.getLogger(__name__)

DEFAULT_CREDITS = 1


@dataclass(frozen=True)
class CreditsRequest:
    credential: str
    logical_id: str
    name: str

    @property
    def auth_header(self) -> str:
        return f"Bearer {self.credential}"


@dataclass(frozen=True)
class CreditsContext:
    """What a dynamic credits function gets to look at."""

    args: Any
    result: Any
    request: CreditsRequest


CreditsOption = Union[int, Callable[[CreditsContext], int]]


def validate_credits_option(option: Optional[CreditsOption]) -> None:
    """Reject options that can never resolve to a valid charge."""
    if option is None or callable(option):
        return
    if isinstance(option, bool) or not isinstance(option, int):
        raise MisconfigurationError(f"Credits option must be an int or a callable, got {type(option).__name__}")
    if option < 0:
        raise MisconfigurationError(f"Credits option must be non-negative, got {option}")


class CreditsResolver:
    """Resolves the credits to charge for one call."""

    def resolve(
        self,
        option: Optional[CreditsOption],
        args: Any,
        result: Any,
        auth: AuthorizationRecord,
    ) -> int:
        if option is None:
            return DEFAULT_CREDITS
        if not callable(option):
            return option

        ctx = CreditsContext(
            args=args,
            result=result,
            request=CreditsRequest(
                credential=auth.credential,
                logical_id=auth.logical_id,
                name=derived_name(auth.logical_id),
            ),
        )
        value = int(option(ctx))
        if value < 0:
            logger.warning("Credits function returned %d for %s, charging 0", value, auth.logical_id)
            return 0
        return value
