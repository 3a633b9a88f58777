"""Policy enforcement at the signing boundary."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import (
    ContractNotAllowedError,
    FunctionNotAllowedError,
    InvalidInputError,
    OutsideTimeWindowError,
    PolicyViolationError,
)
from .hexutil import selector_hex
from .policy import Policy, SpendingLimit

logger = logging.getLogger(__name__)


@dataclass
class CallIntent:
    contract: str
    function_signature: str
    token: Optional[str] = None
    amount: int = 0


class PolicyEnforcer:
    """Checks an intended call against a policy and commits its counters.

    Every gate runs under one lock, and counters only move when all gates
    pass, so two concurrent calls cannot both consume the last unit of a
    limit.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()

    def check(self, policy: Optional[Policy], intent: CallIntent) -> None:
        """Raise the first violation without consuming any allowance."""
        with self._lock:
            self._evaluate(policy, intent, int(self._clock()))

    def authorize(self, policy: Optional[Policy], intent: CallIntent) -> None:
        """Raise the first violation, or record the call against every limit."""
        with self._lock:
            now = int(self._clock())
            limits = self._evaluate(policy, intent, now)
            if policy.rate_limit is not None:
                policy.rate_limit.record(now)
            for limit in limits:
                limit.record(intent.amount, now)
        logger.debug(
            "Authorized %s on %s (amount %d)", intent.function_signature, intent.contract, intent.amount
        )

    def allowed(self, policy: Optional[Policy], intent: CallIntent) -> tuple[bool, str]:
        try:
            self.check(policy, intent)
        except (PolicyViolationError, InvalidInputError) as exc:
            return False, str(exc)
        return True, "allowed"

    def _evaluate(self, policy: Optional[Policy], intent: CallIntent, now: int) -> list[SpendingLimit]:
        if policy is None:
            raise PolicyViolationError("no policy attached")
        if policy.contract_allowlist is not None and not policy.contract_allowlist.allows(intent.contract):
            raise ContractNotAllowedError(intent.contract)
        if policy.function_allowlist is not None and not policy.function_allowlist.allows(
            intent.function_signature
        ):
            raise FunctionNotAllowedError(_safe_selector(intent.function_signature))
        if policy.time_window is not None and not policy.time_window.contains(now):
            raise OutsideTimeWindowError(f"call at {now} outside policy time window")
        if policy.rate_limit is not None:
            policy.rate_limit.check(now)

        if intent.amount < 0:
            raise InvalidInputError("invalid amount")
        if not intent.amount or intent.token is None:
            return []
        limits = [sl for sl in policy.spending_limits if sl.matches(intent.token)]
        for limit in limits:
            limit.check(intent.amount, now)
        return limits


def _safe_selector(signature: str) -> str:
    try:
        return selector_hex(signature)
    except InvalidInputError:
        return "????????"

