"""
Budget tracking for x402 payments.

One tracker per agent. A single lock covers the reset-check-commit
sequence so concurrent payments cannot both squeeze under the ceiling.
Periods renew on touch: once ``period_start + period_duration`` has
passed, the next call zeroes the period spend and restarts the period
at the current time.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import (
    ExceedsPerRequestLimitError,
    ExceedsPeriodBudgetError,
    InvalidInputError,
    PayeeNotAllowedError,
)
from .hexutil import normalize_address
from .money import format_token_amount

logger = logging.getLogger(__name__)


@dataclass
class BudgetPolicy:
    """Ceilings in token base units. ``None`` means no ceiling."""

    max_per_request: Optional[int] = None
    max_per_period: Optional[int] = None
    allowed_payees: frozenset[str] = frozenset()

    def __post_init__(self):
        self.allowed_payees = frozenset(normalize_address(p) for p in self.allowed_payees)


@dataclass
class PaymentRecord:
    """A single settled payment."""

    resource: str
    amount: int
    pay_to: str
    timestamp: int = 0
    network: str = ""
    tx_reference: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "amount": str(self.amount),
            "pay_to": self.pay_to,
            "timestamp": self.timestamp,
            "network": self.network,
            "tx_reference": self.tx_reference,
        }


@dataclass
class BudgetState:
    """Spend totals for one agent."""

    total_spent: int = 0
    period_spent: int = 0
    period_start: int = 0
    period_duration: int = 0
    records: list[PaymentRecord] = field(default_factory=list)


class BudgetTracker:
    """Admits or rejects payments against a :class:`BudgetPolicy`."""

    def __init__(
        self,
        policy: Optional[BudgetPolicy] = None,
        period_duration: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        if period_duration < 0:
            raise InvalidInputError("period_duration must be >= 0")
        self.policy = policy or BudgetPolicy()
        self._clock = clock
        self._state = BudgetState(period_start=int(clock()), period_duration=period_duration)
        self._mutex = threading.Lock()

    @contextmanager
    def _lock(self):
        with self._mutex:
            self._maybe_reset()
            yield self._state

    def _maybe_reset(self) -> None:
        state = self._state
        if state.period_duration <= 0:
            return
        now = int(self._clock())
        if now >= state.period_start + state.period_duration:
            state.period_spent = 0
            state.period_start = now

    def _check_limits(self, state: BudgetState, amount: int, pay_to: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("Amount must be positive base units")

        if self.policy.allowed_payees:
            try:
                payee = normalize_address(pay_to)
            except InvalidInputError:
                raise PayeeNotAllowedError(pay_to) from None
            if payee not in self.policy.allowed_payees:
                raise PayeeNotAllowedError(pay_to)

        if self.policy.max_per_request is not None and amount > self.policy.max_per_request:
            raise ExceedsPerRequestLimitError(amount, self.policy.max_per_request)

        if self.policy.max_per_period is not None and state.period_spent + amount > self.policy.max_per_period:
            raise ExceedsPeriodBudgetError(amount, max(0, self.policy.max_per_period - state.period_spent))

    def check(self, amount: int, pay_to: str) -> None:
        """Raise if a payment would be rejected. Never mutates spend."""
        with self._lock() as state:
            self._check_limits(state, amount, pay_to)

    def track(self, record: PaymentRecord) -> PaymentRecord:
        """Check and commit ``record`` atomically."""
        with self._lock() as state:
            self._check_limits(state, record.amount, record.pay_to)
            if not record.timestamp:
                record = copy.copy(record)
                record.timestamp = int(self._clock())
            state.total_spent += record.amount
            state.period_spent += record.amount
            state.records.append(copy.copy(record))
            period_spent = state.period_spent

        logger.info(
            "Recorded payment of %s to %s for %s (period spend %s)",
            format_token_amount(record.amount),
            record.pay_to,
            record.resource,
            format_token_amount(period_spent),
        )
        return record

    def allows(self, amount: int, pay_to: str) -> tuple[bool, str]:
        """Non-raising form of :meth:`check`."""
        try:
            self.check(amount, pay_to)
        except (InvalidInputError, PayeeNotAllowedError, ExceedsPerRequestLimitError,
                ExceedsPeriodBudgetError) as exc:
            return False, str(exc)
        return True, "OK"

    def remaining(self) -> Optional[int]:
        """Base units left this period, or ``None`` when there is no period ceiling."""
        with self._lock() as state:
            if self.policy.max_per_period is None:
                return None
            return max(0, self.policy.max_per_period - state.period_spent)

    def is_exhausted(self) -> bool:
        with self._lock() as state:
            return self.policy.max_per_period is not None and state.period_spent >= self.policy.max_per_period

    def state(self) -> BudgetState:
        """Snapshot of the current state."""
        with self._lock() as state:
            return copy.deepcopy(state)

    def records(self) -> list[PaymentRecord]:
        with self._lock() as state:
            return [copy.copy(r) for r in state.records]

    def get_summary(self) -> dict:
        """Human-readable budget summary."""
        with self._lock() as state:
            cap = self.policy.max_per_period
            summary = {
                "total_spent": format_token_amount(state.total_spent),
                "period_spent": format_token_amount(state.period_spent),
                "period_budget": format_token_amount(cap) if cap is not None else "unlimited",
                "remaining": format_token_amount(max(0, cap - state.period_spent)) if cap is not None else "unlimited",
                "utilization": f"{(state.period_spent / cap * 100):.1f}%" if cap else "n/a",
                "payments": len(state.records),
                "period_resets_at": (
                    state.period_start + state.period_duration if state.period_duration > 0 else None
                ),
            }
        return summary

