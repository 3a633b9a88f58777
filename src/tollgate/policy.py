"""
Spending policies for delegated agents.

A policy bundles spending limits, contract/function allowlists, a time
window and a rate limit. Counters reset lazily: the first read or write
after a period boundary starts a fresh period, no timer involved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .errors import (
    InvalidInputError,
    PolicyValidationError,
    RateLimitExceededError,
    SpendingLimitExceededError,
)
from .hexutil import normalize_address, normalize_selector, selector_hex


def _now(now: Optional[int]) -> int:
    return int(now if now is not None else time.time())


@dataclass
class SpendingLimit:
    """Maximum spend of one token per period."""

    token: str
    max_amount: int
    period: int
    spent: int = 0
    reset_at: int = 0  # 0 = period starts on first touch

    @classmethod
    def new(cls, token: str, max_amount: int, period: int, now: Optional[int] = None) -> SpendingLimit:
        return cls(token=token, max_amount=max_amount, period=period, reset_at=_now(now) + period)

    def refresh(self, now: Optional[int] = None) -> None:
        current = _now(now)
        if current > self.reset_at:
            self.spent = 0
            self.reset_at = current + self.period

    def remaining(self, now: Optional[int] = None) -> int:
        self.refresh(now)
        return max(0, self.max_amount - self.spent)

    def check(self, amount: int, now: Optional[int] = None) -> None:
        """Raise unless ``amount`` fits in the current period."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("invalid amount")
        self.refresh(now)
        if self.spent + amount > self.max_amount:
            raise SpendingLimitExceededError(self.token, amount, max(0, self.max_amount - self.spent))

    def record(self, amount: int, now: Optional[int] = None) -> None:
        self.check(amount, now)
        self.spent += amount

    def matches(self, token: str) -> bool:
        return self.token.lower() == str(token).lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "max_amount": str(self.max_amount),
            "period": self.period,
            "spent": str(self.spent),
            "reset_at": self.reset_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SpendingLimit:
        return cls(
            token=str(d["token"]),
            max_amount=_as_int(d["max_amount"], "max_amount"),
            period=_as_int(d["period"], "period"),
            spent=_as_int(d.get("spent", 0), "spent"),
            reset_at=_as_int(d.get("reset_at", 0), "reset_at"),
        )


@dataclass
class ContractAllowlist:
    """Set of callable contract addresses. Empty means nothing is allowed."""

    contracts: frozenset[str] = frozenset()

    def __post_init__(self):
        self.contracts = frozenset(normalize_address(c) for c in self.contracts)

    def allows(self, contract: str) -> bool:
        try:
            return normalize_address(contract) in self.contracts
        except InvalidInputError:
            return False


@dataclass
class FunctionAllowlist:
    """Set of 4-byte function selectors as bare lower-case hex."""

    selectors: frozenset[str] = frozenset()

    def __post_init__(self):
        self.selectors = frozenset(normalize_selector(s) for s in self.selectors)

    @classmethod
    def from_signatures(cls, signatures: Iterable[str]) -> FunctionAllowlist:
        return cls(frozenset(selector_hex(sig) for sig in signatures))

    def allows(self, function_signature: str) -> bool:
        try:
            return selector_hex(function_signature) in self.selectors
        except InvalidInputError:
            return False


@dataclass
class TimeWindow:
    """Absolute validity range plus hour-of-day and weekday filters (UTC).

    ``end=None`` means no upper bound. ``days`` uses ``datetime.weekday()``
    numbering (Monday=0); an empty set allows every day. When
    ``start_hour > end_hour`` the hour range wraps past midnight.
    """

    start: int = 0
    end: Optional[int] = None
    start_hour: int = 0
    end_hour: int = 23
    days: frozenset[int] = frozenset()

    def __post_init__(self):
        self.days = frozenset(int(d) for d in self.days)

    def contains(self, moment: Optional[int] = None) -> bool:
        current = _now(moment)
        if current < self.start:
            return False
        if self.end is not None and current > self.end:
            return False
        dt = datetime.fromtimestamp(current, tz=timezone.utc)
        if self.start_hour <= self.end_hour:
            in_hours = self.start_hour <= dt.hour <= self.end_hour
        else:
            in_hours = dt.hour >= self.start_hour or dt.hour <= self.end_hour
        if not in_hours:
            return False
        return not self.days or dt.weekday() in self.days

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "hours": [self.start_hour, self.end_hour],
            "days": sorted(self.days),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TimeWindow:
        hours = d.get("hours", [0, 23])
        if not isinstance(hours, (list, tuple)) or len(hours) != 2:
            raise InvalidInputError("time window hours must be [start_hour, end_hour]")
        end = d.get("end")
        return cls(
            start=_as_int(d.get("start", 0), "start"),
            end=None if end is None else _as_int(end, "end"),
            start_hour=_as_int(hours[0], "start_hour"),
            end_hour=_as_int(hours[1], "end_hour"),
            days=frozenset(_as_int(x, "days") for x in d.get("days", [])),
        )


@dataclass
class RateLimit:
    """At most ``max_calls`` per ``period`` seconds."""

    max_calls: int
    period: int
    calls: int = 0
    reset_at: int = 0

    def refresh(self, now: Optional[int] = None) -> None:
        current = _now(now)
        if current > self.reset_at:
            self.calls = 0
            self.reset_at = current + self.period

    def check(self, now: Optional[int] = None) -> None:
        self.refresh(now)
        if self.calls >= self.max_calls:
            raise RateLimitExceededError(self.max_calls)

    def record(self, now: Optional[int] = None) -> None:
        self.check(now)
        self.calls += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_calls": self.max_calls,
            "period": self.period,
            "calls": self.calls,
            "reset_at": self.reset_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RateLimit:
        return cls(
            max_calls=_as_int(d["max_calls"], "max_calls"),
            period=_as_int(d["period"], "period"),
            calls=_as_int(d.get("calls", 0), "calls"),
            reset_at=_as_int(d.get("reset_at", 0), "reset_at"),
        )


@dataclass
class Policy:
    """A named bundle of constraints. Absent parts impose no restriction."""

    policy_id: Optional[str] = None
    spending_limits: list[SpendingLimit] = field(default_factory=list)
    contract_allowlist: Optional[ContractAllowlist] = None
    function_allowlist: Optional[FunctionAllowlist] = None
    time_window: Optional[TimeWindow] = None
    rate_limit: Optional[RateLimit] = None
    created_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "spending_limits": [sl.to_dict() for sl in self.spending_limits],
            "contract_allowlist": (
                sorted(self.contract_allowlist.contracts) if self.contract_allowlist is not None else None
            ),
            "function_allowlist": (
                sorted(self.function_allowlist.selectors) if self.function_allowlist is not None else None
            ),
            "time_window": self.time_window.to_dict() if self.time_window is not None else None,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit is not None else None,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Policy:
        """Load a policy; function allowlist entries may be selectors or signatures."""
        if not isinstance(d, dict):
            raise InvalidInputError("policy must be a JSON object")
        contracts = d.get("contract_allowlist")
        functions = d.get("function_allowlist")
        window = d.get("time_window")
        rate = d.get("rate_limit")
        try:
            return cls(
                policy_id=d.get("policy_id"),
                spending_limits=[SpendingLimit.from_dict(x) for x in d.get("spending_limits") or []],
                contract_allowlist=ContractAllowlist(frozenset(contracts)) if contracts is not None else None,
                function_allowlist=(
                    FunctionAllowlist(frozenset(_selector_entry(f) for f in functions))
                    if functions is not None else None
                ),
                time_window=TimeWindow.from_dict(window) if window is not None else None,
                rate_limit=RateLimit.from_dict(rate) if rate is not None else None,
                created_at=d.get("created_at"),
            )
        except (KeyError, TypeError) as exc:
            raise InvalidInputError(f"malformed policy: {exc}") from exc


def is_allowed(policy: Optional[Policy], contract: str, function_signature: str) -> bool:
    """Allowlist gate. No policy denies everything."""
    if policy is None:
        return False
    if policy.contract_allowlist is not None and not policy.contract_allowlist.allows(contract):
        return False
    if policy.function_allowlist is not None and not policy.function_allowlist.allows(function_signature):
        return False
    return True


def compose_policies(*policies: Optional[Policy]) -> Policy:
    """Merge policies, most restrictive wins.

    Spending limits are concatenated, allowlists unioned. The time window
    takes the latest start and the earliest bounded end; the rate limit
    takes the smallest call count and the longest period.

    Hours and weekdays of the time window come from the first policy that
    has one. Later windows only narrow the start and end, so a stricter
    hour range or day set in a later policy is not applied.

    A single policy keeps its id and creation time; a merge of several
    gets neither.
    """
    present = [p for p in policies if p is not None]
    composed = Policy()
    if len(present) == 1:
        composed.policy_id = present[0].policy_id
        composed.created_at = present[0].created_at
    contracts: Optional[set[str]] = None
    selectors: Optional[set[str]] = None

    for p in present:
        composed.spending_limits.extend(replace(sl) for sl in p.spending_limits)

        if p.contract_allowlist is not None:
            contracts = (contracts or set()) | p.contract_allowlist.contracts
        if p.function_allowlist is not None:
            selectors = (selectors or set()) | p.function_allowlist.selectors

        if p.time_window is not None:
            if composed.time_window is None:
                composed.time_window = replace(p.time_window)
            else:
                tw = composed.time_window
                tw.start = max(tw.start, p.time_window.start)
                if p.time_window.end is not None and (tw.end is None or p.time_window.end < tw.end):
                    tw.end = p.time_window.end

        if p.rate_limit is not None:
            if composed.rate_limit is None:
                composed.rate_limit = replace(p.rate_limit)
            else:
                rl = composed.rate_limit
                rl.max_calls = min(rl.max_calls, p.rate_limit.max_calls)
                rl.period = max(rl.period, p.rate_limit.period)

    if contracts is not None:
        composed.contract_allowlist = ContractAllowlist(frozenset(contracts))
    if selectors is not None:
        composed.function_allowlist = FunctionAllowlist(frozenset(selectors))
    return composed


def validate_policy(policy: Optional[Policy]) -> None:
    """Raise PolicyValidationError for the first structural problem found."""
    if policy is None:
        raise InvalidInputError("policy is required")

    for sl in policy.spending_limits:
        if sl.max_amount is None or sl.max_amount <= 0:
            raise PolicyValidationError("invalid spending limit amount")
        if sl.period is None or sl.period <= 0:
            raise PolicyValidationError("invalid spending limit period")

    tw = policy.time_window
    if tw is not None:
        if tw.end is not None and tw.end < tw.start:
            raise PolicyValidationError("time window start after end")
        if not 0 <= tw.start_hour <= 23:
            raise PolicyValidationError("invalid start hour")
        if not 0 <= tw.end_hour <= 23:
            raise PolicyValidationError("invalid end hour")
        if any(not 0 <= d <= 6 for d in tw.days):
            raise PolicyValidationError("invalid weekday")

    rl = policy.rate_limit
    if rl is not None:
        if rl.max_calls <= 0:
            raise PolicyValidationError("rate limit max calls must be positive")
        if rl.period <= 0:
            raise PolicyValidationError("invalid rate limit period")


def _selector_entry(value: str) -> str:
    if "(" in str(value):
        return selector_hex(value)
    return normalize_selector(value)


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise InvalidInputError(f"{field_name} must be an integer")
