"""
Tollgate error types.

One exception per failure kind so callers can tell a missing record
from a policy denial from an expired session key.
"""

from __future__ import annotations

from typing import Optional


class TollgateError(Exception):
    """Base error for all Tollgate operations."""
    pass


class NotFoundError(TollgateError):
    """Agent or policy lookup missed."""
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


# Input errors
class InvalidInputError(TollgateError, ValueError):
    """Zero or negative amounts, malformed addresses, bad hex or JSON."""
    pass


class MalformedKeyDataError(InvalidInputError):
    """Serialized session key could not be decoded."""
    pass


class PolicyValidationError(InvalidInputError):
    """Policy failed structural validation."""
    pass


# Policy errors
class PolicyViolationError(TollgateError):
    """Base error for actions a policy refuses."""
    pass


class ContractNotAllowedError(PolicyViolationError):
    """Target contract is not on the contract allowlist."""
    def __init__(self, contract: str):
        self.contract = contract
        super().__init__(f"contract {contract} not in allowlist")


class FunctionNotAllowedError(PolicyViolationError):
    """Function selector is not on the function allowlist."""
    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"function selector 0x{selector} not in allowlist")


class OutsideTimeWindowError(PolicyViolationError):
    """Action attempted outside the policy time window."""
    pass


class RateLimitExceededError(PolicyViolationError):
    """Call count for the current period is used up."""
    def __init__(self, max_calls: int):
        self.max_calls = max_calls
        super().__init__(f"rate limit exceeded: {max_calls} calls per period")


class SpendingLimitExceededError(PolicyViolationError):
    """Amount would push a spending limit past its maximum."""
    def __init__(self, token: str, amount: int, remaining: int):
        self.token = token
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"spending limit exceeded for {token}: {amount} requested, {remaining} remaining"
        )


class PayeeNotAllowedError(PolicyViolationError):
    """Payee is not on the configured allowlist."""
    def __init__(self, payee: str):
        self.payee = payee
        super().__init__(f"payee {payee} not allowed")


# Budget errors
class BudgetExceededError(TollgateError):
    """Base error for budget ceiling breaches."""
    pass


class ExceedsPerRequestLimitError(BudgetExceededError):
    """Amount exceeds per-request limit."""
    def __init__(self, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(f"{amount} exceeds per-request limit {limit}")


class ExceedsPeriodBudgetError(BudgetExceededError):
    """Amount would exceed the budget for the current period."""
    def __init__(self, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(f"{amount} exceeds remaining period budget {remaining}")


# Session key errors
class UnauthorizedError(TollgateError):
    """Base error for session keys that may not sign."""
    pass


class MissingKeyError(UnauthorizedError):
    """No private key available (absent, revoked or discarded)."""
    def __init__(self, message: str = "session key has no private key"):
        super().__init__(message)


class InvalidChainError(UnauthorizedError):
    """Session key chain id is absent or not positive."""
    def __init__(self, chain_id: Optional[int]):
        self.chain_id = chain_id
        super().__init__(f"invalid chain id: {chain_id}")


class KeyNotYetValidError(UnauthorizedError):
    """Current time is before the key's valid-after timestamp."""
    def __init__(self, valid_after: int):
        self.valid_after = valid_after
        super().__init__(f"session key not valid before {valid_after}")


class SessionKeyExpiredError(UnauthorizedError):
    """Current time is after the key's valid-until timestamp."""
    def __init__(self, valid_until: int):
        self.valid_until = valid_until
        super().__init__(f"session key expired at {valid_until}")


class AddressMismatchError(UnauthorizedError):
    """Stored address does not match the key's derived address."""
    def __init__(self, stored: str, derived: str):
        self.stored = stored
        self.derived = derived
        super().__init__(f"session key address {stored} does not match derived {derived}")


# Protocol errors
class ProtocolError(TollgateError):
    """Base error for x402 protocol disagreements."""
    pass


class MalformedRequirementsError(ProtocolError):
    """402 body is not a requirement object or array."""
    pass


class NoAcceptableSchemeError(ProtocolError):
    """No offered requirement uses an accepted scheme."""
    pass
