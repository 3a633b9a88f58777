"""
Tollgate — Bounded spending authority for AI agents.

Delegated session keys, composable spending policies and automatic
x402 payments: Wallet delegates → Agent pays within policy → Budget records.
"""

__version__ = "0.1.0"

from .session_key import (
    SessionKey,
    deserialize_session_key,
    generate_session_key,
    serialize_session_key,
    sign_with_session_key,
    validate_session_key,
    verify_session_key_signature,
)
from .policy import (
    ContractAllowlist,
    FunctionAllowlist,
    Policy,
    RateLimit,
    SpendingLimit,
    TimeWindow,
    compose_policies,
    is_allowed,
    validate_policy,
)
from .policy_store import PolicyStore
from .policy_enforcer import CallIntent, PolicyEnforcer
from .budget import BudgetPolicy, BudgetState, BudgetTracker, PaymentRecord
from .payment import PaymentRequirement, build_payment_header, parse_payment_requirements
from .x402_client import (
    AsyncX402Transport,
    DeclineReason,
    X402Config,
    X402Policy,
    X402Transport,
    create_async_x402_client,
    create_x402_client,
)
from .agent_registry import Agent, AgentRegistry, AgentStatus
from .encoding import decode_policy, encode_call, encode_policy

__all__ = [
    "SessionKey", "generate_session_key", "serialize_session_key", "deserialize_session_key",
    "validate_session_key", "sign_with_session_key", "verify_session_key_signature",
    "Policy", "SpendingLimit", "ContractAllowlist", "FunctionAllowlist", "TimeWindow", "RateLimit",
    "is_allowed", "compose_policies", "validate_policy", "PolicyStore", "PolicyEnforcer", "CallIntent",
    "BudgetTracker", "BudgetPolicy", "BudgetState", "PaymentRecord",
    "PaymentRequirement", "parse_payment_requirements", "build_payment_header",
    "X402Transport", "AsyncX402Transport", "X402Config", "X402Policy", "DeclineReason",
    "create_x402_client", "create_async_x402_client",
    "Agent", "AgentRegistry", "AgentStatus",
    "encode_call", "encode_policy", "decode_policy",
]
