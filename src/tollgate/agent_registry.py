"""
Agent registry.

An agent is a named delegate of one wallet, holding its own session key
and an optional policy. Expiry is applied lazily: every read compares
the clock with ``expires_at`` and flips an active agent to expired.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from eth_utils import keccak

from .errors import NotFoundError
from .hexutil import address_bytes, normalize_address
from .policy import Policy, validate_policy
from .policy_enforcer import PolicyEnforcer
from .session_key import SessionKey, generate_session_key

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class Agent:
    """A delegate acting for ``wallet_address`` with its own session key."""

    agent_id: str
    name: str
    wallet_address: str
    session_key: Optional[SessionKey]
    status: AgentStatus
    created_at: int
    expires_at: int
    permissions: list[str] = field(default_factory=list)
    policy: Optional[Policy] = None

    def refresh(self, now: int) -> None:
        if self.status == AgentStatus.ACTIVE and now > self.expires_at:
            self.status = AgentStatus.EXPIRED

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "wallet_address": self.wallet_address,
            "session_address": self.session_key.address if self.session_key is not None else None,
            "chain_id": self.session_key.chain_id if self.session_key is not None else None,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "permissions": list(self.permissions),
            "policy_id": self.policy.policy_id if self.policy is not None else None,
        }


class AgentRegistry:
    """Owns the agents created for any number of wallets.

    Returned agents are the registry's own instances, so a revocation is
    visible to every holder of the agent. Agent policies are only charged
    through :attr:`enforcer`, whose lock covers every transport bound to
    an agent of this registry.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.enforcer = PolicyEnforcer(clock=clock)
        self._agents: dict[str, Agent] = {}
        self._lock = threading.RLock()

    def create_agent(
        self,
        name: str,
        wallet_address: str,
        chain_id: int,
        duration: Union[int, timedelta],
        permissions: Iterable[str] = (),
        policy: Optional[Policy] = None,
    ) -> Agent:
        wallet = normalize_address(wallet_address)
        if policy is not None:
            validate_policy(policy)
        now = int(self._clock())
        session_key = generate_session_key(chain_id, duration, now=now)
        agent_id = keccak(address_bytes(session_key.address) + address_bytes(wallet))[:16].hex()
        agent = Agent(
            agent_id=agent_id,
            name=name,
            wallet_address=wallet,
            session_key=session_key,
            status=AgentStatus.ACTIVE,
            created_at=now,
            expires_at=session_key.valid_until,
            permissions=list(permissions),
            policy=policy,
        )
        with self._lock:
            self._agents[agent_id] = agent
        logger.info("Created agent %s (%s) for wallet %s", agent_id, name, wallet)
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise NotFoundError("agent", agent_id)
            agent.refresh(int(self._clock()))
            return agent

    def list_agents(self, wallet_address: Optional[str] = None) -> list[Agent]:
        """Agents of one wallet (or all agents), oldest first."""
        wallet = normalize_address(wallet_address) if wallet_address is not None else None
        now = int(self._clock())
        with self._lock:
            result = []
            for agent in self._agents.values():
                if wallet is not None and agent.wallet_address != wallet:
                    continue
                agent.refresh(now)
                result.append(agent)
        return sorted(result, key=lambda a: (a.created_at, a.agent_id))

    def revoke_agent(self, agent_id: str) -> Agent:
        """Mark the agent revoked and drop its session key."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise NotFoundError("agent", agent_id)
            agent.status = AgentStatus.REVOKED
            agent.session_key = None
        logger.info("Revoked agent %s", agent_id)
        return agent

    def delete_agent(self, agent_id: str) -> None:
        with self._lock:
            if self._agents.pop(agent_id, None) is None:
                raise NotFoundError("agent", agent_id)
        logger.info("Deleted agent %s", agent_id)
