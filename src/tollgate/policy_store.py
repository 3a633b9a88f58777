"""In-memory policy store."""

from __future__ import annotations

import copy
import logging
import os
import threading
import time
from typing import Callable, Optional

from eth_utils import keccak

from .errors import NotFoundError
from .policy import Policy, validate_policy

logger = logging.getLogger(__name__)


class PolicyStore:
    """Owns validated policies keyed by id.

    Policies are copied on the way in and out so that callers never share
    counters with the stored instance.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._policies: dict[str, Policy] = {}
        self._lock = threading.RLock()

    def create_policy(self, policy: Policy) -> Policy:
        validate_policy(policy)
        stored = copy.deepcopy(policy)
        now = int(self._clock())
        stored.policy_id = _new_policy_id(now)
        stored.created_at = now
        with self._lock:
            self._policies[stored.policy_id] = stored
        logger.info("Created policy %s", stored.policy_id)
        return copy.deepcopy(stored)

    def get_policy(self, policy_id: str) -> Policy:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFoundError("policy", policy_id)
            return copy.deepcopy(policy)

    def list_policies(self) -> list[Policy]:
        with self._lock:
            policies = [copy.deepcopy(p) for p in self._policies.values()]
        return sorted(policies, key=lambda p: (p.created_at or 0, p.policy_id or ""))

    def delete_policy(self, policy_id: str) -> None:
        with self._lock:
            if self._policies.pop(policy_id, None) is None:
                raise NotFoundError("policy", policy_id)
        logger.info("Deleted policy %s", policy_id)

    def __contains__(self, policy_id: object) -> bool:
        with self._lock:
            return policy_id in self._policies

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)


def _new_policy_id(now: int, entropy: Optional[bytes] = None) -> str:
    seed = now.to_bytes(8, "big") + (entropy or os.urandom(16))
    return keccak(seed)[:16].hex()
