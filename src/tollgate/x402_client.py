"""
x402 auto-payment transports for httpx.

Wraps an httpx transport so that a ``402 Payment Required`` is answered
with a signed EIP-3009 authorization and the request is replayed once.

Flow:
1. Dispatch the request unmodified
2. On 402, parse the requirements and pick one by scheme
3. Gate on per-request ceiling, payee and domain allowlists, budget
4. Sign the authorization with the session key and retry with X-PAYMENT
5. Record the payment only if the retry comes back 2xx

Anything that goes wrong after the first dispatch hands back the most
recent response instead of raising. The exceptions are transport errors
on the first dispatch and session keys that may not sign.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

import httpx

from .budget import BudgetTracker, PaymentRecord
from .errors import (
    BudgetExceededError,
    InvalidInputError,
    MalformedRequirementsError,
    NoAcceptableSchemeError,
    PolicyViolationError,
)
from .hexutil import normalize_address
from .payment import (
    DEFAULT_ASSET,
    DEFAULT_AUTHORIZATION_TTL,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentRequirement,
    build_payment_header,
    parse_payment_requirements,
    select_requirement,
)
from .policy import Policy
from .policy_enforcer import CallIntent, PolicyEnforcer
from .session_key import SessionKey

logger = logging.getLogger(__name__)

TRANSFER_WITH_AUTHORIZATION = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)

KeySource = Union[SessionKey, Callable[[], Optional[SessionKey]], None]


class DeclineReason(str, Enum):
    AUTO_PAY_DISABLED = "auto_pay_disabled"
    MALFORMED_REQUIREMENTS = "malformed_requirements"
    NO_ACCEPTABLE_SCHEME = "no_acceptable_scheme"
    INVALID_REQUIREMENT = "invalid_requirement"
    NETWORK_MISMATCH = "network_mismatch"
    EXCEEDS_PER_REQUEST_LIMIT = "exceeds_per_request_limit"
    PAYEE_NOT_ALLOWED = "payee_not_allowed"
    DOMAIN_NOT_ALLOWED = "domain_not_allowed"
    POLICY_DENIED = "policy_denied"
    BUDGET_REJECTED = "budget_rejected"
    BODY_NOT_REPLAYABLE = "body_not_replayable"
    RETRY_FAILED = "retry_failed"


@dataclass
class X402Config:
    auto_pay: bool = True
    allowed_schemes: tuple[str, ...] = ()
    authorization_ttl: int = DEFAULT_AUTHORIZATION_TTL
    on_payment: Optional[Callable[[PaymentRecord], None]] = None
    on_decline: Optional[Callable[[DeclineReason, str], None]] = None


@dataclass
class X402Policy:
    """Advisory pre-flight limits, checked before anything is signed."""

    max_per_request: Optional[int] = None
    allowed_payees: frozenset[str] = frozenset()
    allowed_domains: frozenset[str] = frozenset()

    def __post_init__(self):
        self.allowed_payees = frozenset(normalize_address(p) for p in self.allowed_payees)
        self.allowed_domains = frozenset(d.strip().lower() for d in self.allowed_domains)


@dataclass
class Passthrough:
    """Response was not a 402; handed back untouched."""

    response: httpx.Response


@dataclass
class Declined:
    """Payment not attempted or not completed; caller sees the original 402."""

    reason: DeclineReason
    detail: str
    response: httpx.Response


@dataclass
class Refused:
    """Paid retry came back non-2xx; nothing recorded."""

    response: httpx.Response
    requirement: PaymentRequirement


@dataclass
class Paid:
    response: httpx.Response
    requirement: PaymentRequirement
    record: Optional[PaymentRecord] = None


PaymentOutcome = Union[Passthrough, Declined, Refused, Paid]


@dataclass
class _PreparedPayment:
    requirement: PaymentRequirement
    amount: int
    pay_to: str
    request: httpx.Request
    intent: Optional[CallIntent] = None


class _X402Negotiator:
    """Decision logic shared by the sync and async transports."""

    def __init__(
        self,
        session_key: KeySource,
        budget: Optional[BudgetTracker] = None,
        config: Optional[X402Config] = None,
        policy: Optional[X402Policy] = None,
        agent_policy: Optional[Policy] = None,
        enforcer: Optional[PolicyEnforcer] = None,
        clock: Callable[[], float] = time.time,
    ):
        if callable(session_key):
            self._key_source = session_key
        else:
            self._key_source = lambda: session_key
        self.budget = budget
        self.config = config or X402Config()
        self.policy = policy or X402Policy()
        self.agent_policy = agent_policy
        self.enforcer = enforcer or (PolicyEnforcer(clock=clock) if agent_policy is not None else None)
        self._clock = clock

    @property
    def session_key(self) -> Optional[SessionKey]:
        return self._key_source()

    def _decline(self, reason: DeclineReason, detail: str, response: httpx.Response) -> Declined:
        logger.info("x402 payment declined (%s): %s", reason.value, detail)
        if self.config.on_decline is not None:
            self.config.on_decline(reason, detail)
        return Declined(reason=reason, detail=detail, response=response)

    def _prepare(
        self, request: httpx.Request, response: httpx.Response
    ) -> Union[_PreparedPayment, Declined]:
        try:
            requirements = parse_payment_requirements(response.content)
            requirement = select_requirement(requirements, self.config.allowed_schemes)
        except MalformedRequirementsError as exc:
            return self._decline(DeclineReason.MALFORMED_REQUIREMENTS, str(exc), response)
        except NoAcceptableSchemeError as exc:
            return self._decline(DeclineReason.NO_ACCEPTABLE_SCHEME, str(exc), response)

        try:
            amount = requirement.amount
            pay_to = normalize_address(requirement.pay_to)
        except InvalidInputError as exc:
            return self._decline(DeclineReason.INVALID_REQUIREMENT, str(exc), response)

        key = self.session_key
        required_chain = requirement.chain_id
        if key is not None and required_chain is not None and key.chain_id != required_chain:
            return self._decline(
                DeclineReason.NETWORK_MISMATCH,
                f"requirement network {requirement.network} is not chain {key.chain_id}",
                response,
            )

        declined = self._gate(request, requirement, amount, pay_to, response)
        if declined is not None:
            return declined

        intent = None
        if self.agent_policy is not None:
            asset = requirement.asset or requirement.extra.get("asset") or DEFAULT_ASSET
            intent = CallIntent(
                contract=asset,
                function_signature=TRANSFER_WITH_AUTHORIZATION,
                token=asset,
                amount=amount,
            )
            try:
                self.enforcer.check(self.agent_policy, intent)
            except (PolicyViolationError, InvalidInputError) as exc:
                return self._decline(DeclineReason.POLICY_DENIED, str(exc), response)

        try:
            content = request.content
        except httpx.RequestNotRead:
            return self._decline(
                DeclineReason.BODY_NOT_REPLAYABLE, "streaming request body cannot be replayed", response
            )

        try:
            header = build_payment_header(
                key,
                requirement,
                now=int(self._clock()),
                authorization_ttl=self.config.authorization_ttl,
            )
        except InvalidInputError as exc:
            return self._decline(DeclineReason.INVALID_REQUIREMENT, str(exc), response)

        headers = request.headers.copy()
        headers[PAYMENT_HEADER] = header
        retry = httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=content,
            extensions=request.extensions,
        )
        return _PreparedPayment(
            requirement=requirement, amount=amount, pay_to=pay_to, request=retry, intent=intent
        )

    def _gate(
        self,
        request: httpx.Request,
        requirement: PaymentRequirement,
        amount: int,
        pay_to: str,
        response: httpx.Response,
    ) -> Optional[Declined]:
        if self.policy.max_per_request is not None and amount > self.policy.max_per_request:
            return self._decline(
                DeclineReason.EXCEEDS_PER_REQUEST_LIMIT,
                f"{amount} exceeds per-request limit {self.policy.max_per_request}",
                response,
            )
        if self.policy.allowed_payees and pay_to not in self.policy.allowed_payees:
            return self._decline(DeclineReason.PAYEE_NOT_ALLOWED, f"payee {pay_to} not allowed", response)
        if self.policy.allowed_domains and not _domain_allowed(request.url, self.policy.allowed_domains):
            return self._decline(
                DeclineReason.DOMAIN_NOT_ALLOWED, f"domain {request.url.host} not allowed", response
            )
        if self.budget is not None:
            try:
                self.budget.check(amount, pay_to)
            except (BudgetExceededError, PolicyViolationError, InvalidInputError) as exc:
                return self._decline(DeclineReason.BUDGET_REJECTED, str(exc), response)
        return None

    def _settle(
        self, prepared: _PreparedPayment, original: httpx.Request, retry: httpx.Response
    ) -> Union[Paid, Refused]:
        requirement = prepared.requirement
        if not 200 <= retry.status_code < 300:
            logger.warning(
                "x402 payment to %s refused with status %d", prepared.pay_to, retry.status_code
            )
            return Refused(response=retry, requirement=requirement)

        if prepared.intent is not None:
            try:
                self.enforcer.authorize(self.agent_policy, prepared.intent)
            except (PolicyViolationError, InvalidInputError) as exc:
                logger.warning("Settled payment could not be charged to agent policy: %s", exc)

        record = None
        if self.budget is not None:
            try:
                record = self.budget.track(
                    PaymentRecord(
                        resource=requirement.resource or str(original.url),
                        amount=prepared.amount,
                        pay_to=prepared.pay_to,
                        timestamp=int(self._clock()),
                        network=requirement.network,
                        tx_reference=retry.headers.get(PAYMENT_RESPONSE_HEADER),
                    )
                )
            except (BudgetExceededError, PolicyViolationError) as exc:
                logger.warning("Settled payment rejected by budget, not recorded: %s", exc)
            else:
                if self.config.on_payment is not None:
                    self.config.on_payment(record)
        return Paid(response=retry, requirement=requirement, record=record)


class X402Transport(_X402Negotiator, httpx.BaseTransport):
    """Synchronous httpx transport that pays 402 responses."""

    def __init__(
        self,
        session_key: KeySource,
        budget: Optional[BudgetTracker] = None,
        config: Optional[X402Config] = None,
        policy: Optional[X402Policy] = None,
        transport: Optional[httpx.BaseTransport] = None,
        **kwargs,
    ):
        super().__init__(session_key, budget=budget, config=config, policy=policy, **kwargs)
        self._transport = transport or httpx.HTTPTransport()

    @classmethod
    def for_agent(cls, registry, agent_id: str, **kwargs) -> "X402Transport":
        """Transport signing with an agent's current key and policy.

        The policy is charged through the registry's shared enforcer, so
        several transports for one agent cannot overspend it together.
        """
        agent = registry.get_agent(agent_id)
        kwargs.setdefault("agent_policy", agent.policy)
        kwargs.setdefault("enforcer", registry.enforcer)
        return cls(lambda: registry.get_agent(agent_id).session_key, **kwargs)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        response = self._transport.handle_request(request)
        return self.negotiate(request, response).response

    def negotiate(self, request: httpx.Request, response: httpx.Response) -> PaymentOutcome:
        if response.status_code != 402:
            return Passthrough(response)
        response.read()
        if not self.config.auto_pay:
            return self._decline(DeclineReason.AUTO_PAY_DISABLED, "auto-pay disabled", response)

        prepared = self._prepare(request, response)
        if isinstance(prepared, Declined):
            return prepared

        try:
            retry = self._transport.handle_request(prepared.request)
            retry.read()
        except httpx.TransportError as exc:
            return self._decline(DeclineReason.RETRY_FAILED, f"{type(exc).__name__}: {exc}", response)
        return self._settle(prepared, request, retry)

    def close(self) -> None:
        self._transport.close()


class AsyncX402Transport(_X402Negotiator, httpx.AsyncBaseTransport):
    """Asynchronous httpx transport that pays 402 responses."""

    def __init__(
        self,
        session_key: KeySource,
        budget: Optional[BudgetTracker] = None,
        config: Optional[X402Config] = None,
        policy: Optional[X402Policy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(session_key, budget=budget, config=config, policy=policy, **kwargs)
        self._transport = transport or httpx.AsyncHTTPTransport()

    @classmethod
    def for_agent(cls, registry, agent_id: str, **kwargs) -> "AsyncX402Transport":
        agent = registry.get_agent(agent_id)
        kwargs.setdefault("agent_policy", agent.policy)
        kwargs.setdefault("enforcer", registry.enforcer)
        return cls(lambda: registry.get_agent(agent_id).session_key, **kwargs)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self._transport.handle_async_request(request)
        outcome = await self.anegotiate(request, response)
        return outcome.response

    async def anegotiate(self, request: httpx.Request, response: httpx.Response) -> PaymentOutcome:
        if response.status_code != 402:
            return Passthrough(response)
        await response.aread()
        if not self.config.auto_pay:
            return self._decline(DeclineReason.AUTO_PAY_DISABLED, "auto-pay disabled", response)

        prepared = self._prepare(request, response)
        if isinstance(prepared, Declined):
            return prepared

        try:
            retry = await self._transport.handle_async_request(prepared.request)
            await retry.aread()
        except httpx.TransportError as exc:
            return self._decline(DeclineReason.RETRY_FAILED, f"{type(exc).__name__}: {exc}", response)
        return self._settle(prepared, request, retry)

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_x402_client(
    session_key: KeySource,
    budget: Optional[BudgetTracker] = None,
    config: Optional[X402Config] = None,
    policy: Optional[X402Policy] = None,
    transport: Optional[httpx.BaseTransport] = None,
    **client_kwargs,
) -> httpx.Client:
    """httpx.Client that pays for x402 resources automatically."""
    x402_transport = X402Transport(
        session_key, budget=budget, config=config, policy=policy, transport=transport
    )
    return httpx.Client(transport=x402_transport, **client_kwargs)


def create_async_x402_client(
    session_key: KeySource,
    budget: Optional[BudgetTracker] = None,
    config: Optional[X402Config] = None,
    policy: Optional[X402Policy] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **client_kwargs,
) -> httpx.AsyncClient:
    x402_transport = AsyncX402Transport(
        session_key, budget=budget, config=config, policy=policy, transport=transport
    )
    return httpx.AsyncClient(transport=x402_transport, **client_kwargs)


def _domain_allowed(url: httpx.URL, allowed: frozenset[str]) -> bool:
    host = (url.host or "").lower()
    netloc = url.netloc.decode("ascii").lower()
    return host in allowed or netloc in allowed
