"""Tests for the x402 auto-paying httpx transports."""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tollgate.agent_registry import AgentRegistry
from tollgate.budget import BudgetPolicy, BudgetTracker
from tollgate.errors import MissingKeyError, SessionKeyExpiredError
from tollgate.payment import (
    DEFAULT_ASSET,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentRequirement,
    recover_payment_signer,
)
from tollgate.policy import ContractAllowlist, FunctionAllowlist, Policy, SpendingLimit
from tollgate.session_key import generate_session_key
from tollgate.x402_client import (
    TRANSFER_WITH_AUTHORIZATION,
    AsyncX402Transport,
    Declined,
    DeclineReason,
    Paid,
    Passthrough,
    Refused,
    X402Config,
    X402Policy,
    X402Transport,
    create_x402_client,
)

PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
OTHER = "0x1111111111111111111111111111111111111111"
WALLET = "0x3333333333333333333333333333333333333333"
URL = "https://api.example.com/weather"


def requirement(amount="1000", scheme="exact", network="base", pay_to=PAY_TO):
    return {
        "scheme": scheme,
        "network": network,
        "maxAmountRequired": amount,
        "resource": URL,
        "description": "Weather data",
        "mimeType": "application/json",
        "payTo": pay_to,
        "asset": DEFAULT_ASSET,
        "extra": {"name": "USD Coin", "version": "2"},
    }


class PaywallServer:
    """Mock resource that demands payment and checks the signature."""

    def __init__(self, body=None, paid_status=200, chain_id=8453):
        self.body = body if body is not None else {"x402Version": 1, "accepts": [requirement()]}
        self.paid_status = paid_status
        self.chain_id = chain_id
        self.requests = []
        self.signers = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        header = request.headers.get(PAYMENT_HEADER)
        if header is None:
            raw = self.body if isinstance(self.body, bytes) else json.dumps(self.body).encode()
            return httpx.Response(402, content=raw)
        self.signers.append(recover_payment_signer(header, self.chain_id))
        return httpx.Response(
            self.paid_status,
            json={"forecast": "sunny"},
            headers={PAYMENT_RESPONSE_HEADER: "0xsettled"},
        )


@pytest.fixture
def key():
    return generate_session_key(chain_id=8453, duration=3600)


@pytest.fixture
def server():
    return PaywallServer()


def client_for(key, server, **kwargs):
    transport = X402Transport(key, transport=httpx.MockTransport(server), **kwargs)
    return httpx.Client(transport=transport)


class TestPaymentFlow:
    def test_pays_and_records(self, key, server):
        tracker = BudgetTracker(BudgetPolicy(max_per_request=5000, max_per_period=100_000), 3600)
        with client_for(key, server, budget=tracker) as client:
            response = client.get(URL)

        assert response.status_code == 200
        assert response.json() == {"forecast": "sunny"}
        assert len(server.requests) == 2
        assert server.signers == [key.address.lower()]

        records = tracker.records()
        assert len(records) == 1
        assert records[0].amount == 1000
        assert records[0].pay_to == PAY_TO.lower()
        assert records[0].resource == URL
        assert records[0].network == "base"
        assert records[0].tx_reference == "0xsettled"

    def test_non_402_passes_through(self, key):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, text="free")

        transport = X402Transport(key, transport=httpx.MockTransport(handler))
        with httpx.Client(transport=transport) as client:
            assert client.get(URL).text == "free"
        assert len(calls) == 1

    def test_retry_preserves_method_and_body(self, key, server):
        with client_for(key, server) as client:
            client.post(URL, json={"city": "Lisbon"}, headers={"X-Trace": "abc"})
        first, retry = server.requests
        assert retry.method == "POST"
        assert retry.content == first.content
        assert json.loads(retry.content) == {"city": "Lisbon"}
        assert retry.headers["X-Trace"] == "abc"
        assert PAYMENT_HEADER not in first.headers

    def test_callbacks(self, key, server):
        paid = []
        config = X402Config(on_payment=paid.append)
        with client_for(key, server, budget=BudgetTracker(), config=config) as client:
            client.get(URL)
        assert [r.amount for r in paid] == [1000]

    def test_create_client_helper(self, key, server):
        with create_x402_client(key, transport=httpx.MockTransport(server)) as client:
            assert client.get(URL).status_code == 200


class TestDeclines:
    def outcome(self, key, server, **kwargs):
        transport = X402Transport(key, transport=httpx.MockTransport(server), **kwargs)
        request = httpx.Request("GET", URL)
        return transport.negotiate(request, transport._transport.handle_request(request))

    def test_unparseable_body_returns_original(self, key):
        server = PaywallServer(body=b"<html>pay me</html>")
        tracker = BudgetTracker()
        with client_for(key, server, budget=tracker) as client:
            response = client.get(URL)
        assert response.status_code == 402
        assert response.content == b"<html>pay me</html>"
        assert tracker.records() == []
        assert len(server.requests) == 1

    def test_malformed_reason(self, key):
        outcome = self.outcome(key, PaywallServer(body=b"nope"))
        assert isinstance(outcome, Declined)
        assert outcome.reason == DeclineReason.MALFORMED_REQUIREMENTS

    def test_scheme_filter_follows_server_order(self, key):
        body = [requirement(scheme="upto", amount="5"), requirement(scheme="exact", amount="7")]
        server = PaywallServer(body=body)
        tracker = BudgetTracker()
        config = X402Config(allowed_schemes=("upto", "exact"))
        with client_for(key, server, budget=tracker, config=config) as client:
            client.get(URL)
        assert [r.amount for r in tracker.records()] == [5]

    def test_no_acceptable_scheme(self, key):
        server = PaywallServer(body=[requirement(scheme="upto")])
        outcome = self.outcome(key, server, config=X402Config(allowed_schemes=("exact",)))
        assert outcome.reason == DeclineReason.NO_ACCEPTABLE_SCHEME
        assert outcome.response.status_code == 402

    def test_auto_pay_disabled(self, key, server):
        declines = []
        config = X402Config(auto_pay=False, on_decline=lambda reason, detail: declines.append(reason))
        with client_for(key, server, config=config) as client:
            assert client.get(URL).status_code == 402
        assert declines == [DeclineReason.AUTO_PAY_DISABLED]
        assert len(server.requests) == 1

    def test_per_request_limit(self, key, server):
        outcome = self.outcome(key, server, policy=X402Policy(max_per_request=999))
        assert outcome.reason == DeclineReason.EXCEEDS_PER_REQUEST_LIMIT

    def test_payee_not_allowed(self, key, server):
        outcome = self.outcome(key, server, policy=X402Policy(allowed_payees=frozenset([OTHER])))
        assert outcome.reason == DeclineReason.PAYEE_NOT_ALLOWED

    def test_payee_allowed_case_insensitive(self, key, server):
        outcome = self.outcome(key, server, policy=X402Policy(allowed_payees=frozenset([PAY_TO.lower()])))
        assert isinstance(outcome, Paid)

    def test_domain_not_allowed(self, key, server):
        outcome = self.outcome(key, server, policy=X402Policy(allowed_domains=frozenset(["other.example.com"])))
        assert outcome.reason == DeclineReason.DOMAIN_NOT_ALLOWED

    def test_domain_allowed(self, key, server):
        outcome = self.outcome(key, server, policy=X402Policy(allowed_domains=frozenset(["API.example.com"])))
        assert isinstance(outcome, Paid)

    def test_budget_rejected(self, key, server):
        tracker = BudgetTracker(BudgetPolicy(max_per_period=500))
        outcome = self.outcome(key, server, budget=tracker)
        assert outcome.reason == DeclineReason.BUDGET_REJECTED
        assert len(server.requests) == 1

    def test_network_mismatch(self, server):
        sepolia_key = generate_session_key(chain_id=84532, duration=3600)
        outcome = self.outcome(sepolia_key, server)
        assert outcome.reason == DeclineReason.NETWORK_MISMATCH

    def test_invalid_amount(self, key):
        server = PaywallServer(body=[requirement(amount="1.5")])
        assert self.outcome(key, server).reason == DeclineReason.INVALID_REQUIREMENT

    def test_amount_beyond_uint256_returns_402(self, key):
        server = PaywallServer(body=[requirement(amount="9" * 90)])
        tracker = BudgetTracker()
        with client_for(key, server, budget=tracker) as client:
            assert client.get(URL).status_code == 402
        assert tracker.records() == []
        assert self.outcome(key, server).reason == DeclineReason.INVALID_REQUIREMENT

    def test_deadline_beyond_uint256_returns_402(self, key):
        oversized = dict(requirement(), requiredDeadline="9" * 90)
        server = PaywallServer(body=[oversized])
        tracker = BudgetTracker()
        with client_for(key, server, budget=tracker) as client:
            assert client.get(URL).status_code == 402
        assert tracker.records() == []
        assert self.outcome(key, server).reason == DeclineReason.INVALID_REQUIREMENT
        assert all(PAYMENT_HEADER not in r.headers for r in server.requests)

    def test_agent_policy_denied(self, key, server):
        policy = Policy(contract_allowlist=ContractAllowlist(frozenset([OTHER])))
        outcome = self.outcome(key, server, agent_policy=policy)
        assert outcome.reason == DeclineReason.POLICY_DENIED
        assert len(server.requests) == 1


class TestRetryFailures:
    def test_retry_transport_error_returns_original_402(self, key):
        state = {"calls": 0}

        def handler(request):
            state["calls"] += 1
            if state["calls"] == 1:
                return httpx.Response(402, json=[requirement()])
            raise httpx.ConnectError("connection reset")

        tracker = BudgetTracker()
        transport = X402Transport(key, budget=tracker, transport=httpx.MockTransport(handler))
        with httpx.Client(transport=transport) as client:
            response = client.get(URL)
        assert response.status_code == 402
        assert tracker.records() == []

    def test_refused_retry_records_nothing(self, key):
        server = PaywallServer(paid_status=500)
        tracker = BudgetTracker()
        transport = X402Transport(key, budget=tracker, transport=httpx.MockTransport(server))
        request = httpx.Request("GET", URL)
        outcome = transport.negotiate(request, transport._transport.handle_request(request))
        assert isinstance(outcome, Refused)
        assert outcome.response.status_code == 500
        assert tracker.records() == []

    def test_first_dispatch_error_propagates(self, key):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        with client_for(key, handler) as client:
            with pytest.raises(httpx.ConnectError):
                client.get(URL)

    def test_passthrough_outcome(self, key):
        transport = X402Transport(key, transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        request = httpx.Request("GET", URL)
        outcome = transport.negotiate(request, transport._transport.handle_request(request))
        assert isinstance(outcome, Passthrough)


class TestAgents:
    NOW = 1_700_000_000

    def agent_policy(self):
        return Policy(
            spending_limits=[SpendingLimit.new(DEFAULT_ASSET, 5000, 3600, now=self.NOW)],
            contract_allowlist=ContractAllowlist(frozenset([DEFAULT_ASSET])),
            function_allowlist=FunctionAllowlist.from_signatures([TRANSFER_WITH_AUTHORIZATION]),
        )

    def test_agent_policy_charged_on_settlement(self, server):
        clock = lambda: self.NOW
        registry = AgentRegistry(clock=clock)
        agent = registry.create_agent("weather-bot", WALLET, 8453, 3600, policy=self.agent_policy())
        transport = X402Transport.for_agent(
            registry, agent.agent_id, transport=httpx.MockTransport(server), clock=clock
        )
        with httpx.Client(transport=transport) as client:
            for _ in range(5):
                assert client.get(URL).status_code == 200
            assert client.get(URL).status_code == 402

        assert agent.policy.spending_limits[0].spent == 5000
        assert server.signers == [agent.session_key.address.lower()] * 5

    def test_transports_share_registry_enforcer(self):
        registry = AgentRegistry()
        agent = registry.create_agent("weather-bot", WALLET, 8453, 3600, policy=self.agent_policy())
        sync = X402Transport.for_agent(registry, agent.agent_id, transport=httpx.MockTransport(PaywallServer()))
        other = AsyncX402Transport.for_agent(
            registry, agent.agent_id, transport=httpx.ASGITransport(app=paywall_app())
        )
        assert sync.enforcer is registry.enforcer
        assert other.enforcer is registry.enforcer

    def test_concurrent_transports_never_overspend_agent_policy(self):
        clock = lambda: self.NOW
        registry = AgentRegistry(clock=clock)
        agent = registry.create_agent("weather-bot", WALLET, 8453, 3600, policy=self.agent_policy())
        server = PaywallServer()
        transports = [
            X402Transport.for_agent(registry, agent.agent_id, transport=httpx.MockTransport(server), clock=clock)
            for _ in range(2)
        ]

        def attempt(i):
            transport = transports[i % 2]
            request = httpx.Request("GET", URL)
            return transport.handle_request(request).status_code

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(attempt, range(20)))

        assert agent.policy.spending_limits[0].spent == 5000

    def test_revoked_agent_cannot_pay(self, server):
        registry = AgentRegistry()
        agent = registry.create_agent("weather-bot", WALLET, 8453, 3600)
        transport = X402Transport.for_agent(registry, agent.agent_id, transport=httpx.MockTransport(server))
        registry.revoke_agent(agent.agent_id)
        with httpx.Client(transport=transport) as client:
            with pytest.raises(MissingKeyError):
                client.get(URL)
        assert len(server.requests) == 1

    def test_expired_agent_cannot_pay(self, server):
        now = {"t": self.NOW}
        clock = lambda: now["t"]
        registry = AgentRegistry(clock=clock)
        agent = registry.create_agent("weather-bot", WALLET, 8453, 60)
        transport = X402Transport.for_agent(
            registry, agent.agent_id, transport=httpx.MockTransport(server), clock=clock
        )
        now["t"] = self.NOW + 61
        with httpx.Client(transport=transport) as client:
            with pytest.raises(SessionKeyExpiredError):
                client.get(URL)


def paywall_app():
    app = FastAPI()

    @app.get("/weather")
    async def weather(request: Request):
        header = request.headers.get(PAYMENT_HEADER)
        if header is None:
            return JSONResponse(status_code=402, content={"x402Version": 1, "accepts": [requirement()]})
        signer = recover_payment_signer(header, 8453, PaymentRequirement.from_dict(requirement()))
        return JSONResponse({"forecast": "sunny", "paid_by": signer})

    return app


class TestAsyncTransport:
    def test_pays_asgi_app(self, key):
        tracker = BudgetTracker(BudgetPolicy(max_per_period=10_000))
        transport = AsyncX402Transport(key, budget=tracker, transport=httpx.ASGITransport(app=paywall_app()))

        async def run():
            async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as client:
                return await client.get("/weather")

        response = asyncio.run(run())
        assert response.status_code == 200
        assert response.json()["paid_by"] == key.address.lower()
        assert [r.amount for r in tracker.records()] == [1000]

    def test_auto_pay_disabled(self, key):
        transport = AsyncX402Transport(
            key,
            config=X402Config(auto_pay=False),
            transport=httpx.ASGITransport(app=paywall_app()),
        )

        async def run():
            async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as client:
                return await client.get("/weather")

        assert asyncio.run(run()).status_code == 402
