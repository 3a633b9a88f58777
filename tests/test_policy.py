"""Tests for the policy model, allowlists and composition."""

from datetime import datetime, timezone

import pytest
from eth_utils import keccak

from tollgate.errors import (
    InvalidInputError,
    PolicyValidationError,
    RateLimitExceededError,
    SpendingLimitExceededError,
)
from tollgate.hexutil import function_selector
from tollgate.policy import (
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

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
ROUTER = "0x2626664c2603336E57B271c5C0b26F421741e481"
OTHER = "0x1111111111111111111111111111111111111111"
HOUR = 3600
NOW = 1_700_000_000


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestSelectors:
    def test_transfer_selector(self):
        assert function_selector("transfer(address,uint256)").hex() == "a9059cbb"

    def test_matches_keccak_prefix(self):
        sig = "approve(address,uint256)"
        assert function_selector(sig) == keccak(text=sig)[:4]

    def test_whitespace_ignored(self):
        assert function_selector("transfer(address, uint256)") == function_selector("transfer(address,uint256)")


class TestIsAllowed:
    def test_nil_policy_denies(self):
        assert is_allowed(None, ROUTER, "transfer(address,uint256)") is False

    def test_no_allowlists_allows(self):
        assert is_allowed(Policy(), ROUTER, "anything()") is True

    def test_contract_allowlist(self):
        p = Policy(contract_allowlist=ContractAllowlist(frozenset([ROUTER])))
        assert is_allowed(p, ROUTER.lower(), "swap()")
        assert not is_allowed(p, OTHER, "swap()")

    def test_function_allowlist(self):
        p = Policy(function_allowlist=FunctionAllowlist.from_signatures(["transfer(address,uint256)"]))
        assert is_allowed(p, OTHER, "transfer(address,uint256)")
        assert not is_allowed(p, OTHER, "approve(address,uint256)")

    def test_both_gates_can_veto(self):
        p = Policy(
            contract_allowlist=ContractAllowlist(frozenset([ROUTER])),
            function_allowlist=FunctionAllowlist.from_signatures(["transfer(address,uint256)"]),
        )
        assert is_allowed(p, ROUTER, "transfer(address,uint256)")
        assert not is_allowed(p, OTHER, "transfer(address,uint256)")
        assert not is_allowed(p, ROUTER, "approve(address,uint256)")

    def test_empty_allowlist_allows_nothing(self):
        p = Policy(contract_allowlist=ContractAllowlist())
        assert not is_allowed(p, ROUTER, "transfer(address,uint256)")

    def test_malformed_contract_denied(self):
        p = Policy(contract_allowlist=ContractAllowlist(frozenset([ROUTER])))
        assert not is_allowed(p, "not-an-address", "swap()")

    def test_selector_entries(self):
        p = Policy(function_allowlist=FunctionAllowlist(frozenset(["0xA9059CBB"])))
        assert is_allowed(p, OTHER, "transfer(address,uint256)")


class TestSpendingLimit:
    def test_check_boundaries(self):
        sl = SpendingLimit(token=USDC, max_amount=1000, period=HOUR, spent=500, reset_at=NOW + HOUR)
        with pytest.raises(SpendingLimitExceededError):
            sl.check(501, now=NOW)
        sl.check(500, now=NOW)

    def test_record_accumulates(self):
        sl = SpendingLimit.new(USDC, 1000, HOUR, now=NOW)
        sl.record(600, now=NOW)
        sl.record(400, now=NOW + 1)
        assert sl.spent == 1000
        with pytest.raises(SpendingLimitExceededError):
            sl.record(1, now=NOW + 2)
        assert sl.spent == 1000

    def test_lazy_reset_before_check(self):
        sl = SpendingLimit(token=USDC, max_amount=1000, period=HOUR, spent=900, reset_at=NOW)
        sl.check(1000, now=NOW + 1)
        assert sl.spent == 0
        assert sl.reset_at == NOW + 1 + HOUR

    def test_no_reset_at_boundary(self):
        sl = SpendingLimit(token=USDC, max_amount=1000, period=HOUR, spent=900, reset_at=NOW)
        with pytest.raises(SpendingLimitExceededError):
            sl.check(200, now=NOW)

    @pytest.mark.parametrize("amount", [0, -1, None, True])
    def test_invalid_amount(self, amount):
        sl = SpendingLimit.new(USDC, 1000, HOUR, now=NOW)
        with pytest.raises(InvalidInputError, match="invalid amount"):
            sl.check(amount, now=NOW)

    def test_remaining(self):
        sl = SpendingLimit.new(USDC, 1000, HOUR, now=NOW)
        sl.record(250, now=NOW)
        assert sl.remaining(now=NOW) == 750
        assert sl.remaining(now=NOW + HOUR + 1) == 1000

    def test_big_amounts(self):
        big = 10**30
        sl = SpendingLimit.new(USDC, big, HOUR, now=NOW)
        sl.record(big - 1, now=NOW)
        sl.check(1, now=NOW)


class TestRateLimit:
    def test_limits_calls(self):
        rl = RateLimit(max_calls=2, period=60)
        rl.record(now=NOW)
        rl.record(now=NOW + 1)
        with pytest.raises(RateLimitExceededError):
            rl.record(now=NOW + 2)

    def test_resets_after_period(self):
        rl = RateLimit(max_calls=1, period=60)
        rl.record(now=NOW)
        rl.record(now=NOW + 61)
        assert rl.calls == 1


class TestTimeWindow:
    def test_absolute_bounds(self):
        tw = TimeWindow(start=NOW, end=NOW + HOUR)
        assert tw.contains(NOW)
        assert tw.contains(NOW + HOUR)
        assert not tw.contains(NOW - 1)
        assert not tw.contains(NOW + HOUR + 1)

    def test_unbounded_end(self):
        assert TimeWindow(start=NOW).contains(NOW + 10**8)

    def test_business_hours(self):
        tw = TimeWindow(start_hour=9, end_hour=17)
        assert tw.contains(_ts(2024, 1, 3, 9, 0))
        assert tw.contains(_ts(2024, 1, 3, 17, 59))
        assert not tw.contains(_ts(2024, 1, 3, 18, 0))
        assert not tw.contains(_ts(2024, 1, 3, 8, 59))

    def test_overnight_hours_wrap(self):
        tw = TimeWindow(start_hour=22, end_hour=2)
        assert tw.contains(_ts(2024, 1, 3, 23, 30))
        assert tw.contains(_ts(2024, 1, 4, 1, 0))
        assert not tw.contains(_ts(2024, 1, 3, 12, 0))

    def test_weekdays(self):
        weekdays = TimeWindow(days=frozenset(range(5)))
        assert weekdays.contains(_ts(2024, 1, 3, 12))  # Wednesday
        assert not weekdays.contains(_ts(2024, 1, 6, 12))  # Saturday


class TestCompose:
    def test_empty(self):
        p = compose_policies()
        assert p.spending_limits == []
        assert p.contract_allowlist is None
        assert p.function_allowlist is None
        assert p.time_window is None
        assert p.rate_limit is None

    def test_skips_none(self):
        assert compose_policies(None, None) == compose_policies()

    def test_single_passthrough(self):
        p = Policy(
            spending_limits=[SpendingLimit.new(USDC, 1000, HOUR, now=NOW)],
            contract_allowlist=ContractAllowlist(frozenset([ROUTER])),
            function_allowlist=FunctionAllowlist.from_signatures(["transfer(address,uint256)"]),
            time_window=TimeWindow(start=NOW, end=NOW + HOUR, start_hour=9, end_hour=17),
            rate_limit=RateLimit(max_calls=10, period=60),
        )
        c = compose_policies(p)
        assert c.spending_limits == p.spending_limits
        assert c.contract_allowlist == p.contract_allowlist
        assert c.function_allowlist == p.function_allowlist
        assert c.time_window == p.time_window
        assert c.rate_limit == p.rate_limit

    def test_single_keeps_identity(self):
        p = Policy(policy_id="abc", created_at=NOW)
        c = compose_policies(None, p)
        assert (c.policy_id, c.created_at) == ("abc", NOW)

    def test_merge_drops_identity(self):
        a = Policy(policy_id="a", created_at=NOW)
        b = Policy(policy_id="b", created_at=NOW + 1)
        c = compose_policies(a, b)
        assert (c.policy_id, c.created_at) == (None, None)

    def test_hours_and_days_from_first_window(self):
        a = Policy(time_window=TimeWindow(start=NOW, start_hour=0, end_hour=23))
        b = Policy(time_window=TimeWindow(start=NOW, start_hour=9, end_hour=17, days=frozenset(range(5))))
        tw = compose_policies(a, b).time_window
        assert (tw.start_hour, tw.end_hour, tw.days) == (0, 23, frozenset())

    def test_limits_copied_not_shared(self):
        p = Policy(spending_limits=[SpendingLimit.new(USDC, 1000, HOUR, now=NOW)])
        c = compose_policies(p)
        c.spending_limits[0].record(10, now=NOW)
        assert p.spending_limits[0].spent == 0

    def test_spending_limits_concatenated(self):
        a = Policy(spending_limits=[SpendingLimit.new(USDC, 1000, HOUR, now=NOW)])
        b = Policy(spending_limits=[SpendingLimit.new(USDC, 500, HOUR, now=NOW)])
        assert [sl.max_amount for sl in compose_policies(a, b).spending_limits] == [1000, 500]

    def test_allowlists_unioned(self):
        a = Policy(contract_allowlist=ContractAllowlist(frozenset([ROUTER])))
        b = Policy(contract_allowlist=ContractAllowlist(frozenset([OTHER])))
        c = compose_policies(a, b, Policy())
        assert c.contract_allowlist.contracts == {ROUTER.lower(), OTHER.lower()}
        assert c.function_allowlist is None

    def test_time_window_tightens(self):
        a = Policy(time_window=TimeWindow(start=NOW, end=None))
        b = Policy(time_window=TimeWindow(start=NOW + 10, end=NOW + 1000))
        c = Policy(time_window=TimeWindow(start=NOW + 5, end=NOW + 500))
        tw = compose_policies(a, b, c).time_window
        assert tw.start == NOW + 10
        assert tw.end == NOW + 500

    def test_unbounded_end_never_loosens(self):
        a = Policy(time_window=TimeWindow(start=NOW, end=NOW + 100))
        b = Policy(time_window=TimeWindow(start=NOW))
        assert compose_policies(a, b).time_window.end == NOW + 100

    def test_rate_limit_min_calls_max_period(self):
        a = Policy(rate_limit=RateLimit(max_calls=100, period=HOUR))
        b = Policy(rate_limit=RateLimit(max_calls=50, period=2 * HOUR))
        rl = compose_policies(a, b).rate_limit
        assert (rl.max_calls, rl.period) == (50, 2 * HOUR)

    def test_inputs_untouched(self):
        a = Policy(rate_limit=RateLimit(max_calls=100, period=HOUR))
        b = Policy(rate_limit=RateLimit(max_calls=50, period=2 * HOUR))
        compose_policies(a, b)
        assert a.rate_limit.max_calls == 100


class TestValidate:
    def test_valid(self):
        validate_policy(
            Policy(
                spending_limits=[SpendingLimit.new(USDC, 1, HOUR)],
                time_window=TimeWindow(start=NOW, end=NOW + 1, start_hour=0, end_hour=23),
                rate_limit=RateLimit(max_calls=1, period=1),
            )
        )

    def test_missing_policy(self):
        with pytest.raises(InvalidInputError):
            validate_policy(None)

    @pytest.mark.parametrize(
        "policy,message",
        [
            (Policy(spending_limits=[SpendingLimit(USDC, 0, HOUR)]), "invalid spending limit amount"),
            (Policy(spending_limits=[SpendingLimit(USDC, 10, 0)]), "invalid spending limit period"),
            (Policy(time_window=TimeWindow(start=NOW, end=NOW - 1)), "time window start after end"),
            (Policy(time_window=TimeWindow(start_hour=24)), "invalid start hour"),
            (Policy(time_window=TimeWindow(end_hour=-1)), "invalid end hour"),
            (Policy(rate_limit=RateLimit(max_calls=0, period=1)), "rate limit max calls must be positive"),
            (Policy(rate_limit=RateLimit(max_calls=1, period=0)), "invalid rate limit period"),
        ],
    )
    def test_violations(self, policy, message):
        with pytest.raises(PolicyValidationError, match=message):
            validate_policy(policy)

    def test_first_violation_wins(self):
        p = Policy(
            spending_limits=[SpendingLimit(USDC, 0, HOUR)],
            rate_limit=RateLimit(max_calls=0, period=0),
        )
        with pytest.raises(PolicyValidationError, match="spending limit"):
            validate_policy(p)


class TestSerialization:
    def test_dict_round_trip(self):
        p = Policy(
            policy_id="abc",
            spending_limits=[SpendingLimit.new(USDC, 10**24, HOUR, now=NOW)],
            contract_allowlist=ContractAllowlist(frozenset([ROUTER])),
            function_allowlist=FunctionAllowlist.from_signatures(["transfer(address,uint256)"]),
            time_window=TimeWindow(start=NOW, start_hour=9, end_hour=17, days=frozenset({0, 4})),
            rate_limit=RateLimit(max_calls=3, period=60),
            created_at=NOW,
        )
        assert Policy.from_dict(p.to_dict()) == p

    def test_from_dict_accepts_signatures(self):
        p = Policy.from_dict({"function_allowlist": ["transfer(address,uint256)"]})
        assert p.function_allowlist.selectors == {"a9059cbb"}

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(InvalidInputError):
            Policy.from_dict(["nope"])
