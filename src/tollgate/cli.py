"""
Tollgate CLI — session keys, spending policies and x402 fetches for AI agents.

Commands:
    tollgate session new        Generate a delegated session key
    tollgate session inspect    Validate a serialized session key
    tollgate policy validate    Check a policy JSON file
    tollgate policy check       Ask whether a policy allows a contract call
    tollgate policy compose     Merge several policy files
    tollgate policy encode      ABI-encode a policy for on-chain validators
    tollgate fetch              GET a URL, paying x402 challenges automatically
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
import httpx
from click.core import ParameterSource

from . import __version__
from .budget import BudgetPolicy, BudgetTracker
from .encoding import PolicyEncoding, encode_policy
from .errors import InvalidInputError, TollgateError, UnauthorizedError
from .money import format_token_amount, limit_to_base_units
from .policy import Policy, compose_policies, is_allowed, validate_policy
from .session_key import (
    deserialize_session_key,
    generate_session_key,
    serialize_session_key,
    validate_session_key,
)
from .x402_client import X402Config, X402Policy, X402Transport

SESSION_KEY_ENV = "TOLLGATE_SESSION_KEY"


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if raw.isdigit():
        return int(raw)
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 3600, 72h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _load_policy(path: str) -> Policy:
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as exc:
            raise InvalidInputError(f"{path}: invalid JSON ({exc})") from exc
    return Policy.from_dict(data)


def _reject_key_from_argv(ctx: click.Context, unsafe_allow_key_arg: bool) -> None:
    if (
        ctx.get_parameter_source("session_key") == ParameterSource.COMMANDLINE
        and not unsafe_allow_key_arg
    ):
        click.echo(
            "❌ Refusing --session-key from argv. Use the hidden prompt or "
            f"{SESSION_KEY_ENV}, or pass --unsafe-allow-key-arg.",
            err=True,
        )
        sys.exit(1)


def _ceiling(value: Optional[str], option: str) -> Optional[int]:
    if value is None:
        return None
    base_units = limit_to_base_units(value)
    if base_units <= 0:
        raise InvalidInputError(f"{option} must be at least 0.000001 USDC, got {value}")
    return base_units


def _base_transport() -> httpx.BaseTransport:
    return httpx.HTTPTransport()


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Tollgate — bounded spending authority for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Session keys ──────────────────────────────────────────────────


@main.group()
def session():
    """Delegated session keys."""


@session.command("new")
@click.option("--chain-id", required=True, type=int, help="Chain the key is bound to (e.g. 8453)")
@click.option("--duration", default="24h", show_default=True, help="Validity, e.g. 3600, 72h, 30d")
def session_new(chain_id: int, duration: str):
    """Generate a session key and print its serialized form."""
    try:
        seconds = _parse_duration_to_seconds(duration)
        key = generate_session_key(chain_id, seconds)
    except (ValueError, TollgateError) as exc:
        _fail(str(exc))

    click.echo(f"✅ Session key created for chain {chain_id}")
    click.echo(f"   Address:     {key.address}")
    click.echo(f"   Valid until: {time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime(key.valid_until))}")
    click.echo(f"   Key:         {serialize_session_key(key)}")
    click.echo(f"   Store it securely and pass it via {SESSION_KEY_ENV} or the hidden prompt.")


@session.command("inspect")
@click.option("--session-key", prompt=True, hide_input=True, envvar=SESSION_KEY_ENV,
              help="Serialized session key (prompted if omitted)")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False,
              help="Allow --session-key on argv (unsafe, visible in process list)")
@click.pass_context
def session_inspect(ctx: click.Context, session_key: str, unsafe_allow_key_arg: bool):
    """Decode a session key and validate it."""
    _reject_key_from_argv(ctx, unsafe_allow_key_arg)
    try:
        key = deserialize_session_key(session_key)
    except TollgateError as exc:
        _fail(str(exc))

    click.echo(f"   Address:     {key.address}")
    click.echo(f"   Chain:       {key.chain_id}")
    click.echo(f"   Valid after: {key.valid_after}")
    click.echo(f"   Valid until: {key.valid_until}")
    try:
        validate_session_key(key)
    except UnauthorizedError as exc:
        _fail(f"Session key unusable: {exc}")
    click.echo("✅ Session key is valid")


# ── Policies ──────────────────────────────────────────────────────


@main.group()
def policy():
    """Spending policies."""


@policy.command("validate")
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
def policy_validate(policy_file: str):
    """Check a policy file for structural errors."""
    try:
        validate_policy(_load_policy(policy_file))
    except TollgateError as exc:
        _fail(f"Invalid policy: {exc}")
    click.echo(f"✅ Policy {Path(policy_file).name} is valid")


@policy.command("check")
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--contract", required=True, help="Target contract address")
@click.option("--function", "function_signature", required=True, help="e.g. 'transfer(address,uint256)'")
def policy_check(policy_file: str, contract: str, function_signature: str):
    """Ask whether a policy allows calling FUNCTION on CONTRACT."""
    try:
        loaded = _load_policy(policy_file)
    except TollgateError as exc:
        _fail(f"Invalid policy: {exc}")

    if is_allowed(loaded, contract, function_signature):
        click.echo(f"✅ ALLOWED: {function_signature} on {contract}")
    else:
        _fail(f"DENIED: {function_signature} on {contract}")


@policy.command("compose")
@click.argument("policy_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def policy_compose(policy_files: tuple[str, ...]):
    """Merge policies (most restrictive wins) and print the result as JSON."""
    try:
        composed = compose_policies(*(_load_policy(p) for p in policy_files))
    except TollgateError as exc:
        _fail(f"Invalid policy: {exc}")
    click.echo(json.dumps(composed.to_dict(), indent=2))


@policy.command("encode")
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
def policy_encode(policy_file: str):
    """ABI-encode a policy for session-key validator contracts."""
    try:
        encoded = encode_policy(PolicyEncoding.from_policy(_load_policy(policy_file)))
    except TollgateError as exc:
        _fail(f"Cannot encode policy: {exc}")
    click.echo("0x" + encoded.hex())


# ── x402 fetch ────────────────────────────────────────────────────


@main.command()
@click.argument("url")
@click.option("--session-key", prompt=True, hide_input=True, envvar=SESSION_KEY_ENV,
              help="Serialized session key (prompted if omitted)")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False,
              help="Allow --session-key on argv (unsafe, visible in process list)")
@click.option("--max-per-request", type=str, default=None, help="Per-request ceiling in USDC")
@click.option("--max-per-period", type=str, default=None, help="Per-period ceiling in USDC")
@click.option("--period", default="24h", show_default=True, help="Budget period, e.g. 1h, 24h")
@click.option("--allow-payee", multiple=True, help="Allowed payee address (repeatable)")
@click.option("--allow-domain", multiple=True, help="Allowed host (repeatable)")
@click.option("--scheme", multiple=True, help="Accepted payment scheme (repeatable)")
@click.option("--no-auto-pay", is_flag=True, default=False, help="Show the 402 instead of paying")
@click.option("--timeout", type=float, default=30.0, show_default=True)
@click.pass_context
def fetch(
    ctx: click.Context,
    url: str,
    session_key: str,
    unsafe_allow_key_arg: bool,
    max_per_request: Optional[str],
    max_per_period: Optional[str],
    period: str,
    allow_payee: tuple[str, ...],
    allow_domain: tuple[str, ...],
    scheme: tuple[str, ...],
    no_auto_pay: bool,
    timeout: float,
):
    """GET URL, paying an x402 challenge within the given limits."""
    _reject_key_from_argv(ctx, unsafe_allow_key_arg)
    try:
        key = deserialize_session_key(session_key)
        per_request = _ceiling(max_per_request, "--max-per-request")
        per_period = _ceiling(max_per_period, "--max-per-period")
        budget = BudgetTracker(
            BudgetPolicy(
                max_per_request=per_request,
                max_per_period=per_period,
                allowed_payees=frozenset(allow_payee),
            ),
            period_duration=_parse_duration_to_seconds(period),
        )
        transport = X402Transport(
            key,
            budget=budget,
            config=X402Config(auto_pay=not no_auto_pay, allowed_schemes=scheme),
            policy=X402Policy(
                max_per_request=per_request,
                allowed_payees=frozenset(allow_payee),
                allowed_domains=frozenset(allow_domain),
            ),
            transport=_base_transport(),
        )
    except (ValueError, TollgateError) as exc:
        _fail(str(exc))

    try:
        with httpx.Client(transport=transport, timeout=timeout) as client:
            response = client.get(url)
    except UnauthorizedError as exc:
        _fail(f"Session key cannot sign: {exc}")
    except httpx.HTTPError as exc:
        _fail(f"Request failed: {type(exc).__name__}: {exc}")

    records = budget.records()
    status_icon = "✅" if response.is_success else "❌"
    click.echo(f"{status_icon} {response.status_code} {url}", err=True)
    for record in records:
        click.echo(f"   Paid {format_token_amount(record.amount)} to {record.pay_to}", err=True)
    if not records and response.status_code == 402:
        click.echo("   Payment required but not made (declined or not affordable)", err=True)
    click.echo(response.text)
    if not response.is_success:
        sys.exit(1)
