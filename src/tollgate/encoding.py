"""
ABI encoding for contract calls and on-chain session-key policies.

Call arguments are checked against a small set of argument kinds before
they reach eth-abi, so a bad argument fails with InvalidInputError
naming the parameter rather than a codec error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import is_address

from .errors import InvalidInputError
from .hexutil import function_selector, normalize_address, normalize_selector
from .policy import Policy

POLICY_ABI_TYPES = [
    "address[]",
    "uint256[]",
    "address[]",
    "bytes4[]",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
]

_SIGNATURE_RE = re.compile(r"^([A-Za-z_$][A-Za-z0-9_$]*)\((.*)\)$")
_INT_RE = re.compile(r"^(u?int)(\d*)$")
_FIXED_BYTES_RE = re.compile(r"^bytes(\d+)$")


class ArgKind(str, Enum):
    ADDRESS = "address"
    UINT = "uint"
    INT = "int"
    BOOL = "bool"
    BYTES = "bytes"
    FIXED_BYTES = "fixed_bytes"
    STRING = "string"
    ARRAY = "array"


@dataclass(frozen=True)
class ArgType:
    kind: ArgKind
    abi_type: str
    size: int = 0
    element: Optional["ArgType"] = None


def parse_arg_type(abi_type: str) -> ArgType:
    """Map an ABI type string onto the supported argument kinds."""
    t = abi_type.strip()
    if t.endswith("[]"):
        element = parse_arg_type(t[:-2])
        return ArgType(ArgKind.ARRAY, t, element=element)
    if t == "address":
        return ArgType(ArgKind.ADDRESS, t)
    if t == "bool":
        return ArgType(ArgKind.BOOL, t)
    if t == "string":
        return ArgType(ArgKind.STRING, t)
    if t == "bytes":
        return ArgType(ArgKind.BYTES, t)
    match = _FIXED_BYTES_RE.match(t)
    if match:
        size = int(match.group(1))
        if not 1 <= size <= 32:
            raise InvalidInputError(f"Unsupported ABI type: {abi_type}")
        return ArgType(ArgKind.FIXED_BYTES, t, size=size)
    match = _INT_RE.match(t)
    if match:
        bits = int(match.group(2) or 256)
        if bits % 8 or not 8 <= bits <= 256:
            raise InvalidInputError(f"Unsupported ABI type: {abi_type}")
        kind = ArgKind.UINT if match.group(1) == "uint" else ArgKind.INT
        return ArgType(kind, f"{match.group(1)}{bits}", size=bits)
    raise InvalidInputError(f"Unsupported ABI type: {abi_type}")


def parse_signature(signature: str) -> tuple[str, list[ArgType]]:
    """Split ``transfer(address,uint256)`` into name and argument types."""
    match = _SIGNATURE_RE.match("".join(signature.split()))
    if match is None:
        raise InvalidInputError(f"Invalid function signature: {signature}")
    params = match.group(2)
    if not params:
        return match.group(1), []
    return match.group(1), [parse_arg_type(p) for p in params.split(",")]


def encode_call(signature: str, args: Sequence[Any] = ()) -> bytes:
    """Selector followed by the ABI-encoded arguments."""
    name, arg_types = parse_signature(signature)
    if len(args) != len(arg_types):
        raise InvalidInputError(
            f"{signature} takes {len(arg_types)} arguments, got {len(args)}"
        )
    values = [_coerce(t, v, f"arg{i}") for i, (t, v) in enumerate(zip(arg_types, args))]
    canonical = f"{name}({','.join(t.abi_type for t in arg_types)})"
    try:
        return function_selector(canonical) + encode([t.abi_type for t in arg_types], values)
    except EncodingError as exc:
        raise InvalidInputError(f"Cannot encode arguments for {signature}: {exc}") from exc


def _coerce(arg_type: ArgType, value: Any, name: str) -> Any:
    kind = arg_type.kind
    if kind == ArgKind.ARRAY:
        if not isinstance(value, (list, tuple)):
            raise InvalidInputError(f"{name} must be a list for {arg_type.abi_type}")
        return [_coerce(arg_type.element, v, f"{name}[{i}]") for i, v in enumerate(value)]
    if kind == ArgKind.ADDRESS:
        if isinstance(value, (bytes, bytearray)) and len(value) == 20:
            return bytes(value)
        if not isinstance(value, str) or not is_address(value):
            raise InvalidInputError(f"{name} must be an address")
        return normalize_address(value)
    if kind in (ArgKind.UINT, ArgKind.INT):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidInputError(f"{name} must be an integer for {arg_type.abi_type}")
        if kind == ArgKind.UINT and not 0 <= value < 2 ** arg_type.size:
            raise InvalidInputError(f"{name} out of range for {arg_type.abi_type}")
        if kind == ArgKind.INT and not -(2 ** (arg_type.size - 1)) <= value < 2 ** (arg_type.size - 1):
            raise InvalidInputError(f"{name} out of range for {arg_type.abi_type}")
        return value
    if kind == ArgKind.BOOL:
        if not isinstance(value, bool):
            raise InvalidInputError(f"{name} must be a bool")
        return value
    if kind == ArgKind.STRING:
        if not isinstance(value, str):
            raise InvalidInputError(f"{name} must be a string")
        return value
    if not isinstance(value, (bytes, bytearray)):
        raise InvalidInputError(f"{name} must be bytes for {arg_type.abi_type}")
    if kind == ArgKind.FIXED_BYTES and len(value) > arg_type.size:
        raise InvalidInputError(f"{name} longer than {arg_type.size} bytes")
    return bytes(value)


@dataclass
class PolicyEncoding:
    """Flat form of a policy as consumed by session-key validator contracts."""

    spending_tokens: list[str] = field(default_factory=list)
    spending_amounts: list[int] = field(default_factory=list)
    contracts: list[str] = field(default_factory=list)
    function_selectors: list[bytes] = field(default_factory=list)
    valid_after: int = 0
    valid_until: int = 0
    rate_max_calls: int = 0
    rate_period: int = 0

    @classmethod
    def from_policy(cls, policy: Policy) -> PolicyEncoding:
        """Flatten a policy. An unbounded time window encodes as ``valid_until=0``."""
        window = policy.time_window
        rate = policy.rate_limit
        return cls(
            spending_tokens=[normalize_address(sl.token) for sl in policy.spending_limits],
            spending_amounts=[sl.max_amount for sl in policy.spending_limits],
            contracts=sorted(policy.contract_allowlist.contracts) if policy.contract_allowlist else [],
            function_selectors=(
                [bytes.fromhex(s) for s in sorted(policy.function_allowlist.selectors)]
                if policy.function_allowlist else []
            ),
            valid_after=window.start if window else 0,
            valid_until=(window.end or 0) if window else 0,
            rate_max_calls=rate.max_calls if rate else 0,
            rate_period=rate.period if rate else 0,
        )


def encode_policy(encoding: PolicyEncoding) -> bytes:
    if encoding is None:
        raise InvalidInputError("policy encoding is required")
    if len(encoding.spending_tokens) != len(encoding.spending_amounts):
        raise InvalidInputError("spending tokens and amounts must have the same length")
    try:
        return encode(
            POLICY_ABI_TYPES,
            [
                [normalize_address(t) for t in encoding.spending_tokens],
                list(encoding.spending_amounts),
                [normalize_address(c) for c in encoding.contracts],
                [bytes.fromhex(normalize_selector(s)) for s in encoding.function_selectors],
                encoding.valid_after,
                encoding.valid_until,
                encoding.rate_max_calls,
                encoding.rate_period,
            ],
        )
    except EncodingError as exc:
        raise InvalidInputError(f"Cannot encode policy: {exc}") from exc


def decode_policy(data: bytes) -> PolicyEncoding:
    try:
        values = decode(POLICY_ABI_TYPES, bytes(data))
    except DecodingError as exc:
        raise InvalidInputError(f"invalid policy data: {exc}") from exc
    tokens, amounts, contracts, selectors, valid_after, valid_until, rate_max, rate_period = values
    return PolicyEncoding(
        spending_tokens=[normalize_address(t) for t in tokens],
        spending_amounts=list(amounts),
        contracts=[normalize_address(c) for c in contracts],
        function_selectors=[bytes(s) for s in selectors],
        valid_after=valid_after,
        valid_until=valid_until,
        rate_max_calls=rate_max,
        rate_period=rate_period,
    )
