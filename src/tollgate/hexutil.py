"""Address, hex and selector helpers shared across modules."""

from __future__ import annotations

import re
from typing import Any

from eth_utils import keccak

from .errors import InvalidInputError


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SELECTOR_RE = re.compile(r"^[a-f0-9]{8}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidInputError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidInputError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def address_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def decode_hex(value: Any, field_name: str) -> bytes:
    """Decode an optionally 0x-prefixed hex string."""
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a hex string")
    try:
        return bytes.fromhex(strip_0x(value.strip()))
    except ValueError as exc:
        raise InvalidInputError(f"{field_name} must be a hex string") from exc


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 over the canonical function signature."""
    canonical = "".join(signature.split())
    if not canonical or "(" not in canonical or not canonical.endswith(")"):
        raise InvalidInputError(f"Invalid function signature: {signature}")
    return keccak(text=canonical)[:4]


def selector_hex(signature: str) -> str:
    return function_selector(signature).hex()


def normalize_selector(value: str | bytes) -> str:
    """Accept raw 4 bytes or 8 hex chars (0x optional), return bare lower hex."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 4:
            raise InvalidInputError("Function selector must be 4 bytes")
        return bytes(value).hex()
    candidate = strip_0x(str(value).strip()).lower()
    if not _SELECTOR_RE.match(candidate):
        raise InvalidInputError(f"Invalid function selector: {value}")
    return candidate
