"""
x402 payment requirements and EIP-3009 payment authorizations.

Flow:
1. Parse the 402 body into PaymentRequirement objects
2. Build EIP-712 typed data for TransferWithAuthorization
3. Sign the digest with the agent's session key
4. Encode the signed authorization as the X-PAYMENT header
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from eth_account import Account
from eth_abi.exceptions import EncodingError
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

from .errors import (
    InvalidInputError,
    MalformedRequirementsError,
    NoAcceptableSchemeError,
    ProtocolError,
)
from .hexutil import address_bytes, decode_hex, normalize_address
from .money import parse_base_units
from .session_key import SessionKey, sign_with_session_key, validate_session_key

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# USDC on Base
DEFAULT_ASSET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_TOKEN_NAME = "USD Coin"
DEFAULT_TOKEN_VERSION = "2"
DEFAULT_AUTHORIZATION_TTL = 300

NETWORK_CHAIN_IDS = {
    "base": 8453,
    "base-sepolia": 84532,
    "ethereum": 1,
    "sepolia": 11155111,
    "polygon": 137,
    "polygon-amoy": 80002,
    "avalanche": 43114,
    "avalanche-fuji": 43113,
}

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


@dataclass
class PaymentRequirement:
    """One way a resource is willing to be paid."""

    scheme: str = ""
    network: str = ""
    max_amount_required: str = ""
    resource: str = ""
    description: str = ""
    mime_type: str = ""
    pay_to: str = ""
    required_deadline: str = ""
    asset: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def amount(self) -> int:
        return parse_base_units(self.max_amount_required, "maxAmountRequired")

    @property
    def chain_id(self) -> Optional[int]:
        return network_chain_id(self.network)

    def to_dict(self) -> dict[str, Any]:
        d = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "requiredDeadline": self.required_deadline,
            "extra": dict(self.extra),
        }
        if self.asset is not None:
            d["asset"] = self.asset
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PaymentRequirement:
        if not isinstance(d, dict):
            raise MalformedRequirementsError("payment requirement must be a JSON object")
        extra = d.get("extra")
        if extra is not None and not isinstance(extra, dict):
            raise MalformedRequirementsError("payment requirement extra must be an object")
        asset = d.get("asset")
        return cls(
            scheme=_text(d.get("scheme")),
            network=_text(d.get("network")),
            max_amount_required=_text(d.get("maxAmountRequired")),
            resource=_text(d.get("resource")),
            description=_text(d.get("description")),
            mime_type=_text(d.get("mimeType")),
            pay_to=_text(d.get("payTo")),
            required_deadline=_text(d.get("requiredDeadline")),
            asset=str(asset) if asset else None,
            extra=dict(extra or {}),
        )


def parse_payment_requirements(body: bytes | str) -> list[PaymentRequirement]:
    """Parse a 402 body: an object, an array of objects or an ``accepts`` envelope."""
    try:
        data = json.loads(body)
    except (ValueError, TypeError) as exc:
        raise MalformedRequirementsError(f"invalid payment requirements format: {exc}") from exc

    if isinstance(data, dict) and isinstance(data.get("accepts"), list):
        data = data["accepts"]
    if isinstance(data, list):
        return [PaymentRequirement.from_dict(item) for item in data]
    if isinstance(data, dict):
        return [PaymentRequirement.from_dict(data)]
    raise MalformedRequirementsError("invalid payment requirements format")


def select_requirement(
    requirements: Iterable[PaymentRequirement],
    allowed_schemes: Iterable[str] = (),
) -> PaymentRequirement:
    """First requirement in server order whose scheme is acceptable."""
    requirements = list(requirements)
    if not requirements:
        raise NoAcceptableSchemeError("no payment requirements offered")
    schemes = set(allowed_schemes)
    if not schemes:
        return requirements[0]
    for requirement in requirements:
        if requirement.scheme in schemes:
            return requirement
    offered = ", ".join(r.scheme or "?" for r in requirements)
    raise NoAcceptableSchemeError(f"no acceptable scheme among: {offered}")


def network_chain_id(network: str) -> Optional[int]:
    """Map ``base`` / ``eip155:8453`` style names to a chain id."""
    candidate = (network or "").strip().lower()
    if candidate.startswith("eip155:") and candidate[7:].isdigit():
        return int(candidate[7:])
    return NETWORK_CHAIN_IDS.get(candidate)


def payment_nonce(payer: str, pay_to: str, amount: int) -> bytes:
    """keccak256(payer || payTo || uint256(amount))."""
    return keccak(address_bytes(payer) + address_bytes(pay_to) + amount.to_bytes(32, "big"))


def build_transfer_authorization(
    payer: str,
    requirement: PaymentRequirement,
    chain_id: int,
    valid_before: int,
    valid_after: int = 0,
) -> dict[str, Any]:
    """EIP-712 typed data for an EIP-3009 TransferWithAuthorization."""
    amount = requirement.amount
    pay_to = normalize_address(requirement.pay_to)
    asset = requirement.asset or requirement.extra.get("asset") or DEFAULT_ASSET
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": str(requirement.extra.get("name") or DEFAULT_TOKEN_NAME),
            "version": str(requirement.extra.get("version") or DEFAULT_TOKEN_VERSION),
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(normalize_address(asset)),
        },
        "message": {
            "from": to_checksum_address(normalize_address(payer)),
            "to": to_checksum_address(pay_to),
            "value": amount,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": payment_nonce(payer, pay_to, amount),
        },
    }


def authorization_digest(typed_data: dict[str, Any]) -> bytes:
    """The 32-byte EIP-712 digest that gets signed."""
    signable = encode_typed_data(full_message=typed_data)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def build_payment_header(
    session_key: Optional[SessionKey],
    requirement: PaymentRequirement,
    now: Optional[int] = None,
    authorization_ttl: int = DEFAULT_AUTHORIZATION_TTL,
) -> str:
    """Sign ``requirement`` with the session key and encode the X-PAYMENT value.

    Raises UnauthorizedError when the session key may not sign.
    """
    current = int(now if now is not None else time.time())
    validate_session_key(session_key, now=current)

    valid_before = _deadline(requirement.required_deadline, current + authorization_ttl)
    typed_data = build_transfer_authorization(
        payer=session_key.address,
        requirement=requirement,
        chain_id=session_key.chain_id,
        valid_before=valid_before,
    )
    try:
        digest = authorization_digest(typed_data)
    except EncodingError as exc:
        raise InvalidInputError(f"cannot encode payment authorization: {exc}") from exc
    signature = sign_with_session_key(session_key, digest, now=current)
    message = typed_data["message"]

    payload = {
        "x402Version": X402_VERSION,
        "scheme": requirement.scheme,
        "network": requirement.network,
        "payload": {
            "signature": "0x" + signature.hex(),
            "from": message["from"],
            "to": message["to"],
            "value": str(message["value"]),
            "validAfter": "0",
            "validBefore": str(valid_before),
            "nonce": "0x" + message["nonce"].hex(),
        },
    }
    return json.dumps(payload, separators=(",", ":"))


def decode_payment_header(header: str) -> dict[str, Any]:
    """Parse and shape-check an X-PAYMENT header value."""
    try:
        data = json.loads(header)
    except (ValueError, TypeError) as exc:
        raise ProtocolError(f"invalid payment header: {exc}") from exc
    if not isinstance(data, dict) or data.get("x402Version") != X402_VERSION:
        raise ProtocolError("unsupported payment header version")
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise ProtocolError("payment header missing payload")
    for key in ("signature", "from", "to", "value", "validAfter", "validBefore", "nonce"):
        if not isinstance(payload.get(key), str):
            raise ProtocolError(f"payment header payload missing {key}")
    return data


def recover_payment_signer(
    header: str,
    chain_id: int,
    requirement: Optional[PaymentRequirement] = None,
) -> str:
    """Recover the address that signed an X-PAYMENT header.

    Also checks that the nonce matches payer, payee and value.
    """
    payload = decode_payment_header(header)["payload"]
    try:
        payer = normalize_address(payload["from"])
        pay_to = normalize_address(payload["to"])
        value = parse_base_units(payload["value"], "value")
        valid_after = parse_base_units(payload["validAfter"], "validAfter", allow_zero=True)
        valid_before = parse_base_units(payload["validBefore"], "validBefore", allow_zero=True)
        nonce = decode_hex(payload["nonce"], "nonce")
        signature = decode_hex(payload["signature"], "signature")
    except InvalidInputError as exc:
        raise ProtocolError(f"malformed payment payload: {exc}") from exc

    if nonce != payment_nonce(payer, pay_to, value):
        raise ProtocolError("payment nonce does not match payer, payee and value")

    base = requirement or PaymentRequirement()
    typed_data = build_transfer_authorization(
        payer=payer,
        requirement=PaymentRequirement(
            max_amount_required=str(value),
            pay_to=pay_to,
            asset=base.asset,
            extra=base.extra,
        ),
        chain_id=chain_id,
        valid_before=valid_before,
        valid_after=valid_after,
    )
    try:
        recovered = Account.recover_message(encode_typed_data(full_message=typed_data), signature=signature)
    except Exception as exc:
        raise ProtocolError(f"payment signature invalid: {exc}") from exc
    return normalize_address(recovered)


def _deadline(value: str, fallback: int) -> int:
    candidate = (value or "").strip()
    if not candidate.isascii() or not candidate.isdigit():
        return fallback
    deadline = parse_base_units(candidate, "requiredDeadline", allow_zero=True)
    return deadline if deadline > 0 else fallback


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise MalformedRequirementsError("payment requirement fields must be scalars")
    return str(value)
