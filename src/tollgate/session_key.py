"""
Delegated session keys.

A session key is a short-lived secp256k1 keypair bound to one chain and
a validity window. The wallet owner hands it to an agent; the agent signs
with it until the window closes or the agent is revoked.

Wire format (hex, 256 chars):
    private scalar | chain id | valid-after | valid-until
each field 32 bytes big-endian.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Union

from eth_account import Account
from eth_keys import keys
from eth_keys.constants import SECPK1_N
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError

from .errors import (
    AddressMismatchError,
    InvalidChainError,
    InvalidInputError,
    KeyNotYetValidError,
    MalformedKeyDataError,
    MissingKeyError,
    SessionKeyExpiredError,
)
from .hexutil import strip_0x

logger = logging.getLogger(__name__)

FIELD_SIZE = 32
SERIALIZED_SIZE = 4 * FIELD_SIZE
SIGNATURE_SIZE = 65


@dataclass(frozen=True)
class SessionKey:
    """Delegated signing key with chain binding and validity window."""

    private_key: Optional[bytes] = field(repr=False)
    address: str
    chain_id: Optional[int]
    valid_after: int
    valid_until: int

    @classmethod
    def from_private_key(
        cls,
        private_key: bytes,
        chain_id: Optional[int],
        valid_after: int,
        valid_until: int,
    ) -> "SessionKey":
        """Build a key whose address is derived from ``private_key``."""
        return cls(
            private_key=bytes(private_key),
            address=_derive_address(private_key),
            chain_id=chain_id,
            valid_after=valid_after,
            valid_until=valid_until,
        )

    @property
    def public_key(self) -> bytes:
        return public_key_of(self)

    def is_valid(self, now: Optional[int] = None) -> bool:
        try:
            validate_session_key(self, now=now)
        except (MissingKeyError, InvalidChainError, KeyNotYetValidError,
                SessionKeyExpiredError, AddressMismatchError):
            return False
        return True


def generate_session_key(
    chain_id: int,
    duration: Union[int, timedelta],
    now: Optional[int] = None,
) -> SessionKey:
    """Create a fresh keypair valid from ``now`` for ``duration`` seconds."""
    seconds = int(duration.total_seconds()) if isinstance(duration, timedelta) else int(duration)
    if seconds <= 0:
        raise InvalidInputError("Session key duration must be positive")
    issued_at = int(now if now is not None else time.time())
    account = Account.create()
    key = SessionKey.from_private_key(
        bytes(account.key),
        chain_id=chain_id,
        valid_after=issued_at,
        valid_until=issued_at + seconds,
    )
    logger.debug("Generated session key %s (chain %s, %ds)", key.address, chain_id, seconds)
    return key


def serialize_session_key(key: SessionKey) -> str:
    """Encode a session key as 128 bytes of hex."""
    if key.private_key is None:
        raise MissingKeyError("cannot serialize a session key without a private key")
    raw = b"".join(
        (
            _pad32(int.from_bytes(key.private_key, "big")),
            _pad32(key.chain_id or 0),
            _pad32(key.valid_after),
            _pad32(key.valid_until),
        )
    )
    return raw.hex()


def deserialize_session_key(data: Union[str, bytes]) -> SessionKey:
    """Decode the hex produced by :func:`serialize_session_key`.

    The address is always re-derived from the private scalar.
    """
    text = data.decode("ascii", errors="replace") if isinstance(data, (bytes, bytearray)) else data
    if not isinstance(text, str):
        raise MalformedKeyDataError("Session key data must be a hex string")
    try:
        raw = bytes.fromhex(strip_0x(text.strip()))
    except ValueError as exc:
        raise MalformedKeyDataError("Session key data is not valid hex") from exc
    if len(raw) < SERIALIZED_SIZE:
        raise MalformedKeyDataError(
            f"Session key data too short: {len(raw)} bytes, need {SERIALIZED_SIZE}"
        )

    fields = [raw[i * FIELD_SIZE:(i + 1) * FIELD_SIZE] for i in range(4)]
    private_key = fields[0]
    if not 0 < int.from_bytes(private_key, "big") < SECPK1_N:
        raise MalformedKeyDataError("Invalid private key scalar")
    chain_id, valid_after, valid_until = (int.from_bytes(f, "big") for f in fields[1:])
    try:
        return SessionKey.from_private_key(
            private_key,
            chain_id=chain_id or None,
            valid_after=valid_after,
            valid_until=valid_until,
        )
    except ValidationError as exc:
        raise MalformedKeyDataError(f"Invalid private key scalar: {exc}") from exc


def validate_session_key(key: Optional[SessionKey], now: Optional[int] = None) -> None:
    """Raise the first failing check, in fixed order."""
    if key is None or key.private_key is None:
        raise MissingKeyError()
    if key.chain_id is None or key.chain_id <= 0:
        raise InvalidChainError(key.chain_id)
    current = int(now if now is not None else time.time())
    if current < key.valid_after:
        raise KeyNotYetValidError(key.valid_after)
    if current > key.valid_until:
        raise SessionKeyExpiredError(key.valid_until)
    try:
        derived = _derive_address(key.private_key)
    except ValidationError as exc:
        raise MissingKeyError(f"session key private scalar is invalid: {exc}") from exc
    if derived.lower() != key.address.lower():
        raise AddressMismatchError(key.address, derived)


def sign_with_session_key(
    key: Optional[SessionKey],
    message_hash: bytes,
    now: Optional[int] = None,
) -> bytes:
    """Validate the key, then return a 65-byte ``r || s || v`` signature."""
    validate_session_key(key, now=now)
    if len(message_hash) != 32:
        raise InvalidInputError("Message hash must be 32 bytes")
    signature = keys.PrivateKey(key.private_key).sign_msg_hash(bytes(message_hash))
    raw = signature.to_bytes()
    return raw[:64] + bytes([raw[64] + 27])


def verify_session_key_signature(
    public_key: Union[bytes, keys.PublicKey],
    message_hash: bytes,
    signature: bytes,
) -> bool:
    """True iff ``signature`` over ``message_hash`` was made by ``public_key``."""
    if len(signature) != SIGNATURE_SIZE or len(message_hash) != 32:
        return False
    v = signature[64]
    if v >= 27:
        v -= 27
    try:
        if not isinstance(public_key, keys.PublicKey):
            raw_public = bytes(public_key)
            if len(raw_public) == 65 and raw_public[0] == 4:
                raw_public = raw_public[1:]
            public_key = keys.PublicKey(raw_public)
        sig = keys.Signature(signature[:64] + bytes([v]))
        recovered = sig.recover_public_key_from_msg_hash(bytes(message_hash))
    except (BadSignature, ValidationError, ValueError):
        return False
    return recovered == public_key


def public_key_of(key: SessionKey) -> bytes:
    """Uncompressed 64-byte public key."""
    if key.private_key is None:
        raise MissingKeyError()
    return keys.PrivateKey(key.private_key).public_key.to_bytes()


def _derive_address(private_key: bytes) -> str:
    return keys.PrivateKey(bytes(private_key)).public_key.to_checksum_address()


def _pad32(value: int) -> bytes:
    if value < 0:
        raise InvalidInputError("Session key fields must be non-negative")
    size = max(FIELD_SIZE, (value.bit_length() + 7) // 8)
    return value.to_bytes(size, "big")[-FIELD_SIZE:]
