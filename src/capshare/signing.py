"""Actor signing and ledger addresses.

An actor is anything that can sign: a wallet, a service key, a test key.
Addresses are derived from Ed25519 public keys the way the ledger does it:
``0x`` + blake2b-256(scheme flag || public key).
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

logger = logging.getLogger(__name__)

ED25519_FLAG = b"\x00"
ADDRESS_HEX_LENGTH = 64

_HEX_RE = re.compile(r"^[0-9a-f]+$")


def derive_address(public_key_bytes: bytes) -> str:
    """Derive the ledger address owning an Ed25519 public key."""
    digest = hashlib.blake2b(ED25519_FLAG + public_key_bytes, digest_size=32).digest()
    return "0x" + digest.hex()


def normalize_address(address: str) -> str:
    """Canonicalize an address or object id to ``0x`` + 64 lowercase hex digits.

    Short forms such as ``0x6`` are left-padded with zeros.

    Raises:
        ValueError: If the value is not a hex address
    """
    if not isinstance(address, str):
        raise ValueError(f"Address must be a string, got {type(address).__name__}")
    value = address.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if not value or len(value) > ADDRESS_HEX_LENGTH or not _HEX_RE.match(value):
        raise ValueError(f"Invalid address: {address!r}")
    return "0x" + value.rjust(ADDRESS_HEX_LENGTH, "0")


def verify_signature(public_key_bytes: bytes, message: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature; malformed keys count as failures."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key_bytes).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


@runtime_checkable
class Signer(Protocol):
    """An actor able to sign challenge messages and transactions.

    Implementations raise :class:`capshare.errors.UserRejected` when the
    actor declines.
    """

    @property
    def address(self) -> str:
        ...

    @property
    def public_key_bytes(self) -> bytes:
        ...

    async def sign_personal_message(self, message: bytes) -> bytes:
        ...

    async def sign_transaction(self, tx_bytes: bytes) -> bytes:
        ...


class Ed25519Signer:
    """Signer backed by an in-process Ed25519 key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key_bytes = private_key.public_key().public_bytes_raw()
        self._address = derive_address(self._public_key_bytes)

    @classmethod
    def generate(cls) -> Ed25519Signer:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed_hex(cls, seed_hex: str) -> Ed25519Signer:
        """Load a signer from a 32-byte hex seed (``0x`` prefix optional)."""
        value = seed_hex.strip()
        if value.startswith("0x"):
            value = value[2:]
        return cls(Ed25519PrivateKey.from_private_bytes(bytes.fromhex(value)))

    def seed_hex(self) -> str:
        return self._private_key.private_bytes_raw().hex()

    @property
    def address(self) -> str:
        return self._address

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key_bytes

    async def sign_personal_message(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    async def sign_transaction(self, tx_bytes: bytes) -> bytes:
        return self._private_key.sign(tx_bytes)

    def __repr__(self) -> str:
        return f"Ed25519Signer({self._address[:10]}...)"
