"""Per-file encryption identities.

An identity is 32 random bytes. The ledger stores it as ``vector<u8>``;
the threshold network takes it as a ``0x``-prefixed lowercase hex string.
Both forms encode the same value.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from .defaults import IDENTITY_BYTES, IDENTITY_HEX_PREFIX


@dataclass(frozen=True)
class EncryptionIdentity:
    """The identity binding one capability to one encrypted payload."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, bytes | bytearray):
            raise TypeError("Encryption identity must be bytes")
        if len(self.raw) != IDENTITY_BYTES:
            raise ValueError(
                f"Encryption identity must be {IDENTITY_BYTES} bytes, got {len(self.raw)}"
            )
        object.__setattr__(self, "raw", bytes(self.raw))

    @property
    def hex(self) -> str:
        """Prefixed lowercase hex form used for encryption."""
        return IDENTITY_HEX_PREFIX + self.raw.hex()

    def as_vector(self) -> list[int]:
        """Byte values as a ledger ``vector<u8>`` argument."""
        return list(self.raw)

    @classmethod
    def from_hex(cls, value: str) -> EncryptionIdentity:
        """Parse the prefixed hex form produced by :attr:`hex`."""
        if not value.startswith(IDENTITY_HEX_PREFIX):
            raise ValueError(f"Encryption identity must start with {IDENTITY_HEX_PREFIX!r}")
        digits = value[len(IDENTITY_HEX_PREFIX):]
        if digits != digits.lower():
            raise ValueError("Encryption identity hex must be lowercase")
        return cls(bytes.fromhex(digits))

    @classmethod
    def from_vector(cls, values: list[int]) -> EncryptionIdentity:
        """Parse a ledger ``vector<u8>`` value."""
        if not all(isinstance(v, int) and 0 <= v <= 255 for v in values):
            raise ValueError("Encryption identity vector must hold byte values")
        return cls(bytes(values))

    def __repr__(self) -> str:
        return f"EncryptionIdentity({self.hex[:10]}...)"


def generate_identity() -> EncryptionIdentity:
    """Draw a fresh identity from the OS CSPRNG."""
    return EncryptionIdentity(secrets.token_bytes(IDENTITY_BYTES))
