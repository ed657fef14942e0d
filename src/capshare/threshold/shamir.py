"""Shamir secret sharing of 32-byte keys over GF(2^521 - 1)."""

from __future__ import annotations

import secrets

PRIME = 2**521 - 1
SECRET_BYTES = 32
SHARE_Y_BYTES = 66  # ceil(521 / 8)


def split(secret: bytes, threshold: int, count: int) -> list[tuple[int, int]]:
    """Split ``secret`` into ``count`` shares, any ``threshold`` of which recover it.

    Returns ``(x, y)`` points with x in 1..count.
    """
    if len(secret) != SECRET_BYTES:
        raise ValueError(f"Secret must be {SECRET_BYTES} bytes")
    if not 1 <= threshold <= count:
        raise ValueError(f"Threshold {threshold} must be between 1 and {count}")
    if count > 255:
        raise ValueError("At most 255 shares")

    coefficients = [int.from_bytes(secret, "big")]
    coefficients += [secrets.randbelow(PRIME) for _ in range(threshold - 1)]

    shares = []
    for x in range(1, count + 1):
        y = 0
        for coefficient in reversed(coefficients):
            y = (y * x + coefficient) % PRIME
        shares.append((x, y))
    return shares


def combine(shares: list[tuple[int, int]]) -> bytes:
    """Recover the secret from at least ``threshold`` distinct shares."""
    xs = [x for x, _ in shares]
    if not shares or len(set(xs)) != len(xs):
        raise ValueError("Shares must be non-empty with distinct x coordinates")

    secret = 0
    for i, (x_i, y_i) in enumerate(shares):
        numerator, denominator = 1, 1
        for j, (x_j, _) in enumerate(shares):
            if i != j:
                numerator = (numerator * -x_j) % PRIME
                denominator = (denominator * (x_i - x_j)) % PRIME
        secret = (secret + y_i * numerator * pow(denominator, -1, PRIME)) % PRIME

    if secret >= 2 ** (SECRET_BYTES * 8):
        raise ValueError("Shares do not belong to one secret")
    return secret.to_bytes(SECRET_BYTES, "big")


def encode_share(share: tuple[int, int]) -> bytes:
    x, y = share
    return bytes([x]) + y.to_bytes(SHARE_Y_BYTES, "big")


def decode_share(data: bytes) -> tuple[int, int]:
    if len(data) != 1 + SHARE_Y_BYTES:
        raise ValueError("Malformed share")
    return data[0], int.from_bytes(data[1:], "big")
