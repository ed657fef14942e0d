"""Session credentials for the threshold network.

A session credential is a short-lived Ed25519 key the actor authorizes once
by signing a challenge message. Every key request is then authenticated
with an EdDSA token signed by the session key, so the actor signs once per
session rather than once per file.

Credentials live in process memory only.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from ..defaults import MAX_SESSION_TTL_MINUTES, SESSION_TTL_MINUTES
from ..errors import AccessDenied, SessionExpired
from ..ledger.memory import system_clock
from ..signing import derive_address, normalize_address, verify_signature

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "EdDSA"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def challenge_message(program_id: str, ttl_minutes: int, created_at_ms: int, session_public_key: bytes) -> bytes:
    """The exact text an actor signs to authorize a session key."""
    created = datetime.fromtimestamp(created_at_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return (
        f"Accessing keys of program {program_id} for {ttl_minutes} mins from {created}, "
        f"session key {_b64(session_public_key)}"
    ).encode()


@dataclass
class SessionCredential:
    """An ephemeral session key bound to one actor and one program."""

    bound_address: str
    program_id: str
    ttl_minutes: int
    created_at_ms: int
    session_key: Ed25519PrivateKey = field(repr=False)
    signature: bytes | None = field(default=None, repr=False)
    signer_public_key: bytes | None = field(default=None, repr=False)

    @classmethod
    def issue(
        cls,
        address: str,
        program_id: str,
        ttl_minutes: int = SESSION_TTL_MINUTES,
        now_ms: int | None = None,
    ) -> SessionCredential:
        """Create an unsigned credential with a fresh session key."""
        if not 1 <= ttl_minutes <= MAX_SESSION_TTL_MINUTES:
            raise ValueError(f"Session TTL must be between 1 and {MAX_SESSION_TTL_MINUTES} minutes")
        credential = cls(
            bound_address=normalize_address(address),
            program_id=normalize_address(program_id),
            ttl_minutes=ttl_minutes,
            created_at_ms=system_clock() if now_ms is None else now_ms,
            session_key=Ed25519PrivateKey.generate(),
        )
        logger.info(f"Issued {ttl_minutes}-minute session for {credential.bound_address[:10]}...")
        return credential

    @property
    def session_public_key(self) -> bytes:
        return self.session_key.public_key().public_bytes_raw()

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    @property
    def expires_at_ms(self) -> int:
        return self.created_at_ms + self.ttl_minutes * 60_000

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def challenge_message(self) -> bytes:
        return challenge_message(self.program_id, self.ttl_minutes, self.created_at_ms, self.session_public_key)

    def attach_signature(self, signature: bytes, public_key: bytes) -> None:
        """Attach the actor's signature over :meth:`challenge_message`.

        Raises:
            AccessDenied: If the key does not own the bound address or the
                signature does not verify
        """
        if derive_address(public_key) != self.bound_address:
            raise AccessDenied("Signing key does not belong to the session's address")
        if not verify_signature(public_key, self.challenge_message(), signature):
            raise AccessDenied("Session signature does not verify")
        self.signature = signature
        self.signer_public_key = public_key
        logger.info(f"Session for {self.bound_address[:10]}... signed")

    def certificate(self) -> dict[str, Any]:
        """Public part of the credential, presented to key servers."""
        if not self.is_signed:
            raise AccessDenied("Session credential is not signed")
        return {
            "address": self.bound_address,
            "program_id": self.program_id,
            "ttl_minutes": self.ttl_minutes,
            "created_at_ms": self.created_at_ms,
            "session_public_key": _b64(self.session_public_key),
            "signature": _b64(self.signature),
            "signer_public_key": _b64(self.signer_public_key),
        }

    def sign_request(self, claims: dict[str, Any]) -> str:
        """Sign a key request with the session key."""
        return jwt.encode(claims, self.session_key, algorithm=TOKEN_ALGORITHM)


# =============================================================================
# VERIFICATION (key-server side)
# =============================================================================


@dataclass(frozen=True)
class VerifiedSession:
    """What a key server learns from a valid certificate."""

    address: str
    program_id: str
    session_public_key: bytes


def verify_certificate(certificate: dict[str, Any], now_ms: int) -> VerifiedSession:
    """Check a session certificate against the given clock.

    Raises:
        AccessDenied: If the certificate is malformed or its signature is invalid
        SessionExpired: If the session's TTL has elapsed
    """
    try:
        address = normalize_address(certificate["address"])
        program_id = normalize_address(certificate["program_id"])
        ttl_minutes = int(certificate["ttl_minutes"])
        created_at_ms = int(certificate["created_at_ms"])
        session_public_key = base64.b64decode(certificate["session_public_key"])
        signature = base64.b64decode(certificate["signature"])
        signer_public_key = base64.b64decode(certificate["signer_public_key"])
    except (KeyError, TypeError, ValueError) as e:
        raise AccessDenied(f"Malformed session certificate: {e}") from e

    if not 1 <= ttl_minutes <= MAX_SESSION_TTL_MINUTES:
        raise AccessDenied(f"Session TTL {ttl_minutes} out of range")
    if derive_address(signer_public_key) != address:
        raise AccessDenied("Certificate key does not own its address")
    message = challenge_message(program_id, ttl_minutes, created_at_ms, session_public_key)
    if not verify_signature(signer_public_key, message, signature):
        raise AccessDenied("Certificate signature does not verify")
    if now_ms >= created_at_ms + ttl_minutes * 60_000:
        raise SessionExpired(f"Session for {address[:10]}... expired")
    return VerifiedSession(address=address, program_id=program_id, session_public_key=session_public_key)


def verify_request_token(token: str, session_public_key: bytes) -> dict[str, Any]:
    """Decode a request token signed by the session key.

    Raises:
        AccessDenied: If the token is not signed by that key
    """
    try:
        public_key = Ed25519PublicKey.from_public_bytes(session_public_key)
        return jwt.decode(token, public_key, algorithms=[TOKEN_ALGORITHM])
    except (jwt.InvalidTokenError, ValueError) as e:
        raise AccessDenied(f"Invalid request token: {e}") from e
