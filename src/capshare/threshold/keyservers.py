"""Key servers of the threshold network.

Each key server holds one X25519 private key. Given a key request it:

1. Verifies the session certificate (actor signature, address binding, TTL)
2. Verifies the request token against the certified session key
3. Checks the approval transaction is a single approval call for the
   requested identity under its program
4. Re-runs that approval on the ledger as the session's actor
5. Only then releases the key wrapping its share
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from ..access import decode_bool
from ..config import KeyServerInfo
from ..defaults import FN_APPROVE, KEY_SERVER_TIMEOUT_SECONDS, MODULE_NAME, PROGRAM_ID
from ..errors import (
    AccessDenied,
    ErrorCategory,
    EvaluationError,
    SessionExpired,
    ThresholdNetworkError,
    TransferError,
)
from ..identity import EncryptionIdentity
from ..ledger.client import LedgerClient
from ..ledger.memory import system_clock
from ..ledger.transactions import Pure, Transaction
from ..signing import normalize_address
from .encryption import server_derive_key
from .session import verify_certificate, verify_request_token

logger = logging.getLogger(__name__)


def approval_digest(approval: bytes) -> str:
    return hashlib.sha256(approval).hexdigest()


@dataclass
class KeyRequest:
    """A request for the key wrapping one server's share."""

    server_id: str
    program_id: str
    identity: str  # prefixed hex
    ephemeral_public: str  # hex
    approval: bytes
    certificate: dict[str, Any]
    token: str

    def claims(self) -> dict[str, Any]:
        """Claims the request token must carry."""
        return {
            "server_id": self.server_id,
            "program_id": self.program_id,
            "identity": self.identity,
            "ephemeral_public": self.ephemeral_public,
            "approval": approval_digest(self.approval),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "program_id": self.program_id,
            "identity": self.identity,
            "ephemeral_public": self.ephemeral_public,
            "approval": base64.b64encode(self.approval).decode("ascii"),
            "certificate": self.certificate,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyRequest:
        return cls(
            server_id=data["server_id"],
            program_id=data["program_id"],
            identity=data["identity"],
            ephemeral_public=data["ephemeral_public"],
            approval=base64.b64decode(data["approval"]),
            certificate=data["certificate"],
            token=data["token"],
        )


@runtime_checkable
class KeyServer(Protocol):
    """One member of the threshold network."""

    @property
    def info(self) -> KeyServerInfo:
        ...

    async def fetch_key(self, request: KeyRequest) -> bytes:
        """Return the key for ``request``'s share, or raise.

        Raises:
            AccessDenied: If the approval does not hold for the session's actor
            SessionExpired: If the session's TTL has elapsed
            ThresholdNetworkError: If the server could not be reached
        """
        ...


# =============================================================================
# IN-PROCESS KEY SERVER
# =============================================================================


class LocalKeyServer:
    """Key server running in this process against a ledger client."""

    def __init__(
        self,
        server_id: str,
        private_key: X25519PrivateKey,
        ledger: LedgerClient,
        program_id: str = PROGRAM_ID,
        module: str = MODULE_NAME,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.server_id = server_id
        self._private_key = private_key
        self.ledger = ledger
        self.program_id = normalize_address(program_id)
        self.module = module
        self.clock = clock or system_clock
        self.available = True
        self.served_count = 0

    @classmethod
    def generate(
        cls,
        server_id: str,
        ledger: LedgerClient,
        program_id: str = PROGRAM_ID,
        clock: Callable[[], int] | None = None,
    ) -> LocalKeyServer:
        return cls(server_id, X25519PrivateKey.generate(), ledger, program_id=program_id, clock=clock)

    @property
    def info(self) -> KeyServerInfo:
        return KeyServerInfo(
            server_id=self.server_id,
            public_key=self._private_key.public_key().public_bytes_raw(),
        )

    async def fetch_key(self, request: KeyRequest) -> bytes:
        if not self.available:
            raise ThresholdNetworkError(f"Key server {self.server_id} unavailable")
        if request.server_id != self.server_id:
            raise AccessDenied(f"Request addressed to {request.server_id}, not {self.server_id}")
        try:
            program_id = normalize_address(request.program_id)
        except ValueError as e:
            raise AccessDenied(f"Malformed program id: {e}") from e
        if program_id != self.program_id:
            raise AccessDenied(f"Key server {self.server_id} does not serve program {request.program_id}")

        session = verify_certificate(request.certificate, now_ms=self.clock())
        if session.program_id != self.program_id:
            raise AccessDenied("Session was authorized for another program")

        claims = verify_request_token(request.token, session.session_public_key)
        if any(claims.get(name) != value for name, value in request.claims().items()):
            raise AccessDenied("Request token does not cover this request")

        approval = self._parse_approval(request.approval, request.identity)
        try:
            result = await self.ledger.inspect(approval, sender=session.address)
            approved = decode_bool(result)
        except EvaluationError as e:
            raise AccessDenied(f"Approval could not be evaluated: {e}") from e
        except TransferError as e:
            if e.category == ErrorCategory.NETWORK:
                raise ThresholdNetworkError(f"Key server {self.server_id} could not reach the ledger: {e}") from e
            raise AccessDenied(f"Approval rejected: {e}") from e

        if not approved:
            logger.info(f"Key server {self.server_id} denied {session.address[:10]}... for {request.identity[:10]}...")
            raise AccessDenied(f"Approval does not hold for {session.address}")

        try:
            key = server_derive_key(
                self._private_key,
                request.ephemeral_public,
                self.program_id,
                request.identity,
                self.server_id,
            )
        except ValueError as e:
            raise AccessDenied(f"Malformed ephemeral key: {e}") from e
        self.served_count += 1
        return key

    def _parse_approval(self, approval: bytes, identity_hex: str) -> Transaction:
        try:
            tx = Transaction.from_kind_bytes(approval)
            identity = EncryptionIdentity.from_hex(identity_hex)
        except ValueError as e:
            raise AccessDenied(f"Malformed approval: {e}") from e

        if len(tx.commands) != 1:
            raise AccessDenied("Approval must be a single call")
        (command,) = tx.commands
        if (
            normalize_address(command.program_id) != self.program_id
            or command.target.split("::")[1] != self.module
            or command.function != FN_APPROVE
        ):
            raise AccessDenied(f"Approval calls {command.target}, not {FN_APPROVE}")
        first = command.arguments[0] if command.arguments else None
        if not isinstance(first, Pure) or bytes(first.value) != identity.raw:
            raise AccessDenied("Approval identity does not match the requested identity")
        return tx


def generate_local_key_servers(
    count: int,
    ledger: LedgerClient,
    program_id: str = PROGRAM_ID,
    clock: Callable[[], int] | None = None,
) -> list[LocalKeyServer]:
    """A fresh in-process threshold network of ``count`` servers."""
    return [
        LocalKeyServer.generate(f"key-server-{i}", ledger, program_id=program_id, clock=clock)
        for i in range(1, count + 1)
    ]


# =============================================================================
# HTTP KEY SERVER
# =============================================================================


class HttpKeyServer:
    """Key server reached over HTTP (``POST /v1/fetch_key``)."""

    def __init__(self, info: KeyServerInfo, timeout: float = KEY_SERVER_TIMEOUT_SECONDS) -> None:
        if not info.url:
            raise ValueError(f"Key server {info.server_id} has no URL")
        self._info = info
        self.timeout = timeout

    @property
    def info(self) -> KeyServerInfo:
        return self._info

    async def fetch_key(self, request: KeyRequest) -> bytes:
        url = f"{self._info.url.rstrip('/')}/v1/fetch_key"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=request.to_dict()) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        return base64.b64decode(data["key"])
                    text = await resp.text()
                    status = resp.status
        except aiohttp.ClientError as e:
            raise ThresholdNetworkError(f"Key server {self._info.server_id}: connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ThresholdNetworkError(f"Key server {self._info.server_id} timed out") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ThresholdNetworkError(f"Key server {self._info.server_id} sent a malformed reply") from e

        if status == 401 or "ExpiredSessionKey" in text:
            raise SessionExpired(f"Key server {self._info.server_id}: session expired")
        if status == 403:
            raise AccessDenied(f"Key server {self._info.server_id} denied the request: {text[:200]}")
        raise ThresholdNetworkError(f"Key server {self._info.server_id} returned HTTP {status}: {text[:200]}")
