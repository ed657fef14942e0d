"""Client side of the threshold network.

Encryption is local: it only needs the key servers' public keys.
Decryption asks every key server holding a share, concurrently, and
combines shares as soon as the ciphertext's threshold have answered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..defaults import DEFAULT_THRESHOLD, PROGRAM_ID
from ..errors import (
    AccessDenied,
    DecryptionError,
    SessionExpired,
    ThresholdNetworkError,
    TransferError,
)
from ..identity import EncryptionIdentity
from ..ledger.memory import system_clock
from ..signing import normalize_address
from . import shamir
from .encryption import EncryptedObject, EncryptedShare, encrypt_object, open_payload, open_share
from .keyservers import KeyRequest, KeyServer
from .session import SessionCredential

logger = logging.getLogger(__name__)


class ThresholdClient:
    """Encrypts to, and decrypts through, a set of key servers."""

    def __init__(
        self,
        servers: list[KeyServer],
        threshold: int = DEFAULT_THRESHOLD,
        program_id: str = PROGRAM_ID,
        clock: Callable[[], int] | None = None,
    ) -> None:
        if not servers:
            raise ValueError("At least one key server is required")
        if not 1 <= threshold <= len(servers):
            raise ValueError(f"Threshold {threshold} needs between 1 and {len(servers)} servers")
        self.servers = {server.info.server_id: server for server in servers}
        self.threshold = threshold
        self.program_id = normalize_address(program_id)
        self.clock = clock or system_clock

    async def encrypt(
        self,
        data: bytes,
        identity: EncryptionIdentity,
        threshold: int | None = None,
        program_id: str | None = None,
    ) -> bytes:
        """Encrypt ``data`` under ``identity`` for this client's key servers."""
        encrypted = encrypt_object(
            data,
            identity,
            threshold or self.threshold,
            normalize_address(program_id) if program_id else self.program_id,
            [server.info for server in self.servers.values()],
        )
        logger.debug(f"Encrypted {len(data)} bytes for {identity!r} ({encrypted.threshold}-of-{len(encrypted.shares)})")
        return encrypted.to_bytes()

    async def decrypt(
        self,
        encrypted: bytes,
        credential: SessionCredential,
        approval: bytes,
        expected_identity: EncryptionIdentity | None = None,
    ) -> bytes:
        """Recover the plaintext through the key servers.

        Raises:
            AccessDenied: If the credential is unsigned, or the servers deny access
            SessionExpired: If the credential's TTL has elapsed
            ThresholdNetworkError: If too few servers could be reached
            DecryptionError: If the ciphertext is malformed or bound to another identity
        """
        if not credential.is_signed:
            raise AccessDenied("Session credential is not signed")
        if credential.is_expired(self.clock()):
            raise SessionExpired(f"Session for {credential.bound_address[:10]}... expired")

        obj = EncryptedObject.from_bytes(encrypted)
        if expected_identity is not None and obj.identity != expected_identity.hex:
            raise DecryptionError("Ciphertext is bound to a different encryption identity")
        if normalize_address(obj.program_id) != credential.program_id:
            raise DecryptionError("Ciphertext belongs to a different program than the session")

        reachable = [(share, self.servers[share.server_id]) for share in obj.shares if share.server_id in self.servers]
        if len(reachable) < obj.threshold:
            raise ThresholdNetworkError(
                f"Only {len(reachable)} of the ciphertext's key servers are configured; {obj.threshold} needed"
            )

        points, failures = await self._collect_shares(obj, reachable, credential, approval)
        if len(points) < obj.threshold:
            raise _quorum_failure(failures, len(points), obj.threshold)

        try:
            data_key = shamir.combine(points[: obj.threshold])
        except ValueError as e:
            raise DecryptionError(f"Shares do not combine: {e}") from e
        plaintext = open_payload(obj, data_key)
        logger.info(f"Decrypted {obj.identity[:10]}... with {len(points)} shares")
        return plaintext

    async def _collect_shares(
        self,
        obj: EncryptedObject,
        reachable: list[tuple[EncryptedShare, KeyServer]],
        credential: SessionCredential,
        approval: bytes,
    ) -> tuple[list[tuple[int, int]], list[TransferError]]:
        tasks = [
            asyncio.ensure_future(self._fetch_share(obj, share, server, credential, approval))
            for share, server in reachable
        ]
        points: list[tuple[int, int]] = []
        failures: list[TransferError] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                try:
                    points.append(await next_done)
                except TransferError as e:
                    logger.warning(f"Key share unavailable: {e}")
                    failures.append(e)
                    continue
                if len(points) >= obj.threshold:
                    break
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return points, failures

    async def _fetch_share(
        self,
        obj: EncryptedObject,
        share: EncryptedShare,
        server: KeyServer,
        credential: SessionCredential,
        approval: bytes,
    ) -> tuple[int, int]:
        request = KeyRequest(
            server_id=share.server_id,
            program_id=obj.program_id,
            identity=obj.identity,
            ephemeral_public=share.ephemeral_public,
            approval=approval,
            certificate=credential.certificate(),
            token="",
        )
        request.token = credential.sign_request(request.claims())
        key = await server.fetch_key(request)
        return open_share(obj, share, key)


def _quorum_failure(failures: list[TransferError], answered: int, needed: int) -> TransferError:
    """Pick the error that explains why too few shares arrived."""
    summary = f"{answered} of {needed} key shares released"
    if any(isinstance(e, SessionExpired) for e in failures):
        return SessionExpired(f"Session expired ({summary})")
    if any(isinstance(e, AccessDenied | DecryptionError) for e in failures):
        return AccessDenied(f"Key servers denied access ({summary})")
    return ThresholdNetworkError(f"Threshold network unreachable ({summary})")
