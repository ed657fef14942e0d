"""Download orchestration.

Read capability -> require an actor -> evaluate access -> fetch and
decrypt (or plain fetch in degraded mode) -> unframe.

Unauthorized actors are stopped before any blob fetch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..access import AccessEvaluator
from ..config import TransferConfig
from ..errors import AccessDenied, TransferError
from ..framing import FileHeader, unframe
from ..ledger.client import LedgerClient
from ..ledger.memory import system_clock
from ..ledger.transactions import CapabilityTransactionBuilder
from ..signing import Signer, normalize_address
from ..storage.blob import BlobStore, LocalBlobStore, select_blob_store
from ..threshold.client import ThresholdClient
from ..threshold.manager import FailureReason, ThresholdSessionManager
from ..threshold.session import SessionCredential

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[\x00-\x1f/\\:]")


def safe_filename(name: str, fallback: str = "download") -> str:
    """Reduce a header's file name to a bare, writable file name."""
    base = _UNSAFE_NAME_CHARS.sub("_", Path(name.replace("\\", "/")).name).strip()
    if base in ("", ".", ".."):
        return fallback
    return base


@dataclass
class DownloadResult:
    """A restored file."""

    capability_id: str
    header: FileHeader
    data: bytes
    mode: str

    @property
    def name(self) -> str:
        return self.header.name

    @property
    def mime_type(self) -> str:
        return self.header.type

    def save(self, directory: str | Path = ".") -> Path:
        """Write the file under its original (sanitized) name."""
        path = Path(directory) / safe_filename(self.header.name)
        path.write_bytes(self.data)
        logger.info(f"Saved {len(self.data)} bytes to {path}")
        return path


class DownloadOrchestrator:
    """Runs downloads, reusing each actor's signed session within its TTL."""

    def __init__(
        self,
        ledger: LedgerClient,
        config: TransferConfig | None = None,
        blob_store: BlobStore | None = None,
        threshold_client: ThresholdClient | None = None,
        builder: CapabilityTransactionBuilder | None = None,
        local_store: LocalBlobStore | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.config = config or TransferConfig()
        self.builder = builder or CapabilityTransactionBuilder(program_id=self.config.program_id)
        self.evaluator = AccessEvaluator(ledger, self.builder)
        self.blob_store = select_blob_store(self.config, blob_store, local_store)
        self.clock = clock or system_clock
        self.session_manager: ThresholdSessionManager | None = None
        if not self.config.skip_encryption:
            if threshold_client is None:
                raise ValueError("A threshold client is required unless skip_encryption is set")
            self.session_manager = ThresholdSessionManager(
                threshold_client,
                self.blob_store,
                builder=self.builder,
                program_id=self.config.program_id,
                ttl_minutes=self.config.session_ttl_minutes,
                clock=self.clock,
            )
        self._credentials: dict[str, SessionCredential] = {}

    async def check_access(self, capability_id: str, address: str | None) -> bool:
        """Whether ``address`` may download the capability's file right now.

        Raises:
            CapabilityNotFound: If the capability does not exist
            EvaluationError: If the decision could not be made
        """
        return await self.evaluator.evaluate(capability_id, address)

    async def download(self, capability_id: str, signer: Signer | None) -> DownloadResult:
        """Download and restore a file as ``signer``.

        Raises:
            CapabilityNotFound: If the capability does not exist
            AccessDenied: If there is no actor or the actor lacks access
            UserRejected: If the actor declined to sign the session
            SessionExpired: If the session expired before keys were released
            FetchError: If the blob could not be fetched
            ThresholdNetworkError: If too few key servers could be reached
            MalformedEnvelope: If the restored bytes are not a framed file
        """
        mode = self.config.describe()
        try:
            return await self._download(capability_id, signer, mode)
        except TransferError as e:
            logger.error(f"Download of {capability_id[:10]}... failed ({mode}): {e}")
            raise

    async def _download(self, capability_id: str, signer: Signer | None, mode: str) -> DownloadResult:
        # Capability fields
        capability = await self.evaluator.get_capability(capability_id)

        # Actor
        if signer is None:
            raise AccessDenied("Connect an account to download this file")

        # Access, before anything is fetched
        if not await self.evaluator.evaluate(capability_id, signer.address):
            raise AccessDenied(f"{signer.address[:10]}... may not download {capability_id[:10]}...")

        # Fetch and decrypt
        if self.session_manager is None:
            logger.info(f"Fetching {capability.blob_reference} without decryption ({mode})")
            framed = await self.blob_store.get(capability.blob_reference)
        else:
            address = normalize_address(signer.address)
            credential = self._cached_credential(address)
            session = await self.session_manager.run(capability, signer, credential=credential)
            if session.credential is not None and session.credential.is_signed:
                self._credentials[address] = session.credential
            if session.failure == FailureReason.SESSION_EXPIRED:
                self._credentials.pop(address, None)
            session.raise_for_failure()
            framed = session.plaintext

        # Restore
        header, data = unframe(framed)
        logger.info(f"Downloaded {header.name} ({len(data)} bytes) from {capability_id[:10]}... ({mode})")
        return DownloadResult(capability_id=capability.capability_id, header=header, data=data, mode=mode)

    def _cached_credential(self, address: str) -> SessionCredential | None:
        credential = self._credentials.get(address)
        if credential is not None and credential.is_expired(self.clock()):
            del self._credentials[address]
            return None
        return credential
