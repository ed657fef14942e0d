"""Upload orchestration.

Identity -> frame -> encrypt -> store blob -> create capability -> confirm.

Each step's failure aborts the rest and propagates unchanged. The ledger
step is atomic, so after a failure the capability either exists fully
formed or not at all.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..config import TransferConfig
from ..defaults import CAPABILITY_TYPE_NAME, NEVER_EXPIRES
from ..errors import TransferError
from ..framing import FileHeader, frame
from ..identity import EncryptionIdentity, generate_identity
from ..ledger.client import LedgerClient, classify_ledger_error
from ..ledger.memory import system_clock
from ..ledger.models import extract_capability_id
from ..ledger.transactions import (
    CapabilityCreationRequest,
    CapabilityTransactionBuilder,
    GrantRequest,
)
from ..signing import Signer
from ..storage.blob import BlobStore, LocalBlobStore, select_blob_store
from ..threshold.client import ThresholdClient
from .progress import ProgressCallback, ProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class UploadRequest:
    """A file to upload and who may download it.

    ``grants`` items are :class:`GrantRequest` or bare addresses; bare
    addresses get the configured default expiry (or never expire).
    """

    name: str
    data: bytes
    mime_type: str | None = None
    is_public: bool = False
    grants: Sequence[GrantRequest | str] = field(default_factory=list)


@dataclass
class UploadResult:
    """What an upload produced."""

    capability_id: str
    blob_reference: str
    encryption_identity: EncryptionIdentity
    header: FileHeader
    transaction_digest: str
    is_public: bool
    grants: tuple[GrantRequest, ...]
    mode: str

    def link(self, base_url: str = "") -> str:
        """Shareable link to the file's download page."""
        return f"{base_url.rstrip('/')}/file/{self.capability_id}"

    def to_dict(self) -> dict[str, object]:
        return {
            "capability_id": self.capability_id,
            "blob_reference": self.blob_reference,
            "encryption_identity": self.encryption_identity.hex,
            "file": self.header.to_dict(),
            "transaction_digest": self.transaction_digest,
            "is_public": self.is_public,
            "grants": [{"address": g.address, "expires_at": g.expires_at} for g in self.grants],
            "mode": self.mode,
        }


class UploadOrchestrator:
    """Runs uploads for one actor."""

    def __init__(
        self,
        ledger: LedgerClient,
        signer: Signer,
        config: TransferConfig | None = None,
        blob_store: BlobStore | None = None,
        threshold_client: ThresholdClient | None = None,
        builder: CapabilityTransactionBuilder | None = None,
        local_store: LocalBlobStore | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.ledger = ledger
        self.signer = signer
        self.config = config or TransferConfig()
        self.blob_store = select_blob_store(self.config, blob_store, local_store)
        if threshold_client is None and not self.config.skip_encryption:
            raise ValueError("A threshold client is required unless skip_encryption is set")
        if threshold_client is not None and self.config.threshold > len(threshold_client.servers):
            raise ValueError(
                f"Threshold {self.config.threshold} exceeds the {len(threshold_client.servers)} configured key servers"
            )
        self.threshold_client = threshold_client
        self.builder = builder or CapabilityTransactionBuilder(program_id=self.config.program_id)
        self.clock = clock or system_clock

    async def upload(
        self,
        request: UploadRequest,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """Upload a file and create its capability.

        Raises:
            UploadError: If the blob store rejects the payload
            InsufficientFunds: If storage or gas funds are exhausted
            TransactionAborted: If the ledger aborts the creation
            CapabilityIdNotFound: If the confirmed transaction created no capability
        """
        progress = ProgressTracker(on_progress)
        mode = self.config.describe()
        try:
            return await self._upload(request, progress, mode)
        except TransferError as e:
            logger.error(f"Upload of {request.name} failed ({mode}): {e}")
            raise

    async def _upload(self, request: UploadRequest, progress: ProgressTracker, mode: str) -> UploadResult:
        # Identity
        progress.report(10, "Generating encryption identity")
        identity = generate_identity()

        # Frame
        header = FileHeader.for_file(request.name, request.data, request.mime_type)
        framed = frame(request.data, header)

        # Encrypt
        if self.config.skip_encryption:
            progress.report(20, f"Storing file unencrypted ({mode})")
            payload = framed
        else:
            progress.report(20, "Encrypting file")
            payload = await self.threshold_client.encrypt(
                framed, identity, threshold=self.config.threshold, program_id=self.config.program_id
            )

        # Store blob
        if self.config.skip_remote_storage:
            progress.report(40, f"Storing file locally ({mode})")
        else:
            progress.report(40, "Uploading to blob store")
        blob_reference = await self.blob_store.put(payload)

        # Create capability
        progress.report(60, "Creating access capability")
        grants = tuple(self._resolve_grant(g) for g in request.grants)
        tx = self.builder.build_create_and_share(
            CapabilityCreationRequest(
                blob_reference=blob_reference,
                encryption_identity=identity,
                is_public=request.is_public,
                grants=grants,
            )
        )
        digest = await self.ledger.execute(tx, self.signer)

        # Confirm
        progress.report(80, "Waiting for confirmation")
        effects = await self.ledger.wait_for_transaction(digest)
        if not effects.succeeded:
            raise classify_ledger_error(effects.error or f"Transaction {digest} failed")
        capability_id = extract_capability_id(effects.object_changes, CAPABILITY_TYPE_NAME)

        progress.report(100, f"Upload complete ({mode})")
        logger.info(
            f"Uploaded {header.name} ({header.size} bytes) as capability {capability_id[:10]}... "
            f"with {len(grants)} grants ({mode})"
        )
        return UploadResult(
            capability_id=capability_id,
            blob_reference=blob_reference,
            encryption_identity=identity,
            header=header,
            transaction_digest=digest,
            is_public=request.is_public,
            grants=grants,
            mode=mode,
        )

    def _resolve_grant(self, grant: GrantRequest | str) -> GrantRequest:
        if isinstance(grant, GrantRequest):
            return grant
        ttl = self.config.default_grant_ttl_seconds
        expires_at = self.clock() + ttl * 1000 if ttl else NEVER_EXPIRES
        return GrantRequest(address=grant, expires_at=expires_at)
