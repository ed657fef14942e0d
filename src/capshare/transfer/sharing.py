"""Administering an existing capability: grant, revoke, re-point.

Every mutation pins the object version it was built against, so two
administrators racing on one capability cannot silently overwrite each
other: the loser gets a retryable ``ConflictError``.
"""

from __future__ import annotations

import logging

from ..defaults import NEVER_EXPIRES
from ..errors import CapabilityNotFound, TransferError
from ..ledger.client import LedgerClient, classify_ledger_error
from ..ledger.models import TransactionEffects
from ..ledger.transactions import CapabilityTransactionBuilder, Transaction
from ..signing import Signer, normalize_address

logger = logging.getLogger(__name__)


class AccessManager:
    """Grants and revokes download access as the capability's administrator."""

    def __init__(
        self,
        ledger: LedgerClient,
        signer: Signer,
        builder: CapabilityTransactionBuilder | None = None,
    ) -> None:
        self.ledger = ledger
        self.signer = signer
        self.builder = builder or CapabilityTransactionBuilder()

    async def grant(
        self,
        capability_id: str,
        address: str,
        expires_at: int = NEVER_EXPIRES,
    ) -> TransactionEffects:
        """Allow ``address`` to download until ``expires_at`` (ledger ms, 0 = never).

        Granting an address that already holds a grant replaces its expiry.
        """
        version = await self._current_version(capability_id)
        tx = self.builder.build_grant(capability_id, address, expires_at, version=version)
        effects = await self._submit(tx, f"grant {normalize_address(address)[:10]}... on {capability_id[:10]}...")
        logger.info(f"Granted {address[:10]}... access to {capability_id[:10]}... until {expires_at or 'never'}")
        return effects

    async def revoke(self, capability_id: str, address: str) -> TransactionEffects:
        """Remove ``address``'s grant; revoking an absent grant is a no-op."""
        version = await self._current_version(capability_id)
        tx = self.builder.build_revoke(capability_id, address, version=version)
        effects = await self._submit(tx, f"revoke {normalize_address(address)[:10]}... on {capability_id[:10]}...")
        logger.info(f"Revoked {address[:10]}... from {capability_id[:10]}...")
        return effects

    async def set_blob_reference(self, capability_id: str, blob_reference: str) -> TransactionEffects:
        """One-time override of the capability's blob reference."""
        version = await self._current_version(capability_id)
        tx = self.builder.build_set_blob_reference(capability_id, blob_reference, version=version)
        return await self._submit(tx, f"set blob reference on {capability_id[:10]}...")

    async def _current_version(self, capability_id: str) -> int:
        capability = await self.ledger.get_object(capability_id)
        if capability is None:
            raise CapabilityNotFound(f"Capability {capability_id} not found")
        return capability.version

    async def _submit(self, tx: Transaction, description: str) -> TransactionEffects:
        try:
            digest = await self.ledger.execute(tx, self.signer)
            effects = await self.ledger.wait_for_transaction(digest)
            if not effects.succeeded:
                raise classify_ledger_error(effects.error or f"Transaction {digest} failed")
        except TransferError as e:
            logger.error(f"Failed to {description}: {e}")
            raise
        return effects
