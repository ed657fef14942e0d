"""Shared fixtures for capshare tests.

Provides:
- A manual ledger clock and an in-memory ledger running the access_grant program
- Actor signers (alice uploads, bob is granted, carol is unrelated)
- An in-process 2-of-3 threshold network
- Upload and download orchestrators wired to all of the above
"""

from __future__ import annotations

import pytest

from capshare.config import TransferConfig
from capshare.errors import UserRejected
from capshare.ledger import InMemoryLedger, ManualClock
from capshare.signing import Ed25519Signer
from capshare.storage import LocalBlobStore
from capshare.threshold import ThresholdClient, generate_local_key_servers
from capshare.transfer import AccessManager, DownloadOrchestrator, UploadOrchestrator

PROGRAM_ID = "0x" + "ab" * 32


class RejectingSigner:
    """Actor that declines every signature request."""

    def __init__(self, inner: Ed25519Signer):
        self._inner = inner

    @property
    def address(self) -> str:
        return self._inner.address

    @property
    def public_key_bytes(self) -> bytes:
        return self._inner.public_key_bytes

    async def sign_personal_message(self, message: bytes) -> bytes:
        raise UserRejected("User rejected the request")

    async def sign_transaction(self, tx_bytes: bytes) -> bytes:
        raise UserRejected("User rejected the request")


class CountingSigner(Ed25519Signer):
    """Ed25519 signer recording how often it was asked to sign messages."""

    def __init__(self, private_key):
        super().__init__(private_key)
        self.message_signatures = 0

    async def sign_personal_message(self, message: bytes) -> bytes:
        self.message_signatures += 1
        return await super().sign_personal_message(message)


# =============================================================================
# LEDGER
# =============================================================================


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(program_id=PROGRAM_ID, clock=clock)


@pytest.fixture
def alice():
    return CountingSigner.generate()


@pytest.fixture
def bob():
    return CountingSigner.generate()


@pytest.fixture
def carol():
    return CountingSigner.generate()


# =============================================================================
# THRESHOLD NETWORK
# =============================================================================


@pytest.fixture
def key_servers(ledger, clock):
    return generate_local_key_servers(3, ledger, program_id=PROGRAM_ID, clock=clock)


@pytest.fixture
def threshold_client(key_servers, clock):
    return ThresholdClient(key_servers, threshold=2, program_id=PROGRAM_ID, clock=clock)


# =============================================================================
# ORCHESTRATORS
# =============================================================================


@pytest.fixture
def config():
    return TransferConfig(skip_remote_storage=True, program_id=PROGRAM_ID)


@pytest.fixture
def blob_store():
    return LocalBlobStore()


@pytest.fixture
def uploader(ledger, alice, config, blob_store, threshold_client, clock):
    return UploadOrchestrator(
        ledger,
        alice,
        config,
        threshold_client=threshold_client,
        local_store=blob_store,
        clock=clock,
    )


@pytest.fixture
def downloader(ledger, config, blob_store, threshold_client, clock):
    return DownloadOrchestrator(
        ledger,
        config,
        threshold_client=threshold_client,
        local_store=blob_store,
        clock=clock,
    )


@pytest.fixture
def access_manager(ledger, alice, uploader):
    return AccessManager(ledger, alice, uploader.builder)


@pytest.fixture
def rejecting_bob(bob):
    """Bob, declining to sign."""
    return RejectingSigner(bob)
