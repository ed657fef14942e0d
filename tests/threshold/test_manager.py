"""
Tests for the decryption session state machine.

Tests cover:
- The happy path through every state, in order
- One transition per advance() call
- Each failure reason and the error it carries
- Reusing a signed credential without asking the actor again
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from capshare.errors import (
    AccessDenied,
    FetchError,
    SessionExpired,
    ThresholdNetworkError,
    UserRejected,
)
from capshare.identity import generate_identity
from capshare.threshold import (
    DecryptionSession,
    FailureReason,
    SessionCredential,
    SessionState,
    ThresholdSessionManager,
)

HAPPY_PATH = [
    SessionState.UNINITIALIZED,
    SessionState.AWAITING_SIGNATURE,
    SessionState.READY,
    SessionState.FETCHED,
    SessionState.APPROVING,
]


@pytest.fixture
def manager(threshold_client, blob_store, builder, ledger, clock):
    return ThresholdSessionManager(
        threshold_client, blob_store, builder=builder, program_id=ledger.program_id, clock=clock
    )


@pytest.fixture
def stored_capability(make_capability, threshold_client, blob_store, bob):
    """A capability granting bob, whose encrypted payload sits in the blob store."""

    async def _stored(data=b"framed payload", grants=None):
        identity = generate_identity()
        encrypted = await threshold_client.encrypt(data, identity)
        reference = await blob_store.put(encrypted)
        return await make_capability(
            grants=[(bob.address, 0)] if grants is None else grants,
            blob_reference=reference,
            identity=identity,
        )

    return _stored


# =============================================================================
# HAPPY PATH
# =============================================================================


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_runs_to_decrypted(self, manager, stored_capability, bob):
        session = await manager.run(await stored_capability(), bob)

        assert session.state == SessionState.DECRYPTED
        assert session.history == HAPPY_PATH
        assert session.plaintext == b"framed payload"
        assert session.failure is None
        assert session.credential.is_signed
        assert bob.message_signatures == 1
        session.raise_for_failure()

    @pytest.mark.asyncio
    async def test_advance_one_step_at_a_time(self, manager, stored_capability, bob, blob_store):
        session = DecryptionSession(capability=await stored_capability(), signer=bob)
        gets = blob_store.get_count

        assert await manager.advance(session) == SessionState.AWAITING_SIGNATURE
        assert session.credential is not None and not session.credential.is_signed
        assert await manager.advance(session) == SessionState.READY
        assert blob_store.get_count == gets
        assert await manager.advance(session) == SessionState.FETCHED
        assert blob_store.get_count == gets + 1
        assert await manager.advance(session) == SessionState.APPROVING
        assert session.approval is not None
        assert await manager.advance(session) == SessionState.DECRYPTED

        with pytest.raises(ValueError):
            await manager.advance(session)

    @pytest.mark.asyncio
    async def test_unfinished_session_cannot_report(self, manager, stored_capability, bob):
        session = DecryptionSession(capability=await stored_capability(), signer=bob)
        with pytest.raises(RuntimeError):
            session.raise_for_failure()


class TestCredentialReuse:
    @pytest.mark.asyncio
    async def test_signed_credential_skips_signing(self, manager, stored_capability, bob):
        first = await manager.run(await stored_capability(b"one"), bob)
        second = await manager.run(await stored_capability(b"two"), bob, credential=first.credential)

        assert second.plaintext == b"two"
        assert second.credential is first.credential
        assert bob.message_signatures == 1

    @pytest.mark.asyncio
    async def test_expired_credential_fails(self, manager, stored_capability, bob, clock):
        first = await manager.run(await stored_capability(), bob)
        clock.advance(seconds=manager.ttl_minutes * 60)

        second = await manager.run(await stored_capability(), bob, credential=first.credential)
        assert second.failure == FailureReason.SESSION_EXPIRED
        assert isinstance(second.error, SessionExpired)
        assert second.retryable
        assert second.history == [SessionState.UNINITIALIZED]

    @pytest.mark.asyncio
    async def test_credential_of_other_actor(self, manager, stored_capability, bob, carol):
        first = await manager.run(await stored_capability(), bob)
        session = await manager.run(await stored_capability(), carol, credential=first.credential)
        assert session.failure == FailureReason.ACCESS_DENIED
        assert carol.message_signatures == 0

    @pytest.mark.asyncio
    async def test_credential_for_other_program(self, manager, stored_capability, bob, clock):
        credential = SessionCredential.issue(bob.address, "0x" + "cd" * 32, now_ms=clock())
        session = await manager.run(await stored_capability(), bob, credential=credential)
        assert session.failure == FailureReason.ACCESS_DENIED


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_user_rejected(self, manager, stored_capability, rejecting_bob, blob_store):
        gets = blob_store.get_count
        session = await manager.run(await stored_capability(), rejecting_bob)

        assert session.state == SessionState.FAILED
        assert session.failure == FailureReason.USER_REJECTED
        assert isinstance(session.error, UserRejected)
        assert blob_store.get_count == gets
        with pytest.raises(UserRejected):
            session.raise_for_failure()

    @pytest.mark.asyncio
    async def test_fetch_error(self, threshold_client, builder, ledger, clock, stored_capability, bob):
        store = AsyncMock()
        store.get = AsyncMock(side_effect=FetchError("Blob gone"))
        manager = ThresholdSessionManager(threshold_client, store, builder=builder, program_id=ledger.program_id, clock=clock)

        session = await manager.run(await stored_capability(), bob)
        assert session.failure == FailureReason.FETCH_ERROR
        assert session.history[-1] == SessionState.READY
        assert session.retryable

    @pytest.mark.asyncio
    async def test_not_granted(self, manager, stored_capability, carol):
        session = await manager.run(await stored_capability(grants=[]), carol)
        assert session.failure == FailureReason.ACCESS_DENIED
        assert isinstance(session.error, AccessDenied)
        assert session.plaintext is None
        assert not session.retryable

    @pytest.mark.asyncio
    async def test_network_error(self, manager, stored_capability, bob, key_servers):
        for server in key_servers[:2]:
            server.available = False
        session = await manager.run(await stored_capability(), bob)
        assert session.failure == FailureReason.NETWORK_ERROR
        assert isinstance(session.error, ThresholdNetworkError)
        assert session.retryable

    @pytest.mark.asyncio
    async def test_session_expires_mid_flight(self, manager, stored_capability, bob, clock):
        session = DecryptionSession(capability=await stored_capability(), signer=bob)
        while session.state != SessionState.APPROVING:
            await manager.advance(session)
        clock.advance(seconds=manager.ttl_minutes * 60)

        assert await manager.advance(session) == SessionState.FAILED
        assert session.failure == FailureReason.SESSION_EXPIRED
