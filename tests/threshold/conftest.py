"""Fixtures for threshold network tests: capabilities on the ledger and signed sessions."""

from __future__ import annotations

import pytest

from capshare.identity import generate_identity
from capshare.ledger import (
    CapabilityCreationRequest,
    CapabilityTransactionBuilder,
    GrantRequest,
    extract_capability_id,
)
from capshare.threshold import SessionCredential


@pytest.fixture
def builder(ledger):
    return CapabilityTransactionBuilder(program_id=ledger.program_id)


@pytest.fixture
def make_capability(ledger, builder, alice):
    """Create a shared capability administered by alice; returns the stored object."""

    async def _make(grants=(), is_public=False, blob_reference="blob-ref", identity=None):
        request = CapabilityCreationRequest(
            blob_reference,
            identity or generate_identity(),
            is_public,
            tuple(GrantRequest(address, expires_at) for address, expires_at in grants),
        )
        digest = await ledger.execute(builder.build_create_and_share(request), alice)
        effects = await ledger.wait_for_transaction(digest)
        return await ledger.get_object(extract_capability_id(effects.object_changes))

    return _make


@pytest.fixture
def signed_credential(ledger, clock):
    """Issue a session for a signer and sign it."""

    async def _sign(signer, ttl_minutes=10, program_id=None):
        credential = SessionCredential.issue(
            signer.address,
            program_id or ledger.program_id,
            ttl_minutes=ttl_minutes,
            now_ms=clock(),
        )
        signature = await signer.sign_personal_message(credential.challenge_message())
        credential.attach_signature(signature, signer.public_key_bytes)
        return credential

    return _sign
