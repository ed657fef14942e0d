"""
Tests for the in-memory ledger running the access_grant program.

Tests cover:
- Atomic creation with N initial grants
- Grant upsert, revoke (including absent grants), expiry by ledger clock
- Administrator-only mutation
- Version pinning conflicts
- Gas metering and signature checks
"""

from __future__ import annotations

import pytest

from capshare.access import decode_bool
from capshare.errors import (
    CapabilityNotFound,
    ConflictError,
    InsufficientFunds,
    TransactionAborted,
)
from capshare.identity import generate_identity
from capshare.ledger import (
    CapabilityCreationRequest,
    CapabilityTransactionBuilder,
    GrantRequest,
    InMemoryLedger,
    Transaction,
    extract_capability_id,
)


@pytest.fixture
def builder(ledger):
    return CapabilityTransactionBuilder(program_id=ledger.program_id)


async def create(ledger, builder, signer, grants=(), is_public=False, identity=None):
    identity = identity or generate_identity()
    tx = builder.build_create_and_share(
        CapabilityCreationRequest("blob-ref", identity, is_public, tuple(grants))
    )
    effects = await ledger.wait_for_transaction(await ledger.execute(tx, signer))
    assert effects.succeeded, effects.error
    return extract_capability_id(effects.object_changes)


async def submit(ledger, tx, signer):
    return await ledger.wait_for_transaction(await ledger.execute(tx, signer))


async def probe(ledger, builder, capability_id, address):
    result = await ledger.inspect(builder.build_approval_probe(capability_id, address), sender=address)
    return decode_bool(result)


class TestCreation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 1, 4])
    async def test_n_grants_in_one_commit(self, ledger, builder, alice, count):
        addresses = [f"0x{i + 1:064x}" for i in range(count)]
        capability_id = await create(ledger, builder, alice, [GrantRequest(a, 0) for a in addresses])

        capability = await ledger.get_object(capability_id)
        assert sorted(capability.grants) == sorted(addresses)
        assert capability.shared
        assert capability.admin == alice.address
        assert ledger.executed_count == 1

    @pytest.mark.asyncio
    async def test_abort_rolls_back_everything(self, ledger, builder, alice, bob, clock):
        # Second grant expires in the past, so the whole creation aborts
        grants = (GrantRequest(bob.address, 0), GrantRequest("0x" + "0c" * 32, clock() - 1))
        tx = builder.build_create_and_share(CapabilityCreationRequest("blob", generate_identity(), False, grants))
        effects = await submit(ledger, tx, alice)

        assert not effects.succeeded
        assert "EExpiryInPast" in effects.error
        assert effects.object_changes == []

    @pytest.mark.asyncio
    async def test_unshared_object_aborts(self, ledger, builder, alice):
        tx = Transaction()
        tx.move_call(
            builder.target("create_file_access"),
            *builder.build_create_and_share(
                CapabilityCreationRequest("blob", generate_identity())
            ).commands[0].arguments,
        )
        effects = await submit(ledger, tx, alice)
        assert not effects.succeeded
        assert "EUnusedValueWithoutDrop" in effects.error


class TestGrants:
    @pytest.mark.asyncio
    async def test_grant_is_upsert(self, ledger, builder, alice, bob, clock):
        capability_id = await create(ledger, builder, alice)
        await submit(ledger, builder.build_grant(capability_id, bob.address, clock() + 1000), alice)
        await submit(ledger, builder.build_grant(capability_id, bob.address, clock() + 5000), alice)

        capability = await ledger.get_object(capability_id)
        assert capability.grants == {bob.address: clock() + 5000}

    @pytest.mark.asyncio
    async def test_expiry_uses_ledger_clock(self, ledger, builder, alice, bob, clock):
        capability_id = await create(ledger, builder, alice, [GrantRequest(bob.address, clock() + 60_000)])
        assert await probe(ledger, builder, capability_id, bob.address)

        clock.advance(ms=59_999)
        assert await probe(ledger, builder, capability_id, bob.address)
        clock.advance(ms=1)
        assert not await probe(ledger, builder, capability_id, bob.address)

    @pytest.mark.asyncio
    async def test_zero_never_expires(self, ledger, builder, alice, bob, clock):
        capability_id = await create(ledger, builder, alice, [GrantRequest(bob.address, 0)])
        clock.advance(seconds=10 * 365 * 24 * 3600)
        assert await probe(ledger, builder, capability_id, bob.address)

    @pytest.mark.asyncio
    async def test_revoke(self, ledger, builder, alice, bob):
        capability_id = await create(ledger, builder, alice, [GrantRequest(bob.address, 0)])
        effects = await submit(ledger, builder.build_revoke(capability_id, bob.address), alice)
        assert effects.succeeded
        assert not await probe(ledger, builder, capability_id, bob.address)

    @pytest.mark.asyncio
    async def test_revoke_absent_grant_is_noop(self, ledger, builder, alice, carol):
        capability_id = await create(ledger, builder, alice)
        effects = await submit(ledger, builder.build_revoke(capability_id, carol.address), alice)
        assert effects.succeeded
        assert (await ledger.get_object(capability_id)).grants == {}

    @pytest.mark.asyncio
    async def test_only_admin_mutates(self, ledger, builder, alice, bob):
        capability_id = await create(ledger, builder, alice)
        effects = await submit(ledger, builder.build_grant(capability_id, bob.address, 0), bob)
        assert not effects.succeeded
        assert "ENotAuthorized" in effects.error

    @pytest.mark.asyncio
    async def test_public_allows_anyone(self, ledger, builder, alice, carol):
        capability_id = await create(ledger, builder, alice, is_public=True)
        assert await probe(ledger, builder, capability_id, carol.address)
        assert await probe(ledger, builder, capability_id, "0x0")


class TestVersions:
    @pytest.mark.asyncio
    async def test_each_mutation_bumps_version_once(self, ledger, builder, alice, bob):
        capability_id = await create(ledger, builder, alice)
        before = (await ledger.get_object(capability_id)).version
        effects = await submit(ledger, builder.build_grant(capability_id, bob.address, 0), alice)
        assert (await ledger.get_object(capability_id)).version == before + 1
        assert [c.type for c in effects.object_changes] == ["mutated"]

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, ledger, builder, alice, bob, carol):
        capability_id = await create(ledger, builder, alice)
        version = (await ledger.get_object(capability_id)).version
        await submit(ledger, builder.build_grant(capability_id, bob.address, 0, version=version), alice)

        with pytest.raises(ConflictError):
            await ledger.execute(builder.build_grant(capability_id, carol.address, 0, version=version), alice)
        assert carol.address not in (await ledger.get_object(capability_id)).grants

    @pytest.mark.asyncio
    async def test_missing_object(self, ledger, builder, alice, bob):
        with pytest.raises(CapabilityNotFound):
            await ledger.inspect(builder.build_approval_probe("0x" + "99" * 32, bob.address), sender=bob.address)
        assert await ledger.get_object("0x" + "99" * 32) is None


class TestGasAndSignatures:
    @pytest.mark.asyncio
    async def test_unfunded_sender(self, clock, alice):
        ledger = InMemoryLedger(program_id="0x" + "ab" * 32, clock=clock, gas_per_command=10)
        builder = CapabilityTransactionBuilder(program_id=ledger.program_id)
        tx = builder.build_create_and_share(CapabilityCreationRequest("blob", generate_identity()))
        with pytest.raises(InsufficientFunds):
            await ledger.execute(tx, alice)
        assert ledger.executed_count == 0

    @pytest.mark.asyncio
    async def test_gas_is_charged_per_command(self, clock, alice):
        ledger = InMemoryLedger(program_id="0x" + "ab" * 32, clock=clock, gas_per_command=10)
        builder = CapabilityTransactionBuilder(program_id=ledger.program_id)
        ledger.fund(alice.address, 25)
        await create(ledger, builder, alice)  # create + share = 20
        tx = builder.build_create_and_share(CapabilityCreationRequest("blob", generate_identity()))
        with pytest.raises(InsufficientFunds):
            await ledger.execute(tx, alice)

    @pytest.mark.asyncio
    async def test_forged_signer_rejected(self, ledger, builder, alice, bob):
        class Impostor:
            address = bob.address
            public_key_bytes = alice.public_key_bytes

            async def sign_transaction(self, tx_bytes):
                return await alice.sign_transaction(tx_bytes)

        tx = builder.build_create_and_share(CapabilityCreationRequest("blob", generate_identity()))
        with pytest.raises(TransactionAborted):
            await ledger.execute(tx, Impostor())

    @pytest.mark.asyncio
    async def test_unknown_digest(self, ledger):
        with pytest.raises(TransactionAborted):
            await ledger.wait_for_transaction("feed")
