"""
Tests for session credentials.

Tests cover:
- Challenge message text
- Signing, address binding and expiry
- Certificate verification on the key-server side
- Request tokens signed by the session key
"""

from __future__ import annotations

import base64

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from capshare.errors import AccessDenied, SessionExpired
from capshare.signing import Ed25519Signer
from capshare.threshold import SessionCredential, verify_certificate, verify_request_token
from capshare.threshold.session import challenge_message

PROGRAM_ID = "0x" + "ab" * 32
NOW_MS = 1_700_000_000_000  # 2023-11-14 22:13:20 UTC


@pytest.fixture
def signer():
    return Ed25519Signer.generate()


@pytest.fixture
def credential(signer):
    return SessionCredential.issue(signer.address, PROGRAM_ID, ttl_minutes=10, now_ms=NOW_MS)


async def sign(credential, signer):
    signature = await signer.sign_personal_message(credential.challenge_message())
    credential.attach_signature(signature, signer.public_key_bytes)
    return credential


# =============================================================================
# ISSUE AND SIGN
# =============================================================================


class TestChallenge:
    def test_text(self):
        key = bytes(range(32))
        message = challenge_message(PROGRAM_ID, 10, NOW_MS, key).decode()
        assert message == (
            f"Accessing keys of program {PROGRAM_ID} for 10 mins from 2023-11-14 22:13:20 UTC, "
            f"session key {base64.b64encode(key).decode()}"
        )

    def test_credential_message_names_its_key(self, credential):
        encoded = base64.b64encode(credential.session_public_key).decode()
        assert credential.challenge_message().decode().endswith(encoded)


class TestCredential:
    @pytest.mark.parametrize("ttl", [0, 31])
    def test_ttl_range(self, signer, ttl):
        with pytest.raises(ValueError):
            SessionCredential.issue(signer.address, PROGRAM_ID, ttl_minutes=ttl)

    def test_fresh_key_per_issue(self, signer):
        first = SessionCredential.issue(signer.address, PROGRAM_ID, now_ms=NOW_MS)
        second = SessionCredential.issue(signer.address, PROGRAM_ID, now_ms=NOW_MS)
        assert first.session_public_key != second.session_public_key

    def test_expiry_boundary(self, credential):
        assert credential.expires_at_ms == NOW_MS + 10 * 60_000
        assert not credential.is_expired(NOW_MS + 10 * 60_000 - 1)
        assert credential.is_expired(NOW_MS + 10 * 60_000)

    @pytest.mark.asyncio
    async def test_attach_signature(self, credential, signer):
        assert not credential.is_signed
        await sign(credential, signer)
        assert credential.is_signed

    @pytest.mark.asyncio
    async def test_signature_from_other_actor(self, credential):
        other = Ed25519Signer.generate()
        signature = await other.sign_personal_message(credential.challenge_message())
        with pytest.raises(AccessDenied, match="address"):
            credential.attach_signature(signature, other.public_key_bytes)
        assert not credential.is_signed

    @pytest.mark.asyncio
    async def test_signature_over_wrong_message(self, credential, signer):
        signature = await signer.sign_personal_message(b"something else")
        with pytest.raises(AccessDenied):
            credential.attach_signature(signature, signer.public_key_bytes)

    def test_unsigned_has_no_certificate(self, credential):
        with pytest.raises(AccessDenied):
            credential.certificate()


# =============================================================================
# VERIFICATION
# =============================================================================


class TestVerifyCertificate:
    @pytest.mark.asyncio
    async def test_valid(self, credential, signer):
        await sign(credential, signer)
        session = verify_certificate(credential.certificate(), now_ms=NOW_MS + 1000)
        assert session.address == signer.address
        assert session.program_id == PROGRAM_ID
        assert session.session_public_key == credential.session_public_key

    @pytest.mark.asyncio
    async def test_expired_by_server_clock(self, credential, signer):
        await sign(credential, signer)
        with pytest.raises(SessionExpired):
            verify_certificate(credential.certificate(), now_ms=NOW_MS + 10 * 60_000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("ttl_minutes", 30),
            ("created_at_ms", NOW_MS + 1),
            ("program_id", "0x" + "cd" * 32),
            ("session_public_key", base64.b64encode(b"\x01" * 32).decode()),
        ],
    )
    async def test_altered_field_breaks_signature(self, credential, signer, field, value):
        await sign(credential, signer)
        certificate = credential.certificate()
        certificate[field] = value
        with pytest.raises(AccessDenied):
            verify_certificate(certificate, now_ms=NOW_MS)

    @pytest.mark.asyncio
    async def test_address_not_owned_by_key(self, credential, signer):
        await sign(credential, signer)
        certificate = credential.certificate()
        certificate["address"] = Ed25519Signer.generate().address
        with pytest.raises(AccessDenied, match="own"):
            verify_certificate(certificate, now_ms=NOW_MS)

    @pytest.mark.parametrize("certificate", [{}, {"address": "0x1"}])
    def test_malformed(self, certificate):
        with pytest.raises(AccessDenied, match="Malformed"):
            verify_certificate(certificate, now_ms=NOW_MS)


class TestRequestToken:
    @pytest.mark.asyncio
    async def test_round_trip(self, credential):
        claims = {"server_id": "ks-1", "identity": "0x00"}
        token = credential.sign_request(claims)
        assert verify_request_token(token, credential.session_public_key) == claims

    def test_other_key_rejected(self, credential):
        token = credential.sign_request({"server_id": "ks-1"})
        other = Ed25519PrivateKey.generate().public_key().public_bytes_raw()
        with pytest.raises(AccessDenied):
            verify_request_token(token, other)

    def test_hs256_token_rejected(self, credential):
        token = jwt.encode({"server_id": "ks-1"}, "secret-secret-secret-secret-1234", algorithm="HS256")
        with pytest.raises(AccessDenied):
            verify_request_token(token, credential.session_public_key)

    def test_garbage_rejected(self, credential):
        with pytest.raises(AccessDenied):
            verify_request_token("not.a.token", credential.session_public_key)
