"""Threshold encryption of payloads.

Process:
1. Generate a random 256-bit data key and encrypt the payload with it
   (AES-256-GCM), binding program id, identity and threshold as AAD
2. Split the data key t-of-n with Shamir sharing
3. Wrap share i for key server i: ephemeral X25519 agreement with the
   server's public key, HKDF bound to program id, identity and server id,
   AES-256-GCM

A key server releases the HKDF output for an ephemeral key only after it
has verified the approval predicate for that identity on the ledger, so
shares open only for approved identities.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..config import KeyServerInfo
from ..errors import DecryptionError
from ..identity import EncryptionIdentity
from ..signing import normalize_address
from . import shamir

FORMAT_VERSION = 1
HKDF_INFO_PREFIX = b"capshare-threshold-v1"


@dataclass
class EncryptedShare:
    """One data-key share, wrapped for one key server."""

    server_id: str
    ephemeral_public: str  # hex
    nonce: str  # hex
    wrapped: str  # hex

    def to_dict(self) -> dict[str, str]:
        return {
            "server_id": self.server_id,
            "ephemeral_public": self.ephemeral_public,
            "nonce": self.nonce,
            "wrapped": self.wrapped,
        }


@dataclass
class EncryptedObject:
    """The bytes stored in the blob store for an encrypted file."""

    program_id: str
    identity: str  # prefixed hex
    threshold: int
    nonce: str  # hex
    ciphertext: str  # hex
    shares: list[EncryptedShare] = field(default_factory=list)
    version: int = FORMAT_VERSION

    def aad(self) -> bytes:
        """Associated data binding the ciphertext to its header."""
        header = {
            "version": self.version,
            "program_id": self.program_id,
            "identity": self.identity,
            "threshold": self.threshold,
            "servers": [share.server_id for share in self.shares],
        }
        return json.dumps(header, sort_keys=True, separators=(",", ":")).encode()

    def to_bytes(self) -> bytes:
        payload = {
            "version": self.version,
            "program_id": self.program_id,
            "identity": self.identity,
            "threshold": self.threshold,
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
            "shares": [share.to_dict() for share in self.shares],
        }
        return json.dumps(payload, sort_keys=True).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> EncryptedObject:
        """Parse stored bytes.

        Raises:
            DecryptionError: If the bytes are not an encrypted object
        """
        try:
            payload: Any = json.loads(data)
            if payload.get("version") != FORMAT_VERSION:
                raise DecryptionError(f"Unsupported ciphertext version {payload.get('version')}")
            obj = cls(
                program_id=payload["program_id"],
                identity=payload["identity"],
                threshold=int(payload["threshold"]),
                nonce=payload["nonce"],
                ciphertext=payload["ciphertext"],
                shares=[EncryptedShare(**share) for share in payload["shares"]],
            )
            obj._check_encoding()
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Payload is not a threshold-encrypted object: {e}") from e
        if not 1 <= obj.threshold <= len(obj.shares):
            raise DecryptionError("Ciphertext threshold exceeds its share count")
        return obj

    def _check_encoding(self) -> None:
        normalize_address(self.program_id)
        EncryptionIdentity.from_hex(self.identity)
        for share in self.shares:
            for value in (share.ephemeral_public, share.nonce, share.wrapped):
                bytes.fromhex(value)
        bytes.fromhex(self.nonce)
        bytes.fromhex(self.ciphertext)


def derive_share_key(
    shared_secret: bytes,
    program_id: str,
    identity_hex: str,
    server_id: str,
) -> bytes:
    """Key wrapping one share, bound to program, identity and server."""
    info = b"|".join(
        [HKDF_INFO_PREFIX, program_id.encode(), identity_hex.encode(), server_id.encode()]
    )
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info).derive(shared_secret)


def server_derive_key(
    private_key: X25519PrivateKey,
    ephemeral_public_hex: str,
    program_id: str,
    identity_hex: str,
    server_id: str,
) -> bytes:
    """Key-server side of :func:`derive_share_key`."""
    ephemeral = X25519PublicKey.from_public_bytes(bytes.fromhex(ephemeral_public_hex))
    shared_secret = private_key.exchange(ephemeral)
    return derive_share_key(shared_secret, program_id, identity_hex, server_id)


def encrypt_object(
    data: bytes,
    identity: EncryptionIdentity,
    threshold: int,
    program_id: str,
    servers: list[KeyServerInfo],
) -> EncryptedObject:
    """Encrypt ``data`` so that any ``threshold`` of ``servers`` can release it."""
    server_ids = [server.server_id for server in servers]
    if len(set(server_ids)) != len(server_ids):
        raise ValueError("Key server ids must be unique")
    if not 1 <= threshold <= len(servers):
        raise ValueError(f"Threshold {threshold} needs between 1 and {len(servers)} servers")

    data_key = AESGCM.generate_key(bit_length=256)
    obj = EncryptedObject(
        program_id=program_id,
        identity=identity.hex,
        threshold=threshold,
        nonce="",
        ciphertext="",
        shares=[],
    )

    points = shamir.split(data_key, threshold, len(servers))
    share_entries = []
    for server, point in zip(servers, points):
        ephemeral = X25519PrivateKey.generate()
        shared_secret = ephemeral.exchange(X25519PublicKey.from_public_bytes(server.public_key))
        key = derive_share_key(shared_secret, program_id, identity.hex, server.server_id)
        nonce = os.urandom(12)
        share_entries.append((server, ephemeral, nonce, key, point))

    # Placeholder entries fix the server order the AAD commits to
    obj.shares = [EncryptedShare(s.server_id, "", "", "") for s, *_ in share_entries]
    aad = obj.aad()

    obj.shares = [
        EncryptedShare(
            server_id=server.server_id,
            ephemeral_public=ephemeral.public_key().public_bytes_raw().hex(),
            nonce=nonce.hex(),
            wrapped=AESGCM(key).encrypt(nonce, shamir.encode_share(point), aad).hex(),
        )
        for server, ephemeral, nonce, key, point in share_entries
    ]

    payload_nonce = os.urandom(12)
    obj.nonce = payload_nonce.hex()
    obj.ciphertext = AESGCM(data_key).encrypt(payload_nonce, bytes(data), aad).hex()
    return obj


def open_share(obj: EncryptedObject, share: EncryptedShare, key: bytes) -> tuple[int, int]:
    """Unwrap one share with the key its server released.

    Raises:
        DecryptionError: If the key does not open the share
    """
    try:
        plaintext = AESGCM(key).decrypt(bytes.fromhex(share.nonce), bytes.fromhex(share.wrapped), obj.aad())
        return shamir.decode_share(plaintext)
    except (InvalidTag, ValueError) as e:
        raise DecryptionError(f"Share from {share.server_id} does not open") from e


def open_payload(obj: EncryptedObject, data_key: bytes) -> bytes:
    """Decrypt the payload with the recombined data key.

    Raises:
        DecryptionError: If the recombined key is wrong or the payload was altered
    """
    try:
        return AESGCM(data_key).decrypt(bytes.fromhex(obj.nonce), bytes.fromhex(obj.ciphertext), obj.aad())
    except (InvalidTag, ValueError) as e:
        raise DecryptionError("Payload does not open under the recombined key") from e
