"""Threshold network: encryption, session credentials, key servers.

Example usage:
    from capshare.threshold import ThresholdClient, ThresholdSessionManager

    client = ThresholdClient(key_servers, threshold=2)
    encrypted = await client.encrypt(framed, identity)

    manager = ThresholdSessionManager(client, blob_store)
    session = await manager.run(capability, signer)
    session.raise_for_failure()
"""

from .client import ThresholdClient
from .encryption import EncryptedObject, EncryptedShare, encrypt_object
from .keyservers import (
    HttpKeyServer,
    KeyRequest,
    KeyServer,
    LocalKeyServer,
    generate_local_key_servers,
)
from .manager import (
    DecryptionSession,
    FailureReason,
    SessionState,
    ThresholdSessionManager,
)
from .session import SessionCredential, verify_certificate, verify_request_token

__all__ = [
    # Encryption
    "EncryptedObject",
    "EncryptedShare",
    "encrypt_object",
    # Sessions
    "SessionCredential",
    "verify_certificate",
    "verify_request_token",
    # Key servers
    "KeyRequest",
    "KeyServer",
    "LocalKeyServer",
    "HttpKeyServer",
    "generate_local_key_servers",
    # Client and state machine
    "ThresholdClient",
    "ThresholdSessionManager",
    "DecryptionSession",
    "SessionState",
    "FailureReason",
]
