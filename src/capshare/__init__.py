"""capshare - Time-bounded, revocable download grants for encrypted files.

capshare provides:
- Metadata framing so file names survive encryption and storage
- Per-file encryption identities bound to an on-ledger capability object
- Capability transactions (create-and-share, grant, revoke, probe, approve)
- Threshold decryption sessions against a network of key servers
- Upload and download orchestration across ledger, blob store and key servers
"""

__version__ = "1.0.0"

from .config import EndpointConfig, TransferConfig
from .errors import ErrorCategory, TransferError
from .framing import FileHeader, frame, unframe
from .identity import EncryptionIdentity, generate_identity

__all__ = [
    "EncryptionIdentity",
    "EndpointConfig",
    "ErrorCategory",
    "FileHeader",
    "TransferConfig",
    "TransferError",
    "frame",
    "generate_identity",
    "unframe",
]
