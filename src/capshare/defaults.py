"""Centralized protocol constants and tunable defaults for capshare.

Deployment-specific values read ``CAPSHARE_*`` environment variables at
import time; everything else is fixed by the on-ledger program.
"""

from __future__ import annotations

import os

# On-ledger program
PROGRAM_ID = os.environ.get(
    "CAPSHARE_PROGRAM_ID",
    "0x462708965638752db291d4a6809a5f43a95da2f77f926bb28cf20dd9cb261e31",
)
MODULE_NAME = "access_grant"
CLOCK_ID = "0x6"  # Shared ledger clock object
CAPABILITY_TYPE_NAME = "FileAccess"

# Entry functions of the access_grant module
FN_CREATE = "create_file_access"
FN_GRANT = "grant_access"
FN_REVOKE = "revoke_access"
FN_SHARE = "share_file_access"
FN_CAN_DOWNLOAD = "can_download"
FN_APPROVE = "seal_approve"
FN_SET_BLOB_REFERENCE = "set_file_id"

# Grants
NEVER_EXPIRES = 0
MAX_U64 = 2**64 - 1

# Encryption identity
IDENTITY_BYTES = 32
IDENTITY_HEX_PREFIX = "0x"

# Threshold network
DEFAULT_THRESHOLD = int(os.environ.get("CAPSHARE_THRESHOLD", "2"))  # 2-of-3 in the reference deployment
SESSION_TTL_MINUTES = int(os.environ.get("CAPSHARE_SESSION_TTL_MINUTES", "10"))
MAX_SESSION_TTL_MINUTES = 30

# HTTP timeouts (seconds)
LEDGER_TIMEOUT_SECONDS = float(os.environ.get("CAPSHARE_LEDGER_TIMEOUT", "30"))
BLOB_TIMEOUT_SECONDS = float(os.environ.get("CAPSHARE_BLOB_TIMEOUT", "120"))
KEY_SERVER_TIMEOUT_SECONDS = float(os.environ.get("CAPSHARE_KEY_SERVER_TIMEOUT", "10"))

# Error text markers
GAS_ERROR_MARKERS = (
    "insufficient gas",
    "insufficient funds",
    "not enough gas",
    "gas budget",
    "balance insufficient",
)
BLOB_FUNDS_MARKERS = ("insufficient balance", "SUI coins")
