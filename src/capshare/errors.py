"""Error taxonomy for capshare transfers.

Every failure surfaced to callers is a ``TransferError`` carrying a
``category`` so an interface can tell "not found", "denied", "network"
and "funds" apart, and a ``retryable`` flag saying whether repeating the
operation (possibly with a new session) can succeed.
"""

from __future__ import annotations

from enum import StrEnum

from .defaults import BLOB_FUNDS_MARKERS, GAS_ERROR_MARKERS


class ErrorCategory(StrEnum):
    """Coarse failure classes an interface reacts to."""

    NOT_FOUND = "not_found"
    DENIED = "denied"
    NETWORK = "network"
    FUNDS = "funds"
    CONFLICT = "conflict"
    INVALID = "invalid"


class TransferError(Exception):
    """Base error for capshare operations."""

    category: ErrorCategory = ErrorCategory.INVALID
    retryable: bool = False


# =============================================================================
# NOT FOUND
# =============================================================================


class CapabilityNotFound(TransferError):
    """The capability object does not exist on the ledger."""

    category = ErrorCategory.NOT_FOUND


class CapabilityIdNotFound(TransferError):
    """A confirmed transaction created no capability object.

    Gas has been spent but no usable capability reference exists, so the
    upload is a failure.
    """

    category = ErrorCategory.NOT_FOUND


# =============================================================================
# DENIED
# =============================================================================


class AccessDenied(TransferError):
    """The actor may not download this file."""

    category = ErrorCategory.DENIED


class UserRejected(TransferError):
    """The actor declined to sign. Not retried automatically."""

    category = ErrorCategory.DENIED


class SessionExpired(TransferError):
    """The session credential is past its TTL. Retry with a new session."""

    category = ErrorCategory.DENIED
    retryable = True


# =============================================================================
# NETWORK
# =============================================================================


class FetchError(TransferError):
    """Fetching a blob failed."""

    category = ErrorCategory.NETWORK
    retryable = True


class UploadError(TransferError):
    """Uploading a blob failed."""

    category = ErrorCategory.NETWORK
    retryable = True


class EvaluationError(TransferError):
    """The access probe could not be executed or its result decoded."""

    category = ErrorCategory.NETWORK
    retryable = True


class LedgerUnavailable(TransferError):
    """The ledger endpoint could not be reached."""

    category = ErrorCategory.NETWORK
    retryable = True


class ThresholdNetworkError(TransferError):
    """Too few key servers answered for a transport reason."""

    category = ErrorCategory.NETWORK
    retryable = True


# =============================================================================
# FUNDS / CONFLICT / INVALID
# =============================================================================


class InsufficientFunds(TransferError):
    """Gas or storage funds are exhausted."""

    category = ErrorCategory.FUNDS


class ConflictError(TransferError):
    """The transaction was built against a stale object version."""

    category = ErrorCategory.CONFLICT
    retryable = True


class MalformedEnvelope(TransferError):
    """A framed payload could not be parsed."""


class DecryptionError(TransferError):
    """The ciphertext does not open under the released key shares."""


class TransactionAborted(TransferError):
    """The ledger rejected or aborted the transaction."""


# =============================================================================
# ERROR TEXT CLASSIFICATION
# =============================================================================


def is_gas_error(message: str) -> bool:
    """Whether a ledger error message reports missing gas funds."""
    lower = message.lower()
    return any(marker in lower for marker in GAS_ERROR_MARKERS)


def is_storage_funds_error(message: str) -> bool:
    """Whether a blob-store error body reports an unfunded publisher."""
    return any(marker in message for marker in BLOB_FUNDS_MARKERS)
