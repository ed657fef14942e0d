"""Threshold decryption sessions as an explicit state machine.

Each decryption attempt moves strictly through::

    UNINITIALIZED -> AWAITING_SIGNATURE -> READY -> FETCHED -> APPROVING -> DECRYPTED
                              \\               \\                   \\
                               +---------------+-------------------+--> FAILED

One coroutine handles each non-terminal state and names the next one, so
decryption cannot be attempted before the credential is signed and the
payload fetched. Failures are terminal and carry a ``FailureReason`` plus
the error that caused them; nothing is retried silently.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from ..defaults import PROGRAM_ID, SESSION_TTL_MINUTES
from ..errors import (
    AccessDenied,
    DecryptionError,
    SessionExpired,
    ThresholdNetworkError,
    TransferError,
    UserRejected,
)
from ..ledger.memory import system_clock
from ..ledger.models import CapabilityObject
from ..ledger.transactions import CapabilityTransactionBuilder
from ..signing import Signer, normalize_address
from ..storage.blob import BlobStore
from .client import ThresholdClient
from .session import SessionCredential

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    AWAITING_SIGNATURE = "awaiting_signature"
    READY = "ready"
    FETCHED = "fetched"
    APPROVING = "approving"
    DECRYPTED = "decrypted"
    FAILED = "failed"


class FailureReason(StrEnum):
    USER_REJECTED = "user_rejected"
    FETCH_ERROR = "fetch_error"
    ACCESS_DENIED = "access_denied"
    SESSION_EXPIRED = "session_expired"
    NETWORK_ERROR = "network_error"


TERMINAL_STATES = frozenset({SessionState.DECRYPTED, SessionState.FAILED})


@dataclass
class DecryptionSession:
    """One decryption attempt for one capability by one actor."""

    capability: CapabilityObject
    signer: Signer
    state: SessionState = SessionState.UNINITIALIZED
    credential: SessionCredential | None = None
    encrypted: bytes | None = field(default=None, repr=False)
    approval: bytes | None = field(default=None, repr=False)
    plaintext: bytes | None = field(default=None, repr=False)
    failure: FailureReason | None = None
    error: TransferError | None = None
    history: list[SessionState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def retryable(self) -> bool:
        """Whether starting a new session could succeed."""
        return self.error is not None and self.error.retryable

    def raise_for_failure(self) -> None:
        """Re-raise the error that failed this session, if any."""
        if self.state == SessionState.FAILED and self.error is not None:
            raise self.error
        if not self.is_terminal:
            raise RuntimeError(f"Session has not finished (state {self.state})")


Transition = Callable[[DecryptionSession], Awaitable[SessionState]]


class ThresholdSessionManager:
    """Drives decryption sessions from issue to plaintext."""

    def __init__(
        self,
        threshold_client: ThresholdClient,
        blob_store: BlobStore,
        builder: CapabilityTransactionBuilder | None = None,
        program_id: str = PROGRAM_ID,
        ttl_minutes: int = SESSION_TTL_MINUTES,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.threshold_client = threshold_client
        self.blob_store = blob_store
        self.builder = builder or CapabilityTransactionBuilder(program_id=program_id)
        self.program_id = normalize_address(program_id)
        self.ttl_minutes = ttl_minutes
        self.clock = clock or system_clock
        self.transitions: dict[SessionState, Transition] = {
            SessionState.UNINITIALIZED: self._issue,
            SessionState.AWAITING_SIGNATURE: self._sign,
            SessionState.READY: self._fetch,
            SessionState.FETCHED: self._prepare_approval,
            SessionState.APPROVING: self._approve,
        }

    async def run(
        self,
        capability: CapabilityObject,
        signer: Signer,
        credential: SessionCredential | None = None,
    ) -> DecryptionSession:
        """Run a session to a terminal state.

        A signed ``credential`` for the same actor and program is reused
        without asking the actor to sign again; an expired one fails the
        session with ``SESSION_EXPIRED``.
        """
        session = DecryptionSession(capability=capability, signer=signer, credential=credential)
        while not session.is_terminal:
            await self.advance(session)
        if session.failure:
            logger.warning(
                f"Decryption of {capability.capability_id[:10]}... failed: {session.failure} ({session.error})"
            )
        return session

    async def advance(self, session: DecryptionSession) -> SessionState:
        """Perform exactly one transition."""
        if session.is_terminal:
            raise ValueError(f"Session already finished in state {session.state}")
        handler = self.transitions[session.state]
        session.history.append(session.state)
        session.state = await handler(session)
        logger.debug(f"Session for {session.capability.capability_id[:10]}... -> {session.state}")
        return session.state

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _issue(self, session: DecryptionSession) -> SessionState:
        credential = session.credential
        if credential is None:
            session.credential = SessionCredential.issue(
                session.signer.address,
                self.program_id,
                ttl_minutes=self.ttl_minutes,
                now_ms=self.clock(),
            )
            return SessionState.AWAITING_SIGNATURE

        if credential.bound_address != normalize_address(session.signer.address):
            return _fail(session, FailureReason.ACCESS_DENIED, AccessDenied("Session belongs to another actor"))
        if credential.program_id != self.program_id:
            return _fail(session, FailureReason.ACCESS_DENIED, AccessDenied("Session belongs to another program"))
        if credential.is_expired(self.clock()):
            return _fail(
                session,
                FailureReason.SESSION_EXPIRED,
                SessionExpired(f"Session for {credential.bound_address[:10]}... expired"),
            )
        return SessionState.AWAITING_SIGNATURE

    async def _sign(self, session: DecryptionSession) -> SessionState:
        credential = session.credential
        if credential.is_signed:
            return SessionState.READY
        try:
            signature = await session.signer.sign_personal_message(credential.challenge_message())
            credential.attach_signature(signature, session.signer.public_key_bytes)
        except UserRejected as e:
            return _fail(session, FailureReason.USER_REJECTED, e)
        except AccessDenied as e:
            return _fail(session, FailureReason.ACCESS_DENIED, e)
        return SessionState.READY

    async def _fetch(self, session: DecryptionSession) -> SessionState:
        try:
            session.encrypted = await self.blob_store.get(session.capability.blob_reference)
        except TransferError as e:
            return _fail(session, FailureReason.FETCH_ERROR, e)
        return SessionState.FETCHED

    async def _prepare_approval(self, session: DecryptionSession) -> SessionState:
        session.approval = self.builder.build_decryption_approval(
            session.capability.capability_id,
            session.capability.encryption_identity,
        )
        return SessionState.APPROVING

    async def _approve(self, session: DecryptionSession) -> SessionState:
        try:
            session.plaintext = await self.threshold_client.decrypt(
                session.encrypted,
                session.credential,
                session.approval,
                expected_identity=session.capability.encryption_identity,
            )
        except SessionExpired as e:
            return _fail(session, FailureReason.SESSION_EXPIRED, e)
        except ThresholdNetworkError as e:
            return _fail(session, FailureReason.NETWORK_ERROR, e)
        except (AccessDenied, DecryptionError) as e:
            return _fail(session, FailureReason.ACCESS_DENIED, e)
        return SessionState.DECRYPTED


def _fail(session: DecryptionSession, reason: FailureReason, error: TransferError) -> SessionState:
    session.failure = reason
    session.error = error
    return SessionState.FAILED
