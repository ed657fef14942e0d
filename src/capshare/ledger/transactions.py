"""Capability transactions.

Transactions are programmable command lists: each command is a call into
the ``access_grant`` module whose arguments are pure values, ledger
objects, or the result of an earlier command in the same transaction.
Building a transaction has no side effects; nothing happens until it is
submitted to a ledger client.
"""

from __future__ import annotations

import json
import logging
import warnings
from dataclasses import dataclass, field
from typing import Any

from ..defaults import (
    CLOCK_ID,
    FN_APPROVE,
    FN_CAN_DOWNLOAD,
    FN_CREATE,
    FN_GRANT,
    FN_REVOKE,
    FN_SET_BLOB_REFERENCE,
    FN_SHARE,
    MAX_U64,
    MODULE_NAME,
    NEVER_EXPIRES,
    PROGRAM_ID,
)
from ..identity import EncryptionIdentity
from ..signing import normalize_address

logger = logging.getLogger(__name__)


# =============================================================================
# ARGUMENTS AND COMMANDS
# =============================================================================


@dataclass(frozen=True)
class Pure:
    """A plain value argument."""

    type: str
    value: Any

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _check_pure(self.type, self.value))

    def to_dict(self) -> dict[str, Any]:
        return {"Pure": {"type": self.type, "value": self.value}}


@dataclass(frozen=True)
class ObjectArg:
    """A ledger object argument, optionally pinned to a version."""

    object_id: str
    version: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "object_id", normalize_address(self.object_id))

    def to_dict(self) -> dict[str, Any]:
        return {"Object": {"id": self.object_id, "version": self.version}}


@dataclass(frozen=True)
class Result:
    """The value returned by an earlier command of the same transaction."""

    index: int

    def to_dict(self) -> dict[str, Any]:
        return {"Result": self.index}


Argument = Pure | ObjectArg | Result


@dataclass(frozen=True)
class MoveCall:
    """A call to ``<program>::<module>::<function>``."""

    target: str
    arguments: tuple[Argument, ...] = ()

    @property
    def function(self) -> str:
        return self.target.rsplit("::", 1)[-1]

    @property
    def program_id(self) -> str:
        return self.target.split("::", 1)[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "MoveCall": {
                "target": self.target,
                "arguments": [arg.to_dict() for arg in self.arguments],
            }
        }


def _check_pure(type_: str, value: Any) -> Any:
    """Validate and canonicalize a pure value for its declared type."""
    if type_ == "address":
        return normalize_address(value)
    if type_ == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"bool argument expected, got {value!r}")
        return value
    if type_ == "u64":
        if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= MAX_U64:
            raise ValueError(f"u64 argument out of range: {value!r}")
        return value
    if type_ == "string":
        if not isinstance(value, str):
            raise ValueError(f"string argument expected, got {value!r}")
        return value
    if type_ == "vector<u8>":
        if not isinstance(value, list | tuple) or not all(
            isinstance(v, int) and not isinstance(v, bool) and 0 <= v <= 255 for v in value
        ):
            raise ValueError("vector<u8> argument must hold byte values")
        return list(value)
    raise ValueError(f"Unsupported pure type: {type_}")


def _argument_from_dict(data: Any) -> Argument:
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError(f"Malformed argument: {data!r}")
    (kind, body), = data.items()
    if kind == "Pure":
        return Pure(type=body["type"], value=body["value"])
    if kind == "Object":
        return ObjectArg(object_id=body["id"], version=body.get("version"))
    if kind == "Result":
        if not isinstance(body, int) or isinstance(body, bool) or body < 0:
            raise ValueError(f"Malformed result index: {body!r}")
        return Result(index=body)
    raise ValueError(f"Unknown argument kind: {kind}")


def _command_from_dict(data: Any) -> MoveCall:
    if not isinstance(data, dict) or set(data) != {"MoveCall"}:
        raise ValueError(f"Unsupported command: {data!r}")
    body = data["MoveCall"]
    target = body["target"]
    if not isinstance(target, str) or target.count("::") != 2:
        raise ValueError(f"Malformed call target: {target!r}")
    return MoveCall(
        target=target,
        arguments=tuple(_argument_from_dict(arg) for arg in body.get("arguments", [])),
    )


# =============================================================================
# TRANSACTION
# =============================================================================


@dataclass
class Transaction:
    """An ordered list of commands executed as one atomic unit."""

    commands: list[MoveCall] = field(default_factory=list)
    sender: str | None = None

    def move_call(self, target: str, *arguments: Argument) -> Result:
        """Append a call and return a handle to its result."""
        for arg in arguments:
            if isinstance(arg, Result) and arg.index >= len(self.commands):
                raise ValueError(f"Result({arg.index}) refers to a later command")
        self.commands.append(MoveCall(target=target, arguments=tuple(arguments)))
        return Result(len(self.commands) - 1)

    def _commands_dict(self) -> list[dict[str, Any]]:
        return [command.to_dict() for command in self.commands]

    def to_bytes(self) -> bytes:
        """Canonical bytes of the full transaction, as signed by the sender."""
        payload = {
            "kind": "ProgrammableTransaction",
            "sender": self.sender,
            "commands": self._commands_dict(),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()

    def kind_bytes(self) -> bytes:
        """Canonical bytes of the commands only (no sender, no gas)."""
        payload = {"kind": "ProgrammableTransaction", "commands": self._commands_dict()}
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        """Parse :meth:`to_bytes` or :meth:`kind_bytes` output.

        Raises:
            ValueError: If the bytes do not describe a transaction
        """
        try:
            payload = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Transaction bytes are not JSON: {e}") from e
        if not isinstance(payload, dict) or payload.get("kind") != "ProgrammableTransaction":
            raise ValueError("Not a programmable transaction")
        try:
            commands = [_command_from_dict(c) for c in payload.get("commands", [])]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed transaction command: {e}") from e
        sender = payload.get("sender")
        return cls(commands=commands, sender=normalize_address(sender) if sender else None)

    from_kind_bytes = from_bytes


# =============================================================================
# CREATION REQUEST
# =============================================================================


@dataclass(frozen=True)
class GrantRequest:
    """One address allowed to download until ``expires_at`` (ledger ms, 0 = never)."""

    address: str
    expires_at: int = NEVER_EXPIRES

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))
        _check_pure("u64", self.expires_at)


@dataclass(frozen=True)
class CapabilityCreationRequest:
    """Everything needed to create a capability object in one transaction."""

    blob_reference: str
    encryption_identity: EncryptionIdentity
    is_public: bool = False
    grants: tuple[GrantRequest, ...] = ()

    def __post_init__(self) -> None:
        if not self.blob_reference:
            raise ValueError("blob_reference must not be empty")
        grants = tuple(self.grants)
        addresses = [g.address for g in grants]
        if len(addresses) != len(set(addresses)):
            raise ValueError("Initial grants must name each address at most once")
        object.__setattr__(self, "grants", grants)


# =============================================================================
# BUILDER
# =============================================================================


class CapabilityTransactionBuilder:
    """Constructs the access_grant transactions.

    Every time-dependent call takes the shared clock object, so expiry is
    always judged by the ledger's clock.
    """

    def __init__(
        self,
        program_id: str = PROGRAM_ID,
        module: str = MODULE_NAME,
        clock_id: str = CLOCK_ID,
    ) -> None:
        self.program_id = normalize_address(program_id)
        self.module = module
        self.clock_id = normalize_address(clock_id)

    def target(self, function: str) -> str:
        return f"{self.program_id}::{self.module}::{function}"

    def _clock(self) -> ObjectArg:
        return ObjectArg(self.clock_id)

    def build_create_and_share(self, request: CapabilityCreationRequest) -> Transaction:
        """Create the capability, apply every initial grant, then share it.

        One transaction, so one approval regardless of the number of grants.
        """
        tx = Transaction()
        capability = tx.move_call(
            self.target(FN_CREATE),
            Pure("string", request.blob_reference),
            Pure("vector<u8>", request.encryption_identity.as_vector()),
            Pure("bool", request.is_public),
            self._clock(),
        )
        for grant in request.grants:
            tx.move_call(
                self.target(FN_GRANT),
                capability,
                Pure("address", grant.address),
                Pure("u64", grant.expires_at),
                self._clock(),
            )
        tx.move_call(self.target(FN_SHARE), capability)
        logger.debug(
            f"Built create-and-share for blob {request.blob_reference} "
            f"(public={request.is_public}, grants={len(request.grants)})"
        )
        return tx

    def build_grant(
        self,
        capability_id: str,
        address: str,
        expires_at: int,
        version: int | None = None,
    ) -> Transaction:
        """Upsert one grant entry."""
        tx = Transaction()
        tx.move_call(
            self.target(FN_GRANT),
            ObjectArg(capability_id, version),
            Pure("address", address),
            Pure("u64", expires_at),
            self._clock(),
        )
        return tx

    def build_revoke(
        self,
        capability_id: str,
        address: str,
        version: int | None = None,
    ) -> Transaction:
        """Delete one grant entry; revoking an absent grant is a no-op."""
        tx = Transaction()
        tx.move_call(
            self.target(FN_REVOKE),
            ObjectArg(capability_id, version),
            Pure("address", address),
        )
        return tx

    def build_approval_probe(self, capability_id: str, address: str) -> Transaction:
        """Read-only check of whether ``address`` may download right now."""
        tx = Transaction()
        tx.move_call(
            self.target(FN_CAN_DOWNLOAD),
            ObjectArg(capability_id),
            Pure("address", address),
            self._clock(),
        )
        return tx

    def build_decryption_approval(
        self,
        capability_id: str,
        encryption_identity: EncryptionIdentity,
    ) -> bytes:
        """Approval predicate packaged for the threshold network.

        ``encryption_identity`` must equal the capability's stored identity
        byte for byte, or the key servers' own evaluation rejects it.
        """
        tx = Transaction()
        tx.move_call(
            self.target(FN_APPROVE),
            Pure("vector<u8>", encryption_identity.as_vector()),
            ObjectArg(capability_id),
            self._clock(),
        )
        return tx.kind_bytes()

    def build_set_blob_reference(
        self,
        capability_id: str,
        blob_reference: str,
        version: int | None = None,
    ) -> Transaction:
        """Legacy one-time administrative override of the blob reference."""
        if not blob_reference:
            raise ValueError("blob_reference must not be empty")
        tx = Transaction()
        tx.move_call(
            self.target(FN_SET_BLOB_REFERENCE),
            ObjectArg(capability_id, version),
            Pure("string", blob_reference),
        )
        return tx

    # -------------------------------------------------------------------------
    # Deprecated call shapes
    # -------------------------------------------------------------------------

    def build_create_and_transfer(
        self,
        blob_reference: str,
        encryption_identity: EncryptionIdentity,
        is_public: bool,
    ) -> Transaction:
        """Deprecated: use :meth:`build_create_and_share`."""
        warnings.warn(
            "build_create_and_transfer is deprecated; use build_create_and_share",
            DeprecationWarning,
            stacklevel=2,
        )
        return self.build_create_and_share(
            CapabilityCreationRequest(blob_reference, encryption_identity, is_public)
        )

    def build_create_with_access(
        self,
        blob_reference: str,
        encryption_identity: EncryptionIdentity,
        is_public: bool,
        access_list: list[dict[str, Any]],
        owner_address: str | None = None,
    ) -> Transaction:
        """Deprecated: use :meth:`build_create_and_share`.

        ``access_list`` items are ``{"address", "expiresAt"}`` mappings.
        ``owner_address`` is ignored; the creator is the administrator and
        the object is shared.
        """
        warnings.warn(
            "build_create_with_access is deprecated; use build_create_and_share",
            DeprecationWarning,
            stacklevel=2,
        )
        grants = tuple(
            GrantRequest(item["address"], int(item.get("expiresAt", NEVER_EXPIRES)))
            for item in access_list
        )
        return self.build_create_and_share(
            CapabilityCreationRequest(blob_reference, encryption_identity, is_public, grants)
        )
