"""In-process ledger running the access_grant program.

Executes the same transactions the JSON-RPC ledger would, with the same
rules: signatures are verified, each transaction commits atomically or not
at all, only the administrator mutates grants, pinned object versions must
be current, objects created by a transaction must be shared before it ends,
and expiry is judged by the ledger clock.

Useful for tests and for running the whole pipeline locally.
"""

from __future__ import annotations

import copy
import hashlib
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..defaults import (
    CAPABILITY_TYPE_NAME,
    CLOCK_ID,
    FN_APPROVE,
    FN_CAN_DOWNLOAD,
    FN_CREATE,
    FN_GRANT,
    FN_REVOKE,
    FN_SET_BLOB_REFERENCE,
    FN_SHARE,
    MODULE_NAME,
    NEVER_EXPIRES,
    PROGRAM_ID,
)
from ..errors import (
    CapabilityNotFound,
    ConflictError,
    InsufficientFunds,
    TransactionAborted,
)
from ..identity import EncryptionIdentity
from ..signing import Signer, derive_address, normalize_address, verify_signature
from .models import CapabilityObject, InspectResult, ObjectChange, TransactionEffects
from .transactions import MoveCall, ObjectArg, Pure, Result, Transaction

logger = logging.getLogger(__name__)

# Abort codes of the access_grant module
E_NOT_AUTHORIZED = "ENotAuthorized"
E_EXPIRY_IN_PAST = "EExpiryInPast"
E_ALREADY_OVERRIDDEN = "EBlobIdAlreadyOverridden"
E_ALREADY_SHARED = "EAlreadyShared"
E_INVALID_ARGUMENT = "EInvalidArgument"
E_UNUSED_VALUE = "EUnusedValueWithoutDrop"
E_UNKNOWN_FUNCTION = "EFunctionNotFound"


def system_clock() -> int:
    """Wall-clock milliseconds."""
    return int(time.time() * 1000)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float = 0, ms: int = 0) -> int:
        self.now_ms += int(seconds * 1000) + ms
        return self.now_ms


class MoveAbort(Exception):
    """A command aborted; the whole transaction is rolled back."""

    def __init__(self, code: str, detail: str = "") -> None:
        super().__init__(f"MoveAbort({code}){': ' + detail if detail else ''}")
        self.code = code


@dataclass
class _Clock:
    now_ms: int


@dataclass
class _Execution:
    """Working state of one transaction."""

    sender: str
    now_ms: int
    objects: dict[str, CapabilityObject]
    created: list[str]
    mutated: set[str]


class InMemoryLedger:
    """The access_grant program and its object store, in process."""

    def __init__(
        self,
        program_id: str = PROGRAM_ID,
        module: str = MODULE_NAME,
        clock: Callable[[], int] | None = None,
        clock_id: str = CLOCK_ID,
        gas_per_command: int = 0,
    ) -> None:
        self.program_id = normalize_address(program_id)
        self.module = module
        self.clock = clock or system_clock
        self.clock_id = normalize_address(clock_id)
        self.gas_per_command = gas_per_command
        self._objects: dict[str, CapabilityObject] = {}
        self._effects: dict[str, TransactionEffects] = {}
        self._balances: dict[str, int] = {}
        self.executed_count = 0
        self.inspect_count = 0
        self._functions: dict[str, Callable[..., Any]] = {
            FN_CREATE: self._create_file_access,
            FN_GRANT: self._grant_access,
            FN_REVOKE: self._revoke_access,
            FN_SHARE: self._share_file_access,
            FN_CAN_DOWNLOAD: self._can_download,
            FN_APPROVE: self._seal_approve,
            FN_SET_BLOB_REFERENCE: self._set_file_id,
        }

    @property
    def object_type(self) -> str:
        return f"{self.program_id}::{self.module}::{CAPABILITY_TYPE_NAME}"

    @property
    def object_count(self) -> int:
        return len(self._objects)

    def fund(self, address: str, amount: int) -> None:
        """Credit gas to an address. Gas is only metered when gas_per_command > 0."""
        address = normalize_address(address)
        self._balances[address] = self._balances.get(address, 0) + amount

    # -------------------------------------------------------------------------
    # LedgerClient interface
    # -------------------------------------------------------------------------

    async def get_object(self, object_id: str) -> CapabilityObject | None:
        obj = self._objects.get(normalize_address(object_id))
        return copy.deepcopy(obj) if obj else None

    async def inspect(self, transaction: Transaction, sender: str) -> InspectResult:
        self.inspect_count += 1
        try:
            values, _ = self._run(transaction, normalize_address(sender))
        except MoveAbort as e:
            return InspectResult(error=str(e))
        except ConflictError as e:
            return InspectResult(error=str(e))
        return InspectResult(return_values=[_encode_return(v) for v in values])

    async def execute(self, transaction: Transaction, signer: Signer) -> str:
        transaction.sender = signer.address
        tx_bytes = transaction.to_bytes()
        signature = await signer.sign_transaction(tx_bytes)

        if derive_address(signer.public_key_bytes) != normalize_address(signer.address):
            raise TransactionAborted("Signer public key does not own the sender address")
        if not verify_signature(signer.public_key_bytes, tx_bytes, signature):
            raise TransactionAborted("Invalid transaction signature")

        sender = normalize_address(signer.address)
        gas = self.gas_per_command * len(transaction.commands)
        if gas and self._balances.get(sender, 0) < gas:
            raise InsufficientFunds(
                f"Insufficient gas: balance {self._balances.get(sender, 0)} below budget {gas}"
            )

        digest = hashlib.sha256(tx_bytes + signature).hexdigest()
        try:
            _, execution = self._run(transaction, sender)
        except MoveAbort as e:
            logger.warning(f"Transaction {digest[:12]} aborted: {e}")
            effects = TransactionEffects(digest=digest, status="failure", error=str(e))
        else:
            effects = TransactionEffects(digest=digest, object_changes=self._commit(execution))

        # Gas is charged for executed transactions, aborted or not
        if gas:
            self._balances[sender] -= gas
        self._effects[digest] = effects
        self.executed_count += 1
        return digest

    async def wait_for_transaction(self, digest: str) -> TransactionEffects:
        effects = self._effects.get(digest)
        if effects is None:
            raise TransactionAborted(f"Unknown transaction {digest}")
        return effects

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _run(self, transaction: Transaction, sender: str) -> tuple[list[Any], _Execution]:
        execution = _Execution(
            sender=sender,
            now_ms=self.clock(),
            objects=copy.deepcopy(self._objects),
            created=[],
            mutated=set(),
        )
        values: list[Any] = []
        for command in transaction.commands:
            function = self._resolve_function(command)
            args = [self._resolve_argument(arg, values, execution) for arg in command.arguments]
            values.append(function(execution, *args))

        for object_id in execution.created:
            if not execution.objects[object_id].shared:
                raise MoveAbort(E_UNUSED_VALUE, f"created object {object_id} was neither shared nor transferred")
        return values, execution

    def _commit(self, execution: _Execution) -> list[ObjectChange]:
        changes = []
        for object_id in execution.created:
            obj = execution.objects[object_id]
            changes.append(ObjectChange("created", self.object_type, object_id, obj.version))
        for object_id in sorted(execution.mutated - set(execution.created)):
            obj = execution.objects[object_id]
            obj.version += 1
            changes.append(ObjectChange("mutated", self.object_type, object_id, obj.version))
        self._objects = execution.objects
        return changes

    def _resolve_function(self, command: MoveCall) -> Callable[..., Any]:
        parts = command.target.split("::")
        if normalize_address(parts[0]) != self.program_id or parts[1] != self.module:
            raise MoveAbort(E_UNKNOWN_FUNCTION, command.target)
        function = self._functions.get(parts[2])
        if function is None:
            raise MoveAbort(E_UNKNOWN_FUNCTION, command.target)
        return function

    def _resolve_argument(self, arg: Any, values: list[Any], execution: _Execution) -> Any:
        if isinstance(arg, Pure):
            return arg.value
        if isinstance(arg, Result):
            if arg.index >= len(values):
                raise MoveAbort(E_INVALID_ARGUMENT, f"Result({arg.index}) is not yet available")
            return values[arg.index]
        if isinstance(arg, ObjectArg):
            if arg.object_id == self.clock_id:
                return _Clock(execution.now_ms)
            obj = execution.objects.get(arg.object_id)
            if obj is None:
                raise CapabilityNotFound(f"Object {arg.object_id} does not exist")
            if arg.version is not None and arg.version != obj.version:
                raise ConflictError(
                    f"Object version unavailable: {arg.object_id} is at version "
                    f"{obj.version}, transaction pinned {arg.version}"
                )
            return obj
        raise MoveAbort(E_INVALID_ARGUMENT, repr(arg))

    # -------------------------------------------------------------------------
    # access_grant functions
    # -------------------------------------------------------------------------

    def _create_file_access(
        self, ex: _Execution, blob_id: Any, encryption_id: Any, is_public: Any, clock: Any
    ) -> CapabilityObject:
        _expect(isinstance(blob_id, str) and blob_id, "blob_id")
        _expect(isinstance(is_public, bool), "is_public")
        _expect(isinstance(clock, _Clock), "clock")
        try:
            identity = EncryptionIdentity.from_vector(encryption_id)
        except (TypeError, ValueError) as e:
            raise MoveAbort(E_INVALID_ARGUMENT, f"encryption_id: {e}") from e

        object_id = "0x" + secrets.token_hex(32)
        obj = CapabilityObject(
            capability_id=object_id,
            blob_reference=blob_id,
            encryption_identity=identity,
            is_public=is_public,
            admin=ex.sender,
        )
        ex.objects[object_id] = obj
        ex.created.append(object_id)
        return obj

    def _grant_access(
        self, ex: _Execution, cap: Any, address: Any, expires_at: Any, clock: Any
    ) -> None:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        _expect(isinstance(clock, _Clock), "clock")
        _require_admin(cap, ex)
        if expires_at != NEVER_EXPIRES and expires_at <= clock.now_ms:
            raise MoveAbort(E_EXPIRY_IN_PAST, f"{expires_at} <= {clock.now_ms}")
        cap.grants[normalize_address(address)] = expires_at
        ex.mutated.add(cap.capability_id)

    def _revoke_access(self, ex: _Execution, cap: Any, address: Any) -> None:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        _require_admin(cap, ex)
        cap.grants.pop(normalize_address(address), None)
        ex.mutated.add(cap.capability_id)

    def _share_file_access(self, ex: _Execution, cap: Any) -> None:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        if cap.shared or cap.capability_id not in ex.created:
            raise MoveAbort(E_ALREADY_SHARED, cap.capability_id)
        cap.shared = True

    def _can_download(self, ex: _Execution, cap: Any, address: Any, clock: Any) -> bool:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        _expect(isinstance(clock, _Clock), "clock")
        return cap.can_download(address, clock.now_ms)

    def _seal_approve(self, ex: _Execution, identity: Any, cap: Any, clock: Any) -> bool:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        _expect(isinstance(clock, _Clock), "clock")
        if bytes(identity) != cap.encryption_identity.raw:
            return False
        return cap.can_download(ex.sender, clock.now_ms)

    def _set_file_id(self, ex: _Execution, cap: Any, blob_id: Any) -> None:
        _expect(isinstance(cap, CapabilityObject), "file_access")
        _expect(isinstance(blob_id, str) and blob_id, "blob_id")
        _require_admin(cap, ex)
        if cap.blob_reference_overridden:
            raise MoveAbort(E_ALREADY_OVERRIDDEN, cap.capability_id)
        cap.blob_reference = blob_id
        cap.blob_reference_overridden = True
        ex.mutated.add(cap.capability_id)


def _expect(condition: Any, name: str) -> None:
    if not condition:
        raise MoveAbort(E_INVALID_ARGUMENT, name)


def _require_admin(cap: CapabilityObject, ex: _Execution) -> None:
    if ex.sender != cap.admin:
        raise MoveAbort(E_NOT_AUTHORIZED, f"{ex.sender} is not the administrator")


def _encode_return(value: Any) -> list[tuple[list[int], str]]:
    """BCS-style encoding of a command's return value."""
    if isinstance(value, bool):
        return [([1 if value else 0], "bool")]
    return []
