"""Ledger clients.

The ledger is reached through four calls: read an object, inspect a
transaction without committing it, submit a signed transaction, and wait
for its confirmation. ``JsonRpcLedgerClient`` speaks JSON-RPC over HTTP;
``capshare.ledger.memory.InMemoryLedger`` runs the same program in process.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from typing import Any, Protocol, runtime_checkable

import aiohttp

from ..defaults import CAPABILITY_TYPE_NAME, LEDGER_TIMEOUT_SECONDS
from ..errors import (
    CapabilityNotFound,
    ConflictError,
    InsufficientFunds,
    LedgerUnavailable,
    TransactionAborted,
    TransferError,
    is_gas_error,
)
from ..signing import Signer, normalize_address
from .models import CapabilityObject, InspectResult, TransactionEffects, matches_capability_type
from .transactions import Transaction

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = (
    "objectversionunavailable",
    "object version",
    "stale object",
    "version mismatch",
)
NOT_FOUND_MARKERS = (
    "notexists",
    "object not found",
    "does not exist",
    "deleted",
)


def classify_ledger_error(message: str) -> TransferError:
    """Map ledger error text onto the transfer error taxonomy."""
    lower = message.lower()
    if is_gas_error(message):
        return InsufficientFunds(message)
    if any(marker in lower for marker in CONFLICT_MARKERS):
        return ConflictError(message)
    if any(marker in lower for marker in NOT_FOUND_MARKERS):
        return CapabilityNotFound(message)
    return TransactionAborted(message)


@runtime_checkable
class LedgerClient(Protocol):
    """Operations the transfer pipeline needs from the ledger."""

    async def get_object(self, object_id: str) -> CapabilityObject | None:
        """Read a capability object, or None if it does not exist."""
        ...

    async def inspect(self, transaction: Transaction, sender: str) -> InspectResult:
        """Execute without committing and return each command's return values."""
        ...

    async def execute(self, transaction: Transaction, signer: Signer) -> str:
        """Sign and submit a transaction; returns its digest."""
        ...

    async def wait_for_transaction(self, digest: str) -> TransactionEffects:
        """Block until the transaction is final and return its effects."""
        ...


class JsonRpcLedgerClient:
    """Ledger client over HTTP JSON-RPC."""

    def __init__(
        self,
        url: str,
        timeout: float = LEDGER_TIMEOUT_SECONDS,
        capability_type_name: str = CAPABILITY_TYPE_NAME,
    ) -> None:
        if not url:
            raise ValueError("Ledger URL is required")
        self.url = url
        self.timeout = timeout
        self.capability_type_name = capability_type_name
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC call.

        Raises:
            LedgerUnavailable: On transport failure or a non-JSON-RPC reply
            TransferError: The classified ledger error, if the call failed
        """
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=body) as resp:
                    if resp.status != 200:
                        raise LedgerUnavailable(
                            f"Ledger returned HTTP {resp.status}: {await resp.text()}"
                        )
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise LedgerUnavailable(f"Connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise LedgerUnavailable(f"Ledger call {method} timed out") from e

        if not isinstance(data, dict):
            raise LedgerUnavailable(f"Malformed JSON-RPC reply to {method}")
        if "error" in data:
            error = data["error"] or {}
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            logger.warning(f"Ledger call {method} failed: {message}")
            raise classify_ledger_error(message)
        return data.get("result")

    async def get_object(self, object_id: str) -> CapabilityObject | None:
        object_id = normalize_address(object_id)
        result = await self._call("ledger_getObject", [object_id, {"showContent": True}])
        if not result or "error" in result or not result.get("data"):
            return None

        data = result["data"]
        if not matches_capability_type(data.get("type"), self.capability_type_name):
            logger.warning(f"Object {object_id} is not a {self.capability_type_name}: {data.get('type')}")
            return None
        fields = data.get("content", {}).get("fields", {})
        return CapabilityObject.from_fields(
            fields,
            version=int(data.get("version", 1)),
            shared="Shared" in (data.get("owner") or {}),
        )

    async def inspect(self, transaction: Transaction, sender: str) -> InspectResult:
        tx_kind = base64.b64encode(transaction.kind_bytes()).decode("ascii")
        result = await self._call(
            "ledger_devInspectTransaction", [normalize_address(sender), tx_kind]
        )
        if not isinstance(result, dict):
            return InspectResult(error="Empty inspect result")
        error = result.get("error")
        if error:
            # Aborts on a missing object are reported inside the result
            classified = classify_ledger_error(str(error))
            if isinstance(classified, CapabilityNotFound):
                raise classified
        return_values = [
            [(list(value), type_) for value, type_ in entry.get("returnValues") or []]
            for entry in result.get("results") or []
        ]
        return InspectResult(return_values=return_values, error=error)

    async def execute(self, transaction: Transaction, signer: Signer) -> str:
        transaction.sender = signer.address
        tx_bytes = transaction.to_bytes()
        signature = await signer.sign_transaction(tx_bytes)
        result = await self._call(
            "ledger_executeTransaction",
            [
                base64.b64encode(tx_bytes).decode("ascii"),
                [base64.b64encode(signature).decode("ascii")],
                base64.b64encode(signer.public_key_bytes).decode("ascii"),
            ],
        )
        if not isinstance(result, dict) or not result.get("digest"):
            raise TransactionAborted("Ledger accepted the transaction but returned no digest")
        digest = result["digest"]
        logger.info(f"Submitted transaction {digest} from {signer.address[:10]}...")
        return digest

    async def wait_for_transaction(self, digest: str) -> TransactionEffects:
        result = await self._call(
            "ledger_waitForTransaction",
            [digest, {"showEffects": True, "showObjectChanges": True}],
        )
        if not isinstance(result, dict):
            raise TransactionAborted(f"No effects returned for {digest}")
        try:
            return TransactionEffects.from_dict(result)
        except (KeyError, TypeError, ValueError) as e:
            raise TransactionAborted(f"Malformed effects for {digest}: {e}") from e
