"""Access evaluation against the ledger.

The decision comes from running the approval probe in the ledger's
non-committing mode and decoding its single boolean. An answer that cannot
be decoded is an error, never a grant.
"""

from __future__ import annotations

import logging

from .errors import CapabilityNotFound, EvaluationError, TransferError
from .ledger.client import LedgerClient
from .ledger.models import CapabilityObject, InspectResult
from .ledger.transactions import CapabilityTransactionBuilder
from .signing import normalize_address

logger = logging.getLogger(__name__)


def decode_bool(result: InspectResult) -> bool:
    """Decode the one boolean an approval probe returns.

    Raises:
        EvaluationError: If the result is anything but a single ``[0]``/``[1]`` bool
    """
    if result.error:
        raise EvaluationError(f"Approval probe failed: {result.error}")
    if len(result.return_values) != 1 or len(result.return_values[0]) != 1:
        raise EvaluationError("Approval probe did not return exactly one value")
    value, type_ = result.return_values[0][0]
    if type_ != "bool" or value not in ([0], [1]):
        raise EvaluationError(f"Approval probe returned a non-boolean: {value!r} ({type_})")
    return value == [1]


class AccessEvaluator:
    """Answers "may this actor download this capability's file?"."""

    def __init__(
        self,
        ledger: LedgerClient,
        builder: CapabilityTransactionBuilder | None = None,
    ) -> None:
        self.ledger = ledger
        self.builder = builder or CapabilityTransactionBuilder()

    async def get_capability(self, capability_id: str) -> CapabilityObject:
        """Read the capability object's fields.

        Raises:
            CapabilityNotFound: If the object does not exist
            EvaluationError: If the ledger could not be read
        """
        try:
            capability = await self.ledger.get_object(capability_id)
        except CapabilityNotFound:
            raise
        except (TransferError, ValueError) as e:
            raise EvaluationError(f"Could not read capability {capability_id}: {e}") from e
        if capability is None:
            raise CapabilityNotFound(f"Capability {capability_id} not found")
        return capability

    async def evaluate(self, capability_id: str, actor_address: str | None) -> bool:
        """Decide access for an actor.

        Without an actor the capability's existence is still checked, so
        callers can tell "file absent" from "access denied".

        Raises:
            CapabilityNotFound: If the object does not exist
            EvaluationError: On transport or decoding failure
        """
        if actor_address is None:
            await self.get_capability(capability_id)
            logger.debug(f"No actor for {capability_id}; denying without probe")
            return False

        try:
            address = normalize_address(actor_address)
        except ValueError as e:
            raise EvaluationError(str(e)) from e

        probe = self.builder.build_approval_probe(capability_id, address)
        try:
            result = await self.ledger.inspect(probe, sender=address)
        except CapabilityNotFound:
            raise
        except TransferError as e:
            raise EvaluationError(f"Approval probe for {capability_id} failed: {e}") from e

        allowed = decode_bool(result)
        logger.info(f"Access to {capability_id[:10]}... for {address[:10]}...: {allowed}")
        return allowed
