"""Ledger boundary: capability objects, transactions and clients."""

from .client import JsonRpcLedgerClient, LedgerClient, classify_ledger_error
from .memory import InMemoryLedger, ManualClock, system_clock
from .models import (
    CapabilityObject,
    InspectResult,
    ObjectChange,
    TransactionEffects,
    extract_capability_id,
)
from .transactions import (
    CapabilityCreationRequest,
    CapabilityTransactionBuilder,
    GrantRequest,
    MoveCall,
    ObjectArg,
    Pure,
    Result,
    Transaction,
)

__all__ = [
    # Models
    "CapabilityObject",
    "InspectResult",
    "ObjectChange",
    "TransactionEffects",
    "extract_capability_id",
    # Transactions
    "CapabilityCreationRequest",
    "CapabilityTransactionBuilder",
    "GrantRequest",
    "MoveCall",
    "ObjectArg",
    "Pure",
    "Result",
    "Transaction",
    # Clients
    "LedgerClient",
    "JsonRpcLedgerClient",
    "InMemoryLedger",
    "ManualClock",
    "classify_ledger_error",
    "system_clock",
]
