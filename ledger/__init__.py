"""
SpendSight ledger core.

Balance-consistency operations, the session-bound store they run on,
read-only reports, and the error taxonomy shared by all of them.
"""

from ledger.errors import (
    InsufficientFunds,
    LedgerError,
    NotFound,
    ReferentialConflict,
    StoreError,
    ValidationError,
)
from ledger.operations import Ledger
from ledger.queries import TransactionFilter
from ledger.store import LedgerStore, TransactionKind

__all__ = [
    "InsufficientFunds",
    "Ledger",
    "LedgerError",
    "LedgerStore",
    "NotFound",
    "ReferentialConflict",
    "StoreError",
    "TransactionFilter",
    "TransactionKind",
    "ValidationError",
]
