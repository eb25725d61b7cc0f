"""
Ledger error taxonomy.

Every operation raises one of these and nothing else on a domain failure.
The web layer turns them into responses using ``status_code``.
"""


class LedgerError(Exception):
    """Base exception for ledger operations."""
    status_code = 500


class ValidationError(LedgerError):
    """Missing or invalid input, e.g. a non-positive amount or a category of the wrong type."""
    status_code = 400


class NotFound(LedgerError):
    """A referenced user, account, category or transaction does not exist."""
    status_code = 404


class ReferentialConflict(LedgerError):
    """A delete was blocked because other records still reference the row."""
    status_code = 409


class InsufficientFunds(LedgerError):
    """A transfer would overdraw its source account."""
    status_code = 422


class StoreError(LedgerError):
    """The underlying database failed."""
    status_code = 500
