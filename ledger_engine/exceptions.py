"""
Ledger Engine Exceptions

DESIGN DECISION: Every failure the engine reports is a LedgerError subclass
carrying a stable machine-readable ``code``. Callers (API layers, jobs)
map codes to responses; nothing here knows about HTTP.

Failure classes:
- ValidationError: the request itself is malformed
- NotFoundError: entity missing OR not owned by the caller (indistinguishable)
- ConflictError: the request clashes with current state
- ExternalServiceUnavailableError: a dependency (rate provider) failed
- InvariantViolationError: stored state disagrees with derived state (fatal)
"""

from typing import Optional
from uuid import UUID


class LedgerError(Exception):
    """Base exception for ledger engine operations."""

    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Malformed input: zero amount, bad month, unsupported currency, ..."""

    code = "validation_error"


class NotFoundError(LedgerError):
    """Entity not found, or not owned by the calling user."""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: object):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LedgerError):
    """Operation clashes with current state."""

    code = "conflict"

    def __init__(self, message: str, existing_id: Optional[UUID] = None):
        super().__init__(message)
        self.existing_id = existing_id


class ExternalServiceUnavailableError(LedgerError):
    """An external dependency failed, timed out or returned garbage."""

    code = "external_service_unavailable"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class InvariantViolationError(LedgerError):
    """
    Stored balance disagrees with the sum of the account's transactions.

    Fatal. The surrounding unit of work is rolled back and the mismatch is
    reported, never silently corrected.
    """

    code = "invariant_violation"

    def __init__(self, account_id: UUID, stored_balance, computed_balance):
        super().__init__(
            f"Account {account_id} balance {stored_balance} does not match "
            f"transaction sum {computed_balance}"
        )
        self.account_id = account_id
        self.stored_balance = stored_balance
        self.computed_balance = computed_balance
