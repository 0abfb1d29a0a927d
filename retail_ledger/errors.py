"""
Error Taxonomy Module

Typed exceptions raised by the ledger core. Every error carries a
machine-readable ``code`` and the HTTP-style ``status_code`` an outer
API layer is expected to map it to.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class BankingError(Exception):
    """Base class for all ledger core errors"""

    code = "banking_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an API error body"""
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = {k: str(v) for k, v in self.details.items()}
        return result


class ValidationError(BankingError, ValueError):
    """Malformed input: non-positive amount, out-of-range term or rate, bad account number"""

    code = "validation_error"
    status_code = 400


class NotFoundError(BankingError):
    """Requested entity does not exist (or is soft-deleted)"""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(BankingError):
    """Operation is not allowed in the entity's current state"""

    code = "state_conflict"
    status_code = 409


class AccountStateError(StateConflictError):
    """Account status or type forbids the operation"""

    code = "account_state_conflict"


class PolicyLimitError(BankingError):
    """A balance or limit policy rejected the operation"""

    code = "policy_limit"
    status_code = 422

    def __init__(self, message: str, limit: Decimal, attempted: Decimal):
        super().__init__(message, {"limit": limit, "attempted": attempted})
        self.limit = limit
        self.attempted = attempted


class InsufficientFundsError(PolicyLimitError):
    """Available balance is lower than the requested debit"""

    code = "insufficient_funds"

    def __init__(self, available: Decimal, attempted: Decimal, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient funds: available {available}, requested {attempted}",
            available,
            attempted,
        )
        self.available = available


class DailyLimitExceededError(PolicyLimitError):
    """Debit would push the UTC-day total over the account's daily limit"""

    code = "daily_limit_exceeded"

    def __init__(self, limit: Decimal, used: Decimal, attempted: Decimal):
        super().__init__(
            f"Daily withdrawal limit exceeded: limit {limit}, used today {used}, requested {attempted}",
            limit,
            attempted,
        )
        self.used = used
        self.details["used"] = used


class InfrastructureError(BankingError):
    """Storage unavailable, lock timeout or driver failure. Safe to retry."""

    code = "infrastructure_error"
    status_code = 503
    retryable = True
