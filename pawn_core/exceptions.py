"""
Exception hierarchy for the pawn ledger.

Every error carries a machine-readable ``code`` so that callers (the HTTP
layer, the scheduler) can branch on type instead of message text.
"""

from typing import Any, Dict, List, Optional


class PawnLedgerError(Exception):
    """Base exception for all pawn ledger errors."""

    code: str = "PAWN_LEDGER_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class ValidationError(PawnLedgerError, ValueError):
    """Input failed validation. Carries the per-field messages."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = list(self.errors)
        return result


class NotFoundError(PawnLedgerError):
    """Referenced loan or shift does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class InvalidStateError(PawnLedgerError):
    """Operation is not allowed from the entity's current state."""

    code: str = "INVALID_STATE"

    def __init__(self, message: str, current_state: Optional[str] = None):
        self.current_state = current_state
        super().__init__(message)


class ConflictError(PawnLedgerError):
    """Uniqueness or single-open-shift constraint violated."""

    code: str = "CONFLICT"


class DuplicateTransactionError(ConflictError):
    """Could not allocate a unique transaction number."""

    code: str = "DUPLICATE_TRANSACTION"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Could not generate a unique transaction number after {attempts} attempts"
        )


class InvalidAmountError(PawnLedgerError, ValueError):
    """Monetary input is non-positive or negative where that is not allowed."""

    code: str = "INVALID_AMOUNT"


class ResourceExhaustedError(PawnLedgerError):
    """Store is busy or a lock could not be acquired in time. Retryable."""

    code: str = "RESOURCE_EXHAUSTED"
    retryable: bool = True


class NoActiveShiftError(InvalidStateError):
    """Operator tried to move cash or change a loan without an open shift."""

    code: str = "NO_ACTIVE_SHIFT"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"No active shift for operator {user_id}. Open a shift before performing loan activity.",
            "no_shift"
        )
