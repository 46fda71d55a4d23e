"""
Test suite for the exception hierarchy

Error codes and dict payloads are what the HTTP layer returns to clients.
"""

import pytest

from pawn_core.exceptions import (
    PawnLedgerError, ValidationError, NotFoundError, InvalidStateError,
    ConflictError, DuplicateTransactionError, InvalidAmountError,
    ResourceExhaustedError, NoActiveShiftError
)


class TestExceptionHierarchy:
    """Test exception types and payloads"""
    
    def test_all_errors_share_base(self):
        for error in (
            ValidationError("bad"),
            NotFoundError("loan", "L1"),
            InvalidStateError("nope"),
            ConflictError("taken"),
            DuplicateTransactionError(5),
            InvalidAmountError("negative"),
            ResourceExhaustedError("busy"),
        ):
            assert isinstance(error, PawnLedgerError)
    
    def test_validation_error_lists_every_message(self):
        error = ValidationError("a; b", ["a", "b"])
        payload = error.to_dict()
        
        assert payload["code"] == "VALIDATION_ERROR"
        assert payload["message"] == "a; b"
        assert payload["errors"] == ["a", "b"]
    
    def test_validation_error_defaults_errors_to_message(self):
        assert ValidationError("only one").errors == ["only one"]
    
    def test_value_errors(self):
        """Amount and validation errors are also ValueErrors"""
        assert isinstance(ValidationError("x"), ValueError)
        assert isinstance(InvalidAmountError("x"), ValueError)
    
    def test_not_found_message(self):
        error = NotFoundError("loan", "L42")
        assert str(error) == "Loan L42 not found"
        assert error.entity_type == "loan"
        assert error.entity_id == "L42"
        assert error.to_dict()["code"] == "NOT_FOUND"
    
    def test_invalid_state_keeps_current_state(self):
        error = InvalidStateError("already redeemed", "redeemed")
        assert error.current_state == "redeemed"
    
    def test_duplicate_transaction_is_conflict(self):
        error = DuplicateTransactionError(3)
        assert isinstance(error, ConflictError)
        assert error.attempts == 3
        assert "3 attempts" in str(error)
        assert error.code == "DUPLICATE_TRANSACTION"
    
    def test_no_active_shift_is_invalid_state(self):
        error = NoActiveShiftError("user-7")
        assert isinstance(error, InvalidStateError)
        assert error.user_id == "user-7"
        assert error.to_dict()["code"] == "NO_ACTIVE_SHIFT"
    
    def test_resource_exhausted_is_retryable(self):
        assert ResourceExhaustedError("busy").retryable is True
    
    def test_raise_and_catch_by_base(self):
        with pytest.raises(PawnLedgerError):
            raise InvalidAmountError("negative")
