"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from pawn_core.storage import InMemoryStorage
from pawn_core.audit import AuditTrail
from pawn_core.loans import LoanManager, LoanRequest, Operator
from pawn_core.shifts import ShiftManager


class FakeClock:
    """Controllable UTC clock"""
    
    def __init__(self, start: datetime):
        self.current = start
    
    def __call__(self) -> datetime:
        return self.current
    
    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def loan_manager(storage, audit_trail, clock):
    return LoanManager(storage, audit_trail, clock=clock)


@pytest.fixture
def shift_manager(storage, loan_manager, audit_trail, clock):
    return ShiftManager(storage, loan_manager, audit_trail, clock=clock)


@pytest.fixture
def operator():
    return Operator(user_id="user-1", username="alice")


@pytest.fixture
def other_operator():
    return Operator(user_id="user-2", username="bob")


@pytest.fixture
def make_loan(loan_manager, operator):
    """Issue a loan with sensible defaults"""
    def _make_loan(amount="500", rate="15", term=30, issued_by=None, **fields):
        body = {
            "firstName": "Maria",
            "lastName": "Santos",
            "loanAmount": amount,
            "interestRate": rate,
            "loanTerm": term,
        }
        body.update(fields)
        return loan_manager.create_loan(LoanRequest.from_fields(body), issued_by or operator)
    return _make_loan
