"""
Pydantic schemas for API requests and responses

Request models accept both camelCase and snake_case field names.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..currency import Money
from ..loans import Loan, Payment, RedemptionEvent, ForfeitureEvent
from ..shifts import Shift, ShiftTotals


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")
    
    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def _money(value: Optional[Money]) -> Optional[Dict[str, str]]:
    if value is None:
        return None
    return MoneyModel.from_money(value).model_dump()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# Loan schemas
class CreateLoanRequest(RequestModel):
    # Presence and ranges are checked by the validation stage so that every
    # failed rule is reported together
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    loan_amount: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    loan_term: Optional[int] = None
    email: Optional[str] = None
    mobile_phone: Optional[str] = None
    item_description: Optional[str] = None
    collateral_description: Optional[str] = None
    customer_note: Optional[str] = None
    loan_issued_date: Optional[str] = Field(None, description="ISO date or datetime")
    due_date: Optional[str] = Field(None, description="ISO date")
    transaction_number: Optional[str] = None
    interest_amount: Optional[Decimal] = Field(None, description="Trusted precomputed interest")
    total_payable_amount: Optional[Decimal] = Field(None, description="Trusted precomputed total")
    
    def loan_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={'interest_amount', 'total_payable_amount'})


class PaymentRequest(RequestModel):
    amount: Decimal
    method: str = "cash"


class AmountRequest(RequestModel):
    amount: Decimal


class RedeemRequest(RequestModel):
    amount: Optional[Decimal] = Field(None, description="Defaults to the remaining balance")
    notes: Optional[str] = None


class ForfeitRequest(RequestModel):
    notes: Optional[str] = None


class ExtendDueDateRequest(RequestModel):
    days: Optional[int] = Field(None, description="Defaults to the configured extension")


# Shift schemas
class OpenShiftRequest(RequestModel):
    opening_cash: Decimal


class CloseShiftRequest(RequestModel):
    closing_cash: Decimal
    notes: Optional[str] = None


class AddCashRequest(RequestModel):
    amount: Decimal
    notes: Optional[str] = None


# Response builders
def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "transaction_number": loan.transaction_number,
        "first_name": loan.first_name,
        "last_name": loan.last_name,
        "email": loan.email,
        "mobile_phone": loan.mobile_phone,
        "item_description": loan.item_description,
        "collateral_description": loan.collateral_description,
        "customer_note": loan.customer_note,
        "initial_loan_amount": _money(loan.initial_loan_amount),
        "loan_amount": _money(loan.loan_amount),
        "interest_rate": str(loan.interest_rate),
        "interest_amount": _money(loan.interest_amount),
        "total_payable_amount": _money(loan.total_payable_amount),
        "remaining_balance": _money(loan.remaining_balance),
        "loan_term": loan.loan_term,
        "loan_issued_date": _iso(loan.loan_issued_date),
        "due_date": _iso(loan.due_date),
        "status": loan.status.value,
        "created_by": loan.created_by,
        "created_by_username": loan.created_by_username,
        "redeemed_date": _iso(loan.redeemed_date),
        "forfeited_date": _iso(loan.forfeited_date),
        "extended_at": _iso(loan.extended_at),
        "reactivated_at": _iso(loan.reactivated_at),
        "created_at": _iso(loan.created_at),
        "updated_at": _iso(loan.updated_at)
    }


def payment_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "amount": _money(payment.amount),
        "method": payment.method,
        "timestamp": _iso(payment.timestamp),
        "user_id": payment.user_id,
        "username": payment.username
    }


def redemption_response(event: RedemptionEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "loan_id": event.loan_id,
        "amount": _money(event.amount),
        "timestamp": _iso(event.timestamp),
        "user_id": event.user_id,
        "username": event.username,
        "notes": event.notes
    }


def forfeiture_response(event: ForfeitureEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "loan_id": event.loan_id,
        "timestamp": _iso(event.timestamp),
        "user_id": event.user_id,
        "username": event.username,
        "notes": event.notes
    }


def shift_response(shift: Shift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "user_id": shift.user_id,
        "username": shift.username,
        "start_time": _iso(shift.start_time),
        "end_time": _iso(shift.end_time),
        "opening_cash": _money(shift.opening_cash),
        "closing_cash": _money(shift.closing_cash),
        "cash_added": _money(shift.cash_added),
        "total_payments_received": _money(shift.total_payments_received),
        "total_loans_given": _money(shift.total_loans_given),
        "expected_balance": _money(shift.expected_balance),
        "difference": _money(shift.difference),
        "is_balanced": shift.is_balanced,
        "is_open": shift.is_open,
        "notes": shift.notes
    }


def shift_totals_response(totals: ShiftTotals) -> Dict[str, Any]:
    return {
        "opening_cash": _money(totals.opening_cash),
        "total_payments_received": _money(totals.total_payments_received),
        "total_loans_given": _money(totals.total_loans_given),
        "expected_balance": _money(totals.expected_balance),
        "payment_count": totals.payment_count,
        "loan_count": totals.loan_count
    }


def loans_response(loans: List[Loan]) -> Dict[str, Any]:
    return {"count": len(loans), "loans": [loan_response(loan) for loan in loans]}
