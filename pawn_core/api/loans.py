"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import PawnShopSystem, get_system, require_active_shift
from .schemas import (
    CreateLoanRequest, PaymentRequest, AmountRequest, RedeemRequest,
    ForfeitRequest, ExtendDueDateRequest,
    loan_response, loans_response, payment_response,
    redemption_response, forfeiture_response
)
from ..exceptions import ValidationError
from ..loans import LoanRequest, LoanStatus, Operator, PrecomputedAmounts


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Issue a new pawn loan"""
    loan_request = LoanRequest.from_fields(request.loan_fields())
    
    trusted_override = None
    if request.interest_amount is not None or request.total_payable_amount is not None:
        trusted_override = PrecomputedAmounts(
            interest_amount=request.interest_amount,
            total_payable_amount=request.total_payable_amount
        )
    
    loan = system.loan_manager.create_loan(loan_request, operator, trusted_override)
    return loan_response(loan)


@router.get("")
def list_loans(
    status: Optional[str] = None,
    system: PawnShopSystem = Depends(get_system)
):
    """List loans, optionally filtered by status"""
    loan_status = None
    if status:
        try:
            loan_status = LoanStatus(status.lower())
        except ValueError:
            raise ValidationError(f"Unknown loan status: {status}")
    return loans_response(system.loan_manager.list_loans(loan_status))


@router.get("/transaction/{transaction_number}")
def get_loan_by_transaction_number(
    transaction_number: str,
    system: PawnShopSystem = Depends(get_system)
):
    """Look up a loan by its transaction number"""
    loan = system.loan_manager.get_loan_by_transaction_number(transaction_number)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: PawnShopSystem = Depends(get_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}/payments")
def get_loan_payments(
    loan_id: str,
    system: PawnShopSystem = Depends(get_system)
):
    """Payment history for a loan"""
    if not system.loan_manager.get_loan(loan_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    payments = system.loan_manager.get_loan_payments(loan_id)
    total_paid = system.loan_manager.get_total_paid(loan_id)
    return {
        "loan_id": loan_id,
        "count": len(payments),
        "total_paid": str(total_paid.amount),
        "payments": [payment_response(p) for p in payments]
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def make_payment(
    loan_id: str,
    request: PaymentRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Record a payment against a loan"""
    payment = system.loan_manager.apply_payment(loan_id, request.amount, operator, request.method)
    loan = system.loan_manager.get_loan(loan_id)
    return {
        "payment": payment_response(payment),
        "loan": loan_response(loan)
    }


@router.post("/{loan_id}/add-principal")
def add_principal(
    loan_id: str,
    request: AmountRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Lend additional money against the same collateral"""
    loan = system.loan_manager.add_principal(loan_id, request.amount, operator)
    return loan_response(loan)


@router.post("/{loan_id}/discount")
def apply_discount(
    loan_id: str,
    request: AmountRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Reduce the remaining balance of an active loan"""
    loan = system.loan_manager.apply_discount(loan_id, request.amount, operator)
    return loan_response(loan)


@router.post("/{loan_id}/extend-due-date")
def extend_due_date(
    loan_id: str,
    request: ExtendDueDateRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Extend the due date of an interest-paid active loan"""
    loan = system.loan_manager.extend_due_date(loan_id, operator, request.days)
    return loan_response(loan)


@router.post("/{loan_id}/reactivate")
def reactivate_loan(
    loan_id: str,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Return an overdue loan to active once its interest is paid"""
    loan = system.loan_manager.reactivate(loan_id, operator)
    return loan_response(loan)


@router.post("/{loan_id}/redeem")
def redeem_loan(
    loan_id: str,
    request: RedeemRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Redeem a loan"""
    event = system.loan_manager.redeem(loan_id, operator, request.amount, request.notes)
    return {
        "redemption": redemption_response(event),
        "loan": loan_response(system.loan_manager.get_loan(loan_id))
    }


@router.post("/{loan_id}/forfeit")
def forfeit_loan(
    loan_id: str,
    request: ForfeitRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(require_active_shift)
):
    """Forfeit a loan"""
    event = system.loan_manager.forfeit(loan_id, operator, request.notes)
    return {
        "forfeiture": forfeiture_response(event),
        "loan": loan_response(system.loan_manager.get_loan(loan_id))
    }
