"""
Shift endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import PawnShopSystem, get_system, get_operator
from .schemas import (
    OpenShiftRequest, CloseShiftRequest, AddCashRequest,
    shift_response, shift_totals_response, payment_response, loan_response
)
from ..loans import Operator


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def open_shift(
    request: OpenShiftRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(get_operator)
):
    """Open a shift for the calling operator"""
    shift = system.shift_manager.open_shift(operator, request.opening_cash)
    return shift_response(shift)


@router.get("/current")
def get_current_shift(
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(get_operator)
):
    """The calling operator's open shift"""
    shift = system.shift_manager.get_open_shift(operator.user_id)
    if not shift:
        raise HTTPException(status_code=404, detail="No open shift")
    return shift_response(shift)


@router.get("/current/summary")
def get_current_shift_summary(
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(get_operator)
):
    """Running totals for the calling operator's open shift"""
    totals = system.shift_manager.current_totals(operator.user_id)
    return shift_totals_response(totals)


@router.post("/current/add-cash")
def add_cash(
    request: AddCashRequest,
    system: PawnShopSystem = Depends(get_system),
    operator: Operator = Depends(get_operator)
):
    """Top up the float of the calling operator's open shift"""
    shift = system.shift_manager.add_cash(operator, request.amount, request.notes)
    return shift_response(shift)


@router.get("/history/{user_id}")
def get_shift_history(
    user_id: str,
    limit: Optional[int] = None,
    system: PawnShopSystem = Depends(get_system)
):
    """Shift history for an operator, newest first"""
    shifts = system.shift_manager.shift_history(user_id, limit)
    return {"count": len(shifts), "shifts": [shift_response(s) for s in shifts]}


@router.get("/{shift_id}")
def get_shift(
    shift_id: str,
    system: PawnShopSystem = Depends(get_system)
):
    """Get shift details"""
    shift = system.shift_manager.get_shift(shift_id)
    if not shift:
        raise HTTPException(status_code=404, detail="Shift not found")
    return shift_response(shift)


@router.get("/{shift_id}/report")
def get_shift_report(
    shift_id: str,
    system: PawnShopSystem = Depends(get_system)
):
    """Payments and loans inside a shift's window"""
    report = system.shift_manager.shift_report(shift_id)
    return {
        "shift": shift_response(report["shift"]),
        "totals": shift_totals_response(report["totals"]),
        "payments": [payment_response(p) for p in report["payments"]],
        "loans": [loan_response(loan) for loan in report["loans"]]
    }


@router.post("/{shift_id}/close")
def close_shift(
    shift_id: str,
    request: CloseShiftRequest,
    system: PawnShopSystem = Depends(get_system)
):
    """Close a shift against the declared drawer count"""
    shift = system.shift_manager.close_shift(shift_id, request.closing_cash, request.notes)
    return shift_response(shift)
