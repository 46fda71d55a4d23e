"""
Reporting endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from .dependencies import PawnShopSystem, get_system
from ..reporting import ReportFormat, ReportResult


router = APIRouter()


def _render(system: PawnShopSystem, result: ReportResult, format: ReportFormat):
    if format == ReportFormat.CSV:
        return PlainTextResponse(
            system.reporting_engine.export_report(result, ReportFormat.CSV),
            media_type="text/csv"
        )
    return system.reporting_engine.export_report(result, ReportFormat.DICT)


@router.get("/daily-cash-balancing")
def daily_cash_balancing(
    start_date: date,
    end_date: date,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Per-day payments, loans issued and shift reconciliation"""
    result = system.reporting_engine.daily_cash_balancing(start_date, end_date)
    return _render(system, result, format)


@router.get("/active-loans")
def active_loans(
    start_date: date,
    end_date: date,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Active loans issued in the range"""
    result = system.reporting_engine.active_loans_report(start_date, end_date)
    return _render(system, result, format)


@router.get("/due-loans")
def due_loans(
    start_date: date,
    end_date: date,
    as_of: Optional[date] = None,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Active loans due in the range, with days overdue"""
    result = system.reporting_engine.due_loans_report(start_date, end_date, as_of)
    return _render(system, result, format)


@router.get("/loans-by-status")
def loans_by_status(
    start_date: date,
    end_date: date,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Loans issued in the range grouped by status"""
    result = system.reporting_engine.loans_by_status_report(start_date, end_date)
    return _render(system, result, format)


@router.get("/shifts")
def shift_reconciliation(
    start_date: date,
    end_date: date,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Reconciliation of every shift started in the range"""
    result = system.reporting_engine.shift_reconciliation_report(start_date, end_date)
    return _render(system, result, format)


@router.get("/revenue")
def revenue(
    start_date: date,
    end_date: date,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Payments in the range split into interest and principal"""
    result = system.reporting_engine.revenue_report(start_date, end_date)
    return _render(system, result, format)


@router.get("/overdue-loans")
def overdue_loans(
    as_of: Optional[date] = None,
    format: ReportFormat = ReportFormat.DICT,
    system: PawnShopSystem = Depends(get_system)
):
    """Overdue and past-due loans, oldest due date first"""
    result = system.reporting_engine.overdue_loans_report(as_of)
    return _render(system, result, format)
