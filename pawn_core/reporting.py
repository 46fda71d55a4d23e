"""
Reporting Engine Module

Read-only reconciliation reports over loans, payments and shifts for a
date range: active, due and overdue loan summaries, status breakdowns,
revenue split into interest and principal, per-shift reconciliation and the
daily cash-balancing summary. Reports never mutate records and take no
locks beyond individual reads.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date, time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, Union
from enum import Enum
import csv
import io
import json
import logging

from .currency import Money, Currency, sum_money
from .exceptions import ValidationError
from .loans import LoanManager, Loan, LoanStatus
from .shifts import ShiftManager, Shift


logger = logging.getLogger(__name__)


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: date
    period_end: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {
                'row_count': len(self.data),
                'generation_time_ms': 0,
                'currency': 'USD'
            }


def _average(total: Money, count: int) -> Decimal:
    if count == 0:
        return Decimal('0.00')
    return (total / Decimal(count)).amount


def _plain(value: Any) -> Any:
    """Convert report values to JSON-friendly primitives"""
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class ReportingEngine:
    """
    Reconciliation reports for the pawn ledger
    """

    def __init__(self, loan_manager: LoanManager, shift_manager: ShiftManager):
        self.loan_manager = loan_manager
        self.shift_manager = shift_manager
        self.currency: Currency = loan_manager.currency

    @staticmethod
    def _window(start_date: date, end_date: date) -> Tuple[datetime, datetime]:
        """Inclusive day range as a half-open UTC datetime window"""
        if end_date < start_date:
            raise ValidationError(f"end_date {end_date} is before start_date {start_date}")
        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        return start, end

    def _result(
        self,
        report_id: str,
        started: datetime,
        start_date: date,
        end_date: date,
        data: List[Dict[str, Any]],
        totals: Dict[str, Any]
    ) -> ReportResult:
        end_time = datetime.now(timezone.utc)
        return ReportResult(
            report_id=report_id,
            generated_at=end_time,
            period_start=start_date,
            period_end=end_date,
            data=data,
            totals=totals,
            metadata={
                'row_count': len(data),
                'generation_time_ms': int((end_time - started).total_seconds() * 1000),
                'currency': self.currency.code
            }
        )

    def _loan_row(self, loan: Loan, as_of: Optional[date] = None) -> Dict[str, Any]:
        row = {
            'id': loan.id,
            'customer_name': f"{loan.first_name} {loan.last_name}",
            'transaction_number': loan.transaction_number,
            'initial_loan_amount': loan.initial_loan_amount.amount,
            'loan_amount': loan.loan_amount.amount,
            'interest_amount': loan.interest_amount.amount,
            'total_payable': loan.total_payable_amount.amount,
            'remaining_balance': loan.remaining_balance.amount,
            'issued_date': loan.loan_issued_date,
            'due_date': loan.due_date,
            'status': loan.status.value,
            'created_by': loan.created_by_username
        }
        if as_of is not None:
            row['days_overdue'] = loan.days_overdue(as_of)
        return row

    def active_loans_report(self, start_date: date, end_date: date) -> ReportResult:
        """
        Active loans issued in the range, newest first, with totals
        """
        started = datetime.now(timezone.utc)
        window_start, window_end = self._window(start_date, end_date)

        loans = [
            loan for loan in self.loan_manager.list_loans(LoanStatus.ACTIVE)
            if window_start <= loan.loan_issued_date < window_end
        ]
        loans.sort(key=lambda x: x.loan_issued_date, reverse=True)

        total_loaned = sum_money((loan.loan_amount for loan in loans), self.currency)
        totals = {
            'count': len(loans),
            'total_loaned_amount': total_loaned.amount,
            'total_initial_loan_amount': sum_money(
                (loan.initial_loan_amount for loan in loans), self.currency).amount,
            'total_payable_amount': sum_money(
                (loan.total_payable_amount for loan in loans), self.currency).amount,
            'total_interest_amount': sum_money(
                (loan.interest_amount for loan in loans), self.currency).amount,
            'average_loan_amount': _average(total_loaned, len(loans))
        }

        return self._result("active_loans", started, start_date, end_date,
                            [self._loan_row(loan) for loan in loans], totals)

    def due_loans_report(
        self,
        start_date: date,
        end_date: date,
        as_of: Optional[date] = None
    ) -> ReportResult:
        """
        Active loans with a due date in the range, soonest first.

        ``days_overdue`` is measured against ``as_of`` (default: today).
        """
        started = datetime.now(timezone.utc)
        self._window(start_date, end_date)
        as_of = as_of or self.loan_manager.today()

        loans = [
            loan for loan in self.loan_manager.list_loans(LoanStatus.ACTIVE)
            if start_date <= loan.due_date <= end_date
        ]
        loans.sort(key=lambda x: x.due_date)

        total_remaining = sum_money((loan.remaining_balance for loan in loans), self.currency)
        totals = {
            'count': len(loans),
            'total_loan_amount': sum_money(
                (loan.loan_amount for loan in loans), self.currency).amount,
            'total_payable_amount': sum_money(
                (loan.total_payable_amount for loan in loans), self.currency).amount,
            'total_interest_amount': sum_money(
                (loan.interest_amount for loan in loans), self.currency).amount,
            'total_remaining_balance': total_remaining.amount,
            'average_remaining_balance': _average(total_remaining, len(loans))
        }

        return self._result("due_loans", started, start_date, end_date,
                            [self._loan_row(loan, as_of) for loan in loans], totals)

    def loans_by_status_report(self, start_date: date, end_date: date) -> ReportResult:
        """Loans issued in the range grouped by status"""
        started = datetime.now(timezone.utc)
        window_start, window_end = self._window(start_date, end_date)

        loans = self.loan_manager.loans_issued_between(window_start, window_end)

        data = []
        for status in LoanStatus:
            group = [loan for loan in loans if loan.status == status]
            data.append({
                'status': status.value,
                'count': len(group),
                'total_initial_loan_amount': sum_money(
                    (loan.initial_loan_amount for loan in group), self.currency).amount,
                'total_loan_amount': sum_money(
                    (loan.loan_amount for loan in group), self.currency).amount,
                'total_remaining_balance': sum_money(
                    (loan.remaining_balance for loan in group), self.currency).amount
            })

        totals = {'count': len(loans)}
        return self._result("loans_by_status", started, start_date, end_date, data, totals)

    def overdue_loans_report(self, as_of: Optional[date] = None) -> ReportResult:
        """
        Loans needing collection follow-up as of ``as_of`` (default: today).

        Covers loans the sweep has marked overdue plus active loans already
        past their due date that no sweep has reached yet. Oldest due date
        first.
        """
        started = datetime.now(timezone.utc)
        as_of = as_of or self.loan_manager.today()

        loans = self.loan_manager.list_loans(LoanStatus.OVERDUE) + [
            loan for loan in self.loan_manager.list_loans(LoanStatus.ACTIVE)
            if loan.due_date < as_of
        ]
        loans.sort(key=lambda x: (x.due_date, x.loan_issued_date))

        data = []
        for loan in loans:
            row = self._loan_row(loan, as_of)
            row['collateral_description'] = loan.collateral_description or loan.item_description
            row['phone_number'] = loan.mobile_phone
            data.append(row)

        marked = [loan for loan in loans if loan.status == LoanStatus.OVERDUE]
        totals = {
            'count': len(loans),
            'marked_overdue_count': len(marked),
            'past_due_active_count': len(loans) - len(marked),
            'total_initial_loan_amount': sum_money(
                (loan.initial_loan_amount for loan in loans), self.currency).amount,
            'total_remaining_balance': sum_money(
                (loan.remaining_balance for loan in loans), self.currency).amount
        }

        return self._result("overdue_loans", started, as_of, as_of, data, totals)

    def revenue_report(self, start_date: date, end_date: date) -> ReportResult:
        """
        Payments taken in the range split into interest and principal.

        Each payment carries interest in the loan's proportion
        interest_amount / total_payable_amount. Portions are summed unrounded
        and rounded once per total; the principal portion is the remainder so
        interest + principal always equals revenue.
        """
        started = datetime.now(timezone.utc)
        window_start, window_end = self._window(start_date, end_date)

        payments = self.loan_manager.payments_between(window_start, window_end)
        loans = {loan.id: loan for loan in self.loan_manager.list_loans()}

        def empty() -> Dict[str, Any]:
            return {'revenue': Decimal('0'), 'interest': Decimal('0'), 'count': 0}

        overall = empty()
        by_status = {status.value: empty() for status in LoanStatus}
        by_loan: Dict[str, Dict[str, Any]] = {}

        for payment in payments:
            loan = loans.get(payment.loan_id)
            if loan is None:
                logger.warning(f"Revenue report skipped payment {payment.id}: loan {payment.loan_id} missing")
                continue

            amount = payment.amount.amount
            total_payable = loan.total_payable_amount.amount
            interest = amount * loan.interest_amount.amount / total_payable if total_payable > 0 else Decimal('0')

            for bucket in (overall, by_status[loan.status.value], by_loan.setdefault(loan.id, empty())):
                bucket['revenue'] += amount
                bucket['interest'] += interest
                bucket['count'] += 1

        def split(bucket: Dict[str, Any]) -> Dict[str, Any]:
            revenue = Money(bucket['revenue'], self.currency)
            interest = Money(bucket['interest'], self.currency)
            return {
                'payment_count': bucket['count'],
                'total_revenue': revenue.amount,
                'interest_revenue': interest.amount,
                'principal_received': (revenue - interest).amount
            }

        data = []
        for loan_id, bucket in by_loan.items():
            loan = loans[loan_id]
            row = {
                'loan_id': loan.id,
                'transaction_number': loan.transaction_number,
                'customer_name': f"{loan.first_name} {loan.last_name}",
                'status': loan.status.value
            }
            row.update(split(bucket))
            data.append(row)
        data.sort(key=lambda row: row['total_revenue'], reverse=True)

        totals = split(overall)
        totals['by_status'] = {status: split(bucket) for status, bucket in by_status.items()}
        totals['active_loan_count'] = len(self.loan_manager.list_loans(LoanStatus.ACTIVE))
        totals['overdue_loan_count'] = len(self.loan_manager.list_loans(LoanStatus.OVERDUE))

        return self._result("revenue", started, start_date, end_date, data, totals)

    def _shift_row(self, shift: Shift) -> Dict[str, Any]:
        """Stored figures for closed shifts, live figures for open ones"""
        if shift.is_open:
            totals = self.shift_manager.compute_totals(shift, self.loan_manager.now())
            payments = totals.total_payments_received
            loans = totals.total_loans_given
            expected = totals.expected_balance
            closing = None
            difference = None
            is_balanced = None
        else:
            payments = shift.total_payments_received
            loans = shift.total_loans_given
            expected = shift.expected_balance
            closing = shift.closing_cash.amount
            difference = shift.difference.amount
            is_balanced = shift.is_balanced

        return {
            'shift_id': shift.id,
            'username': shift.username,
            'start_time': shift.start_time,
            'end_time': shift.end_time,
            'opening_cash': shift.opening_cash.amount,
            'total_payments_received': payments.amount,
            'total_loans_given': loans.amount,
            'expected_balance': expected.amount,
            'closing_cash': closing,
            'difference': difference,
            'is_balanced': is_balanced,
            'is_open': shift.is_open
        }

    def shift_reconciliation_report(self, start_date: date, end_date: date) -> ReportResult:
        """One row per shift started in the range"""
        started = datetime.now(timezone.utc)
        window_start, window_end = self._window(start_date, end_date)

        shifts = [
            shift for shift in self.shift_manager.list_shifts()
            if window_start <= shift.start_time < window_end
        ]
        data = [self._shift_row(shift) for shift in shifts]

        closed = [row for row in data if not row['is_open']]
        totals = {
            'shift_count': len(data),
            'closed_count': len(closed),
            'balanced_count': sum(1 for row in closed if row['is_balanced']),
            'total_difference': sum((row['difference'] for row in closed), Decimal('0.00'))
        }
        return self._result("shift_reconciliation", started, start_date, end_date, data, totals)

    def daily_cash_balancing(self, start_date: date, end_date: date) -> ReportResult:
        """
        Per-day cash summary for the range.

        Each row counts payments taken and loans issued that day (loans at
        their initial principal) plus the reconciliation of shifts started
        that day. Totals carry the range-wide active and due loan summaries.
        """
        started = datetime.now(timezone.utc)
        window_start, window_end = self._window(start_date, end_date)

        payments = self.loan_manager.payments_between(window_start, window_end)
        loans = self.loan_manager.loans_issued_between(window_start, window_end)
        shift_rows = self.shift_reconciliation_report(start_date, end_date).data

        data = []
        day = start_date
        while day <= end_date:
            day_payments = [p for p in payments if p.timestamp.date() == day]
            day_loans = [loan for loan in loans if loan.loan_issued_date.date() == day]
            day_shifts = [row for row in shift_rows if row['start_time'].date() == day]
            closed = [row for row in day_shifts if not row['is_open']]

            data.append({
                'date': day,
                'payment_count': len(day_payments),
                'total_payments': sum_money((p.amount for p in day_payments), self.currency).amount,
                'loans_issued_count': len(day_loans),
                'total_loans_issued': sum_money(
                    (loan.initial_loan_amount for loan in day_loans), self.currency).amount,
                'shift_count': len(day_shifts),
                'balanced_shift_count': sum(1 for row in closed if row['is_balanced']),
                'expected_balance': sum((row['expected_balance'] for row in day_shifts), Decimal('0.00')),
                'total_difference': sum((row['difference'] for row in closed), Decimal('0.00'))
            })
            day += timedelta(days=1)

        active = self.active_loans_report(start_date, end_date).totals
        due = self.due_loans_report(start_date, end_date).totals
        totals = {
            'active_loans': active,
            'due_loans': due,
            'payments': {
                'count': len(payments),
                'total_amount': sum_money((p.amount for p in payments), self.currency).amount
            }
        }

        logger.debug(f"Daily cash balancing {start_date} to {end_date}: {len(data)} days")
        return self._result("daily_cash_balancing", started, start_date, end_date, data, totals)

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat(),
                'period_end': result.period_end.isoformat(),
                'data': _plain(result.data),
                'totals': _plain(result.totals),
                'metadata': _plain(result.metadata)
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()

                for row in result.data:
                    writer.writerow(_plain(row))

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")
