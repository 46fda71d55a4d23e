"""
Shift Reconciliation Module

Per-operator cash drawer shifts. At close, the cash the drawer should hold
is derived from the opening float, payments the operator took and loans the
operator issued during the shift, then compared with the declared count.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import uuid

from .currency import Money, Currency, sum_money, decimal_from_string
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    ConflictError, InvalidAmountError, InvalidStateError, NoActiveShiftError, NotFoundError
)
from .loans import LoanManager, Loan, Operator, Payment, utc_now
from .logging_config import log_action


logger = logging.getLogger(__name__)


@dataclass
class Shift(StorageRecord):
    """Cash drawer shift for one operator"""
    user_id: str
    username: str
    start_time: datetime
    opening_cash: Money
    end_time: Optional[datetime] = None
    closing_cash: Optional[Money] = None
    total_payments_received: Optional[Money] = None
    total_loans_given: Optional[Money] = None
    expected_balance: Optional[Money] = None
    difference: Optional[Money] = None
    is_balanced: Optional[bool] = None
    cash_added: Optional[Money] = None
    notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None


@dataclass
class ShiftTotals:
    """Reconciliation figures for a shift window"""
    opening_cash: Money
    total_payments_received: Money
    total_loans_given: Money
    expected_balance: Money
    payment_count: int = 0
    loan_count: int = 0
    payments: List[Payment] = field(default_factory=list)
    loans: List[Loan] = field(default_factory=list)

    def difference(self, declared_closing_cash: Money) -> Money:
        return declared_closing_cash - self.expected_balance


MONEY_FIELDS = (
    'opening_cash', 'closing_cash', 'total_payments_received', 'total_loans_given',
    'expected_balance', 'difference', 'cash_added'
)


class ShiftManager:
    """
    Opens, tops up and closes operator shifts
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.currency: Currency = loan_manager.currency
        self._clock = clock or utc_now

        self.shifts_table = "shifts"

    def _money(self, amount: Union[Decimal, int, str, Money]) -> Money:
        if isinstance(amount, Money):
            return amount
        return Money(decimal_from_string(amount), self.currency)

    def open_shift(self, operator: Operator, opening_cash: Union[Decimal, Money]) -> Shift:
        """
        Open a shift with the counted opening float.

        Raises:
            InvalidAmountError: If opening_cash is negative
            ConflictError: If the operator already has an open shift
        """
        opening = self._money(opening_cash)
        if opening.is_negative():
            raise InvalidAmountError(f"Opening cash must not be negative, got {opening.amount}")

        with self.storage.atomic():
            existing = self.get_open_shift(operator.user_id)
            if existing:
                raise ConflictError(
                    f"Operator {operator.username} already has open shift {existing.id}"
                )

            now = self._clock()
            shift = Shift(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=operator.user_id,
                username=operator.username,
                start_time=now,
                opening_cash=opening,
                cash_added=Money.zero(self.currency)
            )
            self._save_shift(shift)

            self.audit_trail.log_event(
                event_type=AuditEventType.SHIFT_OPENED,
                entity_type="shift",
                entity_id=shift.id,
                metadata={"opening_cash": opening.amount},
                user_id=operator.user_id,
                username=operator.username
            )

        log_action(
            logger, "info", f"Shift opened with {opening.to_string()}",
            user_id=operator.user_id, username=operator.username,
            action="open_shift", resource=f"shift:{shift.id}"
        )
        return shift

    def add_cash(
        self,
        operator: Operator,
        amount: Union[Decimal, Money],
        notes: Optional[str] = None
    ) -> Shift:
        """
        Top up the float of the operator's open shift.

        The amount is added to opening_cash so it flows into the expected
        balance at close.
        """
        added = self._money(amount)
        if not added.is_positive():
            raise InvalidAmountError(f"Added cash must be positive, got {added.amount}")

        with self.storage.atomic():
            shift = self.get_open_shift(operator.user_id)
            if not shift:
                raise NotFoundError("open shift for operator", operator.user_id)

            shift.opening_cash = shift.opening_cash + added
            shift.cash_added = (shift.cash_added or Money.zero(self.currency)) + added
            note = f"Added cash: {added.to_string()}"
            if notes:
                note = f"{note} - {notes}"
            shift.notes = f"{shift.notes}\n{note}" if shift.notes else note
            shift.updated_at = self._clock()
            self._save_shift(shift)

            self.audit_trail.log_event(
                event_type=AuditEventType.SHIFT_CASH_ADDED,
                entity_type="shift",
                entity_id=shift.id,
                metadata={"amount": added.amount, "opening_cash": shift.opening_cash.amount},
                user_id=operator.user_id,
                username=operator.username
            )

        return shift

    def compute_totals(self, shift: Shift, end: datetime) -> ShiftTotals:
        """
        Reconcile a shift over [start_time, end).

        Loans count at their initial principal, never the current one.
        """
        payments = self.loan_manager.payments_between(shift.start_time, end, user_id=shift.user_id)
        loans = self.loan_manager.loans_issued_between(shift.start_time, end, created_by=shift.user_id)

        total_payments = sum_money((p.amount for p in payments), self.currency)
        total_loans = sum_money((loan.initial_loan_amount for loan in loans), self.currency)

        return ShiftTotals(
            opening_cash=shift.opening_cash,
            total_payments_received=total_payments,
            total_loans_given=total_loans,
            expected_balance=shift.opening_cash + total_payments - total_loans,
            payment_count=len(payments),
            loan_count=len(loans),
            payments=payments,
            loans=loans
        )

    def close_shift(
        self,
        shift_id: str,
        declared_closing_cash: Union[Decimal, Money],
        notes: Optional[str] = None
    ) -> Shift:
        """
        Close a shift against the declared drawer count.

        Negative expected balances and differences are stored as-is.

        Raises:
            NotFoundError: If the shift does not exist
            InvalidStateError: If the shift is already closed
            InvalidAmountError: If the declared cash is negative
        """
        declared = self._money(declared_closing_cash)
        if declared.is_negative():
            raise InvalidAmountError(f"Closing cash must not be negative, got {declared.amount}")

        with self.storage.atomic():
            shift = self._require_shift(shift_id)
            if not shift.is_open:
                raise InvalidStateError(f"Shift {shift_id} is already closed", "closed")

            now = self._clock()
            totals = self.compute_totals(shift, now)
            difference = totals.difference(declared)

            shift.end_time = now
            shift.closing_cash = declared
            shift.total_payments_received = totals.total_payments_received
            shift.total_loans_given = totals.total_loans_given
            shift.expected_balance = totals.expected_balance
            shift.difference = difference
            shift.is_balanced = difference.amount == Decimal('0')
            if notes:
                shift.notes = f"{shift.notes}\n{notes}" if shift.notes else notes
            shift.updated_at = now
            self._save_shift(shift)

            self.audit_trail.log_event(
                event_type=AuditEventType.SHIFT_CLOSED,
                entity_type="shift",
                entity_id=shift.id,
                metadata={
                    "closing_cash": declared.amount,
                    "total_payments_received": totals.total_payments_received.amount,
                    "total_loans_given": totals.total_loans_given.amount,
                    "expected_balance": totals.expected_balance.amount,
                    "difference": difference.amount,
                    "is_balanced": shift.is_balanced
                },
                user_id=shift.user_id,
                username=shift.username
            )

        if shift.is_balanced:
            logger.info(f"Shift {shift.id} closed balanced at {declared.to_string()}")
        else:
            logger.warning(f"Shift {shift.id} closed out of balance by {difference.to_string()}")
        return shift

    def get_shift(self, shift_id: str) -> Optional[Shift]:
        data = self.storage.load(self.shifts_table, shift_id)
        if data:
            return self._shift_from_dict(data)
        return None

    def get_open_shift(self, user_id: str) -> Optional[Shift]:
        """The operator's open shift, if any"""
        rows = self.storage.find(self.shifts_table, {"user_id": user_id, "end_time": None})
        if rows:
            return self._shift_from_dict(rows[0])
        return None

    def require_open_shift(self, operator: Operator) -> Shift:
        """
        The operator's open shift.

        Loans and payments are only recorded while the operator has a shift
        open, so every cash movement lands in some till's window.

        Raises:
            NoActiveShiftError: If the operator has no open shift
        """
        shift = self.get_open_shift(operator.user_id)
        if not shift:
            logger.warning(f"Operator {operator.username} attempted loan activity without an open shift")
            raise NoActiveShiftError(operator.user_id)
        return shift

    def list_shifts(self) -> List[Shift]:
        shifts = [self._shift_from_dict(data) for data in self.storage.load_all(self.shifts_table)]
        shifts.sort(key=lambda x: x.start_time)
        return shifts

    def shift_history(self, user_id: str, limit: Optional[int] = None) -> List[Shift]:
        """Shifts for an operator, newest first"""
        rows = self.storage.find(self.shifts_table, {"user_id": user_id})
        shifts = [self._shift_from_dict(data) for data in rows]
        shifts.sort(key=lambda x: x.start_time, reverse=True)
        if limit:
            shifts = shifts[:limit]
        return shifts

    def current_totals(self, user_id: str) -> ShiftTotals:
        """Running totals for the operator's open shift, without closing it"""
        shift = self.get_open_shift(user_id)
        if not shift:
            raise NotFoundError("open shift for operator", user_id)
        return self.compute_totals(shift, self._clock())

    def shift_report(self, shift_id: str) -> Dict[str, Any]:
        """Payments and loans that fall inside a shift's window"""
        shift = self._require_shift(shift_id)
        end = shift.end_time or self._clock()
        totals = self.compute_totals(shift, end)
        return {
            "shift": shift,
            "totals": totals,
            "payments": totals.payments,
            "loans": totals.loans
        }

    def _require_shift(self, shift_id: str) -> Shift:
        shift = self.get_shift(shift_id)
        if not shift:
            raise NotFoundError("shift", shift_id)
        return shift

    def _save_shift(self, shift: Shift) -> None:
        self.storage.save(self.shifts_table, shift.id, self._shift_to_dict(shift))

    def _shift_to_dict(self, shift: Shift) -> Dict:
        result = shift.to_dict()
        result['currency'] = shift.opening_cash.currency.code
        result['start_time'] = shift.start_time.isoformat()
        result['end_time'] = shift.end_time.isoformat() if shift.end_time else None
        for name in MONEY_FIELDS:
            value = getattr(shift, name)
            result[name] = str(value.amount) if value is not None else None
        return result

    def _shift_from_dict(self, data: Dict) -> Shift:
        currency = Currency[data['currency']]

        def get_money(name: str) -> Optional[Money]:
            if data.get(name) is not None:
                return Money(Decimal(data[name]), currency)
            return None

        return Shift(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            username=data['username'],
            start_time=datetime.fromisoformat(data['start_time']),
            opening_cash=get_money('opening_cash'),
            end_time=datetime.fromisoformat(data['end_time']) if data.get('end_time') else None,
            closing_cash=get_money('closing_cash'),
            total_payments_received=get_money('total_payments_received'),
            total_loans_given=get_money('total_loans_given'),
            expected_balance=get_money('expected_balance'),
            difference=get_money('difference'),
            is_balanced=data.get('is_balanced'),
            cash_added=get_money('cash_added'),
            notes=data.get('notes')
        )
