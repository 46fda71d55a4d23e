"""
Loan Module

Pawn loan lifecycle: issuance, payments, principal top-ups, due-date
extension, and the terminal redeem/forfeit transitions.

The principal recorded at issuance (initial_loan_amount) is frozen for the
life of the loan. loan_amount tracks the current principal and may grow with
add_principal, but cash-at-risk and till reconciliation always use the
initial amount.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date, time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
from enum import Enum
import logging
import secrets
import uuid

from .currency import Money, Currency, sum_money, decimal_from_string
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    ConflictError,
    DuplicateTransactionError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .logging_config import log_action
from .validation import normalize_fields, validate_loan_fields


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_datetime(value: Union[date, datetime, str]) -> datetime:
    """Coerce a date, datetime or ISO string to an aware UTC datetime"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_date(value: Union[date, datetime, str]) -> date:
    if isinstance(value, str):
        return datetime.fromisoformat(value).date()
    if isinstance(value, datetime):
        return value.date()
    return value


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Issued, collateral held, inside its term
    OVERDUE = "overdue"        # Due date passed without interest covered
    REDEEMED = "redeemed"      # Customer settled and reclaimed collateral
    FORFEITED = "forfeited"    # Collateral retained by the shop


TERMINAL_STATUSES = frozenset({LoanStatus.REDEEMED, LoanStatus.FORFEITED})
OPEN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


@dataclass(frozen=True)
class Operator:
    """Snapshot of the staff member performing an action"""
    user_id: str
    username: str

    def __post_init__(self):
        if not self.user_id or not str(self.user_id).strip():
            raise ValidationError("Operator user_id is required")


@dataclass
class LoanRequest:
    """Canonical input for issuing a loan"""
    first_name: str
    last_name: str
    loan_amount: Decimal
    interest_rate: Decimal          # percent, e.g. 15 for 15%
    loan_term: int                  # days
    email: Optional[str] = None
    mobile_phone: Optional[str] = None
    item_description: Optional[str] = None
    collateral_description: Optional[str] = None
    customer_note: Optional[str] = None
    loan_issued_date: Optional[datetime] = None
    due_date: Optional[date] = None
    transaction_number: Optional[str] = None

    @classmethod
    def from_fields(cls, body: Dict) -> 'LoanRequest':
        """
        Build a request from a raw field mapping (camelCase or snake_case).

        Precomputed interest/total amounts are not part of the request; pass
        them to create_loan as PrecomputedAmounts.

        Raises:
            ValidationError: If any field fails validation
        """
        fields = normalize_fields(body)
        validate_loan_fields(fields)

        issued = fields.get('loan_issued_date')
        due = fields.get('due_date')
        return cls(
            first_name=fields['first_name'].strip(),
            last_name=fields['last_name'].strip(),
            loan_amount=decimal_from_string(fields['loan_amount']),
            interest_rate=decimal_from_string(fields['interest_rate']),
            loan_term=int(fields['loan_term']),
            email=fields.get('email'),
            mobile_phone=fields.get('mobile_phone'),
            item_description=fields.get('item_description'),
            collateral_description=fields.get('collateral_description'),
            customer_note=fields.get('customer_note'),
            loan_issued_date=to_utc_datetime(issued) if issued else None,
            due_date=to_date(due) if due else None,
            transaction_number=str(fields['transaction_number']) if fields.get('transaction_number') else None
        )


@dataclass(frozen=True)
class PrecomputedAmounts:
    """
    Caller-computed interest and total payable, accepted verbatim.

    Either value may be omitted, in which case it is computed as usual.
    """
    interest_amount: Optional[Decimal] = None
    total_payable_amount: Optional[Decimal] = None


@dataclass
class Loan(StorageRecord):
    """Pawn loan with customer snapshot and running balances"""
    transaction_number: str
    first_name: str
    last_name: str
    initial_loan_amount: Money          # principal at issuance, never changes
    loan_amount: Money                  # current principal
    interest_rate: Decimal
    interest_amount: Money
    total_payable_amount: Money
    remaining_balance: Money
    loan_term: int
    loan_issued_date: datetime
    due_date: date
    created_by: str
    created_by_username: str
    status: LoanStatus = LoanStatus.ACTIVE
    email: Optional[str] = None
    mobile_phone: Optional[str] = None
    item_description: Optional[str] = None
    collateral_description: Optional[str] = None
    customer_note: Optional[str] = None
    redeemed_date: Optional[datetime] = None
    forfeited_date: Optional[datetime] = None
    extended_at: Optional[datetime] = None
    reactivated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def currency(self) -> Currency:
        return self.loan_amount.currency

    def is_due(self, as_of: date) -> bool:
        """Check if the due date has been reached"""
        return self.due_date <= as_of

    def days_overdue(self, as_of: date) -> int:
        return max((as_of - self.due_date).days, 0)


@dataclass
class Payment(StorageRecord):
    """Append-only payment against a loan"""
    loan_id: str
    amount: Money
    method: str
    timestamp: datetime
    user_id: str
    username: str


@dataclass
class RedemptionEvent(StorageRecord):
    """Terminal redemption of a loan"""
    loan_id: str
    amount: Money
    timestamp: datetime
    user_id: str
    username: str
    notes: Optional[str] = None


@dataclass
class ForfeitureEvent(StorageRecord):
    """Terminal forfeiture of a loan"""
    loan_id: str
    timestamp: datetime
    user_id: str
    username: str
    notes: Optional[str] = None


MONEY_FIELDS = (
    'initial_loan_amount', 'loan_amount', 'interest_amount',
    'total_payable_amount', 'remaining_balance'
)
DATETIME_FIELDS = ('loan_issued_date', 'redeemed_date', 'forfeited_date', 'extended_at', 'reactivated_at')


class LoanManager:
    """
    Manages pawn loans from issuance to redemption or forfeiture
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD,
        extension_days: int = 30,
        transaction_number_attempts: int = 5,
        transaction_number_digits: int = 9,
        clock: Optional[Callable[[], datetime]] = None,
        number_generator: Optional[Callable[[], str]] = None
    ):
        if extension_days <= 0:
            raise ValidationError(f"extension_days must be a positive number of days, got {extension_days}")

        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.extension_days = extension_days
        self.transaction_number_attempts = transaction_number_attempts
        self.transaction_number_digits = transaction_number_digits
        self._clock = clock or utc_now
        self._number_generator = number_generator or self._random_transaction_number

        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.redemptions_table = "loan_redemptions"
        self.forfeitures_table = "loan_forfeitures"
        self.transaction_numbers_table = "loan_transaction_numbers"

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return self._clock().date()

    def _money(self, amount: Union[Decimal, int, str]) -> Money:
        return Money(decimal_from_string(amount), self.currency)

    def _interest_on(self, principal: Money, rate: Decimal) -> Money:
        # Single rounding step on the full product
        return Money(principal.amount * rate / Decimal('100'), principal.currency)

    def _random_transaction_number(self) -> str:
        digits = self.transaction_number_digits
        return f"{secrets.randbelow(10 ** digits):0{digits}d}"

    def _allocate_transaction_number(self, requested: Optional[str]) -> str:
        if requested:
            if self.storage.exists(self.transaction_numbers_table, requested):
                raise ConflictError(f"Transaction number {requested} already exists")
            return requested

        for attempt in range(1, self.transaction_number_attempts + 1):
            candidate = self._number_generator()
            if not self.storage.exists(self.transaction_numbers_table, candidate):
                return candidate
            logger.warning(f"Transaction number collision on attempt {attempt}: {candidate}")

        raise DuplicateTransactionError(self.transaction_number_attempts)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def create_loan(
        self,
        request: LoanRequest,
        operator: Operator,
        trusted_override: Optional[PrecomputedAmounts] = None
    ) -> Loan:
        """
        Issue a new pawn loan

        Args:
            request: Validated loan request
            operator: Staff member issuing the loan
            trusted_override: Caller-computed interest/total, stored without
                recomputation or cross-checking

        Returns:
            Created Loan in ACTIVE status

        Raises:
            ValidationError: If amounts or term are out of range
            ConflictError: If a supplied transaction number is taken
            DuplicateTransactionError: If generated numbers keep colliding
        """
        if request.loan_amount <= Decimal('0'):
            raise ValidationError("loan_amount must be a positive number")
        if request.interest_rate <= Decimal('0'):
            raise ValidationError("interest_rate must be a positive number")
        if request.loan_term < 0:
            raise ValidationError("loan_term must be a non-negative integer")

        principal = self._money(request.loan_amount)

        override = trusted_override or PrecomputedAmounts()
        if override.interest_amount is not None:
            interest = self._money(override.interest_amount)
        else:
            interest = self._interest_on(principal, request.interest_rate)
        if override.total_payable_amount is not None:
            total_payable = self._money(override.total_payable_amount)
        else:
            total_payable = principal + interest
        if interest.is_negative() or total_payable.is_negative():
            raise ValidationError("Precomputed amounts must be non-negative")

        now = self.now()
        issued = request.loan_issued_date or now
        due = request.due_date or (issued.date() + timedelta(days=request.loan_term))

        with self.storage.atomic():
            transaction_number = self._allocate_transaction_number(request.transaction_number)

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                transaction_number=transaction_number,
                first_name=request.first_name,
                last_name=request.last_name,
                initial_loan_amount=principal,
                loan_amount=principal,
                interest_rate=request.interest_rate,
                interest_amount=interest,
                total_payable_amount=total_payable,
                remaining_balance=total_payable,
                loan_term=request.loan_term,
                loan_issued_date=issued,
                due_date=due,
                created_by=operator.user_id,
                created_by_username=operator.username,
                status=LoanStatus.ACTIVE,
                email=request.email,
                mobile_phone=request.mobile_phone,
                item_description=request.item_description,
                collateral_description=request.collateral_description,
                customer_note=request.customer_note
            )

            self._save_loan(loan)
            self.storage.save(self.transaction_numbers_table, transaction_number, {
                "transaction_number": transaction_number,
                "loan_id": loan.id
            })

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "transaction_number": transaction_number,
                    "loan_amount": principal.amount,
                    "interest_rate": request.interest_rate,
                    "interest_amount": interest.amount,
                    "total_payable_amount": total_payable.amount,
                    "due_date": due,
                    "trusted_override": trusted_override is not None
                },
                user_id=operator.user_id,
                username=operator.username
            )

        log_action(
            logger, "info",
            f"Loan {transaction_number} issued: {principal.to_string()} due {due.isoformat()}",
            user_id=operator.user_id, username=operator.username,
            action="create_loan", resource=f"loan:{loan.id}"
        )
        return loan

    # ------------------------------------------------------------------
    # Payments and balance adjustments
    # ------------------------------------------------------------------

    def apply_payment(
        self,
        loan_id: str,
        amount: Union[Decimal, Money],
        operator: Operator,
        method: str = "cash"
    ) -> Payment:
        """
        Record a payment and reduce the remaining balance (floored at zero).

        Never changes the loan status.

        Raises:
            InvalidAmountError: If amount <= 0
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is redeemed or forfeited
        """
        payment_amount = amount if isinstance(amount, Money) else self._money(amount)
        if not payment_amount.is_positive():
            raise InvalidAmountError(f"Payment amount must be positive, got {payment_amount.amount}")

        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.is_terminal:
                raise InvalidStateError(
                    f"Cannot accept payment on {loan.status.value} loan {loan_id}",
                    loan.status.value
                )

            now = self.now()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=payment_amount,
                method=method or "cash",
                timestamp=now,
                user_id=operator.user_id,
                username=operator.username
            )
            self._save_payment(payment)

            loan.remaining_balance = (loan.remaining_balance - payment_amount).floor_zero()
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_id": payment.id,
                    "amount": payment_amount.amount,
                    "method": payment.method,
                    "remaining_balance": loan.remaining_balance.amount
                },
                user_id=operator.user_id,
                username=operator.username
            )

        return payment

    def add_principal(
        self,
        loan_id: str,
        delta: Union[Decimal, Money],
        operator: Operator
    ) -> Loan:
        """
        Lend more money against the same collateral.

        Increases loan_amount atomically and recomputes interest, total payable
        and remaining balance from the new principal. initial_loan_amount is
        left untouched.

        Raises:
            InvalidAmountError: If delta <= 0
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is redeemed or forfeited
        """
        delta_amount = delta if isinstance(delta, Money) else self._money(delta)
        if not delta_amount.is_positive():
            raise InvalidAmountError(f"Principal increase must be positive, got {delta_amount.amount}")

        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.is_terminal:
                raise InvalidStateError(
                    f"Cannot add principal to {loan.status.value} loan {loan_id}",
                    loan.status.value
                )

            previous_amount = loan.loan_amount
            total_paid = self.get_total_paid(loan.id)

            loan.loan_amount = loan.loan_amount + delta_amount
            loan.interest_amount = self._interest_on(loan.loan_amount, loan.interest_rate)
            loan.total_payable_amount = loan.loan_amount + loan.interest_amount
            loan.remaining_balance = (loan.total_payable_amount - total_paid).floor_zero()
            loan.updated_at = self.now()
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PRINCIPAL_ADDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "delta": delta_amount.amount,
                    "previous_loan_amount": previous_amount.amount,
                    "loan_amount": loan.loan_amount.amount,
                    "initial_loan_amount": loan.initial_loan_amount.amount,
                    "remaining_balance": loan.remaining_balance.amount
                },
                user_id=operator.user_id,
                username=operator.username
            )

        return loan

    def apply_discount(
        self,
        loan_id: str,
        amount: Union[Decimal, Money],
        operator: Operator
    ) -> Loan:
        """Reduce the remaining balance of an active loan, floored at zero"""
        discount = amount if isinstance(amount, Money) else self._money(amount)
        if not discount.is_positive():
            raise InvalidAmountError(f"Discount must be positive, got {discount.amount}")

        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError(
                    f"Discounts apply to active loans only, loan is {loan.status.value}",
                    loan.status.value
                )

            previous_balance = loan.remaining_balance
            loan.remaining_balance = (loan.remaining_balance - discount).floor_zero()
            loan.updated_at = self.now()
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.DISCOUNT_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "discount": discount.amount,
                    "previous_balance": previous_balance.amount,
                    "remaining_balance": loan.remaining_balance.amount
                },
                user_id=operator.user_id,
                username=operator.username
            )

        return loan

    # ------------------------------------------------------------------
    # Due date handling
    # ------------------------------------------------------------------

    def _roll_due_date(self, due_date: date, as_of: date) -> date:
        """Step due_date forward by whole extension periods until it is after as_of"""
        while due_date <= as_of:
            due_date = due_date + timedelta(days=self.extension_days)
        return due_date

    def interest_covered(self, loan: Loan) -> bool:
        """True when cumulative payments cover the loan's interest"""
        return self.get_total_paid(loan.id) >= loan.interest_amount

    def extend_due_date(
        self,
        loan_id: str,
        operator: Operator,
        days: Optional[int] = None
    ) -> Loan:
        """
        Push an active loan's due date forward from its current due date.

        Allowed once the interest has been paid.

        Raises:
            InvalidAmountError: If days <= 0
            InvalidStateError: If the loan is not active or interest is unpaid
        """
        days = self.extension_days if days is None else days
        if days <= 0:
            raise InvalidAmountError(f"Extension must be a positive number of days, got {days}")

        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError(
                    f"Only active loans can be extended, loan is {loan.status.value}",
                    loan.status.value
                )
            if not self.interest_covered(loan):
                raise InvalidStateError(
                    f"Interest of {loan.interest_amount.to_string()} must be paid before extending",
                    loan.status.value
                )

            previous_due = loan.due_date
            now = self.now()
            loan.due_date = loan.due_date + timedelta(days=days)
            loan.extended_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.DUE_DATE_EXTENDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "previous_due_date": previous_due,
                    "due_date": loan.due_date,
                    "days": days,
                    "source": "manual"
                },
                user_id=operator.user_id,
                username=operator.username
            )

        return loan

    def advance_due_loan(self, loan_id: str, as_of: date) -> Optional[str]:
        """
        Apply the due-date rule to one loan.

        An active loan whose due date has been reached is extended from its
        current due date when its payments cover the interest, and marked
        overdue otherwise. The extension is applied in whole extension_days
        periods until the due date lies after as_of, so a re-run for the same
        day finds nothing to do. Loans that are no longer eligible are left
        alone.

        Returns:
            "extended", "overdue", or None when nothing changed
        """
        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE or not loan.is_due(as_of):
                return None

            total_paid = self.get_total_paid(loan.id)
            now = self.now()
            previous_due = loan.due_date

            if total_paid >= loan.interest_amount:
                loan.due_date = self._roll_due_date(loan.due_date, as_of)
                loan.extended_at = now
                outcome = "extended"
                event_type = AuditEventType.DUE_DATE_EXTENDED
            else:
                loan.status = LoanStatus.OVERDUE
                outcome = "overdue"
                event_type = AuditEventType.LOAN_MARKED_OVERDUE

            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "previous_due_date": previous_due,
                    "due_date": loan.due_date,
                    "total_paid": total_paid.amount,
                    "interest_amount": loan.interest_amount.amount,
                    "source": "scheduler"
                }
            )

        return outcome

    def reactivate(self, loan_id: str, operator: Operator) -> Loan:
        """
        Return an overdue loan to active once its interest is paid.

        A due date that is not in the future is pushed forward by whole
        extension_days periods until it is.

        Raises:
            InvalidStateError: If the loan is not overdue or interest is unpaid
        """
        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.OVERDUE:
                raise InvalidStateError(
                    f"Only overdue loans can be reactivated, loan is {loan.status.value}",
                    loan.status.value
                )
            if not self.interest_covered(loan):
                raise InvalidStateError(
                    f"Interest of {loan.interest_amount.to_string()} must be paid before reactivating",
                    loan.status.value
                )

            now = self.now()
            previous_due = loan.due_date
            if loan.due_date <= now.date():
                loan.due_date = self._roll_due_date(loan.due_date, now.date())
                loan.extended_at = now
            loan.status = LoanStatus.ACTIVE
            loan.reactivated_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REACTIVATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "previous_status": LoanStatus.OVERDUE.value,
                    "previous_due_date": previous_due,
                    "due_date": loan.due_date
                },
                user_id=operator.user_id,
                username=operator.username
            )

        return loan

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def redeem(
        self,
        loan_id: str,
        operator: Operator,
        amount: Optional[Union[Decimal, Money]] = None,
        notes: Optional[str] = None
    ) -> RedemptionEvent:
        """
        Close a loan by redemption.

        ``amount`` is the cash taken to settle the loan and defaults to the
        remaining balance. It must cover the remaining balance. A positive
        amount is also recorded as a payment so the till sees it.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is already redeemed or forfeited
            InvalidAmountError: If amount is negative or short of the balance
        """
        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            self._require_open(loan, "redeem")

            if amount is None:
                settlement = loan.remaining_balance
            else:
                settlement = amount if isinstance(amount, Money) else self._money(amount)
            if settlement.is_negative():
                raise InvalidAmountError(f"Redemption amount must not be negative, got {settlement.amount}")
            if settlement < loan.remaining_balance:
                raise InvalidAmountError(
                    f"Loan is not fully paid: {loan.remaining_balance.to_string()} outstanding, "
                    f"{settlement.to_string()} offered"
                )

            if settlement.is_positive():
                self.apply_payment(loan.id, settlement, operator, method="redemption")
                loan = self._require_loan(loan_id)

            now = self.now()
            event = RedemptionEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=settlement,
                timestamp=now,
                user_id=operator.user_id,
                username=operator.username,
                notes=notes
            )
            self.storage.save(self.redemptions_table, loan.id, self._event_to_dict(event))

            loan.status = LoanStatus.REDEEMED
            loan.redeemed_date = now
            loan.remaining_balance = Money.zero(loan.currency)
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REDEEMED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"amount": settlement.amount, "notes": notes},
                user_id=operator.user_id,
                username=operator.username
            )

        log_action(
            logger, "info", f"Loan {loan.transaction_number} redeemed",
            user_id=operator.user_id, username=operator.username,
            action="redeem_loan", resource=f"loan:{loan.id}",
            extra={"amount": str(settlement.amount)}
        )
        return event

    def forfeit(
        self,
        loan_id: str,
        operator: Operator,
        notes: Optional[str] = None
    ) -> ForfeitureEvent:
        """
        Close a loan by forfeiture; the collateral stays with the shop.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is already redeemed or forfeited
        """
        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            self._require_open(loan, "forfeit")

            now = self.now()
            event = ForfeitureEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                timestamp=now,
                user_id=operator.user_id,
                username=operator.username,
                notes=notes
            )
            self.storage.save(self.forfeitures_table, loan.id, self._event_to_dict(event))

            loan.status = LoanStatus.FORFEITED
            loan.forfeited_date = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_FORFEITED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"remaining_balance": loan.remaining_balance.amount, "notes": notes},
                user_id=operator.user_id,
                username=operator.username
            )

        log_action(
            logger, "info", f"Loan {loan.transaction_number} forfeited",
            user_id=operator.user_id, username=operator.username,
            action="forfeit_loan", resource=f"loan:{loan.id}"
        )
        return event

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_data = self.storage.load(self.loans_table, loan_id)
        if loan_data:
            return self._loan_from_dict(loan_data)
        return None

    def get_loan_by_transaction_number(self, transaction_number: str) -> Optional[Loan]:
        index = self.storage.load(self.transaction_numbers_table, transaction_number)
        if index:
            return self.get_loan(index['loan_id'])
        return None

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """List loans, optionally restricted to one status, oldest first"""
        if status:
            rows = self.storage.find(self.loans_table, {"status": status.value})
        else:
            rows = self.storage.load_all(self.loans_table)
        loans = [self._loan_from_dict(data) for data in rows]
        loans.sort(key=lambda x: x.loan_issued_date)
        return loans

    def find_due_loans(self, as_of: date) -> List[Loan]:
        """Active loans whose due date is on or before as_of"""
        return [loan for loan in self.list_loans(LoanStatus.ACTIVE) if loan.is_due(as_of)]

    def loans_issued_between(
        self,
        start: datetime,
        end: datetime,
        created_by: Optional[str] = None
    ) -> List[Loan]:
        """Loans issued in the half-open window [start, end)"""
        loans = [
            loan for loan in self.list_loans()
            if start <= loan.loan_issued_date < end
        ]
        if created_by is not None:
            loans = [loan for loan in loans if loan.created_by == created_by]
        return loans

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payments for a loan, oldest first"""
        rows = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [self._payment_from_dict(data) for data in rows]
        payments.sort(key=lambda x: (x.timestamp, x.created_at))
        return payments

    def payments_between(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None
    ) -> List[Payment]:
        """Payments taken in the half-open window [start, end)"""
        payments = [
            self._payment_from_dict(data)
            for data in self.storage.load_all(self.payments_table)
        ]
        payments = [p for p in payments if start <= p.timestamp < end]
        if user_id is not None:
            payments = [p for p in payments if p.user_id == user_id]
        payments.sort(key=lambda x: (x.timestamp, x.created_at))
        return payments

    def get_total_paid(self, loan_id: str) -> Money:
        return sum_money((p.amount for p in self.get_loan_payments(loan_id)), self.currency)

    def get_redemption(self, loan_id: str) -> Optional[RedemptionEvent]:
        data = self.storage.load(self.redemptions_table, loan_id)
        if data:
            return RedemptionEvent(
                id=data['id'],
                created_at=datetime.fromisoformat(data['created_at']),
                updated_at=datetime.fromisoformat(data['updated_at']),
                loan_id=data['loan_id'],
                amount=Money(Decimal(data['amount']), Currency[data['currency']]),
                timestamp=datetime.fromisoformat(data['timestamp']),
                user_id=data['user_id'],
                username=data['username'],
                notes=data.get('notes')
            )
        return None

    def get_forfeiture(self, loan_id: str) -> Optional[ForfeitureEvent]:
        data = self.storage.load(self.forfeitures_table, loan_id)
        if data:
            return ForfeitureEvent(
                id=data['id'],
                created_at=datetime.fromisoformat(data['created_at']),
                updated_at=datetime.fromisoformat(data['updated_at']),
                loan_id=data['loan_id'],
                timestamp=datetime.fromisoformat(data['timestamp']),
                user_id=data['user_id'],
                username=data['username'],
                notes=data.get('notes')
            )
        return None

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def _require_open(self, loan: Loan, action: str) -> None:
        if loan.status not in OPEN_STATUSES:
            raise InvalidStateError(
                f"Cannot {action} loan {loan.id}: already {loan.status.value}",
                loan.status.value
            )

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = loan.to_dict()
        result['status'] = loan.status.value
        result['currency'] = loan.currency.code
        result['interest_rate'] = str(loan.interest_rate)

        for field in MONEY_FIELDS:
            result[field] = str(getattr(loan, field).amount)

        for field in DATETIME_FIELDS:
            value = getattr(loan, field)
            result[field] = value.isoformat() if value else None
        result['due_date'] = loan.due_date.isoformat()

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_number=data['transaction_number'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            initial_loan_amount=get_money('initial_loan_amount'),
            loan_amount=get_money('loan_amount'),
            interest_rate=Decimal(data['interest_rate']),
            interest_amount=get_money('interest_amount'),
            total_payable_amount=get_money('total_payable_amount'),
            remaining_balance=get_money('remaining_balance'),
            loan_term=data['loan_term'],
            loan_issued_date=get_datetime('loan_issued_date'),
            due_date=date.fromisoformat(data['due_date']),
            created_by=data['created_by'],
            created_by_username=data['created_by_username'],
            status=LoanStatus(data['status']),
            email=data.get('email'),
            mobile_phone=data.get('mobile_phone'),
            item_description=data.get('item_description'),
            collateral_description=data.get('collateral_description'),
            customer_note=data.get('customer_note'),
            redeemed_date=get_datetime('redeemed_date'),
            forfeited_date=get_datetime('forfeited_date'),
            extended_at=get_datetime('extended_at'),
            reactivated_at=get_datetime('reactivated_at')
        )

    def _payment_to_dict(self, payment: Payment) -> Dict:
        result = payment.to_dict()
        result['amount'] = str(payment.amount.amount)
        result['currency'] = payment.amount.currency.code
        result['timestamp'] = payment.timestamp.isoformat()
        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            method=data['method'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            user_id=data['user_id'],
            username=data['username']
        )

    def _event_to_dict(self, event: Union[RedemptionEvent, ForfeitureEvent]) -> Dict:
        result = event.to_dict()
        result['timestamp'] = event.timestamp.isoformat()
        if isinstance(event, RedemptionEvent):
            result['amount'] = str(event.amount.amount)
            result['currency'] = event.amount.currency.code
        return result
