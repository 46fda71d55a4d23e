"""
Request validation and field normalisation.

Loan requests arrive with camelCase or snake_case keys; ``normalize_fields``
maps them onto the snake_case record field names before validation.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

from .currency import decimal_from_string
from .exceptions import ValidationError


EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_PATTERN = re.compile(r'^[\d\s\-\+\(\)]{7,20}$')

FIELD_ALIASES = {
    'firstName': 'first_name',
    'lastName': 'last_name',
    'mobilePhone': 'mobile_phone',
    'homePhone': 'home_phone',
    'loanAmount': 'loan_amount',
    'interestRate': 'interest_rate',
    'interestAmount': 'interest_amount',
    'totalPayableAmount': 'total_payable_amount',
    'loanIssuedDate': 'loan_issued_date',
    'loanTerm': 'loan_term',
    'dueDate': 'due_date',
    'transactionNumber': 'transaction_number',
    'itemDescription': 'item_description',
    'collateralDescription': 'collateral_description',
    'customerNote': 'customer_note',
}


def camel_to_snake(name: str) -> str:
    return re.sub(r'[A-Z]', lambda m: f"_{m.group(0).lower()}", name)


def normalize_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    """Map request keys to snake_case field names, dropping None values"""
    mapped = {}
    for key, value in body.items():
        if value is None:
            continue
        snake_key = FIELD_ALIASES.get(key) or (key if '_' in key else camel_to_snake(key))
        mapped[snake_key] = value
    return mapped


def is_valid_email(email: str) -> bool:
    if not email:
        return True
    return bool(EMAIL_PATTERN.match(email))


def is_valid_phone(phone: str) -> bool:
    if not phone:
        return True
    return bool(PHONE_PATTERN.match(phone))


def _is_iso_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def _name_errors(fields: Dict[str, Any]) -> List[str]:
    errors = []
    for name in ('first_name', 'last_name'):
        value = fields.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{name} is required and must be a non-empty string")
    return errors


def _amount_errors(fields: Dict[str, Any]) -> List[str]:
    errors = []
    
    try:
        loan_amount = decimal_from_string(fields.get('loan_amount'))
        if loan_amount <= Decimal('0'):
            errors.append("loan_amount must be a positive number")
    except ValidationError:
        errors.append("loan_amount must be a positive number")
    
    try:
        interest_rate = decimal_from_string(fields.get('interest_rate'))
        if interest_rate <= Decimal('0'):
            errors.append("interest_rate must be a positive number")
    except ValidationError:
        errors.append("interest_rate must be a positive number")
    
    loan_term = fields.get('loan_term')
    if isinstance(loan_term, str) and loan_term.strip().isdigit():
        loan_term = int(loan_term)
    if isinstance(loan_term, bool) or not isinstance(loan_term, int) or loan_term < 0:
        errors.append("loan_term must be a non-negative integer")
    
    for name in ('interest_amount', 'total_payable_amount'):
        if name in fields:
            try:
                if decimal_from_string(fields[name]) < Decimal('0'):
                    errors.append(f"{name} must be a non-negative number")
            except ValidationError:
                errors.append(f"{name} must be a non-negative number")
    
    return errors


def _format_errors(fields: Dict[str, Any]) -> List[str]:
    errors = []
    if fields.get('email') and not is_valid_email(fields['email']):
        errors.append("email must be a valid email address")
    for name in ('mobile_phone', 'home_phone'):
        if fields.get(name) and not is_valid_phone(fields[name]):
            errors.append(f"{name} must be a valid phone format (7-20 characters)")
    for name in ('loan_issued_date', 'due_date'):
        if fields.get(name) and not _is_iso_date(fields[name]):
            errors.append(f"{name} must be a valid ISO date (YYYY-MM-DD)")
    return errors


def validate_loan_fields(fields: Dict[str, Any]) -> None:
    """
    Validate normalised loan request fields.
    
    Raises:
        ValidationError: Listing every failed rule
    """
    errors = _name_errors(fields) + _amount_errors(fields) + _format_errors(fields)
    if errors:
        raise ValidationError("; ".join(errors), errors)
