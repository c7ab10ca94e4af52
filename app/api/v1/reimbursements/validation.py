"""
Pure validation rules for reimbursement requests. No I/O, no clock: callers pass `now`.
Each rule returns a ValidationResult; the workflow engine turns failures into errors.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Tuple

from app.core.enums import RequestOperation, RequestStatus


TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
NOTE_MAX_LENGTH = 500


class ValidationResult(NamedTuple):
    ok: bool
    reason: Optional[str] = None


VALID = ValidationResult(True)


# Status each operation may start from. Cancel is deliberately absent for APPROVED.
ALLOWED_TRANSITIONS: Dict[RequestOperation, FrozenSet[RequestStatus]] = {
    RequestOperation.UPDATE: frozenset({RequestStatus.DRAFT}),
    RequestOperation.DELETE: frozenset({RequestStatus.DRAFT}),
    RequestOperation.SUBMIT: frozenset({RequestStatus.DRAFT}),
    RequestOperation.APPROVE: frozenset({RequestStatus.PENDING_APPROVAL}),
    RequestOperation.REJECT: frozenset({RequestStatus.PENDING_APPROVAL}),
    RequestOperation.PAY: frozenset({RequestStatus.APPROVED}),
    RequestOperation.CANCEL: frozenset({RequestStatus.DRAFT, RequestStatus.PENDING_APPROVAL}),
}

TARGET_STATUS: Dict[RequestOperation, RequestStatus] = {
    RequestOperation.SUBMIT: RequestStatus.PENDING_APPROVAL,
    RequestOperation.APPROVE: RequestStatus.APPROVED,
    RequestOperation.REJECT: RequestStatus.REJECTED,
    RequestOperation.PAY: RequestStatus.PAID,
    RequestOperation.CANCEL: RequestStatus.CANCELLED,
}


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite hands them back without tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expense_date_valid(expense_date: datetime, now: datetime, max_age_days: int = 365) -> ValidationResult:
    """Valid when now - max_age_days <= expense_date <= now (both ends inclusive)."""
    expense_date = as_utc(expense_date)
    now = as_utc(now)
    if expense_date > now:
        return ValidationResult(False, "Expense date cannot be in the future")
    if expense_date < now - timedelta(days=max_age_days):
        return ValidationResult(False, f"Expense date cannot be more than {max_age_days} days old")
    return VALID


def requested_amount_valid(amount: Optional[Decimal]) -> ValidationResult:
    if amount is None or amount <= 0:
        return ValidationResult(False, "Requested amount must be greater than zero")
    return VALID


def approved_amount_valid(approved: Optional[Decimal], requested: Decimal) -> ValidationResult:
    if approved is None:
        return ValidationResult(False, "Approved amount is required")
    if approved < 0:
        return ValidationResult(False, "Approved amount cannot be negative")
    if approved > requested:
        return ValidationResult(False, "Approved amount cannot exceed the requested amount")
    return VALID


def transition_allowed(current_status: RequestStatus, operation: RequestOperation) -> ValidationResult:
    current_status = RequestStatus(current_status)
    allowed = ALLOWED_TRANSITIONS.get(operation, frozenset())
    if current_status in allowed:
        return VALID
    return ValidationResult(
        False,
        f"Cannot {operation.value.lower()} a request in status {current_status.value}",
    )


def _check_text(
    name: str,
    value: Optional[str],
    max_length: int,
    required: bool,
) -> Optional[str]:
    if value is None or not value.strip():
        return f"{name} is required" if required else None
    if len(value) > max_length:
        return f"{name} must be at most {max_length} characters"
    return None


def text_fields_valid(fields: List[Tuple[str, Optional[str], int, bool]]) -> ValidationResult:
    """
    Check (name, value, max_length, required) tuples.
    The reason lists every offending field so the caller can fix them in one go.
    """
    problems = [p for p in (_check_text(*f) for f in fields) if p]
    if problems:
        return ValidationResult(False, "; ".join(problems))
    return VALID


def request_fields_valid(title: Optional[str], description: Optional[str]) -> ValidationResult:
    return text_fields_valid([
        ("title", title, TITLE_MAX_LENGTH, True),
        ("description", description, DESCRIPTION_MAX_LENGTH, False),
    ])


def note_valid(name: str, note: Optional[str], required: bool = False) -> ValidationResult:
    return text_fields_valid([(name, note, NOTE_MAX_LENGTH, required)])
