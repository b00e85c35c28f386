import enum
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel


class Rule(str, enum.Enum):
    """Business rules that gate a borrowing transition."""

    REQUESTOR_REQUIRED = "requestor_required"
    ACTOR_REQUIRED = "actor_required"
    BOOK_COUNT = "book_count"
    DUPLICATE_BOOK = "duplicate_book"
    MONTHLY_QUOTA = "monthly_quota"
    BOOK_NOT_FOUND = "book_not_found"
    BOOK_INACTIVE = "book_inactive"
    BOOK_UNAVAILABLE = "book_unavailable"
    ACTIVE_LOAN_OUTSTANDING = "active_loan_outstanding"
    REQUEST_NOT_FOUND = "request_not_found"
    REQUEST_NOT_WAITING = "request_not_waiting"
    REQUEST_EMPTY = "request_empty"
    INVALID_STATUS = "invalid_status"
    INVALID_DUE_DAYS = "invalid_due_days"
    DETAIL_NOT_FOUND = "detail_not_found"
    DETAIL_NOT_ACTIVATED = "detail_not_activated"
    DETAIL_NOT_BORROWING = "detail_not_borrowing"
    DETAIL_NOT_ACTIVE = "detail_not_active"
    ALREADY_EXTENDED = "already_extended"
    DUE_DATE_NOT_IN_FUTURE = "due_date_not_in_future"
    EXTENSION_TOO_LONG = "extension_too_long"
    INVENTORY_CONFLICT = "inventory_conflict"


NOT_FOUND_RULES = frozenset(
    {Rule.BOOK_NOT_FOUND, Rule.REQUEST_NOT_FOUND, Rule.DETAIL_NOT_FOUND}
)


class ValidationFailed(BaseModel):
    rule: Rule
    reason: str

    @property
    def is_not_found(self) -> bool:
        return self.rule in NOT_FOUND_RULES


class BorrowingEvent(BaseModel):
    """Record of a committed workflow operation, published after commit."""

    kind: str
    request_id: str
    detail_id: Optional[str] = None
    user_id: int
    book_ids: List[int] = []
    occurred_at: datetime


class Outcome(BaseModel):
    """Result of an eligibility check, a transition or a workflow operation.

    Expected business failures travel as a ``ValidationFailed`` instead of
    an exception so callers can tell "not allowed" apart from "could not
    process".
    """

    value: Any = None
    failure: Optional[ValidationFailed] = None
    event: Optional[BorrowingEvent] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def passed(cls, value: Any = None) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failed(cls, rule: Rule, reason: str) -> "Outcome":
        return cls(failure=ValidationFailed(rule=rule, reason=reason))
