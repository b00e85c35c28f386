"""Business rules deciding whether a borrowing transition may happen.

The checks only read through the repositories. Their answer can go stale
before the caller writes, so the workflow runs them inside the same
transaction that performs the conditional writes.
"""
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from circulation import crud, inventory
from circulation.exceptions import InvalidInputError
from circulation.models import DetailStatus, RequestStatus, as_utc
from circulation.outcomes import Outcome, Rule
from circulation.settings import BorrowingPolicy


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` bounds of the UTC calendar month containing ``now``."""
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


def _require_datetime(value, name: str) -> datetime:
    if not isinstance(value, datetime):
        raise InvalidInputError(f"{name} must be a datetime")
    return as_utc(value)


def check_actor(user_id: Optional[int], role: str) -> Outcome:
    if not user_id:
        return Outcome.failed(Rule.ACTOR_REQUIRED, f"{role} ID cannot be empty.")
    return Outcome.passed()


def check_book(db: Session, book_id: int) -> Outcome:
    stock = inventory.availability(db, book_id)
    if stock is None:
        return Outcome.failed(Rule.BOOK_NOT_FOUND, f"Book with ID {book_id} not found")
    if not stock.is_active:
        return Outcome.failed(Rule.BOOK_INACTIVE, f"Book with ID {book_id} is not active")
    if not stock.can_lend:
        return Outcome.failed(
            Rule.BOOK_UNAVAILABLE,
            f"Book with ID {book_id} is not available for borrowing",
        )
    return Outcome.passed(stock)


def check_create(
    db: Session,
    requestor_id: Optional[int],
    book_ids: Sequence[int],
    now: datetime,
    policy: BorrowingPolicy,
) -> Outcome:
    if book_ids is None or isinstance(book_ids, (str, bytes)):
        raise InvalidInputError("book_ids must be a list of book IDs")
    book_ids = list(book_ids)
    if any(not isinstance(book_id, int) for book_id in book_ids):
        raise InvalidInputError("book_ids must contain integer IDs")
    now = _require_datetime(now, "now")

    if not requestor_id:
        return Outcome.failed(Rule.REQUESTOR_REQUIRED, "Requestor ID cannot be empty.")

    if not book_ids:
        return Outcome.failed(
            Rule.BOOK_COUNT, "You must select at least one book to borrow."
        )
    if len(book_ids) > policy.max_books_per_request:
        return Outcome.failed(
            Rule.BOOK_COUNT,
            f"Cannot borrow more than {policy.max_books_per_request} books in one request.",
        )
    if len(set(book_ids)) != len(book_ids):
        return Outcome.failed(
            Rule.DUPLICATE_BOOK, "The same book cannot be requested twice in one request."
        )

    start, end = month_window(now)
    created = crud.count_requests_by_requestor_between(db, requestor_id, start, end)
    if created >= policy.monthly_request_quota:
        return Outcome.failed(
            Rule.MONTHLY_QUOTA,
            f"Users cannot create more than {policy.monthly_request_quota} "
            "borrowing requests in a month.",
        )

    for book_id in book_ids:
        outcome = check_book(db, book_id)
        if not outcome.ok:
            return outcome

    if crud.user_has_active_loans(db, requestor_id):
        return Outcome.failed(
            Rule.ACTIVE_LOAN_OUTSTANDING,
            "User has unreturned books. Please return all books before making new requests.",
        )

    return Outcome.passed(book_ids)


def _waiting_request(db: Session, request_id: str) -> Outcome:
    if not request_id:
        raise InvalidInputError("request_id cannot be empty")
    request = crud.get_request(db, request_id)
    if request is None:
        return Outcome.failed(
            Rule.REQUEST_NOT_FOUND, f"Borrowing request with ID {request_id} not found"
        )
    if request.status != RequestStatus.WAITING:
        return Outcome.failed(
            Rule.REQUEST_NOT_WAITING, "Only requests in waiting status can be updated."
        )
    return Outcome.passed(request)


def check_approve(db: Session, request_id: str) -> Outcome:
    """All-or-nothing: every book on the request must still be lendable."""
    outcome = _waiting_request(db, request_id)
    if not outcome.ok:
        return outcome
    request = outcome.value
    if not request.details:
        return Outcome.failed(Rule.REQUEST_EMPTY, "The request has no books to approve.")
    for detail in request.details:
        book_outcome = check_book(db, detail.book_id)
        if not book_outcome.ok:
            return book_outcome
    return Outcome.passed(request)


def check_reject(db: Session, request_id: str) -> Outcome:
    return _waiting_request(db, request_id)


def _find_detail(db: Session, detail_id: str) -> Outcome:
    if not detail_id:
        raise InvalidInputError("detail_id cannot be empty")
    detail = crud.get_detail(db, detail_id)
    if detail is None:
        return Outcome.failed(
            Rule.DETAIL_NOT_FOUND, f"Borrowing detail with ID {detail_id} not found"
        )
    return Outcome.passed(detail)


def _not_activated() -> Outcome:
    return Outcome.failed(
        Rule.DETAIL_NOT_ACTIVATED, "The borrowing request has not been approved."
    )


def check_extend(
    db: Session,
    detail_id: str,
    new_due_date: datetime,
    now: datetime,
    policy: BorrowingPolicy,
) -> Outcome:
    new_due_date = _require_datetime(new_due_date, "new_due_date")
    now = _require_datetime(now, "now")

    outcome = _find_detail(db, detail_id)
    if not outcome.ok:
        return outcome
    detail = outcome.value

    if detail.status is None:
        return _not_activated()
    if detail.extension_date is not None:
        return Outcome.failed(
            Rule.ALREADY_EXTENDED, "A borrowing can only be extended once."
        )
    if detail.status != DetailStatus.BORROWING or detail.due_date is None:
        return Outcome.failed(
            Rule.DETAIL_NOT_BORROWING,
            "Can only extend borrowing details that are in 'Borrowing' status.",
        )
    if new_due_date <= now:
        return Outcome.failed(
            Rule.DUE_DATE_NOT_IN_FUTURE,
            "New due date must be greater than current date.",
        )
    if new_due_date > detail.due_date + timedelta(days=policy.max_extension_days):
        return Outcome.failed(
            Rule.EXTENSION_TOO_LONG,
            f"Can only extend for a maximum of {policy.max_extension_days} days "
            "from the original due date.",
        )
    return Outcome.passed(detail)


def check_return(db: Session, detail_id: str) -> Outcome:
    outcome = _find_detail(db, detail_id)
    if not outcome.ok:
        return outcome
    detail = outcome.value
    if detail.status is None:
        return _not_activated()
    if detail.status not in (DetailStatus.BORROWING, DetailStatus.EXTENDED):
        return Outcome.failed(
            Rule.DETAIL_NOT_ACTIVE,
            "Can only return books that are in 'Borrowing' or 'Extended' status.",
        )
    return Outcome.passed(detail)
