from datetime import datetime, timedelta

import pytest

from circulation import eligibility
from circulation.exceptions import InvalidInputError
from circulation.models import (
    BorrowingDetail,
    BorrowingRequest,
    DetailStatus,
    RequestStatus,
)
from circulation.outcomes import Rule
from circulation.settings import BorrowingPolicy

NOW = datetime(2024, 5, 15, 12, 0, 0)
POLICY = BorrowingPolicy()


def add_request(
    db,
    requestor_id,
    book_ids,
    request_date=NOW,
    status=RequestStatus.WAITING,
    detail_status=None,
    due_date=None,
    extension_date=None,
):
    request = BorrowingRequest(
        requestor_id=requestor_id, request_date=request_date, status=status
    )
    request.details = [
        BorrowingDetail(
            book_id=book_id,
            position=i,
            status=detail_status,
            due_date=due_date,
            extension_date=extension_date,
        )
        for i, book_id in enumerate(book_ids)
    ]
    db.add(request)
    db.commit()
    return request


def test_month_window():
    assert eligibility.month_window(NOW) == (datetime(2024, 5, 1), datetime(2024, 6, 1))
    assert eligibility.month_window(datetime(2024, 12, 31, 23, 59)) == (
        datetime(2024, 12, 1),
        datetime(2025, 1, 1),
    )


def test_create_passes_for_eligible_user(db_session, test_user, make_book):
    books = [make_book(), make_book()]

    outcome = eligibility.check_create(
        db_session, test_user.id, [b.id for b in books], NOW, POLICY
    )

    assert outcome.ok
    assert outcome.value == [b.id for b in books]


@pytest.mark.parametrize("requestor_id", [0, None])
def test_create_requires_requestor(db_session, test_book, requestor_id):
    outcome = eligibility.check_create(db_session, requestor_id, [test_book.id], NOW, POLICY)

    assert outcome.failure.rule == Rule.REQUESTOR_REQUIRED


def test_create_requires_at_least_one_book(db_session, test_user):
    outcome = eligibility.check_create(db_session, test_user.id, [], NOW, POLICY)

    assert outcome.failure.rule == Rule.BOOK_COUNT


def test_create_allows_at_most_five_books(db_session, test_user, make_book):
    books = [make_book() for _ in range(6)]
    ids = [b.id for b in books]

    assert eligibility.check_create(db_session, test_user.id, ids[:5], NOW, POLICY).ok
    outcome = eligibility.check_create(db_session, test_user.id, ids, NOW, POLICY)
    assert outcome.failure.rule == Rule.BOOK_COUNT


def test_create_refuses_duplicate_books(db_session, test_user, test_book):
    outcome = eligibility.check_create(
        db_session, test_user.id, [test_book.id, test_book.id], NOW, POLICY
    )

    assert outcome.failure.rule == Rule.DUPLICATE_BOOK


def test_create_monthly_quota_counts_current_month_only(
    db_session, test_user, make_book
):
    book = make_book(total_copies=5)
    last_month = datetime(2024, 4, 30, 23, 59)
    add_request(db_session, test_user.id, [book.id], request_date=last_month)
    add_request(db_session, test_user.id, [book.id], request_date=datetime(2024, 5, 1))
    add_request(db_session, test_user.id, [book.id], request_date=datetime(2024, 5, 2))

    assert eligibility.check_create(db_session, test_user.id, [book.id], NOW, POLICY).ok

    add_request(db_session, test_user.id, [book.id], request_date=datetime(2024, 5, 10))
    outcome = eligibility.check_create(db_session, test_user.id, [book.id], NOW, POLICY)
    assert outcome.failure.rule == Rule.MONTHLY_QUOTA


def test_create_quota_is_per_user(db_session, test_user, make_user, make_book):
    other = make_user()
    book = make_book(total_copies=5)
    for day in (1, 2, 3):
        add_request(db_session, other.id, [book.id], request_date=datetime(2024, 5, day))

    assert eligibility.check_create(db_session, test_user.id, [book.id], NOW, POLICY).ok


def test_create_refuses_missing_inactive_and_unavailable_books(
    db_session, test_user, make_book
):
    inactive = make_book(is_active=False)
    empty = make_book(total_copies=1, available_copies=0)

    missing = eligibility.check_create(db_session, test_user.id, [4242], NOW, POLICY)
    assert missing.failure.rule == Rule.BOOK_NOT_FOUND
    assert missing.failure.is_not_found

    outcome = eligibility.check_create(db_session, test_user.id, [inactive.id], NOW, POLICY)
    assert outcome.failure.rule == Rule.BOOK_INACTIVE

    outcome = eligibility.check_create(db_session, test_user.id, [empty.id], NOW, POLICY)
    assert outcome.failure.rule == Rule.BOOK_UNAVAILABLE


@pytest.mark.parametrize("detail_status", [DetailStatus.BORROWING, DetailStatus.EXTENDED])
def test_create_refuses_user_with_open_loan(
    db_session, test_user, make_book, detail_status
):
    lent, wanted = make_book(total_copies=2), make_book()
    add_request(
        db_session,
        test_user.id,
        [lent.id],
        request_date=datetime(2024, 3, 1),
        status=RequestStatus.APPROVED,
        detail_status=detail_status,
        due_date=datetime(2024, 3, 15),
    )

    outcome = eligibility.check_create(db_session, test_user.id, [wanted.id], NOW, POLICY)

    assert outcome.failure.rule == Rule.ACTIVE_LOAN_OUTSTANDING


def test_create_allows_user_whose_loans_are_returned_or_pending(
    db_session, test_user, make_book
):
    book = make_book(total_copies=3)
    add_request(
        db_session,
        test_user.id,
        [book.id],
        request_date=datetime(2024, 3, 1),
        status=RequestStatus.APPROVED,
        detail_status=DetailStatus.RETURNED,
    )
    add_request(db_session, test_user.id, [book.id], request_date=datetime(2024, 5, 2))

    assert eligibility.check_create(db_session, test_user.id, [book.id], NOW, POLICY).ok


def test_create_raises_for_malformed_book_ids(db_session, test_user):
    with pytest.raises(InvalidInputError):
        eligibility.check_create(db_session, test_user.id, None, NOW, POLICY)
    with pytest.raises(InvalidInputError):
        eligibility.check_create(db_session, test_user.id, ["one"], NOW, POLICY)


def test_approve_requires_waiting_request(db_session, test_user, test_book):
    approved = add_request(
        db_session, test_user.id, [test_book.id], status=RequestStatus.APPROVED
    )

    outcome = eligibility.check_approve(db_session, approved.id)
    assert outcome.failure.rule == Rule.REQUEST_NOT_WAITING

    outcome = eligibility.check_approve(db_session, "no-such-request")
    assert outcome.failure.rule == Rule.REQUEST_NOT_FOUND


def test_approve_is_all_or_nothing_over_books(db_session, test_user, make_book):
    available, empty = make_book(), make_book(total_copies=1, available_copies=0)
    request = add_request(db_session, test_user.id, [available.id, empty.id])

    outcome = eligibility.check_approve(db_session, request.id)

    assert outcome.failure.rule == Rule.BOOK_UNAVAILABLE


def test_approve_passes_when_every_book_is_lendable(db_session, test_user, make_book):
    request = add_request(db_session, test_user.id, [make_book().id, make_book().id])

    outcome = eligibility.check_approve(db_session, request.id)

    assert outcome.ok
    assert outcome.value.id == request.id


def test_reject_ignores_inventory(db_session, test_user, make_book):
    empty = make_book(total_copies=1, available_copies=0)
    request = add_request(db_session, test_user.id, [empty.id])

    assert eligibility.check_reject(db_session, request.id).ok


def test_extend_window(db_session, test_user, test_book):
    due = NOW + timedelta(days=3)
    request = add_request(
        db_session,
        test_user.id,
        [test_book.id],
        status=RequestStatus.APPROVED,
        detail_status=DetailStatus.BORROWING,
        due_date=due,
    )
    detail_id = request.details[0].id

    ok = eligibility.check_extend(
        db_session, detail_id, due + timedelta(days=7), NOW, POLICY
    )
    assert ok.ok

    too_long = eligibility.check_extend(
        db_session, detail_id, due + timedelta(days=8), NOW, POLICY
    )
    assert too_long.failure.rule == Rule.EXTENSION_TOO_LONG

    past = eligibility.check_extend(db_session, detail_id, NOW, NOW, POLICY)
    assert past.failure.rule == Rule.DUE_DATE_NOT_IN_FUTURE


def test_extend_refuses_extended_and_pending_details(db_session, test_user, make_book):
    extended = add_request(
        db_session,
        test_user.id,
        [make_book().id],
        status=RequestStatus.APPROVED,
        detail_status=DetailStatus.EXTENDED,
        due_date=NOW + timedelta(days=5),
        extension_date=NOW - timedelta(days=1),
    )
    pending = add_request(db_session, test_user.id, [make_book().id])
    new_due = NOW + timedelta(days=6)

    outcome = eligibility.check_extend(
        db_session, extended.details[0].id, new_due, NOW, POLICY
    )
    assert outcome.failure.rule == Rule.ALREADY_EXTENDED

    outcome = eligibility.check_extend(
        db_session, pending.details[0].id, new_due, NOW, POLICY
    )
    assert outcome.failure.rule == Rule.DETAIL_NOT_ACTIVATED

    outcome = eligibility.check_extend(db_session, "missing", new_due, NOW, POLICY)
    assert outcome.failure.rule == Rule.DETAIL_NOT_FOUND


def test_extend_raises_for_non_datetime_due_date(db_session):
    with pytest.raises(InvalidInputError):
        eligibility.check_extend(db_session, "detail", "tomorrow", NOW, POLICY)


@pytest.mark.parametrize(
    "detail_status, rule",
    [
        (DetailStatus.BORROWING, None),
        (DetailStatus.EXTENDED, None),
        (DetailStatus.RETURNED, Rule.DETAIL_NOT_ACTIVE),
        (None, Rule.DETAIL_NOT_ACTIVATED),
    ],
)
def test_return_eligibility(db_session, test_user, test_book, detail_status, rule):
    request = add_request(
        db_session,
        test_user.id,
        [test_book.id],
        status=RequestStatus.APPROVED,
        detail_status=detail_status,
    )

    outcome = eligibility.check_return(db_session, request.details[0].id)

    if rule is None:
        assert outcome.ok
    else:
        assert outcome.failure.rule == rule


def test_actor_required():
    assert eligibility.check_actor(3, "Approver").ok
    assert eligibility.check_actor(0, "Approver").failure.rule == Rule.ACTOR_REQUIRED
