import contextlib
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, SessionTransactionOrigin

from circulation import crud, eligibility, inventory, state_machine
from circulation.exceptions import (
    BusinessRuleViolation,
    DatabaseError,
    InvalidInputError,
    SystemFailure,
)
from circulation.models import RequestStatus, as_utc, utcnow
from circulation.outcomes import BorrowingEvent, Outcome, Rule, ValidationFailed
from circulation.settings import BorrowingPolicy
from circulation.state_machine import DetailTransition

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Transaction boundary over a session.

    ``transaction()`` begins a transaction if none is open and joins the
    running one otherwise. Only the outermost block commits; any exception
    escaping a block rolls the whole transaction back.

    A transaction the caller opened with ``Session.begin()`` is left to the
    caller: the work runs in a SAVEPOINT, so a failure undoes only its own
    writes and success commits nothing. A transaction the session started
    implicitly on a read is taken over.
    """

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    @contextlib.contextmanager
    def transaction(self):
        if self._depth:
            self._depth += 1
            try:
                yield self.db
            finally:
                self._depth -= 1
            return

        outer = self.db.get_transaction()
        if outer is not None and outer.origin is not SessionTransactionOrigin.AUTOBEGIN:
            self._depth = 1
            try:
                with self.db.begin_nested():
                    yield self.db
            finally:
                self._depth = 0
            return

        if outer is None:
            self.db.begin()
        self._depth = 1
        try:
            yield self.db
            self.db.commit()
        except BaseException:
            self.db.rollback()
            raise
        finally:
            self._depth = 0


def _ensure(outcome: Outcome):
    if not outcome.ok:
        raise BusinessRuleViolation(outcome.failure)
    return outcome.value


def _refuse(rule: Rule, reason: str):
    raise BusinessRuleViolation(ValidationFailed(rule=rule, reason=reason))


class BorrowingWorkflow:
    """Entry point for the borrowing operations.

    One instance works on one session and is not meant to be shared between
    threads; concurrent callers each build their own over their own session.
    Every public method returns an ``Outcome``: a failed outcome means a
    business rule refused the operation and nothing was written.
    Persistence errors are rolled back and raised as ``SystemFailure``.
    """

    def __init__(
        self,
        db: Session,
        policy: Optional[BorrowingPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.uow = UnitOfWork(db)
        self.policy = policy or BorrowingPolicy()
        self.clock = clock

    def _run(self, operation: str, work: Callable[[datetime], Outcome]) -> Outcome:
        now = as_utc(self.clock())
        try:
            with self.uow.transaction():
                outcome = work(now)
        except BusinessRuleViolation as e:
            logger.info(f"{operation} refused ({e.failure.rule.value}): {e}")
            return Outcome(failure=e.failure)
        except InvalidInputError:
            raise
        except (SQLAlchemyError, DatabaseError) as e:
            logger.error(f"Error during {operation}: {str(e)}")
            raise SystemFailure(operation) from e
        return outcome

    def _apply_detail(self, detail_id: str, book_id: int, transition: DetailTransition):
        if not crud.update_detail(
            self.db, detail_id, transition.expected, transition.values()
        ):
            _refuse(Rule.INVALID_STATUS, f"Borrowing detail {detail_id} changed concurrently.")
        if transition.inventory_delta < 0 and not inventory.take_copy(self.db, book_id):
            _refuse(
                Rule.BOOK_UNAVAILABLE,
                f"Book with ID {book_id} is not available for borrowing",
            )
        if transition.inventory_delta > 0 and not inventory.restore_copy(self.db, book_id):
            _refuse(
                Rule.INVENTORY_CONFLICT,
                f"Book with ID {book_id} already has all copies available",
            )

    def create_request(
        self, requestor_id: int, book_ids: List[int], notes: Optional[str] = None
    ) -> Outcome:
        def work(now: datetime) -> Outcome:
            accepted = _ensure(
                eligibility.check_create(
                    self.db, requestor_id, book_ids, now, self.policy
                )
            )
            request = _ensure(
                state_machine.open_request(requestor_id, accepted, now, notes)
            )
            crud.create_request(self.db, request)
            logger.info(
                f"Borrowing request created with ID {request.id} for user {requestor_id}"
            )
            return Outcome(
                value=request.id,
                event=BorrowingEvent(
                    kind="request_created",
                    request_id=request.id,
                    user_id=requestor_id,
                    book_ids=accepted,
                    occurred_at=now,
                ),
            )

        return self._run("create borrowing request", work)

    def update_request_status(
        self,
        request_id: str,
        approver_id: int,
        status: RequestStatus,
        notes: Optional[str] = None,
        due_days: Optional[int] = None,
    ) -> Outcome:
        try:
            status = RequestStatus(status)
        except ValueError:
            raise InvalidInputError(f"unknown request status {status!r}")

        def work(now: datetime) -> Outcome:
            _ensure(eligibility.check_actor(approver_id, "Approver"))
            if status == RequestStatus.APPROVED:
                request = _ensure(eligibility.check_approve(self.db, request_id))
            elif status == RequestStatus.REJECTED:
                request = _ensure(eligibility.check_reject(self.db, request_id))
            else:
                _refuse(Rule.INVALID_STATUS, "A request can only be approved or rejected.")

            lines = [(d.id, d.book_id, d.status) for d in request.details]
            transition = _ensure(
                state_machine.decide(
                    request.status,
                    status,
                    approver_id,
                    now,
                    self.policy.default_loan_days if due_days is None else due_days,
                    request.notes,
                    notes,
                )
            )
            if not crud.update_request_status(
                self.db, request_id, RequestStatus.WAITING, transition.values()
            ):
                _refuse(
                    Rule.REQUEST_NOT_WAITING,
                    "Only requests in waiting status can be updated.",
                )

            if status == RequestStatus.APPROVED:
                for detail_id, book_id, detail_status in lines:
                    activation = _ensure(
                        state_machine.activate_detail(detail_status, transition.due_date)
                    )
                    self._apply_detail(detail_id, book_id, activation)

            logger.info(
                f"Borrowing request {request_id} status updated to {status.value} "
                f"by user {approver_id}"
            )
            return Outcome(
                value=request_id,
                event=BorrowingEvent(
                    kind=f"request_{status.value.lower()}",
                    request_id=request_id,
                    user_id=approver_id,
                    book_ids=[book_id for _, book_id, _ in lines],
                    occurred_at=now,
                ),
            )

        return self._run("update borrowing request status", work)

    def extend_detail(
        self,
        detail_id: str,
        user_id: int,
        new_due_date: datetime,
        notes: Optional[str] = None,
    ) -> Outcome:
        def work(now: datetime) -> Outcome:
            _ensure(eligibility.check_actor(user_id, "User"))
            detail = _ensure(
                eligibility.check_extend(
                    self.db, detail_id, new_due_date, now, self.policy
                )
            )
            transition = _ensure(
                state_machine.extend(
                    detail.status, detail.extension_date, as_utc(new_due_date), now
                )
            )
            request_id, book_id = detail.request_id, detail.book_id
            self._apply_detail(detail_id, book_id, transition)
            logger.info(
                f"Book detail {detail_id} extended by user {user_id} "
                f"to {transition.due_date}" + (f" ({notes})" if notes else "")
            )
            return Outcome(
                value=detail_id,
                event=BorrowingEvent(
                    kind="detail_extended",
                    request_id=request_id,
                    detail_id=detail_id,
                    user_id=user_id,
                    book_ids=[book_id],
                    occurred_at=now,
                ),
            )

        return self._run("extend borrowing", work)

    def return_detail(
        self, detail_id: str, user_id: int, notes: Optional[str] = None
    ) -> Outcome:
        def work(now: datetime) -> Outcome:
            _ensure(eligibility.check_actor(user_id, "User"))
            detail = _ensure(eligibility.check_return(self.db, detail_id))
            transition = _ensure(state_machine.return_detail(detail.status, now))
            request_id, book_id = detail.request_id, detail.book_id
            self._apply_detail(detail_id, book_id, transition)
            logger.info(
                f"Book detail {detail_id} returned by user {user_id}"
                + (f" ({notes})" if notes else "")
            )
            return Outcome(
                value=detail_id,
                event=BorrowingEvent(
                    kind="detail_returned",
                    request_id=request_id,
                    detail_id=detail_id,
                    user_id=user_id,
                    book_ids=[book_id],
                    occurred_at=now,
                ),
            )

        return self._run("return book", work)
