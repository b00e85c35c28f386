"""Lifecycle of borrowing requests and their details.

Request: Waiting -> Approved | Rejected, both terminal.
Detail: pending (no status) -> Borrowing -> Returned, or
Borrowing -> Extended -> Returned. A detail is extended at most once.

The functions here never touch the database. They compute the field values
and the inventory delta of a transition; the workflow persists them.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from circulation.models import (
    BorrowingDetail,
    BorrowingRequest,
    DetailStatus,
    RequestStatus,
    new_id,
)
from circulation.outcomes import Outcome, Rule

PENDING = None


class RequestTransition(BaseModel):
    status: RequestStatus
    approver_id: int
    approval_date: datetime
    notes: Optional[str] = None
    # loan due date every detail receives on approval
    due_date: Optional[datetime] = None

    def values(self) -> Dict:
        return {
            "status": self.status,
            "approver_id": self.approver_id,
            "approval_date": self.approval_date,
            "notes": self.notes,
        }


class DetailTransition(BaseModel):
    status: DetailStatus
    expected: Tuple[Optional[DetailStatus], ...]
    inventory_delta: int = 0
    due_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    extension_date: Optional[datetime] = None

    def values(self) -> Dict:
        values = {"status": self.status}
        for field in ("due_date", "return_date", "extension_date"):
            value = getattr(self, field)
            if value is not None:
                values[field] = value
        return values


def merge_notes(existing: Optional[str], notes: Optional[str]) -> Optional[str]:
    if not notes:
        return existing
    if not existing:
        return notes
    return f"{existing}\n{notes}"


def open_request(
    requestor_id: int, book_ids: List[int], now: datetime, notes: Optional[str] = None
) -> Outcome:
    """Build a Waiting request with one pending detail per book."""
    request = BorrowingRequest(
        id=new_id(),
        requestor_id=requestor_id,
        request_date=now,
        status=RequestStatus.WAITING,
        notes=notes,
    )
    request.details = [
        BorrowingDetail(id=new_id(), position=position, book_id=book_id, status=PENDING)
        for position, book_id in enumerate(book_ids)
    ]
    return Outcome.passed(request)


def _close(
    current: RequestStatus,
    target: RequestStatus,
    approver_id: int,
    now: datetime,
    existing_notes: Optional[str],
    notes: Optional[str],
) -> Outcome:
    if current != RequestStatus.WAITING:
        return Outcome.failed(
            Rule.REQUEST_NOT_WAITING,
            f"Cannot move a request from {current.value} to {target.value}.",
        )
    return Outcome.passed(
        RequestTransition(
            status=target,
            approver_id=approver_id,
            approval_date=now,
            notes=merge_notes(existing_notes, notes),
        )
    )


def approve(
    current: RequestStatus,
    approver_id: int,
    now: datetime,
    due_days: int,
    existing_notes: Optional[str] = None,
    notes: Optional[str] = None,
) -> Outcome:
    if due_days is None or due_days <= 0:
        return Outcome.failed(Rule.INVALID_DUE_DAYS, "Due days must be a positive number.")
    outcome = _close(
        current, RequestStatus.APPROVED, approver_id, now, existing_notes, notes
    )
    if outcome.ok:
        outcome.value.due_date = now + timedelta(days=due_days)
    return outcome


def reject(
    current: RequestStatus,
    approver_id: int,
    now: datetime,
    existing_notes: Optional[str] = None,
    notes: Optional[str] = None,
) -> Outcome:
    return _close(
        current, RequestStatus.REJECTED, approver_id, now, existing_notes, notes
    )


def decide(
    current: RequestStatus,
    target: RequestStatus,
    approver_id: int,
    now: datetime,
    due_days: int,
    existing_notes: Optional[str] = None,
    notes: Optional[str] = None,
) -> Outcome:
    if target == RequestStatus.APPROVED:
        return approve(current, approver_id, now, due_days, existing_notes, notes)
    if target == RequestStatus.REJECTED:
        return reject(current, approver_id, now, existing_notes, notes)
    return Outcome.failed(
        Rule.INVALID_STATUS, "A request can only be approved or rejected."
    )


def activate_detail(current: Optional[DetailStatus], due_date: datetime) -> Outcome:
    if current is not PENDING:
        return Outcome.failed(
            Rule.INVALID_STATUS, f"Detail is already {current.value}."
        )
    return Outcome.passed(
        DetailTransition(
            status=DetailStatus.BORROWING,
            expected=(PENDING,),
            inventory_delta=-1,
            due_date=due_date,
        )
    )


def extend(
    current: Optional[DetailStatus],
    extension_date: Optional[datetime],
    new_due_date: datetime,
    now: datetime,
) -> Outcome:
    if current is PENDING:
        return Outcome.failed(
            Rule.DETAIL_NOT_ACTIVATED, "The borrowing request has not been approved."
        )
    if extension_date is not None or current == DetailStatus.EXTENDED:
        return Outcome.failed(
            Rule.ALREADY_EXTENDED, "A borrowing can only be extended once."
        )
    if current != DetailStatus.BORROWING:
        return Outcome.failed(
            Rule.DETAIL_NOT_BORROWING,
            "Can only extend borrowing details that are in 'Borrowing' status.",
        )
    return Outcome.passed(
        DetailTransition(
            status=DetailStatus.EXTENDED,
            expected=(DetailStatus.BORROWING,),
            due_date=new_due_date,
            extension_date=now,
        )
    )


def return_detail(current: Optional[DetailStatus], now: datetime) -> Outcome:
    # one decrement happened at approval, so Extended also yields +1
    if current is PENDING:
        return Outcome.failed(
            Rule.DETAIL_NOT_ACTIVATED, "The borrowing request has not been approved."
        )
    if current not in (DetailStatus.BORROWING, DetailStatus.EXTENDED):
        return Outcome.failed(
            Rule.DETAIL_NOT_ACTIVE,
            "Can only return books that are in 'Borrowing' or 'Extended' status.",
        )
    return Outcome.passed(
        DetailTransition(
            status=DetailStatus.RETURNED,
            expected=(DetailStatus.BORROWING, DetailStatus.EXTENDED),
            inventory_delta=1,
            return_date=now,
        )
    )
