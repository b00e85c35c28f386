from datetime import datetime
import logging
from typing import Dict, Iterable, List, Optional

import bcrypt
from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from circulation import models, schemas
from circulation.exceptions import BookNotFoundError, DatabaseError
from circulation.models import (
    ACTIVE_DETAIL_STATUSES,
    BorrowingDetail,
    BorrowingRequest,
    DetailStatus,
    RequestStatus,
)

logger = logging.getLogger(__name__)


def expire_cached(db: Session, model, ident, attributes: Iterable[str]):
    """Expire attributes of an instance already loaded in ``db`` after a bulk UPDATE."""
    cached = db.identity_map.get(db.identity_key(model, ident))
    if cached is not None:
        db.expire(cached, list(attributes))


# Users


def create_user_record(db: Session, user: schemas.UserCreate):
    try:
        hashed_password = bcrypt.hashpw(user.password.encode("utf-8"), bcrypt.gensalt())
        db_user = models.User(
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            hashed_password=hashed_password.decode("utf-8"),
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


# Books


def create_book(db: Session, item: schemas.BookCreate):
    try:
        db_item = models.Book(
            **item.model_dump(exclude={"available_copies"}),
            available_copies=(
                item.total_copies
                if item.available_copies is None
                else item.available_copies
            ),
        )
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        return db_item
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def find_book(db: Session, book_id: int) -> Optional[models.Book]:
    try:
        return db.query(models.Book).filter(models.Book.id == book_id).first()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_book(db: Session, book_id: int):
    book = find_book(db, book_id)
    if book is None:
        raise BookNotFoundError(book_id)
    return book


# Borrowing requests


def get_request(db: Session, request_id: str) -> Optional[BorrowingRequest]:
    try:
        return (
            db.query(BorrowingRequest)
            .options(selectinload(BorrowingRequest.details))
            .filter(BorrowingRequest.id == request_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_requests_by_requestor(
    db: Session, requestor_id: int, skip: int = 0, limit: int = 10
) -> List[BorrowingRequest]:
    try:
        return (
            db.query(BorrowingRequest)
            .options(selectinload(BorrowingRequest.details))
            .filter(BorrowingRequest.requestor_id == requestor_id)
            .order_by(BorrowingRequest.request_date.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_requests_by_status(
    db: Session, status: RequestStatus, skip: int = 0, limit: int = 10
) -> List[BorrowingRequest]:
    try:
        return (
            db.query(BorrowingRequest)
            .options(selectinload(BorrowingRequest.details))
            .filter(BorrowingRequest.status == status)
            .order_by(BorrowingRequest.request_date.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_pending_requests(db: Session, skip: int = 0, limit: int = 10):
    # oldest first, the order an approver works through them
    try:
        return (
            db.query(BorrowingRequest)
            .options(selectinload(BorrowingRequest.details))
            .filter(BorrowingRequest.status == RequestStatus.WAITING)
            .order_by(BorrowingRequest.request_date.asc())
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_all_requests(db: Session, skip: int = 0, limit: int = 20):
    try:
        return (
            db.query(BorrowingRequest)
            .options(selectinload(BorrowingRequest.details))
            .order_by(BorrowingRequest.request_date.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def count_requests(db: Session, status: Optional[RequestStatus] = None) -> int:
    try:
        query = db.query(func.count(BorrowingRequest.id))
        if status is not None:
            query = query.filter(BorrowingRequest.status == status)
        return query.scalar()
    except SQLAlchemyError as e:
        raise DatabaseError("count", str(e))


def count_requests_by_requestor_between(
    db: Session, requestor_id: int, start: datetime, end: datetime
) -> int:
    """Count requests created by ``requestor_id`` in ``[start, end)``."""
    try:
        return (
            db.query(func.count(BorrowingRequest.id))
            .filter(
                BorrowingRequest.requestor_id == requestor_id,
                BorrowingRequest.request_date >= start,
                BorrowingRequest.request_date < end,
            )
            .scalar()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("count", str(e))


def create_request(db: Session, request: BorrowingRequest) -> BorrowingRequest:
    """Stage a request and its details; the caller owns the transaction."""
    try:
        db.add(request)
        db.flush()
        return request
    except SQLAlchemyError as e:
        raise DatabaseError("create", str(e))


def update_request_status(
    db: Session, request_id: str, expected: RequestStatus, values: Dict
) -> bool:
    """Write ``values`` only if the request is still in ``expected`` status."""
    try:
        result = db.execute(
            update(BorrowingRequest)
            .where(
                BorrowingRequest.id == request_id,
                BorrowingRequest.status == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as e:
        raise DatabaseError("update", str(e))
    if result.rowcount != 1:
        return False
    expire_cached(db, BorrowingRequest, request_id, values.keys())
    return True


# Borrowing details


def get_detail(db: Session, detail_id: str) -> Optional[BorrowingDetail]:
    try:
        return db.query(BorrowingDetail).filter(BorrowingDetail.id == detail_id).first()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def update_detail(
    db: Session,
    detail_id: str,
    expected: Iterable[Optional[DetailStatus]],
    values: Dict,
) -> bool:
    """Write ``values`` only if the detail status is one of ``expected``.

    ``None`` in ``expected`` matches a detail that was never activated.
    """
    expected = list(expected)
    statuses = [s for s in expected if s is not None]
    conditions = [BorrowingDetail.status.in_(statuses)] if statuses else []
    if None in expected:
        conditions.append(BorrowingDetail.status.is_(None))
    try:
        result = db.execute(
            update(BorrowingDetail)
            .where(BorrowingDetail.id == detail_id, or_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as e:
        raise DatabaseError("update", str(e))
    if result.rowcount != 1:
        return False
    expire_cached(db, BorrowingDetail, detail_id, values.keys())
    return True


def get_active_details_for_user(db: Session, user_id: int) -> List[BorrowingDetail]:
    try:
        return (
            db.query(BorrowingDetail)
            .join(BorrowingRequest, BorrowingDetail.request_id == BorrowingRequest.id)
            .filter(
                BorrowingRequest.requestor_id == user_id,
                BorrowingDetail.status.in_(ACTIVE_DETAIL_STATUSES),
            )
            .order_by(BorrowingDetail.due_date)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_active_details_for_book(db: Session, book_id: int) -> List[BorrowingDetail]:
    try:
        return (
            db.query(BorrowingDetail)
            .filter(
                BorrowingDetail.book_id == book_id,
                BorrowingDetail.status.in_(ACTIVE_DETAIL_STATUSES),
            )
            .order_by(BorrowingDetail.due_date)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def user_has_active_loans(db: Session, user_id: int) -> bool:
    try:
        return db.query(
            db.query(BorrowingDetail)
            .join(BorrowingRequest, BorrowingDetail.request_id == BorrowingRequest.id)
            .filter(
                BorrowingRequest.requestor_id == user_id,
                BorrowingDetail.status.in_(ACTIVE_DETAIL_STATUSES),
            )
            .exists()
        ).scalar()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_overdue_details(
    db: Session, now: datetime, skip: int = 0, limit: int = 10
) -> List[BorrowingDetail]:
    try:
        return (
            db.query(BorrowingDetail)
            .filter(
                BorrowingDetail.status.in_(ACTIVE_DETAIL_STATUSES),
                BorrowingDetail.due_date < now,
            )
            .order_by(BorrowingDetail.due_date)
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))
