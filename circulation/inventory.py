"""Available-copy counters of books.

Every change is a single conditional UPDATE so two transactions touching the
same book cannot both pass the availability check: the row lock taken by the
first writer makes the second re-evaluate the condition after it commits.
"""
import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from circulation.crud import expire_cached, find_book
from circulation.exceptions import DatabaseError
from circulation.models import Book

logger = logging.getLogger(__name__)


class Availability(BaseModel):
    book_id: int
    total_copies: int
    available_copies: int
    is_active: bool

    @property
    def can_lend(self) -> bool:
        return self.is_active and self.available_copies > 0


def availability(db: Session, book_id: int) -> Optional[Availability]:
    book = find_book(db, book_id)
    if book is None:
        return None
    return Availability(
        book_id=book.id,
        total_copies=book.total_copies,
        available_copies=book.available_copies,
        is_active=bool(book.is_active),
    )


def _apply(db: Session, book_id: int, stmt, operation: str) -> bool:
    try:
        result = db.execute(stmt.execution_options(synchronize_session=False))
    except SQLAlchemyError as e:
        raise DatabaseError(operation, str(e))
    if result.rowcount != 1:
        logger.info(f"{operation} refused for book {book_id}")
        return False
    expire_cached(db, Book, book_id, ["available_copies"])
    return True


def take_copy(db: Session, book_id: int) -> bool:
    """Decrement available copies by one if the book is active and has a copy left."""
    stmt = (
        update(Book)
        .where(
            Book.id == book_id,
            Book.is_active.is_(True),
            Book.available_copies > 0,
        )
        .values(available_copies=Book.available_copies - 1)
    )
    return _apply(db, book_id, stmt, "take copy")


def restore_copy(db: Session, book_id: int) -> bool:
    """Increment available copies by one, never above the total."""
    stmt = (
        update(Book)
        .where(
            Book.id == book_id,
            Book.available_copies < Book.total_copies,
        )
        .values(available_copies=Book.available_copies + 1)
    )
    return _apply(db, book_id, stmt, "restore copy")
