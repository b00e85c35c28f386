import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every timestamp is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class RequestStatus(str, enum.Enum):
    WAITING = "Waiting"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class DetailStatus(str, enum.Enum):
    BORROWING = "Borrowing"
    RETURNED = "Returned"
    EXTENDED = "Extended"


ACTIVE_DETAIL_STATUSES = (DetailStatus.BORROWING, DetailStatus.EXTENDED)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    hashed_password = Column(String)
    is_active = Column(Boolean, default=True)


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="ck_books_available_within_total"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    isbn = Column(String, unique=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class BorrowingRequest(Base):
    __tablename__ = "borrowing_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    requestor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    request_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    status = Column(
        Enum(RequestStatus, native_enum=False, length=16),
        nullable=False,
        default=RequestStatus.WAITING,
        index=True,
    )
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approval_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    details = relationship(
        "BorrowingDetail",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="BorrowingDetail.position",
    )


class BorrowingDetail(Base):
    __tablename__ = "borrowing_details"

    id = Column(String(36), primary_key=True, default=new_id)
    request_id = Column(
        String(36), ForeignKey("borrowing_requests.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    due_date = Column(DateTime, nullable=True)
    return_date = Column(DateTime, nullable=True)
    # None until the parent request is approved
    status = Column(Enum(DetailStatus, native_enum=False, length=16), nullable=True, index=True)
    extension_date = Column(DateTime, nullable=True)

    request = relationship("BorrowingRequest", back_populates="details")
