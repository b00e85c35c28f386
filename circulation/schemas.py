from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from circulation.models import DetailStatus, RequestStatus


class UserBase(BaseModel):
    email: str
    first_name: str
    last_name: str


class UserCreate(UserBase):
    password: str


class UserSchema(UserBase):
    id: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class BookBase(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    total_copies: int = Field(1, ge=0)
    is_active: bool = True


class BookCreate(BookBase):
    # defaults to total_copies
    available_copies: Optional[int] = Field(None, ge=0)


class BookSchema(BookBase):
    id: int
    available_copies: int

    model_config = ConfigDict(from_attributes=True)


# Borrowing


class BorrowingRequestCreate(BaseModel):
    requestor_id: int
    book_ids: List[int]
    notes: Optional[str] = None


class BorrowingRequestCreated(BaseModel):
    request_id: str
    message: str = "Borrowing request created successfully"


class BorrowingStatusUpdate(BaseModel):
    request_id: str
    approver_id: int
    status: RequestStatus
    notes: Optional[str] = None
    due_days: Optional[int] = None


class ExtendBorrowing(BaseModel):
    detail_id: str
    user_id: int
    new_due_date: datetime
    notes: Optional[str] = None


class ReturnBook(BaseModel):
    detail_id: str
    user_id: int
    notes: Optional[str] = None


class BorrowingDetailSchema(BaseModel):
    id: str
    request_id: str
    book_id: int
    due_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    status: Optional[DetailStatus] = None
    extension_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BorrowingRequestSchema(BaseModel):
    id: str
    requestor_id: int
    request_date: datetime
    status: RequestStatus
    approver_id: Optional[int] = None
    approval_date: Optional[datetime] = None
    notes: Optional[str] = None
    details: List[BorrowingDetailSchema] = []

    model_config = ConfigDict(from_attributes=True)


class PaginatedBorrowingRequests(BaseModel):
    total_count: int
    skip: int
    limit: int
    results: List[BorrowingRequestSchema]


class MessageResponse(BaseModel):
    message: str
