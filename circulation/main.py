from contextlib import asynccontextmanager
import logging
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, status
from sqlalchemy.orm import Session

from circulation import crud
from circulation.exceptions import BusinessRuleViolation, add_exception_handlers
from circulation.internal_message import cleanup_messaging, publish_event, setup_messaging
from circulation.models import RequestStatus, utcnow
from circulation.outcomes import Outcome
from circulation.schemas import (
    BookCreate,
    BookSchema,
    BorrowingDetailSchema,
    BorrowingRequestCreate,
    BorrowingRequestCreated,
    BorrowingRequestSchema,
    BorrowingStatusUpdate,
    ExtendBorrowing,
    MessageResponse,
    PaginatedBorrowingRequests,
    ReturnBook,
    UserCreate,
    UserSchema,
)
from circulation.settings import APP_PORT, BorrowingPolicy
from circulation.storage import SessionLocal
from circulation.workflow import BorrowingWorkflow

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        await setup_messaging(app)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)


app = FastAPI(
    title="Library Circulation API",
    lifespan=lifespan,
    description="Borrowing request workflow for the library backend",
    version="1.0.0",
)
app.state.policy = BorrowingPolicy.from_env()

add_exception_handlers(app)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_workflow(db: Session = Depends(get_db)) -> BorrowingWorkflow:
    return BorrowingWorkflow(db, policy=app.state.policy)


def completed(outcome: Outcome, background_tasks: BackgroundTasks) -> Outcome:
    if not outcome.ok:
        raise BusinessRuleViolation.from_failure(outcome.failure)
    background_tasks.add_task(publish_event, app, outcome.event)
    return outcome


# Seeding endpoints
@app.post("/users/", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    return crud.create_user_record(db, user)


@app.post("/books/", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
def create_book(book: BookCreate, db: Session = Depends(get_db)):
    if book.available_copies is not None and book.available_copies > book.total_copies:
        raise HTTPException(
            status_code=400, detail="Available copies cannot exceed total copies"
        )
    return crud.create_book(db, book)


@app.get("/books/{id}", response_model=BookSchema)
def fetch_single_book(id: int, db: Session = Depends(get_db)):
    return crud.get_book(db, id)


@app.get("/books/{id}/loans", response_model=List[BorrowingDetailSchema])
def list_book_active_loans(id: int, db: Session = Depends(get_db)):
    crud.get_book(db, id)
    return crud.get_active_details_for_book(db, id)


# Borrowing workflow
@app.post(
    "/borrowing/",
    response_model=BorrowingRequestCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_borrowing_request(
    payload: BorrowingRequestCreate,
    background_tasks: BackgroundTasks,
    workflow: BorrowingWorkflow = Depends(get_workflow),
):
    outcome = workflow.create_request(payload.requestor_id, payload.book_ids, payload.notes)
    completed(outcome, background_tasks)
    return BorrowingRequestCreated(request_id=outcome.value)


@app.put("/borrowing/status", response_model=MessageResponse)
def update_borrowing_request_status(
    payload: BorrowingStatusUpdate,
    background_tasks: BackgroundTasks,
    workflow: BorrowingWorkflow = Depends(get_workflow),
):
    outcome = workflow.update_request_status(
        payload.request_id,
        payload.approver_id,
        payload.status,
        notes=payload.notes,
        due_days=payload.due_days,
    )
    completed(outcome, background_tasks)
    return MessageResponse(message="Borrowing request status updated successfully")


@app.put("/borrowing/extend", response_model=MessageResponse)
def extend_borrowing(
    payload: ExtendBorrowing,
    background_tasks: BackgroundTasks,
    workflow: BorrowingWorkflow = Depends(get_workflow),
):
    outcome = workflow.extend_detail(
        payload.detail_id, payload.user_id, payload.new_due_date, payload.notes
    )
    completed(outcome, background_tasks)
    return MessageResponse(message="Borrowing period extended successfully")


@app.put("/borrowing/return", response_model=MessageResponse)
def return_book(
    payload: ReturnBook,
    background_tasks: BackgroundTasks,
    workflow: BorrowingWorkflow = Depends(get_workflow),
):
    outcome = workflow.return_detail(payload.detail_id, payload.user_id, payload.notes)
    completed(outcome, background_tasks)
    return MessageResponse(message="Book returned successfully")


# Borrowing queries
@app.get("/borrowing/pending", response_model=List[BorrowingRequestSchema])
def list_pending_requests(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    return crud.get_pending_requests(db, skip=skip, limit=limit)


@app.get("/borrowing/all", response_model=PaginatedBorrowingRequests)
def list_all_requests(
    status: Optional[RequestStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=50),
    db: Session = Depends(get_db),
):
    if status is None:
        results = crud.get_all_requests(db, skip=skip, limit=limit)
    else:
        results = crud.get_requests_by_status(db, status, skip=skip, limit=limit)
    return PaginatedBorrowingRequests(
        total_count=crud.count_requests(db, status),
        skip=skip,
        limit=limit,
        results=results,
    )


@app.get("/borrowing/overdue", response_model=List[BorrowingDetailSchema])
def list_overdue_borrowings(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    return crud.get_overdue_details(db, utcnow(), skip=skip, limit=limit)


@app.get("/borrowing/user/{user_id}", response_model=List[BorrowingRequestSchema])
def list_user_requests(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    return crud.get_requests_by_requestor(db, user_id, skip=skip, limit=limit)


@app.get("/borrowing/user/{user_id}/active", response_model=List[BorrowingDetailSchema])
def list_user_active_loans(user_id: int, db: Session = Depends(get_db)):
    return crud.get_active_details_for_user(db, user_id)


@app.get("/borrowing/{request_id}", response_model=BorrowingRequestSchema)
def fetch_borrowing_request(request_id: str, db: Session = Depends(get_db)):
    request = crud.get_request(db, request_id)
    if not request:
        raise HTTPException(
            status_code=404, detail=f"Borrowing request with ID {request_id} not found"
        )
    return request


if __name__ == "__main__":
    import uvicorn

    print(f"Starting circulation server on port {APP_PORT}")
    uvicorn.run(app, host="0.0.0.0", port=APP_PORT)
