import itertools
import os
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from dotenv import load_dotenv

from circulation.main import app, get_db
from circulation.models import Base
from circulation.crud import create_user_record, create_book
from circulation.schemas import UserCreate, BookCreate
from circulation.settings import BorrowingPolicy
from circulation.storage import build_engine
from circulation.workflow import BorrowingWorkflow

load_dotenv()

# Use a SQLite file database for testing
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# mid-month so quota windows are easy to reason about
FROZEN_NOW = datetime(2024, 5, 15, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="module")
def client():
    app.state.testing = True
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture(scope="function")
def policy():
    return BorrowingPolicy()


@pytest.fixture(scope="function")
def workflow(db_session, policy, clock):
    return BorrowingWorkflow(db_session, policy=policy, clock=clock)


@pytest.fixture(scope="function")
def make_user(db_session):
    counter = itertools.count(1)

    def _make_user(**overrides):
        n = next(counter)
        user_data = {
            "email": f"reader{n}@example.com",
            "password": "testpassword",
            "first_name": "Test",
            "last_name": f"User{n}",
        }
        user_data.update(overrides)
        return create_user_record(db_session, UserCreate(**user_data))

    return _make_user


@pytest.fixture(scope="function")
def make_book(db_session):
    counter = itertools.count(1)

    def _make_book(total_copies=1, available_copies=None, is_active=True):
        n = next(counter)
        book_data = BookCreate(
            title=f"Test Book {n}",
            author="Test Author",
            isbn=f"978000000{n:04d}",
            total_copies=total_copies,
            available_copies=available_copies,
            is_active=is_active,
        )
        return create_book(db_session, book_data)

    return _make_book


@pytest.fixture(scope="function")
def test_user(make_user):
    return make_user(email="test@example.com")


@pytest.fixture(scope="function")
def approver(make_user):
    return make_user(email="librarian@example.com", first_name="Head")


@pytest.fixture(scope="function")
def test_book(make_book):
    return make_book(total_copies=2)
