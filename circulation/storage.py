from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from circulation.settings import SQLALCHEMY_DATABASE_URL


def build_engine(url: str):
    # SQLite connections are shared with FastAPI's worker threads
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
