from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from marketplace.config import settings


def _normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg://", 1)

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    return database_url


def _connect_args(database_url: str) -> dict:
    # lock_timeout must stay above ORDER_TIMEOUT_SECONDS (checked at startup).
    if database_url.startswith("postgresql+psycopg://"):
        lock_timeout_ms = settings.DB_LOCK_TIMEOUT_SECONDS * 1000
        return {"options": f"-c lock_timeout={lock_timeout_ms}"}
    if database_url.startswith("sqlite://"):
        return {"check_same_thread": False}
    return {}


_database_url = _normalize_database_url(settings.DATABASE_URL)
engine = create_engine(_database_url, connect_args=_connect_args(_database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Session factory for work that runs outside the request thread."""
    return SessionLocal
