from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from orderdesk.config import settings


def _normalize_url(url: str) -> str:
    # Hosting providers hand out postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def build_engine(url: str, timeout: int = settings.STORE_TIMEOUT_SECONDS):
    """Create an engine whose connects and statements are all time-bounded."""
    url = _normalize_url(url)

    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}
        return create_engine(url, connect_args=connect_args)

    connect_args = {
        "connect_timeout": timeout,
        "options": f"-c statement_timeout={timeout * 1000}",
    }
    return create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_timeout=timeout,
    )


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
