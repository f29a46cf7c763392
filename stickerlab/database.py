"""Database connection and session management."""

import os
from pathlib import Path
from typing import Any, Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from stickerlab.config import settings

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)

# Database connection settings from environment variables
DATABASE_URL = os.getenv("DATABASE_URL") or settings.database_url


def engine_options(database_url: str) -> dict[str, Any]:
    """Build create_engine keyword arguments for a database URL.

    SQLite (used for local development and tests) does not accept the
    connection pool sizing used for PostgreSQL.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        dict[str, Any]: Keyword arguments for ``create_engine``
    """
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 10,  # Number of connections to maintain
        "max_overflow": 20,  # Maximum number of connections beyond pool_size
    }


# Create database engine with connection pooling
engine = create_engine(
    DATABASE_URL,
    echo=False,  # Set to True for SQL query logging in development
    **engine_options(DATABASE_URL),
)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

# Base class for declarative models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session.

    Yields:
        Session: SQLAlchemy database session

    Example:
        ```python
        from stickerlab.database import get_db

        @app.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
        ```
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
