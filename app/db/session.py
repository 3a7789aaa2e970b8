import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool


def normalize_database_url(url: str) -> str:
    # Render/Supabase hand out postgres:// which SQLAlchemy no longer accepts
    if url.startswith("postgres://"):
        return "postgresql://" + url[10:]
    return url


SQLALCHEMY_DATABASE_URL = normalize_database_url(
    os.getenv("DATABASE_URL", "sqlite:///./lingua_facile.db")
)


def build_engine(url: str):
    """Create an engine for ``url``.

    SQLite is used for local development and tests: connections are shared
    across FastAPI's threadpool and writers wait on the database lock instead
    of failing immediately. PostgreSQL gets a persistent connection pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,  # Connections kept open
        max_overflow=20,
        pool_timeout=30,
        pool_pre_ping=True,  # Drop stale connections before use
        pool_recycle=3600,
        echo=False,
    )


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
