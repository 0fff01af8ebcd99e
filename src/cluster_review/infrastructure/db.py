from __future__ import annotations
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from cluster_review.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if not s.database_url:
        raise RuntimeError("Database configuration required. Please set DATABASE_URL.")
    return s.database_url


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": get_settings().db_pool_size, "max_overflow": 0}


engine = create_engine(_dsn(), pool_pre_ping=True, **_engine_kwargs(_dsn()))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session():
    """Return a new session bound to the current engine (honours override_engine)."""
    return SessionLocal()


def dialect_insert(session, model):
    """INSERT construct supporting ON CONFLICT for the session's backend."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"unsupported database dialect: {name}")
    return insert(model)


def supports_row_locks(session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
