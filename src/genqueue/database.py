"""Engine and session helpers shared by every service."""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


def create_db_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine for the given URL.

    SQLite connections are shared across threads because webhook deliveries
    and the dispatcher run on different threads of control.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create tables (if missing) and return a session factory bound to engine."""
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session], session: Session | None = None
) -> Iterator[Session]:
    """Yield a session that commits on success.

    When an outer session is passed in, it is reused as-is and neither
    committed nor closed, so several services can mutate their rows inside
    one transaction.
    """
    if session is not None:
        yield session
        return

    with session_factory() as own:
        try:
            yield own
            own.commit()
        except Exception:
            own.rollback()
            raise
