import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Owns the engine and session factory for the life of the app.

    Opened once at startup and closed at shutdown. Nothing else holds
    a connection handle.
    """

    def __init__(self, url: str):
        self.url = url
        self.engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    def open(self) -> "Database":
        if self.engine is not None:
            return self

        connect_args = {}
        engine_kwargs = {}
        if self.url.startswith("sqlite"):
            # Routes run in a thread pool
            connect_args["check_same_thread"] = False
            if ":memory:" in self.url or self.url == "sqlite://":
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.url, connect_args=connect_args, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        logger.info(f"Database opened at {self.url}")
        return self

    def create_all(self) -> None:
        # Register every mapped table before creating
        import auth_models  # noqa: F401
        import models  # noqa: F401

        Base.metadata.create_all(bind=self._require_engine())

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Database not opened")
        return self._session_factory()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise RuntimeError("Database not opened")
        return self.engine


def get_db(request: Request) -> Iterator[Session]:
    """FastAPI dependency yielding a session from the app's Database."""
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
