"""
SQL engine and session factory for the durable login activity log.

``Database`` is a process-scoped resource: ``connect()`` on startup,
``dispose()`` on shutdown. Components receive its ``session_factory``
instead of reaching for a module global, so tests can bind them to their
own engine.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.utils.logger import get_logger

logger = get_logger(__name__)


class Database:
    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or settings.database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def connect(self) -> None:
        if self._engine is not None:
            return
        connect_args = {}
        if self.url.startswith("sqlite"):
            # Activity log calls run in worker threads
            connect_args["check_same_thread"] = False
        self._engine = create_engine(
            self.url, pool_pre_ping=True, connect_args=connect_args
        )
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self._engine
        )
        logger.info("database_connected", dialect=self._engine.dialect.name)

    def create_all(self) -> None:
        from app.db.base import Base

        Base.metadata.create_all(bind=self.engine)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._session_factory

    def session(self) -> Session:
        return self.session_factory()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disposed")
