"""
Durable, append-only login activity log.

Rows are written once and never updated. All queries are scoped to a single
user and bounded either by a row limit or by a trailing time window. The
SQLAlchemy session is synchronous, so each call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.models.login_activity import LoginActivity, LoginStatus
from app.security.monitoring.security_metrics import ACTIVITY_LOG_FAILURES_TOTAL
from app.security.schemas import LoginActivityRecord
from app.utils.error_handler import TransientStoreError
from app.utils.logger import get_logger

logger = get_logger(__name__)

MATCH_FIELDS = frozenset({"device_type", "browser", "os", "country", "session_id"})


class LoginActivityRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def _run(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except SQLAlchemyError as e:
            ACTIVITY_LOG_FAILURES_TOTAL.labels(operation=operation).inc()
            logger.error("activity_log_query_failed", operation=operation, error=str(e))
            raise TransientStoreError(
                "Login activity log unavailable",
                technical_details={"operation": operation, "error": str(e)},
            ) from e

    # --- writes ---

    async def add(self, **fields: Any) -> LoginActivityRecord:
        return await self._run("add", self._add, fields)

    def _add(self, fields: Dict[str, Any]) -> LoginActivityRecord:
        with self._session_factory() as db:
            row = LoginActivity(**fields)
            db.add(row)
            try:
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            db.refresh(row)
            return LoginActivityRecord.model_validate(row)

    # --- reads ---

    async def recent_successes(
        self, user_id: str, since: datetime, limit: int
    ) -> List[LoginActivityRecord]:
        """Successful logins at or after ``since``, newest first, at most ``limit``."""
        return await self._run(
            "recent_successes", self._recent_successes, str(user_id), since, limit
        )

    def _recent_successes(
        self, user_id: str, since: datetime, limit: int
    ) -> List[LoginActivityRecord]:
        stmt = (
            select(LoginActivity)
            .where(
                LoginActivity.user_id == user_id,
                LoginActivity.status == LoginStatus.SUCCESS.value,
                LoginActivity.created_at >= since,
            )
            .order_by(LoginActivity.created_at.desc(), LoginActivity.id.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [LoginActivityRecord.model_validate(r) for r in db.scalars(stmt)]

    async def count_failures(self, user_id: str, since: datetime) -> int:
        return await self._run("count_failures", self._count_failures, str(user_id), since)

    def _count_failures(self, user_id: str, since: datetime) -> int:
        stmt = select(func.count(LoginActivity.id)).where(
            LoginActivity.user_id == user_id,
            LoginActivity.status == LoginStatus.FAILED.value,
            LoginActivity.created_at >= since,
        )
        with self._session_factory() as db:
            return int(db.scalar(stmt) or 0)

    async def exists_success(
        self, user_id: str, *, exclude_id: Optional[int] = None, **filters: Any
    ) -> bool:
        """
        Whether any successful login of the user matches every given column value.

        ``exclude_id`` leaves one row out, typically the one just written.
        """
        unknown = set(filters) - MATCH_FIELDS
        if unknown:
            raise ValueError(f"Unsupported filter(s): {', '.join(sorted(unknown))}")
        return await self._run(
            "exists_success", self._exists_success, str(user_id), exclude_id, filters
        )

    def _exists_success(
        self, user_id: str, exclude_id: Optional[int], filters: Dict[str, Any]
    ) -> bool:
        stmt = select(LoginActivity.id).where(
            LoginActivity.user_id == user_id,
            LoginActivity.status == LoginStatus.SUCCESS.value,
        )
        if exclude_id is not None:
            stmt = stmt.where(LoginActivity.id != exclude_id)
        for column, value in filters.items():
            stmt = stmt.where(getattr(LoginActivity, column) == value)
        with self._session_factory() as db:
            return db.scalar(stmt.limit(1)) is not None

    async def list_for_user(self, user_id: str, limit: int) -> List[LoginActivityRecord]:
        return await self._run("list_for_user", self._list_for_user, str(user_id), limit)

    def _list_for_user(self, user_id: str, limit: int) -> List[LoginActivityRecord]:
        stmt = (
            select(LoginActivity)
            .where(LoginActivity.user_id == user_id)
            .order_by(LoginActivity.created_at.desc(), LoginActivity.id.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [LoginActivityRecord.model_validate(r) for r in db.scalars(stmt)]

    async def latest_success_for_sessions(
        self, user_id: str, session_ids: Iterable[str]
    ) -> Dict[str, LoginActivityRecord]:
        """Map each session id to the newest successful login that created it."""
        session_ids = list(session_ids)
        if not session_ids:
            return {}
        return await self._run(
            "latest_success_for_sessions",
            self._latest_success_for_sessions,
            str(user_id),
            session_ids,
        )

    def _latest_success_for_sessions(
        self, user_id: str, session_ids: List[str]
    ) -> Dict[str, LoginActivityRecord]:
        stmt = (
            select(LoginActivity)
            .where(
                LoginActivity.user_id == user_id,
                LoginActivity.status == LoginStatus.SUCCESS.value,
                LoginActivity.session_id.in_(session_ids),
            )
            .order_by(LoginActivity.created_at.desc(), LoginActivity.id.desc())
        )
        latest: Dict[str, LoginActivityRecord] = {}
        with self._session_factory() as db:
            for row in db.scalars(stmt):
                if row.session_id not in latest:
                    latest[row.session_id] = LoginActivityRecord.model_validate(row)
        return latest
