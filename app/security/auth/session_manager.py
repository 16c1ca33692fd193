from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from app.core.config import settings
from app.security.monitoring.security_metrics import SESSION_OPERATIONS_TOTAL
from app.security.schemas import SessionMetadata, SessionRecord
from app.utils.error_handler import (
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from app.utils.logger import get_logger, short_id

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """
    Redis-backed multi-device session store with TTL.

    Each session is a JSON record under ``sess:<session_id>``; each user has an
    index set ``user:<user_id>:sessions`` listing their session ids. Both keys
    carry the session TTL. Index entries may briefly outlive their record and
    are pruned on read and by ``cleanup_expired_sessions``.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: Optional[int] = None,
        prefix: Optional[str] = None,
        user_prefix: Optional[str] = None,
    ) -> None:
        self.client = client
        self.ttl = ttl_seconds or settings.SESSION_TTL_SECONDS
        self.prefix = prefix or settings.SESSION_KEY_PREFIX
        self.user_prefix = user_prefix or settings.USER_SESSIONS_KEY_PREFIX

    def _session_key(self, session_id: str) -> str:
        return self.prefix + session_id

    def _index_key(self, user_id: str) -> str:
        return f"{self.user_prefix}{user_id}:sessions"

    def _parse(self, raw: str, session_id: str) -> Optional[SessionRecord]:
        try:
            return SessionRecord.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning(
                "session_record_unparsable",
                session_id=short_id(session_id),
                error=str(e),
            )
            return None

    async def create_session(
        self, user_id: str, metadata: Optional[SessionMetadata] = None
    ) -> str:
        """
        Create a session for an authenticated user and index it.

        Raises:
            ValidationError: if ``user_id`` is empty.
            TransientStoreError: if the store is unreachable. The login must
                not proceed without a session.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        user_id = str(user_id)
        metadata = metadata or SessionMetadata()
        session_id = secrets.token_urlsafe(32)
        now = _now()
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            last_active=now,
            **metadata.model_dump(),
        )

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._session_key(session_id), record.model_dump_json(), ex=self.ttl
                )
                pipe.sadd(self._index_key(user_id), session_id)
                pipe.expire(self._index_key(user_id), self.ttl)
                await pipe.execute()
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="create", result="error").inc()
            logger.error("session_create_failed", user_id=user_id, error=str(e))
            raise TransientStoreError(
                "Failed to create session", technical_details={"error": str(e)}
            ) from e

        SESSION_OPERATIONS_TOTAL.labels(operation="create", result="ok").inc()
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=short_id(session_id),
            device_type=record.device_type,
        )
        return session_id

    async def validate_session(self, user_id: str, session_id: str) -> bool:
        """
        Check that ``session_id`` is live and owned by ``user_id``.

        On success the record's ``last_active`` and both TTLs are refreshed.
        Every failure, including store errors, returns False.
        """
        if not user_id or not session_id:
            return False
        user_id = str(user_id)
        key = self._session_key(session_id)

        try:
            raw = await self.client.get(key)
            if raw is None:
                SESSION_OPERATIONS_TOTAL.labels(
                    operation="validate", result="rejected"
                ).inc()
                return False

            record = self._parse(raw, session_id)
            if record is None:
                SESSION_OPERATIONS_TOTAL.labels(
                    operation="validate", result="rejected"
                ).inc()
                return False

            if record.user_id != user_id:
                logger.warning(
                    "session_owner_mismatch",
                    user_id=user_id,
                    session_id=short_id(session_id),
                )
                SESSION_OPERATIONS_TOTAL.labels(
                    operation="validate", result="rejected"
                ).inc()
                return False

            refreshed = record.model_copy(update={"last_active": _now()})
            async with self.client.pipeline(transaction=True) as pipe:
                # XX: never resurrect a record revoked since the read
                pipe.set(key, refreshed.model_dump_json(), ex=self.ttl, xx=True)
                pipe.expire(self._index_key(user_id), self.ttl)
                written, _ = await pipe.execute()
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="validate", result="error").inc()
            logger.error(
                "session_validate_failed",
                user_id=user_id,
                session_id=short_id(session_id),
                error=str(e),
            )
            return False

        if not written:
            SESSION_OPERATIONS_TOTAL.labels(operation="validate", result="rejected").inc()
            return False

        SESSION_OPERATIONS_TOTAL.labels(operation="validate", result="ok").inc()
        return True

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        try:
            raw = await self.client.get(self._session_key(session_id))
        except RedisError as e:
            logger.error(
                "session_get_failed", session_id=short_id(session_id), error=str(e)
            )
            return None
        if raw is None:
            return None
        return self._parse(raw, session_id)

    async def get_user_sessions(self, user_id: str) -> List[SessionRecord]:
        """
        Return the user's live sessions, most recently active first.

        Unparsable records are skipped. Index entries whose record has expired
        are pruned as a side effect. Store errors yield an empty list.
        """
        user_id = str(user_id)
        index_key = self._index_key(user_id)
        try:
            session_ids = sorted(await self.client.smembers(index_key))
            if not session_ids:
                return []
            raws = await self.client.mget(
                [self._session_key(sid) for sid in session_ids]
            )
        except RedisError as e:
            logger.error("session_list_failed", user_id=user_id, error=str(e))
            return []

        sessions: List[SessionRecord] = []
        dangling: List[str] = []
        for session_id, raw in zip(session_ids, raws):
            if raw is None:
                dangling.append(session_id)
                continue
            record = self._parse(raw, session_id)
            if record is not None:
                sessions.append(record)

        if dangling:
            await self._prune(user_id, dangling)

        sessions.sort(key=lambda s: s.last_active, reverse=True)
        return sessions

    async def _prune(self, user_id: str, session_ids: Iterable[str]) -> int:
        session_ids = list(session_ids)
        try:
            removed = await self.client.srem(self._index_key(user_id), *session_ids)
        except RedisError as e:
            logger.warning("session_prune_failed", user_id=user_id, error=str(e))
            return 0
        if removed:
            logger.info("session_index_pruned", user_id=user_id, removed=removed)
        return int(removed or 0)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        """
        Revoke one of the user's sessions. Revoking a missing session is a no-op.

        Raises:
            ValidationError: if either id is empty.
            AuthorizationError: if the session belongs to another user.
            TransientStoreError: if the store is unreachable.
        """
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")
        user_id = str(user_id)
        key = self._session_key(session_id)
        index_key = self._index_key(user_id)

        try:
            raw = await self.client.get(key)
            if raw is not None:
                record = self._parse(raw, session_id)
                if record is not None:
                    owned = record.user_id == user_id
                else:
                    owned = bool(await self.client.sismember(index_key, session_id))
                if not owned:
                    SESSION_OPERATIONS_TOTAL.labels(
                        operation="revoke", result="rejected"
                    ).inc()
                    logger.warning(
                        "session_revoke_denied",
                        user_id=user_id,
                        session_id=short_id(session_id),
                    )
                    raise AuthorizationError()

            async with self.client.pipeline(transaction=True) as pipe:
                if raw is not None:
                    pipe.delete(key)
                pipe.srem(index_key, session_id)
                await pipe.execute()
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="revoke", result="error").inc()
            logger.error(
                "session_revoke_failed",
                user_id=user_id,
                session_id=short_id(session_id),
                error=str(e),
            )
            raise TransientStoreError(
                "Failed to revoke session", technical_details={"error": str(e)}
            ) from e

        SESSION_OPERATIONS_TOTAL.labels(operation="revoke", result="ok").inc()
        logger.info(
            "session_revoked", user_id=user_id, session_id=short_id(session_id)
        )

    async def revoke_all_sessions(self, user_id: str) -> int:
        """
        Revoke every indexed session of the user and return how many were removed.

        Only the ids read here are removed from the index, so a session created
        concurrently stays indexed.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        user_id = str(user_id)
        index_key = self._index_key(user_id)
        try:
            session_ids = list(await self.client.smembers(index_key))
            if not session_ids:
                SESSION_OPERATIONS_TOTAL.labels(operation="revoke_all", result="ok").inc()
                return 0
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(*[self._session_key(sid) for sid in session_ids])
                pipe.srem(index_key, *session_ids)
                await pipe.execute()
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="revoke_all", result="error").inc()
            logger.error("session_revoke_all_failed", user_id=user_id, error=str(e))
            raise TransientStoreError(
                "Failed to revoke sessions", technical_details={"error": str(e)}
            ) from e

        SESSION_OPERATIONS_TOTAL.labels(operation="revoke_all", result="ok").inc()
        logger.info("sessions_revoked", user_id=user_id, count=len(session_ids))
        return len(session_ids)

    async def rename_session(
        self, user_id: str, session_id: str, device_name: str
    ) -> SessionRecord:
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")
        user_id = str(user_id)
        key = self._session_key(session_id)
        try:
            raw = await self.client.get(key)
            record = self._parse(raw, session_id) if raw is not None else None
            if record is None:
                raise NotFoundError("Session not found")
            if record.user_id != user_id:
                SESSION_OPERATIONS_TOTAL.labels(
                    operation="rename", result="rejected"
                ).inc()
                raise AuthorizationError()

            renamed = record.model_copy(update={"device_name": device_name})
            written = await self.client.set(
                key, renamed.model_dump_json(), xx=True, keepttl=True
            )
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="rename", result="error").inc()
            logger.error(
                "session_rename_failed",
                user_id=user_id,
                session_id=short_id(session_id),
                error=str(e),
            )
            raise TransientStoreError(
                "Failed to rename session", technical_details={"error": str(e)}
            ) from e

        if not written:
            raise NotFoundError("Session not found")

        SESSION_OPERATIONS_TOTAL.labels(operation="rename", result="ok").inc()
        return renamed

    async def cleanup_expired_sessions(self, user_id: str) -> int:
        """Remove index entries whose session record no longer exists."""
        user_id = str(user_id)
        try:
            session_ids = sorted(await self.client.smembers(self._index_key(user_id)))
            if not session_ids:
                return 0
            async with self.client.pipeline(transaction=False) as pipe:
                for session_id in session_ids:
                    pipe.exists(self._session_key(session_id))
                flags = await pipe.execute()
        except RedisError as e:
            SESSION_OPERATIONS_TOTAL.labels(operation="cleanup", result="error").inc()
            logger.error("session_cleanup_failed", user_id=user_id, error=str(e))
            return 0

        dangling = [sid for sid, alive in zip(session_ids, flags) if not alive]
        if not dangling:
            return 0
        removed = await self._prune(user_id, dangling)
        SESSION_OPERATIONS_TOTAL.labels(operation="cleanup", result="ok").inc()
        return removed

    async def cleanup_all_users(self) -> int:
        """Run ``cleanup_expired_sessions`` for every user index in the store."""
        suffix = ":sessions"
        total = 0
        try:
            async for key in self.client.scan_iter(
                match=f"{self.user_prefix}*{suffix}"
            ):
                user_id = key[len(self.user_prefix) : -len(suffix)]
                if user_id:
                    total += await self.cleanup_expired_sessions(user_id)
        except RedisError as e:
            logger.error("session_cleanup_scan_failed", error=str(e))
        logger.info("session_cleanup_complete", removed=total)
        return total
