"""
Request-scoped dependencies for the security API.

Long-lived components live on ``app.state`` (wired at startup) and are
handed to routes through these functions, which tests replace via
``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from app.security.auth.jwt_handler import JWTHandler, get_jwt_handler
from app.security.auth.session_manager import SessionManager
from app.security.monitoring.security_metrics import AUTH_FAILURES_TOTAL
from app.services.security_service import SecurityService
from app.utils.error_handler import AuthenticationError
from app.utils.logger import get_logger, short_id
from app.utils.rate_limiter import RedisFixedWindowLimiter

logger = get_logger(__name__)


@dataclass(frozen=True)
class CurrentSession:
    user_id: str
    session_id: str


def get_security_service(request: Request) -> SecurityService:
    return request.app.state.security_service


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_rate_limiter(request: Request) -> RedisFixedWindowLimiter:
    return request.app.state.rate_limiter


async def require_session(
    authorization: Optional[str] = Header(default=None),
    sessions: SessionManager = Depends(get_session_manager),
    jwt: JWTHandler = Depends(get_jwt_handler),
) -> CurrentSession:
    """Authenticate the bearer token and check its session is still live."""
    if not authorization or not authorization.lower().startswith("bearer "):
        AUTH_FAILURES_TOTAL.labels(reason="missing_token").inc()
        raise AuthenticationError("Missing or invalid authorization header")

    try:
        claims = jwt.decode_session_token(authorization.split(" ", 1)[1].strip())
    except AuthenticationError:
        AUTH_FAILURES_TOTAL.labels(reason="invalid_token").inc()
        raise

    if not await sessions.validate_session(claims.user_id, claims.session_id):
        AUTH_FAILURES_TOTAL.labels(reason="session_invalid").inc()
        logger.info(
            "session_rejected",
            user_id=claims.user_id,
            session_id=short_id(claims.session_id),
        )
        raise AuthenticationError("Session has expired")

    return CurrentSession(user_id=claims.user_id, session_id=claims.session_id)


async def rate_limited_session(
    current: CurrentSession = Depends(require_session),
    limiter: RedisFixedWindowLimiter = Depends(get_rate_limiter),
) -> CurrentSession:
    await limiter.check(current.user_id)
    return current
