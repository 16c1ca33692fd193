"""
Login activity audit records.

One immutable row per authentication attempt, successful or failed. Rows
are never updated after insert and have no automatic expiry; history
queries bound themselves to a trailing window instead.
"""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, Index, String, Text

from app.db.base_class import Base


class AuthMethod(str, Enum):
    """How the user authenticated"""

    PASSWORD = "password"
    GOOGLE_OAUTH = "google-oauth"
    FACEBOOK_OAUTH = "facebook-oauth"
    TWO_FACTOR = "2fa"


OAUTH_METHODS = frozenset(
    {AuthMethod.GOOGLE_OAUTH.value, AuthMethod.FACEBOOK_OAUTH.value}
)


class LoginStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class LoginActivity(Base):
    __tablename__ = "login_activity"

    # Null for failures against unknown users
    user_id = Column(String(64), nullable=True, index=True)
    # Only successful logins carry a session
    session_id = Column(String(128), nullable=True)
    auth_method = Column(String(32), nullable=False)
    two_factor_used = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, index=True)
    failure_reason = Column(String(255), nullable=True)

    ip_address = Column(String(45), nullable=False, default="Unknown")
    user_agent_raw = Column(Text, nullable=False, default="Unknown")
    device_type = Column(String(16), nullable=False, default="unknown")
    browser = Column(String(64), nullable=False, default="Unknown")
    os = Column(String(64), nullable=False, default="Unknown")
    country = Column(String(64), nullable=False, default="Unknown")
    city = Column(String(128), nullable=False, default="Unknown")

    is_suspicious = Column(Boolean, nullable=False, default=False)
    suspicious_reasons = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index("ix_login_activity_user_created", "user_id", "created_at"),
        Index(
            "ix_login_activity_user_status_created", "user_id", "status", "created_at"
        ),
        Index("ix_login_activity_session", "session_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LoginActivity(id={self.id}, user_id='{self.user_id}', "
            f"status='{self.status}', suspicious={self.is_suspicious})>"
        )
