from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.core.config import settings
from app.utils.error_handler import AuthenticationError


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass
class JWTConfig:
    algorithm: str = "HS256"
    expires_minutes: int = 60
    issuer: Optional[str] = None


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    session_id: str


class JWTHandler:
    """
    Minimal HS256 bearer tokens binding a user to one session.

    A token carries ``sub`` (user id) and ``sid`` (session id). A valid
    signature is necessary but not sufficient: callers must still validate
    ``sid`` against the session store so revoked sessions stop working
    before the token expires.
    """

    def __init__(self, secret: str, config: Optional[JWTConfig] = None) -> None:
        self.secret = secret.encode()
        self.config = config or JWTConfig(
            algorithm=settings.JWT_ALGORITHM,
            expires_minutes=settings.JWT_EXPIRES_MINUTES,
            issuer=settings.JWT_ISSUER,
        )

    def _sign(self, signing_input: bytes) -> bytes:
        return hmac.new(self.secret, signing_input, hashlib.sha256).digest()

    def create_token(
        self, subject: str, claims: Optional[Dict[str, Any]] = None
    ) -> str:
        header = {"alg": self.config.algorithm, "typ": "JWT"}
        now = int(time.time())
        payload = {
            "sub": subject,
            "iat": now,
            "exp": now + (self.config.expires_minutes * 60),
        }
        if self.config.issuer:
            payload["iss"] = self.config.issuer
        if claims:
            payload.update(claims)

        header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":")).encode())
        payload_b64 = _b64url_encode(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signature = self._sign(f"{header_b64}.{payload_b64}".encode())
        signature_b64 = _b64url_encode(signature)
        return f"{header_b64}.{payload_b64}.{signature_b64}"

    def create_session_token(self, user_id: str, session_id: str) -> str:
        return self.create_token(str(user_id), {"sid": session_id})

    def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, signature_b64 = token.split(".")
            expected = self._sign(f"{header_b64}.{payload_b64}".encode())
            if not hmac.compare_digest(expected, _b64url_decode(signature_b64)):
                raise ValueError("Invalid signature")

            payload = json.loads(_b64url_decode(payload_b64))
            now = int(time.time())
            if payload.get("exp") and now > int(payload["exp"]):
                raise ValueError("Token expired")
            if self.config.issuer and payload.get("iss") != self.config.issuer:
                raise ValueError("Invalid issuer")
            return payload
        except Exception as e:  # noqa: BLE001
            raise ValueError(f"Invalid token: {e}")

    def decode_session_token(self, token: str) -> SessionClaims:
        """
        Verify a bearer token and return its user and session ids.

        Raises:
            AuthenticationError: on a bad signature, expiry, or missing claims.
        """
        try:
            payload = self.verify_token(token)
        except ValueError as e:
            raise AuthenticationError(
                "Invalid or expired token", technical_details={"error": str(e)}
            ) from e

        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id or not session_id:
            raise AuthenticationError("Token is not bound to a session")
        return SessionClaims(user_id=str(user_id), session_id=str(session_id))


def get_jwt_handler() -> JWTHandler:
    return JWTHandler(settings.SECRET_KEY)
