"""
Outbound collaborators of the security service: user lookup and mailer.

Both are reached over HTTP with a shared ``httpx.AsyncClient``. When a
service URL is not configured the collaborator degrades to a logged no-op,
which keeps local development and tests free of network dependencies.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from app.core.config import settings
from app.security.schemas import NewDeviceInfo, UserRecord
from app.utils.logger import get_logger

logger = get_logger(__name__)


class UserDirectory(Protocol):
    async def find_user_by_id(self, user_id: str) -> Optional[UserRecord]: ...


class NewDeviceNotifier(Protocol):
    async def send_new_device_login_email(
        self, user: UserRecord, device_info: NewDeviceInfo
    ) -> None: ...


class _HttpCollaborator:
    def __init__(
        self,
        base_url: Optional[str],
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token if token is not None else settings.COLLABORATOR_TOKEN
        self.timeout = timeout or settings.COLLABORATOR_TIMEOUT_SECONDS
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client_or_create(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url or "",
                timeout=self.timeout,
                headers=self._headers(),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HttpUserDirectory(_HttpCollaborator):
    def __init__(self, base_url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(base_url or settings.USER_SERVICE_URL, **kwargs)

    async def find_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        if not self.base_url:
            logger.info("user_directory_not_configured", user_id=user_id)
            return None
        response = await self._client_or_create().get(f"/users/{user_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return UserRecord.model_validate(response.json())


class HttpNewDeviceNotifier(_HttpCollaborator):
    def __init__(self, base_url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(base_url or settings.MAILER_SERVICE_URL, **kwargs)

    async def send_new_device_login_email(
        self, user: UserRecord, device_info: NewDeviceInfo
    ) -> None:
        if not self.base_url:
            logger.info(
                "new_device_email_skipped",
                reason="mailer_not_configured",
                user_id=user.id,
            )
            return
        payload = {
            "template": "new-device-login",
            "to": user.email,
            "name": user.name,
            "device": device_info.model_dump(mode="json"),
        }
        response = await self._client_or_create().post("/emails", json=payload)
        response.raise_for_status()
