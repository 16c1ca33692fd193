"""
Security service: login activity recording and device management.

Orchestrates the request context extractor, the suspicious activity detector,
the activity log and the session store. Observational work (recording,
detection, new-device notification) is isolated so it can never fail a login;
session management errors always propagate to the caller.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Set, Type, TypeVar

from starlette.requests import Request

from app.core.config import settings
from app.models.login_activity import AuthMethod, LoginStatus
from app.security.audit.login_activity import LoginActivityRepository
from app.security.auth.session_manager import SessionManager
from app.security.monitoring.security_metrics import (
    ACTIVITY_LOG_FAILURES_TOTAL,
    LOGIN_ATTEMPTS_TOTAL,
    NEW_DEVICE_NOTIFICATIONS_TOTAL,
)
from app.security.monitoring.threat_detection import (
    LoginContext,
    SuspicionResult,
    SuspiciousActivityDetector,
    is_known,
)
from app.security.request_info import (
    RequestInfo,
    RequestInfoExtractor,
    extract_request_info,
    mask_ip,
)
from app.security.schemas import Device, LoginActivityRecord, NewDeviceInfo
from app.security.validation.input_sanitizer import clean_device_name
from app.services.collaborators import NewDeviceNotifier, UserDirectory
from app.utils.error_handler import AuthenticationError, ValidationError
from app.utils.logger import get_logger, short_id

logger = get_logger(__name__)

E = TypeVar("E", bound=Enum)


def _coerce(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}")


def _first_present(*values: Optional[str], default: str) -> str:
    return next((v for v in values if v), default)


class SecurityService:
    def __init__(
        self,
        sessions: SessionManager,
        activity: LoginActivityRepository,
        *,
        users: UserDirectory,
        notifier: NewDeviceNotifier,
        detector: Optional[SuspiciousActivityDetector] = None,
        extractor: Optional[RequestInfoExtractor] = None,
    ) -> None:
        self.sessions = sessions
        self.activity = activity
        self.users = users
        self.notifier = notifier
        self.detector = detector or SuspiciousActivityDetector(activity)
        self.extractor = extractor
        self._pending: Set[asyncio.Task] = set()

    def _extract(self, request: Request) -> RequestInfo:
        if self.extractor is not None:
            return self.extractor.extract(request)
        return extract_request_info(request)

    # --- login recording ---

    async def record_login_attempt(
        self,
        *,
        auth_method: str,
        status: str,
        request: Optional[Request],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        two_factor_used: bool = False,
        failure_reason: Optional[str] = None,
    ) -> Optional[LoginActivityRecord]:
        """
        Record one authentication attempt in the activity log.

        Validation errors propagate. Every other failure is logged and
        yields None so that recording can never fail the login itself. On a
        successful login from a device the user has not used before, a
        notification is dispatched in the background.

        Raises:
            ValidationError: on an unknown auth method or status, a success
                without a user id, or a missing request.
        """
        method = _coerce(AuthMethod, auth_method, "auth_method")
        login_status = _coerce(LoginStatus, status, "status")
        if login_status is LoginStatus.SUCCESS and not user_id:
            raise ValidationError("user_id is required for a successful login")
        if request is None:
            raise ValidationError("Request object is required")
        user_id = str(user_id) if user_id else None

        try:
            info = self._extract(request)
            suspicion = SuspicionResult()
            if user_id:
                suspicion = await self.detector.detect(
                    LoginContext(
                        user_id=user_id,
                        auth_method=method.value,
                        two_factor_used=two_factor_used,
                        device_type=info.device_type,
                        browser=info.browser,
                        os=info.os,
                        country=info.country,
                    )
                )
            record = await self.activity.add(
                user_id=user_id,
                session_id=session_id,
                auth_method=method.value,
                two_factor_used=two_factor_used,
                status=login_status.value,
                failure_reason=failure_reason,
                ip_address=info.ip_address,
                user_agent_raw=info.user_agent_raw,
                device_type=info.device_type,
                browser=info.browser,
                os=info.os,
                country=info.country,
                city=info.city,
                is_suspicious=suspicion.is_suspicious,
                suspicious_reasons=suspicion.reasons,
            )
        except Exception as e:  # noqa: BLE001
            ACTIVITY_LOG_FAILURES_TOTAL.labels(operation="record").inc()
            logger.error(
                "login_activity_record_failed",
                user_id=user_id,
                auth_method=method.value,
                status=login_status.value,
                error=str(e),
            )
            return None

        LOGIN_ATTEMPTS_TOTAL.labels(
            status=login_status.value, auth_method=method.value
        ).inc()

        if login_status is LoginStatus.SUCCESS:
            logger.info(
                "login_activity_recorded",
                user_id=user_id,
                session_id=short_id(session_id),
                auth_method=method.value,
                device=info.device_type,
                location=f"{info.city}, {info.country}",
                is_suspicious=suspicion.is_suspicious,
            )
            if await self.is_new_device(user_id, info, exclude_id=record.id):
                self._dispatch_new_device_notification(user_id, info)
        else:
            logger.warning(
                "failed_login_recorded",
                user_id=user_id,
                auth_method=method.value,
                failure_reason=failure_reason,
                ip=info.ip_address,
            )
        return record

    async def is_new_device(
        self, user_id: str, info: RequestInfo, *, exclude_id: Optional[int] = None
    ) -> bool:
        """
        Whether this login comes from an unseen device or country.

        A device is the exact (device type, browser, OS) triple. ``exclude_id``
        leaves out the activity row recorded for the login being checked.
        Lookup failures return False.
        """
        try:
            seen_device = await self.activity.exists_success(
                user_id,
                exclude_id=exclude_id,
                device_type=info.device_type,
                browser=info.browser,
                os=info.os,
            )
            if not seen_device:
                return True
            if is_known(info.country):
                seen_country = await self.activity.exists_success(
                    user_id, exclude_id=exclude_id, country=info.country
                )
                if not seen_country:
                    return True
            return False
        except Exception as e:  # noqa: BLE001
            logger.error("new_device_check_failed", user_id=user_id, error=str(e))
            return False

    # --- notifications ---

    def _dispatch_new_device_notification(self, user_id: str, info: RequestInfo) -> None:
        """Send the new-device email in a detached task; never awaited by the login."""
        task = asyncio.create_task(
            self._send_new_device_notification(user_id, info),
            name=f"new-device-notification:{user_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_new_device_notification(
        self, user_id: str, info: RequestInfo
    ) -> None:
        try:
            user = await self.users.find_user_by_id(user_id)
            if user is None:
                NEW_DEVICE_NOTIFICATIONS_TOTAL.labels(result="skipped").inc()
                logger.warning("new_device_email_user_not_found", user_id=user_id)
                return
            device_info = NewDeviceInfo(
                device_type=info.device_type,
                browser=info.browser,
                os=info.os,
                city=info.city,
                country=info.country,
                ip_address=info.ip_masked,
                login_time=datetime.now(timezone.utc),
            )
            await self.notifier.send_new_device_login_email(user, device_info)
        except Exception as e:  # noqa: BLE001
            NEW_DEVICE_NOTIFICATIONS_TOTAL.labels(result="error").inc()
            logger.error("new_device_email_failed", user_id=user_id, error=str(e))
            return

        NEW_DEVICE_NOTIFICATIONS_TOTAL.labels(result="sent").inc()
        logger.info(
            "new_device_email_sent",
            user_id=user_id,
            device=info.device_type,
            location=f"{info.city}, {info.country}",
        )

    @property
    def pending_notifications(self) -> int:
        return len(self._pending)

    async def wait_for_notifications(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notification tasks, e.g. on shutdown."""
        if not self._pending:
            return
        pending = set(self._pending)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("notifications_still_pending", count=len(still_running))

    # --- sessions ---

    async def establish_session(self, user_id: str, request: Request) -> str:
        """Create a session for an authenticated user. Failure is fatal to the login."""
        info = self._extract(request)
        return await self.sessions.create_session(
            user_id, info.to_session_metadata()
        )

    async def refresh_session(self, user_id: str, session_id: str) -> None:
        if not await self.sessions.validate_session(user_id, session_id):
            raise AuthenticationError("Session has expired")

    # --- queries ---

    async def get_login_activity(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[LoginActivityRecord]:
        """
        Most recent login attempts of the user, newest first, IPs masked.

        Raises:
            ValidationError: if ``limit`` is outside 1..LOGIN_ACTIVITY_MAX_LIMIT.
            TransientStoreError: if the activity log is unavailable.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        limit = settings.LOGIN_ACTIVITY_DEFAULT_LIMIT if limit is None else limit
        if (
            isinstance(limit, bool)
            or not isinstance(limit, int)
            or not 1 <= limit <= settings.LOGIN_ACTIVITY_MAX_LIMIT
        ):
            raise ValidationError(
                f"limit must be between 1 and {settings.LOGIN_ACTIVITY_MAX_LIMIT}"
            )

        records = await self.activity.list_for_user(user_id, limit)
        return [
            r.model_copy(update={"ip_address": mask_ip(r.ip_address)}) for r in records
        ]

    async def get_active_devices(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[Device]:
        """
        Live sessions of the user enriched with their login activity.

        Fields missing from a session record fall back to the newest
        successful login that created it. Sorted by last activity, newest first.
        """
        if not user_id:
            raise ValidationError("user_id is required")

        sessions = await self.sessions.get_user_sessions(user_id)
        if not sessions:
            return []

        activity = await self.activity.latest_success_for_sessions(
            user_id, [s.session_id for s in sessions]
        )

        devices = []
        for s in sessions:
            a = activity.get(s.session_id)
            devices.append(
                Device(
                    session_id=s.session_id,
                    device_type=_first_present(
                        s.device_type, a and a.device_type, default="unknown"
                    ),
                    browser=_first_present(s.browser, a and a.browser, default="Unknown"),
                    os=_first_present(s.os, a and a.os, default="Unknown"),
                    country=_first_present(s.country, a and a.country, default="Unknown"),
                    city=_first_present(s.city, a and a.city, default="Unknown"),
                    ip_address=mask_ip(s.ip_address or (a and a.ip_address)),
                    device_name=s.device_name,
                    created_at=s.created_at,
                    last_active=s.last_active,
                    is_current=current_session_id is not None
                    and s.session_id == current_session_id,
                )
            )

        devices.sort(key=lambda d: d.last_active, reverse=True)
        return devices

    # --- device management ---

    async def logout_device(self, user_id: str, session_id: str) -> None:
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")
        await self.sessions.revoke_session(user_id, session_id)
        logger.info(
            "device_logged_out", user_id=user_id, session_id=short_id(session_id)
        )

    async def logout_all_devices(self, user_id: str) -> int:
        if not user_id:
            raise ValidationError("user_id is required")
        count = await self.sessions.revoke_all_sessions(user_id)
        logger.info("all_devices_logged_out", user_id=user_id, devices_count=count)
        return count

    async def update_device_name(
        self, user_id: str, session_id: str, name: Optional[str]
    ) -> Device:
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")
        device_name = clean_device_name(name)
        record = await self.sessions.rename_session(user_id, session_id, device_name)
        logger.info(
            "device_renamed", user_id=user_id, session_id=short_id(session_id)
        )
        return Device(
            session_id=record.session_id,
            device_type=record.device_type or "unknown",
            browser=record.browser or "Unknown",
            os=record.os or "Unknown",
            country=record.country or "Unknown",
            city=record.city or "Unknown",
            ip_address=mask_ip(record.ip_address),
            device_name=record.device_name,
            created_at=record.created_at,
            last_active=record.last_active,
        )
