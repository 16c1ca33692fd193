"""
Suspicious login detection.

A fixed, ordered table of independent rules is evaluated against the user's
recent successful logins and the number of recent failures. Rules either mark
the login suspicious or only attach an informational reason; the verdict is a
plain OR of the marking rules.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from app.core.config import settings
from app.models.login_activity import OAUTH_METHODS
from app.security.audit.login_activity import LoginActivityRepository
from app.security.monitoring.security_metrics import SUSPICIOUS_LOGINS_TOTAL
from app.security.schemas import LoginActivityRecord
from app.utils.logger import get_logger

logger = get_logger(__name__)

NEW_COUNTRY = "New country"
NEW_DEVICE_TYPE = "New device type"
NEW_BROWSER = "New browser"
OAUTH_WITHOUT_2FA = "OAuth without 2FA"
RECENT_FAILED_ATTEMPTS = "Recent failed attempts"
DETECTION_ERROR = "Detection error"


def is_known(value: Optional[str]) -> bool:
    return bool(value) and value.lower() != "unknown"


@dataclass(frozen=True)
class LoginContext:
    user_id: str
    auth_method: str
    two_factor_used: bool = False
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class LoginHistory:
    successes: Sequence[LoginActivityRecord] = ()
    recent_failures: int = 0

    def seen(self, attribute: str, value: Optional[str]) -> bool:
        return any(getattr(r, attribute) == value for r in self.successes)

    @property
    def used_two_factor(self) -> bool:
        return any(r.two_factor_used for r in self.successes)


@dataclass(frozen=True)
class DetectionRule:
    reason: str
    predicate: Callable[[LoginContext, LoginHistory], bool]
    marks_suspicious: bool


@dataclass
class SuspicionResult:
    is_suspicious: bool = False
    reasons: List[str] = field(default_factory=list)


def default_rules(failed_attempt_threshold: int) -> List[DetectionRule]:
    return [
        DetectionRule(
            NEW_COUNTRY,
            lambda ctx, h: is_known(ctx.country) and not h.seen("country", ctx.country),
            marks_suspicious=True,
        ),
        DetectionRule(
            NEW_DEVICE_TYPE,
            lambda ctx, h: is_known(ctx.device_type)
            and not h.seen("device_type", ctx.device_type),
            marks_suspicious=True,
        ),
        DetectionRule(
            NEW_BROWSER,
            lambda ctx, h: is_known(ctx.browser) and not h.seen("browser", ctx.browser),
            marks_suspicious=False,
        ),
        DetectionRule(
            OAUTH_WITHOUT_2FA,
            lambda ctx, h: ctx.auth_method in OAUTH_METHODS
            and not ctx.two_factor_used
            and h.used_two_factor,
            marks_suspicious=False,
        ),
        DetectionRule(
            RECENT_FAILED_ATTEMPTS,
            lambda ctx, h: h.recent_failures >= failed_attempt_threshold,
            marks_suspicious=True,
        ),
    ]


class SuspiciousActivityDetector:
    def __init__(
        self,
        repository: LoginActivityRepository,
        *,
        rules: Optional[Sequence[DetectionRule]] = None,
        history_days: Optional[int] = None,
        history_limit: Optional[int] = None,
        failure_window_hours: Optional[int] = None,
    ) -> None:
        self.repository = repository
        self.rules = list(
            rules
            if rules is not None
            else default_rules(settings.FAILED_ATTEMPT_THRESHOLD)
        )
        self.history_days = history_days or settings.DETECTION_HISTORY_DAYS
        self.history_limit = history_limit or settings.DETECTION_HISTORY_LIMIT
        self.failure_window_hours = (
            failure_window_hours or settings.FAILED_ATTEMPT_WINDOW_HOURS
        )

    async def load_history(self, user_id: str) -> LoginHistory:
        now = datetime.now(timezone.utc)
        successes, failures = await asyncio.gather(
            self.repository.recent_successes(
                user_id, now - timedelta(days=self.history_days), self.history_limit
            ),
            self.repository.count_failures(
                user_id, now - timedelta(hours=self.failure_window_hours)
            ),
        )
        return LoginHistory(successes=successes, recent_failures=failures)

    def evaluate(self, ctx: LoginContext, history: LoginHistory) -> SuspicionResult:
        # Nothing to compare against on a user's first successful login
        if not history.successes:
            return SuspicionResult()

        result = SuspicionResult()
        for rule in self.rules:
            if rule.predicate(ctx, history):
                result.reasons.append(rule.reason)
                result.is_suspicious = result.is_suspicious or rule.marks_suspicious
        return result

    async def detect(self, ctx: LoginContext) -> SuspicionResult:
        """
        Evaluate a login against the user's history.

        Never raises: a failed history lookup yields a non-suspicious result
        carrying the single reason "Detection error".
        """
        if not ctx.user_id:
            return SuspicionResult()
        try:
            history = await self.load_history(ctx.user_id)
            result = self.evaluate(ctx, history)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "suspicious_activity_detection_failed",
                user_id=ctx.user_id,
                error=str(e),
            )
            return SuspicionResult(is_suspicious=False, reasons=[DETECTION_ERROR])

        for reason in result.reasons:
            SUSPICIOUS_LOGINS_TOTAL.labels(reason=reason).inc()
        if result.is_suspicious:
            logger.warning(
                "suspicious_login_detected",
                user_id=ctx.user_id,
                reasons=result.reasons,
            )
        return result


__all__ = [
    "DetectionRule",
    "LoginContext",
    "LoginHistory",
    "SuspicionResult",
    "SuspiciousActivityDetector",
    "default_rules",
    "is_known",
]
