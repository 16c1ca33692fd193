from __future__ import annotations

from prometheus_client import Counter

AUTH_FAILURES_TOTAL = Counter(
    "auth_failures_total", "Total authentication failures", ["reason"]
)

BLOCKED_REQUESTS_TOTAL = Counter(
    "blocked_requests_total", "Total requests blocked by security controls", ["control"]
)

# Labels:
# - status: "success" or "failed"
# - auth_method: password, google-oauth, facebook-oauth, 2fa
LOGIN_ATTEMPTS_TOTAL = Counter(
    "login_attempts_total",
    "Login attempts recorded in the activity log.",
    ["status", "auth_method"],
)

SUSPICIOUS_LOGINS_TOTAL = Counter(
    "suspicious_logins_total",
    "Reasons attached to recorded logins by the suspicious activity detector.",
    ["reason"],
)

# Labels:
# - operation: create, validate, revoke, revoke_all, rename, cleanup
# - result: ok, rejected, error
SESSION_OPERATIONS_TOTAL = Counter(
    "session_operations_total",
    "Session store operations by outcome.",
    ["operation", "result"],
)

NEW_DEVICE_NOTIFICATIONS_TOTAL = Counter(
    "new_device_notifications_total",
    "New-device login notifications by outcome.",
    ["result"],
)

ACTIVITY_LOG_FAILURES_TOTAL = Counter(
    "activity_log_failures_total",
    "Login activity log operations that failed and were isolated.",
    ["operation"],
)

ERRORS_TOTAL = Counter(
    "security_errors_total",
    "Errors handled by the central error handler.",
    ["error_type", "category", "severity"],
)
