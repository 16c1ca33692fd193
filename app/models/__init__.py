from .login_activity import OAUTH_METHODS, AuthMethod, LoginActivity, LoginStatus

__all__ = [
    "LoginActivity",
    "AuthMethod",
    "LoginStatus",
    "OAUTH_METHODS",
]
