from functools import wraps
from typing import Optional

from flask import current_app, g, request

from models import db
from models.user import User
from security import session as sessions
from security.errors import AuthenticationError, AuthorizationError
from security.two_factor import enabled_method

_SAFE_METHODS = ("GET", "HEAD")


def client_ip() -> str:
    # ProxyFix rewrites remote_addr when TRUSTED_PROXY_COUNT > 0
    return request.remote_addr or "unknown"


def user_agent() -> str:
    return (request.headers.get("User-Agent") or "")[:255]


def extract_token() -> tuple[Optional[str], bool]:
    """
    Returns (raw_token, from_header). The ?token= fallback is only honoured
    for GET/HEAD so links never authorize a state-changing verb.
    """
    prefix = current_app.config.get("AUTH_HEADER_PREFIX", "Bearer")
    header = request.headers.get("Authorization", "")
    if header.startswith(prefix + " "):
        token = header[len(prefix) + 1:].strip()
        if token:
            return token, True

    if request.method in _SAFE_METHODS:
        param = current_app.config.get("AUTH_QUERY_PARAM", "token")
        token = request.args.get(param)
        if token:
            return token, False
    return None, False


def load_current_user():
    g.user = None
    g.session = None
    g.session_check = None

    raw_token, from_header = extract_token()
    if not raw_token:
        return

    check = sessions.validate_token(raw_token)
    g.session_check = check
    if not check.live:
        return

    user = db.session.get(User, check.session.user_id)
    if user is None or not user.can_login:
        return

    g.session = check.session
    g.user = user
    if from_header:
        sessions.touch(check.session.id)


def add_session_headers(resp):
    sess = getattr(g, "session", None)
    check = getattr(g, "session_check", None)
    if sess is None or check is None or not check.live:
        return resp

    resp.headers["X-Session-Remaining-Seconds"] = str(check.remaining_seconds)
    if check.warning:
        resp.headers["X-Session-Timeout-Warning"] = "true"
    if sess.suspicious_activity:
        resp.headers["X-Session-Suspicious"] = "true"
        if sess.suspicious_reason:
            resp.headers["X-Session-Suspicious-Reason"] = sess.suspicious_reason
    return resp


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            check = getattr(g, "session_check", None)
            if check is not None and check.status == sessions.STATUS_EXPIRED:
                raise AuthenticationError("Session expired. Please sign in again.", error_code="session_expired")
            if check is not None and check.status == sessions.STATUS_TERMINATED:
                raise AuthenticationError("Session has been terminated.", error_code="session_terminated")
            raise AuthenticationError("Authentication required", error_code="auth_required")
        return fn(*args, **kwargs)
    return wrapper


def require_two_factor(fn):
    """Sensitive actions are only open to callers with two-factor enabled."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user = getattr(g, "user", None)
        if user is None:
            raise AuthenticationError("Authentication required", error_code="auth_required")
        if enabled_method(user.id) is None:
            raise AuthorizationError(
                "Two-factor authentication must be enabled for this action",
                error_code="two_factor_required",
            )
        return fn(*args, **kwargs)
    return wrapper
