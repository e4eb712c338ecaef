from flask import Blueprint, request, jsonify, g

from security import login as login_flow
from security import session as sessions
from security.credentials import set_password
from security.errors import AuthenticationError, LockedError, RateLimitedError, ValidationError
from security.password import verify_password
from security.password_policy import password_strength
from security.rate_limit import check_and_increment_login_rate
from security.rbac import role_names
from security.two_factor import enabled_method
from utils.audit import log_event
from utils.auth_context import client_ip, login_required, user_agent


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def login_outcome_response(outcome):
    """Render a login outcome; failures raise and go through the app error handler."""
    if isinstance(outcome, login_flow.Locked):
        raise LockedError(outcome.scope, outcome.retry_after)
    if isinstance(outcome, login_flow.InvalidCredentials):
        raise AuthenticationError()
    if isinstance(outcome, login_flow.InvalidTwoFactorCode):
        raise AuthenticationError("Invalid verification code", error_code="invalid_2fa_code")

    if isinstance(outcome, login_flow.TwoFactorRequired):
        return jsonify(
            requires_two_factor=True,
            temp_token=outcome.pending_token,
            user_id=outcome.user_id,
            method=outcome.method,
        ), 200

    if isinstance(outcome, login_flow.PasswordChangeRequired):
        return jsonify(
            requires_password_change=True,
            temp_token=outcome.pending_token,
            user_id=outcome.user_id,
            expires_in=outcome.expires_in,
        ), 200

    body = {
        "token": outcome.session_token,
        "user": outcome.account.to_public(),
        "session_id": outcome.session.id,
        "expires_at": outcome.session.expires_at.isoformat(),
        "two_factor_setup_required": outcome.two_factor_setup_required,
    }
    if outcome.used_backup_code:
        body["used_backup_code"] = True
    return jsonify(body), 200


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = client_ip()

    allowed, retry_after = check_and_increment_login_rate(ip)
    if not allowed:
        log_event("LOGIN_RATE_LIMIT", metadata={"email": email, "retry_after": retry_after})
        raise RateLimitedError(retry_after)

    if not email or not password:
        raise ValidationError("Email and password are required")

    outcome = login_flow.attempt_login(
        email,
        password,
        ip=ip,
        user_agent=user_agent(),
        two_factor_code=(data.get("two_factor_code") or "").strip() or None,
        pending_token=data.get("temp_token"),
    )
    return login_outcome_response(outcome)


@auth_bp.post("/change-password-required")
def change_password_required():
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    new_password = data.get("new_password") or ""

    if not isinstance(user_id, int) or not new_password:
        raise ValidationError("user_id and new_password are required")

    outcome = login_flow.complete_required_password_change(
        user_id,
        data.get("current_password"),
        new_password,
        ip=client_ip(),
        user_agent=user_agent(),
        pending_token=data.get("temp_token"),
    )
    return login_outcome_response(outcome)


@auth_bp.post("/password_strength")
def check_password_strength():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    return jsonify(password_strength(password)), 200


@auth_bp.get("/me")
@login_required
def me():
    method = enabled_method(g.user.id)
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        full_name=g.user.full_name,
        roles=sorted(role_names(g.user)),
        two_factor_enabled=method is not None,
        two_factor_method=method,
        last_login_at=g.user.last_login_at.isoformat() if g.user.last_login_at else None,
        last_login_ip=g.user.last_login_ip,
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    sessions.terminate(g.session.id, sessions.REASON_LOGOUT)
    log_event("LOGOUT", user_id=g.user.id, entity="session", entity_id=g.session.id)
    return jsonify(message="Logged out"), 200


@auth_bp.post("/logout_all")
@login_required
def logout_all():
    count = sessions.terminate_all_except(g.user.id, None, sessions.REASON_LOGOUT_ALL)
    log_event("LOGOUT_ALL", user_id=g.user.id, metadata={"revoked_sessions": count})
    return jsonify(message="Logged out from all sessions", revoked_sessions=count), 200


@auth_bp.post("/refresh")
@login_required
def refresh():
    sess, token = sessions.renew_session(g.session, g.user)
    g.session_check = sessions.validate_token(token)
    return jsonify(token=token, expires_at=sess.expires_at.isoformat()), 200


@auth_bp.post("/change_password")
@login_required
def change_password():
    data = request.get_json(silent=True) or {}
    current_password = data.get("current_password") or ""
    new_password = data.get("new_password") or ""

    if not current_password or not new_password:
        raise ValidationError("current_password and new_password are required")

    if not verify_password(current_password, g.user.password_hash):
        log_event("PASSWORD_CHANGE_FAIL", user_id=g.user.id)
        raise AuthenticationError("Current password is incorrect")

    set_password(g.user, new_password)
    revoked = sessions.terminate_all_except(g.user.id, g.session.id, sessions.REASON_PASSWORD_CHANGED)
    log_event("PASSWORD_CHANGE", user_id=g.user.id, metadata={"revoked_sessions": revoked})
    return jsonify(message="Password updated", revoked_sessions=revoked), 200
