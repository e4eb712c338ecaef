"""
Login orchestration.

Gate order is fixed: IP lock, account lookup, account lock, credential
check, two-factor, password expiration, session issuance. Every failed
password or two-factor attempt is counted by the lockout tracker before the
outcome is returned, including attempts against unknown accounts.
"""
from dataclasses import dataclass
from typing import Optional, Union

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.session import (
    PURPOSE_FULL,
    PURPOSE_PENDING_2FA,
    PURPOSE_PENDING_PASSWORD_CHANGE,
    Session,
)
from models.user import User
from security import lockout, session as sessions, two_factor
from security.credentials import find_account, set_password, verify_credentials
from security.errors import AuthenticationError
from security.password_policy import check_password_expiration
from utils import clock
from utils.audit import log_event
from utils.logger import get_logger
from utils.settings import get_bool

logger = get_logger(__name__)


@dataclass
class Locked:
    scope: str
    retry_after: int


@dataclass
class InvalidCredentials:
    pass


@dataclass
class TwoFactorRequired:
    pending_token: str
    method: str
    user_id: int


@dataclass
class InvalidTwoFactorCode:
    pass


@dataclass
class PasswordChangeRequired:
    pending_token: str
    user_id: int
    expires_in: int


@dataclass
class Success:
    session_token: str
    account: User
    session: Session
    two_factor_setup_required: bool = False
    used_backup_code: bool = False


LoginOutcome = Union[
    Locked,
    InvalidCredentials,
    TwoFactorRequired,
    InvalidTwoFactorCode,
    PasswordChangeRequired,
    Success,
]


def _ip_gate(ip: Optional[str]) -> Optional[Locked]:
    status = lockout.check_locked(lockout.SCOPE_IP, ip)
    if status.locked:
        logger.warning("login_blocked_ip_locked", ip=ip, retry_after=status.retry_after_seconds)
        log_event("LOGIN_LOCKED", metadata={"scope": "ip", "ip": ip})
        return Locked(lockout.SCOPE_IP, status.retry_after_seconds)
    return None


def _account_gate(user_id: int) -> Optional[Locked]:
    status = lockout.check_locked(lockout.SCOPE_ACCOUNT, user_id)
    if status.locked:
        logger.warning("login_blocked_account_locked", user_id=user_id, retry_after=status.retry_after_seconds)
        log_event("LOGIN_LOCKED", user_id=user_id, metadata={"scope": "account"})
        return Locked(lockout.SCOPE_ACCOUNT, status.retry_after_seconds)
    return None


def _fail(user_id: Optional[int], ip: Optional[str], action: str, email: Optional[str] = None) -> None:
    result = lockout.record_failure(user_id, ip)
    logger.info(
        "login_failed",
        action=action,
        user_id=user_id,
        attempts=result.account_attempts,
        account_locked=result.account_locked,
    )
    metadata = {"fail_count": result.account_attempts, "locked_now": result.account_locked}
    if email:
        metadata["email"] = email
    log_event(action, user_id=user_id, metadata=metadata)


def _pending_session(raw_token: Optional[str], purpose: str, user_id: int) -> Optional[Session]:
    if not raw_token:
        return None
    check = sessions.validate_token(raw_token, purpose=purpose)
    if not check.live or check.session.user_id != user_id:
        return None
    return check.session


def _persist_login_metadata(user: User, ip: Optional[str]) -> None:
    try:
        user.last_login_at = clock.utcnow()
        user.last_login_ip = ip
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("login_metadata_failed", user_id=user.id, error=str(exc))


def _complete(user: User, ip: Optional[str], user_agent: Optional[str],
              pending_session_id: Optional[int] = None,
              used_backup_code: bool = False) -> LoginOutcome:
    """Shared success tail: reset lockout, check expiration, issue a session."""
    lockout.record_success(user.id)
    if pending_session_id is not None:
        sessions.terminate(pending_session_id, sessions.REASON_LOGIN_COMPLETED)

    expiration = check_password_expiration(user)
    if expiration.expired or user.must_change_password:
        if not user.must_change_password:
            user.must_change_password = True
            db.session.commit()
        ttl = current_app.config.get("PENDING_PASSWORD_CHANGE_TTL_SECONDS", 300)
        _, token = sessions.issue_session(
            user.id, ip, user_agent, ttl_seconds=ttl, purpose=PURPOSE_PENDING_PASSWORD_CHANGE
        )
        logger.info("login_password_change_required", user_id=user.id)
        log_event("LOGIN_PASSWORD_EXPIRED", user_id=user.id)
        return PasswordChangeRequired(pending_token=token, user_id=user.id, expires_in=ttl)

    sess, token = sessions.issue_session(user.id, ip, user_agent, purpose=PURPOSE_FULL)
    _persist_login_metadata(user, ip)

    setup_required = get_bool("require2FA") and two_factor.enabled_method(user.id) is None
    logger.info("login_success", user_id=user.id, session_id=sess.id, backup_code=used_backup_code)
    log_event(
        "LOGIN_SUCCESS",
        user_id=user.id,
        entity="session",
        entity_id=sess.id,
        metadata={"used_backup_code": used_backup_code, "suspicious": sess.suspicious_activity},
    )
    return Success(
        session_token=token,
        account=user,
        session=sess,
        two_factor_setup_required=setup_required,
        used_backup_code=used_backup_code,
    )


def attempt_login(email: str, password: str, ip: Optional[str], user_agent: Optional[str],
                  two_factor_code: Optional[str] = None,
                  pending_token: Optional[str] = None) -> LoginOutcome:
    locked = _ip_gate(ip)
    if locked:
        return locked

    user = find_account(email)
    usable = user is not None and user.can_login

    if usable:
        locked = _account_gate(user.id)
        if locked:
            return locked

    if not verify_credentials(user if usable else None, password):
        _fail(user.id if usable else None, ip, "LOGIN_FAIL", email=(email or "").strip().lower())
        return InvalidCredentials()

    method = two_factor.enabled_method(user.id)
    pending_id = None
    used_backup_code = False

    if method is not None:
        if not two_factor_code:
            if method == two_factor.METHOD_EMAIL:
                two_factor.send_login_challenge(user)
            ttl = current_app.config.get("PENDING_2FA_TTL_SECONDS", 600)
            _, token = sessions.issue_session(
                user.id, ip, user_agent, ttl_seconds=ttl, purpose=PURPOSE_PENDING_2FA
            )
            logger.info("login_two_factor_required", user_id=user.id, method=method)
            log_event("LOGIN_2FA_REQUIRED", user_id=user.id, metadata={"method": method})
            return TwoFactorRequired(pending_token=token, method=method, user_id=user.id)

        result = two_factor.verify(user.id, two_factor_code)
        if not result.ok:
            _fail(user.id, ip, "LOGIN_2FA_FAIL")
            return InvalidTwoFactorCode()
        used_backup_code = result.used_backup_code

        pending = _pending_session(pending_token, PURPOSE_PENDING_2FA, user.id)
        pending_id = pending.id if pending else None

    return _complete(user, ip, user_agent, pending_session_id=pending_id, used_backup_code=used_backup_code)


def complete_two_factor_login(user_id: int, code: str, pending_token: Optional[str],
                              ip: Optional[str], user_agent: Optional[str]) -> LoginOutcome:
    """Second step of a login that stopped at TwoFactorRequired."""
    pending = _pending_session(pending_token, PURPOSE_PENDING_2FA, user_id)
    if pending is None:
        raise AuthenticationError("Login session expired. Please sign in again.", error_code="invalid_temp_token")

    locked = _ip_gate(ip)
    if locked:
        return locked

    user = db.session.get(User, user_id)
    if user is None or not user.can_login:
        sessions.terminate(pending.id, sessions.REASON_LOGIN_COMPLETED)
        return InvalidCredentials()

    locked = _account_gate(user.id)
    if locked:
        return locked

    result = two_factor.verify(user.id, code)
    if not result.ok:
        _fail(user.id, ip, "LOGIN_2FA_FAIL")
        return InvalidTwoFactorCode()

    return _complete(user, ip, user_agent, pending_session_id=pending.id, used_backup_code=result.used_backup_code)


def complete_required_password_change(user_id: int, current_password: Optional[str], new_password: str,
                                      ip: Optional[str], user_agent: Optional[str],
                                      pending_token: Optional[str] = None) -> LoginOutcome:
    """
    Rotate a password flagged must_change_password and issue a full session.
    Unknown, disabled and unflagged accounts all fail like a wrong password.
    """
    locked = _ip_gate(ip)
    if locked:
        return locked

    user = db.session.get(User, user_id) if user_id is not None else None
    usable = user is not None and user.can_login

    if usable:
        locked = _account_gate(user.id)
        if locked:
            return locked

    pending = _pending_session(pending_token, PURPOSE_PENDING_PASSWORD_CHANGE, user.id) if usable else None
    if pending is None and not verify_credentials(user if usable else None, current_password or ""):
        _fail(user.id if usable else None, ip, "PASSWORD_CHANGE_REQUIRED_FAIL")
        return InvalidCredentials()

    if not user.must_change_password:
        _fail(user.id, ip, "PASSWORD_CHANGE_REQUIRED_FAIL")
        return InvalidCredentials()

    set_password(user, new_password)
    sessions.terminate_all_except(user.id, pending.id if pending else None, sessions.REASON_PASSWORD_CHANGED)
    log_event("PASSWORD_CHANGE", user_id=user.id, metadata={"forced": True})

    return _complete(user, ip, user_agent, pending_session_id=pending.id if pending else None)
