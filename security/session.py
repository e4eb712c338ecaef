import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.session import PURPOSE_FULL, Session
from security import fingerprint
from security.errors import AuthenticationError, AuthorizationError, TransientInfraError
from utils import clock
from utils.audit import log_event
from utils.logger import get_logger
from utils.settings import get_bool, get_int

logger = get_logger(__name__)

STATUS_LIVE = "LIVE"
STATUS_EXPIRED = "EXPIRED"
STATUS_TERMINATED = "TERMINATED"
STATUS_NOT_FOUND = "NOT_FOUND"

REASON_LOGOUT = "LOGOUT"
REASON_LOGOUT_ALL = "LOGOUT_ALL"
REASON_TIMEOUT = "SESSION_TIMEOUT"
REASON_TERMINATED_BY_USER = "TERMINATED_BY_USER"
REASON_PASSWORD_CHANGED = "PASSWORD_CHANGED"
REASON_LOGIN_COMPLETED = "LOGIN_COMPLETED"

SUSPICIOUS_WINDOW = timedelta(hours=24)


@dataclass
class SessionCheck:
    status: str
    session: Optional[Session] = None
    remaining_seconds: int = 0
    warning: bool = False

    @property
    def live(self) -> bool:
        return self.status == STATUS_LIVE


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def detect_suspicious_activity(user_id: int, ip: Optional[str], user_agent: str) -> Tuple[bool, Optional[str]]:
    """
    Inspect the account's full sessions from the trailing 24 hours.
    Flags many distinct IPs, an unseen browser/OS among several known ones,
    or too many live sessions already open.
    """
    if not get_bool("sessionSuspiciousActivityEnabled", True):
        return False, None

    now = clock.utcnow()
    recent = (
        Session.query
        .filter(
            Session.user_id == user_id,
            Session.purpose == PURPOSE_FULL,
            Session.created_at >= now - SUSPICIOUS_WINDOW,
        )
        .all()
    )

    reasons: List[str] = []

    ips = {s.ip for s in recent if s.ip}
    if len(ips) > 3 and ip not in ips:
        reasons.append(f"Login from new IP after {len(ips)} distinct IPs in 24h")

    # counted per session: three logins from one browser still form a baseline
    agents = [s.user_agent for s in recent if s.user_agent]
    if len(agents) >= 3:
        known = {fingerprint.fingerprint(ua) for ua in agents}
        if fingerprint.fingerprint(user_agent) not in known:
            reasons.append("Login from unrecognized browser/OS")

    max_concurrent = get_int("sessionMaxConcurrent", 10)
    live_count = db.session.execute(
        select(func.count(Session.id)).where(
            Session.user_id == user_id,
            Session.purpose == PURPOSE_FULL,
            Session.terminated_at.is_(None),
            Session.expires_at > now,
        )
    ).scalar_one()
    if max_concurrent > 0 and live_count >= max_concurrent:
        reasons.append(f"Concurrent session limit reached ({live_count}/{max_concurrent})")

    if not reasons:
        return False, None
    return True, "; ".join(reasons)


def issue_session(user_id: int, ip: Optional[str], user_agent: Optional[str],
                  ttl_seconds: Optional[int] = None, purpose: str = PURPOSE_FULL) -> Tuple[Session, str]:
    """
    Creates a server-side session and returns (row, RAW token).
    Only the hash is stored in DB.
    """
    user_agent = (user_agent or "")[:255]
    if ttl_seconds is None:
        ttl_seconds = get_int("sessionTimeout", 3600)

    suspicious, reason = False, None
    if purpose == PURPOSE_FULL:
        try:
            suspicious, reason = detect_suspicious_activity(user_id, ip, user_agent)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("suspicious_check_failed", user_id=user_id, error=str(exc))

    last_error = None
    for attempt in (1, 2):
        raw_token = secrets.token_urlsafe(32)
        now = clock.utcnow()
        row = Session(
            user_id=user_id,
            token_hash=_hash_token(raw_token),
            purpose=purpose,
            device=fingerprint.device_class(user_agent),
            ip=ip,
            user_agent=user_agent,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            suspicious_activity=suspicious,
            suspicious_reason=reason[:255] if reason else None,
        )
        try:
            db.session.add(row)
            db.session.commit()
            break
        except SQLAlchemyError as exc:
            db.session.rollback()
            last_error = exc
            logger.error("session_create_failed", user_id=user_id, attempt=attempt, error=str(exc))
    else:
        raise TransientInfraError("Could not create session") from last_error

    if suspicious:
        logger.warning("suspicious_session", user_id=user_id, session_id=row.id, reason=reason)
        log_event(
            "SUSPICIOUS_SESSION",
            user_id=user_id,
            entity="session",
            entity_id=row.id,
            metadata={"reason": reason, "ip": ip},
        )
    return row, raw_token


def session_timeout_status(sess: Session) -> dict:
    now = clock.utcnow()
    remaining = max(int((sess.expires_at - now).total_seconds()), 0)
    warning_at = get_int("sessionTimeoutWarning", 300)
    return {
        "remaining_seconds": remaining,
        "warning": 0 < remaining <= warning_at,
        "warning_threshold_seconds": warning_at,
        "expires_at": sess.expires_at.isoformat(),
    }


def validate_token(raw_token: Optional[str], purpose: Optional[str] = PURPOSE_FULL) -> SessionCheck:
    """
    Resolve a raw bearer token. An expired session is terminated on sight
    with reason SESSION_TIMEOUT. ``purpose=None`` accepts any purpose.
    """
    if not raw_token:
        return SessionCheck(STATUS_NOT_FOUND)

    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    if sess is None or (purpose is not None and sess.purpose != purpose):
        return SessionCheck(STATUS_NOT_FOUND)

    if sess.terminated_at is not None:
        status = STATUS_EXPIRED if sess.terminated_reason == REASON_TIMEOUT else STATUS_TERMINATED
        return SessionCheck(status, sess)

    now = clock.utcnow()
    if sess.expires_at <= now:
        terminate(sess.id, REASON_TIMEOUT)
        return SessionCheck(STATUS_EXPIRED, sess)

    timeout = session_timeout_status(sess)
    return SessionCheck(STATUS_LIVE, sess, timeout["remaining_seconds"], timeout["warning"])


def touch(session_id: int) -> bool:
    """Refresh last_activity, at most once per SESSION_TOUCH_INTERVAL_SECONDS."""
    now = clock.utcnow()
    interval = current_app.config.get("SESSION_TOUCH_INTERVAL_SECONDS", 60)
    res = db.session.execute(
        update(Session)
        .where(
            Session.id == session_id,
            Session.terminated_at.is_(None),
            Session.last_activity <= now - timedelta(seconds=interval),
        )
        .values(last_activity=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return (res.rowcount or 0) == 1


def renew_session(sess: Session, user) -> Tuple[Session, str]:
    """
    Rotate the token of a live full session and restart its timeout.
    The previous token stops resolving as soon as this commits.
    """
    if user is None or not user.can_login:
        raise AuthorizationError("Account is disabled", error_code="account_disabled")

    now = clock.utcnow()
    if sess.purpose != PURPOSE_FULL or not sess.is_live(now):
        raise AuthenticationError("Session expired. Please sign in again.", error_code="session_expired")

    raw_token = secrets.token_urlsafe(32)
    expires_at = now + timedelta(seconds=get_int("sessionTimeout", 3600))
    res = db.session.execute(
        update(Session)
        .where(
            Session.id == sess.id,
            Session.token_hash == sess.token_hash,
            Session.terminated_at.is_(None),
        )
        .values(token_hash=_hash_token(raw_token), expires_at=expires_at, last_activity=now)
        .execution_options(synchronize_session="fetch")
    )
    db.session.commit()
    if (res.rowcount or 0) != 1:
        # renewed or terminated concurrently
        raise AuthenticationError("Session has been terminated.", error_code="session_terminated")

    logger.info("session_renewed", user_id=sess.user_id, session_id=sess.id)
    log_event("SESSION_RENEWED", user_id=sess.user_id, entity="session", entity_id=sess.id)
    return sess, raw_token


def terminate(session_id: int, reason: str) -> bool:
    res = db.session.execute(
        update(Session)
        .where(Session.id == session_id, Session.terminated_at.is_(None))
        .values(terminated_at=clock.utcnow(), terminated_reason=reason)
        .execution_options(synchronize_session="fetch")
    )
    db.session.commit()
    return (res.rowcount or 0) == 1


def terminate_all_except(user_id: int, keep_session_id: Optional[int], reason: str) -> int:
    stmt = update(Session).where(Session.user_id == user_id, Session.terminated_at.is_(None))
    if keep_session_id is not None:
        stmt = stmt.where(Session.id != keep_session_id)
    res = db.session.execute(
        stmt.values(terminated_at=clock.utcnow(), terminated_reason=reason)
        .execution_options(synchronize_session="fetch")
    )
    db.session.commit()
    return res.rowcount or 0


def sweep_expired() -> int:
    """Terminate every expired live session. No-op when auto logout is off."""
    if not get_bool("sessionAutoLogoutOnTimeout", True):
        return 0
    now = clock.utcnow()
    res = db.session.execute(
        update(Session)
        .where(Session.terminated_at.is_(None), Session.expires_at <= now)
        .values(terminated_at=now, terminated_reason=REASON_TIMEOUT)
        .execution_options(synchronize_session="fetch")
    )
    db.session.commit()
    return res.rowcount or 0


def prune_terminated(retention_days: int) -> int:
    """Delete sessions that ended (or lapsed) more than ``retention_days`` ago."""
    if retention_days <= 0:
        return 0
    cutoff = clock.utcnow() - timedelta(days=retention_days)
    res = db.session.execute(
        delete(Session)
        .where(or_(Session.terminated_at < cutoff, Session.expires_at < cutoff))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount or 0


def _iso(value):
    return value.isoformat() if value else None


def session_to_dict(sess: Session, current_session_id: Optional[int] = None) -> dict:
    now = clock.utcnow()
    info = fingerprint.describe(sess.user_agent)
    return {
        "id": sess.id,
        "device": sess.device or info["device"],
        "browser": info["browser"],
        "os": info["os"],
        "ip": sess.ip,
        "user_agent": sess.user_agent,
        "created_at": _iso(sess.created_at),
        "last_activity": _iso(sess.last_activity),
        "expires_at": _iso(sess.expires_at),
        "is_active": sess.is_live(now),
        "is_current": current_session_id is not None and sess.id == current_session_id,
        "suspicious_activity": sess.suspicious_activity,
        "suspicious_reason": sess.suspicious_reason,
        "terminated_at": _iso(sess.terminated_at),
        "terminated_reason": sess.terminated_reason,
    }


def list_sessions(user_id: int, include_history: bool = False,
                  current_session_id: Optional[int] = None) -> List[dict]:
    now = clock.utcnow()
    q = Session.query.filter(Session.user_id == user_id, Session.purpose == PURPOSE_FULL)
    if not include_history:
        q = q.filter(Session.terminated_at.is_(None), Session.expires_at > now)
    rows = q.order_by(Session.last_activity.desc(), Session.id.desc()).all()
    return [session_to_dict(s, current_session_id) for s in rows]
