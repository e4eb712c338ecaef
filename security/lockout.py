from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.lockout import AccountLockout, IpLockout
from models.user import User
from security.errors import NotFoundError
from utils import clock, emailer
from utils.audit import log_event
from utils.logger import get_logger
from utils.settings import get_bool, get_int, get_setting

logger = get_logger(__name__)

SCOPE_ACCOUNT = "account"
SCOPE_IP = "ip"

STATUS_LOCKED = "locked"
STATUS_UNLOCKED = "unlocked"
STATUS_ALL = "all"


@dataclass
class LockStatus:
    locked: bool
    retry_after_seconds: int = 0


@dataclass
class FailureResult:
    account_attempts: int = 0
    account_locked: bool = False
    ip_locked: bool = False


def lockout_enabled() -> bool:
    return get_bool("lockoutEnabled", True)


def _duration() -> timedelta:
    return timedelta(minutes=get_int("lockoutDuration", 30))


def _status_of(locked_until, now) -> LockStatus:
    if locked_until is None or locked_until <= now:
        return LockStatus(False, 0)
    seconds = int((locked_until - now).total_seconds())
    return LockStatus(True, max(seconds, 1))


def check_locked(scope: str, key) -> LockStatus:
    """
    Returns LockStatus for an account id (scope "account") or an address
    (scope "ip"). Always unlocked while lockout is disabled.
    """
    if not lockout_enabled() or key is None:
        return LockStatus(False, 0)

    if scope == SCOPE_ACCOUNT:
        stmt = select(AccountLockout.locked_until).where(AccountLockout.user_id == key)
    elif scope == SCOPE_IP:
        stmt = select(IpLockout.locked_until).where(IpLockout.ip == key)
    else:
        raise ValueError(f"unknown lockout scope: {scope}")

    locked_until = db.session.execute(stmt).scalar_one_or_none()
    return _status_of(locked_until, clock.utcnow())


def _ensure_row(model, **key) -> None:
    exists = db.session.execute(select(model.id).filter_by(**key)).scalar_one_or_none()
    if exists is not None:
        return
    try:
        db.session.add(model(failed_attempts=0, **key))
        db.session.commit()
    except IntegrityError:
        # another request created it first
        db.session.rollback()


def record_failure(user_id: Optional[int], ip: Optional[str]) -> FailureResult:
    """
    Count one failed attempt against the account (when known) and the IP.
    Locks the account at lockoutMaxAttempts and escalates to an IP lock once
    lockoutIpLockoutThreshold accounts are locked from the same address.
    """
    result = FailureResult()
    if not lockout_enabled():
        return result

    now = clock.utcnow()
    duration = _duration()
    max_attempts = get_int("lockoutMaxAttempts", 5)

    if ip:
        _ensure_row(IpLockout, ip=ip)
        db.session.execute(
            update(IpLockout)
            .where(IpLockout.ip == ip)
            .values(failed_attempts=IpLockout.failed_attempts + 1, last_failed_at=now)
        )
        db.session.commit()

    if user_id is None:
        return result

    _ensure_row(AccountLockout, user_id=user_id)
    previous_lock = db.session.execute(
        select(AccountLockout.locked_until).where(AccountLockout.user_id == user_id)
    ).scalar_one_or_none()

    db.session.execute(
        update(AccountLockout)
        .where(AccountLockout.user_id == user_id)
        .values(
            failed_attempts=AccountLockout.failed_attempts + 1,
            last_failed_at=now,
            last_failed_ip=ip,
        )
    )
    attempts = db.session.execute(
        select(AccountLockout.failed_attempts).where(AccountLockout.user_id == user_id)
    ).scalar_one()
    result.account_attempts = attempts

    if attempts >= max_attempts:
        # sliding window: each failure past the threshold restarts the lock
        db.session.execute(
            update(AccountLockout)
            .where(AccountLockout.user_id == user_id)
            .values(locked_until=now + duration)
        )
        result.account_locked = True
    db.session.commit()

    if not result.account_locked:
        return result

    newly_locked = previous_lock is None or previous_lock <= now
    if newly_locked:
        logger.warning("account_locked", user_id=user_id, ip=ip, attempts=attempts)
        log_event(
            "ACCOUNT_LOCKED",
            user_id=user_id,
            entity="account_lockout",
            entity_id=user_id,
            metadata={"ip": ip, "attempts": attempts},
        )
        _notify_account_locked(user_id, ip, attempts)

    if ip:
        result.ip_locked = _maybe_escalate_ip(ip, now, duration)
    return result


def _maybe_escalate_ip(ip: str, now, duration: timedelta) -> bool:
    threshold = get_int("lockoutIpLockoutThreshold", 2)
    locked_accounts = db.session.execute(
        select(func.count(AccountLockout.id)).where(
            AccountLockout.last_failed_ip == ip,
            AccountLockout.locked_until > now,
        )
    ).scalar_one()
    if locked_accounts < threshold:
        return False

    db.session.execute(
        update(IpLockout).where(IpLockout.ip == ip).values(locked_until=now + duration)
    )
    db.session.commit()
    logger.warning("ip_locked", ip=ip, locked_accounts=locked_accounts)
    log_event(
        "IP_LOCKED",
        entity="ip_lockout",
        entity_id=ip,
        metadata={"locked_accounts": locked_accounts},
    )
    return True


def _notify_account_locked(user_id: int, ip: Optional[str], attempts: int) -> None:
    to_email = get_setting("lockoutNotificationEmail", "")
    if not to_email:
        return
    user = db.session.get(User, user_id)
    subject, body = emailer.account_locked_message(
        user.email if user else str(user_id), ip, attempts, get_int("lockoutDuration", 30)
    )
    ok, err = emailer.send_email(to_email, subject, body)
    if not ok:
        logger.warning("lockout_notification_failed", user_id=user_id, error=err)


def record_success(user_id: int) -> None:
    """Reset the account counter and lift the lock of its last failing IP."""
    ip = db.session.execute(
        select(AccountLockout.last_failed_ip).where(AccountLockout.user_id == user_id)
    ).scalar_one_or_none()

    db.session.execute(
        update(AccountLockout)
        .where(AccountLockout.user_id == user_id)
        .values(failed_attempts=0, locked_until=None)
    )
    if ip:
        db.session.execute(
            update(IpLockout)
            .where(IpLockout.ip == ip)
            .values(failed_attempts=0, locked_until=None)
        )
    db.session.commit()


# ---------------------------------------------------------------------------
# administration


def unlock_account(user_id: int, actor_id: Optional[int]) -> AccountLockout:
    row = AccountLockout.query.filter_by(user_id=user_id).first()
    if row is None:
        raise NotFoundError("No lockout record for this account")

    now = clock.utcnow()
    row.failed_attempts = 0
    row.locked_until = None
    row.unlocked_at = now
    row.unlocked_by = actor_id

    if row.last_failed_ip:
        db.session.execute(
            update(IpLockout)
            .where(IpLockout.ip == row.last_failed_ip)
            .values(failed_attempts=0, locked_until=None, unlocked_at=now, unlocked_by=actor_id)
        )
    db.session.commit()

    logger.info("account_unlocked", user_id=user_id, actor_id=actor_id)
    log_event(
        "ACCOUNT_UNLOCK",
        user_id=actor_id,
        entity="account_lockout",
        entity_id=user_id,
        metadata={"ip": row.last_failed_ip},
    )
    return row


def unlock_ip(ip: str, actor_id: Optional[int]) -> IpLockout:
    row = IpLockout.query.filter_by(ip=ip).first()
    if row is None:
        raise NotFoundError("No lockout record for this address")

    row.failed_attempts = 0
    row.locked_until = None
    row.unlocked_at = clock.utcnow()
    row.unlocked_by = actor_id
    db.session.commit()

    logger.info("ip_unlocked", ip=ip, actor_id=actor_id)
    log_event("IP_UNLOCK", user_id=actor_id, entity="ip_lockout", entity_id=ip)
    return row


def clear_all_accounts(actor_id: Optional[int]) -> int:
    now = clock.utcnow()
    res = db.session.execute(
        update(AccountLockout)
        .where(or_(AccountLockout.failed_attempts > 0, AccountLockout.locked_until.isnot(None)))
        .values(failed_attempts=0, locked_until=None, unlocked_at=now, unlocked_by=actor_id)
    )
    db.session.commit()
    cleared = res.rowcount or 0
    log_event("ACCOUNT_LOCKOUTS_CLEARED", user_id=actor_id, metadata={"count": cleared})
    return cleared


def clear_all_ips(actor_id: Optional[int]) -> int:
    now = clock.utcnow()
    res = db.session.execute(
        update(IpLockout)
        .where(or_(IpLockout.failed_attempts > 0, IpLockout.locked_until.isnot(None)))
        .values(failed_attempts=0, locked_until=None, unlocked_at=now, unlocked_by=actor_id)
    )
    db.session.commit()
    cleared = res.rowcount or 0
    log_event("IP_LOCKOUTS_CLEARED", user_id=actor_id, metadata={"count": cleared})
    return cleared


def _iso(value):
    return value.isoformat() if value else None


def _apply_status(query, model, status: str, now):
    if status == STATUS_LOCKED:
        return query.filter(model.locked_until.isnot(None), model.locked_until > now)
    if status == STATUS_UNLOCKED:
        return query.filter(or_(model.locked_until.is_(None), model.locked_until <= now))
    return query


def _page_args(page, per_page):
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), 100)
    return page, per_page


def account_lockout_to_dict(row: AccountLockout, now=None) -> dict:
    now = now or clock.utcnow()
    status = _status_of(row.locked_until, now)
    return {
        "user_id": row.user_id,
        "email": row.user.email if row.user else None,
        "failed_attempts": row.failed_attempts,
        "last_failed_at": _iso(row.last_failed_at),
        "last_failed_ip": row.last_failed_ip,
        "locked_until": _iso(row.locked_until),
        "is_locked": status.locked,
        "retry_after_seconds": status.retry_after_seconds,
        "unlocked_at": _iso(row.unlocked_at),
        "unlocked_by": row.unlocked_by,
    }


def ip_lockout_to_dict(row: IpLockout, now=None) -> dict:
    now = now or clock.utcnow()
    status = _status_of(row.locked_until, now)
    return {
        "ip": row.ip,
        "failed_attempts": row.failed_attempts,
        "last_failed_at": _iso(row.last_failed_at),
        "locked_until": _iso(row.locked_until),
        "is_locked": status.locked,
        "retry_after_seconds": status.retry_after_seconds,
        "unlocked_at": _iso(row.unlocked_at),
        "unlocked_by": row.unlocked_by,
    }


def list_account_lockouts(status: str = STATUS_ALL, search: Optional[str] = None,
                          page: int = 1, per_page: int = 20) -> dict:
    now = clock.utcnow()
    page, per_page = _page_args(page, per_page)

    q = AccountLockout.query.join(User, User.id == AccountLockout.user_id)
    q = _apply_status(q, AccountLockout, status, now)
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.filter(or_(User.email.ilike(like), AccountLockout.last_failed_ip.ilike(like)))

    total = q.count()
    rows = (
        q.order_by(AccountLockout.last_failed_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [account_lockout_to_dict(r, now) for r in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def list_ip_lockouts(status: str = STATUS_ALL, search: Optional[str] = None,
                     page: int = 1, per_page: int = 20) -> dict:
    now = clock.utcnow()
    page, per_page = _page_args(page, per_page)

    q = _apply_status(IpLockout.query, IpLockout, status, now)
    if search:
        q = q.filter(IpLockout.ip.ilike(f"%{search.strip()}%"))

    total = q.count()
    rows = (
        q.order_by(IpLockout.last_failed_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [ip_lockout_to_dict(r, now) for r in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def _stats_for(model, now) -> dict:
    day_ago = now - timedelta(hours=24)
    locked_filter = (model.locked_until.isnot(None), model.locked_until > now)

    total = db.session.execute(select(func.count(model.id))).scalar_one()
    locked = db.session.execute(select(func.count(model.id)).where(*locked_filter)).scalar_one()
    failed = db.session.execute(select(func.coalesce(func.sum(model.failed_attempts), 0))).scalar_one()
    recent = db.session.execute(
        select(func.count(model.id)).where(*locked_filter, model.last_failed_at >= day_ago)
    ).scalar_one()
    return {
        "total": total,
        "locked": locked,
        "unlocked": total - locked,
        "total_failed_attempts": int(failed),
        "locked_last_24h": recent,
    }


def lockout_stats() -> dict:
    now = clock.utcnow()
    return {
        "accounts": _stats_for(AccountLockout, now),
        "ips": _stats_for(IpLockout, now),
    }
