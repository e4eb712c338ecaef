from datetime import timedelta
from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.ip_rate_limit import IpRateLimit
from utils import clock

def check_and_increment_login_rate(ip: str) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    Simple fixed window per IP, counted with atomic updates.
    """
    ip = ip or "unknown"
    now = clock.utcnow()

    window_seconds = current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 60)
    max_requests = current_app.config.get("LOGIN_RATE_MAX_REQUESTS", 20)
    window = timedelta(seconds=window_seconds)

    exists = db.session.execute(select(IpRateLimit.id).where(IpRateLimit.ip == ip)).scalar_one_or_none()
    if exists is None:
        try:
            db.session.add(IpRateLimit(ip=ip, window_start=now, count=0))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

    # Reset window if expired
    db.session.execute(
        update(IpRateLimit)
        .where(IpRateLimit.ip == ip, IpRateLimit.window_start <= now - window)
        .values(window_start=now, count=0)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(IpRateLimit)
        .where(IpRateLimit.ip == ip)
        .values(count=IpRateLimit.count + 1)
        .execution_options(synchronize_session=False)
    )
    count, window_start = db.session.execute(
        select(IpRateLimit.count, IpRateLimit.window_start).where(IpRateLimit.ip == ip)
    ).one()
    db.session.commit()

    if count > max_requests:
        retry_after = int((window_start + window - now).total_seconds())
        return False, max(retry_after, 1)

    return True, 0
