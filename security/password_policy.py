import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from models import db
from models.password_history import PasswordHistory
from security.password import verify_password
from utils import clock
from utils.settings import get_bool, get_int

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

MAX_PASSWORD_LENGTH = 128


@dataclass
class PasswordExpiration:
    expired: bool
    days_remaining: Optional[int]  # None when expiration is disabled


def _rules() -> dict:
    return {
        "min_len": get_int("minPasswordLength", 8),
        "require_upper": get_bool("passwordRequireUppercase"),
        "require_lower": get_bool("passwordRequireLowercase"),
        "require_digit": get_bool("passwordRequireNumber"),
        "require_special": get_bool("passwordRequireSpecialChar"),
    }


def validate_password(pw: str) -> Tuple[bool, List[str]]:
    errors: List[str] = []

    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    rules = _rules()
    min_len = rules["min_len"]

    if len(pw) < min_len:
        errors.append(f"Password must be at least {min_len} characters")
    if len(pw) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")

    if rules["require_upper"] and not _UPPER.search(pw):
        errors.append("Password must include at least 1 uppercase letter")
    if rules["require_lower"] and not _LOWER.search(pw):
        errors.append("Password must include at least 1 lowercase letter")
    if rules["require_digit"] and not _DIGIT.search(pw):
        errors.append("Password must include at least 1 number")
    if rules["require_special"] and not _SPECIAL.search(pw):
        errors.append("Password must include at least 1 special character")

    return (len(errors) == 0), errors


def check_password_history(user_id: int, plain: str) -> bool:
    """
    True when ``plain`` does not match any of the newest
    ``passwordHistoryCount`` digests. A count of 0 skips the lookup.
    """
    history_count = get_int("passwordHistoryCount", 0)
    if history_count <= 0:
        return True

    recent = (
        PasswordHistory.query
        .filter_by(user_id=user_id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        .limit(history_count)
        .all()
    )
    return not any(verify_password(plain, row.password_hash) for row in recent)


def record_password_history(user_id: int, password_hash: str) -> None:
    """Append the new digest and prune to the retention count. Caller commits."""
    history_count = get_int("passwordHistoryCount", 0)
    if history_count <= 0:
        return

    db.session.add(PasswordHistory(user_id=user_id, password_hash=password_hash))
    db.session.flush()

    stale = (
        PasswordHistory.query
        .filter_by(user_id=user_id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        .offset(history_count)
        .all()
    )
    for row in stale:
        db.session.delete(row)


def check_password_expiration(user) -> PasswordExpiration:
    max_days = get_int("passwordExpirationDays", 0)
    if max_days <= 0:
        return PasswordExpiration(expired=False, days_remaining=None)

    # never rotated counts as expired
    if user.password_changed_at is None:
        return PasswordExpiration(expired=True, days_remaining=0)

    days_since = (clock.utcnow() - user.password_changed_at).days
    if days_since >= max_days:
        return PasswordExpiration(expired=True, days_remaining=0)
    return PasswordExpiration(expired=False, days_remaining=max_days - days_since)


def password_strength(pw: str) -> dict:
    if not isinstance(pw, str):
        return {
            "score": 0,
            "valid": False,
            "feedback": ["Password must be a string"],
        }

    valid, errors = validate_password(pw)
    length = len(pw)
    min_len = _rules()["min_len"]

    # variety is scored on all four classes, whether or not they are required
    checks = [_UPPER, _LOWER, _DIGIT, _SPECIAL]
    variety = sum(1 for pat in checks if pat.search(pw))

    score = 0
    if length >= min_len:
        score += 1
    if length >= min_len + 4:
        score += 1
    if variety >= 3:
        score += 1
    if variety == len(checks) and length >= min_len:
        score += 1

    feedback: List[str] = []
    if not valid:
        feedback = errors
    else:
        if length < min_len + 4:
            feedback.append("Use a longer passphrase for extra strength")
        if variety < len(checks):
            feedback.append("Add more character variety to strengthen the password")

    return {
        "score": min(score, 4),
        "valid": valid,
        "feedback": feedback,
    }
