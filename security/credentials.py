from typing import Iterable, Optional

from models import db
from models.user import User
from security.errors import ConflictError, ValidationError
from security.password import hash_password, verify_password
from security.password_policy import (
    check_password_history,
    record_password_history,
    validate_password,
)
from utils import clock
from utils.seed import grant_role

_dummy_hash: Optional[str] = None


def _timing_dummy_hash() -> str:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("not-a-real-password")
    return _dummy_hash


def normalize_email(email) -> str:
    return (email or "").strip().lower() if isinstance(email, str) else ""


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def find_account(email: str) -> Optional[User]:
    email = normalize_email(email)
    if not email:
        return None
    return User.query.filter_by(email=email).first()


def verify_credentials(user: Optional[User], password: str) -> bool:
    """
    Check ``password`` against ``user``. Missing, inactive and soft-deleted
    accounts still pay for one bcrypt verification and then fail.
    """
    if user is None or not user.can_login:
        verify_password(password or "x", _timing_dummy_hash())
        return False
    return verify_password(password, user.password_hash)


def set_password(user: User, new_password: str) -> None:
    """Policy, history and same-as-current checks, then rotate and commit."""
    valid, errors = validate_password(new_password)
    if not valid:
        raise ValidationError("Password does not meet policy", details={"details": errors})

    if verify_password(new_password, user.password_hash):
        raise ValidationError("New password must be different from the current password")

    if not check_password_history(user.id, new_password):
        raise ValidationError("Password was used recently. Choose a different password.")

    user.password_hash = hash_password(new_password)
    user.password_changed_at = clock.utcnow()
    user.must_change_password = False
    record_password_history(user.id, user.password_hash)
    db.session.commit()


def create_account(email: str, password: str, full_name: Optional[str] = None,
                   roles: Iterable[str] = ("USER",), enforce_policy: bool = True) -> User:
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("Invalid email")

    if enforce_policy:
        valid, errors = validate_password(password)
        if not valid:
            raise ValidationError("Password does not meet policy", details={"details": errors})

    if User.query.filter_by(email=email).first():
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name,
        password_changed_at=clock.utcnow(),
    )
    db.session.add(user)
    db.session.flush()

    for name in roles:
        grant_role(user, name)

    record_password_history(user.id, user.password_hash)
    db.session.commit()
    return user
