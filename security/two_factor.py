"""
Two-factor verification: TOTP apps (with single-use backup codes) and
one-time codes delivered by email. Providers are registered on the app by
``init_two_factor`` and looked up per method at request time.
"""
import hashlib
import re
import secrets
import string
from dataclasses import dataclass
from typing import Dict, List, Optional

import pyotp
from flask import current_app
from sqlalchemy import func, select, update

from models import db
from models.two_factor import (
    METHOD_EMAIL,
    METHOD_NONE,
    METHOD_TOTP,
    BackupCode,
    TwoFactorAuth,
)
from security.challenge_store import ChallengeStore, InMemoryChallengeStore
from security.errors import (
    AuthenticationError,
    ConflictError,
    TransientInfraError,
    ValidationError,
)
from security.password import verify_password
from utils import clock, emailer
from utils.audit import log_event
from utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_METHODS = (METHOD_TOTP, METHOD_EMAIL)

_TOTP_CODE = re.compile(r"^\d{6}$")
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class VerificationResult:
    ok: bool
    used_backup_code: bool = False


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


class TwoFactorCodeProvider:
    method: str = METHOD_NONE

    def start_enrollment(self, user, state: TwoFactorAuth) -> dict:
        raise NotImplementedError

    def send_challenge(self, user) -> None:
        """Push a code to the user when the method needs one; no-op otherwise."""

    def verify(self, user_id: int, state: TwoFactorAuth, code: str, allow_backup: bool = True) -> VerificationResult:
        raise NotImplementedError

    def on_enabled(self, user_id: int) -> Optional[List[str]]:
        return None


class TotpCodeProvider(TwoFactorCodeProvider):
    method = METHOD_TOTP

    def __init__(self, issuer: str, valid_window: int = 2, backup_count: int = 10, backup_length: int = 8):
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_count = backup_count
        self.backup_length = backup_length

    def start_enrollment(self, user, state: TwoFactorAuth) -> dict:
        state.secret = pyotp.random_base32()
        uri = pyotp.TOTP(state.secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        return {"method": self.method, "secret": state.secret, "provisioning_uri": uri}

    def verify_totp(self, secret: Optional[str], code: str) -> bool:
        if not secret or not _TOTP_CODE.match(code or ""):
            return False
        # pyotp treats naive datetimes as local time
        now = clock.as_aware(clock.utcnow())
        return pyotp.TOTP(secret).verify(code, for_time=now, valid_window=self.valid_window)

    def verify(self, user_id: int, state: TwoFactorAuth, code: str, allow_backup: bool = True) -> VerificationResult:
        code = (code or "").strip()
        if self.verify_totp(state.secret, code):
            return VerificationResult(ok=True)
        if allow_backup and len(code) == self.backup_length:
            if consume_backup_code(user_id, code):
                return VerificationResult(ok=True, used_backup_code=True)
        return VerificationResult(ok=False)

    def generate_backup_codes(self, user_id: int) -> List[str]:
        """Replace any previous batch; returns the plain codes (shown once)."""
        BackupCode.query.filter_by(user_id=user_id).delete()
        codes = [
            "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(self.backup_length))
            for _ in range(self.backup_count)
        ]
        for code in codes:
            db.session.add(BackupCode(user_id=user_id, code_hash=_hash_code(code)))
        db.session.commit()
        return codes

    def on_enabled(self, user_id: int) -> Optional[List[str]]:
        return self.generate_backup_codes(user_id)


class EmailCodeProvider(TwoFactorCodeProvider):
    method = METHOD_EMAIL

    def __init__(self, store: ChallengeStore, ttl_seconds: int = 600, length: int = 6):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.length = length

    def _new_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    def send_challenge(self, user) -> None:
        code = self._new_code()
        self.store.put(user.id, code, self.ttl_seconds)
        subject, body = emailer.verification_code_message(code, self.ttl_seconds)
        ok, err = emailer.send_email(user.email, subject, body)
        if not ok:
            self.store.discard(user.id)
            logger.error("two_factor_email_failed", user_id=user.id, error=err)
            raise TransientInfraError("Could not send verification code")

    def start_enrollment(self, user, state: TwoFactorAuth) -> dict:
        state.secret = None
        self.send_challenge(user)
        return {"method": self.method, "message": "Verification code sent to your email"}

    def verify(self, user_id: int, state: TwoFactorAuth, code: str, allow_backup: bool = True) -> VerificationResult:
        return VerificationResult(ok=self.store.take_if_match(user_id, (code or "").strip()))


class TwoFactorRegistry:
    def __init__(self, providers: Dict[str, TwoFactorCodeProvider], challenge_store: ChallengeStore):
        self.providers = providers
        self.challenge_store = challenge_store

    def provider(self, method: str) -> TwoFactorCodeProvider:
        try:
            return self.providers[method]
        except KeyError:
            raise ValidationError("Unsupported two-factor method", details={"method": method})


def init_two_factor(app, challenge_store: Optional[ChallengeStore] = None) -> TwoFactorRegistry:
    store = challenge_store or InMemoryChallengeStore(
        max_attempts=app.config.get("EMAIL_CODE_MAX_ATTEMPTS", 5)
    )
    registry = TwoFactorRegistry(
        providers={
            METHOD_TOTP: TotpCodeProvider(
                issuer=app.config.get("TWO_FACTOR_ISSUER", "AuthCore"),
                valid_window=app.config.get("TOTP_VALID_WINDOW", 2),
                backup_count=app.config.get("BACKUP_CODE_COUNT", 10),
                backup_length=app.config.get("BACKUP_CODE_LENGTH", 8),
            ),
            METHOD_EMAIL: EmailCodeProvider(
                store,
                ttl_seconds=app.config.get("EMAIL_CODE_TTL_SECONDS", 600),
                length=app.config.get("EMAIL_CODE_LENGTH", 6),
            ),
        },
        challenge_store=store,
    )
    app.extensions["two_factor"] = registry
    return registry


def registry() -> TwoFactorRegistry:
    return current_app.extensions["two_factor"]


def get_state(user_id: int) -> Optional[TwoFactorAuth]:
    return TwoFactorAuth.query.filter_by(user_id=user_id).first()


def enabled_method(user_id: int) -> Optional[str]:
    state = get_state(user_id)
    if state is None or not state.enabled or state.method == METHOD_NONE:
        return None
    return state.method


def consume_backup_code(user_id: int, code: str) -> bool:
    res = db.session.execute(
        update(BackupCode)
        .where(
            BackupCode.user_id == user_id,
            BackupCode.code_hash == _hash_code(code),
            BackupCode.used_at.is_(None),
        )
        .values(used_at=clock.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return (res.rowcount or 0) == 1


def remaining_backup_codes(user_id: int) -> int:
    return db.session.execute(
        select(func.count(BackupCode.id)).where(
            BackupCode.user_id == user_id, BackupCode.used_at.is_(None)
        )
    ).scalar_one()


def start_enrollment(user, method: str) -> dict:
    method = (method or "").strip().upper()
    if method not in SUPPORTED_METHODS:
        raise ValidationError("Invalid method. Use TOTP or EMAIL")

    state = get_state(user.id)
    if state is not None and state.enabled and state.method != METHOD_NONE:
        if state.method == method:
            raise ConflictError("Two-factor authentication is already enabled with this method")
        raise ConflictError("Disable the current two-factor method before enabling another")

    if state is None:
        state = TwoFactorAuth(user_id=user.id)
        db.session.add(state)
    state.method = method
    state.enabled = False
    state.enabled_at = None

    payload = registry().provider(method).start_enrollment(user, state)
    db.session.commit()

    log_event("TWO_FACTOR_SETUP_STARTED", user_id=user.id, metadata={"method": method})
    return payload


def confirm_enrollment(user, code: str) -> dict:
    state = get_state(user.id)
    if state is None or state.method == METHOD_NONE:
        raise ValidationError("No two-factor setup in progress")
    if state.enabled:
        raise ConflictError("Two-factor authentication is already enabled")

    provider = registry().provider(state.method)
    result = provider.verify(user.id, state, code, allow_backup=False)
    if not result.ok:
        log_event("TWO_FACTOR_SETUP_FAIL", user_id=user.id, metadata={"method": state.method})
        raise AuthenticationError("Invalid verification code", error_code="invalid_2fa_code")

    state.enabled = True
    state.enabled_at = clock.utcnow()
    db.session.commit()

    backup_codes = provider.on_enabled(user.id)
    logger.info("two_factor_enabled", user_id=user.id, method=state.method)
    log_event("TWO_FACTOR_ENABLED", user_id=user.id, metadata={"method": state.method})

    body = {"success": True, "method": state.method}
    if backup_codes:
        body["backup_codes"] = backup_codes
    return body


def send_login_challenge(user) -> None:
    method = enabled_method(user.id)
    if method is None:
        return
    registry().provider(method).send_challenge(user)


def verify(user_id: int, code: str) -> VerificationResult:
    """Check a login code against the account's enabled method."""
    state = get_state(user_id)
    if state is None or not state.enabled or state.method == METHOD_NONE:
        return VerificationResult(ok=False)
    if not code:
        return VerificationResult(ok=False)
    result = registry().provider(state.method).verify(user_id, state, code)
    if result.used_backup_code:
        logger.info("backup_code_used", user_id=user_id, remaining=remaining_backup_codes(user_id))
        log_event("TWO_FACTOR_BACKUP_CODE_USED", user_id=user_id)
    return result


def disable(user, password: str, method: Optional[str] = None) -> None:
    if not verify_password(password, user.password_hash):
        log_event("TWO_FACTOR_DISABLE_FAIL", user_id=user.id)
        raise AuthenticationError("Invalid password")

    state = get_state(user.id)
    if state is None or state.method == METHOD_NONE:
        raise ValidationError("Two-factor authentication is not enabled")

    if method and method.strip().upper() != state.method:
        raise ConflictError(
            "Requested method does not match the active two-factor method",
            details={"active_method": state.method},
        )

    previous = state.method
    state.method = METHOD_NONE
    state.secret = None
    state.enabled = False
    state.enabled_at = None
    BackupCode.query.filter_by(user_id=user.id).delete()
    db.session.commit()
    registry().challenge_store.discard(user.id)

    logger.info("two_factor_disabled", user_id=user.id, method=previous)
    log_event("TWO_FACTOR_DISABLED", user_id=user.id, metadata={"method": previous})


def regenerate_backup_codes(user, password: str, code: str) -> List[str]:
    if not verify_password(password, user.password_hash):
        raise AuthenticationError("Invalid password")

    state = get_state(user.id)
    if state is None or not state.enabled or state.method != METHOD_TOTP:
        raise ValidationError("Backup codes are only available with authenticator app two-factor")

    provider = registry().provider(METHOD_TOTP)
    if not provider.verify_totp(state.secret, (code or "").strip()):
        raise AuthenticationError("Invalid verification code", error_code="invalid_2fa_code")

    codes = provider.generate_backup_codes(user.id)
    log_event("TWO_FACTOR_BACKUP_CODES_REGENERATED", user_id=user.id)
    return codes


def two_factor_status(user) -> dict:
    state = get_state(user.id)
    if state is None or state.method == METHOD_NONE:
        return {"enabled": False, "method": METHOD_NONE, "pending": False, "backup_codes_remaining": 0}
    return {
        "enabled": state.enabled,
        "method": state.method,
        "pending": not state.enabled,
        "backup_codes_remaining": remaining_backup_codes(user.id) if state.method == METHOD_TOTP else 0,
    }
