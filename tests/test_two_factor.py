import re
from datetime import timedelta

import pytest

from models.two_factor import BackupCode
from security import two_factor
from security.errors import AuthenticationError, ConflictError, ValidationError

from conftest import DEFAULT_PASSWORD, last_code, totp_code


def test_totp_enrollment_is_pending_until_confirmed(app, make_user, frozen_clock):
    user = make_user(email="gina@example.com")

    payload = two_factor.start_enrollment(user, "totp")

    assert payload["method"] == "TOTP"
    assert payload["provisioning_uri"].startswith("otpauth://totp/")
    assert "gina%40example.com" in payload["provisioning_uri"]
    assert two_factor.enabled_method(user.id) is None
    assert two_factor.two_factor_status(user)["pending"] is True

    with pytest.raises(AuthenticationError):
        two_factor.confirm_enrollment(user, "123")

    result = two_factor.confirm_enrollment(user, totp_code(payload["secret"], frozen_clock.now))

    assert result["success"] is True
    assert len(result["backup_codes"]) == 10
    assert all(re.fullmatch(r"[A-Z0-9]{8}", code) for code in result["backup_codes"])
    assert two_factor.enabled_method(user.id) == "TOTP"


def test_totp_tolerance_is_two_steps(app, make_user, enable_totp, frozen_clock):
    user = make_user()
    secret, _ = enable_totp(user)
    now = frozen_clock.now

    assert two_factor.verify(user.id, totp_code(secret, now - timedelta(seconds=60))).ok
    assert two_factor.verify(user.id, totp_code(secret, now + timedelta(seconds=60))).ok
    # 90 s is three full steps
    assert not two_factor.verify(user.id, totp_code(secret, now - timedelta(seconds=90))).ok
    assert not two_factor.verify(user.id, totp_code(secret, now + timedelta(seconds=90))).ok
    assert not two_factor.verify(user.id, totp_code(secret, now - timedelta(seconds=300))).ok
    assert not two_factor.verify(user.id, totp_code(secret, now + timedelta(seconds=300))).ok


def test_backup_codes_verify_exactly_once(app, make_user, enable_totp):
    user = make_user()
    _, codes = enable_totp(user)

    first = two_factor.verify(user.id, codes[0].lower())
    assert first.ok is True
    assert first.used_backup_code is True

    assert two_factor.verify(user.id, codes[0]).ok is False
    assert two_factor.two_factor_status(user)["backup_codes_remaining"] == 9


def test_cannot_enable_second_method(app, make_user, enable_totp):
    user = make_user()
    enable_totp(user)

    with pytest.raises(ConflictError):
        two_factor.start_enrollment(user, "TOTP")
    with pytest.raises(ConflictError):
        two_factor.start_enrollment(user, "EMAIL")
    with pytest.raises(ValidationError):
        two_factor.start_enrollment(user, "SMS")


def test_disable_requires_password_and_matching_method(app, make_user, enable_totp):
    user = make_user()
    enable_totp(user)

    with pytest.raises(AuthenticationError):
        two_factor.disable(user, "wrong-password")
    with pytest.raises(ConflictError):
        two_factor.disable(user, DEFAULT_PASSWORD, method="EMAIL")

    two_factor.disable(user, DEFAULT_PASSWORD, method="TOTP")

    assert two_factor.two_factor_status(user) == {
        "enabled": False,
        "method": "NONE",
        "pending": False,
        "backup_codes_remaining": 0,
    }
    assert BackupCode.query.filter_by(user_id=user.id).count() == 0


def test_regenerate_backup_codes_invalidates_previous(app, make_user, enable_totp, frozen_clock):
    user = make_user()
    secret, old_codes = enable_totp(user)

    with pytest.raises(AuthenticationError):
        two_factor.regenerate_backup_codes(user, "wrong-password", totp_code(secret, frozen_clock.now))

    new_codes = two_factor.regenerate_backup_codes(user, DEFAULT_PASSWORD, totp_code(secret, frozen_clock.now))

    assert len(new_codes) == 10
    assert two_factor.verify(user.id, old_codes[0]).ok is False
    assert two_factor.verify(user.id, new_codes[0]).ok is True


def test_email_code_expires(app, make_user, outbox, frozen_clock):
    user = make_user()
    two_factor.start_enrollment(user, "EMAIL")
    two_factor.confirm_enrollment(user, last_code(outbox))

    two_factor.send_login_challenge(user)
    code = last_code(outbox)
    frozen_clock.advance(minutes=11)

    assert two_factor.verify(user.id, code).ok is False


def test_email_code_single_use(app, make_user, outbox):
    user = make_user()
    two_factor.start_enrollment(user, "EMAIL")
    two_factor.confirm_enrollment(user, last_code(outbox))

    two_factor.send_login_challenge(user)
    code = last_code(outbox)

    assert two_factor.verify(user.id, code).ok is True
    assert two_factor.verify(user.id, code).ok is False


def test_email_challenge_dropped_after_too_many_guesses(app, make_user, outbox):
    user = make_user()
    two_factor.start_enrollment(user, "EMAIL")
    two_factor.confirm_enrollment(user, last_code(outbox))

    two_factor.send_login_challenge(user)
    code = last_code(outbox)
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(5):
        assert two_factor.verify(user.id, wrong).ok is False

    assert two_factor.verify(user.id, code).ok is False


# --- HTTP ---------------------------------------------------------------


def test_enrollment_over_http(app, client, make_user, auth_headers, frozen_clock):
    user = make_user()
    headers = auth_headers(user)

    enable = client.post("/2fa/enable", json={"method": "TOTP"}, headers=headers)
    assert enable.status_code == 200
    secret = enable.get_json()["secret"]

    verify = client.post("/2fa/verify", json={"code": totp_code(secret, frozen_clock.now)}, headers=headers)
    assert verify.status_code == 200
    assert len(verify.get_json()["backup_codes"]) == 10

    status = client.get("/2fa/status", headers=headers).get_json()
    assert status["enabled"] is True
    assert status["method"] == "TOTP"

    again = client.post("/2fa/enable", json={"method": "EMAIL"}, headers=headers)
    assert again.status_code == 409

    regen = client.post(
        "/2fa/backup-codes/regenerate",
        json={"password": DEFAULT_PASSWORD, "code": totp_code(secret, frozen_clock.now)},
        headers=headers,
    )
    assert regen.status_code == 200

    bad_disable = client.post("/2fa/disable", json={"password": "nope"}, headers=headers)
    assert bad_disable.status_code == 401

    disable = client.post("/2fa/disable", json={"password": DEFAULT_PASSWORD}, headers=headers)
    assert disable.status_code == 200


def test_two_factor_routes_require_session(app, client):
    assert client.get("/2fa/status").status_code == 401
    assert client.post("/2fa/enable", json={"method": "TOTP"}).status_code == 401
