from datetime import timedelta

import pytest

from models.password_history import PasswordHistory
from security.credentials import set_password
from security.errors import ValidationError
from security.password_policy import (
    check_password_expiration,
    check_password_history,
    password_strength,
    validate_password,
)
from utils.settings import set_setting

from conftest import DEFAULT_PASSWORD


def test_default_policy_only_checks_length(app):
    assert validate_password("abcdefgh") == (True, [])

    ok, errors = validate_password("short")
    assert ok is False
    assert errors == ["Password must be at least 8 characters"]

    ok, errors = validate_password("a" * 129)
    assert ok is False
    assert errors == ["Password must be at most 128 characters"]


def test_character_class_toggles(app):
    set_setting("minPasswordLength", 10)
    set_setting("passwordRequireUppercase", True)
    set_setting("passwordRequireNumber", True)
    set_setting("passwordRequireSpecialChar", True)

    ok, errors = validate_password("lowercaseonly")
    assert ok is False
    assert "Password must include at least 1 uppercase letter" in errors
    assert "Password must include at least 1 number" in errors
    assert "Password must include at least 1 special character" in errors

    assert validate_password("Lowercase1!x")[0] is True


def test_history_rejects_recent_passwords(app, make_user):
    set_setting("passwordHistoryCount", 3)
    user = make_user(password="first-Passw0rd")

    for pw in ("second-Passw0rd", "third-Passw0rd", "fourth-Passw0rd"):
        set_password(user, pw)

    assert PasswordHistory.query.filter_by(user_id=user.id).count() == 3
    assert check_password_history(user.id, "second-Passw0rd") is False
    assert check_password_history(user.id, "third-Passw0rd") is False
    assert check_password_history(user.id, "first-Passw0rd") is True

    with pytest.raises(ValidationError):
        set_password(user, "second-Passw0rd")
    with pytest.raises(ValidationError, match="different from the current"):
        set_password(user, "fourth-Passw0rd")

    set_password(user, "first-Passw0rd")


def test_history_disabled_records_nothing(app, make_user):
    user = make_user()
    set_password(user, "another-Passw0rd")

    assert PasswordHistory.query.count() == 0
    assert check_password_history(user.id, DEFAULT_PASSWORD) is True


def test_expiration(app, make_user, frozen_clock):
    user = make_user()
    assert check_password_expiration(user).days_remaining is None

    set_setting("passwordExpirationDays", 90)
    user.password_changed_at = frozen_clock.now - timedelta(days=10)
    status = check_password_expiration(user)
    assert status.expired is False
    assert status.days_remaining == 80

    user.password_changed_at = frozen_clock.now - timedelta(days=91)
    assert check_password_expiration(user).expired is True

    user.password_changed_at = None
    assert check_password_expiration(user).expired is True


def test_strength_scoring(app):
    strong = password_strength("Correct.Horse9Battery!")
    assert strong["score"] == 4
    assert strong["valid"] is True
    assert strong["feedback"] == []

    weak = password_strength("abc")
    assert weak["valid"] is False
    assert weak["score"] == 0
    assert weak["feedback"] == ["Password must be at least 8 characters"]


# --- HTTP ---------------------------------------------------------------


def test_change_password_revokes_other_sessions(app, client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)
    other = auth_headers(user)

    wrong = client.post("/auth/change_password", json={
        "current_password": "nope",
        "new_password": "Brand-New-Passw0rd",
    }, headers=headers)
    assert wrong.status_code == 401

    weak = client.post("/auth/change_password", json={
        "current_password": DEFAULT_PASSWORD,
        "new_password": "short",
    }, headers=headers)
    assert weak.status_code == 400
    assert weak.get_json()["details"] == ["Password must be at least 8 characters"]

    resp = client.post("/auth/change_password", json={
        "current_password": DEFAULT_PASSWORD,
        "new_password": "Brand-New-Passw0rd",
    }, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["revoked_sessions"] == 1

    assert client.get("/auth/me", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=other).status_code == 401


def test_password_strength_endpoint(app, client):
    resp = client.post("/auth/password_strength", json={"password": "Correct.Horse9Battery!"})
    assert resp.status_code == 200
    assert resp.get_json()["score"] == 4
