import pytest

from models import db
from models.session import Session
from security import session as sessions
from security.errors import AuthenticationError, AuthorizationError
from utils.settings import set_setting

CHROME_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{v}.0 Safari/537.36"
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"


def test_issue_and_validate(app, make_user):
    user = make_user()
    row, token = sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=120))

    assert row.token_hash != token
    assert row.device == "Desktop"

    check = sessions.validate_token(token)
    assert check.status == sessions.STATUS_LIVE
    assert check.session.id == row.id
    assert check.remaining_seconds == 3600
    assert check.warning is False

    assert sessions.validate_token("nope").status == sessions.STATUS_NOT_FOUND


def test_expired_session_reports_expired_and_is_terminated(app, make_user, frozen_clock):
    user = make_user()
    row, token = sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=60)

    frozen_clock.advance(seconds=60)
    check = sessions.validate_token(token)

    assert check.status == sessions.STATUS_EXPIRED
    refreshed = db.session.get(Session, row.id)
    assert refreshed.terminated_reason == sessions.REASON_TIMEOUT
    assert refreshed.is_live(frozen_clock.now) is False


def test_sweep_terminates_expired_sessions(app, make_user, frozen_clock):
    user = make_user()
    _, short = sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=60)
    sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=60)
    _, long_lived = sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=3600)

    frozen_clock.advance(minutes=2)

    assert sessions.sweep_expired() == 2
    assert sessions.sweep_expired() == 0
    assert sessions.validate_token(short).status == sessions.STATUS_EXPIRED
    assert sessions.validate_token(long_lived).live


def test_sweep_is_noop_without_auto_logout(app, make_user, frozen_clock):
    set_setting("sessionAutoLogoutOnTimeout", False)
    user = make_user()
    sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=60)

    frozen_clock.advance(minutes=2)

    assert sessions.sweep_expired() == 0


def test_prune_deletes_sessions_past_retention(app, make_user, frozen_clock):
    user = make_user()
    old, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    old_id = old.id
    sessions.terminate(old_id, sessions.REASON_LOGOUT)

    frozen_clock.advance(days=30)
    recent, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    recent_id = recent.id
    frozen_clock.advance(days=1)

    assert sessions.prune_terminated(0) == 0
    assert sessions.prune_terminated(30) == 1
    assert Session.query.filter_by(id=old_id).count() == 0
    assert Session.query.filter_by(id=recent_id).count() == 1


def test_renew_rotates_token(app, make_user, frozen_clock):
    user = make_user()
    row, old_token = sessions.issue_session(user.id, "10.0.0.1", "pytest")

    frozen_clock.advance(minutes=45)
    renewed, new_token = sessions.renew_session(row, user)

    assert new_token != old_token
    assert sessions.validate_token(old_token).status == sessions.STATUS_NOT_FOUND
    check = sessions.validate_token(new_token)
    assert check.session.id == renewed.id == row.id
    assert check.remaining_seconds == 3600


def test_renew_refuses_disabled_account_and_ended_session(app, make_user):
    user = make_user()
    row, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")

    user.is_active = False
    db.session.commit()
    with pytest.raises(AuthorizationError) as exc_info:
        sessions.renew_session(row, user)
    assert exc_info.value.status_code == 403

    user.is_active = True
    db.session.commit()
    sessions.terminate(row.id, sessions.REASON_LOGOUT)
    with pytest.raises(AuthenticationError):
        sessions.renew_session(db.session.get(Session, row.id), user)


def test_touch_is_throttled(app, make_user, frozen_clock):
    user = make_user()
    row, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")

    assert sessions.touch(row.id) is False
    frozen_clock.advance(seconds=61)
    assert sessions.touch(row.id) is True
    assert sessions.touch(row.id) is False


def test_terminate_all_except(app, make_user):
    user = make_user()
    keep, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    sessions.issue_session(user.id, "10.0.0.1", "pytest")
    sessions.issue_session(user.id, "10.0.0.1", "pytest")

    assert sessions.terminate_all_except(user.id, keep.id, sessions.REASON_LOGOUT_ALL) == 2
    assert [s["id"] for s in sessions.list_sessions(user.id)] == [keep.id]
    assert len(sessions.list_sessions(user.id, include_history=True)) == 3


def test_many_ips_flag_new_ip(app, make_user):
    user = make_user()
    for i in range(4):
        row, _ = sessions.issue_session(user.id, f"10.0.0.{i}", "pytest")
        assert row.suspicious_activity is False

    row, _ = sessions.issue_session(user.id, "192.168.1.1", "pytest")
    assert row.suspicious_activity is True
    assert "IP" in row.suspicious_reason

    known, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    assert known.suspicious_activity is False


def test_unrecognized_browser_is_flagged(app, make_user):
    user = make_user()
    for version in (118, 119, 120):
        sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=version))

    same_family, _ = sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=121))
    assert same_family.suspicious_activity is False

    other, _ = sessions.issue_session(user.id, "10.0.0.1", FIREFOX_LINUX)
    assert other.suspicious_activity is True
    assert "browser" in other.suspicious_reason


def test_new_browser_after_one_known_browser_is_flagged(app, make_user):
    user = make_user()
    for _ in range(3):
        row, _ = sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=120))
        assert row.suspicious_activity is False

    other, _ = sessions.issue_session(user.id, "10.0.0.1", FIREFOX_LINUX)

    assert other.suspicious_activity is True
    assert "browser" in other.suspicious_reason


def test_too_few_prior_sessions_skip_browser_check(app, make_user):
    user = make_user()
    sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=120))
    sessions.issue_session(user.id, "10.0.0.1", CHROME_WIN.format(v=120))

    row, _ = sessions.issue_session(user.id, "10.0.0.1", FIREFOX_LINUX)

    assert row.suspicious_activity is False


def test_concurrent_limit_is_flagged(app, make_user):
    set_setting("sessionMaxConcurrent", 2)
    user = make_user()
    sessions.issue_session(user.id, "10.0.0.1", "pytest")
    second, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    assert second.suspicious_activity is False

    third, _ = sessions.issue_session(user.id, "10.0.0.1", "pytest")
    assert third.suspicious_activity is True
    assert "Concurrent" in third.suspicious_reason


def test_detection_can_be_disabled(app, make_user):
    set_setting("sessionSuspiciousActivityEnabled", False)
    set_setting("sessionMaxConcurrent", 1)
    user = make_user()
    sessions.issue_session(user.id, "10.0.0.1", "pytest")

    row, _ = sessions.issue_session(user.id, "10.0.0.2", "pytest")
    assert row.suspicious_activity is False


def test_pending_sessions_are_not_full_sessions(app, make_user):
    user = make_user()
    _, token = sessions.issue_session(user.id, "10.0.0.1", "pytest", ttl_seconds=600, purpose="pending_2fa")

    assert sessions.validate_token(token).status == sessions.STATUS_NOT_FOUND
    assert sessions.validate_token(token, purpose="pending_2fa").live
    assert sessions.list_sessions(user.id) == []


# --- HTTP ---------------------------------------------------------------


def test_list_and_terminate_over_http(app, client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)
    other, other_token = sessions.issue_session(user.id, "10.0.0.2", FIREFOX_LINUX)

    listing = client.get("/sessions", headers=headers).get_json()
    assert listing["total"] == 2
    current = [s for s in listing["sessions"] if s["is_current"]]
    assert len(current) == 1
    assert {s["browser"] for s in listing["sessions"]} == {"Unknown", "Firefox"}

    resp = client.delete(f"/sessions/{other.id}", headers=headers)
    assert resp.status_code == 200
    assert sessions.validate_token(other_token).status == sessions.STATUS_TERMINATED

    assert client.delete("/sessions/99999", headers=headers).status_code == 404


def test_terminated_and_expired_tokens_are_rejected(app, client, make_user, auth_headers, frozen_clock):
    user = make_user()
    headers = auth_headers(user)
    other_headers = auth_headers(user)

    assert client.post("/sessions/terminate-others", headers=headers).get_json()["terminated"] == 1

    terminated = client.get("/auth/me", headers=other_headers)
    assert terminated.status_code == 401
    assert terminated.get_json()["code"] == "session_terminated"

    frozen_clock.advance(hours=2)
    expired = client.get("/auth/me", headers=headers)
    assert expired.status_code == 401
    assert expired.get_json()["code"] == "session_expired"


def test_timeout_warning_headers(app, client, make_user, auth_headers, frozen_clock):
    user = make_user()
    headers = auth_headers(user)

    frozen_clock.advance(seconds=3400)
    resp = client.get("/sessions/timeout", headers=headers)

    assert resp.status_code == 200
    assert resp.get_json()["remaining_seconds"] == 200
    assert resp.get_json()["warning"] is True
    assert resp.headers["X-Session-Timeout-Warning"] == "true"
    assert resp.headers["X-Session-Remaining-Seconds"] == "200"


def test_suspicious_session_headers(app, client, make_user, auth_headers):
    set_setting("sessionMaxConcurrent", 1)
    user = make_user()
    auth_headers(user)
    headers = auth_headers(user)

    resp = client.get("/auth/me", headers=headers)

    assert resp.headers["X-Session-Suspicious"] == "true"
    assert "Concurrent" in resp.headers["X-Session-Suspicious-Reason"]


def test_query_token_only_for_safe_methods(app, client, make_user):
    user = make_user()
    _, token = sessions.issue_session(user.id, "127.0.0.1", "pytest")

    assert client.get(f"/auth/me?token={token}").status_code == 200
    assert client.post(f"/auth/logout?token={token}").status_code == 401
    assert sessions.validate_token(token).live


def test_logout_terminates_current_session(app, client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    assert client.post("/auth/logout", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_refresh_issues_new_token_over_http(app, client, make_user, auth_headers, frozen_clock):
    user = make_user()
    headers = auth_headers(user)

    frozen_clock.advance(minutes=30)
    resp = client.post("/auth/refresh", headers=headers)

    assert resp.status_code == 200
    assert resp.headers["X-Session-Remaining-Seconds"] == "3600"
    new_headers = {"Authorization": f"Bearer {resp.get_json()['token']}"}

    assert client.get("/auth/me", headers=headers).status_code == 401
    me = client.get("/auth/me", headers=new_headers)
    assert me.status_code == 200
    assert me.headers["X-Session-Remaining-Seconds"] == "3600"
