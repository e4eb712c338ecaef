import os
import re
from datetime import datetime, timedelta, timezone

os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pyotp  # noqa: E402
import pytest  # noqa: E402

from app import create_app  # noqa: E402
from config import TestConfig  # noqa: E402
from models import db  # noqa: E402
from security import two_factor  # noqa: E402
from security.credentials import create_account  # noqa: E402
from security.session import issue_session  # noqa: E402
from utils import clock, emailer  # noqa: E402

DEFAULT_PASSWORD = "Str0ng-Passw0rd!"
START = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def totp_code(secret: str, when: datetime) -> str:
    return pyotp.TOTP(secret).at(when.replace(tzinfo=timezone.utc))


def last_code(outbox) -> str:
    match = re.search(r"\b(\d{6})\b", outbox[-1]["body"])
    assert match, outbox[-1]["body"]
    return match.group(1)


@pytest.fixture
def frozen_clock(monkeypatch):
    fake = FakeClock(START)
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
def app(tmp_path, frozen_clock):
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + str(tmp_path / "authcore-test.db")
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}

    app = create_app(_Config)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def _send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    monkeypatch.setattr(emailer, "send_email", _send)
    return sent


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(email=None, password=DEFAULT_PASSWORD, roles=("USER",), **fields):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user = create_account(email, password, roles=roles, enforce_policy=False)
        for key, value in fields.items():
            setattr(user, key, value)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user, ip="127.0.0.1", user_agent="pytest"):
        _, token = issue_session(user.id, ip, user_agent)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def enable_totp(app, frozen_clock):
    def _enable(user):
        payload = two_factor.start_enrollment(user, "TOTP")
        result = two_factor.confirm_enrollment(user, totp_code(payload["secret"], frozen_clock.now))
        return payload["secret"], result["backup_codes"]

    return _enable


@pytest.fixture
def login(client):
    def _login(email, password=DEFAULT_PASSWORD, ip="10.0.0.1", user_agent="pytest", **extra):
        body = {"email": email, "password": password}
        body.update(extra)
        return client.post(
            "/auth/login",
            json=body,
            headers={"User-Agent": user_agent},
            environ_base={"REMOTE_ADDR": ip},
        )

    return _login
