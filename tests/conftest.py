"""
Shared fixtures: a fresh in-memory database per test and an outbox that
captures every email instead of talking to SMTP.
"""
import re

import pytest

from app import create_app
from config import Config
from models import db
from models.account import Account, Role
from models.security_settings import SecuritySettings
from security.password import hash_password

PASSWORD = "Correct-Horse9battery"

_CODE = re.compile(r"code is (\d{6})")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CREATE_TABLES_ON_START = True
    OTP_PEPPER = "test-pepper"
    SMTP_HOST = None
    SECURITY_ALERT_RECIPIENTS = ["soc@esprim.tn"]
    PORTAL_LOGIN_URL = "https://portal.example.test/login"
    MFA_REQUIRED_FOR_ALL = False


class Outbox(list):
    """Captured (to, subject, html, text) tuples."""

    fail = False

    def to(self, address):
        return [m for m in self if m[0] == address]

    def last_code(self, address):
        for to, _subject, _html, text in reversed(self):
            if to == address and text:
                match = _CODE.search(text)
                if match:
                    return match.group(1)
        raise AssertionError(f"no code mailed to {address}")


@pytest.fixture
def app(tmp_path):
    TestConfig.EVIDENCE_STORAGE_DIR = str(tmp_path / "evidence")
    app = create_app(TestConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()

    def fake_send(to_email, subject, html, text=None):
        if box.fail:
            return False, "smtp down"
        box.append((to_email, subject, html, text))
        return True, None

    monkeypatch.setattr("utils.emailer.send_email", fake_send)
    return box


@pytest.fixture
def make_account(app):
    """Factory: make_account("a@x.tn", roles=("admin",), must_change=True)."""

    def _make(email, roles=("user",), password=PASSWORD, must_change=False, **settings):
        with app.app_context():
            account = Account(
                email=email,
                password_hash=hash_password(password),
                first_name="Test",
                last_name=email.split("@")[0],
            )
            account.roles = Role.query.filter(Role.name.in_(roles)).all()
            db.session.add(account)
            db.session.flush()
            db.session.add(SecuritySettings(account_id=account.id, password_must_change=must_change, **settings))
            db.session.commit()
            return account.id

    return _make
