"""
pytest configuration: every test gets a fresh file-backed SQLite database
and a rate limiter driven by a controllable clock.
"""
import os
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

# Cheap hashes for the suite; must be set before security.password is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from app import create_app  # noqa: E402
from models import db  # noqa: E402
from models.user import User  # noqa: E402
from security.bruteforce import RateLimiter, init_rate_limiter  # noqa: E402
from security.lockout_policy import LockoutConfig  # noqa: E402
from security.password import hash_password  # noqa: E402
from utils.clock import utcnow  # noqa: E402

PASSWORD = "CorrectHorse123!"


class BrokenSession:
    """Stands in for a session whose database has gone away."""

    def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    def commit(self):
        pass

    def rollback(self):
        pass


class FakeClock:
    def __init__(self, start=None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def broken_session():
    return BrokenSession()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(tmp_path, clock):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///" + str(tmp_path / "attempts.db"),
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
        "MAX_LOGIN_ATTEMPTS": 5,
        "LOCKOUT_MINUTES": 15,
    })
    init_rate_limiter(app, RateLimiter(config=LockoutConfig.from_mapping(app.config), clock=clock))

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def limiter(app):
    return app.extensions["attempt_limiter"]


@pytest.fixture
def user(app):
    row = User(email="player@example.com", password_hash=hash_password(PASSWORD))
    db.session.add(row)
    db.session.commit()
    return row
