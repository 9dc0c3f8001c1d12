import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as attempt_guard.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "attempt_guard.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Brute-force protection, counted per (identity, operation type)
    MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
    LOCKOUT_MINUTES = float(os.getenv("LOCKOUT_MINUTES", "15"))

    # Storage outage policy: False denies attempts (fail-closed)
    RATE_LIMITER_FAIL_OPEN = _env_bool("RATE_LIMITER_FAIL_OPEN", "false")

    # Whether failed-attempt responses carry remaining_attempts
    DISCLOSE_REMAINING_ATTEMPTS = _env_bool("DISCLOSE_REMAINING_ATTEMPTS", "true")

    # Compaction: cleared rows and expired locks older than this are purged
    ATTEMPT_RETENTION_HOURS = int(os.getenv("ATTEMPT_RETENTION_HOURS", "24"))

    # Minimum password length accepted at sign-up
    PASSWORD_MIN_LEN = int(os.getenv("PASSWORD_MIN_LEN", "12"))

    # Basic app settings
    DEBUG = False
