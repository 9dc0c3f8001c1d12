from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.user import User
from security.attempts import OperationType, normalize_identity
from security.bruteforce import check_admissible, record_failure, record_success
from security.errors import RateLimiterUnavailable
from security.password import hash_password, verify_password
from utils.audit import log_event


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _email_taken(email: str) -> bool:
    return User.query.filter_by(email=email).first() is not None


def _guarded(call, email: str, operation: OperationType):
    """
    Runs a limiter call under the configured outage policy.
    Fail-closed re-raises (the app answers 503); fail-open returns None and
    lets the attempt through, leaving an audit entry behind.
    """
    try:
        return call(email, operation)
    except RateLimiterUnavailable:
        if not current_app.config.get("RATE_LIMITER_FAIL_OPEN", False):
            raise
        log_event(
            "RATE_LIMITER_UNAVAILABLE",
            identity=email,
            operation_type=operation.value,
            metadata={"call": call.__name__, "policy": "fail_open"},
        )
        return None


def _locked_response(verdict):
    minutes = verdict.retry_after_minutes
    unit = "minute" if minutes == 1 else "minutes"
    resp = jsonify(
        error=f"Too many failed attempts. Account temporarily locked. Try again in {minutes} {unit}.",
        retry_after_seconds=verdict.retry_after_seconds,
    )
    resp.headers["Retry-After"] = str(verdict.retry_after_seconds)
    return resp, 429


def _rejected(message: str, status: int, verdict):
    body = {"error": message}
    if verdict is not None and current_app.config.get("DISCLOSE_REMAINING_ATTEMPTS", True):
        body["remaining_attempts"] = verdict.remaining_attempts
    return jsonify(body), status


@auth_bp.post("/login")
def login():
    data = _json_body()
    email = normalize_identity(data.get("email"))
    password = data.get("password") or ""

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400

    verdict = _guarded(check_admissible, email, OperationType.SIGN_IN)
    if verdict is not None and not verdict.allowed:
        log_event(
            "LOGIN_LOCKED",
            identity=email,
            operation_type=OperationType.SIGN_IN.value,
            metadata={"retry_after_seconds": verdict.retry_after_seconds},
        )
        return _locked_response(verdict)

    # Unknown emails go through the same hash check and the same counter
    user = User.query.filter_by(email=email).first()
    if not verify_password(password, user.password_hash if user else None):
        verdict = _guarded(record_failure, email, OperationType.SIGN_IN)
        locked_now = verdict is not None and not verdict.allowed
        log_event(
            "LOGIN_FAIL",
            user_id=user.id if user else None,
            identity=email,
            operation_type=OperationType.SIGN_IN.value,
            metadata={"locked_now": locked_now},
        )
        if locked_now:
            return _locked_response(verdict)
        return _rejected("Invalid credentials", 401, verdict)

    _guarded(record_success, email, OperationType.SIGN_IN)
    log_event("LOGIN_SUCCESS", user_id=user.id, identity=email, operation_type=OperationType.SIGN_IN.value)
    return jsonify(message="Signed in", email=user.email), 200


def _email_exists(email: str):
    verdict = _guarded(record_failure, email, OperationType.SIGN_UP)
    log_event("REGISTER_FAIL_EMAIL_EXISTS", identity=email, operation_type=OperationType.SIGN_UP.value)
    if verdict is not None and not verdict.allowed:
        return _locked_response(verdict)
    return _rejected("Email already registered", 409, verdict)


@auth_bp.post("/register")
def register():
    data = _json_body()
    email = normalize_identity(data.get("email"))
    password = data.get("password") or ""

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400

    verdict = _guarded(check_admissible, email, OperationType.SIGN_UP)
    if verdict is not None and not verdict.allowed:
        log_event("REGISTER_LOCKED", identity=email, operation_type=OperationType.SIGN_UP.value)
        return _locked_response(verdict)

    min_len = current_app.config.get("PASSWORD_MIN_LEN", 12)
    if not isinstance(password, str) or not (min_len <= len(password) <= 128):
        return jsonify(error=f"Password must be between {min_len} and 128 characters"), 400

    if _email_taken(email):
        return _email_exists(email)

    user = User(email=email, password_hash=hash_password(password))
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # a concurrent sign-up for the same email committed first
        db.session.rollback()
        return _email_exists(email)

    _guarded(record_success, email, OperationType.SIGN_UP)
    log_event("REGISTER_SUCCESS", user_id=user.id, identity=email, operation_type=OperationType.SIGN_UP.value)
    return jsonify(message="Registered successfully"), 201
