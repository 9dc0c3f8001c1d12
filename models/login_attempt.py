from utils.clock import utcnow
from models.db import db


class LoginAttempt(db.Model):
    __tablename__ = "login_attempts"
    __table_args__ = (
        db.UniqueConstraint("identity", "operation_type", name="uq_login_attempts_identity_operation"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # One row per (identity, operation_type); counters never mix across operations
    identity = db.Column(db.String(255), nullable=False, index=True)
    operation_type = db.Column(db.String(32), nullable=False)

    failure_count = db.Column(db.Integer, default=0, nullable=False)
    first_failure_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_attempt_at = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
