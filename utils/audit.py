import json
from flask import current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog

def _request_origin():
    if not has_request_context():
        return None, None
    ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    user_agent = request.headers.get("User-Agent", "")
    return ip, (user_agent[:255] if user_agent else None)

def log_event(action: str, user_id=None, identity=None, operation_type=None, metadata=None):
    """
    Appends a row to the audit trail. A failed audit write is reported to the
    app logger and never turns into a failed request.
    """
    ip, user_agent = _request_origin()

    row = AuditLog(
        user_id=user_id,
        action=action,
        identity=identity,
        operation_type=operation_type,
        ip=ip,
        user_agent=user_agent,
        metadata_json=json.dumps(metadata) if metadata else None
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("audit write failed for %s: %s", action, exc)
