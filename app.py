from datetime import timedelta

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from models import db
from routes import health_bp, auth_bp
from security.attempts import AttemptKey, OperationType, normalize_identity
from security.bruteforce import get_rate_limiter, init_rate_limiter
from security.errors import InvalidKey, RateLimiterUnavailable
from utils.clock import utcnow


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    init_rate_limiter(app)

    @app.errorhandler(RateLimiterUnavailable)
    def _limiter_unavailable(exc):
        app.logger.error("attempt limiter unavailable, denying request: %s", exc)
        return jsonify(error="Service temporarily unavailable. Try again later."), 503

    @app.errorhandler(InvalidKey)
    def _invalid_key(exc):
        return jsonify(error="Invalid request"), 400

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("clear-attempts")
    @click.argument("email")
    @click.option(
        "--operation",
        type=click.Choice([op.value for op in OperationType]),
        default=None,
        help="Only clear this operation type (default: all).",
    )
    def clear_attempts(email, operation):
        """Reset failed-attempt counters and locks for an identity."""
        limiter = get_rate_limiter()
        identity = normalize_identity(email)
        if not identity:
            raise click.BadParameter("email must not be empty")

        if operation:
            limiter.ledger.clear(AttemptKey.build(identity, operation))
            click.echo(f"Cleared {operation} attempts for {identity}")
        else:
            count = limiter.ledger.clear_identity(identity)
            click.echo(f"Cleared {count} attempt record(s) for {identity}")

    @app.cli.command("purge-attempts")
    @click.option(
        "--older-than-hours",
        type=click.IntRange(min=0),
        default=None,
        help="Retention age (default: ATTEMPT_RETENTION_HOURS).",
    )
    def purge_attempts(older_than_hours):
        """Delete cleared records and long-expired locks."""
        if older_than_hours is None:
            older_than_hours = app.config.get("ATTEMPT_RETENTION_HOURS", 24)
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        deleted = get_rate_limiter().ledger.purge_stale(cutoff)
        click.echo(f"Purged {deleted} attempt record(s)")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
