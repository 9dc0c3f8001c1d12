from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import and_, case, delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.login_attempt import LoginAttempt
from security.attempts import AttemptKey, AttemptRecord
from security.errors import StorageUnavailable

# Concurrent first failures on a fresh key race on the unique constraint;
# the loser retries as an UPDATE.
INSERT_RETRIES = 3


def _key_filter(key: AttemptKey):
    return and_(
        LoginAttempt.identity == key.identity,
        LoginAttempt.operation_type == key.operation_type.value,
    )


class AttemptLedger:
    """
    Durable attempt counters backed by the login_attempts table.

    Every mutation is a single SQL statement (or an insert guarded by the
    unique constraint) and is committed before the call returns, so two
    workers hitting the same key never lose an increment. Different keys
    touch different rows and never wait on each other beyond what the
    database itself serializes.
    """

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def _storage_error(self, operation: str, key, exc: Exception) -> StorageUnavailable:
        try:
            self.session.rollback()
        except SQLAlchemyError as rollback_exc:
            current_app.logger.warning("attempt ledger rollback failed: %s", rollback_exc)
        current_app.logger.error("attempt ledger %s failed for %s: %s", operation, key, exc)
        return StorageUnavailable(f"attempt ledger {operation} failed")

    def _load(self, key: AttemptKey):
        stmt = select(
            LoginAttempt.failure_count,
            LoginAttempt.first_failure_at,
            LoginAttempt.locked_until,
            LoginAttempt.last_attempt_at,
        ).where(_key_filter(key))
        return self.session.execute(stmt).first()

    def get(self, key: AttemptKey) -> Optional[AttemptRecord]:
        try:
            row = self._load(key)
        except SQLAlchemyError as exc:
            raise self._storage_error("read", key, exc) from exc
        if row is None:
            return None
        return AttemptRecord.from_row(key, row)

    def atomic_increment_failure(self, key: AttemptKey, now: datetime) -> AttemptRecord:
        """
        Counts one failure and returns the row as it stands afterwards.

        A lock that has already expired is reset in the same statement, so the
        failure starts a new count at 1. A live lock is left untouched and the
        failure is not counted.
        """
        expired = and_(LoginAttempt.locked_until.is_not(None), LoginAttempt.locked_until <= now)
        restart = or_(expired, LoginAttempt.failure_count == 0)

        # MySQL applies SET clauses left to right, so columns that read
        # failure_count come before it.
        stmt = (
            update(LoginAttempt)
            .where(_key_filter(key))
            .where(or_(LoginAttempt.locked_until.is_(None), LoginAttempt.locked_until <= now))
            .ordered_values(
                (LoginAttempt.first_failure_at, case((restart, now), else_=LoginAttempt.first_failure_at)),
                (LoginAttempt.failure_count, case((expired, 1), else_=LoginAttempt.failure_count + 1)),
                (LoginAttempt.locked_until, None),
                (LoginAttempt.last_attempt_at, now),
            )
            .execution_options(synchronize_session=False)
        )

        for _ in range(INSERT_RETRIES):
            try:
                result = self.session.execute(stmt)
                if result.rowcount == 0 and self._load(key) is None:
                    self.session.execute(
                        insert(LoginAttempt).values(
                            identity=key.identity,
                            operation_type=key.operation_type.value,
                            failure_count=1,
                            first_failure_at=now,
                            last_attempt_at=now,
                        )
                    )
                row = self._load(key)
                self.session.commit()
                return AttemptRecord.from_row(key, row)
            except IntegrityError:
                self.session.rollback()
            except SQLAlchemyError as exc:
                raise self._storage_error("increment", key, exc) from exc

        raise StorageUnavailable("attempt ledger increment kept conflicting")

    def apply_lock(self, key: AttemptKey, until: datetime) -> bool:
        """
        Sets locked_until on a counted row that carries no lock yet.
        Returns False when another worker already locked it; the first lock wins
        so the window is never extended.
        """
        stmt = (
            update(LoginAttempt)
            .where(_key_filter(key))
            .where(LoginAttempt.locked_until.is_(None))
            .where(LoginAttempt.failure_count > 0)
            .values(locked_until=until)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._storage_error("lock", key, exc) from exc
        return result.rowcount > 0

    def clear(self, key: AttemptKey) -> None:
        """Back to the zero state. Idempotent; a missing row stays missing."""
        stmt = (
            update(LoginAttempt)
            .where(_key_filter(key))
            .values(failure_count=0, first_failure_at=None, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        try:
            self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._storage_error("clear", key, exc) from exc

    def clear_identity(self, identity: str) -> int:
        """Resets every operation type for one identity. Returns rows touched."""
        stmt = (
            update(LoginAttempt)
            .where(LoginAttempt.identity == identity)
            .where(LoginAttempt.failure_count > 0)
            .values(failure_count=0, first_failure_at=None, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._storage_error("clear", identity, exc) from exc
        return result.rowcount

    def purge_stale(self, cutoff: datetime) -> int:
        """
        Storage hygiene only. Deletes rows already back at zero and rows whose
        lock expired and whose last attempt came before cutoff. Rows still
        counting failures are kept.
        """
        stmt = (
            delete(LoginAttempt)
            .where(
                or_(
                    and_(LoginAttempt.failure_count == 0, LoginAttempt.updated_at < cutoff),
                    and_(
                        LoginAttempt.locked_until.is_not(None),
                        LoginAttempt.locked_until < cutoff,
                        LoginAttempt.last_attempt_at < cutoff,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._storage_error("purge", None, exc) from exc
        return result.rowcount
