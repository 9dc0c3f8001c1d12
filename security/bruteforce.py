from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from security.attempts import AttemptKey, OperationType
from security.errors import RateLimiterUnavailable, StorageUnavailable
from security.ledger import AttemptLedger
from security.lockout_policy import LockoutConfig, Verdict, evaluate, should_lock
from utils.audit import log_event
from utils.clock import utcnow

EXTENSION_KEY = "attempt_limiter"


class RateLimiter:
    """
    Decides whether an (identity, operation type) may attempt a credential
    check right now, and records the outcome of each check.

    All state lives in the ledger. Nothing about attempt counts or locks is
    ever taken from the client.
    """

    def __init__(
        self,
        ledger: Optional[AttemptLedger] = None,
        config: Optional[LockoutConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger or AttemptLedger()
        self.config = config or LockoutConfig()
        self.clock = clock

    def check_admissible(self, identity: str, operation_type) -> Verdict:
        """Read-only. Never writes, even when the stored lock has expired."""
        key = AttemptKey.build(identity, operation_type)
        try:
            record = self.ledger.get(key)
        except StorageUnavailable as exc:
            raise RateLimiterUnavailable("attempt limiter unavailable") from exc
        return evaluate(record, self.clock(), self.config)

    def record_failure(self, identity: str, operation_type) -> Verdict:
        """
        Counts a failed attempt. When this failure brings the count to the
        threshold the lock is applied before returning, so the verdict handed
        back for the triggering request is already Locked.
        """
        key = AttemptKey.build(identity, operation_type)
        now = self.clock()
        try:
            record = self.ledger.atomic_increment_failure(key, now)
            if should_lock(record, now, self.config):
                until = now + self.config.lockout_duration
                if self.ledger.apply_lock(key, until):
                    log_event(
                        "LOCKOUT_APPLIED",
                        identity=key.identity,
                        operation_type=key.operation_type.value,
                        metadata={"failure_count": record.failure_count, "locked_until": until.isoformat()},
                    )
                record = self.ledger.get(key)
        except StorageUnavailable as exc:
            raise RateLimiterUnavailable("attempt limiter unavailable") from exc
        return evaluate(record, now, self.config)

    def record_success(self, identity: str, operation_type) -> None:
        key = AttemptKey.build(identity, operation_type)
        try:
            self.ledger.clear(key)
        except StorageUnavailable as exc:
            raise RateLimiterUnavailable("attempt limiter unavailable") from exc


def init_rate_limiter(app, limiter: Optional[RateLimiter] = None) -> RateLimiter:
    if limiter is None:
        limiter = RateLimiter(config=LockoutConfig.from_mapping(app.config))
    app.extensions[EXTENSION_KEY] = limiter
    return limiter


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions[EXTENSION_KEY]


def check_admissible(identity: str, operation_type=OperationType.SIGN_IN) -> Verdict:
    return get_rate_limiter().check_admissible(identity, operation_type)


def record_failure(identity: str, operation_type=OperationType.SIGN_IN) -> Verdict:
    return get_rate_limiter().record_failure(identity, operation_type)


def record_success(identity: str, operation_type=OperationType.SIGN_IN) -> None:
    get_rate_limiter().record_success(identity, operation_type)
