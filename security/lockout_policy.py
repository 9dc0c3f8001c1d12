"""
Lockout decision logic.

Pure functions of (record, now, config). Nothing here touches the database;
the ledger supplies the record and the service acts on the verdict.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from security.attempts import AttemptRecord


@dataclass(frozen=True)
class LockoutConfig:
    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=15)

    def __post_init__(self):
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        if self.lockout_duration <= timedelta(0):
            raise ValueError("lockout_duration must be positive")

    @classmethod
    def from_mapping(cls, config) -> "LockoutConfig":
        """Builds the policy config from a Flask config (or any mapping)."""
        return cls(
            max_attempts=int(config.get("MAX_LOGIN_ATTEMPTS", 5)),
            lockout_duration=timedelta(minutes=float(config.get("LOCKOUT_MINUTES", 15))),
        )


@dataclass(frozen=True)
class Allowed:
    remaining_attempts: int

    allowed = True


@dataclass(frozen=True)
class Locked:
    retry_after: timedelta

    allowed = False

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after.total_seconds()))

    @property
    def retry_after_minutes(self) -> int:
        return max(1, math.ceil(self.retry_after.total_seconds() / 60))


Verdict = Union[Allowed, Locked]


def is_lock_active(record: Optional[AttemptRecord], now: datetime) -> bool:
    return bool(record and record.locked_until and now < record.locked_until)


def evaluate(record: Optional[AttemptRecord], now: datetime, config: LockoutConfig) -> Verdict:
    if record is None or record.failure_count <= 0:
        return Allowed(remaining_attempts=config.max_attempts)

    if record.locked_until is not None:
        if now < record.locked_until:
            return Locked(retry_after=record.locked_until - now)
        # Expired lock reads as a clean slate; the next write resets the row.
        return Allowed(remaining_attempts=config.max_attempts)

    return Allowed(remaining_attempts=max(0, config.max_attempts - record.failure_count))


def should_lock(record: AttemptRecord, now: datetime, config: LockoutConfig) -> bool:
    """True when this record has reached the threshold and carries no live lock."""
    return record.failure_count >= config.max_attempts and not is_lock_active(record, now)
