import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from security.errors import InvalidKey


class OperationType(str, enum.Enum):
    SIGN_IN = "sign_in"
    SIGN_UP = "sign_up"
    PASSWORD_RESET = "password_reset"


def normalize_identity(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


@dataclass(frozen=True)
class AttemptKey:
    identity: str
    operation_type: OperationType

    @classmethod
    def build(cls, identity, operation_type) -> "AttemptKey":
        """
        Validates and normalizes a key. Never coerces: an empty identity or an
        operation type outside OperationType raises InvalidKey.
        """
        normalized = normalize_identity(identity)
        if not normalized:
            raise InvalidKey("identity must be a non-empty string")
        if len(normalized) > 255:
            raise InvalidKey("identity is too long")

        if isinstance(operation_type, OperationType):
            op = operation_type
        else:
            try:
                op = OperationType(operation_type)
            except ValueError:
                raise InvalidKey(f"unknown operation type: {operation_type!r}") from None

        return cls(identity=normalized, operation_type=op)


@dataclass(frozen=True)
class AttemptRecord:
    """Point-in-time copy of one ledger row, detached from the DB session."""
    key: AttemptKey
    failure_count: int = 0
    first_failure_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, key: AttemptKey, row) -> "AttemptRecord":
        return cls(
            key=key,
            failure_count=row.failure_count or 0,
            first_failure_at=row.first_failure_at,
            locked_until=row.locked_until,
            last_attempt_at=row.last_attempt_at,
        )
