import threading
from datetime import timedelta

import pytest

from models.audit_log import AuditLog
from security.attempts import AttemptKey, OperationType
from security.bruteforce import RateLimiter
from security.errors import InvalidKey, RateLimiterUnavailable, StorageUnavailable
from security.ledger import AttemptLedger
from security.lockout_policy import Allowed, Locked, LockoutConfig

SIGN_IN = OperationType.SIGN_IN
SIGN_UP = OperationType.SIGN_UP


def _fail(limiter, identity, times, operation=SIGN_IN):
    verdict = None
    for _ in range(times):
        verdict = limiter.record_failure(identity, operation)
    return verdict


def test_fresh_key_is_allowed(limiter):
    assert limiter.check_admissible("a@x.com", SIGN_IN) == Allowed(remaining_attempts=5)


@pytest.mark.parametrize("failures", [1, 2, 3, 4])
def test_remaining_attempts_after_failures(limiter, failures):
    verdict = _fail(limiter, "a@x.com", failures)
    assert verdict == Allowed(remaining_attempts=5 - failures)
    assert limiter.check_admissible("a@x.com", SIGN_IN) == Allowed(remaining_attempts=5 - failures)


def test_fifth_failure_locks_on_the_same_request(limiter):
    assert _fail(limiter, "a@x.com", 4).allowed
    verdict = limiter.record_failure("a@x.com", SIGN_IN)
    assert isinstance(verdict, Locked)
    assert verdict.retry_after == timedelta(minutes=15)


def test_sixth_attempt_is_rejected_until_expiry(limiter, clock):
    _fail(limiter, "a@x.com", 5)

    verdict = limiter.check_admissible("a@x.com", SIGN_IN)
    assert not verdict.allowed
    assert verdict.retry_after_seconds == 900

    clock.advance(minutes=14, seconds=59)
    verdict = limiter.check_admissible("a@x.com", SIGN_IN)
    assert not verdict.allowed
    assert verdict.retry_after_seconds == 1


def test_attempts_while_locked_do_not_extend_lock(limiter, clock):
    _fail(limiter, "a@x.com", 5)
    clock.advance(minutes=10)
    verdict = limiter.record_failure("a@x.com", SIGN_IN)
    assert verdict.retry_after == timedelta(minutes=5)


def test_lock_expires_naturally(limiter, clock):
    _fail(limiter, "a@x.com", 5)
    clock.advance(minutes=15)
    assert limiter.check_admissible("a@x.com", SIGN_IN) == Allowed(remaining_attempts=5)


def test_check_admissible_does_not_write(limiter, clock):
    _fail(limiter, "a@x.com", 5)
    before = limiter.ledger.get(AttemptKey.build("a@x.com", SIGN_IN))
    clock.advance(minutes=20)

    limiter.check_admissible("a@x.com", SIGN_IN)
    assert limiter.ledger.get(AttemptKey.build("a@x.com", SIGN_IN)) == before


def test_failure_after_expiry_starts_a_new_count(limiter, clock):
    _fail(limiter, "a@x.com", 5)
    clock.advance(minutes=16)
    assert limiter.record_failure("a@x.com", SIGN_IN) == Allowed(remaining_attempts=4)


@pytest.mark.parametrize("failures", [1, 2, 3, 4])
def test_success_resets_count(limiter, failures):
    _fail(limiter, "b@x.com", failures)
    limiter.record_success("b@x.com", SIGN_IN)
    assert limiter.check_admissible("b@x.com", SIGN_IN) == Allowed(remaining_attempts=5)
    assert limiter.record_failure("b@x.com", SIGN_IN) == Allowed(remaining_attempts=4)


def test_success_clears_a_lock(limiter):
    _fail(limiter, "a@x.com", 5)
    limiter.record_success("a@x.com", SIGN_IN)
    assert limiter.check_admissible("a@x.com", SIGN_IN) == Allowed(remaining_attempts=5)


def test_success_on_clear_key_is_a_noop(limiter):
    limiter.record_success("nobody@x.com", SIGN_IN)
    limiter.record_success("nobody@x.com", SIGN_IN)
    assert limiter.check_admissible("nobody@x.com", SIGN_IN) == Allowed(remaining_attempts=5)


def test_identities_are_independent(limiter):
    _fail(limiter, "a@x.com", 5)
    assert not limiter.check_admissible("a@x.com", SIGN_IN).allowed
    assert limiter.check_admissible("b@x.com", SIGN_IN) == Allowed(remaining_attempts=5)


def test_operation_types_are_independent(limiter):
    _fail(limiter, "a@x.com", 5, SIGN_IN)
    assert not limiter.check_admissible("a@x.com", SIGN_IN).allowed
    assert limiter.check_admissible("a@x.com", SIGN_UP) == Allowed(remaining_attempts=5)
    assert limiter.check_admissible("a@x.com", OperationType.PASSWORD_RESET).allowed


def test_identity_case_does_not_bypass(limiter):
    _fail(limiter, "a@x.com", 5)
    assert not limiter.check_admissible("  A@X.COM", SIGN_IN).allowed


def test_string_operation_types_are_accepted(limiter):
    _fail(limiter, "a@x.com", 2, "sign_in")
    assert limiter.check_admissible("a@x.com", SIGN_IN) == Allowed(remaining_attempts=3)


def test_invalid_keys_rejected_before_storage(app, clock, broken_session):
    limiter = RateLimiter(ledger=AttemptLedger(session=broken_session), clock=clock)
    with pytest.raises(InvalidKey):
        limiter.check_admissible("", SIGN_IN)
    with pytest.raises(InvalidKey):
        limiter.record_failure("a@x.com", "sign_out")
    with pytest.raises(InvalidKey):
        limiter.record_success("   ", SIGN_IN)


def test_storage_outage_surfaces_as_unavailable(app, clock, broken_session):
    limiter = RateLimiter(ledger=AttemptLedger(session=broken_session), clock=clock)
    for call in (limiter.check_admissible, limiter.record_failure, limiter.record_success):
        with pytest.raises(RateLimiterUnavailable) as excinfo:
            call("a@x.com", SIGN_IN)
        assert isinstance(excinfo.value.__cause__, StorageUnavailable)


def test_lockout_is_audited(limiter):
    _fail(limiter, "a@x.com", 5)
    rows = AuditLog.query.filter_by(action="LOCKOUT_APPLIED").all()
    assert len(rows) == 1
    assert rows[0].identity == "a@x.com"
    assert rows[0].operation_type == "sign_in"


def test_state_survives_a_new_limiter_instance(app, limiter, clock):
    _fail(limiter, "a@x.com", 5)
    restarted = RateLimiter(config=LockoutConfig(), clock=clock)
    assert not restarted.check_admissible("a@x.com", SIGN_IN).allowed


def test_custom_threshold(app, clock):
    limiter = RateLimiter(config=LockoutConfig(max_attempts=2, lockout_duration=timedelta(minutes=1)), clock=clock)
    assert limiter.record_failure("a@x.com", SIGN_IN) == Allowed(remaining_attempts=1)
    verdict = limiter.record_failure("a@x.com", SIGN_IN)
    assert verdict.retry_after == timedelta(minutes=1)


def _hammer(app, limiter, identity, workers):
    barrier = threading.Barrier(workers)
    errors = []

    def fail_once():
        with app.app_context():
            barrier.wait()
            try:
                limiter.record_failure(identity, SIGN_IN)
            except Exception as exc:  # collected and asserted below
                errors.append(exc)

    threads = [threading.Thread(target=fail_once) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


def test_parallel_failures_below_threshold_are_not_lost(app, clock):
    limiter = RateLimiter(config=LockoutConfig(max_attempts=50), clock=clock)
    assert _hammer(app, limiter, "race@x.com", 10) == []
    assert limiter.check_admissible("race@x.com", SIGN_IN) == Allowed(remaining_attempts=40)


def test_parallel_failures_past_threshold_lock_the_key(app, limiter):
    assert _hammer(app, limiter, "race@x.com", 8) == []
    record = limiter.ledger.get(AttemptKey.build("race@x.com", SIGN_IN))
    assert 5 <= record.failure_count <= 8
    assert record.locked_until is not None
    assert not limiter.check_admissible("race@x.com", SIGN_IN).allowed
