"""
IdempotencyGuard tests.

Tests cover:
- First acquire claims the key (PENDING, lock window set)
- Second acquire inside the window is in flight
- SUCCEEDED keys replay their snapshot
- Reuse with a different request hash conflicts
- Expired and FAILED keys are reclaimed
- sweep_expired marks stale PENDING keys FAILED
- A holder whose claim was taken over can neither succeed nor fail the key
"""

import pytest

from retail_kernel.db.engine import session_scope
from retail_kernel.exceptions import (
    IdempotencyClaimLostError,
    IdempotencyConflictError,
    IdempotencyInFlightError,
)
from retail_kernel.models.idempotency import IdempotencyStatus
from retail_kernel.services.idempotency_guard import (
    DEFAULT_LOCK_TTL_SECONDS,
    IdempotencyClaim,
    IdempotencyGuard,
    Replay,
    request_fingerprint,
)

SCOPE = "pos.receipt"


@pytest.fixture
def guard(committed_factory, clock):
    return IdempotencyGuard(committed_factory, clock=clock)


def _succeed(factory, guard, claim, snapshot):
    with session_scope(factory) as sess:
        guard.mark_succeeded(sess, claim, snapshot)


class TestAcquire:
    def test_first_acquire_claims_key(self, guard, clock):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")

        assert isinstance(claim, IdempotencyClaim)
        assert not claim.reclaimed
        record = guard.get(SCOPE, "K-1")
        assert record.status == IdempotencyStatus.PENDING
        assert record.request_hash == "hash-a"
        assert record.locked_until is not None

    def test_second_acquire_in_window_is_in_flight(self, guard, clock):
        guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS - 1)

        with pytest.raises(IdempotencyInFlightError) as exc_info:
            guard.acquire(SCOPE, "K-1", "hash-a")
        assert exc_info.value.key == "K-1"
        assert exc_info.value.http_status == 409

    def test_scopes_are_independent(self, guard):
        guard.acquire(SCOPE, "K-1", "hash-a")
        other = guard.acquire("telebirr.tx", "K-1", "hash-a")
        assert isinstance(other, IdempotencyClaim)

    def test_missing_key_returns_none(self, guard):
        assert guard.get(SCOPE, "never-used") is None


class TestOutcomes:
    def test_succeeded_key_replays_snapshot(self, committed_factory, guard):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        _succeed(committed_factory, guard, claim, {"id": "r-1", "grand_total": "110.00"})

        replay = guard.acquire(SCOPE, "K-1", "hash-a")

        assert isinstance(replay, Replay)
        assert replay.snapshot == {"id": "r-1", "grand_total": "110.00"}
        record = guard.get(SCOPE, "K-1")
        assert record.status == IdempotencyStatus.SUCCEEDED
        assert record.locked_until is None

    def test_different_hash_conflicts(self, committed_factory, guard):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        _succeed(committed_factory, guard, claim, {"id": "r-1"})

        with pytest.raises(IdempotencyConflictError):
            guard.acquire(SCOPE, "K-1", "hash-b")

    def test_conflict_checked_while_pending(self, guard):
        guard.acquire(SCOPE, "K-1", "hash-a")
        with pytest.raises(IdempotencyConflictError):
            guard.acquire(SCOPE, "K-1", "hash-b")

    def test_failed_key_can_be_reclaimed(self, guard):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        guard.mark_failed(claim, "Not enough available stock to issue")

        record = guard.get(SCOPE, "K-1")
        assert record.status == IdempotencyStatus.FAILED
        assert record.last_error == "Not enough available stock to issue"

        again = guard.acquire(SCOPE, "K-1", "hash-a")
        assert isinstance(again, IdempotencyClaim)
        assert again.reclaimed
        assert guard.get(SCOPE, "K-1").last_error is None

    def test_expired_lock_is_reclaimed(self, guard, clock):
        guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)

        again = guard.acquire(SCOPE, "K-1", "hash-a")

        assert isinstance(again, IdempotencyClaim)
        assert again.reclaimed
        assert again.locked_until > clock.now()

    def test_custom_lock_ttl(self, committed_factory, clock):
        guard = IdempotencyGuard(committed_factory, clock=clock, lock_ttl_seconds=5)
        guard.acquire(SCOPE, "K-1")
        clock.advance(6)
        assert isinstance(guard.acquire(SCOPE, "K-1"), IdempotencyClaim)


class TestClaimOwnership:
    def test_stale_failure_keeps_new_holders_success(self, committed_factory, guard, clock):
        stale = guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)
        fresh = guard.acquire(SCOPE, "K-1", "hash-a")
        _succeed(committed_factory, guard, fresh, {"id": "r-2"})

        guard.mark_failed(stale, "worker timed out")

        record = guard.get(SCOPE, "K-1")
        assert record.status == IdempotencyStatus.SUCCEEDED
        assert record.last_error is None
        replay = guard.acquire(SCOPE, "K-1", "hash-a")
        assert isinstance(replay, Replay)
        assert replay.snapshot == {"id": "r-2"}

    def test_stale_failure_leaves_new_claim_pending(self, guard, clock):
        stale = guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)
        fresh = guard.acquire(SCOPE, "K-1", "hash-a")

        guard.mark_failed(stale, "worker timed out")

        record = guard.get(SCOPE, "K-1")
        assert record.status == IdempotencyStatus.PENDING
        with pytest.raises(IdempotencyInFlightError):
            guard.acquire(SCOPE, "K-1", "hash-a")
        guard.mark_failed(fresh, "real failure")
        assert guard.get(SCOPE, "K-1").status == IdempotencyStatus.FAILED

    def test_stale_success_is_rejected(self, committed_factory, guard, clock):
        stale = guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)
        fresh = guard.acquire(SCOPE, "K-1", "hash-a")
        _succeed(committed_factory, guard, fresh, {"id": "r-2"})

        with pytest.raises(IdempotencyClaimLostError) as exc_info:
            _succeed(committed_factory, guard, stale, {"id": "r-1"})

        assert exc_info.value.code == "IDEMPOTENCY_CLAIM_LOST"
        assert guard.acquire(SCOPE, "K-1", "hash-a").snapshot == {"id": "r-2"}

    def test_swept_claim_cannot_succeed(self, committed_factory, guard, clock):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)
        guard.sweep_expired()

        with pytest.raises(IdempotencyClaimLostError):
            _succeed(committed_factory, guard, claim, {"id": "r-1"})
        assert guard.get(SCOPE, "K-1").status == IdempotencyStatus.FAILED

    def test_expired_claim_without_takeover_still_owned(self, committed_factory, guard, clock):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 1)

        _succeed(committed_factory, guard, claim, {"id": "r-1"})

        assert guard.get(SCOPE, "K-1").status == IdempotencyStatus.SUCCEEDED


class TestSweep:
    def test_sweep_marks_expired_pending_failed(self, guard, clock):
        guard.acquire(SCOPE, "K-old", "hash-a")
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 10)
        guard.acquire(SCOPE, "K-new", "hash-b")

        assert guard.sweep_expired() == 1

        old = guard.get(SCOPE, "K-old")
        assert old.status == IdempotencyStatus.FAILED
        assert old.last_error == "lock expired"
        assert guard.get(SCOPE, "K-new").status == IdempotencyStatus.PENDING

    def test_sweep_ignores_succeeded(self, committed_factory, guard, clock):
        claim = guard.acquire(SCOPE, "K-1", "hash-a")
        _succeed(committed_factory, guard, claim, None)
        clock.advance(DEFAULT_LOCK_TTL_SECONDS + 10)

        assert guard.sweep_expired() == 0


class TestFingerprint:
    def test_fingerprint_ignores_key_order(self):
        assert request_fingerprint({"a": 1, "b": "2"}) == request_fingerprint({"b": "2", "a": 1})

    def test_fingerprint_differs_on_value(self):
        assert request_fingerprint({"a": 1}) != request_fingerprint({"a": 2})
