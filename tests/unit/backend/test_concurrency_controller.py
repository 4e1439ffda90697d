"""
Unit tests for the Concurrency Controller.

Tests:
- Retry policy backoff and jitter bounds
- execute_with_retry on transient, persistent and non-transient errors
- Deadlines
- In-flight registry (duplicate detection, sweep)
- Optimistic version checks on slots
"""

import random

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from opd_tokens.errors import AppError, ErrorCode, is_transient, is_concurrency_error
from opd_tokens.models import Slot
from opd_tokens.services.concurrency import (
    ConcurrencyController,
    Deadline,
    InFlightRegistry,
    RetryPolicy,
)


@pytest.fixture
def controller(token_engine, clock):
    """Controller with the default policy (one retry, 50ms base, 200ms cap)."""
    return ConcurrencyController(token_engine.session_factory, clock=clock, rng=random.Random(7))


class _Flaky:
    """Callable that raises the given errors in order, then returns 'done'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.attempts = []

    def __call__(self, attempt):
        self.attempts.append(attempt)
        if self.errors:
            raise self.errors.pop(0)
        return "done"


# =============================================================================
# Test retry policy
# =============================================================================

class TestRetryPolicy:

    def test_first_delay_within_jitter_bounds(self):
        """Base 50ms jittered by 0.5..1.0."""
        policy = RetryPolicy()
        rng = random.Random(1)
        for _ in range(50):
            delay = policy.delay_seconds(1, rng)
            assert 0.025 <= delay <= 0.05

    def test_delay_capped(self):
        """Late retries never wait longer than the 200ms cap."""
        policy = RetryPolicy()
        rng = random.Random(2)
        for _ in range(50):
            delay = policy.delay_seconds(12, rng)
            assert 0.1 <= delay <= 0.2

    def test_from_snapshot(self, token_engine):
        policy = RetryPolicy.from_snapshot(token_engine.config_view.snapshot())
        assert policy.max_retries == 1
        assert policy.base_delay_ms == 50
        assert policy.max_delay_ms == 200


# =============================================================================
# Test execute_with_retry
# =============================================================================

class TestExecuteWithRetry:

    def test_success_without_retry(self, controller, clock):
        op = _Flaky()
        assert controller.execute_with_retry(op, "noop") == "done"
        assert op.attempts == [0]
        assert clock.sleeps == []

    def test_retries_version_conflict_once(self, controller, clock):
        """A stale write is retried once after a bounded backoff."""
        op = _Flaky(StaleDataError("slot version changed"))
        assert controller.execute_with_retry(op, "reserve") == "done"
        assert op.attempts == [0, 1]
        assert len(clock.sleeps) == 1
        assert 0 < clock.sleeps[0] <= 0.2

    def test_retries_exhausted(self, controller):
        """A persistent conflict ends in MAX_RETRIES_EXCEEDED with a concurrency cause."""
        op = _Flaky(StaleDataError("first"), StaleDataError("second"))
        with pytest.raises(AppError) as exc_info:
            controller.execute_with_retry(op, "reserve")
        error = exc_info.value
        assert error.code == ErrorCode.MAX_RETRIES_EXCEEDED
        assert error.details["attempts"] == 2
        assert error.details["cause"] == "concurrency"
        assert op.attempts == [0, 1]

    def test_max_retries_override(self, controller, clock):
        op = _Flaky(StaleDataError("a"), StaleDataError("b"), StaleDataError("c"))
        assert controller.execute_with_retry(op, "reserve", max_retries=3) == "done"
        assert len(clock.sleeps) == 3
        assert all(delay <= 0.2 for delay in clock.sleeps)

    def test_non_transient_error_propagates(self, controller, clock):
        op = _Flaky(ValueError("bad input"))
        with pytest.raises(ValueError):
            controller.execute_with_retry(op, "reserve")
        assert op.attempts == [0]
        assert clock.sleeps == []

    def test_business_error_not_retried(self, controller):
        op = _Flaky(AppError(ErrorCode.SLOT_CAPACITY_EXCEEDED))
        with pytest.raises(AppError) as exc_info:
            controller.execute_with_retry(op, "reserve")
        assert exc_info.value.code == ErrorCode.SLOT_CAPACITY_EXCEEDED
        assert op.attempts == [0]

    def test_concurrent_modification_is_retried(self, controller):
        op = _Flaky(AppError(ErrorCode.CONCURRENT_MODIFICATION))
        assert controller.execute_with_retry(op, "swap") == "done"

    def test_expired_deadline_before_first_attempt(self, controller, clock):
        deadline = Deadline(clock, 5)
        clock.advance(6)
        op = _Flaky()
        with pytest.raises(AppError) as exc_info:
            controller.execute_with_retry(op, "reserve", deadline=deadline)
        assert exc_info.value.code == ErrorCode.SERVICE_UNAVAILABLE
        assert op.attempts == []

    def test_deadline_shorter_than_backoff(self, controller, clock):
        """No retry is started when the backoff would overrun the deadline."""
        deadline = Deadline(clock, 0.01)
        op = _Flaky(StaleDataError("conflict"))
        with pytest.raises(AppError) as exc_info:
            controller.execute_with_retry(op, "reserve", deadline=deadline)
        assert exc_info.value.code == ErrorCode.SERVICE_UNAVAILABLE
        assert op.attempts == [0]
        assert clock.sleeps == []


class TestTransientClassification:

    def test_stale_data_is_concurrency(self):
        error = StaleDataError("x")
        assert is_transient(error)
        assert is_concurrency_error(error)

    def test_token_number_collision_is_transient(self):
        error = IntegrityError(
            "INSERT INTO tokens", {}, Exception("UNIQUE constraint failed: tokens.slot_id, tokens.token_number")
        )
        assert is_transient(error)

    def test_other_integrity_error_is_not_transient(self):
        error = IntegrityError("INSERT INTO tokens", {}, Exception("NOT NULL constraint failed: tokens.priority"))
        assert not is_transient(error)

    def test_plain_exception_is_not_transient(self):
        assert not is_transient(RuntimeError("boom"))


# =============================================================================
# Test in-flight registry
# =============================================================================

class TestInFlightRegistry:

    def test_duplicate_key_rejected(self, clock):
        registry = InFlightRegistry(clock)
        registry.acquire("allocate:S1:P1")
        with pytest.raises(AppError) as exc_info:
            registry.acquire("allocate:S1:P1")
        assert exc_info.value.code == ErrorCode.OPERATION_IN_PROGRESS
        assert exc_info.value.details["operation_key"] == "allocate:S1:P1"

    def test_distinct_keys_independent(self, clock):
        registry = InFlightRegistry(clock)
        registry.acquire("allocate:S1:P1")
        registry.acquire("allocate:S1:P2")
        assert len(registry) == 2

    def test_track_releases_on_error(self, clock):
        registry = InFlightRegistry(clock)
        with pytest.raises(RuntimeError):
            with registry.track("move:T1"):
                assert "move:T1" in registry
                raise RuntimeError("failed")
        assert "move:T1" not in registry
        assert len(registry) == 0

    def test_sweep_evicts_stale_entries(self, clock):
        registry = InFlightRegistry(clock, max_age_seconds=300)
        registry.acquire("allocate:S1:P1")
        clock.advance(200)
        registry.acquire("allocate:S1:P2")
        clock.advance(150)

        evicted = registry.sweep()

        assert evicted == ["allocate:S1:P1"]
        assert "allocate:S1:P2" in registry

    def test_snapshot_reports_age(self, clock):
        registry = InFlightRegistry(clock)
        registry.acquire("cancel:T1")
        clock.advance(12)
        snapshot = registry.snapshot()
        assert snapshot == [{"operation_key": "cancel:T1", "age_seconds": 12.0}]

    def test_sweeper_starts_and_stops(self, clock):
        registry = InFlightRegistry(clock)
        registry.start_sweeper(interval_seconds=60)
        registry.stop_sweeper()
        assert registry._sweeper is None


# =============================================================================
# Test optimistic locking on real rows
# =============================================================================

class TestOptimisticLocking:

    def test_update_increments_version(self, token_engine, make_slot, controller):
        slot = make_slot()
        updated = controller.update_with_optimistic_lock(
            Slot, slot.slot_id, lambda s: setattr(s, "end_time", "10:30")
        )
        assert updated.end_time == "10:30"
        assert updated.version == slot.version + 1

    def test_update_missing_slot(self, controller):
        with pytest.raises(AppError) as exc_info:
            controller.update_with_optimistic_lock(Slot, "missing", lambda s: None)
        assert exc_info.value.code == ErrorCode.SLOT_NOT_FOUND

    def test_stale_write_detected(self, token_engine, make_slot):
        """A write based on an old version matches no row."""
        slot = make_slot()
        stale = token_engine.get_slot(slot.slot_id)
        token_engine.set_slot_status(slot.slot_id, "suspended")

        with pytest.raises(StaleDataError):
            with token_engine.session_factory() as session:
                with session.begin():
                    session.add(stale)
                    stale.current_allocation = 1

        fresh = token_engine.get_slot(slot.slot_id)
        assert fresh.current_allocation == 0
        assert fresh.status == "suspended"

    def test_conflict_retried_against_fresh_version(self, token_engine, make_slot, controller, clock):
        """The losing writer retries once on the committed version and succeeds."""
        slot = make_slot()
        stale = token_engine.get_slot(slot.slot_id)
        token_engine.set_slot_status(slot.slot_id, "suspended")

        def write(session):
            target = stale if not clock.sleeps else session.get(Slot, slot.slot_id)
            if target is stale:
                session.add(stale)
            target.end_time = "11:00"
            session.flush()
            return target.version

        version = controller.run_in_transaction(write, operation="slot_update")

        assert len(clock.sleeps) == 1
        assert clock.sleeps[0] <= 0.2
        fresh = token_engine.get_slot(slot.slot_id)
        assert fresh.end_time == "11:00"
        assert fresh.status == "suspended"
        assert fresh.version == version
