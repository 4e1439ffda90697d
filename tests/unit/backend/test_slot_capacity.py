"""
Unit tests for the Slot Capacity Manager and slot creation.

Tests:
- reserve_capacity (regular and emergency limits, token numbering)
- release_capacity floor
- swap_within_slot
- check_availability
- Slot defaults and validation
"""

from datetime import timedelta

import pytest

from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.services.capacity import allocation_limit, validate_bookable


@pytest.fixture
def in_txn(token_engine):
    """Run fn(session) in one committed transaction."""

    def _run(fn):
        return token_engine.controller.execute_transaction(fn)

    return _run


# =============================================================================
# Test reserve_capacity
# =============================================================================

class TestReserveCapacity:

    def test_reserve_increments_count_and_number(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=3)
        first = in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        second = in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))

        assert (first.new_count, first.token_number) == (1, 1)
        assert (second.new_count, second.token_number) == (2, 2)
        stored = token_engine.get_slot(slot.slot_id)
        assert stored.current_allocation == 2
        assert stored.last_token_number == 2

    def test_regular_stops_at_reserve(self, token_engine, make_slot, in_txn):
        """Regular requests cannot use the emergency reserve."""
        slot = make_slot(max_capacity=5, emergency_reserved=2)
        for _ in range(3):
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))

        with pytest.raises(AppError) as exc_info:
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        assert exc_info.value.code == ErrorCode.SLOT_CAPACITY_EXCEEDED
        assert exc_info.value.details["current_allocation"] == 3
        assert token_engine.get_slot(slot.slot_id).current_allocation == 3

    def test_emergency_may_fill_slot(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=5, emergency_reserved=2)
        for _ in range(5):
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id, emergency=True))

        with pytest.raises(AppError) as exc_info:
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id, emergency=True))
        assert exc_info.value.code == ErrorCode.SLOT_CAPACITY_EXCEEDED
        assert token_engine.get_slot(slot.slot_id).current_allocation == 5

    def test_failed_reserve_consumes_no_number(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=1)
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        with pytest.raises(AppError):
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        assert token_engine.get_slot(slot.slot_id).last_token_number == 1

    def test_unknown_slot(self, token_engine, in_txn):
        with pytest.raises(AppError) as exc_info:
            in_txn(lambda s: token_engine.capacity.reserve_capacity(s, "nope"))
        assert exc_info.value.code == ErrorCode.SLOT_NOT_FOUND


# =============================================================================
# Test release and swap
# =============================================================================

class TestReleaseAndSwap:

    def test_release_decrements(self, token_engine, make_slot, in_txn):
        slot = make_slot()
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        in_txn(lambda s: token_engine.capacity.release_capacity(s, slot.slot_id))
        stored = token_engine.get_slot(slot.slot_id)
        assert stored.current_allocation == 0
        assert stored.last_token_number == 1

    def test_release_never_goes_negative(self, token_engine, make_slot, in_txn):
        slot = make_slot()
        in_txn(lambda s: token_engine.capacity.release_capacity(s, slot.slot_id))
        assert token_engine.get_slot(slot.slot_id).current_allocation == 0

    def test_swap_consumes_number_not_capacity(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=1)
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        swap = in_txn(lambda s: token_engine.capacity.swap_within_slot(s, slot.slot_id, 1))
        assert swap.new_count == 1
        assert swap.token_number == 2

    def test_swap_with_stale_count(self, token_engine, make_slot, in_txn):
        """A count that moved since it was observed is a concurrent modification."""
        slot = make_slot()
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        with pytest.raises(AppError) as exc_info:
            in_txn(lambda s: token_engine.capacity.swap_within_slot(s, slot.slot_id, 0))
        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION
        assert token_engine.get_slot(slot.slot_id).last_token_number == 1


# =============================================================================
# Test availability
# =============================================================================

class TestCheckAvailability:

    def test_regular_availability_excludes_reserve(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=5, emergency_reserved=2)
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))

        regular = in_txn(lambda s: token_engine.capacity.check_availability(s, slot.slot_id))
        emergency = in_txn(lambda s: token_engine.capacity.check_availability(
            s, slot.slot_id, require_emergency_reserve=True))

        assert regular.available == 2
        assert emergency.available == 4
        assert regular.can_allocate

    def test_full_slot(self, token_engine, make_slot, in_txn):
        slot = make_slot(max_capacity=1)
        in_txn(lambda s: token_engine.capacity.reserve_capacity(s, slot.slot_id))
        result = in_txn(lambda s: token_engine.capacity.check_availability(s, slot.slot_id))
        assert result.available == 0
        assert result.to_dict()["can_allocate"] is False

    def test_allocation_limit(self, make_slot):
        slot = make_slot(max_capacity=10, emergency_reserved=2)
        assert allocation_limit(slot, emergency=False) == 8
        assert allocation_limit(slot, emergency=True) == 10


# =============================================================================
# Test slot creation and bookability
# =============================================================================

class TestSlotCreation:

    def test_reserve_defaults_to_percentage(self, token_engine, clock):
        slot = token_engine.create_slot("D1", clock.today(), "09:00", "10:00", max_capacity=10)
        assert slot.emergency_reserved == 2
        assert slot.current_allocation == 0
        assert slot.last_token_number == 0
        assert slot.version == 1

    def test_reserve_rounds_down(self, token_engine, clock):
        slot = token_engine.create_slot("D1", clock.today(), "09:00", "10:00", max_capacity=4)
        assert slot.emergency_reserved == 0

    def test_default_capacity(self, token_engine, clock):
        slot = token_engine.create_slot("D1", clock.today(), "09:00", "10:00")
        assert slot.max_capacity == 10

    def test_invalid_capacity(self, token_engine, clock):
        with pytest.raises(AppError) as exc_info:
            token_engine.create_slot("D1", clock.today(), "09:00", "10:00", max_capacity=0)
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_reserve_above_capacity(self, token_engine, clock):
        with pytest.raises(AppError):
            token_engine.create_slot("D1", clock.today(), "09:00", "10:00", max_capacity=2, emergency_reserved=3)

    @pytest.mark.parametrize("start,end", [("9:00", "10:00"), ("09:00", "24:00"), ("10:00", "09:00"), ("10:00", "10:00")])
    def test_invalid_times(self, token_engine, clock, start, end):
        """Times are zero-padded HH:MM so they order correctly as strings."""
        with pytest.raises(AppError) as exc_info:
            token_engine.create_slot("D1", clock.today(), start, end)
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_suspended_slot_not_bookable(self, token_engine, make_slot, clock):
        slot = make_slot()
        suspended = token_engine.set_slot_status(slot.slot_id, "suspended")
        with pytest.raises(AppError) as exc_info:
            validate_bookable(suspended, clock.today())
        assert exc_info.value.code == ErrorCode.SLOT_NOT_AVAILABLE
        assert "slot is suspended" in exc_info.value.details["reasons"]

    def test_past_slot_not_bookable(self, make_slot, clock):
        slot = make_slot(slot_date=clock.today() - timedelta(days=1))
        with pytest.raises(AppError) as exc_info:
            validate_bookable(slot, clock.today())
        assert "slot date is in the past" in exc_info.value.details["reasons"]

    def test_invalid_status_rejected(self, token_engine, make_slot):
        slot = make_slot()
        with pytest.raises(AppError) as exc_info:
            token_engine.set_slot_status(slot.slot_id, "paused")
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
