"""
Unit tests for the Token Reallocator.

Tests:
- Batch reallocation after a schedule change
- Candidate search order and window
- Moving a single token between slots
"""

from datetime import timedelta

import pytest

from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.services.reallocation import BatchCriteria


# =============================================================================
# Test batch reallocation
# =============================================================================

class TestBatchReallocation:

    def test_suspended_slot_cascade(self, token_engine, make_slot, allocate, check_invariants):
        """Four tokens leave a suspended slot, highest priority first, none lost."""
        s1 = make_slot(start_time="09:00", end_time="10:00", max_capacity=5)
        s2 = make_slot(start_time="10:00", end_time="11:00", max_capacity=2)
        s3 = make_slot(start_time="11:00", end_time="12:00", max_capacity=1)
        s4 = make_slot(start_time="12:00", end_time="13:00", max_capacity=1)

        sources = {"P-walkin": "walkin", "P-online": "online", "P-followup": "followup", "P-priority": "priority"}
        originals = {pid: allocate(pid, s1.slot_id, source=src).token for pid, src in sources.items()}
        token_engine.set_slot_status(s1.slot_id, "suspended")

        result = token_engine.reallocate_batch({"slot_id": s1.slot_id}, reason="doctor_unavailable")

        assert result.failed == []
        assert [e["patient_id"] for e in result.relocated] == ["P-priority", "P-followup", "P-online", "P-walkin"]
        assert [e["to_slot_id"] for e in result.relocated] == [s2.slot_id, s2.slot_id, s3.slot_id, s4.slot_id]

        for entry in result.relocated:
            old = originals[entry["patient_id"]]
            new = token_engine.get_token(entry["new_token_id"])
            assert new.priority == old.priority
            assert new.source == old.source
            assert new.patient_id == old.patient_id
            assert new.allocation_method == "reallocation"
            assert new.token_metadata["reallocated_from"]["token_id"] == old.token_id

            retired = token_engine.get_token(old.token_id)
            assert retired.status == "cancelled"
            assert retired.cancellation_reason == "doctor_unavailable"
            assert retired.token_metadata["reallocated_to"]["token_id"] == new.token_id

        for slot in (s1, s2, s3, s4):
            check_invariants(slot.slot_id)
        assert token_engine.get_slot(s1.slot_id).current_allocation == 0
        assert token_engine.get_slot(s2.slot_id).current_allocation == 2

    def test_unplaced_token_marked_pending(self, token_engine, make_slot, allocate):
        slot = make_slot()
        token = allocate("P1", slot.slot_id).token

        result = token_engine.reallocate_batch({"slot_id": slot.slot_id})

        assert result.relocated == []
        assert result.failed[0]["reallocation_status"] == "pending"
        stored = token_engine.get_token(token.token_id)
        assert stored.status == "allocated"
        assert stored.token_metadata["reallocation_status"] == "pending"

    def test_consultation_in_progress_skipped(self, token_engine, make_slot, allocate):
        slot = make_slot()
        make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", slot.slot_id).token
        token_engine.confirm(token.token_id)
        token_engine.start_consultation(token.token_id)

        result = token_engine.reallocate_batch({"slot_id": slot.slot_id})

        assert result.failed[0]["reallocation_status"] == "skipped"
        assert token_engine.get_token(token.token_id).status == "in_consultation"

    def test_confirmed_status_carried_over(self, token_engine, make_slot, allocate):
        slot = make_slot()
        make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", slot.slot_id).token
        token_engine.confirm(token.token_id)

        result = token_engine.reallocate_batch({"slot_id": slot.slot_id, "status": ["confirmed"]})

        new = token_engine.get_token(result.relocated[0]["new_token_id"])
        assert new.status == "confirmed"

    def test_doctor_and_date_range_criteria(self, token_engine, make_slot, allocate, clock):
        today = make_slot(doctor_id="D1")
        tomorrow = make_slot(doctor_id="D1", slot_date=clock.today() + timedelta(days=1))
        make_slot(doctor_id="D2")
        allocate("P1", today.slot_id)
        allocate("P2", tomorrow.slot_id)

        result = token_engine.reallocate_batch({
            "doctor_id": "D1",
            "date_range": {"from": clock.today().isoformat(), "to": clock.today().isoformat()},
        })

        assert [e["patient_id"] for e in result.relocated] == ["P1"]

    def test_summary(self, token_engine, make_slot, allocate):
        slot = make_slot()
        allocate("P1", slot.slot_id)
        data = token_engine.reallocate_batch({"slot_id": slot.slot_id}).to_dict()
        assert data["summary"] == {"relocated": 0, "failed": 1}

    @pytest.mark.parametrize("criteria", [
        {},
        {"slot_id": "S1", "status": ["completed"]},
        {"date_from": "not-a-date"},
    ])
    def test_invalid_criteria(self, token_engine, criteria):
        with pytest.raises(AppError) as exc_info:
            token_engine.reallocate_batch(criteria)
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_criteria_from_dict(self):
        criteria = BatchCriteria.from_dict({"doctor_id": "D1", "date_range": {"from": "2026-01-05"}})
        assert criteria.to_dict()["date_from"] == "2026-01-05"
        assert criteria.statuses == ["allocated", "confirmed", "in_consultation"]


# =============================================================================
# Test candidate search
# =============================================================================

class TestCandidateSearch:

    def _preempt(self, allocate, slot_id):
        allocate("W1", slot_id, source="walkin")
        return allocate("E1", slot_id, source="emergency").preempted_tokens[0]

    def test_same_doctor_before_same_specialty(self, make_slot, allocate):
        origin = make_slot(doctor_id="D1", max_capacity=1)
        make_slot(doctor_id="D2", start_time="09:00")
        same_doctor = make_slot(doctor_id="D1", start_time="11:00", end_time="12:00")

        preempted = self._preempt(allocate, origin.slot_id)

        assert preempted.reallocated_to_slot_id == same_doctor.slot_id

    def test_window_excludes_distant_slots(self, make_slot, allocate):
        """A same-doctor slot six hours later is outside the four-hour window."""
        origin = make_slot(doctor_id="D1", max_capacity=1)
        make_slot(doctor_id="D1", start_time="15:00", end_time="16:00")
        colleague = make_slot(doctor_id="D2", start_time="10:00", end_time="11:00")

        preempted = self._preempt(allocate, origin.slot_id)

        assert preempted.reallocated_to_slot_id == colleague.slot_id

    def test_falls_back_to_next_day(self, make_slot, allocate, clock):
        origin = make_slot(doctor_id="D1", max_capacity=1)
        tomorrow = make_slot(doctor_id="D1", slot_date=clock.today() + timedelta(days=1))

        preempted = self._preempt(allocate, origin.slot_id)

        assert preempted.reallocated_to_slot_id == tomorrow.slot_id

    def test_other_specialty_not_used(self, make_slot, allocate):
        origin = make_slot(doctor_id="D1", max_capacity=1)
        make_slot(doctor_id="D3", specialty="cardiology")

        preempted = self._preempt(allocate, origin.slot_id)

        assert preempted.reallocation_status == "pending"

    def test_full_candidate_skipped(self, make_slot, allocate):
        origin = make_slot(doctor_id="D1", max_capacity=1)
        full = make_slot(doctor_id="D1", start_time="10:00", end_time="11:00", max_capacity=1)
        open_slot = make_slot(doctor_id="D1", start_time="11:00", end_time="12:00")
        allocate("X1", full.slot_id)

        preempted = self._preempt(allocate, origin.slot_id)

        assert preempted.reallocated_to_slot_id == open_slot.slot_id


# =============================================================================
# Test move
# =============================================================================

class TestMoveToken:

    def test_move_shifts_capacity(self, token_engine, make_slot, allocate, check_invariants):
        s1 = make_slot(start_time="09:00")
        s2 = make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", s1.slot_id, source="followup", last_visited_doctor="D1").token

        moved = token_engine.move(token.token_id, s2.slot_id, actor_id="reception-1")

        assert moved.slot_id == s2.slot_id
        assert moved.patient_id == "P1"
        assert moved.priority == token.priority
        assert moved.source == "followup"
        assert moved.token_number == 1
        assert moved.token_metadata["moved_from"]["token_id"] == token.token_id

        old = token_engine.get_token(token.token_id)
        assert old.status == "cancelled"
        assert old.cancelled_by == "reception-1"
        assert old.token_metadata["moved_to"]["token_id"] == moved.token_id

        slot1, _ = check_invariants(s1.slot_id)
        slot2, _ = check_invariants(s2.slot_id)
        assert slot1.current_allocation == 0
        assert slot2.current_allocation == 1

    def test_move_to_same_slot(self, token_engine, make_slot, allocate):
        slot = make_slot()
        token = allocate("P1", slot.slot_id).token
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, slot.slot_id)
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_move_processed_token(self, token_engine, make_slot, allocate):
        s1 = make_slot()
        s2 = make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", s1.slot_id).token
        token_engine.cancel(token.token_id)
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, s2.slot_id)
        assert exc_info.value.code == ErrorCode.TOKEN_ALREADY_PROCESSED

    def test_move_into_slot_patient_already_holds(self, token_engine, make_slot, allocate):
        s1 = make_slot()
        s2 = make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", s1.slot_id).token
        allocate("P1", s2.slot_id)
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, s2.slot_id)
        assert exc_info.value.code == ErrorCode.SCHEDULING_CONFLICT

    def test_move_into_full_slot(self, token_engine, make_slot, allocate):
        s1 = make_slot()
        s2 = make_slot(start_time="10:00", end_time="11:00", max_capacity=1)
        token = allocate("P1", s1.slot_id).token
        allocate("P2", s2.slot_id)
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, s2.slot_id)
        assert exc_info.value.code == ErrorCode.SLOT_CAPACITY_EXCEEDED
        assert token_engine.get_token(token.token_id).status == "allocated"

    def test_move_into_suspended_slot(self, token_engine, make_slot, allocate):
        s1 = make_slot()
        s2 = make_slot(start_time="10:00", end_time="11:00")
        token_engine.set_slot_status(s2.slot_id, "suspended")
        token = allocate("P1", s1.slot_id).token
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, s2.slot_id)
        assert exc_info.value.code == ErrorCode.SLOT_NOT_AVAILABLE

    def test_move_during_consultation(self, token_engine, make_slot, allocate):
        s1 = make_slot()
        s2 = make_slot(start_time="10:00", end_time="11:00")
        token = allocate("P1", s1.slot_id).token
        token_engine.confirm(token.token_id)
        token_engine.start_consultation(token.token_id)
        with pytest.raises(AppError) as exc_info:
            token_engine.move(token.token_id, s2.slot_id)
        assert exc_info.value.code == ErrorCode.SCHEDULING_CONFLICT
