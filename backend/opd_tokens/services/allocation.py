"""
Token Allocator.

Turns an allocation request into exactly one outcome:
- Allocated (direct placement, or preemption of a lower-priority token)
- Alternatives (the slot is full; other slots are suggested)
- Rejected (validation, availability or concurrency failure)

Placement and preemption happen in one transaction; reallocating the
displaced token is a second transaction whose failure only leaves that
token marked as pending.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.slot import Slot
from opd_tokens.models.token import Token, TokenSource, TokenStatus, AllocationMethod
from opd_tokens.services.capacity import SlotCapacityManager, allocation_limit, validate_bookable
from opd_tokens.services.concurrency import ConcurrencyController, Deadline
from opd_tokens.services.outcomes import (
    AllocationRequest,
    Allocated,
    Alternatives,
    Rejected,
    Outcome,
)
from opd_tokens.services.priority import PriorityCalculator, PriorityResult, preemption_order
from opd_tokens.services.reallocation import TokenReallocator
from opd_tokens.services.stores import SlotStore, TokenStore


MAX_ALTERNATIVES = 5
SAME_DOCTOR_DAYS_AHEAD = 7
NEXT_AVAILABLE_DAYS_AHEAD = 3

URGENCY_MODIFIERS = {"high": "high", "emergency": "critical"}

ALTERNATIVE_MESSAGES = {
    "same_department_today": "The requested slot is full, but we found {n} available slots with other doctors in the same department today.",
    "same_doctor_future": "The requested slot is full, but your preferred doctor has {n} available slots in the coming days.",
    "future_booking": "The requested slot is full. We found {n} alternative slots in the next few days.",
    "emergency_same_department": "EMERGENCY: The requested slot is full, but we found {n} available slots with other doctors in the same department today.",
    "emergency_same_doctor": "EMERGENCY: The requested slot is full, but your preferred doctor has {n} available slots in the coming days.",
    "emergency_next_available": "EMERGENCY: The requested slot is full. We found {n} alternative slots in the next few days.",
    "emergency_no_alternatives": "EMERGENCY: No slot is available. Contact hospital administration immediately.",
    "no_alternatives": "No slot is currently available.",
}


@dataclass
class _Placement:
    """What the allocation transaction did."""
    method: str  # direct | preemption | full
    token: Optional[Token] = None
    displaced: Optional[Token] = None
    alternatives: Optional[Alternatives] = None


class TokenAllocator:
    """
    Priority-aware allocation into capacity-bounded slots.

    Usage:
        allocator = TokenAllocator(controller, slots, tokens, capacity, calculator, reallocator, config_view)
        outcome = allocator.allocate_token({"patient_id": "P1", "slot_id": "...", "source": "online"})
        if isinstance(outcome, Allocated):
            print(outcome.token.token_number)
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        slot_store: SlotStore,
        token_store: TokenStore,
        capacity: SlotCapacityManager,
        calculator: PriorityCalculator,
        reallocator: TokenReallocator,
        config_view,
        clock: Optional[Clock] = None,
        deadline_seconds: Optional[float] = None,
    ):
        self.controller = controller
        self.slot_store = slot_store
        self.token_store = token_store
        self.capacity = capacity
        self.calculator = calculator
        self.reallocator = reallocator
        self.config_view = config_view
        self.clock = clock or SystemClock()
        self.deadline_seconds = deadline_seconds
        self.logger = logging.getLogger("service.TokenAllocator")

    # =========================================================================
    # Public operations
    # =========================================================================

    def allocate_token(self, request: Union[AllocationRequest, Dict[str, Any]],
                       deadline: Optional[Deadline] = None) -> Outcome:
        """
        Allocate a token for the request.

        Steps: resolve the target slot, validate it, compute priority,
        guard against a duplicate in-flight request, then place directly
        or by preemption inside one retried transaction.
        """
        try:
            if not isinstance(request, AllocationRequest):
                request = AllocationRequest.from_dict(request)
            else:
                request.validate()
        except AppError as e:
            return Rejected.from_error(e)

        snap = self.config_view.snapshot()
        if deadline is None:
            seconds = self.deadline_seconds
            if seconds is None:
                seconds = float(snap.get("concurrency", "deadline_seconds", 30))
            deadline = Deadline(self.clock, seconds)

        try:
            target = self._resolve_target(request)
            if isinstance(target, Alternatives):
                return target

            priority = self.calculator.calculate(
                request.source,
                request.patient_info,
                request.waiting_time,
                doctor_id=target.doctor_id,
                snapshot=snap,
            )
            if not priority.ok:
                return Rejected(priority.code, priority.message, priority.details, priority.suggestions)

            key = f"allocate:{target.slot_id}:{request.patient_id}"
            with self.controller.in_flight.track(key):
                placement = self.controller.run_in_transaction(
                    lambda session: self._allocate_in_slot(session, request, target.slot_id, priority, snap),
                    operation=key,
                    deadline=deadline,
                )
                return self._finish(request, placement, priority, deadline)
        except AppError as e:
            return self._reject(e, request)
        except SQLAlchemyError as e:
            self.logger.error("Allocation for patient %s failed in the store: %s", request.patient_id, e)
            return Rejected(
                ErrorCode.SERVICE_UNAVAILABLE,
                AppError(ErrorCode.SERVICE_UNAVAILABLE).message,
                details={"error": type(e).__name__},
                suggestions=["Retry the request later"],
            )

    def emergency_insertion(
        self,
        patient_id: str,
        doctor_id: Optional[str] = None,
        preferred_slot_id: Optional[str] = None,
        patient_info: Optional[Dict[str, Any]] = None,
        urgency_level: str = "emergency",
        allow_preemption: bool = True,
        department: Optional[str] = None,
        waiting_time: float = 0,
    ) -> Outcome:
        """
        Insert an emergency patient. 'high' urgency earns the high
        modifier and 'emergency' the critical one; preemption only when
        allow_preemption is set.
        """
        if not isinstance(urgency_level, str) or urgency_level not in URGENCY_MODIFIERS:
            return Rejected.from_error(AppError(
                ErrorCode.VALIDATION_ERROR,
                f"urgency_level must be one of {list(URGENCY_MODIFIERS)}",
                details={"urgency_level": urgency_level},
            ))
        if patient_info is not None and not isinstance(patient_info, dict):
            return Rejected.from_error(AppError(ErrorCode.VALIDATION_ERROR, "patient_info must be an object"))
        info = dict(patient_info or {})
        info["urgency_level"] = URGENCY_MODIFIERS[urgency_level]
        try:
            request = AllocationRequest.from_dict({
                "patient_id": patient_id,
                "doctor_id": doctor_id,
                "slot_id": preferred_slot_id,
                "department": department,
                "source": "emergency",
                "patient_info": info,
                "waiting_time": waiting_time,
                "allow_preemption": allow_preemption,
            })
        except AppError as e:
            return Rejected.from_error(e)
        request.metadata = {"urgency_level": urgency_level, "emergency_insertion": True}

        outcome = self.allocate_token(request)
        if isinstance(outcome, Allocated):
            self.logger.info(
                "Emergency insertion for patient %s: token %s (%s)",
                patient_id, outcome.token.token_id, outcome.allocation_method,
            )
        return outcome

    def allocation_statistics(self, date_from=None, date_to=None) -> Dict[str, Any]:
        return self.token_store.statistics(date_from, date_to)

    # =========================================================================
    # Target resolution
    # =========================================================================

    def _resolve_target(self, request: AllocationRequest) -> Union[Slot, Alternatives]:
        today = self.clock.today()
        with self.slot_store.session_factory() as session:
            if request.slot_id:
                slot = self.slot_store.require(session, request.slot_id)
                validate_bookable(slot, today)
                return slot

            date_from = max(request.preferred_date or today, today)
            slots = self.slot_store.find(
                session,
                doctor_id=request.doctor_id,
                department=None if request.doctor_id else request.department,
                specialty=None if request.doctor_id else request.specialty,
                date_from=date_from,
                date_to=request.preferred_date,
            )
            with_room = [s for s in slots if s.current_allocation < allocation_limit(s, request.is_emergency)]
            if with_room:
                return min(with_room, key=lambda s: self._target_rank(s, request))
            if request.is_emergency and request.allow_preemption and slots:
                # No room anywhere; try preemption in the earliest slot
                return slots[0]
            return self.find_alternatives(session, None, request)

    def _target_rank(self, slot: Slot, request: AllocationRequest) -> tuple:
        info = request.patient_info
        continuity = 0
        if info.is_followup or request.source == "followup":
            continuity = 0 if slot.doctor_id == info.last_visited_doctor else 1
        not_preferred_time = 0
        if request.preferred_time:
            not_preferred_time = 0 if slot.start_time >= request.preferred_time else 1
        return (continuity, slot.date, not_preferred_time, slot.start_time, -slot.available, slot.slot_id)

    # =========================================================================
    # Allocation transaction
    # =========================================================================

    def _allocate_in_slot(self, session, request: AllocationRequest, slot_id: str,
                          priority: PriorityResult, snap) -> _Placement:
        slot = self.slot_store.require(session, slot_id, for_update=True)
        validate_bookable(slot, self.clock.today())

        existing = self.token_store.active_for_patient(session, slot_id, request.patient_id)
        if existing is not None:
            raise AppError(
                ErrorCode.SCHEDULING_CONFLICT,
                "Patient already holds a token in this slot",
                details={"patient_id": request.patient_id, "slot_id": slot_id, "token_id": existing.token_id},
            )

        emergency = request.is_emergency
        if slot.current_allocation < allocation_limit(slot, emergency):
            reservation = self.capacity.reserve_capacity(session, slot_id, emergency=emergency)
            token = self._create_token(session, request, slot, priority, reservation.token_number,
                                       AllocationMethod.DIRECT.value)
            return _Placement(AllocationMethod.DIRECT.value, token=token)

        if request.allow_preemption:
            victim = self._choose_victim(session, slot, priority, emergency, snap)
            if victim is not None:
                token_id = uuid.uuid4().hex
                self._displace(session, victim, request, priority, token_id)
                reservation = self.capacity.swap_within_slot(session, slot_id, slot.current_allocation)
                token = self._create_token(session, request, slot, priority, reservation.token_number,
                                           AllocationMethod.PREEMPTION.value, token_id=token_id)
                return _Placement(AllocationMethod.PREEMPTION.value, token=token, displaced=victim)

        return _Placement("full", alternatives=self.find_alternatives(session, slot, request))

    def _choose_victim(self, session, slot: Slot, priority: PriorityResult, emergency: bool, snap) -> Optional[Token]:
        """Lowest-priority displaceable token, if the request outranks it enough."""
        threshold = snap.preemption_threshold
        active = self.token_store.active_in_slot(session, slot.slot_id)
        for candidate in preemption_order(active):
            if candidate.status == TokenStatus.IN_CONSULTATION.value:
                continue
            decision = self.calculator.should_preempt(
                priority.final_priority, candidate.priority, threshold=threshold, emergency=emergency,
                existing_emergency=candidate.source == TokenSource.EMERGENCY.value,
            )
            if decision.should_preempt:
                return candidate
            if decision.priority_difference <= 0:
                # Remaining candidates only rank higher
                return None
            # Within the threshold of an emergency peer; a later non-emergency token may still qualify
        return None

    def _displace(self, session, victim: Token, request: AllocationRequest,
                  priority: PriorityResult, new_token_id: str) -> None:
        now = self.clock.now()
        victim.status = TokenStatus.CANCELLED.value
        victim.cancellation_reason = "emergency" if request.is_emergency else "other"
        victim.cancelled_by = "system"
        victim.cancelled_at = now
        victim.updated_at = now
        victim.token_metadata = dict(
            victim.token_metadata or {},
            preemption_cause={
                "token_id": new_token_id,
                "patient_id": request.patient_id,
                "source": request.source,
                "priority": priority.final_priority,
                "at": now.isoformat(),
            },
            reallocation_status="pending",
        )
        session.flush()

    def _create_token(self, session, request: AllocationRequest, slot: Slot, priority: PriorityResult,
                      token_number: int, method: str, token_id: Optional[str] = None) -> Token:
        metadata = dict(request.metadata)
        metadata["priority_breakdown"] = dict(priority.breakdown)
        if request.waiting_time:
            metadata["waiting_time"] = request.waiting_time
        return self.token_store.add(
            session,
            token_id=token_id or uuid.uuid4().hex,
            patient_id=request.patient_id,
            doctor_id=slot.doctor_id,
            slot_id=slot.slot_id,
            token_number=token_number,
            source=request.source,
            priority=priority.final_priority,
            priority_level=priority.priority_level,
            status=TokenStatus.ALLOCATED.value,
            allocation_method=method,
            token_metadata=metadata,
        )

    def _finish(self, request: AllocationRequest, placement: _Placement, priority: PriorityResult,
                deadline: Deadline) -> Outcome:
        if placement.method == AllocationMethod.DIRECT.value:
            return Allocated(placement.token, placement.method, [], priority.to_dict())

        if placement.method == AllocationMethod.PREEMPTION.value:
            self.logger.info(
                "Token %s (priority %d) preempted token %s (priority %d) in slot %s",
                placement.token.token_id, placement.token.priority,
                placement.displaced.token_id, placement.displaced.priority, placement.token.slot_id,
            )
            preempted = self.reallocator.reallocate_displaced(placement.displaced.token_id)
            return Allocated(placement.token, placement.method, [preempted], priority.to_dict())

        alternatives = placement.alternatives
        if alternatives.alternatives:
            return alternatives
        return Rejected(
            ErrorCode.SLOT_CAPACITY_EXCEEDED,
            AppError(ErrorCode.SLOT_CAPACITY_EXCEEDED).message,
            details={"requested_slot": alternatives.requested_slot,
                     "recommended_action": alternatives.recommended_action},
            suggestions=[
                "Try booking for tomorrow or later dates",
                "Contact hospital administration for urgent cases",
            ],
        )

    def _reject(self, error: AppError, request: AllocationRequest) -> Rejected:
        if error.code == ErrorCode.MAX_RETRIES_EXCEEDED:
            code = (
                ErrorCode.CONCURRENT_MODIFICATION
                if error.details.get("cause") == "concurrency"
                else ErrorCode.SERVICE_UNAVAILABLE
            )
            return Rejected.from_error(error, code=code)
        if error.code in (ErrorCode.SERVICE_UNAVAILABLE, ErrorCode.OPERATION_IN_PROGRESS):
            self.logger.warning("Allocation for patient %s rejected: %s", request.patient_id, error.code)
        return Rejected.from_error(error)

    # =========================================================================
    # Alternatives
    # =========================================================================

    def find_alternatives(self, session, requested: Optional[Slot], request: AllocationRequest) -> Alternatives:
        """
        Slots to offer instead of a full or missing one: other doctors of
        the same specialty that day, the same doctor over the next week,
        and anything in the specialty over the next few days.
        """
        today = self.clock.today()
        ref_date = max(requested.date if requested else (request.preferred_date or today), today)
        doctor_id = requested.doctor_id if requested else request.doctor_id
        specialty = (requested.specialty if requested else None) or request.specialty
        department = (requested.department if requested else None) or request.department
        emergency = request.is_emergency
        excluded = [requested.slot_id] if requested else []

        def with_room(slots: List[Slot]) -> List[Slot]:
            return [s for s in slots if s.current_allocation < allocation_limit(s, emergency)]

        same_department_today: List[Slot] = []
        if specialty or department:
            same_department_today = with_room(self.slot_store.find(
                session, specialty=specialty, department=None if specialty else department,
                date_from=ref_date, date_to=ref_date, exclude_doctor_id=doctor_id, exclude_slot_ids=excluded,
            ))

        same_doctor_future: List[Slot] = []
        if doctor_id:
            same_doctor_future = with_room(self.slot_store.find(
                session, doctor_id=doctor_id,
                date_from=ref_date + timedelta(days=1),
                date_to=ref_date + timedelta(days=SAME_DOCTOR_DAYS_AHEAD),
            ))

        if specialty or department:
            next_available = with_room(self.slot_store.find(
                session, specialty=specialty, department=None if specialty else department,
                date_from=ref_date, date_to=ref_date + timedelta(days=NEXT_AVAILABLE_DAYS_AHEAD),
                exclude_slot_ids=excluded,
            ))
        elif doctor_id:
            next_available = with_room(self.slot_store.find(
                session, doctor_id=doctor_id,
                date_from=ref_date, date_to=ref_date + timedelta(days=NEXT_AVAILABLE_DAYS_AHEAD),
                exclude_slot_ids=excluded,
            ))
        else:
            next_available = []

        if emergency:
            if same_department_today:
                action, primary = "emergency_same_department", same_department_today
            elif same_doctor_future:
                action, primary = "emergency_same_doctor", same_doctor_future
            elif next_available:
                action, primary = "emergency_next_available", next_available
            else:
                action, primary = "emergency_no_alternatives", []
        else:
            if same_department_today:
                action, primary = "same_department_today", same_department_today
            elif same_doctor_future:
                action, primary = "same_doctor_future", same_doctor_future
            elif next_available:
                action, primary = "future_booking", next_available
            else:
                action, primary = "no_alternatives", []

        primary = sorted(primary, key=lambda s: (s.date, s.start_time, s.slot_id))[:MAX_ALTERNATIVES]
        requested_summary = None
        if requested is not None:
            requested_summary = dict(requested.to_dict(), state="full")

        if primary:
            suggestions = [
                "Choose from the available alternative slots",
                "Book for a different time or doctor",
            ]
        else:
            suggestions = [
                "Try booking for tomorrow or later dates",
                "Contact hospital administration for urgent cases",
            ]
        return Alternatives(
            requested_slot=requested_summary,
            alternatives=[s.to_dict() for s in primary],
            recommended_action=action,
            suggestions=suggestions,
            message=ALTERNATIVE_MESSAGES[action].format(n=len(primary)),
        )
