"""
Token reallocation.

Places tokens into other eligible slots without losing their priority or
source:
1. reallocate_displaced - the token a preemption cancelled
2. reallocate_batch - every token matched by a schedule change
3. move_token - one token to a slot the caller chose
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.slot import Slot
from opd_tokens.models.token import Token, TokenSource, TokenStatus, AllocationMethod, ACTIVE_STATUSES
from opd_tokens.services.capacity import SlotCapacityManager, allocation_limit, validate_bookable
from opd_tokens.services.concurrency import ConcurrencyController, Deadline
from opd_tokens.services.outcomes import PreemptedToken, parse_date
from opd_tokens.services.priority import reallocation_order_key
from opd_tokens.services.stores import SlotStore, TokenStore


CANCELLATION_REASONS = ("patient_request", "doctor_unavailable", "emergency", "system_error", "other")


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def cancellation_reason(reason: Optional[str]) -> str:
    return reason if reason in CANCELLATION_REASONS else "other"


@dataclass
class BatchCriteria:
    """Which tokens a batch reallocation applies to."""
    doctor_id: Optional[str] = None
    slot_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    statuses: List[str] = field(default_factory=lambda: list(ACTIVE_STATUSES))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BatchCriteria":
        data = data or {}
        date_range = data.get("date_range") or {}
        criteria = cls(
            doctor_id=data.get("doctor_id"),
            slot_id=data.get("slot_id"),
            date_from=parse_date(date_range.get("from", data.get("date_from")), "date_from"),
            date_to=parse_date(date_range.get("to", data.get("date_to")), "date_to"),
            statuses=list(data.get("status") or data.get("statuses") or ACTIVE_STATUSES),
        )
        criteria.validate()
        return criteria

    def validate(self) -> None:
        if not (self.doctor_id or self.slot_id or self.date_from or self.date_to):
            raise AppError(ErrorCode.VALIDATION_ERROR,
                           "Batch criteria need a doctor_id, slot_id or date range")
        unknown = [s for s in self.statuses if s not in ACTIVE_STATUSES]
        if unknown:
            raise AppError(ErrorCode.VALIDATION_ERROR, f"Only active tokens can be reallocated: {unknown}",
                           details={"statuses": unknown})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "slot_id": self.slot_id,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "statuses": list(self.statuses),
        }


@dataclass
class BatchResult:
    relocated: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relocated": self.relocated,
            "failed": self.failed,
            "summary": {"relocated": len(self.relocated), "failed": len(self.failed)},
        }


class TokenReallocator:
    """
    Finds replacement slots and moves tokens into them.

    Candidate search follows the configured search order (by default same
    doctor same day, same specialty same day, same doctor next day) and
    stops after max_candidates slots with room.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        slot_store: SlotStore,
        token_store: TokenStore,
        capacity: SlotCapacityManager,
        config_view,
        clock: Optional[Clock] = None,
        deadline_seconds: Optional[float] = None,
    ):
        self.controller = controller
        self.slot_store = slot_store
        self.token_store = token_store
        self.capacity = capacity
        self.config_view = config_view
        self.clock = clock or SystemClock()
        self.deadline_seconds = deadline_seconds
        self.logger = logging.getLogger("service.TokenReallocator")

    def _deadline(self, snap) -> Deadline:
        seconds = self.deadline_seconds
        if seconds is None:
            seconds = float(snap.get("concurrency", "deadline_seconds", 30))
        return Deadline(self.clock, seconds)

    # =========================================================================
    # Candidate search
    # =========================================================================

    def candidate_slots(self, session, token: Token, origin: Slot, snap, exclude_slot_ids=()) -> List[Slot]:
        """Slots with room for the token, in search order, at most max_candidates."""
        limit = snap.max_reallocation_candidates
        window_minutes = snap.reallocation_window_hours * 60
        emergency = token.source == TokenSource.EMERGENCY.value
        today = self.clock.today()
        seen = set(exclude_slot_ids) | {origin.slot_id}
        found: List[Slot] = []

        def within_window(slot: Slot) -> bool:
            return abs(_minutes(slot.start_time) - _minutes(origin.start_time)) <= window_minutes

        for strategy in snap.reallocation_search_order:
            if strategy == "same_doctor_same_day":
                slots = [
                    s for s in self.slot_store.find(
                        session, doctor_id=origin.doctor_id, date_from=origin.date, date_to=origin.date
                    )
                    if within_window(s)
                ]
            elif strategy == "same_specialty_same_day":
                if not origin.specialty:
                    continue
                slots = [
                    s for s in self.slot_store.find(
                        session, specialty=origin.specialty, date_from=origin.date, date_to=origin.date,
                        exclude_doctor_id=origin.doctor_id,
                    )
                    if within_window(s)
                ]
            elif strategy == "same_doctor_next_day":
                next_day = origin.date + timedelta(days=1)
                slots = self.slot_store.find(session, doctor_id=origin.doctor_id, date_from=next_day, date_to=next_day)
            else:
                self.logger.warning("Unknown reallocation strategy %s", strategy)
                continue

            for slot in slots:
                if slot.slot_id in seen or slot.date < today:
                    continue
                seen.add(slot.slot_id)
                if slot.current_allocation >= allocation_limit(slot, emergency):
                    continue
                if self.token_store.active_for_patient(session, slot.slot_id, token.patient_id):
                    continue
                found.append(slot)
                if len(found) >= limit:
                    return found
        return found

    def _place(self, session, token: Token, target: Slot, method: str, metadata: Dict[str, Any],
               status: Optional[str] = None) -> Token:
        """Reserve capacity in target and issue a copy of token there."""
        emergency = token.source == TokenSource.EMERGENCY.value
        reservation = self.capacity.reserve_capacity(session, target.slot_id, emergency=emergency)
        return self.token_store.add(
            session,
            token_id=uuid.uuid4().hex,
            patient_id=token.patient_id,
            doctor_id=target.doctor_id,
            slot_id=target.slot_id,
            token_number=reservation.token_number,
            source=token.source,
            priority=token.priority,
            priority_level=token.priority_level,
            status=status or TokenStatus.ALLOCATED.value,
            allocation_method=method,
            token_metadata=metadata,
        )

    # =========================================================================
    # Displaced tokens
    # =========================================================================

    def reallocate_displaced(self, token_id: str, deadline: Optional[Deadline] = None) -> PreemptedToken:
        """
        Second transaction after a preemption. The displaced token already
        carries reallocation_status 'pending'; on success it points at its
        replacement.
        """
        snap = self.config_view.snapshot()

        def _txn(session):
            token = self.token_store.require(session, token_id, for_update=True)
            origin = self.slot_store.require(session, token.slot_id)
            candidates = self.candidate_slots(session, token, origin, snap)
            if not candidates:
                return PreemptedToken(token.token_id, token.patient_id, token.priority, "pending")

            target = candidates[0]
            new_token = self._place(
                session, token, target, AllocationMethod.REALLOCATION.value,
                metadata={
                    "reallocated_from": {"token_id": token.token_id, "slot_id": origin.slot_id},
                    "reallocation_cause": "preemption",
                },
            )
            token.token_metadata = dict(
                token.token_metadata or {},
                reallocated_to={"token_id": new_token.token_id, "slot_id": target.slot_id},
                reallocation_status="reallocated",
            )
            session.flush()
            return PreemptedToken(
                token.token_id, token.patient_id, token.priority, "reallocated",
                reallocated_to_token_id=new_token.token_id,
                reallocated_to_slot_id=target.slot_id,
            )

        try:
            result = self.controller.run_in_transaction(
                _txn, operation=f"reallocate:{token_id}", deadline=deadline or self._deadline(snap)
            )
        except (AppError, SQLAlchemyError) as e:
            self.logger.error("Reallocation of displaced token %s failed, left pending: %s", token_id, e)
            token = self.token_store.get_token(token_id)
            return PreemptedToken(token_id, token.patient_id if token else None,
                                  token.priority if token else None, "pending")

        if result.reallocation_status == "reallocated":
            self.logger.info("Displaced token %s reallocated to slot %s", token_id, result.reallocated_to_slot_id)
        else:
            self.logger.info("No slot for displaced token %s; reallocation pending", token_id)
        return result

    # =========================================================================
    # Batch reallocation
    # =========================================================================

    def reallocate_batch(self, criteria, reason: str = "other") -> BatchResult:
        """
        Relocate every matching token, highest priority first.

        Each token moves in its own transaction. A token with nowhere to go
        stays where it is with reallocation_status 'pending'.
        """
        if not isinstance(criteria, BatchCriteria):
            criteria = BatchCriteria.from_dict(criteria)
        else:
            criteria.validate()
        snap = self.config_view.snapshot()

        with self.token_store.session_factory() as session:
            tokens = self.token_store.find(
                session,
                doctor_id=criteria.doctor_id,
                slot_id=criteria.slot_id,
                date_from=criteria.date_from,
                date_to=criteria.date_to,
                statuses=criteria.statuses,
            )
        affected_slot_ids = {t.slot_id for t in tokens}
        tokens.sort(key=reallocation_order_key)

        result = BatchResult()
        for token in tokens:
            try:
                entry = self.controller.run_in_transaction(
                    lambda session, tid=token.token_id: self._relocate_one(
                        session, tid, affected_slot_ids, reason, snap
                    ),
                    operation=f"reallocate:{token.token_id}",
                    deadline=self._deadline(snap),
                )
            except AppError as e:
                self.logger.error("Batch reallocation of token %s failed: %s", token.token_id, e)
                result.failed.append({
                    "token_id": token.token_id,
                    "patient_id": token.patient_id,
                    "priority": token.priority,
                    "error": e.code,
                })
                continue

            if entry["reallocation_status"] == "reallocated":
                result.relocated.append(entry)
            else:
                result.failed.append(entry)

        self.logger.info(
            "Batch reallocation (%s) relocated %d, failed %d",
            reason, len(result.relocated), len(result.failed),
        )
        return result

    def _relocate_one(self, session, token_id: str, excluded_slot_ids, reason: str, snap) -> Dict[str, Any]:
        token = self.token_store.require(session, token_id, for_update=True)
        entry = {
            "token_id": token.token_id,
            "patient_id": token.patient_id,
            "priority": token.priority,
            "source": token.source,
            "from_slot_id": token.slot_id,
        }
        if not token.is_active:
            return dict(entry, reallocation_status="skipped", reason=f"token is {token.status}")
        if token.status == TokenStatus.IN_CONSULTATION.value:
            return dict(entry, reallocation_status="skipped", reason="consultation in progress")

        origin = self.slot_store.require(session, token.slot_id)
        candidates = self.candidate_slots(session, token, origin, snap, exclude_slot_ids=excluded_slot_ids)
        if not candidates:
            token.token_metadata = dict(
                token.token_metadata or {}, reallocation_status="pending", reallocation_reason=reason
            )
            session.flush()
            return dict(entry, reallocation_status="pending", reason="no eligible slot")

        target = candidates[0]
        new_token = self._place(
            session, token, target, AllocationMethod.REALLOCATION.value,
            metadata=dict(
                token.token_metadata or {},
                reallocated_from={"token_id": token.token_id, "slot_id": origin.slot_id},
                reallocation_cause=reason,
            ),
            status=token.status,
        )
        self._retire(session, token, reason, by="system", metadata=dict(
            reallocated_to={"token_id": new_token.token_id, "slot_id": target.slot_id},
            reallocation_status="reallocated",
        ))
        return dict(
            entry,
            reallocation_status="reallocated",
            new_token_id=new_token.token_id,
            to_slot_id=target.slot_id,
            token_number=new_token.token_number,
        )

    def _retire(self, session, token: Token, reason: str, by: Optional[str], metadata: Dict[str, Any]) -> None:
        """Cancel a token that was replaced elsewhere and free its capacity."""
        now = self.clock.now()
        token.status = TokenStatus.CANCELLED.value
        token.cancellation_reason = cancellation_reason(reason)
        token.cancelled_by = by
        token.cancelled_at = now
        token.updated_at = now
        token.token_metadata = dict(token.token_metadata or {}, **metadata)
        session.flush()
        self.capacity.release_capacity(session, token.slot_id)

    # =========================================================================
    # Move
    # =========================================================================

    def move_token(self, token_id: str, new_slot_id: str, actor_id: Optional[str] = None,
                   reason: str = "patient_request") -> Token:
        """
        Issue a new token in new_slot_id for the same patient, priority and
        source, and cancel the old one. Capacity moves with it.
        """
        snap = self.config_view.snapshot()

        def _txn(session):
            token = self.token_store.require(session, token_id, for_update=True)
            if token.is_terminal:
                raise AppError(ErrorCode.TOKEN_ALREADY_PROCESSED,
                               details={"token_id": token_id, "status": token.status})
            if token.status == TokenStatus.IN_CONSULTATION.value:
                raise AppError(ErrorCode.SCHEDULING_CONFLICT, "Token is in consultation",
                               details={"token_id": token_id, "status": token.status})
            if token.slot_id == new_slot_id:
                raise AppError(ErrorCode.VALIDATION_ERROR, "Token is already in this slot",
                               details={"token_id": token_id, "slot_id": new_slot_id})

            target = self.slot_store.require(session, new_slot_id, for_update=True)
            validate_bookable(target, self.clock.today())
            if self.token_store.active_for_patient(session, new_slot_id, token.patient_id):
                raise AppError(ErrorCode.SCHEDULING_CONFLICT, "Patient already holds a token in this slot",
                               details={"patient_id": token.patient_id, "slot_id": new_slot_id})

            new_token = self._place(
                session, token, target, token.allocation_method,
                metadata=dict(
                    token.token_metadata or {},
                    moved_from={"token_id": token.token_id, "slot_id": token.slot_id},
                ),
                status=token.status,
            )
            self._retire(session, token, reason, by=actor_id, metadata=dict(
                moved_to={"token_id": new_token.token_id, "slot_id": new_slot_id},
            ))
            return new_token

        with self.controller.in_flight.track(f"move:{token_id}"):
            new_token = self.controller.run_in_transaction(
                _txn, operation=f"move:{token_id}", deadline=self._deadline(snap)
            )
        self.logger.info("Token %s moved to slot %s as %s", token_id, new_slot_id, new_token.token_id)
        return new_token
