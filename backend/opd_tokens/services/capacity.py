"""
Slot Capacity Manager.

Capacity reservation and release, next-token-number generation and
emergency-reserve accounting. Every method runs inside the caller's
transaction so a token number is only ever consumed together with the
token row that carries it.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict

from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.slot import Slot
from opd_tokens.services.stores import SlotStore


@dataclass
class Reservation:
    """Result of reserve_capacity / swap_within_slot."""
    slot: Slot
    new_count: int
    token_number: int


@dataclass
class Availability:
    slot_id: str
    available: int
    max_capacity: int
    current_allocation: int
    emergency_reserved: int
    require_emergency_reserve: bool

    @property
    def can_allocate(self) -> bool:
        return self.available > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "available": self.available,
            "max_capacity": self.max_capacity,
            "current_allocation": self.current_allocation,
            "emergency_reserved": self.emergency_reserved,
            "can_allocate": self.can_allocate,
        }


def allocation_limit(slot: Slot, emergency: bool) -> int:
    """Highest current_allocation the request may reach."""
    return slot.max_capacity if emergency else slot.regular_limit


def validate_bookable(slot: Slot, today: date) -> None:
    """Raise SLOT_NOT_AVAILABLE unless the slot is active, current and not deleted."""
    reasons = []
    if slot.status != "active":
        reasons.append(f"slot is {slot.status}")
    if slot.deleted_at is not None:
        reasons.append("slot was deleted")
    if slot.date < today:
        reasons.append("slot date is in the past")
    if reasons:
        raise AppError(
            ErrorCode.SLOT_NOT_AVAILABLE,
            details={"slot_id": slot.slot_id, "reasons": reasons, "status": slot.status},
            suggestions=["Choose an active slot on or after today"],
        )


class SlotCapacityManager:
    """
    Serialized capacity bookkeeping for slots.

    Callers load and mutate the slot in the same transaction; the slot's
    version column turns a lost race into StaleDataError at flush.
    """

    def __init__(self, slot_store: SlotStore):
        self.slot_store = slot_store
        self.logger = logging.getLogger("service.SlotCapacityManager")

    def reserve_capacity(self, session, slot_id: str, emergency: bool = False) -> Reservation:
        """
        Take one unit of capacity and the next token number.

        Regular requests stop at max_capacity - emergency_reserved;
        emergency requests may fill the slot.
        """
        slot = self.slot_store.require(session, slot_id, for_update=True)
        limit = allocation_limit(slot, emergency)
        if slot.current_allocation >= limit:
            raise AppError(
                ErrorCode.SLOT_CAPACITY_EXCEEDED,
                details={
                    "slot_id": slot_id,
                    "current_allocation": slot.current_allocation,
                    "max_capacity": slot.max_capacity,
                    "emergency_reserved": slot.emergency_reserved,
                    "emergency": emergency,
                },
            )
        slot.current_allocation += 1
        slot.last_token_number += 1
        slot.updated_at = self.slot_store.clock.now()
        session.flush()
        return Reservation(slot=slot, new_count=slot.current_allocation, token_number=slot.last_token_number)

    def release_capacity(self, session, slot_id: str) -> Slot:
        """Give back one unit; never goes below zero."""
        slot = self.slot_store.require(session, slot_id, for_update=True)
        if slot.current_allocation > 0:
            slot.current_allocation -= 1
        else:
            self.logger.warning("Release on slot %s with zero allocation", slot_id)
        slot.updated_at = self.slot_store.clock.now()
        session.flush()
        return slot

    def swap_within_slot(self, session, slot_id: str, reserved_count: int) -> Reservation:
        """
        One token replaces another: the count stays put but a fresh token
        number is consumed. reserved_count is the count the caller
        observed; a different value means another writer got in between.
        """
        slot = self.slot_store.require(session, slot_id, for_update=True)
        if slot.current_allocation != reserved_count:
            raise AppError(
                ErrorCode.CONCURRENT_MODIFICATION,
                details={
                    "slot_id": slot_id,
                    "expected_count": reserved_count,
                    "current_allocation": slot.current_allocation,
                },
            )
        slot.last_token_number += 1
        slot.updated_at = self.slot_store.clock.now()
        session.flush()
        return Reservation(slot=slot, new_count=slot.current_allocation, token_number=slot.last_token_number)

    def check_availability(self, session, slot_id: str, require_emergency_reserve: bool = False) -> Availability:
        """
        Free capacity for a request. Without require_emergency_reserve
        only max_capacity - emergency_reserved is usable.
        """
        slot = self.slot_store.require(session, slot_id)
        limit = allocation_limit(slot, require_emergency_reserve)
        return Availability(
            slot_id=slot.slot_id,
            available=max(0, limit - slot.current_allocation),
            max_capacity=slot.max_capacity,
            current_allocation=slot.current_allocation,
            emergency_reserved=slot.emergency_reserved,
            require_emergency_reserve=require_emergency_reserve,
        )
