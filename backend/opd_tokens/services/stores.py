"""
Slot Store and Token Store.

Row-level access to the slots and tokens tables. Methods that take a
session run inside the caller's transaction; the *_slot / *_token
convenience readers open their own short-lived session.
"""

import logging
import math
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.slot import Slot, SlotStatus, is_clock_time
from opd_tokens.models.token import Token, ACTIVE_STATUSES


class SlotStore:
    """Persistent slots with capacity, version and token-number counter."""

    def __init__(self, session_factory, config_view, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.config_view = config_view
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger("service.SlotStore")

    def create_slot(
        self,
        doctor_id: str,
        slot_date: date,
        start_time: str,
        end_time: str,
        max_capacity: Optional[int] = None,
        emergency_reserved: Optional[int] = None,
        specialty: Optional[str] = None,
        department: Optional[str] = None,
        status: str = SlotStatus.ACTIVE.value,
        slot_id: Optional[str] = None,
    ) -> Slot:
        """
        Insert a slot.

        Used by the schedule-generation collaborator and by tests.
        emergency_reserved defaults to emergency_reserve_percentage of the
        capacity, rounded down.
        """
        snap = self.config_view.snapshot()
        if max_capacity is None:
            max_capacity = snap.default_slot_capacity
        if max_capacity < 1:
            raise AppError(ErrorCode.VALIDATION_ERROR, "max_capacity must be at least 1",
                           details={"max_capacity": max_capacity})
        if emergency_reserved is None:
            emergency_reserved = int(math.floor(max_capacity * snap.emergency_reserve_percentage / 100))
        if not 0 <= emergency_reserved <= max_capacity:
            raise AppError(ErrorCode.VALIDATION_ERROR, "emergency_reserved must be within 0..max_capacity",
                           details={"emergency_reserved": emergency_reserved, "max_capacity": max_capacity})
        if not (is_clock_time(start_time) and is_clock_time(end_time)) or start_time >= end_time:
            raise AppError(ErrorCode.VALIDATION_ERROR, "start_time and end_time must be HH:MM with start before end",
                           details={"start_time": start_time, "end_time": end_time})
        if status not in {s.value for s in SlotStatus}:
            raise AppError(ErrorCode.VALIDATION_ERROR, f"Invalid slot status: {status}")

        now = self.clock.now()
        slot = Slot(
            doctor_id=doctor_id,
            date=slot_date,
            start_time=start_time,
            end_time=end_time,
            max_capacity=max_capacity,
            emergency_reserved=emergency_reserved,
            current_allocation=0,
            last_token_number=0,
            specialty=specialty,
            department=department,
            status=status,
            created_at=now,
            updated_at=now,
        )
        if slot_id:
            slot.slot_id = slot_id
        with self.session_factory() as session, session.begin():
            session.add(slot)
        self.logger.debug("Created slot %s for doctor %s on %s", slot.slot_id, doctor_id, slot_date)
        return slot

    def get(self, session, slot_id: str, for_update: bool = False) -> Optional[Slot]:
        """Load a slot; for_update locks the row (ignored on SQLite, which serializes writers)."""
        stmt = select(Slot).where(Slot.slot_id == slot_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def require(self, session, slot_id: str, for_update: bool = False) -> Slot:
        slot = self.get(session, slot_id, for_update=for_update)
        if slot is None:
            raise AppError(ErrorCode.SLOT_NOT_FOUND, details={"slot_id": slot_id})
        return slot

    def get_slot(self, slot_id: str) -> Optional[Slot]:
        with self.session_factory() as session:
            return self.get(session, slot_id)

    def find(
        self,
        session,
        doctor_id: Optional[str] = None,
        specialty: Optional[str] = None,
        department: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        exclude_slot_ids: Iterable[str] = (),
        exclude_doctor_id: Optional[str] = None,
        only_bookable: bool = True,
    ) -> List[Slot]:
        """Slots matching the filters, earliest first."""
        stmt = select(Slot)
        if doctor_id is not None:
            stmt = stmt.where(Slot.doctor_id == doctor_id)
        if exclude_doctor_id is not None:
            stmt = stmt.where(Slot.doctor_id != exclude_doctor_id)
        if specialty is not None:
            stmt = stmt.where(Slot.specialty == specialty)
        if department is not None:
            stmt = stmt.where(Slot.department == department)
        if date_from is not None:
            stmt = stmt.where(Slot.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Slot.date <= date_to)
        excluded = list(exclude_slot_ids)
        if excluded:
            stmt = stmt.where(Slot.slot_id.not_in(excluded))
        if only_bookable:
            stmt = stmt.where(Slot.status == SlotStatus.ACTIVE.value, Slot.deleted_at.is_(None))
        stmt = stmt.order_by(Slot.date, Slot.start_time, Slot.slot_id)
        return list(session.execute(stmt).scalars().all())

    def set_status(self, session, slot_id: str, status: str) -> Slot:
        if status not in {s.value for s in SlotStatus}:
            raise AppError(ErrorCode.VALIDATION_ERROR, f"Invalid slot status: {status}")
        slot = self.require(session, slot_id, for_update=True)
        slot.status = status
        slot.updated_at = self.clock.now()
        session.flush()
        return slot

    def counted_tokens(self, session, slot_id: str) -> int:
        """Tokens in the slot whose status counts against capacity."""
        return session.execute(
            select(func.count(Token.token_id)).where(
                Token.slot_id == slot_id, Token.status.in_(ACTIVE_STATUSES)
            )
        ).scalar_one()


class TokenStore:
    """Persistent tokens with slot reference, number, priority and status."""

    def __init__(self, session_factory, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger("service.TokenStore")

    def add(self, session, **fields) -> Token:
        now = self.clock.now()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        fields.setdefault("token_metadata", {})
        token = Token(**fields)
        session.add(token)
        session.flush()
        return token

    def get(self, session, token_id: str, for_update: bool = False) -> Optional[Token]:
        stmt = select(Token).where(Token.token_id == token_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def require(self, session, token_id: str, for_update: bool = False) -> Token:
        token = self.get(session, token_id, for_update=for_update)
        if token is None:
            raise AppError(ErrorCode.TOKEN_NOT_FOUND, details={"token_id": token_id})
        return token

    def get_token(self, token_id: str) -> Optional[Token]:
        with self.session_factory() as session:
            return self.get(session, token_id)

    def active_in_slot(self, session, slot_id: str) -> List[Token]:
        stmt = (
            select(Token)
            .where(Token.slot_id == slot_id, Token.status.in_(ACTIVE_STATUSES))
            .order_by(Token.token_number)
        )
        return list(session.execute(stmt).scalars().all())

    def active_for_patient(self, session, slot_id: str, patient_id: str) -> Optional[Token]:
        stmt = select(Token).where(
            Token.slot_id == slot_id,
            Token.patient_id == patient_id,
            Token.status.in_(ACTIVE_STATUSES),
        )
        return session.execute(stmt).scalars().first()

    def find(
        self,
        session,
        doctor_id: Optional[str] = None,
        slot_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        statuses: Iterable[str] = ACTIVE_STATUSES,
    ) -> List[Token]:
        """Tokens matching batch criteria (dates are slot dates)."""
        stmt = select(Token).join(Slot, Slot.slot_id == Token.slot_id)
        if doctor_id is not None:
            stmt = stmt.where(Token.doctor_id == doctor_id)
        if slot_id is not None:
            stmt = stmt.where(Token.slot_id == slot_id)
        if date_from is not None:
            stmt = stmt.where(Slot.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Slot.date <= date_to)
        statuses = list(statuses)
        if statuses:
            stmt = stmt.where(Token.status.in_(statuses))
        return list(session.execute(stmt).scalars().all())

    def statistics(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> Dict[str, Any]:
        """Token counts by source and status for slots in the date range."""
        with self.session_factory() as session:
            stmt = (
                select(Token.source, Token.status, func.count(Token.token_id))
                .join(Slot, Slot.slot_id == Token.slot_id)
                .group_by(Token.source, Token.status)
            )
            if date_from is not None:
                stmt = stmt.where(Slot.date >= date_from)
            if date_to is not None:
                stmt = stmt.where(Slot.date <= date_to)
            rows = session.execute(stmt).all()

        by_source: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        detailed = []
        total = 0
        for source, status, count in rows:
            total += count
            by_source[source] = by_source.get(source, 0) + count
            by_status[status] = by_status.get(status, 0) + count
            detailed.append({"source": source, "status": status, "count": count})
        return {
            "date_range": {
                "date_from": date_from.isoformat() if date_from else None,
                "date_to": date_to.isoformat() if date_to else None,
            },
            "total_tokens": total,
            "by_source": by_source,
            "by_status": by_status,
            "detailed": detailed,
        }
