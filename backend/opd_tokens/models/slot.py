"""
OPD slot model.

A slot is a doctor's timed window on a date. It carries the capacity
counter that token allocation reserves against and the per-slot token
number sequence.
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Integer, Date, CheckConstraint, Index

from opd_tokens.db.engine import Base


class SlotStatus(str, Enum):
    """Status of an OPD slot."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return uuid.uuid4().hex


CLOCK_TIME = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")


def is_clock_time(value) -> bool:
    """True for a zero-padded 24h HH:MM string; slot times compare as strings."""
    return isinstance(value, str) and CLOCK_TIME.match(value) is not None


class Slot(Base):
    """
    Bookable OPD slot for one doctor.

    current_allocation always equals the number of tokens in this slot
    whose status is allocated, confirmed or in_consultation.
    """

    __tablename__ = "slots"

    slot_id = Column(String(64), primary_key=True, default=_new_id)
    doctor_id = Column(String(64), nullable=False)
    specialty = Column(String(100), nullable=True)
    department = Column(String(100), nullable=True)

    # Date and time window (HH:MM)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    # Capacity
    max_capacity = Column(Integer, nullable=False, default=10)
    current_allocation = Column(Integer, nullable=False, default=0)
    emergency_reserved = Column(Integer, nullable=False, default=0)
    last_token_number = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=SlotStatus.ACTIVE.value)

    # Incremented by the ORM on every UPDATE
    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_slots_doctor_date", "doctor_id", "date"),
        Index("ix_slots_specialty_date", "specialty", "date"),
        CheckConstraint("max_capacity >= 1", name="ck_slots_max_capacity"),
        CheckConstraint(
            "current_allocation >= 0 AND current_allocation <= max_capacity",
            name="ck_slots_current_allocation",
        ),
        CheckConstraint(
            "emergency_reserved >= 0 AND emergency_reserved <= max_capacity",
            name="ck_slots_emergency_reserved",
        ),
        CheckConstraint("last_token_number >= 0", name="ck_slots_last_token_number"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def available(self) -> int:
        return self.max_capacity - self.current_allocation

    @property
    def regular_limit(self) -> int:
        """Capacity open to non-emergency sources."""
        return self.max_capacity - self.emergency_reserved

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "slot_id": self.slot_id,
            "doctor_id": self.doctor_id,
            "specialty": self.specialty,
            "department": self.department,
            "date": self.date.isoformat() if self.date else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "max_capacity": self.max_capacity,
            "current_allocation": self.current_allocation,
            "emergency_reserved": self.emergency_reserved,
            "last_token_number": self.last_token_number,
            "available": self.available,
            "status": self.status,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Slot {self.slot_id} doctor={self.doctor_id} {self.date} {self.start_time}>"
