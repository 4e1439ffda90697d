"""
OPD token model.

A token is one patient's numbered claim on a slot. Token numbers are
unique within a slot and are never reused.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from opd_tokens.db.engine import Base


class TokenSource(str, Enum):
    """Channel a booking request arrived through."""
    ONLINE = "online"
    WALKIN = "walkin"
    PRIORITY = "priority"
    FOLLOWUP = "followup"
    EMERGENCY = "emergency"


class TokenStatus(str, Enum):
    """Lifecycle status of a token."""
    ALLOCATED = "allocated"
    CONFIRMED = "confirmed"
    IN_CONSULTATION = "in_consultation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NOSHOW = "noshow"


class AllocationMethod(str, Enum):
    DIRECT = "direct"
    PREEMPTION = "preemption"
    REALLOCATION = "reallocation"


# Statuses counted in slot.current_allocation
ACTIVE_STATUSES = (
    TokenStatus.ALLOCATED.value,
    TokenStatus.CONFIRMED.value,
    TokenStatus.IN_CONSULTATION.value,
)

TERMINAL_STATUSES = (
    TokenStatus.COMPLETED.value,
    TokenStatus.CANCELLED.value,
    TokenStatus.NOSHOW.value,
)


def _new_id() -> str:
    return uuid.uuid4().hex


class Token(Base):
    """
    Patient token in an OPD slot.

    metadata holds the originating slot for moved tokens, preemption and
    reallocation markers and the urgency of emergency insertions.
    """

    __tablename__ = "tokens"

    token_id = Column(String(64), primary_key=True, default=_new_id)
    patient_id = Column(String(64), nullable=False)
    doctor_id = Column(String(64), nullable=False)
    slot_id = Column(String(64), ForeignKey("slots.slot_id"), nullable=False)

    token_number = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False)
    priority_level = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False, default=TokenStatus.ALLOCATED.value)
    allocation_method = Column(String(20), nullable=False, default=AllocationMethod.DIRECT.value)

    # Replace the whole dict on change; in-place mutation is not tracked
    token_metadata = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)

    # Lifecycle audit fields
    cancellation_reason = Column(String(50), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    consultation_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    slot = relationship("Slot")

    __table_args__ = (
        UniqueConstraint("slot_id", "token_number", name="uq_tokens_slot_token_number"),
        Index("ix_tokens_patient", "patient_id"),
        Index("ix_tokens_slot_status", "slot_id", "status"),
        Index("ix_tokens_status_created", "status", "created_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "token_id": self.token_id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "slot_id": self.slot_id,
            "token_number": self.token_number,
            "source": self.source,
            "priority": self.priority,
            "priority_level": self.priority_level,
            "status": self.status,
            "allocation_method": self.allocation_method,
            "metadata": dict(self.token_metadata or {}),
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Token {self.token_id} slot={self.slot_id} #{self.token_number} {self.status}>"
