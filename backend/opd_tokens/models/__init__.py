"""
SQLAlchemy models for the OPD token engine.
"""

from opd_tokens.models.slot import Slot, SlotStatus
from opd_tokens.models.token import (
    Token,
    TokenSource,
    TokenStatus,
    AllocationMethod,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)
from opd_tokens.models.configuration import ConfigurationEntry

__all__ = [
    "Slot",
    "SlotStatus",
    "Token",
    "TokenSource",
    "TokenStatus",
    "AllocationMethod",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ConfigurationEntry",
]
