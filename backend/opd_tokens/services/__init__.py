"""
Token engine services.

- PriorityCalculator: source and patient attributes to a priority score
- SlotStore / TokenStore: slot and token persistence
- ConcurrencyController: retry, optimistic locking, transactions, in-flight keys
- SlotCapacityManager: capacity reservation and token numbering
- TokenAllocator: direct placement, preemption and alternatives
- TokenReallocator: displaced, batch and moved tokens
- TokenLifecycle: confirm, start, complete, no-show, cancel
"""

from opd_tokens.services.configuration import (
    ConfigurationService,
    ConfigSnapshot,
    StaticConfigView,
    DEFAULT_CONFIGURATION,
)
from opd_tokens.services.priority import PriorityCalculator, PatientInfo, PriorityResult, PriorityError
from opd_tokens.services.concurrency import ConcurrencyController, RetryPolicy, Deadline, InFlightRegistry
from opd_tokens.services.stores import SlotStore, TokenStore
from opd_tokens.services.capacity import SlotCapacityManager
from opd_tokens.services.outcomes import AllocationRequest, Allocated, Alternatives, Rejected, PreemptedToken
from opd_tokens.services.allocation import TokenAllocator
from opd_tokens.services.reallocation import TokenReallocator, BatchCriteria, BatchResult
from opd_tokens.services.token_lifecycle import TokenLifecycle
from opd_tokens.services.engine import TokenEngine, build_token_engine

__all__ = [
    "ConfigurationService",
    "ConfigSnapshot",
    "StaticConfigView",
    "DEFAULT_CONFIGURATION",
    "PriorityCalculator",
    "PatientInfo",
    "PriorityResult",
    "PriorityError",
    "ConcurrencyController",
    "RetryPolicy",
    "Deadline",
    "InFlightRegistry",
    "SlotStore",
    "TokenStore",
    "SlotCapacityManager",
    "AllocationRequest",
    "Allocated",
    "Alternatives",
    "Rejected",
    "PreemptedToken",
    "TokenAllocator",
    "TokenReallocator",
    "BatchCriteria",
    "BatchResult",
    "TokenLifecycle",
    "TokenEngine",
    "build_token_engine",
]
