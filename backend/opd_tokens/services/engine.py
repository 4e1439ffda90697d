"""
Token engine wiring.

Builds the services around one session factory, clock and configuration
view, and exposes the inbound operations in one place for the HTTP layer.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.config import config
from opd_tokens.db.engine import create_store_engine, make_session_factory, init_db
from opd_tokens.models.slot import Slot
from opd_tokens.models.token import Token
from opd_tokens.services.allocation import TokenAllocator
from opd_tokens.services.capacity import SlotCapacityManager
from opd_tokens.services.concurrency import ConcurrencyController, InFlightRegistry, RetryPolicy
from opd_tokens.services.configuration import ConfigurationService, StaticConfigView
from opd_tokens.services.outcomes import Outcome
from opd_tokens.services.priority import PriorityCalculator
from opd_tokens.services.reallocation import BatchResult, TokenReallocator
from opd_tokens.services.stores import SlotStore, TokenStore
from opd_tokens.services.token_lifecycle import TokenLifecycle


logger = logging.getLogger("service.TokenEngine")


class TokenEngine:
    """All token-engine services sharing one store, clock and config view."""

    def __init__(
        self,
        session_factory,
        config_view,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        deadline_seconds: Optional[float] = None,
        db_engine=None,
    ):
        self.clock = clock or SystemClock()
        self.session_factory = session_factory
        self.config_view = config_view
        self.db_engine = db_engine
        snap = config_view.snapshot()

        if deadline_seconds is None:
            deadline_seconds = float(snap.get("concurrency", "deadline_seconds", 30))

        self.in_flight = InFlightRegistry(
            self.clock, max_age_seconds=float(snap.get("concurrency", "in_flight_max_age_seconds", 300))
        )
        self.controller = ConcurrencyController(
            session_factory,
            clock=self.clock,
            retry_policy=retry_policy or RetryPolicy.from_snapshot(snap),
            in_flight=self.in_flight,
        )
        self.slots = SlotStore(session_factory, config_view, self.clock)
        self.tokens = TokenStore(session_factory, self.clock)
        self.capacity = SlotCapacityManager(self.slots)
        self.calculator = PriorityCalculator(config_view)
        self.reallocator = TokenReallocator(
            self.controller, self.slots, self.tokens, self.capacity, config_view, self.clock, deadline_seconds
        )
        self.allocator = TokenAllocator(
            self.controller, self.slots, self.tokens, self.capacity, self.calculator,
            self.reallocator, config_view, self.clock, deadline_seconds,
        )
        self.lifecycle = TokenLifecycle(self.controller, self.tokens, self.capacity, self.clock, deadline_seconds)

    # Allocation

    def allocate(self, request) -> Outcome:
        return self.allocator.allocate_token(request)

    def emergency_insertion(self, **kwargs) -> Outcome:
        return self.allocator.emergency_insertion(**kwargs)

    # Lifecycle

    def cancel(self, token_id: str, reason: str = "patient_request", cancelled_by: Optional[str] = None,
               notes: Optional[str] = None) -> Token:
        return self.lifecycle.cancel(token_id, reason, cancelled_by, notes)

    def confirm(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self.lifecycle.confirm(token_id, actor_id, notes)

    def start_consultation(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self.lifecycle.start_consultation(token_id, actor_id, notes)

    def complete(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self.lifecycle.complete(token_id, actor_id, notes)

    def mark_no_show(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self.lifecycle.mark_no_show(token_id, actor_id, notes)

    # Reallocation

    def move(self, token_id: str, new_slot_id: str, actor_id: Optional[str] = None) -> Token:
        return self.reallocator.move_token(token_id, new_slot_id, actor_id)

    def reallocate_batch(self, criteria, reason: str = "other") -> BatchResult:
        return self.reallocator.reallocate_batch(criteria, reason)

    # Slots and reporting

    def create_slot(self, doctor_id: str, slot_date: date, start_time: str, end_time: str, **kwargs) -> Slot:
        return self.slots.create_slot(doctor_id, slot_date, start_time, end_time, **kwargs)

    def set_slot_status(self, slot_id: str, status: str) -> Slot:
        return self.controller.run_in_transaction(
            lambda session: self.slots.set_status(session, slot_id, status),
            operation=f"slot_status:{slot_id}",
        )

    def get_slot(self, slot_id: str) -> Optional[Slot]:
        return self.slots.get_slot(slot_id)

    def get_token(self, token_id: str) -> Optional[Token]:
        return self.tokens.get_token(token_id)

    def allocation_statistics(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> Dict[str, Any]:
        return self.allocator.allocation_statistics(date_from, date_to)

    def start_background_tasks(self, sweep_interval_seconds: float = 300) -> None:
        self.in_flight.start_sweeper(sweep_interval_seconds)

    def shutdown(self) -> None:
        self.in_flight.stop_sweeper()
        if self.db_engine is not None:
            self.db_engine.dispose()


def build_token_engine(
    database_url: Optional[str] = None,
    db_engine=None,
    clock: Optional[Clock] = None,
    config_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    use_database_config: bool = True,
    retry_policy: Optional[RetryPolicy] = None,
    deadline_seconds: Optional[float] = None,
    create_tables: bool = False,
) -> TokenEngine:
    """
    Build a TokenEngine.

    Args:
        database_url: SQLAlchemy URL; defaults to the configured database
        db_engine: Existing engine (overrides database_url)
        clock: Time source; SystemClock when omitted
        config_overrides: Static configuration overrides (implies no database config)
        use_database_config: Read business configuration from the configuration table
        retry_policy: Overrides the configured retry policy
        deadline_seconds: Soft deadline per operation
        create_tables: Create missing tables (development/testing)
    """
    clock = clock or SystemClock()
    if db_engine is None:
        db_engine = create_store_engine(database_url or config.get_database_url(), echo=config.DEBUG)
    if create_tables:
        init_db(db_engine)
    session_factory = make_session_factory(db_engine)

    if config_overrides is not None or not use_database_config:
        config_view = StaticConfigView(config_overrides)
    else:
        config_view = ConfigurationService(session_factory, clock, ttl_seconds=config.CONFIG_CACHE_TTL_SECONDS)

    logger.info("Token engine ready (%s)", db_engine.url.render_as_string(hide_password=True))
    return TokenEngine(
        session_factory,
        config_view,
        clock=clock,
        retry_policy=retry_policy,
        deadline_seconds=deadline_seconds,
        db_engine=db_engine,
    )
