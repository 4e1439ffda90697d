"""
Pytest configuration for all tests.
Sets up Python path to find the backend package and provides a token
engine backed by a throwaway SQLite database.
"""

import sys
import os
import threading
from datetime import datetime, timedelta

import pytest

# Add backend directory to Python path
backend_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'backend'))
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

from opd_tokens.clock import Clock  # noqa: E402
from opd_tokens.db.engine import create_store_engine, init_db  # noqa: E402
from opd_tokens.models import Token, ACTIVE_STATUSES  # noqa: E402
from opd_tokens.services.concurrency import RetryPolicy  # noqa: E402
from opd_tokens.services.engine import build_token_engine  # noqa: E402

from sqlalchemy import select  # noqa: E402


FAST_RETRIES = RetryPolicy(max_retries=3, base_delay_ms=1, backoff_factor=1.5, max_delay_ms=2)


class ManualClock(Clock):
    """
    Settable clock.

    sleep() advances the clock instead of blocking, so retry backoff and
    deadlines can be checked without real waiting.
    """

    def __init__(self, start: datetime):
        self._now = start
        self._mono = 0.0
        self._lock = threading.Lock()
        self.sleeps = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._mono += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock():
    """Settable clock at 08:00 on Monday 2026-01-05."""
    return ManualClock(datetime(2026, 1, 5, 8, 0, 0))


@pytest.fixture
def db_engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'opd_tokens.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def token_engine(db_engine, clock):
    engine = build_token_engine(
        db_engine=db_engine,
        clock=clock,
        config_overrides={},
        retry_policy=FAST_RETRIES,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def make_slot(token_engine, clock):
    """Create a slot for doctor D1 today (capacity 5, no emergency reserve by default)."""

    def _make(doctor_id="D1", slot_date=None, start_time="09:00", end_time="10:00",
              max_capacity=5, emergency_reserved=0, specialty="general_medicine", **kwargs):
        return token_engine.create_slot(
            doctor_id,
            slot_date or clock.today(),
            start_time,
            end_time,
            max_capacity=max_capacity,
            emergency_reserved=emergency_reserved,
            specialty=specialty,
            **kwargs,
        )

    return _make


@pytest.fixture
def allocate(token_engine):
    """Allocate by slot id with keyword patient attributes."""

    def _allocate(patient_id, slot_id, source="online", waiting_time=0, **patient_info):
        return token_engine.allocate({
            "patient_id": patient_id,
            "slot_id": slot_id,
            "source": source,
            "waiting_time": waiting_time,
            "patient_info": patient_info,
        })

    return _allocate


@pytest.fixture
def check_invariants(token_engine):
    """Assert slot counter, capacity and numbering invariants for a slot."""

    def _check(slot_id):
        slot = token_engine.get_slot(slot_id)
        with token_engine.session_factory() as session:
            tokens = session.execute(select(Token).where(Token.slot_id == slot_id)).scalars().all()
            counted = token_engine.slots.counted_tokens(session, slot_id)
        numbers = sorted(t.token_number for t in tokens)

        assert slot.current_allocation == counted
        assert counted == len([t for t in tokens if t.status in ACTIVE_STATUSES])
        assert slot.current_allocation <= slot.max_capacity
        assert len(numbers) == len(set(numbers))
        assert slot.last_token_number == (numbers[-1] if numbers else 0)
        return slot, tokens

    return _check
