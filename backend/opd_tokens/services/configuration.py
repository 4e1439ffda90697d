"""
Configuration Service.

Business configuration (priority bases, capacity policy, timing,
reallocation search and retry policy) stored as category/key rows in the
configuration table, falling back to built-in defaults.

Reads go through a TTL cache and are handed out as immutable snapshots:
a request takes one snapshot at its start and uses it throughout, so a
concurrent set_value never changes a calculation half way.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.configuration import ConfigurationEntry


SEARCH_STRATEGIES = (
    "same_doctor_same_day",
    "same_specialty_same_day",
    "same_doctor_next_day",
)

DEFAULT_CONFIGURATION: Dict[str, Dict[str, Any]] = {
    "priority": {
        "emergency": 1000,
        "priority": 800,
        "followup": 600,
        "online": 400,
        "walkin": 200,
    },
    "capacity": {
        "default_slot_capacity": 10,
        "emergency_reserve_percentage": 20,
        "preemption_threshold": 200,
    },
    "timing": {
        "default_consultation_minutes": 15,
        "buffer_minutes": 5,
        "reallocation_window_hours": 4,
    },
    "reallocation": {
        "max_candidates": 5,
        "search_order": list(SEARCH_STRATEGIES),
    },
    "concurrency": {
        "max_retries": 1,
        "base_delay_ms": 50,
        "backoff_factor": 1.5,
        "max_delay_ms": 200,
        "deadline_seconds": 30,
        "in_flight_max_age_seconds": 300,
    },
}


def _freeze(values: Dict[str, Dict[str, Any]]) -> Mapping[str, Mapping[str, Any]]:
    frozen = {}
    for category, entries in values.items():
        frozen[category] = MappingProxyType(
            {k: tuple(v) if isinstance(v, list) else v for k, v in entries.items()}
        )
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of the configuration at one point in time."""
    values: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: _freeze(DEFAULT_CONFIGURATION))

    @classmethod
    def from_dict(cls, values: Dict[str, Dict[str, Any]]) -> "ConfigSnapshot":
        return cls(values=_freeze(values))

    def get(self, category: str, key: str, default: Any = None) -> Any:
        return self.values.get(category, {}).get(key, default)

    def category(self, category: str) -> Dict[str, Any]:
        return dict(self.values.get(category, {}))

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            category: {k: list(v) if isinstance(v, tuple) else v for k, v in entries.items()}
            for category, entries in self.values.items()
        }

    # Typed accessors used by the engine

    def priority_base(self, source: str) -> Optional[int]:
        return self.get("priority", source)

    @property
    def preemption_threshold(self) -> int:
        return int(self.get("capacity", "preemption_threshold", 200))

    @property
    def emergency_reserve_percentage(self) -> float:
        return float(self.get("capacity", "emergency_reserve_percentage", 20))

    @property
    def default_slot_capacity(self) -> int:
        return int(self.get("capacity", "default_slot_capacity", 10))

    @property
    def reallocation_window_hours(self) -> float:
        return float(self.get("timing", "reallocation_window_hours", 4))

    @property
    def max_reallocation_candidates(self) -> int:
        return int(self.get("reallocation", "max_candidates", 5))

    @property
    def reallocation_search_order(self) -> tuple:
        return tuple(self.get("reallocation", "search_order", SEARCH_STRATEGIES))


def merge_configuration(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Dict[str, Any]]:
    """Defaults with overrides applied per key."""
    merged = copy.deepcopy(DEFAULT_CONFIGURATION)
    for category, entries in (overrides or {}).items():
        merged.setdefault(category, {}).update(copy.deepcopy(entries))
    return merged


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_value(category: str, key: str, value: Any) -> None:
    """Raise VALIDATION_ERROR when the value does not fit the key."""
    if category not in DEFAULT_CONFIGURATION:
        raise AppError(ErrorCode.VALIDATION_ERROR, f"Unknown configuration category '{category}'",
                       details={"category": category})
    if key not in DEFAULT_CONFIGURATION[category]:
        raise AppError(ErrorCode.VALIDATION_ERROR, f"Unknown configuration key '{category}.{key}'",
                       details={"category": category, "key": key})

    def fail(reason: str):
        raise AppError(ErrorCode.VALIDATION_ERROR, f"Invalid value for {category}.{key}: {reason}",
                       details={"category": category, "key": key, "value": value})

    if category == "priority":
        if not _is_int(value) or not 0 <= value <= 2000:
            fail("priority bases must be integers between 0 and 2000")
    elif category == "capacity":
        if not _is_int(value) or value < 0:
            fail("must be a non-negative integer")
        if key == "emergency_reserve_percentage" and value > 100:
            fail("percentage must be between 0 and 100")
        if key == "default_slot_capacity" and value < 1:
            fail("slot capacity must be at least 1")
    elif category == "reallocation":
        if key == "max_candidates" and (not _is_int(value) or value < 1):
            fail("must be a positive integer")
        if key == "search_order":
            if not isinstance(value, (list, tuple)) or not value:
                fail("must be a non-empty list")
            unknown = [s for s in value if s not in SEARCH_STRATEGIES]
            if unknown:
                fail(f"unknown strategies {unknown}")
    elif category == "concurrency" and key == "max_retries":
        if not _is_int(value) or value < 0:
            fail("must be a non-negative integer")
    else:
        if not _is_number(value) or value < 0:
            fail("must be a non-negative number")


class StaticConfigView:
    """
    Configuration without a database.

    Same read interface as ConfigurationService; used by tests and by
    callers that only need the priority calculator.
    """

    def __init__(self, overrides: Optional[Dict[str, Dict[str, Any]]] = None):
        for category, entries in (overrides or {}).items():
            for key, value in entries.items():
                validate_value(category, key, value)
        self._snapshot = ConfigSnapshot.from_dict(merge_configuration(overrides))

    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    def get_value(self, category: str, key: str, default: Any = None) -> Any:
        return self._snapshot.get(category, key, default)

    def get_category(self, category: str) -> Dict[str, Any]:
        return self._snapshot.category(category)

    def refresh(self) -> ConfigSnapshot:
        return self._snapshot


class ConfigurationService:
    """
    Database-backed configuration with a TTL cache.

    Usage:
        service = ConfigurationService(session_factory)
        snap = service.snapshot()
        threshold = snap.preemption_threshold
    """

    def __init__(self, session_factory, clock: Optional[Clock] = None, ttl_seconds: float = 300):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._snapshot: Optional[ConfigSnapshot] = None
        self._loaded_at: Optional[float] = None
        self.logger = logging.getLogger("service.ConfigurationService")

    def snapshot(self) -> ConfigSnapshot:
        """Cached snapshot, reloaded once the TTL has passed."""
        with self._lock:
            now = self.clock.monotonic()
            if self._snapshot is not None and now - self._loaded_at < self.ttl_seconds:
                return self._snapshot
        return self.refresh()

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration from the database."""
        overrides: Dict[str, Dict[str, Any]] = {}
        with self.session_factory() as session:
            rows = session.execute(select(ConfigurationEntry)).scalars().all()
            for row in rows:
                if row.category not in DEFAULT_CONFIGURATION or row.key not in DEFAULT_CONFIGURATION[row.category]:
                    self.logger.warning("Ignoring unknown configuration entry %s.%s", row.category, row.key)
                    continue
                overrides.setdefault(row.category, {})[row.key] = row.value
        snapshot = ConfigSnapshot.from_dict(merge_configuration(overrides))
        with self._lock:
            self._snapshot = snapshot
            self._loaded_at = self.clock.monotonic()
        self.logger.debug("Configuration reloaded (%d overrides)", sum(len(v) for v in overrides.values()))
        return snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = None

    def get_value(self, category: str, key: str, default: Any = None) -> Any:
        return self.snapshot().get(category, key, default)

    def get_category(self, category: str) -> Dict[str, Any]:
        return self.snapshot().category(category)

    def set_value(self, category: str, key: str, value: Any, updated_by: Optional[str] = None,
                  description: Optional[str] = None) -> Dict[str, Any]:
        """Validate and store an override, then drop the cache."""
        validate_value(category, key, value)
        if isinstance(value, tuple):
            value = list(value)
        with self.session_factory() as session, session.begin():
            entry = session.execute(
                select(ConfigurationEntry).where(
                    ConfigurationEntry.category == category,
                    ConfigurationEntry.key == key,
                )
            ).scalar_one_or_none()
            if entry is None:
                entry = ConfigurationEntry(category=category, key=key)
                session.add(entry)
            entry.value = value
            entry.updated_by = updated_by
            if description is not None:
                entry.description = description
            session.flush()
            result = entry.to_dict()
        self.invalidate()
        self.logger.info("Configuration %s.%s set by %s", category, key, updated_by or "system")
        return result

    def delete_value(self, category: str, key: str) -> bool:
        """Remove an override so the default applies again."""
        with self.session_factory() as session, session.begin():
            entry = session.execute(
                select(ConfigurationEntry).where(
                    ConfigurationEntry.category == category,
                    ConfigurationEntry.key == key,
                )
            ).scalar_one_or_none()
            if entry is None:
                return False
            session.delete(entry)
        self.invalidate()
        self.logger.info("Configuration %s.%s reset to default", category, key)
        return True
