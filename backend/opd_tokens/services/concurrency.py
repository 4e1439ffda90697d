"""
Concurrency Controller.

Primitives every slot/token mutation goes through:
1. execute_with_retry - retries transient store errors with jittered
   exponential backoff
2. update_with_optimistic_lock - version-checked single-row update
3. execute_transaction - one database transaction spanning slots and tokens

Also owns the in-flight registry that short-circuits duplicate concurrent
requests (same operation on the same slot/patient or token).
"""

import logging
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode, is_concurrency_error, is_transient


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for transient store errors."""
    max_retries: int = 1
    base_delay_ms: float = 50
    backoff_factor: float = 1.5
    max_delay_ms: float = 200
    jitter_min: float = 0.5
    jitter_max: float = 1.0

    @classmethod
    def from_snapshot(cls, snapshot) -> "RetryPolicy":
        return cls(
            max_retries=int(snapshot.get("concurrency", "max_retries", 1)),
            base_delay_ms=float(snapshot.get("concurrency", "base_delay_ms", 50)),
            backoff_factor=float(snapshot.get("concurrency", "backoff_factor", 1.5)),
            max_delay_ms=float(snapshot.get("concurrency", "max_delay_ms", 200)),
        )

    def delay_seconds(self, retry_number: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number 1, 2, ... (capped, then jittered)."""
        raw = self.base_delay_ms * (self.backoff_factor ** max(0, retry_number - 1))
        capped = min(raw, self.max_delay_ms)
        jitter = (rng or random).uniform(self.jitter_min, self.jitter_max)
        return capped * jitter / 1000.0


class Deadline:
    """Soft deadline for one engine operation."""

    def __init__(self, clock: Clock, seconds: Optional[float]):
        self.clock = clock
        self.seconds = seconds
        self._started = clock.monotonic()

    def remaining(self) -> Optional[float]:
        if self.seconds is None:
            return None
        return self.seconds - (self.clock.monotonic() - self._started)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str) -> None:
        if self.expired:
            raise AppError(
                ErrorCode.SERVICE_UNAVAILABLE,
                f"Operation '{operation}' exceeded its deadline",
                details={"operation": operation, "deadline_seconds": self.seconds},
            )


class InFlightRegistry:
    """
    Process-local map of operation key -> start time.

    A request whose key is already present fails with
    OPERATION_IN_PROGRESS. Entries older than max_age_seconds are evicted
    by sweep(), which the background sweeper runs periodically.
    """

    def __init__(self, clock: Optional[Clock] = None, max_age_seconds: float = 300):
        self.clock = clock or SystemClock()
        self.max_age_seconds = max_age_seconds
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.logger = logging.getLogger("service.InFlightRegistry")

    def acquire(self, key: str) -> None:
        with self._lock:
            if key in self._entries:
                raise AppError(
                    ErrorCode.OPERATION_IN_PROGRESS,
                    details={"operation_key": key},
                )
            self._entries[key] = self.clock.monotonic()

    def release(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    @contextmanager
    def track(self, key: str):
        self.acquire(key)
        try:
            yield key
        finally:
            self.release(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Ongoing operations with their age in seconds."""
        now = self.clock.monotonic()
        with self._lock:
            items = list(self._entries.items())
        return [
            {"operation_key": key, "age_seconds": round(now - started, 3)}
            for key, started in sorted(items, key=lambda kv: kv[1])
        ]

    def sweep(self) -> List[str]:
        """Evict stale entries; returns the evicted keys."""
        cutoff = self.clock.monotonic() - self.max_age_seconds
        with self._lock:
            stale = [key for key, started in self._entries.items() if started < cutoff]
            for key in stale:
                del self._entries[key]
        if stale:
            self.logger.warning("Evicted %d stale in-flight operations: %s", len(stale), stale)
        return stale

    def start_sweeper(self, interval_seconds: float = 300) -> None:
        """Run sweep() every interval on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _run():
            while not self._stop.wait(interval_seconds):
                self.sweep()

        self._sweeper = threading.Thread(target=_run, name="in-flight-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
        self._sweeper = None


class ConcurrencyController:
    """
    Retry, optimistic locking and transactions over a session factory.

    Usage:
        controller = ConcurrencyController(session_factory)
        token = controller.run_in_transaction(lambda session: ..., "allocate")
    """

    def __init__(
        self,
        session_factory,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        in_flight: Optional[InFlightRegistry] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.in_flight = in_flight or InFlightRegistry(self.clock)
        self.rng = rng or random.Random()
        self.logger = logging.getLogger("service.ConcurrencyController")

    def execute_with_retry(
        self,
        op: Callable[[int], Any],
        operation: str = "operation",
        deadline: Optional[Deadline] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Run op(attempt) and retry transient failures.

        Non-transient errors propagate unchanged. When retries run out the
        last error is wrapped in MAX_RETRIES_EXCEEDED; when the deadline
        passes SERVICE_UNAVAILABLE is raised instead.
        """
        retries = self.retry_policy.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            if deadline is not None:
                deadline.check(operation)
            try:
                return op(attempt)
            except Exception as e:
                if not is_transient(e):
                    raise
                if attempt >= retries:
                    self.logger.error(
                        "%s failed after %d attempts: %s", operation, attempt + 1, e
                    )
                    raise AppError(
                        ErrorCode.MAX_RETRIES_EXCEEDED,
                        f"Operation '{operation}' failed after {attempt + 1} attempts",
                        details={
                            "operation": operation,
                            "attempts": attempt + 1,
                            "cause": "concurrency" if is_concurrency_error(e) else "system",
                            "last_error": str(e),
                        },
                    ) from e

                attempt += 1
                delay = self.retry_policy.delay_seconds(attempt, self.rng)
                if deadline is not None:
                    remaining = deadline.remaining()
                    if remaining is not None and remaining <= delay:
                        raise AppError(
                            ErrorCode.SERVICE_UNAVAILABLE,
                            f"Operation '{operation}' exceeded its deadline",
                            details={"operation": operation, "attempts": attempt},
                        ) from e
                self.logger.warning(
                    "%s hit transient error (%s); retry %d/%d in %.0fms",
                    operation, type(e).__name__, attempt, retries, delay * 1000,
                )
                self.clock.sleep(delay)

    def execute_transaction(self, txn_fn: Callable[[Any], Any]) -> Any:
        """
        Run txn_fn(session) in one transaction; commit on return, roll
        back on any exception. Nothing partial is ever visible.
        """
        with self.session_factory() as session:
            with session.begin():
                return txn_fn(session)

    def run_in_transaction(
        self,
        txn_fn: Callable[[Any], Any],
        operation: str = "transaction",
        deadline: Optional[Deadline] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """execute_transaction under execute_with_retry; each attempt gets a fresh session."""
        return self.execute_with_retry(
            lambda attempt: self.execute_transaction(txn_fn),
            operation=operation,
            deadline=deadline,
            max_retries=max_retries,
        )

    def update_with_optimistic_lock(
        self,
        model,
        entity_id: Any,
        mutate_fn: Callable[[Any], Any],
        operation: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> Any:
        """
        Load model[entity_id], apply mutate_fn and write it back only if
        its version is unchanged. The ORM increments the version; a
        mismatch raises StaleDataError and the whole update is retried.
        """
        name = operation or f"update:{model.__tablename__}:{entity_id}"

        def _txn(session):
            entity = session.get(model, entity_id)
            if entity is None:
                code = ErrorCode.SLOT_NOT_FOUND if model.__tablename__ == "slots" else ErrorCode.TOKEN_NOT_FOUND
                raise AppError(code, details={"id": entity_id})
            mutate_fn(entity)
            session.flush()
            return entity

        return self.run_in_transaction(_txn, operation=name, deadline=deadline)
