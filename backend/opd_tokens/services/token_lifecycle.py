"""
Token lifecycle transitions.

    allocated -> confirmed -> in_consultation -> completed
    allocated | confirmed -> cancelled | noshow
    confirmed -> completed

Leaving a counted status (allocated, confirmed, in_consultation) gives
the slot's capacity back in the same transaction.
"""

import logging
from typing import Optional

from opd_tokens.clock import Clock, SystemClock
from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.token import Token, TokenStatus, ACTIVE_STATUSES
from opd_tokens.services.capacity import SlotCapacityManager
from opd_tokens.services.concurrency import ConcurrencyController, Deadline
from opd_tokens.services.reallocation import CANCELLATION_REASONS
from opd_tokens.services.stores import TokenStore


ALLOCATED = TokenStatus.ALLOCATED.value
CONFIRMED = TokenStatus.CONFIRMED.value
IN_CONSULTATION = TokenStatus.IN_CONSULTATION.value
COMPLETED = TokenStatus.COMPLETED.value
CANCELLED = TokenStatus.CANCELLED.value
NOSHOW = TokenStatus.NOSHOW.value

# operation -> (allowed from, target status, timestamp attribute)
TRANSITIONS = {
    "confirm": ((ALLOCATED,), CONFIRMED, "confirmed_at"),
    "start": ((CONFIRMED,), IN_CONSULTATION, "consultation_started_at"),
    "complete": ((CONFIRMED, IN_CONSULTATION), COMPLETED, "completed_at"),
    "noshow": ((ALLOCATED, CONFIRMED), NOSHOW, None),
    "cancel": ((ALLOCATED, CONFIRMED), CANCELLED, "cancelled_at"),
}


class TokenLifecycle:
    """
    Status changes for individual tokens.

    Each call runs in its own retried transaction and is keyed in the
    in-flight registry by operation and token id.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        token_store: TokenStore,
        capacity: SlotCapacityManager,
        clock: Optional[Clock] = None,
        deadline_seconds: float = 30,
    ):
        self.controller = controller
        self.token_store = token_store
        self.capacity = capacity
        self.clock = clock or SystemClock()
        self.deadline_seconds = deadline_seconds
        self.logger = logging.getLogger("service.TokenLifecycle")

    def _transition(self, operation: str, token_id: str, actor_id: Optional[str] = None,
                    notes: Optional[str] = None, reason: Optional[str] = None) -> Token:
        allowed, target, stamp = TRANSITIONS[operation]

        def _txn(session):
            token = self.token_store.require(session, token_id, for_update=True)
            if token.is_terminal:
                raise AppError(
                    ErrorCode.TOKEN_ALREADY_PROCESSED,
                    f"Token is already {token.status}",
                    details={"token_id": token_id, "status": token.status, "operation": operation},
                )
            if token.status not in allowed:
                raise AppError(
                    ErrorCode.INVALID_TOKEN_STATUS,
                    f"Cannot {operation} a token that is {token.status}",
                    details={"token_id": token_id, "status": token.status, "allowed_from": list(allowed)},
                )

            now = self.clock.now()
            was_counted = token.status in ACTIVE_STATUSES
            token.status = target
            token.updated_at = now
            if stamp:
                setattr(token, stamp, now)
            if notes:
                token.notes = notes
            if target == CANCELLED:
                token.cancellation_reason = reason
                token.cancelled_by = actor_id
            elif actor_id:
                token.token_metadata = dict(token.token_metadata or {}, **{f"{operation}_by": actor_id})
            session.flush()

            if was_counted and target not in ACTIVE_STATUSES:
                self.capacity.release_capacity(session, token.slot_id)
            return token

        with self.controller.in_flight.track(f"{operation}:{token_id}"):
            token = self.controller.run_in_transaction(
                _txn,
                operation=f"{operation}:{token_id}",
                deadline=Deadline(self.clock, self.deadline_seconds),
            )
        self.logger.debug("Token %s -> %s", token_id, token.status)
        return token

    def confirm(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self._transition("confirm", token_id, actor_id, notes)

    def start_consultation(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self._transition("start", token_id, actor_id, notes)

    def complete(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self._transition("complete", token_id, actor_id, notes)

    def mark_no_show(self, token_id: str, actor_id: Optional[str] = None, notes: Optional[str] = None) -> Token:
        return self._transition("noshow", token_id, actor_id, notes)

    def cancel(self, token_id: str, reason: str = "patient_request", cancelled_by: Optional[str] = None,
               notes: Optional[str] = None) -> Token:
        if reason not in CANCELLATION_REASONS:
            raise AppError(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid cancellation reason: {reason}",
                details={"reason": reason, "valid_reasons": list(CANCELLATION_REASONS)},
            )
        token = self._transition("cancel", token_id, cancelled_by, notes, reason=reason)
        self.logger.info("Token %s cancelled (%s)", token_id, reason)
        return token
