"""
Allocation request and outcome types.

An allocation always ends in exactly one of Allocated, Alternatives or
Rejected.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

from opd_tokens.errors import AppError, ErrorCode, ERROR_CATALOGUE
from opd_tokens.models.slot import is_clock_time
from opd_tokens.models.token import Token, TokenSource
from opd_tokens.services.priority import PatientInfo


def parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise AppError(ErrorCode.VALIDATION_ERROR, f"Invalid date for {field_name}: {value}",
                       details={field_name: value})


@dataclass
class AllocationRequest:
    """A request for one token."""
    patient_id: str
    source: str
    doctor_id: Optional[str] = None
    slot_id: Optional[str] = None
    department: Optional[str] = None
    specialty: Optional[str] = None
    patient_info: PatientInfo = field(default_factory=PatientInfo)
    waiting_time: float = 0
    preferred_date: Optional[date] = None
    preferred_time: Optional[str] = None  # HH:MM
    allow_preemption: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        errors = []
        if not self.patient_id:
            errors.append("patient_id is required")
        for name in ("patient_id", "doctor_id", "slot_id", "department", "specialty"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                errors.append(f"{name} must be a string")
        if not isinstance(self.source, str) or self.source not in {s.value for s in TokenSource}:
            errors.append(f"source must be one of {[s.value for s in TokenSource]}")
        if not (self.slot_id or self.doctor_id or self.department or self.specialty):
            errors.append("one of slot_id, doctor_id, department or specialty is required")
        if self.waiting_time is not None and self.waiting_time < 0:
            errors.append("waiting_time must not be negative")
        if self.preferred_time is not None and not is_clock_time(self.preferred_time):
            errors.append("preferred_time must be HH:MM (24h, zero-padded)")
        if errors:
            raise AppError(ErrorCode.VALIDATION_ERROR, "; ".join(errors), details={"errors": errors})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationRequest":
        if not isinstance(data, dict):
            raise AppError(ErrorCode.VALIDATION_ERROR, "Request body must be an object")
        preferences = data.get("preferences") or {}
        if not isinstance(preferences, dict):
            raise AppError(ErrorCode.VALIDATION_ERROR, "preferences must be an object",
                           details={"errors": ["preferences must be an object"]})
        waiting_time = data.get("waiting_time", 0) or 0
        if not isinstance(waiting_time, (int, float)) or isinstance(waiting_time, bool):
            raise AppError(ErrorCode.VALIDATION_ERROR, "waiting_time must be a number",
                           details={"waiting_time": waiting_time})
        request = cls(
            patient_id=data.get("patient_id"),
            source=data.get("source"),
            doctor_id=data.get("doctor_id"),
            slot_id=data.get("slot_id"),
            department=data.get("department"),
            specialty=data.get("specialty"),
            patient_info=PatientInfo.from_dict(data.get("patient_info")),
            waiting_time=waiting_time,
            preferred_date=parse_date(preferences.get("date", data.get("preferred_date")), "preferred_date"),
            preferred_time=preferences.get("time", data.get("preferred_time")),
            allow_preemption=bool(data.get("allow_preemption", True)),
        )
        request.validate()
        return request

    @property
    def is_emergency(self) -> bool:
        return self.source == TokenSource.EMERGENCY.value


@dataclass
class PreemptedToken:
    """A token displaced by preemption and what happened to it."""
    token_id: str
    patient_id: str
    priority: int
    reallocation_status: str  # 'reallocated' | 'pending'
    reallocated_to_token_id: Optional[str] = None
    reallocated_to_slot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "patient_id": self.patient_id,
            "priority": self.priority,
            "reallocation_status": self.reallocation_status,
            "reallocated_to_token_id": self.reallocated_to_token_id,
            "reallocated_to_slot_id": self.reallocated_to_slot_id,
        }


@dataclass
class Allocated:
    token: Token
    allocation_method: str
    preempted_tokens: List[PreemptedToken] = field(default_factory=list)
    priority: Optional[Dict[str, Any]] = None

    kind = "allocated"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.kind,
            "token": self.token.to_dict(),
            "allocation_method": self.allocation_method,
            "preempted_tokens": [p.to_dict() for p in self.preempted_tokens],
            "priority": self.priority,
        }


@dataclass
class Alternatives:
    requested_slot: Optional[Dict[str, Any]]
    alternatives: List[Dict[str, Any]]
    recommended_action: str
    suggestions: List[str] = field(default_factory=list)
    message: Optional[str] = None

    kind = "alternatives"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.kind,
            "requested_slot": self.requested_slot,
            "alternatives": self.alternatives,
            "recommended_action": self.recommended_action,
            "suggestions": self.suggestions,
            "message": self.message,
        }


@dataclass
class Rejected:
    error_code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)

    kind = "rejected"

    @property
    def category(self) -> str:
        return ERROR_CATALOGUE.get(self.error_code, ERROR_CATALOGUE[ErrorCode.INTERNAL_SERVER_ERROR])[0]

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE.get(self.error_code, ERROR_CATALOGUE[ErrorCode.INTERNAL_SERVER_ERROR])[1]

    @classmethod
    def from_error(cls, error: AppError, code: Optional[str] = None) -> "Rejected":
        if code is not None and code != error.code:
            return cls(
                error_code=code,
                message=AppError(code).message,
                details=dict(error.details, original_code=error.code),
                suggestions=AppError(code).suggestions,
            )
        return cls(error.code, error.message, dict(error.details), list(error.suggestions))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.kind,
            "error": {
                "code": self.error_code,
                "category": self.category,
                "message": self.message,
                "details": self.details,
                "suggestions": self.suggestions,
            },
        }


Outcome = Union[Allocated, Alternatives, Rejected]
