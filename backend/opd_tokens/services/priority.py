"""
Priority Calculator.

Maps (source, patient attributes, waiting time) to an integer priority
score in 0..2000 and a priority level. Pure: the only input besides the
arguments is one configuration snapshot taken at the start of the call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.models.token import TokenSource
from opd_tokens.services.configuration import ConfigSnapshot


MIN_PRIORITY = 0
MAX_PRIORITY = 2000

# Modifier points
SENIOR_AGE = 65
PEDIATRIC_AGE = 12
SENIOR_BONUS = 50
PEDIATRIC_BONUS = 30
CRITICAL_CONDITION_BONUS = 100
CHRONIC_CONDITION_BONUS = 40
URGENCY_BONUS = {"critical": 150, "high": 75}
FOLLOWUP_CONTINUITY_BONUS = 25
WAITING_MINUTES_PER_POINT = 5
MAX_WAITING_BONUS = 100

VALID_SOURCES = tuple(s.value for s in TokenSource)


def priority_level(score: int) -> str:
    if score >= 1000:
        return "emergency"
    if score >= 700:
        return "high"
    if score >= 400:
        return "medium"
    return "low"


@dataclass
class PatientInfo:
    """Patient attributes that feed the priority modifiers."""
    age: Optional[int] = None
    critical: bool = False
    chronic: bool = False
    urgency_level: Optional[str] = None  # 'critical', 'high'
    is_followup: bool = False
    last_visited_doctor: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PatientInfo":
        """Build from request JSON; raises AppError(VALIDATION_ERROR) on ill-typed fields."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise AppError(ErrorCode.VALIDATION_ERROR, "patient_info must be an object",
                           details={"errors": ["patient_info must be an object"]})
        history = data.get("medical_history")
        if history is None:
            history = {}
        errors = []
        if not isinstance(history, dict):
            errors.append("medical_history must be an object")
            history = {}
        critical = history.get("critical", data.get("critical"))
        chronic = history.get("chronic", data.get("chronic"))
        for name, value in (("critical", critical), ("chronic", chronic)):
            if value is not None and not isinstance(value, bool):
                errors.append(f"medical_history.{name} must be a boolean")
        info = cls(
            age=data.get("age"),
            critical=critical is True,
            chronic=chronic is True,
            urgency_level=data.get("urgency_level"),
            is_followup=False if data.get("is_followup") is None else data.get("is_followup"),
            last_visited_doctor=data.get("last_visited_doctor"),
        )
        errors.extend(info.problems())
        if errors:
            raise AppError(ErrorCode.VALIDATION_ERROR, "; ".join(errors), details={"errors": errors})
        return info

    def problems(self) -> List[str]:
        errors = []
        if self.age is not None:
            if not isinstance(self.age, int) or isinstance(self.age, bool):
                errors.append("age must be an integer")
            elif self.age < 0:
                errors.append("age must not be negative")
        if self.urgency_level is not None and not isinstance(self.urgency_level, str):
            errors.append("urgency_level must be a string")
        if not isinstance(self.is_followup, bool):
            errors.append("is_followup must be a boolean")
        if self.last_visited_doctor is not None and not isinstance(self.last_visited_doctor, str):
            errors.append("last_visited_doctor must be a string")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "age": self.age,
            "medical_history": {"critical": self.critical, "chronic": self.chronic},
            "urgency_level": self.urgency_level,
            "is_followup": self.is_followup,
            "last_visited_doctor": self.last_visited_doctor,
        }


@dataclass
class PriorityResult:
    """Outcome of a priority calculation."""
    source: str
    base_priority: int
    final_priority: int
    priority_level: str
    breakdown: Dict[str, int] = field(default_factory=dict)
    ok: bool = True

    @property
    def total_adjustment(self) -> int:
        return sum(self.breakdown.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "base_priority": self.base_priority,
            "final_priority": self.final_priority,
            "priority_level": self.priority_level,
            "breakdown": dict(self.breakdown),
            "total_adjustment": self.total_adjustment,
        }


@dataclass
class PriorityError:
    """Structured failure (the calculator never raises)."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)
    ok: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
        }


@dataclass
class PreemptionDecision:
    should_preempt: bool
    priority_difference: int
    reason: str


class PriorityCalculator:
    """
    Priority score calculator.

    Usage:
        calculator = PriorityCalculator(config_view)
        result = calculator.calculate("online", PatientInfo(age=30), 0)
        if result.ok:
            print(result.final_priority)
    """

    def __init__(self, config_view):
        self.config_view = config_view
        self.logger = logging.getLogger("service.PriorityCalculator")

    def calculate(
        self,
        source: str,
        patient_info: Union[PatientInfo, Dict[str, Any], None] = None,
        waiting_time_minutes: float = 0,
        doctor_id: Optional[str] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> Union[PriorityResult, PriorityError]:
        """
        Compute the final priority for a request.

        Args:
            source: Booking source (online, walkin, priority, followup, emergency)
            patient_info: PatientInfo or its dict form
            waiting_time_minutes: Minutes already waited (negative treated as 0)
            doctor_id: Target doctor, for the follow-up continuity bonus
            snapshot: Configuration snapshot; taken from the view when omitted

        Returns:
            PriorityResult, or PriorityError for an unknown source or ill-typed patient info
        """
        if source not in VALID_SOURCES:
            return PriorityError(
                code=ErrorCode.VALIDATION_ERROR,
                message=f"Invalid token source: {source}",
                details={"source": source, "valid_sources": list(VALID_SOURCES)},
                suggestions=[f"Use one of: {', '.join(VALID_SOURCES)}"],
            )

        snap = snapshot or self.config_view.snapshot()
        base = snap.priority_base(source)
        if base is None:
            return PriorityError(
                code=ErrorCode.VALIDATION_ERROR,
                message=f"No base priority configured for source: {source}",
                details={"source": source},
            )

        if waiting_time_minutes is not None and (
            isinstance(waiting_time_minutes, bool) or not isinstance(waiting_time_minutes, (int, float))
        ):
            return PriorityError(
                code=ErrorCode.VALIDATION_ERROR,
                message="waiting_time must be a number",
                details={"waiting_time": waiting_time_minutes},
            )

        try:
            info = patient_info if isinstance(patient_info, PatientInfo) else PatientInfo.from_dict(patient_info)
        except AppError as e:
            return PriorityError(code=e.code, message=e.message, details=e.details, suggestions=e.suggestions)
        problems = info.problems()
        if problems:
            return PriorityError(
                code=ErrorCode.VALIDATION_ERROR,
                message="; ".join(problems),
                details={"errors": problems},
            )
        breakdown = self._modifiers(source, info, waiting_time_minutes, doctor_id)

        final = max(MIN_PRIORITY, min(MAX_PRIORITY, int(base) + sum(breakdown.values())))
        return PriorityResult(
            source=source,
            base_priority=int(base),
            final_priority=final,
            priority_level=priority_level(final),
            breakdown=breakdown,
        )

    def _modifiers(self, source: str, info: PatientInfo, waiting_time_minutes: float,
                   doctor_id: Optional[str]) -> Dict[str, int]:
        breakdown: Dict[str, int] = {}

        if info.age is not None:
            if info.age >= SENIOR_AGE:
                breakdown["senior"] = SENIOR_BONUS
            elif info.age <= PEDIATRIC_AGE:
                breakdown["pediatric"] = PEDIATRIC_BONUS

        if info.critical:
            breakdown["critical_condition"] = CRITICAL_CONDITION_BONUS
        elif info.chronic:
            breakdown["chronic_condition"] = CHRONIC_CONDITION_BONUS

        urgency = (info.urgency_level or "").lower()
        if urgency in URGENCY_BONUS:
            breakdown["urgency"] = URGENCY_BONUS[urgency]

        is_followup = info.is_followup or source == TokenSource.FOLLOWUP.value
        if is_followup and doctor_id and info.last_visited_doctor == doctor_id:
            breakdown["followup_continuity"] = FOLLOWUP_CONTINUITY_BONUS

        wait = max(0.0, float(waiting_time_minutes or 0))
        waiting_bonus = min(MAX_WAITING_BONUS, int(wait // WAITING_MINUTES_PER_POINT))
        if waiting_bonus:
            breakdown["waiting_time"] = waiting_bonus

        return breakdown

    def should_preempt(
        self,
        new_priority: int,
        existing_priority: int,
        threshold: Optional[int] = None,
        emergency: bool = False,
        existing_emergency: bool = False,
    ) -> PreemptionDecision:
        """
        Decide whether a request may displace an existing token.

        Emergency requests displace any strictly lower non-emergency
        priority. Everything else, including an emergency over another
        emergency token, needs to exceed the existing priority by more
        than the threshold.
        """
        if threshold is None:
            threshold = self.config_view.snapshot().preemption_threshold
        difference = new_priority - existing_priority

        if difference <= 0:
            if difference == 0:
                reason = "Equal priority - first-come-first-served applies"
            else:
                reason = f"Existing token has higher priority ({existing_priority} vs {new_priority})"
            return PreemptionDecision(False, difference, reason)

        if emergency and not existing_emergency:
            return PreemptionDecision(True, difference, f"Emergency request outranks {existing_priority}")

        if difference > threshold:
            return PreemptionDecision(
                True, difference, f"Priority difference {difference} exceeds threshold {threshold}"
            )
        return PreemptionDecision(
            False, difference, f"Priority difference {difference} within threshold {threshold}"
        )

    def compare(self, first: PriorityResult, second: PriorityResult) -> Dict[str, Any]:
        """Compare two calculated priorities."""
        if first.final_priority > second.final_priority:
            higher, comparison = "first", "First request has higher priority"
        elif second.final_priority > first.final_priority:
            higher, comparison = "second", "Second request has higher priority"
        else:
            higher, comparison = None, "Equal priority - first-come-first-served applies"
        return {
            "higher": higher,
            "comparison": comparison,
            "priority_difference": abs(first.final_priority - second.final_priority),
            "first": first.to_dict(),
            "second": second.to_dict(),
        }

    def describe_configuration(self) -> Dict[str, Any]:
        """Priority bands and modifier rules in effect."""
        snap = self.config_view.snapshot()
        bases = snap.category("priority")
        return {
            "base_priorities": bases,
            "levels": {source: priority_level(score) for source, score in bases.items()},
            "preemption_threshold": snap.preemption_threshold,
            "modifiers": {
                "age": {f">={SENIOR_AGE}": SENIOR_BONUS, f"<={PEDIATRIC_AGE}": PEDIATRIC_BONUS},
                "medical_history": {"critical": CRITICAL_CONDITION_BONUS, "chronic": CHRONIC_CONDITION_BONUS},
                "urgency": dict(URGENCY_BONUS),
                "followup_continuity": FOLLOWUP_CONTINUITY_BONUS,
                "waiting_time": f"1 point per {WAITING_MINUTES_PER_POINT} minutes, max {MAX_WAITING_BONUS}",
            },
            "range": [MIN_PRIORITY, MAX_PRIORITY],
        }


def reallocation_order_key(token) -> tuple:
    """Highest priority first; ties go to the earlier token, then the smaller id."""
    return (-token.priority, token.created_at or datetime.min, token.token_id)


def preemption_order(tokens) -> list:
    """
    Lowest priority first; among equals the most recent token (then the
    larger id) is displaced first, so earlier arrivals keep their place.
    """
    newest_first = sorted(tokens, key=lambda t: (t.created_at or datetime.min, t.token_id), reverse=True)
    return sorted(newest_first, key=lambda t: t.priority)
