from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# -----------------------------
# CGM sample (mmol/L, U)
# -----------------------------
@dataclass(frozen=True)
class GlucoseSample:
    timestamp: datetime
    glucose: float  # BG in mmol/L
    iob: float = 0.0  # insulin on board (U)


# -----------------------------
# Trend metrics
# -----------------------------
@dataclass(frozen=True)
class TrendMetrics:
    recent_trend: float = 0.0  # mmol/L per hour
    short_term_trend: float = 0.0  # mmol/L per hour, 15-20 min window
    acceleration: float = 0.0  # mmol/L/h of slope change per minute

    @classmethod
    def zero(cls) -> "TrendMetrics":
        return cls(0.0, 0.0, 0.0)


# -----------------------------
# Enums (closed sets)
# -----------------------------
class MealState(str, Enum):
    NONE = "none"
    EARLY_RISE = "early_rise"
    RISING = "rising"
    PEAK = "peak"
    DECLINING = "declining"
    DETECTED = "detected"


class SensorIssue(str, Enum):
    JUMP_TOO_LARGE = "jump_too_large"
    OSCILLATION = "oscillation"
    COMPRESSION_LOW = "compression_low"


class TrendPhase(str, Enum):
    EARLY_RISE = "early_rise"
    MID_RISE = "mid_rise"
    LATE_RISE = "late_rise"
    PEAK = "peak"
    STABLE = "stable"


class Phase(str, Enum):
    STABLE = "stable"
    CORRECTION = "correction"
    MEAL_CORRECTION_COMBINATION = "meal_correction_combination"
    MEAL_HIGH_CONFIDENCE = "meal_high_confidence"
    MEAL_MEDIUM_CONFIDENCE = "meal_medium_confidence"
    PERSISTENT = "persistent"
    EXTENDED = "extended"
    RESERVED_RELEASE = "reserved_release"
    SAFETY = "safety"
    SAFETY_MONITORING = "safety_monitoring"
    SAFETY_SENSOR_ERROR = "safety_sensor_error"
    SAFETY_COMPRESSION_LOW = "safety_compression_low"
    SAFETY_MAX_IOB = "safety_max_iob"
    INSUFFICIENT_DATA = "insufficient_data"
    ERROR = "error"


class OutcomeKind(str, Enum):
    SUCCESS = "SUCCESS"
    TOO_HIGH = "TOO_HIGH"
    TOO_LOW = "TOO_LOW"
    # correction responses
    TOO_AGGRESSIVE = "TOO_AGGRESSIVE"
    TOO_CONSERVATIVE = "TOO_CONSERVATIVE"


# -----------------------------
# Bolus bookkeeping
# -----------------------------
@dataclass
class PendingReservedBolus:
    amount: float  # U still held back
    carbs: float  # g the reservation was computed for
    reserved_at: datetime
    phase: TrendPhase = TrendPhase.STABLE
    decayed_at: Optional[datetime] = None  # last time decay was applied


@dataclass
class ExtendedBolusState:
    active: bool = False
    remaining: float = 0.0  # U
    steps_remaining: int = 0
    step_size: float = 0.0  # U
    started_at: Optional[datetime] = None
    last_delivery_at: Optional[datetime] = None
    peak_adjusted: bool = False  # remaining already halved near a peak


# -----------------------------
# Learning
# -----------------------------
MEAL_TYPES = ("breakfast", "lunch", "dinner", "other")


@dataclass
class LearningProfile:
    personal_carb_ratio: float = 1.0  # multiplier, 0.7–1.3
    personal_isf: float = 1.0  # multiplier, 0.8–1.2
    meal_timing_factors: Dict[str, float] = field(default_factory=lambda: {m: 1.0 for m in MEAL_TYPES})
    hourly_sensitivity: Dict[int, float] = field(default_factory=lambda: {h: 1.0 for h in range(24)})
    confidence: float = 0.0  # 0..1
    total_samples: int = 0
    last_updated: Optional[datetime] = None

    def meal_time_factor(self, hour: int) -> float:
        return self.meal_timing_factors.get(meal_type_for_hour(hour), 1.0)

    def hourly_factor(self, hour: int) -> float:
        return self.hourly_sensitivity.get(hour % 24, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "personal_carb_ratio": self.personal_carb_ratio,
            "personal_isf": self.personal_isf,
            "meal_timing_factors": dict(self.meal_timing_factors),
            # JSON object keys are strings
            "hourly_sensitivity": {str(h): v for h, v in self.hourly_sensitivity.items()},
            "confidence": self.confidence,
            "total_samples": self.total_samples,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningProfile":
        profile = cls()
        profile.personal_carb_ratio = _float(data.get("personal_carb_ratio"), 1.0)
        profile.personal_isf = _float(data.get("personal_isf"), 1.0)
        for key, value in (data.get("meal_timing_factors") or {}).items():
            profile.meal_timing_factors[str(key)] = _float(value, 1.0)
        for key, value in (data.get("hourly_sensitivity") or {}).items():
            try:
                profile.hourly_sensitivity[int(key)] = _float(value, 1.0)
            except (TypeError, ValueError):
                continue
        profile.confidence = _float(data.get("confidence"), 0.0)
        profile.total_samples = int(_float(data.get("total_samples"), 0))
        ts = data.get("last_updated")
        profile.last_updated = datetime.fromisoformat(ts) if ts else None
        return profile


@dataclass(frozen=True)
class LearningSnapshot:
    confidence: float
    samples: int
    carb_ratio_adjustment: float
    isf_adjustment: float
    meal_time_factors: Dict[str, float]

    @classmethod
    def of(cls, profile: LearningProfile) -> "LearningSnapshot":
        return cls(
            confidence=profile.confidence,
            samples=profile.total_samples,
            carb_ratio_adjustment=profile.personal_carb_ratio,
            isf_adjustment=profile.personal_isf,
            meal_time_factors=dict(profile.meal_timing_factors),
        )


@dataclass
class PendingMealUpdate:
    timestamp: datetime
    detected_carbs: float  # g
    given_dose: float  # U
    start_bg: float
    expected_peak: float
    meal_type: str


@dataclass
class MealOutcome:
    timestamp: datetime
    carbs: float
    insulin_given: float
    predicted_peak: float
    actual_peak: float
    time_to_peak: int  # minutes from meal to observed peak
    bg_start: float
    bg_end: float
    meal_type: str = "other"
    outcome: OutcomeKind = OutcomeKind.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "carbs": self.carbs,
            "insulin_given": self.insulin_given,
            "predicted_peak": self.predicted_peak,
            "actual_peak": self.actual_peak,
            "time_to_peak": self.time_to_peak,
            "bg_start": self.bg_start,
            "bg_end": self.bg_end,
            "meal_type": self.meal_type,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealOutcome":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            carbs=_float(data.get("carbs"), 0.0),
            insulin_given=_float(data.get("insulin_given"), 0.0),
            predicted_peak=_float(data.get("predicted_peak"), 0.0),
            actual_peak=_float(data.get("actual_peak"), 0.0),
            time_to_peak=int(_float(data.get("time_to_peak"), 0)),
            bg_start=_float(data.get("bg_start"), 0.0),
            bg_end=_float(data.get("bg_end"), 0.0),
            meal_type=str(data.get("meal_type") or "other"),
            outcome=OutcomeKind(data.get("outcome") or OutcomeKind.SUCCESS.value),
        )


@dataclass
class PendingCorrectionUpdate:
    timestamp: datetime
    insulin_given: float  # U
    predicted_drop: float  # mmol/L, dose x effective ISF at delivery
    start_bg: float


@dataclass(frozen=True)
class CorrectionOutcome:
    timestamp: datetime
    insulin_given: float
    predicted_drop: float
    actual_drop: float
    isf_before: float
    isf_after: float
    outcome: OutcomeKind


@dataclass(frozen=True)
class PeakRecord:
    timestamp: datetime
    bg: float
    trend: float
    acceleration: float


# -----------------------------
# Engine output
# -----------------------------
@dataclass
class Advice:
    dose: float
    reason: str
    confidence: float
    predicted_peak: Optional[float]
    meal_detected: bool
    detected_carbs: float
    should_deliver: bool
    phase: Phase
    reserved_dose: float = 0.0
    carbs_on_board: float = 0.0
    learning: Optional[LearningSnapshot] = None
    debug: List[str] = field(default_factory=list)

    @classmethod
    def safe(
        cls,
        phase: Phase,
        reason: str,
        predicted_peak: Optional[float] = None,
        learning: Optional[LearningSnapshot] = None,
    ) -> "Advice":
        """Zero-dose, non-delivering advice for safety and error paths."""
        return cls(
            dose=0.0,
            reason=reason,
            confidence=0.0,
            predicted_peak=predicted_peak,
            meal_detected=False,
            detected_carbs=0.0,
            should_deliver=False,
            phase=phase,
            learning=learning,
        )


def meal_type_for_hour(hour: int) -> str:
    if 6 <= hour <= 10:
        return "breakfast"
    if 11 <= hour <= 14:
        return "lunch"
    if 17 <= hour <= 21:
        return "dinner"
    return "other"


def _float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
