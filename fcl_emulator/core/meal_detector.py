# fcl_emulator/core/meal_detector.py
"""
Unannounced meal detection.

MealDetector is the per-session state machine (NONE -> EARLY_RISE/RISING ->
DETECTED) driven by 15 and 30 minute slopes. The module-level functions score
how much a detected rise can be trusted and estimate carbs from the part of
the rise that carbs on board do not explain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from statistics import pvariance
from typing import Optional, Sequence

from fcl_emulator.config import FclSettings
from fcl_emulator.core.cob import carbs_on_board, estimate_rise_from_cob
from fcl_emulator.core.trend import (
    check_consistent_rise,
    has_recent_rise,
    has_sustained_rise_pattern,
    minutes_between,
    steps,
)
from fcl_emulator.fcl_structs import GlucoseSample, MealState, TrendMetrics

logger = logging.getLogger(__name__)

# how long a transition stays actionable (minutes)
STATE_WINDOWS = {
    MealState.EARLY_RISE: 15,
    MealState.RISING: 30,
    MealState.DETECTED: 60,
}

EARLY_RISE_CARBS = 20.0 * 0.4


@dataclass(frozen=True)
class MealDetection:
    state: MealState
    estimated_carbs: float
    should_deliver: bool
    transitioned_at: Optional[datetime] = None


@dataclass(frozen=True)
class RiseSlopes:
    delta15: float
    slope15: float
    delta30: float
    slope30: float


def rise_slopes(history: Sequence[GlucoseSample]) -> Optional[RiseSlopes]:
    """15 min = 3 samples back, 30 min = 6 samples back (clamped to the oldest sample)."""
    if len(history) < 4:
        return None
    current = history[-1]
    past15 = history[-4]
    past30 = history[max(0, len(history) - 7)]

    m15 = minutes_between(past15, current)
    m30 = minutes_between(past30, current)
    if m15 <= 0 or m30 <= 0:
        return None

    d15 = current.glucose - past15.glucose
    d30 = current.glucose - past30.glucose
    return RiseSlopes(d15, d15 / (m15 / 60.0), d30, d30 / (m30 / 60.0))


def classify_rise(slopes: RiseSlopes) -> tuple[MealState, float]:
    if slopes.slope30 > 1.2 and slopes.slope15 > 1.8 and slopes.delta15 > 0.4:
        return MealState.EARLY_RISE, EARLY_RISE_CARBS
    if slopes.slope30 > 2.0 and slopes.delta30 > 1.2:
        return MealState.RISING, 14.0
    if slopes.slope30 > 1.8 and slopes.delta30 > 1.0:
        return MealState.RISING, 10.0
    if slopes.slope30 > 1.2 and slopes.delta30 > 0.7:
        return MealState.RISING, 6.0
    return MealState.NONE, 0.0


class MealDetector:
    """
    Transitions are monotonic within an episode. A state only returns to
    NONE through its timeout window or reset().
    """

    def __init__(self) -> None:
        self.state = MealState.NONE
        self.carbs = 0.0
        self.transitioned_at: Optional[datetime] = None

    def reset(self) -> None:
        self.state = MealState.NONE
        self.carbs = 0.0
        self.transitioned_at = None

    def _move(self, state: MealState, carbs: float, now: datetime) -> None:
        logger.debug("meal_detector: %s -> %s (%.1fg)", self.state.value, state.value, carbs)
        self.state = state
        self.carbs = carbs
        self.transitioned_at = now

    def _elapsed(self, now: datetime) -> float:
        if self.transitioned_at is None:
            return 0.0
        return (now - self.transitioned_at).total_seconds() / 60.0

    def update(self, history: Sequence[GlucoseSample], now: datetime) -> MealDetection:
        if self.state != MealState.NONE and self._elapsed(now) >= STATE_WINDOWS[self.state]:
            logger.debug("meal_detector: %s timed out", self.state.value)
            self.reset()

        slopes = rise_slopes(history)
        if slopes is not None:
            candidate, carbs = classify_rise(slopes)

            if self.state == MealState.NONE:
                if candidate != MealState.NONE:
                    self._move(candidate, carbs, now)
            elif self.state == MealState.EARLY_RISE:
                if candidate == MealState.RISING:
                    self._move(MealState.RISING, carbs, now)
            elif self.state == MealState.RISING:
                if candidate == MealState.RISING:
                    # same episode, keep the transition time
                    self.carbs = max(self.carbs, carbs)
                elif candidate == MealState.NONE and slopes.slope15 < 1.0:
                    self._move(MealState.DETECTED, self.carbs, now)

        return self.detection(now)

    def detection(self, now: datetime) -> MealDetection:
        deliver = self.state != MealState.NONE and self._elapsed(now) < STATE_WINDOWS[self.state]
        return MealDetection(self.state, self.carbs, deliver, self.transitioned_at)


# -----------------------------
# Confidence / shape scoring
# -----------------------------
def _variance(values):
    return pvariance(values) if len(values) >= 2 else 0.0


def calculate_meal_confidence(history: Sequence[GlucoseSample], detected_carbs: float) -> float:
    if len(history) < 4:
        return 0.6 if detected_carbs > 20 else 0.3

    recent = history[-4:]
    rises = steps(recent)
    total_rise = recent[-1].glucose - recent[0].glucose

    confidence = 0.5
    if has_sustained_rise_pattern(history):
        confidence += 0.3
    elif has_recent_rise(history, 2):
        confidence += 0.2
    if detected_carbs > 25:
        confidence += 0.2
    if len(rises) > 1 and _variance(rises) < 0.05:
        confidence += 0.2
    if total_rise > 2.0:
        confidence += 0.1
    return max(0.0, min(1.0, confidence))


def distinguish_meal_from_snack(history: Sequence[GlucoseSample], detected_carbs: float) -> bool:
    """True for a likely meal, False for a snack-sized or irregular rise."""
    if len(history) < 4:
        return detected_carbs > 20

    recent = history[-4:]
    rises = steps(recent)
    total_rise = recent[-1].glucose - recent[0].glucose
    consistent = all(d > 0.1 for d in rises)
    variance = _variance(rises) if len(rises) > 1 else 1.0

    if detected_carbs > 30 and consistent and total_rise > 1.5:
        return True
    if detected_carbs > 20 and variance < 0.1 and total_rise > 1.0:
        return True
    if detected_carbs > 15 and has_sustained_rise_pattern(history):
        return True
    return False


def calculate_peak_confidence(history: Sequence[GlucoseSample], detected_carbs: float) -> float:
    if len(history) < 6:
        return 0.5
    rises = steps(history[-6:])
    consistency = sum(1 for d in rises if d > 0.1) / len(rises)
    variance = _variance(rises)

    if consistency > 0.7 and variance < 0.1 and detected_carbs > 30:
        return 0.9
    if consistency > 0.6 and detected_carbs > 20:
        return 0.75
    if detected_carbs > 15:
        return 0.6
    return 0.5


def should_adjust_or_cancel_bolus(history: Sequence[GlucoseSample]) -> bool:
    """The rise has stalled or dropped unexpectedly."""
    if len(history) < 4:
        return False
    recent = history[-4:]
    still_rising = has_recent_rise(history, 1)
    flat_steps = sum(1 for d in steps(recent) if d <= 0.1)
    plateau = flat_steps >= 2 and not still_rising
    unexpected_drop = recent[-1].glucose < recent[-2].glucose - 0.5
    return plateau or unexpected_drop


# -----------------------------
# Hypo recovery
# -----------------------------
def _minutes_ago(sample: GlucoseSample, now: datetime) -> float:
    return (now - sample.timestamp).total_seconds() / 60.0


def has_rapid_rise_from_low(history: Sequence[GlucoseSample], now: datetime, settings: FclSettings) -> bool:
    if len(history) < 4:
        return False

    window = [s for s in history if s.timestamp > now - timedelta(minutes=settings.hypo_recovery_minutes)]
    if not window:
        return False
    low = min(window, key=lambda s: s.glucose)
    current = history[-1]

    minutes_since_low = minutes_between(low, current)
    rapid = 15 <= minutes_since_low <= settings.hypo_recovery_minutes and current.glucose - low.glucose > 2.0

    after_low = [s for s in window if s.timestamp > low.timestamp]
    if len(after_low) < 3:
        return False
    rising = sum(1 for d in steps(after_low) if d > 0.1)
    return rapid and rising >= len(after_low) * 0.6


def is_likely_hypo_recovery(
    bg: float, history: Sequence[GlucoseSample], trends: TrendMetrics, now: datetime, settings: FclSettings
) -> bool:
    if len(history) < 4:
        return False

    threshold = settings.hypo_threshold(now)
    recent_hypo = any(
        s.glucose < threshold and _minutes_ago(s, now) <= settings.hypo_recovery_minutes for s in history
    )
    if not recent_hypo:
        return False

    range_max = threshold + settings.hypo_recovery_bg_range
    in_recovery = threshold <= bg <= range_max
    stable_high = bg > range_max and trends.recent_trend < 1.0
    return in_recovery and has_rapid_rise_from_low(history, now, settings) and not stable_high


def should_block_meal_detection_for_hypo_recovery(
    bg: float, history: Sequence[GlucoseSample], trends: TrendMetrics, now: datetime, settings: FclSettings
) -> bool:
    if is_likely_hypo_recovery(bg, history, trends, now, settings):
        logger.debug("meal detection blocked: hypo recovery")
        return True

    threshold = settings.hypo_threshold(now)
    if bg < threshold + 1.5 and trends.recent_trend > 1.0:
        recent_low = any(
            s.glucose < threshold + 0.5 and _minutes_ago(s, now) <= settings.hypo_recovery_minutes for s in history
        )
        if recent_low:
            logger.debug("meal detection blocked: recent low + rising")
            return True
    return False


def in_meal_detection_cooldown(
    bg: float,
    target: float,
    trends: TrendMetrics,
    last_detection_at: Optional[datetime],
    now: datetime,
    settings: FclSettings,
) -> bool:
    """Suppress a new detection shortly after the last one, unless rising fast or clearly high."""
    if last_detection_at is None:
        return False
    rapid = trends.recent_trend > 2.0 or trends.short_term_trend > 2.5
    if rapid or bg > target + 1.0:
        return False
    minutes = (now - last_detection_at).total_seconds() / 60.0
    return minutes < settings.meal_detection_cooldown_minutes


# -----------------------------
# Carb estimate from the unexplained rise
# -----------------------------
def estimate_carbs_from_rise(
    history: Sequence[GlucoseSample],
    meals,
    now: datetime,
    effective_cr: float,
    target: float,
    settings: FclSettings,
) -> float:
    """
    Grams of carbs implied by the 15 minute rise that carbs on board
    do not already explain. 0 when nothing is unexplained.
    """
    if len(history) < 4:
        return 0.0

    bg = history[-1].glucose
    delta15 = bg - history[-4].glucose
    slope15 = delta15 / 15.0 * 60.0

    explained = estimate_rise_from_cob(meals, now, effective_cr, settings.tau_absorption_minutes)
    unexplained = delta15 - explained
    cob = carbs_on_board(meals, now)
    sensitivity = settings.meal_detection_sensitivity

    carbs = 0.0
    found = False
    if unexplained > sensitivity:
        carbs = unexplained * effective_cr * settings.carb_percentage / 100.0
        found = True
    elif slope15 > 0.2 and delta15 > 0.5 and cob > 10.0:
        # slow rise on top of a meal already absorbing
        carbs += 10.0
        found = True

    if not found:
        if slope15 > 0.5 and bg > target + 2.0:
            carbs = slope15 * 12.0
        elif has_recent_rise(history, 2) and bg > target + 1.5:
            carbs = 15.0 + slope15 * 8.0

    if cob < 10.0 and slope15 > 0.5 and unexplained > sensitivity:
        carbs += min(10.0, unexplained * 8.0)

    return max(0.0, carbs)


# -----------------------------
# Meal-in-progress tracking
# -----------------------------
def should_start_meal_phase(history: Sequence[GlucoseSample], trends: TrendMetrics) -> bool:
    if len(history) < 6:
        return False
    consistent = check_consistent_rise(history, 3)
    strong = trends.recent_trend > 2.0 and trends.acceleration > 0.1
    recent_low = any(s.glucose < 4.0 for s in history[-6:])
    return (consistent or strong) and not recent_low


def should_end_meal_phase(
    meal_started_at: Optional[datetime],
    history: Sequence[GlucoseSample],
    trends: TrendMetrics,
    peak_detected: bool,
) -> bool:
    if meal_started_at is None:
        return True
    current = history[-1]
    minutes = (current.timestamp - meal_started_at).total_seconds() / 60.0

    if minutes > 240:
        return True
    if peak_detected and trends.recent_trend < -1.0 and minutes > 120:
        return True

    start = next((s for s in history if s.timestamp == meal_started_at), None)
    if start is None:
        return False
    if current.glucose <= start.glucose and minutes > 90:
        return True
    return minutes > 150 and abs(trends.recent_trend) < 0.3
