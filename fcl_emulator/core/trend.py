# fcl_emulator/core/trend.py
"""
Trend analysis over the CGM history.

All functions are pure: they read the history (oldest first, current sample
last) and never modify it. Slopes are mmol/L per hour. Acceleration is the
change of the two-point slope (mmol/L/h) per elapsed minute, so a steady
change of 0.1 mmol/L/h every minute reads 0.1; the acceleration thresholds
used elsewhere (0.1, 0.3, 0.5, 1.0) are in this unit.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Sequence

from fcl_emulator.fcl_structs import GlucoseSample, TrendMetrics, TrendPhase

logger = logging.getLogger(__name__)

RECENT_POINTS_BACK = 4
ACCELERATION_POINTS = 3


def minutes_between(a: GlucoseSample, b: GlucoseSample) -> float:
    return (b.timestamp - a.timestamp).total_seconds() / 60.0


def trend_between(a: GlucoseSample, b: GlucoseSample) -> float:
    """Slope a -> b in mmol/L per hour; 0 when time does not move forward."""
    minutes = minutes_between(a, b)
    if minutes <= 0:
        return 0.0
    return (b.glucose - a.glucose) / (minutes / 60.0)


def recent_trend(history: Sequence[GlucoseSample], points_back: int = RECENT_POINTS_BACK) -> float:
    if len(history) <= points_back:
        return 0.0
    return trend_between(history[-1 - points_back], history[-1])


def short_term_trend(history: Sequence[GlucoseSample]) -> float:
    """Slope against the sample 15-20 min ago (fallback: latest sample older than 10 min)."""
    if len(history) < 4:
        return 0.0

    current = history[-1]
    window_start = current.timestamp - timedelta(minutes=20)
    window_end = current.timestamp - timedelta(minutes=15)
    fallback_end = current.timestamp - timedelta(minutes=10)

    past = None
    for sample in reversed(history[:-1]):
        if window_start <= sample.timestamp <= window_end:
            past = sample
            break
    if past is None:
        for sample in reversed(history[:-1]):
            if sample.timestamp < fallback_end:
                past = sample
                break
    if past is None:
        return 0.0
    return trend_between(past, current)


def acceleration(history: Sequence[GlucoseSample], points: int = ACCELERATION_POINTS) -> float:
    if len(history) <= points * 2:
        return 0.0

    now_slope = trend_between(history[-2], history[-1])
    prev_start = len(history) - 1 - points
    prev_slope = trend_between(history[prev_start], history[prev_start + 1])

    elapsed = minutes_between(history[prev_start + 1], history[-1])
    if elapsed <= 0:
        return 0.0
    return (now_slope - prev_slope) / elapsed


def analyze_trends(history: Sequence[GlucoseSample]) -> TrendMetrics:
    if not history:
        return TrendMetrics.zero()
    return TrendMetrics(
        recent_trend=recent_trend(history),
        short_term_trend=short_term_trend(history),
        acceleration=acceleration(history),
    )


def steps(history: Sequence[GlucoseSample]) -> list[float]:
    return [b.glucose - a.glucose for a, b in zip(history, history[1:])]


def check_consistent_decline(history: Sequence[GlucoseSample]) -> bool:
    """Both of the last two steps fall by more than 0.1."""
    if len(history) < 3:
        return False
    return sum(1 for d in steps(history[-3:]) if d < -0.1) >= 2


def check_consistent_rise(history: Sequence[GlucoseSample], points: int) -> bool:
    if len(history) < points + 1:
        return False
    rising = sum(1 for d in steps(history[-(points + 1) :]) if d > 0.1)
    return rising >= points - 1


def has_recent_rise(history: Sequence[GlucoseSample], min_rising_points: int = 2) -> bool:
    if len(history) < min_rising_points + 1:
        return False
    rising = sum(1 for d in steps(history[-(min_rising_points + 1) :]) if d > 0.15)
    return rising >= min_rising_points


def has_sustained_rise_pattern(history: Sequence[GlucoseSample]) -> bool:
    """4 of the last 5 steps rising."""
    if len(history) < 6:
        return False
    return sum(1 for d in steps(history[-6:]) if d > 0.1) >= 4


def is_trend_reversing_to_decline(history: Sequence[GlucoseSample], trends: TrendMetrics) -> bool:
    if len(history) < 5:
        return False
    decelerating = trends.acceleration < -0.3
    diverging = short_term_trend(history) < 0 and trends.recent_trend > 1.0
    declining = sum(1 for d in steps(history[-3:]) if d < -0.1)
    return decelerating or diverging or declining >= 2


def is_at_peak_or_declining(history: Sequence[GlucoseSample], trends: TrendMetrics) -> bool:
    if len(history) < 4:
        return False
    recent = history[-4:]
    values = [s.glucose for s in recent]
    max_index = values.index(max(values))
    is_peak = 1 <= max_index <= 2 and values[-1] < values[max_index] - 0.3
    decelerating = trends.acceleration < -0.5 and trends.recent_trend < 2.0
    return is_peak or decelerating


def determine_trend_phase(trends: TrendMetrics) -> TrendPhase:
    if trends.recent_trend > 2.0 and trends.acceleration > 0.1:
        return TrendPhase.EARLY_RISE
    if trends.recent_trend > 1.0 and trends.acceleration > 0:
        return TrendPhase.MID_RISE
    if trends.recent_trend > 0.3 and trends.acceleration < 0:
        return TrendPhase.LATE_RISE
    if abs(trends.recent_trend) < 0.5:
        return TrendPhase.PEAK
    return TrendPhase.STABLE
