# fcl_emulator/core/predictions.py

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from fcl_emulator.fcl_structs import TrendMetrics, TrendPhase

logger = logging.getLogger(__name__)

# mmol/L drop per (U / ISF) over the full action curve
INSULIN_EFFECT_FACTOR = 3.0
MIN_IOB_FOR_EFFECT = 0.3
DAILY_REDUCTION_FACTOR = 0.7
PREDICTION_MIN = 3.5
PREDICTION_MAX = 20.0


@dataclass
class PredictionResult:
    value: float
    trend: float
    meal_in_progress: bool
    phase: TrendPhase


@dataclass
class BasicAdvice:
    dose: float
    reason: str
    confidence: float
    predicted_value: Optional[float] = None


def predict_iob_effect(bg: float, iob: float, isf: float, minutes_ahead: int) -> float:
    if iob <= 0.0 or isf <= 0.0:
        return bg
    hours = minutes_ahead / 60.0
    base_drop = (iob / max(1.0, isf)) * INSULIN_EFFECT_FACTOR
    return bg - base_drop * (1 - math.exp(-hours / 1.5))


def is_hypo_risk_within(minutes_ahead: int, bg: float, iob: float, isf: float, threshold: float = 4.0) -> bool:
    return predict_iob_effect(bg, iob, isf, minutes_ahead) < threshold


def calculate_dynamic_max_rise(start_bg: float) -> float:
    """Largest plausible meal rise: higher starting glucose leaves less headroom."""
    bands = ((4.0, 6.5), (5.0, 6.0), (6.0, 5.5), (7.0, 5.0), (8.0, 4.5), (9.0, 4.0), (10.0, 3.5), (12.0, 3.0), (14.0, 2.5))
    for upper, rise in bands:
        if start_bg <= upper:
            return rise
    return 2.0


def predict_meal_response(bg: float, trends: TrendMetrics, phase: TrendPhase, minutes_ahead: int) -> float:
    max_rise = calculate_dynamic_max_rise(bg)
    trend = trends.recent_trend
    if phase == TrendPhase.EARLY_RISE:
        rise = min(max_rise * 0.6, trend * 0.8)
    elif phase == TrendPhase.MID_RISE:
        rise = min(max_rise * 0.8, trend * 0.6)
    elif phase == TrendPhase.LATE_RISE:
        rise = min(max_rise * 0.4, trend * 0.3)
    elif phase == TrendPhase.PEAK:
        rise = trend * 0.1
    else:
        rise = trend * 0.2
    return bg + rise * minutes_ahead / 60.0


def predict_basal_response(bg: float, trends: TrendMetrics, minutes_ahead: int) -> float:
    return bg + trends.recent_trend * minutes_ahead / 60.0 * 0.3


def predict_real_time(
    bg: float,
    iob: float,
    isf: float,
    trends: TrendMetrics,
    phase: TrendPhase,
    meal_in_progress: bool,
    minutes_ahead: int = 60,
) -> PredictionResult:
    if meal_in_progress:
        value = predict_meal_response(bg, trends, phase, minutes_ahead)
    elif iob > MIN_IOB_FOR_EFFECT:
        value = predict_iob_effect(bg, iob, isf, minutes_ahead)
    else:
        value = predict_basal_response(bg, trends, minutes_ahead)
    value = max(PREDICTION_MIN, min(PREDICTION_MAX, value))
    return PredictionResult(value=value, trend=trends.recent_trend, meal_in_progress=meal_in_progress, phase=phase)


def calculate_dynamic_dose(bg_iob: float, predicted: float, isf: float, target: float, max_bolus: float) -> float:
    """Conservative dose towards target for a predicted high; bg_iob is the IOB on the current sample."""
    if isf <= 0:
        return 0.0
    required = (predicted - target) / isf
    effective_iob = max(0.0, bg_iob - 0.5)
    net = max(0.0, required - effective_iob)
    dose = net * 0.6 * DAILY_REDUCTION_FACTOR
    return round(min(dose, max_bolus) * 20) / 20


def calculate_confidence(trends: TrendMetrics) -> float:
    if abs(trends.recent_trend) > 1.0 and abs(trends.acceleration) < 0.5:
        return 0.85
    if abs(trends.acceleration) > 1.0:
        return 0.6
    return 0.7


def basic_insulin_advice(
    sample_count: int,
    bg_iob: float,
    prediction: PredictionResult,
    isf: float,
    target: float,
    max_bolus: float,
    trends: TrendMetrics,
    withhold: bool,
    carb_correction: bool,
    min_samples: int = 10,
) -> BasicAdvice:
    """
    First-pass advice from the 60 minute prediction. Only a positive
    preventive dose carries a predicted value.
    """
    if sample_count < min_samples:
        return BasicAdvice(0.0, "Insufficient data", 0.0)
    if withhold:
        return BasicAdvice(0.0, "Safety: BG too low or falling", 0.9)
    if carb_correction:
        return BasicAdvice(0.0, "Likely carb correction rise", 0.7)

    if prediction.value > target:
        dose = calculate_dynamic_dose(bg_iob, prediction.value, isf, target, max_bolus)
        if dose > 0:
            return BasicAdvice(
                dose=dose,
                reason=f"Preventive dose for predicted high: {prediction.value:.1f} mmol/L",
                confidence=calculate_confidence(trends),
                predicted_value=prediction.value,
            )
    return BasicAdvice(0.0, "No action needed - within target range", 0.8)
