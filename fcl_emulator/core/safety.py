# fcl_emulator/core/safety.py
"""
Safety interlock.

Checks applied around the primary dose: IOB ceilings, hypo suppression,
short-term decline blocks, confidence damping and the final clamp/round.
Every function is pure; the pipeline decides what to do with the verdict.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional, Sequence

from fcl_emulator.config import FclSettings
from fcl_emulator.core.meal_detector import is_likely_hypo_recovery
from fcl_emulator.core.trend import (
    check_consistent_decline,
    is_trend_reversing_to_decline,
    recent_trend,
    short_term_trend,
)
from fcl_emulator.fcl_structs import GlucoseSample, TrendMetrics, TrendPhase

logger = logging.getLogger(__name__)

DOSE_STEP = 0.05
HARD_BLOCK_IOB_FRACTION = 0.9


def round_dose(dose: float) -> float:
    return round(dose * 20) / 20


def floor_dose(dose: float) -> float:
    return math.floor(dose * 20 + 1e-9) / 20


def iob_hard_block(current_iob: float, max_iob: float, trend: float) -> bool:
    """IOB near the ceiling with no rise: nothing is delivered."""
    return current_iob >= max_iob * HARD_BLOCK_IOB_FRACTION and trend <= 0.0


def iob_bolus_reduction_factor(
    current_iob: float, max_iob: float, bg: float, target: float, trends: TrendMetrics
) -> float:
    """
    Multiplier for below-target meal boluses. Non-increasing in IOB,
    0 only once IOB reaches max_iob.
    """
    if max_iob <= 0:
        return 0.0
    ratio = current_iob / max_iob
    above = bg - target
    rapid = trends.recent_trend > 2.0 or trends.short_term_trend > 2.5

    if ratio >= 1.0:
        return 0.0
    if ratio > 0.8:
        return 0.7 if (above > 3.0 or rapid) else 0.5
    if ratio > 0.6:
        return 0.8 if (above > 2.0 or rapid) else 0.6
    if ratio > 0.4:
        return 0.9 if (above > 1.0 or trends.recent_trend > 1.0) else 0.8
    if ratio > 0.2:
        return 0.95
    return 1.0


def phase_aggressiveness(phase: TrendPhase, aggressiveness: float, settings: FclSettings) -> float:
    if phase == TrendPhase.EARLY_RISE:
        factor = settings.bolus_perc_early / 100.0 * 0.8
    elif phase == TrendPhase.MID_RISE:
        factor = aggressiveness / 100.0 * 0.6
    elif phase == TrendPhase.LATE_RISE:
        factor = settings.bolus_perc_late / 100.0 * 0.4
    elif phase == TrendPhase.PEAK:
        factor = settings.bolus_perc_late / 100.0 * 0.3
    else:
        factor = aggressiveness / 100.0
    return max(0.1, min(2.0, factor))


def get_safe_dose_with_learning(
    calculated: float,
    learned: Optional[float],
    confidence: float,
    current_iob: float,
    max_iob: float,
    trends: TrendMetrics,
    phase_factor: float = 1.0,
) -> float:
    if confidence > 0.8:
        base = learned if learned is not None else calculated
    elif confidence > 0.6:
        base = (learned if learned is not None else calculated) * 0.85
    else:
        base = calculated * 0.7

    if current_iob > max_iob * 0.5:
        iob_factor = 0.45
    elif current_iob > max_iob * 0.25:
        iob_factor = 0.7
    else:
        iob_factor = 1.0

    accel_penalty = 1.1 if trends.acceleration > 1.0 else 1.0
    trend_penalty = 0.95 if trends.recent_trend > 2.5 else 1.0
    return max(0.0, base * iob_factor / accel_penalty * trend_penalty * phase_factor)


# -----------------------------
# Withhold checks
# -----------------------------
def explain_withhold_reason(
    bg: float,
    current_iob: float,
    trends: TrendMetrics,
    target: float,
    max_iob: float,
    history: Sequence[GlucoseSample],
    now: datetime,
    settings: FclSettings,
) -> Optional[str]:
    """Reason insulin must be withheld this cycle, or None."""
    hypo = settings.hypo_threshold(now)

    if is_likely_hypo_recovery(bg, history, trends, now, settings):
        return f"hypo recovery in progress (BG {bg:.1f})"

    if bg < hypo + 1.0:
        return f"BG {bg:.1f} < {hypo + 1.0:.1f} mmol/L (hypo risk)"

    high = bg > target + 3.0
    iob_limit = max_iob * (0.7 if high else 0.45)
    bg_limit = target + (2.0 if high else 1.0)
    if current_iob > iob_limit and bg < bg_limit:
        return f"IOB {current_iob:.2f}U > {iob_limit:.2f}U and BG {bg:.1f} < {bg_limit:.1f}"

    if bg < hypo + 2.0 and trends.recent_trend < -1.0:
        return f"BG {bg:.1f} falling fast ({trends.recent_trend:.2f} mmol/L/h) near hypo"

    return None


def should_block_bolus_for_short_term_trend(
    current_iob: float, history: Sequence[GlucoseSample]
) -> bool:
    if len(history) < 4:
        return False
    short = short_term_trend(history)
    declining = check_consistent_decline(history)

    if short < -3.0:
        return True
    if short < -2.0 and declining:
        return True
    if short < -1.0 and current_iob > 2.0:
        return True
    return declining and short < -0.5


def should_block_correction_for_trend_reversal(
    current_iob: float, history: Sequence[GlucoseSample], trends: TrendMetrics
) -> bool:
    if not is_trend_reversing_to_decline(history, trends):
        return False
    if current_iob > 2.0:
        return True
    if current_iob > 1.5 and trends.recent_trend < 1.0:
        return True
    return current_iob > 1.0 and trends.recent_trend < 0.5


def check_for_carb_correction(history: Sequence[GlucoseSample], now: datetime, settings: FclSettings) -> bool:
    """A recent low followed by a steep rise: carbs eaten to treat a hypo."""
    if len(history) < 6:
        return False
    hypo = settings.hypo_threshold(now)
    recent_low = any(s.glucose < hypo for s in history[-6:])
    return recent_low and recent_trend(history, 2) > 2.0


def can_detect_meal_above_target(
    bg: float, target: float, trends: TrendMetrics, current_iob: float, max_iob: float
) -> bool:
    if bg > target + 3.0:
        return False
    if trends.recent_trend < -1.0:
        return False
    return current_iob <= max_iob * 0.62


# -----------------------------
# Final clamp
# -----------------------------
def finalize_dose(
    dose: float,
    deliver: bool,
    max_bolus: float,
    dose_reduction: float,
    min_deliverable: float = DOSE_STEP,
) -> tuple[float, bool, list[str]]:
    """
    Clamp to [0, max_bolus], apply the external reduction percentage,
    round to 0.05 U and refuse delivery below the materiality floor.
    """
    notes = []
    if math.isnan(dose) or dose < 0:
        dose = 0.0
    if dose > max_bolus:
        dose = max_bolus
        notes.append(f"Capped at maxBolus {max_bolus:.2f}U")

    if dose_reduction > 0:
        dose *= 1.0 - dose_reduction / 100.0
        notes.append(f"Dose reduction {dose_reduction:.0f}%")

    rounded = round_dose(dose)
    if rounded > max_bolus:
        rounded = floor_dose(max_bolus)
    dose = max(0.0, rounded)

    if deliver and dose < min_deliverable:
        deliver = False
        notes.append("Below minimum deliverable dose")
    return dose, deliver, notes
