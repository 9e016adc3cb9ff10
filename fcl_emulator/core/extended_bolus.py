# fcl_emulator/core/extended_bolus.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from fcl_emulator.config import FclSettings
from fcl_emulator.core.safety import floor_dose, round_dose
from fcl_emulator.core.trend import is_at_peak_or_declining
from fcl_emulator.fcl_structs import ExtendedBolusState, GlucoseSample, TrendMetrics

logger = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 30
CONTROLLED_AFTER_MINUTES = 15


@dataclass
class PersistentResult:
    dose: float
    reason: str
    should_deliver: bool


def check_persistent_high_bg(
    history: Sequence[GlucoseSample],
    current_iob: float,
    isf: float,
    max_iob: float,
    last_persistent_at: Optional[datetime],
    now: datetime,
    settings: FclSettings,
) -> PersistentResult:
    """
    Flat glucose above the persistent threshold: a correction sized on the
    distance to that threshold, scaled down by IOB and at night.
    """
    if not settings.persistent_enabled:
        return PersistentResult(0.0, "Persistent correction disabled", False)

    if last_persistent_at is not None:
        minutes = (now - last_persistent_at).total_seconds() / 60.0
        if minutes < settings.persistent_cooldown_minutes:
            return PersistentResult(0.0, f"Persistent: cooldown ({settings.persistent_cooldown_minutes - minutes:.0f} min)", False)

    if len(history) < 7 or isf <= 0:
        return PersistentResult(0.0, "Persistent: insufficient data", False)

    bg = history[-1].glucose
    d5 = bg - history[-2].glucose
    d15 = bg - history[-4].glucose
    d30 = bg - history[-7].glucose
    limit = settings.persistent_stability_limit
    threshold = settings.persistent_threshold(now)

    stable_high = abs(d5) < limit and abs(d15) < limit + 0.5 and abs(d30) < limit + 1.0 and bg > threshold
    if not stable_high:
        return PersistentResult(0.0, "No persistent high BG", False)

    if current_iob > max_iob * 0.5:
        iob_factor = 0.2
    elif current_iob > max_iob * 0.37:
        iob_factor = 0.4
    elif current_iob > max_iob * 0.25:
        iob_factor = 0.6
    elif current_iob > max_iob * 0.12:
        iob_factor = 0.8
    else:
        iob_factor = 1.0

    dose = (bg - threshold) / isf * iob_factor
    if settings.is_night(now):
        dose *= 0.7
    dose = min(dose, settings.persistent_max_bolus(now))

    if dose < 0.1:
        return PersistentResult(0.0, f"Persistent: {dose:.2f}U too small after safety checks", False)
    return PersistentResult(
        round_dose(dose),
        f"Persistent high BG {bg:.1f} > {threshold:.1f}: {round_dose(dose):.2f}U (IOB factor {iob_factor:.0%})",
        True,
    )


def start_extended_bolus(total: float, steps: int, now: datetime) -> ExtendedBolusState:
    steps = max(1, steps)
    return ExtendedBolusState(
        active=True,
        remaining=total,
        steps_remaining=steps,
        step_size=total / steps,
        started_at=now,
        last_delivery_at=None,
    )


def _iob_step_factor(current_iob: float, max_iob: float) -> float:
    if current_iob > max_iob * 0.7:
        return 0.3
    if current_iob > max_iob * 0.5:
        return 0.5
    if current_iob > max_iob * 0.3:
        return 0.7
    return 1.0


def _cancel_reason(state, bg, target, trends, now):
    elapsed = (now - state.started_at).total_seconds() / 60.0 if state.started_at else 0.0
    if trends.recent_trend < -3.0:
        return f"trend {trends.recent_trend:.1f} mmol/L/h"
    if bg < 5.0:
        return f"BG {bg:.1f} < 5.0"
    if elapsed > MAX_DURATION_MINUTES:
        return f"running {elapsed:.0f} min"
    if elapsed > CONTROLLED_AFTER_MINUTES and bg < target + 1.0 and trends.recent_trend <= 0.5:
        return "BG controlled"
    return None


def step_extended_bolus(
    state: ExtendedBolusState,
    bg: float,
    target: float,
    trends: TrendMetrics,
    history: Sequence[GlucoseSample],
    current_iob: float,
    max_iob: float,
    now: datetime,
    interval_minutes: int = 5,
) -> tuple[ExtendedBolusState, float, str]:
    """Returns (state, dose for this cycle, note)."""
    if not state.active:
        return state, 0.0, ""

    reason = _cancel_reason(state, bg, target, trends, now)
    if reason:
        logger.debug("extended bolus cancelled (%s), %.2fU dropped", reason, state.remaining)
        return ExtendedBolusState(), 0.0, f"Extended bolus cancelled: {reason}"

    note = ""
    if not state.peak_adjusted and is_at_peak_or_declining(history, trends):
        state.remaining /= 2.0
        state.steps_remaining = max(1, state.steps_remaining // 2)
        state.step_size = state.remaining / state.steps_remaining
        state.peak_adjusted = True
        note = "Extended bolus halved near peak"

    if state.last_delivery_at is not None:
        since = (now - state.last_delivery_at).total_seconds() / 60.0
        if since < interval_minutes:
            return state, 0.0, note

    # whole 0.05 U steps; the last step carries what rounding left over
    if state.steps_remaining <= 1:
        planned = state.remaining
    else:
        planned = min(floor_dose(state.step_size), state.remaining)
    dose = planned * _iob_step_factor(current_iob, max_iob)

    state.remaining = max(0.0, state.remaining - planned)
    state.steps_remaining -= 1
    state.last_delivery_at = now
    if state.steps_remaining <= 0 or state.remaining < 0.05:
        state.active = False

    text = f"Extended step {dose:.2f}U ({state.steps_remaining} left)"
    return state, dose, f"{note} | {text}" if note else text
