# fcl_emulator/core/sensor_guard.py
import logging
from typing import Optional, Sequence

from fcl_emulator.core.trend import minutes_between
from fcl_emulator.fcl_structs import GlucoseSample, SensorIssue

logger = logging.getLogger(__name__)

MAX_STEP_MMOL = 3.0
OSCILLATION_STEP_MMOL = 0.5


def detect_sensor_issue(history: Sequence[GlucoseSample]) -> Optional[SensorIssue]:
    """
    Classify the tail of the history as a sensor artefact.
    Returns None when the trace looks physiological.
    """
    if len(history) < 3:
        return None

    a, b, c = history[-3:]
    d1 = b.glucose - a.glucose
    d2 = c.glucose - b.glucose

    if abs(d1) > MAX_STEP_MMOL or abs(d2) > MAX_STEP_MMOL:
        logger.debug("sensor_guard: jump too large d1=%.2f d2=%.2f", d1, d2)
        return SensorIssue.JUMP_TOO_LARGE

    peak = a.glucose < b.glucose and c.glucose < b.glucose
    trough = a.glucose > b.glucose and c.glucose > b.glucose
    if (peak or trough) and abs(d1) >= OSCILLATION_STEP_MMOL and abs(d2) >= OSCILLATION_STEP_MMOL:
        logger.debug("sensor_guard: oscillation d1=%.2f d2=%.2f", d1, d2)
        return SensorIssue.OSCILLATION

    if len(history) >= 5:
        recent = history[-5:]
        first, last = recent[0], recent[-1]
        low = min(recent, key=lambda s: s.glucose)

        drop = first.glucose - low.glucose
        rapid_drop = drop > 2.0 and 5 <= minutes_between(first, low) <= 15 and low.glucose < 4.0

        rebound = last.glucose - low.glucose
        rapid_rebound = rebound > 1.5 and 5 <= minutes_between(low, last) <= 20

        if rapid_drop and rapid_rebound:
            logger.debug("sensor_guard: compression low min=%.1f", low.glucose)
            return SensorIssue.COMPRESSION_LOW

    return None
