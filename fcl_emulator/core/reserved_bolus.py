# fcl_emulator/core/reserved_bolus.py
"""
Staged meal bolus and the reserved-portion lifecycle.

A meal bolus is split into an immediate part and a reserved part. The
reserved part decays while the rise is unconfirmed, is dropped after 90
minutes or when the rise turns out to have peaked, and is released in full
once a sustained rise is observed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from fcl_emulator.core.safety import round_dose
from fcl_emulator.core.trend import has_recent_rise, is_at_peak_or_declining, short_term_trend
from fcl_emulator.fcl_structs import GlucoseSample, PendingReservedBolus, TrendMetrics, TrendPhase

logger = logging.getLogger(__name__)

RESERVED_TIMEOUT_MINUTES = 90
RESERVED_DECAY_PER_HOUR = 0.5
RESERVED_MIN_AMOUNT = 0.1
CANCEL_AFTER_MINUTES = 15


@dataclass
class StagedBolus:
    immediate: float
    reserved: float
    reason: str


@dataclass
class ReservedStep:
    reservation: Optional[PendingReservedBolus]
    released: float = 0.0
    note: str = ""


def calculate_staged_bolus(
    carbs: float,
    effective_cr: float,
    bg: float,
    target: float,
    max_bolus: float,
    current_iob: float,
    max_iob: float,
    trends: TrendMetrics,
    phase_factor: float,
    peak_confidence: float = 0.5,
    pending_amount: float = 0.0,
) -> StagedBolus:
    total = carbs / effective_cr if effective_cr > 0 else 0.0
    reason = [f"Carb bolus={total:.2f}U for {carbs:.1f}g (effCR={effective_cr:.1f})"]

    above = bg - target
    trend = trends.recent_trend

    if above > 3.0 and trend > 2.5:
        base_pct = 0.6
    elif above > 2.0 and trend > 2.0:
        base_pct = 0.5
    elif above > 1.5 and trend > 1.5:
        base_pct = 0.4
    elif above > 1.0:
        base_pct = 0.3
    else:
        base_pct = 0.2

    if peak_confidence > 0.8:
        confidence_bonus = 0.1
    elif peak_confidence > 0.6:
        confidence_bonus = 0.05
    else:
        confidence_bonus = 0.0

    if trend > 3.0:
        trend_bonus = 0.15
    elif trend > 2.0:
        trend_bonus = 0.1
    elif trend > 1.0:
        trend_bonus = 0.05
    else:
        trend_bonus = 0.0

    pct = max(0.15, min(0.7, base_pct + confidence_bonus + trend_bonus))
    immediate = total * pct
    reason.append(f"Direct:{int(pct * 100)}% (BG+{above:.1f}, trend:{trend:.1f})")

    if bg < target - 1.0:
        bg_factor = 0.0
    elif bg < target - 0.5:
        bg_factor = 0.3
    elif bg < target:
        bg_factor = 0.6
    elif bg < target + 0.4:
        bg_factor = 0.8
    else:
        bg_factor = 1.0
    immediate *= bg_factor
    reserved = total - immediate
    if bg_factor < 1.0:
        reason.append(f"BG-factor:{int(bg_factor * 100)}%")

    reserved_cap = max_bolus * 1.2
    if pending_amount + reserved > reserved_cap:
        excess = pending_amount + reserved - reserved_cap
        reserved = max(0.0, reserved - excess)
        immediate += excess
        reason.append(f"Reserved cap: +{excess:.2f}U direct")

    if current_iob > 0.0:
        if current_iob > max_iob * 0.5 and trend < 1.0:
            iob_adj = current_iob * 0.9
        elif current_iob > max_iob * 0.5:
            iob_adj = current_iob * 0.6
        elif current_iob > max_iob * 0.25:
            iob_adj = current_iob * 0.4
        else:
            iob_adj = current_iob * 0.2
        immediate = max(0.0, immediate - iob_adj)
        reason.append(f"IOB adj -{iob_adj:.2f}U")

    immediate *= phase_factor
    reserved *= phase_factor
    reason.append(f"Phase x{phase_factor:.2f}")

    if trend > 2.5:
        initial_cap = max_bolus * 0.5
    elif trend > 1.5:
        initial_cap = max_bolus * 0.4
    else:
        initial_cap = max_bolus * 0.3
    if immediate > initial_cap:
        reserved += immediate - initial_cap
        immediate = initial_cap
        reason.append(f"Capped at {initial_cap:.2f}U")

    return StagedBolus(round_dose(immediate), round_dose(reserved), " | ".join(reason))


def create_reservation(
    amount: float, carbs: float, now: datetime, phase: TrendPhase
) -> Optional[PendingReservedBolus]:
    if amount <= RESERVED_MIN_AMOUNT:
        return None
    return PendingReservedBolus(amount=amount, carbs=carbs, reserved_at=now, phase=phase, decayed_at=now)


def _minutes(since: datetime, now: datetime) -> float:
    return (now - since).total_seconds() / 60.0


def decay_reservation(
    reservation: Optional[PendingReservedBolus],
    now: datetime,
    history: Sequence[GlucoseSample],
    trends: TrendMetrics,
) -> tuple[Optional[PendingReservedBolus], str]:
    """
    Age the reservation to `now`. The amount only ever shrinks.
    Returns (reservation or None, note).
    """
    if reservation is None:
        return None, ""

    age = _minutes(reservation.reserved_at, now)
    if age > RESERVED_TIMEOUT_MINUTES:
        logger.debug("reserved bolus %.2fU expired after %.0f min", reservation.amount, age)
        return None, f"Reserved {reservation.amount:.2f}U expired"

    if age >= CANCEL_AFTER_MINUTES and is_at_peak_or_declining(history, trends):
        logger.debug("reserved bolus %.2fU cancelled: rise did not continue", reservation.amount)
        return None, f"Reserved {reservation.amount:.2f}U cancelled (peak/decline)"

    last = reservation.decayed_at or reservation.reserved_at
    elapsed = _minutes(last, now)
    if elapsed > 0:
        factor = math.exp(-(elapsed / 60.0) * RESERVED_DECAY_PER_HOUR)
        reservation.amount *= factor
        reservation.carbs *= factor
        reservation.decayed_at = now

    if reservation.amount < RESERVED_MIN_AMOUNT:
        return None, "Reserved bolus decayed"
    return reservation, ""


def should_release_reserved_bolus(
    bg: float, target: float, trends: TrendMetrics, history: Sequence[GlucoseSample]
) -> bool:
    if len(history) < 3:
        return False
    short = short_term_trend(history)
    rapid = trends.recent_trend > 2.0 or short > 2.5
    bg_condition = bg > target + 0.5 or rapid
    trend_condition = trends.recent_trend > 0.3 or short > 0.5
    recently_rising = has_recent_rise(history, 2) and short > 0.0
    return (
        bg_condition
        and (trend_condition or recently_rising or rapid)
        and not is_at_peak_or_declining(history, trends)
    )


def is_recently_falling(history: Sequence[GlucoseSample]) -> bool:
    return len(history) >= 2 and history[-1].glucose < history[-2].glucose - 0.1


def step_reserved_bolus(
    reservation: Optional[PendingReservedBolus],
    bg: float,
    target: float,
    trends: TrendMetrics,
    history: Sequence[GlucoseSample],
    now: datetime,
    last_bolus_at: Optional[datetime],
    spacing_minutes: int = 10,
) -> ReservedStep:
    """
    One cycle of the lifecycle: decay/cancel, then release the whole
    remaining amount when the rise is confirmed and spacing allows.
    """
    reservation, note = decay_reservation(reservation, now, history, trends)
    if reservation is None:
        return ReservedStep(None, 0.0, note)

    if not should_release_reserved_bolus(bg, target, trends, history):
        return ReservedStep(reservation, 0.0, note)

    if last_bolus_at is not None and _minutes(last_bolus_at, now) < spacing_minutes:
        return ReservedStep(reservation, 0.0, "Reserved release waiting for bolus spacing")

    if is_recently_falling(history):
        logger.debug("reserved bolus release blocked: recent decline")
        return ReservedStep(reservation, 0.0, "Reserved release blocked (recent decline)")

    released = reservation.amount
    logger.debug("releasing reserved bolus %.2fU", released)
    return ReservedStep(None, released, f"Released reserved: {released:.2f}U")
