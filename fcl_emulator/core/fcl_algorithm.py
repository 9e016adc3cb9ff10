# fcl_emulator/core/fcl_algorithm.py
"""
One FCL decision cycle.

determine_bolus_fcl() is a function of (history, inputs, session, now):
trend metrics, meal detection and sensor checks feed a primary dose branch,
then the reserved/extended bolus bookkeeping and the safety interlock are
applied and the dose is clamped and rounded. Any unexpected fault yields a
zero, non-delivering advice with phase ERROR.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence

from fcl_emulator.config import CycleInputs, FclSettings
from fcl_emulator.core.cob import add_or_update_meal, carbs_on_board, clean_up_meals
from fcl_emulator.core.extended_bolus import check_persistent_high_bg, start_extended_bolus, step_extended_bolus
from fcl_emulator.core.meal_detector import (
    calculate_meal_confidence,
    calculate_peak_confidence,
    distinguish_meal_from_snack,
    estimate_carbs_from_rise,
    in_meal_detection_cooldown,
    should_adjust_or_cancel_bolus,
    should_block_meal_detection_for_hypo_recovery,
    should_end_meal_phase,
    should_start_meal_phase,
)
from fcl_emulator.core.predictions import basic_insulin_advice, is_hypo_risk_within, predict_real_time
from fcl_emulator.core.reserved_bolus import (
    calculate_staged_bolus,
    create_reservation,
    decay_reservation,
    step_reserved_bolus,
)
from fcl_emulator.core.safety import (
    can_detect_meal_above_target,
    check_for_carb_correction,
    explain_withhold_reason,
    finalize_dose,
    get_safe_dose_with_learning,
    iob_bolus_reduction_factor,
    iob_hard_block,
    phase_aggressiveness,
    round_dose,
    should_block_bolus_for_short_term_trend,
    should_block_correction_for_trend_reversal,
)
from fcl_emulator.core.sensor_guard import detect_sensor_issue
from fcl_emulator.core.session import FclSession
from fcl_emulator.core.trend import analyze_trends, determine_trend_phase, is_trend_reversing_to_decline
from fcl_emulator.fcl_structs import (
    Advice,
    ExtendedBolusState,
    GlucoseSample,
    MealState,
    Phase,
    PendingReservedBolus,
    SensorIssue,
    TrendMetrics,
)

logger = logging.getLogger(__name__)

SAFETY_PHASES = (
    Phase.SAFETY,
    Phase.SAFETY_MONITORING,
    Phase.SAFETY_SENSOR_ERROR,
    Phase.SAFETY_COMPRESSION_LOW,
    Phase.SAFETY_MAX_IOB,
)

EARLY_BOOST_BG_RANGE = (8.0, 9.9)
EARLY_BOOST_MIN_PEAK = 10.0


class TraceCollector:
    def __init__(self) -> None:
        self.steps: list[tuple[str, Any]] = []

    def add(self, name: str, value: Any) -> None:
        if hasattr(value, "__dict__"):
            value = dict(value.__dict__)
        self.steps.append((name, value))

    def dump(self) -> list[tuple[str, Any]]:
        return self.steps


def trace(tc: TraceCollector | None, name: str, value: Any) -> None:
    if tc is not None:
        tc.add(name, value)


# -----------------------------
# Per-cycle working state
# -----------------------------
@dataclass
class _Draft:
    phase: Phase = Phase.STABLE
    dose: float = 0.0
    deliver: bool = False
    confidence: float = 0.0
    meal_detected: bool = False
    detected_carbs: float = 0.0
    reasons: List[str] = field(default_factory=list)
    parked: Optional[PendingReservedBolus] = None  # reservation created this cycle
    meal_bolus: bool = False

    def set(self, phase: Phase, dose: float, deliver: bool, reason: str) -> None:
        self.phase = phase
        self.dose = dose
        self.deliver = deliver
        self.reasons = [reason]

    def note(self, text: str) -> None:
        if text:
            self.reasons.append(text)

    @property
    def blocked(self) -> bool:
        return self.phase in SAFETY_PHASES


@dataclass
class _MealView:
    state: MealState
    active: bool  # a fresh, actionable detection
    carbs: float
    blocked_reason: Optional[str] = None


def determine_bolus_fcl(
    history: Sequence[GlucoseSample],
    inputs: CycleInputs,
    session: FclSession,
    now: datetime,
    settings: FclSettings | None = None,
    trace_mode: bool = False,
) -> Advice | tuple[Advice, list[tuple[str, Any]]]:
    """
    Decide the bolus for this cycle. history is oldest first with the
    current sample last; now is the cycle time.
    """
    tc: TraceCollector | None = TraceCollector() if trace_mode else None
    settings = settings or session.learning.settings

    try:
        advice = _run_cycle(history, inputs, session, now, settings, tc)
    except Exception as e:
        logger.exception("determine_bolus_fcl: cycle failed")
        trace(tc, "error", str(e))
        advice = Advice.safe(Phase.ERROR, f"FCL error: {e}")

    trace(tc, "result", advice)
    if trace_mode and tc is not None:
        return advice, tc.dump()
    return advice


def _run_cycle(
    history: Sequence[GlucoseSample],
    inputs: CycleInputs,
    session: FclSession,
    now: datetime,
    settings: FclSettings,
    tc: TraceCollector | None,
) -> Advice:
    learning = session.learning

    problem = inputs.validate()
    if problem is not None:
        logger.warning("determine_bolus_fcl: %s", problem)
        return Advice.safe(Phase.ERROR, f"Invalid configuration: {problem}", learning=learning.snapshot())
    if len(history) < settings.min_history_samples:
        return Advice.safe(
            Phase.INSUFFICIENT_DATA,
            f"Insufficient data: {len(history)} samples (need {settings.min_history_samples})",
            learning=learning.snapshot(),
        )

    current = history[-1]
    bg = current.glucose
    target = inputs.target_bg
    iob = inputs.current_iob

    # --- trends and learning housekeeping ---
    trends = analyze_trends(history)
    trace(tc, "trends", trends)
    learning.record_reading(current, trends)
    resolved = learning.process_pending(now, inputs.carb_ratio)
    if resolved:
        trace(tc, "learning.resolved", [o.to_dict() for o in resolved])
    corrections = learning.process_corrections(now, bg)
    if corrections:
        trace(tc, "learning.corrections", corrections)

    profile = learning.profile
    isf = inputs.isf * profile.personal_isf * profile.hourly_factor(now.hour)
    effective_cr = inputs.carb_ratio * profile.personal_carb_ratio
    # a reduced meal factor (after post-meal hypos) must shrink the bolus
    meal_factor = learning.meal_factor(now)
    meal_cr = effective_cr / meal_factor if meal_factor > 0 else effective_cr
    trace(tc, "effective", {"isf": isf, "carb_ratio": effective_cr, "meal_factor": meal_factor})

    trend_phase = determine_trend_phase(trends)
    trace(tc, "trend_phase", trend_phase.value)
    _track_meal_progress(session, history, trends)
    clean_up_meals(session.meals, now)

    # --- classification ---
    meal = _classify_meal(history, session, trends, bg, target, effective_cr, now, settings)
    trace(tc, "meal", meal)
    issue = detect_sensor_issue(history)
    trace(tc, "sensor_issue", issue.value if issue else None)

    withhold = explain_withhold_reason(bg, iob, trends, target, inputs.max_iob, history, now, settings)
    carb_correction = check_for_carb_correction(history, now, settings)
    prediction = predict_real_time(bg, iob, isf, trends, trend_phase, session.meal_in_progress)
    basic = basic_insulin_advice(
        len(history),
        current.iob,
        prediction,
        isf,
        target,
        inputs.max_bolus,
        trends,
        withhold is not None,
        carb_correction,
        settings.advice_min_history_samples,
    )
    trace(tc, "prediction", prediction)
    trace(tc, "basic_advice", basic)
    predicted_peak = basic.predicted_value if basic.predicted_value is not None else bg

    draft = _Draft(confidence=profile.confidence)

    # --- primary branch ---
    if issue is not None:
        if issue == SensorIssue.COMPRESSION_LOW:
            draft.set(Phase.SAFETY_COMPRESSION_LOW, 0.0, False, "Safety: Compression low detected - withholding insulin")
        else:
            label = "jump too large" if issue == SensorIssue.JUMP_TOO_LARGE else "oscillation"
            draft.set(Phase.SAFETY_SENSOR_ERROR, 0.0, False, f"Safety: Sensor error ({label}) - withholding insulin")
    elif withhold is not None:
        draft.set(Phase.SAFETY, 0.0, False, f"Safety: {withhold}")
    elif meal.blocked_reason is not None and meal.state != MealState.NONE:
        draft.set(Phase.SAFETY_MONITORING, 0.0, False, f"Safety: Meal detection blocked ({meal.blocked_reason})")
    elif meal.active and _meal_above_target(draft, history, trends, meal, bg, target, isf, meal_cr, inputs, session, now, settings, tc):
        pass
    elif meal.active and not distinguish_meal_from_snack(history, meal.carbs) and meal.carbs < 10.0:
        draft.set(
            Phase.SAFETY_MONITORING,
            0.0,
            False,
            f"Safety: Small uncertain rise ({meal.carbs:.1f}g) - monitoring pattern",
        )
    elif session.meal_in_progress and meal.state != MealState.NONE and should_adjust_or_cancel_bolus(history):
        draft.set(Phase.SAFETY_MONITORING, 0.0, False, "Safety: Meal rise fading - carb estimate halved")
        draft.meal_detected = True
        draft.detected_carbs = meal.carbs * 0.5
    elif meal.active:
        _meal_bolus(draft, history, trends, meal, bg, target, meal_cr, inputs, session, now, settings, tc)
    elif bg > target + 0.5:
        _correction(draft, history, trends, bg, target, isf, predicted_peak, basic.confidence, inputs, session, now, settings, tc)
    else:
        draft.set(Phase.STABLE, 0.0, False, f"No action: BG={bg:.1f} ~ target={target:.1f}")

    trace(tc, "primary", {"phase": draft.phase.value, "dose": draft.dose, "deliver": draft.deliver})

    # --- interlock on the primary dose ---
    hard_block = iob_hard_block(iob, inputs.max_iob, trends.recent_trend)
    if draft.deliver and draft.dose > 0 and not hard_block:
        if should_block_bolus_for_short_term_trend(iob, history):
            draft.set(Phase.SAFETY, 0.0, False, "Safety: Strong short-term decline")
        elif draft.phase in (Phase.CORRECTION, Phase.PERSISTENT) and should_block_correction_for_trend_reversal(
            iob, history, trends
        ):
            draft.set(Phase.SAFETY, 0.0, False, f"Safety: Trend reversing to decline (IOB={iob:.1f}U)")
            session.extended = ExtendedBolusState()

    # --- reserved bolus ---
    if draft.blocked or hard_block:
        session.reservation, note = decay_reservation(session.reservation, now, history, trends)
        draft.note(note)
    else:
        step = step_reserved_bolus(
            session.reservation,
            bg,
            target,
            trends,
            history,
            now,
            session.last_bolus_at,
            settings.reserved_release_spacing_minutes,
        )
        session.reservation = step.reservation
        draft.note(step.note)
        if step.released > settings.min_deliverable_dose:
            if not draft.deliver:
                draft.dose = 0.0
                draft.phase = Phase.RESERVED_RELEASE
            draft.dose += step.released
            draft.deliver = True
            trace(tc, "reserved.released", step.released)
    if draft.parked is not None:
        session.reservation = draft.parked

    # --- early boost ---
    predicted_peak = basic.predicted_value if basic.predicted_value is not None else bg + 2.0
    if not hard_block and draft.dose > 0:
        _early_boost(draft, bg, predicted_peak, iob, inputs, now, settings, tc)

    # --- extended bolus ---
    if session.extended.active:
        if draft.blocked or hard_block:
            draft.note("Extended bolus paused")
        else:
            session.extended, step_dose, note = step_extended_bolus(
                session.extended,
                bg,
                target,
                trends,
                history,
                iob,
                inputs.max_iob,
                now,
                settings.extended_step_interval_minutes,
            )
            draft.note(note)
            if step_dose > 0:
                if not draft.deliver:
                    draft.dose = 0.0
                    if draft.phase != Phase.PERSISTENT:
                        draft.phase = Phase.EXTENDED
                draft.dose += step_dose
                draft.deliver = True
                trace(tc, "extended.step", step_dose)

    # --- hard IOB block wins over everything ---
    if hard_block and (draft.dose > 0 or draft.deliver):
        draft.dose = 0.0
        draft.deliver = False
        if not draft.blocked:
            draft.phase = Phase.SAFETY_MAX_IOB
        draft.note(f"Blocked by high IOB safety ({iob:.2f}U >= 90% of {inputs.max_iob:.2f}U, trend {trends.recent_trend:.1f})")
    trace(tc, "hard_block", hard_block)

    if trends.recent_trend <= 0.0:
        predicted_peak = bg
        draft.note("No prediction (falling/stable trend)")

    dose, deliver, notes = finalize_dose(
        draft.dose, draft.deliver, inputs.max_bolus, inputs.dose_reduction, settings.min_deliverable_dose
    )
    for n in notes:
        draft.note(n)
    trace(tc, "final", {"dose": dose, "deliver": deliver})

    if deliver:
        session.last_bolus_at = now
    if draft.meal_bolus and deliver:
        learning.store_meal(draft.detected_carbs, dose, bg, predicted_peak, now)
    if draft.phase == Phase.CORRECTION and deliver:
        learning.store_correction(dose, isf, bg, now)

    return Advice(
        dose=dose,
        reason=" | ".join(draft.reasons),
        confidence=max(0.0, min(1.0, draft.confidence)),
        predicted_peak=predicted_peak,
        meal_detected=draft.meal_detected,
        detected_carbs=draft.detected_carbs,
        should_deliver=deliver,
        phase=draft.phase,
        reserved_dose=session.reservation.amount if session.reservation else 0.0,
        carbs_on_board=carbs_on_board(session.meals, now),
        learning=learning.snapshot(),
        debug=list(notes),
    )


# -----------------------------
# Helpers
# -----------------------------
def _track_meal_progress(session: FclSession, history, trends: TrendMetrics) -> None:
    if not session.meal_in_progress:
        if should_start_meal_phase(history, trends):
            session.meal_in_progress = True
            session.meal_started_at = history[-1].timestamp
            session.peak_detected = False
            logger.debug("meal phase started at %s", session.meal_started_at)
        return

    if trends.recent_trend < 0.3 and trends.acceleration < 0:
        session.peak_detected = True
    if should_end_meal_phase(session.meal_started_at, history, trends, session.peak_detected):
        logger.debug("meal phase ended (started %s)", session.meal_started_at)
        session.meal_in_progress = False
        session.meal_started_at = None
        session.peak_detected = False


def _classify_meal(history, session: FclSession, trends, bg, target, effective_cr, now, settings) -> _MealView:
    detection = session.detector.update(history, now)

    blocked = None
    if should_block_meal_detection_for_hypo_recovery(bg, history, trends, now, settings):
        blocked = "hypo recovery"
    elif session.reservation is not None:
        blocked = "reserved bolus pending"
    elif in_meal_detection_cooldown(bg, target, trends, session.last_meal_detection_at, now, settings):
        blocked = "cooldown"
    elif (
        session.last_meal_detection_at is not None
        and detection.transitioned_at is not None
        and detection.transitioned_at <= session.last_meal_detection_at
    ):
        # this transition was already acted on
        blocked = "already handled"

    carbs = 0.0
    if detection.state != MealState.NONE:
        carbs = max(
            detection.estimated_carbs,
            estimate_carbs_from_rise(history, session.meals, now, effective_cr, target, settings),
        )

    active = detection.state != MealState.NONE and detection.should_deliver and blocked is None
    # blocks other than hypo recovery are bookkeeping, not safety events
    reported = blocked if blocked == "hypo recovery" else None
    return _MealView(detection.state, active, carbs, reported)


def _uncovered_carbs(session: FclSession, carbs: float, now: datetime) -> float:
    """Carbs not yet covered by a meal bolused within the last 30 minutes."""
    for m in session.meals:
        if (now - m.timestamp).total_seconds() / 60.0 < 30:
            return max(0.0, carbs - m.total_carbs)
    return carbs


def _register_meal(draft: _Draft, session: FclSession, carbs: float, now: datetime, settings: FclSettings) -> None:
    add_or_update_meal(session.meals, carbs, now, settings.tau_absorption_minutes)
    session.last_meal_detection_at = now
    draft.meal_detected = True
    draft.detected_carbs = carbs
    draft.meal_bolus = True


def _meal_above_target(draft, history, trends, meal, bg, target, isf, meal_cr, inputs, session, now, settings, tc) -> bool:
    """Meal on top of a correction. Returns False when the branch does not apply."""
    correction_deliverable = (
        trends.recent_trend > 0.5 and bg > target + 1.0 and not is_trend_reversing_to_decline(history, trends)
    )
    if not correction_deliverable:
        return False
    if meal.carbs <= 15.0 or not distinguish_meal_from_snack(history, meal.carbs):
        return False
    if calculate_meal_confidence(history, meal.carbs) <= 0.4:
        return False
    if not can_detect_meal_above_target(bg, target, trends, inputs.current_iob, inputs.max_iob):
        return False

    carbs = _uncovered_carbs(session, meal.carbs, now)
    factor = phase_aggressiveness(determine_trend_phase(trends), inputs.aggressiveness, settings)
    staged = calculate_staged_bolus(
        carbs,
        meal_cr,
        bg,
        target,
        inputs.max_bolus,
        inputs.current_iob,
        inputs.max_iob,
        trends,
        factor,
        calculate_peak_confidence(history, meal.carbs),
    )
    trace(tc, "staged_bolus", staged)
    correction = max(0.0, (bg - target) / isf) * 0.3

    draft.set(
        Phase.MEAL_CORRECTION_COMBINATION,
        staged.immediate + correction,
        True,
        f"Meal+Correction: {meal.carbs:.1f}g + BG={bg:.1f} | {staged.reason}",
    )
    draft.confidence = calculate_meal_confidence(history, meal.carbs)
    draft.parked = create_reservation(staged.reserved, carbs, now, determine_trend_phase(trends))
    if draft.parked is not None:
        draft.note(f"Reserved: {draft.parked.amount:.2f}U")
    _register_meal(draft, session, meal.carbs, now, settings)
    return True


def _meal_bolus(draft, history, trends, meal, bg, target, meal_cr, inputs, session, now, settings, tc) -> None:
    confidence = calculate_meal_confidence(history, meal.carbs)
    if confidence <= 0.4 or meal.carbs <= 10.0:
        draft.set(
            Phase.SAFETY_MONITORING,
            0.0,
            False,
            f"Monitoring uncertain pattern (confidence: {confidence * 100:.0f}%, {meal.carbs:.1f}g)",
        )
        return

    reduction = iob_bolus_reduction_factor(inputs.current_iob, inputs.max_iob, bg, target, trends)
    if reduction <= 0.0:
        draft.set(
            Phase.SAFETY_MAX_IOB,
            0.0,
            False,
            f"Safety: Max IOB reached ({inputs.current_iob:.1f}U/{inputs.max_iob:.1f}U) - blocking meal bolus",
        )
        return

    carbs = _uncovered_carbs(session, meal.carbs, now)
    phase = determine_trend_phase(trends)
    staged = calculate_staged_bolus(
        carbs,
        meal_cr,
        bg,
        target,
        inputs.max_bolus,
        inputs.current_iob,
        inputs.max_iob,
        trends,
        phase_aggressiveness(phase, inputs.aggressiveness, settings),
    )
    trace(tc, "staged_bolus", staged)
    immediate = staged.immediate * reduction
    reserved = staged.reserved * reduction

    reason = f"IOB-adjusted ({reduction * 100:.0f}%): {staged.reason}" if reduction < 1.0 else staged.reason
    draft.set(
        Phase.MEAL_HIGH_CONFIDENCE if confidence > 0.7 else Phase.MEAL_MEDIUM_CONFIDENCE,
        immediate,
        immediate > settings.min_deliverable_dose,
        reason,
    )
    draft.confidence = confidence
    draft.parked = create_reservation(reserved, carbs, now, phase)
    if draft.parked is not None:
        draft.note(f"Reserved: {draft.parked.amount:.2f}U")
    _register_meal(draft, session, meal.carbs, now, settings)


def _correction(draft, history, trends, bg, target, isf, predicted_peak, confidence, inputs, session, now, settings, tc) -> None:
    iob = inputs.current_iob

    persistent = check_persistent_high_bg(
        history, iob, isf, inputs.max_iob, session.last_persistent_at, now, settings
    )
    trace(tc, "persistent", persistent)
    if persistent.should_deliver:
        hypo = settings.hypo_threshold(now)
        unsafe = (
            bg < hypo + 0.5
            or iob > inputs.max_iob * 0.8
            or (trends.recent_trend < -2.0 and bg < hypo + 1.0)
        )
        if not unsafe:
            session.extended = start_extended_bolus(persistent.dose, settings.extended_steps, now)
            session.last_persistent_at = now
            draft.set(Phase.PERSISTENT, 0.0, False, persistent.reason)
            draft.confidence = 0.9
            return
        logger.debug("persistent bolus blocked by safety: BG=%.1f IOB=%.2f trend=%.1f", bg, iob, trends.recent_trend)

    dose = max(0.0, (bg - target) / isf)
    trace(tc, "correction_raw", dose)
    if trends.recent_trend > 0.2:
        dose *= 1.0 + min(trends.recent_trend / 0.3, 2.0)

    dose = get_safe_dose_with_learning(dose, None, draft.confidence, iob, inputs.max_iob, trends)

    notes = []
    if trends.recent_trend <= 0.0 and bg < target + 3.0:
        dose *= settings.peak_damping_pct / 100.0
        notes.append(f"Peak damping {settings.peak_damping_pct}%")
    if is_hypo_risk_within(120, bg, iob, isf, settings.hypo_threshold(now)):
        dose *= settings.hypo_risk_pct / 100.0
        notes.append(f"Hypo risk {settings.hypo_risk_pct}%")

    start_boost = 1.0 + min(max(predicted_peak - bg, 0.0) / 10.0, 0.3)
    if start_boost > 1.0:
        dose *= start_boost
        notes.append(f"StartCorrectionBoost(x{start_boost:.2f})")

    dose = min(round_dose(dose), inputs.max_bolus)
    deliver = trends.recent_trend > 0.5 and bg > target + 1.0 and not is_trend_reversing_to_decline(history, trends)

    reason = f"Correction: BG={bg:.1f} > target={target:.1f}"
    if not deliver:
        reason += " | Stable/decline -> no bolus"
    draft.set(Phase.CORRECTION, dose, deliver, reason)
    for n in notes:
        draft.note(n)
    draft.confidence = confidence


def _early_boost(draft, bg, predicted_peak, iob, inputs, now, settings, tc) -> None:
    low, high = EARLY_BOOST_BG_RANGE
    if not (low <= bg <= high and predicted_peak > EARLY_BOOST_MIN_PEAK):
        return

    delta = max(predicted_peak - bg, 0.0)
    factor = settings.bolus_aggressiveness(now) / 100.0 * (1.0 + min(delta / 10.0, 0.3))
    proposed = min(draft.dose * factor, inputs.max_bolus)

    over = max(predicted_peak - EARLY_BOOST_MIN_PEAK, 0.0)
    iob_cap = inputs.max_iob * (1.0 + min(over / 5.0, 0.5))
    trace(tc, "early_boost", {"factor": factor, "proposed": proposed, "iob_cap": iob_cap})

    label = "EarlyMealBoost" if draft.meal_detected else "EarlyCorrectionBoost"
    if iob + proposed <= iob_cap:
        draft.dose = proposed
        draft.note(f"{label}(x{factor:.2f}) peak={predicted_peak:.1f}")
    else:
        draft.dose = min(max(iob_cap - iob, 0.0), inputs.max_bolus)
        draft.note("EarlyBoost capped by dynamic IOB cap")
