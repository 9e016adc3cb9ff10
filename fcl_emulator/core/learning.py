# fcl_emulator/core/learning.py
"""
Online learning from meal outcomes.

apply_meal_outcome() and apply_correction_response() are the pure profile
updates. LearningEngine keeps the meals and corrections that are waiting for
an outcome, matches meals against post-meal glucose peaks, measures
corrections 2-4 h after delivery and persists the profile through the
storage collaborator.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from fcl_emulator.config import FclSettings
from fcl_emulator.core.storage import MAX_OUTCOMES, LearningStorage
from fcl_emulator.fcl_structs import (
    CorrectionOutcome,
    GlucoseSample,
    LearningProfile,
    LearningSnapshot,
    MealOutcome,
    OutcomeKind,
    PeakRecord,
    PendingCorrectionUpdate,
    PendingMealUpdate,
    TrendMetrics,
    meal_type_for_hour,
)

logger = logging.getLogger(__name__)

CARB_RATIO_BOUNDS = (0.7, 1.3)
ISF_BOUNDS = (0.8, 1.2)
EFFECTIVENESS_MAX = 2.5
CONFIDENCE_HALF_LIFE_HOURS = 168.0
PENDING_EXPIRY_MINUTES = 360
PEAK_LOG_SIZE = 288  # 24h of 5 min readings

# correction response is measured 2-4 h after delivery
CORRECTION_WINDOW_MINUTES = (120, 240)
CORRECTION_BASE_ALPHA = 0.05


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def classify_outcome(actual_peak: float) -> OutcomeKind:
    if actual_peak > 11.0:
        return OutcomeKind.TOO_HIGH
    if actual_peak < 6.0:
        return OutcomeKind.TOO_LOW
    return OutcomeKind.SUCCESS


def meal_effectiveness(profile: LearningProfile, outcome: MealOutcome, carb_ratio: float) -> float:
    """actual rise / expected rise, bounded to [0, 2.5]; 1.0 when nothing was expected."""
    effective_cr = carb_ratio * profile.personal_carb_ratio
    expected = outcome.carbs / effective_cr if effective_cr > 0 else 0.0
    if expected <= 0:
        return 1.0
    actual = outcome.actual_peak - outcome.bg_start
    return _clamp(actual / expected, 0.0, EFFECTIVENESS_MAX)


def apply_meal_outcome(
    profile: LearningProfile, outcome: MealOutcome, carb_ratio: float, now: datetime
) -> LearningProfile:
    """Return an updated copy of profile; the input is not modified."""
    e = meal_effectiveness(profile, outcome, carb_ratio)

    cr = profile.personal_carb_ratio * _clamp(0.9 + 0.2 * e, *CARB_RATIO_BOUNDS)
    isf = profile.personal_isf * _clamp(0.9 + 0.1 * e, *ISF_BOUNDS)

    bucket = meal_type_for_hour(outcome.timestamp.hour)
    timing = dict(profile.meal_timing_factors)
    timing[bucket] = timing.get(bucket, 1.0) * 0.95 + e * 0.05

    hourly = dict(profile.hourly_sensitivity)
    hour = outcome.timestamp.hour
    hourly[hour] = hourly.get(hour, 1.0) * 0.97 + e * 0.03

    hours = 0.0
    if profile.last_updated is not None:
        hours = max(0.0, (now - profile.last_updated).total_seconds() / 3600.0)
    confidence = _clamp(profile.confidence * math.exp(-hours / CONFIDENCE_HALF_LIFE_HOURS) + 0.1, 0.0, 1.0)

    return replace(
        profile,
        personal_carb_ratio=_clamp(cr, *CARB_RATIO_BOUNDS),
        personal_isf=_clamp(isf, *ISF_BOUNDS),
        meal_timing_factors=timing,
        hourly_sensitivity=hourly,
        confidence=confidence,
        total_samples=profile.total_samples + 1,
        last_updated=now,
    )


def classify_correction(predicted_drop: float, actual_drop: float) -> OutcomeKind:
    if actual_drop > predicted_drop * 1.5:
        return OutcomeKind.TOO_AGGRESSIVE
    if actual_drop < predicted_drop * 0.5:
        return OutcomeKind.TOO_CONSERVATIVE
    return OutcomeKind.SUCCESS


def apply_correction_response(
    profile: LearningProfile, update: PendingCorrectionUpdate, bg_now: float, now: datetime
) -> LearningProfile:
    """
    Move personal_isf toward the observed drop / predicted drop ratio.

    Observations that are not a drop, or more than 2.5x away from the
    current factor, leave the profile unchanged. The step size grows with
    the size of the surprise, up to 5 %.
    """
    if update.insulin_given <= 0 or update.predicted_drop <= 0:
        return profile

    observed = (update.start_bg - bg_now) / update.predicted_drop
    old = profile.personal_isf
    if observed <= 0 or observed > old * 2.5 or observed < old / 2.5:
        return profile

    alpha = CORRECTION_BASE_ALPHA * _clamp(abs(observed - 1.0), 0.1, 1.0)
    isf = old * (1.0 - alpha) + observed * alpha
    return replace(
        profile,
        personal_isf=_clamp(isf, *ISF_BOUNDS),
        total_samples=profile.total_samples + 1,
        last_updated=now,
    )


def apply_hypo_after_meal(
    profile: LearningProfile, meal_type: str, bg_end: float, now: datetime, settings: FclSettings
) -> LearningProfile:
    """A meal that ended low: shrink that meal's timing factor by severity."""
    if bg_end < 4.0:
        severity = 0.3
    elif bg_end < 4.5:
        severity = 0.2
    else:
        severity = 0.1
    timing = dict(profile.meal_timing_factors)
    current = timing.get(meal_type, 1.0)
    timing[meal_type] = _clamp(current * (1.0 - severity), settings.carb_isf_min_factor, settings.carb_isf_max_factor)
    logger.debug("hypo after %s: severity %.1f, factor %.2f -> %.2f", meal_type, severity, current, timing[meal_type])
    return replace(profile, meal_timing_factors=timing, last_updated=now)


def _time_based_recovery(outcomes, meal_type, now, settings):
    hypos = [o.timestamp for o in outcomes if o.meal_type == meal_type and o.outcome == OutcomeKind.TOO_LOW]
    if not hypos:
        return 1.0
    days = (now - max(hypos)).days
    if days < settings.min_recovery_days:
        return 0.7
    if days < settings.min_recovery_days + 1:
        return 0.8
    if days < settings.min_recovery_days + 2:
        return 0.9
    if days < settings.max_recovery_days:
        return 0.95
    return 1.0


def _performance_based_recovery(recent, settings):
    if not recent:
        return 1.0
    successes = [o for o in recent if o.outcome == OutcomeKind.SUCCESS]
    ratio = len(successes) / len(recent)
    required = {1: 0.9, 2: 0.8, 3: 0.7}.get(settings.min_recovery_days, 0.6)
    avg_peak = sum(o.actual_peak for o in successes) / len(successes) if successes else 8.0

    if ratio >= required and 7.0 <= avg_peak <= 9.0:
        return 1.0
    if ratio >= required * 0.8 and 6.5 <= avg_peak <= 10.0:
        return 0.95
    if ratio >= required * 0.6:
        return 0.9
    return 0.8


def hypo_adjusted_meal_factor(
    profile: LearningProfile,
    outcomes: Sequence[MealOutcome],
    now: datetime,
    settings: FclSettings,
) -> float:
    """
    Meal-time factor for the current hour, reduced after recent post-meal
    hypos and recovering gradually as meals of that type succeed again.
    """
    meal_type = meal_type_for_hour(now.hour)
    base = profile.meal_time_factor(now.hour)
    recent = [
        o for o in outcomes if o.meal_type == meal_type and (now - o.timestamp).days <= settings.max_recovery_days
    ]
    hypo_count = sum(1 for o in recent if o.outcome == OutcomeKind.TOO_LOW)

    if hypo_count == 0:
        return _clamp(base, 0.7, 1.3)

    reduction = {1: 0.9, 2: 0.8, 3: 0.7}.get(hypo_count, 0.6)
    recovery = min(
        _time_based_recovery(outcomes, meal_type, now, settings),
        _performance_based_recovery(recent, settings),
        settings.hypo_recovery_aggressiveness,
    )
    return _clamp(base * reduction * recovery, 0.5, 1.5)


# -----------------------------
# Peak detection on the reading log
# -----------------------------
def _peak_shape(window: Sequence[float]) -> tuple[bool, float]:
    pre_rise = window[2] - window[0]
    post_decline = window[2] - window[4]
    symmetry = abs(pre_rise - post_decline) / max(pre_rise, post_decline, 0.1)

    symmetric = symmetry < 0.6
    rise_ok = pre_rise > 1.2
    decline_ok = post_decline > 0.6
    if symmetric and rise_ok and decline_ok:
        confidence = 0.9
    elif symmetric and rise_ok:
        confidence = 0.75
    elif rise_ok and decline_ok:
        confidence = 0.7
    else:
        confidence = 0.3

    is_peak = confidence > 0.6 and window[2] > window[1] and window[2] > window[3]
    return is_peak, confidence


def detect_peaks(records: Sequence[PeakRecord], alpha: float = 0.3) -> List[PeakRecord]:
    """Local maxima of the smoothed reading log, at least 30 min apart."""
    if len(records) < 5:
        return []

    smoothed = []
    s = records[0].bg
    for r in records:
        s = alpha * r.bg + (1 - alpha) * s
        smoothed.append(s)

    candidates = []
    for i in range(2, len(records) - 2):
        is_peak, confidence = _peak_shape(smoothed[i - 2 : i + 3])
        if is_peak and confidence > 0.7:
            candidates.append(records[i])

    baseline = records[0].bg
    peaks: List[PeakRecord] = []
    for peak in candidates:
        too_close = any(abs((peak.timestamp - p.timestamp).total_seconds()) < 30 * 60 for p in peaks)
        if not too_close and peak.bg > baseline + 1.0:
            peaks.append(peak)
    return peaks


def _timing_score(minutes: float) -> float:
    if 45 <= minutes <= 150:
        return 1.0
    if 30 <= minutes <= 180:
        return 0.7
    return 0.0


class LearningEngine:
    def __init__(self, storage: LearningStorage, settings: Optional[FclSettings] = None) -> None:
        self.storage = storage
        self.settings = settings or FclSettings()
        self.profile = storage.load() or LearningProfile()
        self._sanitize()
        self.outcomes: List[MealOutcome] = storage.load_outcomes()
        self.pending: List[PendingMealUpdate] = []
        self.pending_corrections: List[PendingCorrectionUpdate] = []
        self.peak_log: List[PeakRecord] = []

    def _sanitize(self) -> None:
        p = self.profile
        if math.isnan(p.personal_carb_ratio) or p.personal_carb_ratio <= 0:
            p.personal_carb_ratio = 1.0
        if math.isnan(p.personal_isf) or p.personal_isf <= 0:
            p.personal_isf = 1.0
        p.personal_carb_ratio = _clamp(p.personal_carb_ratio, *CARB_RATIO_BOUNDS)
        p.personal_isf = _clamp(p.personal_isf, *ISF_BOUNDS)
        p.confidence = _clamp(p.confidence, 0.0, 1.0)

    def snapshot(self) -> LearningSnapshot:
        return LearningSnapshot.of(self.profile)

    def meal_factor(self, now: datetime) -> float:
        return hypo_adjusted_meal_factor(self.profile, self.outcomes, now, self.settings)

    def store_meal(self, carbs: float, dose: float, start_bg: float, expected_peak: float, now: datetime) -> None:
        self.pending.append(
            PendingMealUpdate(
                timestamp=now,
                detected_carbs=carbs,
                given_dose=dose,
                start_bg=start_bg,
                expected_peak=expected_peak,
                meal_type=meal_type_for_hour(now.hour),
            )
        )

    def store_correction(self, dose: float, isf: float, start_bg: float, now: datetime) -> None:
        if dose <= 0 or isf <= 0:
            return
        self.pending_corrections.append(PendingCorrectionUpdate(now, dose, dose * isf, start_bg))

    def process_corrections(self, now: datetime, bg: float) -> List[CorrectionOutcome]:
        """Resolve corrections delivered 2-4 h ago against the current BG."""
        start, end = CORRECTION_WINDOW_MINUTES
        resolved = []
        keep = []
        for update in self.pending_corrections:
            minutes = (now - update.timestamp).total_seconds() / 60.0
            if minutes < start:
                keep.append(update)
                continue
            if minutes > end:
                logger.debug("learning: correction from %s expired", update.timestamp)
                continue

            before = self.profile.personal_isf
            self.profile = apply_correction_response(self.profile, update, bg, now)
            actual = update.start_bg - bg
            outcome = CorrectionOutcome(
                timestamp=update.timestamp,
                insulin_given=update.insulin_given,
                predicted_drop=update.predicted_drop,
                actual_drop=actual,
                isf_before=before,
                isf_after=self.profile.personal_isf,
                outcome=classify_correction(update.predicted_drop, actual),
            )
            logger.debug(
                "learning: %s correction %.2fU drop %.1f (predicted %.1f) -> ISF x%.2f",
                outcome.outcome.value,
                outcome.insulin_given,
                actual,
                update.predicted_drop,
                outcome.isf_after,
            )
            resolved.append(outcome)

        self.pending_corrections = keep
        if resolved:
            result = self.storage.save(self.profile)
            if not result.ok:
                logger.warning("learning: profile not saved: %s", result.error)
        return resolved

    def record_reading(self, sample: GlucoseSample, trends: TrendMetrics) -> None:
        """Keep one reading per 5 min (or per 0.5 mmol/L move) for peak matching."""
        if self.peak_log:
            last = self.peak_log[-1]
            if sample.timestamp <= last.timestamp:
                return
            minutes = (sample.timestamp - last.timestamp).total_seconds() / 60.0
            if minutes < 5 and abs(sample.glucose - last.bg) < 0.5:
                return
        self.peak_log.append(PeakRecord(sample.timestamp, sample.glucose, trends.recent_trend, trends.acceleration))
        del self.peak_log[:-PEAK_LOG_SIZE]

    def process_pending(self, now: datetime, carb_ratio: float) -> List[MealOutcome]:
        """Expire stale meals, then resolve meals whose peak is known."""
        before = len(self.pending)
        self.pending = [
            u for u in self.pending if (now - u.timestamp).total_seconds() / 60.0 <= PENDING_EXPIRY_MINUTES
        ]
        if len(self.pending) < before:
            logger.debug("learning: %d pending meal(s) expired", before - len(self.pending))

        applied = self._match_peaks(now, carb_ratio)
        applied += self._fallback(now, carb_ratio)
        return applied

    def _match_peaks(self, now, carb_ratio):
        peaks = detect_peaks(self.peak_log)
        if not peaks or not self.pending:
            return []

        applied = []
        for update in list(self.pending):
            best, best_score = None, 0.0
            for peak in peaks:
                minutes = (peak.timestamp - update.timestamp).total_seconds() / 60.0
                bg_score = 1.0 - min(1.0, abs(peak.bg - update.expected_peak) / 5.0)
                score = _timing_score(minutes) * 0.6 + bg_score * 0.4
                if score > best_score and score > 0.5:
                    best, best_score = peak, score
            if best is not None:
                applied.append(self._resolve(update, best.bg, best.timestamp, now, carb_ratio))
                self.pending.remove(update)
        return applied

    def _fallback(self, now, carb_ratio):
        if len(self.peak_log) < 5:
            return []
        applied = []
        for update in list(self.pending):
            minutes = (now - update.timestamp).total_seconds() / 60.0
            if not 120 < minutes < 360:
                continue
            window = [
                r
                for r in self.peak_log
                if 60 <= (r.timestamp - update.timestamp).total_seconds() / 60.0 <= 180
            ]
            if window:
                top = max(window, key=lambda r: r.bg)
                peak_bg, peak_at = top.bg, top.timestamp
            else:
                peak_bg, peak_at = update.start_bg + 3.0, update.timestamp + timedelta(minutes=90)
            applied.append(self._resolve(update, peak_bg, peak_at, now, carb_ratio))
            self.pending.remove(update)
        return applied

    def _resolve(self, update, peak_bg, peak_at, now, carb_ratio) -> MealOutcome:
        bg_end = self.peak_log[-1].bg if self.peak_log else peak_bg
        outcome = MealOutcome(
            timestamp=update.timestamp,
            carbs=update.detected_carbs,
            insulin_given=update.given_dose,
            predicted_peak=update.expected_peak,
            actual_peak=peak_bg,
            time_to_peak=int(round((peak_at - update.timestamp).total_seconds() / 60.0)),
            bg_start=update.start_bg,
            bg_end=bg_end,
            meal_type=update.meal_type,
            outcome=classify_outcome(peak_bg),
        )

        if update.detected_carbs > 0:
            self.profile = apply_meal_outcome(self.profile, outcome, carb_ratio, now)
        if outcome.outcome == OutcomeKind.TOO_LOW:
            self.profile = apply_hypo_after_meal(self.profile, update.meal_type, bg_end, now, self.settings)

        logger.debug(
            "learning: %s meal %.0fg peak %.1f after %d min -> CR x%.2f ISF x%.2f",
            outcome.outcome.value,
            outcome.carbs,
            outcome.actual_peak,
            outcome.time_to_peak,
            self.profile.personal_carb_ratio,
            self.profile.personal_isf,
        )

        self.outcomes.append(outcome)
        del self.outcomes[:-MAX_OUTCOMES]
        self._persist(outcome)
        return outcome

    def _persist(self, outcome: MealOutcome) -> None:
        result = self.storage.save(self.profile)
        if not result.ok:
            logger.warning("learning: profile not saved: %s", result.error)
        result = self.storage.save_outcome(outcome)
        if not result.ok:
            logger.warning("learning: outcome not saved: %s", result.error)

    def reset(self) -> None:
        self.profile = LearningProfile()
        self.pending.clear()
        self.pending_corrections.clear()
        self.outcomes.clear()
        result = self.storage.save(self.profile)
        if not result.ok:
            logger.warning("learning: reset not saved: %s", result.error)
