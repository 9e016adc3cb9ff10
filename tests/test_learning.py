import logging
import math
import random
from datetime import datetime, timedelta

import pytest

from fcl_emulator.config import FclSettings
from fcl_emulator.core.learning import (
    LearningEngine,
    apply_correction_response,
    apply_meal_outcome,
    classify_correction,
    classify_outcome,
    hypo_adjusted_meal_factor,
)
from fcl_emulator.core.storage import InMemoryLearningStorage, StorageResult
from fcl_emulator.fcl_structs import (
    GlucoseSample,
    LearningProfile,
    MealOutcome,
    OutcomeKind,
    PendingCorrectionUpdate,
    TrendMetrics,
)

NOON = datetime(2024, 3, 5, 12, 0)


def make_outcome(ts=NOON, carbs=20.0, bg_start=6.0, peak=8.0, outcome=None, meal_type="lunch"):
    return MealOutcome(
        timestamp=ts,
        carbs=carbs,
        insulin_given=1.0,
        predicted_peak=8.0,
        actual_peak=peak,
        time_to_peak=60,
        bg_start=bg_start,
        bg_end=6.5,
        meal_type=meal_type,
        outcome=outcome or classify_outcome(peak),
    )


class FailingStorage:
    def save(self, profile):
        return StorageResult.failure("disk full")

    def load(self):
        return None

    def save_outcome(self, outcome):
        return StorageResult.failure("disk full")

    def load_outcomes(self):
        return []


def test_profile_stays_bounded():
    rng = random.Random(3)
    profile = LearningProfile()
    now = NOON
    for _ in range(200):
        now += timedelta(hours=rng.uniform(0.5, 30))
        outcome = make_outcome(ts=now, carbs=rng.uniform(0, 90), bg_start=rng.uniform(4, 12), peak=rng.uniform(3, 20))
        profile = apply_meal_outcome(profile, outcome, 10.0, now)

        assert 0.7 <= profile.personal_carb_ratio <= 1.3
        assert 0.8 <= profile.personal_isf <= 1.2
        assert 0.0 <= profile.confidence <= 1.0
        assert not math.isnan(profile.personal_carb_ratio)
    assert profile.total_samples == 200


def test_update_does_not_mutate_input():
    profile = LearningProfile()
    before = profile.to_dict()
    updated = apply_meal_outcome(profile, make_outcome(peak=8.0), 10.0, NOON)

    assert profile.to_dict() == before
    assert updated is not profile


def test_expected_rise_gives_neutral_isf():
    # 20 g at CR 10 -> 2 mmol/L expected, 2 observed
    updated = apply_meal_outcome(LearningProfile(), make_outcome(bg_start=6.0, peak=8.0), 10.0, NOON)

    assert updated.personal_carb_ratio == pytest.approx(1.1)
    assert updated.personal_isf == pytest.approx(1.0)
    assert updated.confidence == pytest.approx(0.1)
    assert updated.meal_timing_factors["lunch"] == pytest.approx(1.0)
    assert updated.total_samples == 1
    assert updated.last_updated == NOON


def test_confidence_decays_with_age():
    profile = LearningProfile(confidence=0.5, last_updated=NOON - timedelta(hours=168))
    updated = apply_meal_outcome(profile, make_outcome(), 10.0, NOON)
    assert updated.confidence == pytest.approx(0.5 * math.exp(-1) + 0.1, abs=1e-4)


@pytest.mark.parametrize(
    "peak, kind",
    [(5.5, OutcomeKind.TOO_LOW), (6.0, OutcomeKind.SUCCESS), (11.0, OutcomeKind.SUCCESS), (11.5, OutcomeKind.TOO_HIGH)],
)
def test_classify_outcome(peak, kind):
    assert classify_outcome(peak) == kind


def test_meal_factor_after_post_meal_hypos():
    outcomes = [
        make_outcome(ts=NOON - timedelta(hours=2), peak=5.0, outcome=OutcomeKind.TOO_LOW),
        make_outcome(ts=NOON - timedelta(hours=1), peak=5.2, outcome=OutcomeKind.TOO_LOW),
    ]
    # 20% for two hypos, then the slowest recovery (same day)
    factor = hypo_adjusted_meal_factor(LearningProfile(), outcomes, NOON, FclSettings())
    assert factor == pytest.approx(0.56)

    # other meal types are unaffected
    evening = NOON.replace(hour=19)
    assert hypo_adjusted_meal_factor(LearningProfile(), outcomes, evening, FclSettings()) == pytest.approx(1.0)


def _feed_meal_curve(engine, start):
    # up to 10.0 at +60 min, back to 7.0 at +150
    for minutes in range(0, 155, 5):
        if minutes <= 60:
            bg = 7.0 + 3.0 * minutes / 60
        else:
            bg = 10.0 - 3.0 * (minutes - 60) / 90
        engine.record_reading(GlucoseSample(start + timedelta(minutes=minutes), bg), TrendMetrics.zero())


def test_engine_resolves_pending_meal():
    storage = InMemoryLearningStorage()
    engine = LearningEngine(storage)
    engine.store_meal(25.0, 0.7, 7.0, 9.0, NOON)
    _feed_meal_curve(engine, NOON)

    resolved = engine.process_pending(NOON + timedelta(minutes=150), 10.0)

    assert len(resolved) == 1
    outcome = resolved[0]
    assert outcome.outcome == OutcomeKind.SUCCESS
    assert outcome.meal_type == "lunch"
    assert 7.0 < outcome.actual_peak <= 10.0
    assert 0 < outcome.time_to_peak <= 150
    assert engine.pending == []
    assert engine.profile.total_samples == 1
    # persisted
    assert storage.load().total_samples == 1
    assert len(storage.load_outcomes()) == 1


def test_pending_meal_expires():
    engine = LearningEngine(InMemoryLearningStorage())
    engine.store_meal(25.0, 0.7, 7.0, 9.0, NOON)
    assert engine.process_pending(NOON + timedelta(minutes=361), 10.0) == []
    assert engine.pending == []


def test_storage_failure_does_not_break_learning(caplog):
    engine = LearningEngine(FailingStorage())
    engine.store_meal(25.0, 0.7, 7.0, 9.0, NOON)
    _feed_meal_curve(engine, NOON)

    with caplog.at_level(logging.WARNING):
        resolved = engine.process_pending(NOON + timedelta(minutes=150), 10.0)

    assert len(resolved) == 1
    assert engine.profile.total_samples == 1
    assert "not saved" in caplog.text


def test_engine_loads_and_sanitizes_profile():
    storage = InMemoryLearningStorage()
    storage.save(LearningProfile(personal_carb_ratio=5.0, personal_isf=float("nan"), confidence=3.0))

    engine = LearningEngine(storage)

    assert engine.profile.personal_carb_ratio == 1.3
    assert engine.profile.personal_isf == 1.0
    assert engine.profile.confidence == 1.0


def test_reset_clears_profile():
    storage = InMemoryLearningStorage()
    engine = LearningEngine(storage)
    engine.profile = apply_meal_outcome(engine.profile, make_outcome(), 10.0, NOON)
    engine.reset()

    assert engine.profile.total_samples == 0
    assert storage.load().total_samples == 0


def test_correction_response_moves_isf_toward_observed_drop():
    profile = LearningProfile()
    # 1U predicted to drop 2.0, actually dropped 3.5
    update = PendingCorrectionUpdate(NOON, 1.0, 2.0, 10.0)

    updated = apply_correction_response(profile, update, 6.5, NOON + timedelta(hours=2))

    alpha = 0.05 * 0.75
    assert updated.personal_isf == pytest.approx(1.0 * (1 - alpha) + 1.75 * alpha)
    assert updated.total_samples == 1
    assert profile.personal_isf == 1.0
    assert classify_correction(2.0, 3.5) == OutcomeKind.TOO_AGGRESSIVE
    assert classify_correction(2.0, 0.9) == OutcomeKind.TOO_CONSERVATIVE
    assert classify_correction(2.0, 2.4) == OutcomeKind.SUCCESS


@pytest.mark.parametrize("bg_now", [10.0, 11.5, 0.5])
def test_correction_response_ignores_rises_and_outliers(bg_now):
    profile = LearningProfile()
    update = PendingCorrectionUpdate(NOON, 1.0, 2.0, 10.0)
    assert apply_correction_response(profile, update, bg_now, NOON + timedelta(hours=2)) is profile


def test_correction_response_is_clamped():
    profile = LearningProfile(personal_isf=1.19)
    update = PendingCorrectionUpdate(NOON, 1.0, 2.0, 10.0)
    # drop of 4.0 is twice the prediction
    updated = apply_correction_response(profile, update, 6.0, NOON + timedelta(hours=2))
    assert updated.personal_isf == 1.2


def test_engine_resolves_corrections_in_window():
    storage = InMemoryLearningStorage()
    engine = LearningEngine(storage)
    engine.store_correction(1.0, 2.0, 10.0, NOON)
    engine.store_correction(0.0, 2.0, 10.0, NOON)
    assert len(engine.pending_corrections) == 1

    assert engine.process_corrections(NOON + timedelta(minutes=60), 8.0) == []
    assert len(engine.pending_corrections) == 1

    resolved = engine.process_corrections(NOON + timedelta(minutes=120), 8.0)

    assert len(resolved) == 1
    assert resolved[0].actual_drop == pytest.approx(2.0)
    assert resolved[0].outcome == OutcomeKind.SUCCESS
    assert resolved[0].isf_after == pytest.approx(engine.profile.personal_isf)
    assert engine.pending_corrections == []
    # drop matched the prediction: smallest step, still at 1.0
    assert engine.profile.personal_isf == pytest.approx(1.0)
    assert storage.load().total_samples == 1


def test_stale_correction_expires():
    engine = LearningEngine(InMemoryLearningStorage())
    engine.store_correction(1.0, 2.0, 10.0, NOON)

    assert engine.process_corrections(NOON + timedelta(minutes=241), 6.0) == []
    assert engine.pending_corrections == []
    assert engine.profile.total_samples == 0
