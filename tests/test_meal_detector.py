from datetime import timedelta

import pytest

from fcl_emulator.core.cob import ActiveCarbs
from fcl_emulator.core.meal_detector import (
    MealDetector,
    calculate_meal_confidence,
    classify_rise,
    distinguish_meal_from_snack,
    estimate_carbs_from_rise,
    in_meal_detection_cooldown,
    rise_slopes,
    should_adjust_or_cancel_bolus,
    should_block_meal_detection_for_hypo_recovery,
)
from fcl_emulator.core.trend import analyze_trends
from fcl_emulator.fcl_structs import MealState, TrendMetrics

# 0.8 mmol/L over 30 min, 0.4 over the last 15
SLOW_RISE = [6.0, 6.1, 6.25, 6.4, 6.5, 6.6, 6.8]
EPISODE = SLOW_RISE + [7.0, 7.1, 7.15, 7.18]


def test_slow_rise_is_rising_with_six_grams(series):
    history = series(SLOW_RISE)
    slopes = rise_slopes(history)
    assert slopes.slope30 == pytest.approx(1.6)
    assert slopes.delta30 == pytest.approx(0.8)

    detector = MealDetector()
    detection = detector.update(history, history[-1].timestamp)

    assert detection.state == MealState.RISING
    assert detection.estimated_carbs == pytest.approx(6.0)
    assert detection.should_deliver


def test_episode_moves_forward_only(series):
    history = series(EPISODE)
    detector = MealDetector()

    states = []
    for k in range(4, len(history) + 1):
        window = history[:k]
        states.append(detector.update(window, window[-1].timestamp).state)

    assert states == [MealState.NONE] * 3 + [MealState.RISING] * 4 + [MealState.DETECTED]
    # carbs estimate carried over from the RISING transition
    assert detector.carbs == pytest.approx(6.0)


def test_state_times_out(series):
    history = series(SLOW_RISE)
    detector = MealDetector()
    detected_at = history[-1].timestamp
    detector.update(history, detected_at)

    assert detector.detection(detected_at + timedelta(minutes=29)).should_deliver
    assert not detector.detection(detected_at + timedelta(minutes=30)).should_deliver

    flat = series([6.8] * 7, start=detected_at)
    detection = detector.update(flat, detected_at + timedelta(minutes=30))
    assert detection.state == MealState.NONE
    assert detection.estimated_carbs == 0.0


def test_reset_clears_state(series):
    history = series(SLOW_RISE)
    detector = MealDetector()
    detector.update(history, history[-1].timestamp)
    detector.reset()
    assert detector.state == MealState.NONE
    assert detector.transitioned_at is None


def test_fast_rise_is_early_rise(series):
    history = series([5.0, 5.1, 5.2, 5.3, 5.5, 5.9, 6.4, 7.0])
    state, carbs = classify_rise(rise_slopes(history))
    assert state == MealState.EARLY_RISE
    assert carbs == pytest.approx(8.0)


def test_flat_trace_is_no_meal(series):
    state, carbs = classify_rise(rise_slopes(series([6.0] * 7)))
    assert state == MealState.NONE
    assert carbs == 0.0


def test_carbs_from_unexplained_rise(series, settings):
    history = series([5.0, 5.1, 5.2, 5.3, 5.5, 5.9, 6.4, 7.0])
    now = history[-1].timestamp
    # 1.5 mmol/L unexplained in 15 min at CR 10 -> 15 g, plus up to 10 g for an empty stomach
    carbs = estimate_carbs_from_rise(history, [], now, 10.0, 6.0, settings)
    assert carbs == pytest.approx(25.0)

    # the same rise fully explained by carbs already on board
    meals = [ActiveCarbs(now, 100.0, 40.0)]
    assert estimate_carbs_from_rise(history, meals, now, 10.0, 6.0, settings) < carbs


def test_meal_scoring(series):
    steady = series([5.2, 5.3, 5.5, 5.9, 6.4, 7.0])
    assert distinguish_meal_from_snack(steady, 25.0)
    assert calculate_meal_confidence(steady, 25.0) > 0.7

    bumpy = series([6.0, 6.0, 6.1, 6.0, 6.3, 6.2])
    assert not distinguish_meal_from_snack(bumpy, 8.0)


def test_hypo_recovery_blocks_detection(series, settings):
    history = series([5.0, 4.2, 3.5, 3.4, 3.9, 4.6, 5.2, 5.6])
    now = history[-1].timestamp
    assert should_block_meal_detection_for_hypo_recovery(5.6, history, analyze_trends(history), now, settings)

    normal = series([5.0, 5.2, 5.5, 5.9, 6.4, 7.0, 7.7, 8.5])
    assert not should_block_meal_detection_for_hypo_recovery(
        8.5, normal, analyze_trends(normal), normal[-1].timestamp, settings
    )


def test_detection_cooldown(series, settings):
    now = series([6.0])[0].timestamp
    calm = TrendMetrics(0.5, 0.5, 0.0)
    recent = now - timedelta(minutes=20)

    assert in_meal_detection_cooldown(6.5, 6.0, calm, recent, now, settings)
    assert not in_meal_detection_cooldown(6.5, 6.0, calm, now - timedelta(minutes=50), now, settings)
    assert not in_meal_detection_cooldown(6.5, 6.0, calm, None, now, settings)
    # fast rise overrides the cooldown
    assert not in_meal_detection_cooldown(6.5, 6.0, TrendMetrics(3.0, 3.0, 0.0), recent, now, settings)


@pytest.mark.parametrize(
    "values, fading",
    [
        ([6.0, 6.4, 6.8, 7.2, 7.6], False),  # still climbing
        ([6.0, 6.8, 6.9, 6.9, 6.95], True),  # levelled off
        ([6.0, 6.8, 7.5, 8.0, 7.4], True),  # sudden drop
        ([6.0, 6.5, 7.0], False),  # too short
    ],
)
def test_should_adjust_or_cancel_bolus(series, values, fading):
    assert should_adjust_or_cancel_bolus(series(values)) == fading
