import math
import random
from dataclasses import replace
from datetime import timedelta

import pytest

from fcl_emulator.core.fcl_algorithm import determine_bolus_fcl
from fcl_emulator.core.session import FclSession
from fcl_emulator.core.trend import analyze_trends
from fcl_emulator.fcl_structs import MealState, OutcomeKind, PendingReservedBolus, Phase


def _is_step_multiple(dose):
    return math.isclose(dose * 20, round(dose * 20), abs_tol=1e-9)


def test_stable_high_correction_is_computed_but_not_delivered(series, inputs, session):
    history = series([10.0] * 10)
    advice, tr = determine_bolus_fcl(history, inputs, session, history[-1].timestamp, trace_mode=True)

    assert advice.phase == Phase.CORRECTION
    assert "Correction" in advice.reason
    assert not advice.should_deliver
    # (10 - 6) / 2, then the low-confidence 70%
    assert dict(tr)["correction_raw"] == pytest.approx(2.0)
    assert advice.dose == pytest.approx(1.4)
    assert advice.predicted_peak == pytest.approx(10.0)
    assert tr[-1][0] == "result"


@pytest.mark.parametrize("level", [5.5, 9.0, 14.0])
def test_high_iob_without_rise_is_hard_blocked(series, inputs, session, level):
    # slow drift down, IOB at 95% of max
    history = series([level - i * 0.1 / 12 for i in range(10)])
    cycle = replace(inputs, current_iob=0.95 * inputs.max_iob)

    advice = determine_bolus_fcl(history, cycle, session, history[-1].timestamp)

    assert advice.dose == 0.0
    assert not advice.should_deliver


def test_sensor_oscillation_withholds(series, inputs, session):
    history = series([6.0] * 8 + [7.0, 6.2])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert advice.phase == Phase.SAFETY_SENSOR_ERROR
    assert advice.dose == 0.0
    assert not advice.should_deliver


def test_compression_low_withholds(series, inputs, session):
    history = series([6.0] * 5 + [7.0, 5.5, 3.8, 4.6, 5.5])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert advice.phase == Phase.SAFETY_COMPRESSION_LOW
    assert not advice.should_deliver


def test_reserved_bolus_released_on_confirmed_rise(series, inputs, session):
    history = series([5.0, 5.2, 5.4, 5.6, 5.8, 6.0, 6.2, 6.4])
    now = history[-1].timestamp
    reserved_at = now - timedelta(minutes=6)
    session.reservation = PendingReservedBolus(1.0, 20.0, reserved_at, decayed_at=reserved_at)
    session.last_bolus_at = now - timedelta(minutes=12)

    advice = determine_bolus_fcl(history, inputs, session, now)

    assert advice.phase == Phase.RESERVED_RELEASE
    assert advice.should_deliver
    # 6 minutes of decay, released in full
    assert advice.dose == pytest.approx(0.95)
    assert session.reservation is None
    assert advice.reserved_dose == 0.0
    assert session.last_bolus_at == now


def test_reserved_release_waits_for_spacing(series, inputs, session):
    history = series([5.0, 5.2, 5.4, 5.6, 5.8, 6.0, 6.2, 6.4])
    now = history[-1].timestamp
    session.reservation = PendingReservedBolus(1.0, 20.0, now - timedelta(minutes=6))
    session.last_bolus_at = now - timedelta(minutes=4)

    advice = determine_bolus_fcl(history, inputs, session, now)

    assert not advice.should_deliver
    assert session.reservation is not None
    assert advice.reserved_dose == pytest.approx(session.reservation.amount)


def test_unannounced_meal_is_staged(series, inputs, session):
    values = [5.0, 5.1, 5.2, 5.3, 5.5, 5.9, 6.4, 7.0]
    history = series(values)
    now = history[-1].timestamp

    advice = determine_bolus_fcl(history, inputs, session, now)

    assert advice.meal_detected
    assert advice.detected_carbs == pytest.approx(25.0)
    assert advice.phase in (Phase.MEAL_HIGH_CONFIDENCE, Phase.MEAL_MEDIUM_CONFIDENCE)
    assert advice.should_deliver
    assert advice.dose == pytest.approx(0.7)
    assert advice.reserved_dose == pytest.approx(1.3)
    assert session.reservation is not None
    assert advice.carbs_on_board > 0
    assert len(session.learning.pending) == 1
    # too little history for a prediction: BG + 2
    assert advice.predicted_peak == pytest.approx(9.0)
    assert session.learning.pending[0].expected_peak == pytest.approx(9.0)

    # next cycle: the same meal is not bolused again
    history = series(values + [7.5])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert not advice.meal_detected
    assert session.reservation is not None
    assert session.reservation.amount < 1.3
    assert advice.dose <= inputs.max_bolus
    assert len(session.learning.pending) == 1


def test_fading_rise_during_meal_halves_carbs(series, inputs, session):
    # rise levels off just under target + 1
    history = series([5.0, 5.3, 5.6, 6.0, 6.4, 6.8, 6.9, 6.9, 6.95])
    now = history[-1].timestamp
    session.meal_in_progress = True
    session.meal_started_at = history[2].timestamp
    session.detector.state = MealState.RISING
    session.detector.carbs = 14.0
    session.detector.transitioned_at = now - timedelta(minutes=10)

    advice = determine_bolus_fcl(history, inputs, session, now)

    assert advice.phase == Phase.SAFETY_MONITORING
    assert "carb estimate halved" in advice.reason
    assert advice.meal_detected
    assert advice.detected_carbs == pytest.approx(7.0)
    assert advice.dose == 0.0
    assert not advice.should_deliver
    # nothing was bolused, so nothing is tracked
    assert session.meals == []
    assert session.learning.pending == []


def test_delivered_correction_adapts_isf(series, inputs, session):
    history = series([9.0 + 0.1 * i for i in range(10)])
    now = history[-1].timestamp

    advice = determine_bolus_fcl(history, inputs, session, now)

    assert advice.phase == Phase.CORRECTION
    assert advice.should_deliver
    assert advice.dose == pytest.approx(2.0)
    assert len(session.learning.pending_corrections) == 1
    update = session.learning.pending_corrections[0]
    assert update.insulin_given == pytest.approx(2.0)
    # 2U at ISF 2
    assert update.predicted_drop == pytest.approx(4.0)

    # two hours on, BG has come down 2.9 of the predicted 4.0
    later = series([7.0] * 10, start=now + timedelta(minutes=75))
    advice, tr = determine_bolus_fcl(later, inputs, session, later[-1].timestamp, trace_mode=True)

    resolved = dict(tr)["learning.corrections"]
    assert len(resolved) == 1
    assert resolved[0].outcome == OutcomeKind.SUCCESS
    alpha = 0.05 * (1.0 - 0.725)
    assert session.learning.profile.personal_isf == pytest.approx(1.0 * (1 - alpha) + 0.725 * alpha)
    assert advice.learning.isf_adjustment == pytest.approx(session.learning.profile.personal_isf)
    assert session.learning.pending_corrections == []


def test_persistent_high_starts_extended_bolus(series, inputs, session):
    values = [11.0] * 10
    history = series(values)
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    # (11 - 10) / 2 = 0.5U over 3 steps
    assert advice.phase == Phase.PERSISTENT
    assert advice.should_deliver
    assert advice.dose == pytest.approx(0.15)
    assert session.extended.active
    assert session.extended.steps_remaining == 2

    history = series(values + [11.0])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert advice.phase == Phase.EXTENDED
    assert advice.should_deliver
    assert advice.dose == pytest.approx(0.15)

    # last step delivers the remainder, 0.5U in total
    history = series(values + [11.0, 11.0])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert advice.phase == Phase.EXTENDED
    assert advice.dose == pytest.approx(0.2)
    assert not session.extended.active


def test_insufficient_data(series, inputs, session):
    history = series([6.0, 6.5, 7.0])
    advice = determine_bolus_fcl(history, inputs, session, history[-1].timestamp)

    assert advice.phase == Phase.INSUFFICIENT_DATA
    assert advice.dose == 0.0
    assert not advice.should_deliver


def test_invalid_inputs_give_error_advice(series, inputs, session):
    history = series([8.0] * 10)
    advice = determine_bolus_fcl(history, replace(inputs, isf=0.0), session, history[-1].timestamp)

    assert advice.phase == Phase.ERROR
    assert "Invalid configuration" in advice.reason
    assert advice.dose == 0.0
    assert not advice.should_deliver


def test_internal_fault_gives_error_advice(inputs, session):
    advice, tr = determine_bolus_fcl([None] * 5, inputs, session, None, trace_mode=True)

    assert advice.phase == Phase.ERROR
    assert advice.reason.startswith("FCL error")
    assert advice.dose == 0.0
    assert not advice.should_deliver
    assert "error" in dict(tr)


def test_sessions_are_independent(series, inputs):
    values = [5.0, 5.1, 5.2, 5.3, 5.5, 5.9, 6.4, 7.0]
    history = series(values)
    a = FclSession.create()
    b = FclSession.create()

    determine_bolus_fcl(history, inputs, a, history[-1].timestamp)

    assert a.reservation is not None
    assert b.reservation is None
    assert not b.meals
    assert not b.learning.pending


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_walk_respects_dose_limits(series, inputs, seed):
    rng = random.Random(seed)
    session = FclSession.create()
    values = [7.0]
    for _ in range(80):
        values.append(min(22.0, max(2.5, values[-1] + rng.uniform(-0.6, 0.8))))

    for end in range(4, len(values) + 1):
        history = series(values[:end])
        cycle = replace(inputs, current_iob=rng.uniform(0.0, 3.5))
        advice = determine_bolus_fcl(history, cycle, session, history[-1].timestamp)

        assert 0.0 <= advice.dose <= cycle.max_bolus
        assert _is_step_multiple(advice.dose)
        if advice.should_deliver:
            assert advice.dose >= 0.05
        if cycle.current_iob >= 0.9 * cycle.max_iob and analyze_trends(history).recent_trend <= 0.0:
            assert advice.dose == 0.0
            assert not advice.should_deliver
