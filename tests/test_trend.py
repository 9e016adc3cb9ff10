import pytest

from fcl_emulator.core.trend import (
    acceleration,
    analyze_trends,
    check_consistent_decline,
    determine_trend_phase,
    has_sustained_rise_pattern,
    is_at_peak_or_declining,
    recent_trend,
    short_term_trend,
    trend_between,
)
from fcl_emulator.fcl_structs import GlucoseSample, TrendMetrics, TrendPhase

RISING = [5.0, 5.2, 5.5, 5.9, 6.4, 7.0, 7.7, 8.5]


def test_analyze_trends_is_repeatable_and_pure(series):
    history = series(RISING)
    before = list(history)

    first = analyze_trends(history)
    second = analyze_trends(history)

    assert first == second
    assert history == before


def test_rising_trace_metrics(series):
    history = series(RISING)
    # 5.9 -> 8.5 over 20 min
    assert recent_trend(history) == pytest.approx(7.8)
    # 6.4 (15 min back) -> 8.5
    assert short_term_trend(history) == pytest.approx(8.4)
    # slope 9.6 now vs 7.2 three samples earlier, 10 min apart
    assert acceleration(history) == pytest.approx(0.24)


@pytest.mark.parametrize("values", [[], [6.0], [6.0, 6.5, 7.0]])
def test_short_history_gives_zero_metrics(series, values):
    assert analyze_trends(series(values)) == TrendMetrics.zero()


def test_acceleration_needs_seven_samples(series):
    assert acceleration(series(RISING[:6])) == 0.0
    assert acceleration(series(RISING[:7])) != 0.0


def test_non_increasing_timestamps_do_not_divide_by_zero(series):
    a, b = series([6.0, 9.0])
    same_time = GlucoseSample(a.timestamp, 9.0)
    assert trend_between(a, same_time) == 0.0
    assert trend_between(b, a) == 0.0


def test_short_term_trend_falls_back_to_older_sample(series):
    # 7 min spacing: nothing lands in the 15-20 min window
    history = series([6.0, 6.3, 6.6, 6.9], step=7)
    # newest sample older than 10 min is 14 min back
    assert short_term_trend(history) == pytest.approx((6.9 - 6.3) / 14 * 60)


@pytest.mark.parametrize(
    "metrics, phase",
    [
        (TrendMetrics(2.5, 0.0, 0.2), TrendPhase.EARLY_RISE),
        (TrendMetrics(1.5, 0.0, 0.05), TrendPhase.MID_RISE),
        (TrendMetrics(0.6, 0.0, -0.1), TrendPhase.LATE_RISE),
        (TrendMetrics(0.1, 0.0, 0.0), TrendPhase.PEAK),
        (TrendMetrics(-2.0, 0.0, 0.0), TrendPhase.STABLE),
    ],
)
def test_determine_trend_phase(metrics, phase):
    assert determine_trend_phase(metrics) == phase


def test_peak_and_decline_patterns(series):
    peaked = series([7.0, 8.0, 8.5, 8.0])
    assert is_at_peak_or_declining(peaked, analyze_trends(peaked))

    rising = series(RISING)
    assert not is_at_peak_or_declining(rising, analyze_trends(rising))

    assert check_consistent_decline(series([8.0, 7.7, 7.4]))
    assert not check_consistent_decline(series([8.0, 7.95, 7.9]))


def test_sustained_rise_pattern(series):
    assert has_sustained_rise_pattern(series(RISING))
    assert not has_sustained_rise_pattern(series([6.0, 6.0, 6.5, 6.5, 7.0, 7.0]))


def test_acceleration_unit_is_slope_change_per_minute(series):
    # 0.1 mmol/L per step, then 0.4: the slope jumps from 1.2 to 4.8 mmol/L/h
    history = series([5.0, 5.1, 5.2, 5.3, 5.4, 5.5, 5.9])
    # previous slope is taken between samples 3 and 4, 10 min before the current one
    assert acceleration(history) == pytest.approx((4.8 - 1.2) / 10)

    # the same trace sampled every minute: slopes x5, elapsed /5
    fast = series([5.0, 5.1, 5.2, 5.3, 5.4, 5.5, 5.9], step=1)
    assert acceleration(fast) == pytest.approx((24.0 - 6.0) / 2)
