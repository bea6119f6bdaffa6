from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from gamepulse.metrics import (
    NO_SESSION_DAYS,
    average_of_present,
    completion_rate,
    days_since_last_session,
    retention_score,
    safe_ratio,
    session_duration_hours,
    summarize_sessions,
    total_revenue,
)


START = datetime(2024, 3, 1, 12, 0, 0)


def _session(player_id=1, start=START, end=None):
    return SimpleNamespace(player_id=player_id, start_time=start, end_time=end)


def test_open_and_unstarted_sessions_fold_to_zero_duration():
    sessions = [
        _session(player_id=1, start=START, end=START + timedelta(hours=1)),
        _session(player_id=2, start=START, end=None),
        _session(player_id=2, start=None, end=None),
    ]

    summary = summarize_sessions(sessions)

    assert summary.total_sessions == 3
    assert summary.unique_players == 2
    assert summary.total_playtime_hours == pytest.approx(1.0)
    assert summary.avg_session_duration == pytest.approx(1.0 / 3)


def test_empty_session_collection_reports_zeros():
    summary = summarize_sessions([])

    assert summary.total_sessions == 0
    assert summary.unique_players == 0
    assert summary.total_playtime_hours == 0.0
    assert summary.avg_session_duration == 0.0


def test_session_ending_before_start_counts_as_zero():
    session = _session(start=START, end=START - timedelta(minutes=30))
    assert session_duration_hours(session) == 0.0


def test_total_revenue_treats_missing_amounts_as_zero():
    purchases = [
        SimpleNamespace(amount=19.99),
        SimpleNamespace(amount=None),
        SimpleNamespace(),
        SimpleNamespace(amount=5),
    ]
    assert total_revenue(purchases) == pytest.approx(24.99)


def test_average_ignores_missing_values_instead_of_counting_zero():
    assert average_of_present([4.0, None, 5.0, None]) == pytest.approx(4.5)
    assert average_of_present([None, None]) == 0.0
    assert average_of_present([]) == 0.0


def test_safe_ratio_guards_zero_denominator():
    assert safe_ratio(120.0, 0) == 0.0
    assert safe_ratio(120.0, 4) == 30.0


def test_days_since_last_session_uses_latest_end_time():
    now = datetime(2024, 3, 11, 12, 0, 0)
    sessions = [
        _session(end=datetime(2024, 3, 1, 13, 0, 0)),
        _session(end=datetime(2024, 3, 8, 11, 0, 0)),
        _session(end=None),
    ]
    assert days_since_last_session(sessions, now=now) == 3


def test_players_without_finished_sessions_get_sentinel_and_zero_retention():
    now = datetime(2024, 3, 11)
    idle = days_since_last_session([_session(end=None)], now=now)

    assert idle == NO_SESSION_DAYS
    assert retention_score(idle) == 0.0
    assert retention_score(None) == 0.0


def test_retention_score_is_bounded():
    assert retention_score(0) == 100.0
    assert retention_score(-3) == 100.0
    assert retention_score(40) == 60.0
    assert retention_score(250) == 0.0


def test_completion_rate_is_clamped_to_percentage_range():
    assert completion_rate(3, 12) == pytest.approx(25.0)
    assert completion_rate(5, 0) == 0.0
    assert completion_rate(20, 10) == 100.0
