from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

SECONDS_PER_HOUR = 3600.0
SECONDS_PER_DAY = 86400.0

# Reported when a player has no finished session to measure recency against.
NO_SESSION_DAYS = 999


@dataclass(frozen=True)
class SessionSummary:
    """Scalar metrics folded from a collection of play sessions."""

    total_sessions: int
    unique_players: int
    total_playtime_hours: float

    @property
    def avg_session_duration(self) -> float:
        return safe_ratio(self.total_playtime_hours, self.total_sessions)


def safe_ratio(numerator: float, denominator: float) -> float:
    """Divide, returning ``0.0`` instead of failing on an empty denominator."""

    if not denominator:
        return 0.0
    return numerator / denominator


def session_duration_hours(session: object) -> float:
    """Return the length of a session in hours.

    Sessions missing either timestamp are still open (or were never started)
    and contribute nothing. A session whose end precedes its start is treated
    as zero length.
    """

    start = getattr(session, "start_time", None)
    end = getattr(session, "end_time", None)
    if start is None or end is None:
        return 0.0
    seconds = (end - start).total_seconds()
    return max(0.0, seconds) / SECONDS_PER_HOUR


def summarize_sessions(sessions: Iterable[object]) -> SessionSummary:
    total_sessions = 0
    players: set[object] = set()
    total_hours = 0.0

    for session in sessions:
        total_sessions += 1
        player_id = getattr(session, "player_id", None)
        if player_id is not None:
            players.add(player_id)
        total_hours += session_duration_hours(session)

    return SessionSummary(total_sessions, len(players), total_hours)


def total_revenue(purchases: Iterable[object]) -> float:
    total = 0.0
    for purchase in purchases:
        try:
            total += float(getattr(purchase, "amount", 0) or 0)
        except (TypeError, ValueError):
            continue
    return total


def average_of_present(values: Iterable[float | None]) -> float:
    """Average only the values that are present; ``0.0`` when none are."""

    present = [float(value) for value in values if value is not None]
    return safe_ratio(sum(present), len(present))


def last_session_end(sessions: Iterable[object]) -> datetime | None:
    ends = [
        getattr(session, "end_time", None)
        for session in sessions
        if getattr(session, "end_time", None) is not None
    ]
    return max(ends) if ends else None


def days_since_last_session(sessions: Iterable[object], *, now: datetime) -> int:
    last_end = last_session_end(sessions)
    if last_end is None:
        return NO_SESSION_DAYS
    return int((now - last_end).total_seconds() // SECONDS_PER_DAY)


def retention_score(days_since_last: int | None) -> float:
    """Score recency of play on a 0-100 scale, one point lost per idle day."""

    if days_since_last is None:
        days_since_last = NO_SESSION_DAYS
    return float(min(100, max(0, 100 - days_since_last)))


def completion_rate(unlocked: int, total: int) -> float:
    rate = safe_ratio(unlocked, total) * 100
    return max(0.0, min(100.0, rate))
