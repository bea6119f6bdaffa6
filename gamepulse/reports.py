from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload, selectinload

from .domains import COMPANY_SIZE_BUCKETS, COUNTRIES, GAME_GENRES, PRIVACY_VALUES, THEME_VALUES
from .metadata import (
    json_array_contains,
    parse_developer_metadata,
    parse_game_metadata,
    parse_player_settings,
)
from .metrics import (
    average_of_present,
    completion_rate,
    days_since_last_session,
    retention_score,
    safe_ratio,
    summarize_sessions,
    total_revenue,
)
from .models import Achievement, Developer, Game, Player, utcnow


logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 30


class ReportQueryError(RuntimeError):
    """Raised when the rows backing a report could not be fetched."""


def _arg(args: Mapping[str, Any], *names: str) -> str | None:
    for name in names:
        value = args.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return None


def _parse_float(args: Mapping[str, Any], label: str, *names: str) -> float | None:
    raw = _arg(args, *names)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{label} must be a number.") from exc


def _parse_int(args: Mapping[str, Any], label: str, *names: str) -> int | None:
    raw = _arg(args, *names)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{label} must be a whole number.") from exc


def _parse_date(args: Mapping[str, Any], label: str, *names: str) -> date | None:
    raw = _arg(args, *names)
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValueError(f"{label} must be a valid YYYY-MM-DD date.") from exc


def _parse_list(args: Mapping[str, Any], *names: str) -> list[str]:
    values: list[str] = []
    for name in names:
        if hasattr(args, "getlist"):
            raw_values = args.getlist(name)
        else:
            raw = args.get(name)
            raw_values = raw if isinstance(raw, (list, tuple)) else [raw]
        for raw in raw_values:
            if raw is None:
                continue
            values.extend(part.strip() for part in str(raw).split(",") if part.strip())
    return values


def _check_range(low, high, label: str) -> None:
    if low is not None and high is not None and low > high:
        raise ValueError(f"{label} range is empty: {low} is after {high}.")


@dataclass(frozen=True)
class GamePerformanceFilters:
    genre: str | None = None
    developer_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    min_rating: float | None = None
    min_revenue: float | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "GamePerformanceFilters":
        filters = cls(
            genre=GAME_GENRES.validate(_arg(args, "genre")),
            developer_id=_parse_int(args, "Developer id", "developer_id", "developerId"),
            date_from=_parse_date(args, "Start date", "date_from", "dateFrom"),
            date_to=_parse_date(args, "End date", "date_to", "dateTo"),
            min_rating=_parse_float(args, "Minimum rating", "min_rating", "minRating"),
            min_revenue=_parse_float(args, "Minimum revenue", "min_revenue", "minRevenue"),
            tags=tuple(_parse_list(args, "tags")),
        )
        _check_range(filters.date_from, filters.date_to, "Release date")
        return filters


@dataclass(frozen=True)
class PlayerEngagementFilters:
    country: str | None = None
    min_level: int | None = None
    max_level: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    privacy: str | None = None
    theme: str | None = None
    min_achievements: int | None = None

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "PlayerEngagementFilters":
        privacy = _arg(args, "privacy", "privacySetting")
        if privacy is not None and privacy not in PRIVACY_VALUES:
            raise ValueError(f"Privacy must be one of {', '.join(PRIVACY_VALUES)}.")
        theme = _arg(args, "theme")
        if theme is not None and theme not in THEME_VALUES:
            raise ValueError(f"Theme must be one of {', '.join(THEME_VALUES)}.")

        filters = cls(
            country=COUNTRIES.validate(_arg(args, "country")),
            min_level=_parse_int(args, "Minimum level", "min_level", "minLevel"),
            max_level=_parse_int(args, "Maximum level", "max_level", "maxLevel"),
            date_from=_parse_date(args, "Start date", "date_from", "dateFrom"),
            date_to=_parse_date(args, "End date", "date_to", "dateTo"),
            privacy=privacy,
            theme=theme,
            min_achievements=_parse_int(
                args, "Minimum achievements", "min_achievements", "minAchievements"
            ),
        )
        _check_range(filters.min_level, filters.max_level, "Level")
        _check_range(filters.date_from, filters.date_to, "Account creation date")
        return filters


@dataclass(frozen=True)
class DeveloperSuccessFilters:
    date_from: date | None = None
    date_to: date | None = None
    min_revenue: float | None = None
    company_size: str | None = None
    min_founded_year: int | None = None
    specialty: str | None = None

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "DeveloperSuccessFilters":
        filters = cls(
            date_from=_parse_date(args, "Start date", "date_from", "dateFrom"),
            date_to=_parse_date(args, "End date", "date_to", "dateTo"),
            min_revenue=_parse_float(args, "Minimum revenue", "min_revenue", "minRevenue"),
            company_size=_arg(args, "company_size", "companySize"),
            min_founded_year=_parse_int(
                args, "Minimum founding year", "min_founded_year", "minFoundedYear"
            ),
            specialty=_arg(args, "specialty"),
        )
        _check_range(filters.date_from, filters.date_to, "Release date")
        return filters


def _fetch(query, report_label: str) -> list:
    try:
        return query.all()
    except SQLAlchemyError as error:
        logger.exception("Error fetching %s", report_label)
        raise ReportQueryError(f"Failed to fetch {report_label}: {error}") from error


def _iso(value: date | datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def get_game_performance_report(
    filters: GamePerformanceFilters | None = None,
) -> List[Dict[str, Any]]:
    """Fold sessions and purchases into one performance row per game.

    Genre, developer and release-date filters run in SQL. Rating, revenue and
    tag filters depend on JSON metadata or computed totals and run after the
    rows are assembled.
    """

    filters = filters or GamePerformanceFilters()

    query = Game.query.options(
        joinedload(Game.developer),
        selectinload(Game.sessions),
        selectinload(Game.purchases),
    )
    if filters.genre:
        query = query.filter(Game.genre == filters.genre)
    if filters.developer_id is not None:
        query = query.filter(Game.developer_id == filters.developer_id)
    if filters.date_from:
        query = query.filter(Game.release_date >= filters.date_from)
    if filters.date_to:
        query = query.filter(Game.release_date <= filters.date_to)

    games = _fetch(query.order_by(Game.id), "game performance report")

    rows: list[dict[str, Any]] = []
    for game in games:
        game_meta = parse_game_metadata(game.metadata_json, source=f"games.id={game.id}")
        developer = game.developer
        developer_meta = (
            parse_developer_metadata(
                developer.metadata_json, source=f"developers.id={developer.id}"
            )
            if developer is not None
            else None
        )

        sessions = summarize_sessions(game.sessions)
        revenue = total_revenue(game.purchases)

        rows.append(
            {
                "game_id": game.id,
                "game_title": game.title,
                "genre": game.genre or "",
                "developer_name": developer.name if developer is not None else "Unknown",
                "release_date": _iso(game.release_date),
                "price": game.price or 0,
                "total_sessions": sessions.total_sessions,
                "unique_players": sessions.unique_players,
                "average_rating": game_meta.average_rating if game_meta else None,
                "total_reviews": game_meta.total_reviews if game_meta else None,
                "tags": list(game_meta.tags) if game_meta else None,
                "company_size": developer_meta.company_size if developer_meta else None,
                "specialties": list(developer_meta.specialties) if developer_meta else None,
                "cover_image_url": game.cover_image_url,
                "logo_url": developer.logo_url if developer is not None else None,
                "total_revenue": revenue,
                "total_playtime_hours": sessions.total_playtime_hours,
                "avg_session_duration": sessions.avg_session_duration,
                "revenue_per_player": safe_ratio(revenue, sessions.unique_players),
            }
        )

    if filters.min_rating is not None:
        rows = [
            row
            for row in rows
            if row["average_rating"] is not None and row["average_rating"] >= filters.min_rating
        ]
    if filters.min_revenue is not None:
        rows = [row for row in rows if row["total_revenue"] >= filters.min_revenue]
    if filters.tags:
        wanted = set(filters.tags)
        rows = [row for row in rows if wanted.intersection(row["tags"] or ())]

    return rows


def get_player_engagement_report(
    filters: PlayerEngagementFilters | None = None,
    *,
    now: datetime | None = None,
) -> List[Dict[str, Any]]:
    """Build one engagement row per player from sessions, unlocks and profile settings."""

    filters = filters or PlayerEngagementFilters()
    now = now or utcnow()

    query = Player.query.options(
        joinedload(Player.profile),
        selectinload(Player.sessions),
        selectinload(Player.player_achievements),
    )
    if filters.country:
        query = query.filter(Player.country == filters.country)
    if filters.min_level is not None:
        query = query.filter(Player.level >= filters.min_level)
    if filters.max_level is not None:
        query = query.filter(Player.level <= filters.max_level)
    if filters.date_from:
        query = query.filter(
            Player.created_at >= datetime.combine(filters.date_from, datetime.min.time())
        )
    if filters.date_to:
        query = query.filter(
            Player.created_at < datetime.combine(filters.date_to + timedelta(days=1), datetime.min.time())
        )

    players = _fetch(query.order_by(Player.id), "player engagement report")
    if not players:
        return []

    try:
        catalogue_size = Achievement.query.count()
    except SQLAlchemyError as error:
        logger.exception("Error counting achievements")
        raise ReportQueryError(f"Failed to fetch player engagement report: {error}") from error

    rows: list[dict[str, Any]] = []
    for player in players:
        profile = player.profile
        settings = (
            parse_player_settings(profile.settings, source=f"player_profiles.id={profile.id}")
            if profile is not None
            else None
        )
        sessions = summarize_sessions(player.sessions)
        unlocked = len(player.player_achievements)
        idle_days = days_since_last_session(player.sessions, now=now)

        rows.append(
            {
                "player_id": player.id,
                "username": player.username,
                "email": player.email,
                "country": player.country or "",
                "level": player.level or 0,
                "total_score": player.total_score or 0,
                "account_created": _iso(player.created_at),
                "privacy": settings.privacy if settings else None,
                "theme": settings.theme if settings else None,
                "notifications_enabled": settings.email_notifications if settings else None,
                "avatar_url": profile.avatar_url if profile is not None else None,
                "total_sessions": sessions.total_sessions,
                "total_playtime_hours": sessions.total_playtime_hours,
                "avg_session_duration": sessions.avg_session_duration,
                "achievements_unlocked": unlocked,
                "achievement_completion_rate": completion_rate(unlocked, catalogue_size),
                "days_since_last_session": idle_days,
                "retention_score": retention_score(idle_days),
            }
        )

    if filters.privacy:
        rows = [row for row in rows if row["privacy"] == filters.privacy]
    if filters.theme:
        rows = [row for row in rows if row["theme"] == filters.theme]
    if filters.min_achievements is not None:
        rows = [row for row in rows if row["achievements_unlocked"] >= filters.min_achievements]

    return rows


def get_developer_success_report(
    filters: DeveloperSuccessFilters | None = None,
    *,
    now: datetime | None = None,
) -> List[Dict[str, Any]]:
    """Roll every developer's catalogue up into revenue, reach and rating metrics."""

    filters = filters or DeveloperSuccessFilters()
    now = now or utcnow()
    active_since = now - timedelta(days=ACTIVE_WINDOW_DAYS)

    query = Developer.query.options(
        selectinload(Developer.games).selectinload(Game.sessions),
        selectinload(Developer.games).selectinload(Game.purchases),
    )
    if filters.date_from or filters.date_to:
        window = []
        if filters.date_from:
            window.append(Game.release_date >= filters.date_from)
        if filters.date_to:
            window.append(Game.release_date <= filters.date_to)
        query = query.filter(Developer.games.any(and_(*window)))

    developers = _fetch(query.order_by(Developer.id), "developer success report")

    rows: list[dict[str, Any]] = []
    for developer in developers:
        dev_meta = parse_developer_metadata(
            developer.metadata_json, source=f"developers.id={developer.id}"
        )
        games = developer.games

        revenue = 0.0
        playtime = 0.0
        players: set[int] = set()
        active_players: set[int] = set()
        ratings: list[float | None] = []
        for game in games:
            revenue += total_revenue(game.purchases)
            summary = summarize_sessions(game.sessions)
            playtime += summary.total_playtime_hours
            for session in game.sessions:
                players.add(session.player_id)
                if session.start_time is not None and session.start_time >= active_since:
                    active_players.add(session.player_id)
            game_meta = parse_game_metadata(game.metadata_json, source=f"games.id={game.id}")
            ratings.append(game_meta.average_rating if game_meta else None)

        release_dates = sorted(game.release_date for game in games if game.release_date)

        rows.append(
            {
                "developer_id": developer.id,
                "developer_name": developer.name,
                "email": developer.email,
                "total_games": len(games),
                "earliest_release_date": _iso(release_dates[0]) if release_dates else None,
                "latest_release_date": _iso(release_dates[-1]) if release_dates else None,
                "company_size": dev_meta.company_size if dev_meta else None,
                "founded_year": dev_meta.founded_year if dev_meta else None,
                "headquarters": dev_meta.headquarters if dev_meta else None,
                "specialties": list(dev_meta.specialties) if dev_meta else None,
                "awards_count": len(dev_meta.awards) if dev_meta else None,
                "logo_url": developer.logo_url,
                "total_revenue": revenue,
                "total_players": len(players),
                "avg_game_rating": average_of_present(ratings),
                "total_playtime_hours": playtime,
                "revenue_per_game": safe_ratio(revenue, len(games)),
                "active_players_last_30_days": len(active_players),
            }
        )

    if filters.min_revenue is not None:
        rows = [row for row in rows if row["total_revenue"] >= filters.min_revenue]
    if filters.company_size:
        rows = [row for row in rows if row["company_size"] == filters.company_size]
    if filters.min_founded_year is not None:
        rows = [
            row
            for row in rows
            if row["founded_year"] is not None and row["founded_year"] >= filters.min_founded_year
        ]
    if filters.specialty:
        rows = [row for row in rows if json_array_contains(row["specialties"], filters.specialty)]

    return rows


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return safe_ratio(sum(values), len(values))


def summarize_game_performance(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "total_games": len(rows),
        "total_revenue": sum(row["total_revenue"] for row in rows),
        "avg_rating": average_of_present(row["average_rating"] for row in rows),
        "total_players": sum(row["unique_players"] for row in rows),
        "total_playtime": sum(row["total_playtime_hours"] for row in rows),
    }


def _distribution(rows: List[Dict[str, Any]], key: str, values: Iterable[str]) -> Dict[str, int]:
    counts = {value: 0 for value in values}
    counts["unknown"] = 0
    for row in rows:
        value = row.get(key)
        if value in counts and value != "unknown":
            counts[value] += 1
        else:
            counts["unknown"] += 1
    return counts


def summarize_player_engagement(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "total_players": len(rows),
        "avg_level": _mean(row["level"] for row in rows),
        "avg_playtime": _mean(row["total_playtime_hours"] for row in rows),
        "avg_retention": _mean(row["retention_score"] for row in rows),
        "avg_achievements": _mean(row["achievements_unlocked"] for row in rows),
        "privacy_distribution": _distribution(rows, "privacy", PRIVACY_VALUES),
        "theme_distribution": _distribution(rows, "theme", THEME_VALUES),
    }


def summarize_developer_success(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    size_distribution = {bucket: 0 for bucket in COMPANY_SIZE_BUCKETS.values()}
    size_distribution["unknown"] = 0
    for row in rows:
        bucket = COMPANY_SIZE_BUCKETS.get(row.get("company_size") or "", "unknown")
        size_distribution[bucket] += 1

    total_games = sum(row["total_games"] for row in rows)
    revenue = sum(row["total_revenue"] for row in rows)
    rated = [row["avg_game_rating"] for row in rows if row["avg_game_rating"] > 0]

    return {
        "total_developers": len(rows),
        "total_games": total_games,
        "total_revenue": revenue,
        "avg_games_per_developer": safe_ratio(total_games, len(rows)),
        "avg_revenue_per_developer": safe_ratio(revenue, len(rows)),
        "avg_game_rating": _mean(rated),
        "company_size_distribution": size_distribution,
    }


_TOP_DEVELOPER_KEYS = {
    "revenue": "total_revenue",
    "games": "total_games",
    "rating": "avg_game_rating",
}


def top_developers(
    rows: List[Dict[str, Any]], limit: int = 10, by: str = "revenue"
) -> List[Dict[str, Any]]:
    try:
        key = _TOP_DEVELOPER_KEYS[by]
    except KeyError as exc:
        raise ValueError(f"Rank developers by one of {', '.join(_TOP_DEVELOPER_KEYS)}.") from exc
    return sorted(rows, key=lambda row: row[key], reverse=True)[: max(0, limit)]


def active_players(rows: List[Dict[str, Any]], min_retention: float = 70) -> List[Dict[str, Any]]:
    return [row for row in rows if row["retention_score"] >= min_retention]


def at_risk_players(rows: List[Dict[str, Any]], max_retention: float = 30) -> List[Dict[str, Any]]:
    return [row for row in rows if row["retention_score"] <= max_retention]


@dataclass(frozen=True)
class ReportDefinition:
    slug: str
    title: str
    fetch: Callable[..., List[Dict[str, Any]]]
    filters: type
    summarize: Callable[[List[Dict[str, Any]]], Dict[str, Any]]
    sort_fields: tuple[str, ...]
    default_sort: str
    columns: Dict[str, str] = field(default_factory=dict)


REPORTS: Dict[str, ReportDefinition] = {
    "game-performance": ReportDefinition(
        slug="game-performance",
        title="Game Performance Report",
        fetch=get_game_performance_report,
        filters=GamePerformanceFilters,
        summarize=summarize_game_performance,
        sort_fields=(
            "game_title",
            "total_revenue",
            "total_playtime_hours",
            "unique_players",
            "average_rating",
            "release_date",
            "tags",
        ),
        default_sort="total_revenue",
        columns={
            "game_title": "Game",
            "genre": "Genre",
            "developer_name": "Developer",
            "release_date": "Release Date",
            "price": "Price",
            "total_sessions": "Sessions",
            "unique_players": "Players",
            "average_rating": "Rating",
            "tags": "Tags",
            "total_revenue": "Revenue",
            "total_playtime_hours": "Playtime (h)",
            "avg_session_duration": "Avg Session (h)",
            "revenue_per_player": "Revenue / Player",
        },
    ),
    "player-engagement": ReportDefinition(
        slug="player-engagement",
        title="Player Engagement Report",
        fetch=get_player_engagement_report,
        filters=PlayerEngagementFilters,
        summarize=summarize_player_engagement,
        sort_fields=(
            "username",
            "level",
            "total_playtime_hours",
            "achievements_unlocked",
            "retention_score",
            "days_since_last_session",
        ),
        default_sort="retention_score",
        columns={
            "username": "Username",
            "country": "Country",
            "level": "Level",
            "total_score": "Score",
            "privacy": "Privacy",
            "theme": "Theme",
            "notifications_enabled": "Email Notifications",
            "total_sessions": "Sessions",
            "total_playtime_hours": "Playtime (h)",
            "achievements_unlocked": "Achievements",
            "achievement_completion_rate": "Completion %",
            "days_since_last_session": "Days Idle",
            "retention_score": "Retention",
        },
    ),
    "developer-success": ReportDefinition(
        slug="developer-success",
        title="Developer Success Report",
        fetch=get_developer_success_report,
        filters=DeveloperSuccessFilters,
        summarize=summarize_developer_success,
        sort_fields=(
            "developer_name",
            "total_revenue",
            "total_games",
            "avg_game_rating",
            "total_players",
            "specialties",
        ),
        default_sort="total_revenue",
        columns={
            "developer_name": "Developer",
            "company_size": "Company Size",
            "founded_year": "Founded",
            "headquarters": "Headquarters",
            "specialties": "Specialties",
            "total_games": "Games",
            "total_revenue": "Revenue",
            "total_players": "Players",
            "avg_game_rating": "Avg Rating",
            "revenue_per_game": "Revenue / Game",
            "active_players_last_30_days": "Active (30d)",
        },
    ),
}


def get_report_definition(slug: str) -> ReportDefinition:
    try:
        return REPORTS[slug]
    except KeyError as exc:
        raise LookupError(f"Unknown report '{slug}'.") from exc
