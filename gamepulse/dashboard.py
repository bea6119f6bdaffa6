from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload, selectinload

from . import db
from .domains import RARITY_ORDER, determine_rarity
from .metadata import extract_json_field, parse_developer_metadata, parse_game_metadata
from .metrics import completion_rate, session_duration_hours, safe_ratio
from .models import (
    Achievement,
    Developer,
    Game,
    GameSession,
    Leaderboard,
    LeaderboardEntity,
    Player,
    PlayerAchievement,
    Purchase,
    utcnow,
)
from .reports import ReportQueryError


logger = logging.getLogger(__name__)

RECENT_SESSION_LIMIT = 20
RECENT_UNLOCK_LIMIT = 3
RECENT_GAME_LIMIT = 3


def _query_failed(label: str, error: SQLAlchemyError) -> ReportQueryError:
    logger.exception("Error fetching %s", label)
    return ReportQueryError(f"Failed to fetch {label}: {error}")


def format_relative_time(moment: datetime | None, *, now: datetime) -> str:
    if moment is None:
        return "Unknown"
    seconds = max(0, int((now - moment).total_seconds()))
    minutes, _ = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d ago"
    if hours:
        return f"{hours}h ago"
    if minutes:
        return f"{minutes}m ago"
    return "Just now"


def get_admin_metrics(*, now: datetime | None = None) -> Dict[str, Any]:
    """Headline numbers for the admin dashboard."""

    now = now or utcnow()
    try:
        total_players = Player.query.count()
        active_games = (
            db.session.query(func.count(func.distinct(GameSession.game_id)))
            .filter(GameSession.start_time >= now - timedelta(days=30))
            .scalar()
        )
        total_revenue = db.session.query(func.coalesce(func.sum(Purchase.amount), 0.0)).scalar()
        active_players = (
            db.session.query(func.count(func.distinct(GameSession.player_id)))
            .filter(GameSession.start_time >= now - timedelta(days=7))
            .scalar()
        )
    except SQLAlchemyError as error:
        raise _query_failed("admin metrics", error) from error

    return {
        "total_players": total_players,
        "active_games": active_games or 0,
        "total_revenue": float(total_revenue or 0),
        "engagement_rate": safe_ratio(active_players or 0, total_players) * 100,
    }


def get_recent_activity(*, now: datetime | None = None, limit: int = 10) -> List[Dict[str, Any]]:
    now = now or utcnow()
    activities: list[dict[str, Any]] = []
    try:
        for game in Game.query.order_by(Game.created_at.desc()).limit(2):
            activities.append(
                {
                    "id": f"game-{game.id}",
                    "type": "game",
                    "action": "New game published",
                    "details": game.title,
                    "timestamp": game.created_at,
                }
            )

        unlocks = (
            PlayerAchievement.query.options(
                joinedload(PlayerAchievement.player),
                joinedload(PlayerAchievement.achievement),
            )
            .order_by(PlayerAchievement.unlocked_at.desc())
            .limit(3)
        )
        for unlock in unlocks:
            player_name = unlock.player.username if unlock.player else "Player"
            achievement_name = unlock.achievement.name if unlock.achievement else "Achievement"
            activities.append(
                {
                    "id": f"achievement-{unlock.id}",
                    "type": "achievement",
                    "action": "Achievement unlocked",
                    "details": f"{player_name} - {achievement_name}",
                    "timestamp": unlock.unlocked_at,
                }
            )

        for purchase in Purchase.query.order_by(Purchase.created_at.desc()).limit(2):
            activities.append(
                {
                    "id": f"purchase-{purchase.id}",
                    "type": "purchase",
                    "action": "Purchase completed",
                    "details": f"${(purchase.amount or 0):.2f}",
                    "timestamp": purchase.created_at,
                }
            )

        for player in Player.query.order_by(Player.created_at.desc()).limit(2):
            activities.append(
                {
                    "id": f"player-{player.id}",
                    "type": "player",
                    "action": "New player joined",
                    "details": player.username,
                    "timestamp": player.created_at,
                }
            )
    except SQLAlchemyError as error:
        raise _query_failed("recent activity", error) from error

    activities.sort(key=lambda item: item["timestamp"] or datetime.min, reverse=True)
    for item in activities:
        item["time"] = format_relative_time(item["timestamp"], now=now)
        item["timestamp"] = item["timestamp"].isoformat() if item["timestamp"] else None
    return activities[: max(0, limit)]


def _entry_to_dict(entry: LeaderboardEntity) -> Dict[str, Any]:
    player = entry.player
    return {
        "rank": entry.rank,
        "score": entry.score,
        "achieved_at": entry.achieved_at.isoformat() if entry.achieved_at else None,
        "player": (
            {
                "id": player.id,
                "username": player.username,
                "level": player.level,
                "country": player.country,
            }
            if player is not None
            else None
        ),
    }


def get_game_leaderboard(game_id: int) -> Dict[str, Any] | None:
    """Return the newest leaderboard for a game, entries ordered by rank.

    ``None`` means the game has no leaderboard yet.
    """

    try:
        leaderboard = (
            Leaderboard.query.options(
                selectinload(Leaderboard.entries).joinedload(LeaderboardEntity.player)
            )
            .filter(Leaderboard.game_id == game_id)
            .order_by(Leaderboard.created_at.desc(), Leaderboard.id.desc())
            .first()
        )
    except SQLAlchemyError as error:
        raise _query_failed("game leaderboard", error) from error

    if leaderboard is None:
        return None

    entries = sorted(leaderboard.entries, key=lambda entry: entry.rank or 0)
    return {
        "id": leaderboard.id,
        "game_id": leaderboard.game_id,
        "type": leaderboard.type,
        "created_at": leaderboard.created_at.isoformat(),
        "entries": [_entry_to_dict(entry) for entry in entries],
    }


def get_top_players(game_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    leaderboard = get_game_leaderboard(game_id)
    if not leaderboard:
        return []
    return leaderboard["entries"][: max(0, limit)]


def get_player_rank(game_id: int, player_id: int) -> Dict[str, Any] | None:
    leaderboard = get_game_leaderboard(game_id)
    if not leaderboard:
        return None
    for entry in leaderboard["entries"]:
        if entry["player"] and entry["player"]["id"] == player_id:
            return {
                "rank": entry["rank"],
                "score": entry["score"],
                "achieved_at": entry["achieved_at"],
                "total_players": len(leaderboard["entries"]),
            }
    return None


def get_leaderboard_stats(game_id: int) -> Dict[str, Any]:
    leaderboard = get_game_leaderboard(game_id)
    scores = [float(entry["score"] or 0) for entry in (leaderboard or {}).get("entries", [])]
    return {
        "total_players": len(scores),
        "highest_score": max(scores) if scores else 0,
        "average_score": round(safe_ratio(sum(scores), len(scores))),
    }


ACHIEVEMENT_SORT_FIELDS = ("name", "points", "rarity")


def _achievement_sort_key(sort_by: str):
    if sort_by == "name":
        return lambda item: item["name"].lower()
    if sort_by == "points":
        return lambda item: item["points"]
    return lambda item: RARITY_ORDER.get(item["rarity"], 0)


def get_player_achievements(
    player_id: int,
    *,
    search: str | None = None,
    rarity: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "desc",
) -> Dict[str, Any]:
    """Split the achievement catalogue into unlocked and locked for a player.

    Locked achievements report ``progress`` as 0: unlock criteria are free-form
    JSON and no progress is tracked against them.
    """

    if sort_by and sort_by not in ACHIEVEMENT_SORT_FIELDS:
        raise ValueError(f"Sort achievements by one of {', '.join(ACHIEVEMENT_SORT_FIELDS)}.")

    try:
        catalogue = Achievement.query.order_by(Achievement.points.desc(), Achievement.id).all()
        unlocks = {
            unlock.achievement_id: unlock
            for unlock in PlayerAchievement.query.filter_by(player_id=player_id)
        }
    except SQLAlchemyError as error:
        raise _query_failed("player achievements", error) from error

    unlocked: list[dict[str, Any]] = []
    locked: list[dict[str, Any]] = []
    total_points = 0
    for achievement in catalogue:
        item = {
            "id": achievement.id,
            "game_id": achievement.game_id,
            "name": achievement.name,
            "description": achievement.description or "",
            "points": achievement.points or 0,
            "rarity": determine_rarity(achievement.points),
        }
        unlock = unlocks.get(achievement.id)
        if unlock is not None:
            item["unlocked_at"] = unlock.unlocked_at.isoformat()
            unlocked.append(item)
            total_points += item["points"]
        else:
            item["progress"] = 0
            locked.append(item)

    completion = completion_rate(len(unlocked), len(catalogue))

    def _filter(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if search:
            needle = search.lower()
            items = [
                item
                for item in items
                if needle in item["name"].lower() or needle in item["description"].lower()
            ]
        if rarity:
            items = [item for item in items if item["rarity"] == rarity]
        if sort_by:
            items = sorted(items, key=_achievement_sort_key(sort_by), reverse=sort_order != "asc")
        return items

    return {
        "unlocked": _filter(unlocked),
        "locked": _filter(locked),
        "total_points": total_points,
        "completion_percentage": completion,
    }


def get_player_stats(player_id: int, *, now: datetime | None = None) -> Dict[str, Any]:
    now = now or utcnow()
    week_start = now - timedelta(days=7)
    month_start = now - timedelta(days=30)

    try:
        player = db.session.get(Player, player_id)
        if player is None:
            raise LookupError(f"Player {player_id} does not exist.")
        sessions = (
            GameSession.query.options(joinedload(GameSession.game))
            .filter(GameSession.player_id == player_id)
            .order_by(GameSession.start_time.desc())
            .all()
        )
        unlocked_count = PlayerAchievement.query.filter_by(player_id=player_id).count()
        catalogue_size = Achievement.query.count()
    except SQLAlchemyError as error:
        raise _query_failed("player stats", error) from error

    total_hours = 0.0
    week_hours = 0.0
    month_hours = 0.0
    closed_sessions: list[dict[str, Any]] = []
    for session in sessions:
        if session.start_time is None or session.end_time is None:
            continue
        hours = session_duration_hours(session)
        total_hours += hours
        if session.start_time >= week_start:
            week_hours += hours
        if session.start_time >= month_start:
            month_hours += hours
        closed_sessions.append(
            {
                "id": session.id,
                "game_title": session.game.title if session.game else "Unknown Game",
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat(),
                "duration_hours": hours,
            }
        )

    return {
        "performance": {
            "total_score": player.total_score or 0,
            "games_played": len({session.game_id for session in sessions}),
            "achievements_unlocked": unlocked_count,
            "achievements_total": catalogue_size,
            "achievement_completion_rate": completion_rate(unlocked_count, catalogue_size),
        },
        "time": {
            "total_playtime_hours": total_hours,
            "avg_session_duration": safe_ratio(total_hours, len(sessions)),
            "this_week_hours": week_hours,
            "this_month_hours": month_hours,
        },
        "sessions": closed_sessions[:RECENT_SESSION_LIMIT],
    }


def get_player_dashboard(player_id: int, *, now: datetime | None = None) -> Dict[str, Any]:
    """Player card, headline numbers, latest unlocks and recently played games.

    Recent games only count finished sessions and are ordered by when the
    player last stopped playing them.
    """

    now = now or utcnow()
    try:
        player = (
            Player.query.options(joinedload(Player.profile))
            .filter(Player.id == player_id)
            .first()
        )
        if player is None:
            raise LookupError(f"Player {player_id} does not exist.")
        sessions = (
            GameSession.query.options(joinedload(GameSession.game))
            .filter(GameSession.player_id == player_id)
            .order_by(GameSession.start_time.desc())
            .all()
        )
        unlocked_count = PlayerAchievement.query.filter_by(player_id=player_id).count()
        recent_unlocks = (
            PlayerAchievement.query.options(joinedload(PlayerAchievement.achievement))
            .filter(PlayerAchievement.player_id == player_id)
            .order_by(PlayerAchievement.unlocked_at.desc())
            .limit(RECENT_UNLOCK_LIMIT)
            .all()
        )
    except SQLAlchemyError as error:
        raise _query_failed("player dashboard", error) from error

    played: dict[int, dict[str, Any]] = {}
    total_hours = 0.0
    for session in sessions:
        if session.start_time is None or session.end_time is None:
            continue
        hours = session_duration_hours(session)
        total_hours += hours
        game = played.setdefault(
            session.game_id,
            {
                "id": session.game_id,
                "title": session.game.title if session.game else "Unknown Game",
                "last_played_at": session.end_time,
                "playtime_hours": 0.0,
            },
        )
        game["playtime_hours"] += hours
        game["last_played_at"] = max(game["last_played_at"], session.end_time)

    recent_games = sorted(played.values(), key=lambda game: game["last_played_at"], reverse=True)
    recent_games = recent_games[:RECENT_GAME_LIMIT]
    for game in recent_games:
        game["last_played"] = format_relative_time(game["last_played_at"], now=now)
        game["last_played_at"] = game["last_played_at"].isoformat()

    profile = player.profile
    return {
        "player": {
            "id": player.id,
            "username": player.username,
            "email": player.email,
            "country": player.country or "Unknown",
            "level": player.level or 0,
            "total_score": player.total_score or 0,
            "avatar_url": profile.avatar_url if profile is not None else None,
        },
        "stats": {
            "games_played": len({session.game_id for session in sessions}),
            "total_playtime_hours": total_hours,
            "total_sessions": len(sessions),
            "achievements_unlocked": unlocked_count,
        },
        "recent_achievements": [
            {
                "id": unlock.achievement_id,
                "name": unlock.achievement.name if unlock.achievement else "Achievement",
                "description": (unlock.achievement.description if unlock.achievement else None) or "",
                "unlocked": format_relative_time(unlock.unlocked_at, now=now),
            }
            for unlock in recent_unlocks
        ],
        "recent_games": recent_games,
    }


def get_game_achievements(game_id: int, player_id: int | None = None) -> List[Dict[str, Any]]:
    """List a game's achievements, highest points first, flagged for ``player_id``."""

    try:
        achievements = (
            Achievement.query.filter(Achievement.game_id == game_id)
            .order_by(Achievement.points.desc(), Achievement.id)
            .all()
        )
        unlocked_at = {}
        if player_id is not None:
            unlocked_at = {
                unlock.achievement_id: unlock.unlocked_at
                for unlock in PlayerAchievement.query.filter_by(player_id=player_id)
            }
    except SQLAlchemyError as error:
        raise _query_failed("game achievements", error) from error

    items = []
    for achievement in achievements:
        item = achievement.to_dict()
        item["rarity"] = determine_rarity(achievement.points)
        item["is_unlocked"] = achievement.id in unlocked_at
        item["unlocked_at"] = (
            unlocked_at[achievement.id].isoformat() if achievement.id in unlocked_at else None
        )
        items.append(item)
    return items


def summarize_game_achievements(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    unlocked = sum(1 for item in items if item["is_unlocked"])
    return {
        "total": len(items),
        "unlocked": unlocked,
        "locked": len(items) - unlocked,
        "percentage": round(completion_rate(unlocked, len(items))),
    }


def get_game_achievement_stats(game_id: int, player_id: int) -> Dict[str, Any]:
    return summarize_game_achievements(get_game_achievements(game_id, player_id))


def get_game_details(game_id: int) -> Dict[str, Any]:
    """A game with its developer and the readable parts of its metadata."""

    try:
        game = (
            Game.query.options(joinedload(Game.developer))
            .filter(Game.id == game_id)
            .first()
        )
    except SQLAlchemyError as error:
        raise _query_failed("game details", error) from error
    if game is None:
        raise LookupError(f"Game {game_id} does not exist.")

    meta = parse_game_metadata(game.metadata_json, source=f"games.id={game.id}")
    payload = game.to_dict()
    payload["developer"] = game.developer.to_dict() if game.developer is not None else None
    payload["details"] = (
        {
            "average_rating": meta.average_rating,
            "total_reviews": meta.total_reviews,
            "tags": list(meta.tags),
            "languages": list(meta.languages),
            "content_rating": meta.content_rating,
            "early_access": meta.early_access,
            "minimum_requirements": extract_json_field(
                game.metadata_json, "system_requirements.minimum"
            ),
            "recommended_requirements": extract_json_field(
                game.metadata_json, "system_requirements.recommended"
            ),
        }
        if meta is not None
        else None
    )
    return payload


def get_developer_details(developer_id: int) -> Dict[str, Any]:
    """A developer, its parsed company profile and its games, newest release first."""

    try:
        developer = db.session.get(Developer, developer_id)
        if developer is None:
            raise LookupError(f"Developer {developer_id} does not exist.")
        games = (
            Game.query.filter(Game.developer_id == developer_id)
            .order_by(Game.release_date.desc(), Game.title)
            .all()
        )
    except SQLAlchemyError as error:
        raise _query_failed("developer details", error) from error

    meta = parse_developer_metadata(
        developer.metadata_json, source=f"developers.id={developer.id}"
    )
    payload = developer.to_dict()
    payload["profile"] = (
        {
            "company_size": meta.company_size,
            "founded_year": meta.founded_year,
            "headquarters": meta.headquarters,
            "specialties": list(meta.specialties),
            "awards": list(meta.awards),
            "social_links": dict(meta.social_links),
        }
        if meta is not None
        else None
    )
    payload["games"] = [game.to_dict() for game in games]
    return payload


def get_recent_sessions(limit: int = 10) -> List[Dict[str, Any]]:
    try:
        sessions = (
            GameSession.query.options(
                joinedload(GameSession.player),
                joinedload(GameSession.game),
            )
            .order_by(GameSession.start_time.desc(), GameSession.id.desc())
            .limit(max(0, limit))
            .all()
        )
    except SQLAlchemyError as error:
        raise _query_failed("recent sessions", error) from error

    items = []
    for session in sessions:
        item = session.to_dict()
        item["duration_hours"] = session_duration_hours(session)
        item["player"] = (
            {"id": session.player.id, "username": session.player.username}
            if session.player is not None
            else None
        )
        item["game"] = (
            {"id": session.game.id, "title": session.game.title}
            if session.game is not None
            else None
        )
        items.append(item)
    return items
