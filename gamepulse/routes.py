from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from flask import Blueprint, Response, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .cache import make_cache_key
from .dashboard import (
    get_admin_metrics,
    get_developer_details,
    get_game_achievements,
    get_game_details,
    get_game_leaderboard,
    get_leaderboard_stats,
    get_player_achievements,
    get_player_dashboard,
    get_player_rank,
    get_player_stats,
    get_recent_activity,
    get_recent_sessions,
    get_top_players,
    summarize_game_achievements,
)
from .domains import COUNTRIES, GAME_GENRES, PAYMENT_METHODS, iter_domains
from .exports import ExportError, build_export_filename, export_csv, export_pdf
from .models import (
    Achievement,
    Developer,
    Game,
    GameSession,
    Player,
    PlayerAchievement,
    PlayerProfile,
    Purchase,
)
from .reports import (
    REPORTS,
    ReportDefinition,
    ReportQueryError,
    active_players,
    at_risk_players,
    get_report_definition,
    top_developers,
)
from .sorting import normalize_direction, sort_report_rows

bp = Blueprint("core", __name__)

logger = logging.getLogger(__name__)


def _report_cache():
    return current_app.extensions["report_cache"]


def _invalidate_reports() -> None:
    _report_cache().invalidate()


def _commit(action: str):
    """Commit the session, returning an error response on failure."""

    try:
        db.session.commit()
    except SQLAlchemyError as error:
        db.session.rollback()
        logger.exception("Failed to %s", action, exc_info=error)
        return jsonify({"error": f"Failed to {action}."}), 500
    _invalidate_reports()
    return None


def _text(payload: dict, key: str) -> str | None:
    return (str(payload.get(key) or "")).strip() or None


def _parse_date_field(value: Any, label: str) -> date | None:
    value = (str(value or "")).strip()
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{label} must be a valid date in YYYY-MM-DD format.") from exc


def _parse_datetime_field(value: Any, label: str) -> datetime | None:
    value = (str(value or "")).strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"{label} must be an ISO 8601 timestamp.") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_number(value: Any, label: str, *, minimum: float | None = 0, integer: bool = False):
    if value in (None, ""):
        return None
    try:
        number = int(value) if integer else float(value)
    except (TypeError, ValueError) as exc:
        kind = "a whole number" if integer else "a number"
        raise ValueError(f"{label} must be {kind}.") from exc
    if minimum is not None and number < minimum:
        raise ValueError(f"{label} must be at least {minimum}.")
    return number


def _parse_document(value: Any, label: str) -> dict | None:
    if value in (None, ""):
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{label} must be a JSON object.")
    return value


def _parse_reference(value: Any, model, label: str, *, required: bool = False):
    if value in (None, ""):
        if required:
            raise ValueError(f"{label} is required.")
        return None
    try:
        identifier = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {label.lower()}.") from exc
    if db.session.get(model, identifier) is None:
        raise ValueError(f"{label} {identifier} does not exist.")
    return identifier


def _apply_fields(target, payload: dict, parsers: dict[str, Callable[[Any], Any]], partial: bool) -> None:
    for attribute, parse in parsers.items():
        key = "metadata" if attribute == "metadata_json" else attribute
        if partial and key not in payload:
            continue
        setattr(target, attribute, parse(payload.get(key)))


def _apply_game_payload(game: Game, payload: dict, partial: bool) -> None:
    if not partial or "title" in payload:
        title = _text(payload, "title")
        if not title:
            raise ValueError("Title is required.")
        duplicate = Game.query.filter(Game.title == title, Game.id != game.id).first()
        if duplicate:
            raise ValueError("Game with this title already exists.")
        game.title = title

    _apply_fields(
        game,
        payload,
        {
            "genre": GAME_GENRES.validate,
            "price": lambda value: _parse_number(value, "Price"),
            "release_date": lambda value: _parse_date_field(value, "Release date"),
            "cover_image_url": lambda value: (str(value or "").strip() or None),
            "metadata_json": lambda value: _parse_document(value, "Metadata"),
            "developer_id": lambda value: _parse_reference(value, Developer, "Developer"),
        },
        partial,
    )


def _apply_player_payload(player: Player, payload: dict, partial: bool) -> None:
    if not partial or "username" in payload:
        username = _text(payload, "username")
        if not username:
            raise ValueError("Username is required.")
        duplicate = Player.query.filter(Player.username == username, Player.id != player.id).first()
        if duplicate:
            raise ValueError("Player with this username already exists.")
        player.username = username

    if not partial or "email" in payload:
        email = _text(payload, "email")
        if not email or "@" not in email:
            raise ValueError("A valid email is required.")
        player.email = email

    _apply_fields(
        player,
        payload,
        {
            "country": COUNTRIES.validate,
            "level": lambda value: _parse_number(value, "Level", minimum=1, integer=True) or 1,
            "total_score": lambda value: _parse_number(value, "Total score", integer=True) or 0,
        },
        partial,
    )

    profile_payload = payload.get("profile")
    if profile_payload is None:
        return
    if not isinstance(profile_payload, dict):
        raise ValueError("Profile must be a JSON object.")
    profile = player.profile or PlayerProfile()
    _apply_fields(
        profile,
        profile_payload,
        {
            "bio": lambda value: (str(value or "").strip() or None),
            "avatar_url": lambda value: (str(value or "").strip() or None),
            "settings": lambda value: _parse_document(value, "Settings"),
        },
        partial=True,
    )
    player.profile = profile


def _apply_developer_payload(developer: Developer, payload: dict, partial: bool) -> None:
    if not partial or "name" in payload:
        name = _text(payload, "name")
        if not name:
            raise ValueError("Name is required.")
        duplicate = Developer.query.filter(Developer.name == name, Developer.id != developer.id).first()
        if duplicate:
            raise ValueError("Developer with this name already exists.")
        developer.name = name

    _apply_fields(
        developer,
        payload,
        {
            "email": lambda value: (str(value or "").strip() or None),
            "logo_url": lambda value: (str(value or "").strip() or None),
            "metadata_json": lambda value: _parse_document(value, "Metadata"),
        },
        partial,
    )


def _apply_achievement_payload(achievement: Achievement, payload: dict, partial: bool) -> None:
    if not partial or "name" in payload:
        name = _text(payload, "name")
        if not name:
            raise ValueError("Name is required.")
        achievement.name = name

    if not partial or "game_id" in payload:
        achievement.game_id = _parse_reference(payload.get("game_id"), Game, "Game", required=True)

    _apply_fields(
        achievement,
        payload,
        {
            "description": lambda value: (str(value or "").strip() or None),
            "points": lambda value: _parse_number(value, "Points", integer=True) or 0,
            "criteria": lambda value: _parse_document(value, "Criteria"),
        },
        partial,
    )


_RESOURCES: dict[str, tuple[type, Callable[[Any, dict, bool], None], Callable[[Any], Any]]] = {
    "games": (Game, _apply_game_payload, lambda query: query.order_by(Game.title.asc())),
    "players": (
        Player,
        _apply_player_payload,
        lambda query: query.order_by(Player.total_score.desc(), Player.username.asc()),
    ),
    "developers": (Developer, _apply_developer_payload, lambda query: query.order_by(Developer.name.asc())),
    "achievements": (
        Achievement,
        _apply_achievement_payload,
        lambda query: query.order_by(Achievement.points.desc(), Achievement.name.asc()),
    ),
}


_DETAIL_VIEWS: dict[str, Callable[[int], dict]] = {
    "games": get_game_details,
    "developers": get_developer_details,
}


def _serialize(instance) -> dict:
    if isinstance(instance, Player):
        return instance.to_dict(include_profile=True)
    return instance.to_dict()


@bp.route("/api/<any(games, players, developers, achievements):collection>", methods=["GET", "POST"])
def resource_collection(collection: str):
    model, apply_payload, ordering = _RESOURCES[collection]

    if request.method == "POST":
        payload = request.get_json(force=True) or {}
        instance = model()
        try:
            apply_payload(instance, payload, False)
        except ValueError as exc:
            db.session.rollback()
            return jsonify({"error": str(exc)}), 400

        db.session.add(instance)
        failure = _commit(f"create {collection[:-1]}")
        if failure:
            return failure
        return jsonify(_serialize(instance)), 201

    instances = ordering(model.query).all()
    return jsonify([_serialize(instance) for instance in instances])


@bp.route(
    "/api/<any(games, players, developers, achievements):collection>/<int:item_id>",
    methods=["GET", "PUT", "DELETE"],
)
def resource_item(collection: str, item_id: int):
    model, apply_payload, _ = _RESOURCES[collection]
    instance = db.get_or_404(model, item_id)

    if request.method == "GET":
        detail = _DETAIL_VIEWS.get(collection)
        if detail is None:
            return jsonify(_serialize(instance))
        try:
            return jsonify(detail(item_id))
        except ReportQueryError as exc:
            return jsonify({"error": str(exc)}), 502

    if request.method == "DELETE":
        db.session.delete(instance)
        failure = _commit(f"delete {collection[:-1]}")
        if failure:
            return failure
        return jsonify({"message": f"{collection[:-1].capitalize()} deleted."})

    payload = request.get_json(force=True) or {}
    try:
        apply_payload(instance, payload, True)
    except ValueError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400

    failure = _commit(f"update {collection[:-1]}")
    if failure:
        return failure
    return jsonify(_serialize(instance))


@bp.route("/api/sessions", methods=["GET", "POST"])
def sessions_collection():
    if request.method == "POST":
        payload = request.get_json(force=True) or {}
        try:
            session = GameSession(
                player_id=_parse_reference(payload.get("player_id"), Player, "Player", required=True),
                game_id=_parse_reference(payload.get("game_id"), Game, "Game", required=True),
                start_time=_parse_datetime_field(payload.get("start_time"), "Start time"),
                end_time=_parse_datetime_field(payload.get("end_time"), "End time"),
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        if session.start_time and session.end_time and session.end_time < session.start_time:
            return jsonify({"error": "End time must not be before start time."}), 400

        db.session.add(session)
        failure = _commit("create session")
        if failure:
            return failure
        return jsonify(session.to_dict()), 201

    sessions = GameSession.query.order_by(GameSession.start_time.desc()).all()
    return jsonify([session.to_dict() for session in sessions])


@bp.route("/api/sessions/recent")
def recent_sessions():
    try:
        limit = int(request.args.get("limit", 10))
    except ValueError:
        return jsonify({"error": "Limit must be a whole number."}), 400
    try:
        return jsonify(get_recent_sessions(limit=limit))
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502


@bp.route("/api/purchases", methods=["GET", "POST"])
def purchases_collection():
    if request.method == "POST":
        payload = request.get_json(force=True) or {}
        try:
            purchase = Purchase(
                player_id=_parse_reference(payload.get("player_id"), Player, "Player", required=True),
                game_id=_parse_reference(payload.get("game_id"), Game, "Game", required=True),
                amount=_parse_number(payload.get("amount"), "Amount"),
                payment_method=PAYMENT_METHODS.validate(payload.get("payment_method")),
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        db.session.add(purchase)
        failure = _commit("create purchase")
        if failure:
            return failure
        return jsonify(purchase.to_dict()), 201

    purchases = Purchase.query.order_by(Purchase.created_at.desc()).all()
    return jsonify([purchase.to_dict() for purchase in purchases])


@bp.route("/api/players/<int:player_id>/achievements", methods=["GET", "POST"])
def player_achievements(player_id: int):
    db.get_or_404(Player, player_id)

    if request.method == "POST":
        payload = request.get_json(force=True) or {}
        try:
            achievement_id = _parse_reference(
                payload.get("achievement_id"), Achievement, "Achievement", required=True
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        existing = PlayerAchievement.query.filter_by(
            player_id=player_id, achievement_id=achievement_id
        ).first()
        if existing:
            return jsonify({"error": "Achievement already unlocked."}), 400

        db.session.add(PlayerAchievement(player_id=player_id, achievement_id=achievement_id))
        failure = _commit("unlock achievement")
        if failure:
            return failure
        return jsonify({"message": "Achievement unlocked."}), 201

    try:
        data = get_player_achievements(
            player_id,
            search=request.args.get("search"),
            rarity=request.args.get("rarity"),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order", "desc"),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502
    return jsonify(data)


@bp.route("/api/domains")
def enum_domains():
    return jsonify({domain.name: list(domain.values) for domain in iter_domains()})


def _load_report(definition: ReportDefinition, args) -> list[dict]:
    filters = definition.filters.from_args(args)
    key = make_cache_key(definition.slug, filters)
    return _report_cache().fetch(key, lambda: definition.fetch(filters))


def _resolve_sort(definition: ReportDefinition, args) -> dict[str, str] | None:
    field = (args.get("sort") or args.get("sort_field") or "").strip()
    if not field:
        return None
    if field not in definition.sort_fields:
        allowed = ", ".join(definition.sort_fields)
        raise ValueError(f"Sort field must be one of {allowed}.")
    direction = normalize_direction(args.get("direction") or args.get("sort_direction"))
    return {"field": field, "direction": direction}


def _with_report(slug: str, handler: Callable[[ReportDefinition, list[dict], dict | None], Any]):
    try:
        definition = get_report_definition(slug)
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404

    try:
        sort = _resolve_sort(definition, request.args)
        rows = _load_report(definition, request.args)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502

    if sort:
        rows = sort_report_rows(rows, sort["field"], sort["direction"])
    return handler(definition, rows, sort)


@bp.route("/api/reports")
def list_reports():
    return jsonify(
        [
            {
                "slug": definition.slug,
                "title": definition.title,
                "sort_fields": list(definition.sort_fields),
                "default_sort": definition.default_sort,
            }
            for definition in REPORTS.values()
        ]
    )


@bp.route("/api/reports/<slug>")
def report_rows(slug: str):
    return _with_report(slug, lambda definition, rows, sort: jsonify(rows))


@bp.route("/api/reports/<slug>/summary")
def report_summary(slug: str):
    def _summary(definition: ReportDefinition, rows: list[dict], sort):
        payload: dict[str, Any] = {"summary": definition.summarize(rows)}
        if slug == "developer-success":
            by = request.args.get("top_by", "revenue")
            try:
                payload["top_developers"] = top_developers(rows, limit=10, by=by)
            except ValueError as exc:
                return jsonify({"error": str(exc)}), 400
        elif slug == "player-engagement":
            payload["active_players"] = len(active_players(rows))
            payload["at_risk_players"] = len(at_risk_players(rows))
        return jsonify(payload)

    return _with_report(slug, _summary)


def _download(content: bytes, filename: str, mimetype: str) -> Response:
    response = Response(content, mimetype=mimetype)
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@bp.route("/api/reports/<slug>/export.<any(csv, pdf):fmt>")
def export_report(slug: str, fmt: str):
    def _export(definition: ReportDefinition, rows: list[dict], sort):
        filename = build_export_filename(definition.title, fmt, sort=sort)
        try:
            if fmt == "csv":
                content = export_csv(rows, column_mapping=definition.columns)
                return _download(content, filename, "text/csv; charset=utf-8")
            content = export_pdf(
                rows,
                definition.title,
                column_mapping=definition.columns,
                summary=definition.summarize(rows) if request.args.get("summary") else None,
            )
        except ExportError as exc:
            return jsonify({"error": str(exc)}), 500
        return _download(content, filename, "application/pdf")

    return _with_report(slug, _export)


@bp.route("/api/reports/cache/invalidate", methods=["POST"])
def invalidate_report_cache():
    payload = request.get_json(silent=True) or {}
    report = payload.get("report")
    if report is not None and report not in REPORTS:
        return jsonify({"error": f"Unknown report '{report}'."}), 404
    removed = _report_cache().invalidate(report)
    return jsonify({"invalidated": removed})


@bp.route("/api/dashboard/metrics")
def dashboard_metrics():
    try:
        return jsonify(get_admin_metrics())
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502


@bp.route("/api/dashboard/activity")
def dashboard_activity():
    try:
        limit = int(request.args.get("limit", 10))
    except ValueError:
        return jsonify({"error": "Limit must be a whole number."}), 400
    try:
        return jsonify(get_recent_activity(limit=limit))
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502


@bp.route("/api/games/<int:game_id>/leaderboard")
def game_leaderboard(game_id: int):
    db.get_or_404(Game, game_id)
    try:
        limit = int(request.args.get("limit", 10))
    except ValueError:
        return jsonify({"error": "Limit must be a whole number."}), 400

    try:
        payload: dict[str, Any] = {
            "top_players": get_top_players(game_id, limit=limit),
            "stats": get_leaderboard_stats(game_id),
        }
        player_id = request.args.get("player_id", type=int)
        if player_id is not None:
            payload["player_rank"] = get_player_rank(game_id, player_id)
        payload["leaderboard"] = get_game_leaderboard(game_id)
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502
    return jsonify(payload)


@bp.route("/api/players/<int:player_id>/stats")
def player_stats(player_id: int):
    try:
        return jsonify(get_player_stats(player_id))
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502


@bp.route("/api/players/<int:player_id>/dashboard")
def player_dashboard(player_id: int):
    try:
        return jsonify(get_player_dashboard(player_id))
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502


@bp.route("/api/games/<int:game_id>/achievements")
def game_achievements(game_id: int):
    db.get_or_404(Game, game_id)
    player_id = request.args.get("player_id", type=int)
    if player_id is not None:
        db.get_or_404(Player, player_id)

    try:
        achievements = get_game_achievements(game_id, player_id)
    except ReportQueryError as exc:
        return jsonify({"error": str(exc)}), 502
    return jsonify(
        {"achievements": achievements, "stats": summarize_game_achievements(achievements)}
    )
