"""Typed views over the JSON documents stored next to structured rows.

``games.metadata``, ``developers.metadata`` and ``player_profiles.settings``
are schemaless columns. Each ``parse_*`` function validates one document and
returns a frozen dataclass, or ``None`` when the document is missing or has an
unexpected shape. Invalid documents are logged and never raise, so a report row
can still render with the structured columns alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .domains import PRIVACY_VALUES, THEME_VALUES


logger = logging.getLogger(__name__)


class MetadataShapeError(ValueError):
    """Raised internally when a JSON document does not match its expected shape."""


@dataclass(frozen=True)
class GameMetadata:
    average_rating: float | None = None
    total_reviews: int | None = None
    tags: tuple[str, ...] = ()
    screenshots: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    content_rating: str | None = None
    system_requirements: Mapping[str, Any] = field(default_factory=dict)
    reviews_summary: Mapping[str, Any] = field(default_factory=dict)
    dlc_count: int | None = None
    dlc_available: bool | None = None
    early_access: bool | None = None
    peak_concurrent_players: int | None = None
    last_updated: str | None = None


@dataclass(frozen=True)
class DeveloperMetadata:
    company_size: str | None = None
    founded_year: int | None = None
    headquarters: str | None = None
    specialties: tuple[str, ...] = ()
    awards: tuple[str, ...] = ()
    social_links: Mapping[str, str] = field(default_factory=dict)
    employee_count: int | None = None
    annual_revenue: float | None = None


@dataclass(frozen=True)
class PlayerSettings:
    privacy: str | None = None
    theme: str | None = None
    notifications: Mapping[str, bool] = field(default_factory=dict)
    display_preferences: Mapping[str, bool] = field(default_factory=dict)
    language: str | None = None
    timezone: str | None = None

    @property
    def email_notifications(self) -> bool | None:
        return self.notifications.get("email")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional(document: Mapping[str, Any], key: str, check, label: str) -> Any:
    value = document.get(key)
    if value is None:
        return None
    if not check(value):
        raise MetadataShapeError(f"{key} must be {label}")
    return value


def _optional_number(document: Mapping[str, Any], key: str) -> Any:
    return _optional(document, key, _is_number, "a number")


def _optional_string(document: Mapping[str, Any], key: str) -> str | None:
    return _optional(document, key, lambda value: isinstance(value, str), "a string")


def _optional_bool(document: Mapping[str, Any], key: str) -> bool | None:
    return _optional(document, key, lambda value: isinstance(value, bool), "a boolean")


def _string_list(document: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = document.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise MetadataShapeError(f"{key} must be a list")
    return tuple(str(item) for item in value if item is not None)


def _mapping(document: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = document.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MetadataShapeError(f"{key} must be an object")
    return dict(value)


def _build_game_metadata(document: Mapping[str, Any]) -> GameMetadata:
    rating = _optional_number(document, "average_rating")
    if rating is not None and not 0 <= rating <= 5:
        raise MetadataShapeError("average_rating must be between 0 and 5")

    return GameMetadata(
        average_rating=float(rating) if rating is not None else None,
        total_reviews=_optional_number(document, "total_reviews"),
        tags=_string_list(document, "tags"),
        screenshots=_string_list(document, "screenshots"),
        languages=_string_list(document, "languages"),
        content_rating=_optional_string(document, "content_rating"),
        system_requirements=_mapping(document, "system_requirements"),
        reviews_summary=_mapping(document, "reviews_summary"),
        dlc_count=_optional_number(document, "dlc_count"),
        dlc_available=_optional_bool(document, "dlc_available"),
        early_access=_optional_bool(document, "early_access"),
        peak_concurrent_players=_optional_number(document, "peak_concurrent_players"),
        last_updated=_optional_string(document, "last_updated"),
    )


def _build_developer_metadata(document: Mapping[str, Any]) -> DeveloperMetadata:
    founded_year = _optional_number(document, "founded_year")
    return DeveloperMetadata(
        company_size=_optional_string(document, "company_size"),
        founded_year=int(founded_year) if founded_year is not None else None,
        headquarters=_optional_string(document, "headquarters"),
        specialties=_string_list(document, "specialties"),
        awards=_string_list(document, "awards"),
        social_links=_mapping(document, "social_links"),
        employee_count=_optional_number(document, "employee_count"),
        annual_revenue=_optional_number(document, "annual_revenue"),
    )


def _build_player_settings(document: Mapping[str, Any]) -> PlayerSettings:
    privacy = _optional_string(document, "privacy")
    if privacy is not None and privacy not in PRIVACY_VALUES:
        raise MetadataShapeError(f"privacy must be one of {', '.join(PRIVACY_VALUES)}")
    theme = _optional_string(document, "theme")
    if theme is not None and theme not in THEME_VALUES:
        raise MetadataShapeError(f"theme must be one of {', '.join(THEME_VALUES)}")

    return PlayerSettings(
        privacy=privacy,
        theme=theme,
        notifications=_mapping(document, "notifications"),
        display_preferences=_mapping(document, "display_preferences"),
        language=_optional_string(document, "language"),
        timezone=_optional_string(document, "timezone"),
    )


def _parse(document: Any, builder, kind: str, source: str | None):
    if document is None:
        return None
    if not isinstance(document, dict):
        logger.warning(
            "Ignoring %s on %s: expected an object, got %s",
            kind,
            source or "row",
            type(document).__name__,
        )
        return None
    try:
        return builder(document)
    except MetadataShapeError as error:
        logger.warning("Ignoring %s on %s: %s", kind, source or "row", error)
        return None


def parse_game_metadata(document: Any, *, source: str | None = None) -> GameMetadata | None:
    return _parse(document, _build_game_metadata, "game metadata", source)


def parse_developer_metadata(
    document: Any, *, source: str | None = None
) -> DeveloperMetadata | None:
    return _parse(document, _build_developer_metadata, "developer metadata", source)


def parse_player_settings(
    document: Any, *, source: str | None = None
) -> PlayerSettings | None:
    return _parse(document, _build_player_settings, "player settings", source)


def extract_json_field(document: Any, path: str) -> Any:
    """Walk a dotted ``path`` through nested objects, returning ``None`` on a miss."""

    current = document
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def json_array_contains(values: Any, value: str) -> bool:
    if not isinstance(values, (list, tuple)):
        return False
    return value in values
