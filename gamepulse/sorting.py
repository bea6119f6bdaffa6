from __future__ import annotations

from typing import Any, Mapping, Sequence, TypeVar

Row = TypeVar("Row", bound=Mapping[str, Any])

SORT_DIRECTIONS = ("asc", "desc")


def normalize_direction(direction: str | None, default: str = "desc") -> str:
    value = (direction or default).strip().lower()
    if value not in SORT_DIRECTIONS:
        raise ValueError("Sort direction must be asc or desc.")
    return value


def _sort_key(value: Any) -> Any:
    # List-valued columns (tags, specialties) order by how many items they hold.
    if isinstance(value, (list, tuple, set)):
        return len(value)
    return value


def sort_report_rows(
    rows: Sequence[Row],
    field: str | None = None,
    direction: str | None = "desc",
) -> list[Row]:
    """Return ``rows`` ordered by ``field`` without touching the input.

    Rows where ``field`` is missing or ``None`` always come last, whichever
    direction is requested. Ties keep their original relative order.
    """

    if not field:
        return list(rows)
    direction = normalize_direction(direction)

    present = [row for row in rows if row.get(field) is not None]
    missing = [row for row in rows if row.get(field) is None]

    present.sort(
        key=lambda row: _sort_key(row[field]),
        reverse=direction == "desc",
    )
    return present + missing
