"""CSV and PDF serialisation of flat report records.

Both exporters build the whole artifact in memory and only hand back bytes once
it is complete. Any failure is logged and re-raised as :class:`ExportError`.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure


logger = logging.getLogger(__name__)

A4_LANDSCAPE_INCHES = (11.69, 8.27)
HEADER_FILL = "#2980b9"
ALTERNATE_ROW_FILL = "#f5f5f5"
ROWS_PER_PAGE = 24
MAX_CELL_CHARS = 48


class ExportError(RuntimeError):
    """Raised when a report could not be serialised."""


def format_header_name(key: str) -> str:
    """Turn ``snake_case`` or ``camelCase`` keys into Title Case labels."""

    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", key.replace("_", " "))
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def format_cell_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple, set)):
        return ", ".join(format_cell_value(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.2f}"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _resolve_columns(
    records: Sequence[Mapping[str, Any]],
    headers: Sequence[str] | None,
    column_mapping: Mapping[str, str] | None,
) -> tuple[list[str], list[str]]:
    """Return the record keys to read and the labels to print for them."""

    if column_mapping:
        keys = list(column_mapping)
        return keys, [column_mapping[key] for key in keys]

    if headers:
        keys = list(headers)
    else:
        keys = []
        seen: set[str] = set()
        for record in records:
            for key in record:
                if key not in seen:
                    seen.add(key)
                    keys.append(key)
    return keys, keys


def flatten_records(
    records: Iterable[Mapping[str, Any]],
    keys: Sequence[str],
) -> List[List[str]]:
    return [[format_cell_value(record.get(key)) for key in keys] for record in records]


def export_csv(
    records: Sequence[Mapping[str, Any]],
    *,
    headers: Sequence[str] | None = None,
    column_mapping: Mapping[str, str] | None = None,
) -> bytes:
    """Serialise ``records`` as a UTF-8 CSV document with a header row."""

    try:
        keys, labels = _resolve_columns(records, headers, column_mapping)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(labels)
        writer.writerows(flatten_records(records, keys))
        return buffer.getvalue().encode("utf-8")
    except Exception as error:
        logger.exception("Error exporting CSV")
        raise ExportError(f"Failed to export CSV: {error}") from error


def _clip(text: str) -> str:
    if len(text) <= MAX_CELL_CHARS:
        return text
    return text[: MAX_CELL_CHARS - 1] + "…"


def _paginate(rows: List[List[str]], first_page_rows: int) -> List[List[List[str]]]:
    pages = [rows[:first_page_rows]]
    remaining = rows[first_page_rows:]
    while remaining:
        pages.append(remaining[:ROWS_PER_PAGE])
        remaining = remaining[ROWS_PER_PAGE:]
    return pages


def _draw_table(fig: Figure, labels: List[str], rows: List[List[str]], top: float) -> None:
    ax = fig.add_axes([0.04, 0.06, 0.92, max(0.1, top - 0.06)])
    ax.axis("off")
    if not labels:
        ax.text(0.0, 1.0, "No rows to display.", fontsize=9, va="top")
        return

    table = ax.table(
        cellText=[[_clip(cell) for cell in row] for row in rows] or [[""] * len(labels)],
        colLabels=labels,
        loc="upper center",
        cellLoc="left",
    )
    table.auto_set_font_size(False)
    table.set_fontsize(7)
    table.scale(1, 1.3)
    for (row_index, _), cell in table.get_celld().items():
        cell.set_edgecolor("#c8c8c8")
        cell.get_text().set_parse_math(False)
        if row_index == 0:
            cell.set_facecolor(HEADER_FILL)
            cell.get_text().set_color("white")
            cell.get_text().set_fontweight("bold")
        elif row_index % 2 == 0:
            cell.set_facecolor(ALTERNATE_ROW_FILL)


def export_pdf(
    records: Sequence[Mapping[str, Any]],
    title: str,
    *,
    column_mapping: Mapping[str, str] | None = None,
    summary: Mapping[str, Any] | None = None,
    generated_at: datetime | None = None,
) -> bytes:
    """Render ``records`` as a paginated landscape A4 table.

    Headers come from ``column_mapping`` when given, otherwise from the record
    keys converted to Title Case. ``summary`` adds a block of key/value
    statistics on the first page, above the table.
    """

    try:
        keys, labels = _resolve_columns(records, None, column_mapping)
        if not column_mapping:
            labels = [format_header_name(key) for key in keys]
        rows = flatten_records(records, keys)
        generated_at = generated_at or datetime.now()
        summary_items = list((summary or {}).items())

        # Each summary line, plus its heading, displaces one table row.
        reserved = len(summary_items) + 2 if summary_items else 0
        first_page_rows = max(1, ROWS_PER_PAGE - reserved)
        pages = _paginate(rows, first_page_rows)

        buffer = io.BytesIO()
        with PdfPages(buffer) as pdf:
            info = pdf.infodict()
            info["Title"] = title
            for page_number, page_rows in enumerate(pages, start=1):
                fig = Figure(figsize=A4_LANDSCAPE_INCHES)
                fig.text(0.04, 0.95, title, fontsize=16, fontweight="bold", va="top", parse_math=False)
                fig.text(
                    0.04,
                    0.905,
                    f"Generated: {generated_at:%Y-%m-%d %H:%M:%S}",
                    fontsize=8,
                    color="grey",
                    va="top",
                )
                top = 0.88
                if page_number == 1 and summary_items:
                    fig.text(
                        0.04, top, "Summary Statistics", fontsize=10, fontweight="bold", va="top"
                    )
                    top -= 0.03
                    for key, value in summary_items:
                        fig.text(
                            0.04,
                            top,
                            f"{format_header_name(str(key))}: {format_cell_value(value)}",
                            fontsize=8,
                            va="top",
                            parse_math=False,
                        )
                        top -= 0.022
                    top -= 0.01
                _draw_table(fig, labels, page_rows, top)
                fig.text(
                    0.96,
                    0.02,
                    f"Page {page_number} of {len(pages)}",
                    fontsize=7,
                    color="grey",
                    ha="right",
                )
                pdf.savefig(fig)
        return buffer.getvalue()
    except Exception as error:
        logger.exception("Error exporting PDF")
        raise ExportError(f"Failed to export PDF: {error}") from error


def _slugify(title: str) -> str:
    slug = re.sub(r"\s+", "-", title.strip().lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-{2,}", "-", slug).strip("-") or "export"


def build_export_filename(
    title: str,
    extension: str,
    *,
    sort: Dict[str, str] | None = None,
    today: date | None = None,
) -> str:
    """Return ``<slug>-<YYYY-MM-DD>[-sorted-<field>-<dir>].<ext>``."""

    today = today or date.today()
    name = f"{_slugify(title)}-{today:%Y-%m-%d}"
    if sort and sort.get("field"):
        name += f"-sorted-{sort['field']}-{sort.get('direction') or 'desc'}"
    return f"{name}.{extension.lstrip('.')}"
