import csv
import io
from datetime import date, datetime

import pytest
from matplotlib.text import Text

from gamepulse.exports import (
    ExportError,
    build_export_filename,
    export_csv,
    export_pdf,
    format_cell_value,
    format_header_name,
)


RECORDS = [
    {
        "game_title": "Frost Saga",
        "total_revenue": 100.0,
        "average_rating": 4.456,
        "early_access": False,
        "tags": ["fantasy", "open-world"],
        "requirements": {"ram": "8GB"},
    },
    {
        "game_title": 'Kart "Mayhem", Deluxe',
        "total_revenue": 9.99,
        "average_rating": None,
        "early_access": True,
        "tags": [],
        "requirements": None,
    },
]


def _read_csv(payload: bytes):
    return list(csv.reader(io.StringIO(payload.decode("utf-8"))))


def test_csv_has_header_plus_one_line_per_record():
    rows = _read_csv(export_csv(RECORDS))

    assert len(rows) == len(RECORDS) + 1
    assert rows[0] == [
        "game_title",
        "total_revenue",
        "average_rating",
        "early_access",
        "tags",
        "requirements",
    ]
    assert all(len(row) == 6 for row in rows)


def test_csv_cells_are_quoted_and_formatted():
    rows = _read_csv(export_csv(RECORDS))

    assert rows[1] == ["Frost Saga", "100", "4.46", "No", "fantasy, open-world", '{"ram": "8GB"}']
    assert rows[2] == ['Kart "Mayhem", Deluxe', "9.99", "", "Yes", "", ""]


def test_csv_column_mapping_selects_and_renames_columns():
    rows = _read_csv(
        export_csv(RECORDS, column_mapping={"game_title": "Game", "total_revenue": "Revenue"})
    )

    assert rows[0] == ["Game", "Revenue"]
    assert rows[1] == ["Frost Saga", "100"]


def test_csv_headers_fill_missing_keys_with_blanks():
    rows = _read_csv(export_csv([{"a": 1}, {"b": 2}], headers=["a", "b"]))

    assert rows == [["a", "b"], ["1", ""], ["", "2"]]


def test_csv_of_no_records_is_an_empty_header():
    assert _read_csv(export_csv([])) == [[]]


def test_cell_formatting_rules():
    assert format_cell_value(None) == ""
    assert format_cell_value(True) == "Yes"
    assert format_cell_value(3) == "3"
    assert format_cell_value(2.0) == "2"
    assert format_cell_value(0.125) == "0.12"
    assert format_cell_value(date(2024, 5, 1)) == "2024-05-01"
    assert format_cell_value(("RPG", "FPS")) == "RPG, FPS"


def test_header_names_are_title_cased():
    assert format_header_name("total_revenue") == "Total Revenue"
    assert format_header_name("avgSessionDuration") == "Avg Session Duration"
    assert format_header_name("game_id") == "Game Id"


def test_pdf_export_produces_pdf_bytes():
    payload = export_pdf(
        RECORDS * 30,
        "Game Performance Report",
        summary={"total_games": 60, "total_revenue": 3299.7},
        generated_at=datetime(2024, 6, 30, 12, 0, 0),
    )

    assert payload.startswith(b"%PDF")
    assert payload.rstrip().endswith(b"%%EOF")


def test_pdf_export_of_empty_report_still_renders_a_page():
    payload = export_pdf([], "Empty Report")

    assert payload.startswith(b"%PDF")


def test_export_failures_surface_as_export_error():
    class Exploding:
        def __str__(self):
            raise RuntimeError("cannot render")

    with pytest.raises(ExportError, match="Failed to export CSV"):
        export_csv([{"value": Exploding()}])
    with pytest.raises(ExportError, match="Failed to export PDF"):
        export_pdf([{"value": Exploding()}], "Broken")


def test_export_filename_includes_date_and_sort():
    today = date(2024, 6, 30)

    assert build_export_filename("Game Performance Report", "csv", today=today) == (
        "game-performance-report-2024-06-30.csv"
    )
    assert build_export_filename(
        "Player Engagement Report",
        "pdf",
        sort={"field": "retention_score", "direction": "asc"},
        today=today,
    ) == "player-engagement-report-2024-06-30-sorted-retention_score-asc.pdf"


@pytest.mark.parametrize(
    "title",
    ["Cash $$ Grab", "Deal $9.99 or $4.99", "$ Dollar Dash"],
)
def test_pdf_renders_dollar_signs_as_plain_text(title, monkeypatch):
    drawn = []
    original_draw = Text.draw

    def recording_draw(self, renderer):
        drawn.append((self.get_text(), self.get_parse_math()))
        return original_draw(self, renderer)

    monkeypatch.setattr(Text, "draw", recording_draw)

    payload = export_pdf(
        [{"game_title": title, "tags": ["$5 off", "$$ sale"], "total_revenue": 9.99}],
        f"Report for {title}",
        summary={"best_deal": title},
    )

    assert payload.startswith(b"%PDF")
    dollar_texts = [(text, parse_math) for text, parse_math in drawn if "$" in text]
    assert title in [text for text, _ in dollar_texts]
    assert "$5 off, $$ sale" in [text for text, _ in dollar_texts]
    assert f"Best Deal: {title}" in [text for text, _ in dollar_texts]
    assert all(parse_math is False for _, parse_math in dollar_texts)
