"""Tests for note text rendering."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone

from shared.note_export import (
    RULE,
    bulk_export_filename,
    export_filename,
    parse_content,
    render_bulk,
    render_note,
    render_sections,
)

CREATED = datetime(2026, 3, 4, 9, 30, 15, tzinfo=timezone.utc)


def test_export_filename_strips_extension():
    assert export_filename(CREATED, "soap", "visit.final.mp3") == "2026-03-04_soap_visit.final.txt"


def test_bulk_export_filename():
    assert bulk_export_filename(date(2026, 3, 5)) == "admin_notes_2026-03-05.txt"


def test_parse_content_falls_back_to_raw_text():
    assert parse_content('{"a": 1}') == {"a": 1}
    assert parse_content("not json") == "not json"


def test_sections_for_object_content():
    text = render_sections({"subjective": "Headache", "plan": "Rest"})
    assert text == "SUBJECTIVE:\nHeadache\n\nPLAN:\nRest\n\n"


def test_sections_for_plain_text():
    assert render_sections("Just a summary") == "Just a summary"


def test_nested_values_rendered_as_json():
    text = render_sections({"vitals": {"bp": "120/80"}})
    assert text == 'VITALS:\n{"bp": "120/80"}\n\n'


def test_render_note_header():
    raw = json.dumps({"summary": "All good"})
    text = render_note(raw, original_name="visit.mp3", note_type="summary", created_at=CREATED)

    lines = text.split("\n")
    assert lines[0] == "Notes Generated: 2026-03-04 09:30:15"
    assert lines[1] == "File: visit.mp3"
    assert lines[2] == "Type: summary"
    assert lines[4] == RULE
    assert len(RULE) == 50
    assert text.endswith("SUMMARY:\nAll good\n\n")


def test_render_bulk_concatenates_with_anonymous_owner():
    rows = [
        {
            "content": '"first"',
            "note_type": "general",
            "original_name": "a.txt",
            "created_at": CREATED,
            "user_email": "doc@clearnotes.app",
        },
        {
            "content": '{"plan": "Rest"}',
            "note_type": "soap",
            "original_name": "b.wav",
            "created_at": CREATED,
            "user_email": None,
        },
    ]
    text = render_bulk(rows)

    assert "=== 2026-03-04_general_a.txt ===\nUser: doc@clearnotes.app\n" in text
    assert "=== 2026-03-04_soap_b.txt ===\nUser: Anonymous\n" in text
    assert text.index("=== 2026-03-04_general_a.txt ===") < text.index("=== 2026-03-04_soap_b.txt ===")
    assert "PLAN:\nRest" in text
