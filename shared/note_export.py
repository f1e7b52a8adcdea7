"""Plain-text rendering of generated notes for download and bulk export."""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import Any, Iterable

RULE = "=" * 50

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


def parse_content(raw: str) -> Any:
    """Decode stored note content, falling back to the raw text."""
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def export_filename(created_at: datetime, note_type: str, original_name: str) -> str:
    stem = _EXTENSION_RE.sub("", original_name)
    return f"{created_at:%Y-%m-%d}_{note_type}_{stem}.txt"


def bulk_export_filename(today: date) -> str:
    return f"admin_notes_{today:%Y-%m-%d}.txt"


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def render_sections(content: Any) -> str:
    """Render note content: ``KEY:`` sections for objects, raw text otherwise."""
    if isinstance(content, dict):
        return "".join(
            f"{key.upper()}:\n{_format_value(value)}\n\n" for key, value in content.items()
        )
    return _format_value(content)


def render_note(raw_content: str, *, original_name: str, note_type: str, created_at: datetime) -> str:
    header = (
        f"Notes Generated: {created_at:%Y-%m-%d %H:%M:%S}\n"
        f"File: {original_name}\n"
        f"Type: {note_type}\n"
        f"\n{RULE}\n\n"
    )
    return header + render_sections(parse_content(raw_content))


def render_bulk(rows: Iterable[dict]) -> str:
    """Concatenate notes into one text document.

    Each row needs ``content``, ``note_type``, ``original_name``,
    ``created_at`` and ``user_email``.
    """
    parts = []
    for row in rows:
        filename = export_filename(row["created_at"], row["note_type"], row["original_name"])
        parts.append(
            f"=== {filename} ===\n"
            f"User: {row['user_email'] or 'Anonymous'}\n"
            f"Generated: {row['created_at']:%Y-%m-%d %H:%M:%S}\n"
            f"\n{RULE}\n\n"
            f"{render_sections(parse_content(row['content']))}"
            "\n\n"
        )
    return "".join(parts)
