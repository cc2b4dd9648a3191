from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any

from data.chain import parse_date

logger = logging.getLogger(__name__)

DEFAULT_MACRO_CALENDAR_PATH = "storage/macro_events.json"


def load_macro_events(path: str = DEFAULT_MACRO_CALENDAR_PATH) -> list[dict[str, Any]]:
    """
    Loads scheduled macro releases used by the macro-event guardrail.

    File format:
    {
      "events": [
        {"date": "2026-03-18", "name": "FOMC rate decision", "time_et": "14:00"},
        {"date": "2026-03-11", "name": "CPI", "time_et": "08:30"}
      ]
    }
    A missing file means an empty calendar.
    """
    file_path = Path(path)
    if not file_path.exists():
        return []

    try:
        raw = json.loads(file_path.read_text())
    except (OSError, ValueError) as exc:
        logger.warning("macro calendar %s unreadable: %s", file_path, exc)
        return []

    rows = raw.get("events", []) if isinstance(raw, dict) else raw if isinstance(raw, list) else []

    normalized: list[dict[str, Any]] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        event_date = parse_date(row.get("date"))
        name = str(row.get("name", "")).strip()
        if not event_date or not name:
            continue
        normalized.append({"date": event_date, "name": name, "time_et": str(row.get("time_et", "")).strip()})

    normalized.sort(key=lambda x: (x["date"], x["time_et"], x["name"]))
    return normalized


def events_within(events: list[dict[str, Any]], start_date: dt.date, days: int) -> list[str]:
    end_date = start_date + dt.timedelta(days=days)
    labels: list[str] = []
    for event in events:
        event_date = event.get("date")
        if not isinstance(event_date, dt.date) or not start_date <= event_date <= end_date:
            continue
        label = f"{event_date.isoformat()} - {event['name']}"
        if event.get("time_et"):
            label += f" ({event['time_et']} ET)"
        labels.append(label)
    return labels
