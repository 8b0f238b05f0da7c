"""Timestamp helpers shared by the parser, the scanner and the API."""
from __future__ import annotations

import os
from datetime import datetime, timezone


def format_datetime_utc(value: datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix and whole seconds."""
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_datetime_utc(datetime.now(timezone.utc))


def iso_to_epoch(value: str | None) -> float:
    """Sort key for cached timestamps; unparseable or empty values sort oldest."""
    token = (value or "").strip()
    if not token:
        return 0.0
    try:
        dt = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _file_created_datetime(stats: os.stat_result) -> datetime | None:
    # Birth time where the platform records it (macOS, BSD), else ctime.
    for attr in ("st_birthtime", "st_ctime"):
        value = getattr(stats, attr, None)
        if isinstance(value, (int, float)) and value > 0:
            return datetime.fromtimestamp(float(value), timezone.utc)
    return None


def stat_dates(stats: os.stat_result) -> dict[str, str]:
    """Return normalized creation/modified timestamps from a stat result."""
    modified = format_datetime_utc(datetime.fromtimestamp(float(stats.st_mtime), timezone.utc))
    created_dt = _file_created_datetime(stats)
    return {
        "createdAt": format_datetime_utc(created_dt) if created_dt else modified,
        "updatedAt": modified,
    }
