"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from .db import database_connection, fetch_entries_between, row_to_entry
from .models import BookingStatus, TimeEntry


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def print_daily_summary(self, day: datetime, now: Optional[datetime] = None) -> None:
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        with database_connection(self.db_path) as conn:
            rows = fetch_entries_between(conn, start, start + timedelta(days=1))
        entries = [row_to_entry(row) for row in rows]
        if not entries:
            print("No time recorded for the selected day.")
            return

        now = now or datetime.now()
        total = sum(entry.effective_duration(now) for entry in entries)
        running = [entry for entry in entries if entry.in_progress]

        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        print(f"Tracked time: {format_duration(total)}")
        if running:
            print(f"Running:      {running[0].display_label}")
        print()

        print("Top activities:")
        for label, seconds in aggregate_by_label(entries, now)[:5]:
            print(f"  {label[:30]:<30} {format_duration(seconds)}")

        print()
        print("Review status:")
        for status, seconds in aggregate_by_status(entries, now):
            print(f"  {status.value:<12} {format_duration(seconds)}")


def aggregate_by_label(
    entries: Iterable[TimeEntry], now: Optional[datetime] = None
) -> list[tuple[str, float]]:
    totals: defaultdict[str, float] = defaultdict(float)
    for entry in entries:
        totals[entry.display_label] += entry.effective_duration(now)
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def aggregate_by_status(
    entries: Iterable[TimeEntry], now: Optional[datetime] = None
) -> list[tuple[BookingStatus, float]]:
    totals: defaultdict[BookingStatus, float] = defaultdict(float)
    for entry in entries:
        totals[entry.booking_status] += entry.effective_duration(now)
    return [(status, totals[status]) for status in BookingStatus if status in totals]


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
