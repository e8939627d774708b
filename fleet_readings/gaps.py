"""
Pending-readings detection.

For every active equipment and every date of the window, a reading is
"covered" when any source (the readings table, fuel events or one of the
field sheets) has a row for that pair. Everything else is pending. A source
that cannot be read contributes no coverage, so an outage shows up as extra
pending work rather than as a crash.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta

import pandas as pd

from fleet_readings import columns
from fleet_readings.collector import resolve_columns
from fleet_readings.models import DateCoverage, EquipmentIndex, PendingEntry
from fleet_readings.normalize import format_br_date, normalize_key, parse_day
from fleet_readings.settings import DEFAULT_PENDING_DAYS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateWindow:
    start: date
    end: date

    @classmethod
    def last_days(cls, days: int = DEFAULT_PENDING_DAYS, today: date | None = None) -> "DateWindow":
        if days < 1:
            raise ValueError("A pending window needs at least one day")
        today = today or date.today()
        return cls(start=today - timedelta(days=days - 1), end=today)

    @classmethod
    def single(cls, day: date) -> "DateWindow":
        return cls(start=day, end=day)

    def dates(self) -> list[date]:
        """Dates of the window, newest first."""
        span = (self.end - self.start).days
        return [self.end - timedelta(days=offset) for offset in range(span + 1)]

    def __contains__(self, day) -> bool:
        return isinstance(day, date) and self.start <= day <= self.end


def day_label(day: date, today: date | None = None) -> str:
    today = today or date.today()
    label = format_br_date(day)
    if day == today:
        return f"Today - {label}"
    if day == today - timedelta(days=1):
        return f"Yesterday - {label}"
    return label


def filter_equipment(equipment, search: str = "") -> list:
    needle = normalize_key(search)
    if not needle:
        return list(equipment)

    matches = []
    for item in equipment:
        haystack = " ".join(
            normalize_key(value)
            for value in (item.code, item.name, item.category, item.description)
        )
        if needle in haystack:
            matches.append(item)
    return matches


def _sort_key(item):
    return (normalize_key(item.display_name), item.code_key)


def compute_gaps(equipment, window: DateWindow, seen, last_readings=None) -> dict:
    """Map each date of ``window`` to the equipment with no reading that day.

    ``seen`` is a set of ``(equipment_id, date)`` pairs. ``last_readings``
    optionally maps equipment ids to their latest stored reading.
    """

    last_readings = last_readings or {}
    ordered = sorted(equipment, key=_sort_key)

    gaps = {}
    for day in window.dates():
        gaps[day] = [
            PendingEntry(equipment=item, day=day, last_reading=last_readings.get(item.id))
            for item in ordered
            if (item.id, day) not in seen
        ]
    return gaps


def coverage_by_date(equipment, window: DateWindow, seen) -> list[DateCoverage]:
    ids = {item.id for item in equipment}
    coverage = []
    for day in window.dates():
        filled = sum(1 for equipment_id in ids if (equipment_id, day) in seen)
        coverage.append(DateCoverage(day=day, total=len(ids), filled=filled))
    return coverage


def coverage_frame(equipment, window: DateWindow, seen) -> pd.DataFrame:
    """Equipment × date grid of booleans, True where a reading exists."""

    ordered = sorted(equipment, key=_sort_key)
    days = window.dates()
    data = {
        format_br_date(day): [(item.id, day) in seen for item in ordered]
        for day in days
    }
    frame = pd.DataFrame(data, index=[item.code for item in ordered])
    frame.index.name = "Equipment"
    return frame


class GapDetector:
    def __init__(self, store=None, sheets=None, sheet_names=(), index: EquipmentIndex | None = None):
        self.store = store
        self.sheets = sheets
        self.sheet_names = list(sheet_names)
        self.index = index
        self.unavailable = []

    def _index_for(self, equipment) -> EquipmentIndex:
        return self.index if self.index is not None else EquipmentIndex(equipment)

    def _seen_from_readings(self, window: DateWindow) -> set:
        return {
            (reading.equipment_id, reading.reading_date)
            for reading in self.store.list_readings(since=window.start)
            if reading.reading_date in window
        }

    def _seen_from_fuel_events(self, window: DateWindow, index: EquipmentIndex) -> set:
        seen = set()
        for event in self.store.list_fuel_events(since=window.start):
            if event.event_date not in window:
                continue
            item = index.lookup(event.vehicle_code)
            if item is not None:
                seen.add((item.id, event.event_date))
        return seen

    def _seen_from_sheet(self, sheet_name: str, window: DateWindow, index: EquipmentIndex) -> set:
        data = self.sheets.get_sheet_rows(sheet_name)
        column_map = resolve_columns(data.headers, (columns.DATE, columns.EQUIPMENT_CODE))
        date_column = column_map[columns.DATE]
        code_column = column_map[columns.EQUIPMENT_CODE]
        if date_column is None or code_column is None:
            logger.warning("Sheet %s lacks a date or code column", sheet_name)
            return set()

        seen = set()
        for row in data.rows:
            day = parse_day(row.get(date_column))
            if day not in window:
                continue
            item = index.lookup(row.get(code_column))
            if item is not None:
                seen.add((item.id, day))
        return seen

    def collect_seen(self, window: DateWindow, equipment=()) -> set:
        index = self._index_for(equipment)
        gatherers = []
        if self.store is not None:
            gatherers.append(("readings", lambda: self._seen_from_readings(window)))
            gatherers.append(("fuel events", lambda: self._seen_from_fuel_events(window, index)))
        if self.sheets is not None:
            for sheet_name in self.sheet_names:
                gatherers.append(
                    (sheet_name, lambda name=sheet_name: self._seen_from_sheet(name, window, index))
                )

        seen = set()
        self.unavailable = []
        for label, gather in gatherers:
            try:
                found = gather()
            except Exception as error:
                logger.warning("Coverage source %s unavailable: %s", label, error)
                self.unavailable.append(label)
                continue
            logger.info("Coverage source %s: %s pairs", label, len(found))
            seen |= found
        return seen

    def latest_readings(self, equipment) -> dict:
        if self.store is None:
            return {}

        latest = {}
        for item in equipment:
            try:
                reading = self.store.get_latest_reading(item.id)
            except Exception as error:
                logger.warning("Latest reading for %s unavailable: %s", item.code, error)
                continue
            if reading is not None:
                latest[item.id] = reading
        return latest

    def find_gaps(self, equipment, window: DateWindow, search: str = "", seen=None) -> dict:
        equipment = list(equipment)
        if seen is None:
            seen = self.collect_seen(window, equipment)
        selected = filter_equipment(equipment, search)
        gaps = compute_gaps(selected, window, seen, self.latest_readings(selected))

        logger.info(
            "Pending readings %s..%s: %s",
            window.start,
            window.end,
            sum(len(entries) for entries in gaps.values()),
        )
        return gaps
