"""
Zero-value backfill.

A meter value of exactly 0 means "not measured". The corrector replaces such
zeros with the nearest earlier positive value recorded for the same
equipment, appends a marker to the observation, and reports what it did.
Non-zero values are never touched and no value is ever made up: a zero with
no earlier history stays zero and is counted as such.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from fleet_readings import columns
from fleet_readings.collector import resolve_columns
from fleet_readings.models import BackfillChange, BackfillReport, is_measured
from fleet_readings.normalize import format_number, normalize_code, parse_day, parse_number
from fleet_readings.settings import (
    AUTOFIX_KEY_PREFIX,
    AUTOFIX_MARKER_FILE,
    AUTOFIX_MARKER_LABEL,
)

logger = logging.getLogger(__name__)

READING_METER_FIELDS = (
    columns.HOUR_METER,
    columns.HOUR_METER_PREVIOUS,
    columns.ODOMETER,
    columns.ODOMETER_PREVIOUS,
)

# Where to look for a replacement, in order of preference.
EQUIVALENT_FIELDS = {
    columns.HOUR_METER: (columns.HOUR_METER,),
    columns.HOUR_METER_PREVIOUS: (columns.HOUR_METER, columns.HOUR_METER_PREVIOUS),
    columns.ODOMETER: (columns.ODOMETER,),
    columns.ODOMETER_PREVIOUS: (columns.ODOMETER, columns.ODOMETER_PREVIOUS),
    columns.LEGACY_METER: (columns.LEGACY_METER,),
}

SHEET_RECORD_FIELDS = columns.METER_FIELDS + (
    columns.DATE,
    columns.EQUIPMENT_CODE,
    columns.OBSERVATION,
)


@dataclass
class BackfillRecord:
    record_id: object
    equipment_key: str
    day: date | None
    position: int
    values: dict = field(default_factory=dict)
    observation: str = ""
    headers: dict = field(default_factory=dict)

    @classmethod
    def from_reading(cls, reading, position: int) -> "BackfillRecord":
        return cls(
            record_id=reading.id,
            equipment_key=str(reading.equipment_id),
            day=reading.reading_date,
            position=position,
            values={name: getattr(reading, name) for name in READING_METER_FIELDS},
            observation=reading.observation or "",
        )

    @classmethod
    def from_sheet_row(cls, row: dict, column_map: dict, position: int) -> "BackfillRecord":
        values = {}
        headers = {}
        for name in columns.METER_FIELDS:
            header = column_map.get(name)
            if header:
                values[name] = parse_number(row.get(header))
                headers[name] = header

        observation_header = column_map.get(columns.OBSERVATION)
        if observation_header:
            headers[columns.OBSERVATION] = observation_header

        code_header = column_map.get(columns.EQUIPMENT_CODE)
        date_header = column_map.get(columns.DATE)

        return cls(
            record_id=row.get("_row"),
            equipment_key=normalize_code(row.get(code_header)) if code_header else "",
            day=parse_day(row.get(date_header)) if date_header else None,
            position=position,
            values=values,
            observation=str(row.get(observation_header) or "").strip() if observation_header else "",
            headers=headers,
        )

    @property
    def can_annotate(self) -> bool:
        """Store rows always carry an observation; sheet rows need the column."""
        return not self.headers or columns.OBSERVATION in self.headers

    def zero_fields(self) -> list[str]:
        return [name for name, value in self.values.items() if value is not None and value == 0]

    def is_earlier_than(self, other: "BackfillRecord") -> bool:
        if other.day is None:
            return self.position < other.position
        if self.day is None:
            return False
        return self.day < other.day or (self.day == other.day and self.position < other.position)


def processing_order(records) -> list[BackfillRecord]:
    dated = sorted((record for record in records if record.day is not None), key=lambda r: (r.day, r.position))
    undated = sorted((record for record in records if record.day is None), key=lambda r: r.position)
    return dated + undated


def find_replacement(target: BackfillRecord, field_name: str, history) -> float | None:
    """Most recent positive value of an equivalent column on an earlier record."""

    earlier = [
        record
        for record in history
        if record is not target
        and record.equipment_key == target.equipment_key
        and record.is_earlier_than(target)
    ]

    for candidate_field in EQUIVALENT_FIELDS.get(field_name, (field_name,)):
        best = None
        for record in earlier:
            value = record.values.get(candidate_field)
            if not is_measured(value):
                continue
            if best is None or _recency(record, target) > _recency(best[0], target):
                best = (record, value)
        if best is not None:
            return float(best[1])

    return None


def _recency(record: BackfillRecord, target: BackfillRecord):
    if target.day is None:
        return record.position
    return (record.day or date.min, record.position)


def correction_marker(updates: dict, now: datetime) -> str:
    details = ", ".join(f"{name}: {format_number(value)}" for name, value in updates.items())
    return f"[{AUTOFIX_MARKER_LABEL} {now:%Y-%m-%d %H:%M}] {details}"


def append_marker(observation: str, marker: str) -> str:
    observation = (observation or "").strip()
    return f"{observation} | {marker}" if observation else marker


def run_backfill(records, writer, now: datetime | None = None) -> BackfillReport:
    records = list(records)
    now = now or datetime.now()
    report = BackfillReport()

    for record in processing_order(records):
        if not record.values or not record.equipment_key:
            report.skipped_no_columns += 1
            continue

        zeros = record.zero_fields()
        if not zeros:
            continue

        updates = {}
        for name in zeros:
            replacement = find_replacement(record, name, records)
            if replacement is None:
                report.skipped_no_history += 1
            else:
                updates[name] = replacement

        if not updates:
            continue

        observation = append_marker(record.observation, correction_marker(updates, now))
        try:
            writer.write(record, updates, observation)
        except Exception:
            logger.exception("Failed to backfill record %s", record.record_id)
            report.errors += 1
            continue

        for name, value in updates.items():
            report.changes.append(
                BackfillChange(
                    record_id=record.record_id,
                    equipment_key=record.equipment_key,
                    day=record.day,
                    field=name,
                    old_value=record.values[name],
                    new_value=value,
                )
            )
            record.values[name] = value
        record.observation = observation
        if not record.can_annotate:
            logger.warning(
                "Record %s corrected but has no observation column for the marker", record.record_id
            )
            report.unannotated += 1
        report.fixed += len(updates)
        report.equipment_affected.add(record.equipment_key)

    logger.info("Backfill finished: %s", report.summary)
    return report


class StoreBackfillWriter:
    def __init__(self, store):
        self.store = store

    def write(self, record: BackfillRecord, updates: dict, observation: str) -> None:
        self.store.update_reading(record.record_id, {**updates, "observation": observation})


class SheetBackfillWriter:
    def __init__(self, sheets, sheet_name: str):
        self.sheets = sheets
        self.sheet_name = sheet_name

    def write(self, record: BackfillRecord, updates: dict, observation: str) -> None:
        keyed_values = {
            record.headers.get(name, name): format_number(value)
            for name, value in updates.items()
        }
        if columns.OBSERVATION in record.headers:
            keyed_values[record.headers[columns.OBSERVATION]] = observation
        self.sheets.update_row(self.sheet_name, record.record_id, keyed_values)


def load_store_records(store, since: date | None = None) -> list[BackfillRecord]:
    return [
        BackfillRecord.from_reading(reading, position)
        for position, reading in enumerate(store.list_readings(since=since))
    ]


def load_sheet_records(sheets, sheet_name: str) -> list[BackfillRecord]:
    data = sheets.get_sheet_rows(sheet_name)
    column_map = resolve_columns(data.headers, SHEET_RECORD_FIELDS)
    return [
        BackfillRecord.from_sheet_row(row, column_map, position)
        for position, row in enumerate(data.rows)
    ]


class InMemoryMarkerStore:
    def __init__(self, initial: dict | None = None):
        self._values = dict(initial or {})

    def get(self, key: str):
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class JsonFileMarkerStore:
    """Markers persisted in a small JSON file shared by every dashboard session."""

    def __init__(self, path: Path = AUTOFIX_MARKER_FILE):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Marker file %s is corrupt; starting fresh", self.path)
            return {}

    def get(self, key: str):
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._load()
        values[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temporary = self.path.with_suffix(".tmp")
        temporary.write_text(json.dumps(values, indent=2, sort_keys=True), encoding="utf-8")
        temporary.replace(self.path)


_GUARD_LOCK = threading.Lock()


class DailyRunGuard:
    def __init__(self, markers, clock=datetime.now, lock: threading.Lock = _GUARD_LOCK):
        self.markers = markers
        self.clock = clock
        self._lock = lock

    def key_for(self, moment: datetime) -> str:
        return f"{AUTOFIX_KEY_PREFIX}{moment:%Y-%m-%d}"

    def has_run_today(self) -> bool:
        return self.markers.get(self.key_for(self.clock())) is not None

    def try_acquire(self) -> bool:
        """Claim today's run. False when it was already claimed."""

        with self._lock:
            moment = self.clock()
            key = self.key_for(moment)
            if self.markers.get(key) is not None:
                return False
            self.markers.set(key, moment.isoformat(timespec="seconds"))
            return True


def run_daily_backfill(guard: DailyRunGuard, load_records, writer, now: datetime | None = None) -> BackfillReport | None:
    """Run the backfill once per day.

    Today's marker is claimed only after the records load, so a failed load
    leaves the run available for the next attempt.
    """

    if guard.has_run_today():
        logger.info("Daily backfill already ran today; skipping")
        return None

    records = load_records()
    if not guard.try_acquire():
        logger.info("Daily backfill claimed by another session; skipping")
        return None

    return run_backfill(records, writer, now=now or guard.clock())
