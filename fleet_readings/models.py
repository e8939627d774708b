from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from fleet_readings.normalize import (
    MACHINE_CATEGORY,
    VEHICLE_CATEGORY,
    normalize_category,
    normalize_code,
    parse_date,
)


class SourceTag(str, Enum):
    DB_READING = "db_reading"
    DB_FUEL_EVENT = "db_fuel_event"
    SHEET_READINGS = "sheet_readings"
    SHEET_FUEL_LOG = "sheet_fuel_log"


class MeterKind(str, Enum):
    HOUR_METER = "hour_meter"
    ODOMETER = "odometer"


def is_measured(value) -> bool:
    """A meter value counts only when positive; 0 means "not measured"."""

    return value is not None and value > 0


@dataclass
class Equipment:
    id: int
    code: str
    name: str = ""
    category: str = ""
    description: str = ""
    company: str = ""
    active: bool = True

    @property
    def code_key(self) -> str:
        return normalize_code(self.code)

    @property
    def display_name(self) -> str:
        return self.name or self.description or self.code

    @property
    def required_kind(self) -> MeterKind | None:
        category = normalize_category(self.category)
        if category == VEHICLE_CATEGORY:
            return MeterKind.ODOMETER
        if category == MACHINE_CATEGORY:
            return MeterKind.HOUR_METER
        return None


@dataclass
class Reading:
    equipment_id: int
    reading_date: date | None
    hour_meter: float | None = None
    odometer: float | None = None
    hour_meter_previous: float | None = None
    odometer_previous: float | None = None
    operator: str = ""
    observation: str = ""
    source: SourceTag = SourceTag.DB_READING
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class FuelEvent:
    vehicle_code: str
    event_date: date | None
    event_time: str = ""
    hour_meter: float | None = None
    odometer: float | None = None
    operator: str = ""
    id: int | None = None

    @property
    def timestamp(self) -> datetime | None:
        if self.event_date is None:
            return None
        return parse_date(self.event_date, self.event_time or None)


@dataclass
class Candidate:
    equipment_id: int | None
    timestamp: datetime | None
    hour_meter: float | None
    odometer: float | None
    operator: str
    source: SourceTag

    @property
    def has_measurement(self) -> bool:
        return is_measured(self.hour_meter) or is_measured(self.odometer)


@dataclass
class ResolvedReading:
    hour_meter: float = 0.0
    odometer: float = 0.0
    date: datetime | None = None
    operator: str = ""
    source: SourceTag | None = None

    @property
    def is_first_reading(self) -> bool:
        return self.date is None and not self.hour_meter and not self.odometer


@dataclass
class PendingEntry:
    equipment: Equipment
    day: date
    last_reading: Reading | None = None


@dataclass
class DateCoverage:
    day: date
    total: int
    filled: int

    @property
    def missing(self) -> int:
        return self.total - self.filled


@dataclass
class MonotonicityAlert:
    kind: MeterKind
    current: float
    previous: float

    @property
    def difference(self) -> float:
        return self.current - self.previous


@dataclass
class BackfillChange:
    record_id: object
    equipment_key: str
    day: date | None
    field: str
    old_value: float
    new_value: float


@dataclass
class BackfillReport:
    fixed: int = 0
    skipped_no_history: int = 0
    skipped_no_columns: int = 0
    errors: int = 0
    unannotated: int = 0
    equipment_affected: set = field(default_factory=set)
    changes: list = field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = [
            f"{self.fixed} values corrected",
            f"{len(self.equipment_affected)} equipment affected",
        ]
        if self.skipped_no_history:
            parts.append(f"{self.skipped_no_history} without earlier history")
        if self.skipped_no_columns:
            parts.append(f"{self.skipped_no_columns} records without meter columns")
        if self.unannotated:
            parts.append(f"{self.unannotated} corrected without an observation column")
        if self.errors:
            parts.append(f"{self.errors} errors")
        return ", ".join(parts) + "."


class EquipmentIndex:
    """Lookup of catalog entries by normalized code.

    A code that normalizes onto more than one catalog entry is ambiguous and
    resolves to nothing: attaching a reading to the wrong machine would
    corrupt its history.
    """

    def __init__(self, equipment):
        self._by_key = {}
        self._ambiguous = set()
        for item in equipment:
            key = item.code_key
            if not key:
                continue
            existing = self._by_key.get(key)
            if existing is not None and existing.id != item.id:
                self._ambiguous.add(key)
            self._by_key[key] = item

    def lookup(self, code) -> Equipment | None:
        key = normalize_code(code)
        if not key or key in self._ambiguous:
            return None
        return self._by_key.get(key)

    def is_ambiguous(self, code) -> bool:
        return normalize_code(code) in self._ambiguous

    def __len__(self) -> int:
        return len(self._by_key)
