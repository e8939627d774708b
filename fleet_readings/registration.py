import logging
from dataclasses import dataclass, field
from datetime import date

from fleet_readings import columns
from fleet_readings.collector import read_sheet_row, resolve_columns
from fleet_readings.errors import ReadingValidationError
from fleet_readings.models import (
    MeterKind,
    MonotonicityAlert,
    Reading,
    ResolvedReading,
    SourceTag,
    is_measured,
)
from fleet_readings.normalize import format_br_date, format_number, parse_number
from fleet_readings.settings import READINGS_SHEET, REPEAT_PREVIOUS_NOTE

logger = logging.getLogger(__name__)

KIND_LABELS = {
    MeterKind.HOUR_METER: "hour-meter",
    MeterKind.ODOMETER: "odometer",
}


@dataclass
class RegistrationResult:
    reading_id: int
    alerts: list = field(default_factory=list)
    mirrored: bool = False
    mirror_error: str = ""


@dataclass
class ImportReport:
    imported: int = 0
    skipped: int = 0
    unmatched: int = 0
    errors: int = 0
    unmatched_codes: set = field(default_factory=set)


def _measured_or_none(value) -> float | None:
    return float(value) if is_measured(value) else None


def check_monotonicity(current: dict, previous: ResolvedReading | None) -> list[MonotonicityAlert]:
    """Advisory alerts for meters that went backwards. Never blocks a save."""

    if previous is None:
        return []

    alerts = []
    for kind in MeterKind:
        new_value = current.get(kind)
        old_value = getattr(previous, kind.value)
        if is_measured(new_value) and is_measured(old_value) and new_value < old_value:
            alerts.append(MonotonicityAlert(kind=kind, current=float(new_value), previous=float(old_value)))
    return alerts


def validate_reading(store, equipment, day: date, hour_meter, odometer, today: date | None = None) -> None:
    today = today or date.today()

    if day > today:
        raise ReadingValidationError("Future dates cannot be registered")

    if not is_measured(hour_meter) and not is_measured(odometer):
        raise ReadingValidationError("Enter at least one value (hour-meter or odometer)")

    required = equipment.required_kind
    provided = {MeterKind.HOUR_METER: hour_meter, MeterKind.ODOMETER: odometer}
    if required is not None and not is_measured(provided[required]):
        raise ReadingValidationError(
            f"{equipment.code} is a {equipment.category or 'catalog item'}; "
            f"its {KIND_LABELS[required]} is mandatory"
        )

    if store.has_reading(equipment.id, day):
        raise ReadingValidationError(
            f"A reading for {equipment.code} on {format_br_date(day)} already exists"
        )


def _interval(current, previous) -> str:
    if is_measured(current) and is_measured(previous) and current > previous:
        return format_number(current - previous)
    return ""


def sheet_row_for(equipment, reading: Reading) -> dict:
    return {
        columns.DATE: format_br_date(reading.reading_date),
        columns.EQUIPMENT_CODE: equipment.code,
        columns.CATEGORY: equipment.category,
        columns.DESCRIPTION: equipment.name,
        columns.COMPANY: equipment.company,
        columns.OPERATOR: reading.operator,
        columns.HOUR_METER_PREVIOUS: format_number(reading.hour_meter_previous),
        columns.HOUR_METER: format_number(reading.hour_meter),
        columns.HOUR_INTERVAL: _interval(reading.hour_meter, reading.hour_meter_previous),
        columns.ODOMETER_PREVIOUS: format_number(reading.odometer_previous),
        columns.ODOMETER: format_number(reading.odometer),
        columns.ODOMETER_INTERVAL: _interval(reading.odometer, reading.odometer_previous),
        columns.OBSERVATION: reading.observation,
    }


def mirror_to_sheet(sheets, equipment, reading: Reading, sheet_name: str = READINGS_SHEET) -> None:
    sheets.append_or_upsert_row(
        sheet_name,
        sheet_row_for(equipment, reading),
        match_fields=(columns.DATE, columns.EQUIPMENT_CODE),
    )


def _save(store, equipment, reading: Reading, sheets) -> RegistrationResult:
    reading_id = store.insert_reading(reading)
    result = RegistrationResult(reading_id=reading_id)

    if sheets is None:
        return result

    try:
        mirror_to_sheet(sheets, equipment, reading)
        result.mirrored = True
    except Exception as error:
        logger.warning("Reading %s saved but not mirrored to the sheet: %s", reading_id, error)
        result.mirror_error = str(error)

    return result


def register_reading(store, equipment, day: date, hour_meter=None, odometer=None, operator: str = "",
                     observation: str = "", previous: ResolvedReading | None = None,
                     sheets=None, today: date | None = None) -> RegistrationResult:
    hour_meter = parse_number(hour_meter)
    odometer = parse_number(odometer)
    validate_reading(store, equipment, day, hour_meter, odometer, today=today)

    previous = previous or ResolvedReading()
    reading = Reading(
        equipment_id=equipment.id,
        reading_date=day,
        hour_meter=_measured_or_none(hour_meter),
        odometer=_measured_or_none(odometer),
        hour_meter_previous=_measured_or_none(previous.hour_meter),
        odometer_previous=_measured_or_none(previous.odometer),
        operator=(operator or "").strip(),
        observation=(observation or "").strip(),
        source=SourceTag.DB_READING,
    )

    result = _save(store, equipment, reading, sheets)
    result.alerts = check_monotonicity(
        {MeterKind.HOUR_METER: reading.hour_meter, MeterKind.ODOMETER: reading.odometer},
        previous,
    )
    for alert in result.alerts:
        logger.info(
            "%s for %s went backwards: %s < %s",
            KIND_LABELS[alert.kind],
            equipment.code,
            alert.current,
            alert.previous,
        )
    return result


def repeat_previous(store, entry, day: date | None = None, sheets=None) -> RegistrationResult:
    """Register a pending day with the same values as the last reading."""

    equipment = entry.equipment
    day = day or entry.day
    last = entry.last_reading or store.get_latest_reading(equipment.id)

    if last is None or not (is_measured(last.hour_meter) or is_measured(last.odometer)):
        raise ReadingValidationError(f"{equipment.code} has no previous reading to repeat")

    if store.has_reading(equipment.id, day):
        raise ReadingValidationError(
            f"A reading for {equipment.code} on {format_br_date(day)} already exists"
        )

    reading = Reading(
        equipment_id=equipment.id,
        reading_date=day,
        hour_meter=_measured_or_none(last.hour_meter),
        odometer=_measured_or_none(last.odometer),
        hour_meter_previous=_measured_or_none(last.hour_meter),
        odometer_previous=_measured_or_none(last.odometer),
        operator=last.operator,
        observation=REPEAT_PREVIOUS_NOTE,
        source=SourceTag.DB_READING,
    )
    return _save(store, equipment, reading, sheets)


def import_sheet_readings(store, rows, index) -> ImportReport:
    """Copy sheet readings whose (equipment, date) is missing from the store.

    Existing readings are never updated or deleted.
    """

    rows = list(rows)
    report = ImportReport()
    if not rows:
        return report

    column_map = resolve_columns(
        list(rows[0]),
        (
            columns.DATE,
            columns.TIME,
            columns.EQUIPMENT_CODE,
            columns.HOUR_METER,
            columns.ODOMETER,
            columns.LEGACY_METER,
            columns.OPERATOR,
        ),
    )
    imported_pairs = set()

    for row in rows:
        code = columns.value_for(row, columns.EQUIPMENT_CODE)
        equipment = index.lookup(code)
        if equipment is None:
            report.unmatched += 1
            if code:
                report.unmatched_codes.add(str(code).strip())
            continue

        values = read_sheet_row(row, column_map, equipment.required_kind)
        if values.timestamp is None:
            logger.warning("Row %s: unreadable date for %s", row.get("_row"), equipment.code)
            report.errors += 1
            continue

        day = values.timestamp.date()
        if not (is_measured(values.hour_meter) or is_measured(values.odometer)):
            report.skipped += 1
            continue

        try:
            if (equipment.id, day) in imported_pairs or store.has_reading(equipment.id, day):
                report.skipped += 1
                continue

            store.insert_reading(
                Reading(
                    equipment_id=equipment.id,
                    reading_date=day,
                    hour_meter=_measured_or_none(values.hour_meter),
                    odometer=_measured_or_none(values.odometer),
                    hour_meter_previous=_measured_or_none(
                        parse_number(columns.value_for(row, columns.HOUR_METER_PREVIOUS))
                    ),
                    odometer_previous=_measured_or_none(
                        parse_number(columns.value_for(row, columns.ODOMETER_PREVIOUS))
                    ),
                    operator=values.operator,
                    observation=str(columns.value_for(row, columns.OBSERVATION) or "").strip(),
                    source=SourceTag.SHEET_READINGS,
                )
            )
        except Exception:
            logger.exception("Failed to import row %s for %s", row.get("_row"), equipment.code)
            report.errors += 1
            continue

        imported_pairs.add((equipment.id, day))
        report.imported += 1

    logger.info(
        "Sheet import: %s imported, %s skipped, %s unmatched, %s errors",
        report.imported,
        report.skipped,
        report.unmatched,
        report.errors,
    )
    return report
