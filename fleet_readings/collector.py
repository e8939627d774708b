import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime

from fleet_readings import columns
from fleet_readings.models import Candidate, MeterKind, SourceTag
from fleet_readings.normalize import normalize_code, parse_date, parse_number
from fleet_readings.settings import FUEL_LOG_SHEET, READINGS_SHEET, SOURCE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

SHEET_FIELDS = (
    columns.DATE,
    columns.TIME,
    columns.EQUIPMENT_CODE,
    columns.HOUR_METER,
    columns.ODOMETER,
    columns.LEGACY_METER,
    columns.OPERATOR,
)

DEFAULT_SHEET_SOURCES = {
    READINGS_SHEET: SourceTag.SHEET_READINGS,
    FUEL_LOG_SHEET: SourceTag.SHEET_FUEL_LOG,
}


@dataclass
class SheetRowValues:
    code_key: str
    timestamp: datetime | None
    hour_meter: float | None
    odometer: float | None
    operator: str


def resolve_columns(headers, fields=SHEET_FIELDS) -> dict:
    return {field: columns.column_for(headers, field) for field in fields}


def legacy_kind_for(header) -> MeterKind | None:
    field = columns.legacy_meter_kind(header)
    return MeterKind(field) if field else None


def read_sheet_row(row: dict, column_map: dict, legacy_kind=None) -> SheetRowValues:
    """Pull the reconciliation fields out of one loosely-typed sheet row.

    A legacy single-meter column named after its meter (``Km``, ``Horas``)
    fills that meter. A neutral one follows ``legacy_kind``, which defaults
    to the hour-meter.
    """

    def raw(field):
        column = column_map.get(field)
        return row.get(column) if column else None

    hour_meter = parse_number(raw(columns.HOUR_METER))
    odometer = parse_number(raw(columns.ODOMETER))

    legacy = parse_number(raw(columns.LEGACY_METER))
    if legacy is not None:
        legacy_kind = (
            legacy_kind_for(column_map.get(columns.LEGACY_METER))
            or legacy_kind
            or MeterKind.HOUR_METER
        )
        if legacy_kind == MeterKind.ODOMETER and odometer is None:
            odometer = legacy
        elif legacy_kind == MeterKind.HOUR_METER and hour_meter is None:
            hour_meter = legacy

    time_raw = raw(columns.TIME)
    if isinstance(time_raw, str) and not time_raw.strip():
        time_raw = None

    return SheetRowValues(
        code_key=normalize_code(raw(columns.EQUIPMENT_CODE)),
        timestamp=parse_date(raw(columns.DATE), time_raw),
        hour_meter=hour_meter,
        odometer=odometer,
        operator=str(raw(columns.OPERATOR) or "").strip(),
    )


class ReadingTableSource:
    tag = SourceTag.DB_READING

    def __init__(self, store, timeout: float | None = None):
        self.store = store
        self.timeout = timeout

    def candidates(self, equipment_code: str, equipment_id) -> list[Candidate]:
        if equipment_id is None:
            return []

        reading = self.store.get_latest_reading(equipment_id)
        if reading is None:
            return []

        return [
            Candidate(
                equipment_id=equipment_id,
                timestamp=parse_date(reading.reading_date),
                hour_meter=reading.hour_meter,
                odometer=reading.odometer,
                operator=reading.operator,
                source=self.tag,
            )
        ]


class FuelEventSource:
    tag = SourceTag.DB_FUEL_EVENT

    def __init__(self, store, index=None, timeout: float | None = None):
        self.store = store
        self.index = index
        self.timeout = timeout

    def candidates(self, equipment_code: str, equipment_id) -> list[Candidate]:
        if self.index is not None and self.index.is_ambiguous(equipment_code):
            logger.warning("Code %s matches several catalog entries; ignoring fuel events", equipment_code)
            return []

        event = self.store.get_latest_fuel_event(equipment_code)
        if event is None:
            return []

        return [
            Candidate(
                equipment_id=equipment_id,
                timestamp=event.timestamp,
                hour_meter=event.hour_meter,
                odometer=event.odometer,
                operator=event.operator,
                source=self.tag,
            )
        ]


class SheetCandidateSource:
    """Candidates from one spreadsheet tab, matched on the normalized code.

    Rows without a positive meter value are skipped. Rows whose date cannot
    be read are kept with no timestamp; the resolver ranks them last. A
    neutral legacy meter column is read as the meter the equipment's
    category requires when ``legacy_kind`` is not given.
    """

    def __init__(self, sheets, sheet_name: str, tag: SourceTag, index=None,
                 legacy_kind=None, timeout: float | None = None):
        self.sheets = sheets
        self.sheet_name = sheet_name
        self.tag = tag
        self.index = index
        self.legacy_kind = legacy_kind
        self.timeout = timeout

    def candidates(self, equipment_code: str, equipment_id) -> list[Candidate]:
        target = normalize_code(equipment_code)
        if not target:
            return []
        if self.index is not None and self.index.is_ambiguous(equipment_code):
            logger.warning("Code %s matches several catalog entries; ignoring %s", equipment_code, self.sheet_name)
            return []

        data = self.sheets.get_sheet_rows(self.sheet_name)
        column_map = resolve_columns(data.headers)
        if column_map[columns.EQUIPMENT_CODE] is None:
            logger.warning("Sheet %s has no equipment code column", self.sheet_name)
            return []

        legacy_kind = self.legacy_kind
        if legacy_kind is None and self.index is not None:
            equipment = self.index.lookup(equipment_code)
            legacy_kind = equipment.required_kind if equipment is not None else None

        found = []
        for row in data.rows:
            values = read_sheet_row(row, column_map, legacy_kind)
            if values.code_key != target:
                continue

            candidate = Candidate(
                equipment_id=equipment_id,
                timestamp=values.timestamp,
                hour_meter=values.hour_meter,
                odometer=values.odometer,
                operator=values.operator,
                source=self.tag,
            )
            if candidate.has_measurement:
                found.append(candidate)

        return found


def build_sources(store=None, sheets=None, index=None, sheet_sources=None) -> list:
    sources = []
    if store is not None:
        sources.append(ReadingTableSource(store))
        sources.append(FuelEventSource(store, index=index))
    if sheets is not None:
        for sheet_name, tag in (sheet_sources or DEFAULT_SHEET_SOURCES).items():
            sources.append(SheetCandidateSource(sheets, sheet_name, tag, index=index))
    return sources


class CandidateCollector:
    """Fan out to every source at once and gather what comes back in time.

    A source that raises or exceeds its timeout contributes no candidates;
    the collection itself never fails because of one source.
    """

    def __init__(self, sources, timeout: float = SOURCE_TIMEOUT_SECONDS):
        self.sources = list(sources)
        self.timeout = timeout

    def collect(self, equipment_code: str, equipment_id=None) -> list[Candidate]:
        if not self.sources:
            return []

        executor = ThreadPoolExecutor(
            max_workers=len(self.sources), thread_name_prefix="candidate-source"
        )
        started = time.monotonic()
        collected = []

        try:
            future_to_source = {
                executor.submit(source.candidates, equipment_code, equipment_id): source
                for source in self.sources
            }

            for future, source in future_to_source.items():
                limit = getattr(source, "timeout", None) or self.timeout
                remaining = max(0.0, started + limit - time.monotonic())
                try:
                    collected.extend(future.result(timeout=remaining))
                except FuturesTimeoutError:
                    future.cancel()
                    logger.warning(
                        "Source %s timed out after %.1fs for %s",
                        source.tag.value,
                        limit,
                        equipment_code,
                    )
                except Exception as error:
                    logger.warning(
                        "Source %s failed for %s: %s", source.tag.value, equipment_code, error
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Collected %s candidates for %s", len(collected), equipment_code)
        return collected
