import threading
from datetime import date, datetime, timedelta

import pytest

from fleet_readings.backfill import (
    BackfillRecord,
    DailyRunGuard,
    InMemoryMarkerStore,
    JsonFileMarkerStore,
    SheetBackfillWriter,
    StoreBackfillWriter,
    find_replacement,
    load_sheet_records,
    load_store_records,
    run_backfill,
    run_daily_backfill,
)
from fleet_readings.models import Reading
from fleet_readings.settings import READINGS_SHEET

from .conftest import READINGS_HEADERS, FakeSheets

NOW = datetime(2026, 1, 12, 9, 30)


def add(store, equipment, day, **values):
    return store.insert_reading(Reading(equipment_id=equipment.id, reading_date=day, **values))


def by_id(store):
    return {reading.id: reading for reading in store.list_readings()}


def store_backfill(store):
    return run_backfill(load_store_records(store), StoreBackfillWriter(store), now=NOW)


class RecordingWriter:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def write(self, record, updates, observation):
        if self.fail:
            raise RuntimeError("sheet is read-only")
        self.calls.append((record.record_id, dict(updates), observation))


def record(record_id, key, day, position, observation="", **values):
    return BackfillRecord(record_id=record_id, equipment_key=key, day=day, position=position,
                          values=values, observation=observation)


def test_zero_hour_meter_takes_the_earlier_value(store, catalog):
    excavator = catalog["excavator"]
    add(store, excavator, date(2026, 1, 5), hour_meter=87.3)
    target = add(store, excavator, date(2026, 1, 6), hour_meter=0.0)

    report = store_backfill(store)

    assert report.fixed == 1
    assert report.skipped_no_history == 0
    assert report.errors == 0
    assert report.equipment_affected == {str(excavator.id)}
    fixed = by_id(store)[target]
    assert fixed.hour_meter == 87.3
    assert fixed.observation == "[AUTO-CORRECTED 2026-01-12 09:30] hour_meter: 87,3"
    (change,) = report.changes
    assert (change.record_id, change.field, change.old_value, change.new_value) == (target, "hour_meter", 0.0, 87.3)


def test_second_run_changes_nothing(store, catalog):
    excavator = catalog["excavator"]
    add(store, excavator, date(2026, 1, 5), hour_meter=87.3)
    target = add(store, excavator, date(2026, 1, 6), hour_meter=0.0)
    store_backfill(store)
    before = by_id(store)[target]

    report = store_backfill(store)

    assert report.fixed == 0
    assert report.changes == []
    assert by_id(store)[target] == before


def test_non_zero_values_are_never_touched_and_observation_is_appended(store, catalog):
    truck = catalog["truck"]
    add(store, truck, date(2026, 1, 5), hour_meter=100.0, odometer=5000.0)
    target = add(store, truck, date(2026, 1, 6), hour_meter=104.5, odometer=0.0, observation="pneu trocado")

    report = store_backfill(store)

    reading = by_id(store)[target]
    assert report.fixed == 1
    assert reading.hour_meter == 104.5
    assert reading.odometer == 5000.0
    assert reading.observation == "pneu trocado | [AUTO-CORRECTED 2026-01-12 09:30] odometer: 5.000"


def test_zero_without_earlier_history_is_counted_and_kept(store, catalog):
    truck = catalog["truck"]
    first = add(store, truck, date(2026, 1, 5), odometer=0.0)
    add(store, truck, date(2026, 1, 6), odometer=5100.0)

    report = store_backfill(store)

    assert report.fixed == 0
    assert report.skipped_no_history == 1
    assert by_id(store)[first].odometer == 0.0
    assert by_id(store)[first].observation == ""


def test_other_equipment_history_is_ignored(store, catalog):
    add(store, catalog["truck"], date(2026, 1, 5), hour_meter=300.0)
    target = add(store, catalog["excavator"], date(2026, 1, 6), hour_meter=0.0)

    report = store_backfill(store)

    assert report.skipped_no_history == 1
    assert by_id(store)[target].hour_meter == 0.0


def test_carried_values_chain_through_consecutive_zeros(store, catalog):
    excavator = catalog["excavator"]
    add(store, excavator, date(2026, 1, 4), hour_meter=50.0)
    second = add(store, excavator, date(2026, 1, 5), hour_meter=0.0)
    third = add(store, excavator, date(2026, 1, 6), hour_meter=0.0)

    report = store_backfill(store)

    assert report.fixed == 2
    assert by_id(store)[second].hour_meter == 50.0
    assert by_id(store)[third].hour_meter == 50.0


def test_dates_win_over_insertion_order(store, catalog):
    excavator = catalog["excavator"]
    target = add(store, excavator, date(2026, 1, 10), hour_meter=0.0)
    add(store, excavator, date(2026, 1, 2), hour_meter=20.0)
    add(store, excavator, date(2026, 1, 8), hour_meter=40.0)
    add(store, excavator, date(2026, 1, 11), hour_meter=99.0)

    store_backfill(store)

    assert by_id(store)[target].hour_meter == 40.0


def test_previous_column_prefers_current_column_then_previous_column():
    records = [
        record(1, "A", date(2026, 1, 1), 0, hour_meter=None, hour_meter_previous=40.0),
        record(2, "A", date(2026, 1, 2), 1, hour_meter_previous=0.0),
        record(3, "B", date(2026, 1, 1), 0, hour_meter=45.0, hour_meter_previous=40.0),
        record(4, "B", date(2026, 1, 2), 1, hour_meter_previous=0.0),
    ]

    assert find_replacement(records[1], "hour_meter_previous", records) == 40.0
    assert find_replacement(records[3], "hour_meter_previous", records) == 45.0
    assert find_replacement(records[3], "odometer", records) is None


def test_undated_records_use_records_inserted_earlier():
    records = [
        record(1, "A", date(2026, 1, 1), 0, hour_meter=10.0),
        record(2, "A", None, 1, hour_meter=0.0),
        record(3, "A", date(2026, 1, 3), 2, hour_meter=30.0),
    ]
    writer = RecordingWriter()

    report = run_backfill(records, writer, now=NOW)

    assert report.fixed == 1
    assert writer.calls[0][:2] == (2, {"hour_meter": 10.0})



def test_undated_target_prefers_the_latest_inserted_record():
    records = [
        record(1, "A", date(2026, 1, 5), 0, hour_meter=50.0),
        record(2, "A", date(2026, 1, 1), 1, hour_meter=10.0),
        record(3, "A", None, 2, hour_meter=0.0),
    ]

    assert find_replacement(records[2], "hour_meter", records) == 10.0

def test_dated_target_ignores_undated_history():
    records = [
        record(1, "A", None, 0, hour_meter=10.0),
        record(2, "A", date(2026, 1, 3), 1, hour_meter=0.0),
    ]
    report = run_backfill(records, RecordingWriter(), now=NOW)
    assert report.skipped_no_history == 1


def test_records_without_meter_columns_are_counted():
    records = [record(1, "A", date(2026, 1, 1), 0), record(2, "A", date(2026, 1, 2), 1)]
    report = run_backfill(records, RecordingWriter(), now=NOW)
    assert report.skipped_no_columns == 2
    assert report.fixed == 0


def test_write_failure_counts_one_error_per_record():
    records = [
        record(1, "A", date(2026, 1, 1), 0, hour_meter=10.0, odometer=100.0),
        record(2, "A", date(2026, 1, 2), 1, hour_meter=0.0, odometer=0.0),
    ]

    report = run_backfill(records, RecordingWriter(fail=True), now=NOW)

    assert report.errors == 1
    assert report.fixed == 0
    assert records[1].values == {"hour_meter": 0.0, "odometer": 0.0}


def test_sheet_rows_are_backfilled_in_place():
    def row(day, hour_meter, observation=""):
        values = dict.fromkeys(READINGS_HEADERS, "")
        values.update({"Data": day, "Codigo": "CM-122", "Hor_Atual": hour_meter, "Observacao": observation})
        return [values[header] for header in READINGS_HEADERS]

    sheets = FakeSheets({READINGS_SHEET: [READINGS_HEADERS, row("10/01/2026", "87,3"), row("11/01/2026", "0", "chuva")]})

    report = run_backfill(load_sheet_records(sheets, READINGS_SHEET), SheetBackfillWriter(sheets, READINGS_SHEET), now=NOW)

    assert report.fixed == 1
    updated = sheets.get_sheet_rows(READINGS_SHEET).rows[1]
    assert updated["Hor_Atual"] == "87,3"
    assert updated["Observacao"] == "chuva | [AUTO-CORRECTED 2026-01-12 09:30] hour_meter: 87,3"
    assert updated["Km_Atual"] == ""


def test_legacy_single_column_sheet():
    sheets = FakeSheets(
        {
            "Legacy": [
                ["DATA", "VEICULO", "HORAS", "OBSERVACAO"],
                ["09/01/2026", "EC-21.2", "5.127", ""],
                ["10/01/2026", "EC-21.2", "0", ""],
            ]
        }
    )

    records = load_sheet_records(sheets, "Legacy")
    report = run_backfill(records, SheetBackfillWriter(sheets, "Legacy"), now=NOW)

    assert records[1].values == {"legacy_meter": 5127.0}
    assert report.fixed == 1
    assert sheets.sheets["Legacy"][2][2] == "5.127"



def test_sheet_without_observation_column_is_reported():
    sheets = FakeSheets(
        {
            "Legacy": [
                ["DATA", "VEICULO", "HORAS"],
                ["09/01/2026", "EC-21.2", "5.127"],
                ["10/01/2026", "EC-21.2", "0"],
            ]
        }
    )

    report = run_backfill(load_sheet_records(sheets, "Legacy"), SheetBackfillWriter(sheets, "Legacy"), now=NOW)

    assert report.fixed == 1
    assert report.unannotated == 1
    assert "corrected without an observation column" in report.summary
    assert sheets.sheets["Legacy"][2] == ["10/01/2026", "EC-21.2", "5.127"]
    assert "Observacao" not in sheets.updates[0][2]

class Clock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


def test_daily_guard_runs_once_per_day():
    clock = Clock(NOW)
    markers = InMemoryMarkerStore()
    guard = DailyRunGuard(markers, clock)

    assert guard.try_acquire() is True
    assert guard.try_acquire() is False
    assert markers.get("autofix:2026-01-12") is not None
    assert guard.has_run_today()

    clock.moment = NOW + timedelta(days=1)
    assert guard.try_acquire() is True


def test_daily_guard_is_atomic_across_threads():
    guard = DailyRunGuard(InMemoryMarkerStore(), Clock(NOW))
    results = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        results.append(guard.try_acquire())

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1


def test_run_daily_backfill_skips_when_already_ran(store, catalog):
    excavator = catalog["excavator"]
    add(store, excavator, date(2026, 1, 5), hour_meter=87.3)
    add(store, excavator, date(2026, 1, 6), hour_meter=0.0)
    guard = DailyRunGuard(InMemoryMarkerStore({"autofix:2026-01-12": "2026-01-12T06:00:00"}), Clock(NOW))
    loads = []

    def load():
        loads.append(True)
        return load_store_records(store)

    assert run_daily_backfill(guard, load, StoreBackfillWriter(store)) is None
    assert loads == []

    guard.clock = Clock(NOW + timedelta(days=1))
    report = run_daily_backfill(guard, load, StoreBackfillWriter(store))
    assert report.fixed == 1
    assert "[AUTO-CORRECTED 2026-01-13 09:30]" in store.list_readings()[1].observation


def test_json_marker_store_persists(tmp_path):
    path = tmp_path / "markers" / "autofix.json"
    JsonFileMarkerStore(path).set("autofix:2026-01-12", "done")

    assert JsonFileMarkerStore(path).get("autofix:2026-01-12") == "done"
    assert JsonFileMarkerStore(path).get("autofix:2026-01-13") is None

    path.write_text("{not json", encoding="utf-8")
    assert JsonFileMarkerStore(path).get("autofix:2026-01-12") is None


def test_failed_load_leaves_the_daily_run_available(store, catalog):
    excavator = catalog["excavator"]
    add(store, excavator, date(2026, 1, 5), hour_meter=87.3)
    add(store, excavator, date(2026, 1, 6), hour_meter=0.0)
    guard = DailyRunGuard(InMemoryMarkerStore(), Clock(NOW))

    def broken_load():
        raise RuntimeError("database is locked")

    with pytest.raises(RuntimeError):
        run_daily_backfill(guard, broken_load, StoreBackfillWriter(store))
    assert not guard.has_run_today()

    report = run_daily_backfill(guard, lambda: load_store_records(store), StoreBackfillWriter(store))
    assert report.fixed == 1
    assert guard.has_run_today()
