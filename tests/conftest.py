from datetime import date

import pytest

from fleet_readings.columns import DATE, map_to_headers
from fleet_readings.errors import SourceUnavailableError
from fleet_readings.normalize import normalize_code, parse_day
from fleet_readings.sheets import rows_from_values
from fleet_readings.store import ReadingStore, create_session_factory

READINGS_HEADERS = [
    "Data",
    "Codigo",
    "Categoria",
    "Descricao",
    "Empresa",
    "Operador",
    "Hor_Anterior",
    "Hor_Atual",
    "H.T",
    "Km_Anterior",
    "Km_Atual",
    "Total KM",
    "Observacao",
]


class FakeSheets:
    """In-memory stand-in for SheetClient, one list of rows per tab."""

    def __init__(self, sheets=None):
        self.sheets = {name: [list(row) for row in values] for name, values in (sheets or {}).items()}
        self.failing = set()
        self.updates = []
        self.appends = []

    def _values(self, sheet_name):
        if sheet_name in self.failing:
            raise SourceUnavailableError(f"{sheet_name} is down")
        if sheet_name not in self.sheets:
            raise SourceUnavailableError(f"Worksheet '{sheet_name}' not found")
        return self.sheets[sheet_name]

    def get_sheet_rows(self, sheet_name):
        return rows_from_values(self._values(sheet_name))

    def update_row(self, sheet_name, row_number, keyed_values):
        values = self._values(sheet_name)
        headers = [header.strip() for header in values[0]]
        mapped = map_to_headers(headers, keyed_values)
        row = values[row_number - 1]
        row.extend([""] * (len(headers) - len(row)))
        for position, header in enumerate(headers):
            if header in mapped:
                row[position] = mapped[header]
        self.updates.append((sheet_name, row_number, mapped))

    def append_or_upsert_row(self, sheet_name, keyed_values, match_fields=()):
        values = self._values(sheet_name)
        data = rows_from_values(values)
        mapped = map_to_headers(data.headers, keyed_values)

        def comparable(name, value):
            if name == DATE:
                day = parse_day(value)
                return day.isoformat() if day else ""
            return normalize_code(value)

        if match_fields:
            for row in data.rows:
                if all(
                    comparable(name, row.get(next(iter(map_to_headers(data.headers, {name: None})))))
                    == comparable(name, keyed_values.get(name))
                    for name in match_fields
                ):
                    self.update_row(sheet_name, row["_row"], keyed_values)
                    return row["_row"]

        values.append([mapped.get(header, "") for header in data.headers])
        self.appends.append((sheet_name, mapped))
        return None


@pytest.fixture
def store(tmp_path):
    return ReadingStore(create_session_factory(f"sqlite:///{tmp_path / 'fleet.db'}"))


@pytest.fixture
def fake_sheets():
    return FakeSheets()


@pytest.fixture
def catalog(store):
    """Three active catalog entries: a truck, an excavator and a pickup."""

    truck_id = store.add_equipment("CM-122", "Caminhão Basculante", "Veículo", company="HSTC")
    excavator_id = store.add_equipment("EC-21.2", "Escavadeira Hidráulica", "Máquina", company="HSTC")
    pickup_id = store.add_equipment("CM-22.1", "Caminhonete", "Vehicle")
    by_id = {item.id: item for item in store.list_active_equipment()}
    return {
        "truck": by_id[truck_id],
        "excavator": by_id[excavator_id],
        "pickup": by_id[pickup_id],
    }


@pytest.fixture
def today():
    return date(2026, 1, 12)
