import json
import logging
from dataclasses import dataclass, field

import gspread
import pandas as pd
from google.oauth2.service_account import Credentials
from gspread.utils import rowcol_to_a1

from fleet_readings.columns import DATE, map_to_headers
from fleet_readings.errors import SourceUnavailableError
from fleet_readings.normalize import normalize_code, parse_day

logger = logging.getLogger(__name__)

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

ROW_NUMBER_KEY = "_row"


@dataclass
class SheetData:
    headers: list = field(default_factory=list)
    rows: list = field(default_factory=list)

    def to_dataframe(self) -> pd.DataFrame:
        columns = [header for header in self.headers if header] + [ROW_NUMBER_KEY]
        return pd.DataFrame(self.rows, columns=columns)


def serialize_service_account(service_account_info) -> str:
    """Return a stable JSON string for caching client resources."""

    try:
        service_account_dict = dict(service_account_info)
    except TypeError:
        service_account_dict = service_account_info

    return json.dumps(service_account_dict, sort_keys=True)


def get_gspread_client(service_account_json: str) -> gspread.Client:
    credentials = Credentials.from_service_account_info(
        json.loads(service_account_json), scopes=GOOGLE_SCOPES
    )
    return gspread.authorize(credentials)


def open_spreadsheet(sheet_url: str, service_account_json: str) -> gspread.Spreadsheet:
    client = get_gspread_client(service_account_json)
    return client.open_by_url(sheet_url)


def rows_from_values(values: list) -> SheetData:
    """Turn ``get_all_values()`` output into keyed rows.

    Headers are stripped (the readings tab has carried a leading-space
    ``" Data"`` header for years); blank trailing rows are dropped; every
    row remembers its 1-based sheet row number under ``_row``.
    """

    if not values:
        return SheetData()

    headers = [str(header).strip() for header in values[0]]
    rows = []
    for offset, raw_row in enumerate(values[1:], start=2):
        if not any(str(cell).strip() for cell in raw_row):
            continue
        padded = list(raw_row) + [""] * (len(headers) - len(raw_row))
        row = {header: padded[index] for index, header in enumerate(headers) if header}
        row[ROW_NUMBER_KEY] = offset
        rows.append(row)

    return SheetData(headers=headers, rows=rows)


class SheetClient:
    """Read/write access to the field spreadsheets.

    ``get_sheet_rows`` returns rows keyed by the sheet's own headers; writers
    accept semantic field names and translate them through the alias table.
    """

    def __init__(self, spreadsheet: gspread.Spreadsheet):
        self.spreadsheet = spreadsheet

    def _worksheet(self, sheet_name: str) -> gspread.Worksheet:
        try:
            return self.spreadsheet.worksheet(sheet_name)
        except gspread.WorksheetNotFound as error:
            raise SourceUnavailableError(f"Worksheet '{sheet_name}' not found") from error
        except Exception as error:
            raise SourceUnavailableError(
                f"Unable to access worksheet '{sheet_name}': {error}"
            ) from error

    def get_sheet_rows(self, sheet_name: str) -> SheetData:
        worksheet = self._worksheet(sheet_name)
        try:
            values = worksheet.get_all_values()
        except Exception as error:
            raise SourceUnavailableError(
                f"Failed to read worksheet '{sheet_name}': {error}"
            ) from error

        data = rows_from_values(values)
        logger.info("Loaded %s rows from %s", len(data.rows), sheet_name)
        return data

    def update_row(self, sheet_name: str, row_number: int, keyed_values: dict) -> None:
        worksheet = self._worksheet(sheet_name)
        try:
            headers = [header.strip() for header in worksheet.row_values(1)]
            current = worksheet.row_values(row_number)
        except Exception as error:
            raise SourceUnavailableError(
                f"Failed to read row {row_number} of '{sheet_name}': {error}"
            ) from error

        mapped = map_to_headers(headers, keyed_values)
        updated = list(current) + [""] * (len(headers) - len(current))
        for index, header in enumerate(headers):
            if header in mapped:
                updated[index] = mapped[header]

        end_cell = rowcol_to_a1(row_number, len(headers))
        try:
            worksheet.update(
                range_name=f"A{row_number}:{end_cell}",
                values=[updated],
                value_input_option="USER_ENTERED",
            )
        except Exception as error:
            raise SourceUnavailableError(
                f"Failed to update row {row_number} of '{sheet_name}': {error}"
            ) from error

        logger.info("Updated %s row %s: %s", sheet_name, row_number, sorted(mapped))

    def append_or_upsert_row(self, sheet_name: str, keyed_values: dict, match_fields=()) -> int | None:
        """Append a row, or update the existing one matching ``match_fields``.

        Matching compares normalized values, with codes compared as
        equipment codes. Returns the updated row number, or None on append.
        """

        data = self.get_sheet_rows(sheet_name)
        mapped = map_to_headers(data.headers, keyed_values)

        if match_fields:
            wanted = {}
            for name in match_fields:
                header = next(iter(map_to_headers(data.headers, {name: None})))
                wanted[header] = (name, _comparable(name, mapped.get(header)))
            for row in data.rows:
                if all(
                    _comparable(name, row.get(header)) == value
                    for header, (name, value) in wanted.items()
                ):
                    self.update_row(sheet_name, row[ROW_NUMBER_KEY], keyed_values)
                    return row[ROW_NUMBER_KEY]

        headers = data.headers or list(mapped)
        row_values = [mapped.get(header, "") for header in headers]
        worksheet = self._worksheet(sheet_name)
        logger.info("Appending to %s: %s", sheet_name, row_values)
        try:
            worksheet.append_row(row_values, value_input_option="USER_ENTERED")
        except Exception as error:
            raise SourceUnavailableError(f"Failed to append to {sheet_name}: {error}") from error
        return None


def _comparable(field_name: str, value) -> str:
    if field_name == DATE:
        day = parse_day(value)
        return day.isoformat() if day else ""
    return normalize_code(value)
