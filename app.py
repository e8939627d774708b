import json
import logging
from datetime import date, datetime

import pandas as pd
import streamlit as st

from fleet_readings.backfill import (
    DailyRunGuard,
    JsonFileMarkerStore,
    SheetBackfillWriter,
    StoreBackfillWriter,
    load_sheet_records,
    load_store_records,
    run_backfill,
    run_daily_backfill,
)
from fleet_readings.collector import CandidateCollector, build_sources
from fleet_readings.errors import ReadingValidationError
from fleet_readings.gaps import (
    DateWindow,
    GapDetector,
    coverage_by_date,
    coverage_frame,
    day_label,
)
from fleet_readings.models import EquipmentIndex
from fleet_readings.normalize import format_br_date, format_number, normalize_category
from fleet_readings.registration import import_sheet_readings, register_reading, repeat_previous
from fleet_readings.resolver import describe, resolve_previous
from fleet_readings.settings import (
    DATA_DIR,
    DEFAULT_DATABASE_URL,
    DEFAULT_PENDING_DAYS,
    FUEL_LOG_SHEET,
    PENDING_DAY_OPTIONS,
    READINGS_SHEET,
)
from fleet_readings.sheets import SheetClient, open_spreadsheet, serialize_service_account
from fleet_readings.store import ReadingStore

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

st.set_page_config(page_title="Fleet Readings", layout="wide", page_icon="⏱️")

CATALOG_FILE = DATA_DIR / "Database.csv"
CATALOG_COLUMNS = {
    "code": ["Fleet No", "Codigo", "Code"],
    "name": ["Description", "Descricao", "Name"],
    "category": ["Category", "Categoria"],
    "company": ["Company", "Empresa"],
}
SHEET_CACHE_TTL_SECONDS = 120


class MissingSecretError(Exception):
    """Raised when required Streamlit secrets are absent."""


@st.cache_resource
def get_store(database_url: str) -> ReadingStore:
    return ReadingStore.from_url(database_url)


@st.cache_resource
def get_spreadsheet(sheet_url: str, service_account_json: str):
    return open_spreadsheet(sheet_url, service_account_json)


@st.cache_data(ttl=SHEET_CACHE_TTL_SECONDS)
def load_sheet_data(sheet_url: str, sheet_name: str, service_account_json: str):
    client = SheetClient(get_spreadsheet(sheet_url, service_account_json))
    return client.get_sheet_rows(sheet_name)


class DashboardSheets:
    """SheetClient whose reads go through the Streamlit data cache.

    Every write clears the cache so the next read sees it.
    """

    def __init__(self, sheet_url: str, service_account_json: str):
        self.sheet_url = sheet_url
        self.service_account_json = service_account_json
        self.client = SheetClient(get_spreadsheet(sheet_url, service_account_json))

    def get_sheet_rows(self, sheet_name: str):
        return load_sheet_data(self.sheet_url, sheet_name, self.service_account_json)

    def update_row(self, sheet_name: str, row_number: int, keyed_values: dict) -> None:
        self.client.update_row(sheet_name, row_number, keyed_values)
        load_sheet_data.clear()

    def append_or_upsert_row(self, sheet_name: str, keyed_values: dict, match_fields=()):
        row_number = self.client.append_or_upsert_row(sheet_name, keyed_values, match_fields)
        load_sheet_data.clear()
        return row_number


def require_google_sheet():
    """
    Validate and return the spreadsheet resources.

    Call this only after the page has begun rendering; Streamlit Cloud mounts
    secrets at runtime, so touching st.secrets at import time can keep the
    diagnostics from rendering.
    """

    secrets_keys = list(st.secrets.keys())
    sheet_url = st.secrets.get("sheet_url")
    service_account_info = st.secrets.get("gcp_service_account")

    if not sheet_url:
        raise MissingSecretError(
            f"Missing 'sheet_url' secret. Visible keys: {secrets_keys}"
        )

    if not service_account_info:
        raise MissingSecretError(
            f"Missing 'gcp_service_account' secret. Visible keys: {secrets_keys}"
        )

    service_account_json = serialize_service_account(service_account_info)
    sheets = DashboardSheets(sheet_url, service_account_json)

    return sheets, sheet_url, service_account_json, secrets_keys


def render_boot_diagnostics():
    """Display secrets visibility before any fail-fast checks."""

    boot_panel = st.sidebar.container()
    boot_panel.subheader("Boot Diagnostics")
    visible_keys = list(st.secrets.keys())
    boot_panel.write(
        {
            "visible_keys": visible_keys,
            "has_sheet_url": "sheet_url" in st.secrets,
            "has_gcp_service_account": "gcp_service_account" in st.secrets,
            "has_database_url": "database_url" in st.secrets,
        }
    )

    return visible_keys


def _first_present(frame: pd.DataFrame, candidates):
    for column in candidates:
        if column in frame.columns:
            return column
    return None


def seed_catalog(store: ReadingStore, catalog_path) -> int:
    """Load the equipment catalog CSV into an empty store."""

    if store.list_equipment() or not catalog_path.exists():
        return 0

    catalog = pd.read_csv(catalog_path, dtype=str).fillna("")
    code_column = _first_present(catalog, CATALOG_COLUMNS["code"])
    if code_column is None:
        st.warning(f"'{catalog_path.name}' has no equipment code column; catalog not loaded.")
        return 0

    columns_found = {
        key: _first_present(catalog, candidates) for key, candidates in CATALOG_COLUMNS.items()
    }
    added = 0
    for _, row in catalog.iterrows():
        code = row[code_column].strip()
        if not code:
            continue
        store.add_equipment(
            code=code,
            name=row[columns_found["name"]] if columns_found["name"] else "",
            category=normalize_category(row[columns_found["category"]]) if columns_found["category"] else "",
            company=row[columns_found["company"]] if columns_found["company"] else "",
        )
        added += 1

    logger.info("Seeded %s catalog entries from %s", added, catalog_path)
    return added


def build_search_labels(equipment) -> dict:
    return {
        f"{item.code} | {item.display_name} ({item.category or 'uncategorized'})": item
        for item in equipment
    }


def render_backfill_report(report, destination=st):
    if report.fixed:
        destination.success(f"✅ {report.summary}")
    elif report.errors:
        destination.error(report.summary)
    else:
        destination.info(report.summary)

    if report.changes:
        destination.dataframe(
            pd.DataFrame(
                [
                    {
                        "Record": change.record_id,
                        "Equipment": change.equipment_key,
                        "Date": format_br_date(change.day) if change.day else "",
                        "Field": change.field,
                        "Old": format_number(change.old_value),
                        "New": format_number(change.new_value),
                    }
                    for change in report.changes
                ]
            ),
            use_container_width=True,
        )


def run_daily_autofix(store: ReadingStore):
    guard = DailyRunGuard(JsonFileMarkerStore())
    try:
        report = run_daily_backfill(
            guard, lambda: load_store_records(store), StoreBackfillWriter(store)
        )
    except Exception as error:
        logger.exception("Daily backfill failed")
        st.sidebar.warning(f"Daily zero backfill failed: {error}")
        return None

    if report is not None and report.fixed:
        st.toast(f"Daily zero backfill: {report.summary}")
    return report


def main():
    render_boot_diagnostics()

    try:
        sheets, sheet_url, service_account_json, secret_keys = require_google_sheet()
    except MissingSecretError as error:
        st.error(error)
        st.stop()
    except Exception as error:
        st.error(f"Failed to connect to Google Sheets: {error}")
        st.stop()

    database_url = st.secrets.get("database_url", DEFAULT_DATABASE_URL)
    try:
        store = get_store(database_url)
    except Exception as error:
        st.error(f"Unable to open the readings database: {error}")
        st.stop()

    seed_catalog(store, CATALOG_FILE)
    equipment = store.list_active_equipment()
    index = EquipmentIndex(equipment)
    collector = CandidateCollector(build_sources(store, sheets, index))

    daily_report = run_daily_autofix(store)

    st.sidebar.title("⏱️ Fleet Readings")
    st.sidebar.caption("Hour-meter and odometer readings, gaps and zero corrections.")
    page = st.sidebar.radio(
        "Navigate", ["📝 Log Reading", "⏳ Pending Readings", "🛠️ Zero Backfill"]
    )

    diagnostics_panel = st.sidebar.container()
    diagnostics_panel.markdown("---")
    diagnostics_panel.subheader("Diagnostics")
    diagnostics_panel.write({"st.secrets.keys()": secret_keys})
    diagnostics_panel.write(
        {
            "client_email": json.loads(service_account_json).get("client_email"),
            "sheet_url": sheet_url,
            "database_url": database_url.split("@")[-1],
            "active_equipment": len(equipment),
        }
    )

    if not equipment:
        st.warning(
            f"No active equipment in the catalog. Place {CATALOG_FILE.name} in the data/ folder."
        )
        st.stop()

    if page == "📝 Log Reading":
        st.title("New Meter Reading")

        labels = build_search_labels(equipment)
        selected_label = st.selectbox(
            "🔍 Search equipment (type to search):", options=[""] + list(labels)
        )

        if not selected_label:
            st.info("Select an equipment to see its last known reading.")
            st.stop()

        selected = labels[selected_label]
        previous = resolve_previous(collector, selected)

        column_left, column_right = st.columns(2)
        with column_left:
            st.success(f"**Selected:** {selected.display_name}")
            st.caption(describe(previous))
            detail_column_1, detail_column_2 = st.columns(2)
            detail_column_1.metric("Previous hour-meter", format_number(previous.hour_meter) if previous.hour_meter else "-")
            detail_column_2.metric("Previous odometer", format_number(previous.odometer) if previous.odometer else "-")
            if previous.operator:
                st.write(f"**Last operator:** {previous.operator}")

        with column_right:
            reading_day = st.date_input("Date", date.today(), max_value=date.today())
            hour_meter = st.number_input(
                "Current hour-meter (h)", min_value=0.0, step=0.1, value=previous.hour_meter
            )
            odometer = st.number_input(
                "Current odometer (km)", min_value=0.0, step=1.0, value=previous.odometer
            )
            operator = st.text_input("Operator / driver", value=previous.operator)
            observation = st.text_area("Observation")

        if st.button("Save Reading", type="primary"):
            try:
                result = register_reading(
                    store,
                    selected,
                    reading_day,
                    hour_meter=hour_meter,
                    odometer=odometer,
                    operator=operator,
                    observation=observation,
                    previous=previous,
                    sheets=sheets,
                )
            except ReadingValidationError as error:
                st.error(str(error))
                st.stop()

            for alert in result.alerts:
                st.warning(
                    f"{alert.kind.value.replace('_', ' ')} is lower than the previous reading "
                    f"({format_number(alert.current)} < {format_number(alert.previous)})."
                )
            if result.mirror_error:
                st.warning(f"Reading saved, but the {READINGS_SHEET} sheet was not updated: {result.mirror_error}")

            st.toast(f"Reading saved for {selected.code}")
            st.success(f"✅ Reading #{result.reading_id} saved for {selected.code} on {format_br_date(reading_day)}.")

    elif page == "⏳ Pending Readings":
        st.title("Pending Readings")

        if st.button("🔄 Refresh data", type="secondary"):
            st.cache_data.clear()
            st.rerun()

        filter_col_1, filter_col_2, filter_col_3 = st.columns(3)
        with filter_col_1:
            days = st.radio(
                "Window",
                PENDING_DAY_OPTIONS,
                index=PENDING_DAY_OPTIONS.index(DEFAULT_PENDING_DAYS),
                format_func=lambda value: f"{value} days",
                horizontal=True,
            )
        with filter_col_2:
            use_specific_date = st.checkbox("Specific date")
            specific_date = st.date_input(
                "Date", date.today(), max_value=date.today(), disabled=not use_specific_date
            )
        with filter_col_3:
            search = st.text_input("Search code, name or category")

        window = DateWindow.single(specific_date) if use_specific_date else DateWindow.last_days(days)
        detector = GapDetector(store, sheets, [READINGS_SHEET, FUEL_LOG_SHEET], index)
        try:
            seen = detector.collect_seen(window, equipment)
            gaps = detector.find_gaps(equipment, window, search=search, seen=seen)
        except Exception as error:
            logger.exception("Pending readings failed")
            st.warning(f"Unable to compute pending readings: {error}")
            st.stop()

        if detector.unavailable:
            st.warning(
                "Some sources could not be read and were ignored: "
                + ", ".join(detector.unavailable)
            )

        coverage = coverage_by_date(equipment, window, seen)
        kpi_columns = st.columns(len(coverage))
        for column, day_coverage in zip(kpi_columns, coverage):
            column.metric(
                day_label(day_coverage.day),
                f"{day_coverage.missing} pending",
                f"{day_coverage.filled}/{day_coverage.total} filled",
                delta_color="off",
            )

        with st.expander("Coverage grid", expanded=False):
            st.dataframe(coverage_frame(equipment, window, seen), use_container_width=True)

        for day, entries in gaps.items():
            st.markdown("---")
            st.subheader(f"{day_label(day)} ({len(entries)} pending)")
            if not entries:
                st.success("All readings registered.")
                continue

            for entry in entries:
                row_left, row_middle, row_right = st.columns([3, 2, 1])
                row_left.write(f"**{entry.equipment.code}** | {entry.equipment.display_name}")
                if entry.last_reading is not None:
                    row_middle.caption(
                        f"Last: {format_number(entry.last_reading.hour_meter) or '-'} h / "
                        f"{format_number(entry.last_reading.odometer) or '-'} km"
                    )
                if row_right.button(
                    "Repeat previous",
                    key=f"repeat-{entry.equipment.id}-{day.isoformat()}",
                    disabled=entry.last_reading is None,
                ):
                    try:
                        repeat_previous(store, entry, day, sheets=sheets)
                    except ReadingValidationError as error:
                        st.error(str(error))
                    else:
                        st.toast(f"Repeated last reading for {entry.equipment.code}")
                        st.cache_data.clear()
                        st.rerun()

    elif page == "🛠️ Zero Backfill":
        st.title("Zero Backfill")
        st.write(
            "Replaces meter values recorded as 0 with the last earlier value of the same "
            "equipment. Non-zero values are never changed."
        )

        if daily_report is not None:
            st.caption(f"Today's automatic run ({datetime.now():%d/%m/%Y}):")
            render_backfill_report(daily_report)

        action_col_1, action_col_2, action_col_3 = st.columns(3)

        with action_col_1:
            if st.button("Run on database", type="primary"):
                report = run_backfill(load_store_records(store), StoreBackfillWriter(store))
                render_backfill_report(report)

        with action_col_2:
            if st.button(f"Run on {READINGS_SHEET} sheet"):
                try:
                    records = load_sheet_records(sheets, READINGS_SHEET)
                except Exception as error:
                    st.error(f"Unable to load '{READINGS_SHEET}': {error}")
                    st.stop()
                report = run_backfill(records, SheetBackfillWriter(sheets, READINGS_SHEET))
                load_sheet_data.clear()
                render_backfill_report(report)

        with action_col_3:
            if st.button(f"Import missing readings from {READINGS_SHEET}"):
                try:
                    data = sheets.get_sheet_rows(READINGS_SHEET)
                except Exception as error:
                    st.error(f"Unable to load '{READINGS_SHEET}': {error}")
                    st.stop()
                result = import_sheet_readings(store, data.rows, index)
                st.success(
                    f"✅ {result.imported} imported, {result.skipped} already present, "
                    f"{result.unmatched} unmatched, {result.errors} errors."
                )
                if result.unmatched_codes:
                    st.caption("Unmatched codes: " + ", ".join(sorted(result.unmatched_codes)))

        with st.expander("Readings sheet preview", expanded=False):
            try:
                st.dataframe(sheets.get_sheet_rows(READINGS_SHEET).to_dataframe(), use_container_width=True)
            except Exception as error:
                st.warning(f"Unable to load '{READINGS_SHEET}': {error}")


if __name__ == "__main__":
    main()
