from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"

DATABASE_FILE = DATA_DIR / "fleet.db"
DEFAULT_DATABASE_URL = f"sqlite:///{DATABASE_FILE}"
AUTOFIX_MARKER_FILE = DATA_DIR / "autofix_markers.json"

READINGS_SHEET = "Horimetros"
FUEL_LOG_SHEET = "AbastecimentoCanteiro01"

SOURCE_TIMEOUT_SECONDS = 8.0

DEFAULT_PENDING_DAYS = 3
PENDING_DAY_OPTIONS = [3, 5, 7]

# Spreadsheet serial days outside this window are treated as plain numbers.
SERIAL_DATE_MIN = 40000
SERIAL_DATE_MAX = 60000

AUTOFIX_KEY_PREFIX = "autofix:"
AUTOFIX_MARKER_LABEL = "AUTO-CORRECTED"
REPEAT_PREVIOUS_NOTE = "Equipment did not work"
