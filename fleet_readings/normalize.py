import math
import numbers
import re
import unicodedata
from datetime import date, datetime, time, timedelta

import pandas as pd

from fleet_readings.settings import SERIAL_DATE_MAX, SERIAL_DATE_MIN

SPREADSHEET_EPOCH = datetime(1899, 12, 30)

VEHICLE_CATEGORY = "Vehicle"
MACHINE_CATEGORY = "Machine"
ALLOWED_CATEGORIES = [VEHICLE_CATEGORY, MACHINE_CATEGORY]
CATEGORY_ALIASES = {
    "VEHICLE": VEHICLE_CATEGORY,
    "VEHICLES": VEHICLE_CATEGORY,
    "VEICULO": VEHICLE_CATEGORY,
    "VEICULOS": VEHICLE_CATEGORY,
    "CAMINHAO": VEHICLE_CATEGORY,
    "CAMINHOES": VEHICLE_CATEGORY,
    "CAMINHONETE": VEHICLE_CATEGORY,
    "CARRO": VEHICLE_CATEGORY,
    "ONIBUS": VEHICLE_CATEGORY,
    "BUS": VEHICLE_CATEGORY,
    "MACHINE": MACHINE_CATEGORY,
    "MACHINES": MACHINE_CATEGORY,
    "MAQUINA": MACHINE_CATEGORY,
    "MAQUINAS": MACHINE_CATEGORY,
    "EQUIPMENT": MACHINE_CATEGORY,
    "EQUIPAMENTO": MACHINE_CATEGORY,
    "EQUIPAMENTOS": MACHINE_CATEGORY,
    "ESCAVADEIRA": MACHINE_CATEGORY,
    "CARREGADEIRA": MACHINE_CATEGORY,
    "RETROESCAVADEIRA": MACHINE_CATEGORY,
    "TRATOR": MACHINE_CATEGORY,
    "ROLO": MACHINE_CATEGORY,
    "MOTONIVELADORA": MACHINE_CATEGORY,
    "GERADOR": MACHINE_CATEGORY,
}

_ISO_PATTERN = re.compile(
    r"^(\d{4})-(\d{1,2})-(\d{1,2})"
    r"(?:[T ](\d{1,2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"
)
_BR_PATTERN = re.compile(
    r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_DASH_TABLE = str.maketrans({dash: "-" for dash in "‐‑‒–—―−﹘﹣－"})


def _is_missing(value) -> bool:
    if value is None or value is pd.NaT:
        return True
    if isinstance(value, (str, date, time)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def normalize_key(text) -> str:
    """Comparable form of a header or free-text label.

    Accents are dropped, letters uppercased, punctuation treated as a word
    break and runs of whitespace collapsed, so ``"Hor_Atual"``,
    ``" hor. atual "`` and ``"HOR ATUAL"`` all compare equal.
    """

    if _is_missing(text):
        return ""

    value = strip_accents(str(text)).upper()
    value = re.sub(r"[^0-9A-Z]+", " ", value)
    return " ".join(value.split())


def normalize_code(text) -> str:
    """Comparable form of an equipment code.

    Unlike :func:`normalize_key` the dots and dashes are significant
    (``CM-22.1`` and ``CM-22.10`` are different machines), but every unicode
    dash glyph collapses to ``-`` and all whitespace is removed.
    """

    if _is_missing(text):
        return ""

    value = strip_accents(str(text)).upper().translate(_DASH_TABLE)
    return "".join(value.split())


def normalize_category(category) -> str:
    if _is_missing(category):
        return ""

    raw_value = str(category).strip()
    normalized_key = normalize_key(raw_value)

    canonical = CATEGORY_ALIASES.get(normalized_key)
    if canonical:
        return canonical

    first_word = normalized_key.split(" ")[0] if normalized_key else ""
    canonical = CATEGORY_ALIASES.get(first_word)
    if canonical:
        return canonical

    if raw_value.title() in ALLOWED_CATEGORIES:
        return raw_value.title()

    return raw_value


def find_column(row, alias_candidates) -> str | None:
    """Return the first key of ``row`` matching any alias, or None.

    ``row`` may be a mapping (a sheet row) or a plain list of headers.
    """

    wanted = {normalize_key(alias) for alias in alias_candidates}
    wanted.discard("")

    for key in row:
        if not isinstance(key, str) or key.startswith("_"):
            continue
        if normalize_key(key) in wanted:
            return key

    return None


def _safe_datetime(year, month, day, hour=0, minute=0, second=0) -> datetime | None:
    try:
        return datetime(int(year), int(month), int(day), int(hour or 0), int(minute or 0), int(second or 0))
    except ValueError:
        return None


def _from_serial(value: float) -> datetime | None:
    if not SERIAL_DATE_MIN < value < SERIAL_DATE_MAX:
        return None

    return SPREADSHEET_EPOCH + timedelta(seconds=round(value * 86400))


def parse_time(raw) -> timedelta | None:
    """Parse a time of day given as ``HH:mm[:ss]`` text or a fractional day."""

    if _is_missing(raw) or isinstance(raw, bool):
        return None

    if isinstance(raw, time):
        return timedelta(hours=raw.hour, minutes=raw.minute, seconds=raw.second)

    if isinstance(raw, numbers.Real):
        fraction = float(raw)
        if 0 <= fraction < 1:
            return timedelta(seconds=round(fraction * 86400))
        return None

    text = str(raw).strip()
    match = _TIME_PATTERN.match(text)
    if match:
        hours, minutes, seconds = (int(part or 0) for part in match.groups())
        if hours < 24 and minutes < 60 and seconds < 60:
            return timedelta(hours=hours, minutes=minutes, seconds=seconds)
        return None

    try:
        fraction = float(text.replace(",", "."))
    except ValueError:
        return None

    if 0 <= fraction < 1:
        return timedelta(seconds=round(fraction * 86400))
    return None


def _parse_date_part(raw) -> datetime | None:
    if _is_missing(raw) or isinstance(raw, bool):
        return None

    if isinstance(raw, datetime):
        return datetime(raw.year, raw.month, raw.day, raw.hour, raw.minute, raw.second)

    if isinstance(raw, date):
        return datetime.combine(raw, time.min)

    if isinstance(raw, numbers.Real):
        value = float(raw)
        return _from_serial(value) if math.isfinite(value) else None

    text = str(raw).strip()
    if not text:
        return None

    match = _ISO_PATTERN.match(text)
    if match:
        return _safe_datetime(*match.groups())

    match = _BR_PATTERN.match(text)
    if match:
        day, month, year, hour, minute, second = match.groups()
        return _safe_datetime(year, month, day, hour, minute, second)

    try:
        serial = float(text.replace(",", "."))
    except ValueError:
        return None

    return _from_serial(serial) if math.isfinite(serial) else None


def parse_date(raw, time_raw=None) -> datetime | None:
    """Parse the date encodings found across the readings sources.

    Accepts ISO ``yyyy-MM-dd[THH:mm[:ss]]``, ``dd/mm/yyyy`` (``/`` or ``-``),
    spreadsheet serial day numbers and date/datetime objects. ``time_raw``,
    when parseable, replaces the time of day. Returns None when the date
    cannot be understood; callers keep such records as low-confidence.
    """

    parsed = _parse_date_part(raw)
    if parsed is None:
        return None

    if time_raw is not None:
        offset = parse_time(time_raw)
        if offset is not None:
            parsed = datetime.combine(parsed.date(), time.min) + offset

    return parsed


def parse_day(raw) -> date | None:
    parsed = parse_date(raw)
    return parsed.date() if parsed else None


def format_br_date(value) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%d/%m/%Y")


def format_time(raw) -> str:
    """Zero-padded ``HH:MM:SS`` text for a time of day, or "" when unreadable.

    Stored times must sort in chronological order, so ``9:30`` becomes
    ``09:30:00``.
    """

    parsed = parse_time(raw)
    if parsed is None:
        return ""
    seconds = int(parsed.total_seconds())
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def parse_number(raw) -> float | None:
    """Parse a meter value typed in pt-BR or en-US notation.

    ``"120,5"`` is 120.5, ``"5.127,80"`` is 5127.8, ``"1,234.56"`` is 1234.56.
    A single dot followed by three or more digits is a thousands separator
    (``"5.127"`` is 5127), which is how hour-meters are usually typed.
    Blank or unreadable input gives None rather than a numeric sentinel.
    """

    if _is_missing(raw) or isinstance(raw, bool):
        return None

    if isinstance(raw, numbers.Real):
        value = float(raw)
        return value if math.isfinite(value) else None

    text = re.sub(r"\s", "", str(raw))
    if not text:
        return None

    dots = text.count(".")
    commas = text.count(",")

    if dots and commas:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif commas:
        text = text.replace(",", ".")
    elif dots > 1:
        text = text.replace(".", "")
    elif dots == 1:
        before, after = text.split(".")
        if before and len(after) >= 3 and after.isdigit():
            text = before + after

    text = re.sub(r"[^0-9.\-]", "", text)

    try:
        value = float(text)
    except ValueError:
        return None

    return value if math.isfinite(value) else None


def format_number(value, decimals: int | None = None) -> str:
    """Render a number the way the field sheets expect it (``1.234,5``)."""

    if value is None or not math.isfinite(value):
        return ""

    places = 2 if decimals is None else decimals
    rendered = f"{value:,.{places}f}"
    if decimals is None and "." in rendered:
        rendered = rendered.rstrip("0").rstrip(".")

    return rendered.replace(",", "_").replace(".", ",").replace("_", ".")
