"""Single table of header aliases for every field read from the field sheets.

The readings and fuel-log sheets were typed by hand over several seasons, so
the same field shows up as ``Hor_Atual``, ``Horímetro Atual`` or
``HORIMETRO ATUAL`` depending on the tab. Every lookup goes through
``COLUMN_ALIASES``; matching is accent, case and punctuation insensitive.
"""

from fleet_readings.normalize import find_column, normalize_key

DATE = "date"
TIME = "time"
EQUIPMENT_CODE = "equipment_code"
HOUR_METER = "hour_meter"
HOUR_METER_PREVIOUS = "hour_meter_previous"
ODOMETER = "odometer"
ODOMETER_PREVIOUS = "odometer_previous"
LEGACY_METER = "legacy_meter"
HOUR_INTERVAL = "hour_interval"
ODOMETER_INTERVAL = "odometer_interval"
OPERATOR = "operator"
OBSERVATION = "observation"
CATEGORY = "category"
DESCRIPTION = "description"
COMPANY = "company"

COLUMN_ALIASES = {
    DATE: ("Data", "Date", "Data Leitura", "Reading Date"),
    TIME: ("Hora", "Time", "Horario"),
    EQUIPMENT_CODE: (
        "Codigo",
        "Cod",
        "Veiculo",
        "Equipamento",
        "Prefixo",
        "Fleet No",
        "Vehicle Code",
    ),
    HOUR_METER: (
        "Horimetro Atual",
        "Hor Atual",
        "H Atual",
        "Hour Meter",
        "Hour Meter Current",
    ),
    HOUR_METER_PREVIOUS: (
        "Horimetro Anterior",
        "Hor Anterior",
        "H Anterior",
        "Hour Meter Previous",
    ),
    ODOMETER: ("Km Atual", "Quilometragem Atual", "Odometer", "Odometer Current"),
    ODOMETER_PREVIOUS: ("Km Anterior", "Quilometragem Anterior", "Odometer Previous"),
    LEGACY_METER: ("Horas", "Horimetro", "Km", "Current Meter"),
    HOUR_INTERVAL: ("H T", "Intervalo H", "Intervalo Horas"),
    ODOMETER_INTERVAL: ("Total Km", "Intervalo Km"),
    OPERATOR: ("Operador", "Motorista", "Operador Motorista", "Operator"),
    OBSERVATION: ("Observacao", "Obs", "Observacoes", "Notes"),
    CATEGORY: ("Categoria", "Category", "Tipo Equipamento"),
    DESCRIPTION: ("Descricao", "Description", "Nome"),
    COMPANY: ("Empresa", "Company"),
}

METER_FIELDS = (HOUR_METER, HOUR_METER_PREVIOUS, ODOMETER, ODOMETER_PREVIOUS, LEGACY_METER)

# Legacy single-meter headers whose name says which meter they hold.
LEGACY_METER_KINDS = {"Horas": HOUR_METER, "Horimetro": HOUR_METER, "Km": ODOMETER}


def aliases_for(field: str) -> tuple:
    return COLUMN_ALIASES[field]


def default_header(field: str) -> str:
    return COLUMN_ALIASES[field][0]


def column_for(row, field: str) -> str | None:
    return find_column(row, COLUMN_ALIASES[field])


def value_for(row: dict, field: str):
    column = column_for(row, field)
    if column is None:
        return None
    value = row.get(column)
    if isinstance(value, str) and not value.strip():
        return None
    return value


def map_to_headers(headers: list[str], keyed_values: dict) -> dict:
    """Translate semantic field names into the sheet's own header spelling.

    Keys that are canonical field names are resolved through the alias table;
    any other key is matched against the headers as-is. Fields with no
    matching header keep the default spelling so a fresh sheet still gets
    readable columns.
    """

    mapped = {}
    for key, value in keyed_values.items():
        if key in COLUMN_ALIASES:
            header = find_column(headers, COLUMN_ALIASES[key]) or default_header(key)
        else:
            header = find_column(headers, [key]) or key
        mapped[header] = value
    return mapped


def legacy_meter_kind(header) -> str | None:
    """Meter field a legacy single-meter header stands for, or None if its name is neutral."""

    key = normalize_key(header)
    for alias, field in LEGACY_METER_KINDS.items():
        if key and normalize_key(alias) == key:
            return field
    return None
