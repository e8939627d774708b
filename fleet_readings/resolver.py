import logging
from datetime import datetime

from fleet_readings.models import Candidate, MeterKind, ResolvedReading, SourceTag, is_measured

logger = logging.getLogger(__name__)

# Lower value wins a timestamp tie.
SOURCE_PRIORITY = {
    SourceTag.SHEET_READINGS: 0,
    SourceTag.SHEET_FUEL_LOG: 1,
    SourceTag.DB_FUEL_EVENT: 2,
    SourceTag.DB_READING: 3,
}


def rank_candidates(candidates) -> list[Candidate]:
    """Order candidates best first.

    Dated candidates come before undated ones, newest first; equal timestamps
    fall back to source priority and then to the order they were given in.
    """

    def sort_key(item):
        position, candidate = item
        dated = candidate.timestamp is not None
        stamp = (candidate.timestamp - datetime.min).total_seconds() if dated else 0.0
        return (
            0 if dated else 1,
            -stamp,
            SOURCE_PRIORITY.get(candidate.source, len(SOURCE_PRIORITY)),
            position,
        )

    return [candidate for _, candidate in sorted(enumerate(candidates), key=sort_key)]


def _first_measured(ranked, kind: MeterKind) -> float:
    for candidate in ranked:
        value = getattr(candidate, kind.value)
        if is_measured(value):
            return float(value)
    return 0.0


def resolve(candidates) -> ResolvedReading:
    ranked = rank_candidates(candidates)
    if not ranked:
        return ResolvedReading()

    top = ranked[0]
    resolved = ResolvedReading(
        hour_meter=_first_measured(ranked, MeterKind.HOUR_METER),
        odometer=_first_measured(ranked, MeterKind.ODOMETER),
        date=top.timestamp,
        operator=top.operator or "",
        source=top.source,
    )

    logger.debug(
        "Resolved from %s candidates: top=%s hour_meter=%s odometer=%s",
        len(ranked),
        top.source.value,
        resolved.hour_meter,
        resolved.odometer,
    )
    return resolved


def resolve_previous(collector, equipment) -> ResolvedReading:
    """Best known previous reading for ``equipment``; empty when nothing is reachable."""

    try:
        candidates = collector.collect(equipment.code, equipment.id)
    except Exception as error:
        logger.warning("Could not collect candidates for %s: %s", equipment.code, error)
        return ResolvedReading()

    return resolve(candidates)


def describe(resolved: ResolvedReading) -> str:
    if resolved.is_first_reading:
        return "No previous reading found."

    when = resolved.date.strftime("%d/%m/%Y") if isinstance(resolved.date, datetime) else "unknown date"
    source = resolved.source.value if resolved.source else "unknown source"
    return f"Last reading on {when} ({source})"
