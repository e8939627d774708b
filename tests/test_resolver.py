from datetime import datetime
from itertools import permutations

import pytest

from fleet_readings.models import Candidate, Equipment, SourceTag
from fleet_readings.resolver import SOURCE_PRIORITY, rank_candidates, resolve, resolve_previous


def candidate(source, timestamp=None, hour_meter=None, odometer=None, operator=""):
    return Candidate(
        equipment_id=1,
        timestamp=timestamp,
        hour_meter=hour_meter,
        odometer=odometer,
        operator=operator,
        source=source,
    )


def test_empty_input_is_a_first_reading():
    resolved = resolve([])
    assert resolved.is_first_reading
    assert resolved.hour_meter == 0.0
    assert resolved.odometer == 0.0
    assert resolved.source is None


def test_newest_candidate_wins_and_missing_kind_is_carried_from_older_one():
    older = candidate(SourceTag.DB_READING, datetime(2026, 1, 10), hour_meter=120.5, operator="Ana")
    newer = candidate(SourceTag.DB_FUEL_EVENT, datetime(2026, 1, 11), odometer=45000, operator="Rui")

    resolved = resolve([older, newer])

    assert resolved.date == datetime(2026, 1, 11)
    assert resolved.hour_meter == 120.5
    assert resolved.odometer == 45000
    assert resolved.operator == "Rui"
    assert resolved.source == SourceTag.DB_FUEL_EVENT


def test_each_kind_comes_from_first_positive_value_in_rank_order():
    ranked = [
        candidate(SourceTag.SHEET_READINGS, datetime(2026, 1, 12), hour_meter=0, odometer=0),
        candidate(SourceTag.SHEET_FUEL_LOG, datetime(2026, 1, 11), hour_meter=130),
        candidate(SourceTag.DB_READING, datetime(2026, 1, 10), hour_meter=125, odometer=880),
    ]

    resolved = resolve(ranked)

    assert resolved.date == datetime(2026, 1, 12)
    assert resolved.source == SourceTag.SHEET_READINGS
    assert resolved.hour_meter == 130
    assert resolved.odometer == 880


@pytest.mark.parametrize("first, second", list(permutations(SourceTag, 2)))
def test_source_priority_breaks_timestamp_ties_for_every_pair(first, second):
    stamp = datetime(2026, 1, 10, 8, 0)
    candidates = [
        candidate(first, stamp, hour_meter=1),
        candidate(second, stamp, hour_meter=2),
    ]

    expected = first if SOURCE_PRIORITY[first] < SOURCE_PRIORITY[second] else second
    assert resolve(candidates).source == expected
    assert resolve(list(reversed(candidates))).source == expected


def test_identical_candidates_keep_input_order():
    stamp = datetime(2026, 1, 10)
    a = candidate(SourceTag.DB_READING, stamp, hour_meter=1, operator="a")
    b = candidate(SourceTag.DB_READING, stamp, hour_meter=2, operator="b")
    assert rank_candidates([a, b]) == [a, b]
    assert resolve([b, a]).operator == "b"


def test_undated_candidates_rank_after_dated_ones():
    undated = candidate(SourceTag.SHEET_READINGS, None, hour_meter=999)
    dated = candidate(SourceTag.DB_READING, datetime(2020, 1, 1), hour_meter=10)

    assert rank_candidates([undated, dated]) == [dated, undated]
    assert resolve([undated, dated]).hour_meter == 10


def test_undated_candidate_still_fills_a_kind_nobody_else_has():
    dated = candidate(SourceTag.DB_READING, datetime(2026, 1, 10), hour_meter=10)
    undated = candidate(SourceTag.SHEET_READINGS, None, odometer=500)

    resolved = resolve([undated, dated])
    assert resolved.hour_meter == 10
    assert resolved.odometer == 500
    assert resolved.date == datetime(2026, 1, 10)


class BrokenCollector:
    def collect(self, equipment_code, equipment_id=None):
        raise RuntimeError("network down")


class StaticCollector:
    def __init__(self, candidates):
        self.candidates = candidates
        self.calls = []

    def collect(self, equipment_code, equipment_id=None):
        self.calls.append((equipment_code, equipment_id))
        return self.candidates


def test_resolve_previous_degrades_to_empty_result():
    equipment = Equipment(id=1, code="CM-122")
    assert resolve_previous(BrokenCollector(), equipment).is_first_reading


def test_resolve_previous_collects_by_code_and_id():
    equipment = Equipment(id=7, code="CM-122")
    collector = StaticCollector([candidate(SourceTag.DB_READING, datetime(2026, 1, 10), hour_meter=5)])

    assert resolve_previous(collector, equipment).hour_meter == 5
    assert collector.calls == [("CM-122", 7)]
