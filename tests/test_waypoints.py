"""
Tests for waypoint parsing and roadmap ingestion.
"""

import logging

import pytest

from trackmpc.core.common.exceptions import MalformedWaypointRecord
from trackmpc.core.common.waypoints import (
    Waypoint, parse_waypoint, parse_waypoints, read_waypoints)


def test_parse_two_and_three_fields():
    assert parse_waypoint("1.5, -2") == Waypoint(1.5, -2.0)
    assert parse_waypoint(["3", "4", "0.25"]) == Waypoint(3.0, 4.0, 0.25)


@pytest.mark.parametrize("record", ["1.0", "1,2,3,4", "1.0,abc", "nan,1.0", "1.0,"])
def test_malformed_records_raise(record):
    with pytest.raises(MalformedWaypointRecord):
        parse_waypoint(record)


def test_malformed_record_is_a_value_error():
    with pytest.raises(ValueError):
        parse_waypoint("x,y")


def test_parse_waypoints_skips_and_logs_bad_records(caplog):
    lines = ["# x,y", "0,0", "", "1,oops", "2,0.5,0.1"]

    with caplog.at_level(logging.WARNING):
        waypoints = parse_waypoints(lines)

    assert waypoints == [Waypoint(0.0, 0.0), Waypoint(2.0, 0.5, 0.1)]
    assert "oops" in caplog.text


def test_read_waypoints_from_file(tmp_path):
    roadmap = tmp_path / "roadmap.csv"
    roadmap.write_text("0,0\n5,1\n10,2\n")

    assert read_waypoints(roadmap) == [
        Waypoint(0.0, 0.0), Waypoint(5.0, 1.0), Waypoint(10.0, 2.0)]


def test_read_waypoints_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_waypoints(tmp_path / "missing.csv")


def test_bundled_roadmap_parses():
    import os
    path = os.path.join(os.path.dirname(__file__), os.pardir, "scenarios", "data", "s_curve.csv")

    waypoints = read_waypoints(path)

    assert len(waypoints) == 76
    assert all(wp.heading is not None for wp in waypoints)
