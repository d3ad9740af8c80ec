"""
Waypoint records and CSV ingestion.

A roadmap file holds one waypoint per line: ``x,y`` or ``x,y,heading``.
"""

import csv
import logging
import math
import os
from typing import Iterable, List, NamedTuple, Optional, Sequence, Union

from trackmpc.core.common.exceptions import MalformedWaypointRecord

logger = logging.getLogger(__name__)


class Waypoint(NamedTuple):
    """A point of the reference path in the global frame."""
    x: float
    y: float
    heading: Optional[float] = None  # radians, optional


def parse_waypoint(fields: Sequence[str]) -> Waypoint:
    """
    Parse one record into a Waypoint.

    Args:
        fields: Comma separated string or already split fields.

    Returns:
        Waypoint

    Raises:
        MalformedWaypointRecord: wrong field count or non-numeric field.
    """
    if isinstance(fields, str):
        fields = fields.split(',')
    fields = [f.strip() for f in fields]
    if len(fields) not in (2, 3):
        raise MalformedWaypointRecord(fields, f"expected 2 or 3 fields, got {len(fields)}")

    values = []
    for field in fields:
        try:
            value = float(field)
        except ValueError:
            raise MalformedWaypointRecord(fields, f"{field!r} is not a number") from None
        if not math.isfinite(value):
            raise MalformedWaypointRecord(fields, f"{field!r} is not finite")
        values.append(value)
    return Waypoint(*values)


def read_waypoints(path: Union[str, os.PathLike]) -> List[Waypoint]:
    """
    Read waypoints from a roadmap CSV file.

    Args:
        path: Path to the roadmap file.

    Returns:
        list of Waypoint in file order.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    try:
        with open(path, newline="", encoding="utf-8") as f:
            return parse_waypoints(f, name=str(path))
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Roadmap file not found {str(path)!r}") from e


def parse_waypoints(lines: Iterable[str], name: str = "<lines>") -> List[Waypoint]:
    """
    Parse CSV lines into waypoints.

    Blank lines and ``#`` comments are ignored; malformed records are logged
    and skipped.

    Args:
        lines: Lines of CSV text.
        name: Source name used in log messages.

    Returns:
        list of Waypoint in input order.
    """
    reader = csv.reader(lines)
    waypoints = []
    skipped = 0
    for row in reader:
        if not row or not ''.join(row).strip() or row[0].lstrip().startswith('#'):
            continue
        try:
            waypoints.append(parse_waypoint(row))
        except MalformedWaypointRecord as e:
            skipped += 1
            logger.warning("%s line %d: %s", name, reader.line_num, e)
    if skipped:
        logger.warning("%s: skipped %d malformed waypoint records", name, skipped)
    logger.debug("%s: read %d waypoints", name, len(waypoints))
    return waypoints
