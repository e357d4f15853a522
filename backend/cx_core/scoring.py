"""Championship points for a single participation."""

from __future__ import annotations

from typing import Any, Mapping, Union

from .models import Participation

START_POINTS = 2

# Bonus by finish position; index = position - 1.
POSITION_POINTS = [20, 17, 15, 13, 11, 10, 9, 8, 7, 6, 5, 4, 3, 2, 1, 1, 1, 1, 1, 1]


def _field(record: Union[Participation, Mapping[str, Any]], name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def position_points(position: int | None) -> int:
    """Return the positional bonus, or 0 outside the scoring table."""
    if not position or position < 1 or position > len(POSITION_POINTS):
        return 0
    return POSITION_POINTS[position - 1]


def points_for(record: Union[Participation, Mapping[str, Any]]) -> int:
    """Compute the points earned by one participation.

    Starting is worth ``START_POINTS``; a finisher with a position inside the
    table additionally gets the positional bonus. Nothing is awarded unless the
    participant started, whatever the other flags say.
    """
    if not _field(record, "started"):
        return 0

    points = START_POINTS
    if _field(record, "finished"):
        position = _field(record, "position")
        if isinstance(position, int) and not isinstance(position, bool):
            points += position_points(position)
    return points
