"""CLI helper that prints the current standings of one contest."""

from __future__ import annotations

import sys
from typing import List

from cx_core import Ok, RankingAggregator
from cx_core.loader import DataStore
from cx_core.rankings import ParticipantRanking


def _format_row(place: int, ranking: ParticipantRanking) -> str:
    last = ranking.last_race_position if ranking.last_race_position is not None else "-"
    club = ranking.club or ""
    return f"{place:>3}. #{ranking.bib_number:<4} {ranking.name:<30} {club:<24} {ranking.total_points:>4} pts  (last: {last})"


def main(argv: List[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or not args[0].isdigit():
        print("usage: rankings_report.py <contest-id>", file=sys.stderr)
        return 2

    result = RankingAggregator(DataStore()).contest_rankings(int(args[0]))
    if not isinstance(result, Ok):
        print(f"ERROR: {result.reason}", file=sys.stderr)
        return 1

    if not result.value:
        print("No participants in this contest.")
        return 0
    for place, ranking in enumerate(result.value, start=1):
        print(_format_row(place, ranking))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
