"""CLI helper that imports contests from a RaceResult registration list."""

from __future__ import annotations

import sys
from typing import List

from cx_core import Ok, RaceResultImporter
from cx_core.loader import DataStore


def main(argv: List[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) not in (2, 3) or not args[0].isdigit() or (len(args) == 3 and not args[2].isdigit()):
        print("usage: import_raceresult.py <series-id> <url> [event-id]", file=sys.stderr)
        return 2

    event_id = int(args[2]) if len(args) == 3 else None
    result = RaceResultImporter(DataStore()).run(int(args[0]), args[1], event_id)
    if not isinstance(result, Ok):
        print(f"ERROR: {result.reason}", file=sys.stderr)
        return 1

    for item in result.value["contests"]:
        print(f"{item['action']:>8}: {item['name']} ({item['age_range']}, {item['participant_count']} registrations)")
    summary = result.value["summary"]
    print()
    print(f"{summary['total']} contests: {summary['created']} created, {summary['updated']} updated")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
