"""Contest import from RaceResult registration lists."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import httpx

from .loader import ConstraintViolation, DataStore, StoreUnavailable
from .results import Result, capture

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

_CATEGORY_RE = re.compile(r"^([^0-9]+)")
_AGE_RANGE_RE = re.compile(r"(\d{4})\s*-\s*(\d{4})")


class RaceResultUnavailable(StoreUnavailable):
    """The RaceResult document could not be fetched."""


@dataclass
class ImportedContest:
    name: str
    category: str
    age_range: str
    participant_count: int
    external_id: str

    @property
    def birth_years(self) -> tuple:
        match = _AGE_RANGE_RE.search(self.age_range)
        if not match:
            return (None, None)
        first, second = int(match.group(1)), int(match.group(2))
        return (min(first, second), max(first, second))


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def parse_raceresult(document: Any) -> List[ImportedContest]:
    """Extract contests from a RaceResult participants document.

    The document maps keys like ``"#3_U11 Mixed 2015-2016"`` to a list of
    registration rows whose last element is the row count.
    """
    data = document.get("data") if isinstance(document, dict) else None
    if not isinstance(data, dict):
        return []

    contests: List[ImportedContest] = []
    for key, rows in data.items():
        parts = str(key).split("_")
        if len(parts) < 2:
            continue
        info = parts[1]
        category = _CATEGORY_RE.match(info)
        ages = _AGE_RANGE_RE.search(info)
        contests.append(
            ImportedContest(
                name=_collapse(info),
                category=_collapse(category.group(1)) if category else "Unknown",
                age_range=f"{ages.group(1)}-{ages.group(2)}" if ages else "Unknown",
                participant_count=len(rows[:-1]) if isinstance(rows, list) else 0,
                external_id=parts[0].replace("#", ""),
            )
        )
    return contests


class RaceResultImporter:
    def __init__(self, store: DataStore, timeout: float | None = None) -> None:
        self.store = store
        if timeout is None:
            try:
                timeout = float(os.getenv("CX_IMPORT_TIMEOUT", "15"))
            except ValueError:
                timeout = 15.0
        self.timeout = timeout

    def run(self, series_id: int, url: str, event_id: int | None = None) -> Result:
        return capture("RaceResult import", self._run, series_id, url, event_id)

    def fetch(self, url: str) -> Any:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.get(url, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise RaceResultUnavailable(f"Failed to fetch RaceResult data: HTTP {status}") from exc
        except httpx.HTTPError as exc:
            raise RaceResultUnavailable(f"Failed to fetch RaceResult data: {exc}") from exc
        except ValueError as exc:
            raise ConstraintViolation("RaceResult response is not valid JSON") from exc

    def _run(self, series_id: int, url: str, event_id: Optional[int]) -> Dict[str, Any]:
        if not url:
            raise ConstraintViolation("Missing RaceResult url")
        self.store.get_series(series_id)
        if event_id is not None:
            event = self.store.get_event(event_id)
            if int(event["series_id"]) != int(series_id):
                raise ConstraintViolation("Event does not belong to this series")
            self.store.set_import_status(event_id, "pending")

        try:
            contests = parse_raceresult(self.fetch(url))
            if not contests:
                raise ConstraintViolation("No contests found in RaceResult data")
            outcome = self.upsert_contests(series_id, contests)
        except (ConstraintViolation, StoreUnavailable):
            if event_id is not None:
                self._reset_status(event_id)
            raise

        if event_id is not None:
            self.store.set_import_status(event_id, "done")
        logger.info(
            "Imported %d contests into series %s (%d created, %d updated)",
            outcome["summary"]["total"],
            series_id,
            outcome["summary"]["created"],
            outcome["summary"]["updated"],
        )
        return outcome

    def upsert_contests(self, series_id: int, contests: List[ImportedContest]) -> Dict[str, Any]:
        """Create or refresh contests, matched by name within the series."""
        existing = {_collapse(row.get("name") or "").lower(): row for row in self.store.list_contests(series_id)}
        results = []
        created = updated = 0
        for contest in contests:
            birth_year_from, birth_year_to = contest.birth_years
            fields: Dict[str, Any] = {
                "comment": f"RaceResult #{contest.external_id}: {contest.participant_count} registrations",
            }
            if birth_year_from is not None:
                fields["birth_year_from"] = birth_year_from
                fields["birth_year_to"] = birth_year_to
            row = existing.get(contest.name.lower())
            if row is None:
                row = self.store.create_contest({"series_id": series_id, "name": contest.name, **fields})
                existing[contest.name.lower()] = row
                action = "created"
                created += 1
            else:
                row = self.store.update_contest(int(row["id"]), fields)
                action = "updated"
                updated += 1
            results.append({"contest": row, "action": action, **asdict(contest)})
        return {"contests": results, "summary": {"created": created, "updated": updated, "total": len(results)}}

    def _reset_status(self, event_id: int) -> None:
        try:
            self.store.set_import_status(event_id, None)
        except StoreUnavailable as exc:
            logger.warning("Could not reset import status of event %s: %s", event_id, exc)
