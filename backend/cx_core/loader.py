from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from .models import GENDERS, IMPORT_STATUSES, PARTICIPANT_STATUSES, RACE_STATUSES, SERIES_STATUSES


logger = logging.getLogger(__name__)

TABLES = ("series", "events", "contests", "participants", "races", "participations")

# Columns each table accepts from callers; ids and timestamps are managed here.
_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "series": ("name", "season", "status", "description", "participants_url"),
    "events": (
        "series_id",
        "name",
        "date",
        "location",
        "club",
        "registration_url",
        "import_status",
        "last_import_at",
    ),
    "contests": (
        "series_id",
        "name",
        "gender",
        "birth_year_from",
        "birth_year_to",
        "participation_points",
        "group",
        "duration_minutes",
        "comment",
    ),
    "participants": (
        "contest_id",
        "name",
        "bib_number",
        "birth_year",
        "gender",
        "club",
        "team",
        "license_number",
        "status",
    ),
    "races": ("event_id", "contest_id", "start_time", "duration_minutes", "status"),
    "participations": (
        "participant_id",
        "race_id",
        "registered",
        "started",
        "finished",
        "position",
        "is_provisional",
    ),
}

_REQUIRED: Dict[str, Tuple[str, ...]] = {
    "series": ("name", "season"),
    "events": ("series_id", "name", "date", "location", "club"),
    "contests": ("series_id", "name"),
    "participants": ("contest_id", "name", "bib_number", "birth_year", "gender"),
    "races": ("event_id", "contest_id"),
    "participations": ("participant_id", "race_id"),
}

_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "series": {"status": "scheduled"},
    "events": {"import_status": None},
    "contests": {"participation_points": 1},
    "participants": {"status": "registered"},
    "races": {"status": "scheduled"},
    "participations": {
        "registered": True,
        "started": False,
        "finished": False,
        "position": None,
        "is_provisional": False,
    },
}

_CHOICES: Dict[Tuple[str, str], Tuple[str, ...]] = {
    ("series", "status"): SERIES_STATUSES,
    ("events", "import_status"): IMPORT_STATUSES,
    ("contests", "gender"): GENDERS,
    ("participants", "gender"): GENDERS,
    ("participants", "status"): PARTICIPANT_STATUSES,
    ("races", "status"): RACE_STATUSES,
}

# Mirrors the foreign keys of supabase/schema.sql so the local store refuses
# the same inserts and deletes PostgreSQL would.
FOREIGN_KEYS: Dict[str, Dict[str, str]] = {
    "events": {"series_id": "series"},
    "contests": {"series_id": "series"},
    "participants": {"contest_id": "contests"},
    "races": {"event_id": "events", "contest_id": "contests"},
    "participations": {"participant_id": "participants", "race_id": "races"},
}

UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "participations": ("participant_id", "race_id"),
}


class StoreUnavailable(RuntimeError):
    """The backing store could not be reached or failed server-side."""


class RecordNotFound(LookupError):
    pass


class ConstraintViolation(ValueError):
    """A write was rejected (missing field, uniqueness, foreign key...)."""

    def __init__(self, message: str, conflict: bool = False) -> None:
        super().__init__(message)
        self.conflict = conflict


class DataStore:
    """Relational store for series, events, contests, races and participations.

    Talks to Supabase (PostgREST) when ``SUPABASE_URL`` and a key are set and
    otherwise keeps the same tables in a local JSON file.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        env_dir = os.getenv("CX_DATA_DIR")
        self.data_dir = data_dir or (Path(env_dir) if env_dir else Path(__file__).parent.parent / "data")
        self.local_path = self.data_dir / "cx_local.json"
        self._local_lock = threading.RLock()

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.tables = {name: os.getenv(f"SUPABASE_{name.upper()}_TABLE", name) for name in TABLES}
        try:
            self.timeout = float(os.getenv("SUPABASE_TIMEOUT", "10"))
        except ValueError:
            self.timeout = 10.0

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Row primitives

    def select(
        self,
        table: str,
        filters: Dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        """Return rows of ``table`` matching every filter.

        A filter value may be a scalar (equality), ``None`` (IS NULL) or a
        list (IN). ``order`` uses the PostgREST syntax, e.g. ``"date.desc,id.asc"``.
        """
        filters = filters or {}
        if any(isinstance(value, (list, tuple, set)) and not value for value in filters.values()):
            return []
        if self.uses_supabase:
            params: Dict[str, Any] = {"select": "*", **self._filter_params(filters)}
            if order:
                params["order"] = order
            if limit is not None:
                params["limit"] = limit
            rows = self._request("GET", table, params=params)
            return [row for row in rows if isinstance(row, dict)]

        with self._local_lock:
            data = self._load_local()
            rows = [dict(row) for row in data["tables"][table] if self._matches(row, filters)]
        rows = self._sort_rows(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def get(self, table: str, row_id: int) -> Dict[str, Any]:
        rows = self.select(table, {"id": row_id}, limit=1)
        if not rows:
            raise RecordNotFound(f"{self._label(table)} {row_id} not found")
        return rows[0]

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        now = self._utc_now_iso()
        if self.uses_supabase:
            rows = self._request(
                "POST",
                table,
                params={"select": "*"},
                json_body=record,
                prefer="return=representation",
            )
            if rows:
                return rows[0]
            raise StoreUnavailable(f"Unexpected response when creating {self._label(table)}")

        with self._local_lock:
            data = self._load_local()
            self._check_foreign_keys(data, table, record)
            self._check_unique(data, table, record)
            next_id = int(data["sequences"].get(table, 0)) + 1
            data["sequences"][table] = next_id
            row = {"id": next_id, **record, "created_at": now, "updated_at": now}
            data["tables"][table].append(row)
            self._save_local(data)
        return dict(row)

    def update(self, table: str, row_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = {**fields, "updated_at": self._utc_now_iso()}
        if self.uses_supabase:
            rows = self._request(
                "PATCH",
                table,
                params={"id": f"eq.{row_id}", "select": "*"},
                json_body=fields,
                prefer="return=representation",
            )
            if not rows:
                raise RecordNotFound(f"{self._label(table)} {row_id} not found")
            return rows[0]

        with self._local_lock:
            data = self._load_local()
            for row in data["tables"][table]:
                if row.get("id") == row_id:
                    candidate = {**row, **fields}
                    self._check_foreign_keys(data, table, candidate)
                    self._check_unique(data, table, candidate, ignore_id=row_id)
                    row.update(fields)
                    self._save_local(data)
                    return dict(row)
        raise RecordNotFound(f"{self._label(table)} {row_id} not found")

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete matching rows and return how many were removed."""
        if not filters:
            raise ValueError("Refusing to delete without filters")
        if any(isinstance(value, (list, tuple, set)) and not value for value in filters.values()):
            return 0
        if self.uses_supabase:
            rows = self._request(
                "DELETE",
                table,
                params=self._filter_params(filters),
                prefer="return=representation",
            )
            return len(rows)

        with self._local_lock:
            data = self._load_local()
            doomed = [row for row in data["tables"][table] if self._matches(row, filters)]
            if not doomed:
                return 0
            self._check_not_referenced(data, table, {row["id"] for row in doomed})
            data["tables"][table] = [row for row in data["tables"][table] if not self._matches(row, filters)]
            self._save_local(data)
        return len(doomed)

    def upsert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Write several complete rows keyed by id in one atomic request."""
        if not rows:
            return []
        now = self._utc_now_iso()
        stamped = [{**row, "updated_at": now} for row in rows]
        if self.uses_supabase:
            return self._request(
                "POST",
                table,
                params={"on_conflict": "id", "select": "*"},
                json_body=stamped,
                prefer="resolution=merge-duplicates,return=representation",
            )

        with self._local_lock:
            data = self._load_local()
            existing = {row.get("id"): row for row in data["tables"][table]}
            written: List[Dict[str, Any]] = []
            for row in stamped:
                target = existing.get(row.get("id"))
                if target is None:
                    raise RecordNotFound(f"{self._label(table)} {row.get('id')} not found")
                target.update(row)
                written.append(dict(target))
            self._save_local(data)
        return written

    # ------------------------------------------------------------------
    # Series

    def list_series(self, status: str | None = None) -> List[Dict[str, Any]]:
        filters = {"status": status} if status else None
        return self.select("series", filters, order="created_at.desc,id.desc")

    def get_series(self, series_id: int) -> Dict[str, Any]:
        return self.get("series", series_id)

    def create_series(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert("series", self._record_for_create("series", payload))

    def update_series(self, series_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_update("series", payload)
        if not record:
            return self.get_series(series_id)
        return self.update("series", series_id, record)

    def delete_series(self, series_id: int) -> None:
        """Delete a series after its contests and events, children first."""
        self.get_series(series_id)
        for contest in self.select("contests", {"series_id": series_id}):
            self.delete_contest(int(contest["id"]))
        for event in self.select("events", {"series_id": series_id}):
            self.delete_event(int(event["id"]))
        self.delete("series", {"id": series_id})
        logger.info("Deleted series %s", series_id)

    # ------------------------------------------------------------------
    # Events

    def list_events(self, series_id: int) -> List[Dict[str, Any]]:
        return self.select("events", {"series_id": series_id}, order="date.asc,id.asc")

    def get_event(self, event_id: int) -> Dict[str, Any]:
        return self.get("events", event_id)

    def create_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert("events", self._record_for_create("events", payload))

    def update_event(self, event_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_update("events", payload)
        if not record:
            return self.get_event(event_id)
        return self.update("events", event_id, record)

    def delete_event(self, event_id: int) -> None:
        self.get_event(event_id)
        race_ids = [int(race["id"]) for race in self.select("races", {"event_id": event_id})]
        self.delete("participations", {"race_id": race_ids})
        self.delete("races", {"event_id": event_id})
        self.delete("events", {"id": event_id})
        logger.info("Deleted event %s with %d races", event_id, len(race_ids))

    def set_import_status(self, event_id: int, status: str | None) -> Dict[str, Any]:
        """Record the progress of a registration import for an event.

        ``None`` resets both the status and the last import timestamp.
        """
        if status is not None and status not in IMPORT_STATUSES:
            raise ConstraintViolation(f"Unknown import status '{status}'")
        fields: Dict[str, Any] = {"import_status": status}
        if status == "done":
            fields["last_import_at"] = self._utc_now_iso()
        elif status is None:
            fields["last_import_at"] = None
        return self.update("events", event_id, fields)

    # ------------------------------------------------------------------
    # Contests

    def list_contests(self, series_id: int) -> List[Dict[str, Any]]:
        return self.select("contests", {"series_id": series_id}, order="name.asc,id.asc")

    def get_contest(self, contest_id: int) -> Dict[str, Any]:
        return self.get("contests", contest_id)

    def create_contest(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_create("contests", payload)
        self._check_birth_years(record)
        return self.insert("contests", record)

    def update_contest(self, contest_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_update("contests", payload)
        if not record:
            return self.get_contest(contest_id)
        self._check_birth_years(record)
        return self.update("contests", contest_id, record)

    def delete_contest(self, contest_id: int) -> None:
        """Delete a contest and everything hanging off it.

        Foreign keys force the order: participations, participants, races and
        only then the contest row. Each step is its own store call, so a
        failure part-way leaves the earlier deletions in place.
        """
        self.get_contest(contest_id)
        race_ids = [int(race["id"]) for race in self.select("races", {"contest_id": contest_id})]
        participant_ids = [
            int(participant["id"]) for participant in self.select("participants", {"contest_id": contest_id})
        ]
        removed = self.delete("participations", {"race_id": race_ids})
        removed += self.delete("participations", {"participant_id": participant_ids})
        self.delete("participants", {"contest_id": contest_id})
        self.delete("races", {"contest_id": contest_id})
        self.delete("contests", {"id": contest_id})
        logger.info(
            "Deleted contest %s (%d participations, %d participants, %d races)",
            contest_id,
            removed,
            len(participant_ids),
            len(race_ids),
        )

    # ------------------------------------------------------------------
    # Participants

    def list_participants(self, contest_id: int) -> List[Dict[str, Any]]:
        return self.select("participants", {"contest_id": contest_id}, order="bib_number.asc,id.asc")

    def get_participant(self, participant_id: int) -> Dict[str, Any]:
        return self.get("participants", participant_id)

    def create_participant(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert("participants", self._record_for_create("participants", payload))

    def update_participant(self, participant_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_update("participants", payload)
        if not record:
            return self.get_participant(participant_id)
        return self.update("participants", participant_id, record)

    def delete_participant(self, participant_id: int) -> List[int]:
        """Delete a participant and its participations.

        Returns the ids of the races whose finishers lost a row so the caller
        can close the gaps in their positions.
        """
        participant = self.get_participant(participant_id)
        affected = [
            int(row["race_id"])
            for row in self.select("participations", {"participant_id": participant_id})
            if row.get("finished")
        ]
        self.delete("participations", {"participant_id": participant_id})
        self.delete("participants", {"id": participant_id})
        logger.info("Deleted participant %s from contest %s", participant_id, participant.get("contest_id"))
        return sorted(set(affected))

    def participant_status_counts(self, contest_id: int) -> Dict[str, int]:
        participants = self.select("participants", {"contest_id": contest_id})
        counts = {"total": len(participants)}
        for status in PARTICIPANT_STATUSES:
            counts[status] = sum(1 for row in participants if row.get("status") == status)
        return counts

    # ------------------------------------------------------------------
    # Races

    def list_races(self, event_id: int | None = None, contest_id: int | None = None) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if event_id is not None:
            filters["event_id"] = event_id
        if contest_id is not None:
            filters["contest_id"] = contest_id
        return self.select("races", filters, order="start_time.asc,id.asc")

    def get_race(self, race_id: int) -> Dict[str, Any]:
        return self.get("races", race_id)

    def create_race(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_create("races", payload)
        self._check_race_series(record["event_id"], record["contest_id"])
        return self.insert("races", record)

    def update_race(self, race_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record_for_update("races", payload)
        if not record:
            return self.get_race(race_id)
        if "event_id" in record or "contest_id" in record:
            current = self.get_race(race_id)
            self._check_race_series(
                record.get("event_id", current.get("event_id")),
                record.get("contest_id", current.get("contest_id")),
            )
        return self.update("races", race_id, record)

    def delete_race(self, race_id: int) -> None:
        self.get_race(race_id)
        self.delete("participations", {"race_id": race_id})
        self.delete("races", {"id": race_id})

    # ------------------------------------------------------------------
    # Participations

    def list_participations(
        self,
        race_ids: Iterable[int] | None = None,
        participant_ids: Iterable[int] | None = None,
        finished: bool | None = None,
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if race_ids is not None:
            filters["race_id"] = list(race_ids)
        if participant_ids is not None:
            filters["participant_id"] = list(participant_ids)
        if finished is not None:
            filters["finished"] = finished
        return self.select("participations", filters, order="position.asc,id.asc")

    def get_participation(self, participation_id: int) -> Dict[str, Any]:
        return self.get("participations", participation_id)

    # ------------------------------------------------------------------
    # Record builders

    def _record_for_create(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(_DEFAULTS.get(table, {}))
        for column in _COLUMNS[table]:
            if column in payload:
                record[column] = self._clean_value(payload[column])
        missing = [column for column in _REQUIRED[table] if record.get(column) in (None, "")]
        if missing:
            raise ConstraintViolation(f"Missing required field(s): {', '.join(missing)}")
        self._check_choices(table, record)
        return record

    def _record_for_update(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for column in _COLUMNS[table]:
            if column in payload:
                record[column] = self._clean_value(payload[column])
        for column in _REQUIRED[table]:
            if column in record and record[column] in (None, ""):
                raise ConstraintViolation(f"Field '{column}' cannot be empty")
        self._check_choices(table, record)
        return record

    @staticmethod
    def _clean_value(value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        if isinstance(value, (dt.date, dt.time, dt.datetime)):
            return value.isoformat()
        return value

    @staticmethod
    def _check_choices(table: str, record: Dict[str, Any]) -> None:
        for (choice_table, column), allowed in _CHOICES.items():
            if choice_table != table:
                continue
            value = record.get(column)
            if value is not None and value not in allowed:
                raise ConstraintViolation(f"Unknown {column} '{value}'")

    @staticmethod
    def _check_birth_years(record: Dict[str, Any]) -> None:
        start = record.get("birth_year_from")
        end = record.get("birth_year_to")
        if start is not None and end is not None and int(start) > int(end):
            raise ConstraintViolation("birth_year_from must not be after birth_year_to")

    def _check_race_series(self, event_id: Any, contest_id: Any) -> None:
        try:
            event = self.get_event(int(event_id))
            contest = self.get_contest(int(contest_id))
        except RecordNotFound as exc:
            raise ConstraintViolation(str(exc)) from exc
        if event.get("series_id") != contest.get("series_id"):
            raise ConstraintViolation("Event and contest belong to different series")

    # ------------------------------------------------------------------
    # Supabase helpers

    def _endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{self.tables[table]}"

    def _headers(self, prefer: str | None = None) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
            headers["Content-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _filter_params(filters: Dict[str, Any]) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for column, value in filters.items():
            if value is None:
                params[column] = "is.null"
            elif isinstance(value, bool):
                params[column] = f"eq.{str(value).lower()}"
            elif isinstance(value, (list, tuple, set)):
                params[column] = "in.(" + ",".join(str(item) for item in value) + ")"
            else:
                params[column] = f"eq.{value}"
        return params

    def _request(
        self,
        method: str,
        table: str,
        params: Dict[str, Any] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> List[Dict[str, Any]]:
        headers = self._headers(prefer)
        kwargs: Dict[str, Any] = {"params": params or {}, "headers": headers}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
            kwargs["json"] = json_body

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, self._endpoint(table), **kwargs)
                response.raise_for_status()
                payload = response.json() if response.content else []
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            detail = self._extract_supabase_detail(exc.response)
            if status_code == 409:
                raise ConstraintViolation(detail or f"{self._label(table)} conflicts with an existing row", conflict=True) from exc
            if status_code is not None and 400 <= status_code < 500:
                raise ConstraintViolation(detail or f"Supabase rejected {method} {table} ({status_code})") from exc
            logger.warning("Supabase %s %s failed (%s)", method, table, exc)
            raise StoreUnavailable(f"Failed to {method} {table}: {detail or exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s %s unavailable (%s)", method, table, exc)
            raise StoreUnavailable(f"Supabase unavailable: {exc}") from exc
        except ValueError as exc:
            raise StoreUnavailable(f"Unexpected payload from Supabase {table} endpoint") from exc

        if isinstance(payload, dict):
            return [payload]
        if isinstance(payload, list):
            return [row for row in payload if isinstance(row, dict)]
        raise StoreUnavailable(f"Unexpected payload from Supabase {table} endpoint")

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ------------------------------------------------------------------
    # Local JSON helpers

    def _load_local(self) -> Dict[str, Any]:
        data = self._read_json_file(self.local_path, {})
        if not isinstance(data, dict):
            data = {}
        tables = data.setdefault("tables", {})
        for name in TABLES:
            if not isinstance(tables.get(name), list):
                tables[name] = []
        if not isinstance(data.get("sequences"), dict):
            data["sequences"] = {}
        return data

    def _save_local(self, data: Dict[str, Any]) -> None:
        self._write_json_file(self.local_path, data)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreUnavailable(f"Failed to read local data store {path}: {exc}") from exc

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreUnavailable(f"Failed to write local data store {path}") from exc

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for column, value in filters.items():
            actual = row.get(column)
            if isinstance(value, (list, tuple, set)):
                if actual not in value:
                    return False
            elif value is None:
                if actual is not None:
                    return False
            elif actual != value:
                return False
        return True

    @staticmethod
    def _sort_rows(rows: List[Dict[str, Any]], order: str | None) -> List[Dict[str, Any]]:
        if not order:
            return sorted(rows, key=lambda row: row.get("id") or 0)
        # Apply keys last to first; list.sort is stable. NULLs sort like
        # PostgreSQL: last when ascending, first when descending.
        for term in reversed([part.strip() for part in order.split(",") if part.strip()]):
            column, _, direction = term.partition(".")
            descending = direction.startswith("desc")
            rows.sort(
                key=lambda row, col=column: (1, "") if row.get(col) is None else (0, row.get(col)),
                reverse=descending,
            )
        return rows

    def _check_foreign_keys(self, data: Dict[str, Any], table: str, record: Dict[str, Any]) -> None:
        for column, parent in FOREIGN_KEYS.get(table, {}).items():
            value = record.get(column)
            if value is None:
                continue
            if not any(row.get("id") == value for row in data["tables"][parent]):
                raise ConstraintViolation(f"{self._label(parent)} {value} does not exist")

    def _check_unique(
        self,
        data: Dict[str, Any],
        table: str,
        record: Dict[str, Any],
        ignore_id: Any = None,
    ) -> None:
        columns = UNIQUE_KEYS.get(table)
        if not columns:
            return
        key = tuple(record.get(column) for column in columns)
        for row in data["tables"][table]:
            if row.get("id") == ignore_id:
                continue
            if tuple(row.get(column) for column in columns) == key:
                raise ConstraintViolation(
                    f"{self._label(table)} already exists for {', '.join(columns)}", conflict=True
                )

    def _check_not_referenced(self, data: Dict[str, Any], table: str, ids: set) -> None:
        for child, columns in FOREIGN_KEYS.items():
            for column, parent in columns.items():
                if parent != table:
                    continue
                if any(row.get(column) in ids for row in data["tables"][child]):
                    raise ConstraintViolation(
                        f"Cannot delete {self._label(table)}: still referenced by {child}.{column}"
                    )

    @staticmethod
    def _label(table: str) -> str:
        if table == "series":
            return "Series"
        return table[:-1].capitalize()

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
