from typing import Any, Dict, List

import httpx
import pytest

from cx_core import DataStore, Ok, TransientFailure, ValidationFailure, parse_raceresult
from cx_core import importer as importer_module
from cx_core.importer import RaceResultImporter

SAMPLE = {
    "data": {
        "#1_U11 Mixed   2014-2015": [["101", "Lena"], ["102", "Tim"], 2],
        "#2_Elite Herren": [["1", "Max"], 1],
        "#3_Masters 1975 - 1984": [3],
        "broken-key": [["x"], 1],
    }
}


class _DummyClient:
    calls: List[Dict[str, Any]] = []
    status = 200
    payload: Any = SAMPLE

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.kwargs = kwargs

    def __enter__(self) -> "_DummyClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean up
        return None

    def get(self, url: str, headers: Dict[str, str]) -> httpx.Response:
        type(self).calls.append({"url": url, "headers": headers, "timeout": self.kwargs.get("timeout")})
        return httpx.Response(type(self).status, json=type(self).payload, request=httpx.Request("GET", url))


@pytest.fixture
def dummy_client(monkeypatch: pytest.MonkeyPatch):
    _DummyClient.calls = []
    _DummyClient.status = 200
    _DummyClient.payload = SAMPLE
    monkeypatch.setattr(importer_module.httpx, "Client", _DummyClient)
    return _DummyClient


def _series_with_event(store: DataStore) -> tuple:
    series = store.create_series({"name": "Cross Cup", "season": "2024"})
    event = store.create_event(
        {"series_id": series["id"], "name": "Round 1", "date": "2024-10-06", "location": "Stadtpark", "club": "RC Nord"}
    )
    return series, event


def test_parse_raceresult_extracts_contests() -> None:
    contests = parse_raceresult(SAMPLE)

    assert [(c.external_id, c.name, c.category, c.age_range, c.participant_count) for c in contests] == [
        ("1", "U11 Mixed 2014-2015", "U", "2014-2015", 2),
        ("2", "Elite Herren", "Elite Herren", "Unknown", 1),
        ("3", "Masters 1975 - 1984", "Masters", "1975-1984", 0),
    ]
    assert contests[0].birth_years == (2014, 2015)
    assert contests[1].birth_years == (None, None)
    assert parse_raceresult({"nothing": True}) == []
    assert parse_raceresult([]) == []


def test_import_creates_then_updates_contests(store: DataStore, dummy_client) -> None:
    series, event = _series_with_event(store)
    importer = RaceResultImporter(store, timeout=3)

    first = importer.run(series["id"], "https://my.raceresult.com/123/participants", event["id"])
    assert isinstance(first, Ok)
    assert first.value["summary"] == {"created": 3, "updated": 0, "total": 3}
    contest = first.value["contests"][0]["contest"]
    assert (contest["birth_year_from"], contest["birth_year_to"]) == (2014, 2015)
    assert contest["comment"] == "RaceResult #1: 2 registrations"

    refreshed = store.get_event(event["id"])
    assert refreshed["import_status"] == "done"
    assert refreshed["last_import_at"]

    second = importer.run(series["id"], "https://my.raceresult.com/123/participants")
    assert second.value["summary"] == {"created": 0, "updated": 3, "total": 3}
    assert len(store.list_contests(series["id"])) == 3

    call = dummy_client.calls[0]
    assert call["headers"]["Accept"] == "application/json"
    assert "Mozilla" in call["headers"]["User-Agent"]
    assert call["timeout"] == 3


def test_empty_document_fails_and_resets_status(store: DataStore, dummy_client) -> None:
    series, event = _series_with_event(store)
    store.set_import_status(event["id"], "done")
    dummy_client.payload = {"data": {}}

    result = RaceResultImporter(store).run(series["id"], "https://example.org/empty", event["id"])

    assert isinstance(result, ValidationFailure)
    assert result.reason == "No contests found in RaceResult data"
    assert store.get_event(event["id"])["import_status"] is None


def test_http_errors_are_transient(store: DataStore, dummy_client) -> None:
    series, _ = _series_with_event(store)
    dummy_client.status = 503
    dummy_client.payload = {"error": "maintenance"}

    result = RaceResultImporter(store).run(series["id"], "https://example.org/down")

    assert isinstance(result, TransientFailure)
    assert "503" in result.reason
    assert store.list_contests(series["id"]) == []


def test_event_must_belong_to_series(store: DataStore, dummy_client) -> None:
    _, event = _series_with_event(store)
    other = store.create_series({"name": "Other Cup", "season": "2024"})

    result = RaceResultImporter(store).run(other["id"], "https://example.org/x", event["id"])

    assert isinstance(result, ValidationFailure)
    assert dummy_client.calls == []
