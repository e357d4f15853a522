import pytest

from cx_core import ConstraintViolation, DataStore, RecordNotFound


def _series(store: DataStore, name: str = "Cross Cup") -> dict:
    return store.create_series({"name": name, "season": "2024"})


def _event(store: DataStore, series_id: int, date: str = "2024-10-06") -> dict:
    return store.create_event(
        {"series_id": series_id, "name": f"Round {date}", "date": date, "location": "Stadtpark", "club": "RC Nord"}
    )


def _populated_contest(store: DataStore) -> dict:
    series = _series(store)
    event = _event(store, series["id"])
    contest = store.create_contest({"series_id": series["id"], "name": "U13"})
    rider = store.create_participant(
        {"contest_id": contest["id"], "name": "Mia", "bib_number": 7, "birth_year": 2012, "gender": "female"}
    )
    race = store.create_race({"event_id": event["id"], "contest_id": contest["id"]})
    store.insert("participations", {"participant_id": rider["id"], "race_id": race["id"]})
    return {"series": series, "event": event, "contest": contest, "rider": rider, "race": race}


def test_create_applies_defaults_and_timestamps(store: DataStore) -> None:
    series = _series(store)

    assert series["id"] == 1
    assert series["status"] == "scheduled"
    assert series["created_at"] == series["updated_at"]
    assert store.local_path.exists()
    assert store.get_series(series["id"])["name"] == "Cross Cup"


def test_create_rejects_missing_fields_and_unknown_choices(store: DataStore) -> None:
    with pytest.raises(ConstraintViolation, match="season"):
        store.create_series({"name": "No season"})
    with pytest.raises(ConstraintViolation, match="status"):
        store.create_series({"name": "Odd", "season": "2024", "status": "paused"})

    series = _series(store)
    with pytest.raises(ConstraintViolation, match="birth_year_from"):
        store.create_contest({"series_id": series["id"], "name": "U9", "birth_year_from": 2017, "birth_year_to": 2015})


def test_update_and_missing_rows(store: DataStore) -> None:
    series = _series(store)

    updated = store.update_series(series["id"], {"status": "ongoing", "description": "  "})
    assert updated["status"] == "ongoing"
    assert updated["description"] is None

    with pytest.raises(RecordNotFound):
        store.update_series(99, {"name": "Ghost"})
    with pytest.raises(RecordNotFound):
        store.get_contest(5)


def test_foreign_keys_are_enforced(store: DataStore) -> None:
    with pytest.raises(ConstraintViolation):
        store.create_contest({"series_id": 42, "name": "Orphan"})


def test_race_event_and_contest_must_share_series(store: DataStore) -> None:
    first = _series(store)
    second = _series(store, "Other Cup")
    event = _event(store, first["id"])
    contest = store.create_contest({"series_id": second["id"], "name": "Elite"})

    with pytest.raises(ConstraintViolation, match="different series"):
        store.create_race({"event_id": event["id"], "contest_id": contest["id"]})


def test_participation_pair_is_unique(store: DataStore) -> None:
    seed = _populated_contest(store)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert("participations", {"participant_id": seed["rider"]["id"], "race_id": seed["race"]["id"]})
    assert excinfo.value.conflict is True


def test_contest_row_cannot_be_deleted_while_referenced(store: DataStore) -> None:
    seed = _populated_contest(store)

    with pytest.raises(ConstraintViolation):
        store.delete("contests", {"id": seed["contest"]["id"]})
    with pytest.raises(ConstraintViolation):
        store.delete("participants", {"contest_id": seed["contest"]["id"]})
    assert store.get_contest(seed["contest"]["id"])


def test_delete_contest_removes_dependents_in_order(store: DataStore) -> None:
    seed = _populated_contest(store)

    store.delete_contest(seed["contest"]["id"])

    assert store.select("participations") == []
    assert store.select("participants") == []
    assert store.select("races") == []
    assert store.select("contests") == []
    assert store.get_event(seed["event"]["id"])


def test_delete_series_cascades_everything(store: DataStore) -> None:
    seed = _populated_contest(store)
    _event(store, seed["series"]["id"], "2024-11-03")

    store.delete_series(seed["series"]["id"])

    for table in ("series", "events", "contests", "participants", "races", "participations"):
        assert store.select(table) == []


def test_delete_participant_reports_races_with_finishers(store: DataStore) -> None:
    seed = _populated_contest(store)
    participation = store.select("participations")[0]
    store.update("participations", participation["id"], {"started": True, "finished": True, "position": 1})

    assert store.delete_participant(seed["rider"]["id"]) == [seed["race"]["id"]]
    assert store.select("participations") == []


def test_select_filters_and_ordering(store: DataStore) -> None:
    series = _series(store)
    late = _event(store, series["id"], "2024-12-01")
    early = _event(store, series["id"], "2024-09-15")

    assert [row["id"] for row in store.list_events(series["id"])] == [early["id"], late["id"]]
    assert [row["id"] for row in store.select("events", {"id": [late["id"]]})] == [late["id"]]
    assert store.select("events", {"id": []}) == []
    assert store.select("events", {"registration_url": None}, limit=1)[0]["id"] == late["id"]


def test_import_status_tracking(store: DataStore) -> None:
    series = _series(store)
    event = _event(store, series["id"])

    assert store.set_import_status(event["id"], "pending")["import_status"] == "pending"
    done = store.set_import_status(event["id"], "done")
    assert done["import_status"] == "done"
    assert done["last_import_at"]

    reset = store.set_import_status(event["id"], None)
    assert reset["import_status"] is None
    assert reset["last_import_at"] is None

    with pytest.raises(ConstraintViolation):
        store.set_import_status(event["id"], "exploded")


def test_participant_status_counts(store: DataStore) -> None:
    seed = _populated_contest(store)
    store.update_participant(seed["rider"]["id"], {"status": "dnf"})

    counts = store.participant_status_counts(seed["contest"]["id"])

    assert counts["total"] == 1
    assert counts["dnf"] == 1
    assert counts["registered"] == 0
