from typing import Any, Dict

from cx_core import DataStore, NotFound, Ok, ParticipationLifecycle, RankingAggregator, TransientFailure, points_for
from cx_core.rankings import ParticipantRanking, ranking_key


def _seed(store: DataStore) -> Dict[str, Any]:
    series = store.create_series({"name": "Cross Cup", "season": "2024"})
    first = store.create_event(
        {"series_id": series["id"], "name": "Round 1", "date": "2024-10-06", "location": "Stadtpark", "club": "RC Nord"}
    )
    second = store.create_event(
        {"series_id": series["id"], "name": "Round 2", "date": "2024-10-20", "location": "Waldbad", "club": "RV Süd"}
    )
    contest = store.create_contest(
        {"series_id": series["id"], "name": "U15", "gender": "mixed", "birth_year_from": 2010, "birth_year_to": 2011}
    )
    anna = store.create_participant(
        {"contest_id": contest["id"], "name": "Anna", "bib_number": 1, "birth_year": 2010, "gender": "female"}
    )
    ben = store.create_participant(
        {"contest_id": contest["id"], "name": "Ben", "bib_number": 2, "birth_year": 2011, "gender": "male"}
    )
    r1 = store.create_race({"event_id": first["id"], "contest_id": contest["id"], "start_time": "10:00:00"})
    r2 = store.create_race({"event_id": second["id"], "contest_id": contest["id"], "start_time": "10:00:00"})
    return {"series": series, "contest": contest, "anna": anna, "ben": ben, "r1": r1, "r2": r2}


def _finish(lifecycle: ParticipationLifecycle, participant_id: int, race_id: int) -> int:
    participation = lifecycle.assign(participant_id, race_id).value
    lifecycle.cycle(participation.id)
    lifecycle.cycle(participation.id)
    return participation.id


def _totals(aggregator: RankingAggregator, contest_id: int) -> Dict[str, int]:
    return {item.name: item.total_points for item in aggregator.contest_rankings(contest_id).value}


def _order(aggregator: RankingAggregator, contest_id: int) -> list:
    return [item.name for item in aggregator.contest_rankings(contest_id).value]


def test_two_finishers_score_and_rank(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)

    _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])
    _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])

    assert _totals(aggregator, seed["contest"]["id"]) == {"Anna": 22, "Ben": 19}
    assert _order(aggregator, seed["contest"]["id"]) == ["Anna", "Ben"]


def test_move_up_swaps_positions_and_ranking(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)

    anna_id = _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])
    ben_id = _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])

    moved = lifecycle.move_up(ben_id)
    assert isinstance(moved, Ok)
    assert moved.value.position == 1
    assert store.get_participation(anna_id)["position"] == 2

    assert _totals(aggregator, seed["contest"]["id"]) == {"Anna": 19, "Ben": 22}
    assert _order(aggregator, seed["contest"]["id"]) == ["Ben", "Anna"]


def test_registration_without_start_adds_nothing(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)

    _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])
    assert isinstance(lifecycle.assign(seed["anna"]["id"], seed["r2"]["id"]), Ok)

    rankings = aggregator.contest_rankings(seed["contest"]["id"]).value
    anna = next(item for item in rankings if item.name == "Anna")
    assert anna.total_points == 22
    assert [score.points for score in anna.participations] == [22, 0]


def test_finished_row_without_start_scores_nothing(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)
    participation = lifecycle.assign(seed["anna"]["id"], seed["r1"]["id"]).value
    row = store.update("participations", participation.id, {"started": False, "finished": True, "position": 1})

    assert points_for(row) == 0
    assert _totals(aggregator, seed["contest"]["id"])["Anna"] == 0
    results = aggregator.race_results(seed["r1"]["id"]).value["results"]
    assert [item["points"] for item in results] == [0]


def test_rankings_are_idempotent(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)
    _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])
    _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])

    assert aggregator.contest_rankings(seed["contest"]["id"]) == aggregator.contest_rankings(seed["contest"]["id"])


def test_equal_points_break_on_most_recent_position(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)

    # Round 2 is scored first but takes place later, so it is the last race.
    _finish(lifecycle, seed["ben"]["id"], seed["r2"]["id"])
    _finish(lifecycle, seed["anna"]["id"], seed["r2"]["id"])
    _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])
    _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])

    rankings = aggregator.contest_rankings(seed["contest"]["id"]).value
    assert [item.total_points for item in rankings] == [41, 41]
    assert [(item.name, item.last_race_position) for item in rankings] == [("Ben", 1), ("Anna", 2)]


def test_ranking_key_puts_missing_last_position_last() -> None:
    without = ParticipantRanking(participant_id=1, name="A", club=None, bib_number=1, total_points=10)
    worse = ParticipantRanking(participant_id=2, name="B", club=None, bib_number=2, total_points=10, last_race_position=5)
    better = ParticipantRanking(participant_id=3, name="C", club=None, bib_number=3, total_points=10, last_race_position=2)
    leader = ParticipantRanking(participant_id=4, name="D", club=None, bib_number=4, total_points=12)

    ordered = sorted([without, worse, better, leader], key=ranking_key)
    assert [item.name for item in ordered] == ["D", "C", "B", "A"]


def test_series_rankings_slice_and_label(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)
    _finish(lifecycle, seed["anna"]["id"], seed["r1"]["id"])
    _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])

    summary = aggregator.all_series_rankings(top_n=1).value
    assert len(summary) == 1
    contest = summary[0].contests[0]
    assert contest.age_group == "2010-2011"
    assert [item.name for item in contest.participants] == ["Anna"]

    detail = aggregator.series_rankings(seed["series"]["id"]).value
    assert [item.name for item in detail.contests[0].participants] == ["Anna", "Ben"]

    assert aggregator.all_series_rankings(status="finished").value == []


def test_contest_statistics_uses_latest_completed_race(store: DataStore) -> None:
    seed = _seed(store)
    aggregator = RankingAggregator(store)

    empty = aggregator.contest_statistics(seed["contest"]["id"]).value
    assert empty == {"total_completed_races": 0, "latest_finished_race": None}

    store.update_race(seed["r1"]["id"], {"status": "completed"})
    store.update_race(seed["r2"]["id"], {"status": "completed"})
    stats = aggregator.contest_statistics(seed["contest"]["id"]).value
    assert stats["total_completed_races"] == 2
    assert stats["latest_finished_race"] == {
        "race_id": seed["r2"]["id"],
        "event_name": "Round 2",
        "event_date": "2024-10-20",
    }


def test_race_results_lists_finishers_first(store: DataStore) -> None:
    seed = _seed(store)
    lifecycle = ParticipationLifecycle(store)
    aggregator = RankingAggregator(store)
    lifecycle.assign(seed["anna"]["id"], seed["r1"]["id"])
    _finish(lifecycle, seed["ben"]["id"], seed["r1"]["id"])

    results = aggregator.race_results(seed["r1"]["id"]).value["results"]
    assert [(row["participant"]["name"], row["position"], row["points"]) for row in results] == [
        ("Ben", 1, 22),
        ("Anna", None, 0),
    ]


def test_missing_and_unavailable_are_distinguished(store: DataStore) -> None:
    aggregator = RankingAggregator(store)
    assert isinstance(aggregator.contest_rankings(404), NotFound)

    store.local_path.parent.mkdir(parents=True, exist_ok=True)
    store.local_path.write_text("{not json", encoding="utf-8")
    assert isinstance(aggregator.contest_rankings(1), TransientFailure)
