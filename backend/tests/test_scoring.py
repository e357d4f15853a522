import pytest

from cx_core import Participation, ParticipationState, points_for
from cx_core.scoring import POSITION_POINTS


@pytest.mark.parametrize("position", range(1, 21))
def test_finisher_gets_start_and_position_points(position: int) -> None:
    record = {"started": True, "finished": True, "position": position}
    assert points_for(record) == 2 + POSITION_POINTS[position - 1]


def test_position_outside_table_only_scores_start() -> None:
    assert points_for({"started": True, "finished": True, "position": 21}) == 2
    assert points_for({"started": True, "finished": True, "position": 150}) == 2
    assert points_for({"started": True, "finished": True, "position": None}) == 2


def test_not_started_scores_nothing() -> None:
    assert points_for({"started": False, "finished": False, "position": None}) == 0
    assert points_for({"started": False, "finished": True, "position": 1}) == 0


def test_started_without_finish_scores_start_points() -> None:
    assert points_for({"started": True, "finished": False, "position": None}) == 2
    # A stale position on an unfinished row is ignored.
    assert points_for({"started": True, "finished": False, "position": 1}) == 2


def test_accepts_participation_objects() -> None:
    finished = Participation(id=1, participant_id=1, race_id=1, state=ParticipationState.FINISHED, position=2)
    started = Participation(id=2, participant_id=2, race_id=1, state=ParticipationState.STARTED)
    registered = Participation(id=3, participant_id=3, race_id=1)

    assert points_for(finished) == 19
    assert points_for(started) == 2
    assert points_for(registered) == 0
    assert points_for(finished) == points_for(finished)


def test_state_cycle_wraps_around() -> None:
    assert ParticipationState.REGISTERED.next() is ParticipationState.STARTED
    assert ParticipationState.STARTED.next() is ParticipationState.FINISHED
    assert ParticipationState.FINISHED.next() is ParticipationState.REGISTERED


def test_participation_row_round_trip_derives_flags() -> None:
    row = {
        "id": 7,
        "participant_id": 3,
        "race_id": 2,
        "registered": True,
        "started": False,
        "finished": True,
        "position": 4,
        "is_provisional": True,
    }
    participation = Participation.from_row(row)

    assert participation.state is ParticipationState.FINISHED
    assert participation.position == 4
    assert participation.to_row()["started"] is True

    unfinished = Participation.from_row({**row, "finished": False, "started": True})
    assert unfinished.position is None
    assert unfinished.to_row()["position"] is None
