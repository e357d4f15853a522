from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .loader import DataStore
from .models import Participation
from .results import Result, capture
from .scoring import points_for


@dataclass
class RaceScore:
    race_id: int
    event_name: str
    event_date: Optional[str]
    position: Optional[int]
    points: int


@dataclass
class ParticipantRanking:
    participant_id: int
    name: str
    club: Optional[str]
    bib_number: int
    total_points: int = 0
    last_race_position: Optional[int] = None
    participations: List[RaceScore] = field(default_factory=list)


@dataclass
class ContestRanking:
    contest_id: int
    contest_name: str
    age_group: Optional[str]
    gender: Optional[str]
    participants: List[ParticipantRanking] = field(default_factory=list)


@dataclass
class SeriesRanking:
    series_id: int
    series_name: str
    season: str
    status: Optional[str]
    contests: List[ContestRanking] = field(default_factory=list)


def ranking_key(ranking: ParticipantRanking) -> tuple:
    """Sort key: most points first, then the better last race position.

    Participants without a last race position trail those with one; the bib
    number keeps the order stable for anyone still level.
    """
    has_position = ranking.last_race_position is not None
    return (
        -ranking.total_points,
        0 if has_position else 1,
        ranking.last_race_position if has_position else 0,
        ranking.bib_number,
    )


def age_group_label(contest: Dict[str, Any]) -> Optional[str]:
    start = contest.get("birth_year_from")
    end = contest.get("birth_year_to")
    if start and end:
        return f"{start}-{end}"
    return None


class RankingAggregator:
    """Standings computed from participations on every read, never cached."""

    def __init__(self, store: DataStore) -> None:
        self.store = store

    def contest_rankings(self, contest_id: int) -> Result:
        return capture("Contest rankings", self._contest_rankings, contest_id)

    def contest_ranking_detail(self, contest_id: int) -> Result:
        return capture("Contest ranking detail", self._contest_ranking_detail, contest_id)

    def series_rankings(self, series_id: int) -> Result:
        return capture("Series rankings", self._series_rankings, series_id, None)

    def all_series_rankings(self, top_n: int | None = 10, status: str | None = None) -> Result:
        return capture("All series rankings", self._all_series_rankings, top_n, status)

    def contest_statistics(self, contest_id: int) -> Result:
        return capture("Contest statistics", self._contest_statistics, contest_id)

    def race_results(self, race_id: int) -> Result:
        return capture("Race results", self._race_results, race_id)

    # ------------------------------------------------------------------

    def _contest_rankings(self, contest_id: int) -> List[ParticipantRanking]:
        self.store.get_contest(contest_id)
        return self._rank_contest(contest_id)

    def _rank_contest(self, contest_id: int) -> List[ParticipantRanking]:
        participants = self.store.list_participants(contest_id)
        races = self.store.list_races(contest_id=contest_id)
        events = self._events_by_id(races)

        # Participations are replayed in race-date order so that the last
        # finished one seen is the most recent race.
        races.sort(key=lambda race: self._chronological_key(race, events))
        race_order = {int(race["id"]): index for index, race in enumerate(races)}
        race_events = {int(race["id"]): events.get(race.get("event_id"), {}) for race in races}

        rows_by_participant: Dict[int, List[Dict[str, Any]]] = {}
        for row in self.store.list_participations(race_ids=list(race_order)):
            rows_by_participant.setdefault(int(row["participant_id"]), []).append(row)

        rankings: List[ParticipantRanking] = []
        for participant in participants:
            participant_id = int(participant["id"])
            ranking = ParticipantRanking(
                participant_id=participant_id,
                name=participant.get("name") or "",
                club=participant.get("club"),
                bib_number=int(participant.get("bib_number") or 0),
            )
            rows = sorted(rows_by_participant.get(participant_id, []), key=lambda row: race_order[int(row["race_id"])])
            for row in rows:
                participation = Participation.from_row(row)
                # Scored from the stored flags so an unstarted row earns nothing.
                points = points_for(row)
                ranking.total_points += points
                if participation.finished and participation.position:
                    ranking.last_race_position = participation.position
                event = race_events.get(participation.race_id, {})
                ranking.participations.append(
                    RaceScore(
                        race_id=participation.race_id,
                        event_name=event.get("name") or "",
                        event_date=event.get("date"),
                        position=participation.position,
                        points=points,
                    )
                )
            rankings.append(ranking)

        rankings.sort(key=ranking_key)
        return rankings

    def _contest_ranking_detail(self, contest_id: int) -> Dict[str, Any]:
        contest = self.store.get_contest(contest_id)
        series = self.store.get_series(int(contest["series_id"]))
        return {
            "contest": contest,
            "series": series,
            "participants": self.store.list_participants(contest_id),
            "rankings": self._rank_contest(contest_id),
        }

    def _series_rankings(self, series_id: int, top_n: int | None) -> SeriesRanking:
        series = self.store.get_series(series_id)
        return self._build_series_ranking(series, top_n)

    def _all_series_rankings(self, top_n: int | None, status: str | None) -> List[SeriesRanking]:
        return [self._build_series_ranking(series, top_n) for series in self.store.list_series(status)]

    def _build_series_ranking(self, series: Dict[str, Any], top_n: int | None) -> SeriesRanking:
        result = SeriesRanking(
            series_id=int(series["id"]),
            series_name=series.get("name") or "",
            season=str(series.get("season") or ""),
            status=series.get("status"),
        )
        for contest in self.store.list_contests(result.series_id):
            rankings = self._rank_contest(int(contest["id"]))
            if top_n is not None:
                rankings = rankings[:top_n]
            result.contests.append(
                ContestRanking(
                    contest_id=int(contest["id"]),
                    contest_name=contest.get("name") or "",
                    age_group=age_group_label(contest),
                    gender=contest.get("gender"),
                    participants=rankings,
                )
            )
        return result

    def _contest_statistics(self, contest_id: int) -> Dict[str, Any]:
        self.store.get_contest(contest_id)
        completed = [race for race in self.store.list_races(contest_id=contest_id) if race.get("status") == "completed"]
        latest = None
        if completed:
            events = self._events_by_id(completed)
            race = max(completed, key=lambda item: self._chronological_key(item, events))
            event = events.get(race.get("event_id"), {})
            latest = {
                "race_id": int(race["id"]),
                "event_name": event.get("name") or "",
                "event_date": event.get("date"),
            }
        return {"total_completed_races": len(completed), "latest_finished_race": latest}

    def _race_results(self, race_id: int) -> Dict[str, Any]:
        race = self.store.get_race(race_id)
        event = self.store.get_event(int(race["event_id"]))
        contest = self.store.get_contest(int(race["contest_id"]))
        rows = self.store.list_participations(race_ids=[race_id])
        participants = {
            int(row["id"]): row
            for row in self.store.select("participants", {"id": [int(item["participant_id"]) for item in rows]})
        }

        results: List[Dict[str, Any]] = []
        for row in rows:
            participation = Participation.from_row(row)
            results.append(
                {
                    "participation_id": participation.id,
                    "participant": participants.get(participation.participant_id, {}),
                    "state": participation.state.value,
                    "position": participation.position,
                    "is_provisional": participation.is_provisional,
                    "points": points_for(row),
                }
            )

        def _order(item: Dict[str, Any]) -> tuple:
            bib = item["participant"].get("bib_number") or 0
            if item["position"] is not None:
                return (0, item["position"], bib)
            return (1, 0, bib)

        results.sort(key=_order)
        return {"race": race, "event": event, "contest": contest, "results": results}

    # ------------------------------------------------------------------

    def _events_by_id(self, races: List[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
        event_ids = sorted({int(race["event_id"]) for race in races if race.get("event_id") is not None})
        return {row.get("id"): row for row in self.store.select("events", {"id": event_ids})}

    @staticmethod
    def _chronological_key(race: Dict[str, Any], events: Dict[Any, Dict[str, Any]]) -> tuple:
        event = events.get(race.get("event_id"), {})
        return (str(event.get("date") or ""), str(race.get("start_time") or ""), int(race.get("id") or 0))
