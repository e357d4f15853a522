from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from .broadcast import LiveUpdateHub, notify_contest_update, notify_race_update
from .loader import ConstraintViolation, DataStore, RecordNotFound
from .models import Participation, ParticipationState
from .results import Result, capture

logger = logging.getLogger(__name__)


class InvalidTransition(ConstraintViolation):
    pass


class RaceLocks:
    """One lock per race, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def for_race(self, race_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(race_id)
            if lock is None:
                lock = self._locks[race_id] = threading.Lock()
            return lock


def _by_position(participation: Participation) -> tuple:
    return (participation.position is None, participation.position or 0, participation.id)


class ParticipationLifecycle:
    """Status cycling and finish order of the participations in a race.

    Positions among the finishers of a race stay dense (1..M). Every
    read-modify-write of positions holds the race's lock and writes all changed
    rows back with one bulk upsert.
    """

    def __init__(self, store: DataStore, hub: LiveUpdateHub | None = None, locks: RaceLocks | None = None) -> None:
        self.store = store
        self.hub = hub
        self.locks = locks or RaceLocks()

    def assign(self, participant_id: int, race_id: int) -> Result:
        return capture("Assign participant", self._assign, participant_id, race_id)

    def remove(self, participant_id: int, race_id: int) -> Result:
        return capture("Remove participant", self._remove, participant_id, race_id)

    def cycle(self, participation_id: int) -> Result:
        return capture("Cycle participation status", self._cycle, participation_id)

    def move_up(self, participation_id: int) -> Result:
        return capture("Move participation up", self._move, participation_id, -1)

    def move_down(self, participation_id: int) -> Result:
        return capture("Move participation down", self._move, participation_id, 1)

    def renumber(self, race_id: int) -> Result:
        return capture("Renumber finishers", self._renumber, race_id)

    def update(self, participation_id: int, is_provisional: bool) -> Result:
        return capture("Update participation", self._update, participation_id, is_provisional)

    def available_participants(self, race_id: int) -> Result:
        return capture("Available participants", self._available_participants, race_id)

    def race_participations(self, race_id: int) -> Result:
        return capture("Race participations", self._race_participations, race_id)

    # ------------------------------------------------------------------

    def _assign(self, participant_id: int, race_id: int) -> Participation:
        race = self.store.get_race(race_id)
        participant = self.store.get_participant(participant_id)
        if participant.get("contest_id") != race.get("contest_id"):
            raise InvalidTransition("Participant does not belong to the race's contest")
        if self.store.select("participations", {"participant_id": participant_id, "race_id": race_id}, limit=1):
            raise InvalidTransition("Participant is already assigned to this race", conflict=True)

        row = self.store.insert(
            "participations",
            {
                "participant_id": participant_id,
                "race_id": race_id,
                "registered": True,
                "started": False,
                "finished": False,
                "position": None,
                "is_provisional": False,
            },
        )
        self._notify(race)
        return Participation.from_row(row)

    def _remove(self, participant_id: int, race_id: int) -> None:
        race = self.store.get_race(race_id)
        with self.locks.for_race(race_id):
            rows = self.store.select("participations", {"participant_id": participant_id, "race_id": race_id}, limit=1)
            if not rows:
                raise RecordNotFound("Participation not found")
            participation = Participation.from_row(rows[0])
            self.store.delete("participations", {"id": participation.id})
            if participation.finished:
                self._renumber_locked(race_id)
        self._notify(race)

    def _cycle(self, participation_id: int) -> Participation:
        race_id = int(self.store.get_participation(participation_id)["race_id"])
        race = self.store.get_race(race_id)
        with self.locks.for_race(race_id):
            current = Participation.from_row(self.store.get_participation(participation_id))
            updated = current.transition()
            others = [
                Participation.from_row(row)
                for row in self.store.list_participations(race_ids=[race_id], finished=True)
                if int(row["id"]) != current.id
            ]

            rows: List[Dict[str, Any]] = []
            if updated.state is ParticipationState.FINISHED:
                # The new finisher takes the next free slot.
                updated.position = len(others) + 1
            elif current.finished:
                rows.extend(self._dense_rows(others))
            rows.insert(0, updated.to_row())
            self.store.upsert("participations", rows)

        logger.info(
            "Participation %s in race %s: %s -> %s",
            participation_id,
            race_id,
            current.state.value,
            updated.state.value,
        )
        self._notify(race)
        return updated

    def _move(self, participation_id: int, step: int) -> Participation:
        race_id = int(self.store.get_participation(participation_id)["race_id"])
        race = self.store.get_race(race_id)
        with self.locks.for_race(race_id):
            current = Participation.from_row(self.store.get_participation(participation_id))
            if not current.finished:
                raise InvalidTransition("Only finished participations can be reordered")

            finishers = sorted(
                (Participation.from_row(row) for row in self.store.list_participations(race_ids=[race_id], finished=True)),
                key=_by_position,
            )
            # Finishers stored without a position are slotted in first.
            rows = {row["id"]: row for row in self._dense_rows(finishers)}
            index = next(i for i, item in enumerate(finishers) if item.id == current.id)
            current = finishers[index]
            neighbour_index = index + step
            if 0 <= neighbour_index < len(finishers):
                neighbour = finishers[neighbour_index]
                current.position, neighbour.position = neighbour.position, current.position
                rows[current.id] = current.to_row()
                rows[neighbour.id] = neighbour.to_row()
            if not rows:
                return current
            self.store.upsert("participations", list(rows.values()))

        self._notify(race)
        return current

    def _renumber(self, race_id: int) -> int:
        race = self.store.get_race(race_id)
        with self.locks.for_race(race_id):
            changed = self._renumber_locked(race_id)
        if changed:
            self._notify(race)
        return changed

    def _renumber_locked(self, race_id: int) -> int:
        finishers = [
            Participation.from_row(row) for row in self.store.list_participations(race_ids=[race_id], finished=True)
        ]
        rows = self._dense_rows(finishers)
        self.store.upsert("participations", rows)
        return len(rows)

    @staticmethod
    def _dense_rows(finishers: List[Participation]) -> List[Dict[str, Any]]:
        """Rows whose position must change to make the order 1..M again."""
        rows = []
        for index, participation in enumerate(sorted(finishers, key=_by_position), start=1):
            if participation.position != index:
                participation.position = index
                rows.append(participation.to_row())
        return rows

    def _update(self, participation_id: int, is_provisional: bool) -> Participation:
        row = self.store.update("participations", participation_id, {"is_provisional": bool(is_provisional)})
        self._notify(self.store.get_race(int(row["race_id"])))
        return Participation.from_row(row)

    def _available_participants(self, race_id: int) -> List[Dict[str, Any]]:
        race = self.store.get_race(race_id)
        assigned = {int(row["participant_id"]) for row in self.store.list_participations(race_ids=[race_id])}
        return [
            participant
            for participant in self.store.list_participants(int(race["contest_id"]))
            if int(participant["id"]) not in assigned
        ]

    def _race_participations(self, race_id: int) -> List[Dict[str, Any]]:
        self.store.get_race(race_id)
        rows = self.store.list_participations(race_ids=[race_id])
        participants = {
            int(row["id"]): row
            for row in self.store.select("participants", {"id": [int(item["participant_id"]) for item in rows]})
        }
        items = []
        for row in rows:
            participation = Participation.from_row(row)
            items.append({"participation": participation, "participant": participants.get(participation.participant_id, {})})
        items.sort(key=lambda item: (item["participant"].get("bib_number") or 0, item["participation"].id))
        return items

    def _notify(self, race: Dict[str, Any]) -> None:
        if self.hub is None:
            return
        notify_race_update(self.hub, int(race["id"]))
        contest_id: Optional[Any] = race.get("contest_id")
        if contest_id is not None:
            notify_contest_update(self.hub, int(contest_id))
