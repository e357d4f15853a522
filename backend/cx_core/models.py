from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

SERIES_STATUSES = ("scheduled", "ongoing", "finished")
RACE_STATUSES = ("scheduled", "ongoing", "completed")
PARTICIPANT_STATUSES = ("registered", "started", "finished", "dnf", "dns")
IMPORT_STATUSES = ("none", "pending", "done")
GENDERS = ("male", "female", "other", "mixed")


class ParticipationState(str, Enum):
    """Lifecycle of a participant within one race.

    The admin advances it with a single "cycle" action that wraps around:
    registered -> started -> finished -> registered.
    """

    REGISTERED = "registered"
    STARTED = "started"
    FINISHED = "finished"

    def next(self) -> "ParticipationState":
        if self is ParticipationState.REGISTERED:
            return ParticipationState.STARTED
        if self is ParticipationState.STARTED:
            return ParticipationState.FINISHED
        return ParticipationState.REGISTERED

    @classmethod
    def from_flags(cls, started: Any, finished: Any) -> "ParticipationState":
        if finished:
            return cls.FINISHED
        if started:
            return cls.STARTED
        return cls.REGISTERED


@dataclass
class Participation:
    """One participant's involvement in one race.

    The store keeps ``registered``/``started``/``finished`` as separate boolean
    columns; here they collapse into ``state`` and are derived back when the
    row is written, so a finisher is always also started.
    """

    id: int
    participant_id: int
    race_id: int
    state: ParticipationState = ParticipationState.REGISTERED
    position: Optional[int] = None  # 1-based finish rank, only while finished
    is_provisional: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def registered(self) -> bool:
        return True

    @property
    def started(self) -> bool:
        return self.state in (ParticipationState.STARTED, ParticipationState.FINISHED)

    @property
    def finished(self) -> bool:
        return self.state is ParticipationState.FINISHED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Participation":
        state = ParticipationState.from_flags(row.get("started"), row.get("finished"))
        position = row.get("position")
        return cls(
            id=int(row["id"]),
            participant_id=int(row["participant_id"]),
            race_id=int(row["race_id"]),
            state=state,
            position=int(position) if position is not None and state is ParticipationState.FINISHED else None,
            is_provisional=bool(row.get("is_provisional") or False),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participant_id": self.participant_id,
            "race_id": self.race_id,
            "registered": self.registered,
            "started": self.started,
            "finished": self.finished,
            "position": self.position if self.finished else None,
            "is_provisional": self.is_provisional,
        }

    def transition(self) -> "Participation":
        """Return a copy advanced one step through the cycle."""
        next_state = self.state.next()
        return Participation(
            id=self.id,
            participant_id=self.participant_id,
            race_id=self.race_id,
            state=next_state,
            position=self.position if next_state is ParticipationState.FINISHED else None,
            is_provisional=self.is_provisional,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
