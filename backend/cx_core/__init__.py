"""Cyclocross series domain: store, scoring, rankings and live updates."""

from .broadcast import LiveUpdateHub
from .importer import RaceResultImporter, parse_raceresult
from .lifecycle import ParticipationLifecycle
from .loader import ConstraintViolation, DataStore, RecordNotFound, StoreUnavailable
from .models import Participation, ParticipationState
from .rankings import RankingAggregator
from .results import NotFound, Ok, TransientFailure, ValidationFailure
from .scoring import points_for

__all__ = [
    "ConstraintViolation",
    "DataStore",
    "LiveUpdateHub",
    "NotFound",
    "Ok",
    "Participation",
    "ParticipationLifecycle",
    "ParticipationState",
    "RaceResultImporter",
    "RankingAggregator",
    "RecordNotFound",
    "StoreUnavailable",
    "TransientFailure",
    "ValidationFailure",
    "parse_raceresult",
    "points_for",
]
