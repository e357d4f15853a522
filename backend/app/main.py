from __future__ import annotations

import datetime as dt
import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from cx_core import (
    DataStore,
    LiveUpdateHub,
    NotFound,
    Ok,
    Participation,
    ParticipationLifecycle,
    RaceResultImporter,
    RankingAggregator,
    ValidationFailure,
)
from cx_core.broadcast import HEARTBEAT_SECONDS, notify_contest_update, notify_race_update, notify_series_update
from cx_core.lifecycle import RaceLocks
from cx_core.relay import PgNotifyRelay
from cx_core.results import Result, capture

logging.basicConfig(
    level=os.getenv("CX_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _env_number(name: str, default: float, cast: Callable[[str], Any] = float) -> Any:
    try:
        return cast(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, os.getenv(name))
        return default


@asynccontextmanager
async def lifespan(app: FastAPI):
    hub = LiveUpdateHub(heartbeat_seconds=_env_number("CX_HEARTBEAT_SECONDS", HEARTBEAT_SECONDS))
    relay = PgNotifyRelay.from_env()
    if relay is not None:
        relay.start(hub)
    app.state.hub = hub
    try:
        yield
    finally:
        if relay is not None:
            relay.stop()


app = FastAPI(title="Cyclocross Series API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_race_locks = RaceLocks()


# ----------------------------------------------------------------------
# Request payloads


class SeriesCreatePayload(BaseModel):
    name: str
    season: str
    status: Optional[str] = None
    description: Optional[str] = None
    participants_url: Optional[str] = Field(default=None, alias="participantsUrl")

    model_config = ConfigDict(populate_by_name=True)


class SeriesUpdatePayload(BaseModel):
    name: Optional[str] = None
    season: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    participants_url: Optional[str] = Field(default=None, alias="participantsUrl")

    model_config = ConfigDict(populate_by_name=True)


class EventCreatePayload(BaseModel):
    name: str
    date: dt.date
    location: str
    club: str
    registration_url: Optional[str] = Field(default=None, alias="registrationUrl")

    model_config = ConfigDict(populate_by_name=True)


class EventUpdatePayload(BaseModel):
    name: Optional[str] = None
    date: Optional[dt.date] = None
    location: Optional[str] = None
    club: Optional[str] = None
    registration_url: Optional[str] = Field(default=None, alias="registrationUrl")

    model_config = ConfigDict(populate_by_name=True)


class ContestCreatePayload(BaseModel):
    name: str
    gender: Optional[str] = None
    birth_year_from: Optional[int] = Field(default=None, alias="birthYearFrom")
    birth_year_to: Optional[int] = Field(default=None, alias="birthYearTo")
    participation_points: Optional[int] = Field(default=None, alias="participationPoints", ge=0)
    group: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", ge=0)
    comment: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ContestUpdatePayload(ContestCreatePayload):
    name: Optional[str] = None


class ParticipantCreatePayload(BaseModel):
    name: str
    bib_number: int = Field(alias="bibNumber", ge=0)
    birth_year: int = Field(alias="birthYear")
    gender: str
    club: Optional[str] = None
    team: Optional[str] = None
    license_number: Optional[str] = Field(default=None, alias="licenseNumber")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ParticipantUpdatePayload(BaseModel):
    name: Optional[str] = None
    bib_number: Optional[int] = Field(default=None, alias="bibNumber", ge=0)
    birth_year: Optional[int] = Field(default=None, alias="birthYear")
    gender: Optional[str] = None
    club: Optional[str] = None
    team: Optional[str] = None
    license_number: Optional[str] = Field(default=None, alias="licenseNumber")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RaceCreatePayload(BaseModel):
    contest_id: int = Field(alias="contestId")
    start_time: Optional[dt.time] = Field(default=None, alias="startTime")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", ge=0)
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RaceUpdatePayload(BaseModel):
    contest_id: Optional[int] = Field(default=None, alias="contestId")
    start_time: Optional[dt.time] = Field(default=None, alias="startTime")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", ge=0)
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AssignPayload(BaseModel):
    participant_id: int = Field(alias="participantId")

    model_config = ConfigDict(populate_by_name=True)


class ParticipationUpdatePayload(BaseModel):
    is_provisional: bool = Field(alias="isProvisional")

    model_config = ConfigDict(populate_by_name=True)


class RaceResultImportPayload(BaseModel):
    series_id: int = Field(alias="seriesId")
    url: str
    event_id: Optional[int] = Field(default=None, alias="eventId")

    model_config = ConfigDict(populate_by_name=True)


# ----------------------------------------------------------------------
# Response models


class SeriesModel(BaseModel):
    id: int
    name: str
    season: str
    status: str
    description: Optional[str] = None
    participants_url: Optional[str] = Field(default=None, alias="participantsUrl")

    model_config = ConfigDict(populate_by_name=True)


class SeriesListResponse(BaseModel):
    series: List[SeriesModel]


class EventModel(BaseModel):
    id: int
    series_id: int = Field(alias="seriesId")
    name: str
    date: str
    location: str
    club: str
    registration_url: Optional[str] = Field(default=None, alias="registrationUrl")
    import_status: Optional[str] = Field(default=None, alias="importStatus")
    last_import_at: Optional[str] = Field(default=None, alias="lastImportAt")

    model_config = ConfigDict(populate_by_name=True)


class EventListResponse(BaseModel):
    events: List[EventModel]


class ContestModel(BaseModel):
    id: int
    series_id: int = Field(alias="seriesId")
    name: str
    gender: Optional[str] = None
    birth_year_from: Optional[int] = Field(default=None, alias="birthYearFrom")
    birth_year_to: Optional[int] = Field(default=None, alias="birthYearTo")
    participation_points: int = Field(default=1, alias="participationPoints")
    group: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    comment: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ContestListResponse(BaseModel):
    contests: List[ContestModel]


class ParticipantModel(BaseModel):
    id: int
    contest_id: int = Field(alias="contestId")
    name: str
    bib_number: int = Field(alias="bibNumber")
    birth_year: int = Field(alias="birthYear")
    gender: str
    club: Optional[str] = None
    team: Optional[str] = None
    license_number: Optional[str] = Field(default=None, alias="licenseNumber")
    status: str = "registered"

    model_config = ConfigDict(populate_by_name=True)


class ParticipantListResponse(BaseModel):
    participants: List[ParticipantModel]


class RaceModel(BaseModel):
    id: int
    event_id: int = Field(alias="eventId")
    contest_id: int = Field(alias="contestId")
    start_time: Optional[str] = Field(default=None, alias="startTime")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    status: str

    model_config = ConfigDict(populate_by_name=True)


class RaceListResponse(BaseModel):
    races: List[RaceModel]


class ParticipationModel(BaseModel):
    id: int
    participant_id: int = Field(alias="participantId")
    race_id: int = Field(alias="raceId")
    state: str
    registered: bool
    started: bool
    finished: bool
    position: Optional[int] = None
    is_provisional: bool = Field(alias="isProvisional")

    model_config = ConfigDict(populate_by_name=True)


class RaceParticipationModel(ParticipationModel):
    participant: Optional[ParticipantModel] = None


class RaceParticipationListResponse(BaseModel):
    participations: List[RaceParticipationModel]


class RaceScoreModel(BaseModel):
    race_id: int = Field(alias="raceId")
    event_name: str = Field(alias="eventName")
    event_date: Optional[str] = Field(default=None, alias="eventDate")
    position: Optional[int] = None
    points: int

    model_config = ConfigDict(populate_by_name=True)


class ParticipantRankingModel(BaseModel):
    participant_id: int = Field(alias="participantId")
    name: str
    club: Optional[str] = None
    bib_number: int = Field(alias="bibNumber")
    total_points: int = Field(alias="totalPoints")
    last_race_position: Optional[int] = Field(default=None, alias="lastRacePosition")
    participations: List[RaceScoreModel] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ContestRankingModel(BaseModel):
    contest_id: int = Field(alias="contestId")
    contest_name: str = Field(alias="contestName")
    age_group: Optional[str] = Field(default=None, alias="ageGroup")
    gender: Optional[str] = None
    participants: List[ParticipantRankingModel]

    model_config = ConfigDict(populate_by_name=True)


class SeriesRankingModel(BaseModel):
    series_id: int = Field(alias="seriesId")
    series_name: str = Field(alias="seriesName")
    season: str
    status: Optional[str] = None
    contests: List[ContestRankingModel]

    model_config = ConfigDict(populate_by_name=True)


class RankingsResponse(BaseModel):
    series: List[SeriesRankingModel]


class LatestRaceModel(BaseModel):
    race_id: int = Field(alias="raceId")
    event_name: str = Field(alias="eventName")
    event_date: Optional[str] = Field(default=None, alias="eventDate")

    model_config = ConfigDict(populate_by_name=True)


class ContestStatisticsModel(BaseModel):
    total_completed_races: int = Field(alias="totalCompletedRaces")
    latest_finished_race: Optional[LatestRaceModel] = Field(default=None, alias="latestFinishedRace")

    model_config = ConfigDict(populate_by_name=True)


class ContestRankingDetailResponse(BaseModel):
    contest: ContestModel
    series: SeriesModel
    participants: List[ParticipantModel]
    rankings: List[ParticipantRankingModel]
    statistics: ContestStatisticsModel


class RaceResultRowModel(BaseModel):
    participation_id: int = Field(alias="participationId")
    participant: Optional[ParticipantModel] = None
    state: str
    position: Optional[int] = None
    is_provisional: bool = Field(alias="isProvisional")
    points: int

    model_config = ConfigDict(populate_by_name=True)


class RaceResultsResponse(BaseModel):
    race: RaceModel
    event: EventModel
    contest: ContestModel
    results: List[RaceResultRowModel]


class ImportedContestModel(BaseModel):
    contest: ContestModel
    action: str
    name: str
    category: str
    age_range: str = Field(alias="ageRange")
    participant_count: int = Field(alias="participantCount")
    external_id: str = Field(alias="externalId")

    model_config = ConfigDict(populate_by_name=True)


class ImportSummaryModel(BaseModel):
    created: int
    updated: int
    total: int


class RaceResultImportResponse(BaseModel):
    contests: List[ImportedContestModel]
    summary: ImportSummaryModel


# ----------------------------------------------------------------------
# Dependencies


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


def get_hub(request: Request) -> LiveUpdateHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        # Lifespan did not run (e.g. a bare TestClient); fall back to a local hub.
        hub = request.app.state.hub = LiveUpdateHub(
            heartbeat_seconds=_env_number("CX_HEARTBEAT_SECONDS", HEARTBEAT_SECONDS)
        )
    return hub


def get_rankings(data: DataStore = Depends(store)) -> RankingAggregator:
    return RankingAggregator(data)


def get_lifecycle(data: DataStore = Depends(store), hub: LiveUpdateHub = Depends(get_hub)) -> ParticipationLifecycle:
    return ParticipationLifecycle(data, hub, locks=_race_locks)


def require_admin(
    authorization: str = Header(default=""),
    admin_session: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    token = ""
    if authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1].strip()
    if not token and admin_session:
        token = admin_session.strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    expected = os.getenv("CX_ADMIN_TOKEN")
    if expected:
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Invalid authentication token")
        return {"id": "admin", "role": "admin"}

    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    supabase_anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
    if not supabase_url or not supabase_anon_key:
        raise HTTPException(status_code=500, detail="Authentication is not configured")

    endpoint = f"{supabase_url}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else 502
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    payload["id"] = user_id
    return payload


# ----------------------------------------------------------------------
# Helpers


def unwrap(result: Result) -> Any:
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=result.reason)
    if isinstance(result, ValidationFailure):
        raise HTTPException(status_code=409 if result.conflict else 400, detail=result.reason)
    raise HTTPException(status_code=502, detail=result.reason)


def _participation_fields(participation: Participation) -> Dict[str, Any]:
    return {
        "id": participation.id,
        "participant_id": participation.participant_id,
        "race_id": participation.race_id,
        "state": participation.state.value,
        "registered": participation.registered,
        "started": participation.started,
        "finished": participation.finished,
        "position": participation.position,
        "is_provisional": participation.is_provisional,
    }


def _participation_model(participation: Participation) -> ParticipationModel:
    return ParticipationModel(**_participation_fields(participation))


def _top_n(value: Optional[int]) -> int:
    return value if value is not None else _env_number("CX_RANKINGS_TOP_N", 10, int)


# ----------------------------------------------------------------------
# Public routes


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/events")
async def live_events(request: Request, hub: LiveUpdateHub = Depends(get_hub)):
    return StreamingResponse(
        hub.stream(is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@app.get("/rankings", response_model=RankingsResponse)
def rankings(
    top_n: Optional[int] = Query(default=None, alias="topN", ge=1),
    status: Optional[str] = Query(default=None),
    aggregator: RankingAggregator = Depends(get_rankings),
):
    series = unwrap(aggregator.all_series_rankings(_top_n(top_n), status))
    return RankingsResponse(series=[SeriesRankingModel(**asdict(item)) for item in series])


@app.get("/rankings/archive", response_model=RankingsResponse)
def rankings_archive(
    top_n: Optional[int] = Query(default=None, alias="topN", ge=1),
    aggregator: RankingAggregator = Depends(get_rankings),
):
    series = unwrap(aggregator.all_series_rankings(_top_n(top_n), "finished"))
    return RankingsResponse(series=[SeriesRankingModel(**asdict(item)) for item in series])


@app.get("/rankings/series/{series_id}", response_model=SeriesRankingModel)
def series_ranking(series_id: int, aggregator: RankingAggregator = Depends(get_rankings)):
    return SeriesRankingModel(**asdict(unwrap(aggregator.series_rankings(series_id))))


@app.get("/rankings/contest/{contest_id}", response_model=ContestRankingDetailResponse)
def contest_ranking(contest_id: int, aggregator: RankingAggregator = Depends(get_rankings)):
    detail = unwrap(aggregator.contest_ranking_detail(contest_id))
    statistics = unwrap(aggregator.contest_statistics(contest_id))
    return ContestRankingDetailResponse(
        contest=ContestModel(**detail["contest"]),
        series=SeriesModel(**detail["series"]),
        participants=[ParticipantModel(**row) for row in detail["participants"]],
        rankings=[ParticipantRankingModel(**asdict(item)) for item in detail["rankings"]],
        statistics=ContestStatisticsModel(**statistics),
    )


@app.get("/rankings/race/{race_id}", response_model=RaceResultsResponse)
def race_ranking(race_id: int, aggregator: RankingAggregator = Depends(get_rankings)):
    detail = unwrap(aggregator.race_results(race_id))
    return RaceResultsResponse(
        race=RaceModel(**detail["race"]),
        event=EventModel(**detail["event"]),
        contest=ContestModel(**detail["contest"]),
        results=[
            RaceResultRowModel(**{**row, "participant": ParticipantModel(**row["participant"]) if row["participant"] else None})
            for row in detail["results"]
        ],
    )


@app.get("/series", response_model=SeriesListResponse)
def list_series(status: Optional[str] = Query(default=None), data: DataStore = Depends(store)):
    rows = unwrap(capture("List series", data.list_series, status))
    return SeriesListResponse(series=[SeriesModel(**row) for row in rows])


@app.get("/series/{series_id}", response_model=SeriesModel)
def get_series(series_id: int, data: DataStore = Depends(store)):
    return SeriesModel(**unwrap(capture("Get series", data.get_series, series_id)))


@app.get("/series/{series_id}/events", response_model=EventListResponse)
def list_series_events(series_id: int, data: DataStore = Depends(store)):
    unwrap(capture("Get series", data.get_series, series_id))
    rows = unwrap(capture("List events", data.list_events, series_id))
    return EventListResponse(events=[EventModel(**row) for row in rows])


@app.get("/series/{series_id}/contests", response_model=ContestListResponse)
def list_series_contests(series_id: int, data: DataStore = Depends(store)):
    unwrap(capture("Get series", data.get_series, series_id))
    rows = unwrap(capture("List contests", data.list_contests, series_id))
    return ContestListResponse(contests=[ContestModel(**row) for row in rows])


@app.get("/events/{event_id}", response_model=EventModel)
def get_event(event_id: int, data: DataStore = Depends(store)):
    return EventModel(**unwrap(capture("Get event", data.get_event, event_id)))


@app.get("/events/{event_id}/races", response_model=RaceListResponse)
def list_event_races(event_id: int, data: DataStore = Depends(store)):
    unwrap(capture("Get event", data.get_event, event_id))
    rows = unwrap(capture("List races", data.list_races, event_id))
    return RaceListResponse(races=[RaceModel(**row) for row in rows])


@app.get("/contests/{contest_id}", response_model=ContestModel)
def get_contest(contest_id: int, data: DataStore = Depends(store)):
    return ContestModel(**unwrap(capture("Get contest", data.get_contest, contest_id)))


@app.get("/contests/{contest_id}/participants", response_model=ParticipantListResponse)
def list_contest_participants(contest_id: int, data: DataStore = Depends(store)):
    unwrap(capture("Get contest", data.get_contest, contest_id))
    rows = unwrap(capture("List participants", data.list_participants, contest_id))
    return ParticipantListResponse(participants=[ParticipantModel(**row) for row in rows])


@app.get("/contests/{contest_id}/status-counts")
def contest_status_counts(contest_id: int, data: DataStore = Depends(store)) -> Dict[str, int]:
    unwrap(capture("Get contest", data.get_contest, contest_id))
    return unwrap(capture("Participant status counts", data.participant_status_counts, contest_id))


@app.get("/contests/{contest_id}/statistics", response_model=ContestStatisticsModel)
def contest_statistics(contest_id: int, aggregator: RankingAggregator = Depends(get_rankings)):
    return ContestStatisticsModel(**unwrap(aggregator.contest_statistics(contest_id)))


@app.get("/races/{race_id}", response_model=RaceModel)
def get_race(race_id: int, data: DataStore = Depends(store)):
    return RaceModel(**unwrap(capture("Get race", data.get_race, race_id)))


@app.get("/races/{race_id}/participations", response_model=RaceParticipationListResponse)
def race_participations(race_id: int, lifecycle: ParticipationLifecycle = Depends(get_lifecycle)):
    items = unwrap(lifecycle.race_participations(race_id))
    return RaceParticipationListResponse(
        participations=[
            RaceParticipationModel(
                **_participation_fields(item["participation"]),
                participant=ParticipantModel(**item["participant"]) if item["participant"] else None,
            )
            for item in items
        ]
    )


@app.get("/participants/{participant_id}", response_model=ParticipantModel)
def get_participant(participant_id: int, data: DataStore = Depends(store)):
    return ParticipantModel(**unwrap(capture("Get participant", data.get_participant, participant_id)))


# ----------------------------------------------------------------------
# Admin routes


@app.post("/series", response_model=SeriesModel, status_code=201)
def create_series(
    payload: SeriesCreatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(capture("Create series", data.create_series, payload.model_dump(exclude_unset=True)))
    notify_series_update(hub, int(record["id"]))
    return SeriesModel(**record)


@app.patch("/series/{series_id}", response_model=SeriesModel)
def update_series(
    series_id: int,
    payload: SeriesUpdatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(capture("Update series", data.update_series, series_id, payload.model_dump(exclude_unset=True)))
    notify_series_update(hub, series_id)
    return SeriesModel(**record)


@app.delete("/series/{series_id}", status_code=204)
def delete_series(
    series_id: int,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(capture("Delete series", data.delete_series, series_id))
    notify_series_update(hub, series_id)
    return Response(status_code=204)


@app.post("/series/{series_id}/events", response_model=EventModel, status_code=201)
def create_event(
    series_id: int,
    payload: EventCreatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(capture("Get series", data.get_series, series_id))
    record = unwrap(
        capture("Create event", data.create_event, {**payload.model_dump(exclude_unset=True), "series_id": series_id})
    )
    notify_series_update(hub, series_id)
    return EventModel(**record)


@app.patch("/events/{event_id}", response_model=EventModel)
def update_event(
    event_id: int,
    payload: EventUpdatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(capture("Update event", data.update_event, event_id, payload.model_dump(exclude_unset=True)))
    notify_series_update(hub, int(record["series_id"]))
    return EventModel(**record)


@app.delete("/events/{event_id}", status_code=204)
def delete_event(
    event_id: int,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    event = unwrap(capture("Get event", data.get_event, event_id))
    unwrap(capture("Delete event", data.delete_event, event_id))
    notify_series_update(hub, int(event["series_id"]))
    return Response(status_code=204)


@app.post("/events/{event_id}/reset-import", response_model=EventModel)
def reset_event_import(
    event_id: int,
    data: DataStore = Depends(store),
    _: Dict[str, Any] = Depends(require_admin),
):
    return EventModel(**unwrap(capture("Reset import status", data.set_import_status, event_id, None)))


@app.post("/events/{event_id}/races", response_model=RaceModel, status_code=201)
def create_race(
    event_id: int,
    payload: RaceCreatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(capture("Get event", data.get_event, event_id))
    record = unwrap(
        capture("Create race", data.create_race, {**payload.model_dump(exclude_unset=True), "event_id": event_id})
    )
    notify_contest_update(hub, int(record["contest_id"]))
    return RaceModel(**record)


@app.patch("/races/{race_id}", response_model=RaceModel)
def update_race(
    race_id: int,
    payload: RaceUpdatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(capture("Update race", data.update_race, race_id, payload.model_dump(exclude_unset=True)))
    notify_race_update(hub, race_id)
    notify_contest_update(hub, int(record["contest_id"]))
    return RaceModel(**record)


@app.delete("/races/{race_id}", status_code=204)
def delete_race(
    race_id: int,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    race = unwrap(capture("Get race", data.get_race, race_id))
    unwrap(capture("Delete race", data.delete_race, race_id))
    notify_contest_update(hub, int(race["contest_id"]))
    return Response(status_code=204)


@app.post("/series/{series_id}/contests", response_model=ContestModel, status_code=201)
def create_contest(
    series_id: int,
    payload: ContestCreatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(capture("Get series", data.get_series, series_id))
    record = unwrap(
        capture("Create contest", data.create_contest, {**payload.model_dump(exclude_unset=True), "series_id": series_id})
    )
    notify_series_update(hub, series_id)
    return ContestModel(**record)


@app.patch("/contests/{contest_id}", response_model=ContestModel)
def update_contest(
    contest_id: int,
    payload: ContestUpdatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(capture("Update contest", data.update_contest, contest_id, payload.model_dump(exclude_unset=True)))
    notify_contest_update(hub, contest_id)
    return ContestModel(**record)


@app.delete("/contests/{contest_id}", status_code=204)
def delete_contest(
    contest_id: int,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    contest = unwrap(capture("Get contest", data.get_contest, contest_id))
    unwrap(capture("Delete contest", data.delete_contest, contest_id))
    notify_series_update(hub, int(contest["series_id"]))
    return Response(status_code=204)


@app.post("/contests/{contest_id}/participants", response_model=ParticipantModel, status_code=201)
def create_participant(
    contest_id: int,
    payload: ParticipantCreatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(capture("Get contest", data.get_contest, contest_id))
    record = unwrap(
        capture(
            "Create participant",
            data.create_participant,
            {**payload.model_dump(exclude_unset=True), "contest_id": contest_id},
        )
    )
    notify_contest_update(hub, contest_id)
    return ParticipantModel(**record)


@app.patch("/participants/{participant_id}", response_model=ParticipantModel)
def update_participant(
    participant_id: int,
    payload: ParticipantUpdatePayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    record = unwrap(
        capture("Update participant", data.update_participant, participant_id, payload.model_dump(exclude_unset=True))
    )
    notify_contest_update(hub, int(record["contest_id"]))
    return ParticipantModel(**record)


@app.delete("/participants/{participant_id}", status_code=204)
def delete_participant(
    participant_id: int,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    participant = unwrap(capture("Get participant", data.get_participant, participant_id))
    for race_id in unwrap(capture("Delete participant", data.delete_participant, participant_id)):
        unwrap(lifecycle.renumber(race_id))
    notify_contest_update(hub, int(participant["contest_id"]))
    return Response(status_code=204)


@app.get("/races/{race_id}/available-participants", response_model=ParticipantListResponse)
def available_participants(
    race_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    rows = unwrap(lifecycle.available_participants(race_id))
    return ParticipantListResponse(participants=[ParticipantModel(**row) for row in rows])


@app.post("/races/{race_id}/participations", response_model=ParticipationModel, status_code=201)
def assign_participant(
    race_id: int,
    payload: AssignPayload,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    return _participation_model(unwrap(lifecycle.assign(payload.participant_id, race_id)))


@app.delete("/races/{race_id}/participations/{participant_id}", status_code=204)
def remove_participant(
    race_id: int,
    participant_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    unwrap(lifecycle.remove(participant_id, race_id))
    return Response(status_code=204)


@app.post("/races/{race_id}/renumber")
def renumber_race(
    race_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, int]:
    return {"updated": unwrap(lifecycle.renumber(race_id))}


@app.post("/participations/{participation_id}/cycle", response_model=ParticipationModel)
def cycle_participation(
    participation_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    return _participation_model(unwrap(lifecycle.cycle(participation_id)))


@app.post("/participations/{participation_id}/move-up", response_model=ParticipationModel)
def move_participation_up(
    participation_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    return _participation_model(unwrap(lifecycle.move_up(participation_id)))


@app.post("/participations/{participation_id}/move-down", response_model=ParticipationModel)
def move_participation_down(
    participation_id: int,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    return _participation_model(unwrap(lifecycle.move_down(participation_id)))


@app.patch("/participations/{participation_id}", response_model=ParticipationModel)
def update_participation(
    participation_id: int,
    payload: ParticipationUpdatePayload,
    lifecycle: ParticipationLifecycle = Depends(get_lifecycle),
    _: Dict[str, Any] = Depends(require_admin),
):
    return _participation_model(unwrap(lifecycle.update(participation_id, payload.is_provisional)))


@app.post("/import/raceresult", response_model=RaceResultImportResponse)
def import_raceresult(
    payload: RaceResultImportPayload,
    data: DataStore = Depends(store),
    hub: LiveUpdateHub = Depends(get_hub),
    _: Dict[str, Any] = Depends(require_admin),
):
    outcome = unwrap(RaceResultImporter(data).run(payload.series_id, payload.url, payload.event_id))
    notify_series_update(hub, payload.series_id)
    return RaceResultImportResponse(**outcome)
