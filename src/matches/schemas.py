from pydantic import BaseModel, UUID4, ConfigDict, Field, TypeAdapter, model_validator
from typing import List, Literal, Optional, Self, Union
from typing_extensions import Annotated
from datetime import datetime
from enum import StrEnum

from matches.models import MatchBracket, MatchFormat, MatchStatus
from servers.models import ServerStatus


class MatchEventType(StrEnum):
    GOING_LIVE = "going_live"
    ROUND_END = "round_end"
    MAP_RESULT = "map_result"
    SERIES_END = "series_end"
    SERVER_STATUS = "server_status"


class PlayerStatLine(BaseModel):
    player_id: str
    team_slot: int = Field(..., ge=1, le=2)
    kills: int = Field(0, ge=0)
    deaths: int = Field(0, ge=0)
    assists: int = Field(0, ge=0)
    flash_assists: int = Field(0, ge=0)
    headshot_kills: int = Field(0, ge=0)
    damage: int = Field(0, ge=0)
    utility_damage: int = Field(0, ge=0)
    kast: int = Field(0, ge=0)
    mvps: int = Field(0, ge=0)
    score: int = 0
    rounds_played: int = Field(0, ge=0)


class BaseEvent(BaseModel):
    event: MatchEventType
    # Server-side epoch seconds, used to discard stale reports
    timestamp: Optional[int] = None


class GoingLiveEvent(BaseEvent):
    event: Literal[MatchEventType.GOING_LIVE] = MatchEventType.GOING_LIVE
    map_number: int = Field(1, ge=1)


class RoundEndEvent(BaseEvent):
    event: Literal[MatchEventType.ROUND_END] = MatchEventType.ROUND_END
    map_number: int = Field(1, ge=1)
    round_number: int = Field(..., ge=1)
    team1_score: int = Field(..., ge=0)
    team2_score: int = Field(..., ge=0)


class MapResultEvent(BaseEvent):
    event: Literal[MatchEventType.MAP_RESULT] = MatchEventType.MAP_RESULT
    map_number: int = Field(..., ge=1)
    map_name: Optional[str] = None
    team1_score: int = Field(..., ge=0)
    team2_score: int = Field(..., ge=0)
    player_stats: List[PlayerStatLine] = []

    @model_validator(mode='after')
    def validate_scores(self) -> Self:
        if self.team1_score == self.team2_score:
            raise ValueError('A map cannot end in a draw')
        return self

    @property
    def winner_slot(self) -> int:
        return 1 if self.team1_score > self.team2_score else 2


class SeriesEndEvent(BaseEvent):
    event: Literal[MatchEventType.SERIES_END] = MatchEventType.SERIES_END
    team1_series_score: int = Field(..., ge=0)
    team2_series_score: int = Field(..., ge=0)


class ServerStatusEvent(BaseEvent):
    event: Literal[MatchEventType.SERVER_STATUS] = MatchEventType.SERVER_STATUS
    status: ServerStatus


MatchEventPayload = Annotated[
    Union[GoingLiveEvent, RoundEndEvent, MapResultEvent, SeriesEndEvent, ServerStatusEvent],
    Field(discriminator='event')
]
MatchEventAdapter = TypeAdapter(MatchEventPayload)


class ServerReport(BaseModel):
    """Snapshot of the status variables read from a game server"""
    server_id: str
    online: bool
    status: Optional[ServerStatus] = None
    match_slug: Optional[str] = None
    updated_at: Optional[int] = None


# Response Schemas
class MatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID4
    tournament_id: UUID4
    slug: str
    round: int
    match_number: int
    bracket: MatchBracket
    format: MatchFormat
    status: MatchStatus
    team1_id: Optional[UUID4] = None
    team2_id: Optional[UUID4] = None
    winner_id: Optional[UUID4] = None
    server_id: Optional[str] = None
    is_bye: bool
    current_map_index: int
    error_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AbortRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class StartVetoRequest(BaseModel):
    first_team: Optional[int] = Field(None, ge=1, le=2)
