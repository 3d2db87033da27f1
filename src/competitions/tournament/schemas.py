from pydantic import BaseModel, ConfigDict, Field, UUID4, model_validator
from typing import List, Optional, Self
from datetime import datetime

from competitions.models.tournaments import (
    RoundLimitType,
    SeedingMethod,
    TournamentStatus,
    TournamentType,
)
from matches.models import MatchBracket, MatchFormat, MatchStatus


# Request Schemas
class TournamentCreate(BaseModel):
    """Schema for tournament creation requests"""
    name: str = Field(..., min_length=3, max_length=50)
    type: TournamentType
    format: MatchFormat = MatchFormat.BO1
    maps: List[str] = Field(..., min_length=1)
    # Seed order: first team is seed 1
    team_ids: List[UUID4] = Field(..., min_length=2)
    seeding_method: SeedingMethod = SeedingMethod.SEEDED
    round_limit_type: RoundLimitType = RoundLimitType.FIRST_TO_13
    max_rounds: int = Field(24, ge=1, le=100)
    overtime_enabled: bool = True
    swiss_rounds: Optional[int] = Field(None, ge=1)
    random_seed: Optional[int] = None
    rating_template_id: Optional[str] = None

    @model_validator(mode='after')
    def validate_teams(self) -> Self:
        if len(set(self.team_ids)) != len(self.team_ids):
            raise ValueError('A team can only be entered once')
        if self.swiss_rounds is not None and self.type != TournamentType.SWISS:
            raise ValueError('swiss_rounds only applies to swiss tournaments')
        return self


class TournamentUpdate(BaseModel):
    """Schema for tournament update requests, only allowed before start"""
    name: Optional[str] = Field(None, min_length=3, max_length=50)
    format: Optional[MatchFormat] = None
    maps: Optional[List[str]] = None
    seeding_method: Optional[SeedingMethod] = None
    round_limit_type: Optional[RoundLimitType] = None
    max_rounds: Optional[int] = Field(None, ge=1, le=100)
    overtime_enabled: Optional[bool] = None
    swiss_rounds: Optional[int] = Field(None, ge=1)
    rating_template_id: Optional[str] = None


# Response Schemas
class TournamentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID4
    name: str
    type: TournamentType
    format: MatchFormat
    status: TournamentStatus
    maps: List[str]
    seeding_method: SeedingMethod
    round_limit_type: RoundLimitType
    max_rounds: int
    overtime_enabled: bool
    swiss_rounds: Optional[int] = None
    rating_template_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TournamentTeam(BaseModel):
    id: UUID4
    name: str
    seed: Optional[int] = None


class PlayerStanding(BaseModel):
    player_id: str
    name: str
    wins: int
    losses: int
    win_rate: float
    current_elo: int
    elo_change: int


class RoundStatus(BaseModel):
    tournament_id: UUID4
    round: Optional[int] = None
    completed: int
    pending: int
    total: int
    tournament_status: TournamentStatus


class BracketMatch(BaseModel):
    id: UUID4
    slug: str
    round: int
    match_number: int
    bracket: MatchBracket
    status: MatchStatus
    team1: Optional[TournamentTeam] = None
    team2: Optional[TournamentTeam] = None
    winner_id: Optional[UUID4] = None
    next_match_slug: Optional[str] = None
    next_match_slot: Optional[int] = None
    loser_next_match_slug: Optional[str] = None
    loser_next_match_slot: Optional[int] = None
    server_id: Optional[str] = None
    is_bye: bool = False


class BracketView(BaseModel):
    tournament: TournamentResponse
    teams: List[TournamentTeam]
    matches: List[BracketMatch]
