from sqlmodel import SQLModel, Field, Column, UniqueConstraint
import sqlalchemy as sa
from sqlalchemy import ForeignKey, TIMESTAMP
from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, Optional
import uuid


class MatchFormat(StrEnum):
    """Valid match formats"""
    BO1 = "bo1"  # Best of 1
    BO3 = "bo3"  # Best of 3
    BO5 = "bo5"  # Best of 5

    @property
    def num_maps(self) -> int:
        return {MatchFormat.BO1: 1, MatchFormat.BO3: 3, MatchFormat.BO5: 5}[self]

    @property
    def maps_needed(self) -> int:
        return self.num_maps // 2 + 1


class MatchStatus(StrEnum):
    PENDING = "pending"
    VETO = "veto"
    LOADING = "loading"
    WARMUP = "warmup"
    KNIFE = "knife"
    LIVE = "live"
    PAUSED = "paused"
    HALFTIME = "halftime"
    POSTGAME = "postgame"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.COMPLETED, MatchStatus.CANCELLED)


class MatchBracket(StrEnum):
    MAIN = "main"
    WINNERS = "winners"
    LOSERS = "losers"
    GRAND_FINAL = "grand_final"


class Match(SQLModel, table=True):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("tournament_id", "slug", name="uq_matches_tournament_slug"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tournament_id: uuid.UUID = Field(
        sa_column=Column(ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    )
    # Unique per tournament; webhooks resolve it against the active tournament first
    slug: str = Field(index=True)
    round: int
    match_number: int
    bracket: MatchBracket = Field(default=MatchBracket.MAIN, sa_column=sa.Column(sa.Enum(MatchBracket)))
    format: MatchFormat = Field(sa_column=sa.Column(sa.Enum(MatchFormat), nullable=False))

    team1_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(ForeignKey("teams.id"), nullable=True))
    team2_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(ForeignKey("teams.id"), nullable=True))
    winner_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(ForeignKey("teams.id"), nullable=True))

    server_id: Optional[str] = Field(
        default=None, sa_column=Column(ForeignKey("game_servers.id", ondelete="SET NULL"), nullable=True)
    )
    status: MatchStatus = Field(default=MatchStatus.PENDING, sa_column=sa.Column(sa.Enum(MatchStatus), nullable=False))

    # Forward pointers only; slot is 1 (team1) or 2 (team2)
    next_match_id: Optional[uuid.UUID] = Field(
        default=None, sa_column=Column(ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)
    )
    next_match_slot: Optional[int] = None
    loser_next_match_id: Optional[uuid.UUID] = Field(
        default=None, sa_column=Column(ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)
    )
    loser_next_match_slot: Optional[int] = None

    veto_state: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(sa.JSON))
    current_map_index: int = Field(default=0)
    is_bye: bool = Field(default=False)

    # Last accepted server-side timestamp (epoch seconds)
    server_updated_at: Optional[int] = None
    error_reason: Optional[str] = None

    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
    updated_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now, onupdate=datetime.now))
    loaded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def team_for_slot(self, slot: int) -> Optional[uuid.UUID]:
        return self.team1_id if slot == 1 else self.team2_id

    def __repr__(self):
        return f"<Match {self.slug} {self.status}>"


class MapResult(SQLModel, table=True):
    __tablename__ = "map_results"
    __table_args__ = (
        UniqueConstraint("match_id", "map_number", name="uq_map_results_match_map"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    match_id: uuid.UUID = Field(sa_column=Column(ForeignKey("matches.id", ondelete="CASCADE"), nullable=False))
    map_number: int
    map_name: str
    team1_score: int
    team2_score: int
    winner_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(ForeignKey("teams.id"), nullable=True))
    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))


class PlayerMatchStat(SQLModel, table=True):
    __tablename__ = "player_match_stats"
    __table_args__ = (
        UniqueConstraint("match_id", "map_number", "player_id", name="uq_player_match_stats"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    match_id: uuid.UUID = Field(sa_column=Column(ForeignKey("matches.id", ondelete="CASCADE"), nullable=False))
    map_number: int
    player_id: str = Field(sa_column=Column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False))
    team_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(ForeignKey("teams.id"), nullable=True))

    kills: int = 0
    deaths: int = 0
    assists: int = 0
    flash_assists: int = 0
    headshot_kills: int = 0
    damage: int = 0
    utility_damage: int = 0
    kast: int = 0
    mvps: int = 0
    score: int = 0
    rounds_played: int = 0


class MatchEvent(SQLModel, table=True):
    __tablename__ = "match_events"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    match_slug: str = Field(index=True)
    # NULL when the slug did not resolve to a match
    match_id: Optional[uuid.UUID] = Field(
        default=None, sa_column=Column(ForeignKey("matches.id", ondelete="CASCADE"), nullable=True)
    )
    event_type: str
    payload: Dict[str, Any] = Field(default={}, sa_column=Column(sa.JSON))
    received_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
