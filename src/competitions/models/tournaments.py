from sqlmodel import SQLModel, Field, Column
import sqlalchemy as sa
from sqlalchemy import ForeignKey, TIMESTAMP
from datetime import datetime
from enum import StrEnum
from typing import List, Optional
import uuid

from matches.models import MatchFormat


class TournamentType(StrEnum):
    SINGLE_ELIMINATION = "single_elimination"
    DOUBLE_ELIMINATION = "double_elimination"
    ROUND_ROBIN = "round_robin"
    SWISS = "swiss"


class TournamentStatus(StrEnum):
    SETUP = "setup"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SeedingMethod(StrEnum):
    SEEDED = "seeded"
    RANDOM = "random"


class RoundLimitType(StrEnum):
    FIRST_TO_13 = "first_to_13"
    MAX_ROUNDS = "max_rounds"


class Tournament(SQLModel, table=True):
    __tablename__ = "tournaments"
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str
    type: TournamentType = Field(sa_column=sa.Column(sa.Enum(TournamentType), nullable=False))
    format: MatchFormat = Field(sa_column=sa.Column(sa.Enum(MatchFormat), nullable=False))
    status: TournamentStatus = Field(sa_column=sa.Column(sa.Enum(TournamentStatus), nullable=False))

    # Ordered map pool
    maps: List[str] = Field(default=[], sa_column=Column(sa.JSON))
    seeding_method: SeedingMethod = Field(
        default=SeedingMethod.SEEDED, sa_column=sa.Column(sa.Enum(SeedingMethod))
    )

    # Per-map game settings pushed to the servers
    round_limit_type: RoundLimitType = Field(
        default=RoundLimitType.FIRST_TO_13, sa_column=sa.Column(sa.Enum(RoundLimitType))
    )
    max_rounds: int = Field(default=24)
    overtime_enabled: bool = Field(default=True)

    # Swiss only; ceil(log2(N)) when unset
    swiss_rounds: Optional[int] = None
    random_seed: Optional[int] = None

    rating_template_id: Optional[str] = Field(
        default=None, sa_column=Column(ForeignKey("rating_templates.id", ondelete="SET NULL"), nullable=True)
    )

    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
    updated_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now, onupdate=datetime.now))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TournamentParticipant(SQLModel, table=True):
    __tablename__ = "tournament_participants"
    tournament_id: uuid.UUID = Field(
        sa_column=Column(ForeignKey("tournaments.id", ondelete="CASCADE"), primary_key=True)
    )
    team_id: uuid.UUID = Field(sa_column=Column(ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True))
    seed: int
