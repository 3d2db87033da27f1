from enum import StrEnum
from sqlmodel import SQLModel, Field, Column, UniqueConstraint
import sqlalchemy as sa
from sqlalchemy import ForeignKey, TIMESTAMP
from datetime import datetime
from typing import Dict, Optional
import uuid


class MatchResult(StrEnum):
    WIN = "win"
    LOSS = "loss"


class RatingTemplate(SQLModel, table=True):
    """Named set of stat weights used to adjust rating changes"""
    __tablename__ = "rating_templates"

    id: str = Field(primary_key=True)
    name: str
    description: Optional[str] = None
    enabled: bool = Field(default=False)
    weights: Dict[str, float] = Field(default={}, sa_column=Column(sa.JSON))
    min_adjustment: Optional[float] = None
    max_adjustment: Optional[float] = None
    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
    updated_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now, onupdate=datetime.now))


class RatingHistory(SQLModel, table=True):
    """Append-only audit row: one per (player, match)"""
    __tablename__ = "player_rating_history"
    __table_args__ = (
        UniqueConstraint("player_id", "match_id", name="uq_rating_history_player_match"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    player_id: str = Field(sa_column=Column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False))
    # Detached (NULL) when the owning tournament is deleted; the row itself is kept
    match_id: Optional[uuid.UUID] = Field(
        default=None, sa_column=Column(ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)
    )
    match_slug: str
    tournament_id: Optional[uuid.UUID] = None
    match_result: MatchResult = Field(sa_column=sa.Column(sa.Enum(MatchResult)))

    elo_before: int
    elo_after: int
    base_delta: int
    stat_adjustment: int = Field(default=0)
    template_id: Optional[str] = Field(
        default=None, sa_column=Column(ForeignKey("rating_templates.id", ondelete="SET NULL"), nullable=True)
    )

    mu_before: float
    mu_after: float
    sigma_before: float
    sigma_after: float

    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))

    @property
    def elo_change(self) -> int:
        return self.elo_after - self.elo_before
