from enum import StrEnum
from sqlmodel import SQLModel, Field, Column
import sqlalchemy as sa
from sqlalchemy import TIMESTAMP
from datetime import datetime
from typing import Optional


class ServerStatus(StrEnum):
    """Status reported by the game server plugin itself"""
    IDLE = "idle"            # Free, no match loaded
    LOADING = "loading"      # Match config being loaded
    WARMUP = "warmup"        # Waiting for players to ready up
    KNIFE = "knife"          # Knife round in progress
    LIVE = "live"
    PAUSED = "paused"
    HALFTIME = "halftime"
    POSTGAME = "postgame"    # Series over, server cleaning up
    ERROR = "error"


class GameServer(SQLModel, table=True):
    __tablename__ = "game_servers"

    id: str = Field(primary_key=True)
    name: str
    host: str
    port: int = Field(default=27015)
    enabled: bool = Field(default=True)

    # Slug of the match currently holding this server; NULL when free
    current_match_slug: Optional[str] = Field(default=None, index=True)
    claimed_at: Optional[datetime] = None

    last_status: Optional[ServerStatus] = Field(default=None, sa_column=sa.Column(sa.Enum(ServerStatus), nullable=True))
    last_status_updated_at: Optional[int] = None
    online: bool = Field(default=True)
    last_seen_at: Optional[datetime] = None

    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
    updated_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now, onupdate=datetime.now))
