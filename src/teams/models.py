from sqlmodel import SQLModel, Field, Column
from sqlalchemy import ForeignKey, TIMESTAMP
from datetime import datetime
from typing import Optional
import uuid


class Team(SQLModel, table=True):
    __tablename__ = "teams"
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(unique=True)
    tag: Optional[str] = None
    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_members"
    team_id: uuid.UUID = Field(sa_column=Column(ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True))
    player_id: str = Field(sa_column=Column(ForeignKey("players.id", ondelete="CASCADE"), primary_key=True))
    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
