from typing import Optional
from sqlmodel import SQLModel, Field, Column
from sqlalchemy import TIMESTAMP
from datetime import datetime

from config import Config


class Player(SQLModel, table=True):
    __tablename__ = "players"

    # External platform ID (Steam64)
    id: str = Field(primary_key=True)
    name: str
    avatar_url: Optional[str] = None
    current_elo: int = Field(default=Config.DEFAULT_STARTING_ELO)
    starting_elo: int = Field(default=Config.DEFAULT_STARTING_ELO)
    mu: float
    sigma: float
    match_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now))
    updated_at: datetime = Field(sa_column=Column(TIMESTAMP, default=datetime.now, onupdate=datetime.now))

    def __repr__(self):
        return f"<Player {self.name}>"
