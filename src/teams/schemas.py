from pydantic import BaseModel, UUID4, ConfigDict, Field, computed_field
from typing import List, Optional
from datetime import datetime

from players.schemas import PlayerModel


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    tag: Optional[str] = Field(None, max_length=10)
    player_ids: List[str] = []


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    tag: Optional[str] = Field(None, max_length=10)


# Response Schemas
class TeamBasic(BaseModel):
    id: UUID4
    name: str
    tag: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TeamDetailed(TeamBasic):
    players: List[PlayerModel] = []

    @computed_field
    @property
    def average_elo(self) -> float:
        if not self.players:
            return 0.0
        return sum(p.current_elo for p in self.players) / len(self.players)
