from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional


class PlayerModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    avatar_url: Optional[str] = None
    current_elo: int
    starting_elo: int
    match_count: int
    created_at: Optional[datetime] = None


class PlayerCreateModel(BaseModel):
    # Steam64 or other external platform id
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    avatar_url: Optional[str] = None
    starting_elo: Optional[int] = Field(None, ge=0)


class PlayerUpdateModel(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class LeaderboardEntry(BaseModel):
    id: str
    name: str
    current_elo: int
    elo_change: int
    match_count: int
