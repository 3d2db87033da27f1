from pydantic import BaseModel, ConfigDict, Field, UUID4, field_validator
from typing import Dict, Optional
from datetime import datetime

from .models import MatchResult

STAT_WEIGHT_KEYS = {
    "kills",
    "deaths",
    "assists",
    "flash_assists",
    "headshot_kills",
    "damage",
    "utility_damage",
    "kast",
    "mvps",
    "score",
    "adr",
}


def _check_weight_keys(weights: Dict[str, float]) -> Dict[str, float]:
    unknown = set(weights) - STAT_WEIGHT_KEYS
    if unknown:
        raise ValueError(f"Unknown stat weights: {sorted(unknown)}")
    return weights


class StatTotals(BaseModel):
    """A player's stats aggregated over every map of one match"""
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


class RatingTemplateBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    enabled: bool = False
    weights: Dict[str, float] = {}
    min_adjustment: Optional[float] = None
    max_adjustment: Optional[float] = None

    @field_validator('weights')
    @classmethod
    def validate_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_weight_keys(v)


class RatingTemplateCreate(RatingTemplateBase):
    id: Optional[str] = None


class RatingTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    weights: Optional[Dict[str, float]] = None
    min_adjustment: Optional[float] = None
    max_adjustment: Optional[float] = None

    @field_validator('weights')
    @classmethod
    def validate_weights(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        return _check_weight_keys(v) if v is not None else v


class RatingTemplateResponse(RatingTemplateBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RatingHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    player_id: str
    match_id: Optional[UUID4] = None
    match_slug: str
    match_result: MatchResult
    elo_before: int
    elo_after: int
    base_delta: int
    stat_adjustment: int
    template_id: Optional[str] = None
    mu_before: float
    mu_after: float
    sigma_before: float
    sigma_after: float
    created_at: Optional[datetime] = None
