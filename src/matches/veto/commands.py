from typing import List, Literal, Optional, Union
from typing_extensions import Annotated
from pydantic import BaseModel, Field, TypeAdapter, computed_field, field_validator
from datetime import datetime
from enum import StrEnum

from matches.models import MatchFormat


class Side(StrEnum):
    CT = "ct"
    T = "t"
    KN = "knife"


class MapSide(StrEnum):
    """Starting sides as written into the server match config"""
    TEAM1_CT = "team1_ct"
    TEAM2_CT = "team2_ct"
    KNIFE = "knife"


class VetoActionKind(StrEnum):
    BAN = "ban"
    PICK = "pick"
    SIDE_PICK = "side_pick"
    DECIDER = "decider"


class VetoStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CmdType(StrEnum):
    ban = "ban"
    pick = "pick"
    pick_side = "pick_side"


class BaseCmd(BaseModel):
    cmd: CmdType
    team: int = Field(..., ge=1, le=2)


class BanMapCmd(BaseCmd):
    cmd: Literal[CmdType.ban] = CmdType.ban
    map_name: str


class PickMapCmd(BaseCmd):
    cmd: Literal[CmdType.pick] = CmdType.pick
    map_name: str


class PickSideCmd(BaseCmd):
    cmd: Literal[CmdType.pick_side] = CmdType.pick_side
    side: Side
    # Defaults to the oldest pick still waiting on this team
    map_name: Optional[str] = None

    @field_validator('side')
    @classmethod
    def validate_side(cls, v: Side) -> Side:
        if v == Side.KN:
            raise ValueError('Side must be ct or t')
        return v


VetoCommandPayload = Annotated[Union[BanMapCmd, PickMapCmd, PickSideCmd], Field(discriminator='cmd')]
VetoCommand = TypeAdapter(VetoCommandPayload)


class VetoAction(BaseModel):
    step: Optional[int] = None
    team: Optional[int] = None
    action: VetoActionKind
    map_name: str
    side: Optional[Side] = None
    at: datetime = Field(default_factory=datetime.now)


class PickedMap(BaseModel):
    map_name: str
    map_number: int
    # None for maps filled in automatically (deciders)
    picked_by: Optional[int] = None
    side_chooser: Optional[int] = None
    team1_side: Optional[Side] = None

    @property
    def awaiting_side(self) -> bool:
        return self.side_chooser is not None and self.team1_side is None

    @property
    def map_side(self) -> MapSide:
        if self.team1_side == Side.CT:
            return MapSide.TEAM1_CT
        if self.team1_side == Side.T:
            return MapSide.TEAM2_CT
        return MapSide.KNIFE


class VetoState(BaseModel):
    """Serializable veto progress, stored on the match row"""
    match_slug: str
    format: MatchFormat
    status: VetoStatus = VetoStatus.IN_PROGRESS
    first_team: int = 1
    sequence: List[VetoActionKind]
    current_step: int = 0
    map_pool: List[str]
    available_maps: List[str]
    banned_maps: List[str] = []
    picked_maps: List[PickedMap] = []
    actions: List[VetoAction] = []

    @computed_field
    @property
    def total_steps(self) -> int:
        return len(self.sequence)

    @computed_field
    @property
    def current_turn(self) -> Optional[int]:
        if self.status == VetoStatus.COMPLETED or self.current_step >= len(self.sequence):
            return None
        other = 2 if self.first_team == 1 else 1
        return self.first_team if self.current_step % 2 == 0 else other

    @computed_field
    @property
    def current_action(self) -> Optional[VetoActionKind]:
        if self.status == VetoStatus.COMPLETED or self.current_step >= len(self.sequence):
            return None
        return self.sequence[self.current_step]

    @computed_field
    @property
    def pending_side_choices(self) -> List[PickedMap]:
        return [m for m in self.picked_maps if m.awaiting_side]

    def map_list(self) -> List[PickedMap]:
        return sorted(self.picked_maps, key=lambda m: m.map_number)
