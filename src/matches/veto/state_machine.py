from typing import Dict, List, Optional, Union
from transitions import Machine
import logging

from competitions.bracket.validators import BracketValidator, InvalidMapPool
from matches.models import MatchFormat
from .commands import (
    BanMapCmd,
    CmdType,
    PickMapCmd,
    PickSideCmd,
    PickedMap,
    Side,
    VetoAction,
    VetoActionKind,
    VetoCommand,
    VetoState,
    VetoStatus,
)

LOG = logging.getLogger(__name__)


class InvalidVetoAction(Exception):
    """Veto command not allowed in the current state"""
    pass


BAN = VetoActionKind.BAN
PICK = VetoActionKind.PICK

# bo1 is all bans down to a single decider
SEQUENCE_TEMPLATES: Dict[MatchFormat, List[VetoActionKind]] = {
    MatchFormat.BO3: [BAN, BAN, PICK, PICK, BAN],
    MatchFormat.BO5: [BAN, BAN, PICK, PICK, PICK, PICK],
}


def veto_sequence(match_format: MatchFormat, pool_size: int) -> List[VetoActionKind]:
    """Interactive steps for a format and pool size.

    Bans are dropped from the end of the template when the pool could not
    otherwise fill the series; remaining maps are auto-picked afterwards.
    """
    match_format = MatchFormat(match_format)
    num_maps = match_format.num_maps
    if pool_size < num_maps:
        raise InvalidMapPool(f"{match_format} needs at least {num_maps} maps, pool has {pool_size}")

    if match_format == MatchFormat.BO1:
        return [BAN] * (pool_size - 1)

    spare = pool_size - num_maps
    sequence = []
    bans = 0
    for kind in SEQUENCE_TEMPLATES[match_format]:
        if kind == BAN:
            if bans >= spare:
                continue
            bans += 1
        sequence.append(kind)
    return sequence


VETO_CONF = {
    "states": [VetoStatus.IN_PROGRESS.value, VetoStatus.COMPLETED.value],
    "transitions": [
        # Internal transitions: the negotiation stays in progress until the sequence runs out and every pick has a side
        {"trigger": "ban_map", "source": "in_progress", "dest": None, "conditions": "can_ban", "after": "record_ban"},
        {"trigger": "pick_map", "source": "in_progress", "dest": None, "conditions": "can_pick", "after": "record_pick"},
        {"trigger": "pick_side", "source": "in_progress", "dest": None, "conditions": "can_pick_side", "after": "record_side"},
        {
            "trigger": "finish",
            "source": "in_progress",
            "dest": "completed",
            "conditions": ["sequence_exhausted", "sides_settled"],
            "after": "finalize",
        },
    ],
}


class VetoNegotiator:
    """Runs the ban/pick negotiation for one match"""

    def __init__(self, veto: VetoState):
        self.veto = veto
        self._rejection: Optional[str] = None
        self.machine = Machine(
            model=self,
            states=VETO_CONF["states"],
            transitions=VETO_CONF["transitions"],
            initial=veto.status.value,
            auto_transitions=False,
        )

    @classmethod
    def start(
        cls,
        match_slug: str,
        match_format: MatchFormat,
        maps: List[str],
        first_team: int = 1,
    ) -> "VetoNegotiator":
        BracketValidator.validate_map_pool(maps, match_format)
        if first_team not in (1, 2):
            raise InvalidVetoAction(f"first_team must be 1 or 2, got {first_team}")

        veto = VetoState(
            match_slug=match_slug,
            format=match_format,
            first_team=first_team,
            sequence=veto_sequence(match_format, len(maps)),
            map_pool=list(maps),
            available_maps=list(maps),
        )
        negotiator = cls(veto)
        LOG.info(f"Veto started for {match_slug}: {[s.value for s in veto.sequence]}, team{first_team} first")
        negotiator._maybe_finish()
        return negotiator

    @classmethod
    def from_dict(cls, data: Dict) -> "VetoNegotiator":
        return cls(VetoState.model_validate(data))

    def to_dict(self) -> Dict:
        return self.veto.model_dump(mode="json")

    @property
    def completed(self) -> bool:
        return self.veto.status == VetoStatus.COMPLETED

    def apply(self, command: Union[Dict, BanMapCmd, PickMapCmd, PickSideCmd]) -> VetoState:
        """Apply one command, raising InvalidVetoAction without touching state on rejection"""
        if isinstance(command, dict):
            command = VetoCommand.validate_python(command)
        if self.completed:
            raise InvalidVetoAction(f"Veto for {self.veto.match_slug} is already completed")

        triggers = {
            CmdType.ban: self.ban_map,
            CmdType.pick: self.pick_map,
            CmdType.pick_side: self.pick_side,
        }
        self._rejection = None
        if not triggers[command.cmd](command):
            LOG.warning(f"Rejected veto command for {self.veto.match_slug}: {self._rejection}")
            raise InvalidVetoAction(self._rejection or "Invalid veto action")

        self._maybe_finish()
        return self.veto

    # Conditions
    def _reject(self, reason: str) -> bool:
        self._rejection = reason
        return False

    def _check_turn(self, command, kind: VetoActionKind) -> bool:
        pending = self.veto.pending_side_choices
        if pending:
            return self._reject(f"team{pending[0].side_chooser} must choose a side on {pending[0].map_name} first")
        if self.veto.current_turn != command.team:
            return self._reject(f"It is not team{command.team}'s turn")
        if self.veto.current_action != kind:
            return self._reject(f"Expected a {self.veto.current_action}, got a {kind}")
        if command.map_name not in self.veto.available_maps:
            return self._reject(f"Map {command.map_name} is not available")
        return True

    def can_ban(self, command: BanMapCmd) -> bool:
        return self._check_turn(command, VetoActionKind.BAN)

    def can_pick(self, command: PickMapCmd) -> bool:
        return self._check_turn(command, VetoActionKind.PICK)

    def can_pick_side(self, command: PickSideCmd) -> bool:
        if self._pending_for(command) is None:
            return self._reject(f"No side choice pending for team{command.team}")
        return True

    def sequence_exhausted(self) -> bool:
        return self.veto.current_step >= len(self.veto.sequence)

    def sides_settled(self) -> bool:
        return not self.veto.pending_side_choices

    # Callbacks
    def record_ban(self, command: BanMapCmd):
        self.veto.available_maps.remove(command.map_name)
        self.veto.banned_maps.append(command.map_name)
        self._log_action(command.team, VetoActionKind.BAN, command.map_name)
        self.veto.current_step += 1

    def record_pick(self, command: PickMapCmd):
        self.veto.available_maps.remove(command.map_name)
        self.veto.picked_maps.append(PickedMap(
            map_name=command.map_name,
            map_number=len(self.veto.picked_maps) + 1,
            picked_by=command.team,
            side_chooser=2 if command.team == 1 else 1,
        ))
        self._log_action(command.team, VetoActionKind.PICK, command.map_name)
        self.veto.current_step += 1

    def record_side(self, command: PickSideCmd):
        picked = self._pending_for(command)
        if command.team == 1:
            picked.team1_side = command.side
        else:
            picked.team1_side = Side.T if command.side == Side.CT else Side.CT
        self.veto.actions.append(VetoAction(
            team=command.team, action=VetoActionKind.SIDE_PICK, map_name=picked.map_name, side=command.side
        ))

    def finalize(self):
        num_maps = self.veto.format.num_maps
        for map_name in list(self.veto.map_pool):
            if len(self.veto.picked_maps) >= num_maps:
                break
            if map_name not in self.veto.available_maps:
                continue
            self.veto.available_maps.remove(map_name)
            self.veto.picked_maps.append(PickedMap(
                map_name=map_name,
                map_number=len(self.veto.picked_maps) + 1,
                team1_side=Side.KN,
            ))
            self.veto.actions.append(VetoAction(action=VetoActionKind.DECIDER, map_name=map_name, side=Side.KN))

        self.veto.status = VetoStatus.COMPLETED
        LOG.info(f"Veto completed for {self.veto.match_slug}: {[m.map_name for m in self.veto.map_list()]}")

    def _maybe_finish(self):
        if not self.completed and self.sequence_exhausted() and self.sides_settled():
            self.finish()

    def _pending_for(self, command: PickSideCmd) -> Optional[PickedMap]:
        for picked in self.veto.picked_maps:
            if not picked.awaiting_side or picked.side_chooser != command.team:
                continue
            if command.map_name is None or picked.map_name == command.map_name:
                return picked
        return None

    def _log_action(self, team: int, kind: VetoActionKind, map_name: str):
        self.veto.actions.append(VetoAction(
            step=self.veto.current_step + 1, team=team, action=kind, map_name=map_name
        ))
