# test/matches/test_veto.py
import pytest
from pydantic import ValidationError

from competitions.bracket.validators import InvalidMapPool
from matches.models import MatchFormat
from matches.veto.commands import BanMapCmd, MapSide, PickSideCmd, Side, VetoActionKind, VetoStatus
from matches.veto.state_machine import InvalidVetoAction, VetoNegotiator, veto_sequence

MAPS = ["de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo"]

BAN = VetoActionKind.BAN
PICK = VetoActionKind.PICK


def ban(team, map_name):
    return {"cmd": "ban", "team": team, "map_name": map_name}


def pick(team, map_name):
    return {"cmd": "pick", "team": team, "map_name": map_name}


def side(team, choice, map_name=None):
    return {"cmd": "pick_side", "team": team, "side": choice, "map_name": map_name}


class TestVetoSequence:
    def test_bo3_full_pool(self):
        assert veto_sequence(MatchFormat.BO3, 7) == [BAN, BAN, PICK, PICK, BAN]

    def test_bo3_small_pool_drops_bans(self):
        assert veto_sequence(MatchFormat.BO3, 4) == [BAN, PICK, PICK]
        assert veto_sequence(MatchFormat.BO3, 3) == [PICK, PICK]

    def test_bo5(self):
        assert veto_sequence(MatchFormat.BO5, 7) == [BAN, BAN, PICK, PICK, PICK, PICK]
        assert veto_sequence(MatchFormat.BO5, 5) == [PICK, PICK, PICK, PICK]

    def test_bo1_bans_down_to_one(self):
        assert veto_sequence(MatchFormat.BO1, 7) == [BAN] * 6
        assert veto_sequence(MatchFormat.BO1, 1) == []

    def test_pool_too_small(self):
        with pytest.raises(InvalidMapPool):
            veto_sequence(MatchFormat.BO5, 4)


class TestVetoNegotiator:
    def test_bo3_full_negotiation(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        assert veto.veto.current_turn == 1
        assert veto.veto.total_steps == 5

        veto.apply(ban(1, "de_ancient"))
        veto.apply(ban(2, "de_anubis"))
        veto.apply(pick(1, "de_dust2"))
        assert [m.map_name for m in veto.veto.pending_side_choices] == ["de_dust2"]
        veto.apply(side(2, "ct", "de_dust2"))
        veto.apply(pick(2, "de_inferno"))
        veto.apply(side(1, "ct"))
        state = veto.apply(ban(1, "de_mirage"))

        assert veto.completed
        assert state.status == VetoStatus.COMPLETED
        assert state.current_turn is None
        assert [m.map_name for m in state.map_list()] == ["de_dust2", "de_inferno", "de_nuke"]
        assert [m.map_side for m in state.map_list()] == [MapSide.TEAM2_CT, MapSide.TEAM1_CT, MapSide.KNIFE]
        assert state.banned_maps == ["de_ancient", "de_anubis", "de_mirage"]
        assert state.actions[-1].action == VetoActionKind.DECIDER

    def test_pick_waits_for_side_choice(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        for command in (ban(1, "de_ancient"), ban(2, "de_anubis"), pick(1, "de_dust2")):
            veto.apply(command)
        before = veto.to_dict()

        with pytest.raises(InvalidVetoAction, match="team2 must choose a side on de_dust2"):
            veto.apply(pick(2, "de_inferno"))
        assert veto.to_dict() == before

        veto.apply(side(2, "t"))
        veto.apply(pick(2, "de_inferno"))
        with pytest.raises(InvalidVetoAction, match="team1 must choose a side on de_inferno"):
            veto.apply(ban(1, "de_mirage"))
        assert veto.veto.current_step == 4
        assert not veto.completed

    def test_bo5_last_pick_waits_for_side(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO5, MAPS)
        veto.apply(ban(1, "de_ancient"))
        veto.apply(ban(2, "de_anubis"))
        for team, map_name in ((1, "de_dust2"), (2, "de_inferno"), (1, "de_mirage")):
            veto.apply(pick(team, map_name))
            veto.apply(side(2 if team == 1 else 1, "ct"))

        state = veto.apply(pick(2, "de_nuke"))
        assert state.current_step == len(state.sequence)
        assert not veto.completed
        assert state.status == VetoStatus.IN_PROGRESS
        assert [m.map_name for m in state.pending_side_choices] == ["de_nuke"]

        state = veto.apply(side(1, "t", "de_nuke"))
        assert veto.completed
        assert [m.map_name for m in state.map_list()] == ["de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo"]
        assert [m.map_side for m in state.map_list()] == [
            MapSide.TEAM2_CT, MapSide.TEAM1_CT, MapSide.TEAM2_CT, MapSide.TEAM2_CT, MapSide.KNIFE
        ]

    def test_bo3_without_bans_waits_for_second_side(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, ["de_dust2", "de_inferno", "de_nuke"])
        veto.apply(pick(1, "de_dust2"))
        veto.apply(side(2, "ct"))
        veto.apply(pick(2, "de_inferno"))
        assert not veto.completed

        veto.apply(side(1, "ct"))
        assert veto.completed
        assert [m.team1_side for m in veto.veto.map_list()] == [Side.T, Side.CT, Side.KN]

    def test_wrong_turn_leaves_state_untouched(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        before = veto.to_dict()

        with pytest.raises(InvalidVetoAction, match="turn"):
            veto.apply(ban(2, "de_ancient"))

        assert veto.to_dict() == before
        assert veto.veto.current_step == 0
        assert len(veto.veto.available_maps) == 7

    def test_wrong_action_kind_rejected(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        with pytest.raises(InvalidVetoAction, match="Expected a ban"):
            veto.apply(pick(1, "de_ancient"))

    def test_unavailable_map_rejected(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        veto.apply(ban(1, "de_ancient"))
        with pytest.raises(InvalidVetoAction, match="not available"):
            veto.apply(ban(2, "de_ancient"))
        with pytest.raises(InvalidVetoAction):
            veto.apply(ban(2, "de_overpass"))

    def test_side_choice_only_for_the_chooser(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        for command in (ban(1, "de_ancient"), ban(2, "de_anubis"), pick(1, "de_dust2")):
            veto.apply(command)

        with pytest.raises(InvalidVetoAction, match="No side choice"):
            veto.apply(side(1, "t"))

        veto.apply(side(2, "t"))
        dust2 = veto.veto.picked_maps[0]
        assert dust2.team1_side == Side.CT
        assert dust2.map_side == MapSide.TEAM1_CT

    def test_knife_is_not_a_side_choice(self):
        with pytest.raises(ValidationError):
            PickSideCmd(team=1, side=Side.KN)

    def test_team_two_can_ban_first(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO1, MAPS, first_team=2)
        assert veto.veto.current_turn == 2
        veto.apply(BanMapCmd(team=2, map_name="de_nuke"))
        assert veto.veto.current_turn == 1

    def test_bo1_leaves_single_decider(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO1, MAPS)
        for step, map_name in enumerate(MAPS[:-1]):
            veto.apply(ban(1 if step % 2 == 0 else 2, map_name))

        assert veto.completed
        assert [m.map_name for m in veto.veto.map_list()] == ["de_vertigo"]
        assert veto.veto.map_list()[0].map_side == MapSide.KNIFE

    def test_single_map_pool_completes_immediately(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO1, ["de_dust2"])
        assert veto.completed
        assert [m.map_name for m in veto.veto.map_list()] == ["de_dust2"]

    def test_completed_veto_rejects_commands(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO1, ["de_dust2", "de_nuke"])
        veto.apply(ban(1, "de_nuke"))
        assert veto.completed

        with pytest.raises(InvalidVetoAction, match="already completed"):
            veto.apply(ban(2, "de_dust2"))

    def test_round_trip_through_dict(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO3, MAPS)
        veto.apply(ban(1, "de_ancient"))

        restored = VetoNegotiator.from_dict(veto.to_dict())
        assert restored.veto.current_step == 1
        assert restored.veto.current_turn == 2
        restored.apply(ban(2, "de_anubis"))
        assert restored.veto.banned_maps == ["de_ancient", "de_anubis"]

    def test_invalid_first_team(self):
        with pytest.raises(InvalidVetoAction):
            VetoNegotiator.start("r1m1", MatchFormat.BO1, MAPS, first_team=3)

    def test_malformed_command(self):
        veto = VetoNegotiator.start("r1m1", MatchFormat.BO1, MAPS)
        with pytest.raises(ValidationError):
            veto.apply({"cmd": "ban", "team": 1})
