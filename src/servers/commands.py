"""Console commands and the match config document served to the game servers"""
from typing import Any, Dict, List, Optional

from config import Config
from competitions.models.tournaments import RoundLimitType, Tournament
from matches.models import Match
from matches.veto.commands import MapSide, VetoState, VetoStatus
from teams.models import Team
from players.models import Player

STATUS_VAR = "matchzy_tournament_status"
MATCH_SLUG_VAR = "matchzy_tournament_match"
UPDATED_AT_VAR = "matchzy_tournament_updated"


def webhook_url(match_slug: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or Config.PUBLIC_BASE_URL).rstrip('/')}/api/{Config.API_VERSION}/events/{match_slug}"


def config_url(match_slug: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or Config.PUBLIC_BASE_URL).rstrip('/')}/api/{Config.API_VERSION}/matches/{match_slug}/config"


def load_match_commands(match_slug: str, token: Optional[str] = None, base_url: Optional[str] = None) -> List[str]:
    """Point the server's event webhook at this match, then make it fetch the match config"""
    token = token or Config.SERVER_TOKEN
    return [
        f'matchzy_remote_log_url "{webhook_url(match_slug, base_url)}"',
        'matchzy_remote_log_header_key "X-MatchZy-Token"',
        f'matchzy_remote_log_header_value "{token}"',
        'matchzy_loadmatch_url_header_key "Authorization"',
        f'matchzy_loadmatch_url_header_value "Bearer {token}"',
        f'matchzy_loadmatch_url "{config_url(match_slug, base_url)}"',
    ]


def release_commands() -> List[str]:
    return [
        'matchzy_remote_log_url ""',
        'matchzy_remote_log_header_key ""',
        'matchzy_remote_log_header_value ""',
    ]


def status_query_commands() -> List[str]:
    return [STATUS_VAR, MATCH_SLUG_VAR, UPDATED_AT_VAR]


def _team_block(team: Optional[Team], roster: List[Player]) -> Dict[str, Any]:
    if team is None:
        return {"name": "TBD", "tag": "TBD", "players": {}, "series_score": 0}
    return {
        "id": str(team.id),
        "name": team.name,
        "tag": team.tag or team.name[:4].upper(),
        "players": {p.id: p.name for p in roster},
        "series_score": 0,
    }


def _cvars(tournament: Tournament) -> Dict[str, Any]:
    if tournament.round_limit_type == RoundLimitType.MAX_ROUNDS:
        max_rounds = tournament.max_rounds
    else:
        max_rounds = 24
    return {
        "mp_maxrounds": max_rounds,
        "mp_overtime_enable": 1 if tournament.overtime_enabled else 0,
    }


def build_match_config(
    match: Match,
    tournament: Tournament,
    team1: Optional[Team],
    team2: Optional[Team],
    team1_roster: List[Player],
    team2_roster: List[Player],
) -> Dict[str, Any]:
    """MatchZy match config with the veto result as maplist and per-map sides.

    Without a completed veto the first maps of the tournament pool are used,
    all with a knife round for sides.
    """
    num_maps = match.format.num_maps
    veto = VetoState.model_validate(match.veto_state) if match.veto_state else None

    if veto is not None and veto.status == VetoStatus.COMPLETED:
        ordered = veto.map_list()[:num_maps]
        maplist = [m.map_name for m in ordered]
        map_sides = [m.map_side.value for m in ordered]
    else:
        maplist = list(tournament.maps[:num_maps])
        map_sides = [MapSide.KNIFE.value] * len(maplist)

    return {
        "matchid": match.slug,
        "num_maps": num_maps,
        "players_per_team": max(len(team1_roster), len(team2_roster), 1),
        "min_players_to_ready": 1,
        "min_spectators_to_ready": 0,
        "wingman": False,
        "skip_veto": True,
        "maplist": maplist,
        "map_sides": map_sides,
        "spectators": {"players": {}},
        "team1": _team_block(team1, team1_roster),
        "team2": _team_block(team2, team2_roster),
        "cvars": _cvars(tournament),
    }
