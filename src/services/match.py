from matches.locks import MatchLockRegistry
from matches.service import create_match_service
from services.rating import rating_service, rating_template_service
from services.server import server_pool_service, server_status_service
from services.team import team_service
from services.tournament import tournament_service

match_locks = MatchLockRegistry()

match_service = create_match_service(
    server_status_service,
    pool=server_pool_service,
    rating_service=rating_service,
    template_service=rating_template_service,
    tournament_service=tournament_service,
    team_service=team_service,
    locks=match_locks,
)
