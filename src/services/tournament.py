from competitions.tournament.service import create_tournament_service
from services.team import team_service

tournament_service = create_tournament_service(team_service)
