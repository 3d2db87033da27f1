from teams.service import create_team_service

team_service = create_team_service()
