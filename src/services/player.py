from players.service import create_player_service

player_service = create_player_service()
