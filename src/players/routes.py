from fastapi import APIRouter, Depends, status
from fastapi.exceptions import HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List

from db.main import get_session
from services.player import player_service
from .schemas import LeaderboardEntry, PlayerCreateModel, PlayerModel, PlayerUpdateModel
from .service import PlayerServiceError

player_router = APIRouter(prefix="/players")


@player_router.get("/", response_model=List[PlayerModel])
async def get_all_players(session: AsyncSession = Depends(get_session)):
    return await player_service.get_all_players(session)


@player_router.get("/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(limit: int = 100, session: AsyncSession = Depends(get_session)):
    return await player_service.get_leaderboard(session, limit=limit)


@player_router.post("/", status_code=status.HTTP_201_CREATED, response_model=PlayerModel)
async def create_player(player_data: PlayerCreateModel, session: AsyncSession = Depends(get_session)):
    try:
        return await player_service.create_player(player_data, session)
    except PlayerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@player_router.get("/{player_id}", response_model=PlayerModel)
async def get_player(player_id: str, session: AsyncSession = Depends(get_session)):
    player = await player_service.get_player(player_id, session)
    if player is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Player not found")
    return player


@player_router.patch("/{player_id}", response_model=PlayerModel)
async def update_player(
    player_id: str, player_data: PlayerUpdateModel, session: AsyncSession = Depends(get_session)
):
    player = await player_service.update_player(player_id, player_data, session)
    if player is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Player not found")
    return player
