from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List
import uuid

from db.main import get_session
from services.team import team_service
from teams.schemas import TeamBasic, TeamCreate, TeamDetailed, TeamUpdate
from teams.service import TeamServiceError

team_router = APIRouter(prefix="/teams")


@team_router.get("/", response_model=List[TeamBasic])
async def get_all_teams(session: AsyncSession = Depends(get_session)):
    return await team_service.get_all_teams(session)


@team_router.post("/", response_model=TeamDetailed, status_code=status.HTTP_201_CREATED)
async def create_team(team_data: TeamCreate, session: AsyncSession = Depends(get_session)):
    """Create a team with its initial roster"""
    try:
        team = await team_service.create_team(team_data, session)
    except TeamServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return await team_service.get_team_detailed(team.id, session)


@team_router.get("/{team_id}", response_model=TeamDetailed)
async def get_team(team_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    team = await team_service.get_team_detailed(team_id, session)
    if not team:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team not found")
    return team


@team_router.patch("/{team_id}", response_model=TeamBasic)
async def update_team(team_id: uuid.UUID, team_data: TeamUpdate, session: AsyncSession = Depends(get_session)):
    try:
        return await team_service.update_team(team_id, team_data, session)
    except TeamServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@team_router.post("/{team_id}/players/{player_id}", response_model=TeamDetailed)
async def add_player(team_id: uuid.UUID, player_id: str, session: AsyncSession = Depends(get_session)):
    try:
        await team_service.add_player(team_id, player_id, session)
    except TeamServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return await team_service.get_team_detailed(team_id, session)


@team_router.delete("/{team_id}/players/{player_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_player(team_id: uuid.UUID, player_id: str, session: AsyncSession = Depends(get_session)):
    try:
        await team_service.remove_player(team_id, player_id, session)
    except TeamServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
