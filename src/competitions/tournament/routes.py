from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List
import uuid

from db.main import get_session
from competitions.bracket.validators import GenerationError
from services.match import match_service
from services.tournament import tournament_service
from .service import TournamentServiceError
from .schemas import (
    BracketView,
    PlayerStanding,
    RoundStatus,
    TournamentCreate,
    TournamentResponse,
    TournamentUpdate,
)

tournament_router = APIRouter(prefix="/tournaments")


@tournament_router.get("/", response_model=List[TournamentResponse])
async def get_all_tournaments(session: AsyncSession = Depends(get_session)):
    return await tournament_service.list_tournaments(session)


@tournament_router.get("/active", response_model=TournamentResponse)
async def get_active_tournament(session: AsyncSession = Depends(get_session)):
    tournament = await tournament_service.get_active_tournament(session)
    if not tournament:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active tournament")
    return tournament


@tournament_router.post("/", response_model=TournamentResponse, status_code=status.HTTP_201_CREATED)
async def create_tournament(tournament_data: TournamentCreate, session: AsyncSession = Depends(get_session)):
    """Create a new tournament"""
    try:
        return await tournament_service.create_tournament(tournament_data, session)
    except (TournamentServiceError, GenerationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@tournament_router.get("/{tournament_id}", response_model=TournamentResponse)
async def get_tournament(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    tournament = await tournament_service.get_tournament(tournament_id, session)
    if not tournament:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tournament not found")
    return tournament


@tournament_router.patch("/{tournament_id}", response_model=TournamentResponse)
async def update_tournament(
    tournament_id: uuid.UUID,
    tournament_data: TournamentUpdate,
    session: AsyncSession = Depends(get_session)
):
    try:
        return await tournament_service.update_tournament(tournament_id, tournament_data, session)
    except (TournamentServiceError, GenerationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@tournament_router.delete("/{tournament_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tournament(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        await tournament_service.delete_tournament(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@tournament_router.post("/{tournament_id}/start", response_model=TournamentResponse)
async def start_tournament(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Generate the bracket, start the tournament and allocate servers to ready matches"""
    try:
        return await match_service.start_tournament(tournament_id, session)
    except (TournamentServiceError, GenerationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@tournament_router.post("/{tournament_id}/reset", response_model=TournamentResponse)
async def reset_tournament(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        return await tournament_service.reset_tournament(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@tournament_router.post("/{tournament_id}/complete", response_model=TournamentResponse)
async def complete_tournament(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        return await tournament_service.complete_tournament(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@tournament_router.get("/{tournament_id}/bracket", response_model=BracketView)
async def get_bracket(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        return await tournament_service.get_bracket_view(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@tournament_router.get("/{tournament_id}/round-status", response_model=RoundStatus)
async def get_round_status(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        return await tournament_service.get_round_status(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@tournament_router.get("/{tournament_id}/standings", response_model=List[PlayerStanding])
async def get_standings(tournament_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        return await tournament_service.get_standings(tournament_id, session)
    except TournamentServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
