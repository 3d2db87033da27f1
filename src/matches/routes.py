from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import Any, Dict, List, Optional
import uuid

from db.main import get_session
from competitions.bracket.validators import GenerationError
from servers.service import ServerOffline, ServerServiceError
from services.match import match_service
from .lifecycle import InvalidTransition
from .models import MatchStatus
from .schemas import AbortRequest, MatchResponse, StartVetoRequest
from .service import MatchNotFound, MatchServiceError
from .veto.commands import VetoState
from .veto.state_machine import InvalidVetoAction

match_router = APIRouter(prefix="/matches")
event_router = APIRouter(prefix="/events")


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, MatchNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ServerOffline):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, ServerServiceError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


MATCH_ERRORS = (MatchServiceError, InvalidTransition, InvalidVetoAction, GenerationError, ServerServiceError)


@match_router.get("/", response_model=List[MatchResponse])
async def list_matches(
    tournament_id: Optional[uuid.UUID] = None,
    match_status: Optional[MatchStatus] = None,
    session: AsyncSession = Depends(get_session)
):
    return await match_service.list_matches(session, tournament_id=tournament_id, status=match_status)


@match_router.post("/allocate", response_model=List[MatchResponse])
async def allocate_matches(session: AsyncSession = Depends(get_session)):
    """Hand free servers to every ready pending match"""
    return await match_service.allocate_pending_matches(session)


@match_router.get("/{slug}", response_model=MatchResponse)
async def get_match(slug: str, session: AsyncSession = Depends(get_session)):
    match = await match_service.get_match_by_slug(slug, session)
    if not match:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Match {slug} not found")
    return match


@match_router.get("/{slug}/config")
async def get_match_config(slug: str, session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    """Match config fetched by the game server on load"""
    try:
        return await match_service.get_match_config(slug, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/assign", response_model=MatchResponse)
async def assign_server(slug: str, session: AsyncSession = Depends(get_session)):
    try:
        return await match_service.assign_server(slug, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.get("/{slug}/veto", response_model=Optional[VetoState])
async def get_veto(slug: str, session: AsyncSession = Depends(get_session)):
    try:
        return await match_service.get_veto_state(slug, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/veto/start", response_model=MatchResponse)
async def start_veto(
    slug: str,
    request: Optional[StartVetoRequest] = None,
    session: AsyncSession = Depends(get_session)
):
    try:
        return await match_service.start_veto(slug, session, first_team=request.first_team if request else None)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/veto", response_model=VetoState)
async def veto_action(
    slug: str,
    command: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session)
):
    """Ban, pick or side choice, e.g. {"cmd": "ban", "team": 1, "map_name": "de_nuke"}"""
    try:
        return await match_service.apply_veto_action(slug, command, session)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/load", response_model=MatchResponse)
async def load_match(slug: str, session: AsyncSession = Depends(get_session)):
    try:
        return await match_service.load_match(slug, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/abort", response_model=MatchResponse)
async def abort_match(slug: str, request: AbortRequest, session: AsyncSession = Depends(get_session)):
    try:
        return await match_service.abort_match(slug, request.reason, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@match_router.post("/{slug}/reassign", response_model=MatchResponse)
async def reassign_server(slug: str, session: AsyncSession = Depends(get_session)):
    try:
        return await match_service.reassign_server(slug, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)


@event_router.post("/{slug}", response_model=MatchResponse)
async def receive_event(
    slug: str,
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session)
):
    """Webhook target for the game server plugin"""
    try:
        return await match_service.ingest_event(slug, payload, session)
    except MATCH_ERRORS as e:
        raise _to_http(e)
