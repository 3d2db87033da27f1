from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List

from db.main import get_session
from matches.service import MatchServiceError
from services.match import match_service
from services.server import server_pool_service
from .schemas import ServerCreate, ServerResponse, ServerUpdate, StatusDescription
from .service import ServerServiceError, describe_status

server_router = APIRouter(prefix="/servers")


@server_router.get("/", response_model=List[ServerResponse])
async def list_servers(session: AsyncSession = Depends(get_session)):
    return await server_pool_service.list_servers(session)


@server_router.post("/", response_model=ServerResponse, status_code=status.HTTP_201_CREATED)
async def register_server(data: ServerCreate, session: AsyncSession = Depends(get_session)):
    try:
        return await server_pool_service.register_server(data, session)
    except ServerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@server_router.patch("/{server_id}", response_model=ServerResponse)
async def update_server(server_id: str, data: ServerUpdate, session: AsyncSession = Depends(get_session)):
    try:
        return await server_pool_service.update_server(server_id, data, session)
    except ServerServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@server_router.get("/{server_id}/status", response_model=StatusDescription)
async def get_server_status(server_id: str, session: AsyncSession = Depends(get_session)):
    """Last known status, described for display"""
    server = await server_pool_service.get_server(server_id, session)
    if not server:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found")
    return describe_status(server.last_status if server.online else None)


@server_router.post("/{server_id}/poll", response_model=ServerResponse)
async def poll_server(server_id: str, session: AsyncSession = Depends(get_session)):
    """Query the server now instead of waiting for the next poll"""
    try:
        await match_service.poll_server(server_id, session)
    except MatchServiceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return await server_pool_service.get_server(server_id, session)
