from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List
import uuid

from db.main import get_session
from services.rating import rating_service, rating_template_service
from .schemas import RatingHistoryResponse, RatingTemplateCreate, RatingTemplateResponse, RatingTemplateUpdate
from .templates import RatingTemplateError

rating_router = APIRouter(prefix="/ratings")


@rating_router.get("/templates", response_model=List[RatingTemplateResponse])
async def list_templates(session: AsyncSession = Depends(get_session)):
    return await rating_template_service.list_templates(session)


@rating_router.get("/templates/{template_id}", response_model=RatingTemplateResponse)
async def get_template(template_id: str, session: AsyncSession = Depends(get_session)):
    template = await rating_template_service.get_template(template_id, session)
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return template


@rating_router.post("/templates", response_model=RatingTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(data: RatingTemplateCreate, session: AsyncSession = Depends(get_session)):
    try:
        return await rating_template_service.create_template(data, session)
    except RatingTemplateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@rating_router.patch("/templates/{template_id}", response_model=RatingTemplateResponse)
async def update_template(template_id: str, data: RatingTemplateUpdate, session: AsyncSession = Depends(get_session)):
    try:
        return await rating_template_service.update_template(template_id, data, session)
    except RatingTemplateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@rating_router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: str, session: AsyncSession = Depends(get_session)):
    try:
        await rating_template_service.delete_template(template_id, session)
    except RatingTemplateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@rating_router.get("/matches/{match_id}", response_model=List[RatingHistoryResponse])
async def get_match_ratings(match_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    return await rating_service.get_match_history(match_id, session)


@rating_router.get("/players/{player_id}", response_model=List[RatingHistoryResponse])
async def get_player_ratings(player_id: str, session: AsyncSession = Depends(get_session)):
    return await rating_service.get_player_history(player_id, session)
