from typing import List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, desc
import logging

from config import Config
from ratings.engine import RatingEngine
from .schemas import LeaderboardEntry, PlayerCreateModel, PlayerUpdateModel
from .models import Player

LOG = logging.getLogger(__name__)


class PlayerServiceError(Exception):
    """Base exception for player service errors"""
    pass


class PlayerService:
    def __init__(self, rating_engine: Optional[RatingEngine] = None):
        self.rating_engine = rating_engine or RatingEngine()

    async def get_all_players(self, session: AsyncSession) -> List[Player]:
        stmnt = select(Player).order_by(desc(Player.created_at))

        result = await session.exec(stmnt)

        return result.all()

    async def get_player(self, player_id: str, session: AsyncSession) -> Player | None:
        stmnt = select(Player).where(Player.id == player_id)

        result = await session.exec(stmnt)

        return result.first()

    async def create_player(
        self, player_data: PlayerCreateModel, session: AsyncSession
    ) -> Player:
        if await self.get_player(player_data.id, session):
            raise PlayerServiceError(f"Player '{player_data.id}' already exists")

        starting_elo = player_data.starting_elo
        if starting_elo is None:
            starting_elo = Config.DEFAULT_STARTING_ELO
        mu, sigma = self.rating_engine.seed_skill(starting_elo)

        new_player = Player(
            id=player_data.id,
            name=player_data.name,
            avatar_url=player_data.avatar_url,
            current_elo=starting_elo,
            starting_elo=starting_elo,
            mu=mu,
            sigma=sigma,
        )
        session.add(new_player)
        await session.commit()
        await session.refresh(new_player)
        LOG.info(f"Created player {new_player.id} ({new_player.name}) at {starting_elo}")
        return new_player

    async def update_player(
        self, player_id: str, player_data: PlayerUpdateModel, session: AsyncSession
    ) -> Player | None:
        player_to_update = await self.get_player(player_id, session)
        if player_to_update is not None:
            update_data = player_data.model_dump()
            for k, v in update_data.items():
                if v is not None:
                    setattr(player_to_update, k, v)
            await session.commit()
            await session.refresh(player_to_update)
        return player_to_update

    async def get_leaderboard(self, session: AsyncSession, limit: int = 100) -> List[LeaderboardEntry]:
        stmnt = select(Player).order_by(desc(Player.current_elo), Player.name).limit(limit)
        players = (await session.exec(stmnt)).all()
        return [
            LeaderboardEntry(
                id=p.id,
                name=p.name,
                current_elo=p.current_elo,
                elo_change=p.current_elo - p.starting_elo,
                match_count=p.match_count,
            )
            for p in players
        ]


def create_player_service() -> PlayerService:
    return PlayerService()
