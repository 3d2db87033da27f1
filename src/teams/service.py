from typing import Dict, List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, desc
from sqlalchemy import func
import uuid
import logging

from players.models import Player
from teams.models import Team, TeamMember
from teams.schemas import TeamCreate, TeamDetailed, TeamUpdate
from players.schemas import PlayerModel

LOG = logging.getLogger(__name__)


class TeamServiceError(Exception):
    """Base exception for team service errors"""
    pass


class TeamService:
    async def get_all_teams(self, session: AsyncSession) -> List[Team]:
        """Retrieves all teams ordered by creation date"""
        stmt = select(Team).order_by(desc(Team.created_at))
        result = (await session.execute(stmt)).scalars()
        return result.all()

    async def get_team_by_name(self, name: str, session: AsyncSession) -> Optional[Team]:
        """Retrieves a team by name"""
        stmt = select(Team).where(Team.name == name)
        result = (await session.execute(stmt)).scalars()
        return result.first()

    async def get_team_by_id(self, id: uuid.UUID, session: AsyncSession) -> Optional[Team]:
        """Retrieves a team by ID"""
        return await session.get(Team, id)

    async def get_teams_by_ids(self, ids: List[uuid.UUID], session: AsyncSession) -> Dict[uuid.UUID, Team]:
        if not ids:
            return {}
        stmt = select(Team).where(Team.id.in_(ids))
        return {t.id: t for t in (await session.execute(stmt)).scalars().all()}

    async def get_roster(self, team_id: uuid.UUID, session: AsyncSession) -> List[Player]:
        """Players on a team, ordered by id"""
        stmt = (
            select(Player)
            .join(TeamMember, TeamMember.player_id == Player.id)
            .where(TeamMember.team_id == team_id)
            .order_by(Player.id)
        )
        return (await session.execute(stmt)).scalars().all()

    async def get_team_ratings(self, team_ids: List[uuid.UUID], session: AsyncSession) -> Dict[uuid.UUID, float]:
        """Average current rating per team; teams without players rate 0"""
        if not team_ids:
            return {}
        stmt = (
            select(TeamMember.team_id, func.avg(Player.current_elo))
            .join(Player, Player.id == TeamMember.player_id)
            .where(TeamMember.team_id.in_(team_ids))
            .group_by(TeamMember.team_id)
        )
        ratings = {team_id: float(avg or 0) for team_id, avg in (await session.execute(stmt)).all()}
        return {team_id: ratings.get(team_id, 0.0) for team_id in team_ids}

    async def get_team_detailed(self, team_id: uuid.UUID, session: AsyncSession) -> Optional[TeamDetailed]:
        team = await self.get_team_by_id(team_id, session)
        if not team:
            return None
        roster = await self.get_roster(team_id, session)
        return TeamDetailed(
            id=team.id,
            name=team.name,
            tag=team.tag,
            created_at=team.created_at,
            players=[PlayerModel.model_validate(p) for p in roster],
        )

    async def create_team(self, team_data: TeamCreate, session: AsyncSession) -> Team:
        """Creates a team and its roster in one commit"""
        if await self.get_team_by_name(team_data.name, session):
            raise TeamServiceError(f"Team name '{team_data.name}' already exists")

        player_ids = list(dict.fromkeys(team_data.player_ids))
        if player_ids:
            found = (await session.execute(select(Player.id).where(Player.id.in_(player_ids)))).scalars().all()
            missing = set(player_ids) - set(found)
            if missing:
                raise TeamServiceError(f"Unknown players: {sorted(missing)}")

        team = Team(name=team_data.name, tag=team_data.tag)
        session.add(team)
        await session.flush()
        for player_id in player_ids:
            session.add(TeamMember(team_id=team.id, player_id=player_id))
        await session.commit()
        await session.refresh(team)
        LOG.info(f"Created team {team.name} with {len(player_ids)} players")
        return team

    async def update_team(self, team_id: uuid.UUID, team_data: TeamUpdate, session: AsyncSession) -> Team:
        team = await self.get_team_by_id(team_id, session)
        if not team:
            raise TeamServiceError("Team not found")
        changes = team_data.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] != team.name:
            if await self.get_team_by_name(changes["name"], session):
                raise TeamServiceError(f"Team name '{changes['name']}' already exists")
        for key, value in changes.items():
            setattr(team, key, value)
        session.add(team)
        await session.commit()
        await session.refresh(team)
        return team

    async def add_player(self, team_id: uuid.UUID, player_id: str, session: AsyncSession) -> TeamMember:
        if not await self.get_team_by_id(team_id, session):
            raise TeamServiceError("Team not found")
        if not await session.get(Player, player_id):
            raise TeamServiceError(f"Player '{player_id}' not found")
        if await session.get(TeamMember, (team_id, player_id)):
            raise TeamServiceError("Player is already on this team")
        member = TeamMember(team_id=team_id, player_id=player_id)
        session.add(member)
        await session.commit()
        return member

    async def remove_player(self, team_id: uuid.UUID, player_id: str, session: AsyncSession):
        member = await session.get(TeamMember, (team_id, player_id))
        if not member:
            raise TeamServiceError("Player is not on this team")
        await session.delete(member)
        await session.commit()


def create_team_service() -> TeamService:
    return TeamService()
