import os

# Point the app at sqlite before config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SERVER_POLLING_ENABLED", "false")

import asyncio
import logging
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio
from faker import Faker
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from db.main import get_session, import_models
from competitions.models.tournaments import Tournament, TournamentType
from competitions.tournament.schemas import TournamentCreate
from competitions.tournament.service import TournamentService
from matches.locks import MatchLockRegistry
from matches.models import MatchFormat
from matches.service import MatchService
from players.models import Player
from ratings.engine import RatingEngine
from servers.client import RemoteServerClient, ServerCommandError
from servers.commands import MATCH_SLUG_VAR, STATUS_VAR, UPDATED_AT_VAR
from servers.models import GameServer
from servers.service import ServerPoolService, ServerStatusService
from teams.models import Team, TeamMember

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

fake = Faker()

TEST_DATABASE_URL = "sqlite+aiosqlite://"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def override_get_session() -> AsyncSession:
    async with TestingSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest_asyncio.fixture(scope="function", autouse=True)
async def prepare_test_database():
    import_models()
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest_asyncio.fixture
async def session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture(autouse=True)
def override_dependencies():
    from main import app
    app.dependency_overrides[get_session] = override_get_session
    yield
    app.dependency_overrides.clear()


class FakeServerClient(RemoteServerClient):
    """In-memory game servers: records commands and answers status variables"""

    def __init__(self):
        self.commands: Dict[str, List[str]] = {}
        self.vars: Dict[str, Dict[str, str]] = {}
        self.offline: Set[str] = set()
        self.delay: float = 0

    def set_status(self, server_id: str, status: str, match_slug: Optional[str] = None, updated_at: Optional[int] = None):
        values = self.vars.setdefault(server_id, {})
        values[STATUS_VAR] = status
        if match_slug is not None:
            values[MATCH_SLUG_VAR] = match_slug
        if updated_at is not None:
            values[UPDATED_AT_VAR] = str(updated_at)

    async def send_command(self, server_id: str, command: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if server_id in self.offline:
            raise ServerCommandError(f"{server_id} is unreachable")
        self.commands.setdefault(server_id, []).append(command)
        name = command.split()[0]
        value = self.vars.get(server_id, {}).get(name)
        if value is None:
            return ""
        return f'"{name}" = "{value}"'


class TournamentDataBuilder:
    """Helper class to build test data with consistent relationships"""

    MAP_POOL = ["de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo"]

    def __init__(self, session: AsyncSession):
        self.session = session
        self.engine = RatingEngine()

    async def create_player(self, elo: int = 3000) -> Player:
        mu, sigma = self.engine.seed_skill(elo)
        player = Player(
            id=f"7656119{fake.unique.numerify('##########')}",
            name=fake.unique.user_name(),
            current_elo=elo,
            starting_elo=elo,
            mu=mu,
            sigma=sigma,
        )
        self.session.add(player)
        await self.session.commit()
        await self.session.refresh(player)
        return player

    async def create_team(self, size: int = 5, elo: int = 3000, name: Optional[str] = None) -> Team:
        team = Team(name=name or f"{fake.unique.city()} Esports", tag=fake.lexify("???").upper())
        self.session.add(team)
        await self.session.commit()
        for _ in range(size):
            player = await self.create_player(elo)
            self.session.add(TeamMember(team_id=team.id, player_id=player.id))
        await self.session.commit()
        await self.session.refresh(team)
        return team

    async def create_teams(self, count: int, size: int = 1, elo: int = 3000) -> List[Team]:
        return [await self.create_team(size=size, elo=elo) for _ in range(count)]

    async def create_server(self, server_id: Optional[str] = None, enabled: bool = True) -> GameServer:
        server = GameServer(
            id=server_id or f"srv-{fake.unique.random_int(1, 9999)}",
            name=fake.word(),
            host=fake.ipv4(),
            port=27015,
            enabled=enabled,
        )
        self.session.add(server)
        await self.session.commit()
        await self.session.refresh(server)
        return server

    async def create_tournament(
        self,
        teams: List[Team],
        type: TournamentType = TournamentType.SINGLE_ELIMINATION,
        format: MatchFormat = MatchFormat.BO1,
        maps: Optional[List[str]] = None,
        start: bool = False,
        **kwargs
    ) -> Tournament:
        service = TournamentService()
        tournament = await service.create_tournament(
            TournamentCreate(
                name=f"{fake.word().title()} Cup",
                type=type,
                format=format,
                maps=maps or list(self.MAP_POOL),
                team_ids=[t.id for t in teams],
                **kwargs
            ),
            self.session,
        )
        if start:
            tournament = await service.start_tournament(tournament.id, self.session)
        return tournament


@pytest.fixture
def session_factory():
    """Independent sessions, one per task, for work that runs side by side"""
    return TestingSessionLocal


@pytest_asyncio.fixture
async def builder(session):
    return TournamentDataBuilder(session)


@pytest.fixture
def fake_client():
    return FakeServerClient()


@pytest.fixture
def match_service(fake_client):
    return MatchService(
        ServerStatusService(fake_client, timeout=0.5),
        pool=ServerPoolService(),
        tournament_service=TournamentService(),
        locks=MatchLockRegistry(),
    )


@pytest_asyncio.fixture
async def client():
    from main import app
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
