from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from competitions.tournament.routes import tournament_router
from matches.routes import event_router, match_router
from players.routes import player_router
from ratings.routes import rating_router
from servers.poller import ServerPoller
from servers.routes import server_router
from teams.routes import team_router
from db.main import async_session, init_db
from services.match import match_service
from services.rating import rating_template_service
from config import Config

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOG = logging.getLogger(__name__)


async def _claimed_servers():
    async with async_session() as session:
        return await match_service.claimed_server_ids(session)


async def _poll(server_id: str):
    async with async_session() as session:
        await match_service.poll_server(server_id, session)


async def _allocate():
    async with async_session() as session:
        await match_service.allocate_pending_matches(session)


poller = ServerPoller(_claimed_servers, _poll, after_cycle=_allocate)


@asynccontextmanager
async def life_span(app: FastAPI):
    LOG.info("Server starting up.")
    await init_db()
    async with async_session() as session:
        await rating_template_service.ensure_default(session)
    if Config.SERVER_POLLING_ENABLED:
        poller.start()
    yield
    await poller.stop()
    LOG.info("Server stopped.")


version = Config.API_VERSION

app = FastAPI(
    title="Tournament Orchestrator",
    description="Brackets, map vetoes, match lifecycle and ratings for CS2 tournaments",
    version=version,
    lifespan=life_span,
)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"], allow_credentials=True)
app.include_router(player_router, prefix=f"/api/{version}")
app.include_router(team_router, prefix=f"/api/{version}")
app.include_router(tournament_router, prefix=f"/api/{version}")
app.include_router(match_router, prefix=f"/api/{version}")
app.include_router(event_router, prefix=f"/api/{version}")
app.include_router(server_router, prefix=f"/api/{version}")
app.include_router(rating_router, prefix=f"/api/{version}")
