from typing import List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from sqlalchemy import update
from datetime import datetime
import asyncio
import time
import logging

from config import Config
from matches.schemas import ServerReport
from .client import RemoteServerClient, ServerCommandError, parse_convar
from .commands import status_query_commands
from .models import GameServer, ServerStatus
from .schemas import ServerCreate, ServerUpdate, StatusDescription

LOG = logging.getLogger(__name__)


class ServerServiceError(Exception):
    """Base exception for server service errors"""
    pass


class ServerUnavailable(ServerServiceError):
    """No enabled, unclaimed server could be claimed"""
    pass


class ServerOffline(ServerServiceError):
    """Server did not answer in time or refused the command"""
    pass


STATUS_DESCRIPTIONS = {
    ServerStatus.IDLE: ("Available", "Server is ready for a new match", "success"),
    ServerStatus.LOADING: ("Loading", "Match is being loaded onto the server", "info"),
    ServerStatus.WARMUP: ("Warmup - Join Now!", "Waiting for players to connect and ready up", "warning"),
    ServerStatus.KNIFE: ("Knife Round", "Knife round in progress", "info"),
    ServerStatus.LIVE: ("Live", "Match is live and in progress", "error"),
    ServerStatus.PAUSED: ("Paused", "Match is paused", "warning"),
    ServerStatus.HALFTIME: ("Halftime", "Halftime break", "info"),
    ServerStatus.POSTGAME: ("Match Ended", "Match completed, server cleaning up", "default"),
    ServerStatus.ERROR: ("Error", "Server encountered an error", "error"),
}


def describe_status(status: Optional[ServerStatus]) -> StatusDescription:
    label, description, color = STATUS_DESCRIPTIONS.get(
        status, ("Unknown", "Server status unknown", "default")
    )
    return StatusDescription(label=label, description=description, color=color)


class ServerPoolService:
    """Registry of game servers and the match claims held on them"""

    def __init__(self, idle_grace_seconds: int = Config.SERVER_IDLE_GRACE_SECONDS):
        self.idle_grace_seconds = idle_grace_seconds
        self._claim_lock = asyncio.Lock()

    async def get_server(self, server_id: str, session: AsyncSession) -> Optional[GameServer]:
        return await session.get(GameServer, server_id)

    async def list_servers(self, session: AsyncSession) -> List[GameServer]:
        stmt = select(GameServer).order_by(GameServer.id)
        return (await session.execute(stmt)).scalars().all()

    async def claimed_servers(self, session: AsyncSession) -> List[GameServer]:
        stmt = select(GameServer).where(GameServer.current_match_slug.is_not(None)).order_by(GameServer.id)
        return (await session.execute(stmt)).scalars().all()

    async def register_server(self, data: ServerCreate, session: AsyncSession) -> GameServer:
        if await self.get_server(data.id, session):
            raise ServerServiceError(f"Server {data.id} already exists")
        server = GameServer(**data.model_dump())
        session.add(server)
        await session.commit()
        await session.refresh(server)
        LOG.info(f"Registered server {server.id} at {server.host}:{server.port}")
        return server

    async def update_server(self, server_id: str, data: ServerUpdate, session: AsyncSession) -> GameServer:
        server = await self.get_server(server_id, session)
        if not server:
            raise ServerServiceError(f"Server {server_id} not found")
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(server, key, value)
        session.add(server)
        await session.commit()
        await session.refresh(server)
        return server

    def _in_idle_grace(self, server: GameServer) -> bool:
        if not self.idle_grace_seconds or server.last_status != ServerStatus.IDLE:
            return False
        if server.last_status_updated_at is None:
            return False
        return time.time() - server.last_status_updated_at < self.idle_grace_seconds

    async def claim(
        self,
        match_slug: str,
        session: AsyncSession,
        exclude: Optional[List[str]] = None
    ) -> GameServer:
        """Claim a free server for a match with a conditional update.

        Returns the server already held by the match when there is one;
        servers in `exclude` are never picked.
        Raises ServerUnavailable when every server is taken, disabled or
        still inside its idle grace period. Does not commit.
        """
        async with self._claim_lock:
            held = (await session.execute(
                select(GameServer).where(GameServer.current_match_slug == match_slug)
            )).scalars().first()
            if held:
                return held

            stmt = (
                select(GameServer)
                .where(GameServer.enabled == True)  # noqa: E712
                .where(GameServer.current_match_slug.is_(None))
                .order_by(GameServer.id)
            )
            candidates = (await session.execute(stmt)).scalars().all()
            for server in candidates:
                if exclude and server.id in exclude:
                    continue
                if self._in_idle_grace(server):
                    LOG.debug(f"Skipping {server.id}: idle for less than {self.idle_grace_seconds}s")
                    continue
                result = await session.execute(
                    update(GameServer)
                    .where(GameServer.id == server.id)
                    .where(GameServer.enabled == True)  # noqa: E712
                    .where(GameServer.current_match_slug.is_(None))
                    .values(current_match_slug=match_slug, claimed_at=datetime.now())
                )
                if result.rowcount == 1:
                    await session.refresh(server)
                    LOG.info(f"Server {server.id} claimed by {match_slug}")
                    return server

        raise ServerUnavailable(f"No server available for {match_slug}")

    async def release(self, server_id: str, match_slug: str, session: AsyncSession) -> bool:
        """Drop a match's claim; a claim held by another match is left alone. Does not commit."""
        result = await session.execute(
            update(GameServer)
            .where(GameServer.id == server_id)
            .where(GameServer.current_match_slug == match_slug)
            .values(current_match_slug=None, claimed_at=None)
        )
        released = result.rowcount == 1
        if released:
            server = await self.get_server(server_id, session)
            if server is not None:
                await session.refresh(server)
            LOG.info(f"Server {server_id} released by {match_slug}")
        return released


class ServerStatusService:
    """Reads the plugin status variables from a server with a per-query timeout"""

    def __init__(self, client: RemoteServerClient, timeout: float = Config.SERVER_QUERY_TIMEOUT):
        self.client = client
        self.timeout = timeout

    async def send(self, server_id: str, command: str) -> str:
        try:
            return await asyncio.wait_for(self.client.send_command(server_id, command), self.timeout)
        except asyncio.TimeoutError:
            raise ServerOffline(f"Server {server_id} did not answer {command.split()[0]} within {self.timeout}s")
        except ServerCommandError as e:
            raise ServerOffline(str(e))

    async def _read_var(self, server_id: str, name: str) -> Optional[str]:
        parsed = parse_convar(await self.send(server_id, name))
        return parsed[1] if parsed and parsed[1] else None

    async def get_status(self, server_id: str) -> ServerReport:
        """Query all status variables; raises ServerOffline if any query fails"""
        raw_status, match_slug, raw_updated = [
            await self._read_var(server_id, name) for name in status_query_commands()
        ]

        status = None
        if raw_status is None:
            status = ServerStatus.IDLE
        else:
            try:
                status = ServerStatus(raw_status)
            except ValueError:
                LOG.warning(f"Server {server_id} reported unknown status {raw_status!r}")

        updated_at = None
        if raw_updated is not None:
            try:
                updated_at = int(raw_updated)
            except ValueError:
                LOG.warning(f"Server {server_id} reported bad timestamp {raw_updated!r}")

        return ServerReport(
            server_id=server_id,
            online=True,
            status=status,
            match_slug=match_slug,
            updated_at=updated_at,
        )

    async def record(self, server: GameServer, report: ServerReport, session: AsyncSession):
        """Store the last seen status on the server row. Does not commit."""
        server.online = report.online
        if report.online:
            server.last_seen_at = datetime.now()
            if report.status is not None:
                server.last_status = report.status
                server.last_status_updated_at = report.updated_at or int(time.time())
        session.add(server)


def create_server_pool_service() -> ServerPoolService:
    return ServerPoolService()


def create_server_status_service(client: RemoteServerClient) -> ServerStatusService:
    return ServerStatusService(client)
