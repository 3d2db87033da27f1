from typing import Any, Dict, List, Optional, Union
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, desc
from pydantic import ValidationError
import logging

from competitions.models.tournaments import Tournament, TournamentStatus
from competitions.tournament.service import TournamentService
from players.models import Player
from ratings.service import RatingService, RatingServiceError
from ratings.templates import RatingTemplateService
from servers.commands import build_match_config, load_match_commands, release_commands
from servers.models import GameServer, ServerStatus
from servers.service import ServerOffline, ServerPoolService, ServerServiceError, ServerStatusService, ServerUnavailable
from teams.service import TeamService
from .lifecycle import MatchLifecycle, StaleReport
from .locks import MatchLockRegistry
from .models import MapResult, Match, MatchEvent, MatchStatus, PlayerMatchStat
from .schemas import (
    GoingLiveEvent,
    MapResultEvent,
    MatchEventAdapter,
    RoundEndEvent,
    SeriesEndEvent,
    ServerReport,
    ServerStatusEvent,
)
from .veto.commands import BanMapCmd, PickMapCmd, PickSideCmd, VetoState
from .veto.state_machine import VetoNegotiator

LOG = logging.getLogger(__name__)


class MatchServiceError(Exception):
    """Base exception for match service errors"""
    pass


class MatchNotFound(MatchServiceError):
    pass


class MatchService:
    """Drives matches from pending to completed against the game servers.

    Every public method that changes a match takes that match's lock first;
    the private helpers assume it is already held. Bracket advancement also
    takes the tournament lock, always after the match lock.
    """

    def __init__(
        self,
        status_service: ServerStatusService,
        pool: Optional[ServerPoolService] = None,
        rating_service: Optional[RatingService] = None,
        template_service: Optional[RatingTemplateService] = None,
        tournament_service: Optional[TournamentService] = None,
        team_service: Optional[TeamService] = None,
        locks: Optional[MatchLockRegistry] = None,
    ):
        self.status_service = status_service
        self.pool = pool or ServerPoolService()
        self.rating_service = rating_service or RatingService()
        self.template_service = template_service or RatingTemplateService()
        self.tournament_service = tournament_service or TournamentService()
        self.team_service = team_service or TeamService()
        self.locks = locks or MatchLockRegistry()

    async def get_match_by_slug(self, slug: str, session: AsyncSession) -> Optional[Match]:
        """Resolve a slug, preferring the match of a tournament that is still running"""
        stmt = (
            select(Match, Tournament.status)
            .join(Tournament, Tournament.id == Match.tournament_id)
            .where(Match.slug == slug)
            .order_by(desc(Tournament.created_at))
            .execution_options(populate_existing=True)
        )
        rows = (await session.execute(stmt)).all()
        if not rows:
            return None
        for match, tournament_status in rows:
            if tournament_status != TournamentStatus.COMPLETED:
                return match
        return rows[0][0]

    async def _require(self, slug: str, session: AsyncSession) -> Match:
        match = await self.get_match_by_slug(slug, session)
        if not match:
            raise MatchNotFound(f"Match {slug} not found")
        return match

    async def list_matches(
        self,
        session: AsyncSession,
        tournament_id=None,
        status: Optional[MatchStatus] = None
    ) -> List[Match]:
        stmt = select(Match).order_by(Match.round, Match.match_number)
        if tournament_id is not None:
            stmt = stmt.where(Match.tournament_id == tournament_id)
        if status is not None:
            stmt = stmt.where(Match.status == status)
        return (await session.execute(stmt)).scalars().all()

    # Server assignment

    def _fail(self, match: Match, reason: str):
        lifecycle = MatchLifecycle(match)
        if lifecycle.status == MatchStatus.ERROR:
            match.error_reason = reason
        elif not lifecycle.status.is_terminal:
            lifecycle.transition("fail", reason)
        LOG.error(f"Match {match.slug} failed: {reason}")

    async def _claim(self, match: Match, session: AsyncSession, exclude: Optional[List[str]] = None) -> GameServer:
        server = await self.pool.claim(match.slug, session, exclude=exclude)
        match.server_id = server.id
        session.add(match)
        return server

    async def _release_server(self, match: Match, session: AsyncSession):
        """Drop the match's claim and clear the server's webhook, best effort on the remote side"""
        if match.server_id is None:
            return
        if not await self.pool.release(match.server_id, match.slug, session):
            return
        try:
            for command in release_commands():
                await self.status_service.send(match.server_id, command)
        except ServerServiceError as e:
            LOG.warning(f"Could not reset server {match.server_id} after {match.slug}: {e}")

    async def assign_server(self, slug: str, session: AsyncSession) -> Match:
        """Claim a server for a match; failing to find one puts the match in error"""
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if MatchStatus(match.status).is_terminal:
                raise MatchServiceError(f"Match {slug} is {match.status}")
            try:
                await self._claim(match, session)
            except ServerUnavailable as e:
                self._fail(match, str(e))
                session.add(match)
                await session.commit()
                raise
            await session.commit()
            await session.refresh(match)
            return match

    async def allocate_pending_matches(self, session: AsyncSession) -> List[Match]:
        """Give servers to ready pending matches in bracket order until the pool runs dry.

        Each allocated match goes straight into its veto.
        """
        tournament = await self.tournament_service.get_active_tournament(session)
        if not tournament or tournament.status != TournamentStatus.IN_PROGRESS:
            return []

        stmt = (
            select(Match.slug)
            .where(Match.tournament_id == tournament.id)
            .where(Match.status == MatchStatus.PENDING)
            .where(Match.server_id.is_(None))
            .where(Match.team1_id.is_not(None))
            .where(Match.team2_id.is_not(None))
            .order_by(Match.round, Match.match_number)
        )
        slugs = (await session.execute(stmt)).scalars().all()

        allocated = []
        for slug in slugs:
            async with self.locks.for_match(slug):
                match = await self._require(slug, session)
                if match.status != MatchStatus.PENDING or match.server_id is not None:
                    continue
                try:
                    await self._claim(match, session)
                except ServerUnavailable:
                    LOG.info(f"Server pool exhausted, {len(slugs) - len(allocated)} matches left waiting")
                    break
                self._start_veto(match, tournament)
                if VetoNegotiator.from_dict(match.veto_state).completed:
                    await self._load_or_fail(match, session)
                await session.commit()
                await session.refresh(match)
                allocated.append(match)
        return allocated

    async def start_tournament(self, tournament_id, session: AsyncSession) -> Tournament:
        """Generate the bracket, then hand servers to the first ready matches"""
        tournament = await self.tournament_service.start_tournament(tournament_id, session)
        allocated = await self.allocate_pending_matches(session)
        LOG.info(f"Allocated {len(allocated)} matches at the start of {tournament.name}")
        await session.refresh(tournament)
        return tournament

    # Veto

    def _start_veto(self, match: Match, tournament: Tournament, first_team: Optional[int] = None) -> VetoNegotiator:
        negotiator = VetoNegotiator.start(match.slug, match.format, tournament.maps, first_team or 1)
        MatchLifecycle(match).transition("start_veto")
        match.veto_state = negotiator.to_dict()
        return negotiator

    async def start_veto(self, slug: str, session: AsyncSession, first_team: Optional[int] = None) -> Match:
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if match.status != MatchStatus.PENDING:
                raise MatchServiceError(f"Veto can only start on a pending match, {slug} is {match.status}")
            if match.team1_id is None or match.team2_id is None:
                raise MatchServiceError(f"Match {slug} is still waiting for its teams")

            tournament = await session.get(Tournament, match.tournament_id)
            negotiator = self._start_veto(match, tournament, first_team)
            session.add(match)
            if negotiator.completed:
                await self._load_or_fail(match, session)
            await session.commit()
            await session.refresh(match)
            return match

    async def get_veto_state(self, slug: str, session: AsyncSession) -> Optional[VetoState]:
        match = await self._require(slug, session)
        if not match.veto_state:
            return None
        return VetoState.model_validate(match.veto_state)

    async def apply_veto_action(
        self,
        slug: str,
        command: Union[Dict[str, Any], BanMapCmd, PickMapCmd, PickSideCmd],
        session: AsyncSession
    ) -> VetoState:
        """Apply one ban/pick/side command; the last one loads the match onto its server"""
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if match.status != MatchStatus.VETO or not match.veto_state:
                raise MatchServiceError(f"Match {slug} is not in veto")

            negotiator = VetoNegotiator.from_dict(match.veto_state)
            veto = negotiator.apply(command)
            match.veto_state = negotiator.to_dict()
            session.add(match)
            if negotiator.completed:
                LOG.info(f"Veto completed for {slug}: {[m.map_name for m in veto.map_list()]}")
                await self._load_or_fail(match, session)
            await session.commit()
            return veto

    # Loading

    async def _load(self, match: Match, session: AsyncSession, exclude: Optional[List[str]] = None):
        """Claim a server if needed and push the load commands.

        Any server failure fails the match before being re-raised.
        """
        try:
            if match.server_id is None:
                await self._claim(match, session, exclude=exclude)
            for command in load_match_commands(match.slug):
                await self.status_service.send(match.server_id, command)
        except ServerServiceError as e:
            self._fail(match, str(e))
            session.add(match)
            raise

        MatchLifecycle(match).transition("load")
        match.current_map_index = 0
        match.server_updated_at = None
        session.add(match)
        LOG.info(f"Match {match.slug} loading on {match.server_id}")

    async def _load_or_fail(self, match: Match, session: AsyncSession):
        try:
            await self._load(match, session)
        except ServerServiceError as e:
            LOG.warning(f"Match {match.slug} could not be loaded: {e}")

    async def load_match(self, slug: str, session: AsyncSession) -> Match:
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if match.status == MatchStatus.VETO and not VetoNegotiator.from_dict(match.veto_state).completed:
                raise MatchServiceError(f"Veto for {slug} is not finished")
            if match.status not in (MatchStatus.PENDING, MatchStatus.VETO, MatchStatus.ERROR):
                raise MatchServiceError(f"Match {slug} cannot be loaded while {match.status}")
            try:
                await self._load(match, session)
            except ServerServiceError:
                await session.commit()
                raise
            await session.commit()
            await session.refresh(match)
            return match

    async def get_match_config(self, slug: str, session: AsyncSession) -> Dict[str, Any]:
        """Match config document the server downloads after load"""
        match = await self._require(slug, session)
        tournament = await session.get(Tournament, match.tournament_id)
        team1 = await self.team_service.get_team_by_id(match.team1_id, session) if match.team1_id else None
        team2 = await self.team_service.get_team_by_id(match.team2_id, session) if match.team2_id else None
        return build_match_config(
            match,
            tournament,
            team1,
            team2,
            await self.team_service.get_roster(match.team1_id, session) if team1 else [],
            await self.team_service.get_roster(match.team2_id, session) if team2 else [],
        )

    # Events and status reports

    async def ingest_event(self, slug: str, payload: Dict[str, Any], session: AsyncSession) -> Match:
        """Log a server event, then apply it to the match.

        The log entry is committed before the event is parsed, so malformed or
        unroutable events are still kept. A match completed by the event frees
        its server for the next pending match.
        """
        async with self.locks.for_match(slug):
            match, completed = await self._apply_event(slug, payload, session)
        if completed:
            await self.allocate_pending_matches(session)
        return match

    async def _apply_event(self, slug: str, payload: Dict[str, Any], session: AsyncSession):
        match = await self.get_match_by_slug(slug, session)
        session.add(MatchEvent(
            match_slug=slug,
            match_id=match.id if match else None,
            event_type=str(payload.get("event", "unknown")),
            payload=payload,
        ))
        await session.commit()

        if not match:
            raise MatchNotFound(f"Match {slug} not found")
        try:
            event = MatchEventAdapter.validate_python(payload)
        except ValidationError as e:
            raise MatchServiceError(f"Invalid event for {slug}: {e}")

        await session.refresh(match)
        lifecycle = MatchLifecycle(match)
        try:
            if isinstance(event, GoingLiveEvent):
                lifecycle.reconcile(ServerStatus.LIVE, event.timestamp)
                if lifecycle.status == MatchStatus.LIVE:
                    match.current_map_index = event.map_number - 1
                else:
                    LOG.info(f"Ignoring going_live for map {event.map_number} of {slug} while {match.status}")
            elif isinstance(event, RoundEndEvent):
                LOG.debug(
                    f"{slug} map {event.map_number} round {event.round_number}: "
                    f"{event.team1_score}-{event.team2_score}"
                )
            elif isinstance(event, MapResultEvent):
                await self._record_map(match, event, session)
            elif isinstance(event, SeriesEndEvent):
                lifecycle.reconcile(ServerStatus.POSTGAME, event.timestamp)
            elif isinstance(event, ServerStatusEvent):
                lifecycle.reconcile(event.status, event.timestamp)
        except StaleReport as e:
            LOG.warning(f"Discarding {event.event} for {slug}: {e}")
            return match, False

        session.add(match)
        completed = await self._maybe_complete(match, session)
        await session.commit()
        await session.refresh(match)
        return match, completed

    async def _record_map(self, match: Match, event: MapResultEvent, session: AsyncSession):
        """Store a map result and its stat lines once per map number"""
        if MatchStatus(match.status).is_terminal:
            LOG.warning(f"Ignoring map {event.map_number} result for {match.status} match {match.slug}")
            return
        existing = (await session.execute(
            select(MapResult).where(MapResult.match_id == match.id).where(MapResult.map_number == event.map_number)
        )).scalars().first()
        if existing:
            LOG.info(f"Map {event.map_number} of {match.slug} already recorded")
            return

        veto = VetoState.model_validate(match.veto_state) if match.veto_state else None
        maps = veto.map_list() if veto else []
        map_name = event.map_name or (
            maps[event.map_number - 1].map_name if event.map_number <= len(maps) else "unknown"
        )
        session.add(MapResult(
            match_id=match.id,
            map_number=event.map_number,
            map_name=map_name,
            team1_score=event.team1_score,
            team2_score=event.team2_score,
            winner_id=match.team_for_slot(event.winner_slot),
        ))

        known = set()
        player_ids = [line.player_id for line in event.player_stats]
        if player_ids:
            known = set((await session.execute(select(Player.id).where(Player.id.in_(player_ids)))).scalars().all())
        for line in event.player_stats:
            if line.player_id not in known:
                LOG.warning(f"Skipping stats for unknown player {line.player_id} in {match.slug}")
                continue
            session.add(PlayerMatchStat(
                match_id=match.id,
                map_number=event.map_number,
                team_id=match.team_for_slot(line.team_slot),
                **line.model_dump(exclude={"team_slot"}),
            ))
        match.current_map_index = event.map_number
        await session.flush()
        LOG.info(f"Recorded map {event.map_number} ({map_name}) of {match.slug}: {event.team1_score}-{event.team2_score}")

    async def _map_wins(self, match: Match, session: AsyncSession) -> Dict[Any, int]:
        results = (await session.execute(select(MapResult).where(MapResult.match_id == match.id))).scalars().all()
        wins = {match.team1_id: 0, match.team2_id: 0}
        for result in results:
            if result.winner_id in wins:
                wins[result.winner_id] += 1
        return wins

    async def _maybe_complete(self, match: Match, session: AsyncSession) -> bool:
        if match.status != MatchStatus.POSTGAME:
            return False
        wins = await self._map_wins(match, session)
        needed = match.format.maps_needed
        winners = [team_id for team_id, count in wins.items() if count >= needed]
        if not winners:
            LOG.warning(f"Match {match.slug} in postgame with map wins {list(wins.values())}, need {needed}")
            return False
        return await self._complete(match, winners[0], session)

    async def _complete(self, match: Match, winner_id, session: AsyncSession) -> bool:
        """Finish a match: winner, ratings, bracket, server. Commits.

        Returns False when the match was already completed.
        """
        if match.status == MatchStatus.COMPLETED:
            LOG.info(f"Match {match.slug} already completed")
            return False

        MatchLifecycle(match).transition("complete")
        match.winner_id = winner_id
        session.add(match)
        await session.flush()
        LOG.info(f"Match {match.slug} completed, winner {winner_id}")

        tournament = await session.get(Tournament, match.tournament_id)
        template = None
        if tournament and tournament.rating_template_id:
            template = await self.template_service.get_template(tournament.rating_template_id, session)
        try:
            await self.rating_service.rate_match(match, session, template)
        except RatingServiceError as e:
            LOG.error(f"Ratings not updated for {match.slug}: {e}")

        await self._release_server(match, session)
        async with self.locks.for_tournament(match.tournament_id):
            await self.tournament_service.advance(match, session)
            await session.commit()
        return True

    async def handle_server_report(self, report: ServerReport, session: AsyncSession) -> Optional[Match]:
        """Record a status snapshot and reconcile the match holding the server"""
        server = await self.pool.get_server(report.server_id, session)
        if not server:
            raise MatchServiceError(f"Server {report.server_id} not found")
        await self.status_service.record(server, report, session)
        slug = server.current_match_slug
        # No row lock may be held while waiting on a match lock
        await session.commit()
        if not slug:
            return None

        async with self.locks.for_match(slug):
            match, completed = await self._apply_report(server, slug, report, session)
        if completed:
            await self.allocate_pending_matches(session)
        return match

    async def _apply_report(self, server: GameServer, slug: str, report: ServerReport, session: AsyncSession):
        await session.refresh(server)
        if server.current_match_slug != slug:
            LOG.info(f"Server {server.id} moved off {slug} before its report was applied")
            return None, False
        match = await self.get_match_by_slug(slug, session)
        if not match:
            return None, False

        if not report.online:
            if not MatchStatus(match.status).is_terminal and match.status != MatchStatus.ERROR:
                self._fail(match, f"Server {server.id} is offline")
                session.add(match)
            await session.commit()
            return match, False

        completed = False
        if report.match_slug and report.match_slug != slug:
            LOG.warning(f"Server {server.id} reports match {report.match_slug}, expected {slug}")
        elif report.status is not None:
            try:
                MatchLifecycle(match).reconcile(report.status, report.updated_at)
            except StaleReport as e:
                LOG.warning(f"Discarding poll of {server.id}: {e}")
            else:
                session.add(match)
                completed = await self._maybe_complete(match, session)
        await session.commit()
        return match, completed

    async def poll_server(self, server_id: str, session: AsyncSession) -> Optional[Match]:
        """Query one server; no answer within the timeout counts as offline"""
        try:
            report = await self.status_service.get_status(server_id)
        except ServerOffline as e:
            LOG.warning(f"Server {server_id} offline: {e}")
            report = ServerReport(server_id=server_id, online=False)
        return await self.handle_server_report(report, session)

    async def claimed_server_ids(self, session: AsyncSession) -> List[str]:
        return [s.id for s in await self.pool.claimed_servers(session)]

    # Operator actions

    async def abort_match(self, slug: str, reason: str, session: AsyncSession) -> Match:
        """Cancel a match that has not completed; the server is released and nobody is rated"""
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if match.status == MatchStatus.CANCELLED:
                return match
            if match.status == MatchStatus.COMPLETED:
                raise MatchServiceError(f"Match {slug} is already completed")
            MatchLifecycle(match).transition("cancel", reason)
            session.add(match)
            await self._release_server(match, session)
            await session.commit()
            await session.refresh(match)
            LOG.info(f"Match {slug} aborted: {reason}")
            return match

    async def reassign_server(self, slug: str, session: AsyncSession) -> Match:
        """Move a failed match to another server and load it there"""
        async with self.locks.for_match(slug):
            match = await self._require(slug, session)
            if match.status != MatchStatus.ERROR:
                raise MatchServiceError(f"Only matches in error can be reassigned, {slug} is {match.status}")

            old_server = match.server_id
            await self._release_server(match, session)
            match.server_id = None
            session.add(match)
            try:
                await self._load(match, session, exclude=[old_server] if old_server else None)
            except ServerServiceError:
                await session.commit()
                raise
            await session.commit()
            await session.refresh(match)
            LOG.info(f"Match {slug} moved from {old_server} to {match.server_id}")
            return match


def create_match_service(status_service: ServerStatusService, **kwargs) -> MatchService:
    return MatchService(status_service, **kwargs)
