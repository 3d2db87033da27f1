from typing import Dict, List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, desc
from sqlalchemy import delete, update
from datetime import datetime
import uuid
import logging

from competitions.bracket.strategies import (
    Advancement,
    BracketOptions,
    Entrant,
    MatchRecord,
    MatchSkeleton,
    get_generation_strategy,
)
from competitions.bracket.validators import BracketValidator
from competitions.models.tournaments import Tournament, TournamentParticipant, TournamentStatus
from matches.models import MapResult, Match, MatchEvent, MatchStatus, PlayerMatchStat
from ratings.models import RatingHistory, RatingTemplate
from servers.models import GameServer
from teams.service import TeamService
from .schemas import (
    BracketMatch,
    BracketView,
    PlayerStanding,
    RoundStatus,
    TournamentCreate,
    TournamentResponse,
    TournamentTeam,
    TournamentUpdate,
)
from .standings import StandingsCalculator

LOG = logging.getLogger(__name__)


class TournamentServiceError(Exception):
    """Base exception for tournament service errors"""
    pass


class TournamentService:
    def __init__(self, team_service: Optional[TeamService] = None):
        self.team_service = team_service or TeamService()
        self.standings = StandingsCalculator()

    async def get_tournament(self, tournament_id: uuid.UUID, session: AsyncSession) -> Optional[Tournament]:
        """Retrieve a tournament by ID"""
        return await session.get(Tournament, tournament_id)

    async def list_tournaments(self, session: AsyncSession) -> List[Tournament]:
        stmt = select(Tournament).order_by(desc(Tournament.created_at))
        return (await session.execute(stmt)).scalars().all()

    async def get_active_tournament(self, session: AsyncSession) -> Optional[Tournament]:
        """The single tournament that is not completed, if any"""
        stmt = (
            select(Tournament)
            .where(Tournament.status != TournamentStatus.COMPLETED)
            .order_by(desc(Tournament.created_at))
        )
        return (await session.execute(stmt)).scalars().first()

    async def _require(self, tournament_id: uuid.UUID, session: AsyncSession) -> Tournament:
        tournament = await self.get_tournament(tournament_id, session)
        if not tournament:
            raise TournamentServiceError(f"Tournament {tournament_id} not found")
        return tournament

    async def _check_template(self, template_id: Optional[str], session: AsyncSession):
        if template_id is not None and not await session.get(RatingTemplate, template_id):
            raise TournamentServiceError(f"Rating template '{template_id}' not found")

    async def create_tournament(self, data: TournamentCreate, session: AsyncSession) -> Tournament:
        """Create a tournament in setup with its participants seeded in the given order"""
        active = await self.get_active_tournament(session)
        if active:
            raise TournamentServiceError(f"Tournament '{active.name}' is still active")

        BracketValidator.validate_participants(data.team_ids)
        BracketValidator.validate_map_pool(data.maps, data.format)
        BracketValidator.validate_swiss_rounds(data.swiss_rounds, len(data.team_ids))
        await self._check_template(data.rating_template_id, session)

        teams = await self.team_service.get_teams_by_ids(data.team_ids, session)
        missing = [str(t) for t in data.team_ids if t not in teams]
        if missing:
            raise TournamentServiceError(f"Unknown teams: {missing}")

        tournament = Tournament(
            **data.model_dump(exclude={"team_ids"}),
            status=TournamentStatus.SETUP,
        )
        session.add(tournament)
        await session.flush()
        for seed, team_id in enumerate(data.team_ids, start=1):
            session.add(TournamentParticipant(tournament_id=tournament.id, team_id=team_id, seed=seed))
        await session.commit()
        await session.refresh(tournament)
        LOG.info(f"Created {tournament.type} tournament {tournament.name} with {len(data.team_ids)} teams")
        return tournament

    async def update_tournament(
        self,
        tournament_id: uuid.UUID,
        data: TournamentUpdate,
        session: AsyncSession
    ) -> Tournament:
        tournament = await self._require(tournament_id, session)
        if tournament.status != TournamentStatus.SETUP:
            raise TournamentServiceError("Tournament can only be changed before it starts")

        changes = data.model_dump(exclude_unset=True)
        if "rating_template_id" in changes:
            await self._check_template(changes["rating_template_id"], session)
        BracketValidator.validate_map_pool(
            changes.get("maps", tournament.maps), changes.get("format", tournament.format)
        )
        for key, value in changes.items():
            setattr(tournament, key, value)
        session.add(tournament)
        await session.commit()
        await session.refresh(tournament)
        return tournament

    async def get_participants(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[TournamentParticipant]:
        stmt = (
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(TournamentParticipant.seed)
        )
        return (await session.execute(stmt)).scalars().all()

    async def get_matches(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[Match]:
        stmt = (
            select(Match)
            .where(Match.tournament_id == tournament_id)
            .order_by(Match.round, Match.bracket, Match.match_number)
        )
        return (await session.execute(stmt)).scalars().all()

    async def _entrants(self, tournament: Tournament, session: AsyncSession) -> List[Entrant]:
        participants = await self.get_participants(tournament.id, session)
        team_ids = [p.team_id for p in participants]
        teams = await self.team_service.get_teams_by_ids(team_ids, session)
        ratings = await self.team_service.get_team_ratings(team_ids, session)
        return [
            Entrant(id=p.team_id, name=teams[p.team_id].name, seed=p.seed, rating=ratings.get(p.team_id, 0.0))
            for p in participants
        ]

    def _options(self, tournament: Tournament) -> BracketOptions:
        return BracketOptions(
            seeding_method=tournament.seeding_method,
            random_seed=tournament.random_seed,
            swiss_rounds=tournament.swiss_rounds,
        )

    async def _persist(
        self,
        tournament: Tournament,
        skeletons: List[MatchSkeleton],
        existing: Dict[str, Match],
        session: AsyncSession
    ) -> List[Match]:
        """Insert match skeletons, then resolve their slug pointers to ids"""
        created: Dict[str, Match] = {}
        now = datetime.now()
        for skeleton in skeletons:
            match = Match(
                tournament_id=tournament.id,
                slug=skeleton.slug,
                round=skeleton.round,
                match_number=skeleton.match_number,
                bracket=skeleton.bracket,
                format=tournament.format,
                team1_id=skeleton.team1_id,
                team2_id=skeleton.team2_id,
                next_match_slot=skeleton.next_match_slot,
                loser_next_match_slot=skeleton.loser_next_match_slot,
                is_bye=skeleton.is_bye,
            )
            if skeleton.is_bye:
                match.winner_id = skeleton.winner_id
                match.status = MatchStatus.COMPLETED
                match.completed_at = now
            session.add(match)
            created[skeleton.slug] = match
        await session.flush()

        by_slug = {**existing, **created}
        for skeleton in skeletons:
            match = created[skeleton.slug]
            if skeleton.next_match_slug:
                match.next_match_id = by_slug[skeleton.next_match_slug].id
            if skeleton.loser_next_match_slug:
                match.loser_next_match_id = by_slug[skeleton.loser_next_match_slug].id
            session.add(match)
        await session.flush()
        return list(created.values())

    async def start_tournament(self, tournament_id: uuid.UUID, session: AsyncSession) -> Tournament:
        """Generate the bracket and move the tournament into progress"""
        tournament = await self._require(tournament_id, session)
        if tournament.status != TournamentStatus.SETUP:
            raise TournamentServiceError(f"Tournament is {tournament.status}, not in setup")

        entrants = await self._entrants(tournament, session)
        strategy = get_generation_strategy(tournament.type)
        plan = strategy.generate(entrants, tournament.format, tournament.maps, self._options(tournament))
        matches = await self._persist(tournament, plan.matches, {}, session)

        tournament.status = TournamentStatus.IN_PROGRESS
        tournament.started_at = datetime.now()
        session.add(tournament)
        await session.commit()
        await session.refresh(tournament)
        LOG.info(f"Started tournament {tournament.name}: {len(matches)} matches, {plan.total_rounds} rounds")
        return tournament

    def _records(self, matches: List[Match]) -> List[MatchRecord]:
        slugs = {m.id: m.slug for m in matches}
        return [
            MatchRecord(
                slug=m.slug,
                round=m.round,
                bracket=m.bracket,
                team1_id=m.team1_id,
                team2_id=m.team2_id,
                winner_id=m.winner_id,
                completed=m.status == MatchStatus.COMPLETED,
                is_bye=m.is_bye,
                next_match_slug=slugs.get(m.next_match_id),
                next_match_slot=m.next_match_slot,
                loser_next_match_slug=slugs.get(m.loser_next_match_id),
                loser_next_match_slot=m.loser_next_match_slot,
            )
            for m in matches
        ]

    async def advance(self, match: Match, session: AsyncSession) -> Advancement:
        """Feed a completed match's result into the bracket.

        Re-running it for the same match places nothing twice and creates no
        duplicate matches. The caller holds the tournament lock and commits.
        """
        tournament = await self._require(match.tournament_id, session)
        if tournament.status == TournamentStatus.COMPLETED:
            LOG.info(f"Tournament {tournament.name} already completed, nothing to advance")
            return Advancement(tournament_complete=True)

        matches = await self.get_matches(tournament.id, session)
        records = self._records(matches)
        completed = next(r for r in records if r.slug == match.slug)
        strategy = get_generation_strategy(tournament.type)
        result = strategy.advance(
            await self._entrants(tournament, session), records, completed, self._options(tournament)
        )

        by_slug = {m.slug: m for m in matches}
        for placement in result.placements:
            target = by_slug[placement.match_slug]
            slot_attr = f"team{placement.slot}_id"
            current = getattr(target, slot_attr)
            if current == placement.team_id:
                continue
            if current is not None:
                LOG.warning(
                    f"Slot {placement.slot} of {target.slug} already holds {current}, not placing {placement.team_id}"
                )
                continue
            setattr(target, slot_attr, placement.team_id)
            session.add(target)
            LOG.info(f"Placed {placement.team_id} into {target.slug} slot {placement.slot}")

        new_matches = [s for s in result.new_matches if s.slug not in by_slug]
        if new_matches:
            await self._persist(tournament, new_matches, by_slug, session)
            LOG.info(f"Created {len(new_matches)} matches in {tournament.name}")

        if result.tournament_complete:
            tournament.status = TournamentStatus.COMPLETED
            tournament.completed_at = datetime.now()
            session.add(tournament)
            LOG.info(f"Tournament {tournament.name} completed")

        await session.flush()
        return result

    async def complete_tournament(self, tournament_id: uuid.UUID, session: AsyncSession) -> Tournament:
        tournament = await self._require(tournament_id, session)
        if tournament.status == TournamentStatus.COMPLETED:
            return tournament
        tournament.status = TournamentStatus.COMPLETED
        tournament.completed_at = datetime.now()
        session.add(tournament)
        await session.commit()
        await session.refresh(tournament)
        return tournament

    async def _clear_matches(self, tournament: Tournament, session: AsyncSession):
        """Remove a tournament's matches and everything hanging off them.

        Rating history rows stay, detached from their match.
        """
        matches = await self.get_matches(tournament.id, session)
        match_ids = [m.id for m in matches]
        if not match_ids:
            return

        if tournament.status != TournamentStatus.COMPLETED:
            await session.execute(
                update(GameServer)
                .where(GameServer.current_match_slug.in_([m.slug for m in matches]))
                .values(current_match_slug=None, claimed_at=None)
            )
        await session.execute(
            update(RatingHistory).where(RatingHistory.match_id.in_(match_ids)).values(match_id=None)
        )
        await session.execute(delete(MatchEvent).where(MatchEvent.match_id.in_(match_ids)))
        await session.execute(delete(PlayerMatchStat).where(PlayerMatchStat.match_id.in_(match_ids)))
        await session.execute(delete(MapResult).where(MapResult.match_id.in_(match_ids)))
        await session.execute(
            update(Match).where(Match.id.in_(match_ids)).values(next_match_id=None, loser_next_match_id=None)
        )
        await session.execute(delete(Match).where(Match.id.in_(match_ids)))
        LOG.info(f"Removed {len(match_ids)} matches from {tournament.name}")

    async def reset_tournament(self, tournament_id: uuid.UUID, session: AsyncSession) -> Tournament:
        """Drop the bracket and return the tournament to setup"""
        tournament = await self._require(tournament_id, session)
        await self._clear_matches(tournament, session)
        tournament.status = TournamentStatus.SETUP
        tournament.started_at = None
        tournament.completed_at = None
        session.add(tournament)
        await session.commit()
        await session.refresh(tournament)
        return tournament

    async def delete_tournament(self, tournament_id: uuid.UUID, session: AsyncSession):
        tournament = await self._require(tournament_id, session)
        await self._clear_matches(tournament, session)
        await session.execute(
            delete(TournamentParticipant).where(TournamentParticipant.tournament_id == tournament.id)
        )
        await session.delete(tournament)
        await session.commit()
        LOG.info(f"Deleted tournament {tournament_id}")

    async def get_round_status(self, tournament_id: uuid.UUID, session: AsyncSession) -> RoundStatus:
        """Progress of the earliest round that still has unfinished matches"""
        tournament = await self._require(tournament_id, session)
        matches = await self.get_matches(tournament.id, session)
        if not matches:
            return RoundStatus(
                tournament_id=tournament.id, completed=0, pending=0, total=0, tournament_status=tournament.status
            )

        open_rounds = [m.round for m in matches if not MatchStatus(m.status).is_terminal]
        current = min(open_rounds) if open_rounds else max(m.round for m in matches)
        in_round = [m for m in matches if m.round == current]
        completed = sum(1 for m in in_round if m.status == MatchStatus.COMPLETED)
        return RoundStatus(
            tournament_id=tournament.id,
            round=current,
            completed=completed,
            pending=len(in_round) - completed,
            total=len(in_round),
            tournament_status=tournament.status,
        )

    async def get_bracket_view(self, tournament_id: uuid.UUID, session: AsyncSession) -> BracketView:
        tournament = await self._require(tournament_id, session)
        participants = await self.get_participants(tournament.id, session)
        matches = await self.get_matches(tournament.id, session)

        team_ids = {p.team_id for p in participants}
        for m in matches:
            team_ids.update(t for t in (m.team1_id, m.team2_id) if t is not None)
        teams = await self.team_service.get_teams_by_ids(list(team_ids), session)
        seeds = {p.team_id: p.seed for p in participants}

        def team(team_id) -> Optional[TournamentTeam]:
            if team_id is None or team_id not in teams:
                return None
            return TournamentTeam(id=team_id, name=teams[team_id].name, seed=seeds.get(team_id))

        slugs = {m.id: m.slug for m in matches}
        return BracketView(
            tournament=TournamentResponse.model_validate(tournament),
            teams=[team(p.team_id) for p in participants if p.team_id in teams],
            matches=[
                BracketMatch(
                    id=m.id,
                    slug=m.slug,
                    round=m.round,
                    match_number=m.match_number,
                    bracket=m.bracket,
                    status=m.status,
                    team1=team(m.team1_id),
                    team2=team(m.team2_id),
                    winner_id=m.winner_id,
                    next_match_slug=slugs.get(m.next_match_id),
                    next_match_slot=m.next_match_slot,
                    loser_next_match_slug=slugs.get(m.loser_next_match_id),
                    loser_next_match_slot=m.loser_next_match_slot,
                    server_id=m.server_id,
                    is_bye=m.is_bye,
                )
                for m in matches
            ],
        )

    async def get_standings(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[PlayerStanding]:
        tournament = await self._require(tournament_id, session)
        return await self.standings.calculate_standings(tournament.id, session)


def create_tournament_service(team_service: Optional[TeamService] = None) -> TournamentService:
    return TournamentService(team_service)
