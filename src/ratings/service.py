from typing import Dict, List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, desc
import uuid
import logging

from matches.models import Match, PlayerMatchStat
from players.models import Player
from teams.models import TeamMember
from .engine import PlayerSkill, RatingComputationFailed, RatingEngine
from .models import MatchResult, RatingHistory, RatingTemplate
from .schemas import StatTotals
from .templates import compute_stat_adjustment

LOG = logging.getLogger(__name__)

STAT_FIELDS = list(StatTotals.model_fields)


class RatingServiceError(Exception):
    """Base exception for rating service errors"""
    pass


class RatingService:
    def __init__(self, engine: Optional[RatingEngine] = None):
        self.engine = engine or RatingEngine()

    async def get_match_history(self, match_id: uuid.UUID, session: AsyncSession) -> List[RatingHistory]:
        stmt = select(RatingHistory).where(RatingHistory.match_id == match_id).order_by(RatingHistory.player_id)
        return (await session.execute(stmt)).scalars().all()

    async def get_player_history(self, player_id: str, session: AsyncSession) -> List[RatingHistory]:
        stmt = (
            select(RatingHistory)
            .where(RatingHistory.player_id == player_id)
            .order_by(desc(RatingHistory.created_at))
        )
        return (await session.execute(stmt)).scalars().all()

    async def _roster(self, team_id: uuid.UUID, session: AsyncSession) -> List[Player]:
        stmt = (
            select(Player)
            .join(TeamMember, TeamMember.player_id == Player.id)
            .where(TeamMember.team_id == team_id)
            .order_by(Player.id)
        )
        return (await session.execute(stmt)).scalars().all()

    async def _stat_totals(self, match_id: uuid.UUID, session: AsyncSession) -> Dict[str, StatTotals]:
        stmt = select(PlayerMatchStat).where(PlayerMatchStat.match_id == match_id)
        totals: Dict[str, Dict[str, int]] = {}
        for line in (await session.execute(stmt)).scalars().all():
            bucket = totals.setdefault(line.player_id, {f: 0 for f in STAT_FIELDS})
            for f in STAT_FIELDS:
                bucket[f] += getattr(line, f) or 0
        return {player_id: StatTotals(**values) for player_id, values in totals.items()}

    async def rate_match(
        self,
        match: Match,
        session: AsyncSession,
        template: Optional[RatingTemplate] = None,
    ) -> List[RatingHistory]:
        """Update every player's rating for a completed match.

        Idempotent per (player, match): when history already exists for the
        match the stored rows are returned untouched. Adds rows to the
        session; the caller commits.
        """
        existing = await self.get_match_history(match.id, session)
        if existing:
            LOG.info(f"Ratings for {match.slug} already applied, skipping")
            return existing

        if match.winner_id is None or match.team1_id is None or match.team2_id is None:
            raise RatingServiceError(f"Match {match.slug} has no result to rate")

        team1 = await self._roster(match.team1_id, session)
        team2 = await self._roster(match.team2_id, session)
        if not team1 or not team2:
            raise RatingServiceError(f"Match {match.slug} has a team without players")

        def skills(players: List[Player]) -> List[PlayerSkill]:
            return [PlayerSkill(player_id=p.id, mu=p.mu, sigma=p.sigma, elo=p.current_elo) for p in players]

        players = {p.id: p for p in team1 + team2}
        updates = self.engine.rate(skills(team1), skills(team2), team1_won=match.winner_id == match.team1_id)

        active_template = template if template is not None and template.enabled else None
        stats = await self._stat_totals(match.id, session) if active_template else {}

        rows = []
        for update in updates:
            adjustment = 0
            template_id = None
            if active_template and update.player_id in stats:
                try:
                    adjustment = compute_stat_adjustment(active_template, stats[update.player_id])
                    template_id = active_template.id
                except RatingComputationFailed as e:
                    LOG.warning(f"Stat adjustment failed for {update.player_id} in {match.slug}, using base delta: {e}")

            elo_after = self.engine.apply_adjustment(update, adjustment)
            row = RatingHistory(
                player_id=update.player_id,
                match_id=match.id,
                match_slug=match.slug,
                tournament_id=match.tournament_id,
                match_result=MatchResult.WIN if update.won else MatchResult.LOSS,
                elo_before=update.elo_before,
                elo_after=elo_after,
                base_delta=update.base_delta,
                stat_adjustment=elo_after - update.elo_after,
                template_id=template_id,
                mu_before=update.mu_before,
                mu_after=update.mu_after,
                sigma_before=update.sigma_before,
                sigma_after=update.sigma_after,
            )
            session.add(row)
            rows.append(row)

            player = players[update.player_id]
            player.current_elo = elo_after
            player.mu = update.mu_after
            player.sigma = update.sigma_after
            player.match_count += 1
            session.add(player)

        await session.flush()
        LOG.info(f"Rated {len(rows)} players for {match.slug}")
        return rows


def create_rating_service() -> RatingService:
    return RatingService()
