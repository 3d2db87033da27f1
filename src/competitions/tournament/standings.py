# competitions/tournament/standings.py
from typing import Dict, List
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
import uuid

from competitions.models.tournaments import TournamentParticipant
from players.models import Player
from ratings.models import MatchResult, RatingHistory
from teams.models import TeamMember
from .schemas import PlayerStanding


class StandingsCalculator:
    """Per-player standings for one tournament, built from rating history"""

    async def _participant_players(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[Player]:
        stmt = (
            select(Player)
            .join(TeamMember, TeamMember.player_id == Player.id)
            .join(TournamentParticipant, TournamentParticipant.team_id == TeamMember.team_id)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .distinct()
        )
        return (await session.execute(stmt)).scalars().all()

    async def _history(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[RatingHistory]:
        stmt = (
            select(RatingHistory)
            .where(RatingHistory.tournament_id == tournament_id)
            .order_by(RatingHistory.created_at)
        )
        return (await session.execute(stmt)).scalars().all()

    async def calculate_standings(self, tournament_id: uuid.UUID, session: AsyncSession) -> List[PlayerStanding]:
        """Wins, losses and rating change per player; rating descending, name tie-break"""
        players: Dict[str, Player] = {p.id: p for p in await self._participant_players(tournament_id, session)}
        stats: Dict[str, Dict[str, int]] = {
            player_id: {"wins": 0, "losses": 0, "elo_change": 0} for player_id in players
        }

        for row in await self._history(tournament_id, session):
            if row.player_id not in players:
                # Player left the roster after playing
                player = await session.get(Player, row.player_id)
                if player is None:
                    continue
                players[player.id] = player
                stats[player.id] = {"wins": 0, "losses": 0, "elo_change": 0}
            entry = stats[row.player_id]
            if row.match_result == MatchResult.WIN:
                entry["wins"] += 1
            else:
                entry["losses"] += 1
            entry["elo_change"] += row.elo_change

        standings = []
        for player_id, entry in stats.items():
            player = players[player_id]
            played = entry["wins"] + entry["losses"]
            standings.append(PlayerStanding(
                player_id=player.id,
                name=player.name,
                wins=entry["wins"],
                losses=entry["losses"],
                win_rate=round(entry["wins"] / played, 4) if played else 0.0,
                current_elo=player.current_elo,
                elo_change=entry["elo_change"],
            ))

        standings.sort(key=lambda s: (-s.current_elo, s.name))
        return standings
