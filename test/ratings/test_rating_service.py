# test/ratings/test_rating_service.py
import pytest
from sqlmodel import select

from matches.models import Match, MatchStatus, PlayerMatchStat
from players.models import Player
from ratings.models import MatchResult, RatingHistory, RatingTemplate
from ratings.service import RatingService, RatingServiceError


async def decided_match(builder, session, team_size: int = 2, winner_slot: int = 1) -> Match:
    teams = await builder.create_teams(2, size=team_size)
    tournament = await builder.create_tournament(teams, start=True)
    match = (await session.execute(
        select(Match).where(Match.tournament_id == tournament.id)
    )).scalars().one()
    match.status = MatchStatus.COMPLETED
    match.winner_id = match.team1_id if winner_slot == 1 else match.team2_id
    session.add(match)
    await session.commit()
    return match


@pytest.mark.asyncio
class TestRatingService:
    async def test_rates_every_player(self, builder, session):
        match = await decided_match(builder, session)
        rows = await RatingService().rate_match(match, session)
        await session.commit()

        assert len(rows) == 4
        winners = [r for r in rows if r.match_result == MatchResult.WIN]
        losers = [r for r in rows if r.match_result == MatchResult.LOSS]
        assert len(winners) == len(losers) == 2
        assert all(r.elo_after > r.elo_before for r in winners)
        assert all(r.elo_after < r.elo_before for r in losers)
        assert all(r.stat_adjustment == 0 and r.template_id is None for r in rows)

        for row in rows:
            player = await session.get(Player, row.player_id)
            assert player.current_elo == row.elo_after
            assert player.mu == pytest.approx(row.mu_after)
            assert player.match_count == 1

    async def test_rating_twice_changes_nothing(self, builder, session):
        match = await decided_match(builder, session)
        service = RatingService()
        first = await service.rate_match(match, session)
        await session.commit()
        elos = {r.player_id: r.elo_after for r in first}

        second = await service.rate_match(match, session)
        await session.commit()

        assert sorted(r.id for r in second) == sorted(r.id for r in first)
        history = (await session.execute(
            select(RatingHistory).where(RatingHistory.match_id == match.id)
        )).scalars().all()
        assert len(history) == 4
        for player_id, elo in elos.items():
            assert (await session.get(Player, player_id)).current_elo == elo

    async def test_undecided_match_rejected(self, builder, session):
        match = await decided_match(builder, session)
        match.winner_id = None
        with pytest.raises(RatingServiceError):
            await RatingService().rate_match(match, session)

    async def test_template_adjusts_from_stats(self, builder, session):
        match = await decided_match(builder, session, team_size=1)
        template = RatingTemplate(
            id="kills", name="Kills", enabled=True, weights={"kills": 1}, min_adjustment=-5, max_adjustment=5
        )
        session.add(template)
        session.add(PlayerMatchStat(
            match_id=match.id,
            map_number=1,
            player_id=(await builder.session.execute(
                select(Player.id).order_by(Player.id)
            )).scalars().first(),
            kills=30,
        ))
        await session.commit()

        rows = await RatingService().rate_match(match, session, template)
        adjusted = [r for r in rows if r.template_id == "kills"]
        assert len(adjusted) == 1
        row = adjusted[0]
        assert row.stat_adjustment == 5
        assert row.elo_after == row.elo_before + row.base_delta + 5

    async def test_disabled_template_ignored(self, builder, session):
        match = await decided_match(builder, session, team_size=1)
        template = RatingTemplate(id="off", name="Off", enabled=False, weights={"kills": 1})
        session.add(template)
        await session.commit()

        rows = await RatingService().rate_match(match, session, template)
        assert all(r.template_id is None and r.stat_adjustment == 0 for r in rows)

    async def test_history_queries(self, builder, session):
        match = await decided_match(builder, session, team_size=1)
        service = RatingService()
        rows = await service.rate_match(match, session)
        await session.commit()

        assert len(await service.get_match_history(match.id, session)) == 2
        player_history = await service.get_player_history(rows[0].player_id, session)
        assert [h.match_slug for h in player_history] == [match.slug]
