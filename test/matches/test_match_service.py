# test/matches/test_match_service.py
import pytest
from sqlmodel import select

from competitions.models.tournaments import Tournament, TournamentStatus
from matches.models import MapResult, Match, MatchEvent, MatchStatus, PlayerMatchStat
from matches.service import MatchNotFound, MatchServiceError
from matches.veto.commands import VetoStatus
from matches.veto.state_machine import InvalidVetoAction
from ratings.models import RatingHistory, RatingTemplate
from servers.models import GameServer
from servers.service import ServerUnavailable
from teams.service import TeamService

SINGLE_MAP = ["de_dust2"]


async def roster_ids(session, team_id):
    return [p.id for p in await TeamService().get_roster(team_id, session)]


async def play_bo1(match_service, session, slug: str, winner_slot: int = 1, stats=None) -> Match:
    """Drive a loaded bo1 through the server webhooks"""
    await match_service.ingest_event(slug, {"event": "going_live", "map_number": 1}, session)
    team1_score, team2_score = (13, 7) if winner_slot == 1 else (7, 13)
    await match_service.ingest_event(slug, {
        "event": "map_result",
        "map_number": 1,
        "team1_score": team1_score,
        "team2_score": team2_score,
        "player_stats": stats or [],
    }, session)
    return await match_service.ingest_event(slug, {
        "event": "series_end",
        "team1_series_score": 1 if winner_slot == 1 else 0,
        "team2_series_score": 0 if winner_slot == 1 else 1,
    }, session)


@pytest.mark.asyncio
class TestAllocation:
    async def test_allocate_claims_server_and_starts_veto(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")

        allocated = await match_service.allocate_pending_matches(session)

        assert [m.slug for m in allocated] == ["r1m1"]
        match = allocated[0]
        assert match.server_id == "srv-1"
        assert match.status == MatchStatus.VETO
        assert match.veto_state["status"] == VetoStatus.IN_PROGRESS.value
        assert (await session.get(GameServer, "srv-1")).current_match_slug == "r1m1"

    async def test_pool_exhaustion_leaves_matches_pending(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        tournament = await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")

        allocated = await match_service.allocate_pending_matches(session)
        assert [m.slug for m in allocated] == ["r1m1"]

        waiting = await match_service.get_match_by_slug("r1m2", session)
        assert waiting.status == MatchStatus.PENDING
        assert waiting.server_id is None
        assert await match_service.list_matches(session, tournament_id=tournament.id, status=MatchStatus.VETO) == allocated

    async def test_matches_without_teams_wait(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        await builder.create_tournament(teams, start=True)
        for server_id in ("srv-1", "srv-2", "srv-3"):
            await builder.create_server(server_id)

        allocated = await match_service.allocate_pending_matches(session)
        assert sorted(m.slug for m in allocated) == ["r1m1", "r1m2"]
        assert (await session.get(GameServer, "srv-3")).current_match_slug is None

    async def test_nothing_to_allocate_without_running_tournament(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams)
        await builder.create_server("srv-1")
        assert await match_service.allocate_pending_matches(session) == []

    async def test_single_map_pool_loads_straight_away(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")

        match = (await match_service.allocate_pending_matches(session))[0]

        assert match.status == MatchStatus.LOADING
        assert match.loaded_at is not None
        sent = fake_client.commands["srv-1"]
        assert any(c.startswith("matchzy_remote_log_url") and "/events/r1m1" in c for c in sent)
        assert sent[-1].startswith("matchzy_loadmatch_url") and "/matches/r1m1/config" in sent[-1]

    async def test_assign_without_servers_fails_match(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)

        with pytest.raises(ServerUnavailable):
            await match_service.assign_server("r1m1", session)

        match = await match_service.get_match_by_slug("r1m1", session)
        assert match.status == MatchStatus.ERROR
        assert match.error_reason

    async def test_load_failure_keeps_claim(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        fake_client.offline.add("srv-1")

        match = (await match_service.allocate_pending_matches(session))[0]

        assert match.status == MatchStatus.ERROR
        assert match.server_id == "srv-1"
        assert (await session.get(GameServer, "srv-1")).current_match_slug == "r1m1"

    async def test_start_allocates_ready_matches(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        tournament = await builder.create_tournament(teams, maps=SINGLE_MAP)
        await builder.create_server("srv-1")

        started = await match_service.start_tournament(tournament.id, session)

        assert started.status == TournamentStatus.IN_PROGRESS
        first = await match_service.get_match_by_slug("r1m1", session)
        assert (first.status, first.server_id) == (MatchStatus.LOADING, "srv-1")
        assert (await match_service.get_match_by_slug("r1m2", session)).status == MatchStatus.PENDING

    async def test_completion_hands_server_to_waiting_match(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        await play_bo1(match_service, session, "r1m1")

        waiting = await match_service.get_match_by_slug("r1m2", session)
        assert waiting.status == MatchStatus.LOADING
        assert waiting.server_id == "srv-1"
        assert (await session.get(GameServer, "srv-1")).current_match_slug == "r1m2"

    async def test_unknown_slug(self, session, match_service):
        with pytest.raises(MatchNotFound):
            await match_service.start_veto("r9m9", session)


@pytest.mark.asyncio
class TestVetoFlow:
    async def test_veto_completion_loads_match(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        tournament = await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        maps = list(tournament.maps)
        for step, map_name in enumerate(maps[:-1]):
            veto = await match_service.apply_veto_action(
                "r1m1", {"cmd": "ban", "team": 1 if step % 2 == 0 else 2, "map_name": map_name}, session
            )

        assert veto.status == VetoStatus.COMPLETED
        assert [m.map_name for m in veto.map_list()] == [maps[-1]]
        match = await match_service.get_match_by_slug("r1m1", session)
        assert match.status == MatchStatus.LOADING
        assert "srv-1" in fake_client.commands

        config = await match_service.get_match_config("r1m1", session)
        assert config["matchid"] == "r1m1"
        assert config["maplist"] == [maps[-1]]
        assert config["map_sides"] == ["knife"]
        assert config["team1"]["name"] == teams[0].name
        assert set(config["team1"]["players"]) == set(await roster_ids(session, teams[0].id))

    async def test_rejected_veto_command(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        with pytest.raises(InvalidVetoAction):
            await match_service.apply_veto_action("r1m1", {"cmd": "ban", "team": 2, "map_name": "de_nuke"}, session)

        state = await match_service.get_veto_state("r1m1", session)
        assert state.current_step == 0
        assert state.current_turn == 1

    async def test_veto_only_on_pending_match(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        with pytest.raises(MatchServiceError):
            await match_service.start_veto("r1m1", session)

    async def test_manual_veto_start_waits_for_teams(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        await builder.create_tournament(teams, start=True)

        with pytest.raises(MatchServiceError, match="waiting for its teams"):
            await match_service.start_veto("r2m1", session)

        match = await match_service.start_veto("r1m1", session, first_team=2)
        assert match.status == MatchStatus.VETO
        assert (await match_service.get_veto_state("r1m1", session)).current_turn == 2

    async def test_load_requires_finished_veto(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        with pytest.raises(MatchServiceError, match="not finished"):
            await match_service.load_match("r1m1", session)


@pytest.mark.asyncio
class TestMatchEvents:
    async def test_full_bo1_flow(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2, size=2)
        tournament = await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        team1_players = await roster_ids(session, teams[0].id)
        stats = [{"player_id": pid, "team_slot": 1, "kills": 20, "deaths": 10} for pid in team1_players]
        stats.append({"player_id": "76561190000000000", "team_slot": 2, "kills": 1})
        match = await play_bo1(match_service, session, "r1m1", winner_slot=1, stats=stats)

        assert match.status == MatchStatus.COMPLETED
        assert match.winner_id == teams[0].id
        assert match.completed_at is not None

        results = (await session.execute(select(MapResult).where(MapResult.match_id == match.id))).scalars().all()
        assert [(r.map_name, r.team1_score, r.team2_score, r.winner_id) for r in results] == [
            ("de_dust2", 13, 7, teams[0].id)
        ]
        recorded = (await session.execute(
            select(PlayerMatchStat).where(PlayerMatchStat.match_id == match.id)
        )).scalars().all()
        assert sorted(s.player_id for s in recorded) == sorted(team1_players)

        history = (await session.execute(
            select(RatingHistory).where(RatingHistory.match_id == match.id)
        )).scalars().all()
        assert len(history) == 4

        server = await session.get(GameServer, "srv-1")
        assert server.current_match_slug is None
        assert fake_client.commands["srv-1"][-1] == 'matchzy_remote_log_header_value ""'

        assert (await session.get(Tournament, tournament.id)).status == TournamentStatus.COMPLETED

        events = (await session.execute(select(MatchEvent).where(MatchEvent.match_slug == "r1m1"))).scalars().all()
        assert sorted(e.event_type for e in events) == ["going_live", "map_result", "series_end"]
        assert all(e.match_id == match.id for e in events)

    async def test_duplicate_series_end_absorbed(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)
        await play_bo1(match_service, session, "r1m1")

        again = await match_service.ingest_event(
            "r1m1", {"event": "series_end", "team1_series_score": 1, "team2_series_score": 0}, session
        )
        assert again.status == MatchStatus.COMPLETED
        history = (await session.execute(select(RatingHistory))).scalars().all()
        assert len(history) == 2

    async def test_duplicate_map_result_recorded_once(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        payload = {"event": "map_result", "map_number": 1, "team1_score": 13, "team2_score": 3}
        await match_service.ingest_event("r1m1", payload, session)
        await match_service.ingest_event("r1m1", payload, session)

        results = (await session.execute(select(MapResult))).scalars().all()
        assert len(results) == 1

    async def test_stale_event_discarded(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        await match_service.ingest_event("r1m1", {"event": "going_live", "timestamp": 200}, session)
        match = await match_service.ingest_event(
            "r1m1", {"event": "server_status", "status": "warmup", "timestamp": 150}, session
        )

        assert match.status == MatchStatus.LIVE
        assert match.server_updated_at == 200

    async def test_going_live_outside_play_keeps_map_index(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        match = await match_service.ingest_event("r1m1", {"event": "going_live", "map_number": 3}, session)
        assert match.status == MatchStatus.VETO
        assert match.current_map_index == 0

    async def test_going_live_after_completion_keeps_map_index(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)
        await play_bo1(match_service, session, "r1m1")

        match = await match_service.ingest_event("r1m1", {"event": "going_live", "map_number": 2}, session)
        assert match.status == MatchStatus.COMPLETED
        assert match.current_map_index == 1

    async def test_postgame_without_enough_maps_waits(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        match = await match_service.ingest_event(
            "r1m1", {"event": "series_end", "team1_series_score": 1, "team2_series_score": 0}, session
        )
        assert match.status == MatchStatus.POSTGAME
        assert match.winner_id is None

    async def test_unknown_slug_event_still_logged(self, session, match_service):
        with pytest.raises(MatchNotFound):
            await match_service.ingest_event("r7m7", {"event": "going_live"}, session)

        events = (await session.execute(select(MatchEvent))).scalars().all()
        assert [(e.match_slug, e.match_id) for e in events] == [("r7m7", None)]

    async def test_malformed_event_logged_then_rejected(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        with pytest.raises(MatchServiceError, match="Invalid event"):
            await match_service.ingest_event("r1m1", {"event": "map_result", "map_number": 1}, session)

        events = (await session.execute(select(MatchEvent))).scalars().all()
        assert len(events) == 1

    async def test_bracket_advances_through_events(self, builder, session, match_service):
        teams = await builder.create_teams(4)
        tournament = await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await builder.create_server("srv-2")

        assert len(await match_service.allocate_pending_matches(session)) == 2
        await play_bo1(match_service, session, "r1m1", winner_slot=1)
        await play_bo1(match_service, session, "r1m2", winner_slot=2)

        final = await match_service.get_match_by_slug("r2m1", session)
        assert (final.team1_id, final.team2_id) == (teams[0].id, teams[2].id)

        assert final.status == MatchStatus.LOADING
        assert final.server_id == "srv-1"
        assert await match_service.allocate_pending_matches(session) == []
        final = await play_bo1(match_service, session, "r2m1", winner_slot=2)
        assert final.winner_id == teams[2].id
        assert (await session.get(Tournament, tournament.id)).status == TournamentStatus.COMPLETED

    async def test_rating_template_applied_on_completion(self, builder, session, match_service):
        session.add(RatingTemplate(
            id="frags", name="Frags", enabled=True, weights={"kills": 1}, min_adjustment=-3, max_adjustment=3
        ))
        await session.commit()
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True, rating_template_id="frags")
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        winner = (await roster_ids(session, teams[0].id))[0]
        await play_bo1(match_service, session, "r1m1", stats=[{"player_id": winner, "team_slot": 1, "kills": 25}])

        row = (await session.execute(
            select(RatingHistory).where(RatingHistory.player_id == winner)
        )).scalars().one()
        assert row.template_id == "frags"
        assert row.stat_adjustment == 3


@pytest.mark.asyncio
class TestServerReports:
    async def test_poll_follows_server_status(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.set_status("srv-1", "warmup", "r1m1", updated_at=100)
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.WARMUP

        fake_client.set_status("srv-1", "live", "r1m1", updated_at=90)
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.WARMUP

        server = await session.get(GameServer, "srv-1")
        assert server.online
        assert server.last_seen_at is not None
        assert await match_service.claimed_server_ids(session) == ["srv-1"]

    async def test_report_for_other_match_ignored(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.set_status("srv-1", "live", "r5m5")
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.LOADING

    async def test_unclaimed_server_only_recorded(self, builder, session, match_service, fake_client):
        await builder.create_server("srv-1")
        fake_client.set_status("srv-1", "idle")
        assert await match_service.poll_server("srv-1", session) is None
        assert (await session.get(GameServer, "srv-1")).last_status == "idle"

    async def test_offline_server_fails_match_then_recovers(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.offline.add("srv-1")
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.ERROR
        assert "offline" in match.error_reason
        assert not (await session.get(GameServer, "srv-1")).online

        fake_client.offline.clear()
        fake_client.set_status("srv-1", "live", "r1m1", updated_at=300)
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.LIVE

    async def test_slow_server_counts_as_offline(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.delay = 2
        match = await match_service.poll_server("srv-1", session)
        assert match.status == MatchStatus.ERROR

    async def test_unknown_server(self, session, match_service):
        with pytest.raises(MatchServiceError):
            await match_service.poll_server("srv-404", session)


@pytest.mark.asyncio
class TestOperatorActions:
    async def test_abort_releases_server_and_never_rates(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)
        await match_service.ingest_event("r1m1", {"event": "going_live"}, session)

        match = await match_service.abort_match("r1m1", "no show", session)

        assert match.status == MatchStatus.CANCELLED
        assert match.error_reason == "no show"
        assert (await session.get(GameServer, "srv-1")).current_match_slug is None
        assert (await session.execute(select(RatingHistory))).scalars().all() == []

        again = await match_service.abort_match("r1m1", "no show", session)
        assert again.status == MatchStatus.CANCELLED

    async def test_abort_completed_match_rejected(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)
        await play_bo1(match_service, session, "r1m1")

        with pytest.raises(MatchServiceError):
            await match_service.abort_match("r1m1", "too late", session)

    async def test_reassign_moves_to_another_server(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await builder.create_server("srv-2")
        await match_service.allocate_pending_matches(session)

        fake_client.offline.add("srv-1")
        await match_service.poll_server("srv-1", session)

        match = await match_service.reassign_server("r1m1", session)

        assert match.server_id == "srv-2"
        assert match.status == MatchStatus.LOADING
        assert match.error_reason is None
        assert (await session.get(GameServer, "srv-1")).current_match_slug is None
        assert (await session.get(GameServer, "srv-2")).current_match_slug == "r1m1"

    async def test_reassign_without_spare_server(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.offline.add("srv-1")
        await match_service.poll_server("srv-1", session)

        with pytest.raises(ServerUnavailable):
            await match_service.reassign_server("r1m1", session)

        match = await match_service.get_match_by_slug("r1m1", session)
        assert match.status == MatchStatus.ERROR
        assert match.server_id is None

    async def test_reassign_requires_error(self, builder, session, match_service):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        await match_service.allocate_pending_matches(session)

        with pytest.raises(MatchServiceError, match="Only matches in error"):
            await match_service.reassign_server("r1m1", session)

    async def test_load_retry_from_error(self, builder, session, match_service, fake_client):
        teams = await builder.create_teams(2)
        await builder.create_tournament(teams, maps=SINGLE_MAP, start=True)
        await builder.create_server("srv-1")
        fake_client.offline.add("srv-1")
        await match_service.allocate_pending_matches(session)

        fake_client.offline.clear()
        match = await match_service.load_match("r1m1", session)
        assert match.status == MatchStatus.LOADING
        assert match.server_id == "srv-1"
